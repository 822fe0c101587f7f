from typing import Optional

from .base import Operation, OperationKind
from .debug import DebugOperation
from .exec import ExecOperation
from .file import FileOperation
from .lineinfile import LineInFileOperation
from .package import PackageOperation
from .service import ServiceOperation
from .template import TemplateOperation
from .user import GroupOperation, UserOperation

OPERATION_REGISTRY: dict[OperationKind, type[Operation]] = {
    OperationKind.PACKAGE: PackageOperation,
    OperationKind.FILE: FileOperation,
    OperationKind.TEMPLATE: TemplateOperation,
    OperationKind.LINEINFILE: LineInFileOperation,
    OperationKind.SERVICE: ServiceOperation,
    OperationKind.EXEC: ExecOperation,
    OperationKind.USER: UserOperation,
    OperationKind.GROUP: GroupOperation,
    OperationKind.DEBUG: DebugOperation,
}


def operation_class(type_name: str) -> Optional[type[Operation]]:
    """Registry lookup by the plain string used in task files."""
    try:
        kind = OperationKind(type_name)
    except ValueError:
        return None
    return OPERATION_REGISTRY.get(kind)


__all__ = [
    "Operation",
    "OperationKind",
    "DebugOperation",
    "ExecOperation",
    "FileOperation",
    "LineInFileOperation",
    "PackageOperation",
    "ServiceOperation",
    "TemplateOperation",
    "UserOperation",
    "GroupOperation",
    "OPERATION_REGISTRY",
    "operation_class",
]
