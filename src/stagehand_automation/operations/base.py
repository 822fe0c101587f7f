from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Mapping, Optional

from ..types import ActionResult, HostConfig
from ..executors import Executor


class OperationKind(str, Enum):
    PACKAGE = "package"
    FILE = "file"
    TEMPLATE = "template"
    LINEINFILE = "lineinfile"
    SERVICE = "service"
    EXEC = "exec"
    USER = "user"
    GROUP = "group"
    DEBUG = "debug"


class Operation(ABC):
    """Shared surface for runnable automation actions.

    ``apply`` must report ``changed=True`` only when the host state differed
    from the desired state, so a second application is a no-op.
    """

    kind: OperationKind

    def __init__(self, spec: dict[str, Any], context: Optional[Mapping[str, Any]] = None):
        self.spec = spec
        self.context = dict(context or {})

    @abstractmethod
    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        """Perform the operation against ``host`` using ``executor``."""

    def result(self, host: HostConfig, changed: bool, details: str, *, failed: bool = False) -> ActionResult:
        return ActionResult(
            host=host.name,
            action=self.kind.value,
            changed=changed,
            details=details,
            failed=failed,
        )


def coerce_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "on", "1"}:
            return True
        if lowered in {"false", "no", "off", "0"}:
            return False
        raise ValueError(f"Unable to interpret boolean value '{value}'")
    return bool(value)


def parse_mode(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text:
        return None
    base = 8 if text.startswith("0") else 10
    return int(text, base)


def parse_state(spec: Mapping[str, Any], kind: str, allowed: set[str], default: str = "present") -> str:
    state = str(spec.get("state", default))
    if state not in allowed:
        choices = ", ".join(f"'{s}'" for s in sorted(allowed))
        raise ValueError(f"{kind} operation state must be one of {choices}")
    return state
