from __future__ import annotations

from .base import Operation, OperationKind
from ..executors import Executor
from ..types import ActionResult, HostConfig


class DebugOperation(Operation):
    """Report a message without touching the host."""

    kind = OperationKind.DEBUG

    def __init__(self, spec, context=None):
        super().__init__(spec, context)
        self.message = str(spec.get("msg", spec.get("message", "hello")))

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        return self.result(host, False, self.message)
