from __future__ import annotations

import logging
from dataclasses import dataclass

from .base import Operation, OperationKind, coerce_bool
from ..executors import Executor
from ..types import ActionResult, HostConfig

logger = logging.getLogger(__name__)


@dataclass
class SystemCtl:
    executable: str = "systemctl"

    def available(self, executor: Executor) -> bool:
        probe = executor.run(["sh", "-c", f"command -v {self.executable}"], check=False, mutable=False)
        return probe.returncode == 0

    def is_enabled(self, executor: Executor, service: str) -> bool:
        result = executor.run([self.executable, "is-enabled", service], check=False, mutable=False)
        return result.returncode == 0

    def is_active(self, executor: Executor, service: str) -> bool:
        result = executor.run([self.executable, "is-active", service], check=False, mutable=False)
        return result.returncode == 0

    def control(self, executor: Executor, verb: str, service: str) -> None:
        executor.run([self.executable, verb, service])


ONE_SHOT = {"restarted": "restart", "reloaded": "reload"}
STATES = {"running", "stopped", *ONE_SHOT}


class ServiceOperation(Operation):
    """Manage systemd services.

    ``restarted`` and ``reloaded`` always report a change; they are meant to
    be used from handlers.
    """

    kind = OperationKind.SERVICE

    def __init__(self, spec, context=None):
        super().__init__(spec, context)
        if not spec.get("name"):
            raise ValueError("service operation requires a name")
        self.name = str(spec["name"])
        self.enabled = coerce_bool(spec.get("enabled"))
        self.state = spec.get("state")
        if self.state is not None and self.state not in STATES:
            raise ValueError(f"service state must be one of {', '.join(sorted(STATES))}")
        self.systemctl = SystemCtl()

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        if not self.systemctl.available(executor):
            raise RuntimeError("systemctl is not available on this host")
        steps = self._pending(executor)
        for verb, _ in steps:
            logger.debug("systemctl verb=%s service=%s host=%s", verb, self.name, host.name)
            if not executor.dry_run:
                self.systemctl.control(executor, verb, self.name)
        labels = [label for _, label in steps]
        return self.result(host, bool(labels), ", ".join(labels) or "noop")

    def _pending(self, executor: Executor) -> list[tuple[str, str]]:
        """(systemctl verb, reported label) pairs needed to reach the desired state."""
        steps: list[tuple[str, str]] = []
        if self.enabled is not None and self.enabled != self.systemctl.is_enabled(executor, self.name):
            steps.append(("enable", "enabled") if self.enabled else ("disable", "disabled"))
        if self.state in ONE_SHOT:
            steps.append((ONE_SHOT[self.state], self.state))
        elif self.state is not None:
            running = self.state == "running"
            if running != self.systemctl.is_active(executor, self.name):
                steps.append(("start", "started") if running else ("stop", "stopped"))
        return steps
