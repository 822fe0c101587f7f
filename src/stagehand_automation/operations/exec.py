from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Mapping, Optional

from .base import Operation, OperationKind
from ..executors import CommandResult, Executor
from ..types import ActionResult, HostConfig

logger = logging.getLogger(__name__)

MAX_DETAIL = 160


def as_argv(value: Any, what: str = "command") -> list[str]:
    """Strings go through ``sh -c``; lists are taken as argv."""
    if isinstance(value, str):
        return ["sh", "-c", value]
    if isinstance(value, (list, tuple)):
        return [str(part) for part in value]
    raise ValueError(f"exec {what} must be a string or list")


def parse_env(value: Any) -> Optional[dict[str, str]]:
    if value is None:
        return None
    if isinstance(value, Mapping):
        return {str(key): str(val) for key, val in value.items()}
    if not isinstance(value, (list, tuple)):
        raise ValueError("exec env must be a table or a list of KEY=VALUE strings")
    env: dict[str, str] = {}
    for entry in value:
        key, sep, val = str(entry).partition("=")
        if not sep or not key:
            raise ValueError(f"exec env entry '{entry}' is not KEY=VALUE")
        env[key] = val
    return env


def parse_returns(value: Any) -> frozenset[int]:
    codes = value if isinstance(value, (list, tuple)) else [value]
    try:
        return frozenset(int(code) for code in codes)
    except (TypeError, ValueError):
        raise ValueError("exec returns must be an int or a list of ints") from None


def first_output_line(result: CommandResult) -> str:
    for stream in (result.stderr, result.stdout):
        text = (stream or "").strip()
        if text:
            line = text.splitlines()[0]
            return line if len(line) <= MAX_DETAIL else line[: MAX_DETAIL - 3] + "..."
    return ""


class ExecOperation(Operation):
    """Run arbitrary commands with simple guards, mirroring Puppet's exec.

    A command is not idempotent by itself; ``creates``, ``only_if`` and
    ``unless`` are what make a second run report no change. The exit code and
    output are kept on the result so ``register`` can expose them.
    """

    kind = OperationKind.EXEC

    def __init__(self, spec, context=None):
        super().__init__(spec, context)
        command = spec.get("command", spec.get("cmd"))
        if command is None:
            raise ValueError("exec operation requires a command")
        self.command = as_argv(command)
        self.name = str(spec.get("name") or self.command[-1])
        self.only_if = as_argv(spec["only_if"], "only_if") if spec.get("only_if") else None
        self.unless = as_argv(spec["unless"], "unless") if spec.get("unless") else None
        self.creates = Path(str(spec["creates"])) if spec.get("creates") else None
        self.cwd = Path(str(spec["cwd"])) if spec.get("cwd") else None
        self.env = parse_env(spec.get("env", spec.get("environment")))
        self.returns = parse_returns(spec.get("returns", 0))
        timeout = spec.get("timeout")
        try:
            self.timeout = None if timeout is None else float(timeout)
        except (TypeError, ValueError):
            raise ValueError("exec timeout must be numeric") from None

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        reason = self._skip_reason(executor)
        if reason:
            return self.result(host, False, f"skipped ({reason})")

        outcome = self._run(executor, self.command, mutable=True)
        rc = outcome.returncode
        if rc not in self.returns:
            logger.debug("exec failed name=%s rc=%s cmd=%s", self.name, rc, " ".join(self.command))
            line = first_output_line(outcome)
            return self.result(host, False, f"rc={rc}: {line}" if line else f"rc={rc}", failed=True)

        result = self.result(host, True, "dry-run" if executor.dry_run else f"ran (rc={rc})")
        result.extra = {"rc": rc, "stdout": outcome.stdout, "stderr": outcome.stderr}
        return result

    def _skip_reason(self, executor: Executor) -> Optional[str]:
        if self.creates is not None:
            marker = self.creates if self.creates.is_absolute() or self.cwd is None else self.cwd / self.creates
            if executor.path_exists(marker):
                return f"creates {marker}"
        if self.only_if is not None:
            rc = self._run(executor, self.only_if, mutable=False).returncode
            if rc != 0:
                return f"only_if rc={rc}"
        if self.unless is not None:
            rc = self._run(executor, self.unless, mutable=False).returncode
            if rc == 0:
                return f"unless rc={rc}"
        return None

    def _run(self, executor: Executor, argv: list[str], *, mutable: bool) -> CommandResult:
        return executor.run(argv, check=False, mutable=mutable, env=self.env, cwd=self.cwd, timeout=self.timeout)
