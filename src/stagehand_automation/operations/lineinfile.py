from __future__ import annotations

import re
from pathlib import Path

from .base import Operation, OperationKind, coerce_bool, parse_mode, parse_state
from ..executors import Executor
from ..types import ActionResult, HostConfig


class LineInFileOperation(Operation):
    """Ensure a single line is present in (or absent from) a text file.

    With ``regexp`` the last matching line is replaced; otherwise the exact
    line is appended when missing. ``state = "absent"`` drops every line
    matching ``regexp`` (or equal to ``line``).
    """

    kind = OperationKind.LINEINFILE

    def __init__(self, spec, context=None):
        super().__init__(spec, context)
        raw_path = spec.get("path") or spec.get("dest")
        if not raw_path:
            raise ValueError("lineinfile operation requires a path")
        self.path = Path(str(raw_path))
        self.state = parse_state(spec, "lineinfile", {"present", "absent"})
        self.line = spec.get("line")
        if self.state == "present" and self.line is None:
            raise ValueError("lineinfile operation requires a line when state=present")
        raw_regexp = spec.get("regexp")
        self.regexp = re.compile(str(raw_regexp)) if raw_regexp else None
        if self.state == "absent" and self.regexp is None and self.line is None:
            raise ValueError("lineinfile absent requires a line or regexp")
        self.create = bool(coerce_bool(spec.get("create", False)))
        self.mode = parse_mode(spec.get("mode"))

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        current = executor.read_file(self.path)
        if current is None:
            if self.state == "absent":
                return self.result(host, False, "noop")
            if not self.create:
                return self.result(host, False, f"{self.path} does not exist", failed=True)
            current = ""

        lines = current.splitlines()
        if self.state == "present":
            updated = self._ensure_present(lines)
        else:
            updated = [line for line in lines if not self._matches(line)]

        content = "\n".join(updated) + ("\n" if updated else "")
        if updated == lines and (current.endswith("\n") or not current):
            if self.mode is None:
                return self.result(host, False, "noop")
            content = current
        changed, detail = executor.write_file(self.path, content=content, mode=self.mode)
        return self.result(host, changed, detail)

    def _ensure_present(self, lines: list[str]) -> list[str]:
        line = str(self.line)
        if self.regexp is not None:
            matches = [idx for idx, existing in enumerate(lines) if self.regexp.search(existing)]
            if matches:
                updated = list(lines)
                updated[matches[-1]] = line
                return updated
        if line in lines:
            return list(lines)
        return [*lines, line]

    def _matches(self, line: str) -> bool:
        if self.regexp is not None:
            return bool(self.regexp.search(line))
        return line == str(self.line)
