from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

from .base import Operation, OperationKind, parse_mode, parse_state
from ..executors import Executor
from ..types import ActionResult, HostConfig


class OwnedPathMixin:
    """Ownership handling shared by operations that manage a single path."""

    path: Path
    owner: Optional[str]
    group: Optional[str]

    def _read_ownership(self, spec: dict[str, Any]) -> None:
        owner = spec.get("owner")
        group = spec.get("group")
        self.owner = None if owner in (None, "") else str(owner)
        self.group = None if group in (None, "") else str(group)

    def _apply_ownership(self, executor: Executor, changed: bool, detail: str) -> tuple[bool, str]:
        if self.owner is None and self.group is None:
            return changed, detail
        chown_changed, chown_detail = executor.set_ownership(self.path, owner=self.owner, group=self.group)
        if chown_changed:
            changed = True
            detail = f"{detail}, {chown_detail}" if detail and detail != "noop" else chown_detail
        return changed, detail


class FileOperation(OwnedPathMixin, Operation):
    """Ensure files and directories exist (or not) with the requested contents."""

    kind = OperationKind.FILE

    def __init__(self, spec, context=None):
        super().__init__(spec, context)
        raw_path = spec.get("path") or spec.get("dest")
        if not raw_path:
            raise ValueError("file operation requires a path")
        self.path = Path(str(raw_path))
        self.state = parse_state(spec, "file", {"present", "absent", "directory"})
        raw_content = spec.get("content")
        self.content = None if raw_content is None else str(raw_content)
        self.mode = parse_mode(spec.get("mode"))
        self._read_ownership(spec)

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        if self.state == "directory":
            changed, detail = executor.ensure_directory(self.path, mode=self.mode)
        elif self.state == "absent":
            removed = executor.remove_path(self.path)
            return self.result(host, removed, "removed" if removed else "noop")
        elif self.content is None:
            current = executor.read_file(self.path)
            content = "" if current is None else current
            changed, detail = executor.write_file(self.path, content=content, mode=self.mode)
        else:
            changed, detail = executor.write_file(self.path, content=self.content, mode=self.mode)
        changed, detail = self._apply_ownership(executor, changed, detail)
        return self.result(host, changed, detail)
