from __future__ import annotations

from pathlib import Path
from string import Template
from typing import Any, Optional

import jinja2

from .base import Operation, OperationKind, parse_mode
from .file import OwnedPathMixin
from ..executors import Executor
from ..guards import TEMPLATE_RE, environment
from ..secrets import SecretResolver
from ..types import ActionResult, HostConfig


class TemplateOperation(OwnedPathMixin, Operation):
    """Render a Jinja2 template from the controller onto the host."""

    kind = OperationKind.TEMPLATE
    secret_resolver = SecretResolver()

    def __init__(self, spec, context=None):
        super().__init__(spec, context)
        src = spec.get("src")
        dest = spec.get("dest") or spec.get("path")
        if not src or not dest:
            raise ValueError("template operation requires src and dest")
        self.src = str(src)
        self.path = Path(str(dest))
        self.mode = parse_mode(spec.get("mode"))
        self.variables = spec.get("variables", {})
        if not isinstance(self.variables, dict):
            raise ValueError("template operation variables must be a mapping")
        base_dir = spec.get("_base_dir")
        self.base_dir: Optional[Path] = Path(str(base_dir)) if base_dir else None
        self._read_ownership(spec)

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        content = self.render()
        changed, detail = executor.write_file(self.path, content=content, mode=self.mode)
        changed, detail = self._apply_ownership(executor, changed, detail)
        return self.result(host, changed, detail)

    def render(self) -> str:
        template_text = self.template_path().read_text()
        context: dict[str, Any] = dict(self.context)
        context.update(self.variables)
        context = self.secret_resolver.resolve(context)
        if not TEMPLATE_RE.search(template_text):
            return Template(template_text).safe_substitute(context)
        try:
            return environment().from_string(template_text).render(**context)
        except jinja2.UndefinedError as exc:
            raise ValueError(f"template {self.src}: {exc.message}") from None

    def template_path(self) -> Path:
        candidate = Path(self.src).expanduser()
        if candidate.is_absolute():
            return candidate
        if self.base_dir is not None:
            for root in (self.base_dir / "templates", self.base_dir):
                if (root / candidate).is_file():
                    return root / candidate
        if candidate.is_file():
            return candidate
        raise FileNotFoundError(f"template '{self.src}' not found")
