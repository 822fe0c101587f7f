from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional


class StepStatus(str, Enum):
    OK = "ok"
    CHANGED = "changed"
    FAILED = "failed"
    SKIPPED = "skipped"


class HostStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    UNREACHABLE = "unreachable"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class HostConfig:
    name: str
    connection: str = "local"
    address: Optional[str] = None
    user: Optional[str] = None
    port: Optional[int] = None
    groups: tuple[str, ...] = ()
    variables: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)


@dataclass(frozen=True)
class VariableLayer:
    name: str
    precedence: int
    values: Mapping[str, Any]


@dataclass(frozen=True)
class EffectiveConfig:
    host: str
    values: Mapping[str, Any]

    def __post_init__(self) -> None:
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))

    def __getitem__(self, key: str) -> Any:
        return self.values[key]

    def __contains__(self, key: object) -> bool:
        return key in self.values

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)


@dataclass
class OperationSpec:
    type: str
    data: dict[str, Any]
    id: Optional[str] = None
    when: tuple[str, ...] = ()
    register: Optional[str] = None
    notify: tuple[str, ...] = ()
    tags: frozenset[str] = frozenset()
    ignore_errors: bool = False
    depends_on: list[str] = field(default_factory=list)
    listen: tuple[str, ...] = ()
    role: Optional[str] = None

    @property
    def is_flush(self) -> bool:
        return self.type == "flush_handlers"


@dataclass
class RoleSpec:
    name: str
    tasks: list[OperationSpec] = field(default_factory=list)
    handlers: list[OperationSpec] = field(default_factory=list)
    defaults: dict[str, Any] = field(default_factory=dict)


@dataclass
class Play:
    name: str
    hosts: str
    vars: dict[str, Any] = field(default_factory=dict)
    pre_tasks: list[OperationSpec] = field(default_factory=list)
    roles: list[RoleSpec] = field(default_factory=list)
    tasks: list[OperationSpec] = field(default_factory=list)
    post_tasks: list[OperationSpec] = field(default_factory=list)
    handlers: list[OperationSpec] = field(default_factory=list)
    gather_facts: bool = True
    flush_after_roles: bool = True

    def role_defaults(self) -> list[dict[str, Any]]:
        return [role.defaults for role in self.roles]

    def all_handlers(self) -> list[OperationSpec]:
        handlers: list[OperationSpec] = []
        for role in self.roles:
            handlers.extend(role.handlers)
        handlers.extend(self.handlers)
        return handlers


@dataclass
class Playbook:
    path: str
    plays: list[Play]


@dataclass(frozen=True)
class PlanStep:
    index: int
    spec: OperationSpec
    phase: str
    skip_reason: Optional[str] = None
    deferred_guard: bool = False

    @property
    def flush(self) -> bool:
        return self.spec.is_flush

    @property
    def label(self) -> str:
        resource = resource_name(self.spec.data)
        suffix = f"[{resource}]" if resource else ""
        return f"{self.spec.type}{suffix}"


@dataclass(frozen=True)
class Plan:
    host: HostConfig
    config: EffectiveConfig
    steps: tuple[PlanStep, ...]
    handlers: Mapping[str, OperationSpec]
    gather_facts: bool = True

    def operations(self) -> list[PlanStep]:
        return [step for step in self.steps if not step.flush]


@dataclass
class ActionResult:
    host: str
    action: str
    changed: bool
    details: str
    failed: bool = False
    resource: Optional[str] = None
    skipped: bool = False
    task_id: Optional[str] = None
    handler: bool = False
    ignored: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def status(self) -> StepStatus:
        if self.failed:
            return StepStatus.FAILED
        if self.skipped:
            return StepStatus.SKIPPED
        if self.changed:
            return StepStatus.CHANGED
        return StepStatus.OK

    def as_register(self) -> dict[str, Any]:
        return {
            "changed": self.changed,
            "failed": self.failed,
            "skipped": self.skipped,
            "details": self.details,
            "status": self.status.value,
            **self.extra,
        }


@dataclass
class HostResult:
    host: str
    status: HostStatus = HostStatus.PENDING
    results: list[ActionResult] = field(default_factory=list)
    error: Optional[str] = None

    def add(self, result: ActionResult) -> None:
        self.results.append(result)

    def count(self, status: StepStatus) -> int:
        return sum(1 for result in self.results if result.status is status)

    @property
    def ok(self) -> int:
        return self.count(StepStatus.OK)

    @property
    def changed(self) -> int:
        return self.count(StepStatus.CHANGED)

    @property
    def failed(self) -> int:
        return self.count(StepStatus.FAILED)

    @property
    def skipped(self) -> int:
        return self.count(StepStatus.SKIPPED)

    def merge(self, other: "HostResult") -> None:
        """Fold the outcome of a later play for the same host into this one."""
        self.results.extend(other.results)
        if other.status in {HostStatus.FAILED, HostStatus.UNREACHABLE, HostStatus.CANCELLED} or self.status is HostStatus.PENDING:
            self.status = other.status
            self.error = other.error


def resource_name(data: Mapping[str, Any]) -> Optional[str]:
    for key in ("resource", "name", "path", "dest", "user", "service"):
        value = data.get(key)
        if value:
            return str(value)
    pkgs = data.get("packages")
    if isinstance(pkgs, (list, tuple)) and pkgs:
        rendered = ", ".join(str(p) for p in pkgs[:3])
        if len(pkgs) > 3:
            rendered += ", ..."
        return rendered
    return None
