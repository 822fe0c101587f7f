from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

from .errors import PlaybookParseError
from .operations import OperationKind, operation_class
from .types import OperationSpec, Play, Playbook, RoleSpec
from .variables import deep_merge, load_toml, load_vars_file
from .vault import Vault, decrypt_tree

logger = logging.getLogger(__name__)

RESERVED_KEYS = {"type", "id", "when", "register", "notify", "tags", "ignore_errors", "depends_on", "listen"}
PLAY_KEYS = {
    "name",
    "hosts",
    "vars",
    "vars_files",
    "roles",
    "pre_tasks",
    "tasks",
    "post_tasks",
    "handlers",
    "gather_facts",
    "flush_after_roles",
}
META_TYPES = {"flush_handlers"}


def _as_tuple(value: Any, field_name: str, location: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value):
        return tuple(value)
    raise PlaybookParseError(f"{location}: '{field_name}' must be a string or list of strings")


class PlaybookLoader:
    """Loads playbooks and the roles they reference from TOML files."""

    def __init__(self, roles_path: Optional[Iterable[Path]] = None, vault: Optional[Vault] = None):
        self.roles_path = [Path(p) for p in (roles_path or [])]
        self.vault = vault
        self._role_cache: dict[str, RoleSpec] = {}

    def load(self, path: Path) -> Playbook:
        path = Path(path)
        data = load_toml(path, error_cls=PlaybookParseError)
        search = [path.parent / "roles", *self.roles_path]
        raw_plays = data.get("plays")
        if raw_plays is None:
            raw_plays = [data]
        elif not isinstance(raw_plays, list) or set(data) - {"plays"}:
            raise PlaybookParseError("'plays' must be the only top-level key and hold a list", path=str(path))
        plays = [
            self._parse_play(raw, f"{path}:play-{idx}", path.parent, search)
            for idx, raw in enumerate(raw_plays, start=1)
        ]
        return Playbook(path=str(path), plays=plays)

    def _parse_play(self, raw: Mapping[str, Any], location: str, base_dir: Path, search: list[Path]) -> Play:
        if not isinstance(raw, Mapping):
            raise PlaybookParseError(f"{location}: play must be a table")
        unknown = set(raw) - PLAY_KEYS
        if unknown:
            raise PlaybookParseError(f"{location}: unknown keys {', '.join(sorted(unknown))}")
        hosts = raw.get("hosts")
        if not isinstance(hosts, str) or not hosts.strip():
            raise PlaybookParseError(f"{location}: 'hosts' pattern is required")

        play_vars = raw.get("vars", {})
        if not isinstance(play_vars, Mapping):
            raise PlaybookParseError(f"{location}: 'vars' must be a table")
        play_vars = decrypt_tree(dict(play_vars), self.vault, source=location)
        for vars_file in _as_tuple(raw.get("vars_files"), "vars_files", location):
            play_vars = deep_merge(play_vars, load_vars_file(base_dir / vars_file, self.vault))

        roles = [self._load_role(name, search) for name in _as_tuple(raw.get("roles"), "roles", location)]
        return Play(
            name=str(raw.get("name") or hosts),
            hosts=hosts,
            vars=play_vars,
            pre_tasks=self.parse_tasks(raw.get("pre_tasks", []), f"{location}:pre_tasks", base_dir=base_dir),
            roles=roles,
            tasks=self.parse_tasks(raw.get("tasks", []), f"{location}:tasks", base_dir=base_dir),
            post_tasks=self.parse_tasks(raw.get("post_tasks", []), f"{location}:post_tasks", base_dir=base_dir),
            handlers=self.parse_tasks(raw.get("handlers", []), f"{location}:handlers", base_dir=base_dir, handlers=True),
            gather_facts=bool(raw.get("gather_facts", True)),
            flush_after_roles=bool(raw.get("flush_after_roles", True)),
        )

    def _load_role(self, name: str, search: list[Path]) -> RoleSpec:
        if name in self._role_cache:
            return self._role_cache[name]
        for root in search:
            role_dir = root / name
            if role_dir.is_dir():
                break
        else:
            raise PlaybookParseError(f"role '{name}' not found in {', '.join(str(p) for p in search)}")
        logger.debug("loading role=%s dir=%s", name, role_dir)

        tasks_file = role_dir / "tasks.toml"
        tasks_data = load_toml(tasks_file, error_cls=PlaybookParseError) if tasks_file.is_file() else {}
        handlers_file = role_dir / "handlers.toml"
        handlers_data = load_toml(handlers_file, error_cls=PlaybookParseError) if handlers_file.is_file() else {}
        defaults_file = role_dir / "defaults.toml"
        defaults = load_vars_file(defaults_file, self.vault) if defaults_file.is_file() else {}

        role = RoleSpec(
            name=name,
            tasks=self.parse_tasks(tasks_data.get("tasks", []), f"{tasks_file}", role=name, base_dir=role_dir),
            handlers=self.parse_tasks(
                handlers_data.get("handlers", []), f"{handlers_file}", role=name, base_dir=role_dir, handlers=True
            ),
            defaults=defaults,
        )
        self._role_cache[name] = role
        return role

    def parse_tasks(
        self,
        raw_tasks: Any,
        location: str,
        *,
        role: Optional[str] = None,
        base_dir: Optional[Path] = None,
        handlers: bool = False,
    ) -> list[OperationSpec]:
        if not isinstance(raw_tasks, list):
            raise PlaybookParseError(f"{location}: task list must be an array of tables")
        return [
            self.parse_task(raw, f"{location}[{idx}]", role=role, base_dir=base_dir, handler=handlers)
            for idx, raw in enumerate(raw_tasks, start=1)
        ]

    @staticmethod
    def parse_task(
        raw: Any,
        location: str,
        *,
        role: Optional[str] = None,
        base_dir: Optional[Path] = None,
        handler: bool = False,
    ) -> OperationSpec:
        if not isinstance(raw, Mapping):
            raise PlaybookParseError(f"{location}: task must be a table")
        action_type = raw.get("type")
        if not action_type:
            raise PlaybookParseError(f"{location}: task is missing a type")
        if action_type not in META_TYPES and operation_class(str(action_type)) is None:
            known = ", ".join(sorted(kind.value for kind in OperationKind))
            raise PlaybookParseError(f"{location}: unknown operation '{action_type}' (known: {known})")
        if handler and action_type in META_TYPES:
            raise PlaybookParseError(f"{location}: '{action_type}' cannot be used as a handler")

        task_id = raw.get("id")
        if task_id is not None and not isinstance(task_id, str):
            raise PlaybookParseError(f"{location}: 'id' must be a string")
        if handler and not task_id:
            raise PlaybookParseError(f"{location}: handlers require an 'id'")
        register = raw.get("register")
        if register is not None and (not isinstance(register, str) or not register.isidentifier()):
            raise PlaybookParseError(f"{location}: 'register' must be a valid identifier")
        ignore_errors = raw.get("ignore_errors", False)
        if not isinstance(ignore_errors, bool):
            raise PlaybookParseError(f"{location}: 'ignore_errors' must be a boolean")

        data = {k: v for k, v in raw.items() if k not in RESERVED_KEYS}
        if base_dir is not None:
            data.setdefault("_base_dir", str(base_dir))
        return OperationSpec(
            type=str(action_type),
            data=data,
            id=task_id,
            when=_as_tuple(raw.get("when"), "when", location),
            register=register,
            notify=_as_tuple(raw.get("notify"), "notify", location),
            tags=frozenset(_as_tuple(raw.get("tags"), "tags", location)),
            ignore_errors=ignore_errors,
            depends_on=list(_as_tuple(raw.get("depends_on"), "depends_on", location)),
            listen=_as_tuple(raw.get("listen"), "listen", location),
            role=role,
        )
