from __future__ import annotations

import fnmatch
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

from .errors import CyclicGroupError, InventoryParseError, UnknownHostPatternError
from .types import EffectiveConfig, HostConfig, VariableLayer
from .variables import (
    ALL_GROUP,
    EXTRA_VARS,
    GROUP_BASE,
    HOST_VARS,
    PLAY_VARS,
    ROLE_DEFAULTS,
    load_toml,
    load_vars_file,
    merge_layers,
)
from .vault import Vault, decrypt_tree

logger = logging.getLogger(__name__)

TRANSPORT_ONLY_KEYS = {"connection"}
PATTERN_SPLIT_RE = re.compile(r"[:,]")
GLOB_CHARS = set("*?[")


@dataclass
class GroupDef:
    name: str
    vars: dict[str, Any] = field(default_factory=dict)
    hosts: list[str] = field(default_factory=list)
    children: list[str] = field(default_factory=list)
    parents: list[str] = field(default_factory=list)


class Inventory:
    """Hosts, their group tree and per-layer variables."""

    def __init__(self, hosts: dict[str, HostConfig], groups: dict[str, GroupDef]):
        self.hosts = hosts
        self.groups = groups
        self._check_cycles()
        self._depths = self._compute_depths()
        self.hosts = {name: self._with_groups(host) for name, host in hosts.items()}

    # Pattern resolution --------------------------------------------------
    def select(self, pattern: str) -> list[HostConfig]:
        """Resolve a pattern such as ``web*:!web03:&prod`` to hosts in inventory order."""
        terms = [term.strip() for term in PATTERN_SPLIT_RE.split(pattern or "") if term.strip()]
        union: set[str] = set()
        intersections: list[set[str]] = []
        exclusions: set[str] = set()
        for term in terms:
            if term.startswith("!"):
                exclusions |= self._match_term(term[1:])
            elif term.startswith("&"):
                intersections.append(self._match_term(term[1:]))
            else:
                union |= self._match_term(term)
        selected = set(union)
        for matched in intersections:
            selected &= matched
        selected -= exclusions
        logger.debug("pattern=%s selected=%s", pattern, len(selected))
        return [host for name, host in self.hosts.items() if name in selected]

    def _match_term(self, term: str) -> set[str]:
        if term in {"all", "*"}:
            return set(self.hosts)
        if GLOB_CHARS & set(term):
            matched = {name for name in self.hosts if fnmatch.fnmatchcase(name, term)}
            for group in self.groups:
                if fnmatch.fnmatchcase(group, term):
                    matched |= self.group_members(group)
            if not matched:
                raise UnknownHostPatternError(term)
            return matched
        if term in self.hosts:
            return {term}
        if term in self.groups:
            return self.group_members(term)
        raise UnknownHostPatternError(term)

    def group_members(self, group: str) -> set[str]:
        members: set[str] = set()
        pending = [group]
        seen: set[str] = set()
        while pending:
            current = pending.pop()
            if current in seen:
                continue
            seen.add(current)
            definition = self.groups[current]
            members.update(definition.hosts)
            pending.extend(definition.children)
        if group == "all":
            members.update(self.hosts)
        return members

    # Variables -----------------------------------------------------------
    def layers(
        self,
        host: HostConfig,
        *,
        role_defaults: Iterable[Mapping[str, Any]] = (),
        play_vars: Optional[Mapping[str, Any]] = None,
        extra_vars: Optional[Mapping[str, Any]] = None,
    ) -> list[VariableLayer]:
        layers = [
            VariableLayer(f"role-defaults[{idx}]", ROLE_DEFAULTS, dict(values))
            for idx, values in enumerate(role_defaults)
        ]
        for group in self._ordered_groups(host):
            depth = self._depths[group]
            precedence = ALL_GROUP if group == "all" else GROUP_BASE + depth
            layers.append(VariableLayer(f"group:{group}", precedence, self.groups[group].vars))
        if play_vars:
            layers.append(VariableLayer("play", PLAY_VARS, dict(play_vars)))
        layers.append(VariableLayer(f"host:{host.name}", HOST_VARS, host.variables))
        if extra_vars:
            layers.append(VariableLayer("extra", EXTRA_VARS, dict(extra_vars)))
        return layers

    def effective_config(
        self,
        host: HostConfig,
        *,
        role_defaults: Iterable[Mapping[str, Any]] = (),
        play_vars: Optional[Mapping[str, Any]] = None,
        extra_vars: Optional[Mapping[str, Any]] = None,
    ) -> EffectiveConfig:
        values = merge_layers(
            self.layers(host, role_defaults=role_defaults, play_vars=play_vars, extra_vars=extra_vars)
        )
        values["inventory_hostname"] = host.name
        values["group_names"] = [group for group in host.groups if group != "all"]
        return EffectiveConfig(host=host.name, values=values)

    # Group tree ----------------------------------------------------------
    def _ordered_groups(self, host: HostConfig) -> list[str]:
        return sorted(host.groups, key=lambda group: (self._depths[group], group))

    def _with_groups(self, host: HostConfig) -> HostConfig:
        direct = [name for name, group in self.groups.items() if host.name in group.hosts]
        found: set[str] = {"all"}
        pending = list(direct)
        while pending:
            group = pending.pop()
            if group in found:
                continue
            found.add(group)
            pending.extend(self.groups[group].parents)
        ordered = tuple(sorted(found, key=lambda group: (self._depths[group], group)))
        return HostConfig(
            name=host.name,
            connection=host.connection,
            address=host.address,
            user=host.user,
            port=host.port,
            groups=ordered,
            variables=host.variables,
        )

    def _check_cycles(self) -> None:
        visiting: list[str] = []
        done: set[str] = set()

        def visit(name: str) -> None:
            if name in done:
                return
            if name in visiting:
                start = visiting.index(name)
                raise CyclicGroupError(visiting[start:] + [name])
            visiting.append(name)
            for child in self.groups[name].children:
                visit(child)
            visiting.pop()
            done.add(name)

        for group in self.groups:
            visit(group)

    def _compute_depths(self) -> dict[str, int]:
        depths: dict[str, int] = {}

        def depth(name: str) -> int:
            if name not in depths:
                parents = self.groups[name].parents
                depths[name] = 0 if not parents else 1 + max(depth(parent) for parent in parents)
            return depths[name]

        for group in self.groups:
            depth(group)
        return depths


class InventoryLoader:
    """Loads TOML inventories of the ``all -> children -> hosts`` shape."""

    def __init__(self, vault: Optional[Vault] = None):
        self.vault = vault

    def load(self, path: Path) -> Inventory:
        path = Path(path)
        data = load_toml(path, error_cls=InventoryParseError)
        data = decrypt_tree(data, self.vault, source=str(path))
        inventory = self.from_dict(data, source=str(path))
        self._apply_var_dirs(inventory, path.parent)
        return inventory

    def from_dict(self, data: Mapping[str, Any], source: str = "<inventory>") -> Inventory:
        root = data.get("all", {})
        if not isinstance(root, Mapping):
            raise InventoryParseError("'all' must be a table", path=source)
        groups: dict[str, GroupDef] = {}
        hosts: dict[str, dict[str, Any]] = {}
        self._parse_group("all", root, None, groups, hosts, source)
        built = {name: self._build_host(name, attrs, source) for name, attrs in hosts.items()}
        return Inventory(built, groups)

    def _parse_group(
        self,
        name: str,
        payload: Mapping[str, Any],
        parent: Optional[str],
        groups: dict[str, GroupDef],
        hosts: dict[str, dict[str, Any]],
        source: str,
    ) -> None:
        unknown = set(payload) - {"vars", "hosts", "children"}
        if unknown:
            raise InventoryParseError(f"group '{name}' has unknown keys: {', '.join(sorted(unknown))}", path=source)
        group = groups.setdefault(name, GroupDef(name=name))
        if parent is not None:
            if parent not in group.parents:
                group.parents.append(parent)
            if name not in groups[parent].children:
                groups[parent].children.append(name)

        group_vars = payload.get("vars", {})
        if not isinstance(group_vars, Mapping):
            raise InventoryParseError(f"vars of group '{name}' must be a table", path=source)
        group.vars.update(group_vars)

        host_entries = payload.get("hosts", {})
        if not isinstance(host_entries, Mapping):
            raise InventoryParseError(f"hosts of group '{name}' must be a table", path=source)
        for host_name, attrs in host_entries.items():
            if attrs is None:
                attrs = {}
            if not isinstance(attrs, Mapping):
                raise InventoryParseError(f"host '{host_name}' must be a table", path=source)
            hosts.setdefault(host_name, {}).update(attrs)
            if host_name not in group.hosts:
                group.hosts.append(host_name)

        children = payload.get("children", {})
        if not isinstance(children, Mapping):
            raise InventoryParseError(f"children of group '{name}' must be a table", path=source)
        for child_name, child_payload in children.items():
            if child_name == "all":
                raise InventoryParseError("'all' cannot be nested", path=source)
            if not isinstance(child_payload, Mapping):
                raise InventoryParseError(f"group '{child_name}' must be a table", path=source)
            self._parse_group(child_name, child_payload, name, groups, hosts, source)

    @staticmethod
    def _build_host(name: str, attrs: Mapping[str, Any], source: str) -> HostConfig:
        address = attrs.get("address")
        connection = str(attrs.get("connection") or ("ssh" if address else "local"))
        if connection not in {"local", "ssh"}:
            raise InventoryParseError(f"host '{name}' has unknown connection '{connection}'", path=source)
        port = attrs.get("port")
        if port is not None and not isinstance(port, int):
            raise InventoryParseError(f"host '{name}' port must be an integer", path=source)
        # address, user and port stay visible to guards and templates as host vars
        variables = {k: v for k, v in attrs.items() if k not in TRANSPORT_ONLY_KEYS}
        return HostConfig(
            name=name,
            connection=connection,
            address=str(address) if address else None,
            user=attrs.get("user"),
            port=port,
            variables=variables,
        )

    def _apply_var_dirs(self, inventory: Inventory, base_dir: Path) -> None:
        group_dir = base_dir / "group_vars"
        for name, group in inventory.groups.items():
            path = group_dir / f"{name}.toml"
            if path.is_file():
                logger.debug("loading group vars file=%s", path)
                group.vars.update(load_vars_file(path, self.vault))
        host_dir = base_dir / "host_vars"
        for name, host in inventory.hosts.items():
            path = host_dir / f"{name}.toml"
            if path.is_file():
                logger.debug("loading host vars file=%s", path)
                host.variables.update(load_vars_file(path, self.vault))
