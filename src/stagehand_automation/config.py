from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]

from .errors import ParseError


DEFAULT_CONFIG = Path("/etc/stagehand/main.conf")
DEFAULT_INVENTORY = Path("/etc/stagehand/inventory.toml")


@dataclass
class StagehandConfig:
    inventory: Path = DEFAULT_INVENTORY
    roles_path: list[Path] = field(default_factory=list)
    forks: int = 5
    fact_cache: Optional[Path] = None
    fact_ttl: float = 3600
    retries: int = 3
    retry_delay: float = 0.5
    vault_password_file: Optional[Path] = None
    aws_region: Optional[str] = None
    aws_profile: Optional[str] = None


def load_config(path: Path) -> StagehandConfig:
    path = Path(path)
    if not path.exists():
        return StagehandConfig()
    try:
        data = tomllib.loads(path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ParseError(str(exc), path=str(path)) from None
    defaults = data.get("defaults", {})
    if not isinstance(defaults, dict):
        raise ParseError("[defaults] must be a table", path=str(path))

    inventory = defaults.get("inventory", DEFAULT_INVENTORY)
    fact_cache = defaults.get("fact_cache")
    vault_password_file = defaults.get("vault_password_file")
    aws_region = defaults.get("aws_region")
    aws_profile = defaults.get("aws_profile")
    try:
        return StagehandConfig(
            inventory=Path(inventory),
            roles_path=_paths(defaults.get("roles_path")),
            forks=_positive_int(defaults.get("forks", 5), "forks"),
            fact_cache=Path(fact_cache) if fact_cache else None,
            fact_ttl=float(defaults.get("fact_ttl", 3600)),
            retries=int(defaults.get("retries", 3)),
            retry_delay=float(defaults.get("retry_delay", 0.5)),
            vault_password_file=Path(vault_password_file) if vault_password_file else None,
            aws_region=str(aws_region) if aws_region else None,
            aws_profile=str(aws_profile) if aws_profile else None,
        )
    except (TypeError, ValueError) as exc:
        raise ParseError(f"invalid [defaults] value: {exc}", path=str(path)) from None


def _paths(value: Any) -> list[Path]:
    if not value:
        return []
    if isinstance(value, str):
        return [Path(part) for part in value.split(":") if part]
    return [Path(str(item)) for item in value]


def _positive_int(value: Any, name: str) -> int:
    number = int(value)
    if number < 1:
        raise ValueError(f"{name} must be at least 1")
    return number
