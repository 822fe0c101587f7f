from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover
    import tomli as tomllib  # type: ignore[no-redef]

from .errors import ParseError
from .types import VariableLayer
from .vault import Vault, decrypt_tree

logger = logging.getLogger(__name__)

ROLE_DEFAULTS = 0
ALL_GROUP = 10
GROUP_BASE = 20
PLAY_VARS = 90
HOST_VARS = 100
EXTRA_VARS = 1000


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Merge ``override`` onto ``base``.

    Nested mappings merge key by key; every other value (scalars, lists)
    from ``override`` replaces the one in ``base`` wholesale.
    """
    merged: dict[str, Any] = {k: copy.deepcopy(v) for k, v in base.items()}
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def merge_layers(layers: Iterable[VariableLayer]) -> dict[str, Any]:
    # sorted() is stable, so layers sharing a precedence keep their given order
    result: dict[str, Any] = {}
    for layer in sorted(layers, key=lambda item: item.precedence):
        logger.debug("merge layer=%s precedence=%s keys=%s", layer.name, layer.precedence, len(layer.values))
        result = deep_merge(result, layer.values)
    return result


def load_toml(path: Path, *, error_cls: type[ParseError] = ParseError) -> dict[str, Any]:
    try:
        return tomllib.loads(Path(path).read_text())
    except tomllib.TOMLDecodeError as exc:
        raise error_cls(str(exc), path=str(path)) from None
    except OSError as exc:
        raise error_cls(f"cannot read file: {exc.strerror}", path=str(path)) from None


def load_vars_file(path: Path, vault: Optional[Vault] = None) -> dict[str, Any]:
    data = load_toml(path)
    return decrypt_tree(data, vault, source=str(path))


def parse_extra_vars(items: Iterable[str], vault: Optional[Vault] = None) -> dict[str, Any]:
    """Turn ``KEY=VALUE`` and ``@file.toml`` command line items into a mapping."""
    result: dict[str, Any] = {}
    for item in items:
        if item.startswith("@"):
            result = deep_merge(result, load_vars_file(Path(item[1:]), vault))
            continue
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ParseError(f"extra vars must be KEY=VALUE or @file, got '{item}'")
        result[key.strip()] = _coerce_scalar(value)
    return result


def _coerce_scalar(value: str) -> Any:
    try:
        return tomllib.loads(f"v = {value}")["v"]
    except tomllib.TOMLDecodeError:
        return value
