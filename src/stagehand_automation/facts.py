from __future__ import annotations

import json
import logging
import os
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from .errors import ConnectivityError, FactGatherError
from .executors import Executor
from .types import HostConfig

logger = logging.getLogger(__name__)

Gatherer = Callable[[HostConfig, Optional[Executor]], dict[str, Any]]


@dataclass
class FactCacheEntry:
    facts: dict[str, Any]
    timestamp: float


class FactCache:
    """Per-host memoized facts with a time-to-live.

    Refreshes of the same host are serialized: a caller that arrives while a
    gather is in flight waits for it and then reuses the fresh entry. When a
    gather fails the previous entry stays in place; with ``serve_stale`` it is
    returned instead of raising :class:`FactGatherError`.
    """

    def __init__(
        self,
        gatherer: Gatherer,
        path: Optional[Path] = None,
        *,
        clock: Callable[[], float] = time.time,
        serve_stale: bool = False,
    ):
        self.gatherer = gatherer
        self.path = Path(path) if path else None
        self.clock = clock
        self.serve_stale = serve_stale
        self._entries: dict[str, FactCacheEntry] = self._load()
        self._guard = threading.Lock()
        self._host_locks: dict[str, threading.Lock] = {}

    def get_or_refresh(self, host: HostConfig, ttl: float, executor: Optional[Executor] = None) -> dict[str, Any]:
        with self._lock_for(host.name):
            entry = self._entries.get(host.name)
            if entry is not None and self.clock() - entry.timestamp < ttl:
                logger.debug("facts host=%s cache=hit age=%.1f", host.name, self.clock() - entry.timestamp)
                return dict(entry.facts)

            logger.debug("facts host=%s cache=%s", host.name, "stale" if entry else "miss")
            try:
                facts = self.gatherer(host, executor)
            except ConnectivityError:
                raise
            except Exception as exc:  # noqa: BLE001
                if entry is not None and self.serve_stale:
                    logger.warning("facts host=%s gather failed, serving stale entry: %s", host.name, exc)
                    return dict(entry.facts)
                raise FactGatherError(host.name, str(exc)) from exc

            new_entry = FactCacheEntry(facts=dict(facts), timestamp=self.clock())
            with self._guard:
                self._entries[host.name] = new_entry
                self._write()
            return dict(new_entry.facts)

    def entry(self, host_name: str) -> Optional[FactCacheEntry]:
        return self._entries.get(host_name)

    def invalidate(self, host_name: str) -> None:
        with self._guard:
            if self._entries.pop(host_name, None) is not None:
                self._write()

    def _lock_for(self, host_name: str) -> threading.Lock:
        with self._guard:
            return self._host_locks.setdefault(host_name, threading.Lock())

    def _write(self) -> None:
        if self.path is None:
            return
        data = {
            name: {"facts": entry.facts, "timestamp": entry.timestamp}
            for name, entry in self._entries.items()
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(data, indent=2, sort_keys=True))
        try:
            os.chmod(tmp, 0o600)
        except OSError:
            logger.debug("Unable to chmod fact cache %s", tmp, exc_info=True)
        os.replace(tmp, self.path)

    def _load(self) -> dict[str, FactCacheEntry]:
        if self.path is None or not self.path.exists():
            return {}
        try:
            raw = json.loads(self.path.read_text())
            return {
                name: FactCacheEntry(facts=dict(item["facts"]), timestamp=float(item["timestamp"]))
                for name, item in raw.items()
            }
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError):
            logger.warning("Fact cache %s is corrupt; starting fresh", self.path)
            return {}


OS_FAMILIES = {
    "debian": "Debian",
    "ubuntu": "Debian",
    "rhel": "RedHat",
    "centos": "RedHat",
    "fedora": "RedHat",
    "rocky": "RedHat",
    "almalinux": "RedHat",
    "suse": "Suse",
    "opensuse": "Suse",
    "arch": "Archlinux",
}

PACKAGE_MANAGERS = {"Debian": "apt", "RedHat": "dnf", "Suse": "zypper", "Archlinux": "pacman"}


def gather_facts(host: HostConfig, executor: Optional[Executor]) -> dict[str, Any]:
    """Collect basic system facts through ``executor``."""
    if executor is None:
        raise ValueError("an executor is required to gather facts")
    uname = executor.run(["uname", "-snrm"], mutable=False)
    parts = uname.stdout.split()
    if len(parts) < 4:
        raise ValueError(f"unexpected uname output: {uname.stdout!r}")
    facts: dict[str, Any] = {
        "system": parts[0],
        "hostname": parts[1],
        "kernel": parts[2],
        "architecture": parts[3],
    }
    os_release = parse_os_release(executor.read_file(Path("/etc/os-release")) or "")
    distribution = os_release.get("ID", parts[0].lower())
    facts["distribution"] = distribution
    facts["distribution_version"] = os_release.get("VERSION_ID", "")
    family_keys = [distribution, *os_release.get("ID_LIKE", "").split()]
    family = next((OS_FAMILIES[key] for key in family_keys if key in OS_FAMILIES), parts[0])
    facts["os_family"] = family
    if family in PACKAGE_MANAGERS:
        facts["package_manager"] = PACKAGE_MANAGERS[family]
    return facts


def parse_os_release(text: str) -> dict[str, str]:
    values: dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.strip().partition("=")
        if not sep or key.startswith("#"):
            continue
        values[key] = value.strip().strip('"').strip("'")
    return values
