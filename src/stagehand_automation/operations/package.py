from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional
import logging

from .base import Operation, OperationKind, parse_state
from ..executors import Executor
from ..types import ActionResult, HostConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PackageManager:
    """Command vocabulary of one package manager."""

    name: str
    binary: str
    install_cmd: tuple[str, ...]
    remove_cmd: tuple[str, ...]
    query_cmd: tuple[str, ...]
    query_marker: Optional[str] = None

    def is_installed(self, executor: Executor, package: str) -> bool:
        result = executor.run([*self.query_cmd, package], check=False, mutable=False)
        if result.returncode != 0:
            return False
        return self.query_marker is None or self.query_marker in result.stdout

    def install(self, executor: Executor, packages: list[str]) -> None:
        executor.run([*self.install_cmd, *packages])

    def remove(self, executor: Executor, packages: list[str]) -> None:
        executor.run([*self.remove_cmd, *packages])

    def ensure_present(self, executor: Executor, packages: Iterable[str]) -> tuple[bool, str]:
        needed = [pkg for pkg in packages if not self.is_installed(executor, pkg)]
        if not needed:
            return False, "already-installed"
        self.install(executor, needed)
        return True, f"installed={','.join(needed)}"

    def ensure_absent(self, executor: Executor, packages: Iterable[str]) -> tuple[bool, str]:
        removable = [pkg for pkg in packages if self.is_installed(executor, pkg)]
        if not removable:
            return False, "already-removed"
        self.remove(executor, removable)
        return True, f"removed={','.join(removable)}"


MANAGERS: dict[str, PackageManager] = {
    "apt": PackageManager(
        "apt",
        "apt-get",
        ("apt-get", "install", "-y"),
        ("apt-get", "remove", "-y"),
        ("dpkg-query", "-W", "-f", "${Status}"),
        query_marker="install ok installed",
    ),
    "dnf": PackageManager("dnf", "dnf", ("dnf", "install", "-y"), ("dnf", "remove", "-y"), ("rpm", "-q")),
    "yum": PackageManager("yum", "yum", ("yum", "install", "-y"), ("yum", "remove", "-y"), ("rpm", "-q")),
    "zypper": PackageManager(
        "zypper",
        "zypper",
        ("zypper", "--non-interactive", "install"),
        ("zypper", "--non-interactive", "remove"),
        ("rpm", "-q"),
    ),
    "pacman": PackageManager(
        "pacman", "pacman", ("pacman", "-S", "--noconfirm"), ("pacman", "-R", "--noconfirm"), ("pacman", "-Qi")
    ),
}

DETECTION_ORDER = ("apt", "dnf", "yum", "zypper", "pacman")


def detect_manager(executor: Executor, preferred: Optional[str] = None) -> PackageManager:
    if preferred:
        try:
            return MANAGERS[preferred.lower()]
        except KeyError:
            raise ValueError(f"Unknown package manager '{preferred}'") from None
    for key in DETECTION_ORDER:
        manager = MANAGERS[key]
        probe = executor.run(["sh", "-c", f"command -v {manager.binary}"], check=False, mutable=False)
        if probe.returncode == 0:
            return manager
    raise RuntimeError("No supported package manager found on host")


class PackageOperation(Operation):
    """Ensure a set of packages is installed or removed."""

    kind = OperationKind.PACKAGE

    def __init__(self, spec, context=None):
        super().__init__(spec, context)
        packages = spec.get("packages") or spec.get("name")
        if isinstance(packages, str):
            self.packages = [packages]
        else:
            self.packages = [str(p) for p in (packages or [])]
        if not self.packages:
            raise ValueError("package operation requires at least one package")
        self.state = parse_state(spec, "package", {"present", "absent"})
        self.preferred_manager = spec.get("manager") or self.context.get("facts", {}).get("package_manager")

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        manager = detect_manager(executor, self.preferred_manager)
        logger.debug("package-manager=%s host=%s packages=%s", manager.name, host.name, self.packages)
        if self.state == "present":
            changed, details = manager.ensure_present(executor, self.packages)
        else:
            changed, details = manager.ensure_absent(executor, self.packages)
        return self.result(host, changed, f"manager={manager.name} {details}")
