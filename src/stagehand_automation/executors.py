from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence, Union
import grp
import logging
import os
import pwd
import shlex
import shutil
import stat
import subprocess

from .errors import ConnectivityError
from .types import HostConfig

logger = logging.getLogger(__name__)

SSH_UNREACHABLE_RC = 255
CONNECTION_VARS = ("address", "user", "port")


@dataclass
class CommandResult:
    command: list[str]
    stdout: str
    stderr: str
    returncode: int


class Executor:
    """Base executor abstraction used by operations."""

    def __init__(self, host: HostConfig, *, dry_run: bool = False):
        self.host = host
        self.dry_run = dry_run

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        mutable: bool = True,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        timeout: Optional[float] = None,
        input: Optional[str] = None,
    ) -> CommandResult:
        """Run ``command`` and optionally skip it during dry-runs."""

        cmd_list = list(command)
        if self.dry_run and mutable:
            return CommandResult(cmd_list, "", "skipped (dry-run)", 0)

        argv, exec_env, exec_cwd = self._prepare(cmd_list, env, cwd)
        try:
            proc = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                check=False,
                env=exec_env,
                cwd=exec_cwd,
                timeout=timeout,
                input=input,
            )
        except FileNotFoundError as exc:
            return CommandResult(cmd_list, "", str(exc), 127)
        self._check_transport(proc)
        if check and proc.returncode != 0:
            raise subprocess.CalledProcessError(
                proc.returncode,
                cmd_list,
                proc.stdout,
                proc.stderr,
            )
        return CommandResult(cmd_list, proc.stdout, proc.stderr, proc.returncode)

    def _prepare(
        self,
        command: list[str],
        env: Optional[dict[str, str]],
        cwd: Optional[Union[str, Path]],
    ) -> tuple[list[str], Optional[dict[str, str]], Optional[str]]:
        exec_env = None
        if env:
            exec_env = os.environ.copy()
            exec_env.update(env)
        return command, exec_env, str(cwd) if cwd is not None else None

    def _check_transport(self, proc: subprocess.CompletedProcess) -> None:
        return None

    def check_connection(self) -> None:
        """Raise :class:`ConnectivityError` when the host cannot be reached."""

    # File primitives -----------------------------------------------------
    def read_file(self, path: Path) -> Optional[str]:
        raise NotImplementedError

    def write_file(self, path: Path, *, content: str, mode: Optional[int]) -> tuple[bool, str]:
        raise NotImplementedError

    def ensure_directory(self, path: Path, *, mode: Optional[int]) -> tuple[bool, str]:
        raise NotImplementedError

    def remove_path(self, path: Path) -> bool:
        raise NotImplementedError

    def path_exists(self, path: Path) -> bool:
        raise NotImplementedError

    def set_ownership(
        self, path: Path, *, owner: Optional[str], group: Optional[str]
    ) -> tuple[bool, str]:
        raise NotImplementedError


class LocalExecutor(Executor):
    """Executor that acts directly on the local host."""

    def read_file(self, path: Path) -> Optional[str]:
        try:
            return path.read_text()
        except (FileNotFoundError, IsADirectoryError):
            return None

    def write_file(self, path: Path, *, content: str, mode: Optional[int]) -> tuple[bool, str]:
        current = self.read_file(path)
        changed = False
        reasons: list[str] = []

        if current != content:
            changed = True
            reasons.append("created" if current is None else "content")
            if not self.dry_run:
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(content)

        if mode is not None:
            existing_mode = self._file_mode(path)
            if existing_mode != mode:
                changed = True
                reasons.append(f"mode->{mode:04o}")
                if not self.dry_run:
                    # ``chmod`` fails if the file is absent, so guard it.
                    if path.exists():
                        os.chmod(path, mode)
        detail = ", ".join(reasons) if reasons else "noop"
        return changed, detail

    def ensure_directory(self, path: Path, *, mode: Optional[int]) -> tuple[bool, str]:  # type: ignore[override]
        changed = False
        reasons: list[str] = []

        if not path.exists():
            changed = True
            reasons.append("created")
            if not self.dry_run:
                path.mkdir(parents=True, exist_ok=True)
        elif not path.is_dir():
            changed = True
            reasons.append("replaced-non-dir")
            if not self.dry_run:
                self.remove_path(path)
                path.mkdir(parents=True, exist_ok=True)

        if mode is not None:
            existing_mode = self._file_mode(path)
            if existing_mode != mode:
                changed = True
                reasons.append(f"mode->{mode:04o}")
                if not self.dry_run and path.exists():
                    os.chmod(path, mode)
        detail = ", ".join(reasons) if reasons else "noop"
        return changed, detail

    def remove_path(self, path: Path) -> bool:
        if not path.exists() and not path.is_symlink():
            return False
        if self.dry_run:
            return True
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
        return True

    def path_exists(self, path: Path) -> bool:
        return path.exists()

    def set_ownership(
        self, path: Path, *, owner: Optional[str], group: Optional[str]
    ) -> tuple[bool, str]:
        uid = self._lookup(owner, lambda name: pwd.getpwnam(name).pw_uid, "user")
        gid = self._lookup(group, lambda name: grp.getgrnam(name).gr_gid, "group")
        try:
            st = path.stat()
        except FileNotFoundError:
            if self.dry_run:
                return (uid is not None or gid is not None), "owner"
            raise
        reasons: list[str] = []
        if uid is not None and st.st_uid != uid:
            reasons.append(f"owner->{owner}")
        if gid is not None and st.st_gid != gid:
            reasons.append(f"group->{group}")
        if not reasons:
            return False, "noop"
        if not self.dry_run:
            os.chown(path, -1 if uid is None else uid, -1 if gid is None else gid)
        return True, ", ".join(reasons)

    @staticmethod
    def _lookup(value: Optional[str], resolver, kind: str) -> Optional[int]:
        if value is None:
            return None
        text = str(value).strip()
        if text.isdigit():
            return int(text)
        try:
            return resolver(text)
        except KeyError:
            raise ValueError(f"unknown {kind} '{text}'") from None

    @staticmethod
    def _file_mode(path: Path) -> Optional[int]:
        try:
            return stat.S_IMODE(path.stat().st_mode)
        except FileNotFoundError:
            return None


class SSHExecutor(Executor):
    """Runs commands through the system ``ssh`` client.

    File primitives are implemented with POSIX shell utilities on the target,
    so the remote side only needs ``sh``, ``cat``, ``stat`` and ``chmod``.
    An ``ssh`` exit status of 255 is a transport failure and surfaces as
    :class:`ConnectivityError`.
    """

    def __init__(self, host: HostConfig, *, dry_run: bool = False, connect_timeout: int = 10):
        super().__init__(host, dry_run=dry_run)
        if not host.address:
            raise ValueError(f"host '{host.name}' has no address for ssh")
        self.connect_timeout = connect_timeout

    def ssh_prefix(self) -> list[str]:
        argv = ["ssh", "-o", "BatchMode=yes", "-o", f"ConnectTimeout={self.connect_timeout}"]
        if self.host.port:
            argv += ["-p", str(self.host.port)]
        target = f"{self.host.user}@{self.host.address}" if self.host.user else str(self.host.address)
        argv += [target, "--"]
        return argv

    def _prepare(
        self,
        command: list[str],
        env: Optional[dict[str, str]],
        cwd: Optional[Union[str, Path]],
    ) -> tuple[list[str], Optional[dict[str, str]], Optional[str]]:
        remote = shlex.join(command)
        if env:
            assignments = " ".join(f"{k}={shlex.quote(v)}" for k, v in env.items())
            remote = f"env {assignments} {remote}"
        if cwd is not None:
            remote = f"cd {shlex.quote(str(cwd))} && {remote}"
        return self.ssh_prefix() + [remote], None, None

    def _check_transport(self, proc: subprocess.CompletedProcess) -> None:
        if proc.returncode == SSH_UNREACHABLE_RC:
            message = (proc.stderr or "").strip() or "ssh transport failure"
            raise ConnectivityError(f"{self.host.name}: {message}")

    def check_connection(self) -> None:
        try:
            self.run(["true"], mutable=False, timeout=self.connect_timeout + 5)
        except subprocess.TimeoutExpired:
            raise ConnectivityError(f"{self.host.name}: connection timed out") from None
        except subprocess.CalledProcessError as exc:
            raise ConnectivityError(f"{self.host.name}: probe failed rc={exc.returncode}") from None

    def read_file(self, path: Path) -> Optional[str]:
        result = self.run(["cat", "--", str(path)], check=False, mutable=False)
        return result.stdout if result.returncode == 0 else None

    def write_file(self, path: Path, *, content: str, mode: Optional[int]) -> tuple[bool, str]:
        current = self.read_file(path)
        changed = False
        reasons: list[str] = []
        if current != content:
            changed = True
            reasons.append("created" if current is None else "content")
            quoted = shlex.quote(str(path))
            parent = shlex.quote(str(path.parent))
            self.run(["sh", "-c", f"mkdir -p {parent} && cat > {quoted}"], input=content)
        if mode is not None and self._file_mode(path) != mode:
            changed = True
            reasons.append(f"mode->{mode:04o}")
            self.run(["chmod", f"{mode:04o}", str(path)])
        return changed, ", ".join(reasons) if reasons else "noop"

    def ensure_directory(self, path: Path, *, mode: Optional[int]) -> tuple[bool, str]:  # type: ignore[override]
        reasons: list[str] = []
        if not self._test("-d", path):
            reasons.append("replaced-non-dir" if self._test("-e", path) else "created")
            self.run(["sh", "-c", f"rm -f {shlex.quote(str(path))} && mkdir -p {shlex.quote(str(path))}"])
        if mode is not None and self._file_mode(path) != mode:
            reasons.append(f"mode->{mode:04o}")
            self.run(["chmod", f"{mode:04o}", str(path)])
        return bool(reasons), ", ".join(reasons) if reasons else "noop"

    def remove_path(self, path: Path) -> bool:
        if not self._test("-e", path) and not self._test("-L", path):
            return False
        self.run(["rm", "-rf", "--", str(path)])
        return True

    def path_exists(self, path: Path) -> bool:
        return self._test("-e", path)

    def set_ownership(
        self, path: Path, *, owner: Optional[str], group: Optional[str]
    ) -> tuple[bool, str]:
        result = self.run(["stat", "-c", "%U %G %u %g", str(path)], check=False, mutable=False)
        fields = result.stdout.split() if result.returncode == 0 else []
        reasons: list[str] = []
        if owner is not None and (len(fields) < 4 or str(owner) not in (fields[0], fields[2])):
            reasons.append(f"owner->{owner}")
        if group is not None and (len(fields) < 4 or str(group) not in (fields[1], fields[3])):
            reasons.append(f"group->{group}")
        if not reasons:
            return False, "noop"
        spec = f"{owner or ''}:{group or ''}" if group is not None else str(owner)
        self.run(["chown", spec, str(path)])
        return True, ", ".join(reasons)

    def _test(self, flag: str, path: Path) -> bool:
        return self.run(["test", flag, str(path)], check=False, mutable=False).returncode == 0

    def _file_mode(self, path: Path) -> Optional[int]:
        result = self.run(["stat", "-c", "%a", str(path)], check=False, mutable=False)
        if result.returncode != 0:
            return None
        try:
            return int(result.stdout.strip(), 8)
        except ValueError:
            return None


def executor_for(host: HostConfig, *, dry_run: bool = False) -> Executor:
    if host.connection == "local":
        return LocalExecutor(host, dry_run=dry_run)
    if host.connection == "ssh":
        return SSHExecutor(host, dry_run=dry_run)
    raise ValueError(f"Unknown connection type '{host.connection}'")


def connection_target(host: HostConfig, variables: Mapping[str, Any]) -> HostConfig:
    """``host`` with address, user and port taken from its merged variables.

    Group or ``all`` level ``port``/``user`` values reach the transport this
    way; inline host keys already win inside ``variables``.
    """
    overrides: dict[str, Any] = {}
    for key in CONNECTION_VARS:
        value = variables.get(key)
        if value in (None, ""):
            continue
        overrides[key] = int(value) if key == "port" else str(value)
    return replace(host, **overrides) if overrides else host
