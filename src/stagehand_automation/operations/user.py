from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from .base import Operation, OperationKind, coerce_bool, parse_state
from ..executors import Executor
from ..types import ActionResult, HostConfig

logger = logging.getLogger(__name__)


@dataclass
class UserInfo:
    name: str
    uid: int
    gid: int
    home: str
    shell: str


@dataclass
class GroupInfo:
    name: str
    gid: int
    members: list[str]


class AccountDatabase:
    """Reads and edits passwd/group entries on the target via getent and shadow-utils."""

    def get_user(self, executor: Executor, key: str) -> Optional[UserInfo]:
        result = executor.run(["getent", "passwd", key], check=False, mutable=False)
        if result.returncode != 0 or not result.stdout.strip():
            return None
        parts = result.stdout.strip().splitlines()[0].split(":")
        if len(parts) < 7:
            return None
        return UserInfo(name=parts[0], uid=int(parts[2]), gid=int(parts[3]), home=parts[5], shell=parts[6])

    def get_group(self, executor: Executor, key: str) -> Optional[GroupInfo]:
        result = executor.run(["getent", "group", key], check=False, mutable=False)
        if result.returncode != 0 or not result.stdout.strip():
            return None
        parts = result.stdout.strip().splitlines()[0].split(":")
        if len(parts) < 4:
            return None
        members = [m for m in parts[3].split(",") if m]
        return GroupInfo(name=parts[0], gid=int(parts[2]), members=members)

    def supplementary_groups(self, executor: Executor, name: str) -> list[str]:
        result = executor.run(["id", "-nG", name], check=False, mutable=False)
        if result.returncode != 0:
            return []
        return result.stdout.split()

    def is_locked(self, executor: Executor, name: str) -> bool:
        result = executor.run(["passwd", "-S", name], check=False, mutable=False)
        if result.returncode != 0:
            return False
        parts = result.stdout.strip().split()
        return len(parts) >= 2 and parts[1].upper().startswith("L")

    def execute(self, executor: Executor, command: list[str]) -> None:
        logger.debug("account command=%s", " ".join(command))
        executor.run(command)


class UserOperation(Operation):
    """Ensure a local account exists with the requested UID, groups and shell.

    When the account exists with a different UID (or primary GID) it is
    renumbered in place with ``usermod``; a UID already owned by another
    account is reported as a failure instead of being stolen.
    """

    kind = OperationKind.USER

    def __init__(self, spec, context=None):
        super().__init__(spec, context)
        raw_name = spec.get("name")
        if not raw_name:
            raise ValueError("user operation requires a name")
        self.name = str(raw_name)
        self.state = parse_state(spec, "user", {"present", "absent"})
        self.uid = self._optional_int(spec.get("uid"), "uid")
        self.group = None if spec.get("group") is None else str(spec["group"])
        raw_groups = spec.get("groups")
        if isinstance(raw_groups, str):
            raw_groups = [g for g in raw_groups.split(",") if g]
        self.groups: Optional[list[str]] = None if raw_groups is None else [str(g) for g in raw_groups]
        self.append = bool(coerce_bool(spec.get("append", True)))
        self.shell = spec.get("shell")
        self.home = spec.get("home")
        self.comment = spec.get("comment")
        self.system = bool(coerce_bool(spec.get("system", False)))
        create_home = coerce_bool(spec.get("create_home"))
        self.create_home = True if create_home is None else create_home
        self.remove_home = bool(coerce_bool(spec.get("remove_home", False)))
        self.locked = coerce_bool(spec.get("locked"))
        self.db = AccountDatabase()

    @staticmethod
    def _optional_int(value: Any, field_name: str) -> Optional[int]:
        if value is None or value == "":
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValueError(f"user {field_name} must be an integer") from None

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        info = self.db.get_user(executor, self.name)

        if self.state == "absent":
            if not info:
                return self.result(host, False, "noop")
            command = ["userdel"]
            if self.remove_home:
                command.append("--remove")
            self.db.execute(executor, [*command, self.name])
            return self.result(host, True, "removed")

        changes: list[str] = []
        if self.uid is not None:
            owner = self.db.get_user(executor, str(self.uid))
            if owner is not None and owner.name != self.name:
                detail = f"uid {self.uid} already belongs to {owner.name}"
                return self.result(host, False, detail, failed=True)

        if not info:
            self.db.execute(executor, self._useradd_command())
            changes.append("created")
        else:
            changes.extend(self._reconcile(executor, info))

        if self.locked is not None:
            locked = self.db.is_locked(executor, self.name) if info else False
            if self.locked and not locked:
                self.db.execute(executor, ["passwd", "-l", self.name])
                changes.append("locked")
            elif not self.locked and locked:
                self.db.execute(executor, ["passwd", "-u", self.name])
                changes.append("unlocked")

        return self.result(host, bool(changes), ", ".join(changes) if changes else "noop")

    def _useradd_command(self) -> list[str]:
        command = ["useradd"]
        if self.uid is not None:
            command += ["--uid", str(self.uid)]
        if self.group:
            command += ["--gid", self.group]
        if self.groups:
            command += ["--groups", ",".join(self.groups)]
        if self.shell:
            command += ["--shell", str(self.shell)]
        if self.home:
            command += ["--home-dir", str(self.home)]
        if self.comment:
            command += ["--comment", str(self.comment)]
        if self.system:
            command.append("--system")
        command.append("--create-home" if self.create_home else "--no-create-home")
        command.append(self.name)
        return command

    def _reconcile(self, executor: Executor, info: UserInfo) -> list[str]:
        args: list[str] = []
        changes: list[str] = []
        if self.uid is not None and info.uid != self.uid:
            logger.debug("user=%s uid mismatch current=%s desired=%s", self.name, info.uid, self.uid)
            args += ["--uid", str(self.uid)]
            changes.append(f"uid {info.uid}->{self.uid}")
        if self.group is not None:
            primary = self.db.get_group(executor, self.group)
            if primary is None and not executor.dry_run:
                raise ValueError(f"primary group '{self.group}' does not exist")
            if primary is None or primary.gid != info.gid:
                args += ["--gid", self.group]
                changes.append(f"group->{self.group}")
        if self.shell and info.shell != self.shell:
            args += ["--shell", str(self.shell)]
            changes.append("shell")
        if self.home and info.home != self.home:
            args += ["--home", str(self.home)]
            changes.append("home")
        if self.groups is not None:
            current = set(self.db.supplementary_groups(executor, self.name))
            wanted = set(self.groups)
            missing = wanted - current
            extra = current - wanted - {self.group or self._primary_group_name(executor, info)}
            if missing or (extra and not self.append):
                if self.append:
                    args += ["--append", "--groups", ",".join(sorted(missing))]
                else:
                    args += ["--groups", ",".join(self.groups)]
                changes.append("groups")
        if args:
            self.db.execute(executor, ["usermod", *args, self.name])
        return changes

    def _primary_group_name(self, executor: Executor, info: UserInfo) -> str:
        group = self.db.get_group(executor, str(info.gid))
        return group.name if group is not None else self.name


class GroupOperation(Operation):
    """Ensure a local group exists with the requested GID.

    A GID mismatch is corrected with ``groupmod -g``; a GID that another
    group already owns fails the operation.
    """

    kind = OperationKind.GROUP

    def __init__(self, spec, context=None):
        super().__init__(spec, context)
        raw_name = spec.get("name")
        if not raw_name:
            raise ValueError("group operation requires a name")
        self.name = str(raw_name)
        self.state = parse_state(spec, "group", {"present", "absent"})
        self.gid = UserOperation._optional_int(spec.get("gid"), "gid")
        self.system = bool(coerce_bool(spec.get("system", False)))
        self.db = AccountDatabase()

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        info = self.db.get_group(executor, self.name)
        if self.state == "absent":
            if not info:
                return self.result(host, False, "noop")
            self.db.execute(executor, ["groupdel", self.name])
            return self.result(host, True, "removed")

        if self.gid is not None:
            owner = self.db.get_group(executor, str(self.gid))
            if owner is not None and owner.name != self.name:
                return self.result(host, False, f"gid {self.gid} already belongs to {owner.name}", failed=True)

        if not info:
            command = ["groupadd"]
            if self.gid is not None:
                command += ["--gid", str(self.gid)]
            if self.system:
                command.append("--system")
            self.db.execute(executor, [*command, self.name])
            return self.result(host, True, "created")

        if self.gid is not None and info.gid != self.gid:
            logger.debug("group=%s gid mismatch current=%s desired=%s", self.name, info.gid, self.gid)
            self.db.execute(executor, ["groupmod", "--gid", str(self.gid), self.name])
            return self.result(host, True, f"gid {info.gid}->{self.gid}")
        return self.result(host, False, "noop")
