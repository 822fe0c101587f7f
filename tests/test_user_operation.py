from stagehand_automation.executors import CommandResult
from stagehand_automation.operations.user import GroupOperation, UserOperation
from stagehand_automation.types import HostConfig


QUERY_COMMANDS = {"getent", "id", "passwd"}


class AccountsExecutor:
    """Serves getent/id lookups from fixed tables and records account edits."""

    def __init__(self, passwd=(), groups=(), memberships=None, dry_run: bool = False):
        self.passwd = list(passwd)
        self.groups = list(groups)
        self.memberships = memberships or {}
        self.dry_run = dry_run
        self.edits: list[list[str]] = []

    def run(self, command, *, check=True, mutable=True, **kwargs):
        command = list(command)
        if command[0] == "getent":
            table = self.passwd if command[1] == "passwd" else self.groups
            key = command[2]
            for line in table:
                fields = line.split(":")
                if key in (fields[0], fields[2]):
                    return CommandResult(command, line + "\n", "", 0)
            return CommandResult(command, "", "", 2)
        if command[0] == "id":
            groups = self.memberships.get(command[-1])
            if groups is None:
                return CommandResult(command, "", "no such user", 1)
            return CommandResult(command, " ".join(groups), "", 0)
        if command[0] in QUERY_COMMANDS:
            return CommandResult(command, "", "", 1)
        self.edits.append(command)
        return CommandResult(command, "", "", 0)


def test_user_created_with_uid() -> None:
    executor = AccountsExecutor()
    op = UserOperation({"name": "deploy", "uid": 1500, "shell": "/bin/bash", "groups": ["docker"]})

    result = op.apply(HostConfig("local"), executor)

    assert result.changed is True
    assert result.details == "created"
    assert executor.edits == [
        ["useradd", "--uid", "1500", "--groups", "docker", "--shell", "/bin/bash", "--create-home", "deploy"]
    ]


def test_user_uid_mismatch_is_renumbered() -> None:
    executor = AccountsExecutor(
        passwd=["deploy:x:1001:1001::/home/deploy:/bin/bash"],
        memberships={"deploy": ["deploy"]},
    )
    op = UserOperation({"name": "deploy", "uid": 1500})

    result = op.apply(HostConfig("local"), executor)

    assert result.changed is True
    assert result.details == "uid 1001->1500"
    assert executor.edits == [["usermod", "--uid", "1500", "deploy"]]


def test_user_uid_owned_by_someone_else_fails() -> None:
    executor = AccountsExecutor(
        passwd=[
            "deploy:x:1001:1001::/home/deploy:/bin/bash",
            "backup:x:1500:1500::/var/backups:/usr/sbin/nologin",
        ]
    )
    op = UserOperation({"name": "deploy", "uid": 1500})

    result = op.apply(HostConfig("local"), executor)

    assert result.failed is True
    assert result.details == "uid 1500 already belongs to backup"
    assert executor.edits == []


def test_user_supplementary_groups_appended() -> None:
    executor = AccountsExecutor(
        passwd=["deploy:x:1001:1001::/home/deploy:/bin/bash"],
        memberships={"deploy": ["deploy", "docker", "audio"]},
    )
    op = UserOperation({"name": "deploy", "groups": ["docker", "wheel"]})

    result = op.apply(HostConfig("local"), executor)

    assert result.details == "groups"
    assert executor.edits == [["usermod", "--append", "--groups", "wheel", "deploy"]]


def test_user_exclusive_groups_replace_membership() -> None:
    executor = AccountsExecutor(
        passwd=["deploy:x:1001:1001::/home/deploy:/bin/bash"],
        memberships={"deploy": ["deploy", "docker", "audio"]},
    )
    op = UserOperation({"name": "deploy", "groups": ["docker"], "append": False})

    op.apply(HostConfig("local"), executor)

    assert executor.edits == [["usermod", "--groups", "docker", "deploy"]]


def test_user_matching_state_is_noop() -> None:
    executor = AccountsExecutor(
        passwd=["deploy:x:1500:1500::/home/deploy:/bin/bash"],
        memberships={"deploy": ["deploy", "docker"]},
    )
    op = UserOperation({"name": "deploy", "uid": 1500, "shell": "/bin/bash", "groups": ["docker"]})

    result = op.apply(HostConfig("local"), executor)

    assert result.changed is False
    assert executor.edits == []


def test_user_absent_removes_account() -> None:
    executor = AccountsExecutor(passwd=["old:x:1200:1200::/home/old:/bin/sh"])
    op = UserOperation({"name": "old", "state": "absent", "remove_home": True})

    result = op.apply(HostConfig("local"), executor)

    assert result.details == "removed"
    assert executor.edits == [["userdel", "--remove", "old"]]


def test_group_gid_mismatch_is_corrected() -> None:
    executor = AccountsExecutor(groups=["docker:x:998:deploy"])
    op = GroupOperation({"name": "docker", "gid": 2000})

    result = op.apply(HostConfig("local"), executor)

    assert result.details == "gid 998->2000"
    assert executor.edits == [["groupmod", "--gid", "2000", "docker"]]


def test_group_gid_conflict_fails() -> None:
    executor = AccountsExecutor(groups=["docker:x:998:", "render:x:2000:"])
    op = GroupOperation({"name": "docker", "gid": 2000})

    result = op.apply(HostConfig("local"), executor)

    assert result.failed is True
    assert executor.edits == []


def test_group_created_when_missing() -> None:
    executor = AccountsExecutor()
    op = GroupOperation({"name": "ops", "gid": 3000, "system": True})

    result = op.apply(HostConfig("local"), executor)

    assert result.details == "created"
    assert executor.edits == [["groupadd", "--gid", "3000", "--system", "ops"]]


def test_user_exclusive_groups_ignore_differently_named_primary_group() -> None:
    executor = AccountsExecutor(
        passwd=["deploy:x:1001:100::/home/deploy:/bin/bash"],
        groups=["users:x:100:", "docker:x:998:deploy"],
        memberships={"deploy": ["users", "docker"]},
    )
    op = UserOperation({"name": "deploy", "groups": ["docker"], "append": False})

    result = op.apply(HostConfig("local"), executor)

    assert result.changed is False
    assert executor.edits == []
