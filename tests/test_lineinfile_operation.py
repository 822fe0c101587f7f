from pathlib import Path

from stagehand_automation.executors import LocalExecutor
from stagehand_automation.operations.lineinfile import LineInFileOperation
from stagehand_automation.types import HostConfig


def apply(spec: dict, dry_run: bool = False):
    return LineInFileOperation(spec).apply(HostConfig("local"), LocalExecutor(HostConfig("local"), dry_run=dry_run))


def test_regexp_replaces_last_match(tmp_path: Path) -> None:
    config = tmp_path / "sshd_config"
    config.write_text("Port 22\n#PermitRootLogin yes\nPermitRootLogin yes\n")

    result = apply({"path": str(config), "regexp": "^PermitRootLogin", "line": "PermitRootLogin no"})

    assert result.changed is True
    assert config.read_text() == "Port 22\n#PermitRootLogin yes\nPermitRootLogin no\n"
    assert apply({"path": str(config), "regexp": "^PermitRootLogin", "line": "PermitRootLogin no"}).changed is False


def test_missing_line_is_appended(tmp_path: Path) -> None:
    fstab = tmp_path / "fstab"
    fstab.write_text("proc /proc proc defaults 0 0\n")

    apply({"path": str(fstab), "line": "tmpfs /tmp tmpfs defaults 0 0"})

    assert fstab.read_text().splitlines()[-1] == "tmpfs /tmp tmpfs defaults 0 0"


def test_absent_removes_matching_lines(tmp_path: Path) -> None:
    hosts = tmp_path / "hosts"
    hosts.write_text("127.0.0.1 localhost\n10.0.0.9 old-db\n10.0.0.9 old-db-alias\n")

    result = apply({"path": str(hosts), "regexp": "^10\\.0\\.0\\.9", "state": "absent"})

    assert result.changed is True
    assert hosts.read_text() == "127.0.0.1 localhost\n"


def test_missing_file_fails_without_create(tmp_path: Path) -> None:
    result = apply({"path": str(tmp_path / "nope"), "line": "x"})

    assert result.failed is True


def test_create_makes_new_file(tmp_path: Path) -> None:
    target = tmp_path / "limits.conf"

    result = apply({"path": str(target), "line": "* soft nofile 4096", "create": True})

    assert result.changed is True
    assert target.read_text() == "* soft nofile 4096\n"


def test_dry_run_leaves_file_untouched(tmp_path: Path) -> None:
    config = tmp_path / "app.ini"
    config.write_text("debug = true\n")

    result = apply({"path": str(config), "regexp": "^debug", "line": "debug = false"}, dry_run=True)

    assert result.changed is True
    assert config.read_text() == "debug = true\n"
