from pathlib import Path

import pytest

from stagehand_automation.config import DEFAULT_INVENTORY, StagehandConfig, load_config
from stagehand_automation.errors import ParseError


def test_load_config_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "missing.conf")
    assert isinstance(config, StagehandConfig)
    assert config.inventory == DEFAULT_INVENTORY
    assert config.forks == 5
    assert config.retries == 3
    assert config.fact_cache is None


def test_load_config_overrides(tmp_path: Path) -> None:
    cfg_path = tmp_path / "main.conf"
    cfg_path.write_text(
        """
        [defaults]
        inventory = "/opt/stagehand/inventory.toml"
        roles_path = "/opt/stagehand/roles:/usr/share/stagehand/roles"
        forks = 20
        fact_cache = "/var/cache/stagehand/facts.json"
        fact_ttl = 600
        retries = 1
        retry_delay = 2
        vault_password_file = "/etc/stagehand/vault-pass"
        aws_region = "ap-southeast-2"
        aws_profile = "myprofile"
        """
    )

    config = load_config(cfg_path)
    assert config.inventory == Path("/opt/stagehand/inventory.toml")
    assert config.roles_path == [Path("/opt/stagehand/roles"), Path("/usr/share/stagehand/roles")]
    assert config.forks == 20
    assert config.fact_cache == Path("/var/cache/stagehand/facts.json")
    assert config.fact_ttl == 600
    assert config.retries == 1
    assert config.retry_delay == 2.0
    assert config.vault_password_file == Path("/etc/stagehand/vault-pass")
    assert config.aws_region == "ap-southeast-2"
    assert config.aws_profile == "myprofile"


def test_roles_path_accepts_list(tmp_path: Path) -> None:
    cfg_path = tmp_path / "main.conf"
    cfg_path.write_text('[defaults]\nroles_path = ["roles", "shared/roles"]\n')

    assert load_config(cfg_path).roles_path == [Path("roles"), Path("shared/roles")]


@pytest.mark.parametrize(
    "body",
    [
        "[defaults]\nforks = 0\n",
        '[defaults]\nretries = "many"\n',
        "defaults = 3\n",
        "[defaults\n",
    ],
)
def test_invalid_config_raises_parse_error(tmp_path: Path, body: str) -> None:
    cfg_path = tmp_path / "main.conf"
    cfg_path.write_text(body)

    with pytest.raises(ParseError):
        load_config(cfg_path)
