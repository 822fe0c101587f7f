import base64
import json

import pytest

from stagehand_automation.errors import OperationError
from stagehand_automation.secrets import SecretResolver


class FakeSecretsManager:
    def __init__(self, secrets):
        self.secrets = secrets
        self.calls = []

    def get_secret_value(self, SecretId, VersionStage):
        self.calls.append((SecretId, VersionStage))
        return self.secrets[SecretId]


def test_plain_secret_resolves_whole_string() -> None:
    client = FakeSecretsManager({"plain": {"SecretString": "mypassword"}})
    resolver = SecretResolver(client_factory=lambda: client)

    values = resolver.resolve({"password": {"aws_secret": "plain"}, "port": 5432})

    assert values == {"password": "mypassword", "port": 5432}
    assert client.calls == [("plain", "AWSCURRENT")]


def test_json_secret_selects_dotted_key_and_caches() -> None:
    payload = json.dumps({"db": {"user": "app", "password": "hunter2"}})
    client = FakeSecretsManager({"prod/db": {"SecretString": payload}})
    resolver = SecretResolver(client_factory=lambda: client)

    values = resolver.resolve(
        {
            "db": {
                "user": {"aws_secret": "prod/db", "key": "db.user"},
                "password": {"aws_secret": "prod/db", "key": "db.password"},
            }
        }
    )

    assert values == {"db": {"user": "app", "password": "hunter2"}}
    assert len(client.calls) == 1


def test_binary_secret_is_decoded() -> None:
    encoded = base64.b64encode(b"binary-token")
    client = FakeSecretsManager({"bin": {"SecretBinary": encoded}})
    resolver = SecretResolver(client_factory=lambda: client)

    assert resolver.lookup({"aws_secret": "bin", "stage": "AWSPREVIOUS"}) == "binary-token"
    assert client.calls == [("bin", "AWSPREVIOUS")]


def test_missing_key_raises() -> None:
    client = FakeSecretsManager({"prod/db": {"SecretString": json.dumps({"user": "app"})}})
    resolver = SecretResolver(client_factory=lambda: client)

    with pytest.raises(OperationError, match="no key 'password'"):
        resolver.lookup({"aws_secret": "prod/db", "key": "password"})


def test_default_client_comes_from_boto3(monkeypatch: pytest.MonkeyPatch) -> None:
    client = FakeSecretsManager({"plain": {"SecretString": "x"}})

    class FakeBoto3:
        def client(self, name):
            assert name == "secretsmanager"
            return client

    monkeypatch.setattr("stagehand_automation.secrets.boto3", FakeBoto3())

    assert SecretResolver().lookup({"aws_secret": "plain"}) == "x"
