from __future__ import annotations

import base64
import json
import logging
import threading
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import OperationError

logger = logging.getLogger(__name__)

SECRET_MARKER = "aws_secret"


def is_secret_reference(value: Any) -> bool:
    return isinstance(value, dict) and SECRET_MARKER in value


class SecretResolver:
    """Swap ``{aws_secret = "name", key = "field"}`` references for their values.

    Lookups go through AWS Secrets Manager. ``key`` may be a dotted path into
    a JSON secret; ``stage`` selects a version stage (``AWSCURRENT`` when
    omitted). Fetched payloads are cached for the lifetime of the resolver,
    so a secret referenced by many hosts is read once per run.
    """

    def __init__(self, client_factory=None):
        self._client_factory = client_factory or (lambda: boto3.client("secretsmanager"))
        self._client = None
        self._payloads: dict[tuple[str, str], str] = {}
        self._lock = threading.Lock()

    def resolve(self, values: dict[str, Any]) -> dict[str, Any]:
        return {name: self._walk(value) for name, value in values.items()}

    def _walk(self, value: Any) -> Any:
        if is_secret_reference(value):
            return self.lookup(value)
        if isinstance(value, dict):
            return {k: self._walk(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._walk(item) for item in value]
        return value

    def lookup(self, reference: dict[str, Any]) -> Any:
        name = str(reference[SECRET_MARKER])
        stage = str(reference.get("stage", "AWSCURRENT"))
        payload = self._payload(name, stage)
        key = reference.get("key")
        if key is None:
            return payload
        try:
            document = json.loads(payload)
        except json.JSONDecodeError:
            raise OperationError(f"secret {name} is not JSON; cannot select key '{key}'") from None
        for part in str(key).split("."):
            if not isinstance(document, dict) or part not in document:
                raise OperationError(f"secret {name} has no key '{key}'")
            document = document[part]
        return document

    def _payload(self, name: str, stage: str) -> str:
        with self._lock:
            cached = self._payloads.get((name, stage))
            if cached is not None:
                return cached
            if self._client is None:
                self._client = self._client_factory()
            client = self._client

        logger.debug("fetching secret name=%s stage=%s", name, stage)
        try:
            response = client.get_secret_value(SecretId=name, VersionStage=stage)
        except (BotoCoreError, ClientError) as exc:
            raise OperationError(f"cannot read secret {name}: {exc}") from exc
        payload: Optional[str] = response.get("SecretString")
        if payload is None:
            binary = response.get("SecretBinary")
            if binary is None:
                raise OperationError(f"secret {name} has neither SecretString nor SecretBinary")
            payload = base64.b64decode(binary).decode()

        with self._lock:
            self._payloads[(name, stage)] = payload
        return payload
