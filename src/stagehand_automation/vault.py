"""Encrypted-at-rest variable values.

A vaulted value is a single ASCII token::

    $STAGEHAND_VAULT;1;<iterations>;<base64(salt | iv | ciphertext+tag)>

The plaintext is the JSON encoding of the original value, so mappings and
lists survive the round trip. Key derivation is PBKDF2-SHA256 and the cipher
is AES-256-GCM.
"""

from __future__ import annotations

import base64
import json
import logging
import os
from pathlib import Path
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import VaultError

logger = logging.getLogger(__name__)

HEADER = "$STAGEHAND_VAULT"
VERSION = "1"
KDF_ITERATIONS = 480_000
SALT_LEN = 16
IV_LEN = 12


def _derive_key(passphrase: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def is_vaulted(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(HEADER + ";")


class Vault:
    """Encrypts and decrypts variable values with a single passphrase."""

    def __init__(self, passphrase: str, *, iterations: int = KDF_ITERATIONS):
        if not passphrase:
            raise VaultError("vault passphrase must not be empty")
        self.passphrase = passphrase
        self.iterations = iterations

    @classmethod
    def from_file(cls, path: Path, **kwargs: Any) -> "Vault":
        try:
            secret = Path(path).read_text().strip()
        except OSError as exc:
            raise VaultError(f"cannot read vault password file {path}: {exc}") from exc
        return cls(secret, **kwargs)

    def encrypt(self, value: Any) -> str:
        plaintext = json.dumps(value).encode("utf-8")
        salt = os.urandom(SALT_LEN)
        iv = os.urandom(IV_LEN)
        key = _derive_key(self.passphrase, salt, self.iterations)
        ciphertext = AESGCM(key).encrypt(iv, plaintext, None)
        payload = base64.b64encode(salt + iv + ciphertext).decode("ascii")
        return ";".join([HEADER, VERSION, str(self.iterations), payload])

    def decrypt(self, token: str) -> Any:
        try:
            header, version, iterations, payload = token.strip().split(";", 3)
        except ValueError:
            raise VaultError("malformed vault token") from None
        if header != HEADER or version != VERSION:
            raise VaultError(f"unsupported vault format {header};{version}")
        try:
            raw = base64.b64decode(payload, validate=True)
            rounds = int(iterations)
        except ValueError:
            raise VaultError("malformed vault token") from None
        salt, iv, ciphertext = raw[:SALT_LEN], raw[SALT_LEN:SALT_LEN + IV_LEN], raw[SALT_LEN + IV_LEN:]
        key = _derive_key(self.passphrase, salt, rounds)
        try:
            plaintext = AESGCM(key).decrypt(iv, ciphertext, None)
        except InvalidTag:
            raise VaultError("wrong vault passphrase or corrupted value") from None
        return json.loads(plaintext.decode("utf-8"))

    def decrypt_tree(self, value: Any) -> Any:
        """Return ``value`` with every vaulted leaf replaced by its plaintext."""
        if isinstance(value, dict):
            if set(value) == {"vault"} and is_vaulted(value["vault"]):
                return self.decrypt(value["vault"])
            return {k: self.decrypt_tree(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.decrypt_tree(v) for v in value]
        if is_vaulted(value):
            return self.decrypt(value)
        return value


def decrypt_tree(value: Any, vault: Optional[Vault], *, source: str = "") -> Any:
    """Decrypt vaulted values, failing loudly when no passphrase was supplied."""
    if vault is None:
        if _contains_vaulted(value):
            raise VaultError(f"{source or 'variables'} contain vaulted values but no vault password was given")
        return value
    logger.debug("decrypting vaulted values source=%s", source)
    return vault.decrypt_tree(value)


def _contains_vaulted(value: Any) -> bool:
    if isinstance(value, dict):
        return any(_contains_vaulted(v) for v in value.values())
    if isinstance(value, list):
        return any(_contains_vaulted(v) for v in value)
    return is_vaulted(value)
