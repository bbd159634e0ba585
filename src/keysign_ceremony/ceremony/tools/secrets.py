"""Secret-store lookups for signing identities.

Secrets are addressed as ``gnupg/<identity-label>/<field>``.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from enum import Enum

from .process import ProcessRunner

logger = logging.getLogger(__name__)


class SecretField(str, Enum):
    FINGERPRINT = "fingerprint"
    PUBKEY = "pubkey"
    PRIVKEY = "privkey"
    PASSPHRASE = "passphrase"


def secret_path(identity: str, field: SecretField) -> str:
    if not identity or "/" in identity:
        raise ValueError(f"Invalid identity label: {identity!r}")
    return f"gnupg/{identity}/{field.value}"


class SecretStore:
    """Wrapper around the ``fetch-password`` lookup tool."""

    def __init__(
        self,
        runner: ProcessRunner,
        *,
        binary: str = "fetch-password",
        env: Mapping[str, str] | None = None,
    ) -> None:
        self._runner = runner
        self._binary = binary
        self._env = env

    def fetch(self, identity: str, field: SecretField) -> bytes:
        path = secret_path(identity, field)
        # Never log the payload; the path alone is enough for an audit trail.
        logger.debug("Fetching secret", extra={"secret_path": path})
        return self._runner.run([self._binary, path], env=self._env).stdout

    def fingerprint(self, identity: str) -> str:
        raw = self.fetch(identity, SecretField.FINGERPRINT)
        return "".join(raw.decode("ascii").split()).upper()

    def public_key(self, identity: str) -> bytes:
        return self.fetch(identity, SecretField.PUBKEY)

    def private_key(self, identity: str) -> bytes:
        return self.fetch(identity, SecretField.PRIVKEY)

    def passphrase(self, identity: str) -> bytes:
        return self.fetch(identity, SecretField.PASSPHRASE).rstrip(b"\r\n")
