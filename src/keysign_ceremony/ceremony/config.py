"""Configuration for the signing ceremony.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

Secrets are never configured here; they are looked up in the secret store
at the moment they are needed.
"""

from __future__ import annotations

import re
import shlex
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_KEY_ID_RE = re.compile(r"^[0-9A-F]{8,40}$")


def _split_csv(value: str) -> list[str]:
    parts = [p.strip() for p in value.split(",")]
    return [p for p in parts if p]


def normalize_key_id(value: str) -> str:
    """Normalize a key identifier to upper-case hex without spaces or ``0x``."""

    key = "".join(value.split()).upper()
    if key.startswith("0X"):
        key = key[2:]
    return key


class CeremonySettings(BaseSettings):
    """Settings for a signing ceremony.

    Environment variables:
    - CEREMONY_SIGNING_IDENTITIES  (comma-separated identity labels)
    - CEREMONY_TARGET_KEY          (key to sign; may be given on the command line)
    - CEREMONY_RAMDISK_NAME        (optional)
    - LOG_LEVEL                    (optional)

    Notes:
        Tests can override the env file via `CeremonySettings(_env_file=path)`.
    """

    signing_identities: str = Field(
        default="",
        validation_alias="CEREMONY_SIGNING_IDENTITIES",
        description="Comma-separated labels of the identities that sign the target key",
    )
    target_key: str = Field(
        default="",
        validation_alias="CEREMONY_TARGET_KEY",
        description="Fingerprint (or shorter key ID) of the key to sign",
    )

    ramdisk_name: str = Field(
        default="gpg-ceremony",
        validation_alias="CEREMONY_RAMDISK_NAME",
        description="Name of the ephemeral volume holding the ceremony keyring",
    )
    ramdisk_binary: str = Field(
        default="ramdisk",
        validation_alias="CEREMONY_RAMDISK_BINARY",
        description="Volume utility supporting `path`, `create` and `destroy`",
    )
    gpg_binary: str = Field(
        default="gpg",
        validation_alias="CEREMONY_GPG_BINARY",
    )
    gpgconf_binary: str = Field(
        default="gpgconf",
        validation_alias="CEREMONY_GPGCONF_BINARY",
        description="Used to stop gpg-agent and dirmngr before the volume is destroyed",
    )
    fetch_password_binary: str = Field(
        default="fetch-password",
        validation_alias="CEREMONY_FETCH_PASSWORD_BINARY",
    )
    keyserver_command: str = Field(
        default="ls-servers --silent -NSat keyserver",
        validation_alias="CEREMONY_KEYSERVER_COMMAND",
        description="Command printing one keyserver endpoint per line",
    )
    confirmation_phrase: str = Field(
        default="sign",
        min_length=1,
        validation_alias="CEREMONY_CONFIRMATION_PHRASE",
        description="Literal string the operator must type to approve signing",
    )
    pinentry_loopback: bool = Field(
        default=True,
        validation_alias="CEREMONY_PINENTRY_LOOPBACK",
        description="Pass `--pinentry-mode loopback` so GnuPG 2.x reads the passphrase fd",
    )
    version_manager_roots: str = Field(
        default="~/.rbenv/versions,~/.pyenv/versions",
        validation_alias="CEREMONY_VERSION_MANAGER_ROOTS",
        description="PATH prefixes stripped before running the secret and discovery tools",
    )
    journal_path: Path = Field(
        default=Path("ceremony/journal.json"),
        validation_alias="CEREMONY_JOURNAL_PATH",
        description="Where the outcome of each ceremony run is recorded",
    )

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("target_key")
    @classmethod
    def _validate_target_key(cls, value: str) -> str:
        key = normalize_key_id(value)
        if key and not _KEY_ID_RE.fullmatch(key):
            raise ValueError("target key must be 8 to 40 hexadecimal digits")
        return key

    @field_validator("signing_identities")
    @classmethod
    def _validate_identities(cls, value: str) -> str:
        for label in _split_csv(value):
            if "/" in label:
                raise ValueError(f"identity label must not contain '/': {label!r}")
        return value

    @model_validator(mode="after")
    def _require_identities(self) -> CeremonySettings:
        if not self.identities:
            raise ValueError("CEREMONY_SIGNING_IDENTITIES is required")
        return self

    @property
    def identities(self) -> list[str]:
        return _split_csv(self.signing_identities)

    @property
    def keyserver_argv(self) -> list[str]:
        return shlex.split(self.keyserver_command)

    @property
    def version_manager_paths(self) -> list[Path]:
        return [Path(p).expanduser() for p in _split_csv(self.version_manager_roots)]
