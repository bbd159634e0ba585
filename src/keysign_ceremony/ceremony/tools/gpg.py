"""An isolated gpg keyring living inside the ephemeral volume.

Every invocation carries the same isolation flags: no options file, no
default keyring, and home directory, public keyring, secret keyring and trust
database all pinned inside the volume, which is also the working directory.
No ambient system keyring is ever read or written.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from keysign_ceremony.ceremony.workflow.errors import NonZeroExit

from .process import ProcessResult, ProcessRunner, SecretHandoff

logger = logging.getLogger(__name__)

FULL_FINGERPRINT_RE = re.compile(r"^[0-9A-F]{40}$")


def is_full_fingerprint(key_id: str) -> bool:
    return FULL_FINGERPRINT_RE.fullmatch(key_id.upper()) is not None


def parse_primary_fingerprints(colon_output: bytes) -> list[str]:
    """Extract primary-key fingerprints from ``--with-colons`` output.

    ``fpr`` records follow the ``pub`` or ``sub`` record they belong to; only
    those following a ``pub`` record are primary-key fingerprints.
    """

    fingerprints: list[str] = []
    previous = ""
    for line in colon_output.decode("utf-8", errors="replace").splitlines():
        fields = line.split(":")
        record = fields[0]
        if record == "fpr" and previous == "pub" and len(fields) > 9:
            fingerprints.append(fields[9].upper())
        previous = record
    return fingerprints


class IsolatedKeyring:
    def __init__(
        self,
        runner: ProcessRunner,
        volume_path: Path,
        *,
        binary: str = "gpg",
        gpgconf_binary: str = "gpgconf",
        pinentry_loopback: bool = True,
    ) -> None:
        self._runner = runner
        self.volume_path = volume_path
        self._binary = binary
        self._gpgconf_binary = gpgconf_binary
        self._pinentry_loopback = pinentry_loopback

    def command(self, *args: str) -> list[str]:
        vol = self.volume_path
        return [
            self._binary,
            "--no-options",
            "--no-default-keyring",
            "--homedir",
            str(vol),
            "--keyring",
            str(vol / "pubring.gpg"),
            "--secret-keyring",
            str(vol / "secring.gpg"),
            "--trustdb-name",
            str(vol / "trustdb.gpg"),
            *args,
        ]

    def _run(
        self, *args: str, input: bytes | None = None, handoff: SecretHandoff | None = None
    ) -> ProcessResult:
        return self._runner.run(
            self.command(*args), cwd=self.volume_path, input=input, handoff=handoff
        )

    def has_public_key(self, key_id: str) -> bool:
        try:
            self._run("--list-keys", key_id)
        except NonZeroExit:
            return False
        return True

    def has_secret_key(self, key_id: str) -> bool:
        try:
            self._run("--list-secret-keys", key_id)
        except NonZeroExit:
            return False
        return True

    def import_keys(self, material: bytes) -> None:
        self._run("--batch", "--import", input=material)

    def receive_key(self, keyserver: str, key_id: str) -> None:
        self._run("--keyserver", keyserver, "--recv-keys", key_id)

    def send_key(self, keyserver: str, key_id: str) -> None:
        self._run("--keyserver", keyserver, "--send-keys", key_id)

    def fingerprint_text(self, key_id: str) -> str:
        return self._run("--fingerprint", key_id).stdout.decode("utf-8", errors="replace")

    def primary_fingerprints(self, key_id: str) -> list[str]:
        result = self._run("--with-colons", "--fingerprint", key_id)
        return parse_primary_fingerprints(result.stdout)

    def sign_key(self, *, signer: str, target: str, passphrase: bytes) -> None:
        """Certify ``target`` with ``signer``, passing the passphrase over a private pipe."""

        with SecretHandoff(passphrase) as handoff:
            args = ["--default-key", signer, "--passphrase-fd", str(handoff.read_fd)]
            if self._pinentry_loopback:
                args += ["--pinentry-mode", "loopback"]
            args += ["--batch", "--yes", "--sign-key", target]
            self._run(*args, handoff=handoff)

    def stop_agents(self) -> None:
        """Kill the gpg-agent and dirmngr GnuPG 2.x started for this home directory.

        They hold the volume open (sockets, unlocked key cache) and would
        otherwise outlive it.
        """

        vol = self.volume_path
        self._runner.run(
            [self._gpgconf_binary, "--homedir", str(vol), "--kill", "all"], cwd=vol
        )
