"""The key-signing ceremony.

A ceremony provisions a throwaway keyring on an ephemeral volume, loads the
organization's signing identities into it, fetches the target key, asks a
human to confirm it, signs it with every identity, publishes it and finally
destroys the volume, whether or not the earlier steps succeeded.

Steps that must not be redone check external state (volume, keyring) to
detect that an interrupted earlier run already completed them.
"""

from __future__ import annotations

import logging
import signal
import sys
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TextIO

from keysign_ceremony.ceremony.config import CeremonySettings
from keysign_ceremony.ceremony.tools.gpg import IsolatedKeyring, is_full_fingerprint
from keysign_ceremony.ceremony.tools.keyservers import KeyserverDiscovery
from keysign_ceremony.ceremony.tools.process import ProcessRunner, clean_tool_environment
from keysign_ceremony.ceremony.tools.secrets import SecretStore
from keysign_ceremony.ceremony.tools.volume import EphemeralVolume
from keysign_ceremony.ceremony.workflow.errors import (
    CeremonyError,
    ExhaustedAlternatives,
    ImportFailure,
    InvalidTargetKey,
    NonZeroExit,
    OperatorAbort,
    SignFailure,
)
from keysign_ceremony.ceremony.workflow.sequencer import SequenceResult, StepSequencer
from keysign_ceremony.ceremony.workflow.step import Step

logger = logging.getLogger(__name__)

TERMINATION_SIGNALS = (signal.SIGTERM, signal.SIGHUP)


@contextmanager
def termination_signals_ignored() -> Iterator[None]:
    """Ignore SIGTERM and SIGHUP until the block exits.

    A second termination signal must not cut short the destruction of the
    volume. Handlers can only be changed from the main thread; elsewhere
    this is a no-op.
    """

    if threading.current_thread() is not threading.main_thread():
        yield
        return

    previous = {signum: signal.signal(signum, signal.SIG_IGN) for signum in TERMINATION_SIGNALS}
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)


def stop_keyring_agents(
    runner: ProcessRunner, volume_path: Path, *, gpgconf_binary: str = "gpgconf"
) -> None:
    """Best effort: a failure is logged and never prevents destroying the volume."""

    try:
        IsolatedKeyring(runner, volume_path, gpgconf_binary=gpgconf_binary).stop_agents()
    except (NonZeroExit, OSError) as e:
        logger.warning(
            "Could not stop GnuPG agents", extra={"path": str(volume_path), "error": str(e)}
        )


class CeremonyStep(str, Enum):
    PROVISION_VOLUME = "Set up ephemeral volume"
    LOAD_IDENTITIES = "Load signing identities"
    LOAD_KEYSERVERS = "Load keyservers"
    PROVISION_KEYRING = "Set up ceremony keyring"
    RETRIEVE_TARGET = "Retrieve the key to sign"
    CONFIRM_TARGET = "Verify we have the right key"
    SIGN = "Sign the key"
    PUBLISH = "Send to keyservers"


@dataclass(frozen=True, slots=True)
class SigningIdentity:
    label: str
    fingerprint: str


@dataclass(slots=True)
class CeremonyContext:
    """State shared by the steps of one ceremony run.

    Passphrases are deliberately absent: they are fetched and discarded
    inside the signing step.
    """

    identity_labels: tuple[str, ...]
    target_key: str
    volume_path: Path | None = None
    identities: dict[str, SigningIdentity] = field(default_factory=dict)
    keyservers: tuple[str, ...] = ()
    target_fingerprint: str | None = None
    publish_failures: dict[str, str] = field(default_factory=dict)

    def require_volume(self) -> Path:
        if self.volume_path is None:
            raise CeremonyError("Ephemeral volume has not been set up")
        return self.volume_path

    def fingerprint_of(self, label: str) -> str:
        return self.identities[label].fingerprint

    @property
    def signing_target(self) -> str:
        if self.target_fingerprint is None:
            raise InvalidTargetKey(f"Key {self.target_key} has not been confirmed")
        return self.target_fingerprint


class Operator:
    """The human at the terminal."""

    def __init__(self, stdin: TextIO | None = None, stdout: TextIO | None = None) -> None:
        self._stdin = stdin if stdin is not None else sys.stdin
        self._stdout = stdout if stdout is not None else sys.stdout

    def show(self, text: str) -> None:
        self._stdout.write(text if text.endswith("\n") else text + "\n")
        self._stdout.flush()

    def ask(self, prompt: str) -> str:
        self._stdout.write(prompt)
        self._stdout.flush()
        return self._stdin.readline().rstrip("\r\n")


class SigningCeremony:
    def __init__(
        self,
        *,
        context: CeremonyContext,
        runner: ProcessRunner,
        volume: EphemeralVolume,
        secrets: SecretStore,
        discovery: KeyserverDiscovery,
        operator: Operator,
        ramdisk_name: str,
        gpg_binary: str = "gpg",
        gpgconf_binary: str = "gpgconf",
        pinentry_loopback: bool = True,
        confirmation_phrase: str = "sign",
    ) -> None:
        self.context = context
        self._runner = runner
        self._volume = volume
        self._secrets = secrets
        self._discovery = discovery
        self._operator = operator
        self._ramdisk_name = ramdisk_name
        self._gpg_binary = gpg_binary
        self._gpgconf_binary = gpgconf_binary
        self._pinentry_loopback = pinentry_loopback
        self._confirmation_phrase = confirmation_phrase

        if is_full_fingerprint(context.target_key):
            context.target_fingerprint = context.target_key.upper()

    @classmethod
    def from_settings(
        cls,
        settings: CeremonySettings,
        *,
        runner: ProcessRunner | None = None,
        operator: Operator | None = None,
    ) -> SigningCeremony:
        if not settings.target_key:
            raise InvalidTargetKey("No target key configured")

        runner = runner if runner is not None else ProcessRunner()
        tool_env = clean_tool_environment(version_manager_roots=settings.version_manager_paths)
        return cls(
            context=CeremonyContext(
                identity_labels=tuple(settings.identities), target_key=settings.target_key
            ),
            runner=runner,
            volume=EphemeralVolume(runner, binary=settings.ramdisk_binary),
            secrets=SecretStore(runner, binary=settings.fetch_password_binary, env=tool_env),
            discovery=KeyserverDiscovery(runner, command=settings.keyserver_argv, env=tool_env),
            operator=operator if operator is not None else Operator(),
            ramdisk_name=settings.ramdisk_name,
            gpg_binary=settings.gpg_binary,
            gpgconf_binary=settings.gpgconf_binary,
            pinentry_loopback=settings.pinentry_loopback,
            confirmation_phrase=settings.confirmation_phrase,
        )

    def keyring(self) -> IsolatedKeyring:
        return IsolatedKeyring(
            self._runner,
            self.context.require_volume(),
            binary=self._gpg_binary,
            gpgconf_binary=self._gpgconf_binary,
            pinentry_loopback=self._pinentry_loopback,
        )

    def steps(self) -> list[Step]:
        def step(
            name: CeremonyStep,
            action: Callable[[], None],
            is_complete: Callable[[], bool] | None = None,
        ) -> Step:
            if is_complete is None:
                return Step(name=name.value, action=action, run_always=True)
            return Step(name=name.value, action=action, is_complete=is_complete)

        return [
            step(CeremonyStep.PROVISION_VOLUME, self._create_volume, self._volume_exists),
            step(CeremonyStep.LOAD_IDENTITIES, self._load_identities),
            step(CeremonyStep.LOAD_KEYSERVERS, self._load_keyservers),
            step(CeremonyStep.PROVISION_KEYRING, self._import_identities, self._identities_imported),
            step(CeremonyStep.RETRIEVE_TARGET, self._retrieve_target, self._target_present),
            step(CeremonyStep.CONFIRM_TARGET, self._confirm_target, self._target_preconfirmed),
            step(CeremonyStep.SIGN, self._sign_target),
            step(CeremonyStep.PUBLISH, self._publish_target),
        ]

    def run(self) -> SequenceResult:
        """Run every step; the volume is destroyed exactly once, however the run ends."""

        return StepSequencer(self.steps()).run(finalizer=self.teardown)

    def teardown(self) -> None:
        with termination_signals_ignored():
            path = self.context.volume_path or self._volume.locate(self._ramdisk_name)
            self.context.volume_path = None
            self.context.identities.clear()
            if path is not None:
                stop_keyring_agents(self._runner, path, gpgconf_binary=self._gpgconf_binary)
            self._volume.destroy(self._ramdisk_name)

    # Set up ephemeral volume

    def _volume_exists(self) -> bool:
        # Resolving the path here lets a resumed run reuse a leftover volume.
        path = self._volume.locate(self._ramdisk_name)
        if path is None:
            return False
        self.context.volume_path = path
        return True

    def _create_volume(self) -> None:
        self.context.volume_path = self._volume.create(self._ramdisk_name)

    # Load signing identities

    def _load_identities(self) -> None:
        self.context.identities.clear()
        for label in self.context.identity_labels:
            fingerprint = self._secrets.fingerprint(label)
            self.context.identities[label] = SigningIdentity(label=label, fingerprint=fingerprint)
            logger.info(
                "Loaded signing identity", extra={"identity": label, "fingerprint": fingerprint}
            )

    # Load keyservers

    def _load_keyservers(self) -> None:
        self.context.keyservers = self._discovery.discover()
        if not self.context.keyservers:
            logger.warning("No keyservers discovered")

    # Set up ceremony keyring

    def _identities_imported(self) -> bool:
        keyring = self.keyring()
        for label in self.context.identity_labels:
            fingerprint = self.context.fingerprint_of(label)
            logger.info("Checking ceremony keyring", extra={"identity": label})
            if not keyring.has_public_key(fingerprint):
                return False
            if not keyring.has_secret_key(fingerprint):
                return False
        return True

    def _import_identities(self) -> None:
        keyring = self.keyring()
        for label in self.context.identity_labels:
            try:
                material = self._secrets.public_key(label) + self._secrets.private_key(label)
                keyring.import_keys(material)
            except NonZeroExit as e:
                raise ImportFailure(label) from e
            logger.info("Imported signing identity", extra={"identity": label})

    # Retrieve the key to sign

    def _target_present(self) -> bool:
        return self.keyring().has_public_key(self.context.target_key)

    def _retrieve_target(self) -> None:
        keyring = self.keyring()
        target = self.context.target_key
        for keyserver in self.context.keyservers:
            try:
                keyring.receive_key(keyserver, target)
            except NonZeroExit as e:
                logger.warning(
                    "Keyserver did not provide key",
                    extra={"keyserver": keyserver, "key": target, "error": str(e)},
                )
                continue
            logger.info("Retrieved key", extra={"keyserver": keyserver, "key": target})
            return
        raise ExhaustedAlternatives(f"Couldn't retrieve {target} from any keyserver")

    # Verify we have the right key

    def _target_preconfirmed(self) -> bool:
        # Only a full fingerprint identifies a key unambiguously; anything
        # shorter must be looked at by a human on every run.
        return is_full_fingerprint(self.context.target_key)

    def _confirm_target(self) -> None:
        keyring = self.keyring()
        target = self.context.target_key

        matches = keyring.primary_fingerprints(target)
        if len(matches) != 1:
            raise InvalidTargetKey(
                f"Key ID {target} matches {len(matches)} keys; use the full fingerprint"
            )

        self._operator.show(f"Please check that the key {target} is the right one:")
        self._operator.show(keyring.fingerprint_text(target))
        answer = self._operator.ask(
            f"Please type the string '{self._confirmation_phrase}' to sign the key above "
            "(you won't be prompted again): "
        )
        if answer != self._confirmation_phrase:
            raise OperatorAbort(f"Aborted due to input (was not '{self._confirmation_phrase}').")

        self.context.target_fingerprint = matches[0]
        logger.info("Operator confirmed key", extra={"fingerprint": matches[0]})

    # Sign the key

    def _sign_target(self) -> None:
        keyring = self.keyring()
        target = self.context.signing_target
        for label in self.context.identity_labels:
            fingerprint = self.context.fingerprint_of(label)
            try:
                passphrase = self._secrets.passphrase(label)
                keyring.sign_key(signer=fingerprint, target=target, passphrase=passphrase)
            except NonZeroExit as e:
                raise SignFailure(label) from e
            del passphrase
            logger.info("Signed key", extra={"identity": label, "target": target})

    # Send to keyservers

    def _publish_target(self) -> None:
        keyring = self.keyring()
        target = self.context.signing_target
        keyservers = self.context.keyservers
        self.context.publish_failures.clear()

        if not keyservers:
            logger.warning("No keyservers to publish to", extra={"target": target})
            return

        for keyserver in keyservers:
            try:
                keyring.send_key(keyserver, target)
            except NonZeroExit as e:
                self.context.publish_failures[keyserver] = str(e)
                logger.warning(
                    "Could not publish to keyserver",
                    extra={"keyserver": keyserver, "target": target, "error": str(e)},
                )
                continue
            logger.info("Published key", extra={"keyserver": keyserver, "target": target})

        failures = self.context.publish_failures
        if len(failures) == len(keyservers):
            raise ExhaustedAlternatives(f"Couldn't send {target} to any keyserver")
        if failures:
            logger.warning(
                "Key published to some keyservers only",
                extra={"failed": sorted(failures), "total": len(keyservers)},
            )


def destroy_leftover_volume(
    settings: CeremonySettings, runner: ProcessRunner | None = None
) -> bool:
    """Destroy a volume left behind by a ceremony that was killed.

    Returns False when no such volume exists.
    """

    runner = runner if runner is not None else ProcessRunner()
    volume = EphemeralVolume(runner, binary=settings.ramdisk_binary)
    with termination_signals_ignored():
        path = volume.locate(settings.ramdisk_name)
        if path is None:
            return False
        stop_keyring_agents(runner, path, gpgconf_binary=settings.gpgconf_binary)
        volume.destroy(settings.ramdisk_name)
    return True
