"""Failure taxonomy for the signing ceremony.

A failed idempotency check is not an error at all: it only means the step has
work to do. Everything here is fatal to the ceremony and is never retried
automatically; re-invoking the ceremony is the retry mechanism.
"""

from __future__ import annotations

from collections.abc import Sequence


class CeremonyError(Exception):
    """Base class for fatal ceremony conditions."""


class ExternalToolFailure(CeremonyError):
    """An external tool invoked by a step did not succeed."""


class NonZeroExit(ExternalToolFailure):
    """A subprocess exited with a non-zero status.

    Only the program name is kept in the message; argument lists never carry
    secrets, but they can be long and are available on ``argv`` if needed.
    """

    def __init__(self, argv: Sequence[str], returncode: int, stderr: bytes = b"") -> None:
        self.argv = tuple(argv)
        self.returncode = returncode
        self.stderr = stderr
        program = self.argv[0] if self.argv else "<unknown>"
        message = f"{program} exited with status {returncode}"
        tail = stderr.decode("utf-8", errors="replace").strip().splitlines()[-3:]
        if tail:
            message += ": " + " | ".join(tail)
        super().__init__(message)


class VolumeError(ExternalToolFailure):
    """The ephemeral volume could not be created, located or destroyed."""


class ImportFailure(ExternalToolFailure):
    """Importing a signing identity into the ceremony keyring failed."""

    def __init__(self, identity: str) -> None:
        self.identity = identity
        super().__init__(f"Could not import key material for {identity!r}")


class SignFailure(ExternalToolFailure):
    """Signing the target key with one identity failed."""

    def __init__(self, identity: str) -> None:
        self.identity = identity
        super().__init__(f"Could not sign with {identity!r}")


class ExhaustedAlternatives(CeremonyError):
    """Every alternative endpoint (keyserver) failed."""


class OperatorAbort(CeremonyError):
    """The operator did not type the confirmation string."""


class InvalidTargetKey(CeremonyError):
    """The target key identifier is malformed, unknown or ambiguous."""
