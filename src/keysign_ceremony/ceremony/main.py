"""CLI entrypoint for the signing ceremony."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from datetime import UTC, datetime
from types import FrameType

from pydantic import ValidationError

from keysign_ceremony import __version__
from keysign_ceremony.ceremony.config import CeremonySettings
from keysign_ceremony.ceremony.journal import CeremonyJournal, JournalEntry
from keysign_ceremony.ceremony.logging import configure_logging
from keysign_ceremony.ceremony.signing import (
    TERMINATION_SIGNALS,
    SigningCeremony,
    destroy_leftover_volume,
)
from keysign_ceremony.ceremony.workflow.errors import (
    CeremonyError,
    InvalidTargetKey,
    OperatorAbort,
)

logger = logging.getLogger(__name__)

# Exit codes are designed to be script-friendly.
EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFIG = 2
EXIT_OPERATOR_ABORT = 3
EXIT_STEP_FAILED = 4
EXIT_TEARDOWN_FAILED = 5


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="keysign-ceremony",
        description="Sign a public key with organizational identities inside a throwaway keyring",
    )
    parser.add_argument("--version", action="version", version=f"keysign-ceremony {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    sign = subparsers.add_parser("sign", help="Run the signing ceremony")
    sign.add_argument(
        "--key",
        default=None,
        help="Fingerprint of the key to sign (overrides CEREMONY_TARGET_KEY)",
    )
    sign.add_argument(
        "--identities",
        default=None,
        help="Comma-separated signing identity labels (overrides CEREMONY_SIGNING_IDENTITIES)",
    )

    subparsers.add_parser(
        "destroy-volume",
        help="Destroy an ephemeral volume left behind by an interrupted ceremony",
    )

    return parser


def _load_settings(args: argparse.Namespace) -> CeremonySettings:
    overrides: dict[str, str] = {}
    if getattr(args, "key", None):
        overrides["target_key"] = args.key
    if getattr(args, "identities", None):
        overrides["signing_identities"] = args.identities
    return CeremonySettings(**overrides)


def _raise_system_exit(signum: int, _frame: FrameType | None) -> None:
    # Turn termination signals into an exception so teardown `finally` blocks run.
    raise SystemExit(128 + signum)


def install_signal_handlers() -> None:
    for signum in TERMINATION_SIGNALS:
        signal.signal(signum, _raise_system_exit)


def _run_sign(settings: CeremonySettings) -> int:
    ceremony = SigningCeremony.from_settings(settings)
    started_at = datetime.now(UTC)

    install_signal_handlers()
    result = ceremony.run()

    journal = CeremonyJournal(settings.journal_path)
    try:
        journal.append(
            JournalEntry.from_result(
                result,
                started_at=started_at,
                target=settings.target_key,
                identities=settings.identities,
            )
        )
    except OSError:
        logger.exception("Could not write ceremony journal", extra={"path": str(journal.path)})

    if not result.ok:
        assert result.cause is not None
        print(f"Step '{result.failed_step}' failed: {result.cause}", file=sys.stderr)
        if result.finalizer_error is not None:
            print(f"Teardown also failed: {result.finalizer_error}", file=sys.stderr)
        if isinstance(result.cause, OperatorAbort):
            return EXIT_OPERATOR_ABORT
        return EXIT_STEP_FAILED

    if result.finalizer_error is not None:
        print(
            f"Ceremony completed but the volume was not destroyed: {result.finalizer_error}",
            file=sys.stderr,
        )
        return EXIT_TEARDOWN_FAILED

    failures = ceremony.context.publish_failures
    if failures:
        print(f"Not published to: {', '.join(sorted(failures))}", file=sys.stderr)
    print(f"Signed {ceremony.context.target_fingerprint} and destroyed the ceremony volume")
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = _load_settings(args)
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return EXIT_CONFIG

    configure_logging(settings.log_level)

    try:
        if args.command == "sign":
            return _run_sign(settings)

        if args.command == "destroy-volume":
            if destroy_leftover_volume(settings):
                print(f"Destroyed volume {settings.ramdisk_name}")
            else:
                print(f"No volume named {settings.ramdisk_name}")
            return EXIT_OK

        logger.error("Unknown command", extra={"command": args.command})
        return EXIT_CONFIG

    except InvalidTargetKey as e:
        print(str(e), file=sys.stderr)
        return EXIT_CONFIG

    except CeremonyError as e:
        logger.error(str(e))
        print(str(e), file=sys.stderr)
        return EXIT_STEP_FAILED

    except Exception:
        logger.exception("Command failed")
        return EXIT_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
