#!/usr/bin/env python3
"""Programmatic signing ceremony example.

This demonstrates using the ceremony components directly:

* load settings from `.env`
* run the ceremony steps, resuming any interrupted earlier run
* inspect what each step did

The key to sign is passed as an argument (not read from `.env`).
"""

from __future__ import annotations

import argparse
from typing import Sequence

from keysign_ceremony.ceremony.config import CeremonySettings
from keysign_ceremony.ceremony.logging import configure_logging
from keysign_ceremony.ceremony.signing import SigningCeremony


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sign a key (programmatic example).")
    parser.add_argument("--key", required=True, help="Fingerprint of the key to sign")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = CeremonySettings(target_key=args.key)
    configure_logging(settings.log_level)

    ceremony = SigningCeremony.from_settings(settings)
    result = ceremony.run()

    for record in result.records:
        print(f"{record.status.value:>8}  {record.name}")

    if not result.ok:
        print(f"Failed at '{result.failed_step}': {result.cause}")
        return 1
    if result.finalizer_error is not None:
        print(f"Volume was not destroyed: {result.finalizer_error}")
        return 1

    print(f"Signed {ceremony.context.target_fingerprint}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
