"""Ceremony log output.

One JSON object per line on stderr; stdout belongs to the operator, who
reads the target fingerprint and types the confirmation phrase there.

Log records carry identity labels, fingerprints, keyservers and tool argv
as ``extra`` fields. Passphrases and private keys are never logged on
purpose, and any ``extra`` field whose name says it holds one is replaced
with ``[redacted]`` before the line is written.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any, TextIO

REDACTED = "[redacted]"
SECRET_FIELD_MARKERS: tuple[str, ...] = (
    "passphrase",
    "password",
    "privkey",
    "private_key",
    "secret",
)

_RESERVED_LOG_RECORD_ATTRS: set[str] = set(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime"}


def _is_secret_field(name: str) -> bool:
    lowered = name.lower()
    return any(marker in lowered for marker in SECRET_FIELD_MARKERS)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: A003 (record)
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extra = {
            key: REDACTED if _is_secret_field(key) else value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_LOG_RECORD_ATTRS and not key.startswith("_")
        }
        if extra:
            payload["extra"] = extra

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: str, stream: TextIO | None = None) -> None:
    """Send ceremony logs to ``stream`` (stderr by default) as JSON lines."""

    root = logging.getLogger()

    # Re-running a ceremony in the same process must not duplicate lines.
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream=stream if stream is not None else sys.stderr)
    handler.setFormatter(JsonFormatter())

    root.addHandler(handler)
    root.setLevel(level.upper())
