"""Persistent audit journal of ceremony runs.

Each run appends one entry describing what every step did. The journal never
contains secret material: only step names, statuses and error messages.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from keysign_ceremony.ceremony.workflow.sequencer import SequenceResult

logger = logging.getLogger(__name__)


class JournalStep(BaseModel):
    name: str
    status: str
    message: str = Field(default="")


class JournalEntry(BaseModel):
    """One ceremony run."""

    started_at: str
    finished_at: str
    target: str
    identities: list[str] = Field(default_factory=list)
    status: str
    failed_step: str | None = Field(default=None)
    error: str | None = Field(default=None)
    finalizer_error: str | None = Field(default=None)
    steps: list[JournalStep] = Field(default_factory=list)

    @classmethod
    def from_result(
        cls,
        result: SequenceResult,
        *,
        started_at: datetime,
        target: str,
        identities: list[str],
    ) -> JournalEntry:
        return cls(
            started_at=started_at.astimezone(UTC).isoformat(),
            finished_at=datetime.now(UTC).isoformat(),
            target=target,
            identities=list(identities),
            status=result.status.value,
            failed_step=result.failed_step,
            error=str(result.cause) if result.cause is not None else None,
            finalizer_error=(
                str(result.finalizer_error) if result.finalizer_error is not None else None
            ),
            steps=[JournalStep(**record.to_json()) for record in result.records],
        )


class CeremonyJournal:
    """JSON-file backed journal of ceremony runs."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> list[JournalEntry]:
        if not self._path.exists():
            return []

        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning(
                "Journal file is not valid JSON; treating as empty",
                extra={"path": str(self._path)},
            )
            return []

        if not isinstance(raw, list):
            return []

        entries: list[JournalEntry] = []
        for item in raw:
            try:
                entries.append(JournalEntry.model_validate(item))
            except ValidationError:
                logger.warning("Skipping malformed journal entry", extra={"path": str(self._path)})
        return entries

    def append(self, entry: JournalEntry) -> None:
        entries = self.load()
        entries.append(entry)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(
            json.dumps([e.model_dump() for e in entries], indent=2, ensure_ascii=False) + "\n",
            encoding="utf-8",
        )
