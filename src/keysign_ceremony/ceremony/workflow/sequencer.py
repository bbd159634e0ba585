"""Ordered, resumable execution of ceremony steps.

The sequencer evaluates each step's completeness check, runs the steps that
still have work to do, halts on the first failing action and always runs the
caller's finalizer exactly once afterwards.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from .errors import NonZeroExit
from .step import Step, StepRecord, StepStatus

logger = logging.getLogger(__name__)


class SequenceStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class SequenceResult:
    """Outcome of a sequencer run.

    ``failed_step`` and ``cause`` are set only when ``status`` is FAILED.
    ``finalizer_error`` is reported alongside the outcome and never replaces it.
    """

    status: SequenceStatus
    records: list[StepRecord] = field(default_factory=list)
    failed_step: str | None = None
    cause: BaseException | None = None
    finalizer_error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.status == SequenceStatus.COMPLETED

    def step_status(self, name: str) -> StepStatus | None:
        for record in self.records:
            if record.name == name:
                return record.status
        return None


class StepSequencer:
    """Drive an ordered list of steps to completion."""

    def __init__(self, steps: Sequence[Step]) -> None:
        self._steps = tuple(steps)

    @property
    def steps(self) -> tuple[Step, ...]:
        return self._steps

    def run(self, finalizer: Callable[[], None] | None = None) -> SequenceResult:
        result = SequenceResult(status=SequenceStatus.COMPLETED)
        try:
            for step in self._steps:
                if not step.run_always and self._is_complete(step):
                    logger.info("Step already complete, skipping", extra={"step": step.name})
                    result.records.append(StepRecord(name=step.name, status=StepStatus.SKIPPED))
                    continue

                logger.info("Running step", extra={"step": step.name})
                try:
                    step.action()
                except Exception as e:
                    logger.error("Step failed", extra={"step": step.name, "error": str(e)})
                    result.records.append(
                        StepRecord(name=step.name, status=StepStatus.FAILED, message=str(e))
                    )
                    result.status = SequenceStatus.FAILED
                    result.failed_step = step.name
                    result.cause = e
                    break
                result.records.append(StepRecord(name=step.name, status=StepStatus.RAN))
        finally:
            if finalizer is not None:
                self._finalize(finalizer, result)
        return result

    @staticmethod
    def _is_complete(step: Step) -> bool:
        # Checks fail closed: any error means the step still has work to do.
        try:
            return bool(step.is_complete())
        except NonZeroExit:
            return False
        except Exception as e:
            logger.warning(
                "Completeness check errored; treating step as incomplete",
                extra={"step": step.name, "error": str(e)},
            )
            return False

    @staticmethod
    def _finalize(finalizer: Callable[[], None], result: SequenceResult) -> None:
        try:
            finalizer()
        except Exception as e:
            logger.exception("Finalizer failed")
            result.finalizer_error = e
            if result.cause is not None:
                result.cause.add_note(f"finalizer also failed: {e}")
