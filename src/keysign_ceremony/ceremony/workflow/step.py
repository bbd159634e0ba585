from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum


def _never_complete() -> bool:
    return False


@dataclass(frozen=True, slots=True)
class Step:
    """A single unit of ceremony work.

    ``is_complete`` detects that the step already succeeded (e.g. in an
    earlier, interrupted run) and ``action`` performs it. Actions signal
    failure by raising. Steps with ``run_always`` skip the completeness check
    and execute on every invocation; they must be safe to repeat.
    """

    name: str
    action: Callable[[], None]
    is_complete: Callable[[], bool] = _never_complete
    run_always: bool = False


class StepStatus(str, Enum):
    SKIPPED = "skipped"
    RAN = "ran"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class StepRecord:
    name: str
    status: StepStatus
    message: str = ""

    def to_json(self) -> dict[str, object]:
        out: dict[str, object] = {"name": self.name, "status": self.status.value}
        if self.message:
            out["message"] = self.message
        return out
