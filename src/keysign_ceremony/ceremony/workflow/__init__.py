"""Explicit step-sequencing concepts.

This package introduces first-class types for:
- Steps (completeness check + action)
- The sequencer that drives them with a guaranteed finalizer
- The fatal failure taxonomy

The intent is to make an interrupted ceremony safely re-runnable: completed
steps are detected and skipped, and teardown always happens.
"""

from .errors import (
    CeremonyError,
    ExhaustedAlternatives,
    ExternalToolFailure,
    ImportFailure,
    InvalidTargetKey,
    NonZeroExit,
    OperatorAbort,
    SignFailure,
    VolumeError,
)
from .sequencer import SequenceResult, SequenceStatus, StepSequencer
from .step import Step, StepRecord, StepStatus

__all__ = [
    "CeremonyError",
    "ExhaustedAlternatives",
    "ExternalToolFailure",
    "ImportFailure",
    "InvalidTargetKey",
    "NonZeroExit",
    "OperatorAbort",
    "SequenceResult",
    "SequenceStatus",
    "SignFailure",
    "Step",
    "StepRecord",
    "StepSequencer",
    "StepStatus",
    "VolumeError",
]
