"""Failure taxonomy shared by the split, compose and enhance pipelines."""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class PipelineError(RuntimeError):
    """Base class for unit-level pipeline failures."""


class ProbeFailure(PipelineError):
    """Media metadata could not be read. Callers skip the unit."""


class OperationFailure(PipelineError):
    """An external tool exited non-zero or produced unusable output."""

    def __init__(
        self,
        message: str,
        *,
        returncode: Optional[int] = None,
        stderr: str = "",
        stdout: str = "",
        log_path: Optional[Path] = None,
    ) -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr
        self.stdout = stdout
        self.log_path = log_path


class OperationTimeout(OperationFailure):
    """The external tool was killed after exceeding its time budget."""


class DetectionFailure(PipelineError):
    """Scene detection failed even after repairing the source."""


class SplitFailure(PipelineError):
    """A segment could not be cut even after repairing the source."""


class ReconciliationExhausted(PipelineError):
    """No acceptable, unique clip selection was found within the attempt ceiling."""

    def __init__(self, message: str, *, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class EncodeStageFailure(PipelineError):
    """One of the assembly encode stages failed; the assembly is abandoned."""

    def __init__(self, stage: str, cause: Exception) -> None:
        super().__init__(f"{stage} failed: {cause}")
        self.stage = stage
        self.cause = cause


class OperationCancelled(PipelineError):
    """A stop was requested; the running tool was terminated."""
