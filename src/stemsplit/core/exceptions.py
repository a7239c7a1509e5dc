"""
Error taxonomy for the separation pipeline.

Every pipeline error records where it happened (stage, frame index, sample
offset) so a failed job can be diagnosed from its log line alone.
"""

from typing import Optional


class SeparationError(Exception):
    """Base class for all pipeline errors."""

    def __init__(
        self,
        message: str,
        *,
        stage: Optional[str] = None,
        frame_index: Optional[int] = None,
        offset: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.frame_index = frame_index
        self.offset = offset

    def __str__(self) -> str:
        where = []
        if self.stage:
            where.append(f"stage={self.stage}")
        if self.frame_index is not None:
            where.append(f"frame={self.frame_index}")
        if self.offset is not None:
            where.append(f"offset={self.offset}")
        if not where:
            return self.message
        return f"{self.message} ({', '.join(where)})"


class ConfigError(SeparationError):
    """Invalid frame/hop/batch/window/stem parameters. The job never starts."""


class InferenceError(SeparationError):
    """The estimator broke its contract (frame count, stem count, shape)."""


class ReconstructionError(SeparationError):
    """Internal invariant violation during overlap-add, e.g. a zero weight sum."""


class SeparationCancelled(SeparationError):
    """The job was cancelled before all stems were finalized."""
