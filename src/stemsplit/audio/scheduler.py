"""
Batch scheduler: groups spectral frames into estimator-sized batches.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

import numpy as np

from stemsplit.audio.spectral import SpectralFrame
from stemsplit.core.exceptions import ConfigError, InferenceError, SeparationError

logger = logging.getLogger('stemsplit')


@dataclass
class MaskBatch:
    """Frames of one batch plus, per stem, one mask per frame in the same order."""

    frames: List[SpectralFrame]
    # stem -> (len(frames), channels, bins)
    masks: Dict[str, np.ndarray]


class BatchScheduler:
    """
    Accumulates frames in order and submits them to the estimator once
    ``batch_size`` frames are queued, or on ``flush()`` at stream end.

    Short final batches are always submitted. If the estimator declares a
    ``fixed_batch_size`` the batch is zero-padded to it and the masks of the
    padding frames are discarded.
    """

    def __init__(
        self,
        estimator: Any,
        stems: Sequence[str],
        batch_size: int,
        lock: Optional[threading.Lock] = None,
    ):
        self.estimator = estimator
        self.stems = tuple(stems)
        self.batch_size = batch_size
        self.fixed_batch_size = getattr(estimator, 'fixed_batch_size', None)
        if self.fixed_batch_size is not None and batch_size > self.fixed_batch_size:
            raise ConfigError(
                f"batch_size {batch_size} exceeds the estimator's fixed batch size "
                f"{self.fixed_batch_size}",
                stage='config',
            )
        self._lock = lock
        self._pending: List[SpectralFrame] = []
        self.batches_submitted = 0

    @property
    def pending(self) -> int:
        return len(self._pending)

    def add(self, frame: SpectralFrame) -> Optional[MaskBatch]:
        """Queue a frame; returns the finished batch when the queue is full."""
        self._pending.append(frame)
        if len(self._pending) >= self.batch_size:
            return self.submit()
        return None

    def flush(self) -> Optional[MaskBatch]:
        """Submit whatever is queued (stream end)."""
        if not self._pending:
            return None
        return self.submit()

    def submit(self) -> MaskBatch:
        frames, self._pending = self._pending, []
        count = len(frames)
        batch = np.stack([f.spectrum for f in frames])

        submitted = count
        if self.fixed_batch_size is not None and count < self.fixed_batch_size:
            pad = self.fixed_batch_size - count
            batch = np.concatenate([batch, np.zeros((pad,) + batch.shape[1:], dtype=batch.dtype)])
            submitted = self.fixed_batch_size

        logger.debug(
            f"Submitting batch {self.batches_submitted}: frames {frames[0].index}..{frames[-1].index}"
            f" ({count} real, {submitted} submitted)"
        )

        try:
            if self._lock is not None:
                with self._lock:
                    raw = self.estimator.infer(batch)
            else:
                raw = self.estimator.infer(batch)
        except SeparationError as exc:
            if exc.frame_index is None:
                exc.frame_index = frames[0].index
            if exc.offset is None:
                exc.offset = frames[0].offset
            raise
        except Exception as exc:
            raise InferenceError(
                f"estimator failed: {exc}",
                stage='inference',
                frame_index=frames[0].index,
                offset=frames[0].offset,
            ) from exc

        masks = self._check_masks(raw, submitted, batch.shape, frames[0])
        self.batches_submitted += 1
        return MaskBatch(frames=frames, masks={s: m[:count] for s, m in masks.items()})

    def _check_masks(
        self, raw: Any, submitted: int, shape: tuple, first: SpectralFrame
    ) -> Dict[str, np.ndarray]:
        def fail(message: str):
            raise InferenceError(
                message, stage='inference', frame_index=first.index, offset=first.offset
            )

        if isinstance(raw, Mapping):
            if len(raw) != len(self.stems) or set(raw) != set(self.stems):
                fail(f"estimator returned stems {sorted(raw)}, expected {list(self.stems)}")
            per_stem = {s: np.asarray(raw[s]) for s in self.stems}
        else:
            arr = np.asarray(raw)
            if arr.ndim < 1 or arr.shape[0] != len(self.stems):
                got = arr.shape[0] if arr.ndim else 0
                fail(f"estimator returned {got} stems, expected {len(self.stems)}")
            per_stem = {s: arr[i] for i, s in enumerate(self.stems)}

        checked = {}
        for stem, mask in per_stem.items():
            if mask.ndim < 1 or mask.shape[0] != submitted:
                got = mask.shape[0] if mask.ndim else 0
                fail(f"estimator returned {got} frames for stem '{stem}', expected {submitted}")
            # Only size-1 axes may broadcast; a missing axis would shift frames onto channels
            if mask.ndim != len(shape):
                fail(f"mask shape {mask.shape} for stem '{stem}' does not match spectra {shape}")
            try:
                mask = np.broadcast_to(mask, shape)
            except ValueError:
                fail(f"mask shape {mask.shape} for stem '{stem}' does not match spectra {shape}")
            if not np.all(np.isfinite(mask)):
                fail(f"estimator returned non-finite mask values for stem '{stem}'")
            checked[stem] = mask
        return checked
