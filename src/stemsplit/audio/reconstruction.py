"""
Mask application and overlap-add reconstruction.

Each resynthesized frame is multiplied by the synthesis window (the same
window used for analysis) before it is added to the accumulator, and the
squared window is added to the weight sum. A finalized sample is therefore
``sum(w * y) / sum(w ** 2)``, which is the input sample itself when every mask
is all-ones.
"""

import logging
from typing import Dict, Optional, Sequence, Tuple

import numpy as np

from stemsplit.audio.scheduler import MaskBatch
from stemsplit.audio.spectral import SpectralTransform
from stemsplit.core.exceptions import ReconstructionError

logger = logging.getLogger('stemsplit')

# Weight sums at or below this are treated as zero
MIN_WEIGHT_SUM = 1e-10


class OverlapAddAccumulator:
    """
    Ring buffer of ``frame_length`` samples indexed by absolute (padded) offset.

    Frames must be added with non-decreasing offsets. Positions before the
    offset of the newest frame can no longer receive contributions, so they are
    normalized and released as soon as that frame arrives. Positions before
    ``start`` are padding and are dropped without normalization.
    """

    def __init__(self, channels: int, window: np.ndarray, start: int = 0):
        self.channels = channels
        self.window = np.asarray(window, dtype=np.float64)
        self.capacity = self.window.shape[0]
        self.start = start
        self._window_sq = self.window ** 2
        self._acc = np.zeros((channels, self.capacity), dtype=np.float64)
        self._weight = np.zeros(self.capacity, dtype=np.float64)
        # Everything before this padded position has been released
        self.finalized = 0

    def add(self, offset: int, samples: np.ndarray) -> Tuple[int, np.ndarray]:
        """
        Overlap-add one resynthesized frame at ``offset``.

        Returns ``(position, block)``: the samples finalized by this frame's
        arrival, starting at padded ``position``. ``block`` may be empty.
        """
        if offset < self.finalized:
            raise ReconstructionError(
                f"frame at offset {offset} arrived after position {self.finalized} was finalized",
                stage='reconstruction',
                offset=offset - self.start,
            )
        released = self.finalize(offset)

        idx = np.arange(offset, offset + self.capacity) % self.capacity
        self._acc[:, idx] += samples * self.window
        self._weight[idx] += self._window_sq
        return released

    def finalize(self, end: int) -> Tuple[int, np.ndarray]:
        """Normalize and release every position in [finalized, end)."""
        begin = max(self.finalized, self.start)
        if end <= self.finalized:
            return begin, np.zeros((self.channels, 0), dtype=np.float64)
        if end - self.finalized > self.capacity:
            # A gap wider than one frame was never written to
            raise ReconstructionError(
                f"positions {self.finalized + self.capacity}..{end} received no frame",
                stage='reconstruction',
                offset=self.finalized + self.capacity - self.start,
            )

        idx = np.arange(self.finalized, end) % self.capacity
        keep = idx[begin - self.finalized:] if begin < end else idx[:0]

        weights = self._weight[keep]
        bad = np.flatnonzero(weights <= MIN_WEIGHT_SUM)
        if bad.size:
            position = begin + int(bad[0])
            raise ReconstructionError(
                f"zero window weight sum at sample {position - self.start}; "
                "check the window / hop combination",
                stage='reconstruction',
                offset=position - self.start,
            )
        block = self._acc[:, keep] / weights

        self._acc[:, idx] = 0.0
        self._weight[idx] = 0.0
        self.finalized = end
        return begin, block


class Reconstructor:
    """Applies each stem's masks frame by frame and overlap-adds the results."""

    def __init__(self, stems: Sequence[str], channels: int, window: np.ndarray, lead_in: int = 0):
        window = np.asarray(window, dtype=np.float64)
        self.stems = tuple(stems)
        self.frame_length = window.shape[0]
        self.lead_in = lead_in
        self.transform = SpectralTransform(self.frame_length)
        self.accumulators = {
            stem: OverlapAddAccumulator(channels, window, start=lead_in) for stem in self.stems
        }
        self.next_index = 0

    def apply(self, batch: MaskBatch) -> Dict[str, Tuple[int, np.ndarray]]:
        """
        Process one batch in frame order.

        Returns, per stem, ``(position, block)`` with every sample finalized
        while processing the batch (contiguous, in padded coordinates).
        """
        released = {stem: [] for stem in self.stems}
        positions: Dict[str, Optional[int]] = {stem: None for stem in self.stems}

        for i, frame in enumerate(batch.frames):
            if frame.index != self.next_index:
                raise ReconstructionError(
                    f"frame {frame.index} arrived out of order, expected {self.next_index}",
                    stage='reconstruction',
                    frame_index=frame.index,
                )
            for stem in self.stems:
                samples = self.transform.apply_mask(frame.spectrum, batch.masks[stem][i])
                try:
                    position, block = self.accumulators[stem].add(frame.offset, samples)
                except ReconstructionError as exc:
                    if exc.frame_index is None:
                        exc.frame_index = frame.index
                    raise
                if block.shape[1]:
                    if positions[stem] is None:
                        positions[stem] = position
                    released[stem].append(block)
            self.next_index += 1

        return {
            stem: (positions[stem], np.concatenate(blocks, axis=1))
            for stem, blocks in released.items()
            if blocks
        }

    def finish(self, total_samples: int) -> Dict[str, Tuple[int, np.ndarray]]:
        """Force finalization of everything up to the end of real input."""
        end = self.lead_in + total_samples
        out = {}
        for stem, acc in self.accumulators.items():
            position, block = acc.finalize(end)
            if block.shape[1]:
                out[stem] = (position, block)
        return out
