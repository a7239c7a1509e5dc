"""
Stem assembler: collects finalized samples per stem and hands interleaved
segments to the encoder sink.
"""

import logging
import threading
from typing import Any, Dict, List, Sequence

import numpy as np

from stemsplit.core.exceptions import ReconstructionError

logger = logging.getLogger('stemsplit')


class StemAssembler:
    """
    Keeps one open segment per stem, converts planar (channels, n) blocks to
    interleaved (n, channels) sample frames and flushes a segment to the sink
    once it reaches ``segment_size`` samples or the job ends.
    """

    def __init__(
        self,
        stems: Sequence[str],
        channels: int,
        sink: Any,
        segment_size: int,
        lead_in: int = 0,
    ):
        self.stems = tuple(stems)
        self.channels = channels
        self.sink = sink
        self.segment_size = segment_size
        self.lead_in = lead_in
        self._segments: Dict[str, List[np.ndarray]] = {stem: [] for stem in self.stems}
        self._segment_len: Dict[str, int] = {stem: 0 for stem in self.stems}
        # Samples accepted so far, per stem (real-input coordinates)
        self.emitted: Dict[str, int] = {stem: 0 for stem in self.stems}
        self.completed: Dict[str, threading.Event] = {
            stem: threading.Event() for stem in self.stems
        }

    def append(self, stem: str, position: int, block: np.ndarray):
        """Append finalized samples that start at padded ``position``."""
        start = position - self.lead_in
        if start < 0:
            block = block[:, -start:]
            start = 0
        if block.shape[1] == 0:
            return
        if start != self.emitted[stem]:
            raise ReconstructionError(
                f"stem '{stem}' received samples at {start}, expected {self.emitted[stem]}",
                stage='assembly',
                offset=start,
            )

        self._segments[stem].append(block)
        self._segment_len[stem] += block.shape[1]
        self.emitted[stem] += block.shape[1]
        if self._segment_len[stem] >= self.segment_size:
            self._flush(stem)

    def _flush(self, stem: str):
        if not self._segments[stem]:
            return
        planar = np.concatenate(self._segments[stem], axis=1)
        self._segments[stem] = []
        self._segment_len[stem] = 0
        self.sink.write(stem, np.ascontiguousarray(planar.T))

    def finish(self, total_samples: int):
        """Flush every stem and signal completion once it holds exactly ``total_samples``."""
        for stem in self.stems:
            if self.emitted[stem] != total_samples:
                raise ReconstructionError(
                    f"stem '{stem}' has {self.emitted[stem]} samples, input has {total_samples}",
                    stage='assembly',
                    offset=self.emitted[stem],
                )
            self._flush(stem)
            self.sink.close_stem(stem)
            self.completed[stem].set()
            logger.debug(f"Stem '{stem}' complete: {total_samples} samples")

