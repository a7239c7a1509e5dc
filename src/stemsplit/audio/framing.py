"""
Framing and analysis windowing.

The input stream is conceptually front-padded with ``frame_length - hop_length``
zeros so the first real sample is covered by as many frames as any other.
Frame offsets are expressed in these padded coordinates: frame ``k`` starts
at ``k * hop_length``.
"""

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Optional

import librosa
import numpy as np
from librosa.util.exceptions import ParameterError

from stemsplit.core.exceptions import ConfigError

logger = logging.getLogger('stemsplit')


def make_window(window: Any, frame_length: int) -> np.ndarray:
    """
    Build a periodic analysis window of ``frame_length`` samples.

    Args:
        window: Window name or tuple understood by scipy (``'hann'``,
            ``('kaiser', 8.0)``...), a callable taking the length, or an
            explicit array of the right length.
        frame_length: Window size N.

    Returns:
        float64 array of shape (frame_length,)
    """
    try:
        values = librosa.filters.get_window(window, frame_length, fftbins=True)
    except (ParameterError, ValueError, TypeError) as exc:
        raise ConfigError(f"invalid window {window!r}: {exc}", stage='config') from exc

    values = np.asarray(values, dtype=np.float64)
    if values.shape != (frame_length,):
        raise ConfigError(
            f"window has shape {values.shape}, expected ({frame_length},)", stage='config'
        )
    if not np.all(np.isfinite(values)):
        raise ConfigError("window contains non-finite values", stage='config')
    return values


def frame_count(total_samples: int, frame_length: int, hop_length: int) -> int:
    """Number of frames the Framer emits for ``total_samples`` input samples."""
    if total_samples <= 0:
        return 0
    padded_end = frame_length - hop_length + total_samples
    return -(-padded_end // hop_length)


@dataclass
class Frame:
    """One windowed analysis frame."""

    index: int
    # Start position in padded coordinates
    offset: int
    # (channels, frame_length) windowed samples
    data: np.ndarray


class Framer:
    """Slices a planar PCM stream into overlapping windowed frames."""

    def __init__(self, frame_length: int, hop_length: int, window: Any = 'hann'):
        if hop_length <= 0 or hop_length > frame_length:
            raise ConfigError(
                f"hop_length must be in [1, {frame_length}], got {hop_length}", stage='framing'
            )
        self.frame_length = frame_length
        self.hop_length = hop_length
        self.lead_in = frame_length - hop_length
        self.window = make_window(window, frame_length)
        self.total_samples = 0

    def frames(self, blocks: Iterable[np.ndarray], channels: int) -> Iterator[Frame]:
        """
        Lazily frame a stream of planar blocks shaped (channels, n).

        Restartable per job: each call starts from an empty state. After the
        iterator is exhausted ``total_samples`` holds the true input length.
        """
        n = self.frame_length
        hop = self.hop_length

        self.total_samples = 0
        # buffer[:, 0] sits at padded position buffer_start
        buffer = np.zeros((channels, self.lead_in), dtype=np.float64)
        buffer_start = 0
        index = 0
        offset = 0

        for block in blocks:
            block = np.asarray(block, dtype=np.float64)
            if block.ndim != 2 or block.shape[0] != channels:
                raise ValueError(
                    f"expected planar block with {channels} channels, got shape {block.shape}"
                )
            if block.shape[1] == 0:
                continue
            self.total_samples += block.shape[1]
            buffer = np.concatenate([buffer, block], axis=1)

            while offset + n <= buffer_start + buffer.shape[1]:
                start = offset - buffer_start
                yield self._make_frame(index, offset, buffer[:, start:start + n])
                index += 1
                offset += hop

            # Drop samples no future frame can reach
            consumed = offset - buffer_start
            if consumed > 0:
                buffer = buffer[:, consumed:]
                buffer_start = offset

        if self.total_samples == 0:
            return

        padded_end = self.lead_in + self.total_samples
        while offset < padded_end:
            start = offset - buffer_start
            segment = buffer[:, start:start + n]
            valid = segment.shape[1]
            if valid < n:
                segment = np.pad(segment, ((0, 0), (0, n - valid)))
            yield self._make_frame(index, offset, segment)
            index += 1
            offset += hop

        logger.debug(
            f"Framing finished: {index} frames for {self.total_samples} samples"
        )

    def _make_frame(self, index: int, offset: int, samples: np.ndarray) -> Frame:
        return Frame(
            index=index,
            offset=offset,
            data=samples * self.window,
        )


def to_planar(block: np.ndarray, channels: Optional[int] = None) -> np.ndarray:
    """
    Convert an interleaved (frames, channels) or mono 1-D block to (channels, frames).
    """
    block = np.asarray(block)
    if block.ndim == 1:
        return block[np.newaxis, :]
    if block.ndim != 2:
        raise ValueError(f"expected 1-D or 2-D PCM block, got shape {block.shape}")
    if channels is not None and block.shape[1] != channels:
        raise ValueError(f"expected {channels} interleaved channels, got shape {block.shape}")
    return block.T
