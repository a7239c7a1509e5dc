"""
Forward / inverse short-time transform of single frames.

Convention: the forward real FFT is unnormalized and the inverse divides by
``frame_length`` (numpy's "backward" norm), so ``inverse(forward(x)) == x``.
"""

from dataclasses import dataclass

import numpy as np


@dataclass
class SpectralFrame:
    """Spectrum of one analysis frame, tagged with its position."""

    index: int
    offset: int
    # (channels, N // 2 + 1) complex
    spectrum: np.ndarray


def forward(frame: np.ndarray) -> np.ndarray:
    """(channels, N) real samples -> (channels, N // 2 + 1) complex bins."""
    return np.fft.rfft(frame, axis=-1)


def inverse(spectrum: np.ndarray, frame_length: int) -> np.ndarray:
    """(channels, N // 2 + 1) complex bins -> (channels, N) real samples."""
    return np.fft.irfft(spectrum, n=frame_length, axis=-1)


class SpectralTransform:
    """Pure per-frame transform bound to one frame length."""

    def __init__(self, frame_length: int):
        self.frame_length = frame_length
        self.bins = frame_length // 2 + 1

    def forward(self, frame: np.ndarray) -> np.ndarray:
        if frame.shape[-1] != self.frame_length:
            raise ValueError(
                f"frame has {frame.shape[-1]} samples, expected {self.frame_length}"
            )
        return forward(frame)

    def inverse(self, spectrum: np.ndarray) -> np.ndarray:
        if spectrum.shape[-1] != self.bins:
            raise ValueError(f"spectrum has {spectrum.shape[-1]} bins, expected {self.bins}")
        return inverse(spectrum, self.frame_length)

    def apply_mask(self, spectrum: np.ndarray, mask: np.ndarray) -> np.ndarray:
        """Mask a spectrum and return the resynthesized frame."""
        return self.inverse(spectrum * mask)
