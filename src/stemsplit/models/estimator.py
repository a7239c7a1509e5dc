"""
Mask estimators.

The pipeline only relies on the narrow ``MaskEstimator`` interface, so any
inference runtime can be plugged in. ``TorchMaskEstimator`` adapts a PyTorch /
TorchScript module; ``ConstantMaskEstimator`` returns fixed gains.
"""

import logging
from typing import Mapping, Optional, Protocol, Sequence, Union

import numpy as np
import torch

from stemsplit.core.exceptions import InferenceError

logger = logging.getLogger('stemsplit')

MaskResult = Union[np.ndarray, Mapping[str, np.ndarray]]


class MaskEstimator(Protocol):
    """
    ``infer`` receives complex spectra shaped (frames, channels, bins) and
    returns masks shaped (stems, frames, channels, bins), or a mapping from
    stem name to (frames, channels, bins). Frame count and order must be
    preserved.

    Optional attributes:
        fixed_batch_size: the runtime only accepts batches of exactly this size
        thread_safe: ``infer`` may be called from several jobs concurrently
    """

    stems: Sequence[str]

    def infer(self, batch: np.ndarray) -> MaskResult:
        ...


def resolve_device(device: Optional[str] = 'auto') -> torch.device:
    """'auto' picks CUDA when available, otherwise CPU."""
    if not device or str(device).lower() == 'auto':
        return torch.device('cuda' if torch.cuda.is_available() else 'cpu')
    return torch.device(device)


class ConstantMaskEstimator:
    """Returns the same gain for every bin of every frame, per stem."""

    thread_safe = True
    fixed_batch_size = None

    def __init__(self, gains: Mapping[str, float]):
        self.stems = tuple(gains)
        self.gains = dict(gains)

    def infer(self, batch: np.ndarray) -> np.ndarray:
        return np.stack([np.full(batch.shape, self.gains[s], dtype=np.float64) for s in self.stems])


class TorchMaskEstimator:
    """
    Wraps a module mapping magnitude spectrograms to soft masks.

    The module receives float32 magnitudes shaped (frames, channels, bins),
    where bins is ``max_bins`` when set (Spleeter-style models only see the
    lower part of the spectrum), and must return (frames, stems, channels, bins).
    Bins above ``max_bins`` get a zero mask.
    """

    thread_safe = False

    def __init__(
        self,
        module: torch.nn.Module,
        stems: Sequence[str],
        device: Optional[str] = 'auto',
        max_bins: Optional[int] = None,
        fixed_batch_size: Optional[int] = None,
    ):
        self.stems = tuple(stems)
        self.device = resolve_device(device)
        self.max_bins = max_bins
        self.fixed_batch_size = fixed_batch_size
        self.module = module.to(self.device)
        self.module.eval()
        logger.info(f"TorchMaskEstimator initialized on {self.device} (stems={list(self.stems)})")

    @classmethod
    def from_file(cls, path, stems: Sequence[str], device: Optional[str] = 'auto', **kwargs):
        """Load a TorchScript module saved with ``torch.jit.save``."""
        resolved = resolve_device(device)
        module = torch.jit.load(str(path), map_location=resolved)
        return cls(module, stems, device=str(resolved), **kwargs)

    def infer(self, batch: np.ndarray) -> np.ndarray:
        frames, channels, bins = batch.shape
        magnitude = np.abs(batch).astype(np.float32)
        used_bins = bins
        if self.max_bins is not None and self.max_bins < bins:
            used_bins = self.max_bins
            magnitude = magnitude[..., :used_bins]

        x = torch.from_numpy(np.ascontiguousarray(magnitude)).to(self.device)
        with torch.inference_mode():
            out = self.module(x)
        masks = out.detach().float().cpu().numpy()

        expected = (frames, len(self.stems), channels, used_bins)
        if masks.shape != expected:
            raise InferenceError(
                f"model output shape {masks.shape}, expected {expected}", stage='inference'
            )

        # (frames, stems, channels, bins) -> (stems, frames, channels, bins)
        masks = masks.transpose(1, 0, 2, 3)
        if used_bins < bins:
            masks = np.pad(masks, ((0, 0), (0, 0), (0, 0), (0, bins - used_bins)))
        return masks
