"""
stemsplit package root.

Spectral-mask stem separation: a streaming STFT / batched-estimator /
overlap-add pipeline plus the file, model and job plumbing around it.

Public API policy:
- Keep this file free of heavy imports (e.g. torch) at import time.
- Re-export only the most stable, high-level entry points here.

Examples:
    from stemsplit import SeparationParams, separate_array
    from stemsplit.core.separation_manager import SeparationManager
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _pkg_version

__all__ = [
    "__version__",
    "Config",
    "SeparationParams",
    "SeparationPipeline",
    "separate_array",
    "ConfigError",
    "InferenceError",
    "ReconstructionError",
    "SeparationCancelled",
    "SeparationError",
]

try:
    __version__ = _pkg_version("stemsplit")
except PackageNotFoundError:
    # Package is being used from source without installed metadata
    __version__ = "0.0.0+local"

from stemsplit.audio.pipeline import SeparationPipeline, separate_array  # noqa: E402
from stemsplit.core.config import Config, SeparationParams  # noqa: E402
from stemsplit.core.exceptions import (  # noqa: E402
    ConfigError,
    InferenceError,
    ReconstructionError,
    SeparationCancelled,
    SeparationError,
)
