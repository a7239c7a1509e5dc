import logging
import os
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from stemsplit.core.exceptions import ConfigError
from stemsplit.models.estimator import TorchMaskEstimator

log = logging.getLogger("stemsplit")

MODEL_FILENAME = "model.pt"
CONFIG_FILENAME = "config.yaml"


@dataclass
class ModelInfo:
    name: str
    stems: List[str]
    sample_rate: int = 44100
    channels: int = 2
    frame_length: int = 4096
    hop_length: int = 1024
    batch_size: int = 512
    window: str = "hann"
    # Highest bin the model sees; masks above it are zero
    max_bins: Optional[int] = 1024
    fixed_batch_size: Optional[int] = None
    description: str = ""

    installed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


_TWO = ["vocals", "accompaniment"]
_FOUR = ["vocals", "drums", "bass", "other"]
_FIVE = ["vocals", "drums", "bass", "piano", "other"]

# Spleeter family; the -16kHz variants mask up to 16kHz instead of 11kHz
MODEL_INFOS: List[ModelInfo] = [
    ModelInfo("2stems", _TWO, description="Vocals / accompaniment"),
    ModelInfo("4stems", _FOUR, description="Vocals / drums / bass / other"),
    ModelInfo("5stems", _FIVE, description="Vocals / drums / bass / piano / other"),
    ModelInfo("2stems-16kHz", _TWO, max_bins=1536, description="Vocals / accompaniment, 16kHz bandwidth"),
    ModelInfo("4stems-16kHz", _FOUR, max_bins=1536, description="Four stems, 16kHz bandwidth"),
    ModelInfo("5stems-16kHz", _FIVE, max_bins=1536, description="Five stems, 16kHz bandwidth"),
]


def existing_models() -> List[str]:
    return [info.name for info in MODEL_INFOS]


class ModelManager:
    """Resolves model names to their parameters and TorchScript weights.

    Layout: ``<models_dir>/<name>/model.pt`` plus an optional ``config.yaml``
    whose keys override the built-in ``ModelInfo`` fields. A directory with a
    ``config.yaml`` listing ``stems`` also works for models outside the registry.
    """

    def __init__(self, models_dir: Optional[Path] = None):
        if models_dir:
            self.models_dir = Path(models_dir)
        else:
            env_models = os.environ.get("STEMSPLIT_MODELS_DIR")
            if env_models and env_models.strip():
                self.models_dir = Path(env_models.strip())
            else:
                self.models_dir = Path.home() / ".stemsplit" / "models"
        self.models: Dict[str, ModelInfo] = {info.name: info for info in MODEL_INFOS}

    def model_dir(self, name: str) -> Path:
        return self.models_dir / name

    def model_path(self, name: str) -> Path:
        return self.model_dir(name) / MODEL_FILENAME

    def is_installed(self, name: str) -> bool:
        return self.model_path(name).exists()

    def _load_overrides(self, name: str) -> Dict[str, Any]:
        path = self.model_dir(name) / CONFIG_FILENAME
        if not path.exists():
            return {}
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid model config {path}: {e}", stage="config") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Model config {path} must be a mapping", stage="config")

        known = {f.name for f in fields(ModelInfo)} - {"name", "installed"}
        unknown = sorted(set(data) - known)
        if unknown:
            log.warning(f"Ignoring unknown keys in {path}: {unknown}")
        return {k: v for k, v in data.items() if k in known}

    def get_model_info(self, name: str) -> ModelInfo:
        overrides = self._load_overrides(name)
        base = self.models.get(name)
        if base is None:
            if "stems" not in overrides:
                raise ConfigError(
                    f"Unknown model '{name}'. Available: {', '.join(existing_models())}",
                    stage="config",
                )
            base = ModelInfo(name, list(overrides["stems"]))
        info = replace(base, **overrides)
        info.stems = list(info.stems)
        info.installed = self.is_installed(name)
        return info

    def list_models(self) -> List[Dict[str, Any]]:
        names = list(self.models)
        if self.models_dir.exists():
            for child in sorted(self.models_dir.iterdir()):
                if child.is_dir() and child.name not in self.models and (child / CONFIG_FILENAME).exists():
                    names.append(child.name)
        out = []
        for name in names:
            try:
                out.append(self.get_model_info(name).to_dict())
            except ConfigError as e:
                log.warning(f"Skipping model '{name}': {e}")
        return out

    def load_estimator(self, name: str, device: Optional[str] = "auto") -> TorchMaskEstimator:
        info = self.get_model_info(name)
        path = self.model_path(name)
        if not path.exists():
            raise FileNotFoundError(
                f"Model weights for '{name}' not found at {path}. "
                f"Place a TorchScript export there (see README)."
            )
        log.info(f"Loading model '{name}' from {path}")
        return TorchMaskEstimator.from_file(
            path,
            info.stems,
            device=device,
            max_bins=info.max_bins,
            fixed_batch_size=info.fixed_batch_size,
        )
