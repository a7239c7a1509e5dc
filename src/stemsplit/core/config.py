"""
Configuration management for stemsplit
"""

import copy
import json
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

import psutil

from stemsplit.core.exceptions import ConfigError

logger = logging.getLogger('stemsplit')

# Stages holding frames at once: producer queue, inference queue, reconstruction queue
_IN_FLIGHT_STAGES = 3


class Config:
    """Configuration manager for the application"""

    CONFIG_FILE = Path.home() / '.stemsplit' / 'config.json'
    DEFAULT_CONFIG = {
        'processing': {
            'frame_length': 4096,
            'hop_length': 1024,
            'batch_size': 512,
            'window': 'hann',
            'queue_size': 4,
            'segment_size': 441000,
            'auto_batch': False,
            'min_batch': 16,
            'max_batch': 1024,
            'memory_headroom_ratio': 0.5,
        },
        'model': {
            'name': '2stems',
            'device': 'auto',
        },
        'paths': {
            'models_dir': str(Path.home() / '.stemsplit' / 'models'),
            'output_dir': str(Path.home() / 'stemsplit_output'),
        },
        'output': {
            'format': None,
            'subtype': 'PCM_16',
        },
        'logging': {
            'level': 'INFO',
            'file_enabled': True,
        },
    }

    def __init__(self, config_file: Optional[Path] = None):
        """Initialize configuration"""
        if config_file is not None:
            self.CONFIG_FILE = Path(config_file)
        self._config = self._load_config()

    def _defaults(self) -> Dict[str, Any]:
        config = {}
        for key, value in self.DEFAULT_CONFIG.items():
            if isinstance(value, dict):
                config[key] = copy.deepcopy(value)
            else:
                config[key] = value
        return config

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file or create default"""
        config = self._defaults()

        if self.CONFIG_FILE.exists():
            try:
                with open(self.CONFIG_FILE, 'r', encoding='utf-8') as handle:
                    data = json.load(handle)
            except (OSError, ValueError) as exc:
                logger.warning(f"Could not load config {self.CONFIG_FILE}: {exc}")
            else:
                if isinstance(data, dict):
                    self._merge_dicts(config, data)

        return config

    def _merge_dicts(self, base: Dict[str, Any], updates: Dict[str, Any]):
        """Recursively merge updates into base dictionary"""
        for key, value in updates.items():
            if isinstance(value, dict) and isinstance(base.get(key), dict):
                self._merge_dicts(base[key], value)
            else:
                base[key] = value

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value using dot notation (e.g., 'processing.hop_length')"""
        value: Any = self._config

        for part in key.split('.'):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return default

        return value

    def set(self, key: str, value: Any):
        """Set configuration value using dot notation"""
        keys = key.split('.')
        target = self._config

        for part in keys[:-1]:
            if part not in target or not isinstance(target[part], dict):
                target[part] = {}
            target = target[part]

        target[keys[-1]] = value

    def update(self, updates: Dict[str, Any]):
        """Merge a nested dict of overrides (e.g. a model's config.yaml)"""
        self._merge_dicts(self._config, updates)

    def save(self):
        """Save configuration to file"""
        try:
            self.CONFIG_FILE.parent.mkdir(parents=True, exist_ok=True)
            with open(self.CONFIG_FILE, 'w', encoding='utf-8') as handle:
                json.dump(self._config, handle, indent=2)
        except OSError as exc:
            logger.warning(f"Could not save config: {exc}")

    def reset(self):
        """Reset configuration to defaults"""
        self._config = self._defaults()
        self.save()

    def recommend_batch_size(self, channels: int, stem_count: int) -> int:
        """Derive a batch size from available RAM, clamped to [min_batch, max_batch]."""
        processing = self._config.get('processing') or {}
        configured = int(processing.get('batch_size', 512))
        if not processing.get('auto_batch'):
            return configured

        min_batch = int(processing.get('min_batch', 16))
        max_batch = max(min_batch, int(processing.get('max_batch', 1024)))
        headroom = max(0.0, min(float(processing.get('memory_headroom_ratio', 0.5) or 0.5), 1.0))
        queue_size = max(1, int(processing.get('queue_size', 4)))
        frame_length = int(processing.get('frame_length', 4096))

        # complex128 spectrum + one float64 mask per stem, per channel
        bins = frame_length // 2 + 1
        bytes_per_frame = channels * bins * 16 * (1 + stem_count)
        in_flight = bytes_per_frame * queue_size * _IN_FLIGHT_STAGES

        available = psutil.virtual_memory().available
        batch = int(available * headroom / max(1, in_flight))
        batch = max(min_batch, min(max_batch, batch))
        logger.info(
            f"Auto batch size: {batch} (available={available / (1024 ** 3):.1f}GB, headroom={headroom})"
        )
        return batch


@dataclass(frozen=True)
class SeparationParams:
    """Validated, immutable parameters of one separation job."""

    frame_length: int = 4096
    hop_length: int = 1024
    batch_size: int = 512
    window: Any = field(default='hann', compare=False)
    stems: Tuple[str, ...] = ('vocals', 'accompaniment')
    queue_size: int = 4
    segment_size: int = 441000

    @property
    def bins(self) -> int:
        return self.frame_length // 2 + 1

    @property
    def lead_in(self) -> int:
        """Zero samples prepended so that every real sample sees the full overlap."""
        return self.frame_length - self.hop_length

    def with_overrides(self, **overrides) -> 'SeparationParams':
        overrides = {k: v for k, v in overrides.items() if v is not None}
        if 'stems' in overrides:
            overrides['stems'] = tuple(overrides['stems'])
        return replace(self, **overrides)

    def validate(self) -> 'SeparationParams':
        """Raise ConfigError for any invalid combination. Returns self for chaining."""
        for name in ('frame_length', 'hop_length', 'batch_size', 'queue_size', 'segment_size'):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(f"{name} must be an integer, got {value!r}", stage='config')

        if self.frame_length <= 0:
            raise ConfigError(f"frame_length must be positive, got {self.frame_length}", stage='config')
        if self.hop_length <= 0:
            raise ConfigError(f"hop_length must be positive, got {self.hop_length}", stage='config')
        if self.hop_length > self.frame_length:
            raise ConfigError(
                f"hop_length {self.hop_length} exceeds frame_length {self.frame_length}",
                stage='config',
            )
        if self.batch_size <= 0:
            raise ConfigError(f"batch_size must be positive, got {self.batch_size}", stage='config')
        if self.queue_size <= 0:
            raise ConfigError(f"queue_size must be positive, got {self.queue_size}", stage='config')
        if self.segment_size <= 0:
            raise ConfigError(f"segment_size must be positive, got {self.segment_size}", stage='config')

        if not self.stems:
            raise ConfigError("at least one stem name is required", stage='config')
        if any(not isinstance(s, str) or not s for s in self.stems):
            raise ConfigError(f"stem names must be non-empty strings: {self.stems!r}", stage='config')
        if len(set(self.stems)) != len(self.stems):
            raise ConfigError(f"duplicate stem names: {self.stems!r}", stage='config')

        # Raises ConfigError for unknown names or wrong-length arrays
        from stemsplit.audio.framing import make_window

        make_window(self.window, self.frame_length)
        return self

    @classmethod
    def from_config(
        cls,
        config: Config,
        stems: Sequence[str],
        channels: int = 2,
        **overrides,
    ) -> 'SeparationParams':
        """Build params from a Config, the estimator's stems and explicit overrides."""
        params = cls(
            frame_length=config.get('processing.frame_length', 4096),
            hop_length=config.get('processing.hop_length', 1024),
            batch_size=config.recommend_batch_size(channels, len(stems)),
            window=config.get('processing.window', 'hann'),
            stems=tuple(stems),
            queue_size=config.get('processing.queue_size', 4),
            segment_size=config.get('processing.segment_size', 441000),
        )
        return params.with_overrides(**overrides).validate()
