from __future__ import annotations

import numpy as np
import pytest

from stemsplit.core.config import SeparationParams


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def small_params():
    def build(stems=("A", "B"), **overrides):
        values = dict(frame_length=256, hop_length=64, batch_size=8, stems=tuple(stems), segment_size=1000)
        values.update(overrides)
        return SeparationParams(**values)

    return build
