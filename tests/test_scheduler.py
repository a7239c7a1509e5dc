"""
Batch scheduler: batch boundaries, fixed-size padding and estimator contract checks.
"""

from __future__ import annotations

import numpy as np
import pytest

from estimators import RecordingEstimator
from stemsplit.audio.scheduler import BatchScheduler
from stemsplit.audio.spectral import SpectralFrame
from stemsplit.core.exceptions import ConfigError, InferenceError


def _frames(count, channels=2, bins=5):
    return [
        SpectralFrame(i, i * 4, np.full((channels, bins), i + 1, dtype=complex))
        for i in range(count)
    ]


def _drain(scheduler, frames):
    batches = [b for b in (scheduler.add(f) for f in frames) if b is not None]
    tail = scheduler.flush()
    if tail is not None:
        batches.append(tail)
    return batches


def test_batches_preserve_order_and_final_short_batch():
    est = RecordingEstimator({"A": 1.0, "B": 0.25})
    scheduler = BatchScheduler(est, est.stems, batch_size=4)

    batches = _drain(scheduler, _frames(10))

    assert [len(b.frames) for b in batches] == [4, 4, 2]
    assert [f.index for b in batches for f in b.frames] == list(range(10))
    assert est.batch_shapes == [(4, 2, 5), (4, 2, 5), (2, 2, 5)]
    assert scheduler.batches_submitted == 3
    assert scheduler.pending == 0
    for batch in batches:
        assert batch.masks["A"].shape == (len(batch.frames), 2, 5)
        assert np.all(batch.masks["B"] == 0.25)


def test_flush_with_nothing_pending():
    est = RecordingEstimator({"A": 1.0})
    assert BatchScheduler(est, est.stems, batch_size=4).flush() is None


def test_fixed_batch_size_pads_and_discards():
    est = RecordingEstimator({"A": 1.0}, fixed_batch_size=8)
    scheduler = BatchScheduler(est, est.stems, batch_size=8)

    batches = _drain(scheduler, _frames(3))

    assert est.batch_shapes == [(8, 2, 5)]
    assert len(batches) == 1
    assert batches[0].masks["A"].shape == (3, 2, 5)


def test_batch_size_above_fixed_size_rejected():
    est = RecordingEstimator({"A": 1.0}, fixed_batch_size=4)
    with pytest.raises(ConfigError):
        BatchScheduler(est, est.stems, batch_size=8)


class _BadEstimator:
    thread_safe = True

    def __init__(self, stems, result):
        self.stems = tuple(stems)
        self.result = result

    def infer(self, batch):
        return self.result(batch)


@pytest.mark.parametrize(
    "result",
    [
        # one frame short
        lambda b: np.ones((2, b.shape[0] - 1) + b.shape[1:]),
        # one stem short
        lambda b: np.ones((1,) + b.shape),
        # wrong bin count
        lambda b: np.ones((2,) + b.shape[:-1] + (b.shape[-1] + 1,)),
        # non-finite
        lambda b: np.full((2,) + b.shape, np.nan),
        # per-frame gains without the channel axis
        lambda b: np.stack([np.stack([np.full(b.shape[2], float(i)) for i in range(b.shape[0])])] * 2),
        # mapping with an unknown stem
        lambda b: {"A": np.ones(b.shape), "C": np.ones(b.shape)},
    ],
)
def test_contract_violations_raise_inference_error(result):
    est = _BadEstimator(["A", "B"], result)
    scheduler = BatchScheduler(est, est.stems, batch_size=3)

    with pytest.raises(InferenceError) as excinfo:
        _drain(scheduler, _frames(3))
    assert excinfo.value.stage == "inference"
    assert excinfo.value.frame_index == 0


def test_mapping_and_broadcastable_masks_accepted():
    est = _BadEstimator(
        ["A", "B"],
        lambda b: {"B": np.zeros((b.shape[0], 1, 1)), "A": np.ones((b.shape[0], 1, b.shape[2]))},
    )
    batches = _drain(BatchScheduler(est, est.stems, batch_size=2), _frames(2))

    assert batches[0].masks["A"].shape == (2, 2, 5)
    assert np.all(batches[0].masks["B"] == 0.0)


def test_estimator_exception_wrapped():
    def boom(batch):
        raise RuntimeError("device lost")

    scheduler = BatchScheduler(_BadEstimator(["A"], boom), ["A"], batch_size=2)
    with pytest.raises(InferenceError, match="device lost") as excinfo:
        _drain(scheduler, _frames(2))
    assert isinstance(excinfo.value.__cause__, RuntimeError)


def test_lower_rank_mask_rejected_when_frames_equal_channels():
    # two frames, two channels: a (frames, bins) mask must not be read as (channels, bins)
    est = _BadEstimator(["A"], lambda b: {"A": np.stack([np.zeros(b.shape[2]), np.ones(b.shape[2])])})
    scheduler = BatchScheduler(est, est.stems, batch_size=2)

    with pytest.raises(InferenceError, match="does not match spectra"):
        _drain(scheduler, _frames(2, channels=2))


def test_estimator_separation_error_gets_frame_context():
    calls = []

    def reject_second(batch):
        calls.append(batch.shape[0])
        if len(calls) == 2:
            raise InferenceError("model output shape (1,), expected (2,)", stage="inference")
        return np.ones((1,) + batch.shape)

    scheduler = BatchScheduler(_BadEstimator(["A"], reject_second), ["A"], batch_size=2)

    with pytest.raises(InferenceError) as excinfo:
        _drain(scheduler, _frames(4))
    assert excinfo.value.frame_index == 2
    assert excinfo.value.offset == 8
    assert "frame=2, offset=8" in str(excinfo.value)
