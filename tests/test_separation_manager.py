"""
Job management on real files: output layout, failure cleanup and cancellation.
"""

from __future__ import annotations

import numpy as np
import pytest
import soundfile as sf

from estimators import FailingEstimator
from stemsplit.core.config import Config
from stemsplit.core.exceptions import ConfigError, InferenceError, SeparationCancelled
from stemsplit.core.separation_manager import SeparationManager
from stemsplit.models.estimator import ConstantMaskEstimator
from stemsplit.models.model_manager import ModelManager


@pytest.fixture
def mix_path(tmp_path, rng):
    path = tmp_path / "mix.wav"
    sf.write(str(path), rng.uniform(-0.5, 0.5, size=(30000, 2)), 44100, subtype="FLOAT")
    return path


@pytest.fixture
def manager(tmp_path):
    config = Config(tmp_path / "config.json")
    config.set("processing.batch_size", 32)
    manager = SeparationManager(config, ModelManager(tmp_path / "models"))
    manager.set_estimator("2stems", ConstantMaskEstimator({"vocals": 1.0, "accompaniment": 0.0}))
    yield manager
    manager.shutdown()


def test_separate_file(manager, mix_path, tmp_path):
    out_dir = tmp_path / "out"
    progress = []

    outputs = manager.separate_file(
        mix_path, out_dir, "2stems", progress_callback=lambda p, m: progress.append(p), batch_size=16
    )

    assert sorted(outputs) == ["accompaniment", "vocals"]
    assert sorted(p.name for p in out_dir.iterdir()) == ["accompaniment.wav", "vocals.wav"]
    original, _ = sf.read(str(mix_path))
    vocals, sr = sf.read(outputs["vocals"])
    accompaniment, _ = sf.read(outputs["accompaniment"])
    assert sr == 44100
    assert vocals.shape == original.shape
    np.testing.assert_allclose(vocals, original, atol=1e-3)
    assert np.all(accompaniment == 0.0)
    assert progress[-1] == 100.0

    job = manager.get_all_jobs()[0]
    assert job.status == "completed"
    assert job.to_dict()["file_name"] == "mix.wav"
    assert manager.get_stats()["completed"] == 1


def test_explicit_output_format(manager, mix_path, tmp_path):
    outputs = manager.separate_file(mix_path, tmp_path / "out", "2stems", output_format="flac")
    assert all(path.endswith(".flac") for path in outputs.values())


def test_failed_job_leaves_no_files(manager, mix_path, tmp_path):
    manager.set_estimator(
        "2stems",
        FailingEstimator({"vocals": 1.0, "accompaniment": 0.0}, RuntimeError("boom"), after=2),
    )
    out_dir = tmp_path / "out"

    with pytest.raises(InferenceError):
        manager.separate_file(mix_path, out_dir, "2stems", batch_size=4)

    assert list(out_dir.iterdir()) == []
    assert manager.get_all_jobs()[0].status == "failed"


def test_missing_input_raises_os_error(manager, tmp_path):
    with pytest.raises(OSError):
        manager.separate_file(tmp_path / "nope.wav", tmp_path / "out", "2stems")
    assert not (tmp_path / "out").exists()


def test_invalid_override_fails_before_output(manager, mix_path, tmp_path):
    with pytest.raises(ConfigError):
        manager.separate_file(mix_path, tmp_path / "out", "2stems", hop_length=8192)
    assert not (tmp_path / "out").exists()


def test_cancel_pending_job(manager, mix_path, tmp_path):
    job_id = manager.create_job(mix_path, tmp_path / "out", "2stems")

    assert manager.cancel_job(job_id)
    assert manager.get_job(job_id).status == "cancelled"
    assert manager.start_job(job_id) is None
    with pytest.raises(SeparationCancelled):
        manager.run_job(job_id)
    assert not (tmp_path / "out").exists()
    assert not manager.cancel_job("no-such-job")


def test_start_job_runs_in_background(manager, mix_path, tmp_path):
    job_id = manager.create_job(mix_path, tmp_path / "out", "2stems")
    future = manager.start_job(job_id)

    outputs = future.result(timeout=60)

    assert set(outputs) == {"vocals", "accompaniment"}
    assert manager.get_job(job_id).status == "completed"
