"""
Model registry, per-model config.yaml overrides and the torch estimator adapter.
"""

from __future__ import annotations

import numpy as np
import pytest

torch = pytest.importorskip("torch")

from stemsplit.core.exceptions import ConfigError, InferenceError  # noqa: E402
from stemsplit.models.estimator import (  # noqa: E402
    ConstantMaskEstimator,
    TorchMaskEstimator,
    resolve_device,
)
from stemsplit.models.model_manager import ModelManager, existing_models  # noqa: E402


class SoftMask(torch.nn.Module):
    """(frames, channels, bins) -> (frames, 2, channels, bins): m and 1 - m."""

    def forward(self, x):
        m = x / (x + 1.0)
        return torch.stack([m, 1.0 - m], dim=1)


def test_registry():
    assert existing_models() == [
        "2stems",
        "4stems",
        "5stems",
        "2stems-16kHz",
        "4stems-16kHz",
        "5stems-16kHz",
    ]


def test_builtin_model_info(tmp_path):
    manager = ModelManager(tmp_path)

    info = manager.get_model_info("4stems")
    assert info.stems == ["vocals", "drums", "bass", "other"]
    assert info.sample_rate == 44100
    assert info.max_bins == 1024
    assert not info.installed
    assert manager.get_model_info("5stems-16kHz").max_bins == 1536


def test_unknown_model(tmp_path):
    with pytest.raises(ConfigError, match="Unknown model"):
        ModelManager(tmp_path).get_model_info("7stems")


def test_yaml_overrides(tmp_path):
    model_dir = tmp_path / "2stems"
    model_dir.mkdir()
    (model_dir / "config.yaml").write_text(
        "hop_length: 512\nwindow: hamming\nbogus: 1\n", encoding="utf-8"
    )
    (model_dir / "model.pt").write_bytes(b"")

    info = ModelManager(tmp_path).get_model_info("2stems")

    assert info.hop_length == 512
    assert info.window == "hamming"
    assert info.installed
    assert not hasattr(info, "bogus")


def test_custom_model_directory(tmp_path):
    model_dir = tmp_path / "karaoke"
    model_dir.mkdir()
    (model_dir / "config.yaml").write_text("stems: [lead, backing]\nsample_rate: 48000\n", encoding="utf-8")

    manager = ModelManager(tmp_path)
    info = manager.get_model_info("karaoke")

    assert info.stems == ["lead", "backing"]
    assert info.sample_rate == 48000
    assert "karaoke" in [m["name"] for m in manager.list_models()]


@pytest.mark.parametrize("text", ["hop_length: [1, 2", "- just\n- a list\n"])
def test_invalid_yaml(tmp_path, text):
    model_dir = tmp_path / "2stems"
    model_dir.mkdir()
    (model_dir / "config.yaml").write_text(text, encoding="utf-8")
    with pytest.raises(ConfigError):
        ModelManager(tmp_path).get_model_info("2stems")


def test_models_dir_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("STEMSPLIT_MODELS_DIR", str(tmp_path))
    assert ModelManager().models_dir == tmp_path


def test_missing_weights(tmp_path):
    with pytest.raises(FileNotFoundError):
        ModelManager(tmp_path).load_estimator("2stems", device="cpu")


def test_load_torchscript_estimator(tmp_path):
    model_dir = tmp_path / "2stems"
    model_dir.mkdir()
    torch.jit.save(torch.jit.script(SoftMask()), str(model_dir / "model.pt"))

    est = ModelManager(tmp_path).load_estimator("2stems", device="cpu")

    assert est.stems == ("vocals", "accompaniment")
    assert est.max_bins == 1024
    masks = est.infer(np.ones((3, 2, 2049), dtype=complex))
    assert masks.shape == (2, 3, 2, 2049)
    np.testing.assert_allclose(masks[0, :, :, :1024], 0.5, atol=1e-6)
    assert np.all(masks[:, :, :, 1024:] == 0.0)


def test_torch_estimator_full_band():
    est = TorchMaskEstimator(SoftMask(), ["a", "b"], device="cpu")
    batch = np.full((4, 1, 9), 3.0 + 4.0j)

    masks = est.infer(batch)

    assert masks.shape == (2, 4, 1, 9)
    np.testing.assert_allclose(masks[0], 5.0 / 6.0, atol=1e-6)
    np.testing.assert_allclose(masks[0] + masks[1], 1.0, atol=1e-6)


def test_torch_estimator_shape_mismatch():
    est = TorchMaskEstimator(SoftMask(), ["a", "b", "c"], device="cpu")
    with pytest.raises(InferenceError):
        est.infer(np.ones((2, 1, 9), dtype=complex))


def test_resolve_device():
    assert resolve_device("cpu").type == "cpu"
    assert resolve_device("auto").type in ("cpu", "cuda")


def test_constant_estimator():
    est = ConstantMaskEstimator({"x": 0.25, "y": 1.0})
    masks = est.infer(np.zeros((2, 1, 3), dtype=complex))
    assert est.stems == ("x", "y")
    assert masks.shape == (2, 2, 1, 3)
    assert np.all(masks[0] == 0.25)
