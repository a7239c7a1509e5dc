"""
Stem assembler: lead-in trimming, interleaving, segment flushes and the
per-stem completion signal.
"""

from __future__ import annotations

import numpy as np
import pytest

from stemsplit.audio.assembler import StemAssembler
from stemsplit.audio.io import MemorySink
from stemsplit.core.exceptions import ReconstructionError


def _open_sink(stems, channels=2):
    sink = MemorySink()
    sink.open(stems, 44100, channels)
    return sink


def test_flushes_interleaved_segments_and_signals_completion():
    sink = _open_sink(["A", "B"])
    writes = []
    original_write = sink.write

    def record(stem, frames):
        writes.append((stem, frames.shape))
        original_write(stem, frames)

    sink.write = record
    assembler = StemAssembler(["A", "B"], 2, sink, segment_size=4, lead_in=3)
    planar = np.arange(20, dtype=float).reshape(2, 10)

    # the first 3 positions are lead-in padding
    assembler.append("A", 0, np.zeros((2, 3)))
    assembler.append("A", 3, planar[:, :5])
    assembler.append("A", 8, planar[:, 5:])
    assembler.append("B", 3, planar)

    assert not assembler.completed["A"].is_set()
    assert [shape for stem, shape in writes if stem == "A"] == [(5, 2), (5, 2)]

    assembler.finish(10)

    assert assembler.completed["A"].is_set()
    assert assembler.completed["B"].is_set()
    assert sink.closed == {"A", "B"}
    result = sink.commit()
    np.testing.assert_array_equal(result["A"], planar.T)
    np.testing.assert_array_equal(result["B"], planar.T)


def test_partial_segment_flushed_at_finish():
    sink = _open_sink(["A"], channels=1)
    assembler = StemAssembler(["A"], 1, sink, segment_size=100, lead_in=0)
    assembler.append("A", 0, np.ones((1, 7)))

    assert sink.commit()["A"].shape == (0, 1)
    assembler.finish(7)
    assert sink.commit()["A"].shape == (7, 1)


def test_non_contiguous_append_rejected():
    assembler = StemAssembler(["A"], 1, _open_sink(["A"], 1), segment_size=10)
    assembler.append("A", 0, np.ones((1, 4)))
    with pytest.raises(ReconstructionError):
        assembler.append("A", 5, np.ones((1, 4)))


@pytest.mark.parametrize("emitted,total", [(4, 5), (6, 5)])
def test_sample_count_mismatch_blocks_completion(emitted, total):
    sink = _open_sink(["A"], 1)
    assembler = StemAssembler(["A"], 1, sink, segment_size=100)
    assembler.append("A", 0, np.ones((1, emitted)))

    with pytest.raises(ReconstructionError) as excinfo:
        assembler.finish(total)
    assert excinfo.value.stage == "assembly"
    assert not assembler.completed["A"].is_set()
    assert sink.closed == set()
