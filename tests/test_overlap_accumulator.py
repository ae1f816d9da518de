import math

import numpy as np
import pytest

from TIMECUBE.Utility.RESAMPLE.TIMECUBE_OVERLAP_ACCUMULATOR import (
    ActiveFrameSet,
    iter_bin_weights,
    max_active_frames,
    overlap_weight,
)


@pytest.mark.parametrize(
    "start,end",
    [(0.0, 1.0), (0.5, 1.5), (0.25, 3.75), (2.0, 2.1), (1.9999, 2.0001), (0.0, 7.0)],
)
def test_weights_sum_to_span(start, end):
    total = sum(w for _, w in iter_bin_weights(start, end))
    assert math.isclose(total, end - start, rel_tol=0, abs_tol=1e-12)


def test_full_bin_record_touches_one_bin():
    assert list(iter_bin_weights(2.0, 3.0)) == [(2, 1.0)]


def test_half_bin_split():
    assert list(iter_bin_weights(0.5, 1.5)) == [(0, 0.5), (1, 0.5)]


def test_overlap_weight_outside_is_zero():
    assert overlap_weight(0.0, 1.0, 3) == 0.0
    assert overlap_weight(1.2, 1.7, 1) == pytest.approx(0.5)


def test_max_active_frames():
    assert max_active_frames(1.0) == 2
    assert max_active_frames(2.5) == 4


def _sink(store):
    def _write(k, pixels):
        assert k not in store
        store[k] = pixels.copy()

    return _write


def test_contribute_allocates_zero_filled_and_accumulates():
    active = ActiveFrameSet((2, 3))
    plane = np.ones((2, 3), dtype=np.float32)
    active.contribute(0, plane, 0.25)
    active.contribute(0, plane * 2, 0.5)

    frame = active.get(0)
    np.testing.assert_allclose(frame.pixels, 1.25)
    assert frame.n_contributions == 2
    assert frame.weight_sum == pytest.approx(0.75)
    assert frame.pixels.dtype == np.float32


def test_contribute_rejects_wrong_shape():
    active = ActiveFrameSet((2, 3))
    with pytest.raises(ValueError):
        active.contribute(0, np.ones((3, 2), dtype=np.float32), 1.0)


def test_flush_below_is_ascending_and_exclusive():
    active = ActiveFrameSet((1, 1))
    plane = np.ones((1, 1), dtype=np.float32)
    for k in (3, 1, 2, 0):
        active.contribute(k, plane, 1.0)

    store = {}
    flushed = active.flush_below(2, _sink(store))

    assert flushed == [0, 1]
    assert active.bins() == [2, 3]
    assert sorted(store) == [0, 1]
    assert active.low_water_mark == 2


def test_contribute_below_low_water_mark_raises():
    active = ActiveFrameSet((1, 1))
    active.flush_below(5, lambda k, p: None)
    with pytest.raises(ValueError):
        active.contribute(4, np.ones((1, 1), dtype=np.float32), 1.0)


def test_flush_all_empties_set():
    active = ActiveFrameSet((1, 1))
    plane = np.ones((1, 1), dtype=np.float32)
    active.contribute(7, plane, 1.0)
    active.contribute(8, plane, 1.0)

    store = {}
    assert active.flush_all(_sink(store)) == [7, 8]
    assert len(active) == 0
    assert active.n_flushed == 2
    assert active.flush_all(_sink(store)) == []


def test_working_set_stays_bounded_for_monotonic_stream():
    active = ActiveFrameSet((1, 1))
    plane = np.ones((1, 1), dtype=np.float32)
    span = 1.5
    store = {}
    for i in range(200):
        s = i * 0.75
        active.flush_below(int(math.floor(s)), _sink(store))
        for k, w in iter_bin_weights(s, s + span):
            active.contribute(k, plane, w)
    active.flush_all(_sink(store))

    assert active.peak_size <= max_active_frames(span)
    # Every bin written exactly once, and the total weight is preserved.
    assert sorted(store) == list(range(len(store)))
    assert sum(float(p.sum()) for p in store.values()) == pytest.approx(200 * span)
