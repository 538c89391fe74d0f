from __future__ import annotations

import pytest

from src.decoder.clock import ClockAverager
from src.decoder.config import AGC_MAX_VALUE
from src.decoder.errors import DecoderError
from src.decoder.parmsets import Parmset
from src.decoder.peaks import PeakWindow
from src.decoder.tracks import TrackState, adjust_agc, new_tracks

DT = 1e-6


def _window(values: list[float]) -> PeakWindow:
    w = PeakWindow(len(values))
    w.start(values[0])
    for v in values[1:]:
        w.add(v)
    return w


def test_window_finds_a_top_peak_and_its_time() -> None:
    w = _window([0.0, 0.5, 2.0, 0.4, 0.0])

    assert w.check(0.5, 0.0) == 1
    t_peak = w.refine(w.maxv, True, 1.0, now=100 * DT, dt=DT)

    assert t_peak == pytest.approx(98 * DT)
    # blinded until the peak leaves the window
    assert [w.check(0.5, 0.0) for _ in range(3)] == [0, 0, 0]


def test_window_interpolates_a_flat_topped_peak() -> None:
    w = _window([0.0, 1.999, 2.0, 0.4, 0.0])
    w.check(0.5, 0.0)

    assert w.refine(2.0, True, 1.0, now=100 * DT, dt=DT) == pytest.approx(97.5 * DT)


def test_window_finds_a_bottom_peak() -> None:
    w = _window([0.0, -0.5, -2.0, -0.4, 0.0])

    assert w.check(0.5, 0.0) == -1
    assert w.refine(w.minv, False, 1.0, now=10 * DT, dt=DT) == pytest.approx(8 * DT)


def test_window_requires_rise_and_minimum_height() -> None:
    small = _window([0.0, 0.1, 0.3, 0.1, 0.0])
    assert small.check(0.5, 0.0) == 0
    assert small.check(0.1, 1.0) == 0
    assert small.check(0.1, 0.0) == 1


def test_window_keeps_min_and_max_as_values_leave() -> None:
    w = _window([5.0, 0.0, 1.0])
    assert w.maxv == 5.0
    w.add(0.5)
    assert w.maxv == 1.0
    assert w.minv == 0.0


def test_refine_rejects_a_peak_at_the_left_edge() -> None:
    w = _window([2.0, 0.1, 0.0, 0.0, 0.0])
    with pytest.raises(DecoderError, match="left edge"):
        w.refine(2.0, True, 1.0, now=DT, dt=DT)


def test_clock_moving_window() -> None:
    clock = ClockAverager(10e-6)
    clock.adjust(12e-6, clk_window=2, clk_alpha=0.0, constant=0.0)
    assert clock.avg == pytest.approx(11e-6)
    clock.adjust(12e-6, clk_window=2, clk_alpha=0.0, constant=0.0)
    assert clock.avg == pytest.approx(12e-6)


def test_clock_exponential_and_constant() -> None:
    clock = ClockAverager(10e-6)
    clock.adjust(20e-6, clk_window=0, clk_alpha=0.5, constant=0.0)
    assert clock.avg == pytest.approx(15e-6)

    clock.adjust(20e-6, clk_window=0, clk_alpha=0.0, constant=7e-6)
    assert clock.avg == pytest.approx(7e-6)

    clock.force(3e-6)
    assert clock.avg == 3e-6
    assert clock.spacings[0] == 3e-6


def test_new_tracks_start_idle_with_the_nominal_clock() -> None:
    tracks = new_tracks(9, 14, 12.5e-6, 1.5)

    assert [t.trknum for t in tracks] == list(range(9))
    assert all(t.idle and t.window.width == 14 for t in tracks)
    assert tracks[0].t_clkwindow == pytest.approx(12.5e-6 / 2 * 1.5)


def test_agc_exponential_gain() -> None:
    t = TrackState(0)
    t.v_avg_height = 4.0
    t.v_lasttop, t.v_lastbot = 1.0, -1.0

    adjust_agc(t, Parmset(agc_alpha=0.5))

    assert t.agc_gain == pytest.approx(0.5 * 2.0 + 0.5 * 1.0)
    assert t.max_agc_gain == pytest.approx(1.5)


def test_agc_window_uses_the_smallest_recent_height() -> None:
    t = TrackState(0)
    t.v_avg_height = 4.0
    parms = Parmset(agc_window=2)

    t.v_lasttop, t.v_lastbot = 2.0, -2.0
    adjust_agc(t, parms)
    # the other slot is still empty
    assert t.agc_gain == AGC_MAX_VALUE

    t.v_lasttop, t.v_lastbot = 1.5, -1.5
    adjust_agc(t, parms)
    assert t.agc_gain == pytest.approx(4.0 / 3.0)


def test_agc_rejects_both_strategies() -> None:
    t = TrackState(0)
    t.v_lasttop, t.v_lastbot = 1.0, -1.0
    with pytest.raises(DecoderError):
        adjust_agc(t, Parmset(agc_window=3, agc_alpha=0.2))
