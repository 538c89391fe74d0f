"""Per-track decoding state and automatic gain control."""

from __future__ import annotations

import math
from dataclasses import dataclass, field

from .clock import ClockAverager
from .config import AGC_MAX_VALUE, AGC_MAX_WINDOW, PKWW_PEAKHEIGHT
from .errors import DecoderError
from .parmsets import Parmset
from .peaks import PeakWindow


@dataclass(slots=True)
class TrackState:
    trknum: int
    v_now: float = 0.0
    v_prev: float = 0.0
    v_last_raw: float = 0.0

    v_top: float = 0.0
    t_top: float = 0.0
    v_lasttop: float = 0.0
    v_bot: float = 0.0
    t_bot: float = 0.0
    v_lastbot: float = 0.0
    t_lastbot: float = 0.0
    v_lastpeak: float = 0.0
    t_lastpeak: float = 0.0
    t_prevlastpeak: float = 0.0

    zerocross_up_pending: bool = False
    zerocross_dn_pending: bool = False
    t_firstzero: float = 0.0
    t_lastzero: float = 0.0

    window: PeakWindow = field(default_factory=PeakWindow)

    v_avg_height: float = PKWW_PEAKHEIGHT
    v_avg_height_sum: float = 0.0
    v_avg_height_count: int = 0
    agc_gain: float = 1.0
    max_agc_gain: float = 0.0
    min_agc_gain: float = math.inf
    v_heights: list[float] = field(default_factory=lambda: [0.0] * AGC_MAX_WINDOW)
    heightndx: int = 0

    clock: ClockAverager = field(default_factory=ClockAverager)
    t_lastbit: float = 0.0
    t_firstbit: float = 0.0
    t_lastclock: float = 0.0
    t_clkwindow: float = 0.0
    t_pulse_adj: float = 0.0
    t_peakdelta: float = 0.0
    t_peakdeltaprev: float = 0.0
    bit1_up: bool = False
    clknext: bool = False
    datacount: int = 0
    peakcount: int = 0
    lastdatabit: int = 0
    idle: bool = True
    datablock: bool = False
    lastbits: int = 0
    resync_bitcount: int = 0


def new_tracks(ntrks: int, window_width: int, init_clkavg: float, clk_factor: float) -> list[TrackState]:
    tracks = []
    for trknum in range(ntrks):
        t = TrackState(trknum)
        t.window.reset(window_width)
        t.clock.reset(init_clkavg)
        t.t_clkwindow = init_clkavg / 2 * clk_factor
        tracks.append(t)
    return tracks


def accumulate_avg_height(t: TrackState, parms: Parmset, check_order: bool = True) -> None:
    """Add the latest peak-to-peak height to the running preamble average."""
    if check_order and t.v_top <= t.v_bot:
        return
    t.v_avg_height_sum += t.v_top - t.v_bot
    t.v_avg_height_count += 1
    if parms.agc_window:
        t.v_heights[t.heightndx] = t.v_top - t.v_bot
        t.heightndx += 1
        if t.heightndx >= parms.agc_window:
            t.heightndx = 0


def compute_avg_height(t: TrackState) -> None:
    if t.v_avg_height_count:
        t.v_avg_height = t.v_avg_height_sum / t.v_avg_height_count
        if t.v_avg_height <= 0:
            raise DecoderError(f"trk {t.trknum} avg peak-to-peak voltage isn't positive")
        t.v_avg_height_count = 0
        t.v_avg_height_sum = 0.0


def adjust_agc(t: TrackState, parms: Parmset) -> None:
    """Update the track's gain from recent peak-to-peak heights."""
    if parms.agc_window and parms.agc_alpha:
        raise DecoderError("inconsistent AGC parameters: both agc_window and agc_alpha are set")
    lastheight = t.v_lasttop - t.v_lastbot
    if lastheight <= 0:
        return
    if parms.agc_alpha:
        gain = t.v_avg_height / lastheight
        gain = parms.agc_alpha * gain + (1 - parms.agc_alpha) * t.agc_gain
    elif parms.agc_window:
        t.v_heights[t.heightndx] = lastheight
        t.heightndx += 1
        if t.heightndx >= parms.agc_window:
            t.heightndx = 0
        minheight = min(t.v_heights[:parms.agc_window])
        gain = t.v_avg_height / minheight if minheight > 0 else AGC_MAX_VALUE
    else:
        return
    gain = min(gain, AGC_MAX_VALUE)
    t.agc_gain = gain
    t.max_agc_gain = max(t.max_agc_gain, gain)
    t.min_agc_gain = min(t.min_agc_gain, gain)
