"""Transition detection on a single track.

Two detectors are available. The default slides a short window over the
samples and reports a top (bottom) peak when the window's maximum (minimum)
rises far enough above (falls below) both window edges. The alternative
looks for zero crossings, optionally on a differentiated signal.
"""

from __future__ import annotations

from typing import Callable

from .config import PEAK_THRESHOLD, ZEROCROSS_PEAK, ZEROCROSS_SLOPE
from .errors import DecoderError


class PeakWindow:
    """Circular window of recent voltages with its running min and max."""

    __slots__ = ("width", "v", "left", "right", "maxv", "minv", "countdown")

    def __init__(self, width: int = 1) -> None:
        self.reset(width)

    def reset(self, width: int) -> None:
        self.width = width
        self.v = [0.0] * width
        self.left = self.right = 0
        self.maxv = self.minv = 0.0
        self.countdown = 0

    def start(self, v_now: float) -> None:
        self.v[0] = v_now
        self.maxv = self.minv = v_now

    def add(self, v_now: float) -> None:
        v = self.v
        width = self.width
        old_left = 0.0
        self.right += 1
        if self.right >= width:
            self.right = 0
        if self.right == self.left:
            old_left = v[self.left]
            self.left += 1
            if self.left >= width:
                self.left = 0
        v[self.right] = v_now
        if v_now > self.maxv:
            self.maxv = v_now
        elif v_now < self.minv:
            self.minv = v_now
        if old_left == self.maxv or old_left == self.minv:
            values = self._values()
            self.maxv = max(values)
            self.minv = min(values)

    def _values(self) -> list[float]:
        if self.left <= self.right:
            return self.v[self.left:self.right + 1]
        return self.v[self.left:] + self.v[:self.right + 1]

    def check(self, required_rise: float, required_min: float) -> int:
        """Return +1 for a top peak, -1 for a bottom peak, 0 for neither."""
        if self.countdown:
            self.countdown -= 1
            return 0
        v_left = self.v[self.left]
        v_right = self.v[self.right]
        maxv = self.maxv
        if (maxv > v_left + required_rise and maxv > v_right + required_rise
                and (required_min == 0 or maxv > required_min)):
            return 1
        minv = self.minv
        if (minv < v_left - required_rise and minv < v_right - required_rise
                and (required_min == 0 or minv < -required_min)):
            return -1
        return 0

    def refine(self, val: float, top: bool, gain: float, now: float, dt: float, trknum: int = 0) -> float:
        """Locate ``val`` in the window and return its interpolated time.

        Blinds the detector until the peak has left the window.
        """
        v = self.v
        width = self.width
        left_distance = 1
        prevndx = -1
        ndx = self.left
        while True:
            if v[ndx] == val:
                if left_distance >= width:
                    raise DecoderError(f"trk {trknum} peak of {val:.3f}V is at right edge, ndx={ndx}")
                if prevndx == -1:
                    raise DecoderError(f"trk {trknum} peak of {val:.3f}V is at left edge, ndx={ndx}")
                nextndx = ndx + 1
                if nextndx >= width:
                    nextndx = 0
                adjustment = 0.0
                if top:
                    val_minus = val - PEAK_THRESHOLD / gain
                    if v[prevndx] > val_minus and v[nextndx] < val_minus:
                        adjustment = -0.5
                    elif v[nextndx] > val_minus and v[prevndx] < val_minus:
                        adjustment = 0.5
                else:
                    val_plus = val + PEAK_THRESHOLD / gain
                    if v[prevndx] < val_plus and v[nextndx] > val_plus:
                        adjustment = -0.5
                    elif v[nextndx] < val_plus and v[prevndx] > val_plus:
                        adjustment = 0.5
                self.countdown = left_distance
                return now - ((width - left_distance) - adjustment) * dt
            left_distance += 1
            if ndx == self.right:
                break
            prevndx = ndx
            ndx += 1
            if ndx >= width:
                ndx = 0
        raise DecoderError(f"Can't find max or min {val:f} in trk {trknum} window at time {now:.8f}")


Transition = Callable[[object], None]


def lookfor_zerocrossing(t, now: float, on_up: Transition, on_down: Transition) -> None:
    """Zero-crossing detector requiring a minimum excursion reached quickly enough."""
    v_now = t.v_now
    if v_now > 0:
        t.zerocross_dn_pending = False
        if t.v_top < v_now:
            t.v_top = v_now
            if t.zerocross_up_pending and t.v_top > ZEROCROSS_PEAK:
                if t.t_top == 0:
                    t.t_top = now
                t.zerocross_up_pending = False
                t.v_bot = 0.0
                if now - t.t_top <= t.clock.avg * ZEROCROSS_SLOPE:
                    on_up(t)
        if t.v_prev < 0 and t.v_bot < -ZEROCROSS_PEAK:
            t.t_top = now
            t.zerocross_up_pending = True
    elif v_now < 0:
        t.zerocross_up_pending = False
        if t.v_bot > v_now:
            t.v_bot = v_now
            if t.zerocross_dn_pending and t.v_bot < -ZEROCROSS_PEAK:
                if t.t_bot == 0:
                    t.t_bot = now
                t.zerocross_dn_pending = False
                t.v_top = 0.0
                if now - t.t_bot <= t.clock.avg * ZEROCROSS_SLOPE:
                    on_down(t)
        if t.v_prev > 0 and t.v_top > ZEROCROSS_PEAK:
            t.t_bot = now
            t.zerocross_dn_pending = True
    t.v_prev = v_now


def lookfor_differentiated_zerocrossing(t, now: float, dt: float, on_up: Transition, on_down: Transition) -> None:
    """Zero-crossing detector for a differentiated signal with small deltas forced to zero.

    A run of exact zeros between the excursions places the crossing at the
    centre of the run.
    """
    v_now = t.v_now
    if v_now > 0:
        if t.v_top < v_now:
            t.v_top = v_now
        if t.zerocross_up_pending:
            t.t_top = (t.t_firstzero + t.t_lastzero) / 2 if t.t_firstzero > 0 else now - dt / 2
            t.zerocross_up_pending = False
            t.t_firstzero = 0.0
            on_up(t)
        if v_now > ZEROCROSS_PEAK:
            t.zerocross_dn_pending = True
            t.t_firstzero = 0.0
            t.v_bot = 0.0
    elif v_now < 0:
        if t.v_bot > v_now:
            t.v_bot = v_now
        if t.zerocross_dn_pending:
            t.t_bot = (t.t_firstzero + t.t_lastzero) / 2 if t.t_firstzero > 0 else now - dt / 2
            t.zerocross_dn_pending = False
            t.t_firstzero = 0.0
            on_down(t)
        if v_now < -ZEROCROSS_PEAK:
            t.zerocross_up_pending = True
            t.t_firstzero = 0.0
            t.v_top = 0.0
    else:
        t.t_lastzero = now
        if t.t_firstzero == 0:
            t.t_firstzero = now
