"""Bit-spacing (clock rate) estimate kept per track, and for NRZI per block."""

from __future__ import annotations

from .config import CLKRATE_WINDOW


class ClockAverager:
    """Running estimate of the time between bits.

    The estimate is updated from measured bit spacings by one of three
    strategies chosen by the parameter set: a moving window of the last
    ``clk_window`` spacings, exponential smoothing with ``clk_alpha``, or a
    constant supplied by the caller.
    """

    __slots__ = ("avg", "spacings", "ndx")

    def __init__(self, init_avg: float = 0.0) -> None:
        self.reset(init_avg)

    def reset(self, init_avg: float) -> None:
        self.avg = init_avg
        self.ndx = 0
        self.spacings = [init_avg] * CLKRATE_WINDOW

    def adjust(self, delta: float, clk_window: int, clk_alpha: float, constant: float) -> None:
        if clk_window > 0:
            old = self.spacings[self.ndx]
            self.spacings[self.ndx] = delta
            self.ndx += 1
            if self.ndx >= clk_window:
                self.ndx = 0
            self.avg += (delta - old) / clk_window
        elif clk_alpha > 0:
            self.avg = clk_alpha * delta + (1 - clk_alpha) * self.avg
        else:
            self.avg = constant

    def force(self, delta: float) -> None:
        """Set the clock to ``delta`` and forget all history."""
        self.spacings = [delta] * CLKRATE_WINDOW
        self.avg = delta
