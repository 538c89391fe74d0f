"""Flux transition position statistics and head skew compensation.

Peak statistics histogram the time between each transition and the one
before it on the same track, relative to the nominal bit spacing. For NRZI
and GCR the average position per track shows how much each head leads the
others; delaying the early tracks by that much aligns them.
"""

from __future__ import annotations

import logging
import math

import numpy as np

from .config import (
    DESKEW_PEAKDIFF_WARNING,
    DESKEW_STDDEV_WARNING,
    MAXSKEWSAMP,
    PEAK_STATS_NUMBUCKETS,
    Mode,
)

LOGGER = logging.getLogger(__name__)

RANGE_FACTOR = {Mode.NRZI: 1.0, Mode.PE: 1.2, Mode.GCR: 3.0}


class PeakStats:
    """Per-track histogram of transition spacing."""

    def __init__(self, ntrks: int, mode: Mode) -> None:
        self.ntrks = ntrks
        self.mode = mode
        self.reset()

    def reset(self) -> None:
        self.initialized = False
        self.leftbin = 0.0
        self.binwidth = 0.0
        self.counts = np.zeros((self.ntrks, PEAK_STATS_NUMBUCKETS), dtype=np.int64)
        self.trksums = np.zeros(self.ntrks, dtype=np.int64)

    def _start(self, bitspacing: float) -> None:
        spread = bitspacing * RANGE_FACTOR.get(self.mode, 1.0)
        binwidth = spread / PEAK_STATS_NUMBUCKETS
        # nearest 0.1 usec
        self.binwidth = int(binwidth * 10e6 + 0.5) * 1e-6 / 10.0
        if self.binwidth <= 0:
            self.binwidth = 0.1e-6
        leftbin = bitspacing - spread / 2
        self.leftbin = int(leftbin / self.binwidth) * self.binwidth
        self.initialized = True

    def record(self, bitspacing: float, peaktime: float, trknum: int) -> None:
        if not self.initialized:
            self._start(bitspacing)
        bucket = int((peaktime - self.leftbin) / self.binwidth)
        if bucket < 0:
            self.counts[trknum, 0] += 1
        elif bucket >= PEAK_STATS_NUMBUCKETS:
            self.counts[trknum, PEAK_STATS_NUMBUCKETS - 1] += 1
        else:
            self.counts[trknum, bucket] += 1
            self.trksums[trknum] += 1

    def bin_positions_usec(self) -> np.ndarray:
        """Left edge of each inner bin, in usec."""
        bkt = np.arange(1, PEAK_STATS_NUMBUCKETS - 1)
        return self.binwidth * 1e6 * bkt + self.leftbin * 1e6

    def averages_usec(self) -> tuple[np.ndarray, np.ndarray]:
        """Mean and standard deviation of each track's inner-bin positions."""
        positions = self.bin_positions_usec()
        inner = self.counts[:, 1:PEAK_STATS_NUMBUCKETS - 1].astype(float)
        sums = self.trksums.astype(float)
        with np.errstate(divide="ignore", invalid="ignore"):
            avg = np.where(sums > 0, inner @ positions / sums, 0.0)
            dev = positions[np.newaxis, :] - avg[:, np.newaxis]
            var = np.where(sums > 0, (inner * dev * dev).sum(axis=1) / sums, 0.0)
        return avg, np.sqrt(var)

    def min_transitions(self) -> int:
        return int(self.trksums.min()) if self.ntrks else 0

    @property
    def total(self) -> int:
        return int(self.trksums.sum())


class SkewCompensator:
    """Per-track sample delay lines."""

    def __init__(self, ntrks: int) -> None:
        self.delays = [0] * ntrks
        self.given = False
        self.max_delay_percent = 0.0
        self.reset_fifos()

    def reset_fifos(self) -> None:
        self.fifos = [[0.0] * max(d, 1) for d in self.delays]
        self.ndx = [0] * len(self.delays)
        self.filled = [0] * len(self.delays)

    @property
    def active(self) -> bool:
        return any(self.delays)

    def set_delay(self, trknum: int, seconds: float, dt: float) -> None:
        delay = int((seconds + dt / 2) / dt)
        if delay > MAXSKEWSAMP:
            LOGGER.warning("---> Warning: head %d skew of %.1f usec is too big", trknum, seconds * 1e6)
        self.delays[trknum] = min(delay, MAXSKEWSAMP)

    def apply(self, voltages: list[float]) -> list[float]:
        """Return the voltages to process now, with each track delayed by its skew."""
        out = list(voltages)
        for trk, delay in enumerate(self.delays):
            if delay == 0:
                continue
            fifo = self.fifos[trk]
            ndx = self.ndx[trk]
            if self.filled[trk] < delay:
                self.filled[trk] += 1
            else:
                out[trk] = fifo[ndx]
            fifo[ndx] = voltages[trk]
            ndx += 1
            self.ndx[trk] = 0 if ndx >= delay else ndx
        return out

    def display(self, dt: float, stats: PeakStats | None = None) -> None:
        for trk, delay in enumerate(self.delays):
            if self.given or stats is None:
                source = "as specified by \"skew=\""
            else:
                source = f"based on {int(stats.trksums[trk])} observed flux transitions"
            LOGGER.info("  track %d delayed by %d clocks (%.2f usec) %s", trk, delay, delay * dt * 1e6, source)


def compute_deskew(stats: PeakStats, skew: SkewCompensator, bitspacing: float, dt: float,
                   do_set: bool, quiet: bool = False) -> bool:
    """Derive per-track delays from the peak statistics.

    Returns True when the spread of mean positions and the largest standard
    deviation are both small fractions of the bit spacing.
    """
    avg, stddev = stats.averages_usec()
    maxavg = float(avg.max())
    minavg = float(avg.min())
    maxstddev = float(stddev.max())
    if do_set:
        for trk in range(stats.ntrks):
            seconds = (maxavg - float(avg[trk])) / 1e6 if stats.trksums[trk] > 0 else 0.0
            skew.set_delay(trk, seconds, dt)
        skew.reset_fifos()
        if not quiet:
            skew.display(dt, stats)
    bit_usec = bitspacing * 1e6
    peak_frac = (maxavg - minavg) / bit_usec
    stddev_frac = maxstddev / bit_usec
    if not quiet:
        LOGGER.info("  the earliest peak is %.2f usec, and the latest peak is %.2f usec", minavg, maxavg)
        LOGGER.info(
            "  that peak difference of %.2f usec, and the largest standard deviation of %.2f usec, "
            "are %.1f%% and %.1f%% of the nominal bit spacing",
            maxavg - minavg, maxstddev, peak_frac * 100, stddev_frac * 100,
        )
    if do_set:
        skew.max_delay_percent = peak_frac * 100
    if math.isnan(peak_frac) or math.isnan(stddev_frac):
        return False
    return peak_frac < DESKEW_PEAKDIFF_WARNING and stddev_frac < DESKEW_STDDEV_WARNING
