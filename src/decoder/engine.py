"""Decode one block from a stream of samples with one parameter set.

A :class:`BlockDecoder` is created for every attempt at a block. It owns the
per-track state and the bit buffers, finds the flux transitions on each track
and passes them to the decoder for the tape's encoding. The block is over when
that decoder classifies it and the following interblock gap has been skipped.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .clock import ClockAverager
from .config import (
    MAXBLOCK,
    PKWW_DEFAULT_WIDTH,
    PKWW_MAX_WIDTH,
    PKWW_PEAKHEIGHT,
    BlockType,
    DecodeOptions,
    Mode,
    RunState,
    mode_name,
    parity,
)
from .density import DensityEstimator
from .errors import DecoderError
from .gcr import GCRDecoder
from .modebase import ModeDecoder
from .nrzi import NRZIDecoder
from .parmsets import Parmset
from .pe import PEDecoder
from .peaks import lookfor_differentiated_zerocrossing, lookfor_zerocrossing
from .results import Attempt, BlockBuffers, BlockResult
from .skew import PeakStats, SkewCompensator
from .tracks import TrackState, adjust_agc, new_tracks

if TYPE_CHECKING:
    from src.io.samples import Sample, SampleSource

LOGGER = logging.getLogger(__name__)

MIN_WINDOW_WIDTH = 3
MAX_SAMPLES_PER_BIT = 100

MODE_DECODERS: dict[Mode, type[ModeDecoder]] = {
    Mode.PE: PEDecoder,
    Mode.NRZI: NRZIDecoder,
    Mode.GCR: GCRDecoder,
}


def window_width(parms: Parmset, run: RunState) -> int:
    """Width of the peak-detect window in samples for the current density."""
    if not run.bpi:
        return PKWW_DEFAULT_WIDTH
    width = min(PKWW_MAX_WIDTH, int(parms.pkww_bitfrac / (run.bpi * run.ips * run.sample_deltat)))
    return max(MIN_WINDOW_WIDTH, width)


def interblock_samples(gap_secs: float, dt: float) -> int:
    return int(gap_secs / dt)


class BlockDecoder:
    """State of one decoding attempt of one block."""

    def __init__(
        self,
        run: RunState,
        opts: DecodeOptions,
        parms: Parmset,
        parmset_index: int,
        skew: SkewCompensator,
        stats: PeakStats,
        estimator: DensityEstimator | None = None,
    ) -> None:
        if run.mode not in MODE_DECODERS:
            raise DecoderError(f"no decoder for mode {mode_name(run.mode)}")
        self.run = run
        self.opts = opts
        self.parms = parms
        self.ntrks = run.ntrks
        self.dt = run.sample_deltat
        self.skew = skew
        self.stats = stats
        self.estimator = estimator

        self.result = BlockResult(parmset=parmset_index)
        self.buffers = BlockBuffers.allocate()
        self.now = 0.0
        self.t_blockstart = 0.0
        self.interblock_counter = 0
        self.num_trks_idle = run.ntrks
        self.endblock_done = False
        self.expected_parity = run.parity

        init_clkavg = 0.0 if estimator is not None or not run.bpi else run.bitspacing
        self.width = window_width(parms, run)
        self.tracks = new_tracks(run.ntrks, self.width, init_clkavg, parms.clk_factor)
        self.primed = [False] * run.ntrks
        skew.reset_fifos()
        self.mode = MODE_DECODERS[run.mode](self)

    # helpers used by the mode decoders

    def mask(self, t: TrackState) -> int:
        return 1 << (self.ntrks - 1 - t.trknum)

    def store_bit(self, t: TrackState, bit: int, t_bit: float, faked: bool = False) -> None:
        """Record a bit for the track at its current position in the block."""
        mask = self.mask(t)
        ndx = t.datacount
        data = self.buffers.data
        if bit:
            data[ndx] |= mask
        else:
            data[ndx] &= ~mask
        if faked:
            self.buffers.faked[ndx] |= mask
        else:
            self.buffers.faked[ndx] &= ~mask
        self.buffers.times[ndx] = t_bit
        if t.datacount < MAXBLOCK:
            t.datacount += 1

    def buffers_room(self, t: TrackState) -> int:
        return MAXBLOCK - t.datacount

    def adjust_clock(self, clock: ClockAverager, delta: float) -> None:
        parms = self.parms
        clock.adjust(delta, parms.clk_window, parms.clk_alpha, self.mode.constant_clock())

    def adjust_agc(self, t: TrackState) -> None:
        if self.opts.find_zeros:
            return
        adjust_agc(t, self.parms)

    def record_peakstat(self, bitspacing: float, peaktime: float, trknum: int) -> None:
        self.stats.record(bitspacing, peaktime, trknum)

    def set_expected_parity(self, blklength: int) -> None:
        self.expected_parity = self.run.expected_parity_for(blklength)

    def count_parity_errors(self, length: int) -> int:
        errs = 0
        for i in range(length):
            if parity(self.buffers.data[i]) != self.expected_parity:
                if self.result.first_error < 0:
                    self.result.first_error = i
                errs += 1
        return errs

    def summarize_tracks(self) -> None:
        """Fill in the block's length range, bit spacing and AGC range from the tracks."""
        result = self.result
        result.minbits = MAXBLOCK
        result.maxbits = 0
        avg = 0.0
        for t in self.tracks:
            if t.datacount:
                avg += (t.t_lastbit - t.t_firstbit) / t.datacount
            result.minbits = min(result.minbits, t.datacount)
            result.maxbits = max(result.maxbits, t.datacount)
            result.alltrk_max_agc_gain = max(result.alltrk_max_agc_gain, t.max_agc_gain)
            result.alltrk_min_agc_gain = min(result.alltrk_min_agc_gain, t.min_agc_gain)
        result.avg_bit_spacing = avg / self.ntrks

    def start_interblock_gap(self, gap_secs: float) -> None:
        self.interblock_counter = interblock_samples(gap_secs, self.dt)

    # peak detection

    def _lookfor_peak(self, t: TrackState) -> None:
        w = t.window
        w.add(t.v_now)
        scale = t.v_avg_height / PKWW_PEAKHEIGHT / t.agc_gain
        kind = w.check(self.parms.pkww_rise * scale, self.parms.min_peak * scale)
        if kind > 0:
            t.v_top = w.maxv
            t.t_top = w.refine(w.maxv, True, t.agc_gain, self.now, self.dt, t.trknum)
            self._up_transition(t)
        elif kind < 0:
            t.v_bot = w.minv
            t.t_bot = w.refine(w.minv, False, t.agc_gain, self.now, self.dt, t.trknum)
            self._down_transition(t)

    def _transition(self, t: TrackState) -> None:
        t.peakcount += 1
        if t.idle:
            self.num_trks_idle -= 1
            t.idle = False
            self.mode.after_idle(t)

    def _up_transition(self, t: TrackState) -> None:
        self._transition(t)
        if self.estimator is not None:
            if self.estimator.transition(t.t_top - t.t_lastpeak):
                self.result.blktype = BlockType.ABORTED
        else:
            self.mode.top(t)
        t.v_lasttop = t.v_top
        t.v_lastpeak = t.v_top
        t.t_prevlastpeak = t.t_lastpeak
        t.t_lastpeak = t.t_top

    def _down_transition(self, t: TrackState) -> None:
        self._transition(t)
        if self.estimator is not None:
            if self.estimator.transition(t.t_bot - t.t_lastpeak):
                self.result.blktype = BlockType.ABORTED
        else:
            self.mode.bot(t)
        t.v_lastbot = t.v_bot
        t.t_lastbot = t.t_bot
        t.v_lastpeak = t.v_bot
        t.t_prevlastpeak = t.t_lastpeak
        t.t_lastpeak = t.t_bot

    def process_sample(self, sample: "Sample") -> BlockType:
        """Feed one sample to every track; return the block type once the block is done."""
        self.now = sample.time
        voltages = self.skew.apply(sample.voltages) if self.skew.active else sample.voltages
        if not self.interblock_counter:
            self.mode.before_tracks()
            for t, v in zip(self.tracks, voltages):
                t.v_now = v
                if not self.primed[t.trknum]:
                    self.primed[t.trknum] = True
                    t.window.start(v)
                    t.v_lastpeak = v
                    t.t_lastpeak = self.now
                    continue
                if self.opts.find_zeros:
                    if self.opts.differentiate:
                        lookfor_differentiated_zerocrossing(t, self.now, self.dt,
                                                            self._up_transition, self._down_transition)
                    else:
                        lookfor_zerocrossing(t, self.now, self._up_transition, self._down_transition)
                else:
                    self._lookfor_peak(t)
                if self.mode.after_track(t):
                    break
        if self.interblock_counter:
            self.interblock_counter -= 1
            if self.interblock_counter:
                return BlockType.NONE
        return self.result.blktype

    def decode(self, source: "SampleSource") -> Attempt:
        """Read samples until this attempt classifies a block or the input ends."""
        did_processing = False
        endfile = False
        blktype = BlockType.NONE
        while blktype == BlockType.NONE:
            sample = source.read()
            if sample is None:
                if did_processing:
                    self.mode.force_end_of_block()
                endfile = True
                break
            if not self.run.said_rates:
                if not self.opts.quiet:
                    self._log_configuration(sample.time)
                self.run.said_rates = True
            did_processing = True
            blktype = self.process_sample(sample)
        return Attempt(
            result=self.result,
            buffers=self.buffers,
            end_position=source.tell(),
            end_time=self.now,
            t_blockstart=self.t_blockstart,
            endfile=endfile,
        )

    def _log_configuration(self, first_time: float) -> None:
        run, opts = self.run, self.opts
        LOGGER.info("execution-time configuration:")
        if run.ntrks_from_order:
            LOGGER.info("  we set ntrks=%d as implied by the -order string \"%s\"", run.ntrks, opts.order)
        line = (f"  {run.ntrks} track {mode_name(run.mode)} encoding, "
                f"{'odd' if self.expected_parity else 'even'} parity, {int(run.bpi)} BPI at {int(run.ips)} IPS")
        if run.bpi:
            line += f" ({1e6 / (run.bpi * run.ips):.2f} usec/bit)"
        LOGGER.info(line)
        LOGGER.info("  first sample is at time %.8f seconds on the tape", first_time)
        if opts.subsample > 1:
            LOGGER.info("  subsampling every %d samples", opts.subsample)
        if opts.invert:
            LOGGER.info("  inverting the data polarity")
        if opts.reverse:
            LOGGER.info("  the tape was read backwards")
        line = f"  sampling rate is {int(1.0 / self.dt):,} Hz ({self.dt * 1e6:.2f} usec)"
        samples_per_bit = int(1 / (run.bpi * run.ips * self.dt)) if run.bpi else 0
        if run.bpi:
            line += f", or about {samples_per_bit} samples per bit"
        LOGGER.info(line)
        if samples_per_bit > MAX_SAMPLES_PER_BIT:
            LOGGER.warning("  ---> Warning: excessive samples per bit; consider using the -subsample option")
        if opts.find_zeros:
            LOGGER.info("  will look for zero crossings, not peaks")
        else:
            LOGGER.info("  peak detection window width is %d samples (%.2f usec)",
                        self.width, self.width * self.dt * 1e6)
        order = []
        for trk in run.head_to_trk[:run.ntrks]:
            name = "p" if trk == run.ntrks - 1 else str(trk)
            if trk == 0:
                name += "(msb)"
            if trk == run.ntrks - 2:
                name += "(lsb)"
            order.append(name)
        LOGGER.info("  input data order: %s", "".join(order))
