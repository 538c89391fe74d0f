"""Phase encoding (1600 BPI) decoder.

Every bit has a transition in the middle of its cell; a 1 is one polarity
and a 0 the other. Between two equal bits there is also a clock transition
at the cell boundary, which is recognised because it comes early and is
skipped. The first transition of the preamble is a 0, which tells us the
polarity of the signal.
"""

from __future__ import annotations

import logging

from .config import (
    AGC_ENDBASE,
    AGC_STARTBASE,
    PE_IBG_SECS,
    PE_IDLE_FACTOR,
    PE_IGNORE_POSTBITS,
    PE_MAX_POSTBITS,
    PE_MIN_PREBITS,
    PE_TAPEMARK_MIN_PEAKS,
    BlockType,
    Mode,
)
from .modebase import ModeDecoder
from .tracks import TrackState, accumulate_avg_height, compute_avg_height

LOGGER = logging.getLogger(__name__)

TAPEMARK_DATA_TRACKS = (0, 2, 5, 6, 7, 8)
TAPEMARK_EMPTY_TRACKS = (1, 3, 4)


class PEDecoder(ModeDecoder):
    mode = Mode.PE

    def after_track(self, t: TrackState) -> bool:
        ctx = self.ctx
        if not t.idle and ctx.now - t.t_lastpeak > t.clock.avg * PE_IDLE_FACTOR:
            t.v_lastpeak = t.v_now
            t.idle = True
            ctx.num_trks_idle += 1
            if ctx.num_trks_idle >= ctx.ntrks:
                self.end_of_block()
        return False

    def after_idle(self, t: TrackState) -> None:
        if t.datablock and t.datacount > 1:
            self._generate_fake_bits(t)

    def top(self, t: TrackState) -> None:
        self._peak(t, True, t.t_top)

    def bot(self, t: TrackState) -> None:
        self._peak(t, False, t.t_bot)

    def _addbit(self, t: TrackState, bit: int, faked: bool, t_bit: float) -> None:
        ctx = self.ctx
        if t.t_lastbit == 0:
            t.t_lastbit = t_bit - ctx.run.bitspacing
        if not t.datablock:
            return
        t.lastdatabit = bit
        if not t.idle and not faked:
            ctx.adjust_clock(t.clock, t_bit - t.t_lastbit)
            t.t_clkwindow = t.clock.avg / 2 * ctx.parms.clk_factor
        t.t_lastbit = t_bit
        if t.datacount == 0:
            t.t_firstbit = t_bit
        ctx.store_bit(t, bit, t_bit, faked)
        if faked:
            ctx.result.corrected_bits += 1

    def _fake_bit_count(self, t: TrackState, t_peak: float) -> int:
        """How many bits a track missed while it was idle.

        Enough to catch up with the shortest track that is still getting data,
        not counting a bit it already has for the cell of the peak that ended
        the dropout. If no other track is active, estimate from the time since
        the last bit.
        """
        ctx = self.ctx
        active = [other.datacount - int(other.t_lastbit > t_peak - other.clock.avg / 4)
                  for other in ctx.tracks if other is not t and not other.idle]
        if active:
            return max(min(active) - t.datacount, 0)
        return int((ctx.now - t.t_lastbit) / t.clock.avg) if t.clock.avg > 0 else 0

    def _is_clock_peak(self, t: TrackState, t_peak: float) -> bool:
        """Whether the peak that ended a dropout falls on a cell boundary."""
        ctx = self.ctx
        bits = [other.t_lastbit for other in ctx.tracks if other is not t and not other.idle and other.t_lastbit]
        ref = max(bits) if bits else t.t_lastbit
        if t.clock.avg <= 0:
            return False
        phase = ((t_peak - ref) / t.clock.avg) % 1.0
        return 0.25 < phase < 0.75

    def _generate_fake_bits(self, t: TrackState) -> None:
        """Fill a dropout with copies of the last bit seen before it."""
        ctx = self.ctx
        t_peak = max(t.t_top, t.t_bot)
        numbits = min(self._fake_bit_count(t, t_peak), ctx.buffers_room(t))
        if numbits <= 0:
            return
        clknext = self._is_clock_peak(t, t_peak)
        LOGGER.debug("trk %d adding %d fake %d bits to %d bits at %.8f",
                     t.trknum, numbits, t.lastdatabit, t.datacount, ctx.now)
        for _ in range(numbits):
            self._addbit(t, t.lastdatabit, True, ctx.now)
        t.t_lastbit = 0.0
        t.clknext = clknext

    def _preamble_peak(self, t: TrackState, is_top: bool, t_peak: float) -> None:
        ctx = self.ctx
        if t.peakcount == 1:
            t.bit1_up = not is_top
            if not t.bit1_up and not ctx.run.warned_polarity:
                LOGGER.info("*** NOTE: we detected reverse PE signal polarity, but we can handle it")
                ctx.run.warned_polarity = True
            ctx.t_blockstart = ctx.now
        if t.peakcount > PE_MIN_PREBITS and t.bit1_up == is_top and t_peak - t.t_lastpeak > t.t_clkwindow:
            # the first 1 after the run of 0s; the data starts with the next bit
            t.datablock = True
            compute_avg_height(t)
        else:
            t.clknext = is_top != t.bit1_up
            if AGC_STARTBASE <= t.peakcount <= AGC_ENDBASE:
                accumulate_avg_height(t, ctx.parms)

    def _peak(self, t: TrackState, is_top: bool, t_peak: float) -> None:
        ctx = self.ctx
        if not t.datablock:
            self._preamble_peak(t, is_top, t_peak)
            return
        ctx.record_peakstat(t.clock.avg, t_peak - t.t_lastpeak, t.trknum)
        # the first peak after faked bits
        resumed = t.datacount > 0 and t.t_lastbit == 0.0
        missed = not resumed and (t_peak + t.t_pulse_adj) - t.t_lastpeak > t.t_clkwindow
        if not t.clknext or missed:
            bit = t.bit1_up if is_top else not t.bit1_up
            self._addbit(t, int(bit), False, t_peak)
            t.clknext = True
        else:
            t.clknext = False
        if resumed:
            t.t_pulse_adj = 0.0
        else:
            t.t_pulse_adj = ((t_peak - t.t_lastpeak) - t.clock.avg / (1 if missed else 2)) * ctx.parms.pulse_adj
        ctx.adjust_agc(t)

    def _is_tapemark(self) -> bool:
        tracks = self.ctx.tracks
        if self.ctx.ntrks != 9:
            return False
        return (all(tracks[i].datacount <= 2 and tracks[i].peakcount > PE_TAPEMARK_MIN_PEAKS
                    for i in TAPEMARK_DATA_TRACKS)
                and all(tracks[i].peakcount <= 2 for i in TAPEMARK_EMPTY_TRACKS))

    def _trim_postamble(self, t: TrackState) -> None:
        """Remove the trailing 0s and the 1 that precedes them."""
        ctx = self.ctx
        result = ctx.result
        mask = ctx.mask(t)
        for postamble_bits in range(PE_MAX_POSTBITS + 1):
            if t.datacount == 0:
                break
            t.datacount -= 1
            if ctx.buffers.faked[t.datacount] & mask and result.corrected_bits > 0:
                result.corrected_bits -= 1
            if postamble_bits > PE_IGNORE_POSTBITS and ctx.buffers.data[t.datacount] & mask:
                break

    def end_of_block(self) -> None:
        ctx = self.ctx
        if ctx.endblock_done:
            return
        ctx.endblock_done = True
        result = ctx.result
        if self._is_tapemark():
            result.blktype = BlockType.TAPEMARK
            return
        avg = sum((t.t_lastbit - t.t_firstbit) / t.datacount for t in ctx.tracks if t.datacount)
        for t in ctx.tracks:
            self._trim_postamble(t)
        ctx.summarize_tracks()
        result.avg_bit_spacing = avg / ctx.ntrks
        ctx.set_expected_parity(result.maxbits)
        if result.maxbits == 0:
            if ctx.estimator is None:
                result.blktype = BlockType.NOISE
            return
        result.blktype = BlockType.BLOCK
        ctx.start_interblock_gap(PE_IBG_SECS)
        result.track_mismatch = result.maxbits - result.minbits
        result.vparity_errs = ctx.count_parity_errors(result.minbits)
