"""NRZI (200/556/800 BPI) decoder.

A 1 is a transition and a 0 is the absence of one, so there is no clock on
each track. A block-wide clock is kept instead; at each bit time the tracks
that had a transition near the expected time get a 1 and the others a 0, and
the clock is nudged towards the average position of the transitions seen.
Eight bit times after the data come the CRC (9-track only) and LRC
characters.
"""

from __future__ import annotations

import logging

from .clock import ClockAverager
from .config import (
    AGC_ENDBASE,
    AGC_STARTBASE,
    NRZI_BADTRK_FACTOR,
    NRZI_IBG_SECS,
    NRZI_MAX_MISMATCH,
    NRZI_MIN_BLOCK,
    NRZI_POSTBLOCK_BITS,
    BlockType,
    Mode,
    parity,
)
from .modebase import ModeDecoder
from .tracks import TrackState, accumulate_avg_height, compute_avg_height

LOGGER = logging.getLogger(__name__)

TAPEMARK_9TRK = 0x26
TAPEMARK_7TRK = 0x1E


def crc_9track(symbols: list[int]) -> int:
    """CRC character of a 9-track NRZI block; symbols are (msb)...(lsb)(p)."""
    crc = 0
    for d in symbols:
        crc ^= d
        if crc & 2:
            crc ^= 0xF0
        lsb = crc & 1
        crc >>= 1
        if lsb:
            crc |= 0x100
    return crc ^ 0x1AF


def lrc(symbols: list[int], crc: int | None = None) -> int:
    """Longitudinal check: XOR of every symbol, and of the CRC if there is one."""
    value = 0
    for d in symbols:
        value ^= d
    if crc is not None:
        value ^= crc
    return value


class NRZIDecoder(ModeDecoder):
    mode = Mode.NRZI

    def __init__(self, ctx) -> None:
        super().__init__(ctx)
        self.clock = ClockAverager(ctx.run.bitspacing if ctx.run.bpi else 0.0)
        self.t_lastclock = 0.0
        self.t_last_midbit = 0.0
        self.datablock = False
        self.post_counter = 0
        self.reset_speed_done = False

    def constant_clock(self) -> float:
        return self.clock.avg

    def before_tracks(self) -> None:
        if self.datablock and self.ctx.now > self.t_lastclock + 2 * self.clock.avg:
            self._zerocheck()

    def force_end_of_block(self) -> None:
        if self.datablock:
            self.end_of_block()

    def _addbit(self, t: TrackState, bit: int, t_bit: float) -> None:
        ctx = self.ctx
        t.t_lastbit = t_bit
        if t.datacount == 0:
            t.t_firstbit = t_bit
            t.max_agc_gain = t.agc_gain
        if not self.datablock:
            self.t_lastclock = t_bit - self.clock.avg
            self.t_last_midbit = self.t_lastclock + ctx.parms.midbit * self.clock.avg
            ctx.t_blockstart = ctx.now
            self.datablock = True
        ctx.store_bit(t, bit, t_bit)
        if self.post_counter > 0 and bit:
            # a late CRC or LRC transition; move the clock up to it
            if self.t_lastclock < t_bit - (2 - ctx.parms.midbit) * self.clock.avg:
                self.t_lastclock = t_bit - 2 * self.clock.avg

    def _peak(self, t: TrackState, t_peak: float) -> None:
        ctx = self.ctx
        if self.t_lastclock != 0 and self.datablock and self.post_counter == 0:
            ctx.record_peakstat(self.clock.avg, t_peak - self.t_lastclock, t.trknum)
        if t_peak < self.t_last_midbit and self.post_counter == 0:
            LOGGER.debug("trk %d peak at %.8f is before the midbit at %.8f", t.trknum, t_peak, self.t_last_midbit)
            ctx.result.missed_midbits += 1
        self._addbit(t, 1, t_peak)

    def top(self, t: TrackState) -> None:
        ctx = self.ctx
        self._peak(t, t.t_top)
        if ctx.opts.reset_speed and not self.reset_speed_done and t.datacount == 2 and t.t_bot > 0:
            self.clock.force(t.t_top - t.t_bot)
            ctx.run.ips = 1 / (self.clock.avg * ctx.run.bpi)
            LOGGER.info("speed was reset to %.2f IPS at %.8f", ctx.run.ips, ctx.now)
            self.reset_speed_done = True
        if AGC_STARTBASE <= t.peakcount <= AGC_ENDBASE:
            accumulate_avg_height(t, ctx.parms)
        elif t.peakcount > AGC_ENDBASE:
            if t.v_avg_height_count:
                compute_avg_height(t)
            else:
                ctx.adjust_agc(t)

    def bot(self, t: TrackState) -> None:
        self._peak(t, t.t_bot)
        if t.peakcount > AGC_ENDBASE and t.v_avg_height_count == 0:
            self.ctx.adjust_agc(t)

    def _correct_error(self, bitndx: int) -> None:
        """Flip the bit on the track with by far the highest gain to fix a parity error."""
        ctx = self.ctx
        gains = sorted(ctx.tracks, key=lambda t: t.agc_gain, reverse=True)
        if len(gains) < 2 or gains[0].agc_gain < NRZI_BADTRK_FACTOR * gains[1].agc_gain:
            return
        bad = gains[0]
        mask = ctx.mask(bad)
        ctx.buffers.data[bitndx] ^= mask
        ctx.result.faked_tracks |= mask
        ctx.result.corrected_bits += 1
        LOGGER.debug("corrected bit %d of trk %d with gain %.2f", bitndx, bad.trknum, bad.agc_gain)

    def _zerocheck(self) -> None:
        """Close out one bit time: a 0 for every track that had no transition."""
        ctx = self.ctx
        parms = ctx.parms
        left = self.t_last_midbit
        right = self.t_lastclock + (1 + parms.midbit) * self.clock.avg
        self.t_last_midbit = right
        numbits = 0
        numlaterbits = 0
        avg_pos = 0.0
        last_complete = -1
        for t in ctx.tracks:
            if left < t.t_lastpeak < right:
                avg_pos += t.t_lastpeak
                numbits += 1
                if left < t.t_prevlastpeak < right and t.datacount > 0:
                    # two peaks in one bit time; keep only the later
                    t.datacount -= 1
                last_complete = t.datacount - 1
            elif left < t.t_prevlastpeak < right:
                avg_pos += t.t_prevlastpeak
                numbits += 1
                last_complete = t.datacount - 2
            elif t.t_lastpeak > right:
                # the peak belongs to the next bit time; put a 0 in front of it
                if t.datacount > 0:
                    t.datacount -= 1
                self._addbit(t, 0, self.t_lastclock + self.clock.avg)
                self._addbit(t, 1, t.t_lastpeak)
                numlaterbits += 1
            else:
                self._addbit(t, 0, self.t_lastclock + self.clock.avg)

        if numbits > 0:
            if self.post_counter == 1:
                # not the end after all
                self.post_counter = 0
            avg_pos /= numbits
            expected = self.t_lastclock + self.clock.avg
            if not self.datablock or self.post_counter > 0:
                adjusted = avg_pos
            else:
                adjusted = expected + parms.pulse_adj * (avg_pos - expected)
            if self.post_counter == 0:
                ctx.adjust_clock(self.clock, adjusted - self.t_lastclock)
            self.t_lastclock = adjusted
            if (ctx.opts.correct and last_complete >= 0
                    and parity(ctx.buffers.data[last_complete]) != ctx.expected_parity):
                self._correct_error(last_complete)
            if self.post_counter:
                self.post_counter += 1
        else:
            if numlaterbits == 0 and self.post_counter == 0:
                self.post_counter = 1
            elif self.post_counter:
                self.post_counter += 1
            self.t_lastclock += self.clock.avg

        if self.post_counter >= NRZI_POSTBLOCK_BITS:
            self.end_of_block()

    def _is_tapemark(self) -> bool:
        ctx = self.ctx
        data = ctx.buffers.data
        if ctx.result.minbits != 9:
            return False
        if ctx.ntrks == 9:
            return data[0] == TAPEMARK_9TRK and data[8] == TAPEMARK_9TRK
        if ctx.ntrks == 7:
            return data[0] == TAPEMARK_7TRK and (data[3] == TAPEMARK_7TRK or data[4] == TAPEMARK_7TRK)
        return False

    def end_of_block(self) -> None:
        ctx = self.ctx
        result = ctx.result
        if ctx.endblock_done:
            return
        ctx.endblock_done = True
        self.datablock = False
        ctx.summarize_tracks()
        ctx.set_expected_parity(result.maxbits)
        if self._is_tapemark():
            result.blktype = BlockType.TAPEMARK
        elif result.maxbits < NRZI_MIN_BLOCK:
            result.blktype = BlockType.NOISE
        elif result.maxbits - result.minbits > NRZI_MAX_MISMATCH:
            result.blktype = BlockType.BADBLOCK
            result.track_mismatch = result.maxbits - result.minbits
        else:
            self._postprocess()
        ctx.num_trks_idle = ctx.ntrks
        ctx.start_interblock_gap(NRZI_IBG_SECS)

    def _postprocess(self) -> None:
        """Strip the CRC and LRC characters off the end and check them."""
        ctx = self.ctx
        result = ctx.result
        data = ctx.buffers.data
        result.blktype = BlockType.BLOCK
        if result.minbits <= 8:
            return
        m = result.minbits
        nine_track = ctx.ntrks == 9
        if nine_track:
            result.crc = data[m - 6] | data[m - 5] | data[m - 4]
            result.lrc = data[m - 1]
        else:
            result.lrc = data[m - 6] | data[m - 5] | data[m - 4]
        result.maxbits -= 8
        result.minbits -= 8
        ctx.set_expected_parity(result.maxbits)
        symbols = data[:result.minbits]
        result.vparity_errs = ctx.count_parity_errors(result.minbits)
        if nine_track:
            crc = crc_9track(symbols)
            if crc != result.crc:
                LOGGER.debug("bad CRC: computed %03X, read %03X", crc, result.crc)
                result.crc_errs += 1
            expected_lrc = lrc(symbols, crc)
        else:
            expected_lrc = lrc(symbols)
        if expected_lrc != result.lrc:
            LOGGER.debug("bad LRC: computed %03X, read %03X", expected_lrc, result.lrc)
            result.lrc_errs += 1
