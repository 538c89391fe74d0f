"""GCR (6250 BPI) decoder.

Like NRZI a 1 is a transition, but every track keeps its own clock. Runs of
0s are limited to two, so the spacing between peaks tells how many 0s came
in between. Once the raw bits of all tracks are in, each track's 5-bit
storage codes are mapped back to 4-bit data, a data group at a time, and
the ECC of each group is checked.
"""

from __future__ import annotations

import logging
from enum import Enum

from .config import (
    AGC_ENDBASE,
    AGC_STARTBASE,
    GCR_IBG_SECS,
    GCR_IDLE_THRESH,
    GCR_MAX_MISMATCH,
    GCR_MIN_BLOCK,
    GCR_TAPEMARK_MAX,
    GCR_TAPEMARK_MIN,
    BlockType,
    Mode,
    parity,
)
from .gcr_ecc import compute_ecc, correct_errors, from_correction_word, to_correction_word
from .modebase import ModeDecoder
from .tracks import TrackState, accumulate_avg_height, compute_avg_height

LOGGER = logging.getLogger(__name__)

MARK1 = 0b00111
MARK2 = 0b11100
SYNC = 0b11111

# 5-bit storage code to 4-bit data; 16+x marks an invalid code whose nearest valid code means x
DATAMAP = (
    16 + 10, 16 + 9, 16 + 2, 16 + 3, 16 + 5, 16 + 5, 16 + 6, 16 + 7,
    16 + 10, 9, 10, 11, 16 + 13, 13, 14, 15,
    16 + 2, 16 + 5, 2, 3, 16 + 5, 5, 6, 7,
    16 + 0, 0, 8, 1, 16 + 12, 4, 12, 16 + 15,
)

# 4-bit data to 5-bit storage code
ENCODE = (25, 27, 18, 19, 29, 21, 22, 23, 26, 9, 10, 11, 30, 13, 14, 15)

# track that the control subgroups are recognised on
MASTER_TRACK = 0

TAPEMARK_DATA_TRACKS = (0, 2, 5, 6, 7, 8)
TAPEMARK_EMPTY_TRACKS = (1, 3, 4)


class GroupState(Enum):
    PREAMBLE = "preamble"
    DATA_A = "data A"
    DATA_B = "data B"
    RESYNC = "resync"
    RESIDUAL_A = "residual A"
    RESIDUAL_B = "residual B"
    CRC_A = "crc A"
    CRC_B = "crc B"
    POSTAMBLE = "postamble"


def get_sgroups(data: list[int], bitnum: int) -> list[int]:
    """The 5-bit storage subgroup of each track starting at ``bitnum``."""
    sgroups = [0] * 9
    for word in data[bitnum:bitnum + 5]:
        for trk in range(8, -1, -1):
            sgroups[trk] = ((sgroups[trk] << 1) & 0x1F) | (word & 1)
            word >>= 1
    return sgroups


class GCRDecoder(ModeDecoder):
    mode = Mode.GCR

    def after_track(self, t: TrackState) -> bool:
        ctx = self.ctx
        if t.datablock and ctx.now > t.t_lastpeak + GCR_IDLE_THRESH * t.clock.avg:
            t.datablock = False
            t.idle = True
            ctx.num_trks_idle += 1
            if ctx.num_trks_idle >= ctx.ntrks:
                self.end_of_block()
                return True
        return False

    def _addbit(self, t: TrackState, bit: int, t_bit: float) -> None:
        ctx = self.ctx
        t.t_lastbit = t_bit
        if t.datacount == 0:
            ctx.t_blockstart = t_bit
            t.t_firstbit = t_bit
            t.max_agc_gain = t.agc_gain
        if not t.datablock:
            t.t_lastclock = t_bit - t.clock.avg
            t.datablock = True
        ctx.store_bit(t, bit, t_bit)
        t.lastbits = ((t.lastbits << 1) | bit) & 0x1F
        if t.datacount % 5 == 0:
            if t.lastbits == MARK2:
                t.resync_bitcount = 1
            if t.lastbits == MARK1 and t.resync_bitcount > 0:
                t.resync_bitcount = 0
        if t.resync_bitcount > 0:
            # a resync burst is all 1s; take the clock from it
            if t.resync_bitcount == 5:
                t.clock.force(t.t_peakdelta)
            t.resync_bitcount += 1

    def _checkzeros(self, t: TrackState, delta: float) -> int:
        """Add the 0s implied by a long gap since the last peak; return the bits the gap spans."""
        ctx = self.ctx
        parms = ctx.parms
        numbits = 1
        if not t.datablock:
            return numbits
        t.t_peakdeltaprev = t.t_peakdelta
        t.t_peakdelta = delta
        if delta - t.t_pulse_adj > parms.z1pt * t.clock.avg:
            numbits += 1
            zerobitloc = t.t_lastpeak + t.clock.avg
            self._addbit(t, 0, zerobitloc)
            if delta - t.t_pulse_adj > parms.z2pt * t.clock.avg:
                numbits += 1
                zerobitloc += t.clock.avg
                self._addbit(t, 0, zerobitloc)
        if t.datacount > 3 and numbits == 1 and ctx.buffers.data[t.datacount - 2] & ctx.mask(t):
            # the middle of three 1s in a row
            ctx.adjust_clock(t.clock, t.t_peakdeltaprev)
        t.t_pulse_adj = parms.pulse_adj * (numbits * t.clock.avg - delta)
        return numbits

    def _peak(self, t: TrackState, t_peak: float) -> None:
        ctx = self.ctx
        if t.t_lastclock != 0:
            ctx.record_peakstat(t.clock.avg, t_peak - t.t_lastpeak, t.trknum)
        self._checkzeros(t, t_peak - t.t_lastpeak)
        self._addbit(t, 1, t_peak)

    def top(self, t: TrackState) -> None:
        self._peak(t, t.t_top)
        if AGC_STARTBASE <= t.peakcount <= AGC_ENDBASE:
            accumulate_avg_height(t, self.ctx.parms, check_order=False)
        elif t.peakcount > AGC_ENDBASE:
            if t.v_avg_height_count:
                compute_avg_height(t)
            else:
                self.ctx.adjust_agc(t)

    def bot(self, t: TrackState) -> None:
        self._peak(t, t.t_bot)
        if t.peakcount > AGC_ENDBASE and t.v_avg_height_count == 0:
            self.ctx.adjust_agc(t)

    def _is_tapemark(self) -> bool:
        tracks = self.ctx.tracks
        return (all(GCR_TAPEMARK_MIN <= tracks[i].datacount <= GCR_TAPEMARK_MAX for i in TAPEMARK_DATA_TRACKS)
                and all(tracks[i].peakcount <= 2 for i in TAPEMARK_EMPTY_TRACKS))

    def end_of_block(self) -> None:
        ctx = self.ctx
        if ctx.endblock_done:
            return
        ctx.endblock_done = True
        result = ctx.result
        ctx.summarize_tracks()
        ctx.set_expected_parity(result.maxbits)
        if result.maxbits <= GCR_MIN_BLOCK:
            result.blktype = BlockType.NOISE
        elif self._is_tapemark():
            result.blktype = BlockType.TAPEMARK
        elif result.maxbits - result.minbits > GCR_MAX_MISMATCH:
            result.track_mismatch = result.maxbits - result.minbits
            result.blktype = BlockType.BADBLOCK
        else:
            GroupDecoder(ctx).run()

    def force_end_of_block(self) -> None:
        self.end_of_block()


class GroupDecoder:
    """Turns the raw 5-bit storage groups of a GCR block into data bytes."""

    def __init__(self, ctx) -> None:
        self.ctx = ctx
        self.result = ctx.result
        self.raw = ctx.buffers.data
        self.out: list[int] = [0] * (self.result.maxbits + 16)
        self.bytenum = 0
        self.bad_parity_in_dgroup = 0

    def _bad_subgroup(self, trk: int, sgroup: int, bitnum: int, msg: str) -> None:
        LOGGER.debug("bad dgroup at trk %d bit %d: %02X, %s", trk, bitnum, sgroup, msg)
        self.result.gcr_bad_dgroups += 1

    def _store_dgroup(self, sgroups: list[int], bitnum: int) -> None:
        """Map one subgroup per track to four bytes at ``bytenum``."""
        out = self.out
        base = self.bytenum
        mask = 1
        for trk in range(8, -1, -1):
            nibble = DATAMAP[sgroups[trk]]
            if nibble >= 16:
                self._bad_subgroup(trk, sgroups[trk], bitnum, "invalid 5-bit code")
                nibble -= 16
            for bitpos in range(3, -1, -1):
                if nibble & 1:
                    out[base + bitpos] |= mask
                else:
                    out[base + bitpos] &= ~mask
                nibble >>= 1
            mask <<= 1
        for i in range(base, base + 4):
            if parity(out[i]) != self.ctx.expected_parity:
                self.bad_parity_in_dgroup += 1
                if self.result.first_error < 0:
                    self.result.first_error = i
        self.bytenum += 4

    def _ecc_ok(self) -> bool:
        group = self.out[self.bytenum - 8:self.bytenum]
        return compute_ecc(group) == group[7] >> 1

    def _finish_data_group(self) -> None:
        result = self.result
        start = self.bytenum - 8
        if not self._ecc_ok():
            LOGGER.debug("ecc bad in dgroup ending at byte %d", self.bytenum - 1)
            result.ecc_errs += 1
            if result.first_error < 0:
                result.first_error = self.bytenum - 1
        if self.bad_parity_in_dgroup and self.ctx.opts.correct:
            words = [to_correction_word(d) for d in self.out[start:self.bytenum]]
            if correct_errors(words, 0x01):
                self.bad_parity_in_dgroup = 0
                for i, word in enumerate(words):
                    self.out[start + i] = from_correction_word(word)
                    if parity(self.out[start + i]) != self.ctx.expected_parity:
                        self.bad_parity_in_dgroup += 1
                result.corrected_bits += 1
                if not self._ecc_ok():
                    LOGGER.debug("the ecc is wrong after correcting the dgroup ending at byte %d",
                                 self.bytenum - 1)
                    result.ecc_errs += 1
        result.vparity_errs += self.bad_parity_in_dgroup
        self.bytenum -= 1

    def run(self) -> None:
        ctx = self.ctx
        result = self.result
        result.blktype = BlockType.BLOCK
        result.first_error = -1
        state = GroupState.PREAMBLE
        bitnum = 0
        while bitnum <= result.maxbits - 5:
            sgroups = get_sgroups(self.raw, bitnum)
            bitnum += 5
            subgroup = sgroups[MASTER_TRACK]
            if state is GroupState.PREAMBLE:
                if subgroup == MARK1:
                    state = GroupState.DATA_A
                    self.bytenum = 0
            elif state is GroupState.DATA_A:
                if subgroup == MARK2:
                    state = GroupState.RESYNC
                elif subgroup == SYNC:
                    state = GroupState.RESIDUAL_A
                else:
                    self.bad_parity_in_dgroup = 0
                    self._store_dgroup(sgroups, bitnum)
                    state = GroupState.DATA_B
            elif state is GroupState.DATA_B:
                self._store_dgroup(sgroups, bitnum)
                self._finish_data_group()
                state = GroupState.DATA_A
            elif state is GroupState.RESYNC:
                if subgroup == MARK1:
                    state = GroupState.DATA_A
                elif subgroup != SYNC:
                    LOGGER.debug("subgroup %02X other than SYNC or MARK1 during resync at bit %d", subgroup, bitnum)
                    result.gcr_bad_sequence += 1
            elif state is GroupState.RESIDUAL_A:
                self._store_dgroup(sgroups, bitnum)
                state = GroupState.RESIDUAL_B
            elif state is GroupState.RESIDUAL_B:
                self._store_dgroup(sgroups, bitnum)
                state = GroupState.CRC_A
            elif state is GroupState.CRC_A:
                self._store_dgroup(sgroups, bitnum)
                state = GroupState.CRC_B
            elif state is GroupState.CRC_B:
                self._store_dgroup(sgroups, bitnum)
                # the residual character counts the valid bytes of the residual group
                residual_count = self.out[self.bytenum - 2] >> 6
                self.bytenum -= 16 - residual_count
                state = GroupState.POSTAMBLE
        if state is not GroupState.POSTAMBLE:
            LOGGER.debug("block ended in the %s state", state.value)
            result.gcr_bad_sequence += 1
        length = max(self.bytenum, 0)
        self.raw[:length] = self.out[:length]
        result.minbits = result.maxbits = length
        ctx.start_interblock_gap(GCR_IBG_SECS)
