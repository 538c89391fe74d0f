"""Outcome of one decoding attempt of a block, and its data buffers."""

from __future__ import annotations

import math
from dataclasses import dataclass, field

from .config import MAXBLOCK, BlockType, Mode


@dataclass
class BlockBuffers:
    """Per-attempt bit buffers; one entry per bit time across all tracks."""

    data: list[int] = field(default_factory=list)
    faked: list[int] = field(default_factory=list)
    times: list[float] = field(default_factory=list)

    @classmethod
    def allocate(cls, size: int = MAXBLOCK + 1) -> "BlockBuffers":
        return cls([0] * size, [0] * size, [0.0] * size)


@dataclass
class BlockResult:
    parmset: int = 0
    blktype: BlockType = BlockType.NONE
    minbits: int = 0
    maxbits: int = 0
    avg_bit_spacing: float = 0.0
    missed_midbits: int = 0
    corrected_bits: int = 0
    gcr_bad_dgroups: int = 0
    faked_tracks: int = 0
    track_mismatch: int = 0
    vparity_errs: int = 0
    ecc_errs: int = 0
    crc_errs: int = 0
    lrc_errs: int = 0
    gcr_bad_sequence: int = 0
    first_error: int = -1
    crc: int = 0
    lrc: int = 0
    alltrk_max_agc_gain: float = 0.0
    alltrk_min_agc_gain: float = math.inf

    @property
    def errcount(self) -> int:
        return (self.track_mismatch + self.vparity_errs + self.ecc_errs
                + self.crc_errs + self.lrc_errs + self.gcr_bad_dgroups + self.gcr_bad_sequence)

    @property
    def warncount(self) -> int:
        return self.missed_midbits + self.corrected_bits


@dataclass
class Attempt:
    """One decoding of a block with one parameter set."""

    result: BlockResult
    buffers: BlockBuffers
    end_position: object = None
    end_time: float = 0.0
    t_blockstart: float = 0.0
    endfile: bool = False

    @property
    def length(self) -> int:
        return self.result.minbits


def block_bytes(buffers: BlockBuffers, length: int, add_parity: bool, ntrks: int) -> bytes:
    """Assemble output bytes: drop the parity bit, or keep it as the high bit."""
    out = bytearray(length)
    for i in range(length):
        d = buffers.data[i]
        b = d >> 1
        if add_parity:
            b |= (d & 1) << (ntrks - 1)
        out[i] = b & 0xFF
    return bytes(out)


def format_block_errors(result: BlockResult, mode: Mode, buffers: BlockBuffers | None = None,
                        length: int = 0) -> str:
    """Short summary of a block's errors and warnings for the log."""
    parts = []
    if result.errcount:
        text = f"{result.errcount} err{'s' if result.errcount != 1 else ''}"
        if result.track_mismatch:
            text += f", {result.track_mismatch} bit track mismatch"
        if result.vparity_errs:
            text += f", {result.vparity_errs} parity"
        if result.crc_errs:
            text += f", {result.crc_errs} CRC"
        if result.lrc_errs:
            text += ", 1 LRC"
        if result.ecc_errs:
            text += f", {result.ecc_errs} ECC"
        if result.gcr_bad_dgroups:
            text += f", {result.gcr_bad_dgroups} bad dgroups"
        if result.gcr_bad_sequence:
            text += f", {result.gcr_bad_sequence} bad sequence"
        parts.append(text)
    else:
        parts.append("ok")
    if result.warncount:
        text = f", {result.warncount} warning{'s' if result.warncount != 1 else ''}"
        if mode == Mode.NRZI and result.corrected_bits:
            text += (f", {result.corrected_bits} bits corrected on "
                     f"{bin(result.faked_tracks).count('1')} trks")
        if mode == Mode.GCR and result.corrected_bits:
            text += f", {result.corrected_bits} corrected bits"
        if mode == Mode.PE and result.corrected_bits and buffers is not None:
            faked_bits = 0
            faked_tracks = 0
            for i in range(min(length, len(buffers.faked))):
                faked_bits += bin(buffers.faked[i]).count("1")
                faked_tracks |= buffers.faked[i]
            text += f", {faked_bits} faked bits on {bin(faked_tracks).count('1')} trks"
        parts.append(text)
    return "".join(parts)
