"""Codec for the .tbin container of digitized tape head voltages.

Layout, all little-endian: a fixed 240-byte header, an optional track order
extension, then a data header followed by packed signed 16-bit samples, one
per track, repeating. A lone -32768 in the first track's position ends the
data.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from datetime import datetime
from typing import BinaryIO

import numpy as np

from src.decoder.config import Mode
from src.decoder.errors import TbinFormatError

HDR_TAG = b"TBINHDR"
TRKORDER_TAG = b"TBINORD"
DAT_TAG = b"DAT"
TBIN_FILE_FORMAT = 1
MAXTRKS = 19

FLAG_NO_REORDER = 0x01
FLAG_TRKORDER_INCLUDED = 0x02
FLAG_INVERTED = 0x04
FLAG_REVERSED = 0x08

END_MARKER = -32768
SAMPLE_MAX = 32767

_TM = "9i"
HEADER_STRUCT = struct.Struct("<8s80sII" + _TM * 3 + "IIIfIIIff")
TRKORDER_STRUCT = struct.Struct(f"<8s{MAXTRKS + 1}s")
DAT_STRUCT = struct.Struct("<4sBBBBQ")
HEADER_SIZE = HEADER_STRUCT.size

EMPTY_TM = (0,) * 9


def tm_from_datetime(when: datetime) -> tuple[int, ...]:
    """C ``struct tm`` fields: years since 1900, months from 0, Sunday is day 0."""
    return (when.second, when.minute, when.hour, when.day, when.month - 1, when.year - 1900,
            (when.weekday() + 1) % 7, when.timetuple().tm_yday - 1, 0)


def datetime_from_tm(tm: tuple[int, ...]) -> datetime | None:
    if tm[5] <= 0:
        return None
    return datetime(tm[5] + 1900, tm[4] + 1, tm[3], tm[2], tm[1], tm[0])


def _cstring(raw: bytes) -> str:
    return raw.split(b"\0", 1)[0].decode("ascii", errors="replace")


@dataclass
class TbinHeader:
    descr: str = ""
    flags: int = 0
    ntrks: int = 0
    tdelta_ns: int = 0
    maxvolts: float = 0.0
    mode: Mode = Mode.UNKNOWN
    bpi: float = 0.0
    ips: float = 0.0
    time_written: tuple[int, ...] = EMPTY_TM
    time_read: tuple[int, ...] = EMPTY_TM
    time_converted: tuple[int, ...] = EMPTY_TM
    trkorder: str | None = None
    format: int = TBIN_FILE_FORMAT

    def pack(self) -> bytes:
        flags = self.flags
        if self.trkorder is not None:
            flags |= FLAG_TRKORDER_INCLUDED
        out = HEADER_STRUCT.pack(
            HDR_TAG, self.descr.encode("ascii", errors="replace")[:79],
            HEADER_SIZE, self.format,
            *self.time_written, *self.time_read, *self.time_converted,
            flags, self.ntrks, self.tdelta_ns, self.maxvolts, 0, 0, int(self.mode),
            self.bpi, self.ips,
        )
        if self.trkorder is not None:
            out += TRKORDER_STRUCT.pack(TRKORDER_TAG, self.trkorder.encode("ascii")[:MAXTRKS])
        return out

    @classmethod
    def read(cls, fp: BinaryIO) -> "TbinHeader":
        raw = fp.read(HEADER_SIZE)
        if len(raw) != HEADER_SIZE:
            raise TbinFormatError("can't read .tbin header")
        fields = HEADER_STRUCT.unpack(raw)
        tag, descr, hdrsize, fmt = fields[:4]
        if tag.rstrip(b"\0") != HDR_TAG:
            raise TbinFormatError(".tbin file missing TBINHDR tag")
        if fmt != TBIN_FILE_FORMAT:
            raise TbinFormatError(f"bad .tbin file header version: {fmt}")
        if hdrsize != HEADER_SIZE:
            raise TbinFormatError(f"bad .tbin hdr size: {hdrsize}, not {HEADER_SIZE}")
        times = fields[4:31]
        flags, ntrks, tdelta, maxvolts, _rsvd1, _rsvd2, mode, bpi, ips = fields[31:]
        try:
            mode = Mode.from_header(mode)
        except ValueError as exc:
            raise TbinFormatError(f"bad .tbin encoding mode {mode}") from exc
        hdr = cls(
            descr=_cstring(descr), flags=flags, ntrks=ntrks, tdelta_ns=tdelta, maxvolts=maxvolts,
            mode=mode, bpi=bpi, ips=ips, time_written=tuple(times[0:9]), time_read=tuple(times[9:18]),
            time_converted=tuple(times[18:27]), format=fmt,
        )
        if flags & FLAG_TRKORDER_INCLUDED:
            ext = fp.read(TRKORDER_STRUCT.size)
            if len(ext) != TRKORDER_STRUCT.size:
                raise TbinFormatError("can't read .tbin trkorder header extension")
            tag, order = TRKORDER_STRUCT.unpack(ext)
            if tag.rstrip(b"\0") != TRKORDER_TAG:
                raise TbinFormatError(".tbin file missing TBINORD tag")
            hdr.trkorder = _cstring(order)
        return hdr


@dataclass
class TbinDat:
    tstart_ns: int = 0
    options: int = 0
    sample_bits: int = 16
    reserved: tuple[int, int] = field(default=(0, 0))

    def pack(self) -> bytes:
        return DAT_STRUCT.pack(DAT_TAG, self.options, self.sample_bits, *self.reserved, self.tstart_ns)

    @classmethod
    def read(cls, fp: BinaryIO) -> "TbinDat":
        raw = fp.read(DAT_STRUCT.size)
        if len(raw) != DAT_STRUCT.size:
            raise TbinFormatError("can't read .tbin dat")
        tag, options, sample_bits, rsvd1, rsvd2, tstart = DAT_STRUCT.unpack(raw)
        if tag.rstrip(b"\0") != DAT_TAG:
            raise TbinFormatError(".tbin file missing DAT tag")
        if sample_bits != 16:
            raise TbinFormatError(f"we support only 16 bits/sample, not {sample_bits}")
        return cls(tstart_ns=tstart, options=options, sample_bits=sample_bits, reserved=(rsvd1, rsvd2))


def quantize(volts: np.ndarray, maxvolts: float) -> tuple[np.ndarray, int, int]:
    """Scale voltages to int16 samples, rounding half away from zero.

    Returns the samples and the counts clipped high and low.
    """
    scaled = volts / maxvolts * SAMPLE_MAX
    values = np.trunc(scaled + np.where(volts < 0, -0.5, 0.5))
    toobig = int(np.count_nonzero(values >= SAMPLE_MAX))
    toosmall = int(np.count_nonzero(values <= -SAMPLE_MAX))
    return np.clip(values, -SAMPLE_MAX, SAMPLE_MAX).astype("<i2"), toobig, toosmall


def end_marker() -> bytes:
    return struct.pack("<h", END_MARKER)
