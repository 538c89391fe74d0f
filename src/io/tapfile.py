"""Reader for SIMH .tap tape images."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator

from src.decoder.errors import TapFormatError

from .sinks import TAP_END_OF_MEDIUM, TAP_ERROR_FLAG, TAP_TAPEMARK

TAP_ERASE_GAP = 0xFFFFFFFE
TAP_RESERVED_BITS = 0x7F000000
TAP_LENGTH_MASK = 0x00FFFFFF


@dataclass(frozen=True)
class TapRecord:
    """One item of a .tap image; ``kind`` is data, tapemark, erase_gap or end."""

    kind: str
    data: bytes = b""
    has_errors: bool = False


def _read_exact(fp: BinaryIO, count: int) -> bytes:
    raw = fp.read(count)
    if len(raw) != count:
        raise TapFormatError("endfile with no end-of-medium marker")
    return raw


def _marker(fp: BinaryIO) -> int:
    return struct.unpack("<I", _read_exact(fp, 4))[0]


def iter_tap(fp: BinaryIO) -> Iterator[TapRecord]:
    while True:
        marker = _marker(fp)
        if marker == TAP_END_OF_MEDIUM:
            yield TapRecord("end")
            return
        if marker == TAP_ERASE_GAP:
            yield TapRecord("erase_gap")
            continue
        if marker == TAP_TAPEMARK:
            yield TapRecord("tapemark")
            continue
        if marker & TAP_RESERVED_BITS:
            raise TapFormatError(f".tap bad marker: {marker:08X}")
        length = marker & TAP_LENGTH_MASK
        data = _read_exact(fp, length)
        if length & 1:
            _read_exact(fp, 1)
        trailer = _marker(fp)
        if trailer & TAP_LENGTH_MASK != length:
            raise TapFormatError(f"bad ending marker: {trailer:08X}")
        yield TapRecord("data", data, bool(marker & TAP_ERROR_FLAG))


def read_tap(path: Path) -> list[TapRecord]:
    with path.open("rb") as fp:
        return list(iter_tap(fp))
