"""Writers for decoded tape data: one .bin file per tape file, or one SIMH .tap file."""

from __future__ import annotations

import logging
import struct
from pathlib import Path
from typing import BinaryIO

LOGGER = logging.getLogger(__name__)

TAP_TAPEMARK = 0x00000000
TAP_END_OF_MEDIUM = 0xFFFFFFFF
TAP_ERROR_FLAG = 0x80000000


class BlockWriter:
    """Destination for decoded blocks and tapemarks.

    Without TAP format each tape file goes to ``<base>.NNN.bin``, or to a
    name taken from an IBM HDR1 label. With TAP format everything goes to
    ``<base>.tap`` with a 4-byte little-endian length before and after
    each record.
    """

    def __init__(self, base: str, tap_format: bool = False, quiet: bool = False) -> None:
        self.base = base
        self.tap_format = tap_format
        self.quiet = quiet
        self.fp: BinaryIO | None = None
        self.path: Path | None = None
        self.numfiles = 0
        self.numfilebytes = 0
        self.numfileblks = 0
        self.numoutbytes = 0
        self.numblks = 0
        self.hdr1_label = False
        self.data_start_time = 0.0
        self.created: list[Path] = []

    @property
    def is_open(self) -> bool:
        return self.fp is not None

    def _marker(self, value: int) -> None:
        self.fp.write(struct.pack("<I", value))
        self.numoutbytes += 4

    def create_datafile(self, now: float, name: str | None = None) -> Path:
        """Open the next output file; ``name`` comes from a tape label."""
        if self.fp is not None:
            self.close_file(now)
        if name:
            path = Path(f"{name}.bin")
        elif self.tap_format:
            path = Path(f"{self.base}.tap")
        else:
            path = Path(f"{self.base}.{self.numfiles + 1:03d}.bin")
        if not self.quiet:
            LOGGER.info("creating file \"%s\"", path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.fp = path.open("wb")
        self.path = path
        self.created.append(path)
        self.numfiles += 1
        self.numfilebytes = 0
        self.numfileblks = 0
        if self.data_start_time == 0:
            self.data_start_time = now
        return path

    def close_file(self, now: float) -> None:
        if self.fp is None:
            return
        self.fp.close()
        self.fp = None
        if not self.quiet:
            LOGGER.info("%s was closed at time %.8f after %s data bytes were extracted from %d blocks",
                        self.path, now, f"{self.numfilebytes:,}", self.numfileblks)

    def tapemark(self, now: float) -> None:
        if self.tap_format:
            if self.fp is None:
                self.create_datafile(now)
            self._marker(TAP_TAPEMARK)
        elif not self.hdr1_label:
            self.close_file(now)
        self.hdr1_label = False

    def write_block(self, data: bytes, has_errors: bool, now: float) -> None:
        if self.fp is None:
            self.create_datafile(now)
        length = len(data)
        marker = length | (TAP_ERROR_FLAG if has_errors else 0)
        if self.tap_format:
            self._marker(marker)
        self.fp.write(data)
        self.numoutbytes += length
        if self.tap_format:
            if length & 1:
                self.fp.write(b"\0")
                self.numoutbytes += 1
            self._marker(marker)
        self.numfilebytes += length
        self.numfileblks += 1
        self.numblks += 1

    def finish(self, now: float) -> None:
        if self.tap_format and self.fp is None and not self.created:
            # nothing was decoded; still leave an image holding just the end marker
            self.create_datafile(now)
        if self.tap_format and self.fp is not None:
            self._marker(TAP_END_OF_MEDIUM)
        self.close_file(now)
