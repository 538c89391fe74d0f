"""Interpreted dump of decoded blocks as numbers and/or characters.

Each block is one record: a flag, its length, then the bytes in hex or
octal, and/or as characters in one of the tables of :mod:`src.io.charsets`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TextIO

from .charsets import CHARTYPES, char_for

LOGGER = logging.getLogger(__name__)

NUMTYPES = ("hex", "octal", "octal2")


@dataclass(frozen=True)
class TextFormat:
    numtype: str = ""
    chartype: str = ""
    linesize: int = 0
    dataspace: int = 0
    linefeed: bool = False

    def __post_init__(self) -> None:
        if self.numtype and self.numtype not in NUMTYPES:
            raise ValueError(f"unknown number format {self.numtype!r}")
        if self.chartype and self.chartype not in CHARTYPES:
            raise ValueError(f"unknown character set {self.chartype!r}")

    @property
    def doboth(self) -> bool:
        return bool(self.numtype) and bool(self.chartype)

    @property
    def bytes_per_line(self) -> int:
        if self.linesize:
            return self.linesize
        return 32 if self.doboth else 64

    def filename(self, base: str) -> str:
        return f"{base}.{self.numtype}{'.' if self.doboth else ''}{self.chartype}.txt"

    def describe(self) -> str:
        parts = [f"-{p}" for p in (self.numtype, self.chartype) if p]
        if self.linefeed:
            parts.append("-linefeed")
        parts.append(f"-linesize={self.bytes_per_line}")
        if self.dataspace:
            parts.append(f"-dataspace={self.dataspace}")
        return " ".join(parts)


def format_record(data: bytes, fmt: TextFormat, flag: str = " ") -> str:
    """Render one block; continuation lines are indented under the data."""
    linesize = fmt.bytes_per_line
    out = [f"{flag}{len(data):4d}: "]
    line: list[int] = []

    def flush_chars() -> None:
        missing = linesize - len(line)
        nspaces = missing // fmt.dataspace if fmt.dataspace else 0
        nspaces += missing * (2 if fmt.numtype == "hex" else 3)
        out.append(" " * nspaces)
        if fmt.dataspace == 0:
            out.append("  ")
        out.append("".join(char_for(b, fmt.chartype) for b in line))

    i = 0
    while i < len(data):
        ch = data[i]
        if len(line) >= linesize or (fmt.linefeed and ch == 0x0A):
            if fmt.doboth:
                flush_chars()
            out.append("\n       ")
            line = []
        line.append(ch)
        if fmt.numtype == "hex":
            out.append(f"{ch:02X}")
        elif fmt.numtype == "octal" or (fmt.numtype == "octal2" and i == len(data) - 1):
            out.append(f"{ch:03o}")
        elif fmt.numtype == "octal2":
            nxt = data[i + 1]
            out.append(f"{(ch << 8) | nxt:06o}")
            line.append(nxt)
            i += 1
        if fmt.numtype:
            if fmt.dataspace > 0 and len(line) % fmt.dataspace == 0:
                out.append(" ")
        else:
            out.append(char_for(ch, fmt.chartype))
        i += 1
    if fmt.doboth:
        flush_chars()
    return "".join(out) + "\n"


def record_flag(errcount: int, warncount: int) -> str:
    if errcount and warncount:
        return "X"
    if errcount:
        return "!"
    if warncount:
        return "?"
    return " "


class TextDump:
    """Text file of interpreted blocks, created when the first line is written."""

    def __init__(self, base: str, fmt: TextFormat, quiet: bool = False) -> None:
        self.path = Path(fmt.filename(base))
        self.fmt = fmt
        self.quiet = quiet
        self.fp: TextIO | None = None
        self.numrecords = 0
        self.numbytes = 0
        self.numerrors = 0
        self.numwarnings = 0
        self.numboth = 0
        self.numtapemarks = 0

    def _open(self) -> TextIO:
        if self.fp is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.fp = self.path.open("w", encoding="utf-8")
            if not self.quiet:
                LOGGER.info("creating file \"%s\"", self.path)
            self.fp.write(f"file: {self.path}\n")
            self.fp.write(f"options: {self.fmt.describe()}\n")
        return self.fp

    def message(self, text: str) -> None:
        self._open().write(text if text.endswith("\n") else text + "\n")

    def tapemark(self, text: str = "tape mark") -> None:
        self.numtapemarks += 1
        self.message(text)

    def record(self, data: bytes, errcount: int = 0, warncount: int = 0) -> None:
        fp = self._open()
        self.numrecords += 1
        self.numbytes += len(data)
        if errcount and warncount:
            self.numboth += 1
        elif errcount:
            self.numerrors += 1
        elif warncount:
            self.numwarnings += 1
        fp.write(format_record(data, self.fmt, record_flag(errcount, warncount)))

    def close(self, ending: str = "end of file") -> None:
        if self.fp is None:
            return
        fp = self.fp
        fp.write(f"{ending}\n\n")
        fp.write(f"there were {self.numrecords} data blocks with {self.numbytes:,} bytes, "
                 f"and {self.numtapemarks} tapemarks\n")
        if self.numboth:
            fp.write(f"{self.numboth} block(s) with errors and warnings were marked with a X before the length\n")
        if self.numerrors:
            fp.write(f"{self.numerrors} block(s) with errors were marked with a ! before the length\n")
        elif not self.numboth:
            fp.write("no blocks had errors\n")
        if self.numwarnings:
            fp.write(f"{self.numwarnings} block(s) with warnings were marked with a ? before the length\n")
        elif not self.numboth:
            fp.write("no block had warnings\n")
        fp.close()
        self.fp = None
