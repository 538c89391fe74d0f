"""Readers for digitized head voltages in .csv or .tbin files.

Both readers hand out one :class:`Sample` at a time with the voltages in
canonical track order (msb first, parity last) and can return to a saved
position so that a block can be decoded again with other parameters.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, NamedTuple

import numpy as np

from src.decoder.config import CSV_DELTAT_LINES, DIFFERENTIATE_SCALE, DIFFERENTIATE_THRESHOLD
from src.decoder.errors import SampleSourceError, TbinFormatError

from .tbin import END_MARKER, SAMPLE_MAX, TbinDat, TbinHeader

LOGGER = logging.getLogger(__name__)

TBIN_CHUNK_SAMPLES = 8192


class Sample(NamedTuple):
    time: float
    voltages: list[float]


@dataclass(frozen=True)
class SourcePosition:
    offset: int
    time_ns: int = 0
    last_raw: tuple[float, ...] = ()


class SampleSource:
    """Common reader state: track permutation, inversion and differentiation."""

    suffix = ""

    def __init__(self, path: Path, fp: BinaryIO) -> None:
        self.path = path
        self.fp = fp
        self.nheads = 0
        self.head_to_trk: list[int] = []
        self.invert = False
        self.differentiate = False
        self.samples_per_bit = 20
        self.subsample = 1
        self.sample_deltat = 0.0
        self.samples_read = 0
        self.v_last_raw: list[float] = []

    def configure(self, head_to_trk: list[int], invert: bool, differentiate: bool, subsample: int) -> None:
        self.head_to_trk = list(head_to_trk)
        self.invert = invert
        self.differentiate = differentiate
        self.subsample = max(1, subsample)
        self.v_last_raw = [0.0] * self.nheads

    def _arrange(self, values) -> list[float]:
        voltages = [0.0] * self.nheads
        for head, trk in enumerate(self.head_to_trk[:self.nheads]):
            v = float(values[head])
            if self.invert:
                v = -v
            if self.differentiate:
                delta = v - self.v_last_raw[trk]
                if -DIFFERENTIATE_THRESHOLD < delta < DIFFERENTIATE_THRESHOLD:
                    delta = 0.0
                self.v_last_raw[trk] = v
                v = delta * DIFFERENTIATE_SCALE * self.samples_per_bit
            voltages[trk] = v
        return voltages

    def read(self) -> Sample | None:
        raise NotImplementedError

    def tell(self) -> SourcePosition:
        raise NotImplementedError

    def seek(self, pos: SourcePosition) -> None:
        raise NotImplementedError

    def skip(self, count: int) -> None:
        raise NotImplementedError

    def close(self) -> None:
        self.fp.close()

    def __enter__(self) -> "SampleSource":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class CsvSource(SampleSource):
    """Two header lines, then ``time, v0, v1, ...`` per line."""

    suffix = ".csv"

    def __init__(self, path: Path, fp: BinaryIO) -> None:
        super().__init__(path, fp)
        first = fp.readline()
        second = fp.readline()
        if not first or not second:
            raise SampleSourceError(f"Can't read the CSV title lines of {path}")
        self.nheads = second.count(b",")
        self.data_start = fp.tell()
        self.time = 0.0

    def measure_deltat(self, subsample: int) -> float:
        """Average sample interval over the first rows, since timestamps are rounded."""
        first = last = None
        count = 0
        for line in self.fp:
            if not line.strip():
                continue
            count += 1
            stamp = float(line.split(b",", 1)[0])
            if first is None:
                first = stamp
            last = stamp
            if count >= CSV_DELTAT_LINES:
                break
        self.fp.seek(self.data_start)
        if count < 2 or first is None or last is None or last == first:
            raise SampleSourceError(f"not enough samples in {self.path} to compute the sample interval")
        self.sample_deltat = (last - first) * subsample / (count - 1)
        return self.sample_deltat

    def _readline(self) -> bytes | None:
        while True:
            line = self.fp.readline()
            if not line:
                return None
            if line.strip():
                return line

    def read(self) -> Sample | None:
        line = None
        for _ in range(self.subsample):
            line = self._readline()
            if line is None:
                return None
        fields = line.split(b",")
        try:
            self.time = float(fields[0])
            values = [float(f) for f in fields[1:self.nheads + 1]]
        except ValueError as exc:
            raise SampleSourceError(f"bad CSV line in {self.path}: {line[:80]!r}") from exc
        if len(values) < self.nheads:
            raise SampleSourceError(f"CSV line in {self.path} has {len(values)} voltages, not {self.nheads}")
        self.samples_read += 1
        return Sample(self.time, self._arrange(values))

    def tell(self) -> SourcePosition:
        return SourcePosition(self.fp.tell(), int(round(self.time * 1e9)), tuple(self.v_last_raw))

    def seek(self, pos: SourcePosition) -> None:
        self.fp.seek(pos.offset)
        self.time = pos.time_ns / 1e9
        self.v_last_raw = list(pos.last_raw)

    def skip(self, count: int) -> None:
        for left in range(count, 0, -1):
            if self._readline() is None:
                raise SampleSourceError(f"endfile with {left} lines left to skip")


class TbinSource(SampleSource):
    """Packed 16-bit samples after a .tbin header."""

    suffix = ".tbin"

    def __init__(self, path: Path, fp: BinaryIO) -> None:
        super().__init__(path, fp)
        self.header = TbinHeader.read(fp)
        self.dat = TbinDat.read(fp)
        self.nheads = self.header.ntrks
        if self.nheads <= 0:
            raise TbinFormatError(f"{path} has no tracks")
        self.rowbytes = 2 * self.nheads
        self.time_ns = self.dat.tstart_ns
        self.tdelta_ns = self.header.tdelta_ns
        self.sample_deltat = self.tdelta_ns / 1e9
        self.scale = self.header.maxvolts / SAMPLE_MAX
        self._rows = np.empty((0, self.nheads), dtype=np.int16)
        self._next = 0
        self._chunk_offset = fp.tell()
        self._at_end = False

    def configure(self, head_to_trk: list[int], invert: bool, differentiate: bool, subsample: int) -> None:
        super().configure(head_to_trk, invert, differentiate, subsample)
        self.sample_deltat = self.tdelta_ns * self.subsample / 1e9

    def _fill(self) -> bool:
        self._chunk_offset += self._next * self.rowbytes
        raw = self.fp.read(TBIN_CHUNK_SAMPLES * self.rowbytes)
        nrows = len(raw) // self.rowbytes
        rows = np.frombuffer(raw[:nrows * self.rowbytes], dtype="<i2").reshape(nrows, self.nheads)
        ends = np.flatnonzero(rows[:, 0] == END_MARKER) if nrows else np.empty(0, dtype=np.intp)
        if len(ends):
            rows = rows[:ends[0]]
            self._at_end = True
        elif nrows < TBIN_CHUNK_SAMPLES:
            tail = raw[nrows * self.rowbytes:]
            if len(tail) < 2 or np.frombuffer(tail[:2], dtype="<i2")[0] != END_MARKER:
                LOGGER.warning("%s ended without an end-of-data marker", self.path)
            self._at_end = True
        self._rows = rows
        self._next = 0
        return len(rows) > 0

    def _next_row(self) -> np.ndarray | None:
        if self._next >= len(self._rows):
            if self._at_end or not self._fill():
                return None
        row = self._rows[self._next]
        self._next += 1
        return row

    def read(self) -> Sample | None:
        row = None
        for _ in range(self.subsample):
            row = self._next_row()
            if row is None:
                return None
        time = self.time_ns / 1e9
        self.time_ns += self.tdelta_ns * self.subsample
        self.samples_read += 1
        return Sample(time, self._arrange(row.astype(np.float64) * self.scale))

    def tell(self) -> SourcePosition:
        return SourcePosition(self._chunk_offset + self._next * self.rowbytes, self.time_ns, tuple(self.v_last_raw))

    def seek(self, pos: SourcePosition) -> None:
        self.fp.seek(pos.offset)
        self._chunk_offset = pos.offset
        self._rows = np.empty((0, self.nheads), dtype=np.int16)
        self._next = 0
        self._at_end = False
        self.time_ns = pos.time_ns
        self.v_last_raw = list(pos.last_raw)

    def skip(self, count: int) -> None:
        for left in range(count, 0, -1):
            if self._next_row() is None:
                raise SampleSourceError(f"endfile with {left} samples left to skip")
            self.time_ns += self.tdelta_ns


def open_source(basename: str, tbin_only: bool = False) -> SampleSource:
    """Open ``<basename>.csv``, or failing that ``<basename>.tbin``."""
    csv_path = Path(f"{basename}.csv")
    if not tbin_only and csv_path.is_file():
        return CsvSource(csv_path, csv_path.open("rb"))
    tbin_path = Path(f"{basename}.tbin")
    if tbin_path.is_file():
        fp = tbin_path.open("rb")
        try:
            return TbinSource(tbin_path, fp)
        except TbinFormatError:
            fp.close()
            raise
    raise SampleSourceError(f"Unable to open input file \"{basename}\" .tbin or .csv")
