"""csvtbin: convert digitized tape head voltages between .csv and .tbin.

    python -m src.csvtbin <options> <basefilename>

By default <basefilename>.csv is packed into <basefilename>.tbin. With -read
the .tbin is expanded back into <basefilename>.csv; with -showheader the
.tbin header is shown and its data checked without writing anything.
"""

from __future__ import annotations

import argparse
import logging
import math
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import numpy as np
import pandas as pd
from tqdm import tqdm

from src.decoder.config import CSV_DELTAT_LINES, MAXTRKS, MINTRKS, Mode, mode_name
from src.decoder.errors import OptionError, SampleSourceError, TapeDecodeError, TbinFormatError
from src.io.tbin import (
    END_MARKER,
    FLAG_INVERTED,
    FLAG_NO_REORDER,
    FLAG_REVERSED,
    SAMPLE_MAX,
    TbinDat,
    TbinHeader,
    datetime_from_tm,
    end_marker,
    quantize,
    tm_from_datetime,
)
from src.readtape import FATAL_EXIT, _float_range, _int_range, parse_track_order, translate_options
from src.utils.logging_config import close_file_logging, setup_logging

LOGGER = logging.getLogger(__name__)

CHUNK_ROWS = 65536

_FLAGS = {
    "READ": ["--read"],
    "SHOWHEADER": ["--showheader"],
    "PE": ["--mode", "pe"],
    "NRZI": ["--mode", "nrzi"],
    "GCR": ["--mode", "gcr"],
    "INVERT": ["--invert"],
    "REVERSE": ["--reverse"],
    "REDO": ["--redo"],
    "NOLOG": ["--nolog"],
    "Q": ["--quiet"],
    "H": ["--help"],
    "?": ["--help"],
}
_VALUES = {
    "NTRKS": "--ntrks",
    "ORDER": "--order",
    "BPI": "--bpi",
    "IPS": "--ips",
    "MAXVOLTS": "--maxvolts",
    "SCALE": "--scale",
    "DESCR": "--descr",
    "DATEWRITTEN": "--datewritten",
    "DATEREAD": "--dateread",
    "SKIP": "--skip",
    "SUBSAMPLE": "--subsample",
    "STOPAFT": "--stopaft",
    "STARTTIME": "--starttime",
    "ENDTIME": "--endtime",
}


def _date(text: str) -> tuple[int, ...]:
    try:
        return tm_from_datetime(datetime.strptime(text, "%d%m%Y"))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"bad date format at {text}; use ddmmyyyy") from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m src.csvtbin",
        description="Convert between .csv and .tbin files of tape head voltages",
    )
    parser.add_argument("basename", help="<basefilename> of the .csv and .tbin files")
    parser.add_argument("--read", action="store_true", help="Convert .tbin to .csv instead")
    parser.add_argument("--showheader", action="store_true", help="Show the .tbin header and check the data")
    parser.add_argument("--ntrks", type=_int_range(MINTRKS, MAXTRKS), help="Number of tracks")
    parser.add_argument("--order", help="Input head order, e.g. 01234567P or P314520")
    parser.add_argument("--mode", choices=["pe", "nrzi", "gcr"], help="Encoding to record in the header")
    parser.add_argument("--bpi", type=_float_range(50, 10000), default=0.0)
    parser.add_argument("--ips", type=_float_range(10, 200), default=0.0)
    parser.add_argument("--maxvolts", type=_float_range(0.1, 15.0), default=0.0, help="Voltage of the largest sample")
    parser.add_argument("--scale", type=_float_range(1e-4, 1e4), default=1.0, help="Multiply input voltages by this")
    parser.add_argument("--descr", default="", help="Description stored in the header")
    parser.add_argument("--datewritten", type=_date, help="ddmmyyyy the tape was written")
    parser.add_argument("--dateread", type=_date, help="ddmmyyyy the tape was read")
    parser.add_argument("--invert", action="store_true", help="Invert the voltages")
    parser.add_argument("--reverse", action="store_true", help="Mark the tape as read or written backwards")
    parser.add_argument("--skip", type=_int_range(0), default=0, help="Samples to skip at the start")
    parser.add_argument("--subsample", type=_int_range(1), default=1, help="Keep every nth sample")
    parser.add_argument("--stopaft", type=_int_range(1), help="Stop after this many samples")
    parser.add_argument("--starttime", type=_float_range(0.01, 1000), help="Start at this sample time, in seconds")
    parser.add_argument("--endtime", type=_float_range(0.01, 1000), help="End at this sample time, in seconds")
    parser.add_argument("--redo", action="store_true", help="Redo the conversion if samples were clipped")
    parser.add_argument("--nolog", action="store_true", help="Don't write <basefilename>.csvtbin.log")
    parser.add_argument("--quiet", action="store_true")
    return parser


@dataclass
class Conversion:
    samples: int = 0
    tape_ns: int = 0
    minvolts: float = 0.0
    maxvolts: float = 0.0
    toobig: int = 0
    toosmall: int = 0


def _log_header(hdr: TbinHeader, dat: TbinDat) -> None:
    LOGGER.info("file format %d, ntrks %d, encoding %s, max %.2fV, bpi %.2f, ips %.2f, sample delta %.2f usec",
                hdr.format, hdr.ntrks, mode_name(hdr.mode), hdr.maxvolts, hdr.bpi, hdr.ips, hdr.tdelta_ns / 1e3)
    LOGGER.info("the track ordering was%s given when the .tbin file was created",
                " not" if hdr.flags & FLAG_NO_REORDER else "")
    LOGGER.info("description: %s", hdr.descr)
    for label, tm in (("created on:  ", hdr.time_written), ("read on:     ", hdr.time_read),
                      ("converted on:", hdr.time_converted)):
        when = datetime_from_tm(tm)
        if when is not None:
            LOGGER.info("%s %s", label, when.strftime("%c"))
    if hdr.flags & FLAG_INVERTED:
        LOGGER.info("the data was inverted")
    if hdr.flags & FLAG_REVERSED:
        LOGGER.info("the tape might have been read or written backwards")
    if hdr.trkorder:
        LOGGER.info("the tracks were specified as -order=%s", hdr.trkorder)
    LOGGER.info("%d bits/sample, data start time is %.6f seconds", dat.sample_bits, dat.tstart_ns / 1e9)


class CsvToTbin:
    """Packs a .csv capture into a .tbin file."""

    def __init__(self, args: argparse.Namespace, csv_path: Path, tbin_path: Path) -> None:
        self.args = args
        self.csv_path = csv_path
        self.tbin_path = tbin_path
        self.ntrks = args.ntrks or 0
        self.permutation: list[int] = []
        self.header = TbinHeader(
            descr=args.descr,
            bpi=args.bpi,
            ips=args.ips,
            maxvolts=args.maxvolts,
            mode={"pe": Mode.PE, "nrzi": Mode.NRZI, "gcr": Mode.GCR}.get(args.mode, Mode.UNKNOWN),
        )
        if args.datewritten:
            self.header.time_written = args.datewritten
        if args.dateread:
            self.header.time_read = args.dateread
        if args.invert:
            self.header.flags |= FLAG_INVERTED
        if args.reverse:
            self.header.flags |= FLAG_REVERSED
        self.dat = TbinDat()

    def preread(self) -> None:
        """Measure the sample interval and the largest voltage from the first rows."""
        with self.csv_path.open("rb") as fp:
            fp.readline()
            columns = fp.readline().count(b",")
        if not self.ntrks:
            self.ntrks = columns
            LOGGER.info("derived ntrks=%d from the .csv file header", self.ntrks)
        elif columns != self.ntrks:
            LOGGER.warning("*** WARNING *** file has %d columns of data, but ntrks=%d", columns, self.ntrks)
        if not MINTRKS <= self.ntrks <= MAXTRKS:
            raise OptionError(f"bad number of tracks: {self.ntrks}")

        head = pd.read_csv(self.csv_path, skiprows=2, header=None, nrows=CSV_DELTAT_LINES,
                           usecols=range(self.ntrks + 1), dtype=float)
        if len(head) < 2:
            raise SampleSourceError(f"{self.csv_path} has too few samples")
        times = head[0].to_numpy()
        volts = np.abs(head.iloc[:, 1:].to_numpy() * self.args.scale)
        tstart = int((times[0] + 0.5e-9) * 1e9)
        tdelta = int(((times[-1] - times[0]) / (len(times) - 1) + 0.5e-9) * 1e9)
        maxvolts = int((float(volts.max()) + 0.55) * 10) / 10
        LOGGER.info("after %s samples, the sample delta is %.2f usec (%d nsec), samples start at %.6f seconds, "
                    "and the rounded-up maximum voltage is %.1fV",
                    f"{len(times):,}", tdelta / 1e3, tdelta, tstart / 1e9, maxvolts)
        subsample = self.args.subsample
        if subsample > 1:
            tstart += (subsample - 1) * tdelta
            tdelta *= subsample
            LOGGER.info("for subsampling every %d samples, we adjusted the delta to %.2f usec (%d nsec), "
                        "and the sample start to %.6f seconds", subsample, tdelta / 1e3, tdelta, tstart / 1e9)
        self.header.tdelta_ns = tdelta
        self.dat.tstart_ns = tstart
        if self.header.maxvolts == 0:
            self.header.maxvolts = maxvolts
        elif self.header.maxvolts < maxvolts:
            LOGGER.info("maxvolts was increased from %.1f to %.1f", self.header.maxvolts, maxvolts)
            self.header.maxvolts = maxvolts
        else:
            LOGGER.info("we used maxvolts=%.1f", self.header.maxvolts)

    def setup_order(self) -> None:
        self.header.ntrks = self.ntrks
        if self.args.order:
            self.permutation = parse_track_order(self.args.order, self.ntrks)
        else:
            LOGGER.warning("WARNING: using the default track ordering, and marking the .tbin file to show it wasn't given")
            self.header.flags |= FLAG_NO_REORDER
            self.permutation = list(range(self.ntrks))
        LOGGER.info("input track order: %s", "".join(
            "p" if trk == self.ntrks - 1 else str(trk) for trk in self.permutation))

    def _skip_count(self) -> int:
        count = self.args.skip
        if self.args.starttime:
            start_ns = int(self.args.starttime * 1e9)
            count = max(count, math.ceil((start_ns - self.dat.tstart_ns) / self.header.tdelta_ns))
        return max(count, 0)

    def convert_once(self) -> Conversion:
        args = self.args
        result = Conversion()
        self.header.time_converted = tm_from_datetime(datetime.now())
        tdelta = self.header.tdelta_ns
        skip = self._skip_count()
        sample_ns = self.dat.tstart_ns + skip * tdelta
        if skip:
            LOGGER.info("skipping %s samples", f"{skip:,}")
        stopaft = args.stopaft or sys.maxsize
        end_ns = int(args.endtime * 1e9) if args.endtime else None
        row_index = 0
        done = False
        reader = pd.read_csv(self.csv_path, skiprows=2 + skip, header=None, usecols=range(self.ntrks + 1),
                             dtype=float, chunksize=CHUNK_ROWS)
        with self.tbin_path.open("wb") as out, tqdm(desc="csvtbin", unit="sample", unit_scale=True,
                                                   disable=args.quiet) as progress:
            out.write(self.header.pack())
            out.write(self.dat.pack())
            for chunk in reader:
                rows = chunk.iloc[:, 1:].to_numpy() * args.scale
                keep = (np.arange(row_index, row_index + len(rows)) + 1) % args.subsample == 0
                row_index += len(rows)
                rows = rows[keep]
                if rows.size == 0:
                    continue
                limit = stopaft - result.samples
                if end_ns is not None:
                    limit = min(limit, max(0, (end_ns - sample_ns) // tdelta + 1))
                if len(rows) >= limit:
                    rows = rows[:limit]
                    done = True
                volts = np.empty_like(rows)
                volts[:, self.permutation] = rows
                if self.header.flags & FLAG_INVERTED:
                    volts = -volts
                samples, toobig, toosmall = quantize(volts, self.header.maxvolts)
                out.write(samples.tobytes())
                result.toobig += toobig
                result.toosmall += toosmall
                result.minvolts = min(result.minvolts, float(volts.min()))
                result.maxvolts = max(result.maxvolts, float(volts.max()))
                result.samples += len(rows)
                sample_ns += len(rows) * tdelta
                progress.update(len(rows))
                if done:
                    break
            out.write(end_marker())
        result.tape_ns = result.samples * tdelta
        LOGGER.info("done; minimum voltage was %.1fV, maximum voltage was %.1fV", result.minvolts, result.maxvolts)
        if result.toobig:
            LOGGER.warning("*** WARNING ***  %s samples were too big", f"{result.toobig:,}")
        if result.toosmall:
            LOGGER.warning("*** WARNING ***  %s samples were too small", f"{result.toosmall:,}")
        return result

    def run(self) -> Conversion:
        LOGGER.info("opening  %s", self.csv_path)
        self.preread()
        self.setup_order()
        if self.header.flags & FLAG_INVERTED:
            LOGGER.info("the data will be inverted")
        if self.header.flags & FLAG_REVERSED:
            LOGGER.info("the tape might have been read or written backwards")
        if self.args.scale != 1.0:
            LOGGER.info("input voltages will be scaled by %f", self.args.scale)
        LOGGER.info("creating %s", self.tbin_path)
        result = self.convert_once()
        if result.toobig or result.toosmall:
            newmax = max(result.maxvolts, -result.minvolts)
            if not self.args.redo:
                LOGGER.info("you should specify -maxvolts=%.1f", newmax + 0.1)
                return result
            self.header.maxvolts = int((newmax + 0.15) * 10) / 10
            LOGGER.info("redoing the conversion with -maxvolts=%.1f", self.header.maxvolts)
            result = self.convert_once()
        return result


def _iter_tbin_rows(fp, ntrks: int):
    """Yield int16 sample rows in chunks until the end marker."""
    rowbytes = 2 * ntrks
    while True:
        raw = fp.read(rowbytes * CHUNK_ROWS)
        usable = len(raw) - len(raw) % rowbytes
        rows = np.frombuffer(raw[:usable], dtype="<i2").reshape(-1, ntrks)
        ends = np.flatnonzero(rows[:, 0] == END_MARKER)
        if ends.size:
            yield rows[:ends[0]]
            return
        if usable < rowbytes * CHUNK_ROWS:
            if len(raw) >= 2 and np.frombuffer(raw[usable:usable + 2], dtype="<i2")[0] == END_MARKER:
                yield rows
                return
            raise TbinFormatError(f"the .tbin data ended without an end marker after {len(rows)} more rows")
        yield rows


def tbin_to_csv(args: argparse.Namespace, tbin_path: Path, csv_path: Path | None) -> Conversion:
    """Expand a .tbin file into .csv, or just check it when ``csv_path`` is None."""
    result = Conversion()
    LOGGER.info("opening  %s", tbin_path)
    with tbin_path.open("rb") as fp:
        hdr = TbinHeader.read(fp)
        dat = TbinDat.read(fp)
        _log_header(hdr, dat)
        ntrks = hdr.ntrks
        if args.ntrks and args.ntrks != ntrks:
            LOGGER.warning("*** WARNING *** .tbin file says %d trks but ntrks=%d", ntrks, args.ntrks)
        permutation = parse_track_order(args.order, ntrks) if args.order else list(range(ntrks))
        scale = hdr.maxvolts / SAMPLE_MAX
        tdelta = hdr.tdelta_ns
        sample_ns = dat.tstart_ns
        skip = args.skip
        if args.starttime:
            skip = max(skip, math.ceil((int(args.starttime * 1e9) - sample_ns) / tdelta))
        stopaft = args.stopaft or sys.maxsize
        end_ns = int(args.endtime * 1e9) if args.endtime else None

        out = None
        if csv_path is not None:
            LOGGER.info("creating %s", csv_path)
            out = csv_path.open("w", encoding="utf-8", newline="\n")
            out.write(f"'{hdr.descr}\nTime, " + ", ".join(f"Track {i}" for i in range(ntrks)) + "\n")
        row_format = "%12.8f, " + "%9.5f, " * ntrks
        try:
            with tqdm(desc="csvtbin", unit="sample", unit_scale=True, disable=args.quiet) as progress:
                for rows in _iter_tbin_rows(fp, ntrks):
                    if skip:
                        dropped = min(skip, len(rows))
                        rows = rows[dropped:]
                        skip -= dropped
                        sample_ns += dropped * tdelta
                    if len(rows) == 0:
                        continue
                    limit = stopaft - result.samples
                    if end_ns is not None:
                        limit = min(limit, max(0, (end_ns - sample_ns) // tdelta + 1))
                    rows = rows[:limit]
                    times = (sample_ns + tdelta * np.arange(len(rows))) / 1e9
                    volts = rows[:, permutation].astype(float) * scale
                    if hdr.flags & FLAG_INVERTED:
                        volts = -volts
                    if out is not None:
                        np.savetxt(out, np.column_stack([times, volts]), fmt=row_format)
                    result.samples += len(rows)
                    sample_ns += len(rows) * tdelta
                    progress.update(len(rows))
                    if result.samples >= stopaft or (end_ns is not None and sample_ns > end_ns):
                        break
        finally:
            if out is not None:
                out.close()
    result.tape_ns = result.samples * tdelta
    return result


def main(argv: list[str] | None = None) -> int:
    tokens = list(sys.argv[1:] if argv is None else argv)
    try:
        args = build_parser().parse_args(translate_options(tokens, _FLAGS, _VALUES))
        base = args.basename
        for ext in (".csv", ".tbin"):
            if base.lower().endswith(ext):
                base = base[: -len(ext)]
        log_path = None if args.nolog else f"{base}.csvtbin.log"
        setup_logging(log_path, level=logging.WARNING if args.quiet else logging.INFO)
        try:
            LOGGER.info("command line: csvtbin %s", " ".join(tokens))
            started = time.perf_counter()
            if args.read or args.showheader:
                csv_path = None if args.showheader else Path(f"{base}.csv")
                result = tbin_to_csv(args, Path(f"{base}.tbin"), csv_path)
            else:
                csv_path = Path(f"{base}.csv")
                if not csv_path.is_file():
                    raise SampleSourceError(f"Unable to open input file \"{csv_path}\"")
                result = CsvToTbin(args, csv_path, Path(f"{base}.tbin")).run()
            LOGGER.info("%s samples representing %.3f tape seconds were processed in %.1f seconds",
                        f"{result.samples:,}", result.tape_ns / 1e9, time.perf_counter() - started)
        finally:
            if log_path is not None:
                close_file_logging(log_path)
    except TapeDecodeError as exc:
        setup_logging(None)
        LOGGER.critical("***FATAL ERROR: %s", exc)
        return FATAL_EXIT
    print(f"{base}: {result.samples} samples")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
