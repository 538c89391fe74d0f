"""readtape: recover tape data from digitized read-head voltages.

    python -m src.readtape <options> <basefilename>

The input is <basefilename>.csv or <basefilename>.tbin; the output is one
<basefilename>.NNN.bin per tape file (or <basefilename>.tap with -tap), plus
<basefilename>.log and diagnostics. Options keep their historical single-dash
spellings (``-ntrks=9 -nrzi -v``), case-insensitive, and may also start
with ``/``. With -f, <basefilename>.txt lists one input per line, each
optionally preceded by options for that file.
"""

from __future__ import annotations

import argparse
import logging
import re
import shlex
import sys
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from tqdm import tqdm

from src.decoder.config import (
    DEFAULT_IPS,
    DEFAULT_SHOW_IBG_MS,
    GCR_BPI,
    GCR_IPS,
    MAXSKEWBLKS,
    MAXTRKS,
    MINSKEWTRANS,
    MINTRKS,
    VL_ATTEMPTS,
    VL_TRACKLENGTHS,
    VL_WARNING_DETAIL,
    BLOCKTYPE_NAMES,
    BlockType,
    DecodeOptions,
    Mode,
    RunState,
    mode_name,
)
from src.decoder.density import DensityEstimator
from src.decoder.engine import BlockDecoder
from src.decoder.errors import DecoderError, OptionError, ParmsetError, SampleSourceError, TapeDecodeError
from src.decoder.parmsets import Parmset, read_parms
from src.decoder.results import Attempt, block_bytes, format_block_errors
from src.decoder.skew import PeakStats, SkewCompensator, compute_deskew
from src.io.labels import process_label
from src.io.samples import CsvSource, SampleSource, TbinSource, open_source
from src.io.sinks import BlockWriter
from src.io.tbin import FLAG_INVERTED, FLAG_NO_REORDER, FLAG_REVERSED, datetime_from_tm
from src.io.textfile import TextDump, TextFormat
from src.qc.report import write_block_table, write_peakstats, write_summary
from src.utils.logging_config import close_file_logging, setup_logging

LOGGER = logging.getLogger(__name__)

FATAL_EXIT = 99
INPUT_EXTENSIONS = (".csv", ".tbin", ".tap", ".txt")

# historical option spellings -> argparse options
_FLAG_OPTIONS = {
    "PE": ["--mode", "pe"],
    "NRZI": ["--mode", "nrzi"],
    "GCR": ["--mode", "gcr"],
    "ZEROS": ["--zeros"],
    "DIFFERENTIATE": ["--differentiate"],
    "TAP": ["--tap"],
    "TBIN": ["--tbin"],
    "EVEN": ["--even"],
    "INVERT": ["--invert"],
    "REVERSE": ["--reverse"],
    "DESKEW": ["--deskew"],
    "ADDPARITY": ["--addparity"],
    "CORRECT": ["--correct"],
    "NOCORRECT": ["--nocorrect"],
    "RESETSPEED": ["--resetspeed"],
    "TEXTFILE": ["--textfile"],
    "HEX": ["--numtype", "hex"],
    "OCTAL": ["--numtype", "octal"],
    "OCTAL2": ["--numtype", "octal2"],
    "ASCII": ["--chartype", "ASCII"],
    "EBCDIC": ["--chartype", "EBCDIC"],
    "BCD": ["--chartype", "BCD"],
    "B5500": ["--chartype", "B5500"],
    "SIXBIT": ["--chartype", "sixbit"],
    "SDS": ["--chartype", "SDS"],
    "SDSM": ["--chartype", "SDSM"],
    "FLEXO": ["--chartype", "flexo"],
    "LINEFEED": ["--linefeed"],
    "NOLOG": ["--nolog"],
    "NOLABELS": ["--nolabels"],
    "NM": ["--no-multiple"],
    "M": ["--multiple"],
    "L": ["--log"],
    "V": ["--verbose"],
    "Q": ["--quiet"],
    "F": ["--file-list"],
    "H": ["--help"],
    "?": ["--help"],
}
_VALUE_OPTIONS = {
    "NTRKS": "--ntrks",
    "ORDER": "--order",
    "BPI": "--bpi",
    "IPS": "--ips",
    "SKIP": "--skip",
    "BLKLIMIT": "--blklimit",
    "SUBSAMPLE": "--subsample",
    "SHOWIBG": "--showibg",
    "REVPARITY": "--revparity",
    "SKEW": "--skew",
    "OUTF": "--outf",
    "OUTP": "--outp",
    "LINESIZE": "--linesize",
    "DATASPACE": "--dataspace",
}
_VERBOSE_LEVEL = re.compile(r"V(0X[0-9A-F]+|\d+)")


def translate_options(
    tokens: list[str],
    flags: dict[str, list[str]] | None = None,
    values: dict[str, str] | None = None,
) -> list[str]:
    """Rewrite ``-name[=value]`` options into the argparse spelling.

    Tokens that already use ``--`` pass through. A ``/`` prefix is only an
    option if the rest is a known option name, so absolute paths survive.
    """
    flags = _FLAG_OPTIONS if flags is None else flags
    values = _VALUE_OPTIONS if values is None else values
    out: list[str] = []
    for token in tokens:
        if token.startswith("--") or len(token) < 2 or token[0] not in "-/":
            out.append(token)
            continue
        key, sep, value = token[1:].partition("=")
        upper = key.upper()
        if sep and upper in values:
            out.append(f"{values[upper]}={value}")
        elif not sep and upper in flags:
            out.extend(flags[upper])
        elif not sep and flags is _FLAG_OPTIONS and _VERBOSE_LEVEL.fullmatch(upper):
            out.append(f"--verbose-level={int(upper[1:], 0)}")
        elif token[0] == "/":
            out.append(token)
        else:
            raise OptionError(f"bad option: {token}")
    return out


def _int_range(lo: int, hi: int | None = None):
    def convert(text: str) -> int:
        try:
            value = int(text, 0)
        except ValueError as exc:
            raise argparse.ArgumentTypeError(f"not an integer: {text}") from exc
        if value < lo or (hi is not None and value > hi):
            raise argparse.ArgumentTypeError(f"{value} is not in the range {lo}..{hi if hi is not None else ''}")
        return value
    return convert


def _float_range(lo: float, hi: float):
    def convert(text: str) -> float:
        try:
            value = float(text)
        except ValueError as exc:
            raise argparse.ArgumentTypeError(f"not a number: {text}") from exc
        if not lo <= value <= hi:
            raise argparse.ArgumentTypeError(f"{value} is not in the range {lo}..{hi}")
        return value
    return convert


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m src.readtape",
        description="Decode PE, NRZI or GCR magnetic tape from digitized read-head voltages",
    )
    parser.add_argument("basename", nargs="?", help="Input <basefilename> (.csv or .tbin), or a .tap to dump")
    parser.add_argument("--ntrks", type=_int_range(MINTRKS, MAXTRKS), help="Number of tracks")
    parser.add_argument("--order", help="Input head order, e.g. 01234567P or P314520")
    parser.add_argument("--mode", choices=["pe", "nrzi", "gcr"], help="Encoding (default PE or the .tbin header)")
    parser.add_argument("--zeros", action="store_true", help="Look for zero crossings instead of peaks")
    parser.add_argument("--differentiate", action="store_true", help="Differentiate the input voltages")
    parser.add_argument("--bpi", type=_float_range(100, 10000), help="Bits per inch (default: detect)")
    parser.add_argument("--ips", type=_float_range(10, 200), help="Tape speed in inches per second")
    parser.add_argument("--skip", type=_int_range(0), default=0, help="Samples to skip at the start")
    parser.add_argument("--blklimit", type=_int_range(0), help="Stop after this many blocks")
    parser.add_argument("--subsample", type=_int_range(1), default=1, help="Use every nth sample")
    parser.add_argument("--showibg", type=_int_range(0), help="Show interblock gaps of at least n msec")
    parser.add_argument("--multiple", dest="multiple", action="store_true", help="Try other parmsets on errors")
    parser.add_argument("--no-multiple", dest="multiple", action="store_false", help="Use only the first parmset")
    parser.add_argument("--tap", action="store_true", help="Write a SIMH .tap image")
    parser.add_argument("--tbin", action="store_true", help="Read <basefilename>.tbin even if a .csv exists")
    parser.add_argument("--even", action="store_true", help="Expect even parity")
    parser.add_argument("--revparity", type=_int_range(0), default=0, help="Blocks of this length have reversed parity")
    parser.add_argument("--invert", action="store_true", help="Invert the data polarity")
    parser.add_argument("--reverse", action="store_true", help="The tape was read backwards")
    parser.add_argument("--deskew", action="store_true", help="Compensate for head skew (NRZI, GCR)")
    parser.add_argument("--skew", help="Per-track delays in samples, e.g. 0,2,1,...")
    parser.add_argument("--addparity", action="store_true", help="Keep the parity bit as the high bit (7-track)")
    parser.add_argument("--correct", dest="correct", action="store_true", help="Correct NRZI parity errors")
    parser.add_argument("--nocorrect", dest="correct", action="store_false")
    parser.add_argument("--resetspeed", action="store_true", help="Reset the NRZI speed from the first bits")
    parser.add_argument("--outf", help="Base name for output files")
    parser.add_argument("--outp", default="", help="Path prefix for output files")
    parser.add_argument("--textfile", action="store_true", help="Write an interpreted .txt dump")
    parser.add_argument("--numtype", choices=["hex", "octal", "octal2"], default="")
    parser.add_argument("--chartype", choices=["BCD", "EBCDIC", "ASCII", "B5500", "sixbit", "SDS", "SDSM", "flexo"],
                        default="")
    parser.add_argument("--linesize", type=_int_range(4, 256), default=0)
    parser.add_argument("--dataspace", type=_int_range(0, 256))
    parser.add_argument("--linefeed", action="store_true", help="Start a new text line at each 0x0A")
    parser.add_argument("--log", action="store_true", help="Write <basefilename>.log (the default)")
    parser.add_argument("--nolog", action="store_true", help="Don't write <basefilename>.log")
    parser.add_argument("--nolabels", action="store_true", help="Don't interpret IBM standard labels")
    parser.add_argument("--verbose", action="store_true", help="Show every block")
    parser.add_argument("--verbose-level", type=_int_range(0, 255), default=0)
    parser.add_argument("--quiet", action="store_true", help="Show only the result")
    parser.add_argument("--file-list", action="store_true", help="<basefilename>.txt is a list of inputs")
    parser.set_defaults(multiple=True, correct=False)
    return parser


def parse_skew(text: str, ntrks: int | None) -> tuple[int, ...]:
    if not ntrks:
        raise OptionError("must specify ntrks= to use skew=")
    try:
        delays = tuple(int(v) for v in text.split(","))
    except ValueError as exc:
        raise OptionError(f"bad skew at: {text}") from exc
    if len(delays) != ntrks:
        raise OptionError(f"skew list has {len(delays)} delays but ntrks={ntrks}")
    if any(d < 0 for d in delays):
        raise OptionError(f"negative skew in: {text}")
    return delays


def parse_track_order(text: str, ntrks: int = 0) -> list[int]:
    """Map input columns to tracks: digits are data tracks (msb is 0), P is parity."""
    nheads = len(text)
    if ntrks and nheads != ntrks:
        raise OptionError(f"-order length doesn't match ntrks={ntrks}")
    if not MINTRKS <= nheads <= MAXTRKS:
        raise OptionError(f"-order can't imply ntrks={nheads}")
    head_to_trk = []
    for ch in text:
        if ch.upper() == "P":
            trk = nheads - 1
        elif ch.isdigit() and int(ch) <= nheads - 2:
            trk = int(ch)
        else:
            raise OptionError(f"bad -order string: {text}")
        head_to_trk.append(trk)
    if sorted(head_to_trk) != list(range(nheads)):
        raise OptionError(f"-order isn't a permutation of the tracks: {text}")
    return head_to_trk


def options_from_args(args: argparse.Namespace, basename: str) -> DecodeOptions:
    if args.order:
        parse_track_order(args.order, args.ntrks or 0)
    skew = parse_skew(args.skew, args.ntrks) if args.skew else None
    verbose = args.verbose or args.verbose_level > 0
    dataspace = args.dataspace
    if dataspace is None:
        dataspace = 2 if args.numtype == "octal2" else 0
    mode = {"pe": Mode.PE, "nrzi": Mode.NRZI, "gcr": Mode.GCR}.get(args.mode, Mode.UNKNOWN)
    return DecodeOptions(
        basename=basename,
        ntrks=args.ntrks,
        order=args.order,
        mode=mode,
        find_zeros=args.zeros,
        differentiate=args.differentiate,
        bpi=args.bpi,
        ips=args.ips,
        skip_samples=args.skip,
        blklimit=args.blklimit,
        subsample=args.subsample,
        show_ibg=args.showibg is not None,
        show_ibg_threshold=args.showibg if args.showibg is not None else DEFAULT_SHOW_IBG_MS,
        multiple_tries=args.multiple,
        tap_format=args.tap,
        tbin_file=args.tbin,
        parity=0 if args.even else 1,
        revparity=args.revparity,
        invert=args.invert,
        reverse=args.reverse,
        deskew=args.deskew or skew is not None,
        skew=skew,
        add_parity=args.addparity,
        correct=args.correct,
        reset_speed=args.resetspeed,
        outf=args.outf,
        outp=args.outp,
        textfile=args.textfile or bool(args.numtype) or bool(args.chartype),
        numtype=args.numtype,
        chartype=args.chartype,
        linesize=args.linesize,
        dataspace=dataspace,
        linefeed=args.linefeed,
        logging=not args.nolog,
        labels=not args.nolabels,
        verbose=verbose and not args.quiet,
        verbose_level=args.verbose_level or (1 if args.verbose else 0),
        quiet=args.quiet,
        file_list=args.file_list,
    )


def parse_options(tokens: list[str], basename: str | None = None) -> tuple[DecodeOptions, str | None]:
    """Options for one input; ``basename`` overrides any name among the tokens."""
    args = build_parser().parse_args(translate_options(tokens))
    name = basename if basename is not None else args.basename
    return options_from_args(args, name or ""), name


def split_input_name(name: str) -> tuple[str, str]:
    """Strip a recognised extension: ``tape.tbin`` -> (``tape``, ``.tbin``)."""
    path = Path(name)
    if path.suffix.lower() in INPUT_EXTENSIONS:
        return str(path.with_suffix("")), path.suffix.lower()
    return name, ""


def log_level(opts: DecodeOptions) -> int:
    if opts.quiet:
        return logging.WARNING
    if opts.verbose_level & VL_ATTEMPTS:
        return logging.DEBUG
    return logging.INFO


def choose_attempt(attempts: dict[int, Attempt], last: int) -> int:
    """Pick the best decoding of a block among the parmsets that were tried.

    In order: a good block with the fewest warnings, a block with the fewest
    errors, the bad block with the least track mismatch, then noise.
    """
    if attempts[last].result.blktype == BlockType.TAPEMARK:
        return last
    clean = [(a.result.warncount, i) for i, a in attempts.items()
             if a.result.blktype == BlockType.BLOCK and a.result.errcount == 0]
    if clean:
        return min(clean)[1]
    blocks = [(a.result.errcount, i) for i, a in attempts.items() if a.result.blktype == BlockType.BLOCK]
    if blocks:
        return min(blocks)[1]
    bad = [(a.result.track_mismatch, i) for i, a in attempts.items() if a.result.blktype == BlockType.BADBLOCK]
    if bad:
        return min(bad)[1]
    noise = [i for i, a in attempts.items() if a.result.blktype == BlockType.NOISE]
    if noise:
        return min(noise)
    raise DecoderError("block state error: no decoding of the block could be used")


@dataclass
class RunTotals:
    numtapemarks: int = 0
    numdatabytes: int = 0
    numblks_err: int = 0
    numblks_warn: int = 0
    numblks_trksmismatched: int = 0
    numblks_corrected: int = 0
    numblks_midbiterrs: int = 0
    numblks_unusable: int = 0
    numblks_goodmultiple: int = 0
    last_block_time: float = 0.0


class TapeReader:
    """Decodes one input file."""

    def __init__(self, opts: DecodeOptions, tokens: list[str], command_line: str = "") -> None:
        self.opts = opts
        self.tokens = tokens
        self.command_line = command_line
        self.run = RunState(parity=opts.parity, revparity=opts.revparity)
        self.totals = RunTotals()
        self.parmsets: list[Parmset] = []
        self.first_parmset = 0
        self.skew: SkewCompensator | None = None
        self.stats: PeakStats | None = None
        self.writer: BlockWriter | None = None
        self.textdump: TextDump | None = None
        self.block_rows: list[dict[str, Any]] = []
        self.blockstart_time = 0.0
        self.now = 0.0
        self.ok = True

    @property
    def base(self) -> str:
        return self.opts.base_output_name

    # setup

    def _use_tbin_header(self, source: TbinSource) -> None:
        hdr = source.header
        run, opts = self.run, self.opts
        if not opts.quiet:
            LOGGER.info(".tbin file header:")
            if hdr.descr:
                LOGGER.info("  description: %s", hdr.descr)
            for label, tm in (("written", hdr.time_written), ("read", hdr.time_read),
                              ("converted", hdr.time_converted)):
                when = datetime_from_tm(tm)
                if when is not None:
                    LOGGER.info("  tape %s on %s", label, when.strftime("%Y-%m-%d %H:%M:%S"))
            if hdr.flags & FLAG_INVERTED:
                LOGGER.info("  the data was inverted when it was converted")
            if hdr.flags & FLAG_REVERSED:
                LOGGER.info("  the data was reversed when it was converted")
            if hdr.trkorder:
                LOGGER.info("  the track order was %s", hdr.trkorder)
        if hdr.ntrks and not run.ntrks:
            run.ntrks = hdr.ntrks
            if not opts.quiet:
                LOGGER.info("  using .tbin ntrks = %d", run.ntrks)
        elif hdr.ntrks and hdr.ntrks != run.ntrks:
            LOGGER.warning("*** WARNING *** .tbin file says %d trks but ntrks=%d", hdr.ntrks, run.ntrks)
        if hdr.mode != Mode.UNKNOWN:
            run.mode = hdr.mode
            if not opts.quiet:
                LOGGER.info("  using .tbin mode = %s", mode_name(run.mode))
        if opts.bpi is None and hdr.bpi:
            run.bpi = hdr.bpi
            if not opts.quiet:
                LOGGER.info("  using .tbin bpi = %.0f", run.bpi)
        if opts.ips is None and hdr.ips:
            run.ips = hdr.ips
            if not opts.quiet:
                LOGGER.info("  using .tbin ips = %.0f", run.ips)

    def _setup(self, source: SampleSource) -> None:
        run = self.run
        opts = self.opts
        if opts.ntrks:
            run.ntrks = opts.ntrks
        elif opts.order:
            run.ntrks = len(opts.order)
            run.ntrks_from_order = True
        if opts.mode != Mode.UNKNOWN:
            run.mode = opts.mode
        if isinstance(source, TbinSource):
            self._use_tbin_header(source)
        if run.mode == Mode.UNKNOWN:
            run.mode = Mode.PE

        parms = read_parms(opts.basename, run.mode, opts.quiet)
        if parms.extra_options:
            opts = parse_options(self.tokens + parms.extra_options, opts.basename)[0]
            opts = replace(opts, outf=self.opts.outf or opts.outf)
            self.opts = opts
            run.parity = opts.parity
            run.revparity = opts.revparity
        self.parmsets = parms.parmsets
        active = [i for i, p in enumerate(self.parmsets) if p.active]
        if not active:
            raise ParmsetError("no active parameter sets")
        self.first_parmset = active[0]

        if isinstance(source, CsvSource):
            if not run.ntrks:
                run.ntrks = source.nheads
                LOGGER.info("  derived ntrks=%d from .CSV file header", run.ntrks)
            elif source.nheads != run.ntrks:
                LOGGER.warning("*** WARNING *** input file has %d columns of data, but ntrks=%d",
                               source.nheads, run.ntrks)
            source.measure_deltat(opts.subsample)
        if not run.ntrks:
            raise OptionError("the number of tracks is unknown; use -ntrks=")
        if source.nheads < run.ntrks:
            raise SampleSourceError(f"{source.path} has {source.nheads} heads but ntrks={run.ntrks}")
        if opts.add_parity and run.ntrks >= 9:
            raise OptionError(f"-addparity not allowed with ntrks={run.ntrks}")
        if run.mode == Mode.GCR and run.ntrks != 9:
            raise OptionError(f"GCR needs 9 tracks, not {run.ntrks}")

        if opts.skip_samples:
            if not opts.quiet:
                LOGGER.info("skipping the first %s samples...", f"{opts.skip_samples:,}")
            source.skip(opts.skip_samples)

        reorder = opts.order and (isinstance(source, CsvSource) or source.header.flags & FLAG_NO_REORDER)
        run.head_to_trk = parse_track_order(opts.order, run.ntrks) if reorder else list(range(run.ntrks))
        source.configure(run.head_to_trk, opts.invert, opts.differentiate, opts.subsample)
        run.sample_deltat = source.sample_deltat
        if run.sample_deltat <= 0:
            raise SampleSourceError(f"{source.path} has no usable sample interval")

        if opts.ips is not None:
            run.ips = opts.ips
        if not run.ips:
            run.ips = GCR_IPS if run.mode == Mode.GCR else DEFAULT_IPS
        if opts.bpi is not None:
            run.bpi = opts.bpi
        if run.mode == Mode.GCR:
            if run.bpi != GCR_BPI:
                LOGGER.info("BPI was reset to %.0f for GCR 6250", GCR_BPI)
            run.bpi = GCR_BPI
        self._set_samples_per_bit(source)

        self.skew = SkewCompensator(run.ntrks)
        self.stats = PeakStats(run.ntrks, run.mode)
        if opts.skew is not None and run.mode != Mode.PE:
            self.skew.delays = list(opts.skew)
            self.skew.given = True
            self.skew.reset_fifos()

    def _set_samples_per_bit(self, source: SampleSource) -> None:
        run = self.run
        if run.bpi:
            source.samples_per_bit = int(1 / (run.bpi * run.ips * run.sample_deltat))

    # decoding passes

    def _attempt(self, source: SampleSource, index: int, estimator: DensityEstimator | None = None) -> Attempt:
        decoder = BlockDecoder(self.run, self.opts, self.parmsets[index], index, self.skew, self.stats, estimator)
        return decoder.decode(source)

    def _density_pass(self, source: SampleSource) -> None:
        estimator = DensityEstimator()
        start = source.tell()
        nblks = 0
        while not estimator.done:
            attempt = self._attempt(source, self.first_parmset, estimator)
            if attempt.result.blktype not in (BlockType.NONE, BlockType.NOISE):
                nblks += 1
            if attempt.endfile:
                break
        self.run.bpi = estimator.choose_density(self.run.ips, self.run.mode, nblks, self.opts.quiet)
        source.seek(start)
        self._set_samples_per_bit(source)

    def _deskew_pass(self, source: SampleSource) -> None:
        run, opts = self.run, self.opts
        if run.mode == Mode.PE:
            LOGGER.info("-deskew option is ignored for PE")
            return
        if self.skew.given:
            if not opts.quiet:
                self.skew.display(run.sample_deltat)
            return
        if not opts.quiet:
            LOGGER.info("starting preprocessing to determine head skew...")
        start = source.tell()
        nblks = 0
        min_transitions = 0
        while nblks < MAXSKEWBLKS and min_transitions < MINSKEWTRANS:
            attempt = self._attempt(source, self.first_parmset)
            if attempt.result.blktype not in (BlockType.NONE, BlockType.NOISE):
                min_transitions = self.stats.min_transitions()
                nblks += 1
            if attempt.endfile:
                break
        if min_transitions <= 0:
            raise DecoderError(f"Some tracks have no transitions. Is ntrks={run.ntrks} correct?")
        if not opts.quiet:
            LOGGER.info("head skew compensation after reading the first %d blocks:", nblks)
        compute_deskew(self.stats, self.skew, run.bitspacing, run.sample_deltat, do_set=True, quiet=opts.quiet)
        source.seek(start)
        write_peakstats(self.stats, self.base, "_deskew", opts.quiet)
        self.stats.reset()

    def _next_parmset(self, current: int, attempts: dict[int, Attempt]) -> int | None:
        count = len(self.parmsets)
        for step in range(1, count):
            index = (current + step) % count
            if self.parmsets[index].active and index not in attempts:
                return index
        return None

    def _read_block(self, source: SampleSource) -> tuple[dict[int, Attempt], int, bool]:
        """Decode the next block with as many parmsets as it takes."""
        opts = self.opts
        start = source.tell()
        attempts: dict[int, Attempt] = {}
        index = self.first_parmset
        blocknum = self.writer.numblks + 1
        while True:
            if opts.verbose_level & VL_ATTEMPTS:
                LOGGER.debug("     trying block %d with parmset %d at time %.8f", blocknum, index, self.now)
            attempt = self._attempt(source, index)
            result = attempt.result
            if result.blktype == BlockType.NONE:
                return attempts, index, True
            attempts[index] = attempt
            self.parmsets[index].tried += 1
            if opts.verbose_level & VL_ATTEMPTS:
                LOGGER.debug("       block %d is type %s with parmset %d; minlength %d, maxlength %d, "
                             "%d errors, %d warnings, %d corrected bits at %.8f",
                             blocknum, BLOCKTYPE_NAMES[result.blktype], index, result.minbits, result.maxbits,
                             result.errcount, result.warncount, result.corrected_bits, attempt.end_time)
            if result.blktype in (BlockType.TAPEMARK, BlockType.NOISE):
                break
            if result.blktype == BlockType.BLOCK and result.errcount == 0 and result.warncount == 0:
                if len(attempts) > 1:
                    self.totals.numblks_goodmultiple += 1
                break
            if not opts.multiple_tries or (self.run.mode == Mode.PE and result.minbits == 0):
                break
            nxt = self._next_parmset(index, attempts)
            if nxt is None:
                break
            index = nxt
            source.seek(start)
            LOGGER.debug("   retrying block %d with parmset %d", blocknum, index)
        return attempts, index, False

    def _main_loop(self, source: SampleSource) -> None:
        opts = self.opts
        endfile = False
        while not endfile and (opts.blklimit is None or self.writer.numblks < opts.blklimit):
            attempts, last, endfile = self._read_block(source)
            if not attempts:
                break
            chosen_index = choose_attempt(attempts, last)
            chosen = attempts[chosen_index]
            result = chosen.result
            tries = len(attempts)
            if result.errcount > 0 or result.blktype == BlockType.BADBLOCK:
                self.ok = False
            if opts.multiple_tries:
                LOGGER.debug("  chose parmset %d as best after %d tries, type %s",
                             chosen_index, tries, BLOCKTYPE_NAMES[result.blktype])
            source.seek(chosen.end_position)
            endfile = endfile or chosen.endfile
            self.now = chosen.end_time
            if result.blktype == BlockType.NOISE:
                continue
            self.parmsets[chosen_index].chosen += 1
            if result.blktype == BlockType.TAPEMARK:
                self.got_tapemark(chosen)
            elif result.blktype == BlockType.BLOCK:
                self.got_datablock(chosen, tries, bad=False)
            elif result.blktype == BlockType.BADBLOCK:
                self.got_datablock(chosen, tries, bad=True)
            else:
                raise DecoderError(f"bad block state after decoding: {BLOCKTYPE_NAMES[result.blktype]}")
        if opts.blklimit is not None and self.writer.numblks >= opts.blklimit:
            LOGGER.info("***blklimit=%d reached", opts.blklimit)

    # block disposition

    def _show_ibg(self, attempt: Attempt) -> None:
        opts = self.opts
        if not opts.show_ibg:
            return
        ibg_ms = int((attempt.t_blockstart - self.blockstart_time) * 1000 + 0.5)
        threshold = opts.show_ibg_threshold
        if threshold == 0 or ibg_ms >= threshold:
            msg = f"{ibg_ms // 1000}.{ibg_ms % 1000:03d} sec interblock gap{'!' if threshold > 0 else ''}"
            LOGGER.info(msg)
            if self.textdump is not None:
                self.textdump.message(msg)

    def _block_row(self, attempt: Attempt, tries: int, blocknum: int) -> None:
        r = attempt.result
        self.block_rows.append({
            "block": blocknum,
            "type": r.blktype.name.lower(),
            "length": r.minbits if r.blktype != BlockType.TAPEMARK else 0,
            "parmset": r.parmset,
            "tries": tries,
            "errcount": r.errcount,
            "warncount": r.warncount,
            "time": attempt.end_time,
            "track_mismatch": r.track_mismatch,
            "vparity_errs": r.vparity_errs,
            "crc_errs": r.crc_errs,
            "lrc_errs": r.lrc_errs,
            "ecc_errs": r.ecc_errs,
            "gcr_bad_dgroups": r.gcr_bad_dgroups,
            "gcr_bad_sequence": r.gcr_bad_sequence,
            "missed_midbits": r.missed_midbits,
            "corrected_bits": r.corrected_bits,
        })

    def got_tapemark(self, attempt: Attempt) -> None:
        self.totals.numtapemarks += 1
        self._show_ibg(attempt)
        self.blockstart_time = attempt.end_time
        if not self.opts.quiet:
            LOGGER.info("  tapemark at time %.8f, %d blocks written so far", self.now, self.writer.numblks)
        if self.textdump is not None:
            self.textdump.tapemark()
        self.writer.tapemark(self.now)
        self._block_row(attempt, 1, self.writer.numblks)

    def got_datablock(self, attempt: Attempt, tries: int, bad: bool) -> None:
        opts, run, totals = self.opts, self.run, self.totals
        result = attempt.result
        length = result.minbits
        now = self.now
        self._show_ibg(attempt)
        self.blockstart_time = attempt.end_time
        data = block_bytes(attempt.buffers, length, opts.add_parity, run.ntrks)
        labeled = (not bad and opts.labels
                   and process_label(data, result.errcount, self.writer, now, opts.quiet))
        if length <= 0 or (labeled and not opts.tap_format):
            return
        if length <= 2:
            LOGGER.debug("*** ignoring runt block of %d bytes at %.8f", length, now)
        if bad:
            totals.numblks_unusable += 1
            if not opts.quiet:
                if result.track_mismatch:
                    reason = f"tracks mismatched with lengths {result.minbits} to {result.maxbits}"
                else:
                    reason = "unknown reason"
                LOGGER.error("ERROR: unusable block, %s, %d tries, parmset %d, at time %.8f",
                             reason, tries, result.parmset, now)
            return

        blocknum = self.writer.numblks + 1
        totals.last_block_time = now
        self.writer.write_block(data, result.errcount > 0, now)
        if self.textdump is not None:
            self.textdump.record(data, result.errcount, result.warncount)
        if result.errcount:
            totals.numblks_err += 1
        if result.warncount:
            totals.numblks_warn += 1
        if opts.verbose or blocknum == 1 or (not opts.quiet and (result.errcount or result.warncount)):
            if result.alltrk_min_agc_gain == float("inf"):
                agc = f"max AGC {result.alltrk_max_agc_gain:.2f}, "
            else:
                agc = f"AGC {result.alltrk_min_agc_gain:.2f}-{result.alltrk_max_agc_gain:.2f}, "
            speed = 1 / (result.avg_bit_spacing * run.bpi) if result.avg_bit_spacing > 0 else 0.0
            LOGGER.info("wrote block %3d, %4d bytes, %d %s, parmset %d, %s%s, avg speed %.2f IPS at time %.8f",
                        blocknum, length, tries, "tries" if tries > 1 else "try", result.parmset, agc,
                        format_block_errors(result, run.mode, attempt.buffers, length), speed, now)
            if not opts.verbose and blocknum == 1:
                LOGGER.info("(subsequent good blocks will not be shown because -v wasn't specified)")
        if opts.verbose_level & VL_TRACKLENGTHS:
            LOGGER.info("   block %d track lengths %d to %d", blocknum, result.minbits, result.maxbits)
        if opts.verbose_level & VL_WARNING_DETAIL and result.first_error >= 0:
            LOGGER.info("   first error of block %d is at byte %d", blocknum, result.first_error)
        if result.track_mismatch:
            totals.numblks_trksmismatched += 1
        if result.missed_midbits:
            totals.numblks_midbiterrs += 1
            LOGGER.warning("   WARNING: %d bits were before the midbit using parmset %d for block %d at %.8f",
                           result.missed_midbits, result.parmset, blocknum, now)
        if result.corrected_bits:
            totals.numblks_corrected += 1
        totals.numdatabytes += length
        self._block_row(attempt, tries, blocknum)

    # reporting

    def _summarize(self, source: SampleSource, elapsed: float) -> None:
        opts, run, totals, writer = self.opts, self.run, self.totals, self.writer
        numblks = writer.numblks
        if not opts.quiet:
            LOGGER.info("summary for file \"%s\":", source.path)
            LOGGER.info("  %s samples were processed in %.0f seconds (%.3f seconds/block)",
                        f"{source.samples_read:,}", elapsed, elapsed / numblks if numblks else 0.0)
            LOGGER.info("  created %d output file%s with a total of %s bytes",
                        writer.numfiles, "s" if writer.numfiles != 1 else "", f"{writer.numoutbytes:,}")
            LOGGER.info("  decoded %d tape marks and %d blocks with %s bytes from %.2f seconds of tape data",
                        totals.numtapemarks, numblks, f"{totals.numdatabytes:,}", self.now - writer.data_start_time)
            if totals.last_block_time:
                LOGGER.info("  the last block written was %.8f seconds into the tape", totals.last_block_time)
            line = (f"  {totals.numblks_err} block{'s' if totals.numblks_err != 1 else ''} had errors, "
                    f"{totals.numblks_warn} had warnings, {totals.numblks_trksmismatched} had mismatched tracks, "
                    f"{totals.numblks_corrected} had bits corrected")
            if run.mode == Mode.NRZI:
                line += f", {totals.numblks_midbiterrs} had midbit timing errors"
            LOGGER.info(line)
            if totals.numblks_unusable:
                LOGGER.info("  %d blocks were unusable and were not written", totals.numblks_unusable)
            if opts.multiple_tries:
                LOGGER.info("  %d good blocks had to try more than one parmset", totals.numblks_goodmultiple)
                for i, pset in enumerate(self.parmsets):
                    if pset.tried:
                        LOGGER.info("  parmset %d was tried %4d times and used %4d times, or %5.1f%%",
                                    i, pset.tried, pset.chosen, 100.0 * pset.chosen / pset.tried)

        write_peakstats(self.stats, self.base, "", opts.quiet)
        if self.stats.total:
            skew_ok = compute_deskew(self.stats, self.skew, run.bitspacing, run.sample_deltat,
                                     do_set=False, quiet=opts.quiet)
            if not opts.quiet:
                self._report_skew(skew_ok)
        write_block_table(self.block_rows, self.base)
        usage = [
            {
                "parmset": i,
                "tried": p.tried,
                "tried_pct": 100.0 * p.tried / max(1, sum(q.tried for q in self.parmsets)),
                "chosen": p.chosen,
                "chosen_pct": 100.0 * p.chosen / p.tried if p.tried else 0.0,
            }
            for i, p in enumerate(self.parmsets) if p.tried
        ]
        write_summary(self.base, {
            "input": source.path,
            "encoding": f"{run.ntrks} track {mode_name(run.mode)}, {run.bpi:.0f} BPI at {run.ips:.0f} IPS",
            "result": "ok" if self.ok else "bad",
            "samples": f"{source.samples_read:,}",
            "output files": writer.numfiles,
            "output bytes": f"{writer.numoutbytes:,}",
            "tape marks": totals.numtapemarks,
            "blocks": numblks,
            "data bytes": f"{totals.numdatabytes:,}",
            "blocks with errors": totals.numblks_err,
            "blocks with warnings": totals.numblks_warn,
            "blocks with mismatched tracks": totals.numblks_trksmismatched,
            "blocks with corrected bits": totals.numblks_corrected,
            "unusable blocks": totals.numblks_unusable,
            "seconds": f"{elapsed:.1f}",
        }, usage)

    def _report_skew(self, skew_ok: bool) -> None:
        pct = self.skew.max_delay_percent
        if skew_ok:
            if self.opts.deskew:
                LOGGER.info("  deskewing with delays up to %.1f%% of a bit time seems to have been successful", pct)
            else:
                LOGGER.info("  the tape data head skew is minimal")
        elif self.opts.deskew:
            LOGGER.info("  deskewing with delays up to %.1f%% of a bit time wasn't entirely effective", pct)
            LOGGER.info("  the tape might have been written by two different drives")
            LOGGER.info("  if so you should consider separating the data into those sections")
        else:
            LOGGER.info("  head skew is significant; you should try again with the -deskew option")

    def run_file(self) -> bool:
        """Decode the whole input; returns True if every block was clean."""
        opts = self.opts
        started = time.perf_counter()
        if not opts.quiet:
            if self.command_line:
                LOGGER.info("  command line: %s", self.command_line)
            LOGGER.info("the output files will be \"%s.xxx\"", self.base)
        with open_source(opts.basename, tbin_only=opts.tbin_file) as source:
            if not opts.quiet:
                LOGGER.info("reading file \"%s\"", source.path)
            self._setup(source)
            opts = self.opts
            self.writer = BlockWriter(self.base, tap_format=opts.tap_format, quiet=opts.quiet)
            if opts.textfile:
                chartype = opts.chartype or ("" if opts.numtype else "ASCII")
                fmt = TextFormat(opts.numtype, chartype, opts.linesize, opts.dataspace, opts.linefeed)
                self.textdump = TextDump(self.base, fmt, quiet=opts.quiet)
            if not self.run.bpi:
                self._density_pass(source)
            if opts.deskew:
                self._deskew_pass(source)
            try:
                self._main_loop(source)
            finally:
                self.writer.finish(self.now)
                if self.textdump is not None:
                    self.textdump.close()
            self._summarize(source, time.perf_counter() - started)
        return self.ok


def process_file(tokens: list[str], basename: str, command_line: str = "") -> bool:
    opts = parse_options(tokens, basename)[0]
    log_path = f"{opts.base_output_name}.log" if opts.logging else None
    setup_logging(log_path, level=log_level(opts))
    try:
        return TapeReader(opts, tokens, command_line).run_file()
    finally:
        if log_path is not None:
            close_file_logging(log_path)


def read_file_list(path: Path) -> list[tuple[list[str], str]]:
    """Lines of ``[options] basename``; blank lines are skipped."""
    entries = []
    for raw in path.read_text(encoding="utf-8").splitlines():
        words = shlex.split(raw)
        if not words:
            continue
        options = []
        while words and words[0].startswith("-"):
            options.append(words.pop(0))
        if not words:
            raise OptionError(f"no file name in file list line: {raw}")
        entries.append((options, " ".join(words)))
    return entries


def main(argv: list[str] | None = None) -> int:
    tokens = list(sys.argv[1:] if argv is None else argv)
    command_line = " ".join(["readtape", *tokens])
    parser = build_parser()
    try:
        opts, name = parse_options(tokens)
        if not name:
            parser.error("no <basefilename> given")
        basename, ext = split_input_name(name)
        option_tokens = [t for t in tokens if t != name]

        if ext == ".tap":
            from src.dumptap import dump_tap

            setup_logging(None, level=log_level(opts))
            chartype = opts.chartype or ("" if opts.numtype else "ASCII")
            fmt = TextFormat(opts.numtype, chartype, opts.linesize, opts.dataspace, opts.linefeed)
            dump_tap(Path(f"{basename}.tap"), f"{opts.outp}{basename}", fmt, quiet=opts.quiet)
            return 0

        if opts.file_list or ext == ".txt":
            setup_logging(None, level=log_level(opts))
            entries = read_file_list(Path(f"{basename}.txt"))
            for extra, entry in tqdm(entries, desc="readtape", unit="file"):
                entry_base, entry_ext = split_input_name(entry)
                entry_tokens = option_tokens + extra + (["-tbin"] if entry_ext == ".tbin" else [])
                result = process_file(entry_tokens, entry_base, command_line)
                print(f"{entry_base}: {'ok' if result else 'bad'}")
            return 0

        if ext == ".tbin":
            option_tokens.append("-tbin")
        result = process_file(option_tokens, basename, command_line)
        if opts.quiet:
            print(f"{basename}: {'ok' if result else 'bad'}")
        return 0
    except TapeDecodeError as exc:
        setup_logging(None)
        LOGGER.critical("***FATAL ERROR: %s", exc)
        return FATAL_EXIT


if __name__ == "__main__":
    raise SystemExit(main())
