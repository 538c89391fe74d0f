"""dumptap: show the contents of a SIMH .tap image as text.

    python -m src.dumptap <options> <basefilename>

Reads <basefilename>.tap and writes the same interpreted dump readtape makes
with -textfile.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from src.decoder.errors import TapeDecodeError
from src.io.tapfile import iter_tap
from src.io.textfile import TextDump, TextFormat
from src.readtape import FATAL_EXIT, _int_range, translate_options
from src.utils.logging_config import setup_logging

LOGGER = logging.getLogger(__name__)

_FLAGS = {
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
    "Q": ["--quiet"],
    "H": ["--help"],
    "?": ["--help"],
}
_VALUES = {
    "LINESIZE": "--linesize",
    "DATASPACE": "--dataspace",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m src.dumptap",
        description="Write an interpreted text dump of a SIMH .tap file",
    )
    parser.add_argument("basename", help="<basefilename> of the .tap file")
    parser.add_argument("--numtype", choices=["hex", "octal", "octal2"], default="")
    parser.add_argument("--chartype", choices=["BCD", "EBCDIC", "ASCII", "B5500", "sixbit", "SDS", "SDSM", "flexo"],
                        default="")
    parser.add_argument("--linesize", type=_int_range(4, 256), default=0)
    parser.add_argument("--dataspace", type=_int_range(0, 256))
    parser.add_argument("--linefeed", action="store_true")
    parser.add_argument("--quiet", action="store_true")
    return parser


def dump_tap(tap_path: Path, base: str, fmt: TextFormat, quiet: bool = False) -> TextDump:
    """Write ``<base>.<fmt>.txt`` from a .tap file and return the finished dump."""
    dump = TextDump(base, fmt, quiet=quiet)
    if not quiet:
        LOGGER.info("opened %s", tap_path)
    with tap_path.open("rb") as fp:
        try:
            for record in iter_tap(fp):
                if record.kind == "end":
                    dump.close(".tap end of medium")
                elif record.kind == "erase_gap":
                    dump.message(".tap erase gap")
                elif record.kind == "tapemark":
                    dump.tapemark(".tap tape mark")
                else:
                    dump.record(record.data, errcount=1 if record.has_errors else 0)
        finally:
            dump.close("end of file")
    return dump


def main(argv: list[str] | None = None) -> int:
    tokens = list(sys.argv[1:] if argv is None else argv)
    try:
        args = build_parser().parse_args(translate_options(tokens, _FLAGS, _VALUES))
        setup_logging(None, level=logging.WARNING if args.quiet else logging.INFO)
        base = args.basename[:-4] if args.basename.lower().endswith(".tap") else args.basename
        dataspace = args.dataspace
        if dataspace is None:
            dataspace = 2 if args.numtype == "octal2" else 0
        fmt = TextFormat(args.numtype, args.chartype or ("" if args.numtype else "ASCII"),
                         args.linesize, dataspace, args.linefeed)
        dump = dump_tap(Path(f"{base}.tap"), base, fmt, quiet=args.quiet)
    except TapeDecodeError as exc:
        setup_logging(None)
        LOGGER.critical("***FATAL ERROR: %s", exc)
        return FATAL_EXIT
    print(f"{dump.path}: {dump.numrecords} blocks, {dump.numtapemarks} tape marks")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
