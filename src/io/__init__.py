"""Tape sample sources, decoded-data sinks and tape image helpers."""

from .labels import parse_label, process_label
from .samples import CsvSource, Sample, SampleSource, SourcePosition, TbinSource, open_source
from .sinks import BlockWriter
from .tapfile import TapRecord, iter_tap, read_tap
from .tbin import TbinDat, TbinHeader
from .textfile import TextDump, TextFormat

__all__ = [
    "BlockWriter",
    "CsvSource",
    "Sample",
    "SampleSource",
    "SourcePosition",
    "TapRecord",
    "TbinDat",
    "TbinHeader",
    "TbinSource",
    "TextDump",
    "TextFormat",
    "iter_tap",
    "open_source",
    "parse_label",
    "process_label",
    "read_tap",
]
