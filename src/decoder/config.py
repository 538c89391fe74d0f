"""Decoder runtime configuration and internal tuning constants."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum

# Internal tuning constants (not exposed via CLI).
MINTRKS = 5
MAXTRKS = 19
MAXBLOCK = 32768
MAXPARMSETS = 15

DEFAULT_IPS = 50.0
GCR_IPS = 25.0
GCR_BPI = 9042.0
STANDARD_DENSITIES = (200.0, 556.0, 800.0, 1600.0, 9042.0)

# peak-detect moving window
PKWW_MAX_WIDTH = 20
PKWW_DEFAULT_WIDTH = 8
PKWW_PEAKHEIGHT = 4.0
PEAK_THRESHOLD = 0.005

# zero-crossing detection
ZEROCROSS_PEAK = 0.2
ZEROCROSS_SLOPE = 1.5
DIFFERENTIATE_THRESHOLD = 0.05
DIFFERENTIATE_SCALE = 0.4

# clock and automatic gain control
CLKRATE_WINDOW = 50
AGC_MAX_WINDOW = 10
AGC_MAX_VALUE = 2.0
AGC_STARTBASE = 5
AGC_ENDBASE = 15

# PE
PE_IDLE_FACTOR = 2.5
PE_IBG_SECS = 200e-6
PE_IGNORE_POSTBITS = 5
PE_MIN_PREBITS = 70
PE_MAX_POSTBITS = 40
PE_TAPEMARK_MIN_PEAKS = 75

# NRZI
NRZI_IBG_SECS = 200e-6
NRZI_MIN_BLOCK = 10
NRZI_MAX_MISMATCH = 10
NRZI_BADTRK_FACTOR = 2.0
NRZI_POSTBLOCK_BITS = 8

# GCR
GCR_IDLE_THRESH = 6.0
GCR_IBG_SECS = 200e-6
GCR_MIN_BLOCK = 10
GCR_MAX_MISMATCH = 2
GCR_TAPEMARK_MIN = 250
GCR_TAPEMARK_MAX = 400

# deskew
MAXSKEWSAMP = 30
MAXSKEWBLKS = 10
MINSKEWTRANS = 100
DESKEW_PEAKDIFF_WARNING = 0.10
DESKEW_STDDEV_WARNING = 0.03

# peak position statistics
PEAK_STATS_NUMBUCKETS = 50

# density estimation
ESTDEN_BINWIDTH = 0.5e-6
ESTDEN_MAXDELTA = 120e-6
ESTDEN_NUMBINS = 150
ESTDEN_COUNTNEEDED = 9999
ESTDEN_MINPERCENT = 5
ESTDEN_CLOSEPERCENT = 20

SKIP_NOISE = True
CSV_DELTAT_LINES = 10_000
DEFAULT_SHOW_IBG_MS = 5000
DEFAULT_OUTPUT_DIGITS = 3

# verbose_level bits
VL_BLKSTATUS = 0x01
VL_WARNING_DETAIL = 0x02
VL_ATTEMPTS = 0x04
VL_TRACKLENGTHS = 0x08


class Mode(IntEnum):
    """Encoding mode; the values are the ones stored in .tbin headers."""

    UNKNOWN = 0
    PE = 1
    NRZI = 2
    GCR = 3

    @classmethod
    def from_header(cls, value: int) -> "Mode":
        # old converters wrote 4 for GCR
        if value == 4:
            return cls.GCR
        return cls(value)


class BlockType(IntEnum):
    NONE = 0
    TAPEMARK = 1
    NOISE = 2
    BADBLOCK = 3
    BLOCK = 4
    ABORTED = 5


BLOCKTYPE_NAMES = {
    BlockType.NONE: "BS_NONE",
    BlockType.TAPEMARK: "BS_TAPEMARK",
    BlockType.NOISE: "BS_NOISE",
    BlockType.BADBLOCK: "BS_BADBLOCK",
    BlockType.BLOCK: "BS_BLOCK",
    BlockType.ABORTED: "ABORTED",
}


@dataclass(frozen=True)
class DecodeOptions:
    """Options fixed for the duration of one input file."""

    basename: str = ""
    ntrks: int | None = None
    order: str | None = None
    mode: Mode = Mode.UNKNOWN
    find_zeros: bool = False
    differentiate: bool = False
    bpi: float | None = None
    ips: float | None = None
    skip_samples: int = 0
    blklimit: int | None = None
    subsample: int = 1
    show_ibg: bool = False
    show_ibg_threshold: int = DEFAULT_SHOW_IBG_MS
    multiple_tries: bool = True
    tap_format: bool = False
    tbin_file: bool = False
    parity: int = 1
    revparity: int = 0
    invert: bool = False
    reverse: bool = False
    deskew: bool = False
    skew: tuple[int, ...] | None = None
    add_parity: bool = False
    correct: bool = False
    reset_speed: bool = False
    outf: str | None = None
    outp: str = ""
    textfile: bool = False
    numtype: str = ""
    chartype: str = ""
    linesize: int = 0
    dataspace: int = 0
    linefeed: bool = False
    logging: bool = True
    labels: bool = True
    verbose: bool = False
    verbose_level: int = 0
    quiet: bool = False
    file_list: bool = False

    @property
    def base_output_name(self) -> str:
        return f"{self.outp}{self.outf or self.basename}"


@dataclass
class RunState:
    """Values that are discovered or changed while a file is decoded."""

    ntrks: int = 0
    mode: Mode = Mode.UNKNOWN
    bpi: float = 0.0
    ips: float = 0.0
    sample_deltat: float = 0.0
    parity: int = 1
    revparity: int = 0
    head_to_trk: list[int] = field(default_factory=list)
    ntrks_from_order: bool = False
    said_rates: bool = False
    warned_polarity: bool = False

    @property
    def bitspacing(self) -> float:
        """Nominal seconds per bit."""
        return 1.0 / (self.bpi * self.ips)

    def expected_parity_for(self, blklength: int) -> int:
        if 0 < blklength == self.revparity:
            return 1 - self.parity
        return self.parity


def mode_name(mode: Mode) -> str:
    return {Mode.PE: "PE", Mode.NRZI: "NRZI", Mode.GCR: "GCR"}.get(mode, "???")


def parity(value: int) -> int:
    """Parity of all the bits of value."""
    return bin(value).count("1") & 1
