"""Decoding of 7 and 9 track magnetic tape from analog read-head samples."""

from .config import BlockType, DecodeOptions, Mode, RunState, mode_name
from .density import DensityEstimator
from .engine import BlockDecoder
from .errors import (
    DecoderError,
    DensityError,
    OptionError,
    ParmsetError,
    SampleSourceError,
    TapeDecodeError,
    TapFormatError,
    TbinFormatError,
)
from .parmsets import Parmset, read_parms
from .results import Attempt, BlockResult, block_bytes, format_block_errors
from .skew import PeakStats, SkewCompensator, compute_deskew

__all__ = [
    "Attempt",
    "BlockDecoder",
    "BlockResult",
    "BlockType",
    "DecodeOptions",
    "DecoderError",
    "DensityError",
    "DensityEstimator",
    "Mode",
    "OptionError",
    "Parmset",
    "ParmsetError",
    "PeakStats",
    "RunState",
    "SampleSourceError",
    "SkewCompensator",
    "TapFormatError",
    "TapeDecodeError",
    "TbinFormatError",
    "block_bytes",
    "compute_deskew",
    "format_block_errors",
    "mode_name",
    "read_parms",
]
