"""Fatal error types raised by the decoder and its file handlers.

Decoding-quality problems (parity, CRC, track mismatch, ...) are never raised;
they are counted in the per-attempt results. Everything here stops the run.
"""

from __future__ import annotations


class TapeDecodeError(Exception):
    """Base class for all fatal tape decoding errors."""


class OptionError(TapeDecodeError, ValueError):
    """Raised for a bad or inconsistent command-line option."""


class ParmsetError(TapeDecodeError, ValueError):
    """Raised for a malformed parameter-set file."""


class TbinFormatError(TapeDecodeError, ValueError):
    """Raised when a .tbin container header or data block is invalid."""


class DensityError(TapeDecodeError, ValueError):
    """Raised when the detected recording density is non-standard."""


class SampleSourceError(TapeDecodeError, OSError):
    """Raised when an input file cannot be opened or read."""


class DecoderError(TapeDecodeError, RuntimeError):
    """Raised when an internal decoder invariant is violated."""


class TapFormatError(TapeDecodeError, ValueError):
    """Raised when a SIMH .tap image has a bad record marker."""
