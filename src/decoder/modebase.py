"""Common interface of the PE, NRZI and GCR decoders.

The block engine finds the peaks and hands each one to the decoder for the
tape's encoding. The decoder turns the peaks into data bits in the engine's
buffers, and decides when the block has ended and what kind of block it was.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .config import Mode

if TYPE_CHECKING:
    from .engine import BlockDecoder
    from .tracks import TrackState


class ModeDecoder:
    """Peak handlers for one encoding; one instance per decoding attempt."""

    mode = Mode.UNKNOWN

    def __init__(self, ctx: "BlockDecoder") -> None:
        self.ctx = ctx

    def constant_clock(self) -> float:
        """Bit spacing used by parameter sets that hold the clock constant."""
        return self.ctx.run.bitspacing

    def before_tracks(self) -> None:
        """Called once per sample before any track is looked at."""

    def after_track(self, t: "TrackState") -> bool:
        """Called after each track's peak detection; True stops this sample."""
        return False

    def after_idle(self, t: "TrackState") -> None:
        """Called when a transition arrives on a track that had gone idle."""

    def top(self, t: "TrackState") -> None:
        raise NotImplementedError

    def bot(self, t: "TrackState") -> None:
        raise NotImplementedError

    def end_of_block(self) -> None:
        raise NotImplementedError

    def force_end_of_block(self) -> None:
        """End of input was reached in the middle of a block."""
        self.end_of_block()

