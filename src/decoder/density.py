"""Recording density estimation from flux transition spacing."""

from __future__ import annotations

import logging

from .config import (
    ESTDEN_BINWIDTH,
    ESTDEN_CLOSEPERCENT,
    ESTDEN_COUNTNEEDED,
    ESTDEN_MAXDELTA,
    ESTDEN_MINPERCENT,
    ESTDEN_NUMBINS,
    STANDARD_DENSITIES,
    Mode,
)
from .errors import DecoderError, DensityError

LOGGER = logging.getLogger(__name__)


class DensityEstimator:
    """Histogram of transition-to-transition distances in 0.5 usec bins."""

    def __init__(self) -> None:
        self.counts: dict[int, int] = {}
        self.totalcount = 0

    @property
    def done(self) -> bool:
        return self.totalcount >= ESTDEN_COUNTNEEDED

    def transition(self, deltasecs: float) -> bool:
        """Count one transition spacing; return True once enough have been seen."""
        if 0 < deltasecs <= ESTDEN_MAXDELTA:
            delta = int(deltasecs / ESTDEN_BINWIDTH)
            if delta not in self.counts and len(self.counts) >= ESTDEN_NUMBINS:
                raise DecoderError(f"estden: too many transition delta values: {len(self.counts)}")
            self.counts[delta] = self.counts.get(delta, 0) + 1
            self.totalcount += 1
        return self.done

    def density(self, ips: float, mode: Mode) -> tuple[float, int]:
        """Density implied by the smallest common spacing, and that spacing's bin."""
        threshold = self.totalcount * ESTDEN_MINPERCENT // 100
        candidates = [delta for delta, count in self.counts.items() if count > threshold]
        if not candidates:
            raise DensityError(f"no usable flux transitions were seen after {self.totalcount:,} transitions")
        mindist = min(candidates)
        density = 1.0 / (ips * (mindist + 0.5) * ESTDEN_BINWIDTH)
        if mode == Mode.PE:
            density /= 2
        return density, mindist

    def choose_density(self, ips: float, mode: Mode, nblks: int, quiet: bool = False) -> float:
        """Snap the estimate to a standard density or raise DensityError."""
        density, mindist = self.density(ips, mode)
        for std in STANDARD_DENSITIES:
            if abs(density - std) < std * ESTDEN_CLOSEPERCENT / 100:
                if not quiet:
                    LOGGER.info(
                        "  density was set to %.0f BPI (%.2f usec/bit) after reading the first %d blocks "
                        "and seeing %s transitions in %d bins that imply %.0f BPI",
                        std, 1e6 / (std * ips), nblks, f"{self.totalcount:,}", len(self.counts), density,
                    )
                return std
        raise DensityError(
            f"The detected density of {density:.0f} ({(mindist + 0.5) * ESTDEN_BINWIDTH * 1e6:.1f} usec) "
            f"after seeing {self.totalcount:,} transitions is non-standard; please specify it."
        )
