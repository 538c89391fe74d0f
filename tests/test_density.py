from __future__ import annotations

import pytest

from src.decoder.config import ESTDEN_COUNTNEEDED, Mode
from src.decoder.density import DensityEstimator
from src.decoder.errors import DensityError


def _feed(estimator: DensityEstimator, deltas: list[float]) -> None:
    for delta in deltas:
        estimator.transition(delta)


def test_nrzi_800_bpi() -> None:
    estimator = DensityEstimator()
    bit = 25e-6
    _feed(estimator, [bit] * 600 + [2 * bit] * 300 + [3 * bit] * 100)

    assert estimator.choose_density(50.0, Mode.NRZI, nblks=1, quiet=True) == 800.0


def test_pe_counts_half_bit_spacings() -> None:
    estimator = DensityEstimator()
    bit = 12.5e-6
    _feed(estimator, [bit / 2] * 700 + [bit] * 300)

    assert estimator.choose_density(50.0, Mode.PE, nblks=1, quiet=True) == 1600.0


def test_rare_short_spacings_are_ignored() -> None:
    estimator = DensityEstimator()
    _feed(estimator, [2e-6] * 10 + [25e-6] * 990)

    density, mindist = estimator.density(50.0, Mode.NRZI)
    assert mindist == 50 or mindist == 49
    assert density == pytest.approx(800, rel=0.05)


def test_long_spacings_are_not_counted() -> None:
    estimator = DensityEstimator()
    assert estimator.transition(500e-6) is False
    assert estimator.transition(0.0) is False
    assert estimator.totalcount == 0


def test_done_after_enough_transitions() -> None:
    estimator = DensityEstimator()
    results = [estimator.transition(25e-6) for _ in range(ESTDEN_COUNTNEEDED)]
    assert not any(results[:-1])
    assert results[-1]
    assert estimator.done


def test_nonstandard_density_is_an_error() -> None:
    estimator = DensityEstimator()
    _feed(estimator, [60e-6] * 100)
    with pytest.raises(DensityError, match="non-standard"):
        estimator.choose_density(50.0, Mode.NRZI, nblks=1, quiet=True)


def test_no_transitions_is_an_error() -> None:
    with pytest.raises(DensityError):
        DensityEstimator().choose_density(50.0, Mode.NRZI, nblks=0, quiet=True)
