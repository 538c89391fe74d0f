from __future__ import annotations

from pathlib import Path

import pytest

from src.decoder.config import MAXPARMSETS, Mode
from src.decoder.errors import ParmsetError
from src.decoder.parmsets import default_parmsets, find_parms_file, parse_parms, read_parms


def test_default_parmsets_exist_for_every_mode() -> None:
    for mode in (Mode.PE, Mode.NRZI, Mode.GCR):
        psets = default_parmsets(mode)
        assert psets
        assert all(p.active == 1 for p in psets)

    gcr = default_parmsets(Mode.GCR)[0]
    assert gcr.z1pt == pytest.approx(1.45)
    assert gcr.z2pt == pytest.approx(2.35)
    assert default_parmsets(Mode.PE)[0].clk_factor == pytest.approx(1.5)


def test_parse_parms_reads_values_comments_and_options() -> None:
    text = """
// test parms
readtape -deskew "-outp=out dir/"
parms active, clk_window, clk_alpha, agc_window, agc_alpha, min_peak, pulse_adj, pkww_bitfrac, pkww_rise, midbit, id
{ 1, 2, 0.000, 0, 0.300, 1.000, 0.400, 0.700, 0.200, 0.500, PRM }  // first
{ 0, 0, 0.200, 0, 0.300, 1.000, 0.300, 0.700, 0.200, 0.500, "PRM" }
"""
    parsed = parse_parms(text, Mode.NRZI, "test.parms", default_parmsets(Mode.NRZI))

    assert parsed.extra_options == ["-deskew", "-outp=out dir/"]
    assert len(parsed.parmsets) == 2
    first, second = parsed.parmsets
    assert first.clk_window == 2
    assert isinstance(first.clk_window, int)
    assert first.comment == "first"
    assert second.active == 0
    assert second.clk_alpha == pytest.approx(0.2)


def test_parse_parms_ignores_obsolete_names() -> None:
    text = """
parms active, old_thing, clk_alpha, id
{ 1, 42, 0.5, PRM }
"""
    parsed = parse_parms(text, Mode.PE, defaults=default_parmsets(Mode.PE))

    pset = parsed.parmsets[0]
    assert pset.clk_alpha == pytest.approx(0.5)
    # missing names take the first default set's value
    assert pset.clk_factor == pytest.approx(1.5)


@pytest.mark.parametrize(
    "text",
    [
        "{ 1, PRM }",
        "parms active, id\n{ 2, PRM }",
        "parms active, id\n{ 1 }",
        "parms active, id\n{ 1, PRM",
        "parms active, id\nnonsense",
        "parms active, id",
    ],
)
def test_parse_parms_rejects_bad_input(text: str) -> None:
    with pytest.raises(ParmsetError):
        parse_parms(text, Mode.PE)


def test_parse_parms_limits_the_number_of_sets() -> None:
    text = "parms active, id\n" + "{ 1, PRM }\n" * (MAXPARMSETS + 1)
    with pytest.raises(ParmsetError, match="too many"):
        parse_parms(text, Mode.PE)


def test_read_parms_prefers_the_file_beside_the_input(tmp_path: Path) -> None:
    base = tmp_path / "tape"
    assert find_parms_file(str(base), Mode.GCR) is None
    assert read_parms(str(base), Mode.GCR, quiet=True).source == "<internal>"

    (tmp_path / "GCR.parms").write_text("parms active, z1pt, id\n{ 1, 1.30, PRM }\n", encoding="utf-8")
    assert find_parms_file(str(base), Mode.GCR) == tmp_path / "GCR.parms"

    (tmp_path / "tape.parms").write_text("parms active, z1pt, id\n{ 1, 1.60, PRM }\n", encoding="utf-8")
    parsed = read_parms(str(base), Mode.GCR, quiet=True)

    assert parsed.source == str(tmp_path / "tape.parms")
    assert parsed.parmsets[0].z1pt == pytest.approx(1.6)
    assert parsed.parmsets[0].z2pt == pytest.approx(2.35)
