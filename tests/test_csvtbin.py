from __future__ import annotations

from pathlib import Path

import numpy as np
import pandas as pd

from src.csvtbin import main
from src.decoder.config import Mode
from src.io.tbin import FLAG_NO_REORDER, SAMPLE_MAX, TbinHeader
from tests.synth import nrzi_capture


def _capture(tmp_path: Path) -> Path:
    cap = nrzi_capture()
    cap.nrzi_block(b"CSV TO TBIN")
    return cap.write_csv(tmp_path / "cap.csv")


def _header(path: Path) -> TbinHeader:
    with path.open("rb") as fp:
        return TbinHeader.read(fp)


def _values(path: Path, ntrks: int = 9) -> np.ndarray:
    return pd.read_csv(path, skiprows=2, header=None, usecols=range(ntrks + 1), dtype=float).to_numpy()


def test_csv_to_tbin_and_back(tmp_path: Path, capsys) -> None:
    original = _capture(tmp_path)
    base = tmp_path / "cap"

    assert main([str(base), "-nrzi", "-bpi=800", "-ips=50", "-descr=synthetic", "-q"]) == 0

    hdr = _header(tmp_path / "cap.tbin")
    assert (hdr.ntrks, hdr.mode, hdr.tdelta_ns) == (9, Mode.NRZI, 1250)
    assert (hdr.bpi, hdr.ips, hdr.descr) == (800.0, 50.0, "synthetic")
    assert hdr.flags & FLAG_NO_REORDER
    assert hdr.maxvolts >= 2.0
    assert (tmp_path / "cap.csvtbin.log").is_file()

    kept = original.rename(tmp_path / "original.csv")
    assert main([str(base), "-read", "-q"]) == 0

    before = _values(kept)
    after = _values(tmp_path / "cap.csv")
    assert after.shape == before.shape
    assert np.allclose(after[:, 0], before[:, 0], atol=1e-8)
    assert np.allclose(after[:, 1:], before[:, 1:], atol=hdr.maxvolts / SAMPLE_MAX + 2e-5)
    assert capsys.readouterr().out.splitlines()[-1] == f"{base}: {len(before)} samples"


def test_track_order_is_applied(tmp_path: Path) -> None:
    original = _capture(tmp_path)
    base = tmp_path / "cap"

    assert main([str(base), "-order=P01234567", "-nolog", "-q"]) == 0

    hdr = _header(tmp_path / "cap.tbin")
    assert not hdr.flags & FLAG_NO_REORDER
    kept = original.rename(tmp_path / "original.csv")
    assert main([str(base), "-read", "-nolog", "-q"]) == 0

    before = _values(kept)
    after = _values(tmp_path / "cap.csv")
    tolerance = hdr.maxvolts / SAMPLE_MAX + 2e-5
    # the first input column was the parity track
    assert np.allclose(after[:, 9], before[:, 1], atol=tolerance)
    assert np.allclose(after[:, 1], before[:, 2], atol=tolerance)


def test_subsample_and_showheader(tmp_path: Path, capsys) -> None:
    original = _capture(tmp_path)
    rows = len(_values(original))
    base = tmp_path / "cap"

    assert main([str(base), "-subsample=2", "-nolog", "-q"]) == 0
    assert _header(tmp_path / "cap.tbin").tdelta_ns == 2500

    original.unlink()
    assert main([str(base), "-showheader", "-nolog", "-q"]) == 0
    assert not original.exists()
    assert capsys.readouterr().out.splitlines()[-1] == f"{base}: {rows // 2} samples"


def test_maxvolts_is_raised_to_fit_the_samples(tmp_path: Path) -> None:
    _capture(tmp_path)
    assert main([str(tmp_path / "cap"), "-maxvolts=1.0", "-nolog", "-q"]) == 0
    assert _header(tmp_path / "cap.tbin").maxvolts > 1.0


def test_missing_csv_is_fatal(tmp_path: Path) -> None:
    assert main([str(tmp_path / "none"), "-nolog", "-q"]) == 99
