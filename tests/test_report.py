from __future__ import annotations

from pathlib import Path

import pandas as pd

from src.decoder.config import MAXSKEWSAMP, Mode
from src.decoder.skew import PeakStats, SkewCompensator, compute_deskew
from src.qc.report import BLOCK_COLUMNS, write_block_table, write_peakstats, write_summary

BIT = 25e-6
DT = 1e-6


def _late_track_stats() -> PeakStats:
    stats = PeakStats(2, Mode.NRZI)
    for _ in range(50):
        stats.record(BIT, BIT, 0)
        stats.record(BIT, BIT + 3e-6, 1)
    return stats


def test_peakstats_not_written_without_transitions(tmp_path: Path) -> None:
    assert write_peakstats(PeakStats(9, Mode.PE), str(tmp_path / "t")) == []
    assert list(tmp_path.iterdir()) == []


def test_peakstats_files(tmp_path: Path) -> None:
    paths = write_peakstats(_late_track_stats(), str(tmp_path / "t"), "_deskew", quiet=True)

    assert paths == [tmp_path / "t.peakstats_deskew.csv", tmp_path / "t.peakstats_deskew.png"]
    assert all(p.stat().st_size > 0 for p in paths)
    frame = pd.read_csv(paths[0])
    assert frame["total cnt"].tolist() == [50, 50]
    assert frame[" track"].tolist() == ["trk0", "trk1"]
    assert "avg uS" in frame.columns


def test_deskew_delays_the_early_track() -> None:
    stats = _late_track_stats()
    skew = SkewCompensator(2)

    compute_deskew(stats, skew, BIT, DT, do_set=True, quiet=True)

    assert skew.delays[1] == 0
    assert 2 <= skew.delays[0] <= 4
    assert skew.max_delay_percent > 0


def test_skew_delay_line() -> None:
    skew = SkewCompensator(2)
    skew.set_delay(0, 2e-6, DT)
    skew.reset_fifos()

    out = [skew.apply([float(v), -float(v)]) for v in range(1, 6)]

    assert [o[0] for o in out[2:]] == [1.0, 2.0, 3.0]
    assert [o[1] for o in out] == [-1.0, -2.0, -3.0, -4.0, -5.0]


def test_skew_delay_is_capped() -> None:
    skew = SkewCompensator(1)
    skew.set_delay(0, 100e-6, DT)
    assert skew.delays == [MAXSKEWSAMP]


def test_block_table(tmp_path: Path) -> None:
    row = dict.fromkeys(BLOCK_COLUMNS, 0)
    row.update(block=1, type="block", length=80, time=0.25)

    paths = write_block_table([row, {**row, "block": 2, "crc_errs": 1}], str(tmp_path / "t"))

    assert paths == [tmp_path / "t.blocks.parquet", tmp_path / "t.blocks.csv"]
    frame = pd.read_parquet(paths[0])
    assert frame.columns.tolist() == BLOCK_COLUMNS
    assert frame["crc_errs"].tolist() == [0, 1]
    assert pd.read_csv(paths[1])["length"].tolist() == [80, 80]


def test_summary(tmp_path: Path) -> None:
    usage = [{"parmset": 0, "tried": 4, "tried_pct": 100.0, "chosen": 3, "chosen_pct": 75.0}]

    path = write_summary(str(tmp_path / "t"), {"blocks": 3, "tape marks": 1}, usage)

    text = path.read_text(encoding="utf-8")
    assert path == tmp_path / "t.summary.md"
    assert text.startswith("# Decoding summary: t\n")
    assert "| blocks | 3 |" in text
    assert "| 0 | 4 | 100.0 | 3 | 75.0 |" in text
