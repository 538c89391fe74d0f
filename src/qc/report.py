"""Diagnostics written next to the decoded output.

- ``<base>.peakstats<suffix>.csv`` and ``.png``: where flux transitions fell
  relative to the nominal bit spacing, per track
- ``<base>.blocks.parquet`` and ``.csv``: one row per block that was written
- ``<base>.summary.md``: totals and parameter set usage for the run
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import matplotlib
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from src.decoder.config import PEAK_STATS_NUMBUCKETS, Mode
from src.decoder.skew import PeakStats

LOGGER = logging.getLogger(__name__)

matplotlib.use("Agg")

BLOCK_COLUMNS = [
    "block", "type", "length", "parmset", "tries", "errcount", "warncount", "time",
    "track_mismatch", "vparity_errs", "crc_errs", "lrc_errs", "ecc_errs",
    "gcr_bad_dgroups", "gcr_bad_sequence", "missed_midbits", "corrected_bits",
]


def _save_fig(fig: plt.Figure, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(path, dpi=150, bbox_inches="tight")
    plt.close(fig)


def peakstats_frame(stats: PeakStats) -> pd.DataFrame:
    """Percentages per inner bin for each track, with the overflow bins as counts."""
    positions = stats.bin_positions_usec()
    left = stats.leftbin * 1e6
    right = stats.binwidth * 1e6 * (PEAK_STATS_NUMBUCKETS - 1) + left
    inner = stats.counts[:, 1:PEAK_STATS_NUMBUCKETS - 1].astype(float)
    sums = stats.trksums.astype(float)
    with np.errstate(divide="ignore", invalid="ignore"):
        percent = np.where(sums[:, np.newaxis] > 0, 100 * inner / sums[:, np.newaxis], 0.0)

    frame = pd.DataFrame({
        "total cnt": stats.trksums + stats.counts[:, 0] + stats.counts[:, -1],
        f" <={left:.1f} uS": stats.counts[:, 0],
        f" >={right:.1f} uS": stats.counts[:, -1],
        " track": [f"trk{trk}" for trk in range(stats.ntrks)],
    })
    bins = pd.DataFrame(
        {f"{pos:.1f} uS": [f"{value:.2f}%" for value in percent[:, i]] for i, pos in enumerate(positions)}
    )
    frame = pd.concat([frame, bins], axis=1)
    if stats.mode == Mode.NRZI:
        avg, _ = stats.averages_usec()
        frame["avg uS"] = [f"{value:.2f}" for value in avg]
    return frame


def plot_peakstats(stats: PeakStats, path: Path, title: str) -> Path:
    positions = stats.bin_positions_usec()
    inner = stats.counts[:, 1:PEAK_STATS_NUMBUCKETS - 1].astype(float)
    fig, ax = plt.subplots(figsize=(10, 5))
    for trk in range(stats.ntrks):
        total = stats.trksums[trk]
        ax.plot(positions, 100 * inner[trk] / total if total else inner[trk], label=f"trk{trk}")
    ax.set_xlabel("Time since previous transition, usec")
    ax.set_ylabel("Transitions, %")
    ax.set_title(title)
    ax.legend(loc="best", fontsize="small", ncol=2)
    ax.grid(True, alpha=0.2)
    _save_fig(fig, path)
    return path


def write_peakstats(stats: PeakStats, base: str, suffix: str = "", quiet: bool = False) -> list[Path]:
    """Write the transition position histogram as CSV and PNG."""
    if not stats.initialized:
        LOGGER.debug("no flux transitions were recorded; skipping peak statistics")
        return []
    csv_path = Path(f"{base}.peakstats{suffix}.csv")
    csv_path.parent.mkdir(parents=True, exist_ok=True)
    peakstats_frame(stats).to_csv(csv_path, index=False)
    png_path = plot_peakstats(stats, Path(f"{base}.peakstats{suffix}.png"), f"Flux transition positions: {Path(base).name}")
    if not quiet:
        LOGGER.info("  created statistics file \"%s\" from %s measurements of flux transition positions",
                    csv_path, f"{stats.total:,}")
    return [csv_path, png_path]


def write_block_table(rows: list[dict[str, Any]], base: str) -> list[Path]:
    """One row per finalized block, as parquet and CSV."""
    df = pd.DataFrame(rows, columns=BLOCK_COLUMNS)
    parquet_path = Path(f"{base}.blocks.parquet")
    csv_path = Path(f"{base}.blocks.csv")
    parquet_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_parquet(parquet_path, index=False)
    df.to_csv(csv_path, index=False)
    return [parquet_path, csv_path]


def write_summary(base: str, totals: dict[str, Any], parmset_usage: list[dict[str, Any]]) -> Path:
    """Markdown summary of one decoded file."""
    lines = [
        f"# Decoding summary: {Path(base).name}",
        "",
        "| item | value |",
        "|---|---|",
    ]
    for key, value in totals.items():
        lines.append(f"| {key} | {value} |")
    if parmset_usage:
        lines.extend([
            "",
            "## Parameter sets",
            "",
            "| parmset | tried | tried % | chosen | chosen % |",
            "|---|---|---|---|---|",
        ])
        for row in parmset_usage:
            lines.append(
                f"| {row['parmset']} | {row['tried']} | {row['tried_pct']:.1f} | "
                f"{row['chosen']} | {row['chosen_pct']:.1f} |"
            )
    path = Path(f"{base}.summary.md")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path
