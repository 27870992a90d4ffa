"""Coverage tracks and hotspot recovery for simulated ChIP-seq runs."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional

import numpy as np
import pandas as pd
import pyBigWig
import pyranges as pr
from scipy import stats

from io_utils import READ_COLUMNS, ensure_directory, ensure_integer_columns, read_bed_frame
from readsim import SimulationConfig

LOGGER = logging.getLogger(__name__)


def load_reads(path: Path) -> pr.PyRanges:
    """Load a simulated read file into :class:`pyranges.PyRanges`."""

    if not path.exists():
        raise FileNotFoundError(f"Read file not found: {path}")
    frame = read_bed_frame(path, column_names=READ_COLUMNS, dtype={3: str, 5: str})
    frame = ensure_integer_columns(frame, ("Start", "End", "Score"))
    return pr.PyRanges(frame)


def _interval_frame(intervals: pr.PyRanges | pd.DataFrame) -> pd.DataFrame:
    if isinstance(intervals, pd.DataFrame):
        return intervals
    return intervals.df


def compute_depth(intervals: pr.PyRanges | pd.DataFrame, chrom: str, length: int) -> np.ndarray:
    """Return per-coordinate depth of coverage on ``chrom`` for ``[0, length)``."""

    frame = _interval_frame(intervals)
    depth_changes = np.zeros(length + 1, dtype=np.int64)
    if frame.empty:
        return depth_changes[:length]

    subset = frame[frame["Chromosome"].astype(str) == chrom]
    starts = np.clip(subset["Start"].to_numpy(dtype=np.int64), 0, length)
    ends = np.clip(subset["End"].to_numpy(dtype=np.int64), 0, length)
    np.add.at(depth_changes, starts, 1)
    np.add.at(depth_changes, ends, -1)
    return np.cumsum(depth_changes[:length])


def bin_depth(depth: np.ndarray, bin_size: int) -> np.ndarray:
    """Average ``depth`` over consecutive bins of ``bin_size`` positions."""

    if bin_size <= 1:
        return depth.astype(float)
    n_bins = int(np.ceil(depth.size / bin_size))
    padded = np.zeros(n_bins * bin_size, dtype=float)
    padded[: depth.size] = depth
    sums = padded.reshape(n_bins, bin_size).sum(axis=1)
    widths = np.full(n_bins, bin_size, dtype=float)
    widths[-1] = depth.size - (n_bins - 1) * bin_size
    return sums / widths


def write_bigwig(path: Path, chrom: str, values: np.ndarray) -> Path:
    """Write ``values`` as a single-chromosome bigWig, merging equal runs."""

    ensure_directory(path.parent)
    values = np.asarray(values, dtype=float)
    change_points = np.flatnonzero(np.diff(values)) + 1
    starts = np.concatenate(([0], change_points)).astype(np.int64)
    ends = np.concatenate((change_points, [values.size])).astype(np.int64)
    run_values = values[starts]

    bw = pyBigWig.open(str(path), "w")
    try:
        bw.addHeader([(chrom, int(values.size))])
        bw.addEntries(
            [chrom] * len(starts),
            starts.tolist(),
            ends=ends.tolist(),
            values=run_values.tolist(),
        )
    finally:
        bw.close()
    LOGGER.info("Wrote coverage track %s (%d runs)", path, len(starts))
    return path


def hotspot_windows(config: SimulationConfig, coverage: float = 0.99) -> pr.PyRanges:
    """Windows around each hotspot expected to hold ``coverage`` of its fragments."""

    z = float(stats.norm.ppf(0.5 + coverage / 2.0))
    half_width = max(1, int(np.ceil(z * config.hotspot_sd)))
    records = []
    for idx, hotspot in enumerate(config.hotspots, start=1):
        start = max(0, hotspot - half_width)
        end = min(config.genome_size, hotspot + half_width)
        if end <= start:
            end = start + 1
        records.append(
            {"Chromosome": config.chrom, "Start": start, "End": end, "Hotspot": f"hotspot_{idx}", "Center": hotspot}
        )
    if not records:
        return pr.PyRanges()
    return pr.PyRanges(pd.DataFrame.from_records(records))


def summarise_recovery(peaks: Optional[pr.PyRanges], config: SimulationConfig) -> Dict[str, object]:
    """Compare called peaks with the simulated hotspots."""

    summary: Dict[str, object] = {
        "n_peaks": 0,
        "n_hotspots": len(config.hotspots),
        "hotspots_recovered": [],
        "hotspots_missed": list(config.hotspots),
        "peaks_outside_hotspots": 0,
    }
    if peaks is None or len(peaks) == 0:
        return summary

    summary["n_peaks"] = len(peaks)
    windows = hotspot_windows(config)
    if len(windows) == 0:
        summary["peaks_outside_hotspots"] = len(peaks)
        return summary

    recovered_windows = windows.overlap(peaks)
    recovered = sorted(int(c) for c in recovered_windows.df["Center"]) if len(recovered_windows) else []
    summary["hotspots_recovered"] = recovered
    summary["hotspots_missed"] = [h for h in config.hotspots if h not in set(recovered)]

    inside = peaks.overlap(windows)
    summary["peaks_outside_hotspots"] = len(peaks) - len(inside)
    return summary
