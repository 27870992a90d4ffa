"""Shared IO utilities for ChIPSim."""
from __future__ import annotations

import csv
from pathlib import Path
from typing import Mapping, MutableMapping, Sequence

import pandas as pd

BED_COLUMNS: tuple[str, str, str] = ("Chromosome", "Start", "End")
READ_COLUMNS: tuple[str, ...] = ("Chromosome", "Start", "End", "Name", "Score", "Strand")
NARROWPEAK_COLUMNS: tuple[str, ...] = (
    "Chromosome",
    "Start",
    "End",
    "Name",
    "Score",
    "Strand",
    "SignalValue",
    "PValue",
    "QValue",
    "Summit",
)


def _resolve_path(path: Path | str) -> Path:
    if isinstance(path, Path):
        return path
    return Path(path)


def ensure_directory(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def read_bed_frame(
    path: Path | str,
    *,
    column_names: Sequence[str] = BED_COLUMNS,
    min_columns: int | None = None,
    comment: str = "#",
    dtype: Mapping[int, object] | None = None,
) -> pd.DataFrame:
    """Load a BED-like table into a :class:`pandas.DataFrame`.

    Parameters
    ----------
    path:
        Location of the file to read.
    column_names:
        Names to assign to the first ``len(column_names)`` columns.
    min_columns:
        Minimum number of columns that must be present. Defaults to the
        number of ``column_names``.
    comment:
        Comment indicator passed to :func:`pandas.read_csv`.
    dtype:
        Optional dtype overrides for individual columns.
    """

    target = _resolve_path(path)
    required = len(column_names) if min_columns is None else min_columns
    overrides: MutableMapping[int, object] = {0: str}
    if dtype:
        overrides.update(dtype)

    try:
        frame = pd.read_csv(
            target,
            sep="\t",
            comment=comment,
            header=None,
            dtype=overrides,
        )
    except pd.errors.EmptyDataError:
        return pd.DataFrame(columns=list(column_names))
    except Exception as exc:  # pragma: no cover - surface informative error
        raise RuntimeError(f"Failed to read BED-like file {target}: {exc}") from exc

    if frame.shape[1] < required:
        raise ValueError(
            f"BED-like file {target} must have at least {required} columns;"
            f" found {frame.shape[1]}"
        )

    base = frame.iloc[:, : len(column_names)].copy()
    base.columns = list(column_names)
    return base


def ensure_integer_columns(frame: pd.DataFrame, columns: Sequence[str]) -> pd.DataFrame:
    """Return a copy of ``frame`` with specified columns coerced to integers."""

    result = frame.copy()
    for column in columns:
        result[column] = pd.to_numeric(result[column], errors="raise").astype(int)
    return result


def write_bed_frame(frame: pd.DataFrame, path: Path | str) -> Path:
    """Write ``frame`` as a headerless, unquoted tab-delimited interval file.

    The parent directory is created when missing. Errors from the filesystem
    propagate unchanged as :class:`OSError`.
    """

    target = _resolve_path(path)
    ensure_directory(target.parent)
    frame.to_csv(
        target,
        sep="\t",
        header=False,
        index=False,
        quoting=csv.QUOTE_NONE,
        lineterminator="\n",
    )
    return target


def read_narrowpeak(path: Path | str) -> pd.DataFrame:
    """Load a MACS ``narrowPeak`` file with typed coordinate columns."""

    frame = read_bed_frame(path, column_names=NARROWPEAK_COLUMNS, dtype={3: str, 5: str})
    if frame.empty:
        return frame
    frame = ensure_integer_columns(frame, ("Start", "End", "Score", "Summit"))
    for column in ("SignalValue", "PValue", "QValue"):
        frame[column] = pd.to_numeric(frame[column], errors="raise").astype(float)
    return frame


def read_macs_summary(path: Path | str) -> pd.DataFrame:
    """Load the ``*_peaks.xls`` tabular summary written by MACS.

    The file is tab-delimited with ``#`` comment lines holding the run
    parameters, followed by a header row.
    """

    target = _resolve_path(path)
    try:
        return pd.read_csv(target, sep="\t", comment="#")
    except pd.errors.EmptyDataError:
        return pd.DataFrame()
