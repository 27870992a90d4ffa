"""MACS peak calling on simulated treatment/control read files."""
from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

import pandas as pd
import pyranges as pr

from io_utils import ensure_directory, read_macs_summary, read_narrowpeak

LOGGER = logging.getLogger(__name__)


class ExternalToolError(RuntimeError):
    """Raised when an external program is missing, fails, or leaves no output."""


MACS_COMMAND: Optional[str] = None
"""Name of the resolved MACS executable (``macs2`` preferred, ``macs3`` fallback)."""


def _detect_macs_command() -> str:
    for candidate in ("macs2", "macs3"):
        if shutil.which(candidate):
            return candidate
    raise ExternalToolError(
        "Missing required command(s): macs2, macs3. Install MACS via 'pip install macs3'"
    )


def get_macs_command() -> str:
    """Return the available MACS executable, preferring ``macs2``.

    The resolved command is cached for subsequent calls.
    """

    global MACS_COMMAND
    if MACS_COMMAND is None:
        MACS_COMMAND = _detect_macs_command()
    return MACS_COMMAND


def run_command(cmd: Sequence[str], *, workdir: Optional[Path] = None, log: bool = True) -> None:
    """Run a subprocess command with logging and error handling."""

    if log:
        LOGGER.info("Running command: %s", " ".join(cmd))
    try:
        result = subprocess.run(
            list(cmd),
            cwd=str(workdir) if workdir else None,
            check=False,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError as exc:
        raise ExternalToolError(f"Executable not found: {cmd[0]}") from exc
    if result.returncode != 0:
        stderr = (result.stderr or "").strip().splitlines()
        detail = f": {stderr[-1]}" if stderr else ""
        raise ExternalToolError(
            f"Command failed with exit code {result.returncode}: {' '.join(cmd)}{detail}"
        )


@dataclass
class PeakCallResult:
    """Files produced by one ``macs callpeak`` run."""

    name: str
    command: List[str]
    narrow_peak: Path
    summary: Path
    summits: Path
    extra_outputs: List[Path] = field(default_factory=list)


def build_callpeak_command(
    treatment: Path,
    control: Path,
    *,
    name: str,
    output_dir: Path,
    genome_size: int,
    qvalue: float,
    fragment_size: int,
    fmt: str = "BED",
    extra: Sequence[str] = (),
) -> List[str]:
    """Return the MACS command line for a treatment/control comparison.

    Model building is disabled (``--nomodel``) and reads are extended to
    ``fragment_size`` since the simulated fragment size is known.
    """

    cmd = [
        get_macs_command(),
        "callpeak",
        "-t",
        str(treatment),
        "-c",
        str(control),
        "-f",
        fmt,
        "-g",
        str(int(genome_size)),
        "-n",
        name,
        "--outdir",
        str(output_dir),
        "-q",
        str(qvalue),
        "--nomodel",
        "--extsize",
        str(int(fragment_size)),
    ]
    cmd.extend(extra)
    return cmd


def call_peaks(
    treatment: Path,
    control: Path,
    *,
    name: str,
    output_dir: Path,
    genome_size: int,
    qvalue: float,
    fragment_size: int,
    fmt: str = "BED",
    extra: Sequence[str] = (),
) -> PeakCallResult:
    """Call peaks with MACS and return the paths of its outputs."""

    for path in (treatment, control):
        if not path.exists():
            raise FileNotFoundError(f"Read file not found: {path}")

    ensure_directory(output_dir)
    cmd = build_callpeak_command(
        treatment,
        control,
        name=name,
        output_dir=output_dir,
        genome_size=genome_size,
        qvalue=qvalue,
        fragment_size=fragment_size,
        fmt=fmt,
        extra=extra,
    )
    run_command(cmd)

    peak_path = output_dir / f"{name}_peaks.narrowPeak"
    if not peak_path.exists():
        raise ExternalToolError(f"MACS output not found for {name}: {peak_path}")

    result = PeakCallResult(
        name=name,
        command=cmd,
        narrow_peak=peak_path,
        summary=output_dir / f"{name}_peaks.xls",
        summits=output_dir / f"{name}_summits.bed",
    )
    result.extra_outputs = sorted(
        p for p in output_dir.glob(f"{name}_*") if p not in {peak_path, result.summary, result.summits}
    )
    return result


def load_peaks(path: Optional[Path]) -> Optional[pr.PyRanges]:
    """Load a narrowPeak file into :class:`pyranges.PyRanges`.

    Returns ``None`` when no file is given, the file is missing, or it holds
    no peaks.
    """

    if path is None or not path.exists():
        LOGGER.warning("No peak file available at %s", path)
        return None
    frame = read_narrowpeak(path)
    if frame.empty:
        LOGGER.warning("Peak file %s contains no peaks", path)
        return None
    LOGGER.info("Loaded %d peaks from %s", len(frame), path)
    return pr.PyRanges(frame)


def load_macs_summary(path: Path) -> Optional[pd.DataFrame]:
    if not path.exists():
        return None
    return read_macs_summary(path)
