#!/usr/bin/env python3
"""chipsim.py

Simulated paired-end ChIP-seq exercise pipeline.

The pipeline performs the following steps:

1. Simulate treatment (hotspot enriched) and control (uniform) read pairs
   and write them as BED files.
2. Peak calling with MACS2/MACS3 using the control as background.
3. Loading the narrowPeak calls and scoring hotspot recovery.
4. Per-base coverage tracks (bigWig) for both samples.
5. Plot generation (fragment length, read position and peak histograms plus
   a genome-browser-style coverage plot) and metadata capture.

A failing or missing MACS installation does not abort the run: the reads are
already written at that point, so the remaining steps continue without peaks.

Dependencies: numpy, pandas, scipy, matplotlib, seaborn, pyranges, pyBigWig,
MACS2 or MACS3.
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import pyranges as pr
import seaborn as sns
from matplotlib import pyplot as plt
from matplotlib.patches import Patch

import readsim
import tracks
from io_utils import ensure_directory
from peak_calling import ExternalToolError, call_peaks, load_macs_summary, load_peaks
from readsim import SimulationConfig


def ensure_python_version(min_version: tuple[int, int] = (3, 10)) -> None:
    """Guard against unsupported Python interpreters."""

    if sys.version_info < min_version:
        formatted = ".".join(str(part) for part in min_version)
        raise RuntimeError(
            f"ChIPSim requires Python {formatted} or newer; detected {sys.version.split()[0]}"
        )


# ---------------------------------------------------------------------------
# Read summaries
# ---------------------------------------------------------------------------


def fragment_lengths_from_reads(reads: pr.PyRanges | pd.DataFrame) -> pd.Series:
    """Recover fragment lengths from mate coordinates.

    Mates share the ``sim_read_<pair>`` prefix of their name; the fragment
    spans from the leftmost start to the rightmost end of the pair.
    """

    frame = reads if isinstance(reads, pd.DataFrame) else reads.df
    if frame.empty:
        return pd.Series(dtype=float)
    pair_key = frame["Name"].astype(str).str.rsplit("/", n=1).str[0]
    grouped = frame.groupby(pair_key, sort=False).agg(Start=("Start", "min"), End=("End", "max"))
    return (grouped["End"] - grouped["Start"]).rename("FragmentLength")


def _check_region(region: Optional[Tuple[int, int]], genome_size: int) -> Tuple[int, int]:
    if region is None:
        return 0, genome_size
    start, end = int(region[0]), int(region[1])
    if not 0 <= start < end <= genome_size:
        raise ValueError(f"Region {start}-{end} must lie within [0, {genome_size}] with start < end")
    return start, end


# ---------------------------------------------------------------------------
# Plotting utilities
# ---------------------------------------------------------------------------


def save_plot(fig: plt.Figure, path: Path) -> None:
    ensure_directory(path.parent)
    fig.tight_layout()
    fig.savefig(path, dpi=150)
    plt.close(fig)


def plot_fragment_lengths(treatment: pd.Series, control: pd.Series, output: Path) -> Path:
    data = pd.concat(
        [
            pd.DataFrame({"FragmentLength": treatment.to_numpy(), "Sample": "treatment"}),
            pd.DataFrame({"FragmentLength": control.to_numpy(), "Sample": "control"}),
        ],
        ignore_index=True,
    )
    fig, ax = plt.subplots(figsize=(7, 4.5))
    sns.histplot(
        data=data,
        x="FragmentLength",
        hue="Sample",
        stat="density",
        common_norm=False,
        element="step",
        bins=50,
        ax=ax,
    )
    ax.set_title("Fragment length distribution")
    ax.set_xlabel("Fragment length (bp)")
    save_plot(fig, output)
    return output


def plot_read_positions(
    treatment: pd.DataFrame,
    control: pd.DataFrame,
    config: SimulationConfig,
    output: Path,
    bins: int = 200,
) -> Path:
    fig, axes = plt.subplots(2, 1, figsize=(9, 5.5), sharex=True)
    for ax, frame, label, color in (
        (axes[0], treatment, "treatment", "#c44e52"),
        (axes[1], control, "control", "#4c72b0"),
    ):
        sns.histplot(x=frame["Start"].to_numpy(), bins=bins, color=color, ax=ax, binrange=(0, config.genome_size))
        ax.set_ylabel(f"{label} reads")
        for hotspot in config.hotspots:
            ax.axvline(hotspot, color="black", linestyle="--", linewidth=0.6)
    axes[0].set_title("Read start positions")
    axes[-1].set_xlabel(f"{config.chrom} position (bp)")
    save_plot(fig, output)
    return output


def plot_peak_histograms(peaks: Optional[pr.PyRanges], plots_dir: Path) -> Dict[str, Path]:
    if peaks is None or len(peaks) == 0:
        logging.warning("Skipping peak histograms (no peaks available)")
        return {}

    df = peaks.df
    outputs: Dict[str, Path] = {}

    widths = (df["End"] - df["Start"]).astype(int)
    fig, ax = plt.subplots(figsize=(6, 4.5))
    sns.histplot(x=widths, bins=30, color="#55a868", ax=ax)
    ax.set_title(f"Peak widths (n={len(df)})")
    ax.set_xlabel("Width (bp)")
    outputs["peak_widths"] = plots_dir / "peak_widths.png"
    save_plot(fig, outputs["peak_widths"])

    # narrowPeak column 9 already holds -log10(q).
    fig, ax = plt.subplots(figsize=(6, 4.5))
    sns.histplot(x=df["QValue"].astype(float), bins=30, color="#8172b2", ax=ax)
    ax.set_title("Peak significance")
    ax.set_xlabel("-log10 q-value")
    outputs["peak_qvalues"] = plots_dir / "peak_qvalues.png"
    save_plot(fig, outputs["peak_qvalues"])
    return outputs


def plot_coverage(
    treatment_depth: np.ndarray,
    control_depth: np.ndarray,
    peaks: Optional[pr.PyRanges],
    config: SimulationConfig,
    output: Path,
    *,
    region: Optional[Tuple[int, int]] = None,
    bin_size: int = 1000,
) -> Path:
    """Stacked treatment/control coverage tracks with a peak track underneath."""

    start, end = _check_region(region, config.genome_size)
    bin_size = max(1, min(int(bin_size), end - start))
    treatment_binned = tracks.bin_depth(treatment_depth[start:end], bin_size)
    control_binned = tracks.bin_depth(control_depth[start:end], bin_size)
    positions = start + (np.arange(treatment_binned.size) + 0.5) * bin_size

    fig, axes = plt.subplots(
        3,
        1,
        figsize=(11, 6),
        sharex=True,
        gridspec_kw={"height_ratios": [3, 3, 1]},
    )
    ymax = max(float(treatment_binned.max(initial=0)), float(control_binned.max(initial=0)), 1.0) * 1.05
    for ax, values, label, color in (
        (axes[0], treatment_binned, "treatment", "#c44e52"),
        (axes[1], control_binned, "control", "#4c72b0"),
    ):
        ax.fill_between(positions, values, step="mid", color=color, alpha=0.8, linewidth=0)
        ax.set_ylim(0, ymax)
        ax.set_ylabel(f"{label}\ndepth")
        sns.despine(ax=ax)

    for hotspot in config.hotspots:
        if start <= hotspot <= end:
            axes[0].axvline(hotspot, color="black", linestyle="--", linewidth=0.6)

    peak_ax = axes[2]
    n_shown = 0
    if peaks is not None and len(peaks) > 0:
        df = peaks.df
        df = df[(df["Chromosome"].astype(str) == config.chrom) & (df["End"] > start) & (df["Start"] < end)]
        spans = [(int(s), int(e - s)) for s, e in zip(df["Start"], df["End"])]
        if spans:
            peak_ax.broken_barh(spans, (0.2, 0.6), facecolors="#55a868")
        n_shown = len(spans)
    peak_ax.set_yticks([])
    peak_ax.set_ylabel("peaks")
    peak_ax.set_xlim(start, end)
    peak_ax.set_xlabel(f"{config.chrom} position (bp)")
    peak_ax.legend(
        handles=[Patch(color="#55a868", label=f"MACS peaks ({n_shown})")],
        loc="upper right",
        frameon=False,
        fontsize="small",
    )
    axes[0].set_title(f"Coverage {config.chrom}:{start:,}-{end:,} (bin {bin_size:,} bp)")
    save_plot(fig, output)
    return output


def generate_plots(
    treatment: pr.PyRanges,
    control: pr.PyRanges,
    peaks: Optional[pr.PyRanges],
    config: SimulationConfig,
    plots_dir: Path,
    *,
    region: Optional[Tuple[int, int]] = None,
    bin_size: int = 1000,
    depths: Optional[Tuple[np.ndarray, np.ndarray]] = None,
) -> Dict[str, Path]:
    ensure_directory(plots_dir)
    treatment_df = treatment.df
    control_df = control.df

    outputs: Dict[str, Path] = {}
    outputs["fragment_lengths"] = plot_fragment_lengths(
        fragment_lengths_from_reads(treatment_df),
        fragment_lengths_from_reads(control_df),
        plots_dir / "fragment_lengths.png",
    )
    outputs["read_positions"] = plot_read_positions(
        treatment_df, control_df, config, plots_dir / "read_positions.png"
    )
    outputs.update(plot_peak_histograms(peaks, plots_dir))

    if depths is None:
        depths = (
            tracks.compute_depth(treatment_df, config.chrom, config.genome_size),
            tracks.compute_depth(control_df, config.chrom, config.genome_size),
        )
    outputs["coverage"] = plot_coverage(
        depths[0],
        depths[1],
        peaks,
        config,
        plots_dir / "coverage.png",
        region=region,
        bin_size=bin_size,
    )
    logging.info("Wrote %d plots to %s", len(outputs), plots_dir)
    return outputs


def save_metadata(metadata: Dict, output_path: Path) -> None:
    ensure_directory(output_path.parent)
    with output_path.open("w") as fh:
        json.dump(metadata, fh, indent=2, default=str)


# ---------------------------------------------------------------------------
# Main pipeline
# ---------------------------------------------------------------------------


def run_pipeline(
    config: SimulationConfig,
    output_dir: Path,
    *,
    qvalue: float = 0.01,
    macs_extra: Sequence[str] = (),
    region: Optional[Tuple[int, int]] = None,
    bin_size: int = 1000,
    skip_peak_calling: bool = False,
    write_tracks: bool = True,
) -> Dict[str, object]:
    """Simulate reads, call peaks, and write tracks, plots, and metadata."""

    config.validate()
    _check_region(region, config.genome_size)
    results_dir = ensure_directory(output_dir)
    metadata: Dict[str, object] = {
        "timestamp": datetime.now().isoformat(timespec="seconds"),
        "config": config.to_dict(),
    }

    datasets = readsim.simulate_datasets(config, results_dir / "reads")
    metadata["reads"] = {
        "treatment": str(datasets.treatment),
        "control": str(datasets.control),
        "treatment_pairs": datasets.treatment_pairs,
        "control_pairs": datasets.control_pairs,
    }

    peaks: Optional[pr.PyRanges] = None
    peak_info: Dict[str, object] = {"status": "skipped"}
    if not skip_peak_calling:
        try:
            result = call_peaks(
                datasets.treatment,
                datasets.control,
                name="chipsim",
                output_dir=results_dir / "peaks",
                genome_size=config.genome_size,
                qvalue=qvalue,
                fragment_size=int(round(config.fragment_mean)),
                extra=macs_extra,
            )
        except ExternalToolError as exc:
            logging.error("Peak calling failed; continuing without peaks: %s", exc)
            peak_info = {"status": "failed", "error": str(exc)}
        else:
            peaks = load_peaks(result.narrow_peak)
            summary = load_macs_summary(result.summary)
            peak_info = {
                "status": "ok",
                "command": result.command,
                "narrow_peak": str(result.narrow_peak),
                "summary": str(result.summary),
                "summary_rows": 0 if summary is None else int(len(summary)),
            }
    metadata["peak_calling"] = peak_info
    metadata["recovery"] = tracks.summarise_recovery(peaks, config)
    logging.info(
        "Recovered %d/%d hotspots with %d peaks",
        len(metadata["recovery"]["hotspots_recovered"]),
        len(config.hotspots),
        metadata["recovery"]["n_peaks"],
    )

    treatment = tracks.load_reads(datasets.treatment)
    control = tracks.load_reads(datasets.control)
    depths = (
        tracks.compute_depth(treatment, config.chrom, config.genome_size),
        tracks.compute_depth(control, config.chrom, config.genome_size),
    )
    if write_tracks:
        track_dir = results_dir / "tracks"
        metadata["tracks"] = {
            "treatment": str(tracks.write_bigwig(track_dir / "treatment.bw", config.chrom, depths[0])),
            "control": str(tracks.write_bigwig(track_dir / "control.bw", config.chrom, depths[1])),
        }

    plots = generate_plots(
        treatment,
        control,
        peaks,
        config,
        results_dir / "plots",
        region=region,
        bin_size=bin_size,
        depths=depths,
    )
    metadata["plots"] = {key: str(path) for key, path in plots.items()}

    save_metadata(metadata, results_dir / "run_metadata.json")
    logging.info("Pipeline complete; results in %s", results_dir)
    return metadata


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def _region_arg(args: argparse.Namespace) -> Optional[Tuple[int, int]]:
    region = getattr(args, "region", None)
    if not region:
        return None
    return int(region[0]), int(region[1])


def command_simulate(args: argparse.Namespace) -> None:
    config = readsim.config_from_args(args)
    readsim.simulate_datasets(config, Path(args.output_dir))


def command_callpeak(args: argparse.Namespace) -> None:
    result = call_peaks(
        Path(args.treatment),
        Path(args.control),
        name=args.name,
        output_dir=Path(args.output_dir),
        genome_size=int(float(args.macs_genome_size)),
        qvalue=args.qvalue,
        fragment_size=args.fragment_size,
        fmt=args.format,
        extra=args.macs_extra,
    )
    logging.info("Peaks written to %s", result.narrow_peak)


def command_plot(args: argparse.Namespace) -> None:
    config = readsim.config_from_args(args)
    peaks = load_peaks(Path(args.peaks)) if args.peaks else None
    generate_plots(
        tracks.load_reads(Path(args.treatment)),
        tracks.load_reads(Path(args.control)),
        peaks,
        config,
        Path(args.output_dir),
        region=_region_arg(args),
        bin_size=args.bin_size,
    )


def command_run(args: argparse.Namespace) -> None:
    config = readsim.config_from_args(args)
    run_pipeline(
        config,
        Path(args.output_dir),
        qvalue=args.qvalue,
        macs_extra=args.macs_extra,
        region=_region_arg(args),
        bin_size=args.bin_size,
        skip_peak_calling=args.skip_peak_calling,
        write_tracks=not args.no_tracks,
    )


def _add_plot_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--region",
        type=int,
        nargs=2,
        metavar=("START", "END"),
        help="Restrict the coverage plot to this window (default: whole chromosome)",
    )
    parser.add_argument("--bin-size", type=int, default=1000, help="Bin size for the coverage plot (bp)")


def _add_macs_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--qvalue", type=float, default=0.01, help="MACS q-value cutoff")
    parser.add_argument(
        "--macs-extra",
        nargs=argparse.REMAINDER,
        default=[],
        help="Additional arguments for MACS",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="chipsim",
        description="Simulated paired-end ChIP-seq exercise pipeline",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sim_parser = subparsers.add_parser(
        "simulate",
        help="Write simulated treatment and control read files",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    readsim.add_cli_arguments(sim_parser)
    sim_parser.add_argument("--output-dir", default="results/reads", help="Directory for the read files")

    peak_parser = subparsers.add_parser(
        "callpeak",
        help="Run MACS callpeak on treatment/control read files",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    peak_parser.add_argument("--treatment", required=True, help="Treatment read file")
    peak_parser.add_argument("--control", required=True, help="Control read file")
    peak_parser.add_argument("--name", default="chipsim", help="MACS experiment name")
    peak_parser.add_argument("--output-dir", default="results/peaks", help="MACS output directory")
    peak_parser.add_argument(
        "--macs-genome-size",
        default="1e6",
        help="Effective genome size passed to MACS (-g)",
    )
    peak_parser.add_argument("--fragment-size", type=int, default=200, help="Read extension size (--extsize)")
    peak_parser.add_argument("--format", default="BED", help="MACS input format tag (-f)")
    _add_macs_arguments(peak_parser)

    plot_parser = subparsers.add_parser(
        "plot",
        help="Plot histograms and coverage from existing read/peak files",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    plot_parser.add_argument("--treatment", required=True, help="Treatment read file")
    plot_parser.add_argument("--control", required=True, help="Control read file")
    plot_parser.add_argument("--peaks", help="Optional narrowPeak file")
    plot_parser.add_argument("--output-dir", default="results/plots", help="Directory for plots")
    readsim.add_cli_arguments(plot_parser)
    _add_plot_arguments(plot_parser)

    run_parser = subparsers.add_parser(
        "run",
        help="Simulate, call peaks, and plot in one go",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    readsim.add_cli_arguments(run_parser)
    run_parser.add_argument("--output-dir", default="results", help="Output directory")
    run_parser.add_argument("--skip-peak-calling", action="store_true", help="Do not run MACS")
    run_parser.add_argument("--no-tracks", action="store_true", help="Do not write bigWig coverage tracks")
    _add_plot_arguments(run_parser)
    _add_macs_arguments(run_parser)

    return parser


COMMANDS = {
    "simulate": command_simulate,
    "callpeak": command_callpeak,
    "plot": command_plot,
    "run": command_run,
}


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def main(argv: Optional[Sequence[str]] = None) -> None:
    ensure_python_version()
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="[%(asctime)s] %(levelname)s: %(message)s",
    )

    try:
        COMMANDS[args.command](args)
    except Exception as exc:  # pragma: no cover - CLI exception reporting
        logging.error("Pipeline failed: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
