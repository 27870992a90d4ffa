"""Synthetic paired-end ChIP-seq read generator.

Treatment fragments cluster around a fixed set of hotspots (plus a uniform
background share) while control fragments are spread uniformly over a single
toy chromosome. Each fragment is expanded into a read pair and both sample
groups are written as six-column BED files that MACS can consume with
``-f BED``.

All sampling functions take an explicit :class:`numpy.random.Generator`.
:func:`simulate_datasets` seeds one generator per run and consumes it in a
fixed order (treatment centers, lengths, orientations, then the same for the
control) so identical configs produce byte-identical files.
"""
from __future__ import annotations

import argparse
import json
import logging
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from io_utils import READ_COLUMNS, write_bed_frame

LOGGER = logging.getLogger(__name__)

TREATMENT_FILENAME = "treatment.bed"
CONTROL_FILENAME = "control.bed"


class ConfigurationError(ValueError):
    """Raised when simulation parameters are invalid."""


class EmptyOutputError(RuntimeError):
    """Raised when an emitted read file is missing or empty after writing."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SimulationConfig:
    """Parameters of one simulation run."""

    treatment_pairs: int = 8000
    control_pairs: int = 1500
    read_length: int = 50
    fragment_mean: float = 200.0
    fragment_sd: float = 20.0
    genome_size: int = 1_000_000
    hotspots: Tuple[int, ...] = (150_000, 350_000, 650_000, 850_000)
    hotspot_fraction: float = 0.9
    hotspot_sd: float = 500.0
    chrom: str = "chr1"
    seed: int = 42

    def __post_init__(self) -> None:
        try:
            hotspots = tuple(_coerce_int(h) for h in self.hotspots)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid value for hotspots: {self.hotspots!r} ({exc})") from exc
        object.__setattr__(self, "hotspots", hotspots)

    def validate(self) -> "SimulationConfig":
        for name in ("treatment_pairs", "control_pairs", "read_length", "genome_size"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, (int, np.integer)) or value <= 0:
                raise ConfigurationError(f"{name} must be a positive integer; got {value!r}")
        if isinstance(self.seed, bool) or not isinstance(self.seed, (int, np.integer)) or self.seed < 0:
            raise ConfigurationError(f"seed must be a non-negative integer; got {self.seed!r}")
        # NaN and inf fail both checks.
        if not (np.isfinite(self.fragment_mean) and self.fragment_mean > 0):
            raise ConfigurationError(f"fragment_mean must be a positive finite number; got {self.fragment_mean!r}")
        if not (np.isfinite(self.fragment_sd) and self.fragment_sd >= 0):
            raise ConfigurationError(f"fragment_sd must be a non-negative finite number; got {self.fragment_sd!r}")
        if not (np.isfinite(self.hotspot_sd) and self.hotspot_sd >= 0):
            raise ConfigurationError(f"hotspot_sd must be a non-negative finite number; got {self.hotspot_sd!r}")
        if not 0.0 <= self.hotspot_fraction <= 1.0:
            raise ConfigurationError(
                f"hotspot_fraction must lie in [0, 1]; got {self.hotspot_fraction!r}"
            )
        if self.hotspot_fraction > 0 and not self.hotspots:
            raise ConfigurationError("At least one hotspot is required when hotspot_fraction > 0")
        outside = [h for h in self.hotspots if h < 0 or h > self.genome_size]
        if outside:
            raise ConfigurationError(
                f"Hotspots outside [0, {self.genome_size}]: {', '.join(map(str, outside))}"
            )
        if not self.chrom or any(ch.isspace() for ch in self.chrom):
            raise ConfigurationError(f"chrom must be a non-empty name without whitespace; got {self.chrom!r}")
        # Rounding the per-hotspot share up can leave a negative background group.
        per_hotspot, background = hotspot_group_sizes(self.treatment_pairs, self)
        if background < 0:
            raise ConfigurationError(
                f"{len(self.hotspots)} hotspots x {per_hotspot} pairs exceeds"
                f" treatment_pairs={self.treatment_pairs}; lower hotspot_fraction"
            )
        return self

    @property
    def min_fragment_length(self) -> int:
        return 2 * self.read_length

    @classmethod
    def from_mapping(cls, values: Mapping[str, object]) -> "SimulationConfig":
        """Build a config from loosely typed values (JSON, manifests, CLI)."""

        known = {field.name: field for field in fields(cls)}
        unknown = sorted(set(values) - set(known))
        if unknown:
            raise ConfigurationError(f"Unknown simulation parameter(s): {', '.join(unknown)}")

        parsed: Dict[str, object] = {}
        for key, raw in values.items():
            if raw is None:
                continue
            try:
                parsed[key] = _coerce_value(key, raw)
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(f"Invalid value for {key}: {raw!r} ({exc})") from exc
        return cls(**parsed)

    def to_dict(self) -> Dict[str, object]:
        data = asdict(self)
        data["hotspots"] = list(self.hotspots)
        return data


_INT_FIELDS = {"treatment_pairs", "control_pairs", "read_length", "genome_size", "seed"}
_FLOAT_FIELDS = {"fragment_mean", "fragment_sd", "hotspot_fraction", "hotspot_sd"}


def _coerce_int(raw: object) -> int:
    if isinstance(raw, bool):
        raise TypeError("expected an integer, not a boolean")
    if isinstance(raw, (int, np.integer)):
        return int(raw)
    if isinstance(raw, str):
        try:
            return int(raw.strip())
        except ValueError:
            pass
    value = float(raw)  # accepts "1e6" as written in notebooks
    if not value.is_integer():
        raise ValueError("expected an integer")
    return int(value)


def _coerce_value(key: str, raw: object) -> object:
    if key in _INT_FIELDS:
        return _coerce_int(raw)
    if key in _FLOAT_FIELDS:
        return float(raw)
    if key == "hotspots":
        if isinstance(raw, str):
            items: Iterable[object] = [part for part in raw.replace(";", ",").split(",") if part.strip()]
        elif isinstance(raw, (list, tuple)):
            items = raw
        else:
            raise TypeError("expected a list or comma-separated string")
        return tuple(_coerce_int(item) for item in items)
    return str(raw).strip()


def load_simulation_config(path: Path) -> Dict[str, object]:
    """Parse a JSON object or ``key = value`` manifest of simulation parameters.

    Returns the raw mapping so that command line values can be layered on top
    before :meth:`SimulationConfig.from_mapping` is applied.
    """

    if not path.exists():
        raise FileNotFoundError(f"Simulation config not found: {path}")

    text = path.read_text().strip()
    if not text:
        return {}

    if path.suffix.lower() == ".json" or text.startswith("{"):
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Failed to parse JSON config {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config {path} must contain a JSON object")
        return data

    result: Dict[str, object] = {}
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if "=" in stripped:
            key, value = stripped.split("=", 1)
        elif "\t" in stripped:
            key, value = stripped.split("\t", 1)
        else:
            parts = stripped.split(None, 1)
            if len(parts) != 2:
                raise ConfigurationError(
                    f"Cannot parse config line '{line}' in {path}; expected 'key value'"
                )
            key, value = parts
        result[key.strip()] = value.strip()
    return result


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Read:
    chrom: str
    start: int
    end: int
    pair_id: int
    mate: int
    strand: str
    score: int = 0

    @property
    def name(self) -> str:
        return f"sim_read_{self.pair_id}/{self.mate}"


@dataclass(frozen=True)
class ReadPair:
    pair_id: int
    mate1: Read
    mate2: Read

    @property
    def reads(self) -> Tuple[Read, Read]:
        return self.mate1, self.mate2


@dataclass
class SimulatedDatasets:
    """Paths and sizes of the files written by :func:`simulate_datasets`."""

    treatment: Path
    control: Path
    treatment_pairs: int
    control_pairs: int


# ---------------------------------------------------------------------------
# Sampling
# ---------------------------------------------------------------------------


def hotspot_group_sizes(n: int, config: SimulationConfig) -> Tuple[int, int]:
    """Return ``(pairs per hotspot, background pairs)`` for ``n`` treatment pairs."""

    if not config.hotspots or config.hotspot_fraction <= 0:
        return 0, n
    per_hotspot = int(round(n * config.hotspot_fraction / len(config.hotspots)))
    return per_hotspot, n - per_hotspot * len(config.hotspots)


def _to_coordinates(values: np.ndarray, genome_size: int) -> np.ndarray:
    return np.clip(np.rint(values), 0, genome_size).astype(np.int64)


def sample_fragment_centers(
    n: int,
    config: SimulationConfig,
    use_hotspots: bool,
    rng: np.random.Generator,
) -> np.ndarray:
    """Draw ``n`` fragment centers.

    With ``use_hotspots`` the hotspot groups come first (in hotspot order),
    followed by the uniform background group.
    """

    if n <= 0:
        return np.empty(0, dtype=np.int64)
    if not use_hotspots:
        return _to_coordinates(rng.uniform(0, config.genome_size, size=n), config.genome_size)

    per_hotspot, background = hotspot_group_sizes(n, config)
    if background < 0:
        raise ConfigurationError(
            f"Hotspot groups ({per_hotspot} x {len(config.hotspots)}) exceed {n} pairs"
        )
    groups: List[np.ndarray] = []
    if per_hotspot > 0:
        for hotspot in config.hotspots:
            groups.append(rng.normal(hotspot, config.hotspot_sd, size=per_hotspot))
    groups.append(rng.uniform(0, config.genome_size, size=background))
    return _to_coordinates(np.concatenate(groups), config.genome_size)


def sample_fragment_lengths(n: int, config: SimulationConfig, rng: np.random.Generator) -> np.ndarray:
    lengths = np.rint(rng.normal(config.fragment_mean, config.fragment_sd, size=n)).astype(np.int64)
    return np.maximum(lengths, config.min_fragment_length)


def sample_orientations(n: int, rng: np.random.Generator) -> np.ndarray:
    """Return a boolean array, ``True`` for forward pairs."""

    return rng.integers(0, 2, size=n) == 1


# ---------------------------------------------------------------------------
# Read pair construction
# ---------------------------------------------------------------------------


def _clamped_interval(start: int, end: int, genome_size: int) -> Tuple[int, int]:
    start = min(max(start, 0), genome_size)
    end = min(max(end, 0), genome_size)
    if start >= end:
        end = start + 1
        if end > genome_size:
            start, end = genome_size - 1, genome_size
    return start, end


def build_read_pair(
    pair_id: int,
    center: int,
    fragment_length: int,
    forward: bool,
    config: SimulationConfig,
) -> ReadPair:
    """Expand one fragment into its two mates."""

    fragment_start = max(0, int(round(center - fragment_length / 2)))
    fragment_end = fragment_start + int(fragment_length)
    left = (fragment_start, fragment_start + config.read_length)
    right = (fragment_end - config.read_length, fragment_end)

    if forward:
        layout = ((left, "+"), (right, "-"))
    else:
        layout = ((right, "-"), (left, "+"))

    mates = []
    for mate, ((start, end), strand) in enumerate(layout, start=1):
        start, end = _clamped_interval(start, end, config.genome_size)
        mates.append(
            Read(chrom=config.chrom, start=start, end=end, pair_id=pair_id, mate=mate, strand=strand)
        )
    return ReadPair(pair_id=pair_id, mate1=mates[0], mate2=mates[1])


def simulate_group(
    n: int,
    config: SimulationConfig,
    use_hotspots: bool,
    rng: np.random.Generator,
) -> List[ReadPair]:
    """Simulate ``n`` read pairs for one sample group."""

    centers = sample_fragment_centers(n, config, use_hotspots, rng)
    lengths = sample_fragment_lengths(n, config, rng)
    orientations = sample_orientations(n, rng)
    return [
        build_read_pair(pair_id, int(center), int(length), bool(forward), config)
        for pair_id, (center, length, forward) in enumerate(zip(centers, lengths, orientations))
    ]


# ---------------------------------------------------------------------------
# Emission
# ---------------------------------------------------------------------------


def pairs_to_frame(pairs: Sequence[ReadPair]) -> pd.DataFrame:
    """Flatten pairs into a BED6 frame sorted by chromosome and start."""

    records = [
        (read.chrom, read.start, read.end, read.name, read.score, read.strand)
        for pair in pairs
        for read in pair.reads
    ]
    frame = pd.DataFrame.from_records(records, columns=list(READ_COLUMNS))
    frame = frame.astype({"Start": np.int64, "End": np.int64, "Score": np.int64})
    frame.sort_values(["Chromosome", "Start"], kind="stable", inplace=True)
    frame.reset_index(drop=True, inplace=True)
    return frame


def write_reads(pairs: Sequence[ReadPair], path: Path) -> Path:
    frame = pairs_to_frame(pairs)
    write_bed_frame(frame, path)
    if not path.exists() or path.stat().st_size == 0:
        raise EmptyOutputError(f"Read file is missing or empty after writing: {path}")
    LOGGER.info("Wrote %d reads (%d pairs) to %s", len(frame), len(pairs), path)
    return path


def simulate_datasets(config: SimulationConfig, output_dir: Path) -> SimulatedDatasets:
    """Simulate treatment and control groups and write both read files."""

    config.validate()
    rng = np.random.default_rng(config.seed)
    LOGGER.info(
        "Simulating %d treatment and %d control pairs on %s (%d bp, seed=%d)",
        config.treatment_pairs,
        config.control_pairs,
        config.chrom,
        config.genome_size,
        config.seed,
    )

    treatment_pairs = simulate_group(config.treatment_pairs, config, True, rng)
    control_pairs = simulate_group(config.control_pairs, config, False, rng)

    treatment_path = write_reads(treatment_pairs, output_dir / TREATMENT_FILENAME)
    control_path = write_reads(control_pairs, output_dir / CONTROL_FILENAME)
    return SimulatedDatasets(
        treatment=treatment_path,
        control=control_path,
        treatment_pairs=len(treatment_pairs),
        control_pairs=len(control_pairs),
    )


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------


def add_cli_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", help="JSON or key=value file with simulation parameters")
    parser.add_argument("--treatment-pairs", type=int, help="Number of treatment read pairs")
    parser.add_argument("--control-pairs", type=int, help="Number of control read pairs")
    parser.add_argument("--read-length", type=int, help="Length of each mate (bp)")
    parser.add_argument("--fragment-mean", type=float, help="Mean fragment length (bp)")
    parser.add_argument("--fragment-sd", type=float, help="Fragment length standard deviation (bp)")
    parser.add_argument("--genome-size", type=float, help="Length of the simulated chromosome (bp)")
    parser.add_argument(
        "--hotspots",
        help="Comma-separated hotspot positions for the treatment sample",
    )
    parser.add_argument("--hotspot-fraction", type=float, help="Fraction of treatment pairs drawn from hotspots")
    parser.add_argument("--hotspot-sd", type=float, help="Spread of fragment centers around each hotspot (bp)")
    parser.add_argument("--chrom", help="Chromosome name written to the read files")
    parser.add_argument("--seed", type=int, help="Random seed")


def config_from_args(args: argparse.Namespace) -> SimulationConfig:
    """Layer command line values over an optional config file."""

    values: Dict[str, object] = {}
    config_path: Optional[str] = getattr(args, "config", None)
    if config_path:
        values.update(load_simulation_config(Path(config_path)))

    for field in fields(SimulationConfig):
        value = getattr(args, field.name, None)
        if value is not None:
            values[field.name] = value
    return SimulationConfig.from_mapping(values).validate()
