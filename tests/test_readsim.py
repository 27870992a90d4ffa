"""Tests for the paired-end read simulator."""

import dataclasses
import json

import numpy as np
import pandas as pd
import pytest

import readsim
from readsim import (
    ConfigurationError,
    EmptyOutputError,
    SimulationConfig,
    build_read_pair,
    hotspot_group_sizes,
    pairs_to_frame,
    sample_fragment_centers,
    sample_fragment_lengths,
    simulate_datasets,
    simulate_group,
    write_reads,
)


def _read_file(path):
    return pd.read_csv(
        path,
        sep="\t",
        header=None,
        names=["chrom", "start", "end", "name", "score", "strand"],
        dtype={"chrom": str, "name": str, "strand": str},
    )


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class TestSimulationConfig:

    def test_defaults_are_valid(self):
        config = SimulationConfig().validate()
        assert config.hotspots == (150_000, 350_000, 650_000, 850_000)
        assert config.min_fragment_length == 100

    @pytest.mark.parametrize(
        "changes",
        [
            {"treatment_pairs": 0},
            {"control_pairs": -5},
            {"read_length": 0},
            {"genome_size": 0},
            {"fragment_mean": 0},
            {"fragment_mean": float("inf")},
            {"fragment_sd": -1},
            {"fragment_sd": float("inf")},
            {"hotspot_sd": -1},
            {"hotspot_sd": float("inf")},
            {"hotspot_sd": float("nan")},
            {"seed": -1},
            {"seed": True},
            {"hotspot_fraction": 1.2},
            {"hotspot_fraction": -0.1},
            {"hotspots": (), "hotspot_fraction": 0.5},
            {"hotspots": (2_000_000,)},
            {"chrom": "chr 1"},
        ],
    )
    def test_invalid_values_rejected(self, changes):
        with pytest.raises(ConfigurationError):
            SimulationConfig(**changes).validate()

    def test_negative_background_is_configuration_error(self):
        # round(3 * 1.0 / 2) == 2, so two hotspots would need 4 pairs.
        config = SimulationConfig(treatment_pairs=3, hotspots=(10, 20), hotspot_fraction=1.0, genome_size=100)
        with pytest.raises(ConfigurationError, match="exceeds"):
            config.validate()

    def test_no_hotspots_allowed_without_enrichment(self):
        config = SimulationConfig(hotspots=(), hotspot_fraction=0.0).validate()
        assert hotspot_group_sizes(100, config) == (0, 100)

    def test_from_mapping_coerces_types(self):
        config = SimulationConfig.from_mapping(
            {
                "treatment_pairs": "100",
                "genome_size": "1e6",
                "hotspots": "1000, 2000;3000",
                "hotspot_fraction": "0.5",
                "chrom": " chrX ",
            }
        )
        assert config.treatment_pairs == 100
        assert config.genome_size == 1_000_000
        assert config.hotspots == (1000, 2000, 3000)
        assert config.hotspot_fraction == 0.5
        assert config.chrom == "chrX"

    def test_from_mapping_rejects_unknown_keys(self):
        with pytest.raises(ConfigurationError, match="Unknown"):
            SimulationConfig.from_mapping({"n_pairs": 10})

    def test_from_mapping_rejects_fractional_counts(self):
        with pytest.raises(ConfigurationError, match="treatment_pairs"):
            SimulationConfig.from_mapping({"treatment_pairs": 10.5})

    def test_fractional_hotspots_rejected_directly(self):
        with pytest.raises(ConfigurationError, match="hotspots"):
            SimulationConfig(hotspots=(150_000.7,))

    def test_integral_float_hotspots_accepted(self):
        assert SimulationConfig(hotspots=(1e3, 2000.0)).hotspots == (1000, 2000)

    def test_large_seed_keeps_precision(self):
        seed = 2**53 + 1
        assert SimulationConfig.from_mapping({"seed": seed}).seed == seed
        assert SimulationConfig.from_mapping({"seed": str(seed)}).seed == seed

    def test_negative_seed_fails_before_sampling(self, small_config, tmp_path):
        config = dataclasses.replace(small_config, seed=-1)
        with pytest.raises(ConfigurationError, match="seed"):
            readsim.simulate_datasets(config, tmp_path / "reads")
        assert not (tmp_path / "reads" / "treatment.bed").exists()

    def test_load_json_config(self, tmp_path):
        path = tmp_path / "sim.json"
        path.write_text(json.dumps({"treatment_pairs": 10, "hotspots": [5, 6]}))
        values = readsim.load_simulation_config(path)
        config = SimulationConfig.from_mapping(values)
        assert config.treatment_pairs == 10
        assert config.hotspots == (5, 6)

    def test_load_key_value_config(self, tmp_path):
        path = tmp_path / "sim.cfg"
        path.write_text("# classroom run\ntreatment_pairs = 20\ncontrol_pairs\t10\nseed 3\n")
        config = SimulationConfig.from_mapping(readsim.load_simulation_config(path))
        assert (config.treatment_pairs, config.control_pairs, config.seed) == (20, 10, 3)

    def test_load_invalid_json(self, tmp_path):
        path = tmp_path / "sim.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError):
            readsim.load_simulation_config(path)

    def test_load_missing_config(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            readsim.load_simulation_config(tmp_path / "absent.json")

    def test_to_dict_is_json_serialisable(self):
        data = SimulationConfig().to_dict()
        assert json.loads(json.dumps(data))["hotspots"] == [150_000, 350_000, 650_000, 850_000]


# ---------------------------------------------------------------------------
# Sampling
# ---------------------------------------------------------------------------


class TestFragmentCenters:

    def test_hotspot_group_sizes_classroom_scenario(self):
        assert hotspot_group_sizes(8000, SimulationConfig()) == (1800, 800)

    def test_treatment_centers_grouped_by_hotspot(self, rng):
        config = SimulationConfig()
        centers = sample_fragment_centers(8000, config, True, rng)
        assert centers.shape == (8000,)
        assert centers.dtype.kind == "i"
        for idx, hotspot in enumerate(config.hotspots):
            group = centers[idx * 1800:(idx + 1) * 1800]
            assert np.all(np.abs(group - hotspot) <= 6 * config.hotspot_sd)
        assert centers[7200:].size == 800

    def test_control_centers_uniform(self, rng):
        config = SimulationConfig(genome_size=10_000)
        centers = sample_fragment_centers(5000, config, False, rng)
        assert centers.min() >= 0
        assert centers.max() <= 10_000
        # roughly uniform: every decile is populated
        counts, _ = np.histogram(centers, bins=10, range=(0, 10_000))
        assert counts.min() > 350

    def test_centers_clamped_to_genome(self, rng):
        config = SimulationConfig(
            treatment_pairs=1000, genome_size=1000, hotspots=(0, 1000), hotspot_fraction=1.0, hotspot_sd=300
        )
        centers = sample_fragment_centers(1000, config, True, rng)
        assert centers.min() == 0
        assert centers.max() == 1000

    def test_zero_count(self, rng):
        assert sample_fragment_centers(0, SimulationConfig(), True, rng).size == 0


class TestFragmentLengths:

    def test_floor_at_two_reads(self, rng):
        config = SimulationConfig(read_length=50, fragment_mean=90, fragment_sd=30)
        lengths = sample_fragment_lengths(2000, config, rng)
        assert lengths.min() == 100
        assert np.all(lengths >= 2 * config.read_length)
        assert np.any(lengths > 100)

    def test_integer_lengths(self, rng):
        lengths = sample_fragment_lengths(10, SimulationConfig(), rng)
        assert lengths.dtype.kind == "i"


# ---------------------------------------------------------------------------
# Read pairs
# ---------------------------------------------------------------------------


class TestBuildReadPair:

    def test_forward_pair(self):
        config = SimulationConfig(read_length=50)
        pair = build_read_pair(7, center=1000, fragment_length=200, forward=True, config=config)
        assert (pair.mate1.start, pair.mate1.end, pair.mate1.strand) == (900, 950, "+")
        assert (pair.mate2.start, pair.mate2.end, pair.mate2.strand) == (1050, 1100, "-")
        assert pair.mate1.name == "sim_read_7/1"
        assert pair.mate2.name == "sim_read_7/2"

    def test_reverse_pair(self):
        config = SimulationConfig(read_length=50)
        pair = build_read_pair(3, center=1000, fragment_length=200, forward=False, config=config)
        assert (pair.mate1.start, pair.mate1.end, pair.mate1.strand) == (1050, 1100, "-")
        assert (pair.mate2.start, pair.mate2.end, pair.mate2.strand) == (900, 950, "+")

    def test_fragment_start_floored_at_zero(self):
        config = SimulationConfig(read_length=50)
        pair = build_read_pair(0, center=10, fragment_length=200, forward=True, config=config)
        assert (pair.mate1.start, pair.mate1.end) == (0, 50)
        assert (pair.mate2.start, pair.mate2.end) == (150, 200)

    def test_degenerate_interval_at_genome_end(self):
        config = SimulationConfig(read_length=50, genome_size=1000, hotspots=(500,))
        pair = build_read_pair(1, center=1000, fragment_length=100, forward=True, config=config)
        assert (pair.mate1.start, pair.mate1.end) == (950, 1000)
        assert (pair.mate2.start, pair.mate2.end) == (999, 1000)

    def test_degenerate_interval_on_tiny_genome(self):
        config = SimulationConfig(read_length=50, genome_size=30, hotspots=(15,))
        pair = build_read_pair(1, center=0, fragment_length=100, forward=False, config=config)
        for read in pair.reads:
            assert 0 <= read.start < read.end <= 30
        assert (pair.mate1.start, pair.mate1.end) == (29, 30)
        assert (pair.mate2.start, pair.mate2.end) == (0, 30)

    def test_group_invariants(self, small_config, rng):
        pairs = simulate_group(small_config.treatment_pairs, small_config, True, rng)
        assert len(pairs) == small_config.treatment_pairs
        for pair in pairs:
            assert {pair.mate1.strand, pair.mate2.strand} == {"+", "-"}
            assert (pair.mate1.mate, pair.mate2.mate) == (1, 2)
            assert pair.mate1.pair_id == pair.mate2.pair_id == pair.pair_id
            for read in pair.reads:
                assert 0 <= read.start < read.end <= small_config.genome_size
                assert read.score == 0

    def test_edge_heavy_group_never_degenerate(self, rng):
        config = SimulationConfig(
            treatment_pairs=500,
            genome_size=2000,
            hotspots=(0, 2000),
            hotspot_fraction=1.0,
            hotspot_sd=50,
            read_length=40,
            fragment_mean=120,
        )
        for pair in simulate_group(500, config, True, rng):
            for read in pair.reads:
                assert 0 <= read.start < read.end <= 2000


# ---------------------------------------------------------------------------
# Emission
# ---------------------------------------------------------------------------


class TestEmission:

    def test_frame_sorted_and_stable(self):
        config = SimulationConfig(read_length=10)
        pairs = [
            build_read_pair(0, 500, 20, True, config),
            build_read_pair(1, 100, 20, True, config),
            build_read_pair(2, 500, 20, True, config),
        ]
        frame = pairs_to_frame(pairs)
        assert list(frame.columns) == ["Chromosome", "Start", "End", "Name", "Score", "Strand"]
        assert frame["Start"].is_monotonic_increasing
        tied = frame[frame["Start"] == 490]["Name"].tolist()
        assert tied == ["sim_read_0/1", "sim_read_2/1"]

    def test_write_format(self, small_config, rng, tmp_path):
        pairs = simulate_group(50, small_config, False, rng)
        path = write_reads(pairs, tmp_path / "nested" / "control.bed")
        lines = path.read_text().splitlines()
        assert len(lines) == 100
        fields = lines[0].split("\t")
        assert len(fields) == 6
        assert fields[0] == "chr1"
        assert fields[4] == "0"
        assert fields[5] in {"+", "-"}
        assert '"' not in path.read_text()

    def test_emission_idempotent(self, small_config, rng, tmp_path):
        pairs = simulate_group(80, small_config, True, rng)
        first = write_reads(pairs, tmp_path / "a.bed").read_bytes()
        second = write_reads(pairs, tmp_path / "b.bed").read_bytes()
        assert first == second

    def test_empty_output_raises(self, tmp_path):
        with pytest.raises(EmptyOutputError):
            write_reads([], tmp_path / "empty.bed")

    def test_unwritable_directory_raises_oserror(self, small_config, rng, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        pairs = simulate_group(5, small_config, False, rng)
        with pytest.raises(OSError):
            write_reads(pairs, blocker / "reads.bed")


class TestSimulateDatasets:

    def test_deterministic_given_seed(self, small_config, tmp_path):
        first = simulate_datasets(small_config, tmp_path / "run1")
        second = simulate_datasets(small_config, tmp_path / "run2")
        assert first.treatment.read_bytes() == second.treatment.read_bytes()
        assert first.control.read_bytes() == second.control.read_bytes()

    def test_seed_changes_output(self, small_config, tmp_path):
        first = simulate_datasets(small_config, tmp_path / "run1")
        other = SimulationConfig(**{**small_config.to_dict(), "seed": small_config.seed + 1})
        second = simulate_datasets(other, tmp_path / "run2")
        assert first.treatment.read_bytes() != second.treatment.read_bytes()

    def test_invalid_config_writes_nothing(self, tmp_path):
        with pytest.raises(ConfigurationError):
            simulate_datasets(SimulationConfig(hotspot_fraction=2.0), tmp_path / "out")
        assert not (tmp_path / "out").exists()

    def test_classroom_scenario(self, tmp_path):
        config = SimulationConfig(
            treatment_pairs=8000,
            control_pairs=1500,
            genome_size=1_000_000,
            hotspots=(150_000, 350_000, 650_000, 850_000),
        )
        datasets = simulate_datasets(config, tmp_path)
        assert (datasets.treatment_pairs, datasets.control_pairs) == (8000, 1500)
        for path, n_pairs in ((datasets.treatment, 8000), (datasets.control, 1500)):
            assert path.stat().st_size > 0
            frame = _read_file(path)
            assert len(frame) == 2 * n_pairs
            assert frame["start"].min() >= 0
            assert frame["end"].max() <= 1_000_000
            assert (frame["start"] < frame["end"]).all()
            for _, group in frame.groupby("chrom"):
                assert group["start"].is_monotonic_increasing
            pair_ids = frame["name"].str.rsplit("/", n=1).str[0]
            assert pair_ids.value_counts().eq(2).all()
