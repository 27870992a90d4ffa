"""Pytest configuration and shared fixtures."""

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pytest

import peak_calling
from readsim import SimulationConfig


@pytest.fixture
def rng():
    return np.random.default_rng(0)


@pytest.fixture
def small_config():
    """A 20 kb toy genome with two hotspots."""
    return SimulationConfig(
        treatment_pairs=400,
        control_pairs=150,
        read_length=36,
        fragment_mean=150,
        fragment_sd=15,
        genome_size=20_000,
        hotspots=(5_000, 15_000),
        hotspot_fraction=0.8,
        hotspot_sd=100,
        seed=7,
    )


@pytest.fixture
def narrowpeak_lines():
    return [
        "chr1\t149700\t150350\tchipsim_peak_1\t512\t.\t24.31\t55.12\t51.27\t310",
        "chr1\t349820\t350190\tchipsim_peak_2\t388\t.\t18.02\t42.50\t38.80\t180",
        "chr1\t500000\t500240\tchipsim_peak_3\t41\t.\t3.10\t6.02\t4.10\t120",
    ]


@pytest.fixture(autouse=True)
def reset_macs_cache(monkeypatch):
    monkeypatch.setattr(peak_calling, "MACS_COMMAND", None)
