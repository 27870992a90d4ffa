# %%
"""ChIPSim classroom walkthrough.

This notebook-style script simulates paired-end ChIP-seq reads, calls peaks
with MACS against the simulated control, and explores the result with
histograms and a coverage plot.  Each section is separated by `# %%` markers
so that the file can be imported into Jupyter or executed with tools that
understand cell-style comments.
"""

from __future__ import annotations

from pathlib import Path
import json
import logging
import sys

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

# %%
# Paths and configuration
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))
OUTPUT_DIR = REPO_ROOT / "notebooks" / "walkthrough_results"
READS_DIR = OUTPUT_DIR / "reads"
PEAKS_DIR = OUTPUT_DIR / "peaks"
PLOTS_DIR = OUTPUT_DIR / "plots"
OUTPUT_DIR.mkdir(parents=True, exist_ok=True)

import chipsim
import readsim
import tracks
from peak_calling import ExternalToolError, call_peaks, load_peaks

logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")
plt.style.use("seaborn-v0_8")

config = readsim.SimulationConfig.from_mapping(
    readsim.load_simulation_config(REPO_ROOT / "example" / "simulation.json")
).validate()
config

# %%
# How many treatment pairs land in each hotspot group?
per_hotspot, background = readsim.hotspot_group_sizes(config.treatment_pairs, config)
print(f"{per_hotspot} pairs per hotspot x {len(config.hotspots)} hotspots, {background} background pairs")

# %%
# Simulate the treatment and control read files
datasets = readsim.simulate_datasets(config, READS_DIR)
treatment = tracks.load_reads(datasets.treatment)
control = tracks.load_reads(datasets.control)
print(f"Treatment reads: {len(treatment)}  Control reads: {len(control)}")
treatment.df.head()

# %%
# Fragment lengths recovered from the mate coordinates
fragments = pd.DataFrame(
    {
        "treatment": chipsim.fragment_lengths_from_reads(treatment).describe(),
        "control": chipsim.fragment_lengths_from_reads(control).describe(),
    }
)
fragments

# %%
# Call peaks with MACS (skipped gracefully when MACS is not installed)
peaks = None
try:
    result = call_peaks(
        datasets.treatment,
        datasets.control,
        name="walkthrough",
        output_dir=PEAKS_DIR,
        genome_size=config.genome_size,
        qvalue=0.01,
        fragment_size=int(config.fragment_mean),
    )
    peaks = load_peaks(result.narrow_peak)
except ExternalToolError as exc:
    print(f"MACS unavailable, continuing without peaks: {exc}")

peaks.df.sort_values("QValue", ascending=False).head() if peaks is not None else None

# %%
# Which hotspots did MACS find?
recovery = tracks.summarise_recovery(peaks, config)
print(json.dumps(recovery, indent=2))

# %%
# Exploratory histograms and the whole-chromosome coverage plot
plots = chipsim.generate_plots(treatment, control, peaks, config, PLOTS_DIR, bin_size=2000)
for name, path in plots.items():
    print(f"{name:>18}: {path}")

# %%
# Zoom into the first hotspot at base resolution
treatment_depth = tracks.compute_depth(treatment, config.chrom, config.genome_size)
control_depth = tracks.compute_depth(control, config.chrom, config.genome_size)
first = config.hotspots[0]
zoom = (max(0, first - 3000), min(config.genome_size, first + 3000))
chipsim.plot_coverage(
    treatment_depth,
    control_depth,
    peaks,
    config,
    PLOTS_DIR / "coverage_first_hotspot.png",
    region=zoom,
    bin_size=25,
)
print(f"Peak depth near {first}: treatment={treatment_depth[zoom[0]:zoom[1]].max()}"
      f" control={control_depth[zoom[0]:zoom[1]].max()}")

# %%
# Enrichment of treatment over control inside each hotspot window
windows = tracks.hotspot_windows(config).df
rows = []
scale = config.control_pairs / config.treatment_pairs
for window in windows.itertuples(index=False):
    t = float(np.mean(treatment_depth[window.Start:window.End]))
    c = float(np.mean(control_depth[window.Start:window.End]))
    rows.append({"hotspot": window.Hotspot, "treatment": t, "control": c, "scaled_ratio": t * scale / max(c, 1e-9)})
pd.DataFrame(rows)

# %%
print("Walkthrough complete.")
