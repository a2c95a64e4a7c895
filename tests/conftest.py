"""
Pytest configuration and fixtures for microarray_toolkit tests
"""

import os
import struct

import pytest
import pandas as pd
import numpy as np

from microarray_toolkit.statistical_analysis import StatisticalConfig


CHIP_COLS = 20
CHIP_ROWS = 20
PROBES_PER_SET = 8
CONTROL_PROBESETS = ["AFFX-BioB-5_at", "AFFX-BioC-5_at"]
GENE_PROBESETS = [f"{200000 + i}_at" for i in range(10)]
UP_PROBESETS = GENE_PROBESETS[:2]
DOWN_PROBESETS = GENE_PROBESETS[2:3]

SAMPLE_GROUPS = {
    "Ctrl_1": "Control",
    "Ctrl_2": "Control",
    "Ctrl_3": "Control",
    "Trt_1": "Treated",
    "Trt_2": "Treated",
    "Trt_3": "Treated",
}


def pytest_addoption(parser):
    parser.addoption(
        "--run-network",
        action="store_true",
        default=False,
        help="run tests that query external web services",
    )


def pytest_collection_modifyitems(config, items):
    """Skip network tests unless --run-network is passed"""
    if config.getoption("--run-network"):
        return

    skip_network = pytest.mark.skip(reason="need --run-network option to run")
    for item in items:
        if "network" in item.keywords:
            item.add_marker(skip_network)


# =============================================================================
# FILE WRITERS
# =============================================================================

def write_text_cel(path, intensities, cols=CHIP_COLS, rows=CHIP_ROWS, masked=(), outliers=()):
    """Write a version 3 (text) CEL file with one MEAN per cell index."""
    lines = [
        "[CEL]",
        "Version=3",
        "",
        "[HEADER]",
        f"Cols={cols}",
        f"Rows={rows}",
        f"TotalX={cols}",
        f"TotalY={rows}",
        "Algorithm=Percentile",
        "AlgorithmParameters=Percentile:75;CellMargin:2",
        "",
        "[INTENSITY]",
        f"NumberCells={cols * rows}",
        "CellHeader=X\tY\tMEAN\tSTDV\tNPIXELS",
    ]
    for index, value in enumerate(intensities):
        x, y = index % cols, index // cols
        lines.append(f"{x:3d}\t{y:3d}\t{value:.1f}\t{value / 10:.1f}\t16")

    lines += ["", "[MASKS]", f"NumberCells={len(masked)}", "CellHeader=X\tY"]
    lines += [f"{index % cols}\t{index // cols}" for index in masked]
    lines += ["", "[OUTLIERS]", f"NumberCells={len(outliers)}", "CellHeader=X\tY"]
    lines += [f"{index % cols}\t{index // cols}" for index in outliers]

    with open(path, "w") as f:
        f.write("\n".join(lines) + "\n")
    return path


def write_binary_cel(path, intensities, cols=CHIP_COLS, rows=CHIP_ROWS, masked=(), outliers=()):
    """Write a version 4 (binary XDA) CEL file."""
    n_cells = cols * rows
    header = f"Cols={cols}\nRows={rows}\nTotalX={cols}\nTotalY={rows}\n".encode("latin-1")
    algorithm = b"Percentile"
    parameters = b"Percentile:75;CellMargin:2"

    cells = np.zeros(n_cells, dtype=[("mean", "<f4"), ("stdv", "<f4"), ("npixels", "<i2")])
    cells["mean"] = intensities
    cells["stdv"] = np.asarray(intensities) / 10
    cells["npixels"] = 16

    def xy_bytes(indices):
        xy = np.zeros(len(indices), dtype=[("x", "<i2"), ("y", "<i2")])
        xy["x"] = [i % cols for i in indices]
        xy["y"] = [i // cols for i in indices]
        return xy.tobytes()

    with open(path, "wb") as f:
        f.write(struct.pack("<5i", 64, 4, rows, cols, n_cells))
        for block in (header, algorithm, parameters):
            f.write(struct.pack("<i", len(block)))
            f.write(block)
        f.write(struct.pack("<iIIi", 2, len(outliers), len(masked), 0))
        f.write(cells.tobytes())
        f.write(xy_bytes(masked))
        f.write(xy_bytes(outliers))
    return path


_COMPLEMENT = {"A": "T", "T": "A", "C": "G", "G": "C"}


def write_text_cdf(path, probe_map, cols=CHIP_COLS, rows=CHIP_ROWS):
    """Write a GC3.0 text CDF describing the PM/MM pairs of a probe map."""
    probesets = list(dict.fromkeys(probe_map["Probeset_ID"]))
    lines = [
        "[CDF]",
        "Version=GC3.0",
        "",
        "[Chip]",
        "Name=Test-Chip",
        f"Rows={rows}",
        f"Cols={cols}",
        f"NumberOfUnits={len(probesets)}",
        f"MaxUnit={len(probesets)}",
        "NumQCUnits=0",
        "",
    ]
    cell_header = "X\tY\tPROBE\tFEAT\tQUAL\tEXPOS\tPOS\tCBASE\tPBASE\tTBASE\tATOM\tINDEX\tCODONIND\tCODON\tREGIONTYPE\tREGION"
    for unit, probeset in enumerate(probesets, start=1):
        cells = probe_map[probe_map["Probeset_ID"] == probeset]
        lines += [
            f"[Unit{unit}]",
            f"Name={probeset}",
            "NumberBlocks=1",
            "",
            f"[Unit{unit}_Block1]",
            f"Name={probeset}",
            "BlockNumber=1",
            f"NumAtoms={cells['Atom'].nunique()}",
            f"NumCells={len(cells)}",
            f"CellHeader={cell_header}",
        ]
        for i, cell in enumerate(cells.itertuples(index=False), start=1):
            tbase = "ACGT"[cell.Atom % 4]
            pbase = _COMPLEMENT[tbase] if cell.Probe_Type == "PM" else tbase
            lines.append(
                f"Cell{i}={cell.X}\t{cell.Y}\tN\tcontrol\t{probeset}\t{cell.Atom}\t13\t"
                f"{pbase}\t{pbase}\t{tbase}\t{cell.Atom}\t{cell.Index}\t-1\t-1\t99\t"
            )
        lines.append("")

    with open(path, "w") as f:
        f.write("\n".join(lines) + "\n")
    return path


# =============================================================================
# SYNTHETIC DATA
# =============================================================================

def make_probe_map():
    """PM/MM pairs for the control and gene probesets, laid out row by row."""
    records = []
    cell = 0
    for probeset in CONTROL_PROBESETS + GENE_PROBESETS:
        for atom in range(PROBES_PER_SET):
            for probe_type in ("PM", "MM"):
                records.append((probeset, cell % CHIP_COLS, cell // CHIP_COLS, cell, probe_type, atom))
                cell += 1
    return pd.DataFrame(records, columns=["Probeset_ID", "X", "Y", "Index", "Probe_Type", "Atom"])


def make_cell_intensities(probe_map, seed=0):
    """
    Raw cell intensities (cells x samples).

    Every cell has normal background around 100. PM cells add a probeset
    signal (log2 levels spread from 5 to 11, 10 for the changed probesets)
    scaled by a probe affinity; Treated arrays have the UP probesets
    raised 8-fold and the DOWN probeset lowered 8-fold. MM cells carry a
    fraction of the PM signal.
    """
    rng = np.random.default_rng(seed)
    n_cells = CHIP_COLS * CHIP_ROWS
    probesets = list(dict.fromkeys(probe_map["Probeset_ID"]))
    levels = dict(zip(probesets, rng.permutation(np.linspace(5, 11, len(probesets)))))
    for probeset in UP_PROBESETS + DOWN_PROBESETS:
        levels[probeset] = 10.0
    affinity = np.exp(rng.normal(0, 0.3, len(probe_map)))

    data = {}
    for sample, group in SAMPLE_GROUPS.items():
        values = rng.normal(100, 10, n_cells)
        array_scale = rng.uniform(0.8, 1.25)
        for row, probe in enumerate(probe_map.itertuples(index=False)):
            level = levels[probe.Probeset_ID]
            if group == "Treated" and probe.Probeset_ID in UP_PROBESETS:
                level += 3
            if group == "Treated" and probe.Probeset_ID in DOWN_PROBESETS:
                level -= 3
            signal = 2 ** level * affinity[row] * np.exp(rng.normal(0, 0.1))
            if probe.Probe_Type == "MM":
                signal *= 0.3
            values[probe.Index] += signal
        data[sample] = np.clip(values * array_scale, 1, None)

    intensities = pd.DataFrame(data)
    intensities.index.name = "Cell_Index"
    return intensities


@pytest.fixture
def probe_map():
    """Chip layout with PM and MM probes (2 AFFX controls + 10 gene probesets)"""
    return make_probe_map()


@pytest.fixture
def cell_intensities(probe_map):
    """Raw intensities for 6 arrays (3 Control, 3 Treated)"""
    return make_cell_intensities(probe_map)


@pytest.fixture
def cel_directory(tmp_path, cell_intensities):
    """Directory of text CEL files, one per sample"""
    cel_dir = tmp_path / "cel"
    cel_dir.mkdir()
    for sample in cell_intensities.columns:
        write_text_cel(cel_dir / f"{sample}.CEL", cell_intensities[sample].to_numpy())
    return cel_dir


@pytest.fixture
def cdf_file(tmp_path, probe_map):
    """Text CDF matching the synthetic chip"""
    return write_text_cdf(tmp_path / "Test-Chip.cdf", probe_map)


@pytest.fixture
def phenodata_file(tmp_path):
    """Phenodata CSV keyed by CEL file name"""
    path = tmp_path / "phenodata.csv"
    rows = [
        {"FileName": f"{sample}.CEL", "Group": group, "Batch": "B1" if sample.endswith("1") else "B2"}
        for sample, group in SAMPLE_GROUPS.items()
    ]
    pd.DataFrame(rows).to_csv(path, index=False)
    return path


@pytest.fixture
def annotation_file(tmp_path):
    """NetAffx-style annotation CSV with '#%' comment lines"""
    path = tmp_path / "annotation.csv"
    lines = [
        "#%create_date=Test",
        "#%chip_type=Test-Chip",
        '"Probe Set ID","Gene Title","Gene Symbol","Entrez Gene"',
    ]
    for i, probeset in enumerate(GENE_PROBESETS):
        symbol = f"GENE{i}" if i != 9 else "---"
        if i == 1:
            symbol = "GENE1 /// GENE1B"
        lines.append(f'"{probeset}","gene {i} title","{symbol}","{1000 + i}"')
    for probeset in CONTROL_PROBESETS:
        lines.append(f'"{probeset}","---","---","---"')
    path.write_text("\n".join(lines) + "\n")
    return path


@pytest.fixture
def sample_metadata():
    """Sample metadata dictionary (6 arrays, 2 groups, 2 batches)"""
    return {
        sample: {
            "FileName": f"{sample}.CEL",
            "Group": group,
            "Batch": "B1" if sample.endswith("1") else "B2",
        }
        for sample, group in SAMPLE_GROUPS.items()
    }


@pytest.fixture
def expression_data():
    """
    log2 expression for 200 probesets x 6 arrays.

    Probesets 0-9 are up 3 log2 units in Treated, 10-19 are down 3 units,
    the rest are unchanged. Five AFFX control probesets are appended.
    """
    rng = np.random.default_rng(42)
    samples = list(SAMPLE_GROUPS)
    n_genes = 200

    base = rng.uniform(5, 12, n_genes)[:, None]
    noise = rng.normal(0, 0.3, (n_genes, len(samples)))
    data = base + noise

    treated = np.array([SAMPLE_GROUPS[s] == "Treated" for s in samples])
    data[:10, treated] += 3
    data[10:20, treated] -= 3

    index = [f"{100000 + i}_at" for i in range(n_genes)]
    expression = pd.DataFrame(data, index=index, columns=samples)

    controls = pd.DataFrame(
        rng.normal(10, 0.3, (5, len(samples))),
        index=[f"AFFX-Ctrl{i}_at" for i in range(5)],
        columns=samples,
    )
    expression = pd.concat([expression, controls])
    expression.index.name = "Probe_ID"
    return expression


@pytest.fixture
def three_group_expression():
    """log2 expression for 150 probesets x 9 arrays (Control, Low, High)"""
    rng = np.random.default_rng(7)
    samples = [f"{g}_{i}" for g in ("Control", "Low", "High") for i in (1, 2, 3)]
    data = rng.uniform(6, 10, 150)[:, None] + rng.normal(0, 0.25, (150, 9))

    high = np.array([s.startswith("High") for s in samples])
    low = np.array([s.startswith("Low") for s in samples])
    data[:10, high] += 2.5
    data[:10, low] += 1.0

    expression = pd.DataFrame(
        data, index=[f"{300000 + i}_at" for i in range(150)], columns=samples
    )
    expression.index.name = "Probe_ID"
    metadata = {s: {"Group": s.split("_")[0]} for s in samples}
    return expression, metadata


@pytest.fixture
def statistical_config():
    """StatisticalConfig for the two-group synthetic data"""
    config = StatisticalConfig()
    config.group_column = "Group"
    config.group_labels = ["Control", "Treated"]
    config.contrasts = ["Treated-Control"]
    config.p_value_threshold = 0.05
    config.fold_change_threshold = 1.0
    return config


@pytest.fixture
def differential_results():
    """Result table in top_table() layout"""
    rng = np.random.default_rng(3)
    n = 50
    logfc = np.concatenate([rng.normal(2.5, 0.3, 5), rng.normal(-2.5, 0.3, 5), rng.normal(0, 0.2, n - 10)])
    pvals = np.concatenate([rng.uniform(1e-8, 1e-5, 10), rng.uniform(0.05, 1, n - 10)])
    table = pd.DataFrame(
        {
            "Gene": [f"GENE{i}" for i in range(n)],
            "logFC": logfc,
            "AveExpr": rng.uniform(5, 12, n),
            "t": np.sign(logfc) * rng.uniform(0.5, 15, n),
            "P.Value": pvals,
            "adj.P.Val": np.minimum(pvals * n, 1.0),
            "B": rng.normal(0, 3, n),
        },
        index=pd.Index([f"{400000 + i}_at" for i in range(n)], name="Probe_ID"),
    )
    return table


@pytest.fixture
def working_directory(tmp_path):
    """Run a test inside tmp_path (exports write relative to the cwd)"""
    previous = os.getcwd()
    os.chdir(tmp_path)
    yield tmp_path
    os.chdir(previous)
