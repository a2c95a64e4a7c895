"""
Data Import Module for Microarray Analysis Toolkit

Functions for loading Affymetrix CEL intensity files, chip layouts (CDF files or
probe map tables), sample phenodata and pre-normalized expression matrices.
"""

import gzip
import io
import os
import re
import struct
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd


# Binary CEL (version 4, "XDA") magic number and Command Console magic byte
XDA_CEL_MAGIC = 64
XDA_CDF_MAGIC = 67
COMMAND_CONSOLE_MAGIC = 59

CEL_EXTENSIONS = (".cel.gz", ".cel")

COMPLEMENT_BASES = {"A": "T", "T": "A", "C": "G", "G": "C"}

_CELL_DTYPE = np.dtype([("mean", "<f4"), ("stdv", "<f4"), ("npixels", "<i2")])
_XY_DTYPE = np.dtype([("x", "<i2"), ("y", "<i2")])


@dataclass
class CelData:
    """Contents of a single CEL file.

    Cell intensities are stored as flat arrays indexed by ``x + y * cols``,
    the same convention used by CDF files and probe maps.
    """

    file_name: str
    version: int
    rows: int
    cols: int
    intensities: np.ndarray
    stdvs: np.ndarray
    npixels: np.ndarray
    header: Dict[str, str] = field(default_factory=dict)
    algorithm: str = ""
    masked: np.ndarray = field(default_factory=lambda: np.array([], dtype=np.int64))
    outliers: np.ndarray = field(default_factory=lambda: np.array([], dtype=np.int64))

    @property
    def n_cells(self) -> int:
        return self.rows * self.cols


def _read_raw_bytes(path: str) -> bytes:
    """Read a file, transparently decompressing gzip content."""
    with open(path, "rb") as f:
        raw = f.read()
    if raw[:2] == b"\x1f\x8b":
        raw = gzip.decompress(raw)
    return raw


def _parse_key_value_lines(lines: List[str]) -> Dict[str, str]:
    """Parse ``key=value`` lines into a dictionary (first '=' splits)."""
    parsed = {}
    for line in lines:
        if "=" in line:
            key, value = line.split("=", 1)
            parsed[key.strip()] = value.strip()
    return parsed


def _split_sections(text: str) -> Dict[str, List[str]]:
    """Split an INI-style Affymetrix text file into ``{SECTION: [lines]}``."""
    sections: Dict[str, List[str]] = {}
    current = None
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        if stripped.startswith("[") and stripped.endswith("]"):
            current = stripped[1:-1]
            sections[current] = []
            continue
        if current is not None:
            sections[current].append(stripped)
    return sections


def _parse_xy_lines(lines: List[str], cols: int) -> np.ndarray:
    """Convert the X/Y rows of a MASKS or OUTLIERS section to cell indices."""
    data_lines = [line for line in lines if "=" not in line]
    if not data_lines:
        return np.array([], dtype=np.int64)
    xy = np.loadtxt(io.StringIO("\n".join(data_lines)), ndmin=2, usecols=(0, 1))
    return (xy[:, 0] + xy[:, 1] * cols).astype(np.int64)


def _parse_text_cel(text: str, path: str) -> CelData:
    """Parse a version 3 (text) CEL file."""
    sections = _split_sections(text)

    if "HEADER" not in sections or "INTENSITY" not in sections:
        raise ValueError(f"Text CEL file is missing HEADER or INTENSITY section: {path}")

    cel_info = _parse_key_value_lines(sections.get("CEL", []))
    header = _parse_key_value_lines(sections["HEADER"])

    try:
        cols = int(header["Cols"])
        rows = int(header["Rows"])
    except KeyError as e:
        raise ValueError(f"Text CEL header has no {e} entry: {path}") from e

    intensity_info = _parse_key_value_lines(
        [line for line in sections["INTENSITY"] if "=" in line]
    )
    data_lines = [line for line in sections["INTENSITY"] if "=" not in line]
    expected_cells = int(intensity_info.get("NumberCells", rows * cols))

    if len(data_lines) != expected_cells:
        raise ValueError(
            f"Truncated CEL file {path}: expected {expected_cells} cells, "
            f"found {len(data_lines)}"
        )

    values = np.loadtxt(io.StringIO("\n".join(data_lines)), ndmin=2)
    if values.shape[1] < 3:
        raise ValueError(f"INTENSITY rows need at least X, Y and MEAN columns: {path}")

    n_cells = rows * cols
    index = (values[:, 0] + values[:, 1] * cols).astype(np.int64)
    if index.max() >= n_cells:
        raise ValueError(f"Cell coordinates outside the {cols}x{rows} chip: {path}")

    intensities = np.full(n_cells, np.nan)
    stdvs = np.full(n_cells, np.nan)
    npixels = np.zeros(n_cells, dtype=np.int64)
    intensities[index] = values[:, 2]
    if values.shape[1] > 3:
        stdvs[index] = values[:, 3]
    if values.shape[1] > 4:
        npixels[index] = values[:, 4].astype(np.int64)

    return CelData(
        file_name=os.path.basename(path),
        version=int(cel_info.get("Version", 3)),
        rows=rows,
        cols=cols,
        intensities=intensities,
        stdvs=stdvs,
        npixels=npixels,
        header=header,
        algorithm=header.get("Algorithm", ""),
        masked=_parse_xy_lines(sections.get("MASKS", []), cols),
        outliers=_parse_xy_lines(sections.get("OUTLIERS", []), cols),
    )


def _parse_binary_cel(raw: bytes, path: str) -> CelData:
    """Parse a version 4 (binary, little-endian) CEL file."""
    try:
        magic, version, rows, cols, n_cells = struct.unpack_from("<5i", raw, 0)
        offset = 20

        (header_len,) = struct.unpack_from("<i", raw, offset)
        offset += 4
        header_text = raw[offset : offset + header_len].decode("latin-1")
        offset += header_len

        (algorithm_len,) = struct.unpack_from("<i", raw, offset)
        offset += 4
        algorithm = raw[offset : offset + algorithm_len].decode("latin-1")
        offset += algorithm_len

        (params_len,) = struct.unpack_from("<i", raw, offset)
        offset += 4 + params_len

        _cell_margin, n_outliers, n_masked, _n_subgrids = struct.unpack_from(
            "<iIIi", raw, offset
        )
        offset += 16
    except struct.error as e:
        raise ValueError(f"Truncated binary CEL header: {path}") from e

    if n_cells != rows * cols:
        raise ValueError(
            f"Binary CEL {path} reports {n_cells} cells for a {cols}x{rows} chip"
        )

    required = offset + n_cells * _CELL_DTYPE.itemsize + (n_masked + n_outliers) * 4
    if len(raw) < required:
        raise ValueError(
            f"Truncated CEL file {path}: need {required} bytes, found {len(raw)}"
        )

    cells = np.frombuffer(raw, dtype=_CELL_DTYPE, count=n_cells, offset=offset)
    offset += n_cells * _CELL_DTYPE.itemsize

    masked_xy = np.frombuffer(raw, dtype=_XY_DTYPE, count=n_masked, offset=offset)
    offset += n_masked * _XY_DTYPE.itemsize
    outlier_xy = np.frombuffer(raw, dtype=_XY_DTYPE, count=n_outliers, offset=offset)

    header_lines = re.split(r"[\r\n]+", header_text)

    return CelData(
        file_name=os.path.basename(path),
        version=version,
        rows=rows,
        cols=cols,
        intensities=cells["mean"].astype(np.float64),
        stdvs=cells["stdv"].astype(np.float64),
        npixels=cells["npixels"].astype(np.int64),
        header=_parse_key_value_lines(header_lines),
        algorithm=algorithm,
        masked=masked_xy["x"].astype(np.int64) + masked_xy["y"].astype(np.int64) * cols,
        outliers=outlier_xy["x"].astype(np.int64)
        + outlier_xy["y"].astype(np.int64) * cols,
    )


def read_cel_file(path: str) -> CelData:
    """
    Read a single Affymetrix CEL file.

    Supports version 3 (text) and version 4 (binary) files, optionally
    gzip-compressed. Command Console (generic) CEL files are not supported.

    Parameters:
    -----------
    path : str
        Path to the CEL file

    Returns:
    --------
    CelData
        Parsed intensities and header information
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"CEL file not found: {path}")

    raw = _read_raw_bytes(path)

    if raw.lstrip()[:5] == b"[CEL]":
        return _parse_text_cel(raw.decode("latin-1"), path)

    if len(raw) >= 4 and struct.unpack_from("<i", raw, 0)[0] == XDA_CEL_MAGIC:
        return _parse_binary_cel(raw, path)

    if raw[:1] == bytes([COMMAND_CONSOLE_MAGIC]):
        raise ValueError(
            f"{path} is a Command Console (generic) CEL file, which is not supported. "
            "Convert it to version 4 with 'apt-cel-convert -f xda' first."
        )

    raise ValueError(f"Unrecognized CEL file format: {path}")


def _strip_cel_extension(name: str) -> str:
    base = os.path.basename(str(name))
    lowered = base.lower()
    for ext in CEL_EXTENSIONS:
        if lowered.endswith(ext):
            return base[: -len(ext)]
    return base


def clean_sample_names(
    file_names: List[str], remove_common_prefix: bool = False
) -> Dict[str, str]:
    """
    Derive sample names from CEL file names.

    Strips directories and the .CEL / .CEL.gz extension, and optionally a
    prefix shared by every file (e.g. a study code).

    Parameters:
    -----------
    file_names : List[str]
        CEL file names or paths
    remove_common_prefix : bool
        Whether to remove a prefix shared by all names

    Returns:
    --------
    Dict[str, str] : Mapping from original to cleaned names
    """
    stripped = {name: _strip_cel_extension(name) for name in file_names}

    common_prefix = ""
    if remove_common_prefix and len(stripped) > 1:
        prefix = os.path.commonprefix(list(stripped.values()))
        # Only cut at a separator so "GSM12_A" / "GSM13_B" keep their IDs
        match = re.match(r"^(.*[_\-.\s])", prefix)
        common_prefix = match.group(1) if match else ""
        if common_prefix:
            print(f"Removing common prefix: '{common_prefix}'")

    cleaned_names = {}
    for original_name, name in stripped.items():
        if common_prefix and name.startswith(common_prefix):
            name = name[len(common_prefix):]
        cleaned_names[original_name] = name

    return cleaned_names


def find_cel_files(directory: str) -> List[str]:
    """
    List the CEL files (.CEL, .cel, .CEL.gz) in a directory, sorted by name.

    Raises FileNotFoundError when the directory is missing or holds no CEL files.
    """
    if not os.path.isdir(directory):
        raise FileNotFoundError(f"CEL directory not found: {directory}")

    cel_files = sorted(
        os.path.join(directory, name)
        for name in os.listdir(directory)
        if name.lower().endswith(CEL_EXTENSIONS)
    )

    if not cel_files:
        raise FileNotFoundError(f"No CEL files found in: {directory}")

    print(f"Found {len(cel_files)} CEL files in {directory}")
    return cel_files


def read_cel_files(
    paths: List[str],
    sample_names: Optional[List[str]] = None,
    remove_common_prefix: bool = False,
) -> Tuple[pd.DataFrame, Dict[str, Any]]:
    """
    Read several CEL files into a single cell-level intensity table.

    Parameters:
    -----------
    paths : List[str]
        CEL file paths
    sample_names : List[str], optional
        Column names to use; derived from the file names if omitted
    remove_common_prefix : bool
        Passed to clean_sample_names() when deriving names

    Returns:
    --------
    intensities : pd.DataFrame
        Cells x samples raw intensities (index = cell index x + y * cols)
    chip_info : dict
        Chip dimensions and per-sample scan information
    """
    print("=== LOADING CEL FILES ===\n")

    if not paths:
        raise ValueError("No CEL files given")

    if sample_names is None:
        name_map = clean_sample_names(paths, remove_common_prefix=remove_common_prefix)
        sample_names = [name_map[p] for p in paths]
    elif len(sample_names) != len(paths):
        raise ValueError(
            f"Got {len(sample_names)} sample names for {len(paths)} CEL files"
        )

    duplicates = sorted({n for n in sample_names if sample_names.count(n) > 1})
    if duplicates:
        raise ValueError(f"Duplicate sample names derived from CEL files: {duplicates}")

    columns = {}
    rows = cols = None
    scan_info = {}

    for i, (path, sample) in enumerate(zip(paths, sample_names)):
        cel = read_cel_file(path)

        if rows is None:
            rows, cols = cel.rows, cel.cols
        elif (cel.rows, cel.cols) != (rows, cols):
            raise ValueError(
                f"Chip dimensions differ: {cel.file_name} is {cel.cols}x{cel.rows}, "
                f"expected {cols}x{rows}"
            )

        columns[sample] = cel.intensities
        scan_info[sample] = {
            "file": cel.file_name,
            "version": cel.version,
            "algorithm": cel.algorithm,
            "n_masked": len(cel.masked),
            "n_outliers": len(cel.outliers),
        }

        if (i + 1) % 10 == 0 or i == 0:
            print(f"  Read {i + 1}/{len(paths)}: {cel.file_name} (v{cel.version})")

    intensities = pd.DataFrame(columns)
    intensities.index.name = "Cell_Index"

    chip_info = {"rows": rows, "cols": cols, "n_cells": rows * cols, "samples": scan_info}

    print(f"✓ Loaded {len(paths)} arrays ({cols} x {rows} cells)")
    return intensities, chip_info


def _is_pm_cell(pbase: str, tbase: str) -> bool:
    pbase, tbase = pbase.upper(), tbase.upper()
    if tbase in COMPLEMENT_BASES:
        return COMPLEMENT_BASES[tbase] == pbase
    return pbase != tbase


def read_cdf_file(path: str) -> pd.DataFrame:
    """
    Read a text (GC3.0) Affymetrix CDF file into a probe map.

    Parameters:
    -----------
    path : str
        Path to the ASCII CDF file

    Returns:
    --------
    pd.DataFrame
        One row per probe cell with columns Probeset_ID, X, Y, Index,
        Probe_Type ('PM' or 'MM') and Atom
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"CDF file not found: {path}")

    raw = _read_raw_bytes(path)
    if len(raw) >= 4 and struct.unpack_from("<i", raw, 0)[0] == XDA_CDF_MAGIC:
        raise ValueError(
            f"{path} is a binary CDF. Convert it to text with 'apt-cdf-convert' "
            "or supply a probe map CSV instead."
        )

    sections = _split_sections(raw.decode("latin-1"))
    if "CDF" not in sections or "Chip" not in sections:
        raise ValueError(f"Not a text CDF file: {path}")

    chip = _parse_key_value_lines(sections["Chip"])
    cols = int(chip["Cols"])
    rows = int(chip["Rows"])

    block_pattern = re.compile(r"^Unit\d+_Block\d+$")
    records = []

    for section_name, lines in sections.items():
        if not block_pattern.match(section_name):
            continue

        probeset = None
        column_index = None
        for line in lines:
            key, _, value = line.partition("=")
            if key == "Name":
                probeset = value.strip()
            elif key == "CellHeader":
                header = value.split("\t")
                column_index = {name: j for j, name in enumerate(header)}
            elif key.startswith("Cell") and column_index is not None:
                fields = value.split("\t")
                x = int(fields[column_index["X"]])
                y = int(fields[column_index["Y"]])
                pbase = fields[column_index["PBASE"]]
                tbase = fields[column_index["TBASE"]]
                atom = int(fields[column_index["ATOM"]]) if "ATOM" in column_index else 0
                records.append(
                    (
                        probeset,
                        x,
                        y,
                        x + y * cols,
                        "PM" if _is_pm_cell(pbase, tbase) else "MM",
                        atom,
                    )
                )

    if not records:
        raise ValueError(f"No probe cells found in CDF file: {path}")

    probe_map = pd.DataFrame(
        records, columns=["Probeset_ID", "X", "Y", "Index", "Probe_Type", "Atom"]
    )
    probe_map = probe_map.sort_values(["Probeset_ID", "Atom", "Probe_Type"]).reset_index(
        drop=True
    )

    n_pm = (probe_map["Probe_Type"] == "PM").sum()
    print(
        f"✓ Loaded CDF {chip.get('Name', os.path.basename(path))}: "
        f"{probe_map['Probeset_ID'].nunique()} probesets, {n_pm} PM probes "
        f"({cols} x {rows} chip)"
    )
    return probe_map


def read_probe_map(path: str, chip_cols: Optional[int] = None) -> pd.DataFrame:
    """
    Read a probe map CSV (probeset, x, y per probe) as an alternative to a CDF.

    Useful for arrays whose layout ships as PGF/CLF files: export the probe
    coordinates to CSV once and reuse it.

    Parameters:
    -----------
    path : str
        CSV with a probeset column and X/Y (or Index) columns. An optional
        Probe_Type column marks PM/MM probes; all probes are PM otherwise.
    chip_cols : int, optional
        Number of chip columns, required when no Index column is present

    Returns:
    --------
    pd.DataFrame : Probe map in the same layout as read_cdf_file()
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Probe map file not found: {path}")

    table = pd.read_csv(path)

    probeset_col = None
    for col in ["Probeset_ID", "probeset_id", "probeset", "Probe Set ID", "transcript_cluster_id"]:
        if col in table.columns:
            probeset_col = col
            break
    if probeset_col is None:
        raise ValueError(f"Probe map {path} has no probeset column")

    probe_map = pd.DataFrame({"Probeset_ID": table[probeset_col].astype(str)})

    x_col = "X" if "X" in table.columns else ("x" if "x" in table.columns else None)
    y_col = "Y" if "Y" in table.columns else ("y" if "y" in table.columns else None)

    if x_col and y_col:
        probe_map["X"] = table[x_col].astype(int)
        probe_map["Y"] = table[y_col].astype(int)

    if "Index" in table.columns:
        probe_map["Index"] = table["Index"].astype(int)
    elif x_col and y_col:
        if chip_cols is None:
            raise ValueError("chip_cols is required to compute cell indices from X/Y")
        probe_map["Index"] = probe_map["X"] + probe_map["Y"] * chip_cols
    else:
        raise ValueError(f"Probe map {path} needs X/Y or Index columns")

    if "Probe_Type" in table.columns:
        probe_map["Probe_Type"] = table["Probe_Type"].astype(str).str.upper()
    else:
        probe_map["Probe_Type"] = "PM"

    print(
        f"✓ Loaded probe map: {probe_map['Probeset_ID'].nunique()} probesets, "
        f"{len(probe_map)} probes"
    )
    return probe_map


def load_sample_metadata(
    metadata_file: str, sample_column: Optional[str] = None
) -> Dict[str, Dict[str, Any]]:
    """
    Load sample phenodata (one row per array) into the toolkit's metadata form.

    Parameters:
    -----------
    metadata_file : str
        Comma- or tab-separated phenodata file
    sample_column : str, optional
        Column holding CEL file or sample names. Auto-detected if omitted.

    Returns:
    --------
    Dict[str, Dict] : Sample name -> attribute dictionary
    """
    if not os.path.exists(metadata_file):
        raise FileNotFoundError(f"Metadata file not found: {metadata_file}")

    try:
        metadata = pd.read_csv(metadata_file, sep=None, engine="python")
    except Exception as e:
        raise ValueError(f"Error loading metadata file: {e}")

    print(f"✓ Loaded metadata: {metadata.shape}")

    if sample_column is None:
        for col in ["FileName", "File", "CEL", "Sample", "SampleName", "Sample_Name"]:
            if col in metadata.columns:
                sample_column = col
                break
        else:
            sample_column = metadata.columns[0]
            print(f"Warning: Using first metadata column '{sample_column}' as sample names")
    elif sample_column not in metadata.columns:
        raise ValueError(f"Sample column '{sample_column}' not found in metadata")

    sample_metadata = {}
    for _, row in metadata.iterrows():
        record = {}
        for key, value in row.items():
            record[key] = value.strip() if isinstance(value, str) else value
        sample_name = _strip_cel_extension(record[sample_column])
        if sample_name in sample_metadata:
            raise ValueError(f"Duplicate sample '{sample_name}' in metadata")
        sample_metadata[sample_name] = record

    print(f"  Samples described: {len(sample_metadata)}")
    return sample_metadata


def load_expression_matrix(path: str) -> pd.DataFrame:
    """
    Load an already-normalized expression matrix (probes x samples).

    Accepts CSV or tab-separated files, including GEO series matrix files
    (lines starting with '!' are skipped). The first column holds probe IDs.

    Returns:
    --------
    pd.DataFrame : Numeric expression matrix indexed by Probe_ID
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Expression file not found: {path}")

    opener = gzip.open if path.lower().endswith(".gz") else open
    with opener(path, "rt", encoding="utf-8", errors="replace") as f:
        lines = [line for line in f if line.strip() and not line.startswith(("!", "#"))]

    if not lines:
        raise ValueError(f"No expression rows found in: {path}")

    sep = "\t" if "\t" in lines[0] else ","
    expression = pd.read_csv(io.StringIO("".join(lines)), sep=sep, index_col=0)
    expression = expression.apply(pd.to_numeric, errors="coerce")
    expression.index = expression.index.astype(str)
    expression.index.name = "Probe_ID"
    expression.columns = [_strip_cel_extension(c) for c in expression.columns]

    print(f"✓ Loaded expression matrix: {expression.shape[0]} probes x {expression.shape[1]} samples")
    return expression
