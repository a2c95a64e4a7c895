"""
Data Preprocessing Module for Microarray Analysis Toolkit

Functions for building the probe-level matrix from a chip layout, removing
control probesets, filtering uninformative probesets, and assigning sample
groups and colors.
"""

import pandas as pd
from typing import Dict, List, Tuple, Optional, Any, Union
import numpy as np
import seaborn as sns
from matplotlib.colors import to_hex


CONTROL_GROUP_KEYWORDS = ["control", "ctrl", "pool", "reference", "normal", "untreated", "vehicle"]


def _normalize_group_value(value: Any) -> Union[int, float, str]:
    """
    Normalize group values to consistent types for sorting and comparison.

    Keeps numeric values as numbers when possible (80.0 -> 80), only
    converting to string when necessary.
    """
    if value is None or value == "" or (isinstance(value, float) and np.isnan(value)):
        return "Unknown"

    if isinstance(value, (int, float, np.integer, np.floating)):
        if float(value).is_integer():
            return int(value)
        return float(value)

    if isinstance(value, str):
        value = value.strip()
        if not value:
            return "Unknown"
        try:
            float_val = float(value)
        except ValueError:
            return value
        return int(float_val) if float_val.is_integer() else float_val

    return str(value)


def build_pm_matrix(
    probe_intensities: pd.DataFrame, probe_map: pd.DataFrame
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Select the perfect-match (PM) cells of each array.

    Parameters:
    -----------
    probe_intensities : pd.DataFrame
        Cell intensities (cells x samples), indexed by cell index
    probe_map : pd.DataFrame
        Chip layout with Probeset_ID, Index and Probe_Type columns

    Returns:
    --------
    Tuple[pd.DataFrame, pd.DataFrame] : PM intensity matrix (probes x samples)
        and the probe map rows it is aligned with
    """
    missing_cols = {"Probeset_ID", "Index", "Probe_Type"} - set(probe_map.columns)
    if missing_cols:
        raise ValueError(f"Probe map is missing columns: {sorted(missing_cols)}")

    pm_map = probe_map[probe_map["Probe_Type"] == "PM"].reset_index(drop=True)
    if pm_map.empty:
        raise ValueError("Probe map contains no PM probes")

    cell_index = pm_map["Index"].to_numpy()
    out_of_range = ~np.isin(cell_index, probe_intensities.index.to_numpy())
    if out_of_range.any():
        raise ValueError(
            f"{out_of_range.sum()} probe map cells are not on the chip "
            f"(max cell index {probe_intensities.index.max()})"
        )

    pm = probe_intensities.loc[cell_index].reset_index(drop=True)
    pm.index.name = "Probe"

    n_missing = int(pm.isna().sum().sum())
    if n_missing:
        print(f"Warning: {n_missing} PM values are missing from the CEL data")

    print(
        f"PM matrix: {len(pm)} probes in {pm_map['Probeset_ID'].nunique()} probesets "
        f"x {pm.shape[1]} samples"
    )
    return pm, pm_map


def remove_control_probesets(expression: pd.DataFrame, prefix: str = "AFFX") -> pd.DataFrame:
    """Drop Affymetrix control probesets (IDs starting with ``prefix``)."""
    is_control = expression.index.astype(str).str.startswith(prefix)
    filtered = expression.loc[~is_control].copy()
    print(f"Removed {int(is_control.sum())} control probesets ({prefix}*)")
    return filtered


def filter_low_expression(
    expression: pd.DataFrame,
    threshold: float = 4.0,
    min_samples: Optional[int] = None,
    sample_groups: Optional[pd.Series] = None,
) -> pd.DataFrame:
    """
    Keep probesets expressed above ``threshold`` in at least ``min_samples`` arrays.

    Parameters:
    -----------
    expression : pd.DataFrame
        log2 expression (probesets x samples)
    threshold : float
        log2 expression threshold
    min_samples : int, optional
        Required number of arrays above threshold. Defaults to the smallest
        group size when sample_groups is given, otherwise 1.
    sample_groups : pd.Series, optional
        Group label per sample column

    Returns:
    --------
    pd.DataFrame : Filtered expression
    """
    print("=== FILTERING LOW-EXPRESSION PROBESETS ===\n")

    if min_samples is None:
        if sample_groups is not None and len(sample_groups) > 0:
            min_samples = int(sample_groups.value_counts().min())
        else:
            min_samples = 1

    above = (expression > threshold).sum(axis=1)
    keep = above >= min_samples
    filtered = expression.loc[keep].copy()

    print(f"Original probesets: {len(expression)}")
    print(f"Probesets above {threshold} in ≥{min_samples} arrays: {len(filtered)}")
    print(f"Removed: {len(expression) - len(filtered)} probesets")

    return filtered


def filter_by_variance(expression: pd.DataFrame, quantile: float = 0.2) -> pd.DataFrame:
    """
    Remove the lowest-variance probesets.

    Parameters:
    -----------
    expression : pd.DataFrame
        log2 expression (probesets x samples)
    quantile : float
        Fraction of probesets (by variance) to drop, between 0 and 1

    Returns:
    --------
    pd.DataFrame : Filtered expression
    """
    if not 0 <= quantile < 1:
        raise ValueError("quantile must be in [0, 1)")

    if quantile == 0:
        return expression.copy()

    variances = expression.var(axis=1, ddof=1)
    cutoff = np.nanpercentile(variances.dropna(), quantile * 100)
    filtered = expression.loc[variances > cutoff].copy()

    print(
        f"Variance filter (drop lowest {quantile * 100:.0f}%): "
        f"kept {len(filtered)} of {len(expression)} probesets"
    )
    return filtered


def assign_sample_groups(
    sample_columns: List[str],
    sample_metadata: Dict[str, Dict],
    group_column: str = "Group",
) -> pd.Series:
    """
    Look up the group label of each sample column.

    Samples without metadata, or without a value in group_column, are
    labelled 'Unknown'.

    Returns:
    --------
    pd.Series : Group labels (strings) indexed by sample name
    """
    groups = {}
    for sample in sample_columns:
        value = sample_metadata.get(sample, {}).get(group_column)
        groups[sample] = str(_normalize_group_value(value))

    group_series = pd.Series(groups, name=group_column)

    n_unknown = int((group_series == "Unknown").sum())
    if n_unknown:
        print(f"Warning: {n_unknown} samples have no '{group_column}' value")

    return group_series


def _is_control_group(group: Any) -> bool:
    group_lower = str(group).lower()
    return any(keyword in group_lower for keyword in CONTROL_GROUP_KEYWORDS)


def calculate_group_colors(
    groups: Union[pd.Series, List[Any]],
    palette: str = "tab10",
    group_order: Optional[List[Any]] = None,
) -> Dict[Any, str]:
    """
    Assign a hex color to each experimental group.

    Study groups take colors from the seaborn palette first, control-like
    groups (control, pool, reference, ...) follow. 'Unknown' is always grey.

    Parameters:
    -----------
    groups : pd.Series or list
        Group label per sample (duplicates allowed)
    palette : str
        Seaborn / matplotlib palette name
    group_order : list, optional
        Explicit group order; overrides the study-then-control ordering

    Returns:
    --------
    Dict[Any, str] : Group -> hex color
    """
    unique_groups = list(dict.fromkeys(pd.Series(list(groups)).fillna("Unknown")))

    if group_order is not None:
        ordered_groups = [g for g in group_order if g in unique_groups]
        ordered_groups += [g for g in unique_groups if g not in ordered_groups]
    else:
        study_groups = sorted(
            (g for g in unique_groups if g != "Unknown" and not _is_control_group(g)),
            key=str,
        )
        control_groups = sorted(
            (g for g in unique_groups if g != "Unknown" and _is_control_group(g)),
            key=str,
        )
        ordered_groups = study_groups + control_groups

    colored = [g for g in ordered_groups if g != "Unknown"]
    colors = sns.color_palette(palette, n_colors=max(len(colored), 1))

    group_colors = {group: to_hex(colors[i]) for i, group in enumerate(colored)}
    if "Unknown" in unique_groups:
        group_colors["Unknown"] = "#7f7f7f"

    return group_colors
