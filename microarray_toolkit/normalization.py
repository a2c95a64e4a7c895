"""
Data Normalization Module for Microarray Analysis Toolkit

Functions for normalizing Affymetrix probe-level data with RMA (Robust
Multi-array Average): convolution background correction, quantile
normalization and median polish summarization. Also provides the log
transformation and normalization diagnostics used by the statistics module.
"""

import pandas as pd
import numpy as np
from scipy import signal, stats
from typing import Dict, Optional, Any

from .preprocessing import build_pm_matrix


def get_normalization_characteristics() -> Dict[str, Dict[str, Any]]:
    """
    Get characteristics of each normalization method.

    Returns:
    --------
    Dict[str, Dict[str, Any]]
        Dictionary with normalization method characteristics
    """
    return {
        "rma": {
            "preserves_scale": False,
            "log_transformed": True,
            "description": "RMA - background corrected, quantile normalized, log2 median polish",
        },
        "gcrma": {
            "preserves_scale": False,
            "log_transformed": True,
            "description": "GCRMA - GC-content background model, then as RMA (log2)",
        },
        "plier": {
            "preserves_scale": False,
            "log_transformed": True,
            "description": "PLIER summaries reported on the log2 scale",
        },
        "mas5": {
            "preserves_scale": True,
            "log_transformed": False,
            "description": "MAS5 signal - linear scale",
        },
        "mas5_log2": {
            "preserves_scale": False,
            "log_transformed": True,
            "description": "MAS5 signal, log2 transformed",
        },
        "quantile": {
            "preserves_scale": True,
            "log_transformed": False,
            "description": "Quantile normalization - keeps data on original scale",
        },
        "log2": {
            "preserves_scale": False,
            "log_transformed": True,
            "description": "Log2 transformation only",
        },
        "none": {
            "preserves_scale": True,
            "log_transformed": False,
            "description": "No normalization applied",
        },
    }


def is_normalization_log_transformed(normalization_method: str) -> bool:
    """
    Check if a normalization method produces log-transformed data.

    Parameters:
    -----------
    normalization_method : str
        Name of the normalization method

    Returns:
    --------
    bool
        True if method produces log-transformed data, False otherwise
    """
    characteristics = get_normalization_characteristics()
    method_lower = normalization_method.lower()

    if method_lower in characteristics:
        return characteristics[method_lower]["log_transformed"]
    else:
        # Unknown method - assume it's not log transformed
        return False


def _bandwidth_nrd0(x: np.ndarray) -> float:
    """Silverman's rule of thumb, as used by R's density()."""
    hi = np.std(x, ddof=1)
    q75, q25 = np.percentile(x, [75, 25])
    lo = min(hi, (q75 - q25) / 1.34)
    if not lo > 0:
        lo = hi if hi > 0 else (abs(x[0]) if x[0] != 0 else 1.0)
    return 0.9 * lo * len(x) ** (-0.2)


def _max_density(x: np.ndarray, n_points: int = 2**14) -> float:
    """
    Location of the maximum of an Epanechnikov kernel density estimate.

    The observations are linearly binned onto an evenly spaced grid and the
    kernel is applied with an FFT convolution.
    """
    x = np.asarray(x, dtype=float)
    x = x[np.isfinite(x)]
    if len(x) < 2:
        raise ValueError("Need at least two values to estimate a density mode")

    bw = _bandwidth_nrd0(x)
    lo = x.min() - 3 * bw
    hi = x.max() + 3 * bw
    grid = np.linspace(lo, hi, n_points)
    delta = grid[1] - grid[0]

    position = (x - lo) / delta
    left = np.clip(np.floor(position).astype(np.int64), 0, n_points - 1)
    weight = position - left
    right = np.minimum(left + 1, n_points - 1)
    counts = np.bincount(left, weights=1 - weight, minlength=n_points)
    counts += np.bincount(right, weights=weight, minlength=n_points)

    # Epanechnikov kernel scaled so its standard deviation equals bw
    radius = np.sqrt(5) * bw
    half_width = max(int(np.ceil(radius / delta)), 1)
    offsets = np.arange(-half_width, half_width + 1) * delta
    kernel = np.clip(1 - (offsets / radius) ** 2, 0, None) * 3 / (4 * radius)

    density = signal.fftconvolve(counts, kernel, mode="same") / len(x)
    return float(grid[np.argmax(density)])


def estimate_background_parameters(pm: np.ndarray) -> Dict[str, float]:
    """
    Estimate the RMA convolution model parameters for one array.

    Parameters:
    -----------
    pm : np.ndarray
        Raw PM intensities of a single array

    Returns:
    --------
    Dict[str, float] : 'mu' (background mean), 'sigma' (background sd) and
        'alpha' (rate of the exponential signal)
    """
    pm = np.asarray(pm, dtype=float)
    pm = pm[np.isfinite(pm)]

    mode = _max_density(pm)
    mode = _max_density(pm[pm < mode])

    background = pm[pm < mode] - mode
    if len(background) < 2:
        raise ValueError("Too few intensities below the background mode")
    sigma = np.sqrt(np.sum(background**2) / (len(background) - 1)) * np.sqrt(2)

    signal_values = pm[pm > mode] - mode
    alpha = 1.0 / _max_density(signal_values)

    return {"mu": mode, "sigma": float(sigma), "alpha": float(alpha)}


def rma_background_correct(pm: pd.DataFrame) -> pd.DataFrame:
    """
    RMA convolution background correction, applied to each array separately.

    Models each observed PM intensity as normal background plus exponential
    signal and replaces it with the expected signal given the observation.

    Parameters:
    -----------
    pm : pd.DataFrame
        Raw PM intensities (probes x samples)

    Returns:
    --------
    pd.DataFrame : Strictly positive background-corrected intensities
    """
    print("Applying RMA background correction...")

    corrected = pd.DataFrame(index=pm.index, columns=pm.columns, dtype=float)

    for sample in pm.columns:
        values = pm[sample].to_numpy(dtype=float)
        params = estimate_background_parameters(values)
        mu, sigma, alpha = params["mu"], params["sigma"], params["alpha"]

        a = values - mu - alpha * sigma**2
        z = a / sigma
        # phi/Phi in log space stays finite far in the lower tail
        ratio = np.exp(stats.norm.logpdf(z) - stats.norm.logcdf(z))
        corrected[sample] = a + sigma * ratio

        print(f"  {sample}: mu={mu:.1f}, sigma={sigma:.1f}, alpha={alpha:.4g}")

    return corrected


def quantile_normalize(
    data: pd.DataFrame, sample_columns: Optional[list] = None
) -> pd.DataFrame:
    """
    Quantile normalization - makes the distribution of each sample identical.

    Parameters:
    -----------
    data : pd.DataFrame
        Intensity data (probes x samples)
    sample_columns : list, optional
        Columns to normalize. All columns are used if None.

    Returns:
    --------
    pd.DataFrame : Quantile normalized data with the same index and columns
    """
    print("Applying quantile normalization...")

    if sample_columns is None:
        sample_columns = list(data.columns)

    data_matrix = data[sample_columns].to_numpy(dtype=float)

    sorted_indices = np.argsort(data_matrix, axis=0, kind="stable")
    sorted_data = np.sort(data_matrix, axis=0)

    # Quantile means across arrays
    quantile_means = np.mean(sorted_data, axis=1)

    normalized_matrix = np.empty_like(data_matrix)
    for i in range(data_matrix.shape[1]):
        normalized_matrix[sorted_indices[:, i], i] = quantile_means

    result = data.copy()
    result[sample_columns] = normalized_matrix

    print(f"Quantile normalization completed for {len(sample_columns)} samples")
    return result


def median_polish(
    matrix: np.ndarray, max_iter: int = 10, eps: float = 0.01
) -> np.ndarray:
    """
    Tukey median polish of a probes x arrays matrix.

    Returns:
    --------
    np.ndarray : overall effect + column effect for each array
    """
    z = np.array(matrix, dtype=float)
    if z.ndim != 2:
        raise ValueError("median_polish expects a 2D matrix")

    n_rows, n_cols = z.shape
    row_effects = np.zeros(n_rows)
    col_effects = np.zeros(n_cols)
    overall = 0.0
    old_sum = 0.0

    for _ in range(max_iter):
        row_delta = np.nanmedian(z, axis=1)
        z -= row_delta[:, None]
        row_effects += row_delta
        delta = np.median(col_effects)
        col_effects -= delta
        overall += delta

        col_delta = np.nanmedian(z, axis=0)
        z -= col_delta[None, :]
        col_effects += col_delta
        delta = np.median(row_effects)
        row_effects -= delta
        overall += delta

        new_sum = np.nansum(np.abs(z))
        if new_sum == 0 or abs(new_sum - old_sum) < eps * new_sum:
            break
        old_sum = new_sum

    return overall + col_effects


def summarize_probesets(log_pm: pd.DataFrame, probe_map: pd.DataFrame) -> pd.DataFrame:
    """
    Summarize log2 probe intensities to probeset expression with median polish.

    Parameters:
    -----------
    log_pm : pd.DataFrame
        log2 PM intensities (probes x samples), row-aligned with probe_map
    probe_map : pd.DataFrame
        Probe map with a Probeset_ID column

    Returns:
    --------
    pd.DataFrame : Expression (probesets x samples), indexed by Probe_ID
    """
    if len(log_pm) != len(probe_map):
        raise ValueError(
            f"Probe matrix has {len(log_pm)} rows but probe map has {len(probe_map)}"
        )

    print("Summarizing probesets with median polish...")

    values = log_pm.to_numpy(dtype=float)
    probesets = probe_map["Probeset_ID"].to_numpy()

    order = np.argsort(probesets, kind="stable")
    sorted_ids = probesets[order]
    unique_ids, starts = np.unique(sorted_ids, return_index=True)
    ends = np.append(starts[1:], len(sorted_ids))

    summarized = np.empty((len(unique_ids), values.shape[1]))
    for i, (start, end) in enumerate(zip(starts, ends)):
        summarized[i] = median_polish(values[order[start:end]])

    expression = pd.DataFrame(summarized, index=unique_ids, columns=log_pm.columns)
    expression.index.name = "Probe_ID"

    print(f"✓ Summarized {len(values)} probes into {len(unique_ids)} probesets")
    return expression


def rma(
    probe_intensities: pd.DataFrame,
    probe_map: pd.DataFrame,
    background: bool = True,
    normalize: bool = True,
) -> pd.DataFrame:
    """
    Robust Multi-array Average expression measure.

    Steps: PM selection -> convolution background correction -> quantile
    normalization -> log2 -> median polish per probeset.

    Parameters:
    -----------
    probe_intensities : pd.DataFrame
        Raw cell intensities (cells x samples) as returned by read_cel_files()
    probe_map : pd.DataFrame
        Chip layout from read_cdf_file() or read_probe_map()
    background : bool
        Apply the convolution background correction
    normalize : bool
        Apply quantile normalization

    Returns:
    --------
    pd.DataFrame : log2 expression (probesets x samples)
    """
    print("=" * 60)
    print("RMA NORMALIZATION")
    print("=" * 60)

    pm, pm_map = build_pm_matrix(probe_intensities, probe_map)

    if background:
        pm = rma_background_correct(pm)
    if normalize:
        pm = quantile_normalize(pm)

    log_pm = np.log2(pm.clip(lower=np.finfo(float).tiny))
    expression = summarize_probesets(log_pm, pm_map)

    print(
        f"✓ RMA complete: {expression.shape[0]} probesets x {expression.shape[1]} samples"
    )
    return expression


def log_transform(
    data: pd.DataFrame, base: str = "log2", pseudocount: Optional[float] = None
) -> pd.DataFrame:
    """
    Apply log transformation to data.

    Parameters:
    -----------
    data : pd.DataFrame
        Data to transform
    base : str
        Log base ('log2', 'log10', or 'ln')
    pseudocount : float, optional
        Small value to add before log transform (auto-calculated if None)

    Returns:
    --------
    pd.DataFrame : Log-transformed data
    """
    if pseudocount is None:
        min_positive = data[data > 0].min().min()
        pseudocount = min_positive / 10 if min_positive > 0 else 1e-6

    data_with_pseudo = data + pseudocount

    if base == "log2":
        transformed_data = np.log2(data_with_pseudo)
    elif base == "log10":
        transformed_data = np.log10(data_with_pseudo)
    elif base == "ln":
        transformed_data = np.log(data_with_pseudo)
    else:
        raise ValueError("base must be 'log2', 'log10', or 'ln'")

    print(f"Applied {base} transformation with pseudocount {pseudocount}")

    return pd.DataFrame(transformed_data, index=data.index, columns=data.columns)


def calculate_normalization_stats(
    data: pd.DataFrame, normalized_data: pd.DataFrame, method: str = "rma"
) -> Dict[str, Any]:
    """
    Calculate statistics to assess normalization effectiveness.

    Raw data is compared on the log2 scale. The normalized data is log2
    transformed too unless the method already produces log values.

    Parameters:
    -----------
    data : pd.DataFrame
        Original intensities (e.g. raw PM probes)
    normalized_data : pd.DataFrame
        Normalized data (e.g. RMA expression)
    method : str
        Normalization method name

    Returns:
    --------
    Dict[str, Any] : Summary statistics plus a per-sample 'sample_stats' table
    """
    log2_original = np.log2(data.where(data > 0))
    if is_normalization_log_transformed(method):
        log2_normalized = normalized_data
    else:
        log2_normalized = np.log2(normalized_data.where(normalized_data > 0))

    original_medians = log2_original.median(axis=0)
    normalized_medians = log2_normalized.median(axis=0)

    sample_stats = pd.DataFrame(
        {
            "Median_Before": original_medians,
            "IQR_Before": log2_original.quantile(0.75) - log2_original.quantile(0.25),
            "Median_After": normalized_medians,
            "IQR_After": log2_normalized.quantile(0.75)
            - log2_normalized.quantile(0.25),
        }
    )

    stats_dict = {
        "original_median_range": original_medians.max() - original_medians.min(),
        "normalized_median_range": normalized_medians.max() - normalized_medians.min(),
        "original_iqr_median": sample_stats["IQR_Before"].median(),
        "normalized_iqr_median": sample_stats["IQR_After"].median(),
    }

    if stats_dict["original_median_range"] > 0:
        stats_dict["median_range_reduction"] = 1 - (
            stats_dict["normalized_median_range"] / stats_dict["original_median_range"]
        )
    else:
        stats_dict["median_range_reduction"] = 0.0

    stats_dict["sample_stats"] = sample_stats
    return stats_dict
