"""
Visualization Module for Microarray Analysis Toolkit

Functions for quality-control plots (box, density, normalization comparison,
sample correlation, PCA) and differential expression plots (volcano, MA,
heatmap of top genes). Every function returns the matplotlib Figure, can save
it with ``save_path`` and displays it when ``show`` is True.
"""

import pandas as pd
import numpy as np
import matplotlib.pyplot as plt
import seaborn as sns
from scipy.ndimage import gaussian_filter1d
from sklearn.decomposition import PCA
from sklearn.preprocessing import StandardScaler
from typing import Dict, List, Optional, Tuple, Literal
import warnings

from .normalization import is_normalization_log_transformed
from .preprocessing import _normalize_group_value, calculate_group_colors


def _sample_groups(
    sample_columns: List[str],
    sample_metadata: Optional[Dict[str, Dict]],
    group_column: str,
) -> List[str]:
    """Group label of each sample ('Unknown' when missing)."""
    groups = []
    for sample in sample_columns:
        group = (sample_metadata or {}).get(sample, {}).get(group_column)
        if group is None or pd.isna(group):
            group = "Unknown"
        groups.append(str(_normalize_group_value(group)))
    return groups


def _group_color_map(
    groups: List[str],
    group_colors: Optional[Dict] = None,
    group_order: Optional[List] = None,
) -> Dict[str, str]:
    """Group -> color, keyed the same way as _sample_groups() labels."""
    if group_colors is None:
        if group_order is not None:
            group_order = [str(_normalize_group_value(g)) for g in group_order]
        return calculate_group_colors(groups, group_order=group_order)
    return {str(_normalize_group_value(group)): color for group, color in group_colors.items()}


def _finish_figure(fig, save_path: Optional[str], show: bool):
    """Save and/or display a figure, then return it."""
    if save_path:
        fig.savefig(save_path, dpi=150, bbox_inches="tight")
        print(f"Saved plot: {save_path}")
    if show:
        plt.show()
    return fig


def _select_pvalue_column(df, p_threshold, use_adjusted_pvalue, enable_pvalue_fallback):
    """Pick the p-value column to plot, falling back to raw p-values if needed.

    Returns (column, label, fallback_used) or (None, None, False).
    """
    if use_adjusted_pvalue == "adjusted" and "adj.P.Val" in df.columns:
        significant_count = (df["adj.P.Val"] < p_threshold).sum()
        if significant_count > 0 or not enable_pvalue_fallback or "P.Value" not in df.columns:
            return "adj.P.Val", "FDR", False
        print(f"Warning: No significant genes using adjusted p-values (FDR < {p_threshold})")
        print("  Falling back to unadjusted p-values for visualization")
        print("  Note: Results shown use raw p-values, interpret with caution")
        return "P.Value", "P-value", True
    if "P.Value" in df.columns:
        return "P.Value", "P-value", False
    if "adj.P.Val" in df.columns:
        return "adj.P.Val", "FDR", False
    return None, None, False


def plot_box_plot(
    data: pd.DataFrame,
    sample_columns: Optional[List[str]] = None,
    sample_metadata: Optional[Dict[str, Dict]] = None,
    group_column: str = "Group",
    group_colors: Optional[Dict[str, str]] = None,
    group_order: Optional[List[str]] = None,
    log_transform: bool = False,
    figsize: Tuple[int, int] = (16, 8),
    title: str = "Intensity Distribution by Sample",
    save_path: Optional[str] = None,
    show: bool = True,
):
    """
    Create box plot of intensities by sample, grouped and colored by group.

    Parameters:
    -----------
    data : pd.DataFrame
        Probe or probeset intensities (rows x samples)
    sample_columns : List[str], optional
        Sample columns to plot (all columns if None)
    sample_metadata : Dict[str, Dict], optional
        Sample metadata mapping
    group_column : str
        Metadata column holding the group
    group_colors : Dict[str, str], optional
        Colors for each group
    group_order : List[str], optional
        Order of groups along the x axis
    log_transform : bool
        Whether to log2 transform data for plotting (use for raw intensities)
    figsize : Tuple[int, int]
        Figure size (width, height)
    title : str
        Plot title
    save_path : str, optional
        File to save the figure to
    show : bool
        Whether to display the figure

    Returns:
    --------
    matplotlib.figure.Figure
    """
    if sample_columns is None:
        sample_columns = list(data.columns)

    sample_data = data[sample_columns]

    if log_transform:
        plot_data = np.log2(sample_data.where(sample_data > 0))
        ylabel = "Log2 Intensity"
    else:
        plot_data = sample_data
        ylabel = "Expression (log2)"

    groups = _sample_groups(sample_columns, sample_metadata, group_column)
    samples_by_group = {}
    for sample, group in zip(sample_columns, groups):
        samples_by_group.setdefault(group, []).append(sample)

    group_colors = _group_color_map(groups, group_colors, group_order)

    if group_order:
        group_order = [str(_normalize_group_value(g)) for g in group_order]
        final_group_order = [g for g in group_order if g in samples_by_group]
        final_group_order += [g for g in samples_by_group if g not in final_group_order]
    else:
        final_group_order = sorted(samples_by_group.keys())

    fig, ax = plt.subplots(figsize=figsize)

    positions = []
    box_data = []
    colors = []
    labels = []
    pos = 0

    for group in final_group_order:
        for sample in sorted(samples_by_group[group]):
            box_data.append(plot_data[sample].dropna())
            positions.append(pos)
            colors.append(group_colors.get(group, "#7f7f7f"))
            labels.append(sample)
            pos += 1
        pos += 0.5  # Add space between groups

    bp = ax.boxplot(
        box_data,
        positions=positions,
        patch_artist=True,
        widths=0.8,
        showfliers=True,
        flierprops={"marker": "o", "markersize": 2, "alpha": 0.5},
    )

    for patch, color in zip(bp["boxes"], colors):
        patch.set_facecolor(color)
        patch.set_alpha(0.7)

    ax.set_xlabel("Sample", fontsize=14)
    ax.set_ylabel(ylabel, fontsize=14)
    ax.set_title(title, fontsize=16, fontweight="bold")
    ax.set_xticks(positions)
    ax.set_xticklabels(labels, rotation=45, ha="right", fontsize=10)
    ax.grid(True, alpha=0.3, axis="y")

    legend_elements = [
        plt.Rectangle((0, 0), 1, 1, facecolor=group_colors.get(group, "#7f7f7f"), alpha=0.7, label=group)
        for group in final_group_order
    ]
    ax.legend(handles=legend_elements, loc="upper right")

    plt.tight_layout()

    print("Box plot summary:")
    print(f"Total samples plotted: {len(box_data)}")
    print(f"Average values per sample: {np.mean([len(values) for values in box_data]):.0f}")

    return _finish_figure(fig, save_path, show)


def plot_density(
    data: pd.DataFrame,
    sample_columns: Optional[List[str]] = None,
    sample_metadata: Optional[Dict[str, Dict]] = None,
    group_column: str = "Group",
    group_colors: Optional[Dict[str, str]] = None,
    log_transform: bool = False,
    figsize: Tuple[int, int] = (10, 6),
    title: str = "Intensity Density by Sample",
    save_path: Optional[str] = None,
    show: bool = True,
):
    """Per-sample density curves, colored by group."""
    if sample_columns is None:
        sample_columns = list(data.columns)

    plot_data = data[sample_columns]
    if log_transform:
        plot_data = np.log2(plot_data.where(plot_data > 0))

    groups = _sample_groups(sample_columns, sample_metadata, group_column)
    group_colors = _group_color_map(groups, group_colors)

    fig, ax = plt.subplots(figsize=figsize)

    plotted_groups = set()
    for sample, group in zip(sample_columns, groups):
        values = plot_data[sample].dropna()
        if len(values) == 0:
            continue
        counts, bins = np.histogram(values, bins=100, density=True)
        bin_centers = (bins[:-1] + bins[1:]) / 2
        smoothed_counts = gaussian_filter1d(counts, sigma=0.8)

        label = group if group not in plotted_groups else None
        plotted_groups.add(group)
        ax.plot(
            bin_centers,
            smoothed_counts,
            color=group_colors.get(group, "#7f7f7f"),
            alpha=0.7,
            linewidth=1.5,
            label=label,
        )

    ax.set_xlabel("Log2 Intensity")
    ax.set_ylabel("Density")
    ax.set_title(title)
    ax.grid(True, alpha=0.3)
    if plotted_groups:
        ax.legend(title=group_column)

    plt.tight_layout()
    return _finish_figure(fig, save_path, show)


def plot_normalization_comparison(
    original_data: pd.DataFrame,
    normalized_data: pd.DataFrame,
    sample_columns: Optional[List[str]] = None,
    method: str = "RMA",
    figsize: Tuple[int, int] = (15, 6),
    save_path: Optional[str] = None,
    show: bool = True,
):
    """
    Compare per-sample distributions before and after normalization.

    Parameters:
    -----------
    original_data : pd.DataFrame
        Original (raw) intensities, log2 transformed for plotting
    normalized_data : pd.DataFrame
        Normalized data; log2 transformed unless ``method`` already is
    sample_columns : List[str], optional
        Sample columns (common columns if None)
    method : str
        Normalization method name for plot title
    figsize : Tuple[int, int]
        Figure size (width, height)

    Returns:
    --------
    matplotlib.figure.Figure
    """
    if sample_columns is None:
        sample_columns = [c for c in original_data.columns if c in normalized_data.columns]

    log2_original = np.log2(original_data[sample_columns].where(original_data[sample_columns] > 0))
    if is_normalization_log_transformed(method):
        plot_normalized = normalized_data[sample_columns]
    else:
        plot_normalized = np.log2(
            normalized_data[sample_columns].where(normalized_data[sample_columns] > 0)
        )

    fig, (ax1, ax2) = plt.subplots(1, 2, figsize=figsize, sharey=False)

    for ax, frame, panel_title in [
        (ax1, log2_original, "Before Normalization"),
        (ax2, plot_normalized, f"After {method.upper()} Normalization"),
    ]:
        ax.boxplot(
            [frame[col].dropna() for col in sample_columns],
            patch_artist=True,
            showfliers=False,
            boxprops={"facecolor": "#9ecae1", "alpha": 0.8},
        )
        ax.set_xticks(range(1, len(sample_columns) + 1))
        ax.set_xticklabels(sample_columns, rotation=45, ha="right", fontsize=9)
        ax.set_ylabel("Log2 Intensity")
        ax.set_title(panel_title)
        ax.grid(True, alpha=0.3, axis="y")

    plt.tight_layout()

    original_medians = log2_original.median()
    norm_medians = plot_normalized.median()
    original_range = original_medians.max() - original_medians.min()
    norm_range = norm_medians.max() - norm_medians.min()

    print(f"Normalization comparison ({method}):")
    print(f"Original median range: {original_range:.3f}")
    print(f"Normalized median range: {norm_range:.3f}")
    if original_range > 0:
        print(f"Range reduction: {1 - norm_range / original_range:.1%}")

    return _finish_figure(fig, save_path, show)


def plot_sample_correlation_heatmap(
    data: pd.DataFrame,
    sample_columns: Optional[List[str]] = None,
    sample_metadata: Optional[Dict[str, Dict]] = None,
    group_column: str = "Group",
    figsize: Tuple[int, int] = (12, 10),
    method: Literal["pearson", "kendall", "spearman"] = "pearson",
    group_colors: Optional[Dict[str, str]] = None,
    save_path: Optional[str] = None,
    show: bool = True,
):
    """
    Plot clustered correlation heatmap between samples.

    Returns:
    --------
    matplotlib.figure.Figure
    """
    if sample_columns is None:
        sample_columns = list(data.columns)

    correlation_matrix = data[sample_columns].corr(method=method)

    groups = _sample_groups(sample_columns, sample_metadata, group_column)
    group_colors = _group_color_map(groups, group_colors)
    row_colors = [group_colors.get(group, "#7f7f7f") for group in groups]

    correlation_values = correlation_matrix.values
    upper_triangle = correlation_values[np.triu_indices_from(correlation_values, k=1)]
    actual_min = np.nanmin(upper_triangle)
    actual_max = np.nanmax(upper_triangle)

    with warnings.catch_warnings():
        warnings.simplefilter("ignore")

        g = sns.clustermap(
            correlation_matrix,
            figsize=figsize,
            cmap="RdYlBu",  # red=low, blue=high
            center=(actual_min + actual_max) / 2,
            vmin=actual_min,
            vmax=1.0,
            linewidths=0.1,
            row_colors=row_colors,
            col_colors=row_colors,
            cbar_kws={"label": f"{method.title()} Correlation"},
        )

        g.ax_heatmap.set_xlabel("Samples")
        g.ax_heatmap.set_ylabel("Samples")
        g.fig.suptitle(f"Sample Correlation Heatmap ({method.title()})", fontsize=16, y=1.02)

    print(f"Correlation summary ({method}):")
    print(f"Mean correlation: {np.nanmean(upper_triangle):.3f}")
    print(f"Min correlation: {actual_min:.3f}")
    print(f"Max correlation: {actual_max:.3f}")

    return _finish_figure(g.fig, save_path, show)


def plot_pca(
    data: pd.DataFrame,
    sample_columns: Optional[List[str]] = None,
    sample_metadata: Optional[Dict[str, Dict]] = None,
    group_column: str = "Group",
    group_colors: Optional[Dict[str, str]] = None,
    standardize: bool = True,
    label_samples: bool = False,
    figsize: Tuple[int, int] = (10, 8),
    title: str = "Principal Component Analysis",
    save_path: Optional[str] = None,
    show: bool = True,
):
    """
    Plot PCA of samples, colored by group.

    Parameters:
    -----------
    data : pd.DataFrame
        Expression data (probesets x samples)
    sample_columns : List[str], optional
        Sample column names (all columns if None)
    sample_metadata : Dict[str, Dict], optional
        Sample metadata
    group_column : str
        Metadata column holding the group
    group_colors : Dict[str, str], optional
        Colors for groups
    standardize : bool
        Scale each probeset to unit variance before PCA
    label_samples : bool
        Annotate points with sample names
    figsize : Tuple[int, int]
        Figure size

    Returns:
    --------
    matplotlib.figure.Figure or None if there is too little data
    """
    if sample_columns is None:
        sample_columns = list(data.columns)

    complete_data = data[sample_columns].dropna()

    if len(complete_data) < 2 or len(sample_columns) < 2:
        print("Not enough complete data available for PCA")
        return None

    pca_data = complete_data.T.to_numpy()
    if standardize:
        pca_data = StandardScaler().fit_transform(pca_data)

    pca = PCA(n_components=2)
    pca_result = pca.fit_transform(pca_data)

    groups = _sample_groups(sample_columns, sample_metadata, group_column)
    group_colors = _group_color_map(groups, group_colors)

    fig, ax = plt.subplots(figsize=figsize)

    for group in sorted(set(groups)):
        group_indices = [i for i, g in enumerate(groups) if g == group]
        ax.scatter(
            pca_result[group_indices, 0],
            pca_result[group_indices, 1],
            c=group_colors.get(group, "#7f7f7f"),
            label=group,
            alpha=0.7,
            s=100,
            edgecolors="black",
            linewidth=0.5,
        )

    if label_samples:
        for i, sample in enumerate(sample_columns):
            ax.annotate(sample, (pca_result[i, 0], pca_result[i, 1]),
                        xytext=(4, 4), textcoords="offset points", fontsize=8)

    ax.set_xlabel(f"PC1 ({pca.explained_variance_ratio_[0]:.1%} variance)")
    ax.set_ylabel(f"PC2 ({pca.explained_variance_ratio_[1]:.1%} variance)")
    ax.set_title(title)
    ax.legend()
    ax.grid(True, alpha=0.3)

    plt.tight_layout()

    print("PCA summary:")
    print(f"PC1 explains {pca.explained_variance_ratio_[0]:.1%} of variance")
    print(f"PC2 explains {pca.explained_variance_ratio_[1]:.1%} of variance")
    print(f"Total variance explained: {pca.explained_variance_ratio_[:2].sum():.1%}")

    return _finish_figure(fig, save_path, show)


def plot_volcano(
    differential_df: pd.DataFrame,
    fc_threshold: float = 1.0,
    p_threshold: float = 0.05,
    figsize: Tuple[int, int] = (12, 8),
    title: Optional[str] = None,
    gene_column: str = "Gene",
    label_top_n: int = 10,
    use_adjusted_pvalue: str = "adjusted",
    enable_pvalue_fallback: bool = True,
    save_path: Optional[str] = None,
    show: bool = True,
):
    """
    Create volcano plot for differential expression results.

    Parameters:
    -----------
    differential_df : pd.DataFrame
        Result table with logFC and P.Value / adj.P.Val columns
    fc_threshold : float
        log2 fold change threshold
    p_threshold : float
        P-value threshold (applied to selected p-value type)
    figsize : Tuple[int, int]
        Figure size (width, height)
    title : str, optional
        Plot title
    gene_column : str
        Column name for gene labels (index is used if missing)
    label_top_n : int
        Number of top significant genes to label
    use_adjusted_pvalue : str
        "adjusted" to use FDR-corrected p-values, "unadjusted" for raw p-values
    enable_pvalue_fallback : bool
        If True, fallback to unadjusted p-values when no adjusted significant results

    Returns:
    --------
    matplotlib.figure.Figure or None when there is nothing to plot
    """
    if len(differential_df) == 0:
        print("No data to plot")
        return None

    df = differential_df.dropna(subset=["logFC"]).copy()

    p_col_used, p_type_label, fallback_used = _select_pvalue_column(
        df, p_threshold, use_adjusted_pvalue, enable_pvalue_fallback
    )
    if p_col_used is None:
        print("ERROR: No p-value columns found (need 'P.Value' or 'adj.P.Val')")
        return None

    df = df.dropna(subset=[p_col_used])
    df["neg_log10_p"] = -np.log10(df[p_col_used].clip(lower=1e-300))

    significant = df[p_col_used] < p_threshold
    large_change = df["logFC"].abs() >= fc_threshold
    df["color"] = np.select(
        [significant & large_change & (df["logFC"] > 0), significant & large_change, significant],
        ["red", "blue", "orange"],
        default="gray",
    )

    fig, ax = plt.subplots(figsize=figsize)

    for color in ["gray", "orange", "blue", "red"]:
        subset = df[df["color"] == color]
        if len(subset) > 0:
            label = {
                "gray": "Not significant",
                "orange": "Significant",
                "blue": "Decreased",
                "red": "Increased",
            }[color]
            ax.scatter(subset["logFC"], subset["neg_log10_p"], c=color, alpha=0.6, s=30, label=label)

    ax.axhline(y=-np.log10(p_threshold), color="black", linestyle="--", alpha=0.5)
    ax.axvline(x=fc_threshold, color="black", linestyle="--", alpha=0.5)
    ax.axvline(x=-fc_threshold, color="black", linestyle="--", alpha=0.5)

    if label_top_n > 0:
        labels = df[gene_column] if gene_column in df.columns else pd.Series(df.index, index=df.index)
        top = df[significant & large_change].sort_values(p_col_used).head(label_top_n)
        for idx, row in top.iterrows():
            label = labels.loc[idx]
            if pd.isna(label):
                label = idx
            ax.annotate(
                str(label),
                (row["logFC"], row["neg_log10_p"]),
                xytext=(5, 5),
                textcoords="offset points",
                fontsize=8,
                alpha=0.7,
            )

    if title is None:
        title_suffix = " (using raw p-values)" if fallback_used else ""
        plot_title = f"Volcano Plot (|log2FC| ≥ {fc_threshold}, {p_type_label} < {p_threshold}){title_suffix}"
    else:
        plot_title = title

    ax.set_title(plot_title, fontsize=14, fontweight="bold")
    ax.set_xlabel("Log2 Fold Change", fontsize=16, fontweight="bold")
    ax.set_ylabel(f"-Log10 {p_type_label}", fontsize=16, fontweight="bold")

    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    ax.spines["left"].set_linewidth(2)
    ax.spines["bottom"].set_linewidth(2)
    ax.tick_params(axis="both", which="major", labelsize=12, width=1.5, length=6)
    ax.grid(True, alpha=0.3)

    if len(df) > 0:
        logfc_min = min(df["logFC"].min(), -fc_threshold)
        logfc_max = max(df["logFC"].max(), fc_threshold)
        padding = (logfc_max - logfc_min) * 0.05
        ax.set_xlim(logfc_min - padding, logfc_max + padding)

    ax.legend(loc="upper right", frameon=True, fancybox=True, shadow=True, fontsize=11)
    plt.tight_layout()

    n_up = int((df["color"] == "red").sum())
    n_down = int((df["color"] == "blue").sum())
    print("Volcano plot summary:")
    print(f"Total genes: {len(df)}")
    print(
        f"P-value type used: {p_type_label} ({'fallback from FDR' if fallback_used else use_adjusted_pvalue})"
    )
    print(f"Significant ({p_type_label} < {p_threshold}): {int(significant.sum())}")
    print(f"Up-regulated (log2FC ≥ {fc_threshold}): {n_up}")
    print(f"Down-regulated (log2FC ≤ -{fc_threshold}): {n_down}")

    return _finish_figure(fig, save_path, show)


def plot_ma(
    differential_df: pd.DataFrame,
    fc_threshold: float = 1.0,
    p_threshold: float = 0.05,
    use_adjusted_pvalue: str = "adjusted",
    enable_pvalue_fallback: bool = True,
    figsize: Tuple[int, int] = (10, 7),
    title: str = "MA Plot",
    save_path: Optional[str] = None,
    show: bool = True,
):
    """MA plot: average log2 expression against log2 fold change."""
    if len(differential_df) == 0 or "AveExpr" not in differential_df.columns:
        print("No data to plot")
        return None

    df = differential_df.dropna(subset=["logFC", "AveExpr"])
    p_col_used, _, _ = _select_pvalue_column(
        df, p_threshold, use_adjusted_pvalue, enable_pvalue_fallback
    )

    if p_col_used is not None:
        highlight = (df[p_col_used] < p_threshold) & (df["logFC"].abs() >= fc_threshold)
    else:
        highlight = pd.Series(False, index=df.index)

    fig, ax = plt.subplots(figsize=figsize)
    ax.scatter(df.loc[~highlight, "AveExpr"], df.loc[~highlight, "logFC"],
               c="gray", alpha=0.4, s=10, label="Not significant")
    up = highlight & (df["logFC"] > 0)
    down = highlight & (df["logFC"] < 0)
    ax.scatter(df.loc[up, "AveExpr"], df.loc[up, "logFC"], c="red", alpha=0.7, s=16, label="Increased")
    ax.scatter(df.loc[down, "AveExpr"], df.loc[down, "logFC"], c="blue", alpha=0.7, s=16, label="Decreased")

    ax.axhline(0, color="black", linewidth=1)
    ax.axhline(fc_threshold, color="black", linestyle="--", alpha=0.5)
    ax.axhline(-fc_threshold, color="black", linestyle="--", alpha=0.5)

    ax.set_xlabel("Average Expression (log2)", fontsize=14)
    ax.set_ylabel("Log2 Fold Change", fontsize=14)
    ax.set_title(title, fontsize=14, fontweight="bold")
    ax.grid(True, alpha=0.3)
    ax.legend(loc="upper right")

    plt.tight_layout()
    return _finish_figure(fig, save_path, show)


def plot_heatmap(
    expression: pd.DataFrame,
    genes: List[str],
    sample_metadata: Optional[Dict[str, Dict]] = None,
    sample_columns: Optional[List[str]] = None,
    group_column: str = "Group",
    group_colors: Optional[Dict[str, str]] = None,
    row_labels: Optional[pd.Series] = None,
    top_n: int = 50,
    z_score: bool = True,
    figsize: Tuple[int, int] = (12, 12),
    title: str = "Top Differentially Expressed Genes",
    save_path: Optional[str] = None,
    show: bool = True,
):
    """
    Clustered heatmap of the expression of selected genes.

    Parameters:
    -----------
    expression : pd.DataFrame
        Expression data (probesets x samples)
    genes : List[str]
        Row identifiers to plot, in priority order (first ``top_n`` are used)
    sample_metadata : Dict[str, Dict], optional
        Sample metadata (for the group color bar)
    row_labels : pd.Series, optional
        Display label per row identifier (e.g. gene symbols)
    top_n : int
        Maximum number of rows
    z_score : bool
        Scale each row to mean 0 and standard deviation 1

    Returns:
    --------
    matplotlib.figure.Figure or None when no genes are given
    """
    if sample_columns is None:
        sample_columns = list(expression.columns)

    selected = [g for g in list(genes)[:top_n] if g in expression.index]
    if not selected:
        print("No genes to plot in heatmap")
        return None

    plot_data = expression.loc[selected, sample_columns]
    if z_score:
        std = plot_data.std(axis=1).replace(0, np.nan)
        plot_data = plot_data.sub(plot_data.mean(axis=1), axis=0).div(std, axis=0).fillna(0)

    if row_labels is not None:
        labels = [
            row_labels.get(g) if pd.notna(row_labels.get(g, np.nan)) else g for g in selected
        ]
        plot_data.index = labels

    groups = _sample_groups(sample_columns, sample_metadata, group_column)
    group_colors = _group_color_map(groups, group_colors)
    col_colors = [group_colors.get(group, "#7f7f7f") for group in groups]

    with warnings.catch_warnings():
        warnings.simplefilter("ignore")

        g = sns.clustermap(
            plot_data,
            figsize=figsize,
            cmap="RdBu_r",
            center=0 if z_score else None,
            row_cluster=len(selected) > 1,
            col_cluster=len(sample_columns) > 1,
            col_colors=col_colors,
            yticklabels=len(selected) <= 100,
            cbar_kws={"label": "Row z-score" if z_score else "log2 expression"},
        )
        g.ax_heatmap.set_xlabel("Samples")
        g.ax_heatmap.set_ylabel("")
        g.fig.suptitle(title, fontsize=16, y=1.02)

    handles = [
        plt.Rectangle((0, 0), 1, 1, facecolor=color, label=group)
        for group, color in group_colors.items()
        if group in groups
    ]
    if handles:
        g.ax_heatmap.legend(handles=handles, title=group_column, loc="upper left",
                            bbox_to_anchor=(1.02, 1.15), frameon=False)

    print(f"Heatmap of {len(selected)} genes x {len(sample_columns)} samples")
    return _finish_figure(g.fig, save_path, show)
