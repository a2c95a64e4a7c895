"""
Export Module for Microarray Analysis Toolkit

This module handles exporting analysis results, configurations, and processed data
from microarray experiments. It provides functions for writing the normalized
expression matrix, per-contrast result and DEG tables, and timestamped
configuration files that can be reloaded to repeat an analysis.
"""

import re
import pandas as pd
from datetime import datetime
from typing import Dict, Any, Optional, List


def _safe_file_part(name: str) -> str:
    """Contrast name reduced to characters that are safe in a file name."""
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", str(name)).strip("_") or "contrast"


def export_analysis_results(
    expression: pd.DataFrame,
    sample_metadata: Dict[str, Dict[str, Any]],
    results_by_contrast: Optional[Dict[str, pd.DataFrame]] = None,
    degs_by_contrast: Optional[Dict[str, pd.DataFrame]] = None,
    output_prefix: str = "microarray_analysis",
) -> Dict[str, str]:
    """
    Export normalized expression, sample metadata and per-contrast tables.

    Parameters:
    -----------
    expression : pd.DataFrame
        Normalized log2 expression (probesets x samples)
    sample_metadata : dict
        Dictionary mapping sample names to their metadata
    results_by_contrast : dict, optional
        Contrast name -> full result table (indexed by Probe_ID)
    degs_by_contrast : dict, optional
        Contrast name -> DEG table
    output_prefix : str
        Prefix for output filenames (may include a directory)

    Returns:
    --------
    dict
        Name -> path of each exported file. Result tables are keyed
        'results_<contrast>' and 'degs_<contrast>'.
    """

    print("Exporting analysis results...")

    exported_files = {}

    expression_file = f"{output_prefix}_normalized_expression.csv"
    expression.to_csv(expression_file, index_label=expression.index.name or "Probe_ID")
    exported_files["normalized_expression"] = expression_file
    print(f"Normalized expression exported to: {expression_file}")

    metadata_export = pd.DataFrame.from_dict(sample_metadata, orient="index")
    metadata_file = f"{output_prefix}_sample_metadata.csv"
    metadata_export.to_csv(metadata_file, index_label="Sample_ID")
    exported_files["sample_metadata"] = metadata_file
    print(f"Sample metadata exported to: {metadata_file}")

    for name, table in (results_by_contrast or {}).items():
        results_file = f"{output_prefix}_{_safe_file_part(name)}_results.csv"
        table.to_csv(results_file, index_label=table.index.name or "Probe_ID")
        exported_files[f"results_{name}"] = results_file
        print(f"Results for {name} exported to: {results_file} ({len(table)} probesets)")

    for name, degs in (degs_by_contrast or {}).items():
        degs_file = f"{output_prefix}_{_safe_file_part(name)}_DEGs.csv"
        degs.to_csv(degs_file, index_label=degs.index.name or "Probe_ID")
        exported_files[f"degs_{name}"] = degs_file
        print(f"DEGs for {name} exported to: {degs_file} ({len(degs)} genes)")

    if results_by_contrast:
        first_table = next(iter(results_by_contrast.values()))
        _display_results_preview(first_table)

    return exported_files


def _display_results_preview(results: pd.DataFrame) -> None:
    """Print the first rows of an exported result table."""

    print(f"\nExported results preview (columns: {list(results.columns[:8])}...):")
    print(f"Total probesets: {len(results)}")

    if len(results) > 0:
        preview_cols = [
            col
            for col in ["Gene", "logFC", "AveExpr", "P.Value", "adj.P.Val", "B"]
            if col in results.columns
        ]
        print(results[preview_cols].head(3).to_string())


def export_timestamped_config(
    config_dict: Dict[str, Any],
    output_prefix: str = "microarray_analysis",
    analysis_description: str = "Microarray analysis",
    computed_values: Optional[Dict[str, Any]] = None,
) -> str:
    """
    Export analysis configuration as a timestamped Python file.

    The file holds one `name = repr(value)` assignment per parameter, grouped
    in numbered sections, and can be reloaded with pipeline.load_config_file().

    Parameters:
    -----------
    config_dict : dict
        Dictionary containing all configuration parameters
    output_prefix : str
        Prefix for the configuration filename
    analysis_description : str
        Description of the analysis type
    computed_values : dict, optional
        Additional computed values to include as comments

    Returns:
    --------
    str
        Path to the exported configuration file
    """

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    config_file = f"{output_prefix}_config_{timestamp}.py"

    print(f"Exporting analysis configuration to: {config_file}")

    section_configs = [
        (
            "INPUT FILES AND PATHS",
            [
                "cel_directory",
                "cel_files",
                "cdf_file",
                "probe_map_file",
                "expression_file",
                "metadata_file",
                "sample_column",
                "annotation_file",
                "remove_common_prefix",
            ],
        ),
        ("NORMALIZATION STRATEGY", ["normalization_method", "rma_background", "rma_normalize"]),
        (
            "PROBESET FILTERING",
            [
                "remove_control_probes",
                "control_probe_prefix",
                "min_expression",
                "min_samples_expressed",
                "variance_filter_quantile",
            ],
        ),
        (
            "EXPERIMENTAL DESIGN CONFIGURATION",
            ["group_column", "group_labels", "covariates", "contrasts"],
        ),
        (
            "STATISTICAL ANALYSIS STRATEGY",
            [
                "statistical_test_method",
                "correction_method",
                "ebayes_trend",
                "ebayes_proportion",
                "stdev_coef_lim",
                "sort_by",
            ],
        ),
        (
            "SIGNIFICANCE THRESHOLDS",
            [
                "p_value_threshold",
                "fold_change_threshold",
                "use_adjusted_pvalue",
                "enable_pvalue_fallback",
            ],
        ),
        (
            "VISUALIZATION SETTINGS",
            [
                "color_palette",
                "group_order",
                "group_colors",
                "label_top_genes",
                "heatmap_top_n",
                "plot_format",
            ],
        ),
        ("ENRICHMENT ANALYSIS", ["run_enrichment", "enrichr_libraries"]),
        ("OUTPUT AND EXPORT SETTINGS", ["export_results", "output_prefix"]),
    ]

    rule = "# " + "=" * 77 + "\n"
    with open(config_file, "w", encoding="utf-8") as f:
        f.write(rule)
        f.write("# MICROARRAY ANALYSIS CONFIGURATION\n")
        f.write(f"# Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n")
        f.write(f"# Analysis: {analysis_description}\n")
        f.write(rule + "\n")

        written = set()
        for section_num, (section_name, param_names) in enumerate(section_configs, start=1):
            _write_config_section(f, section_name, config_dict, param_names, section_num)
            written.update(param_names)

        extra = [key for key in config_dict if key not in written]
        if extra:
            _write_config_section(
                f, "ADDITIONAL PARAMETERS", config_dict, extra, len(section_configs) + 1
            )

        if computed_values:
            f.write(rule)
            f.write("# COMPUTED VALUES (for reference)\n")
            f.write(rule)

            for key, value in computed_values.items():
                if key == "group_colors" and isinstance(value, dict):
                    f.write("# Group colors assigned:\n")
                    for group, color in value.items():
                        f.write(f"#   {group}: {color}\n")
                else:
                    f.write(f"# {key}: {value}\n")

    return config_file


def _write_config_section(
    file_handle,
    section_name: str,
    config_dict: Dict[str, Any],
    param_names: List[str],
    section_number: int = 1,
) -> None:
    """Write a configuration section to file."""

    file_handle.write("# " + "=" * 77 + "\n")
    file_handle.write(f"# {section_number}. {section_name}\n")
    file_handle.write("# " + "=" * 77 + "\n")

    for param in param_names:
        if param in config_dict:
            file_handle.write(f"{param} = {repr(config_dict[param])}\n")

    file_handle.write("\n")


def create_config_dict_from_notebook_vars(**kwargs) -> Dict[str, Any]:
    """
    Create a configuration dictionary from notebook variables.

    Every parameter the pipeline understands gets its default, and keyword
    arguments override them. Unknown keywords are kept as given.

    Returns:
    --------
    dict
        Configuration dictionary
    """

    config_template = {
        # Input files
        "cel_directory": "",
        "cel_files": None,
        "cdf_file": None,
        "probe_map_file": None,
        "expression_file": None,
        "metadata_file": "",
        "sample_column": None,
        "annotation_file": None,
        "remove_common_prefix": False,
        # Normalization
        "normalization_method": "rma",
        "rma_background": True,
        "rma_normalize": True,
        # Probeset filtering
        "remove_control_probes": True,
        "control_probe_prefix": "AFFX",
        "min_expression": 4.0,
        "min_samples_expressed": None,
        "variance_filter_quantile": 0.0,
        # Experimental design
        "group_column": "Group",
        "group_labels": [],
        "covariates": [],
        "contrasts": [],
        # Statistical analysis
        "statistical_test_method": "limma",
        "correction_method": "fdr_bh",
        "ebayes_trend": False,
        "ebayes_proportion": 0.01,
        "stdev_coef_lim": (0.1, 4.0),
        "sort_by": "B",
        # Significance thresholds
        "p_value_threshold": 0.05,
        "fold_change_threshold": 1.0,
        "use_adjusted_pvalue": "adjusted",
        "enable_pvalue_fallback": True,
        # Visualization
        "color_palette": "tab10",
        "group_order": None,
        "group_colors": None,
        "label_top_genes": 10,
        "heatmap_top_n": 50,
        "plot_format": "png",
        # Enrichment
        "run_enrichment": False,
        "enrichr_libraries": [
            "GO_Biological_Process_2023",
            "KEGG_2021_Human",
            "Reactome_2022",
        ],
        # Output settings
        "export_results": True,
        "output_prefix": "microarray_analysis",
    }

    config_dict = config_template.copy()
    config_dict.update(kwargs)

    return config_dict


def export_deg_summary(
    degs_by_contrast: Dict[str, pd.DataFrame],
    output_prefix: str = "microarray_analysis",
) -> str:
    """
    Export one summary row per contrast with DEG counts and the top genes.

    Returns:
    --------
    str
        Path to the summary CSV
    """

    rows = []
    for name, degs in degs_by_contrast.items():
        if "Regulation" in degs.columns:
            n_up = int((degs["Regulation"] == "Up").sum())
        else:
            n_up = int((degs["logFC"] > 0).sum())
        if "Gene" in degs.columns:
            top_genes = [str(g) for g in degs["Gene"].dropna().head(10)]
        else:
            top_genes = [str(p) for p in degs.index[:10]]
        rows.append({
            "Contrast": name,
            "N_DEGs": len(degs),
            "N_Up": n_up,
            "N_Down": len(degs) - n_up,
            "P_Value_Column": degs.attrs.get("pvalue_column", "adj.P.Val"),
            "Top_Genes": ";".join(top_genes),
        })

    summary = pd.DataFrame(
        rows, columns=["Contrast", "N_DEGs", "N_Up", "N_Down", "P_Value_Column", "Top_Genes"]
    )
    summary_file = f"{output_prefix}_DEG_summary.csv"
    summary.to_csv(summary_file, index=False)

    print(f"DEG summary exported to: {summary_file}")
    for row in rows:
        print(f"  • {row['Contrast']}: {row['N_DEGs']} DEGs ({row['N_Up']} up, {row['N_Down']} down)")

    return summary_file


def export_complete_analysis(
    expression: pd.DataFrame,
    sample_metadata: Dict[str, Dict[str, Any]],
    config_dict: Dict[str, Any],
    results_by_contrast: Optional[Dict[str, pd.DataFrame]] = None,
    degs_by_contrast: Optional[Dict[str, pd.DataFrame]] = None,
    output_prefix: str = "microarray_analysis",
    analysis_description: str = "Microarray differential expression analysis",
) -> Dict[str, str]:
    """
    Export complete analysis including data, results, and timestamped configuration.

    This is the main export function that combines data export and configuration export.

    Returns:
    --------
    dict
        Dictionary of all exported files
    """

    exported_files = export_analysis_results(
        expression=expression,
        sample_metadata=sample_metadata,
        results_by_contrast=results_by_contrast,
        degs_by_contrast=degs_by_contrast,
        output_prefix=output_prefix,
    )

    if degs_by_contrast:
        exported_files["deg_summary"] = export_deg_summary(degs_by_contrast, output_prefix)

    computed_values = {
        "Total probesets analyzed": len(expression),
        "Total samples": expression.shape[1],
    }
    if config_dict.get("group_colors"):
        computed_values["group_colors"] = config_dict["group_colors"]
    if results_by_contrast:
        computed_values["Contrasts"] = list(results_by_contrast.keys())

    config_file = export_timestamped_config(
        config_dict=config_dict,
        output_prefix=output_prefix,
        analysis_description=analysis_description,
        computed_values=computed_values,
    )
    exported_files["configuration"] = config_file

    _print_export_summary(exported_files)

    return exported_files


def _print_export_summary(exported_files: Dict[str, str]) -> None:
    print("\n" + "=" * 60)
    print("✓ All analysis results and configuration exported successfully!")
    print("Files created:")
    for name, path in exported_files.items():
        print(f"  • {path} ({name})")
    print("=" * 60)

    if "configuration" in exported_files:
        print("\nREPRODUCIBILITY TIP:")
        print("To reproduce this analysis, run:")
        print(f"   python -m microarray_toolkit {exported_files['configuration']}")


def export_results(
    differential_df: pd.DataFrame, output_file: str, include_all: bool = True
) -> None:
    """
    Export a single result table to CSV.

    Parameters:
    -----------
    differential_df : pd.DataFrame
        Differential analysis results
    output_file : str
        Output CSV filename
    include_all : bool
        Whether to include all probesets or only significant ones
    """

    if not include_all:
        if "Significant" in differential_df.columns:
            export_df = differential_df[differential_df["Significant"]].copy()
        elif "adj.P.Val" in differential_df.columns:
            export_df = differential_df[differential_df["adj.P.Val"] < 0.05].copy()
        else:
            export_df = differential_df.copy()
        print(f"Exporting {len(export_df)} significant probesets to {output_file}")
    else:
        export_df = differential_df.copy()
        print(f"Exporting all {len(export_df)} probesets to {output_file}")

    export_df.to_csv(output_file, index_label=export_df.index.name or "Probe_ID")
    print("Results exported successfully!")
