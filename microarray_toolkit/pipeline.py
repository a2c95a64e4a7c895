"""
Pipeline Module for Microarray Analysis Toolkit

Runs a complete analysis from a flat configuration dictionary (the same
variables that export_timestamped_config() writes), so an exported
configuration file can be replayed from the command line:

    python -m microarray_toolkit analysis_config_20250101_120000.py --output-dir results
"""

import os
import types
import runpy
from typing import Any, Dict, List, Optional

import pandas as pd
import matplotlib.pyplot as plt

from .data_import import (
    clean_sample_names,
    find_cel_files,
    load_expression_matrix,
    load_sample_metadata,
    read_cdf_file,
    read_cel_files,
    read_probe_map,
)
from .normalization import calculate_normalization_stats, rma
from .preprocessing import (
    assign_sample_groups,
    build_pm_matrix,
    calculate_group_colors,
    filter_by_variance,
    filter_low_expression,
    remove_control_probesets,
)
from .statistical_analysis import (
    StatisticalConfig,
    display_analysis_summary,
    extract_degs,
    run_comprehensive_statistical_analysis,
)
from .annotation import annotate_results, load_annotation_table
from .validation import (
    SampleMatchingError,
    generate_sample_matching_diagnostic_report,
    validate_metadata_data_consistency,
)
from .visualization import (
    plot_box_plot,
    plot_density,
    plot_heatmap,
    plot_ma,
    plot_normalization_comparison,
    plot_pca,
    plot_sample_correlation_heatmap,
    plot_volcano,
)
from .export import (
    _safe_file_part,
    create_config_dict_from_notebook_vars,
    export_complete_analysis,
)
from .enrichment import EnrichmentConfig, plot_enrichment_barplot, run_differential_enrichment


PATH_KEYS = [
    "cel_directory",
    "cdf_file",
    "probe_map_file",
    "expression_file",
    "metadata_file",
    "annotation_file",
]

STATISTICAL_CONFIG_KEYS = [
    "statistical_test_method",
    "p_value_threshold",
    "fold_change_threshold",
    "group_column",
    "group_labels",
    "covariates",
    "contrasts",
    "correction_method",
    "use_adjusted_pvalue",
    "enable_pvalue_fallback",
    "ebayes_trend",
    "ebayes_proportion",
    "stdev_coef_lim",
    "sort_by",
    "normalization_method",
]


def load_config_file(path: str) -> Dict[str, Any]:
    """
    Execute a configuration file and return its public variables.

    Names starting with an underscore, modules and functions are left out.
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Configuration file not found: {path}")

    namespace = runpy.run_path(path)
    config = {
        name: value
        for name, value in namespace.items()
        if not name.startswith("_")
        and not isinstance(value, (types.ModuleType, types.FunctionType, type))
    }
    print(f"✓ Loaded configuration: {path} ({len(config)} parameters)")
    return config


def build_statistical_config(config_dict: Dict[str, Any]) -> StatisticalConfig:
    """StatisticalConfig with every matching key of the configuration applied."""
    config = StatisticalConfig()
    for key in STATISTICAL_CONFIG_KEYS:
        if config_dict.get(key) is not None:
            value = config_dict[key]
            if key in ("group_labels", "covariates", "contrasts"):
                value = list(value)
            elif key == "stdev_coef_lim":
                value = tuple(value)
            setattr(config, key, value)
    return config


def _resolve_path(path: Optional[str], base_dir: Optional[str]) -> Optional[str]:
    if not path:
        return None
    if base_dir and not os.path.isabs(path):
        return os.path.join(base_dir, path)
    return path


def _save_figure(fig, path: str, figure_paths: Dict[str, str], name: str) -> None:
    """Close a figure that a plot function already saved, and record its path."""
    if fig is None:
        return
    figure_paths[name] = path
    plt.close(fig)


def _load_arrays(config: Dict[str, Any], base_dir: Optional[str]) -> Dict[str, Any]:
    """Locate the input arrays: CEL files or a pre-normalized matrix."""
    expression_file = _resolve_path(config.get("expression_file"), base_dir)
    if expression_file:
        expression = load_expression_matrix(expression_file)
        return {"expression": expression, "data_samples": list(expression.columns)}

    if config.get("cel_files"):
        cel_paths = [_resolve_path(p, base_dir) for p in config["cel_files"]]
    else:
        cel_directory = _resolve_path(config.get("cel_directory"), base_dir)
        if not cel_directory:
            raise ValueError("Set cel_directory, cel_files or expression_file in the configuration")
        cel_paths = find_cel_files(cel_directory)

    name_map = clean_sample_names(cel_paths, config.get("remove_common_prefix", False))
    return {
        "cel_paths": cel_paths,
        "name_map": name_map,
        "data_samples": [name_map[p] for p in cel_paths],
    }


def _rename_metadata_samples(
    sample_metadata: Dict[str, Dict], cel_paths: List[str], name_map: Dict[str, str]
) -> Dict[str, Dict]:
    """Apply the cleaned CEL sample names to phenodata keyed by file name."""
    stripped = clean_sample_names(cel_paths, remove_common_prefix=False)
    renames = {stripped[p]: name_map[p] for p in cel_paths if stripped[p] != name_map[p]}
    if not renames:
        return sample_metadata
    return {renames.get(name, name): record for name, record in sample_metadata.items()}


def run_complete_analysis(
    config_dict: Dict[str, Any],
    output_dir: str = ".",
    base_dir: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Run the full analysis described by a configuration dictionary.

    Parameters:
    -----------
    config_dict : dict
        Notebook-style configuration; missing keys take the defaults of
        create_config_dict_from_notebook_vars()
    output_dir : str
        Directory for plots, tables and the exported configuration
    base_dir : str, optional
        Directory that relative input paths are resolved against

    Returns:
    --------
    dict
        'expression' (normalized), 'filtered_expression', 'sample_metadata',
        'validation', 'normalization_stats', 'statistics', 'results', 'degs',
        'group_colors', 'figures', 'exported_files' and 'enrichment'
    """
    config = create_config_dict_from_notebook_vars(**config_dict)
    os.makedirs(output_dir, exist_ok=True)
    prefix = os.path.join(output_dir, config["output_prefix"])
    fmt = config["plot_format"]
    group_column = config["group_column"]

    artefacts: Dict[str, Any] = {"figures": {}, "exported_files": {}, "enrichment": {}}
    figures = artefacts["figures"]

    # Step 1: phenodata and arrays
    print("=" * 60)
    print("STEP 1: LOADING SAMPLE METADATA AND ARRAYS")
    print("=" * 60)
    metadata_file = _resolve_path(config.get("metadata_file"), base_dir)
    if not metadata_file:
        raise ValueError("metadata_file must be set in the configuration")
    sample_metadata = load_sample_metadata(metadata_file, config.get("sample_column"))

    arrays = _load_arrays(config, base_dir)
    if "cel_paths" in arrays:
        sample_metadata = _rename_metadata_samples(
            sample_metadata, arrays["cel_paths"], arrays["name_map"]
        )

    # Step 2: sample matching
    print("\n" + "=" * 60)
    print("STEP 2: VALIDATING SAMPLE MATCHING")
    print("=" * 60)
    validation = validate_metadata_data_consistency(
        sample_metadata,
        arrays["data_samples"],
        group_column=group_column,
        group_labels=[str(label) for label in config.get("group_labels") or []],
    )
    artefacts["validation"] = validation
    if not validation["is_valid"]:
        report_file = f"{prefix}_sample_matching_report.txt"
        generate_sample_matching_diagnostic_report(validation, output_file=report_file)
        raise SampleMatchingError(
            "Phenodata and arrays do not match: " + "; ".join(validation["errors"])
        )

    samples = [s for s in arrays["data_samples"] if s in sample_metadata]
    sample_metadata = {s: sample_metadata[s] for s in samples}
    artefacts["sample_metadata"] = sample_metadata

    # Step 3: normalization
    print("\n" + "=" * 60)
    print("STEP 3: NORMALIZATION")
    print("=" * 60)
    raw_pm = None
    if "cel_paths" in arrays:
        sample_paths = [p for p in arrays["cel_paths"] if arrays["name_map"][p] in sample_metadata]
        intensities, chip_info = read_cel_files(
            sample_paths, sample_names=[arrays["name_map"][p] for p in sample_paths]
        )
        cdf_file = _resolve_path(config.get("cdf_file"), base_dir)
        probe_map_file = _resolve_path(config.get("probe_map_file"), base_dir)
        if cdf_file:
            probe_map = read_cdf_file(cdf_file)
        elif probe_map_file:
            probe_map = read_probe_map(probe_map_file, chip_cols=chip_info["cols"])
        else:
            raise ValueError("CEL input needs a cdf_file or probe_map_file")

        expression = rma(
            intensities,
            probe_map,
            background=config["rma_background"],
            normalize=config["rma_normalize"],
        )
        raw_pm, _ = build_pm_matrix(intensities, probe_map)
        normalization_method = "rma"
    else:
        expression = arrays["expression"][samples]
        normalization_method = config["normalization_method"]
        print(f"Using pre-normalized expression ({normalization_method})")

    artefacts["expression"] = expression

    groups = assign_sample_groups(samples, sample_metadata, group_column)
    group_colors = config.get("group_colors") or calculate_group_colors(
        groups, palette=config["color_palette"], group_order=config.get("group_order")
    )
    artefacts["group_colors"] = group_colors

    # Step 4: QC plots
    print("\n" + "=" * 60)
    print("STEP 4: QUALITY CONTROL PLOTS")
    print("=" * 60)
    if raw_pm is not None:
        artefacts["normalization_stats"] = calculate_normalization_stats(
            raw_pm, expression, method=normalization_method
        )
        stats = artefacts["normalization_stats"]
        print(
            f"Spread of sample medians: {stats['original_median_range']:.3f} -> "
            f"{stats['normalized_median_range']:.3f} log2 units"
        )
        path = f"{prefix}_normalization_comparison.{fmt}"
        fig = plot_normalization_comparison(raw_pm, expression, method="RMA", save_path=path, show=False)
        _save_figure(fig, path, figures, "normalization_comparison")
    else:
        artefacts["normalization_stats"] = None

    qc_plots = [
        ("boxplot", plot_box_plot, {"group_order": config.get("group_order")}),
        ("density", plot_density, {}),
        ("pca", plot_pca, {}),
        ("sample_correlation", plot_sample_correlation_heatmap, {}),
    ]
    for name, plot_function, extra in qc_plots:
        path = f"{prefix}_{name}.{fmt}"
        fig = plot_function(
            expression,
            sample_metadata=sample_metadata,
            group_column=group_column,
            group_colors=group_colors,
            save_path=path,
            show=False,
            **extra,
        )
        _save_figure(fig, path, figures, name)

    # Step 5: probeset filtering
    print("\n" + "=" * 60)
    print("STEP 5: PROBESET FILTERING")
    print("=" * 60)
    filtered = expression
    if config["remove_control_probes"]:
        filtered = remove_control_probesets(filtered, prefix=config["control_probe_prefix"])
    if config.get("min_expression") is not None:
        filtered = filter_low_expression(
            filtered,
            threshold=config["min_expression"],
            min_samples=config.get("min_samples_expressed"),
            sample_groups=groups,
        )
    if config.get("variance_filter_quantile"):
        filtered = filter_by_variance(filtered, quantile=config["variance_filter_quantile"])
    if filtered.empty:
        raise ValueError("No probesets left after filtering; relax min_expression or the variance filter")
    artefacts["filtered_expression"] = filtered

    # Step 6: linear model
    print("\n" + "=" * 60)
    print("STEP 6: DIFFERENTIAL EXPRESSION")
    print("=" * 60)
    stat_config = build_statistical_config(config)
    stat_config.normalization_method = normalization_method
    statistics = run_comprehensive_statistical_analysis(filtered, sample_metadata, stat_config)
    artefacts["statistics"] = statistics

    # Step 7: annotation and DEGs
    print("\n" + "=" * 60)
    print("STEP 7: ANNOTATION AND DEG EXTRACTION")
    print("=" * 60)
    results = statistics["results"]
    annotation_file = _resolve_path(config.get("annotation_file"), base_dir)
    if annotation_file:
        annotation = load_annotation_table(annotation_file)
        results = {name: annotate_results(table, annotation) for name, table in results.items()}

    degs = {}
    for name, table in results.items():
        print(f"\n{name}:")
        degs[name] = extract_degs(
            table,
            p_threshold=config["p_value_threshold"],
            lfc_threshold=config["fold_change_threshold"],
            use_adjusted_pvalue=config["use_adjusted_pvalue"],
            enable_pvalue_fallback=config["enable_pvalue_fallback"],
        )
    artefacts["results"] = results
    artefacts["degs"] = degs
    display_analysis_summary(results, stat_config, label_top_n=config["label_top_genes"])

    # Step 8: result plots
    print("\n" + "=" * 60)
    print("STEP 8: RESULT PLOTS")
    print("=" * 60)
    for name, table in results.items():
        safe_name = _safe_file_part(name)
        path = f"{prefix}_{safe_name}_volcano.{fmt}"
        fig = plot_volcano(
            table,
            fc_threshold=config["fold_change_threshold"],
            p_threshold=config["p_value_threshold"],
            title=f"Volcano Plot: {name}",
            label_top_n=config["label_top_genes"],
            use_adjusted_pvalue=config["use_adjusted_pvalue"],
            enable_pvalue_fallback=config["enable_pvalue_fallback"],
            save_path=path,
            show=False,
        )
        _save_figure(fig, path, figures, f"volcano_{name}")

        path = f"{prefix}_{safe_name}_MA.{fmt}"
        fig = plot_ma(
            table,
            fc_threshold=config["fold_change_threshold"],
            p_threshold=config["p_value_threshold"],
            use_adjusted_pvalue=config["use_adjusted_pvalue"],
            enable_pvalue_fallback=config["enable_pvalue_fallback"],
            title=f"MA Plot: {name}",
            save_path=path,
            show=False,
        )
        _save_figure(fig, path, figures, f"ma_{name}")

    top_probes = _top_deg_probes(degs)
    if top_probes:
        row_labels = None
        first_table = next(iter(results.values()))
        if "Gene" in first_table.columns:
            row_labels = first_table["Gene"]
        path = f"{prefix}_top_DEG_heatmap.{fmt}"
        fig = plot_heatmap(
            filtered,
            top_probes,
            sample_metadata=sample_metadata,
            group_column=group_column,
            group_colors=group_colors,
            row_labels=row_labels,
            top_n=config["heatmap_top_n"],
            save_path=path,
            show=False,
        )
        _save_figure(fig, path, figures, "heatmap")
    else:
        print("No DEGs - skipping heatmap")

    # Step 9: export
    if config["export_results"]:
        print("\n" + "=" * 60)
        print("STEP 9: EXPORT")
        print("=" * 60)
        export_config = dict(config)
        export_config["group_colors"] = group_colors
        # Exported config lands in output_dir, so relative inputs must not stay relative
        for key in PATH_KEYS:
            if export_config.get(key):
                export_config[key] = os.path.abspath(_resolve_path(export_config[key], base_dir))
        if export_config.get("cel_files"):
            export_config["cel_files"] = [
                os.path.abspath(_resolve_path(path, base_dir)) for path in export_config["cel_files"]
            ]
        artefacts["exported_files"] = export_complete_analysis(
            expression=expression,
            sample_metadata=sample_metadata,
            config_dict=export_config,
            results_by_contrast=results,
            degs_by_contrast=degs,
            output_prefix=prefix,
        )

    # Step 10: enrichment
    if config["run_enrichment"]:
        print("\n" + "=" * 60)
        print("STEP 10: ENRICHMENT ANALYSIS")
        print("=" * 60)
        enrichment_config = EnrichmentConfig(enrichr_libraries=list(config["enrichr_libraries"]))
        for name, contrast_degs in degs.items():
            print(f"\n--- {name} ---")
            enrichment = run_differential_enrichment(contrast_degs, config=enrichment_config)
            artefacts["enrichment"][name] = enrichment
            for direction, table in enrichment.items():
                if table.empty:
                    continue
                base = f"{prefix}_{_safe_file_part(name)}_enrichment_{direction}"
                table.to_csv(f"{base}.csv", index=False)
                fig = plot_enrichment_barplot(
                    table, title=f"{name}: {direction}", save_path=f"{base}.{fmt}"
                )
                _save_figure(fig, f"{base}.{fmt}", figures, f"enrichment_{name}_{direction}")

    print("\n✓ Analysis complete!")
    return artefacts


def _top_deg_probes(degs: Dict[str, pd.DataFrame]) -> List[str]:
    """DEG probesets across contrasts, most significant first."""
    frames = [
        table[[table.attrs.get("pvalue_column", "adj.P.Val")]].set_axis(["p"], axis=1)
        for table in degs.values()
        if not table.empty
    ]
    if not frames:
        return []
    best = pd.concat(frames).groupby(level=0)["p"].min().sort_values(kind="stable")
    return list(best.index)
