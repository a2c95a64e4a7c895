"""
Microarray Analysis Toolkit
===========================

A Python library for differential expression analysis of Affymetrix-style
expression microarrays. It covers the complete workflow from raw CEL files
through RMA normalization, linear models with empirical Bayes moderation,
gene annotation, plots and reproducible export.

QUICK START EXAMPLE:
-------------------
    import microarray_toolkit as mtk

    # 1. Load arrays, chip layout and phenodata
    intensities, chip_info = mtk.read_cel_files(mtk.find_cel_files('cel/'))
    probe_map = mtk.read_cdf_file('HG-U133A.cdf')
    sample_metadata = mtk.load_sample_metadata('phenodata.csv')

    # 2. RMA: background correction, quantile normalization, median polish
    expression = mtk.rma(intensities, probe_map)

    # 3. Linear model with contrasts
    config = mtk.StatisticalConfig()
    config.group_labels = ['Control', 'Treated']
    config.contrasts = ['Treated-Control']
    analysis = mtk.run_comprehensive_statistical_analysis(expression, sample_metadata, config)

    # 4. DEGs, plots and export
    results = analysis['results']['Treated-Control']
    degs = mtk.extract_degs(results)
    mtk.plot_volcano(results)
    mtk.export_complete_analysis(expression, sample_metadata, {}, analysis['results'])

Or run everything from a configuration file:

    python -m microarray_toolkit analysis_config.py --output-dir results

MODULE OVERVIEW:
===============

data_import
    Purpose: Read CEL files (text and binary XDA), CDF files, probe maps and phenodata
    Key functions: read_cel_files(), read_cdf_file(), load_sample_metadata()
    Use when: Starting an analysis from raw arrays or a normalized matrix

preprocessing
    Purpose: PM probe selection, probeset filtering, sample groups and colors
    Key functions: build_pm_matrix(), filter_low_expression(), calculate_group_colors()
    Use when: Preparing expression for modelling and plotting

normalization
    Purpose: RMA and its building blocks
    Key functions: rma(), rma_background_correct(), quantile_normalize(), median_polish()
    Use when: Turning raw probe intensities into log2 probeset expression

statistical_analysis
    Purpose: Linear models, contrasts, empirical Bayes and result tables
    Key functions: lm_fit(), contrasts_fit(), e_bayes(), top_table(),
                   run_comprehensive_statistical_analysis()
    Use when: Testing for differential expression between groups

annotation
    Purpose: Platform annotation (NetAffx / GEO GPL) and gene-level collapsing
    Key functions: load_annotation_table(), annotate_results()
    Use when: Attaching gene symbols to probeset results

visualization
    Purpose: QC and result plots
    Key functions: plot_box_plot(), plot_pca(), plot_volcano(), plot_heatmap()

validation
    Purpose: Phenodata/array matching and design checks
    Key functions: validate_metadata_data_consistency(), validate_design()

enrichment
    Purpose: Enrichr over-representation analysis of DEG lists
    Key functions: run_differential_enrichment()

export
    Purpose: Result tables and timestamped, reloadable configuration files
    Key functions: export_complete_analysis(), export_timestamped_config()

pipeline
    Purpose: The whole workflow driven by one configuration
    Key functions: run_complete_analysis(), load_config_file()

ERROR HANDLING:
==============
- SampleMatchingError: phenodata rows and CEL files do not match
- DesignMatrixError: the design or contrasts cannot be fitted
- ValueError: malformed files or invalid parameters
"""

# =============================================================================
# MODULE IMPORTS - Core functionality organized by analysis stage
# =============================================================================

from . import data_import         # CEL/CDF/phenodata loading
from . import preprocessing       # Probe selection and filtering
from . import normalization       # RMA
from . import statistical_analysis # Linear models and empirical Bayes
from . import annotation          # Gene annotation
from . import visualization       # Plotting
from . import validation          # Sample matching and design checks
from . import enrichment          # Enrichr analysis
from . import export              # Results export and configuration management
from . import pipeline            # End-to-end analysis

__version__ = "1.0.0"

# =============================================================================
# CONVENIENCE IMPORTS - Most commonly used functions available at top level
# =============================================================================

from .data_import import (
    read_cel_file,
    read_cel_files,
    find_cel_files,
    read_cdf_file,
    read_probe_map,
    load_sample_metadata,
    load_expression_matrix,
    clean_sample_names,
)

from .preprocessing import (
    build_pm_matrix,
    remove_control_probesets,
    filter_low_expression,
    filter_by_variance,
    assign_sample_groups,
    calculate_group_colors,
)

from .normalization import (
    rma,
    rma_background_correct,
    quantile_normalize,
    median_polish,
    summarize_probesets,
    log_transform,
    calculate_normalization_stats,
)

from .statistical_analysis import (
    StatisticalConfig,
    LinearModelFit,
    build_design_matrix,
    make_contrasts,
    lm_fit,
    contrasts_fit,
    e_bayes,
    top_table,
    decide_tests,
    summarize_decide_tests,
    extract_degs,
    run_comprehensive_statistical_analysis,
    display_analysis_summary,
)

from .annotation import (
    load_annotation_table,
    annotate_results,
    collapse_probes_to_genes,
)

from .validation import (
    validate_metadata_data_consistency,
    validate_design,
    generate_sample_matching_diagnostic_report,
    SampleMatchingError,
    DesignMatrixError,
)

from .export import (
    export_complete_analysis,
    export_analysis_results,
    export_timestamped_config,
    create_config_dict_from_notebook_vars,
    export_deg_summary,
    export_results,
)

from .visualization import (
    plot_box_plot,
    plot_density,
    plot_normalization_comparison,
    plot_sample_correlation_heatmap,
    plot_pca,
    plot_volcano,
    plot_ma,
    plot_heatmap,
)

from .enrichment import (
    EnrichmentConfig,
    run_enrichment_analysis,
    run_differential_enrichment,
    plot_enrichment_barplot,
)

from .pipeline import (
    load_config_file,
    run_complete_analysis,
)

# =============================================================================
# PUBLIC API - All functions available for import
# =============================================================================

__all__ = [
    # MODULES
    "data_import",
    "preprocessing",
    "normalization",
    "statistical_analysis",
    "annotation",
    "visualization",
    "validation",
    "enrichment",
    "export",
    "pipeline",

    # DATA LOADING
    "read_cel_file",
    "read_cel_files",
    "find_cel_files",
    "read_cdf_file",
    "read_probe_map",
    "load_sample_metadata",
    "load_expression_matrix",
    "clean_sample_names",

    # PREPROCESSING
    "build_pm_matrix",
    "remove_control_probesets",
    "filter_low_expression",
    "filter_by_variance",
    "assign_sample_groups",
    "calculate_group_colors",

    # NORMALIZATION
    "rma",                      # MAIN FUNCTION: background + quantile + median polish
    "rma_background_correct",
    "quantile_normalize",
    "median_polish",
    "summarize_probesets",
    "log_transform",
    "calculate_normalization_stats",

    # STATISTICAL ANALYSIS
    "StatisticalConfig",
    "LinearModelFit",
    "build_design_matrix",
    "make_contrasts",
    "lm_fit",
    "contrasts_fit",
    "e_bayes",
    "top_table",
    "decide_tests",
    "summarize_decide_tests",
    "extract_degs",
    "run_comprehensive_statistical_analysis", # MAIN FUNCTION: design to result tables
    "display_analysis_summary",

    # ANNOTATION
    "load_annotation_table",
    "annotate_results",
    "collapse_probes_to_genes",

    # VALIDATION
    "validate_metadata_data_consistency",
    "validate_design",
    "generate_sample_matching_diagnostic_report",
    "SampleMatchingError",
    "DesignMatrixError",

    # EXPORT
    "export_complete_analysis",
    "export_analysis_results",
    "export_timestamped_config",
    "create_config_dict_from_notebook_vars",
    "export_deg_summary",
    "export_results",

    # VISUALIZATION
    "plot_box_plot",
    "plot_density",
    "plot_normalization_comparison",
    "plot_sample_correlation_heatmap",
    "plot_pca",
    "plot_volcano",
    "plot_ma",
    "plot_heatmap",

    # ENRICHMENT
    "EnrichmentConfig",
    "run_enrichment_analysis",
    "run_differential_enrichment",
    "plot_enrichment_barplot",

    # PIPELINE
    "load_config_file",
    "run_complete_analysis",
]
