# =============================================================================
# MICROARRAY ANALYSIS CONFIGURATION
# Generated: 2025-09-15 14:12:03
# Analysis: Treatment vs control, HG-U133A arrays
# =============================================================================

# =============================================================================
# 1. INPUT FILES AND PATHS
# =============================================================================
cel_directory = 'cel'
cel_files = None
cdf_file = 'HG-U133A.cdf'
probe_map_file = None
expression_file = None
metadata_file = 'phenodata.csv'
sample_column = 'FileName'
annotation_file = 'HG-U133A.na36.annot.csv'
remove_common_prefix = True

# =============================================================================
# 2. NORMALIZATION STRATEGY
# =============================================================================
normalization_method = 'rma'
rma_background = True
rma_normalize = True

# =============================================================================
# 3. PROBESET FILTERING
# =============================================================================
remove_control_probes = True
control_probe_prefix = 'AFFX'
min_expression = 4.0
min_samples_expressed = None
variance_filter_quantile = 0.0

# =============================================================================
# 4. EXPERIMENTAL DESIGN CONFIGURATION
# =============================================================================
group_column = 'Treatment'
group_labels = ['Vehicle', 'LowDose', 'HighDose']
covariates = ['Batch']
contrasts = ['LowDose-Vehicle', 'HighDose-Vehicle', 'DoseTrend=HighDose-LowDose']

# =============================================================================
# 5. STATISTICAL ANALYSIS STRATEGY
# =============================================================================
statistical_test_method = 'limma'
correction_method = 'fdr_bh'
ebayes_trend = True
ebayes_proportion = 0.01
stdev_coef_lim = (0.1, 4.0)
sort_by = 'B'

# =============================================================================
# 6. SIGNIFICANCE THRESHOLDS
# =============================================================================
p_value_threshold = 0.05
fold_change_threshold = 1.0
use_adjusted_pvalue = 'adjusted'
enable_pvalue_fallback = True

# =============================================================================
# 7. VISUALIZATION SETTINGS
# =============================================================================
color_palette = 'tab10'
group_order = ['HighDose', 'LowDose', 'Vehicle']
group_colors = None
label_top_genes = 10
heatmap_top_n = 50
plot_format = 'png'

# =============================================================================
# 8. ENRICHMENT ANALYSIS
# =============================================================================
run_enrichment = True
enrichr_libraries = ['GO_Biological_Process_2023', 'KEGG_2021_Human', 'Reactome_2022']

# =============================================================================
# 9. OUTPUT AND EXPORT SETTINGS
# =============================================================================
export_results = True
output_prefix = 'U133A_treatment'

# =============================================================================
# COMPUTED VALUES (for reference)
# =============================================================================
# Total probesets analyzed: 22283
# Total samples: 12
# Group colors assigned:
#   HighDose: #1f77b4
#   LowDose: #ff7f0e
#   Vehicle: #2ca02c
# Contrasts: ['LowDose-Vehicle', 'HighDose-Vehicle', 'DoseTrend']
