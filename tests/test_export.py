"""
Tests for export module
"""

import os

import pandas as pd
import pytest

from microarray_toolkit.export import (
    _safe_file_part,
    create_config_dict_from_notebook_vars,
    export_analysis_results,
    export_complete_analysis,
    export_deg_summary,
    export_results,
    export_timestamped_config,
)
from microarray_toolkit.pipeline import load_config_file


@pytest.fixture
def degs_by_contrast(differential_results):
    degs = differential_results[differential_results["adj.P.Val"] < 0.05].copy()
    degs["Regulation"] = ["Up" if fc > 0 else "Down" for fc in degs["logFC"]]
    degs.attrs["pvalue_column"] = "adj.P.Val"
    return {"Treated-Control": degs}


class TestExportAnalysisResults:
    """Test expression, metadata and per-contrast table export"""

    def test_files_written(self, expression_data, sample_metadata, differential_results, degs_by_contrast, tmp_path):
        output_prefix = os.path.join(tmp_path, "test_export")

        exported_files = export_analysis_results(
            expression_data,
            sample_metadata,
            results_by_contrast={"Treated-Control": differential_results},
            degs_by_contrast=degs_by_contrast,
            output_prefix=output_prefix,
        )

        assert set(exported_files) == {
            "normalized_expression",
            "sample_metadata",
            "results_Treated-Control",
            "degs_Treated-Control",
        }
        for path in exported_files.values():
            assert os.path.exists(path)
        assert exported_files["results_Treated-Control"].endswith("test_export_Treated-Control_results.csv")

        expression = pd.read_csv(exported_files["normalized_expression"], index_col=0)
        assert expression.index.name == "Probe_ID"
        assert expression.shape == expression_data.shape

        results = pd.read_csv(exported_files["results_Treated-Control"], index_col="Probe_ID")
        assert list(results.columns) == list(differential_results.columns)
        assert len(results) == len(differential_results)

    def test_sample_metadata_has_column_header(self, expression_data, sample_metadata, tmp_path):
        exported_files = export_analysis_results(
            expression_data, sample_metadata, output_prefix=os.path.join(tmp_path, "meta")
        )

        with open(exported_files["sample_metadata"]) as f:
            header_line = f.readline().strip()

        assert header_line.startswith("Sample_ID,")
        exported_metadata = pd.read_csv(exported_files["sample_metadata"], index_col=0)
        assert exported_metadata.loc["Trt_2", "Group"] == "Treated"

    def test_safe_file_part(self):
        assert _safe_file_part("(High+Low)/2 - Control") == "High_Low_2_-_Control"
        assert _safe_file_part("///") == "contrast"

    def test_export_significant_only(self, differential_results, tmp_path):
        output_file = tmp_path / "significant.csv"

        export_results(differential_results, str(output_file), include_all=False)

        exported = pd.read_csv(output_file, index_col="Probe_ID")
        assert len(exported) == (differential_results["adj.P.Val"] < 0.05).sum()


class TestDegSummary:
    """Test per-contrast DEG summary"""

    def test_summary_columns(self, degs_by_contrast, tmp_path):
        empty = degs_by_contrast["Treated-Control"].iloc[:0]

        summary_file = export_deg_summary(
            {**degs_by_contrast, "Other": empty}, output_prefix=os.path.join(tmp_path, "run")
        )

        summary = pd.read_csv(summary_file)
        assert list(summary.columns) == ["Contrast", "N_DEGs", "N_Up", "N_Down", "P_Value_Column", "Top_Genes"]
        row = summary.iloc[0]
        assert row["Contrast"] == "Treated-Control"
        assert row["N_DEGs"] == 10
        assert row["N_Up"] == 5
        assert row["N_Down"] == 5
        assert row["P_Value_Column"] == "adj.P.Val"
        assert summary.iloc[1]["N_DEGs"] == 0


class TestTimestampedConfig:
    """Test reloadable configuration export"""

    def test_defaults(self):
        config = create_config_dict_from_notebook_vars(group_labels=["Control", "Treated"], custom_flag=True)

        assert config["normalization_method"] == "rma"
        assert config["correction_method"] == "fdr_bh"
        assert config["fold_change_threshold"] == 1.0
        assert config["group_labels"] == ["Control", "Treated"]
        assert config["custom_flag"] is True

    def test_sections_written(self, working_directory):
        config = create_config_dict_from_notebook_vars(contrasts=["Treated-Control"], custom_flag=1)

        config_file = export_timestamped_config(
            config,
            output_prefix="run",
            analysis_description="Unit test",
            computed_values={"group_colors": {"Treated": "#1f77b4"}, "Total samples": 6},
        )

        assert config_file.startswith("run_config_")
        text = (working_directory / config_file).read_text(encoding="utf-8")
        assert "# Analysis: Unit test" in text
        assert "# 2. NORMALIZATION STRATEGY" in text
        assert "# 10. ADDITIONAL PARAMETERS" in text
        assert "contrasts = ['Treated-Control']" in text
        assert "#   Treated: #1f77b4" in text
        assert "# Total samples: 6" in text

    def test_round_trip(self, working_directory):
        config = create_config_dict_from_notebook_vars(
            group_labels=["Control", "Treated"], stdev_coef_lim=(0.2, 3.0), variance_filter_quantile=0.25
        )

        config_file = export_timestamped_config(config, output_prefix="run")
        reloaded = load_config_file(config_file)

        assert reloaded == config


class TestExportCompleteAnalysis:
    """Test the combined export"""

    def test_complete_export(self, expression_data, sample_metadata, differential_results, degs_by_contrast, working_directory):
        config = create_config_dict_from_notebook_vars(group_colors={"Control": "#ff7f0e"})

        exported_files = export_complete_analysis(
            expression_data,
            sample_metadata,
            config,
            results_by_contrast={"Treated-Control": differential_results},
            degs_by_contrast=degs_by_contrast,
            output_prefix="complete",
        )

        assert "deg_summary" in exported_files
        assert "configuration" in exported_files
        assert os.path.exists(exported_files["configuration"])
        text = open(exported_files["configuration"], encoding="utf-8").read()
        assert f"# Total probesets analyzed: {len(expression_data)}" in text
        assert "#   Control: #ff7f0e" in text

    def test_without_degs(self, expression_data, sample_metadata, working_directory):
        exported_files = export_complete_analysis(
            expression_data, sample_metadata, {}, output_prefix="bare"
        )

        assert "deg_summary" not in exported_files
        assert set(exported_files) == {"normalized_expression", "sample_metadata", "configuration"}
