"""
Tests for the end-to-end pipeline and the command line entry point
"""

import os

import matplotlib

matplotlib.use("Agg")

import pandas as pd
import pytest

from microarray_toolkit.__main__ import main
from microarray_toolkit.pipeline import (
    build_statistical_config,
    load_config_file,
    run_complete_analysis,
)
from microarray_toolkit.validation import SampleMatchingError

from conftest import CONTROL_PROBESETS, GENE_PROBESETS, SAMPLE_GROUPS


@pytest.fixture
def cel_config(cel_directory, cdf_file, phenodata_file, annotation_file):
    return {
        "cel_directory": str(cel_directory),
        "cdf_file": str(cdf_file),
        "metadata_file": str(phenodata_file),
        "annotation_file": str(annotation_file),
        "min_expression": None,
        "group_labels": ["Control", "Treated"],
        "contrasts": ["Treated-Control"],
        "output_prefix": "cel_run",
    }


class TestStatisticalConfigFromDict:
    """Test mapping of configuration variables onto StatisticalConfig"""

    def test_keys_applied(self):
        config = build_statistical_config(
            {
                "group_labels": ("A", "B"),
                "contrasts": ["B-A"],
                "stdev_coef_lim": [0.2, 3.0],
                "ebayes_trend": True,
                "p_value_threshold": None,
                "unrelated": 5,
            }
        )

        assert config.group_labels == ["A", "B"]
        assert config.contrasts == ["B-A"]
        assert config.stdev_coef_lim == (0.2, 3.0)
        assert config.ebayes_trend is True
        # None keeps the default
        assert config.p_value_threshold == 0.05
        assert not hasattr(config, "unrelated")

    def test_load_config_file(self, tmp_path):
        path = tmp_path / "config.py"
        path.write_text("import os\n_private = 1\ngroup_labels = ['A', 'B']\nmin_expression = 3.5\n")

        config = load_config_file(str(path))

        assert config == {"group_labels": ["A", "B"], "min_expression": 3.5}

    def test_missing_config_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config_file(str(tmp_path / "missing.py"))


class TestRunCompleteAnalysis:
    """Test the full workflow on synthetic arrays"""

    def test_from_cel_files(self, cel_config, tmp_path):
        output_dir = tmp_path / "results"

        artefacts = run_complete_analysis(cel_config, output_dir=str(output_dir))

        expression = artefacts["expression"]
        assert list(expression.columns) == list(SAMPLE_GROUPS)
        assert set(expression.index) == set(CONTROL_PROBESETS + GENE_PROBESETS)

        # Control probesets are filtered before modelling
        assert set(artefacts["filtered_expression"].index) == set(GENE_PROBESETS)

        results = artefacts["results"]["Treated-Control"]
        assert len(results) == len(GENE_PROBESETS)
        assert "Gene" in results.columns
        assert results.loc[GENE_PROBESETS[4], "Gene"] == "GENE4"
        assert results.loc[GENE_PROBESETS[0], "logFC"] > 0

        assert artefacts["normalization_stats"] is not None
        for name in ["normalization_comparison", "boxplot", "density", "pca", "sample_correlation"]:
            assert os.path.exists(artefacts["figures"][name])
        assert os.path.exists(artefacts["figures"]["volcano_Treated-Control"])

        exported = artefacts["exported_files"]
        assert os.path.exists(exported["results_Treated-Control"])
        assert os.path.exists(exported["configuration"])
        assert os.path.dirname(exported["configuration"]) == str(output_dir)
        assert artefacts["enrichment"] == {}

    def test_from_expression_matrix(self, expression_data, phenodata_file, tmp_path):
        expression_file = tmp_path / "expression.csv"
        expression_data.to_csv(expression_file)
        config = {
            "expression_file": "expression.csv",
            "metadata_file": "phenodata.csv",
            "normalization_method": "gcrma",
            "group_labels": ["Control", "Treated"],
            "contrasts": ["Treated-Control"],
            "export_results": False,
        }

        artefacts = run_complete_analysis(config, output_dir=str(tmp_path / "out"), base_dir=str(tmp_path))

        assert artefacts["normalization_stats"] is None
        assert artefacts["exported_files"] == {}
        assert artefacts["statistics"]["fit"] is not None

        degs = artefacts["degs"]["Treated-Control"]
        up = set(degs.index[degs["Regulation"] == "Up"])
        down = set(degs.index[degs["Regulation"] == "Down"])
        assert {f"{100000 + i}_at" for i in range(10)} <= up
        assert {f"{100000 + i}_at" for i in range(10, 20)} <= down
        assert "heatmap" in artefacts["figures"]

    def test_sample_mismatch_writes_report(self, cel_config, tmp_path):
        phenodata = pd.read_csv(cel_config["metadata_file"])
        extra = pd.DataFrame([{"FileName": "Trt_4.CEL", "Group": "Treated", "Batch": "B2"}])
        phenodata_path = tmp_path / "phenodata_extra.csv"
        pd.concat([phenodata, extra]).to_csv(phenodata_path, index=False)
        cel_config["metadata_file"] = str(phenodata_path)
        output_dir = tmp_path / "mismatch"

        with pytest.raises(SampleMatchingError, match="Trt_4"):
            run_complete_analysis(cel_config, output_dir=str(output_dir))

        report = output_dir / "cel_run_sample_matching_report.txt"
        assert report.exists()
        assert "Trt_4" in report.read_text(encoding="utf-8")

    def test_missing_metadata_file_setting(self, cel_config, tmp_path):
        cel_config["metadata_file"] = ""

        with pytest.raises(ValueError, match="metadata_file"):
            run_complete_analysis(cel_config, output_dir=str(tmp_path / "out"))

    def test_cel_input_needs_chip_layout(self, cel_config, tmp_path):
        cel_config["cdf_file"] = None

        with pytest.raises(ValueError, match="cdf_file or probe_map_file"):
            run_complete_analysis(cel_config, output_dir=str(tmp_path / "out"))


class TestCommandLine:
    """Test python -m microarray_toolkit"""

    def test_main_with_relative_paths(self, cel_directory, cdf_file, phenodata_file, tmp_path):
        config_path = tmp_path / "analysis_config.py"
        config_path.write_text(
            "cel_directory = 'cel'\n"
            f"cdf_file = '{cdf_file.name}'\n"
            f"metadata_file = '{phenodata_file.name}'\n"
            "group_labels = ['Control', 'Treated']\n"
            "contrasts = ['Treated-Control']\n"
            "output_prefix = 'cli'\n"
        )
        output_dir = tmp_path / "cli_out"

        assert main([str(config_path), "--output-dir", str(output_dir)]) == 0

        assert (output_dir / "cli_Treated-Control_results.csv").exists()
        assert list(output_dir.glob("cli_config_*.py"))

    def test_exported_config_reruns_from_output_dir(
        self, cel_directory, cdf_file, phenodata_file, tmp_path
    ):
        config_path = tmp_path / "analysis_config.py"
        config_path.write_text(
            "cel_directory = 'cel'\n"
            f"cdf_file = '{cdf_file.name}'\n"
            f"metadata_file = '{phenodata_file.name}'\n"
            "group_labels = ['Control', 'Treated']\n"
            "contrasts = ['Treated-Control']\n"
            "output_prefix = 'cli'\n"
        )
        first_dir = tmp_path / "run1"
        assert main([str(config_path), "--output-dir", str(first_dir)]) == 0

        exported = sorted(first_dir.glob("cli_config_*.py"))[0]
        replayed = load_config_file(str(exported))
        assert os.path.isabs(replayed["cel_directory"])
        assert os.path.isabs(replayed["metadata_file"])

        second_dir = tmp_path / "run2"
        assert main([str(exported), "--output-dir", str(second_dir)]) == 0
        assert (second_dir / "cli_Treated-Control_results.csv").exists()
