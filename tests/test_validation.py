"""
Tests for microarray_toolkit.validation module
"""

import numpy as np
import pandas as pd
import pytest

from microarray_toolkit.validation import (
    DesignMatrixError,
    SampleMatchingError,
    generate_sample_matching_diagnostic_report,
    validate_design,
    validate_metadata_data_consistency,
)


class TestMetadataConsistency:
    """Test phenodata / array matching"""

    def test_all_samples_match(self, sample_metadata):
        results = validate_metadata_data_consistency(
            sample_metadata,
            list(sample_metadata),
            group_column="Group",
            group_labels=["Control", "Treated"],
        )

        assert results["is_valid"]
        assert results["errors"] == []
        assert results["diagnostics"]["samples_found_in_data"] == 6
        assert results["diagnostics"]["group_counts"] == {"Control": 3, "Treated": 3}

    def test_missing_arrays(self, sample_metadata):
        arrays = [s for s in sample_metadata if s != "Trt_3"]

        results = validate_metadata_data_consistency(sample_metadata, arrays, verbose=False)

        assert not results["is_valid"]
        assert results["diagnostics"]["missing_samples"] == ["Trt_3"]
        assert "no matching array" in results["errors"][0]

    def test_extra_arrays_are_warnings(self, sample_metadata):
        arrays = list(sample_metadata) + ["Extra_1"]

        results = validate_metadata_data_consistency(sample_metadata, arrays, verbose=False)

        assert results["is_valid"]
        assert results["diagnostics"]["unmatched_data_samples"] == ["Extra_1"]
        assert len(results["warnings"]) == 1

    def test_no_overlap(self, sample_metadata):
        results = validate_metadata_data_consistency(
            sample_metadata, ["GSM1", "GSM2"], verbose=False
        )

        assert not results["is_valid"]
        assert "No phenodata samples match" in results["errors"][0]

    def test_missing_group(self, sample_metadata):
        results = validate_metadata_data_consistency(
            sample_metadata,
            list(sample_metadata),
            group_column="Group",
            group_labels=["Control", "Placebo"],
            verbose=False,
        )

        assert not results["is_valid"]
        assert any("Placebo" in error for error in results["errors"])

    def test_numeric_group_column_with_missing_value(self):
        sample_metadata = {
            "A": {"Dose": 0.0},
            "B": {"Dose": 0.0},
            "C": {"Dose": 80.0},
            "D": {"Dose": 80.0},
            "E": {"Dose": np.nan},
        }

        results = validate_metadata_data_consistency(
            sample_metadata,
            list(sample_metadata),
            group_column="Dose",
            group_labels=["0", "80"],
            verbose=False,
        )

        assert results["is_valid"]
        assert results["diagnostics"]["group_counts"] == {"0": 2, "80": 2, "Unknown": 1}

    def test_float_group_labels_match_integer_values(self):
        sample_metadata = {"A": {"Dose": "12"}, "B": {"Dose": "12"}, "C": {"Dose": 3}, "D": {"Dose": 3}}

        results = validate_metadata_data_consistency(
            sample_metadata,
            list(sample_metadata),
            group_column="Dose",
            group_labels=[12.0, "3.0"],
            verbose=False,
        )

        assert results["is_valid"]
        assert results["errors"] == []

    def test_missing_group_column(self, sample_metadata):
        results = validate_metadata_data_consistency(
            sample_metadata, list(sample_metadata), group_column="Condition", verbose=False
        )

        assert not results["is_valid"]

    def test_single_replicate_warning(self, sample_metadata):
        arrays = ["Ctrl_1", "Ctrl_2", "Trt_1"]
        metadata = {s: sample_metadata[s] for s in arrays}

        results = validate_metadata_data_consistency(
            metadata, arrays, group_column="Group", group_labels=["Control", "Treated"], verbose=False
        )

        assert results["is_valid"]
        assert any("only 1 array" in warning for warning in results["warnings"])


class TestValidateDesign:
    """Test design matrix checks"""

    @pytest.fixture
    def design(self):
        design = pd.DataFrame(
            {"Control": [1.0, 1.0, 1.0, 0.0, 0.0, 0.0], "Treated": [0.0, 0.0, 0.0, 1.0, 1.0, 1.0]},
            index=pd.Index([f"S{i}" for i in range(6)], name="Sample"),
        )
        design.attrs["group_columns"] = ["Control", "Treated"]
        return design

    def test_valid_design(self, design):
        contrasts = pd.DataFrame({"Treated-Control": [-1.0, 1.0]}, index=["Control", "Treated"])

        info = validate_design(design, contrasts)

        assert info["rank"] == 2
        assert info["df_residual"] == 4
        assert info["replicates"] == {"Control": 3, "Treated": 3}

    def test_confounded_design(self, design):
        design["Batch"] = design["Treated"]

        with pytest.raises(DesignMatrixError, match="full column rank"):
            validate_design(design)

    def test_no_residual_df(self):
        design = pd.DataFrame({"A": [1.0, 0.0], "B": [0.0, 1.0]})

        with pytest.raises(DesignMatrixError, match="No residual degrees of freedom"):
            validate_design(design)

    def test_min_replicates(self, design):
        with pytest.raises(DesignMatrixError, match="fewer than 4"):
            validate_design(design, min_replicates=4)

    def test_bad_contrasts(self, design):
        unknown = pd.DataFrame({"X-Control": [1.0, -1.0]}, index=["X", "Control"])
        empty = pd.DataFrame({"Nothing": [0.0, 0.0]}, index=["Control", "Treated"])

        with pytest.raises(DesignMatrixError, match="not in design"):
            validate_design(design, unknown)
        with pytest.raises(DesignMatrixError, match="all-zero"):
            validate_design(design, empty)


class TestDiagnosticReport:
    """Test sample matching report generation"""

    def test_report_written(self, sample_metadata, tmp_path):
        results = validate_metadata_data_consistency(
            sample_metadata, ["Ctrl_1", "Ctrl_2", "Other"], group_column="Group", verbose=False
        )
        output_file = tmp_path / "report.txt"

        report = generate_sample_matching_diagnostic_report(results, str(output_file))

        assert output_file.read_text(encoding="utf-8") == report
        assert "SAMPLE MATCHING DIAGNOSTIC REPORT" in report
        assert "MISSING ARRAYS" in report
        assert "Trt_3" in report
        assert "ARRAYS WITHOUT PHENODATA" in report
        assert "- Other" in report

    def test_exceptions_carry_messages(self):
        with pytest.raises(SampleMatchingError, match="mismatch"):
            raise SampleMatchingError("mismatch")
        assert issubclass(DesignMatrixError, Exception)
