"""
Tests for microarray_toolkit.data_import module
"""

import gzip
import struct

import numpy as np
import pandas as pd
import pytest

from microarray_toolkit.data_import import (
    CelData,
    clean_sample_names,
    find_cel_files,
    load_expression_matrix,
    load_sample_metadata,
    read_cdf_file,
    read_cel_file,
    read_cel_files,
    read_probe_map,
)

from conftest import CHIP_COLS, CHIP_ROWS, write_binary_cel, write_text_cel, write_text_cdf


@pytest.fixture
def chip_values():
    rng = np.random.default_rng(1)
    return np.round(rng.uniform(50, 5000, CHIP_COLS * CHIP_ROWS), 1)


class TestReadCelFile:
    """Test single CEL file parsing"""

    def test_text_cel(self, tmp_path, chip_values):
        path = write_text_cel(tmp_path / "a.CEL", chip_values, masked=[3, 25], outliers=[7])

        cel = read_cel_file(str(path))

        assert isinstance(cel, CelData)
        assert cel.version == 3
        assert (cel.rows, cel.cols) == (CHIP_ROWS, CHIP_COLS)
        assert cel.n_cells == CHIP_ROWS * CHIP_COLS
        np.testing.assert_allclose(cel.intensities, chip_values, atol=0.05)
        assert cel.algorithm == "Percentile"
        assert list(cel.masked) == [3, 25]
        assert list(cel.outliers) == [7]
        assert (cel.npixels == 16).all()

    def test_binary_cel(self, tmp_path, chip_values):
        path = write_binary_cel(tmp_path / "b.CEL", chip_values, masked=[41], outliers=[2, 399])

        cel = read_cel_file(str(path))

        assert cel.version == 4
        assert (cel.rows, cel.cols) == (CHIP_ROWS, CHIP_COLS)
        np.testing.assert_allclose(cel.intensities, chip_values, rtol=1e-6)
        assert cel.header["Cols"] == str(CHIP_COLS)
        assert cel.algorithm == "Percentile"
        assert list(cel.masked) == [41]
        assert list(cel.outliers) == [2, 399]

    def test_text_and_binary_agree(self, tmp_path, chip_values):
        text = read_cel_file(str(write_text_cel(tmp_path / "t.CEL", chip_values)))
        binary = read_cel_file(str(write_binary_cel(tmp_path / "b.CEL", chip_values)))

        np.testing.assert_allclose(text.intensities, binary.intensities, rtol=1e-5)

    def test_gzipped_cel(self, tmp_path, chip_values):
        plain = write_binary_cel(tmp_path / "c.CEL", chip_values)
        gz_path = tmp_path / "c.CEL.gz"
        with open(plain, "rb") as src, gzip.open(gz_path, "wb") as dst:
            dst.write(src.read())

        cel = read_cel_file(str(gz_path))
        np.testing.assert_allclose(cel.intensities, chip_values, rtol=1e-6)

    def test_truncated_text_cel(self, tmp_path, chip_values):
        path = write_text_cel(tmp_path / "t.CEL", chip_values)
        lines = path.read_text().splitlines()
        cut = lines.index("[MASKS]") - 50
        path.write_text("\n".join(lines[:cut]) + "\n")

        with pytest.raises(ValueError, match="Truncated"):
            read_cel_file(str(path))

    def test_truncated_binary_cel(self, tmp_path, chip_values):
        path = write_binary_cel(tmp_path / "b.CEL", chip_values)
        data = path.read_bytes()
        path.write_bytes(data[: len(data) // 2])

        with pytest.raises(ValueError, match="Truncated"):
            read_cel_file(str(path))

    def test_command_console_cel_rejected(self, tmp_path):
        path = tmp_path / "cc.CEL"
        path.write_bytes(bytes([59, 1]) + struct.pack(">i", 3) + b"\x00" * 32)

        with pytest.raises(ValueError, match="Command Console"):
            read_cel_file(str(path))

    def test_unknown_format(self, tmp_path):
        path = tmp_path / "junk.CEL"
        path.write_bytes(b"not a cel file at all")

        with pytest.raises(ValueError, match="Unrecognized"):
            read_cel_file(str(path))

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            read_cel_file(str(tmp_path / "missing.CEL"))


class TestReadCelFiles:
    """Test multi-array loading"""

    def test_reads_all_arrays(self, cel_directory, cell_intensities):
        paths = find_cel_files(str(cel_directory))

        intensities, chip_info = read_cel_files(paths)

        assert list(intensities.columns) == sorted(cell_intensities.columns)
        assert intensities.index.name == "Cell_Index"
        assert len(intensities) == CHIP_COLS * CHIP_ROWS
        assert chip_info["cols"] == CHIP_COLS
        assert chip_info["rows"] == CHIP_ROWS
        np.testing.assert_allclose(
            intensities["Ctrl_1"].to_numpy(), cell_intensities["Ctrl_1"].to_numpy(), atol=0.06
        )

    def test_explicit_sample_names(self, cel_directory):
        paths = find_cel_files(str(cel_directory))[:2]

        intensities, _ = read_cel_files(paths, sample_names=["A", "B"])

        assert list(intensities.columns) == ["A", "B"]

    def test_dimension_mismatch(self, tmp_path, chip_values):
        a = write_text_cel(tmp_path / "a.CEL", chip_values)
        b = write_text_cel(tmp_path / "b.CEL", np.ones(100), cols=10, rows=10)

        with pytest.raises(ValueError, match="dimensions differ"):
            read_cel_files([str(a), str(b)])

    def test_duplicate_sample_names(self, tmp_path, chip_values):
        (tmp_path / "x").mkdir()
        (tmp_path / "y").mkdir()
        a = write_text_cel(tmp_path / "x" / "S1.CEL", chip_values)
        b = write_text_cel(tmp_path / "y" / "S1.CEL", chip_values)

        with pytest.raises(ValueError, match="Duplicate"):
            read_cel_files([str(a), str(b)])

    def test_find_cel_files_empty_directory(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            find_cel_files(str(tmp_path))


class TestCleanSampleNames:
    """Test sample name derivation from CEL file names"""

    def test_strips_extensions_and_directories(self):
        names = ["/data/GSM1_A.CEL", "GSM2_B.cel", "GSM3_C.CEL.gz"]

        result = clean_sample_names(names)

        assert result == {
            "/data/GSM1_A.CEL": "GSM1_A",
            "GSM2_B.cel": "GSM2_B",
            "GSM3_C.CEL.gz": "GSM3_C",
        }

    def test_remove_common_prefix_at_separator(self):
        names = ["Study42_Ctrl_1.CEL", "Study42_Ctrl_2.CEL", "Study42_Trt_1.CEL"]

        result = clean_sample_names(names, remove_common_prefix=True)

        assert list(result.values()) == ["Ctrl_1", "Ctrl_2", "Trt_1"]

    def test_prefix_not_cut_inside_identifier(self):
        names = ["GSM12_A.CEL", "GSM13_B.CEL"]

        result = clean_sample_names(names, remove_common_prefix=True)

        assert list(result.values()) == ["GSM12_A", "GSM13_B"]


class TestChipLayout:
    """Test CDF and probe map loading"""

    def test_read_cdf_file(self, cdf_file, probe_map):
        result = read_cdf_file(str(cdf_file))

        assert list(result.columns) == ["Probeset_ID", "X", "Y", "Index", "Probe_Type", "Atom"]
        assert len(result) == len(probe_map)
        assert (result["Probe_Type"] == "PM").sum() == (probe_map["Probe_Type"] == "PM").sum()

        merged = result.merge(probe_map, on="Index", suffixes=("", "_expected"))
        assert (merged["Probe_Type"] == merged["Probe_Type_expected"]).all()
        assert (merged["Probeset_ID"] == merged["Probeset_ID_expected"]).all()
        assert (merged["Index"] == merged["X"] + merged["Y"] * CHIP_COLS).all()

    def test_binary_cdf_rejected(self, tmp_path):
        path = tmp_path / "chip.cdf"
        path.write_bytes(struct.pack("<ii", 67, 1) + b"\x00" * 16)

        with pytest.raises(ValueError, match="binary CDF"):
            read_cdf_file(str(path))

    def test_read_probe_map_from_xy(self, tmp_path, probe_map):
        path = tmp_path / "probes.csv"
        probe_map[["Probeset_ID", "X", "Y", "Probe_Type"]].to_csv(path, index=False)

        result = read_probe_map(str(path), chip_cols=CHIP_COLS)

        assert (result["Index"].to_numpy() == probe_map["Index"].to_numpy()).all()
        assert set(result["Probe_Type"]) == {"PM", "MM"}

    def test_read_probe_map_defaults_to_pm(self, tmp_path):
        path = tmp_path / "probes.csv"
        pd.DataFrame({"probeset_id": ["p1", "p1", "p2"], "Index": [0, 1, 2]}).to_csv(path, index=False)

        result = read_probe_map(str(path))

        assert (result["Probe_Type"] == "PM").all()
        assert list(result["Index"]) == [0, 1, 2]

    def test_read_probe_map_needs_chip_cols(self, tmp_path):
        path = tmp_path / "probes.csv"
        pd.DataFrame({"Probeset_ID": ["p1"], "X": [1], "Y": [2]}).to_csv(path, index=False)

        with pytest.raises(ValueError, match="chip_cols"):
            read_probe_map(str(path))

    def test_cdf_round_trip_through_writer(self, tmp_path):
        layout = pd.DataFrame(
            {
                "Probeset_ID": ["only_at"] * 4,
                "X": [0, 1, 2, 3],
                "Y": [0, 0, 0, 0],
                "Index": [0, 1, 2, 3],
                "Probe_Type": ["PM", "MM", "PM", "MM"],
                "Atom": [0, 0, 1, 1],
            }
        )
        path = write_text_cdf(tmp_path / "small.cdf", layout, cols=4, rows=1)

        result = read_cdf_file(str(path))

        assert list(result["Probe_Type"]) == ["MM", "PM", "MM", "PM"]
        assert list(result["Atom"]) == [0, 0, 1, 1]


class TestLoadSampleMetadata:
    """Test phenodata loading"""

    def test_keys_are_stripped_file_names(self, phenodata_file):
        metadata = load_sample_metadata(str(phenodata_file))

        assert set(metadata) == {"Ctrl_1", "Ctrl_2", "Ctrl_3", "Trt_1", "Trt_2", "Trt_3"}
        assert metadata["Trt_2"]["Group"] == "Treated"
        assert metadata["Ctrl_1"]["Batch"] == "B1"

    def test_explicit_sample_column(self, tmp_path):
        path = tmp_path / "pheno.tsv"
        path.write_text("Array\tCondition\nA1\tX\nA2\tY\n")

        metadata = load_sample_metadata(str(path), sample_column="Array")

        assert metadata == {
            "A1": {"Array": "A1", "Condition": "X"},
            "A2": {"Array": "A2", "Condition": "Y"},
        }

    def test_duplicate_samples(self, tmp_path):
        path = tmp_path / "pheno.csv"
        path.write_text("FileName,Group\nA.CEL,X\nA.cel,Y\n")

        with pytest.raises(ValueError, match="Duplicate"):
            load_sample_metadata(str(path))

    def test_missing_sample_column(self, phenodata_file):
        with pytest.raises(ValueError, match="not found"):
            load_sample_metadata(str(phenodata_file), sample_column="Nope")


class TestLoadExpressionMatrix:
    """Test loading of pre-normalized matrices"""

    def test_geo_series_matrix(self, tmp_path):
        path = tmp_path / "GSE1_series_matrix.txt"
        path.write_text(
            '!Series_title\t"test"\n'
            '!series_matrix_table_begin\n'
            'ID_REF\tGSM1\tGSM2\n'
            '1007_s_at\t8.1\t8.3\n'
            '1053_at\t6.0\tnull\n'
            '!series_matrix_table_end\n'
        )

        expression = load_expression_matrix(str(path))

        assert expression.index.name == "Probe_ID"
        assert list(expression.columns) == ["GSM1", "GSM2"]
        assert expression.loc["1007_s_at", "GSM2"] == pytest.approx(8.3)
        assert np.isnan(expression.loc["1053_at", "GSM2"])

    def test_csv_with_cel_columns(self, tmp_path):
        path = tmp_path / "expr.csv"
        path.write_text("probe,S1.CEL,S2.CEL\np1,1,2\n")

        expression = load_expression_matrix(str(path))

        assert list(expression.columns) == ["S1", "S2"]
