"""
Data Validation Module for Microarray Analysis Toolkit

Functions for validating that CEL files and phenodata describe the same
arrays, and that a design matrix and its contrasts can be fitted, with
interpretable error messages when they cannot.
"""

import numpy as np
import pandas as pd
from typing import Any, Dict, List, Optional

from .preprocessing import _normalize_group_value


class SampleMatchingError(Exception):
    """Custom exception for CEL file / phenodata matching issues."""
    def __init__(self, message):
        super().__init__(message)


class DesignMatrixError(Exception):
    """Custom exception for design matrices or contrasts that cannot be fitted."""
    def __init__(self, message):
        super().__init__(message)


def _preview(items: List[Any], n: int = 5) -> str:
    return f"{list(items)[:n]}{'...' if len(items) > n else ''}"


def validate_metadata_data_consistency(
    sample_metadata: Dict[str, Dict],
    data_samples: List[str],
    group_column: Optional[str] = None,
    group_labels: Optional[List[str]] = None,
    verbose: bool = True
) -> Dict:
    """
    Validate consistency between the phenodata and the loaded arrays.

    Parameters:
    -----------
    sample_metadata : Dict[str, Dict]
        Sample name -> attribute mapping (from load_sample_metadata)
    data_samples : List[str]
        Sample names of the loaded arrays (CEL files or matrix columns)
    group_column : str, optional
        Phenodata column holding the experimental group
    group_labels : List[str], optional
        Groups that must be present among the matched arrays
    verbose : bool, default True
        Whether to print detailed validation results

    Returns:
    --------
    Dict containing validation results and diagnostic information
    """
    results = {
        'is_valid': True,
        'errors': [],
        'warnings': [],
        'diagnostics': {}
    }

    if verbose:
        print("PHENODATA/ARRAY CONSISTENCY VALIDATION")
        print("=" * 50)

    data_set = set(data_samples)
    metadata_names = list(sample_metadata.keys())

    found_samples = [s for s in metadata_names if s in data_set]
    missing_samples = [s for s in metadata_names if s not in data_set]
    unmatched_data_samples = [s for s in data_samples if s not in sample_metadata]

    if not found_samples:
        results['errors'].append(
            "No phenodata samples match the loaded arrays. "
            f"Phenodata: {_preview(metadata_names)}; arrays: {_preview(list(data_samples))}"
        )
    elif missing_samples:
        results['errors'].append(
            f"Found {len(missing_samples)} samples in phenodata with no matching array: "
            f"{_preview(missing_samples)}"
        )

    if unmatched_data_samples:
        results['warnings'].append(
            f"{len(unmatched_data_samples)} arrays have no phenodata and will be ignored: "
            f"{_preview(unmatched_data_samples)}"
        )

    # Group checks on the matched samples
    group_counts = {}
    if group_column:
        has_column = any(group_column in sample_metadata[s] for s in found_samples)
        if found_samples and not has_column:
            results['errors'].append(f"Group column '{group_column}' not found in phenodata")
        else:
            values = []
            for sample in found_samples:
                value = sample_metadata[sample].get(group_column)
                values.append("Unknown" if pd.isna(value) else str(_normalize_group_value(value)))
            group_counts = pd.Series(values, dtype=object).value_counts().to_dict()

            for label in group_labels or []:
                count = group_counts.get(str(_normalize_group_value(label)), 0)
                if count == 0:
                    results['errors'].append(f"Group '{label}' has no matching arrays")
                elif count < 2:
                    results['warnings'].append(
                        f"Group '{label}' has only {count} array; its variance cannot be estimated"
                    )

    results['is_valid'] = not results['errors']

    results['diagnostics'] = {
        'total_metadata_samples': len(metadata_names),
        'total_data_samples': len(data_samples),
        'samples_found_in_data': len(found_samples),
        'samples_missing_from_data': len(missing_samples),
        'data_samples_without_metadata': len(unmatched_data_samples),
        'found_samples': found_samples,
        'missing_samples': missing_samples,
        'unmatched_data_samples': unmatched_data_samples,
        'group_counts': group_counts,
    }

    if verbose:
        diag = results['diagnostics']
        print(f"Phenodata samples: {diag['total_metadata_samples']}")
        print(f"  Found among arrays: {diag['samples_found_in_data']}")
        print(f"  Missing arrays: {diag['samples_missing_from_data']}")
        print(f"Arrays without phenodata: {diag['data_samples_without_metadata']}")
        if group_counts:
            print(f"Group sizes: {group_counts}")

        for warning in results['warnings']:
            print(f"  Warning: {warning}")

        if results['errors']:
            print("\nVALIDATION FAILED")
            for error in results['errors']:
                print(f"  ERROR: {error}")
        else:
            print("\n✓ VALIDATION PASSED")

    return results


def validate_design(
    design: pd.DataFrame,
    contrast_matrix: Optional[pd.DataFrame] = None,
    min_replicates: int = 1,
    group_columns: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """
    Check that a design matrix (and contrasts) can be fitted.

    Parameters:
    -----------
    design : pd.DataFrame
        Samples x coefficients design matrix
    contrast_matrix : pd.DataFrame, optional
        Coefficients x contrasts matrix
    min_replicates : int
        Minimum number of arrays per group column
    group_columns : List[str], optional
        Design columns that are group indicators. Taken from
        design.attrs['group_columns'] when omitted.

    Returns:
    --------
    Dict : rank, residual df and arrays per group

    Raises:
    -------
    DesignMatrixError: If the design or contrasts are unusable
    """
    values = design.to_numpy(dtype=float)
    n_samples, n_coef = values.shape

    if not np.isfinite(values).all():
        raise DesignMatrixError("Design matrix contains missing values")

    rank = np.linalg.matrix_rank(values) if n_coef else 0
    if rank < n_coef:
        raise DesignMatrixError(
            f"Design matrix is not of full column rank ({rank} < {n_coef} coefficients). "
            "Check for confounded groups and covariates."
        )

    df_residual = n_samples - rank
    if df_residual <= 0:
        raise DesignMatrixError(
            f"No residual degrees of freedom: {n_samples} arrays for {n_coef} coefficients"
        )

    if group_columns is None:
        group_columns = design.attrs.get("group_columns", [])

    replicates = {col: int(design[col].sum()) for col in group_columns}
    too_small = {col: n for col, n in replicates.items() if n < min_replicates}
    if too_small:
        raise DesignMatrixError(
            f"Groups with fewer than {min_replicates} arrays: {too_small}"
        )

    if contrast_matrix is not None:
        unknown = [row for row in contrast_matrix.index if row not in design.columns]
        if unknown:
            raise DesignMatrixError(f"Contrast rows not in design: {unknown}")
        empty = [c for c in contrast_matrix.columns if not contrast_matrix[c].abs().sum() > 0]
        if empty:
            raise DesignMatrixError(f"Contrasts with all-zero coefficients: {empty}")

    return {"rank": rank, "df_residual": df_residual, "replicates": replicates}


def generate_sample_matching_diagnostic_report(
    validation_results: Dict,
    output_file: Optional[str] = None
) -> str:
    """
    Generate a detailed diagnostic report for sample matching issues.

    Parameters:
    -----------
    validation_results : Dict
        Results from validate_metadata_data_consistency
    output_file : str, optional
        Path to save the report

    Returns:
    --------
    str: Formatted diagnostic report
    """
    diag = validation_results['diagnostics']

    report = []
    report.append("SAMPLE MATCHING DIAGNOSTIC REPORT")
    report.append("=" * 50)
    report.append(f"Generated on: {pd.Timestamp.now().strftime('%Y-%m-%d %H:%M:%S')}")
    report.append("")

    report.append("SUMMARY STATISTICS")
    report.append("-" * 30)
    report.append(f"Total samples in phenodata: {diag['total_metadata_samples']}")
    report.append(f"Total arrays loaded: {diag['total_data_samples']}")
    report.append(f"Samples matched to arrays: {diag['samples_found_in_data']}")
    report.append(f"Samples missing an array: {diag['samples_missing_from_data']}")
    if diag['total_metadata_samples'] > 0:
        match_rate = diag['samples_found_in_data'] / diag['total_metadata_samples'] * 100
        report.append(f"Match rate: {match_rate:.1f}%")
    report.append("")

    if diag['group_counts']:
        report.append("GROUP SIZES")
        report.append("-" * 30)
        for group, count in diag['group_counts'].items():
            report.append(f"{group}: {count}")
        report.append("")

    if diag['missing_samples']:
        report.append("MISSING ARRAYS")
        report.append("-" * 30)
        for i, sample in enumerate(diag['missing_samples'][:10]):
            report.append(f"{i+1}. {sample}")
        if len(diag['missing_samples']) > 10:
            report.append(f"... and {len(diag['missing_samples']) - 10} more")
        report.append("")

    if diag['unmatched_data_samples']:
        report.append("ARRAYS WITHOUT PHENODATA")
        report.append("-" * 30)
        for sample in diag['unmatched_data_samples'][:10]:
            report.append(f"- {sample}")
        report.append("")

    if validation_results['errors']:
        report.append("ERRORS")
        report.append("-" * 30)
        for error in validation_results['errors']:
            report.append(f"- {error}")
        report.append("")

    report.append("RECOMMENDATIONS")
    report.append("-" * 30)
    if diag['samples_missing_from_data'] > 0:
        report.append("1. Check that phenodata file names match the CEL file names")
        report.append("2. Verify that the CEL directory contains every listed array")
    if diag['data_samples_without_metadata'] > 0:
        report.append("3. Add phenodata rows for arrays that should be analysed")
    if validation_results['is_valid']:
        report.append("✓ All samples successfully matched - no action needed")

    report_text = "\n".join(report)

    if output_file:
        with open(output_file, 'w', encoding='utf-8') as f:
            f.write(report_text)
        print(f"Diagnostic report saved to: {output_file}")

    return report_text
