"""
Annotation Module for Microarray Analysis Toolkit

Functions for loading platform annotation tables (Affymetrix NetAffx CSV or
GEO GPL tables), attaching gene symbols to result tables and collapsing
probeset-level expression to one row per gene.
"""

import io
import os
import gzip
from typing import Dict, List, Optional

import numpy as np
import pandas as pd


STANDARD_ANNOTATION_COLUMNS = ["Probe_ID", "Gene_Symbol", "Gene_Title", "Entrez_ID"]

# Candidate source column names for each standard column
ANNOTATION_COLUMN_CANDIDATES: Dict[str, List[str]] = {
    "Probe_ID": ["Probe Set ID", "ID", "ID_REF", "probeset_id", "Probe_ID", "transcript_cluster_id"],
    "Gene_Symbol": ["Gene Symbol", "Gene_Symbol", "GENE_SYMBOL", "Symbol", "gene_assignment_symbol"],
    "Gene_Title": ["Gene Title", "Gene_Title", "GENE_NAME", "Description", "gene_title"],
    "Entrez_ID": ["Entrez Gene", "ENTREZ_GENE_ID", "Entrez_ID", "EntrezGeneID", "GENE"],
}

MISSING_ANNOTATION_VALUES = ["---", "", "nan", "NA", "N/A"]


def load_annotation_table(path: str) -> pd.DataFrame:
    """
    Load a platform annotation table and normalize its column names.

    Comment lines (starting with '#', e.g. NetAffx '#%' headers) and GEO
    '!' lines are skipped. The separator (comma or tab) is detected from the
    header line.

    Parameters:
    -----------
    path : str
        NetAffx CSV or GEO GPL table (optionally .gz)

    Returns:
    --------
    pd.DataFrame : Annotation indexed by Probe_ID with Gene_Symbol,
        Gene_Title and Entrez_ID columns ('---' values become missing)
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Annotation file not found: {path}")

    opener = gzip.open if path.lower().endswith(".gz") else open
    with opener(path, "rt", encoding="utf-8", errors="replace") as f:
        lines = [line for line in f if line.strip() and not line.startswith(("#", "!"))]

    if not lines:
        raise ValueError(f"Annotation file has no table rows: {path}")

    sep = "\t" if lines[0].count("\t") > lines[0].count(",") else ","
    table = pd.read_csv(io.StringIO("".join(lines)), sep=sep, dtype=str, keep_default_na=False)
    table.columns = [str(col).strip() for col in table.columns]

    annotation = pd.DataFrame(index=table.index)
    for standard, candidates in ANNOTATION_COLUMN_CANDIDATES.items():
        source = next((col for col in candidates if col in table.columns), None)
        if source is None:
            if standard in ("Probe_ID", "Gene_Symbol"):
                raise ValueError(
                    f"Annotation file {path} has no {standard} column "
                    f"(looked for {candidates})"
                )
            annotation[standard] = np.nan
        else:
            annotation[standard] = table[source].str.strip()

    annotation = annotation.replace(MISSING_ANNOTATION_VALUES, np.nan)
    annotation = annotation.dropna(subset=["Probe_ID"]).drop_duplicates("Probe_ID")
    annotation = annotation.set_index("Probe_ID")

    n_with_symbol = int(annotation["Gene_Symbol"].notna().sum())
    print(f"✓ Loaded annotation: {len(annotation)} probesets, {n_with_symbol} with gene symbols")
    return annotation


def primary_symbol(value) -> Optional[str]:
    """First gene symbol of a ' /// '-separated list, or None if missing."""
    if value is None or (isinstance(value, float) and np.isnan(value)):
        return None
    symbol = str(value).split("///")[0].strip()
    if symbol in MISSING_ANNOTATION_VALUES:
        return None
    return symbol


def annotate_results(results: pd.DataFrame, annotation: pd.DataFrame) -> pd.DataFrame:
    """
    Attach gene annotation to a probeset-indexed result table.

    Probesets without annotation are kept (with missing annotation values).
    Annotation columns come first, followed by a 'Gene' column holding the
    primary symbol, then the original result columns.
    """
    annotation_cols = [col for col in STANDARD_ANNOTATION_COLUMNS[1:] if col in annotation.columns]
    annotated = results.join(annotation[annotation_cols], how="left")

    annotated["Gene"] = annotated["Gene_Symbol"].map(primary_symbol)

    ordered = annotation_cols + ["Gene"] + [c for c in results.columns if c not in annotation_cols + ["Gene"]]
    annotated = annotated[ordered]
    annotated.index.name = results.index.name or "Probe_ID"

    n_annotated = int(annotated["Gene"].notna().sum())
    print(f"Annotated {n_annotated} of {len(annotated)} probesets with gene symbols")
    return annotated


def _row_iqr(expression: pd.DataFrame) -> pd.Series:
    return expression.quantile(0.75, axis=1) - expression.quantile(0.25, axis=1)


def collapse_probes_to_genes(
    expression: pd.DataFrame, annotation: pd.DataFrame, method: str = "max_iqr"
) -> pd.DataFrame:
    """
    Reduce probeset-level expression to one row per gene symbol.

    Parameters:
    -----------
    expression : pd.DataFrame
        Probesets x samples
    annotation : pd.DataFrame
        Output of load_annotation_table()
    method : str
        'max_iqr' keeps the probeset with the largest interquartile range,
        'max_mean' the one with the highest mean, 'mean' averages probesets

    Returns:
    --------
    pd.DataFrame : Genes x samples indexed by Gene_Symbol
    """
    if method not in ("max_iqr", "max_mean", "mean"):
        raise ValueError("method must be 'max_iqr', 'max_mean' or 'mean'")

    symbols = annotation["Gene_Symbol"].reindex(expression.index).map(primary_symbol)
    mapped = expression.loc[symbols.notna()]
    symbols = symbols.loc[mapped.index]

    print(f"Probesets with gene symbol: {len(mapped)} of {len(expression)}")

    if method == "mean":
        gene_expr = mapped.groupby(symbols).mean()
    else:
        score = _row_iqr(mapped) if method == "max_iqr" else mapped.mean(axis=1)
        ranked = pd.DataFrame({"symbol": symbols, "score": score})
        best_probes = ranked.sort_values(["symbol", "score"], ascending=[True, False], kind="stable")
        best_probes = best_probes.groupby("symbol").head(1)
        gene_expr = mapped.loc[best_probes.index]
        gene_expr.index = best_probes["symbol"].to_numpy()

    gene_expr = gene_expr.sort_index()
    gene_expr.index.name = "Gene_Symbol"
    print(f"Gene-level expression ({method}): {gene_expr.shape[0]} genes x {gene_expr.shape[1]} samples")
    return gene_expr
