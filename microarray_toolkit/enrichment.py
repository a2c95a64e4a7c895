"""
Gene Set Enrichment Module

Over-representation analysis of differentially expressed gene lists using
the Enrichr web service. Up- and down-regulated genes of a contrast are
submitted separately and the significant terms are returned as tidy tables.

Network problems are reported and produce empty results, so an analysis
never fails because Enrichr is unreachable.
"""

import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import pandas as pd
import matplotlib.pyplot as plt
from matplotlib.figure import Figure
from matplotlib.patches import Rectangle
import requests


ENRICHR_URL = "https://maayanlab.cloud/Enrichr"


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class EnrichmentConfig:
    """Configuration for Enrichr over-representation analysis.

    Attributes
    ----------
    enrichr_libraries : List[str]
        Gene set libraries to query
    pvalue_cutoff : float
        Adjusted p-value threshold for reporting a term
    top_n : int
        Maximum number of terms kept per library
    min_genes : int
        Minimum list size to submit
    rate_limit_delay : float
        Pause between library queries (seconds)
    timeout : int
        Request timeout in seconds
    """

    enrichr_libraries: List[str] = field(default_factory=lambda: [
        "GO_Biological_Process_2023",
        "KEGG_2021_Human",
        "Reactome_2022",
        "MSigDB_Hallmark_2020",
    ])

    pvalue_cutoff: float = 0.05
    top_n: int = 20
    min_genes: int = 5

    rate_limit_delay: float = 0.5
    timeout: int = 30

    bar_figsize: Tuple[int, int] = (12, 8)


LIBRARY_COLORS = {
    "GO_Biological_Process_2023": "#1f77b4",
    "GO_Molecular_Function_2023": "#2ca02c",
    "GO_Cellular_Component_2023": "#17becf",
    "KEGG_2021_Human": "#d62728",
    "Reactome_2022": "#9467bd",
    "WikiPathway_2023_Human": "#ff7f0e",
    "MSigDB_Hallmark_2020": "#8c564b",
}


# =============================================================================
# ENRICHR API FUNCTIONS
# =============================================================================

def _clean_gene_list(gene_list: List[str]) -> List[str]:
    """Drop missing or blank symbols and duplicates, keeping order."""
    clean_genes = []
    for gene in gene_list:
        if gene is None or pd.isna(gene):
            continue
        symbol = str(gene).strip()
        if symbol and symbol.lower() not in ("nan", "none", "---"):
            clean_genes.append(symbol)
    return list(dict.fromkeys(clean_genes))


def query_enrichr(
    gene_list: List[str],
    config: Optional[EnrichmentConfig] = None,
    description: str = "Differentially expressed genes",
) -> Dict[str, List]:
    """
    Submit a gene list to Enrichr and fetch results for each configured library.

    Parameters
    ----------
    gene_list : List[str]
        Gene symbols
    config : EnrichmentConfig, optional
        Configuration object. Uses defaults if not provided.
    description : str
        Description stored with the submitted list

    Returns
    -------
    Dict[str, List]
        Library name -> raw Enrichr rows
        ([rank, term, pval, zscore, combined_score, genes, adj_pval, ...]).
        Empty if the list is too short or the service cannot be reached.
    """
    if config is None:
        config = EnrichmentConfig()

    clean_genes = _clean_gene_list(gene_list)
    if len(clean_genes) < config.min_genes:
        print(f"  Warning: Only {len(clean_genes)} genes provided, need at least {config.min_genes}")
        return {}

    payload = {
        "list": (None, "\n".join(clean_genes)),
        "description": (None, description),
    }

    try:
        response = requests.post(f"{ENRICHR_URL}/addList", files=payload, timeout=config.timeout)
        if not response.ok:
            print(f"  Error submitting gene list: HTTP {response.status_code}")
            return {}
        user_list_id = response.json()["userListId"]
    except requests.exceptions.Timeout:
        print("  Error: Enrichr request timed out")
        return {}
    except requests.exceptions.ConnectionError:
        print("  Error: Could not connect to Enrichr (check internet connection)")
        return {}
    except (requests.exceptions.RequestException, ValueError, KeyError) as e:
        print(f"  Error submitting gene list to Enrichr: {e}")
        return {}

    results = {}
    for library in config.enrichr_libraries:
        time.sleep(config.rate_limit_delay)
        try:
            response = requests.get(
                f"{ENRICHR_URL}/enrich",
                params={"userListId": user_list_id, "backgroundType": library},
                timeout=config.timeout,
            )
            if not response.ok:
                print(f"  Error querying {library}: HTTP {response.status_code}")
                continue
            library_results = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            print(f"  Error querying {library}: {e}")
            continue

        if library in library_results:
            results[library] = library_results[library]

    return results


def parse_enrichr_results(
    results: Dict[str, List],
    config: Optional[EnrichmentConfig] = None,
) -> pd.DataFrame:
    """
    Convert raw Enrichr rows into a tidy table of significant terms.

    Returns
    -------
    pd.DataFrame
        Library, Term, P_Value, Adj_P_Value, Z_Score, Combined_Score, Genes
        (semicolon-separated) and N_Genes, sorted by Combined_Score.
        Empty when no term passes the cutoff.
    """
    if config is None:
        config = EnrichmentConfig()

    rows = []
    for library, terms in results.items():
        for term_data in terms[:config.top_n]:
            if len(term_data) < 7:
                continue
            adj_pval = term_data[6]
            if adj_pval > config.pvalue_cutoff:
                continue
            genes = term_data[5] if isinstance(term_data[5], list) else [term_data[5]]
            rows.append({
                "Library": library,
                "Term": term_data[1],
                "P_Value": term_data[2],
                "Adj_P_Value": adj_pval,
                "Z_Score": term_data[3],
                "Combined_Score": term_data[4],
                "Genes": ";".join(genes),
                "N_Genes": len(genes),
            })

    if not rows:
        return pd.DataFrame()
    return pd.DataFrame(rows).sort_values("Combined_Score", ascending=False).reset_index(drop=True)


# =============================================================================
# HIGH-LEVEL ENRICHMENT FUNCTIONS
# =============================================================================

def run_enrichment_analysis(
    gene_list: List[str],
    config: Optional[EnrichmentConfig] = None,
    description: str = "Differentially expressed genes",
    verbose: bool = True,
) -> pd.DataFrame:
    """Query Enrichr for one gene list and return the parsed significant terms."""
    if config is None:
        config = EnrichmentConfig()

    if verbose:
        print(f"Running enrichment on {len(_clean_gene_list(gene_list))} genes...", flush=True)

    raw_results = query_enrichr(gene_list, config, description)
    if not raw_results:
        if verbose:
            print("  No results returned from Enrichr", flush=True)
        return pd.DataFrame()

    enrichment_df = parse_enrichr_results(raw_results, config)

    if verbose:
        if enrichment_df.empty:
            print("  No significant enrichment found", flush=True)
        else:
            print(f"  Found {len(enrichment_df)} significant terms", flush=True)

    return enrichment_df


def run_differential_enrichment(
    results_df: pd.DataFrame,
    gene_column: str = "Gene",
    logfc_column: str = "logFC",
    pvalue_column: str = "adj.P.Val",
    logfc_threshold: float = 1.0,
    pvalue_threshold: float = 0.05,
    config: Optional[EnrichmentConfig] = None,
    verbose: bool = True,
) -> Dict[str, pd.DataFrame]:
    """
    Run enrichment separately on up- and down-regulated genes.

    A table with a 'Regulation' column (from extract_degs) is split on that
    column; otherwise genes are selected with the p-value and logFC thresholds.

    Returns
    -------
    Dict[str, pd.DataFrame]
        'Upregulated' and 'Downregulated' enrichment tables
    """
    if config is None:
        config = EnrichmentConfig()

    if gene_column not in results_df.columns:
        print(f"  Warning: No '{gene_column}' column - annotate results before enrichment")
        return {"Upregulated": pd.DataFrame(), "Downregulated": pd.DataFrame()}

    if "Regulation" in results_df.columns:
        up_mask = results_df["Regulation"] == "Up"
        down_mask = results_df["Regulation"] == "Down"
    else:
        sig_mask = results_df[pvalue_column] < pvalue_threshold
        up_mask = sig_mask & (results_df[logfc_column] >= logfc_threshold)
        down_mask = sig_mask & (results_df[logfc_column] <= -logfc_threshold)

    gene_sets = {
        "Upregulated": _clean_gene_list(results_df.loc[up_mask, gene_column].tolist()),
        "Downregulated": _clean_gene_list(results_df.loc[down_mask, gene_column].tolist()),
    }

    if verbose:
        print(
            f"Significant genes: {len(gene_sets['Upregulated'])} up, "
            f"{len(gene_sets['Downregulated'])} down"
        )

    enrichment_results = {}
    for direction, genes in gene_sets.items():
        if verbose:
            print(f"\n{direction} ({len(genes)} genes):", flush=True)
        if len(genes) >= config.min_genes:
            enrichment_results[direction] = run_enrichment_analysis(
                genes, config, description=f"{direction} genes", verbose=verbose
            )
        else:
            enrichment_results[direction] = pd.DataFrame()
            if verbose:
                print(f"  Skipping - need at least {config.min_genes} genes", flush=True)

    return enrichment_results


# =============================================================================
# VISUALIZATION FUNCTIONS
# =============================================================================

def plot_enrichment_barplot(
    enrichment_df: pd.DataFrame,
    title: str = "Gene Set Enrichment",
    top_n: int = 15,
    figsize: Optional[Tuple[int, int]] = None,
    library_colors: Optional[Dict[str, str]] = None,
    save_path: Optional[str] = None,
    show: bool = False,
) -> Optional[Figure]:
    """
    Horizontal bar plot of the top enriched terms by combined score.

    Returns
    -------
    Figure or None
        Matplotlib figure, or None if there is nothing to plot
    """
    if enrichment_df.empty:
        print(f"  No significant enrichment results for: {title}")
        return None

    if figsize is None:
        figsize = EnrichmentConfig().bar_figsize
    if library_colors is None:
        library_colors = LIBRARY_COLORS

    plot_df = enrichment_df.nlargest(top_n, "Combined_Score").sort_values("Combined_Score")
    colors = [library_colors.get(lib, "gray") for lib in plot_df["Library"]]

    fig, ax = plt.subplots(figsize=figsize)

    term_labels = [t[:55] + "..." if len(t) > 55 else t for t in plot_df["Term"]]
    ax.barh(range(len(plot_df)), plot_df["Combined_Score"], color=colors, alpha=0.8)
    ax.set_yticks(range(len(plot_df)))
    ax.set_yticklabels(term_labels, fontsize=9)
    ax.set_xlabel("Combined Score", fontsize=12)
    ax.set_title(title, fontsize=14, fontweight="bold")

    for i, (score, n_genes) in enumerate(zip(plot_df["Combined_Score"], plot_df["N_Genes"])):
        ax.text(score, i, f" ({n_genes})", va="center", fontsize=8, color="gray")

    legend_elements = [
        Rectangle((0, 0), 1, 1, facecolor=library_colors.get(lib, "gray"), alpha=0.8,
                  label=lib.replace("_", " "))
        for lib in plot_df["Library"].unique()
    ]
    ax.legend(handles=legend_elements, loc="lower right", fontsize=8)

    plt.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=150, bbox_inches="tight")
        print(f"Saved plot: {save_path}")
    if show:
        plt.show()
    return fig
