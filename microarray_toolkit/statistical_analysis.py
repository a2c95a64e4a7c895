"""
Statistical Analysis Module for Microarray Data

This module provides a configuration-driven approach to differential gene
expression analysis: gene-wise linear models with a group design, contrasts
between groups, empirical Bayes moderation of the variances, ranked result
tables and per-gene decisions. A plain Welch t-test is available as a
simpler alternative for two-group studies.
"""

import re
import warnings
from dataclasses import dataclass, replace
from typing import List, Optional, Sequence, Tuple, Union

import pandas as pd
import numpy as np
from scipy import special, stats
from scipy.stats import ttest_ind
from statsmodels.nonparametric.smoothers_lowess import lowess
from statsmodels.stats.multitest import multipletests

from .normalization import get_normalization_characteristics, is_normalization_log_transformed
from .preprocessing import _normalize_group_value
from .validation import DesignMatrixError, validate_design


SORT_BY_OPTIONS = ["B", "t", "P", "p", "logFC", "AveExpr", "F", "none"]


def make_valid_name(name) -> str:
    """
    Turn a group label into a name usable in contrast expressions.

    Invalid characters become '.', and names starting with a digit (or a
    dot followed by a digit) get an 'X' prefix.
    """
    valid = re.sub(r"[^A-Za-z0-9_.]", ".", str(name).strip())
    if not valid or re.match(r"^(\d|\.\d|_)", valid):
        valid = "X" + valid
    return valid


def _apply_log_transformation_if_needed(data, config):
    """
    Apply log transformation to data if needed based on configuration.
    Uses the normalization method table to determine if data is already log-transformed.

    Parameters:
    -----------
    data : pd.DataFrame
        Expression data (probesets x samples)
    config : StatisticalConfig
        Configuration object containing log transformation settings

    Returns:
    --------
    pd.DataFrame
        Data with log transformation applied if needed
    """
    if config.log_transform_before_stats == "auto":
        known_method = (
            bool(config.normalization_method)
            and str(config.normalization_method).lower() in get_normalization_characteristics()
        )
        if known_method:
            already_log_transformed = is_normalization_log_transformed(
                config.normalization_method
            )
            apply_log_transform = not already_log_transformed
            status = "not needed" if already_log_transformed else "needed"
            print(
                f"Log transformation: AUTO-DETECTED ({status} - normalization '{config.normalization_method}')"
            )
        else:
            # Missing or unrecognised normalization method, check data range
            mean_value = data.mean().mean()
            apply_log_transform = mean_value > 50
            status = "needed" if apply_log_transform else "not needed"
            print(
                f"Log transformation: AUTO-DETECTED ({status} - mean value {mean_value:.1f})"
            )
    elif str(config.log_transform_before_stats).lower() in ["true", "1", "yes", "on"]:
        apply_log_transform = True
        print("Log transformation: ENABLED (forced by configuration)")
    else:
        apply_log_transform = False
        print("Log transformation: DISABLED (by configuration)")

    if not apply_log_transform:
        print("Using data as-is for statistical analysis")
        return data

    print(f"Applying {config.log_base} transformation for statistical analysis...")

    transformed_data = data.copy()

    if (transformed_data < 0).any().any():
        print("  -> Handling negative values...")
        shift_amount = abs(transformed_data.min().min()) + 1
        transformed_data = transformed_data + shift_amount
        print(f"     Shifted all values by +{shift_amount:.2f}")

    if config.log_pseudocount is None:
        min_value = transformed_data.min().min()
        pseudocount = max(1e-6, min_value / 100) if min_value > 0 else 0.1
    else:
        pseudocount = config.log_pseudocount

    if config.log_base == "log2":
        transformed_data = np.log2(transformed_data + pseudocount)
    elif config.log_base == "log10":
        transformed_data = np.log10(transformed_data + pseudocount)
    elif config.log_base == "ln":
        transformed_data = np.log(transformed_data + pseudocount)
    else:
        raise ValueError(f"Unknown log base: {config.log_base}")

    print(
        f"  -> Applied {config.log_base} transformation with pseudocount {pseudocount}"
    )
    print(
        f"  -> New data range: {transformed_data.min().min():.2f} to {transformed_data.max().max():.2f}"
    )

    return transformed_data


class StatisticalConfig:
    """Configuration class for differential expression parameters

    Supported methods:
    - 'limma': linear model + empirical Bayes moderated statistics (any number of groups)
    - 'welch_t': per-probeset Welch t-test between the first two group_labels
    """

    def __init__(self):
        # Basic analysis parameters
        self.statistical_test_method = "limma"
        self.p_value_threshold = 0.05
        self.fold_change_threshold = 1.0  # log2 scale

        # Experimental design
        self.group_column = "Group"
        self.group_labels = []  # design levels; first label is the reference
        self.covariates = []  # extra factors such as batch or sex
        self.contrasts = []  # e.g. ["Treated-Control", "Mean=(A+B)/2-Control"]

        # Multiple testing correction
        self.correction_method = "fdr_bh"

        # P-value selection parameters
        self.use_adjusted_pvalue = "adjusted"  # "adjusted" or "unadjusted"
        self.enable_pvalue_fallback = True

        # Empirical Bayes
        self.ebayes_trend = False
        self.ebayes_proportion = 0.01
        self.stdev_coef_lim = (0.1, 4.0)
        self.sort_by = "B"

        # Log transformation parameters
        self.log_transform_before_stats = "auto"  # "auto", True, False
        self.log_base = "log2"  # "log2", "log10", "ln"
        self.log_pseudocount = None  # None for auto, or specific value

        # Normalization method (used for auto log transformation)
        self.normalization_method = "rma"

    def validate(self):
        """Validate that parameters are consistent with the chosen method"""
        if self.statistical_test_method not in ("limma", "welch_t"):
            raise ValueError(
                f"Unknown statistical method: {self.statistical_test_method}. "
                "Supported methods: limma, welch_t"
            )

        if not self.group_column:
            raise ValueError("group_column must be set")

        if self.statistical_test_method == "welch_t" and len(self.group_labels) < 2:
            raise ValueError("welch_t analysis requires two group_labels (reference first)")

        if len(set(map(str, self.group_labels))) != len(self.group_labels):
            raise ValueError(f"group_labels contains duplicates: {self.group_labels}")

        if not 0 < self.p_value_threshold <= 1:
            raise ValueError("p_value_threshold must be in (0, 1]")

        if self.fold_change_threshold < 0:
            raise ValueError("fold_change_threshold is a log2 value and must be >= 0")

        if self.use_adjusted_pvalue not in ("adjusted", "unadjusted"):
            raise ValueError("use_adjusted_pvalue must be 'adjusted' or 'unadjusted'")

        if not 0 < self.ebayes_proportion < 1:
            raise ValueError("ebayes_proportion must be in (0, 1)")

        if len(self.stdev_coef_lim) != 2 or not 0 < self.stdev_coef_lim[0] <= self.stdev_coef_lim[1]:
            raise ValueError("stdev_coef_lim must be two increasing positive values")

        if self.sort_by not in SORT_BY_OPTIONS:
            raise ValueError(f"sort_by must be one of {SORT_BY_OPTIONS}")

        return True


@dataclass
class LinearModelFit:
    """Gene-wise linear model fit, optionally with contrasts and eBayes statistics.

    Coefficient-shaped tables are genes x coefficients (or contrasts).
    ``cov_coefficients`` is the unscaled covariance, genes x p x p.
    """

    coefficients: pd.DataFrame
    stdev_unscaled: pd.DataFrame
    sigma: pd.Series
    df_residual: pd.Series
    cov_coefficients: np.ndarray
    Amean: pd.Series
    design: pd.DataFrame
    contrasts: Optional[pd.DataFrame] = None

    # Set by e_bayes()
    df_prior: Optional[float] = None
    s2_prior: Optional[Union[float, np.ndarray]] = None
    s2_post: Optional[pd.Series] = None
    var_prior: Optional[np.ndarray] = None
    df_total: Optional[pd.Series] = None
    t: Optional[pd.DataFrame] = None
    p_value: Optional[pd.DataFrame] = None
    lods: Optional[pd.DataFrame] = None
    F: Optional[pd.Series] = None
    F_p_value: Optional[pd.Series] = None
    proportion: float = 0.01
    trend: bool = False

    @property
    def is_moderated(self) -> bool:
        return self.t is not None

    @property
    def coef_names(self) -> List[str]:
        return list(self.coefficients.columns)


def prepare_metadata_dataframe(sample_metadata_dict, sample_columns, config):
    """Convert sample metadata dictionary to DataFrame for the arrays in the analysis"""

    print(f"Preparing metadata for {len(sample_columns)} samples...")

    metadata_rows = []
    for sample_name in sample_columns:
        if sample_name in sample_metadata_dict:
            row = dict(sample_metadata_dict[sample_name])
            row["Sample"] = sample_name
            metadata_rows.append(row)
        else:
            print(f"Warning: No metadata found for sample {sample_name}")

    if not metadata_rows:
        raise ValueError("No samples with metadata found for the analysis")

    metadata_df = pd.DataFrame(metadata_rows)

    required_cols = [config.group_column] + list(config.covariates)
    missing_cols = [col for col in required_cols if col not in metadata_df.columns]
    if missing_cols:
        raise ValueError(f"Missing required metadata columns: {missing_cols}")

    print(f"  Before filtering: {len(metadata_df)} samples")
    for col in required_cols:
        before_count = len(metadata_df)
        metadata_df = metadata_df.dropna(subset=[col])
        if before_count != len(metadata_df):
            print(f"  Removed {before_count - len(metadata_df)} samples missing {col}")

    metadata_df[config.group_column] = metadata_df[config.group_column].apply(
        lambda v: str(_normalize_group_value(v))
    )

    if config.group_labels:
        labels = [str(_normalize_group_value(label)) for label in config.group_labels]
        in_design = metadata_df[config.group_column].isin(labels)
        if (~in_design).any():
            print(f"  Excluded {int((~in_design).sum())} samples outside {labels}")
        metadata_df = metadata_df[in_design]

    if len(metadata_df) == 0:
        raise ValueError("No samples remain after filtering for required metadata")

    print(f"  After filtering: {len(metadata_df)} samples")
    print(f"  Groups: {metadata_df[config.group_column].value_counts().to_dict()}")

    return metadata_df.reset_index(drop=True)


def build_design_matrix(
    metadata_df: pd.DataFrame,
    group_column: str,
    levels: Optional[Sequence] = None,
    covariates: Optional[List[str]] = None,
    sample_column: str = "Sample",
) -> pd.DataFrame:
    """
    Build a cell-means design matrix (one indicator column per group level).

    Covariates follow the group columns: numeric covariates enter as-is,
    categorical ones are treatment coded against their first (sorted) level.

    Parameters:
    -----------
    metadata_df : pd.DataFrame
        One row per array
    group_column : str
        Column with the group label
    levels : sequence, optional
        Group levels in design order. Sorted unique labels if omitted.
    covariates : List[str], optional
        Additional metadata columns to adjust for
    sample_column : str
        Column with sample names (used as the design index)

    Returns:
    --------
    pd.DataFrame : Samples x coefficients design matrix. design.attrs holds
        'group_columns' and 'levels'.
    """
    if group_column not in metadata_df.columns:
        raise DesignMatrixError(f"Group column '{group_column}' not in metadata")

    groups = metadata_df[group_column].astype(str).str.strip()
    if levels is None:
        levels = sorted(groups.unique())
    levels = [str(level) for level in levels]

    unknown = sorted(set(groups) - set(levels))
    if unknown:
        raise DesignMatrixError(f"Samples with groups not in the design levels: {unknown}")

    if sample_column in metadata_df.columns:
        index = pd.Index(metadata_df[sample_column].astype(str), name="Sample")
    else:
        index = pd.Index(metadata_df.index.astype(str), name="Sample")

    group_columns = [make_valid_name(level) for level in levels]
    if len(set(group_columns)) != len(group_columns):
        raise DesignMatrixError(f"Group levels are not distinct as names: {levels}")

    design = pd.DataFrame(
        {col: (groups.to_numpy() == level).astype(float) for col, level in zip(group_columns, levels)},
        index=index,
    )

    for covariate in covariates or []:
        if covariate not in metadata_df.columns:
            raise DesignMatrixError(f"Covariate '{covariate}' not in metadata")
        values = metadata_df[covariate]
        if values.isna().any():
            raise DesignMatrixError(f"Covariate '{covariate}' has missing values")

        numeric = pd.to_numeric(values, errors="coerce")
        if numeric.notna().all() and not pd.api.types.is_bool_dtype(values):
            design[make_valid_name(covariate)] = numeric.to_numpy(dtype=float)
            continue

        cov_levels = sorted(values.astype(str).unique())
        for level in cov_levels[1:]:
            design[make_valid_name(f"{covariate}{level}")] = (
                values.astype(str).to_numpy() == level
            ).astype(float)

    design.attrs["group_columns"] = group_columns
    design.attrs["levels"] = levels
    return design


class _ContrastParser:
    """Recursive-descent parser for linear expressions in group names."""

    _token_pattern = re.compile(
        r"\s*(?:(?P<number>\d+\.?\d*(?:[eE][-+]?\d+)?|\.\d+)|(?P<name>[A-Za-z_.][A-Za-z0-9_.]*)|(?P<op>[-+*/()]))"
    )

    def __init__(self, expression: str, levels: List[str]):
        self.expression = expression
        self.levels = levels
        self.tokens = self._tokenize(expression)
        self.position = 0

    def _tokenize(self, expression):
        tokens = []
        pos = 0
        text = expression.rstrip()
        while pos < len(text):
            match = self._token_pattern.match(text, pos)
            if not match or match.end() == pos:
                raise ValueError(f"Cannot parse contrast '{expression}' at '{text[pos:]}'")
            kind = match.lastgroup
            tokens.append((kind, match.group(kind)))
            pos = match.end()
        return tokens

    def _peek(self):
        if self.position < len(self.tokens):
            return self.tokens[self.position]
        return (None, None)

    def _next(self):
        token = self._peek()
        self.position += 1
        return token

    def parse(self) -> np.ndarray:
        if not self.tokens:
            raise ValueError("Empty contrast expression")
        vector, constant = self._expression()
        if self.position != len(self.tokens):
            raise ValueError(
                f"Unexpected '{self._peek()[1]}' in contrast '{self.expression}'"
            )
        if constant != 0:
            raise ValueError(f"Contrast '{self.expression}' has a constant term")
        return vector

    # Each rule returns (coefficient vector, constant)
    def _expression(self):
        vector, constant = self._term()
        while self._peek() in (("op", "+"), ("op", "-")):
            sign = 1.0 if self._next()[1] == "+" else -1.0
            v, c = self._term()
            vector, constant = vector + sign * v, constant + sign * c
        return vector, constant

    def _term(self):
        vector, constant = self._factor()
        while self._peek() in (("op", "*"), ("op", "/")):
            op = self._next()[1]
            v, c = self._factor()
            if op == "*":
                if vector.any() and v.any():
                    raise ValueError(f"Contrast '{self.expression}' is not linear")
                vector, constant = vector * c + v * constant, constant * c
            else:
                if v.any():
                    raise ValueError(f"Contrast '{self.expression}' divides by a group")
                if c == 0:
                    raise ValueError(f"Contrast '{self.expression}' divides by zero")
                vector, constant = vector / c, constant / c
        return vector, constant

    def _factor(self):
        kind, value = self._next()
        if kind == "op" and value in "+-":
            v, c = self._factor()
            return (v, c) if value == "+" else (-v, -c)
        if kind == "number":
            return np.zeros(len(self.levels)), float(value)
        if kind == "name":
            if value not in self.levels:
                raise ValueError(
                    f"Unknown group '{value}' in contrast '{self.expression}'. "
                    f"Available: {self.levels}"
                )
            vector = np.zeros(len(self.levels))
            vector[self.levels.index(value)] = 1.0
            return vector, 0.0
        if kind == "op" and value == "(":
            result = self._expression()
            if self._next() != ("op", ")"):
                raise ValueError(f"Unbalanced parentheses in contrast '{self.expression}'")
            return result
        raise ValueError(f"Unexpected end of contrast '{self.expression}'")


def make_contrasts(contrasts: List[str], levels: Sequence[str]) -> pd.DataFrame:
    """
    Build a contrast matrix from expressions such as 'Treated-Control'.

    Expressions are linear in the level names and may use numbers, + - * /
    and parentheses, e.g. '(High+Low)/2-Control'. A 'Name=' prefix names the
    contrast; otherwise the expression (without spaces) is the name.

    Parameters:
    -----------
    contrasts : List[str]
        Contrast expressions
    levels : sequence of str
        Coefficient names (design columns)

    Returns:
    --------
    pd.DataFrame : Levels x contrasts matrix
    """
    if isinstance(contrasts, str):
        contrasts = [contrasts]
    if not contrasts:
        raise ValueError("At least one contrast is required")

    levels = [str(level) for level in levels]
    columns = {}

    for text in contrasts:
        name, expression = None, text
        match = re.match(r"^\s*([^=]+?)\s*=(.*)$", text)
        if match:
            name, expression = match.group(1), match.group(2)
        expression = expression.strip()
        if name is None:
            name = re.sub(r"\s+", "", expression)
        if name in columns:
            raise ValueError(f"Duplicate contrast name: {name}")
        columns[name] = _ContrastParser(expression, levels).parse()

    contrast_matrix = pd.DataFrame(columns, index=pd.Index(levels, name="Levels"))
    contrast_matrix.columns.name = "Contrasts"
    return contrast_matrix


def _fit_rows(y: np.ndarray, x: np.ndarray):
    """OLS fit of every row of y (genes x samples) on design x."""
    xtx_inv = np.linalg.inv(x.T @ x)
    coef = y @ x @ xtx_inv
    residuals = y - coef @ x.T
    df = x.shape[0] - x.shape[1]
    with np.errstate(invalid="ignore", divide="ignore"):
        sigma = np.sqrt((residuals**2).sum(axis=1) / df) if df > 0 else np.full(len(y), np.nan)
    return coef, xtx_inv, sigma, df


def lm_fit(expression: pd.DataFrame, design: pd.DataFrame) -> LinearModelFit:
    """
    Fit a linear model to every probeset.

    Parameters:
    -----------
    expression : pd.DataFrame
        log2 expression (probesets x samples)
    design : pd.DataFrame
        Samples x coefficients design matrix; its index selects and orders
        the expression columns

    Returns:
    --------
    LinearModelFit
    """
    missing = [s for s in design.index if s not in expression.columns]
    if missing:
        raise DesignMatrixError(f"Design samples missing from expression data: {missing[:5]}")

    y = expression[list(design.index)].to_numpy(dtype=float)
    x = design.to_numpy(dtype=float)
    n_genes, n_samples = y.shape
    n_coef = x.shape[1]

    if np.linalg.matrix_rank(x) < n_coef:
        raise DesignMatrixError("Design matrix is not of full column rank")

    print(f"Fitting linear models: {n_genes} probesets, {n_samples} arrays, {n_coef} coefficients")

    coefficients = np.full((n_genes, n_coef), np.nan)
    stdev_unscaled = np.full((n_genes, n_coef), np.nan)
    cov = np.full((n_genes, n_coef, n_coef), np.nan)
    sigma = np.full(n_genes, np.nan)
    df_residual = np.zeros(n_genes)

    complete = np.isfinite(y).all(axis=1)
    if complete.any():
        coef, xtx_inv, sig, df = _fit_rows(y[complete], x)
        coefficients[complete] = coef
        stdev_unscaled[complete] = np.sqrt(np.diag(xtx_inv))
        cov[complete] = xtx_inv
        sigma[complete] = sig
        df_residual[complete] = df

    # Rows with missing values: fit on the observed arrays, dropping
    # coefficients that no observed array informs
    partial = np.where(~complete)[0]
    for i in partial:
        observed = np.isfinite(y[i])
        if observed.sum() == 0:
            continue
        x_obs = x[observed]
        estimable = np.abs(x_obs).sum(axis=0) > 0
        x_sub = x_obs[:, estimable]
        if x_sub.shape[1] == 0 or np.linalg.matrix_rank(x_sub) < x_sub.shape[1]:
            continue
        coef, xtx_inv, sig, df = _fit_rows(y[i, observed][None, :], x_sub)
        coefficients[i, estimable] = coef[0]
        stdev_unscaled[i, estimable] = np.sqrt(np.diag(xtx_inv))
        cov[i][np.ix_(estimable, estimable)] = xtx_inv
        sigma[i] = sig[0]
        df_residual[i] = max(df, 0)

    if len(partial):
        print(f"  {len(partial)} probesets with missing values fitted on observed arrays")

    index = expression.index
    columns = list(design.columns)

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=RuntimeWarning)
        amean = np.nanmean(y, axis=1)

    fit = LinearModelFit(
        coefficients=pd.DataFrame(coefficients, index=index, columns=columns),
        stdev_unscaled=pd.DataFrame(stdev_unscaled, index=index, columns=columns),
        sigma=pd.Series(sigma, index=index, name="sigma"),
        df_residual=pd.Series(df_residual, index=index, name="df_residual"),
        cov_coefficients=cov,
        Amean=pd.Series(amean, index=index, name="AveExpr"),
        design=design,
    )
    return fit


def contrasts_fit(fit: LinearModelFit, contrast_matrix: pd.DataFrame) -> LinearModelFit:
    """
    Re-express a fit in terms of contrasts between coefficients.

    Coefficients not named in the contrast matrix (e.g. covariates) get a
    zero weight. Standard errors use each gene's unscaled covariance, so
    genes with missing arrays are handled correctly.

    Returns:
    --------
    LinearModelFit : New fit whose coefficients are the contrasts
    """
    unknown = [row for row in contrast_matrix.index if row not in fit.coef_names]
    if unknown:
        raise DesignMatrixError(f"Contrast rows not among fit coefficients: {unknown}")

    c = contrast_matrix.reindex(fit.coef_names).fillna(0.0).to_numpy(dtype=float)
    used = c != 0

    coef = fit.coefficients.to_numpy()
    coef_missing = np.isnan(coef)
    new_coef = np.nan_to_num(coef) @ c
    new_coef[(coef_missing.astype(float) @ used) > 0] = np.nan

    cov = np.nan_to_num(fit.cov_coefficients)
    new_cov = np.einsum("pc,gpq,qd->gcd", c, cov, c)
    new_var = np.einsum("gcc->gc", new_cov).copy()
    new_var[np.isnan(new_coef)] = np.nan
    with np.errstate(invalid="ignore"):
        new_stdev = np.sqrt(new_var)

    contrast_names = list(contrast_matrix.columns)
    index = fit.coefficients.index

    print(f"Applied {len(contrast_names)} contrasts: {contrast_names}")

    return replace(
        fit,
        coefficients=pd.DataFrame(new_coef, index=index, columns=contrast_names),
        stdev_unscaled=pd.DataFrame(new_stdev, index=index, columns=contrast_names),
        cov_coefficients=new_cov,
        contrasts=contrast_matrix.reindex(fit.coef_names).fillna(0.0),
        t=None,
        p_value=None,
        lods=None,
        F=None,
        F_p_value=None,
    )


def trigamma_inverse(y):
    """Solve trigamma(x) = y for x with Newton iteration."""
    y = np.atleast_1d(np.asarray(y, dtype=float))
    x = np.full_like(y, np.nan)

    large = y > 1e7
    small = y < 1e-6
    x[large] = 1 / np.sqrt(y[large])
    x[small] = 1 / y[small]

    mid = ~large & ~small & np.isfinite(y) & (y > 0)
    if mid.any():
        ym = y[mid]
        xm = 0.5 + 1 / ym
        for _ in range(50):
            tri = special.polygamma(1, xm)
            dif = tri * (1 - tri / ym) / special.polygamma(2, xm)
            xm = xm + dif
            if np.max(-dif / xm) < 1e-8:
                break
        x[mid] = xm

    return x


def fit_f_dist(
    s2: np.ndarray, df1: np.ndarray, covariate: Optional[np.ndarray] = None
) -> Tuple[float, Union[float, np.ndarray]]:
    """
    Moment estimation of the scaled F distribution of the sample variances.

    Parameters:
    -----------
    s2 : array
        Residual variances
    df1 : array
        Residual degrees of freedom
    covariate : array, optional
        Average expression; when given, the prior variance follows a lowess
        trend in the covariate

    Returns:
    --------
    (df_prior, s2_prior) : s2_prior is an array when a covariate is given
    """
    s2 = np.asarray(s2, dtype=float)
    df1 = np.broadcast_to(np.asarray(df1, dtype=float), s2.shape)

    ok = np.isfinite(s2) & np.isfinite(df1) & (s2 > -1e-15) & (df1 > 1e-15)
    if covariate is not None:
        covariate = np.asarray(covariate, dtype=float)
        ok &= np.isfinite(covariate)
    n = int(ok.sum())

    if n == 0:
        return 0.0, np.nan
    if n == 1:
        return 0.0, float(s2[ok][0])

    x = np.maximum(s2[ok], 0)
    m = np.median(x)
    if m == 0:
        warnings.warn("More than half of residual variances are exactly zero: eBayes unreliable")
        m = 1.0
    x = np.maximum(x, 1e-5 * m)

    half_df = df1[ok] / 2
    z = np.log(x)
    e = z - special.digamma(half_df) + np.log(half_df)

    if covariate is None:
        emean = np.mean(e)
        evar = np.sum((e - emean) ** 2) / (n - 1)
    else:
        trend = lowess(e, covariate[ok], frac=2 / 3, return_sorted=True)
        emean_ok = np.interp(covariate[ok], trend[:, 0], trend[:, 1])
        spline_df = min(4, len(np.unique(covariate[ok])))
        evar = np.sum((e - emean_ok) ** 2) / max(n - spline_df, 1)
        emean = np.interp(covariate, trend[:, 0], trend[:, 1])

    evar = evar - np.mean(special.polygamma(1, half_df))

    if evar > 0:
        df_prior = float(2 * trigamma_inverse(evar)[0])
        s2_prior = np.exp(emean + special.digamma(df_prior / 2) - np.log(df_prior / 2))
    else:
        df_prior = np.inf
        s2_prior = np.exp(emean)

    if np.ndim(s2_prior) == 0:
        s2_prior = float(s2_prior)
    return df_prior, s2_prior


def squeeze_var(s2, df, df_prior, s2_prior) -> np.ndarray:
    """Posterior variances: weighted average of the sample and prior variances."""
    s2 = np.asarray(s2, dtype=float)
    df = np.broadcast_to(np.asarray(df, dtype=float), s2.shape)
    s2_prior = np.broadcast_to(np.asarray(s2_prior, dtype=float), s2.shape)

    if np.isinf(df_prior):
        return s2_prior.copy()

    with np.errstate(invalid="ignore"):
        posterior = (df * np.nan_to_num(s2) + df_prior * s2_prior) / (df + df_prior)
    # No residual information: fall back to the prior
    return np.where(np.isfinite(s2) & (df > 0), posterior, s2_prior)


def _tmixture_vector(tstat, stdev_unscaled, df, proportion, v0_lim=None):
    keep = np.isfinite(tstat) & np.isfinite(stdev_unscaled) & np.isfinite(df)
    tstat, stdev_unscaled, df = tstat[keep], stdev_unscaled[keep], df[keep]

    n_genes = len(tstat)
    n_target = int(np.ceil(proportion / 2 * n_genes))
    if n_target < 1:
        return np.nan

    p = max(n_target / n_genes, proportion)

    tstat = np.abs(tstat)
    max_df = np.max(df)
    lower = df < max_df
    if lower.any():
        # Map to the same tail probability at the largest df
        tail_p = stats.t.sf(tstat[lower], df[lower])
        tstat[lower] = stats.t.isf(tail_p, max_df)

    order = np.argsort(-tstat, kind="stable")[:n_target]
    tstat = tstat[order]
    v1 = stdev_unscaled[order] ** 2

    r = np.arange(1, n_target + 1)
    p0 = 2 * stats.t.sf(tstat, max_df)
    p_target = ((r - 0.5) / n_genes - (1 - p) * p0) / p

    v0 = np.zeros(n_target)
    pos = p_target > p0
    if pos.any():
        q_target = stats.t.isf(p_target[pos] / 2, max_df)
        v0[pos] = v1[pos] * ((tstat[pos] / q_target) ** 2 - 1)

    if v0_lim is not None:
        v0 = np.clip(v0, v0_lim[0], v0_lim[1])

    return float(np.mean(v0))


def _moderated_f(t: np.ndarray, cov: np.ndarray, df_total: np.ndarray):
    """Moderated F statistic across all contrasts of each gene."""
    n_genes, n_coef = t.shape
    f_stat = np.full(n_genes, np.nan)
    f_p = np.full(n_genes, np.nan)

    ok = np.isfinite(t).all(axis=1) & np.isfinite(cov).all(axis=(1, 2))
    if not ok.any():
        return f_stat, f_p

    cov_ok = cov[ok]
    sd = np.sqrt(np.einsum("gcc->gc", cov_ok))
    with np.errstate(invalid="ignore", divide="ignore"):
        corr = cov_ok / (sd[:, :, None] * sd[:, None, :])
    corr = np.nan_to_num(corr)

    rank = np.linalg.matrix_rank(corr)
    corr_inv = np.linalg.pinv(corr)
    t_ok = t[ok]
    quad = np.einsum("gc,gcd,gd->g", t_ok, corr_inv, t_ok)

    with np.errstate(invalid="ignore", divide="ignore"):
        f_stat[ok] = quad / rank
        f_p[ok] = stats.f.sf(f_stat[ok], rank, df_total[ok])

    return f_stat, f_p


def e_bayes(
    fit: LinearModelFit,
    proportion: float = 0.01,
    trend: bool = False,
    stdev_coef_lim: Tuple[float, float] = (0.1, 4.0),
) -> LinearModelFit:
    """
    Empirical Bayes moderation of the standard errors towards a common value.

    Parameters:
    -----------
    fit : LinearModelFit
        Output of lm_fit() or contrasts_fit()
    proportion : float
        Assumed proportion of differentially expressed genes (for B)
    trend : bool
        Let the prior variance depend on average expression
    stdev_coef_lim : tuple
        Limits for the standard deviation of true log fold changes (for B)

    Returns:
    --------
    LinearModelFit : Copy of the fit with moderated t, p-values, B and F
    """
    print("Applying empirical Bayes moderation...")

    coef = fit.coefficients.to_numpy()
    stdev = fit.stdev_unscaled.to_numpy()
    sigma = fit.sigma.to_numpy()
    df_residual = fit.df_residual.to_numpy()
    index = fit.coefficients.index
    columns = fit.coefficients.columns

    if not np.isfinite(sigma).any():
        raise ValueError("No residual degrees of freedom in the fit: cannot moderate variances")

    s2 = sigma**2
    covariate = fit.Amean.to_numpy() if trend else None

    df_prior, s2_prior = fit_f_dist(s2, df_residual, covariate=covariate)
    if np.all(np.isnan(s2_prior)):
        raise ValueError("Could not estimate the prior variance")

    s2_post = squeeze_var(s2, df_residual, df_prior, s2_prior)

    with np.errstate(invalid="ignore", divide="ignore"):
        t = coef / stdev / np.sqrt(s2_post)[:, None]

    df_pooled = np.nansum(df_residual)
    df_total = np.minimum(df_residual + df_prior, df_pooled)
    p_value = 2 * stats.t.sf(np.abs(t), df_total[:, None])

    # B-statistic
    var_prior_lim = np.asarray(stdev_coef_lim, dtype=float) ** 2 / np.nanmedian(s2_prior)
    var_prior = np.array(
        [
            _tmixture_vector(t[:, j], stdev[:, j], df_total, proportion, var_prior_lim)
            for j in range(t.shape[1])
        ]
    )
    if np.isnan(var_prior).any():
        var_prior[np.isnan(var_prior)] = 1 / np.nanmean(s2_prior)
        warnings.warn("Estimation of var.prior failed - set to default value")

    with np.errstate(invalid="ignore", divide="ignore"):
        r = (stdev**2 + var_prior[None, :]) / stdev**2
        t2 = t**2
        if df_prior > 1e6:
            kernel = t2 * (1 - 1 / r) / 2
        else:
            dft = df_total[:, None]
            kernel = (1 + dft) / 2 * np.log((t2 + dft) / (t2 / r + dft))
        lods = np.log(proportion / (1 - proportion)) - np.log(r) / 2 + kernel

    f_stat, f_p = _moderated_f(t, fit.cov_coefficients, df_total)

    prior_label = f"{df_prior:.2f}" if np.isfinite(df_prior) else "Inf"
    s2_label = (
        f"{s2_prior:.4g}" if np.ndim(s2_prior) == 0 else f"trend (median {np.median(s2_prior):.4g})"
    )
    print(f"  Prior df: {prior_label}, prior variance: {s2_label}")

    return replace(
        fit,
        df_prior=df_prior,
        s2_prior=s2_prior,
        s2_post=pd.Series(s2_post, index=index, name="s2_post"),
        var_prior=var_prior,
        df_total=pd.Series(df_total, index=index, name="df_total"),
        t=pd.DataFrame(t, index=index, columns=columns),
        p_value=pd.DataFrame(p_value, index=index, columns=columns),
        lods=pd.DataFrame(lods, index=index, columns=columns),
        F=pd.Series(f_stat, index=index, name="F"),
        F_p_value=pd.Series(f_p, index=index, name="F_p_value"),
        proportion=proportion,
        trend=trend,
    )


def _adjust_pvalues(p_values: np.ndarray, method: str) -> np.ndarray:
    """Adjust p-values, leaving missing values missing."""
    p_values = np.asarray(p_values, dtype=float)
    adjusted = np.full_like(p_values, np.nan)
    valid = np.isfinite(p_values)
    if not valid.any():
        return adjusted
    if method in (None, "none"):
        adjusted[valid] = p_values[valid]
    else:
        adjusted[valid] = multipletests(p_values[valid], method=method)[1]
    return adjusted


def _resolve_coef(fit: LinearModelFit, coef) -> str:
    names = fit.coef_names
    if isinstance(coef, (int, np.integer)):
        if not 0 <= coef < len(names):
            raise ValueError(f"coef index {coef} out of range for {len(names)} coefficients")
        return names[coef]
    if coef not in names:
        raise ValueError(f"Unknown coefficient '{coef}'. Available: {names}")
    return coef


def top_table(
    fit: LinearModelFit,
    coef=None,
    number: Optional[int] = 10,
    adjust_method: str = "fdr_bh",
    sort_by: str = "B",
    p_value: float = 1.0,
    lfc: float = 0.0,
) -> pd.DataFrame:
    """
    Table of the top-ranked probesets for one coefficient or contrast.

    With coef=None and several contrasts, returns the F-test table (one
    logFC column per contrast plus F).

    Parameters:
    -----------
    fit : LinearModelFit
        Output of e_bayes()
    coef : str or int, optional
        Contrast/coefficient name or position
    number : int, optional
        Maximum number of rows; None for all
    adjust_method : str
        statsmodels multipletests method, or 'none'
    sort_by : str
        'B', 't', 'P'/'p', 'logFC', 'AveExpr', 'F' or 'none'
    p_value : float
        Keep rows with adj.P.Val below this value
    lfc : float
        Keep rows with |logFC| at least this value

    Returns:
    --------
    pd.DataFrame : logFC, AveExpr, t, P.Value, adj.P.Val, B indexed by Probe_ID
    """
    if not fit.is_moderated:
        raise ValueError("Fit has no moderated statistics: run e_bayes() first")
    if sort_by not in SORT_BY_OPTIONS:
        raise ValueError(f"sort_by must be one of {SORT_BY_OPTIONS}")

    if coef is None and len(fit.coef_names) > 1:
        return _top_table_f(fit, number, adjust_method, sort_by, p_value, lfc)
    if coef is None:
        coef = fit.coef_names[0]
    name = _resolve_coef(fit, coef)

    table = pd.DataFrame(
        {
            "logFC": fit.coefficients[name],
            "AveExpr": fit.Amean,
            "t": fit.t[name],
            "P.Value": fit.p_value[name],
        }
    )
    table["adj.P.Val"] = _adjust_pvalues(table["P.Value"].to_numpy(), adjust_method)
    table["B"] = fit.lods[name]
    table.index.name = "Probe_ID"

    if p_value < 1:
        table = table[table["adj.P.Val"] <= p_value]
    if lfc > 0:
        table = table[table["logFC"].abs() >= lfc]

    if sort_by == "B":
        table = table.sort_values("B", ascending=False, na_position="last")
    elif sort_by == "t":
        table = table.iloc[np.argsort(-table["t"].abs().fillna(-np.inf).to_numpy(), kind="stable")]
    elif sort_by in ("P", "p"):
        table = table.sort_values("P.Value", na_position="last", kind="stable")
    elif sort_by == "logFC":
        table = table.iloc[np.argsort(-table["logFC"].abs().fillna(-np.inf).to_numpy(), kind="stable")]
    elif sort_by == "AveExpr":
        table = table.sort_values("AveExpr", ascending=False, na_position="last")
    elif sort_by == "F":
        raise ValueError("sort_by='F' applies to F-test tables only")

    if number is not None and np.isfinite(number):
        table = table.head(int(number))

    return table


def _top_table_f(fit, number, adjust_method, sort_by, p_value, lfc):
    table = fit.coefficients.copy()
    table["AveExpr"] = fit.Amean
    table["F"] = fit.F
    table["P.Value"] = fit.F_p_value
    table["adj.P.Val"] = _adjust_pvalues(table["P.Value"].to_numpy(), adjust_method)
    table.index.name = "Probe_ID"

    if p_value < 1:
        table = table[table["adj.P.Val"] <= p_value]
    if lfc > 0:
        table = table[(fit.coefficients.loc[table.index].abs() >= lfc).any(axis=1)]

    if sort_by in ("F", "B", "t", "P", "p"):
        table = table.sort_values("P.Value", na_position="last", kind="stable")
    elif sort_by == "AveExpr":
        table = table.sort_values("AveExpr", ascending=False, na_position="last")

    if number is not None and np.isfinite(number):
        table = table.head(int(number))
    return table


def decide_tests(
    fit: LinearModelFit,
    method: str = "separate",
    adjust_method: str = "fdr_bh",
    p_value: float = 0.05,
    lfc: float = 0.0,
) -> pd.DataFrame:
    """
    Classify each probeset as up (1), down (-1) or not significant (0) per contrast.

    method='separate' adjusts each contrast on its own; method='global'
    adjusts all contrasts together as one set of tests.
    """
    if not fit.is_moderated:
        raise ValueError("Fit has no moderated statistics: run e_bayes() first")

    p = fit.p_value.to_numpy()
    if method == "separate":
        adjusted = np.column_stack(
            [_adjust_pvalues(p[:, j], adjust_method) for j in range(p.shape[1])]
        )
    elif method == "global":
        adjusted = _adjust_pvalues(p.ravel(), adjust_method).reshape(p.shape)
    else:
        raise ValueError("method must be 'separate' or 'global'")

    coef = fit.coefficients.to_numpy()
    with np.errstate(invalid="ignore"):
        significant = (adjusted < p_value) & (np.abs(coef) >= lfc)
    results = np.where(significant, np.sign(coef), 0).astype(int)

    return pd.DataFrame(results, index=fit.coefficients.index, columns=fit.coefficients.columns)


def summarize_decide_tests(decisions: pd.DataFrame) -> pd.DataFrame:
    """Count Down / NotSig / Up probesets per contrast."""
    summary = pd.DataFrame(
        {
            col: [(decisions[col] == -1).sum(), (decisions[col] == 0).sum(), (decisions[col] == 1).sum()]
            for col in decisions.columns
        },
        index=["Down", "NotSig", "Up"],
    )
    return summary


def run_welch_t_test(expression, metadata_df, config, contrast=None):
    """Run a per-probeset Welch t-test of group_labels[1] vs group_labels[0]"""

    if contrast is None:
        reference, test = [str(_normalize_group_value(g)) for g in config.group_labels[:2]]
    else:
        test, reference = contrast
    contrast_name = f"{make_valid_name(test)}-{make_valid_name(reference)}"

    print(f"Running Welch t-test analysis ({test} vs {reference})...")

    groups = metadata_df.set_index("Sample")[config.group_column]
    group1_samples = [s for s in groups.index[groups == reference] if s in expression.columns]
    group2_samples = [s for s in groups.index[groups == test] if s in expression.columns]

    results = []
    n_probesets = len(expression)

    for i, (probe_id, values) in enumerate(expression.iterrows()):
        if (i + 1) % 5000 == 0:
            print(f"  Processed {i + 1}/{n_probesets} probesets...")

        group1_data = values[group1_samples].dropna()
        group2_data = values[group2_samples].dropna()

        if len(group1_data) < 2 or len(group2_data) < 2:
            results.append(_create_empty_result(probe_id, "Insufficient group data"))
            continue

        try:
            t_stat, p_value = ttest_ind(group2_data, group1_data, equal_var=False)

            pooled_std = np.sqrt(
                (
                    (len(group1_data) - 1) * group1_data.var()
                    + (len(group2_data) - 1) * group2_data.var()
                )
                / (len(group1_data) + len(group2_data) - 2)
            )
            cohens_d = (
                (group2_data.mean() - group1_data.mean()) / pooled_std
                if pooled_std > 0
                else 0
            )

            results.append(
                {
                    "Probe_ID": probe_id,
                    "logFC": group2_data.mean() - group1_data.mean(),
                    "AveExpr": pd.concat([group1_data, group2_data]).mean(),
                    "t": t_stat,
                    "P.Value": p_value,
                    "B": np.nan,
                    "n_group1": len(group1_data),
                    "n_group2": len(group2_data),
                    "cohens_d": cohens_d,
                    "test_method": "Welch t-test",
                }
            )
        except (ValueError, RuntimeError, ZeroDivisionError) as e:
            results.append(_create_empty_result(probe_id, f"Analysis failed: {e}"))

    print(f"✓ Welch t-test completed for {len(results)} probesets")
    results_df = pd.DataFrame(results).set_index("Probe_ID")
    return contrast_name, results_df


def _create_empty_result(probe_id, reason):
    """Create empty result for failed analysis"""
    return {
        "Probe_ID": probe_id,
        "logFC": np.nan,
        "AveExpr": np.nan,
        "t": np.nan,
        "P.Value": np.nan,
        "B": np.nan,
        "test_method": f"Failed: {reason}",
    }


def _add_significance_columns(results_df, config):
    """Flag rows passing the configured thresholds and label FDR categories"""
    p_column = "adj.P.Val" if config.use_adjusted_pvalue == "adjusted" else "P.Value"
    results_df["Significant"] = (results_df[p_column] < config.p_value_threshold) & (
        results_df["logFC"].abs() >= config.fold_change_threshold
    )

    results_df["Significance"] = "Not significant"
    results_df.loc[results_df["adj.P.Val"] < 0.05, "Significance"] = (
        "Significant (FDR < 0.05)"
    )
    results_df.loc[results_df["adj.P.Val"] < 0.01, "Significance"] = (
        "Highly significant (FDR < 0.01)"
    )
    return results_df


def apply_multiple_testing_correction(results_df, config):
    """Apply multiple testing correction"""

    if "P.Value" not in results_df.columns:
        print("Warning: No P.Value column found for correction")
        return results_df

    valid_pvalues = results_df["P.Value"].dropna()

    if len(valid_pvalues) == 0:
        print("Warning: No valid p-values found")
        results_df["adj.P.Val"] = np.nan
        results_df["Significant"] = False
        return results_df

    correction_method = config.correction_method
    results_df["adj.P.Val"] = _adjust_pvalues(results_df["P.Value"].to_numpy(), correction_method)

    print("Multiple testing correction applied:")
    if correction_method in (None, "none"):
        print("  Method: none (no correction)")
    else:
        print(f"  Method: {correction_method}")
    print(f"  Significant probesets (adj.P.Val < 0.05): {(results_df['adj.P.Val'] < 0.05).sum()}")

    return _add_significance_columns(results_df, config)


def extract_degs(
    results: pd.DataFrame,
    p_threshold: float = 0.05,
    lfc_threshold: float = 1.0,
    use_adjusted_pvalue: str = "adjusted",
    enable_pvalue_fallback: bool = True,
) -> pd.DataFrame:
    """
    Select differentially expressed genes from a result table.

    If no probeset passes the adjusted p-value and the fallback is enabled,
    the unadjusted P.Value is used instead (reported with a warning).

    Returns:
    --------
    pd.DataFrame : DEG rows with a 'Regulation' column ('Up' / 'Down').
        degs.attrs['pvalue_column'] records the p-value column used.
    """
    p_column = "adj.P.Val" if use_adjusted_pvalue == "adjusted" else "P.Value"
    if p_column not in results.columns:
        raise ValueError(f"Results have no '{p_column}' column")

    passes_lfc = results["logFC"].abs() >= lfc_threshold
    selected = (results[p_column] < p_threshold) & passes_lfc

    if p_column == "adj.P.Val" and not selected.any() and enable_pvalue_fallback:
        print(
            f"Warning: No genes pass adj.P.Val < {p_threshold}; "
            "falling back to unadjusted P.Value"
        )
        p_column = "P.Value"
        selected = (results[p_column] < p_threshold) & passes_lfc

    degs = results.loc[selected].copy()
    degs["Regulation"] = np.where(degs["logFC"] > 0, "Up", "Down")
    degs = degs.sort_values(p_column, kind="stable")
    degs.attrs["pvalue_column"] = p_column

    n_up = int((degs["Regulation"] == "Up").sum())
    print(
        f"DEGs ({p_column} < {p_threshold}, |logFC| ≥ {lfc_threshold}): "
        f"{len(degs)} ({n_up} up, {len(degs) - n_up} down)"
    )
    return degs


def _default_contrasts(levels):
    """Every level against the first (reference) level"""
    reference = make_valid_name(levels[0])
    return [f"{make_valid_name(level)}-{reference}" for level in levels[1:]]


def run_comprehensive_statistical_analysis(expression, sample_metadata, config):
    """
    Comprehensive differential expression analysis

    Parameters:
    -----------
    expression : pd.DataFrame
        Expression data (probesets x samples)
    sample_metadata : dict
        Dictionary mapping sample names to metadata
    config : StatisticalConfig
        Configuration object with analysis parameters

    Returns:
    --------
    dict
        'results' (contrast name -> result table), 'fit', 'design',
        'contrast_matrix', 'decide_tests' and 'metadata_df'
    """

    print("=" * 60)
    print("COMPREHENSIVE STATISTICAL ANALYSIS")
    print("=" * 60)

    try:
        config.validate()
    except ValueError as e:
        raise ValueError(f"Configuration error: {e}") from e

    # Step 0: Handle log transformation if needed
    statistical_data = _apply_log_transformation_if_needed(expression, config)

    # Step 1: Prepare metadata
    print("Step 1: Preparing sample metadata...")
    sample_columns = [col for col in statistical_data.columns if col in sample_metadata]
    if len(sample_columns) < len(statistical_data.columns):
        print(
            f"  Filtered to {len(sample_columns)} samples with metadata (from {len(statistical_data.columns)} total)"
        )
    metadata_df = prepare_metadata_dataframe(sample_metadata, sample_columns, config)

    if config.group_labels:
        levels = [str(_normalize_group_value(label)) for label in config.group_labels]
    else:
        levels = sorted(metadata_df[config.group_column].unique())
    print(f"  Design levels: {levels}")

    # Step 2: Fit
    print(f"\nStep 2: Running {config.statistical_test_method} analysis...")
    output = {
        "results": {},
        "fit": None,
        "design": None,
        "contrast_matrix": None,
        "decide_tests": None,
        "metadata_df": metadata_df,
    }

    if config.statistical_test_method == "limma":
        design = build_design_matrix(
            metadata_df, config.group_column, levels=levels, covariates=config.covariates
        )
        contrast_texts = list(config.contrasts) or _default_contrasts(levels)
        contrast_matrix = make_contrasts(contrast_texts, design.attrs["group_columns"])
        validate_design(design, contrast_matrix, min_replicates=1)

        print(f"  Design: {design.shape[0]} arrays x {design.shape[1]} coefficients")
        print(f"  Contrasts: {list(contrast_matrix.columns)}")
        if config.covariates:
            print(f"  Covariates: {config.covariates}")

        fit = lm_fit(statistical_data, design)
        fit = contrasts_fit(fit, contrast_matrix)
        fit = e_bayes(
            fit,
            proportion=config.ebayes_proportion,
            trend=config.ebayes_trend,
            stdev_coef_lim=config.stdev_coef_lim,
        )

        print("\nStep 3: Building result tables...")
        for name in contrast_matrix.columns:
            table = top_table(
                fit,
                coef=name,
                number=None,
                adjust_method=config.correction_method,
                sort_by=config.sort_by,
            )
            output["results"][name] = _add_significance_columns(table, config)

        output["fit"] = fit
        output["design"] = design
        output["contrast_matrix"] = contrast_matrix
        output["decide_tests"] = decide_tests(
            fit,
            adjust_method=config.correction_method,
            p_value=config.p_value_threshold,
            lfc=config.fold_change_threshold,
        )
        print("\nDecision summary:")
        print(summarize_decide_tests(output["decide_tests"]).to_string())
    else:
        name, results_df = run_welch_t_test(statistical_data, metadata_df, config)
        results_df = apply_multiple_testing_correction(results_df, config)
        output["results"][name] = results_df.sort_values("P.Value", na_position="last")

    print("\n✓ Statistical analysis completed!")
    for name, table in output["results"].items():
        print(
            f"  {name}: {table['P.Value'].notna().sum()} probesets tested, "
            f"{(table['adj.P.Val'] < 0.05).sum()} with adj.P.Val < 0.05"
        )

    return output


def display_analysis_summary(differential_results, config, label_top_n=10):
    """
    Display summary of differential expression results

    Parameters:
    -----------
    differential_results : pd.DataFrame or dict
        A result table, or contrast name -> result table
    config : StatisticalConfig
        Configuration object with analysis parameters
    label_top_n : int
        Number of top probesets to display

    Returns:
    --------
    dict
        Summary statistics (per contrast when given a dict)
    """
    if isinstance(differential_results, dict):
        return {
            name: display_analysis_summary(table, config, label_top_n)
            for name, table in differential_results.items()
        }

    if differential_results is None or len(differential_results) == 0:
        print("⚠️ No differential analysis results available")
        return {}

    print("=" * 60)
    print("STATISTICAL ANALYSIS SUMMARY")
    print("=" * 60)

    total_probesets = len(differential_results)
    valid_results = int(differential_results["P.Value"].notna().sum())
    significant_005 = int((differential_results["adj.P.Val"] < 0.05).sum())
    significant_001 = int((differential_results["adj.P.Val"] < 0.01).sum())

    print("Analysis Overview:")
    print(f"  Method: {config.statistical_test_method.upper()}")
    print(f"  Total probesets analyzed: {total_probesets:,}")
    print(f"  Probesets with valid results: {valid_results:,}")
    print(f"  Significant (adj.P.Val < 0.05): {significant_005:,}")
    print(f"  Highly significant (adj.P.Val < 0.01): {significant_001:,}")

    if valid_results == 0:
        print("\n❌ No valid statistical results found")
        return {}

    successful_results = differential_results[differential_results["P.Value"].notna()]
    print(f"\n=== TOP {label_top_n} MOST SIGNIFICANT PROBESETS ===")
    top_results = successful_results.nsmallest(label_top_n, "P.Value")

    display_cols = ["Gene", "logFC", "AveExpr", "t", "P.Value", "adj.P.Val", "B"]
    available_cols = [col for col in display_cols if col in top_results.columns]
    display_df = top_results[available_cols].copy()

    for col in display_df.columns:
        if col in ["P.Value", "adj.P.Val"]:
            display_df[col] = display_df[col].apply(
                lambda x: f"{x:.2e}" if pd.notna(x) and x < 0.01 else f"{x:.6f}" if pd.notna(x) else "N/A"
            )
        elif col in ["logFC", "AveExpr", "t", "B"]:
            display_df[col] = display_df[col].apply(
                lambda x: f"{x:.4f}" if pd.notna(x) else "N/A"
            )

    print(display_df.to_string())

    n_up = int(((successful_results["adj.P.Val"] < config.p_value_threshold)
                & (successful_results["logFC"] >= config.fold_change_threshold)).sum())
    n_down = int(((successful_results["adj.P.Val"] < config.p_value_threshold)
                  & (successful_results["logFC"] <= -config.fold_change_threshold)).sum())

    summary = {
        "total_probesets": total_probesets,
        "valid_results": valid_results,
        "significant_005": significant_005,
        "significant_001": significant_001,
        "n_up": n_up,
        "n_down": n_down,
        "analysis_method": config.statistical_test_method,
        "success_rate": valid_results / total_probesets if total_probesets > 0 else 0,
    }

    print("\n✓ Analysis summary complete!")

    return summary
