"""
Per-cell and per-feature quality-control metrics.

Biological Context:
    Low-quality droplets show up as cells with
    - few total counts (small library; empty or broken droplet)
    - few detected genes (little captured RNA)
    - a high fraction of mitochondrial counts (cytoplasmic RNA lost through
      a ruptured membrane, mitochondrial transcripts retained)

    These metrics are stored as sample metadata so that thresholds can be
    chosen by inspection before anything is removed. Per-feature metrics
    (mean count, fraction of cells expressing) drive gene filtering.

Column names follow the scater convention so downstream code reads the same
regardless of which tool produced them:

    sum, detected, subsets_<name>_sum, subsets_<name>_detected,
    subsets_<name>_percent, total

Examples:
    >>> from cellmatrix.quality.metrics import PerCellQC, is_outlier
    >>> PerCellQC(subsets={"Mito": "MT-"}).apply(pbmc)
    >>> pbmc.sample_metadata[["sum", "detected", "subsets_Mito_percent"]].describe()
    >>> low_lib = is_outlier(pbmc.get_sample_column("sum"), nmads=3, log=True, type="lower")
"""

from __future__ import annotations

import logging
from typing import Any, Literal, Mapping, Optional

import numpy as np
import pandas as pd
import scanpy as sc
import scipy.sparse as sp

from cellmatrix.core.annotated_matrix import AnnotatedMatrix
from cellmatrix.core.selectors import resolve_selector
from cellmatrix.core.transform import Transform
from cellmatrix.utils.anndata_bridge import to_anndata

logger = logging.getLogger(__name__)

__all__ = ['PerCellQC', 'PerFeatureQC', 'is_outlier', 'mad_thresholds', 'feature_subset_mask']


def _detected(m, axis: int) -> np.ndarray:
    if sp.issparse(m):
        return np.asarray((m > 0).sum(axis=axis)).ravel().astype(np.int64)
    return (np.asarray(m) > 0).sum(axis=axis).astype(np.int64)


def feature_subset_mask(
    matrix: AnnotatedMatrix,
    subset: Any,
    symbol_column: str = "Symbol",
) -> np.ndarray:
    """
    Resolve a feature subset definition to a boolean mask.

    Args:
        matrix: Container whose features are matched
        subset: Either a str prefix (matched case-insensitively against
            symbol_column, or the feature names if that column is absent),
            or any feature selector (mask, positions, names)
        symbol_column: Feature metadata column holding gene symbols

    Returns:
        Boolean mask of length n_features
    """
    if isinstance(subset, str):
        if symbol_column in matrix.feature_metadata.columns:
            symbols = matrix.feature_metadata[symbol_column].astype(str)
        elif matrix.feature_names is not None:
            symbols = pd.Series(matrix.feature_names.astype(str))
        else:
            raise ValueError(
                f"Cannot match prefix '{subset}': no '{symbol_column}' column and no feature names"
            )
        return symbols.str.upper().str.startswith(subset.upper()).to_numpy()

    positions = resolve_selector(subset, matrix.n_features, matrix.feature_names, "feature")
    mask = np.zeros(matrix.n_features, dtype=bool)
    mask[positions] = True
    return mask


def mad_thresholds(
    values: np.ndarray | pd.Series,
    nmads: float = 3.0,
    log: bool = False,
) -> tuple[float, float]:
    """
    Median ± nmads × scaled MAD, on the original scale.

    The MAD is scaled by 1.4826 to be consistent with the standard deviation
    for normal data. With log=True the thresholds are computed on log1p
    values and transformed back.
    """
    x = np.asarray(values, dtype=float)
    x = x[~np.isnan(x)]
    if x.size == 0:
        return (np.nan, np.nan)
    if log:
        x = np.log1p(x)
    median = np.median(x)
    mad = 1.4826 * np.median(np.abs(x - median))
    lower, upper = median - nmads * mad, median + nmads * mad
    if log:
        lower, upper = np.expm1(lower), np.expm1(upper)
    return float(lower), float(upper)


def is_outlier(
    values: np.ndarray | pd.Series,
    nmads: float = 3.0,
    log: bool = False,
    type: Literal["lower", "higher", "both"] = "both",
) -> np.ndarray:
    """
    Flag values more than nmads scaled MADs from the median.

    Args:
        values: Per-cell metric (e.g., library size)
        nmads: Number of MADs defining the threshold
        log: Compute thresholds on log1p scale (for count-like metrics)
        type: Which tail(s) to flag

    Returns:
        Boolean array, True for outliers (NaN is never an outlier)

    Examples:
        >>> is_outlier(np.array([10, 11, 9, 10, 50]), nmads=3, type="higher")
        array([False, False, False, False,  True])
    """
    if type not in ("lower", "higher", "both"):
        raise ValueError(f"type must be 'lower', 'higher' or 'both', got '{type}'")
    if nmads <= 0:
        raise ValueError(f"nmads must be positive, got {nmads}")

    x = np.asarray(values, dtype=float)
    lower, upper = mad_thresholds(x, nmads=nmads, log=log)
    flagged = np.zeros(x.shape, dtype=bool)
    with np.errstate(invalid="ignore"):
        if type in ("lower", "both"):
            flagged |= x < lower
        if type in ("higher", "both"):
            flagged |= x > upper
    return flagged


class PerCellQC(Transform):
    """
    Add per-cell QC metrics to sample metadata.

    Metrics come from scanpy.pp.calculate_qc_metrics and are renamed to the
    scater column names listed above.

    Params:
        subsets: Mapping of subset name to a feature prefix or selector,
            e.g. {"Mito": "MT-"}. Each subset adds sum/detected/percent columns.
        assay: Assay holding raw counts (default: the primary matrix)
        symbol_column: Feature metadata column used for prefix matching
    """

    def __init__(
        self,
        subsets: Optional[Mapping[str, Any]] = None,
        assay: Optional[str] = None,
        symbol_column: str = "Symbol",
    ):
        subsets = dict(subsets) if subsets is not None else {"Mito": "MT-"}
        super().__init__(
            name="PerCellQC",
            params={
                "subsets": {k: v if isinstance(v, str) else "<selector>" for k, v in subsets.items()},
                "assay": assay,
                "symbol_column": symbol_column,
            },
        )
        self.subsets = subsets
        self.assay = assay
        self.symbol_column = symbol_column

    def validate(self, matrix: AnnotatedMatrix) -> list[str]:
        errors = super().validate(matrix)
        if self.assay is not None and not matrix.has_assay(self.assay):
            errors.append(f"Assay '{self.assay}' not found; available: {matrix.assay_names}")
        return errors

    def apply(self, matrix: AnnotatedMatrix) -> AnnotatedMatrix:
        self._check(matrix)
        adata = to_anndata(matrix, assay=self.assay)

        # scanpy keys subsets by boolean var columns
        keys: dict[str, str] = {}
        masks: dict[str, np.ndarray] = {}
        for i, (name, definition) in enumerate(self.subsets.items()):
            mask = feature_subset_mask(matrix, definition, self.symbol_column)
            if not mask.any():
                logger.warning("QC subset '%s' matched no features", name)
            keys[name] = f"_qc_subset_{i}"
            masks[name] = mask
            adata.var[keys[name]] = mask

        obs_metrics, _ = sc.pp.calculate_qc_metrics(
            adata, qc_vars=list(keys.values()), percent_top=None, log1p=False, inplace=False
        )

        # Compute everything before touching the container
        columns: dict[str, np.ndarray] = {}
        totals = obs_metrics["total_counts"].to_numpy(dtype=float)
        columns["sum"] = totals
        columns["detected"] = obs_metrics["n_genes_by_counts"].to_numpy(dtype=np.int64)

        for name, key in keys.items():
            mask = masks[name]
            sub_sum = obs_metrics[f"total_counts_{key}"].to_numpy(dtype=float)
            percent = obs_metrics[f"pct_counts_{key}"].to_numpy(dtype=float)
            if mask.any():
                sub_metrics, _ = sc.pp.calculate_qc_metrics(
                    adata[:, mask], percent_top=None, log1p=False, inplace=False
                )
                sub_detected = sub_metrics["n_genes_by_counts"].to_numpy(dtype=np.int64)
            else:
                sub_detected = np.zeros(matrix.n_samples, dtype=np.int64)
            columns[f"subsets_{name}_sum"] = sub_sum
            columns[f"subsets_{name}_detected"] = sub_detected
            # Empty libraries have an undefined percentage; report 0
            columns[f"subsets_{name}_percent"] = np.where(totals > 0, np.nan_to_num(percent), 0.0)
            logger.info("QC subset '%s': %d features", name, int(mask.sum()))

        columns["total"] = totals.copy()

        for name, values in columns.items():
            matrix.set_sample_column(name, values)
        return matrix


class PerFeatureQC(Transform):
    """
    Add per-feature QC metrics to feature metadata.

    Adds:
        mean: mean count across cells
        detected: percentage of cells with a nonzero count
    """

    def __init__(self, assay: Optional[str] = None):
        super().__init__(name="PerFeatureQC", params={"assay": assay})
        self.assay = assay

    def validate(self, matrix: AnnotatedMatrix) -> list[str]:
        errors = super().validate(matrix)
        if self.assay is not None and not matrix.has_assay(self.assay):
            errors.append(f"Assay '{self.assay}' not found; available: {matrix.assay_names}")
        return errors

    def apply(self, matrix: AnnotatedMatrix) -> AnnotatedMatrix:
        self._check(matrix)
        adata = to_anndata(matrix, assay=self.assay)
        _, var_metrics = sc.pp.calculate_qc_metrics(
            adata, percent_top=None, log1p=False, inplace=False
        )

        means = var_metrics["mean_counts"].to_numpy(dtype=float)
        detected = 100 * var_metrics["n_cells_by_counts"].to_numpy(dtype=float) / matrix.n_samples

        matrix.set_feature_column("mean", means)
        matrix.set_feature_column("detected", detected)
        return matrix
