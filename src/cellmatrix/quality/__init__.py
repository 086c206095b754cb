"""
Quality control for single-cell count matrices.

Components:
    PerCellQC: library size, detected genes, subset (mitochondrial) percentages
    PerFeatureQC: mean count and percent of cells expressing each gene
    is_outlier: MAD-based outlier calls for adaptive thresholds
    CellQCFilter: discard cells failing caller-supplied QCThresholds
    FeatureFilter: drop genes detected in too few cells

Quality control workflow:
    1. Compute metrics (PerCellQC) - annotates, removes nothing
    2. Inspect distributions, choose thresholds
    3. Filter (CellQCFilter) - records 'discard', returns passing cells

Examples:
    >>> from cellmatrix.quality import PerCellQC, CellQCFilter, QCThresholds
    >>> PerCellQC(subsets={"Mito": "MT-"}).apply(pbmc)
    >>> kept = CellQCFilter(QCThresholds(max_mito_percent=10)).apply(pbmc)
"""

from cellmatrix.quality.metrics import (
    PerCellQC,
    PerFeatureQC,
    is_outlier,
    mad_thresholds,
    feature_subset_mask,
)
from cellmatrix.quality.filtering import (
    QCThresholds,
    QCFilterResult,
    CellQCFilter,
    FeatureFilter,
)

__all__ = [
    # Metrics
    'PerCellQC',
    'PerFeatureQC',
    'is_outlier',
    'mad_thresholds',
    'feature_subset_mask',
    # Filtering
    'QCThresholds',
    'QCFilterResult',
    'CellQCFilter',
    'FeatureFilter',
]
