"""
Cell and gene filtering based on QC metrics.

Thresholds are always supplied by the caller (via QCThresholds or the
pipeline config); nothing here hard-codes a dataset-specific cut-off such as
"10% mitochondrial". Fixed cut-offs and adaptive MAD-based cut-offs can be
combined; a cell is discarded if any enabled criterion flags it.

Engineering Design:
    - CellQCFilter records a 'discard' column on the input container (so the
      decision can be inspected and plotted) and returns the passing subset
    - Per-criterion counts are kept in a QCFilterResult for reporting
    - FeatureFilter removes genes detected in too few cells

Examples:
    >>> thresholds = QCThresholds(min_sum=500, min_detected=200, max_mito_percent=10)
    >>> qc_filter = CellQCFilter(thresholds)
    >>> filtered = qc_filter.apply(pbmc)
    >>> qc_filter.result_.by_criterion
    {'low_sum': 12, 'low_detected': 3, 'high_mito': 57}
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Dict, Optional

import numpy as np

from cellmatrix.core.annotated_matrix import AnnotatedMatrix
from cellmatrix.core.transform import Transform
from cellmatrix.quality.metrics import _detected, is_outlier, mad_thresholds

logger = logging.getLogger(__name__)

__all__ = ['QCThresholds', 'QCFilterResult', 'CellQCFilter', 'FeatureFilter']


@dataclass
class QCThresholds:
    """
    Caller-supplied QC cut-offs. None disables a criterion.

    Attributes:
        min_sum: Minimum library size (total counts)
        min_detected: Minimum number of detected genes
        max_mito_percent: Maximum mitochondrial percentage (0-100)
        mito_nmads: If set, also discard cells whose mitochondrial percentage
            is more than this many MADs above the median
        mito_subset: Name of the PerCellQC subset holding mitochondrial genes
    """
    min_sum: Optional[float] = None
    min_detected: Optional[int] = None
    max_mito_percent: Optional[float] = None
    mito_nmads: Optional[float] = None
    mito_subset: str = "Mito"

    def __post_init__(self):
        if self.min_sum is not None and self.min_sum < 0:
            raise ValueError(f"min_sum must be non-negative, got {self.min_sum}")
        if self.min_detected is not None and self.min_detected < 0:
            raise ValueError(f"min_detected must be non-negative, got {self.min_detected}")
        if self.max_mito_percent is not None and not (0 <= self.max_mito_percent <= 100):
            raise ValueError(f"max_mito_percent must be in [0, 100], got {self.max_mito_percent}")
        if self.mito_nmads is not None and self.mito_nmads <= 0:
            raise ValueError(f"mito_nmads must be positive, got {self.mito_nmads}")

    @property
    def mito_column(self) -> str:
        return f"subsets_{self.mito_subset}_percent"


@dataclass
class QCFilterResult:
    """Outcome of cell filtering with per-criterion counts."""
    n_cells: int
    n_discarded: int
    by_criterion: Dict[str, int] = field(default_factory=dict)
    thresholds: Dict[str, object] = field(default_factory=dict)

    @property
    def n_kept(self) -> int:
        return self.n_cells - self.n_discarded

    @property
    def keep_rate(self) -> float:
        return self.n_kept / self.n_cells if self.n_cells > 0 else 0.0


class CellQCFilter(Transform):
    """
    Discard low-quality cells using per-cell QC metrics.

    Requires PerCellQC to have run (columns 'sum', 'detected' and the
    mitochondrial percentage column, as far as the enabled criteria need).

    The input container gains a boolean 'discard' column; apply() returns
    the subset of cells where it is False.
    """

    def __init__(self, thresholds: QCThresholds, discard_column: str = "discard"):
        super().__init__(name="CellQCFilter", params=asdict(thresholds))
        self.thresholds = thresholds
        self.discard_column = discard_column
        self.result_: Optional[QCFilterResult] = None

    def _required_columns(self) -> list[str]:
        t = self.thresholds
        required = []
        if t.min_sum is not None:
            required.append("sum")
        if t.min_detected is not None:
            required.append("detected")
        if t.max_mito_percent is not None or t.mito_nmads is not None:
            required.append(t.mito_column)
        return required

    def validate(self, matrix: AnnotatedMatrix) -> list[str]:
        errors = super().validate(matrix)
        missing = [c for c in self._required_columns() if c not in matrix.sample_metadata.columns]
        if missing:
            errors.append(f"QC metric column(s) missing, run PerCellQC first: {missing}")
        return errors

    def apply(self, matrix: AnnotatedMatrix) -> AnnotatedMatrix:
        self._check(matrix)
        t = self.thresholds
        meta = matrix.sample_metadata
        criteria: Dict[str, np.ndarray] = {}

        if t.min_sum is not None:
            criteria["low_sum"] = meta["sum"].to_numpy() < t.min_sum
        if t.min_detected is not None:
            criteria["low_detected"] = meta["detected"].to_numpy() < t.min_detected
        if t.max_mito_percent is not None:
            criteria["high_mito"] = meta[t.mito_column].to_numpy() > t.max_mito_percent
        if t.mito_nmads is not None:
            mito = meta[t.mito_column].to_numpy()
            criteria["mito_outlier"] = is_outlier(mito, nmads=t.mito_nmads, type="higher")
            _, upper = mad_thresholds(mito, nmads=t.mito_nmads)
            logger.info("Adaptive mitochondrial threshold: %.2f%%", upper)

        discard = np.zeros(matrix.n_samples, dtype=bool)
        for mask in criteria.values():
            discard |= mask

        self.result_ = QCFilterResult(
            n_cells=matrix.n_samples,
            n_discarded=int(discard.sum()),
            by_criterion={name: int(mask.sum()) for name, mask in criteria.items()},
            thresholds=asdict(t),
        )
        for name, count in self.result_.by_criterion.items():
            logger.info("  %s: %d cells", name, count)
        logger.info(
            "Keeping %d of %d cells (%.1f%%)",
            self.result_.n_kept, self.result_.n_cells, 100 * self.result_.keep_rate,
        )

        matrix.set_sample_column(self.discard_column, discard)
        return matrix.subset(samples=~discard)


class FeatureFilter(Transform):
    """
    Keep features detected (count > 0) in at least min_cells cells.

    Params:
        min_cells: Minimum number of expressing cells
        assay: Assay holding counts (default: the primary matrix)
    """

    def __init__(self, min_cells: int = 1, assay: Optional[str] = None):
        if min_cells < 0:
            raise ValueError(f"min_cells must be non-negative, got {min_cells}")
        super().__init__(name="FeatureFilter", params={"min_cells": min_cells, "assay": assay})
        self.min_cells = min_cells
        self.assay = assay

    def apply(self, matrix: AnnotatedMatrix) -> AnnotatedMatrix:
        self._check(matrix)
        counts = matrix.data if self.assay is None else matrix.get_assay(self.assay)
        n_cells = _detected(counts, axis=1)
        keep = n_cells >= self.min_cells
        logger.info(
            "Keeping %d of %d features detected in >= %d cells",
            int(keep.sum()), matrix.n_features, self.min_cells,
        )
        return matrix.subset(features=keep)
