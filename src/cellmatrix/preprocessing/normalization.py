"""
Library-size normalization and log transformation.

Biological Context:
    Cells are sequenced to different depths, so raw counts are not directly
    comparable. Library-size factors rescale every cell to the average depth:

        size_factor_j = library_size_j / mean(library_size)
        logcounts_ij  = log_base(counts_ij / size_factor_j + 1)

    Centering the factors at 1 keeps normalized values on the scale of the
    original counts.

Engineering Design:
    - Size factors are stored on the container and reused by later steps
    - Columns are normalized in chunks through joblib; parallelism is
      configured by an explicit ExecutionConfig passed to the step, never by
      a process-wide backend
    - The scaling and log1p themselves are scanpy's (sc.pp.normalize_total,
      sc.pp.log1p); sparse input stays sparse

Examples:
    >>> normalizer = LibrarySizeNormalizer(execution=ExecutionConfig(n_jobs=4))
    >>> normalizer.apply(pbmc)
    >>> pbmc.get_assay("logcounts")
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import anndata as ad
import numpy as np
import scanpy as sc
import scipy.sparse as sp
from joblib import Parallel, delayed

from cellmatrix.core.annotated_matrix import AnnotatedMatrix
from cellmatrix.core.transform import Transform
from cellmatrix.utils.anndata_bridge import transposed_copy

logger = logging.getLogger(__name__)

__all__ = ['ExecutionConfig', 'LibrarySizeNormalizer', 'library_size_factors', 'log_normalize']


@dataclass
class ExecutionConfig:
    """
    Parallel execution settings for chunked computations.

    Attributes:
        n_jobs: Number of joblib workers (-1 for all CPUs, 1 for serial)
        chunk_size: Number of cells per work item
        backend: joblib backend name (None for joblib's default)
    """
    n_jobs: int = 1
    chunk_size: int = 2048
    backend: Optional[str] = None

    def __post_init__(self):
        if self.n_jobs == 0:
            raise ValueError("n_jobs must be non-zero")
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")


def library_size_factors(counts) -> np.ndarray:
    """
    Size factors proportional to library size, centered at mean 1.

    Raises:
        ValueError: If any cell has zero total counts
    """
    library_sizes = np.asarray(counts.sum(axis=0), dtype=float).ravel()
    n_empty = int((library_sizes <= 0).sum())
    if n_empty:
        raise ValueError(
            f"{n_empty} cells have zero library size; filter them before normalizing"
        )
    return library_sizes / library_sizes.mean()


def _log_normalize_block(block, factors: np.ndarray, target_sum: Optional[float], log_base: float):
    adata = ad.AnnData(X=transposed_copy(block))
    if target_sum is not None:
        sc.pp.normalize_total(adata, target_sum=target_sum)
    elif sp.issparse(adata.X):
        adata.X = sp.csr_matrix(adata.X.multiply(1.0 / factors[:, None]))
    else:
        adata.X /= factors[:, None]
    sc.pp.log1p(adata, base=log_base)
    if sp.issparse(adata.X):
        return sp.csr_matrix(adata.X.T)
    return np.asarray(adata.X).T


def log_normalize(
    counts,
    size_factors: np.ndarray,
    log_base: float = 2.0,
    target_sum: Optional[float] = None,
    execution: Optional[ExecutionConfig] = None,
):
    """
    Divide each column by its size factor and log-transform, in chunks.

    Each chunk is handed to scanpy as its own AnnData. When target_sum is
    given the chunk goes through sc.pp.normalize_total, which matches
    dividing by size_factors = library_size / target_sum; otherwise the
    supplied size factors are applied directly. sc.pp.log1p follows.

    Returns:
        CSR matrix if counts are sparse, else ndarray
    """
    execution = execution or ExecutionConfig()
    n_samples = counts.shape[1]
    if sp.issparse(counts):
        counts = counts.tocsc()

    bounds = [
        (start, min(start + execution.chunk_size, n_samples))
        for start in range(0, n_samples, execution.chunk_size)
    ]
    logger.debug("Normalizing %d cells in %d chunks (n_jobs=%d)", n_samples, len(bounds), execution.n_jobs)

    blocks = Parallel(n_jobs=execution.n_jobs, backend=execution.backend)(
        delayed(_log_normalize_block)(
            counts[:, start:stop], size_factors[start:stop], target_sum, log_base
        )
        for start, stop in bounds
    )

    if not blocks:
        return np.empty(counts.shape, dtype=float)
    if sp.issparse(counts):
        return sp.hstack(blocks, format="csr")
    return np.hstack(blocks)


class LibrarySizeNormalizer(Transform):
    """
    Compute library-size factors and a log-normalized assay.

    Params:
        assay: Input assay with raw counts (default: the primary matrix)
        output_assay: Name of the log-normalized assay ("logcounts")
        log_base: Logarithm base (2.0)
        recompute: Recompute size factors even if the container has some
        execution: Parallel execution settings
    """

    def __init__(
        self,
        assay: Optional[str] = None,
        output_assay: str = "logcounts",
        log_base: float = 2.0,
        recompute: bool = False,
        execution: Optional[ExecutionConfig] = None,
    ):
        if log_base <= 1:
            raise ValueError(f"log_base must be > 1, got {log_base}")
        self.execution = execution or ExecutionConfig()
        super().__init__(
            name="LibrarySizeNormalizer",
            params={
                "assay": assay,
                "output_assay": output_assay,
                "log_base": log_base,
                "recompute": recompute,
                "n_jobs": self.execution.n_jobs,
            },
        )
        self.assay = assay
        self.output_assay = output_assay
        self.log_base = log_base
        self.recompute = recompute

    def validate(self, matrix: AnnotatedMatrix) -> list[str]:
        errors = super().validate(matrix)
        if self.assay is not None and not matrix.has_assay(self.assay):
            errors.append(f"Assay '{self.assay}' not found; available: {matrix.assay_names}")
        if matrix.size_factors is not None and not self.recompute:
            if np.any(matrix.size_factors <= 0):
                errors.append("Existing size factors must be positive (use recompute=True)")
        return errors

    def apply(self, matrix: AnnotatedMatrix) -> AnnotatedMatrix:
        self._check(matrix)
        counts = matrix.data if self.assay is None else matrix.get_assay(self.assay)

        if matrix.size_factors is None or self.recompute:
            factors = library_size_factors(counts)
            target_sum = float(np.asarray(counts.sum(axis=0), dtype=float).mean())
        else:
            factors = matrix.size_factors
            target_sum = None
            logger.info("Reusing existing size factors")

        normalized = log_normalize(
            counts,
            factors,
            log_base=self.log_base,
            target_sum=target_sum,
            execution=self.execution,
        )
        matrix.set_assay(self.output_assay, normalized)
        matrix.set_size_factors(factors)
        logger.info(
            "Size factors: min %.3f, median %.3f, max %.3f",
            factors.min(), np.median(factors), factors.max(),
        )
        return matrix
