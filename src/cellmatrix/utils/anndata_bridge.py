"""
Hand-off between AnnotatedMatrix and scanpy's AnnData.

scanpy routines operate on AnnData objects, which are stored cells × genes.
The steps in cellmatrix.quality, cellmatrix.preprocessing and
cellmatrix.annotation build a throw-away AnnData from the container, call
scanpy, and write the results back through the container's setters. The
AnnData never outlives the step, and its matrix is always a copy, so scanpy's
in-place operations cannot reach the container's storage.

Examples:
    >>> adata = to_anndata(pbmc, assay="counts")
    >>> sc.pp.calculate_qc_metrics(adata, percent_top=None, log1p=False)
"""

from __future__ import annotations

from typing import Optional

import anndata as ad
import numpy as np
import pandas as pd
import scipy.sparse as sp

from cellmatrix.core.annotated_matrix import AnnotatedMatrix
from cellmatrix.core.selectors import make_unique

__all__ = ['to_anndata', 'transposed_copy', 'string_index']


def transposed_copy(matrix):
    """features × samples -> float samples × features, never sharing storage."""
    if sp.issparse(matrix):
        result = sp.csr_matrix(matrix.T, dtype=float, copy=True)
        result.eliminate_zeros()
        return result
    return np.array(np.asarray(matrix).T, dtype=float)


def string_index(names: Optional[pd.Index], n: int) -> pd.Index:
    """AnnData requires unique string indexes; fall back to positions."""
    if names is None:
        return pd.Index([str(i) for i in range(n)])
    return make_unique(pd.Index([str(name) for name in names]))


def to_anndata(
    matrix: AnnotatedMatrix,
    assay: Optional[str] = None,
    var_names: Optional[pd.Index] = None,
) -> ad.AnnData:
    """
    Build a cells × genes AnnData from a container.

    Args:
        matrix: Source container
        assay: Assay to use as X (default: the primary matrix)
        var_names: Gene identifiers for var_names (default: feature names,
            or positions if none are set). Repeats are made unique.

    Returns:
        AnnData with X copied from the container, obs = sample metadata and
        var = feature metadata, both indexed by strings
    """
    values = matrix.data if assay is None else matrix.get_assay(assay)

    obs = matrix.sample_metadata.copy()
    obs.index = string_index(matrix.sample_names, matrix.n_samples)
    var = matrix.feature_metadata.copy()
    if var_names is None:
        var.index = string_index(matrix.feature_names, matrix.n_features)
    else:
        var.index = string_index(pd.Index(var_names), matrix.n_features)

    return ad.AnnData(X=transposed_copy(values), obs=obs, var=var)
