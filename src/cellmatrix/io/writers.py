"""
CSV/JSON writers for AnnotatedMatrix contents.

Each part of the container is written to its own file so it can be opened
in R, Excel or pandas without custom readers:

    {base}.data.csv        matrix (or one assay), features × samples
    {base}.features.csv    feature metadata
    {base}.samples.csv     sample metadata (QC metrics, labels, ...)
    {base}.{name}.csv      one reduced representation, samples × components
    {base}.summary.json    shapes, assay/embedding names, column names

Examples:
    >>> from cellmatrix.io.writers import write_csv_matrix, write_sample_metadata
    >>> write_csv_matrix(pbmc, Path("out/pbmc"), assay="logcounts")
    >>> write_sample_metadata(pbmc, Path("out/pbmc.samples.csv"))
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import pandas as pd
import scipy.sparse as sp

from cellmatrix.core.annotated_matrix import AnnotatedMatrix
from cellmatrix.utils.fileio import atomic_write_json

logger = logging.getLogger(__name__)

__all__ = [
    'write_csv_matrix',
    'write_sample_metadata',
    'write_feature_metadata',
    'write_reduced',
    'write_summary',
]


def _labels(names: Optional[pd.Index], n: int) -> pd.Index:
    return names if names is not None else pd.RangeIndex(n)


def _prepare(path: Path | str) -> Path:
    path = Path(path)
    if path.parent != Path('.') and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    return path


def _to_csv(df: pd.DataFrame, path: Path, what: str, index: bool = True) -> None:
    try:
        df.to_csv(path, index=index)
    except OSError as e:
        raise OSError(f"Failed to write {what} to {path}: {e}") from e
    logger.info("Wrote %s to %s", what, path)


def write_csv_matrix(
    matrix: AnnotatedMatrix,
    path: Path | str,
    assay: Optional[str] = None,
) -> Path:
    """
    Write the primary matrix (or one assay) to {path}.data.csv.

    Sparse matrices are densified for writing; subset first for large data.

    Args:
        matrix: Container to write
        path: Base path (without extension)
        assay: Assay to write instead of the primary matrix

    Returns:
        Path of the written file

    Raises:
        UnknownAssay: If assay is given but not registered
        ValueError: If the matrix is empty
    """
    if matrix.n_features == 0 or matrix.n_samples == 0:
        raise ValueError("Cannot write empty matrix")

    values = matrix.data if assay is None else matrix.get_assay(assay)
    if sp.issparse(values):
        values = values.toarray()

    data_path = _prepare(Path(str(path) + ".data.csv"))
    df = pd.DataFrame(
        values,
        index=_labels(matrix.feature_names, matrix.n_features),
        columns=_labels(matrix.sample_names, matrix.n_samples),
    )
    _to_csv(df, data_path, f"{assay or 'primary'} matrix")
    return data_path


def write_sample_metadata(matrix: AnnotatedMatrix, path: Path | str) -> Path:
    """Write sample metadata (one row per cell) to path."""
    path = _prepare(path)
    _to_csv(matrix.sample_metadata, path, "sample metadata")
    return path


def write_feature_metadata(matrix: AnnotatedMatrix, path: Path | str) -> Path:
    """Write feature metadata (one row per gene) to path."""
    path = _prepare(path)
    _to_csv(matrix.feature_metadata, path, "feature metadata")
    return path


def write_reduced(matrix: AnnotatedMatrix, name: str, path: Path | str) -> Path:
    """
    Write one reduced representation with columns {name}1, {name}2, ...

    Raises:
        UnknownReduced: If name is not registered
    """
    embedding = matrix.get_reduced(name)
    path = _prepare(path)
    df = pd.DataFrame(
        embedding,
        index=_labels(matrix.sample_names, matrix.n_samples),
        columns=[f"{name}{i + 1}" for i in range(embedding.shape[1])],
    )
    _to_csv(df, path, f"reduced representation '{name}'")
    return path


def write_summary(matrix: AnnotatedMatrix, path: Path | str, extra: Optional[dict] = None) -> Path:
    """Write a JSON digest of the container layout (atomic write)."""
    path = Path(path)
    summary = {
        "n_features": matrix.n_features,
        "n_samples": matrix.n_samples,
        "sparse": bool(sp.issparse(matrix.data)),
        "assays": matrix.assay_names,
        "reduced": {
            name: list(matrix.get_reduced(name).shape) for name in matrix.reduced_names
        },
        "feature_metadata": [str(c) for c in matrix.feature_metadata.columns],
        "sample_metadata": [str(c) for c in matrix.sample_metadata.columns],
        "has_size_factors": matrix.size_factors is not None,
    }
    if extra:
        summary.update(extra)
    atomic_write_json(path, summary)
    logger.info("Wrote summary to %s", path)
    return path
