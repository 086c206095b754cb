"""
Loaders for single-cell count matrices.

Biological Context:
    Cell Ranger writes filtered droplet counts as three files in one
    directory:
    - matrix.mtx(.gz): MatrixMarket sparse counts, genes × barcodes
    - genes.tsv (v2) or features.tsv.gz (v3): gene ID, symbol[, feature type]
    - barcodes.tsv(.gz): one cell barcode per line

    Example (PBMC 3k):
    ```
    filtered_gene_bc_matrices/hg19/
        barcodes.tsv   2700 lines     AAACATACAACCAC-1
        genes.tsv      32738 lines    ENSG00000243485  MIR1302-10
        matrix.mtx     2286884 nonzero entries
    ```

Engineering Design:
    - Counts stay sparse (CSR) end to end
    - Gene IDs become feature names (symbols are not unique); barcodes
      become sample names
    - Structural problems raise; recoverable oddities (duplicate IDs) warn

Examples:
    >>> from cellmatrix.io.loaders import load_10x_mtx
    >>> pbmc = load_10x_mtx("filtered_gene_bc_matrices/hg19")
    >>> pbmc
    AnnotatedMatrix(32738 features × 2700 samples, sparse)
    ...
"""

from __future__ import annotations

import logging
import warnings
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd
import scipy.io
import scipy.sparse as sp

from cellmatrix.core.annotated_matrix import AnnotatedMatrix
from cellmatrix.core.selectors import make_unique

logger = logging.getLogger(__name__)

__all__ = ['load_10x_mtx', 'load_csv_matrix']

_FEATURE_COLUMNS = ["ID", "Symbol", "Type"]


def _find_file(directory: Path, candidates: list[str]) -> Path:
    for name in candidates:
        for suffix in ("", ".gz"):
            path = directory / f"{name}{suffix}"
            if path.is_file():
                return path
    raise FileNotFoundError(
        f"None of {candidates} (optionally .gz) found in {directory}"
    )


def _unique_ids(ids: pd.Index, what: str) -> pd.Index:
    if ids.is_unique:
        return ids
    n_duplicates = int(ids.duplicated().sum())
    warnings.warn(
        f"Found {n_duplicates} duplicate {what}. Repeats were suffixed with -1, -2, ...",
        UserWarning,
    )
    return make_unique(ids)


def load_10x_mtx(directory: Path | str, assay: str = "counts") -> AnnotatedMatrix:
    """
    Load a Cell Ranger matrix directory into an AnnotatedMatrix.

    Args:
        directory: Directory holding matrix.mtx, genes.tsv/features.tsv and
            barcodes.tsv (each optionally gzipped)
        assay: Name under which the counts are also registered as an assay

    Returns:
        AnnotatedMatrix with:
        - data: CSR counts (genes × cells), also stored as assays[assay]
        - feature_metadata: ID, Symbol (and Type for v3 features.tsv)
        - sample_metadata: Barcode
        - feature_names: gene IDs; sample_names: barcodes

    Raises:
        FileNotFoundError: Directory or one of the three files is missing
        ValueError: File contents disagree with the matrix dimensions
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise FileNotFoundError(f"10x directory not found: {directory}")

    matrix_path = _find_file(directory, ["matrix.mtx"])
    features_path = _find_file(directory, ["features.tsv", "genes.tsv"])
    barcodes_path = _find_file(directory, ["barcodes.tsv"])

    try:
        counts = sp.csr_matrix(scipy.io.mmread(str(matrix_path)))
    except Exception as e:
        raise ValueError(f"Failed to read MatrixMarket file {matrix_path}: {e}") from e

    features = pd.read_csv(features_path, sep="\t", header=None, dtype=str)
    barcodes = pd.read_csv(barcodes_path, sep="\t", header=None, dtype=str)

    n_features, n_samples = counts.shape
    if len(features) != n_features:
        raise ValueError(
            f"{features_path.name} lists {len(features)} features but the matrix has {n_features} rows"
        )
    if len(barcodes) != n_samples:
        raise ValueError(
            f"{barcodes_path.name} lists {len(barcodes)} barcodes but the matrix has {n_samples} columns"
        )

    # v2 genes.tsv has two columns; v3 features.tsv adds the feature type
    features = features.iloc[:, :len(_FEATURE_COLUMNS)].copy()
    features.columns = _FEATURE_COLUMNS[:features.shape[1]]
    if "Symbol" not in features.columns:
        features["Symbol"] = features["ID"]

    sample_metadata = pd.DataFrame({"Barcode": barcodes.iloc[:, 0].to_numpy()})

    matrix = AnnotatedMatrix(
        data=counts,
        feature_metadata=features,
        sample_metadata=sample_metadata,
        assays={assay: counts},
        feature_names=_unique_ids(pd.Index(features["ID"]), "feature IDs"),
        sample_names=_unique_ids(pd.Index(sample_metadata["Barcode"]), "barcodes"),
    )
    logger.info(
        "Loaded %d features × %d cells (%d nonzero) from %s",
        n_features, n_samples, counts.nnz, directory,
    )
    return matrix


def load_csv_matrix(path: Path | str, assay: Optional[str] = "counts") -> AnnotatedMatrix:
    """
    Load a dense features × samples CSV into an AnnotatedMatrix.

    Expected format: first column holds feature IDs, header holds sample IDs.
    ```
    "","AAACATACAACCAC-1","AAACATTGAGCTAC-1"
    "CD3E",4,0
    "MS4A1",0,7
    ```

    Args:
        path: Path to CSV file
        assay: Name under which the values are also registered as an assay
            (None to skip)

    Raises:
        FileNotFoundError: If path does not exist
        ValueError: If the CSV is empty or holds non-numeric values
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"CSV file not found: {path}")

    try:
        df = pd.read_csv(path, index_col=0)
    except pd.errors.EmptyDataError as e:
        raise ValueError(f"CSV file is empty: {path}") from e

    if df.shape[0] == 0 or df.shape[1] == 0:
        raise ValueError(f"CSV contains no data: {path}")

    if df.index.duplicated().any():
        n_duplicates = int(df.index.duplicated().sum())
        warnings.warn(
            f"Found {n_duplicates} duplicate feature IDs. Using first occurrence of each.",
            UserWarning,
        )
        df = df[~df.index.duplicated(keep="first")]

    try:
        data = df.to_numpy(dtype=float)
    except ValueError as e:
        raise ValueError(f"CSV contains non-numeric values: {path}") from e

    if np.isnan(data).any():
        warnings.warn(
            f"Found {int(np.isnan(data).sum()):,} NaN values in {path}",
            UserWarning,
        )

    feature_ids = pd.Index(df.index.astype(str))
    sample_ids = pd.Index(df.columns.astype(str))

    matrix = AnnotatedMatrix(
        data=data,
        feature_metadata=pd.DataFrame({"ID": feature_ids.to_numpy()}),
        sample_metadata=pd.DataFrame({"Barcode": sample_ids.to_numpy()}),
        assays={assay: data} if assay else None,
        feature_names=feature_ids,
        sample_names=sample_ids,
    )
    logger.info("Loaded %d features × %d samples from %s", matrix.n_features, matrix.n_samples, path)
    return matrix
