"""
Core data structure for single-cell expression matrices.

AnnotatedMatrix pairs a primary count matrix with everything derived from it:
per-gene and per-cell annotation tables, alternative same-shape matrices
(assays), per-cell embeddings (reduced representations) and size factors.
All of these stay aligned by position, including across subsetting.

Biological Context:
    Single-cell experiments are stored features × samples:
    - Rows = features (genes)
    - Columns = samples (cells, identified by barcode)
    - Values = measurements (UMI counts, then normalized values)

    A typical workflow keeps several parallel views of the same cells:
    raw counts and log-normalized counts as assays, QC metrics and cell-type
    labels as sample metadata, principal components and t-SNE coordinates
    as reduced representations. Filtering cells or genes must restrict every
    one of these identically.

Engineering Design:
    - Mutable by setter: assays, metadata columns, embeddings, size factors
      and names are replaced through validated setters that either fully
      succeed or leave the container unchanged
    - Subsetting returns a new, independent container (copies, no aliasing)
    - NumPy/SciPy sparse for matrices, pandas for metadata
    - Typed errors (see cellmatrix.core.errors) for every invariant violation

Examples:
    >>> import numpy as np
    >>> import pandas as pd
    >>> from cellmatrix.core.annotated_matrix import AnnotatedMatrix
    >>>
    >>> counts = np.arange(20).reshape(5, 4)
    >>> matrix = AnnotatedMatrix.create(
    ...     counts,
    ...     pd.DataFrame({"Symbol": ["A", "B", "C", "D", "MT-E"]}),
    ...     pd.DataFrame({"Barcode": ["c1", "c2", "c3", "c4"]}),
    ... )
    >>> matrix.set_assay("log", np.log1p(counts))
    >>> small = matrix.subset([1, 3], [0, 2, 3])
    >>> small.shape
    (2, 3)
"""

from __future__ import annotations

import logging
import warnings
from typing import Any, Iterable, Mapping, Optional

import numpy as np
import pandas as pd
import scipy.sparse as sp

from cellmatrix.core.errors import (
    LengthMismatch,
    ShapeMismatch,
    DuplicateName,
    UnknownAssay,
    UnknownColumn,
    UnknownReduced,
)
from cellmatrix.core.selectors import ALL, resolve_selector, make_unique

logger = logging.getLogger(__name__)

__all__ = ['AnnotatedMatrix']


def _as_matrix(matrix: Any, what: str):
    """Coerce to a 2-D dense ndarray, keeping scipy sparse matrices sparse."""
    if sp.issparse(matrix):
        result = matrix
    else:
        result = np.asarray(matrix)
    if result.ndim != 2:
        raise ShapeMismatch(f"{what} must be 2D, got shape {result.shape}")
    return result


def _take(matrix, rows: np.ndarray, cols: np.ndarray):
    """Restrict a matrix to rows × cols. Always returns a copy."""
    if sp.issparse(matrix):
        return matrix.tocsr()[rows, :][:, cols]
    return matrix[np.ix_(rows, cols)]


def _copy_matrix(matrix):
    return matrix.copy()


class AnnotatedMatrix:
    """
    Expression matrix + aligned metadata + derived representations.

    Attributes:
        data: Primary matrix (features × samples), dense or scipy sparse
        feature_metadata: One row per feature, arbitrary columns
        sample_metadata: One row per sample, arbitrary columns
        assays: Alternative matrices with exactly data.shape
        reduced: Per-sample embeddings with exactly n_samples rows
        size_factors: Optional per-sample scalars
        feature_names / sample_names: Optional unique name indexes

    Shape Invariants:
        - every assay has shape == data.shape
        - len(feature_metadata) == n_features, len(sample_metadata) == n_samples
        - every reduced representation has n_samples rows
        - len(size_factors) == n_samples when set
        - names, when set, are unique, have the axis length, and are the
          index of the matching metadata table (otherwise a RangeIndex)
    """

    def __init__(
        self,
        data: Any,
        feature_metadata: Optional[pd.DataFrame] = None,
        sample_metadata: Optional[pd.DataFrame] = None,
        *,
        assays: Optional[Mapping[str, Any]] = None,
        reduced: Optional[Mapping[str, Any]] = None,
        size_factors: Optional[Iterable[float]] = None,
        feature_names: Optional[Iterable[str]] = None,
        sample_names: Optional[Iterable[str]] = None,
    ):
        """
        Initialize AnnotatedMatrix with validation.

        Metadata tables are copied; their original index is replaced by the
        feature/sample names (if given) or a RangeIndex.

        Raises:
            ShapeMismatch: Metadata rows, assay shapes or embedding rows disagree
                with the primary matrix
            LengthMismatch: size_factors or names have the wrong length
            DuplicateName: names contain repeats
            TypeError: Metadata is not a DataFrame
        """
        data = _as_matrix(data, "data")
        n_features, n_samples = data.shape

        self._data = data
        self._feature_metadata = self._validate_metadata(feature_metadata, n_features, "feature")
        self._sample_metadata = self._validate_metadata(sample_metadata, n_samples, "sample")
        self._assays: dict[str, Any] = {}
        self._reduced: dict[str, np.ndarray] = {}
        self._size_factors: Optional[np.ndarray] = None
        self._feature_names: Optional[pd.Index] = None
        self._sample_names: Optional[pd.Index] = None

        for name, matrix in (assays or {}).items():
            self.set_assay(name, matrix)
        for name, matrix in (reduced or {}).items():
            self.set_reduced(name, matrix)
        self.set_size_factors(size_factors)
        self.set_feature_names(feature_names)
        self.set_sample_names(sample_names)

    @classmethod
    def create(
        cls,
        data: Any,
        feature_metadata: pd.DataFrame,
        sample_metadata: pd.DataFrame,
    ) -> AnnotatedMatrix:
        """
        Build a container from a matrix and its two metadata tables.

        Raises:
            ShapeMismatch: If row/column counts of the three arguments disagree
        """
        return cls(data, feature_metadata=feature_metadata, sample_metadata=sample_metadata)

    @staticmethod
    def _validate_metadata(metadata: Optional[pd.DataFrame], n: int, axis: str) -> pd.DataFrame:
        if metadata is None:
            return pd.DataFrame(index=pd.RangeIndex(n))
        if not isinstance(metadata, pd.DataFrame):
            raise TypeError(f"{axis}_metadata must be pd.DataFrame, got {type(metadata)}")
        if len(metadata) != n:
            raise ShapeMismatch(
                f"{axis}_metadata has {len(metadata)} rows but the matrix has {n} {axis}s"
            )
        result = metadata.copy()
        result.index = pd.RangeIndex(n)
        return result

    # ------------------------------------------------------------------
    # Shape and core properties
    # ------------------------------------------------------------------

    @property
    def data(self):
        """Primary matrix (features × samples)."""
        return self._data

    @property
    def shape(self) -> tuple[int, int]:
        """Matrix dimensions (n_features, n_samples)."""
        return self._data.shape

    @property
    def n_features(self) -> int:
        return self._data.shape[0]

    @property
    def n_samples(self) -> int:
        return self._data.shape[1]

    @property
    def feature_metadata(self) -> pd.DataFrame:
        """Per-feature annotations, one row per matrix row."""
        return self._feature_metadata

    @property
    def sample_metadata(self) -> pd.DataFrame:
        """Per-sample annotations, one row per matrix column."""
        return self._sample_metadata

    @property
    def feature_names(self) -> Optional[pd.Index]:
        return self._feature_names

    @property
    def sample_names(self) -> Optional[pd.Index]:
        return self._sample_names

    @property
    def size_factors(self) -> Optional[np.ndarray]:
        return self._size_factors

    @property
    def assay_names(self) -> list[str]:
        return list(self._assays)

    @property
    def reduced_names(self) -> list[str]:
        return list(self._reduced)

    # ------------------------------------------------------------------
    # Assays
    # ------------------------------------------------------------------

    def has_assay(self, name: str) -> bool:
        return name in self._assays

    def get_assay(self, name: str):
        """
        Return the assay registered under name.

        Raises:
            UnknownAssay: If no such assay exists
        """
        try:
            return self._assays[name]
        except KeyError:
            raise UnknownAssay(
                f"unknown assay '{name}'; available: {self.assay_names}"
            ) from None

    def set_assay(self, name: str, matrix: Any) -> None:
        """
        Create or overwrite an assay.

        Raises:
            ShapeMismatch: If matrix.shape differs from data.shape. The
                assay map is left unchanged.
        """
        matrix = _as_matrix(matrix, f"assay '{name}'")
        if matrix.shape != self.shape:
            raise ShapeMismatch(
                f"assay '{name}' shape {matrix.shape} must match data shape {self.shape}"
            )
        self._assays[name] = matrix

    def remove_assay(self, name: str) -> None:
        if name not in self._assays:
            raise UnknownAssay(f"unknown assay '{name}'; available: {self.assay_names}")
        del self._assays[name]

    # ------------------------------------------------------------------
    # Reduced representations
    # ------------------------------------------------------------------

    def get_reduced(self, name: str) -> np.ndarray:
        """
        Return the (n_samples, K) embedding registered under name.

        Raises:
            UnknownReduced: If no such representation exists
        """
        try:
            return self._reduced[name]
        except KeyError:
            raise UnknownReduced(
                f"unknown reduced representation '{name}'; available: {self.reduced_names}"
            ) from None

    def set_reduced(self, name: str, matrix: Any) -> None:
        """
        Create or overwrite a per-sample embedding.

        Only the row count is validated (must equal n_samples); the number of
        components may differ between representations and across overwrites.

        Raises:
            ShapeMismatch: If the embedding is not 2D or has the wrong row count
        """
        if sp.issparse(matrix):
            matrix = matrix.toarray()
        if isinstance(matrix, pd.DataFrame):
            matrix = matrix.to_numpy()
        matrix = np.asarray(matrix)
        if matrix.ndim != 2:
            raise ShapeMismatch(
                f"reduced representation '{name}' must be 2D, got shape {matrix.shape}"
            )
        if matrix.shape[0] != self.n_samples:
            raise ShapeMismatch(
                f"reduced representation '{name}' has {matrix.shape[0]} rows "
                f"but the matrix has {self.n_samples} samples"
            )
        self._reduced[name] = matrix

    def remove_reduced(self, name: str) -> None:
        if name not in self._reduced:
            raise UnknownReduced(
                f"unknown reduced representation '{name}'; available: {self.reduced_names}"
            )
        del self._reduced[name]

    # ------------------------------------------------------------------
    # Metadata columns
    # ------------------------------------------------------------------

    @staticmethod
    def _as_column(values: Any, n: int, what: str):
        if isinstance(values, (pd.Series, pd.Index)):
            values = values.array
        elif not isinstance(values, pd.api.extensions.ExtensionArray):
            values = np.asarray(values)
            if values.ndim != 1:
                raise LengthMismatch(f"{what} must be one-dimensional, got shape {values.shape}")
        if len(values) != n:
            raise LengthMismatch(f"{what} has length {len(values)}, expected {n}")
        return values

    def get_feature_column(self, name: str) -> pd.Series:
        if name not in self._feature_metadata.columns:
            raise UnknownColumn(f"unknown feature metadata column '{name}'")
        return self._feature_metadata[name]

    def set_feature_column(self, name: str, values: Any) -> None:
        """
        Create or overwrite a feature metadata column.

        Series are assigned by position, not by index label.

        Raises:
            LengthMismatch: If len(values) != n_features
        """
        values = self._as_column(values, self.n_features, f"feature column '{name}'")
        self._feature_metadata[name] = values

    def get_sample_column(self, name: str) -> pd.Series:
        if name not in self._sample_metadata.columns:
            raise UnknownColumn(f"unknown sample metadata column '{name}'")
        return self._sample_metadata[name]

    def set_sample_column(self, name: str, values: Any) -> None:
        """
        Create or overwrite a sample metadata column.

        Series are assigned by position, not by index label.

        Raises:
            LengthMismatch: If len(values) != n_samples
        """
        values = self._as_column(values, self.n_samples, f"sample column '{name}'")
        self._sample_metadata[name] = values

    # ------------------------------------------------------------------
    # Names and size factors
    # ------------------------------------------------------------------

    @staticmethod
    def _as_names(names: Iterable[str], n: int, axis: str) -> pd.Index:
        index = pd.Index(list(names))
        if len(index) != n:
            raise LengthMismatch(f"{axis} names have length {len(index)}, expected {n}")
        if not index.is_unique:
            duplicates = index[index.duplicated()].unique().tolist()[:5]
            raise DuplicateName(f"{axis} names are not unique, e.g. {duplicates}")
        return index

    def set_feature_names(self, names: Optional[Iterable[str]]) -> None:
        """
        Set (or clear, with None) the feature names.

        Raises:
            LengthMismatch: If len(names) != n_features
            DuplicateName: If names contain repeats
        """
        if names is None:
            self._feature_names = None
            self._feature_metadata.index = pd.RangeIndex(self.n_features)
            return
        index = self._as_names(names, self.n_features, "feature")
        self._feature_names = index
        self._feature_metadata.index = index

    def set_sample_names(self, names: Optional[Iterable[str]]) -> None:
        """
        Set (or clear, with None) the sample names.

        Raises:
            LengthMismatch: If len(names) != n_samples
            DuplicateName: If names contain repeats
        """
        if names is None:
            self._sample_names = None
            self._sample_metadata.index = pd.RangeIndex(self.n_samples)
            return
        index = self._as_names(names, self.n_samples, "sample")
        self._sample_names = index
        self._sample_metadata.index = index

    def set_size_factors(self, values: Optional[Iterable[float]]) -> None:
        """
        Set (or clear, with None) per-sample size factors.

        Raises:
            LengthMismatch: If len(values) != n_samples
        """
        if values is None:
            self._size_factors = None
            return
        factors = np.asarray(values, dtype=float)
        if factors.ndim != 1 or len(factors) != self.n_samples:
            raise LengthMismatch(
                f"size_factors have shape {factors.shape}, expected ({self.n_samples},)"
            )
        self._size_factors = factors

    # ------------------------------------------------------------------
    # Subsetting
    # ------------------------------------------------------------------

    def subset(self, features: Any = ALL, samples: Any = ALL) -> AnnotatedMatrix:
        """
        Restrict (and optionally reorder) features and samples.

        Every piece of held state is restricted identically: the primary
        matrix, all assays, both metadata tables, names, size factors
        (sample axis) and reduced representations (sample axis only;
        feature selection never touches them).

        Args:
            features: ALL/None, integer positions, boolean mask or names
            samples: ALL/None, integer positions, boolean mask or names

        Returns:
            New, independent AnnotatedMatrix. If a position is selected more
            than once, repeated names get -1, -2, ... suffixes.

        Raises:
            LengthMismatch: Boolean mask of the wrong length
            IndexError: Position out of range
            UnknownName: Name not found

        Examples:
            >>> # Keep cells that pass QC
            >>> kept = matrix.subset(samples=~matrix.sample_metadata["discard"])
            >>>
            >>> # Two genes by symbol, first ten cells
            >>> matrix.subset(["CD3E", "MS4A1"], list(range(10)))
        """
        rows = resolve_selector(features, self.n_features, self._feature_names, "feature")
        cols = resolve_selector(samples, self.n_samples, self._sample_names, "sample")

        logger.debug(
            "Subsetting %d × %d -> %d × %d", self.n_features, self.n_samples, len(rows), len(cols)
        )

        return AnnotatedMatrix(
            data=_take(self._data, rows, cols),
            feature_metadata=self._feature_metadata.iloc[rows].copy(),
            sample_metadata=self._sample_metadata.iloc[cols].copy(),
            assays={name: _take(m, rows, cols) for name, m in self._assays.items()},
            reduced={name: m[cols].copy() for name, m in self._reduced.items()},
            size_factors=None if self._size_factors is None else self._size_factors[cols],
            feature_names=self._subset_names(self._feature_names, rows, "feature"),
            sample_names=self._subset_names(self._sample_names, cols, "sample"),
        )

    @staticmethod
    def _subset_names(names: Optional[pd.Index], positions: np.ndarray, axis: str) -> Optional[pd.Index]:
        if names is None:
            return None
        selected = names[positions]
        if not selected.is_unique:
            warnings.warn(
                f"Selection repeats {axis}s; repeated {axis} names were made unique "
                "with -1, -2, ... suffixes",
                UserWarning,
            )
            selected = make_unique(selected)
        return selected

    def select_features(self, selector: Any) -> AnnotatedMatrix:
        """Subset features (rows), keeping all samples."""
        return self.subset(features=selector)

    def select_samples(self, selector: Any) -> AnnotatedMatrix:
        """Subset samples (columns), keeping all features."""
        return self.subset(samples=selector)

    def __getitem__(self, key: Any) -> AnnotatedMatrix:
        """matrix[features, samples] is shorthand for subset(features, samples)."""
        if not isinstance(key, tuple) or len(key) != 2:
            raise TypeError("index with matrix[features, samples]; use ALL or : to keep an axis")
        return self.subset(key[0], key[1])

    # ------------------------------------------------------------------
    # Copying and display
    # ------------------------------------------------------------------

    def copy(self, deep: bool = True) -> AnnotatedMatrix:
        """
        Create a copy of this container.

        Args:
            deep: If True, copy all matrices. If False, share matrices but
                still give the copy its own registries and metadata tables,
                so setters on one never affect the other.
        """
        clone = _copy_matrix if deep else (lambda m: m)
        return AnnotatedMatrix(
            data=clone(self._data),
            feature_metadata=self._feature_metadata.copy(deep=deep),
            sample_metadata=self._sample_metadata.copy(deep=deep),
            assays={name: clone(m) for name, m in self._assays.items()},
            reduced={name: clone(m) for name, m in self._reduced.items()},
            size_factors=None if self._size_factors is None else self._size_factors.copy(),
            feature_names=self._feature_names,
            sample_names=self._sample_names,
        )

    def __repr__(self) -> str:
        def _names(index: Optional[pd.Index]) -> str:
            if index is None or len(index) == 0:
                return "NULL"
            if len(index) <= 2:
                return ", ".join(map(str, index))
            return f"{index[0]} ... {index[-1]}"

        kind = "sparse" if sp.issparse(self._data) else "dense"
        return (
            f"AnnotatedMatrix({self.n_features} features × {self.n_samples} samples, {kind})\n"
            f"  assays: {self.assay_names}\n"
            f"  feature names: {_names(self._feature_names)}\n"
            f"  feature metadata: {list(self._feature_metadata.columns)}\n"
            f"  sample names: {_names(self._sample_names)}\n"
            f"  sample metadata: {list(self._sample_metadata.columns)}\n"
            f"  reduced: {self.reduced_names}\n"
            f"  size factors: {'set' if self._size_factors is not None else 'NULL'}"
        )

    def __str__(self) -> str:
        return self.__repr__()
