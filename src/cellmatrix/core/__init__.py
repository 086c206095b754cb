"""
Core data structures for the single-cell analysis workflow.

1. AnnotatedMatrix: count matrix with aligned metadata, assays, embeddings
2. Selectors: ALL sentinel and position/mask/name resolution for subsetting
3. Transform: base class for steps that consume and update a container
4. Errors: typed invariant violations (ShapeMismatch, UnknownAssay, ...)

Examples:
    >>> from cellmatrix.core import AnnotatedMatrix, ALL
    >>>
    >>> matrix = AnnotatedMatrix.create(counts, genes, cells)
    >>> first_cells = matrix.subset(ALL, [0, 1, 2])
"""

from cellmatrix.core.annotated_matrix import AnnotatedMatrix
from cellmatrix.core.selectors import ALL
from cellmatrix.core.transform import Transform
from cellmatrix.core.errors import (
    AnnotatedMatrixError,
    ShapeMismatch,
    LengthMismatch,
    DuplicateName,
    UnknownAssay,
    UnknownReduced,
    UnknownName,
    UnknownColumn,
)

__all__ = [
    'AnnotatedMatrix',
    'ALL',
    'Transform',
    'AnnotatedMatrixError',
    'ShapeMismatch',
    'LengthMismatch',
    'DuplicateName',
    'UnknownAssay',
    'UnknownReduced',
    'UnknownName',
    'UnknownColumn',
]
