"""
cellmatrix - Annotated matrices for single-cell RNA-seq analysis

A features × cells count matrix kept in lockstep with its gene and cell
annotations, alternative assays and embeddings, plus the QC, normalization,
embedding and marker-based annotation steps that operate on it.
"""

__version__ = "0.1.0"

from cellmatrix.core.annotated_matrix import AnnotatedMatrix
from cellmatrix.core.selectors import ALL
from cellmatrix.core.transform import Transform

__all__ = [
    "AnnotatedMatrix",
    "ALL",
    "Transform",
]
