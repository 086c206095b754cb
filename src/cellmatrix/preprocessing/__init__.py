"""
Normalization, feature selection and dimensionality reduction.

Components:
    ExecutionConfig: explicit parallel settings (joblib) for chunked steps
    LibrarySizeNormalizer: size factors + "logcounts" assay (scanpy)
    HighlyVariableGenes: dispersion-ranked genes flagged in feature metadata
    RunPCA: scikit-learn PCA registered as a reduced representation
    RunUMAP / RunTSNE: 2-D embeddings (scanpy / scikit-learn)
"""

from cellmatrix.preprocessing.normalization import (
    ExecutionConfig,
    LibrarySizeNormalizer,
    library_size_factors,
    log_normalize,
)
from cellmatrix.preprocessing.reduction import (
    HighlyVariableGenes,
    RunPCA,
    RunTSNE,
    RunUMAP,
)

__all__ = [
    'ExecutionConfig',
    'LibrarySizeNormalizer',
    'library_size_factors',
    'log_normalize',
    'HighlyVariableGenes',
    'RunPCA',
    'RunUMAP',
    'RunTSNE',
]
