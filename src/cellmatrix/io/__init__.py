"""
I/O for single-cell count matrices.

Key Functions:
    - load_10x_mtx: Load a Cell Ranger matrix directory (mtx + genes + barcodes)
    - load_csv_matrix: Load a dense features × samples CSV
    - write_csv_matrix: Write the primary matrix or one assay
    - write_sample_metadata / write_feature_metadata: Export annotation tables
    - write_reduced: Export one embedding
    - write_summary: JSON digest of the container layout

Examples:
    >>> from cellmatrix.io import load_10x_mtx, write_sample_metadata
    >>> pbmc = load_10x_mtx("filtered_gene_bc_matrices/hg19")
    >>> write_sample_metadata(pbmc, "out/cells.csv")
"""

from cellmatrix.io.loaders import load_10x_mtx, load_csv_matrix
from cellmatrix.io.writers import (
    write_csv_matrix,
    write_sample_metadata,
    write_feature_metadata,
    write_reduced,
    write_summary,
)

__all__ = [
    'load_10x_mtx',
    'load_csv_matrix',
    'write_csv_matrix',
    'write_sample_metadata',
    'write_feature_metadata',
    'write_reduced',
    'write_summary',
]
