"""Utility modules for single-cell data processing."""

from cellmatrix.utils.anndata_bridge import string_index, to_anndata, transposed_copy
from cellmatrix.utils.fileio import atomic_write_json

__all__ = [
    'atomic_write_json',
    'to_anndata',
    'transposed_copy',
    'string_index',
]
