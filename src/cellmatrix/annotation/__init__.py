"""Cell-type assignment from marker genes."""

from cellmatrix.annotation.markers import (
    MarkerSet,
    CellTypeAssignment,
    MarkerCellTypeAssigner,
    UNKNOWN_LABEL,
)

__all__ = [
    'MarkerSet',
    'CellTypeAssignment',
    'MarkerCellTypeAssigner',
    'UNKNOWN_LABEL',
]
