"""
Error taxonomy for AnnotatedMatrix structural violations.

All errors are raised synchronously at the offending call and indicate a
programmer error (mismatched shapes, unknown keys), never a transient fault.
A mutation that raises leaves the container exactly as it was.

Lookup misses subclass KeyError so that ``except KeyError`` keeps working for
callers that treat the container like a mapping; size and uniqueness
violations subclass ValueError.
"""

from __future__ import annotations

__all__ = [
    'AnnotatedMatrixError',
    'ShapeMismatch',
    'LengthMismatch',
    'DuplicateName',
    'UnknownAssay',
    'UnknownReduced',
    'UnknownName',
    'UnknownColumn',
]


class AnnotatedMatrixError(Exception):
    """Base class for all container invariant violations."""


class ShapeMismatch(AnnotatedMatrixError, ValueError):
    """Matrix or table dimensions disagree with the primary matrix."""


class LengthMismatch(AnnotatedMatrixError, ValueError):
    """A per-feature or per-sample vector has the wrong length."""


class DuplicateName(AnnotatedMatrixError, ValueError):
    """Feature or sample names are not unique."""


class UnknownAssay(AnnotatedMatrixError, KeyError):
    """No assay is registered under the requested name."""


class UnknownReduced(AnnotatedMatrixError, KeyError):
    """No reduced representation is registered under the requested name."""


class UnknownName(AnnotatedMatrixError, KeyError):
    """A feature or sample name could not be resolved to a position."""


class UnknownColumn(AnnotatedMatrixError, KeyError):
    """No metadata column with the requested name."""
