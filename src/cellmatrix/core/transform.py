"""
Base class for analysis steps that consume and update an AnnotatedMatrix.

QC metrics, normalization, embeddings and filtering are all steps with the
same contract: take a container, validate preconditions, then either

    - annotate it in place through its validated setters (new assays,
      metadata columns, reduced representations, size factors) and return
      the same container for chaining, or
    - return a new container produced by subset() (filtering steps).

The numerical work itself is delegated to NumPy/SciPy/scikit-learn; a step
only decides what goes in and where the result is stored.

Examples:
    >>> from cellmatrix.core.transform import Transform
    >>>
    >>> class Log1p(Transform):
    ...     def __init__(self, assay: str = "counts"):
    ...         super().__init__(name="Log1p", params={"assay": assay})
    ...         self.assay = assay
    ...
    ...     def apply(self, matrix):
    ...         matrix.set_assay("log1p", np.log1p(matrix.get_assay(self.assay)))
    ...         return matrix
    >>>
    >>> Log1p().apply(matrix).get_assay("log1p")
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from cellmatrix.core.annotated_matrix import AnnotatedMatrix

logger = logging.getLogger(__name__)

__all__ = ['Transform']


class Transform(ABC):
    """
    Abstract base class for analysis steps.

    Attributes:
        name: Human-readable step name (e.g., "LibrarySizeNormalizer")
        params: Parameters used for this step (JSON-serializable)
        timestamp: When this step instance was created (for audit trail)
    """

    def __init__(self, name: str, params: dict[str, Any]) -> None:
        self.name = name
        self.params = params
        self.timestamp = datetime.now()

    @abstractmethod
    def apply(self, matrix: AnnotatedMatrix) -> AnnotatedMatrix:
        """
        Run the step.

        Returns:
            The same container (annotating steps) or a new one (filtering
            steps)

        Raises:
            ValueError: If validate() reports problems
        """

    def validate(self, matrix: AnnotatedMatrix) -> list[str]:
        """
        Check preconditions before applying the step.

        Subclasses should override and call super().validate() first.

        Returns:
            List of error messages (empty list = valid)
        """
        errors: list[str] = []

        if matrix.n_features == 0 or matrix.n_samples == 0:
            errors.append("Cannot process empty matrix")

        return errors

    def _check(self, matrix: AnnotatedMatrix) -> None:
        """Raise ValueError listing every validation failure, then log the step."""
        errors = self.validate(matrix)
        if errors:
            raise ValueError(
                f"{self.name} validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
            )
        logger.info("Applying %r to %d features × %d samples", self, matrix.n_features, matrix.n_samples)

    def __repr__(self) -> str:
        params_str = ", ".join(f"{k}={v}" for k, v in self.params.items())
        return f"{self.name}({params_str})"
