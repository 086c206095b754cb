"""
Marker-based cell-type assignment.

Biological Context:
    Many cell types are recognizable from a handful of known marker genes
    (e.g., CD3E for T cells, MS4A1 for B cells, LYZ for monocytes). Given a
    marker list per cell type, each cell is scored by how strongly it
    expresses each type's markers relative to the other cells, and assigned
    the best-scoring type.

Scoring:
    1. score(cell, type) = sc.tl.score_genes on the type's markers: mean
       log-expression of the markers minus that of expression-matched
       control genes
    2. label = argmax over types; "Unknown" if the best score is below
       min_score or tied with the runner-up

Design:
    The assigner is an external step in the strict sense: it reads the
    container and returns a CellTypeAssignment without mutating anything.
    The caller writes labels back with CellTypeAssignment.write_to(), which
    goes through the container's set_sample_column length contract.

Marker file format (YAML or JSON):
    ```yaml
    T cell: [CD3D, CD3E, IL7R]
    B cell: [MS4A1, CD79A]
    Monocyte: [LYZ, CD14]
    ```

Examples:
    >>> markers = MarkerSet.from_file(Path("pbmc_markers.yaml"))
    >>> assignment = MarkerCellTypeAssigner(markers).assign(pbmc)
    >>> assignment.labels.value_counts()
    >>> assignment.write_to(pbmc, column="cell_type")
"""

from __future__ import annotations

import json
import logging
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

import numpy as np
import pandas as pd
import scanpy as sc
import yaml

from cellmatrix.core.annotated_matrix import AnnotatedMatrix
from cellmatrix.utils.anndata_bridge import to_anndata

logger = logging.getLogger(__name__)

__all__ = ['MarkerSet', 'CellTypeAssignment', 'MarkerCellTypeAssigner', 'UNKNOWN_LABEL']

UNKNOWN_LABEL = "Unknown"


@dataclass
class MarkerSet:
    """Cell type -> marker genes."""
    markers: Dict[str, List[str]]

    def __post_init__(self):
        if not self.markers:
            raise ValueError("MarkerSet must define at least one cell type")
        cleaned = {}
        for cell_type, genes in self.markers.items():
            if isinstance(genes, str):
                genes = [genes]
            genes = [str(g) for g in genes]
            if not genes:
                raise ValueError(f"Cell type '{cell_type}' has no marker genes")
            cleaned[str(cell_type)] = genes
        self.markers = cleaned

    @classmethod
    def from_file(cls, path: Path | str) -> MarkerSet:
        """
        Load markers from a YAML (.yaml/.yml) or JSON (.json) mapping.

        Raises:
            FileNotFoundError: If path does not exist
            ValueError: If the format is unsupported or the content is not a mapping
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Marker file not found: {path}")

        suffix = path.suffix.lower()
        try:
            with open(path, 'r') as f:
                if suffix in ('.yaml', '.yml'):
                    content = yaml.safe_load(f)
                elif suffix == '.json':
                    content = json.load(f)
                else:
                    raise ValueError(f"Unsupported marker file format: {suffix}. Use .yaml, .yml, or .json")
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in marker file: {e}") from e
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in marker file: {e}") from e

        if not isinstance(content, dict):
            raise ValueError("Marker file must contain a mapping of cell type to marker genes")
        return cls(markers=content)

    @property
    def cell_types(self) -> List[str]:
        return list(self.markers)

    def __len__(self) -> int:
        return len(self.markers)


@dataclass
class CellTypeAssignment:
    """Per-cell labels and per-type scores from marker-based assignment."""
    labels: pd.Series
    scores: pd.DataFrame
    markers_used: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def n_unknown(self) -> int:
        return int((self.labels == UNKNOWN_LABEL).sum())

    def write_to(
        self,
        matrix: AnnotatedMatrix,
        column: str = "cell_type",
        score_prefix: Optional[str] = None,
    ) -> None:
        """
        Store labels (and optionally per-type scores) as sample metadata.

        Values are assigned by position.

        Raises:
            LengthMismatch: If the container has a different number of cells
        """
        matrix.set_sample_column(column, self.labels.to_numpy())
        if score_prefix is not None:
            for cell_type in self.scores.columns:
                matrix.set_sample_column(f"{score_prefix}{cell_type}", self.scores[cell_type].to_numpy())


class MarkerCellTypeAssigner:
    """
    Assign each cell the cell type whose markers it expresses most strongly.

    Params:
        markers: MarkerSet or plain mapping of cell type -> marker genes
        assay: Log-normalized assay to score ("logcounts")
        min_score: Best score must reach this value, else "Unknown"
        feature_column: Feature metadata column holding marker identifiers
            (falls back to feature names if absent)
        ctrl_size: Control genes drawn per marker expression bin
        n_bins: Expression bins for control gene selection (capped at half
            the number of features)
        random_state: Seed for control gene sampling
    """

    def __init__(
        self,
        markers: MarkerSet | Mapping[str, List[str]],
        assay: str = "logcounts",
        min_score: float = 0.0,
        feature_column: Optional[str] = "Symbol",
        ctrl_size: int = 50,
        n_bins: int = 25,
        random_state: Optional[int] = 0,
    ):
        if ctrl_size <= 0 or n_bins <= 1:
            raise ValueError(f"ctrl_size must be positive and n_bins > 1, got {ctrl_size}, {n_bins}")
        self.markers = markers if isinstance(markers, MarkerSet) else MarkerSet(dict(markers))
        self.assay = assay
        self.min_score = min_score
        self.feature_column = feature_column
        self.ctrl_size = ctrl_size
        self.n_bins = n_bins
        self.random_state = random_state

    def _feature_lookup(self, matrix: AnnotatedMatrix) -> Dict[str, int]:
        if self.feature_column is not None and self.feature_column in matrix.feature_metadata.columns:
            identifiers = matrix.feature_metadata[self.feature_column].astype(str).tolist()
        elif matrix.feature_names is not None:
            identifiers = [str(n) for n in matrix.feature_names]
        else:
            raise ValueError(
                f"Cannot resolve markers: no '{self.feature_column}' feature column and no feature names"
            )
        lookup: Dict[str, int] = {}
        for position, identifier in enumerate(identifiers):
            # Symbols can repeat; the first occurrence wins
            lookup.setdefault(identifier, position)
        return lookup

    def _resolve(self, matrix: AnnotatedMatrix) -> Dict[str, List[int]]:
        lookup = self._feature_lookup(matrix)
        resolved: Dict[str, List[int]] = {}
        missing: List[str] = []
        for cell_type, genes in self.markers.markers.items():
            positions = []
            for gene in genes:
                if gene in lookup:
                    positions.append(lookup[gene])
                else:
                    missing.append(gene)
            if positions:
                resolved[cell_type] = positions
            else:
                warnings.warn(
                    f"No markers for cell type '{cell_type}' were found; it cannot be assigned",
                    UserWarning,
                )
        if missing:
            warnings.warn(
                f"{len(missing)} marker gene(s) not found in the matrix: {sorted(set(missing))[:10]}",
                UserWarning,
            )
        if not resolved:
            raise ValueError("None of the marker genes were found in the matrix")
        return resolved

    def assign(self, matrix: AnnotatedMatrix) -> CellTypeAssignment:
        """
        Score and label every cell.

        Raises:
            UnknownAssay: If the scoring assay is missing
            ValueError: If no marker gene can be resolved
        """
        matrix.get_assay(self.assay)
        resolved = self._resolve(matrix)

        # First occurrences keep their identifier, matching _feature_lookup
        feature_ids = self._identifiers(matrix)
        adata = to_anndata(matrix, assay=self.assay, var_names=pd.Index(feature_ids))
        n_bins = min(self.n_bins, max(adata.n_vars // 2, 2))

        cell_types = list(resolved)
        columns = []
        for i, cell_type in enumerate(cell_types):
            score_name = f"_marker_score_{i}"
            sc.tl.score_genes(
                adata,
                gene_list=[adata.var_names[p] for p in resolved[cell_type]],
                score_name=score_name,
                ctrl_size=self.ctrl_size,
                n_bins=n_bins,
                random_state=self.random_state,
                use_raw=False,
            )
            columns.append(adata.obs[score_name].to_numpy(dtype=float))
        scores = np.column_stack(columns)

        index = matrix.sample_names if matrix.sample_names is not None else pd.RangeIndex(matrix.n_samples)
        labels = np.array(cell_types, dtype=object)[scores.argmax(axis=1)]

        if len(cell_types) > 1:
            ordered = np.sort(scores, axis=1)
            tied = np.isclose(ordered[:, -1], ordered[:, -2])
        else:
            tied = np.zeros(matrix.n_samples, dtype=bool)
        unknown = (scores.max(axis=1) < self.min_score) | tied
        labels[unknown] = UNKNOWN_LABEL

        assignment = CellTypeAssignment(
            labels=pd.Series(labels, index=index, name="cell_type"),
            scores=pd.DataFrame(scores, index=index, columns=cell_types),
            markers_used={t: [feature_ids[p] for p in resolved[t]] for t in cell_types},
        )
        logger.info(
            "Assigned %d cells to %d cell types (%d Unknown)",
            matrix.n_samples, len(cell_types), assignment.n_unknown,
        )
        return assignment

    def _identifiers(self, matrix: AnnotatedMatrix) -> List[str]:
        if self.feature_column is not None and self.feature_column in matrix.feature_metadata.columns:
            return matrix.feature_metadata[self.feature_column].astype(str).tolist()
        return [str(n) for n in matrix.feature_names]
