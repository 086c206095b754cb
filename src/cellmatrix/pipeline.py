"""
End-to-end QC → normalization → embedding → annotation workflow.

The workflow is a linear sequence of steps over one AnnotatedMatrix. Every
threshold comes from PipelineConfig; nothing is hard-coded. The same config
object is built from YAML/JSON files and CLI flags by cellmatrix.cli.config.

Steps:
    1. PerCellQC / PerFeatureQC      metrics into metadata
    2. CellQCFilter / FeatureFilter  drop low-quality cells, unexpressed genes
    3. LibrarySizeNormalizer         size factors + logcounts
    4. HighlyVariableGenes, RunPCA   feature selection + PCA
    5. RunUMAP, RunTSNE (optional)   2-D layouts
    6. MarkerCellTypeAssigner        labels written back (optional)

Examples:
    >>> config = PipelineConfig(qc=QCConfig(max_mito_percent=10, min_cells=3))
    >>> result = run_pipeline(load_10x_mtx("hg19"), config)
    >>> result.matrix.sample_metadata["cell_type"].value_counts()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import numpy as np

from cellmatrix.annotation.markers import CellTypeAssignment, MarkerCellTypeAssigner, MarkerSet
from cellmatrix.core.annotated_matrix import AnnotatedMatrix
from cellmatrix.preprocessing.normalization import ExecutionConfig, LibrarySizeNormalizer
from cellmatrix.preprocessing.reduction import HighlyVariableGenes, RunPCA, RunTSNE, RunUMAP
from cellmatrix.quality.filtering import CellQCFilter, FeatureFilter, QCFilterResult, QCThresholds
from cellmatrix.quality.metrics import PerCellQC, PerFeatureQC

logger = logging.getLogger(__name__)

__all__ = [
    'QCConfig',
    'NormalizationConfig',
    'ReductionConfig',
    'AnnotationConfig',
    'PipelineConfig',
    'PipelineResult',
    'run_pipeline',
]


@dataclass
class QCConfig:
    """Cell/gene QC settings."""
    min_sum: Optional[float] = None
    min_detected: Optional[int] = None
    max_mito_percent: Optional[float] = None
    mito_nmads: Optional[float] = None
    mito_prefix: str = "MT-"
    min_cells: int = 1

    def thresholds(self) -> QCThresholds:
        return QCThresholds(
            min_sum=self.min_sum,
            min_detected=self.min_detected,
            max_mito_percent=self.max_mito_percent,
            mito_nmads=self.mito_nmads,
        )


@dataclass
class NormalizationConfig:
    log_base: float = 2.0


@dataclass
class ReductionConfig:
    """Feature selection and embedding settings."""
    n_hvg: int = 2000
    n_pcs: int = 50
    umap: bool = False
    n_neighbors: int = 15
    tsne: bool = False
    perplexity: float = 30.0
    random_state: Optional[int] = 0


@dataclass
class AnnotationConfig:
    """Marker-based assignment settings (skipped when markers is None)."""
    markers: Optional[Path] = None
    min_score: float = 0.0
    column: str = "cell_type"
    feature_column: str = "Symbol"


@dataclass
class PipelineConfig:
    """Complete workflow configuration."""
    input: Optional[Path] = None
    output: Optional[Path] = None
    qc: QCConfig = field(default_factory=QCConfig)
    normalization: NormalizationConfig = field(default_factory=NormalizationConfig)
    reduction: ReductionConfig = field(default_factory=ReductionConfig)
    annotation: AnnotationConfig = field(default_factory=AnnotationConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)


@dataclass
class PipelineResult:
    """Filtered, normalized, embedded container plus step reports."""
    matrix: AnnotatedMatrix
    qc: QCFilterResult
    n_features_before: int
    explained_variance_ratio: Optional[np.ndarray] = None
    assignment: Optional[CellTypeAssignment] = None


def run_pipeline(matrix: AnnotatedMatrix, config: PipelineConfig) -> PipelineResult:
    """
    Run the full workflow on a freshly loaded container.

    The input container is annotated with QC metrics and a 'discard'
    column; all later steps operate on the filtered copy returned in the
    result.
    """
    n_features_before = matrix.n_features

    PerCellQC(subsets={"Mito": config.qc.mito_prefix}).apply(matrix)
    PerFeatureQC().apply(matrix)

    cell_filter = CellQCFilter(config.qc.thresholds())
    filtered = cell_filter.apply(matrix)
    filtered = FeatureFilter(min_cells=config.qc.min_cells).apply(filtered)

    LibrarySizeNormalizer(
        log_base=config.normalization.log_base,
        recompute=True,
        execution=config.execution,
    ).apply(filtered)

    reduction = config.reduction
    HighlyVariableGenes(n_top=reduction.n_hvg, log_base=config.normalization.log_base).apply(filtered)

    n_hvg = int(filtered.feature_metadata["highly_variable"].sum())
    n_pcs = min(reduction.n_pcs, filtered.n_samples, n_hvg)
    if n_pcs < reduction.n_pcs:
        logger.warning("Reducing n_pcs from %d to %d to fit the data", reduction.n_pcs, n_pcs)
    pca = RunPCA(n_components=n_pcs, random_state=reduction.random_state)
    pca.apply(filtered)

    if reduction.umap:
        if reduction.n_neighbors < filtered.n_samples:
            RunUMAP(n_neighbors=reduction.n_neighbors, random_state=reduction.random_state).apply(filtered)
        else:
            logger.warning(
                "Skipping UMAP: %d neighbours need more than %d cells",
                reduction.n_neighbors, filtered.n_samples,
            )

    if reduction.tsne:
        if reduction.perplexity < filtered.n_samples:
            RunTSNE(perplexity=reduction.perplexity, random_state=reduction.random_state).apply(filtered)
        else:
            logger.warning(
                "Skipping t-SNE: perplexity %.1f needs more than %d cells",
                reduction.perplexity, filtered.n_samples,
            )

    assignment = None
    if config.annotation.markers is not None:
        markers = MarkerSet.from_file(config.annotation.markers)
        assigner = MarkerCellTypeAssigner(
            markers,
            min_score=config.annotation.min_score,
            feature_column=config.annotation.feature_column,
        )
        assignment = assigner.assign(filtered)
        assignment.write_to(filtered, column=config.annotation.column)

    return PipelineResult(
        matrix=filtered,
        qc=cell_filter.result_,
        n_features_before=n_features_before,
        explained_variance_ratio=pca.explained_variance_ratio_,
        assignment=assignment,
    )
