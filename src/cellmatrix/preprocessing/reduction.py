"""
Feature selection and dimensionality reduction.

HighlyVariableGenes flags genes with scanpy's Seurat-flavoured dispersion
ranking; RunPCA projects cells onto principal components of those genes;
RunUMAP and RunTSNE embed an existing representation in two dimensions for
plotting. The algorithms themselves are scanpy's and scikit-learn's; these
steps only choose the input matrix and register the output on the container.

Examples:
    >>> HighlyVariableGenes(n_top=2000).apply(pbmc)
    >>> pca = RunPCA(n_components=20)
    >>> pca.apply(pbmc)
    >>> pca.explained_variance_ratio_[:3]
    >>> RunUMAP(dimred="PCA", n_neighbors=15).apply(pbmc)
    >>> pbmc.get_reduced("UMAP").shape
    (2700, 2)
"""

from __future__ import annotations

import logging
from typing import Optional

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc
import scipy.sparse as sp
from sklearn.decomposition import PCA
from sklearn.manifold import TSNE

from cellmatrix.core.annotated_matrix import AnnotatedMatrix
from cellmatrix.core.transform import Transform
from cellmatrix.utils.anndata_bridge import string_index, to_anndata

logger = logging.getLogger(__name__)

__all__ = ['HighlyVariableGenes', 'RunPCA', 'RunUMAP', 'RunTSNE']


def _n_variable(values) -> int:
    """Rows that are not constant; constant rows have no defined dispersion."""
    if sp.issparse(values):
        hi = values.max(axis=1).toarray().ravel()
        lo = values.min(axis=1).toarray().ravel()
    else:
        hi, lo = np.max(values, axis=1), np.min(values, axis=1)
    return int((hi > lo).sum())


class HighlyVariableGenes(Transform):
    """
    Flag the n_top genes with the highest normalized dispersion.

    Runs sc.pp.highly_variable_genes(flavor="seurat") on the log-normalized
    assay. Adds feature columns hvg_mean, hvg_dispersion,
    hvg_dispersion_norm and the flag column (highly_variable).

    Params:
        n_top: Number of genes to flag (clamped to the non-constant genes)
        assay: Log-normalized input ("logcounts")
        log_base: Base the assay was logged with, for scanpy's back-transform
        column: Feature column for the flags
    """

    def __init__(
        self,
        n_top: int = 2000,
        assay: str = "logcounts",
        log_base: float = 2.0,
        column: str = "highly_variable",
    ):
        if n_top <= 0:
            raise ValueError(f"n_top must be positive, got {n_top}")
        super().__init__(
            name="HighlyVariableGenes",
            params={"n_top": n_top, "assay": assay, "log_base": log_base},
        )
        self.n_top = n_top
        self.assay = assay
        self.log_base = log_base
        self.column = column

    def validate(self, matrix: AnnotatedMatrix) -> list[str]:
        errors = super().validate(matrix)
        if not matrix.has_assay(self.assay):
            errors.append(f"Assay '{self.assay}' not found; run LibrarySizeNormalizer first")
        return errors

    def apply(self, matrix: AnnotatedMatrix) -> AnnotatedMatrix:
        self._check(matrix)
        values = matrix.get_assay(self.assay)
        n_top = min(self.n_top, _n_variable(values))
        if n_top == 0:
            raise ValueError(f"Assay '{self.assay}' has no variable genes")

        adata = to_anndata(matrix, assay=self.assay)
        adata.uns["log1p"] = {"base": self.log_base}
        sc.pp.highly_variable_genes(adata, n_top_genes=n_top, flavor="seurat")

        matrix.set_feature_column("hvg_mean", adata.var["means"].to_numpy(dtype=float))
        matrix.set_feature_column("hvg_dispersion", adata.var["dispersions"].to_numpy(dtype=float))
        matrix.set_feature_column(
            "hvg_dispersion_norm", adata.var["dispersions_norm"].to_numpy(dtype=float)
        )
        flags = adata.var["highly_variable"].to_numpy(dtype=bool)
        matrix.set_feature_column(self.column, flags)
        logger.info("Selected %d highly variable genes", int(flags.sum()))
        return matrix


class RunPCA(Transform):
    """
    Principal components of log-expression, stored as a reduced representation.

    Params:
        n_components: Number of components to keep
        assay: Input assay ("logcounts")
        use_hvg: Restrict to genes flagged by HighlyVariableGenes
        hvg_column: Feature column holding the HVG flags
        name: Name of the reduced representation ("PCA")
        random_state: Seed for randomized solvers

    After apply(), explained_variance_ratio_ holds the per-component
    fraction of variance.
    """

    def __init__(
        self,
        n_components: int = 50,
        assay: str = "logcounts",
        use_hvg: bool = True,
        hvg_column: str = "highly_variable",
        name: str = "PCA",
        random_state: Optional[int] = 0,
    ):
        if n_components <= 0:
            raise ValueError(f"n_components must be positive, got {n_components}")
        super().__init__(
            name="RunPCA",
            params={
                "n_components": n_components,
                "assay": assay,
                "use_hvg": use_hvg,
                "name": name,
            },
        )
        self.n_components = n_components
        self.assay = assay
        self.use_hvg = use_hvg
        self.hvg_column = hvg_column
        self.output_name = name
        self.random_state = random_state
        self.explained_variance_ratio_: Optional[np.ndarray] = None

    def _n_genes(self, matrix: AnnotatedMatrix) -> int:
        if self.use_hvg and self.hvg_column in matrix.feature_metadata.columns:
            return int(matrix.feature_metadata[self.hvg_column].sum())
        return matrix.n_features

    def validate(self, matrix: AnnotatedMatrix) -> list[str]:
        errors = super().validate(matrix)
        if not matrix.has_assay(self.assay):
            errors.append(f"Assay '{self.assay}' not found; run LibrarySizeNormalizer first")
        if self.use_hvg and self.hvg_column not in matrix.feature_metadata.columns:
            errors.append(
                f"Feature column '{self.hvg_column}' not found; run HighlyVariableGenes "
                "first or set use_hvg=False"
            )
        max_components = min(matrix.n_samples, self._n_genes(matrix))
        if self.n_components > max_components:
            errors.append(
                f"n_components ({self.n_components}) exceeds min(n_samples, n_genes) = {max_components}"
            )
        return errors

    def apply(self, matrix: AnnotatedMatrix) -> AnnotatedMatrix:
        self._check(matrix)
        values = matrix.get_assay(self.assay)
        if self.use_hvg:
            rows = np.flatnonzero(matrix.feature_metadata[self.hvg_column].to_numpy(dtype=bool))
            values = values.tocsr()[rows, :] if sp.issparse(values) else values[rows, :]

        # cells × genes
        X = values.T.toarray() if sp.issparse(values) else np.asarray(values, dtype=float).T

        pca = PCA(n_components=self.n_components, random_state=self.random_state)
        scores = pca.fit_transform(X)
        self.explained_variance_ratio_ = pca.explained_variance_ratio_

        matrix.set_reduced(self.output_name, scores)
        logger.info(
            "PCA on %d genes: first %d components explain %.1f%% of variance",
            X.shape[1], self.n_components, 100 * pca.explained_variance_ratio_.sum(),
        )
        return matrix


class RunUMAP(Transform):
    """
    UMAP embedding of an existing reduced representation.

    Builds scanpy's k-nearest-neighbour graph on the input representation
    (sc.pp.neighbors) and lays it out with sc.tl.umap.

    Params:
        dimred: Input representation ("PCA")
        n_dims: Use only the first n_dims columns of the input (None = all)
        n_neighbors: Size of the local neighbourhood; must be below n_samples
        n_components: Output dimensionality (2)
        name: Name of the output representation ("UMAP")
        random_state: Seed for reproducible layouts
    """

    def __init__(
        self,
        dimred: str = "PCA",
        n_dims: Optional[int] = None,
        n_neighbors: int = 15,
        n_components: int = 2,
        name: str = "UMAP",
        random_state: Optional[int] = 0,
    ):
        if n_neighbors < 2:
            raise ValueError(f"n_neighbors must be at least 2, got {n_neighbors}")
        if n_components <= 0:
            raise ValueError(f"n_components must be positive, got {n_components}")
        super().__init__(
            name="RunUMAP",
            params={
                "dimred": dimred,
                "n_dims": n_dims,
                "n_neighbors": n_neighbors,
                "n_components": n_components,
                "name": name,
            },
        )
        self.dimred = dimred
        self.n_dims = n_dims
        self.n_neighbors = n_neighbors
        self.n_components = n_components
        self.output_name = name
        self.random_state = random_state

    def validate(self, matrix: AnnotatedMatrix) -> list[str]:
        errors = super().validate(matrix)
        if self.dimred not in matrix.reduced_names:
            errors.append(f"Reduced representation '{self.dimred}' not found; run RunPCA first")
        if self.n_neighbors >= matrix.n_samples:
            errors.append(
                f"n_neighbors ({self.n_neighbors}) must be less than n_samples ({matrix.n_samples})"
            )
        return errors

    def apply(self, matrix: AnnotatedMatrix) -> AnnotatedMatrix:
        self._check(matrix)
        X = matrix.get_reduced(self.dimred)
        if self.n_dims is not None:
            X = X[:, :self.n_dims]

        adata = ad.AnnData(obs=pd.DataFrame(index=string_index(None, matrix.n_samples)))
        adata.obsm["X_input"] = np.array(X, dtype=float)
        sc.pp.neighbors(
            adata, n_neighbors=self.n_neighbors, use_rep="X_input", random_state=self.random_state
        )
        sc.tl.umap(adata, n_components=self.n_components, random_state=self.random_state)

        matrix.set_reduced(self.output_name, np.asarray(adata.obsm["X_umap"]))
        logger.info(
            "UMAP of '%s' (%d dims, %d neighbours)", self.dimred, X.shape[1], self.n_neighbors
        )
        return matrix


class RunTSNE(Transform):
    """
    t-SNE embedding of an existing reduced representation.

    Params:
        dimred: Input representation ("PCA")
        n_dims: Use only the first n_dims columns of the input (None = all)
        n_components: Output dimensionality (2)
        perplexity: t-SNE perplexity; must be below n_samples
        name: Name of the output representation ("TSNE")
        random_state: Seed for reproducible layouts
    """

    def __init__(
        self,
        dimred: str = "PCA",
        n_dims: Optional[int] = None,
        n_components: int = 2,
        perplexity: float = 30.0,
        name: str = "TSNE",
        random_state: Optional[int] = 0,
    ):
        if perplexity <= 0:
            raise ValueError(f"perplexity must be positive, got {perplexity}")
        super().__init__(
            name="RunTSNE",
            params={
                "dimred": dimred,
                "n_dims": n_dims,
                "n_components": n_components,
                "perplexity": perplexity,
                "name": name,
            },
        )
        self.dimred = dimred
        self.n_dims = n_dims
        self.n_components = n_components
        self.perplexity = perplexity
        self.output_name = name
        self.random_state = random_state

    def validate(self, matrix: AnnotatedMatrix) -> list[str]:
        errors = super().validate(matrix)
        if self.dimred not in matrix.reduced_names:
            errors.append(f"Reduced representation '{self.dimred}' not found; run RunPCA first")
        if self.perplexity >= matrix.n_samples:
            errors.append(
                f"perplexity ({self.perplexity}) must be less than n_samples ({matrix.n_samples})"
            )
        return errors

    def apply(self, matrix: AnnotatedMatrix) -> AnnotatedMatrix:
        self._check(matrix)
        X = matrix.get_reduced(self.dimred)
        if self.n_dims is not None:
            X = X[:, :self.n_dims]

        tsne = TSNE(
            n_components=self.n_components,
            perplexity=self.perplexity,
            init="pca",
            random_state=self.random_state,
        )
        matrix.set_reduced(self.output_name, tsne.fit_transform(X))
        return matrix
