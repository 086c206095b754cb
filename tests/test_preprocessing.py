"""
Tests for normalization, highly variable genes, PCA, UMAP and t-SNE.
"""

import numpy as np
import pytest
import scipy.sparse as sp

from cellmatrix.core import AnnotatedMatrix
from cellmatrix.preprocessing import (
    ExecutionConfig,
    HighlyVariableGenes,
    LibrarySizeNormalizer,
    RunPCA,
    RunTSNE,
    RunUMAP,
    library_size_factors,
    log_normalize,
)


def _dense(m):
    return m.toarray() if sp.issparse(m) else np.asarray(m)


def _expected_logcounts(counts, log_base=2.0):
    counts = _dense(counts).astype(float)
    lib = counts.sum(axis=0)
    factors = lib / lib.mean()
    return np.log1p(counts / factors) / np.log(log_base)


@pytest.fixture
def normalized(synthetic_counts):
    return LibrarySizeNormalizer().apply(synthetic_counts)


class TestExecutionConfig:

    def test_defaults(self):
        config = ExecutionConfig()
        assert config.n_jobs == 1
        assert config.backend is None

    @pytest.mark.parametrize("kwargs", [{"n_jobs": 0}, {"chunk_size": 0}])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            ExecutionConfig(**kwargs)


class TestLibrarySizeFactors:

    def test_mean_one(self, synthetic_counts):
        factors = library_size_factors(synthetic_counts.data)
        assert factors.shape == (90,)
        assert factors.mean() == pytest.approx(1.0)

    def test_proportional_to_library_size(self, example_matrix):
        factors = library_size_factors(example_matrix.data)
        np.testing.assert_allclose(factors, np.array([40, 45, 50, 55]) / 47.5)

    def test_zero_library(self):
        counts = np.array([[1.0, 0.0], [2.0, 0.0]])
        with pytest.raises(ValueError, match="zero library size"):
            library_size_factors(counts)


class TestLogNormalize:

    def test_dense_values(self, example_matrix):
        factors = library_size_factors(example_matrix.data)
        result = log_normalize(example_matrix.data, factors)
        np.testing.assert_allclose(result, _expected_logcounts(example_matrix.data))

    def test_sparse_stays_sparse(self, synthetic_counts):
        factors = library_size_factors(synthetic_counts.data)
        result = log_normalize(synthetic_counts.data, factors)
        assert sp.isspmatrix_csr(result) or isinstance(result, sp.csr_array)
        np.testing.assert_allclose(result.toarray(), _expected_logcounts(synthetic_counts.data))

    def test_natural_log(self, example_matrix):
        factors = library_size_factors(example_matrix.data)
        result = log_normalize(example_matrix.data, factors, log_base=np.e)
        assert isinstance(result, np.ndarray)
        np.testing.assert_allclose(result, _expected_logcounts(example_matrix.data, log_base=np.e))

    def test_explicit_factors_without_target_sum(self, example_matrix):
        factors = np.array([1.0, 2.0, 4.0, 0.5])
        result = log_normalize(example_matrix.data, factors)
        np.testing.assert_allclose(result, np.log2(example_matrix.data / factors + 1))

    def test_target_sum_matches_size_factors(self, synthetic_counts):
        counts = synthetic_counts.data
        factors = library_size_factors(counts)
        target_sum = float(np.asarray(counts.sum(axis=0)).mean())
        via_target = log_normalize(counts, factors, target_sum=target_sum)
        via_factors = log_normalize(counts, factors)
        np.testing.assert_allclose(via_target.toarray(), via_factors.toarray())

    @pytest.mark.parametrize("chunk_size", [1, 7, 90, 1000])
    def test_chunking_does_not_change_result(self, synthetic_counts, chunk_size):
        factors = library_size_factors(synthetic_counts.data)
        result = log_normalize(
            synthetic_counts.data, factors, execution=ExecutionConfig(chunk_size=chunk_size)
        )
        np.testing.assert_allclose(result.toarray(), _expected_logcounts(synthetic_counts.data))

    def test_parallel_matches_serial(self, synthetic_counts):
        factors = library_size_factors(synthetic_counts.data)
        serial = log_normalize(synthetic_counts.data, factors)
        parallel = log_normalize(
            synthetic_counts.data,
            factors,
            execution=ExecutionConfig(n_jobs=2, chunk_size=16, backend="threading"),
        )
        np.testing.assert_allclose(parallel.toarray(), serial.toarray())


class TestLibrarySizeNormalizer:

    def test_adds_logcounts_and_size_factors(self, synthetic_counts):
        result = LibrarySizeNormalizer().apply(synthetic_counts)

        assert result is synthetic_counts
        assert result.has_assay("logcounts")
        assert result.size_factors.mean() == pytest.approx(1.0)
        np.testing.assert_allclose(
            _dense(result.get_assay("logcounts")), _expected_logcounts(synthetic_counts.data)
        )

    def test_reuses_existing_size_factors(self, example_matrix):
        example_matrix.set_size_factors(np.ones(4))
        LibrarySizeNormalizer().apply(example_matrix)
        np.testing.assert_allclose(
            example_matrix.get_assay("logcounts"), np.log2(example_matrix.data + 1)
        )
        np.testing.assert_allclose(example_matrix.size_factors, np.ones(4))

    def test_recompute(self, example_matrix):
        example_matrix.set_size_factors(np.ones(4))
        LibrarySizeNormalizer(recompute=True).apply(example_matrix)
        np.testing.assert_allclose(example_matrix.size_factors, np.array([40, 45, 50, 55]) / 47.5)

    def test_custom_assays(self, example_matrix):
        example_matrix.set_assay("counts", example_matrix.data.copy())
        LibrarySizeNormalizer(assay="counts", output_assay="lognorm").apply(example_matrix)
        assert example_matrix.assay_names == ["counts", "lognorm"]

    def test_missing_input_assay(self, example_matrix):
        with pytest.raises(ValueError, match="Assay 'counts' not found"):
            LibrarySizeNormalizer(assay="counts").apply(example_matrix)

    def test_non_positive_existing_factors(self, example_matrix):
        example_matrix.set_size_factors([1.0, 0.0, 1.0, 1.0])
        with pytest.raises(ValueError, match="size factors must be positive"):
            LibrarySizeNormalizer().apply(example_matrix)

    def test_zero_library_cell(self, example_matrix):
        data = example_matrix.data.copy()
        data[:, 1] = 0
        with pytest.raises(ValueError, match="zero library size"):
            LibrarySizeNormalizer().apply(AnnotatedMatrix(data))

    @pytest.mark.parametrize("kwargs", [{"log_base": 1}, {"log_base": 0.5}])
    def test_invalid_params(self, kwargs):
        with pytest.raises(ValueError):
            LibrarySizeNormalizer(**kwargs)

    def test_params_recorded(self):
        step = LibrarySizeNormalizer(execution=ExecutionConfig(n_jobs=4))
        assert step.params["n_jobs"] == 4
        assert "LibrarySizeNormalizer(" in repr(step)


class TestHighlyVariableGenes:

    def test_flags_top_genes(self, normalized):
        HighlyVariableGenes(n_top=10).apply(normalized)

        flags = normalized.get_feature_column("highly_variable").to_numpy()
        assert flags.sum() >= 10
        norm = normalized.get_feature_column("hvg_dispersion_norm").to_numpy()
        assert norm[flags].min() >= np.nanmax(norm[~flags])

    def test_adds_dispersion_columns(self, normalized):
        HighlyVariableGenes(n_top=10).apply(normalized)
        for column in ("hvg_mean", "hvg_dispersion", "hvg_dispersion_norm", "highly_variable"):
            assert column in normalized.feature_metadata.columns
        assert normalized.get_feature_column("highly_variable").dtype == bool

    def test_markers_are_highly_variable(self, normalized):
        HighlyVariableGenes(n_top=10).apply(normalized)
        selected = normalized.feature_metadata.loc[
            normalized.get_feature_column("highly_variable").to_numpy(), "Symbol"
        ]
        markers = {"CD3E", "CD3D", "MS4A1", "CD79A", "LYZ", "CD14"}
        assert len(markers & set(selected)) >= 4

    def test_n_top_larger_than_features(self, normalized):
        HighlyVariableGenes(n_top=5000).apply(normalized)
        assert normalized.get_feature_column("highly_variable").all()

    def test_constant_genes_never_flagged(self, normalized):
        logcounts = _dense(normalized.get_assay("logcounts")).copy()
        logcounts[0, :] = 0.0
        normalized.set_assay("logcounts", logcounts)
        HighlyVariableGenes(n_top=5000).apply(normalized)

        flags = normalized.get_feature_column("highly_variable").to_numpy()
        assert not flags[0]
        assert flags[1:].all()

    def test_does_not_touch_assay(self, normalized):
        before = _dense(normalized.get_assay("logcounts")).copy()
        HighlyVariableGenes(n_top=10).apply(normalized)
        np.testing.assert_array_equal(_dense(normalized.get_assay("logcounts")), before)

    def test_requires_logcounts(self, synthetic_counts):
        with pytest.raises(ValueError, match="run LibrarySizeNormalizer first"):
            HighlyVariableGenes().apply(synthetic_counts)

    def test_invalid(self):
        with pytest.raises(ValueError):
            HighlyVariableGenes(n_top=0)


class TestRunPCA:

    def test_shape_and_variance(self, normalized):
        HighlyVariableGenes(n_top=20).apply(normalized)
        pca = RunPCA(n_components=5)
        pca.apply(normalized)

        scores = normalized.get_reduced("PCA")
        assert scores.shape == (90, 5)
        assert pca.explained_variance_ratio_.shape == (5,)
        assert np.all(np.diff(pca.explained_variance_ratio_) <= 1e-12)
        assert pca.explained_variance_ratio_.sum() <= 1.0

    def test_separates_cell_types(self, normalized):
        HighlyVariableGenes(n_top=20).apply(normalized)
        RunPCA(n_components=2).apply(normalized)

        scores = normalized.get_reduced("PCA")
        types = normalized.get_sample_column("true_type").to_numpy()
        centroids = np.array([scores[types == t].mean(axis=0) for t in np.unique(types)])
        spread = max(scores[types == t].std(axis=0).max() for t in np.unique(types))
        distances = np.linalg.norm(centroids[:, None] - centroids[None, :], axis=-1)
        assert distances[np.triu_indices(3, k=1)].min() > spread

    def test_without_hvg(self, normalized):
        RunPCA(n_components=3, use_hvg=False, name="PCA_all").apply(normalized)
        assert normalized.get_reduced("PCA_all").shape == (90, 3)

    def test_requires_hvg_column(self, normalized):
        with pytest.raises(ValueError, match="run HighlyVariableGenes"):
            RunPCA(n_components=3).apply(normalized)

    def test_too_many_components(self, normalized):
        HighlyVariableGenes(n_top=4).apply(normalized)
        with pytest.raises(ValueError, match="exceeds"):
            RunPCA(n_components=5).apply(normalized)

    def test_reproducible(self, normalized):
        HighlyVariableGenes(n_top=20).apply(normalized)
        RunPCA(n_components=3).apply(normalized)
        first = normalized.get_reduced("PCA").copy()
        RunPCA(n_components=3).apply(normalized)
        np.testing.assert_allclose(normalized.get_reduced("PCA"), first)


class TestRunTSNE:

    def test_embedding(self, normalized):
        HighlyVariableGenes(n_top=20).apply(normalized)
        RunPCA(n_components=5).apply(normalized)
        RunTSNE(perplexity=10).apply(normalized)

        assert normalized.get_reduced("TSNE").shape == (90, 2)
        assert normalized.reduced_names == ["PCA", "TSNE"]

    def test_n_dims(self, normalized):
        HighlyVariableGenes(n_top=20).apply(normalized)
        RunPCA(n_components=5).apply(normalized)
        RunTSNE(n_dims=2, perplexity=5, name="TSNE_2").apply(normalized)
        assert normalized.get_reduced("TSNE_2").shape == (90, 2)

    def test_requires_input(self, normalized):
        with pytest.raises(ValueError, match="run RunPCA first"):
            RunTSNE().apply(normalized)

    def test_perplexity_vs_cells(self, normalized):
        HighlyVariableGenes(n_top=20).apply(normalized)
        RunPCA(n_components=5).apply(normalized)
        small = normalized.subset(samples=list(range(10)))
        with pytest.raises(ValueError, match="perplexity"):
            RunTSNE(perplexity=30).apply(small)

    def test_embedding_subset_with_cells(self, normalized):
        HighlyVariableGenes(n_top=20).apply(normalized)
        RunPCA(n_components=5).apply(normalized)
        RunTSNE(perplexity=10).apply(normalized)

        keep = [0, 45, 89]
        small = normalized.subset(samples=keep)
        np.testing.assert_array_equal(small.get_reduced("TSNE"), normalized.get_reduced("TSNE")[keep])


class TestRunUMAP:

    @pytest.fixture
    def with_pca(self, normalized):
        HighlyVariableGenes(n_top=20).apply(normalized)
        RunPCA(n_components=5).apply(normalized)
        return normalized

    def test_embedding(self, with_pca):
        RunUMAP(n_neighbors=10).apply(with_pca)

        embedding = with_pca.get_reduced("UMAP")
        assert embedding.shape == (90, 2)
        assert np.isfinite(embedding).all()
        assert with_pca.reduced_names == ["PCA", "UMAP"]

    def test_embedding_subset_with_cells(self, with_pca):
        RunUMAP(n_neighbors=10).apply(with_pca)

        keep = [89, 3, 40]
        small = with_pca.subset(samples=keep)
        assert small.get_reduced("UMAP").shape == (3, 2)
        np.testing.assert_array_equal(small.get_reduced("UMAP"), with_pca.get_reduced("UMAP")[keep])

    def test_n_dims_and_name(self, with_pca):
        RunUMAP(n_dims=3, n_neighbors=10, name="UMAP_3").apply(with_pca)
        assert with_pca.get_reduced("UMAP_3").shape == (90, 2)
        assert "UMAP" not in with_pca.reduced_names

    def test_requires_input(self, normalized):
        with pytest.raises(ValueError, match="run RunPCA first"):
            RunUMAP().apply(normalized)

    def test_neighbors_vs_cells(self, with_pca):
        small = with_pca.subset(samples=list(range(10)))
        with pytest.raises(ValueError, match="n_neighbors"):
            RunUMAP(n_neighbors=15).apply(small)

    @pytest.mark.parametrize("kwargs", [{"n_neighbors": 1}, {"n_components": 0}])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            RunUMAP(**kwargs)
