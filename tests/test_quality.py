"""
Tests for QC metrics, MAD outlier calls and QC-based filtering.
"""

import numpy as np
import pandas as pd
import pytest

from cellmatrix.quality import (
    CellQCFilter,
    FeatureFilter,
    PerCellQC,
    PerFeatureQC,
    QCFilterResult,
    QCThresholds,
    feature_subset_mask,
    is_outlier,
    mad_thresholds,
)
from conftest import MITO_GENES


N_DAMAGED = 3


class TestFeatureSubsetMask:

    def test_prefix_is_case_insensitive(self, synthetic_counts):
        mask = feature_subset_mask(synthetic_counts, "MT-")
        symbols = synthetic_counts.feature_metadata["Symbol"][mask].tolist()
        assert symbols == MITO_GENES

    def test_prefix_falls_back_to_feature_names(self, synthetic_counts):
        mask = feature_subset_mask(synthetic_counts, "ENSG0000000000", symbol_column="missing")
        assert mask.sum() == 10

    def test_selector(self, example_matrix):
        mask = feature_subset_mask(example_matrix, [0, 4])
        np.testing.assert_array_equal(mask, [True, False, False, False, True])

    def test_prefix_without_symbols_or_names(self):
        from cellmatrix.core import AnnotatedMatrix
        with pytest.raises(ValueError, match="Cannot match prefix"):
            feature_subset_mask(AnnotatedMatrix(np.zeros((2, 2))), "MT-")


class TestPerCellQC:

    def test_columns_added(self, synthetic_counts):
        result = PerCellQC().apply(synthetic_counts)

        assert result is synthetic_counts
        for column in ["sum", "detected", "subsets_Mito_sum", "subsets_Mito_detected",
                       "subsets_Mito_percent", "total"]:
            assert column in result.sample_metadata.columns

    def test_values(self, example_matrix):
        PerCellQC(subsets={"Mito": "MT-"}).apply(example_matrix)
        data = example_matrix.data

        np.testing.assert_allclose(example_matrix.get_sample_column("sum"), data.sum(axis=0))
        np.testing.assert_array_equal(example_matrix.get_sample_column("detected"), (data > 0).sum(axis=0))
        np.testing.assert_allclose(example_matrix.get_sample_column("subsets_Mito_sum"), data[4])
        np.testing.assert_allclose(
            example_matrix.get_sample_column("subsets_Mito_percent"),
            100 * data[4] / data.sum(axis=0),
        )
        np.testing.assert_allclose(
            example_matrix.get_sample_column("total"), example_matrix.get_sample_column("sum")
        )

    def test_sparse_matches_dense(self, synthetic_counts, dense_counts):
        PerCellQC().apply(synthetic_counts)
        PerCellQC().apply(dense_counts)
        pd.testing.assert_frame_equal(
            synthetic_counts.sample_metadata, dense_counts.sample_metadata
        )

    def test_damaged_cells_have_high_mito(self, synthetic_counts):
        PerCellQC().apply(synthetic_counts)
        percent = synthetic_counts.get_sample_column("subsets_Mito_percent").to_numpy()
        assert percent[-N_DAMAGED:].min() > 50
        assert percent[:-N_DAMAGED].max() < 20

    def test_zero_library_gives_zero_percent(self, example_matrix):
        # column 0 holds 0, 4, 8, 12, 16; zero it out
        data = example_matrix.data.copy()
        data[:, 0] = 0
        from cellmatrix.core import AnnotatedMatrix
        matrix = AnnotatedMatrix(data, example_matrix.feature_metadata)
        PerCellQC().apply(matrix)
        assert matrix.get_sample_column("subsets_Mito_percent")[0] == 0

    def test_multiple_subsets(self, synthetic_counts):
        PerCellQC(subsets={"Mito": "MT-", "Markers": [0, 1]}).apply(synthetic_counts)
        assert "subsets_Markers_percent" in synthetic_counts.sample_metadata.columns
        assert synthetic_counts.get_sample_column("subsets_Markers_detected").max() <= 2

    def test_counts_assay(self, example_matrix):
        example_matrix.set_assay("counts", example_matrix.data * 2)
        PerCellQC(assay="counts").apply(example_matrix)
        np.testing.assert_allclose(
            example_matrix.get_sample_column("sum"), 2 * example_matrix.data.sum(axis=0)
        )

    def test_missing_assay(self, example_matrix):
        with pytest.raises(ValueError, match="Assay 'counts' not found"):
            PerCellQC(assay="counts").apply(example_matrix)

    def test_empty_matrix(self, example_matrix):
        with pytest.raises(ValueError, match="empty"):
            PerCellQC().apply(example_matrix.subset(samples=[]))


class TestPerFeatureQC:

    def test_values(self, example_matrix):
        PerFeatureQC().apply(example_matrix)
        np.testing.assert_allclose(
            example_matrix.get_feature_column("mean"), example_matrix.data.mean(axis=1)
        )
        # only position (0, 0) is zero
        np.testing.assert_allclose(
            example_matrix.get_feature_column("detected"), [75, 100, 100, 100, 100]
        )


class TestOutliers:

    def test_mad_thresholds(self):
        lower, upper = mad_thresholds(np.array([1.0, 2.0, 3.0, 4.0, 5.0]), nmads=2)
        # median 3, MAD 1, scaled 1.4826
        assert lower == pytest.approx(3 - 2 * 1.4826)
        assert upper == pytest.approx(3 + 2 * 1.4826)

    def test_mad_thresholds_log_scale(self):
        values = np.array([100.0, 110.0, 90.0, 105.0, 95.0])
        lower, upper = mad_thresholds(values, nmads=3, log=True)
        assert lower < 90 < 110 < upper
        # symmetric on log scale, so wider above the median than below
        assert upper - 100 > 100 - lower

    def test_mad_thresholds_all_nan(self):
        assert all(np.isnan(mad_thresholds(np.array([np.nan]))))

    def test_is_outlier_tails(self):
        values = np.array([10, 11, 9, 10, 10, 50, 0])
        np.testing.assert_array_equal(
            is_outlier(values, nmads=3, type="higher"), [False] * 5 + [True, False]
        )
        np.testing.assert_array_equal(
            is_outlier(values, nmads=3, type="lower"), [False] * 6 + [True]
        )
        np.testing.assert_array_equal(
            is_outlier(values, nmads=3), [False] * 5 + [True, True]
        )

    def test_nan_is_not_outlier(self):
        assert not is_outlier(np.array([1.0, 1.0, 2.0, np.nan]))[-1]

    def test_invalid_arguments(self):
        with pytest.raises(ValueError, match="type"):
            is_outlier(np.ones(3), type="upper")
        with pytest.raises(ValueError, match="nmads"):
            is_outlier(np.ones(3), nmads=0)


class TestQCThresholds:

    def test_defaults_disable_everything(self):
        t = QCThresholds()
        assert t.min_sum is None and t.max_mito_percent is None
        assert t.mito_column == "subsets_Mito_percent"

    @pytest.mark.parametrize("kwargs", [
        {"min_sum": -1},
        {"min_detected": -5},
        {"max_mito_percent": 150},
        {"mito_nmads": 0},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            QCThresholds(**kwargs)


class TestCellQCFilter:

    def test_discards_damaged_cells(self, synthetic_counts):
        PerCellQC().apply(synthetic_counts)
        qc_filter = CellQCFilter(QCThresholds(max_mito_percent=20))

        kept = qc_filter.apply(synthetic_counts)

        assert kept.n_samples == synthetic_counts.n_samples - N_DAMAGED
        assert kept.n_features == synthetic_counts.n_features
        discard = synthetic_counts.get_sample_column("discard").to_numpy()
        assert discard[-N_DAMAGED:].all()
        assert not discard[:-N_DAMAGED].any()
        assert not kept.get_sample_column("discard").any()

    def test_result(self, synthetic_counts):
        PerCellQC().apply(synthetic_counts)
        qc_filter = CellQCFilter(QCThresholds(min_sum=0, max_mito_percent=20))
        qc_filter.apply(synthetic_counts)

        result = qc_filter.result_
        assert isinstance(result, QCFilterResult)
        assert result.n_cells == 90
        assert result.n_discarded == N_DAMAGED
        assert result.n_kept == 87
        assert result.by_criterion == {"low_sum": 0, "high_mito": N_DAMAGED}
        assert result.thresholds["max_mito_percent"] == 20
        assert result.keep_rate == pytest.approx(87 / 90)

    def test_adaptive_mito_threshold(self, synthetic_counts):
        PerCellQC().apply(synthetic_counts)
        qc_filter = CellQCFilter(QCThresholds(mito_nmads=3))
        qc_filter.apply(synthetic_counts)

        discard = synthetic_counts.get_sample_column("discard").to_numpy()
        assert discard[-N_DAMAGED:].all()
        assert qc_filter.result_.by_criterion["mito_outlier"] >= N_DAMAGED

    def test_low_library(self, example_matrix):
        PerCellQC().apply(example_matrix)
        # column sums are 40, 45, 50, 55
        kept = CellQCFilter(QCThresholds(min_sum=48)).apply(example_matrix)
        assert kept.sample_metadata["Barcode"].tolist() == ["AAAT-1", "AACA-1"]

    def test_custom_discard_column(self, example_matrix):
        PerCellQC().apply(example_matrix)
        CellQCFilter(QCThresholds(min_detected=1), discard_column="qc_fail").apply(example_matrix)
        assert "qc_fail" in example_matrix.sample_metadata.columns

    def test_requires_metrics(self, example_matrix):
        with pytest.raises(ValueError, match="run PerCellQC first"):
            CellQCFilter(QCThresholds(max_mito_percent=10)).apply(example_matrix)

    def test_no_criteria_keeps_everything(self, example_matrix):
        kept = CellQCFilter(QCThresholds()).apply(example_matrix)
        assert kept.shape == example_matrix.shape


class TestFeatureFilter:

    def test_min_cells(self, example_matrix):
        # feature 0 is zero in one of four cells
        kept = FeatureFilter(min_cells=4).apply(example_matrix)
        assert kept.feature_metadata["Symbol"].tolist() == ["MS4A1", "LYZ", "NKG7", "MT-CO1"]

    def test_sparse(self, synthetic_counts):
        kept = FeatureFilter(min_cells=1).apply(synthetic_counts)
        assert kept.n_samples == 90
        assert kept.n_features <= 49

    def test_sparse_matches_dense(self, synthetic_counts, dense_counts):
        min_cells = 60
        sparse_kept = FeatureFilter(min_cells=min_cells).apply(synthetic_counts)
        dense_kept = FeatureFilter(min_cells=min_cells).apply(dense_counts)

        assert sparse_kept.feature_names.equals(dense_kept.feature_names)
        expected = (dense_counts.data > 0).sum(axis=1) >= min_cells
        assert sparse_kept.n_features == int(expected.sum())
        assert 0 < sparse_kept.n_features < 49

    def test_explicit_zeros_are_not_detected(self, example_matrix):
        import scipy.sparse as sp
        from cellmatrix.core import AnnotatedMatrix
        counts = sp.csr_matrix(example_matrix.data)
        # store an explicit zero for feature 1, sample 0
        counts[1, 0] = 0
        assert counts.nnz == 19
        matrix = AnnotatedMatrix(counts, example_matrix.feature_metadata)
        kept = FeatureFilter(min_cells=4).apply(matrix)
        assert kept.feature_metadata["Symbol"].tolist() == ["LYZ", "NKG7", "MT-CO1"]

    def test_invalid(self):
        with pytest.raises(ValueError):
            FeatureFilter(min_cells=-1)
