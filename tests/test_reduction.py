"""
Tests for PCA/MDS sample coordinates and variable-gene selection.
"""

import numpy as np
import pandas as pd
import pytest

from tidyrna.core.table import AbundanceTable
from tidyrna.quality.filtering import IdentifyAbundant
from tidyrna.stats.normalization import ScaleAbundance
from tidyrna.stats.reduction import (
    KeepVariable,
    ReduceDimensions,
    ReductionMethod,
    classical_mds,
    log_abundance,
    top_variable,
)


@pytest.fixture(scope="module")
def scaled_table(nb_table):
    flagged = IdentifyAbundant(factor_of_interest="group").apply(nb_table)
    return ScaleAbundance().apply(flagged)


class TestReduceDimensions:

    def test_pca_columns_and_variance(self, scaled_table):
        result = ReduceDimensions(method="PCA", n_components=3, top=100).fit(scaled_table)
        assert list(result.coordinates.columns) == ["PC1", "PC2", "PC3"]
        assert list(result.coordinates.index) == list(scaled_table.sample_ids)
        assert len(result.features_used) == 100
        fractions = result.variance_explained.to_numpy()
        assert np.all(np.diff(fractions) <= 1e-12)
        assert fractions.sum() <= 1 + 1e-9
        assert result.axis_labels()[0].startswith("PC1 (")

    def test_pc1_separates_groups(self, scaled_table):
        result = ReduceDimensions(method="PCA", top=20).fit(scaled_table)
        groups = scaled_table.sample_metadata["group"]
        pc1 = result.coordinates["PC1"]
        treated = pc1[groups == "treated"]
        untreated = pc1[groups == "untreated"]
        assert treated.max() < untreated.min() or treated.min() > untreated.max()

    def test_mds_columns(self, scaled_table):
        result = ReduceDimensions(method="mds", n_components=2).fit(scaled_table)
        assert list(result.coordinates.columns) == ["Dim1", "Dim2"]
        assert result.method == "MDS"

    def test_apply_joins_sample_columns(self, scaled_table):
        table = ReduceDimensions(method="PCA").apply(scaled_table)
        assert {"PC1", "PC2"} <= set(table.sample_columns)
        assert len(table) == len(scaled_table)
        table.verify_broadcast()

    def test_too_many_components(self, scaled_table):
        with pytest.raises(ValueError, match="at most"):
            ReduceDimensions(method="MDS", n_components=6).fit(scaled_table)

    def test_scaled_pca(self, scaled_table):
        result = ReduceDimensions(method="PCA", scale=True).fit(scaled_table)
        assert result.n_components == 2

    def test_method_enum(self):
        assert ReductionMethod("pca") is ReductionMethod.PCA
        assert ReductionMethod.MDS.prefix == "Dim"


class TestClassicalMds:

    def test_recovers_line(self):
        """Points on a line embed with matching pairwise distances in Dim1."""
        data = np.array([[0.0, 0.0], [1.0, 1.0], [3.0, 3.0]])
        coords, fractions = classical_mds(data, 1)
        # RMS distance between rows 0 and 2 is sqrt(18 / 2) = 3
        assert abs(coords[2, 0] - coords[0, 0]) == pytest.approx(3.0)
        assert fractions[0] == pytest.approx(1.0)

    def test_deterministic_sign(self):
        data = np.random.RandomState(0).normal(size=(5, 10))
        first, _ = classical_mds(data, 2)
        second, _ = classical_mds(data, 2)
        np.testing.assert_array_equal(first, second)


class TestVariableGenes:

    def test_top_variable_ties_keep_order(self):
        matrix = pd.DataFrame(
            [[0, 2], [0, 4], [0, 2], [1, 1]],
            index=["a", "b", "c", "d"],
            columns=["s1", "s2"],
            dtype=float,
        )
        assert list(top_variable(matrix, 2)) == ["b", "a"]
        assert list(top_variable(matrix, 3)) == ["b", "a", "c"]

    def test_keep_variable_removes_rows(self, scaled_table):
        kept = KeepVariable(top=25).apply(scaled_table)
        assert kept.n_features == 25
        assert len(kept) == 25 * scaled_table.n_samples
        # Table order is preserved
        positions = scaled_table.feature_ids.get_indexer(kept.feature_ids)
        assert np.all(np.diff(positions) > 0)

    def test_keep_variable_matches_reduction_genes(self, scaled_table):
        kept = KeepVariable(top=30).apply(scaled_table)
        used = ReduceDimensions(top=30).fit(scaled_table).features_used
        assert set(kept.feature_ids) == set(used)

    def test_log_abundance_uses_scaled_counts(self, scaled_table):
        matrix = log_abundance(scaled_table, abundant_only=False)
        expected = np.log2(scaled_table.to_matrix("count_scaled") + 1)
        np.testing.assert_allclose(matrix.to_numpy(), expected.to_numpy())

    def test_invalid_top(self):
        with pytest.raises(ValueError):
            KeepVariable(top=0)
