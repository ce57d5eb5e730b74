"""
Tests for AbundanceTable: reshape, typed joins and projections.
"""

import numpy as np
import pandas as pd
import pytest

from tidyrna.core.errors import BroadcastConsistencyError, InputShapeError
from tidyrna.core.table import AbundanceTable


class TestFromMatrix:
    """Reshaping a count matrix into the long table."""

    def test_shape_and_order(self, scenario_table):
        """One row per gene × sample, gene-major in matrix order."""
        table = scenario_table
        assert len(table) == 8
        assert table.n_features == 2
        assert table.n_samples == 4
        assert list(table.data["feature"][:4]) == ["A"] * 4
        assert list(table.data["sample"][:4]) == ["s1", "s2", "s3", "s4"]
        assert list(table.data["count"]) == [50, 60, 5, 6, 5, 4, 4, 5]

    def test_sample_metadata_broadcast(self, scenario_table):
        """Every row of a sample carries that sample's annotations."""
        rows = scenario_table.data[scenario_table.data["sample"] == "s3"]
        assert set(rows["group"]) == {"untreated"}
        assert scenario_table.sample_columns == ["group"]
        assert scenario_table.observation_columns == []

    def test_round_trip_matrix(self, scenario_counts, scenario_table):
        """to_matrix recovers the input counts."""
        pd.testing.assert_frame_equal(
            scenario_table.to_matrix(), scenario_counts, check_names=False, check_dtype=False
        )

    def test_duplicate_gene_ids_rejected(self):
        counts = pd.DataFrame([[1, 2], [3, 4]], index=["A", "A"], columns=["s1", "s2"])
        with pytest.raises(InputShapeError, match="Duplicate gene"):
            AbundanceTable.from_matrix(counts)

    def test_duplicate_sample_ids_rejected(self):
        counts = pd.DataFrame([[1, 2], [3, 4]], index=["A", "B"], columns=["s1", "s1"])
        with pytest.raises(InputShapeError, match="Duplicate sample"):
            AbundanceTable.from_matrix(counts)

    def test_metadata_must_cover_samples(self, scenario_counts, scenario_samples):
        with pytest.raises(InputShapeError, match="does not match"):
            AbundanceTable.from_matrix(scenario_counts, sample_metadata=scenario_samples.iloc[:3])

    def test_metadata_extra_rows_rejected(self, scenario_counts, scenario_samples):
        extra = pd.concat([scenario_samples, pd.DataFrame({"group": ["x"]}, index=["s9"])])
        with pytest.raises(InputShapeError):
            AbundanceTable.from_matrix(scenario_counts, sample_metadata=extra)

    def test_metadata_key_clash_rejected(self, scenario_counts, scenario_samples):
        clashing = scenario_samples.assign(count=1)
        with pytest.raises(InputShapeError, match="reserved"):
            AbundanceTable.from_matrix(scenario_counts, sample_metadata=clashing)

    def test_negative_counts_rejected(self):
        counts = pd.DataFrame([[1, -2]], index=["A"], columns=["s1", "s2"])
        with pytest.raises(InputShapeError, match="negative"):
            AbundanceTable.from_matrix(counts)

    def test_missing_counts_rejected(self):
        counts = pd.DataFrame([[1, np.nan]], index=["A"], columns=["s1", "s2"])
        with pytest.raises(InputShapeError, match="missing"):
            AbundanceTable.from_matrix(counts)

    def test_non_integer_counts_kept(self, caplog):
        counts = pd.DataFrame([[1.5, 2.0]], index=["A"], columns=["s1", "s2"])
        table = AbundanceTable.from_matrix(counts)
        assert table.data["count"].tolist() == [1.5, 2.0]
        assert "non-integer" in caplog.text

    def test_zero_genes_and_samples_retained(self):
        counts = pd.DataFrame([[0, 0], [3, 0]], index=["A", "B"], columns=["s1", "s2"])
        table = AbundanceTable.from_matrix(counts)
        assert table.shape[0] == 4

    def test_incomplete_grid_rejected(self):
        data = pd.DataFrame({"feature": ["A", "A", "B"], "sample": ["s1", "s2", "s1"],
                             "count": [1, 2, 3]})
        with pytest.raises(InputShapeError, match="every gene"):
            AbundanceTable(data)


class TestJoins:
    """Explicit sample- and gene-level joins."""

    def test_join_samples_registers_column(self, scenario_table):
        factors = pd.Series([1.0, 1.1, 0.9, 1.0], index=["s1", "s2", "s3", "s4"], name="nf")
        table = scenario_table.join_samples(factors)
        assert "nf" in table.sample_columns
        assert table.pivot_sample()["nf"].tolist() == [1.0, 1.1, 0.9, 1.0]
        # Input unchanged
        assert "nf" not in scenario_table

    def test_join_requires_full_coverage(self, scenario_table):
        partial = pd.DataFrame({"x": [1, 2]}, index=["s1", "s2"])
        with pytest.raises(InputShapeError, match="missing"):
            scenario_table.join_samples(partial)

    def test_join_clash_requires_overwrite(self, scenario_table):
        flags = pd.DataFrame({"flag": [True, False]}, index=["A", "B"])
        table = scenario_table.join_features(flags)
        with pytest.raises(InputShapeError, match="already exist"):
            table.join_features(flags)
        replaced = table.join_features(pd.DataFrame({"flag": [False, True]}, index=["A", "B"]),
                                       overwrite=True)
        assert replaced.pivot_feature()["flag"].tolist() == [False, True]

    def test_join_cannot_shadow_other_level(self, scenario_table):
        with pytest.raises(InputShapeError, match="other-level"):
            scenario_table.join_features(pd.DataFrame({"group": [1, 2]}, index=["A", "B"]),
                                         overwrite=True)

    def test_drop_columns(self, scenario_table):
        flags = pd.DataFrame({"flag": [True, False]}, index=["A", "B"])
        table = scenario_table.join_features(flags).drop_columns(["flag", "group"])
        assert table.feature_columns == []
        assert table.sample_columns == []
        assert list(table.data.columns) == ["feature", "sample", "count"]
        with pytest.raises(InputShapeError, match="key or count"):
            table.drop_columns(["count"])
        with pytest.raises(KeyError):
            table.drop_columns(["flag"])

    def test_with_observation(self, scenario_table):
        doubled = scenario_table.to_matrix() * 2
        table = scenario_table.with_observation("doubled", doubled)
        assert table.observation_columns == ["doubled"]
        assert table.data["doubled"].tolist() == [2 * c for c in table.data["count"]]


class TestProjections:
    """Sample and gene projections with the broadcast check."""

    def test_pivot_sample(self, scenario_table):
        projection = scenario_table.pivot_sample()
        assert list(projection.columns) == ["sample", "group"]
        assert projection["sample"].tolist() == ["s1", "s2", "s3", "s4"]

    def test_pivot_feature_drops_sample_columns(self, scenario_table):
        projection = scenario_table.pivot_feature()
        assert list(projection.columns) == ["feature"]
        assert projection["feature"].tolist() == ["A", "B"]

    def test_varying_sample_column_detected(self, scenario_table):
        data = scenario_table.to_frame()
        data.loc[0, "group"] = "untreated"  # s1 of gene A only
        broken = AbundanceTable(data, sample_columns=["group"])
        with pytest.raises(BroadcastConsistencyError) as excinfo:
            broken.pivot_sample()
        assert excinfo.value.column == "group"
        assert excinfo.value.keys == ["s1"]
        with pytest.raises(BroadcastConsistencyError):
            broken.verify_broadcast()

    def test_select_features(self, scenario_table):
        subset = scenario_table.select_features(["B"])
        assert subset.n_features == 1
        assert len(subset) == 4
        mask = np.array([True, False])
        assert list(scenario_table.select_features(mask).feature_ids) == ["A"]
