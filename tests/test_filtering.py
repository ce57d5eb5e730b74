"""
Tests for low-abundance identification (filterByExpr rule).

Scenario: genes A [50, 60, 5, 6] and B [5, 4, 4, 5]; library sizes
55, 64, 9, 11 with median 33, so the CPM cutoff is 10 / 33 * 1e6.
"""

import numpy as np
import pandas as pd
import pytest

from tidyrna.quality.filtering import LOWLY_ABUNDANT, IdentifyAbundant, abundant_mask


class TestIdentifyAbundant:
    """Core rule on the hand-checkable scenario."""

    def test_cutoff_and_group_size(self, scenario_table):
        result = IdentifyAbundant(factor_of_interest="group").identify(scenario_table)
        assert result.cpm_cutoff == pytest.approx(10 / 33 * 1e6)
        assert result.min_sample_size == 2
        # B reaches the cutoff in s3 and s4 and totals 18 >= 15
        assert result.passed_genes == {"A", "B"}

    def test_minimum_total_counts_flags_b(self, scenario_table):
        flagger = IdentifyAbundant(factor_of_interest="group", minimum_total_counts=20)
        table = flagger.apply(scenario_table)
        flags = table.pivot_feature().set_index("feature")[LOWLY_ABUNDANT]
        assert flags.to_dict() == {"A": False, "B": True}
        # Flagging never removes rows
        assert len(table) == len(scenario_table)

    def test_without_design_all_samples_required(self, scenario_table):
        result = IdentifyAbundant().identify(scenario_table)
        assert result.min_sample_size == 4
        assert result.failed_genes == {"B"}
        assert result.n_failed_cpm == 1
        assert result.n_failed_total == 0

    def test_formula_uses_leverage(self, scenario_table):
        # ~ group: max leverage is 1/2 with two samples per group
        result = IdentifyAbundant(formula="~ group").identify(scenario_table)
        assert result.min_sample_size == pytest.approx(2.0)

    def test_numeric_factor_treated_as_formula(self, scenario_counts):
        from tidyrna.core.table import AbundanceTable

        samples = pd.DataFrame({"dose": [0.0, 1.0, 2.0, 3.0]}, index=scenario_counts.columns)
        table = AbundanceTable.from_matrix(scenario_counts, sample_metadata=samples)
        result = IdentifyAbundant(factor_of_interest="dose").identify(table)
        # Leverage of ~ dose on 4 evenly spaced points: max 0.7
        assert result.min_sample_size == pytest.approx(1 / 0.7)

    def test_large_n_adjustment(self):
        from tidyrna.core.table import AbundanceTable

        counts = pd.DataFrame(np.full((1, 20), 100), index=["A"],
                              columns=[f"s{j}" for j in range(20)])
        result = IdentifyAbundant().identify(AbundanceTable.from_matrix(counts))
        assert result.min_sample_size == pytest.approx(10 + 10 * 0.7)

    def test_factor_and_formula_exclusive(self):
        with pytest.raises(ValueError, match="not both"):
            IdentifyAbundant(factor_of_interest="group", formula="~ group")

    def test_unknown_factor(self, scenario_table):
        with pytest.raises(ValueError, match="not a sample column"):
            IdentifyAbundant(factor_of_interest="missing").identify(scenario_table)

    def test_repr_lists_params(self):
        assert "minimum_counts=10" in repr(IdentifyAbundant())


class TestAbundantMask:

    def test_computes_defaults_when_unflagged(self, scenario_table):
        assert abundant_mask(scenario_table).tolist() == [True, False]

    def test_reads_existing_flags(self, scenario_table):
        flagged = IdentifyAbundant(factor_of_interest="group").apply(scenario_table)
        assert abundant_mask(flagged).tolist() == [True, True]
