"""
Tests for sample identifier rewrites.
"""

import pandas as pd
import pytest

from tidyrna.core.errors import IdentifierCollisionError
from tidyrna.core.table import AbundanceTable, replace_pattern, strip_prefix


@pytest.fixture
def srr_table():
    counts = pd.DataFrame(
        [[1, 2, 3], [4, 5, 6]],
        index=["g1", "g2"],
        columns=["SRR1039508", "SRR1039509", "SRR1039512"],
    )
    samples = pd.DataFrame({"dex": ["untrt", "trt", "untrt"]}, index=counts.columns)
    return AbundanceTable.from_matrix(counts, sample_metadata=samples)


class TestStripPrefix:

    def test_removes_prefix(self):
        assert strip_prefix("SRR")("SRR1039508") == "1039508"

    def test_idempotent_when_absent(self):
        rewrite = strip_prefix("SRR")
        assert rewrite("1039508") == "1039508"
        assert rewrite(rewrite("SRR1039508")) == "1039508"

    def test_only_leading_occurrence(self):
        assert strip_prefix("S")("SAMPLES") == "AMPLES"


class TestRenameSamples:

    def test_rename_everywhere(self, srr_table):
        renamed = srr_table.rename_samples(strip_prefix("SRR"))
        assert list(renamed.sample_ids) == ["1039508", "1039509", "1039512"]
        assert set(renamed.data["sample"]) == {"1039508", "1039509", "1039512"}
        # Annotations follow their sample
        assert renamed.pivot_sample().set_index("sample").loc["1039509", "dex"] == "trt"

    def test_input_unchanged(self, srr_table):
        srr_table.rename_samples(strip_prefix("SRR"))
        assert srr_table.sample_ids[0] == "SRR1039508"

    def test_collision_detected(self, srr_table):
        rewrite = replace_pattern(r"\d$", "")
        with pytest.raises(IdentifierCollisionError) as excinfo:
            srr_table.rename_samples(rewrite)
        assert excinfo.value.collisions == {"SRR103950": ["SRR1039508", "SRR1039509"]}

    def test_collision_is_value_error(self, srr_table):
        with pytest.raises(ValueError):
            srr_table.rename_samples(lambda s: "same")
