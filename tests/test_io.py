"""
Tests for loaders and TSV exports.
"""

import numpy as np
import pandas as pd
import pytest

from tidyrna.core.errors import InputShapeError
from tidyrna.io import (
    load_count_matrix,
    load_experiment,
    load_metadata,
    read_feature_table,
    sniff_delimiter,
    write_count_matrix,
    write_feature_table,
    write_sample_table,
)
from tidyrna.quality.filtering import IdentifyAbundant
from tidyrna.stats.normalization import ScaleAbundance


@pytest.fixture
def experiment_files(tmp_path):
    counts = tmp_path / "counts.csv"
    counts.write_text(
        "gene,SRR1,SRR2,SRR3,SRR4\n"
        "A,50,60,5,6\n"
        "B,5,4,4,5\n"
    )
    samples = tmp_path / "samples.tsv"
    samples.write_text(
        "run\tgroup\n"
        "SRR1\ttreated\n"
        "SRR2\ttreated\n"
        "SRR3\tuntreated\n"
        "SRR4\tuntreated\n"
    )
    return counts, samples


class TestLoaders:

    def test_sniff_delimiter(self, experiment_files):
        counts, samples = experiment_files
        assert sniff_delimiter(counts) == ","
        assert sniff_delimiter(samples) == "\t"

    def test_load_count_matrix(self, experiment_files):
        counts, _ = experiment_files
        matrix = load_count_matrix(counts)
        assert list(matrix.index) == ["A", "B"]
        assert list(matrix.columns) == ["SRR1", "SRR2", "SRR3", "SRR4"]
        assert matrix.loc["A", "SRR2"] == 60

    def test_load_experiment(self, experiment_files):
        counts, samples = experiment_files
        table = load_experiment(counts, samples, sample_key="run")
        assert table.shape[0] == 8
        assert table.sample_columns == ["group"]

    def test_duplicate_gene_ids(self, tmp_path):
        path = tmp_path / "dup.tsv"
        path.write_text("gene\ts1\ts2\nA\t1\t2\nA\t3\t4\n")
        with pytest.raises(InputShapeError, match="duplicate gene"):
            load_count_matrix(path)

    def test_duplicate_sample_ids(self, tmp_path):
        path = tmp_path / "dup.tsv"
        path.write_text("gene\ts1\ts1\nA\t1\t2\nB\t3\t4\n")
        with pytest.raises(InputShapeError, match="duplicate sample"):
            load_count_matrix(path)

    def test_non_numeric_counts(self, tmp_path):
        path = tmp_path / "bad.tsv"
        path.write_text("gene\ts1\ts2\nA\t1\tx\nB\t3\t4\n")
        with pytest.raises(InputShapeError, match="non-numeric"):
            load_count_matrix(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_count_matrix(tmp_path / "absent.tsv")

    def test_metadata_missing_key(self, experiment_files):
        _, samples = experiment_files
        with pytest.raises(InputShapeError, match="key column"):
            load_metadata(samples, key="sample_id")

    def test_metadata_not_matching_counts(self, experiment_files, tmp_path):
        counts, _ = experiment_files
        samples = tmp_path / "partial.tsv"
        samples.write_text("run\tgroup\nSRR1\ttreated\nSRR2\ttreated\n")
        with pytest.raises(InputShapeError, match="does not match"):
            load_experiment(counts, samples)


class TestWriters:

    def test_feature_table_round_trip(self, experiment_files, tmp_path):
        counts, samples = experiment_files
        table = load_experiment(counts, samples)
        flagged = IdentifyAbundant(minimum_total_counts=20).apply(table)

        path = write_feature_table(flagged, tmp_path / "out" / "features.tsv")
        lines = path.read_text().splitlines()
        assert lines[0] == "feature\tlowly_abundant"
        assert lines[1:] == ["A\tFALSE", "B\tTRUE"]

        frame = read_feature_table(path)
        assert frame["lowly_abundant"].tolist() == [False, True]
        assert frame["feature"].tolist() == ["A", "B"]

    def test_missing_values_written_as_na(self, tmp_path, scenario_table):
        values = pd.DataFrame({"score": [1.5, np.nan]}, index=["A", "B"])
        table = scenario_table.join_features(values)
        path = write_feature_table(table, tmp_path / "features.tsv", columns=["score"])
        assert path.read_text().splitlines()[2] == "B\tNA"
        assert np.isnan(read_feature_table(path)["score"][1])

    def test_unknown_column(self, tmp_path, scenario_table):
        with pytest.raises(KeyError):
            write_feature_table(scenario_table, tmp_path / "f.tsv", columns=["nope"])

    def test_sample_table(self, tmp_path, scenario_table):
        scaled = ScaleAbundance().apply(scenario_table)
        path = write_sample_table(scaled, tmp_path / "samples.tsv")
        frame = pd.read_csv(path, sep="\t")
        assert list(frame.columns) == ["sample", "group", "norm_factor", "lib_size", "multiplier"]
        assert frame["sample"].tolist() == ["s1", "s2", "s3", "s4"]

    def test_count_matrix(self, tmp_path, scenario_table):
        scaled = ScaleAbundance().apply(scenario_table)
        path = write_count_matrix(scaled, tmp_path / "scaled.tsv")
        matrix = pd.read_csv(path, sep="\t", index_col=0)
        assert matrix.index.name == "feature"
        np.testing.assert_allclose(matrix.to_numpy(), scaled.to_matrix("count_scaled").to_numpy())
