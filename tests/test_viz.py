"""
Tests for workflow figures: every plot returns a Figure that saves and closes.
"""

import matplotlib
matplotlib.use("Agg")

import pytest

from tidyrna.config import config_from_dict
from tidyrna.pipeline import run_pipeline
from tidyrna.viz import Figure, FigureCollection, Palette, RnaSeqVisualizer, format_pvalue


@pytest.fixture(scope="module")
def pipeline_result(nb_table):
    config = config_from_dict({
        "variable": {"enabled": True, "top": 30},
        "differential": {
            "formula": "~ 0 + group",
            "contrasts": {"treatment": "grouptreated - groupuntreated"},
        },
    })
    return run_pipeline(nb_table, config)


@pytest.fixture
def viz():
    return RnaSeqVisualizer(style="notebook")


class TestPlots:

    def test_abundance_density(self, viz, pipeline_result):
        fig = viz.plot_abundance_density(pipeline_result.table)
        assert isinstance(fig, Figure)
        assert fig.metadata["panels"] == ["count", "count_scaled"]
        fig.close()

    def test_density_raw_only(self, viz, nb_table):
        fig = viz.plot_abundance_density(nb_table)
        assert fig.metadata["panels"] == ["count"]
        fig.close()

    def test_reduced_dimensions(self, viz, pipeline_result):
        result = pipeline_result.reductions["PCA"]
        fig = viz.plot_reduced_dimensions(pipeline_result.table, result, color_by="group")
        assert isinstance(fig, Figure)
        fig.close()

    def test_reduced_dimensions_rejects_bad_arguments(self, viz, pipeline_result):
        result = pipeline_result.reductions["MDS"]
        with pytest.raises(ValueError, match="components"):
            viz.plot_reduced_dimensions(pipeline_result.table, result, components=(1, 3))
        with pytest.raises(ValueError, match="color_by"):
            viz.plot_reduced_dimensions(pipeline_result.table, result, color_by="tissue")

    def test_volcano(self, viz, pipeline_result):
        fig = viz.plot_volcano(pipeline_result.differential, "treatment")
        assert isinstance(fig, Figure)
        fig.close()

    def test_heatmap(self, viz, pipeline_result):
        fig = viz.plot_heatmap(pipeline_result.variable_table, annotate_by=["group", "batch"])
        assert isinstance(fig, Figure)
        fig.close()

    def test_heatmap_needs_two_genes(self, viz, pipeline_result):
        single = pipeline_result.table.select_features(["gene_000"])
        with pytest.raises(ValueError, match="at least 2 genes"):
            viz.plot_heatmap(single)


class TestFigureCollection:

    def test_save_and_report(self, tmp_path, viz, pipeline_result):
        collection = FigureCollection()
        collection.add("density", viz.plot_abundance_density(pipeline_result.table))
        collection.add("volcano", viz.plot_volcano(pipeline_result.differential))
        assert len(collection) == 2

        saved = collection.save_all(tmp_path / "figures", format="svg")
        assert [p.name for p in saved] == ["density.svg", "volcano.svg"]
        assert all(p.exists() for p in saved)

        report = collection.to_html_report(tmp_path / "report.html", title="Synthetic")
        text = report.read_text()
        assert "<title>Synthetic</title>" in text
        assert text.count("data:image/png;base64,") == 2

        html_path = collection["volcano"].save(tmp_path / "volcano.html")
        assert "base64" in html_path.read_text()
        collection.close_all()


class TestStyles:

    def test_group_colors_in_order_of_appearance(self):
        mapping = Palette().for_groups(["b", "a", "b"])
        assert list(mapping) == ["b", "a"]

    @pytest.mark.parametrize("p, expected", [(0.5, "p = 0.50"), (1e-5, "p < 0.001")])
    def test_format_pvalue(self, p, expected):
        assert format_pvalue(p) == expected
