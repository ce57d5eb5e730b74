"""
Visualization module for the RNA-seq abundance-table workflow.

Static figures (matplotlib/seaborn) for each stage:
- Abundance densities before and after scaling
- PCA/MDS sample maps with variance explained
- Volcano plots of differential contrasts
- Clustered heatmaps of the most variable genes

Examples
--------
>>> from tidyrna.viz import RnaSeqVisualizer, FigureCollection
>>>
>>> viz = RnaSeqVisualizer()
>>> collection = FigureCollection()
>>> collection.add("density", viz.plot_abundance_density(scaled_table))
>>> collection.save_all(Path("figures/"), format="pdf")
"""

from tidyrna.viz.core import Figure, FigureCollection
from tidyrna.viz.styles import Palette, PALETTES, configure_style, format_pvalue
from tidyrna.viz.plots import RnaSeqVisualizer

__all__ = [
    # Core
    "Figure",
    "FigureCollection",
    # Styles
    "Palette",
    "PALETTES",
    "configure_style",
    "format_pvalue",
    # Visualizers
    "RnaSeqVisualizer",
]
