"""
Exploratory and differential-abundance figures for RNA-seq tables.

Each plot answers one question about a stage of the workflow:

- plot_abundance_density: "Did scaling line the samples up?"
  Per-sample density of log2(count + 1), raw next to scaled.
- plot_reduced_dimensions: "Do samples separate by condition?"
  PCA/MDS scatter coloured by a sample column, axes annotated with the
  fraction of variance explained.
- plot_volcano: "How many genes moved, and which way?"
  logFC against -log10(PValue), significant genes coloured by direction.
- plot_heatmap: "Do the most variable genes cluster the samples?"
  seaborn clustermap of centred log abundance with sample annotation bars.

All methods return :class:`~tidyrna.viz.core.Figure`.

Examples
--------
>>> viz = RnaSeqVisualizer()
>>> fig = viz.plot_reduced_dimensions(table, color_by="dex")
>>> fig.save("figures/pca.png")
"""

from __future__ import annotations

from typing import Literal, Optional

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import matplotlib.patches as mpatches
import seaborn as sns

from tidyrna.core.table import AbundanceTable
from tidyrna.stats.differential import DifferentialResult
from tidyrna.stats.reduction import ReductionResult, log_abundance
from tidyrna.viz.core import Figure
from tidyrna.viz.styles import Palette, PALETTES, configure_style

__all__ = ['RnaSeqVisualizer']


class RnaSeqVisualizer:
    """
    Figures for the abundance-table workflow.

    Parameters
    ----------
    palette : str or Palette
        Palette name from ``PALETTES`` or a Palette instance.
    style : {"paper", "presentation", "notebook"}
        Target medium passed to :func:`configure_style`.
    """

    def __init__(
        self,
        palette: str | Palette = "default",
        style: Literal["paper", "presentation", "notebook"] = "paper"
    ):
        if isinstance(palette, str):
            self.palette = PALETTES.get(palette, PALETTES["default"])
        else:
            self.palette = palette
        self.style = style
        configure_style(style=style, palette=self.palette)

    # =========================================================================
    # SCALING
    # =========================================================================

    def plot_abundance_density(
        self,
        table: AbundanceTable,
        scaled_column: str = "count_scaled",
        figsize: tuple[float, float] = (11, 4.5)
    ) -> Figure:
        """
        Per-sample densities of log2(abundance + 1) before and after scaling.

        Parameters
        ----------
        table : AbundanceTable
            Table with raw counts and, optionally, ``scaled_column``.
        scaled_column : str
            Observation column holding scaled counts. When absent only the
            raw panel is drawn.
        """
        panels = [("Raw counts", table.count_column, self.palette.raw)]
        if scaled_column in table:
            panels.append(("Scaled counts", scaled_column, self.palette.scaled))

        fig, axes = plt.subplots(1, len(panels), figsize=figsize, sharey=True, squeeze=False)
        axes = axes.flatten()

        for ax, (title, column, color) in zip(axes, panels):
            matrix = log_abundance(table, column=column, abundant_only=True)
            for sample in matrix.columns:
                values = matrix[sample].to_numpy()
                if np.ptp(values) == 0:
                    continue
                sns.kdeplot(x=values, ax=ax, color=color, alpha=0.6, linewidth=1)

            medians = matrix.median(axis=0)
            ax.axvline(medians.median(), color="black", linestyle="--", linewidth=1)
            ax.text(0.98, 0.95, f"median spread: {np.ptp(medians.to_numpy()):.2f}",
                    transform=ax.transAxes, ha="right", va="top", fontsize=8,
                    bbox=dict(boxstyle="round", facecolor="white", alpha=0.9))
            ax.set_xlabel("log2(count + 1)")
            ax.set_ylabel("Density")
            ax.set_title(f"{title} (n={matrix.shape[1]} samples)")

        fig.tight_layout()
        return Figure(
            fig=fig,
            title="Abundance density per sample",
            description="Per-sample log2(count + 1) densities of abundant genes before and after scaling",
            metadata={"n_samples": table.n_samples, "panels": [p[1] for p in panels]},
        )

    # =========================================================================
    # REDUCED DIMENSIONS
    # =========================================================================

    def plot_reduced_dimensions(
        self,
        table: AbundanceTable,
        result: ReductionResult,
        color_by: Optional[str] = None,
        components: tuple[int, int] = (1, 2),
        label_samples: bool = True,
        figsize: tuple[float, float] = (6, 5)
    ) -> Figure:
        """
        Scatter of two reduced dimensions coloured by a sample column.

        Parameters
        ----------
        table : AbundanceTable
            Table supplying the sample columns used for colour.
        result : ReductionResult
            Output of ``ReduceDimensions.fit``.
        color_by : str, optional
            Sample column mapped to colour.
        components : tuple of int
            One-based component indices for the x and y axes.
        """
        first, second = components
        if max(first, second) > result.n_components or min(first, second) < 1:
            raise ValueError(
                f"components {components} outside 1..{result.n_components}"
            )

        coordinates = result.coordinates
        labels = result.axis_labels()
        x = coordinates.iloc[:, first - 1]
        y = coordinates.iloc[:, second - 1]

        fig, ax = plt.subplots(figsize=figsize)

        if color_by is not None:
            if color_by not in table.sample_columns:
                raise ValueError(f"color_by '{color_by}' is not a sample column")
            groups = table.sample_metadata[color_by].reindex(coordinates.index).astype(str)
            colors = self.palette.for_groups(groups)
            for level, color in colors.items():
                mask = (groups == level).to_numpy()
                ax.scatter(x[mask], y[mask], color=color, s=60, edgecolor="white",
                           linewidth=0.5, label=level)
            ax.legend(title=color_by, loc="best")
        else:
            ax.scatter(x, y, color=self.palette.raw, s=60, edgecolor="white", linewidth=0.5)

        if label_samples:
            for sample, xi, yi in zip(coordinates.index, x, y):
                ax.annotate(str(sample), (xi, yi), xytext=(4, 4), textcoords="offset points",
                            fontsize=7, color="#374151")

        ax.axhline(0, color="#d1d5db", linewidth=0.8, zorder=0)
        ax.axvline(0, color="#d1d5db", linewidth=0.8, zorder=0)
        ax.set_xlabel(labels[first - 1])
        ax.set_ylabel(labels[second - 1])
        ax.set_title(f"{result.method} of {len(result.features_used)} most variable genes")

        fig.tight_layout()
        return Figure(
            fig=fig,
            title=f"{result.method} sample map",
            description=f"{labels[first - 1]} vs {labels[second - 1]}",
            metadata={
                "method": result.method,
                "color_by": color_by,
                "variance_explained": result.variance_explained.to_dict(),
            },
        )

    # =========================================================================
    # DIFFERENTIAL ABUNDANCE
    # =========================================================================

    def plot_volcano(
        self,
        result: DifferentialResult,
        contrast: Optional[str] = None,
        n_labels: int = 10,
        figsize: tuple[float, float] = (7, 6)
    ) -> Figure:
        """
        Volcano plot of one contrast.

        Genes that were not tested (lowly abundant) are omitted. The
        ``n_labels`` significant genes with the smallest p-values are
        annotated.
        """
        frame = result.contrast_frame(contrast).dropna(subset=["logFC", "PValue"])
        name = contrast if contrast is not None else result.contrast_names[0]

        log_fc = frame["logFC"].to_numpy()
        neg_log_p = -np.log10(np.clip(frame["PValue"].to_numpy(), 1e-300, 1.0))
        significant = frame["significant"].to_numpy(dtype=bool)
        up = significant & (log_fc > 0)
        down = significant & (log_fc < 0)
        rest = ~(up | down)

        fig, ax = plt.subplots(figsize=figsize)
        ax.scatter(log_fc[rest], neg_log_p[rest], s=8, color=self.palette.nonsignificant,
                   alpha=0.6, linewidths=0)
        ax.scatter(log_fc[up], neg_log_p[up], s=12, color=self.palette.up, alpha=0.8, linewidths=0)
        ax.scatter(log_fc[down], neg_log_p[down], s=12, color=self.palette.down, alpha=0.8,
                   linewidths=0)

        if n_labels > 0 and significant.any():
            top = frame[significant].nsmallest(n_labels, "PValue")
            for gene, row in top.iterrows():
                ax.annotate(str(gene), (row["logFC"], -np.log10(max(row["PValue"], 1e-300))),
                            xytext=(3, 3), textcoords="offset points", fontsize=7,
                            fontstyle="italic")

        ax.axvline(0, color="#d1d5db", linewidth=0.8, zorder=0)
        ax.set_xlabel("log2 fold change")
        ax.set_ylabel("-log10(p-value)")
        ax.set_title(name)

        handles = [
            mpatches.Patch(color=self.palette.up, label=f"Up ({int(up.sum())})"),
            mpatches.Patch(color=self.palette.down, label=f"Down ({int(down.sum())})"),
            mpatches.Patch(color=self.palette.nonsignificant, label=f"NS ({int(rest.sum())})"),
        ]
        ax.legend(handles=handles, loc="upper left",
                  title=f"FDR < {result.fdr_threshold:g}")

        fig.tight_layout()
        return Figure(
            fig=fig,
            title=f"Volcano: {name}",
            description=f"{len(frame)} tested genes, {int(significant.sum())} significant",
            metadata={"contrast": name, "n_up": int(up.sum()), "n_down": int(down.sum())},
        )

    # =========================================================================
    # HEATMAP
    # =========================================================================

    def plot_heatmap(
        self,
        table: AbundanceTable,
        annotate_by: Optional[list[str]] = None,
        column: Optional[str] = None,
        figsize: tuple[float, float] = (8, 9)
    ) -> Figure:
        """
        Clustered heatmap of log abundance, centred per gene.

        Parameters
        ----------
        table : AbundanceTable
            Usually the output of ``KeepVariable``.
        annotate_by : list of str, optional
            Sample columns drawn as colour bars above the heatmap.
        column : str, optional
            Observation column (default ``count_scaled`` when present).
        """
        matrix = log_abundance(table, column=column, abundant_only=False)
        if matrix.shape[0] < 2 or matrix.shape[1] < 2:
            raise ValueError("Heatmap needs at least 2 genes and 2 samples")
        centred = matrix.sub(matrix.mean(axis=1), axis=0)

        col_colors = None
        legend_handles = []
        for name in annotate_by or []:
            if name not in table.sample_columns:
                raise ValueError(f"annotate_by '{name}' is not a sample column")
            groups = table.sample_metadata[name].reindex(matrix.columns).astype(str)
            mapping = self.palette.for_groups(groups)
            if col_colors is None:
                col_colors = pd.DataFrame(index=matrix.columns)
            col_colors[name] = groups.map(mapping)
            legend_handles.extend(
                mpatches.Patch(color=color, label=f"{name}: {level}")
                for level, color in mapping.items()
            )

        grid = sns.clustermap(
            centred,
            cmap=self.palette.diverging,
            center=0,
            col_colors=col_colors,
            yticklabels=matrix.shape[0] <= 60,
            figsize=figsize,
            cbar_kws={"label": "centred log2(count + 1)"},
        )
        if legend_handles:
            grid.ax_heatmap.legend(handles=legend_handles, loc="upper left",
                                   bbox_to_anchor=(1.02, 1.25), fontsize=7)
        grid.ax_heatmap.set_xlabel("")
        grid.ax_heatmap.set_ylabel("")

        return Figure(
            fig=grid.figure,
            title="Variable gene heatmap",
            description=f"{matrix.shape[0]} genes × {matrix.shape[1]} samples, hierarchically clustered",
            metadata={"n_genes": matrix.shape[0], "annotate_by": list(annotate_by or [])},
        )
