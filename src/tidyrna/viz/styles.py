"""
Consistent visual styles for RNA-seq visualizations.

Domain Conventions
------------------
- Up-regulated = Red (#dc2626), down-regulated = Blue (#2563eb)
- Not significant = Gray (#9ca3af)
- Raw abundance = Gray, scaled abundance = Emerald
- Expression heatmaps = viridis; centred values = RdBu_r
- Sample groups use a colorblind-safe categorical palette
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Sequence

import matplotlib.pyplot as plt
import seaborn as sns

__all__ = ['Palette', 'PALETTES', 'configure_style', 'format_pvalue']


@dataclass(frozen=True)
class Palette:
    """
    Color palette for RNA-seq visualizations.

    Attributes
    ----------
    up : str
        Color for significantly up-regulated genes
    down : str
        Color for significantly down-regulated genes
    nonsignificant : str
        Color for genes that are not significant
    raw : str
        Color for unscaled abundance
    scaled : str
        Color for scaled abundance
    diverging : str
        Colormap name for centred data
    sequential : str
        Colormap name for abundance
    categorical : str
        Seaborn palette name for sample groups
    """
    up: str = "#dc2626"              # Red-600
    down: str = "#2563eb"            # Blue-600
    nonsignificant: str = "#9ca3af"  # Gray-400
    raw: str = "#6b7280"             # Gray-500
    scaled: str = "#059669"          # Emerald-600
    diverging: str = "RdBu_r"
    sequential: str = "viridis"
    categorical: str = "Set2"

    def for_groups(self, groups: Sequence[str]) -> dict[str, str]:
        """Map each distinct group label (in order of appearance) to a color."""
        levels = list(dict.fromkeys(str(g) for g in groups))
        colors = sns.color_palette(self.categorical, max(len(levels), 3)).as_hex()
        return {level: colors[i % len(colors)] for i, level in enumerate(levels)}


PALETTES = {
    "default": Palette(),
    "colorblind": Palette(
        up="#cc3311",
        down="#0077bb",
        nonsignificant="#bbbbbb",
        raw="#999999",
        scaled="#009988",
        categorical="colorblind",
    ),
    "print": Palette(
        up="#1a1a1a",
        down="#666666",
        nonsignificant="#cccccc",
        raw="#808080",
        scaled="#333333",
        diverging="RdGy",
        sequential="Greys",
        categorical="Greys",
    ),
}


def configure_style(
    style: Literal["paper", "presentation", "notebook"] = "paper",
    palette: str | Palette = "default",
    font_scale: float = 1.0
) -> Palette:
    """
    Configure matplotlib and seaborn for consistent visualization style.

    Parameters
    ----------
    style : {"paper", "presentation", "notebook"}
        Target medium.
    palette : str or Palette
        Color palette name or Palette instance.
    font_scale : float
        Multiplier for all font sizes.

    Returns
    -------
    Palette
        The configured color palette.
    """
    if isinstance(palette, str):
        palette = PALETTES.get(palette, PALETTES["default"])

    base_params = {
        "figure.facecolor": "white",
        "axes.facecolor": "white",
        "axes.edgecolor": "#333333",
        "axes.spines.top": False,
        "axes.spines.right": False,
        "legend.frameon": False,
    }

    sizes = {"paper": (10, 300), "presentation": (14, 150), "notebook": (11, 100)}
    base_size, dpi = sizes.get(style, sizes["notebook"])
    context = {"paper": "paper", "presentation": "talk"}.get(style, "notebook")

    style_params = {
        "font.size": base_size * font_scale,
        "axes.titlesize": (base_size + 1) * font_scale,
        "axes.labelsize": base_size * font_scale,
        "xtick.labelsize": (base_size - 1) * font_scale,
        "ytick.labelsize": (base_size - 1) * font_scale,
        "legend.fontsize": (base_size - 1) * font_scale,
        "figure.dpi": dpi,
        "savefig.dpi": dpi,
    }

    sns.set_theme(style="whitegrid", context=context, font_scale=font_scale)
    plt.rcParams.update({**base_params, **style_params})

    return palette


def format_pvalue(p: float) -> str:
    """
    Format p-value with appropriate precision and notation.

    Examples
    --------
    >>> format_pvalue(0.0004)
    'p < 0.001'
    >>> format_pvalue(0.034)
    'p = 0.03'
    """
    if p < 0.001:
        return "p < 0.001"
    elif p < 0.01:
        return f"p = {p:.3f}"
    else:
        return f"p = {p:.2f}"
