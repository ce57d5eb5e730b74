"""
Figure wrapper and collection used by every workflow plot.

A plot method returns a :class:`Figure` holding the matplotlib figure plus
the title, description and parameters needed to put it in a report. A
:class:`FigureCollection` saves a run's figures under stable names and
renders them into one self-contained HTML page.
"""

from __future__ import annotations

import base64
import html
import io
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Iterator, Literal, Optional

import matplotlib.figure
import matplotlib.pyplot as plt

OutputFormat = Literal["png", "pdf", "svg", "html"]

_FORMATS = ("png", "pdf", "svg", "html")

__all__ = ['Figure', 'FigureCollection']


@dataclass
class Figure:
    """
    A rendered plot with the context needed to report it.

    Attributes
    ----------
    fig : matplotlib.figure.Figure
        The underlying figure object
    title : str
        Short title, used as heading and alt text
    description : str
        What the figure shows
    metadata : dict
        Plot parameters (contrast, components, n_samples, ...) and the
        creation time

    Examples
    --------
    >>> fig = RnaSeqVisualizer().plot_volcano(result)
    >>> fig.save("volcano.pdf")
    >>> fig.close()
    """
    fig: matplotlib.figure.Figure
    title: str
    description: str
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        self.metadata.setdefault("created_at", datetime.now().isoformat(timespec="seconds"))

    def save(
        self,
        path: Path | str,
        format: Optional[OutputFormat] = None,
        dpi: int = 300,
        **kwargs
    ) -> Path:
        """
        Write the figure to ``path``.

        Parameters
        ----------
        path : Path or str
            Output file. Parent directories are created.
        format : str, optional
            One of png, pdf, svg or html; taken from the suffix when None
            (unknown suffixes give png).
        dpi : int, default 300
            Resolution of raster output.

        Returns
        -------
        Path
        """
        path = Path(path)
        if format is None:
            suffix = path.suffix.lstrip(".").lower()
            format = suffix if suffix in _FORMATS else "png"

        path.parent.mkdir(parents=True, exist_ok=True)

        if format == "html":
            path.write_text(_page(self.title, _section(self.title, self)))
        else:
            self.fig.savefig(path, format=format, dpi=dpi, bbox_inches="tight",
                             facecolor="white", **kwargs)
        return path

    def to_base64(self, dpi: int = 150) -> str:
        """PNG bytes of the figure, base64-encoded for inline HTML."""
        buffer = io.BytesIO()
        self.fig.savefig(buffer, format="png", dpi=dpi, bbox_inches="tight")
        return base64.b64encode(buffer.getvalue()).decode()

    def close(self):
        plt.close(self.fig)


class FigureCollection:
    """
    Named figures of one run, kept in insertion order.

    Examples
    --------
    >>> collection = FigureCollection()
    >>> collection.add("pca_samples", viz.plot_reduced_dimensions(table, pca, color_by="dex"))
    >>> collection.add("volcano_1", viz.plot_volcano(de_result))
    >>> collection.save_all("figures/", format="pdf")
    >>> collection.to_html_report("report.html", title="airway")
    """

    def __init__(self):
        self.figures: dict[str, Figure] = {}

    def add(self, key: str, fig: Figure) -> FigureCollection:
        """Add (or replace) a figure; returns self for chaining."""
        self.figures[key] = fig
        return self

    def __getitem__(self, key: str) -> Figure:
        return self.figures[key]

    def __len__(self) -> int:
        return len(self.figures)

    def __iter__(self) -> Iterator[tuple[str, Figure]]:
        return iter(self.figures.items())

    def save_all(
        self,
        output_dir: Path | str,
        format: OutputFormat = "png",
        dpi: int = 300
    ) -> list[Path]:
        """Save every figure as ``<output_dir>/<key>.<format>``."""
        output_dir = Path(output_dir)
        return [fig.save(output_dir / f"{key}.{format}", format=format, dpi=dpi)
                for key, fig in self]

    def to_html_report(
        self,
        output_path: Path | str,
        title: str = "RNA-seq Report",
        description: str = "",
    ) -> Path:
        """
        Write all figures into one HTML page with images inlined.

        Each section lists the figure's parameters under the image so the
        report records how it was produced.
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        toc = "\n".join(
            f'<li><a href="#{html.escape(key)}">{html.escape(fig.title)}</a></li>'
            for key, fig in self
        )
        body = (
            f"<h1>{html.escape(title)}</h1>\n"
            f"<p>{html.escape(description)}</p>\n"
            f'<p class="muted">Generated {datetime.now():%Y-%m-%d %H:%M:%S}, '
            f"{len(self)} figures</p>\n"
            f"<ul>\n{toc}\n</ul>\n"
            + "\n".join(_section(key, fig) for key, fig in self)
        )
        output_path.write_text(_page(title, body))
        return output_path

    def close_all(self):
        for _, fig in self:
            fig.close()


_STYLE = """
body { font-family: -apple-system, "Segoe UI", Roboto, sans-serif; max-width: 1100px;
       margin: 2rem auto; color: #1a1a1a; }
section { border-top: 1px solid #e5e7eb; padding: 1rem 0; }
img { max-width: 100%; height: auto; }
.muted, dl { color: #6b7280; font-size: 0.85rem; }
dt { float: left; clear: left; width: 10rem; }
"""


def _section(key: str, fig: Figure) -> str:
    params = "".join(
        f"<dt>{html.escape(str(name))}</dt><dd>{html.escape(str(value))}</dd>"
        for name, value in fig.metadata.items()
    )
    return (
        f'<section id="{html.escape(key)}">\n'
        f"<h2>{html.escape(fig.title)}</h2>\n"
        f'<p class="muted">{html.escape(fig.description)}</p>\n'
        f'<img src="data:image/png;base64,{fig.to_base64()}" alt="{html.escape(fig.title)}">\n'
        f"<dl>{params}</dl>\n"
        "</section>"
    )


def _page(title: str, body: str) -> str:
    return (
        '<!DOCTYPE html>\n<html lang="en">\n<head>\n<meta charset="UTF-8">\n'
        f"<title>{html.escape(title)}</title>\n<style>{_STYLE}</style>\n</head>\n"
        f"<body>\n{body}\n</body>\n</html>\n"
    )
