"""
Tab-separated exports of table projections.

Writes the gene-level projection (one row per gene: identifier, annotations,
low-abundance flag, test statistics) and the sample-level projection (one
row per sample: annotations, scaling factors, coordinates) for downstream
tools and publication tables.

Engineering Design:
    - Projections are verified for broadcast consistency before writing
    - Booleans are written as TRUE/FALSE and missing values as NA, the
      convention of R's write.table, so exports open cleanly in R
    - read_feature_table() restores booleans and identifiers as strings

Examples:
    >>> from tidyrna.io.writers import write_feature_table, read_feature_table
    >>> write_feature_table(tested, "de_results.tsv",
    ...                     columns=["logFC", "PValue", "FDR", "significant"])
    >>> read_feature_table("de_results.tsv").head()
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Sequence

import pandas as pd

from tidyrna.core.table import AbundanceTable

logger = logging.getLogger(__name__)

__all__ = [
    'write_feature_table',
    'read_feature_table',
    'write_sample_table',
    'write_count_matrix',
]

_NA = "NA"


def _format_booleans(frame: pd.DataFrame) -> pd.DataFrame:
    frame = frame.copy()
    for column in frame.columns:
        if pd.api.types.is_bool_dtype(frame[column]):
            frame[column] = frame[column].map({True: "TRUE", False: "FALSE"})
    return frame


def _select(projection: pd.DataFrame, key: str, columns: Optional[Sequence[str]]) -> pd.DataFrame:
    if columns is None:
        return projection
    missing = [c for c in columns if c not in projection.columns]
    if missing:
        raise KeyError(f"Columns not in projection: {missing}")
    return projection[[key, *[c for c in columns if c != key]]]


def write_feature_table(
    table: AbundanceTable,
    path: Path | str,
    columns: Optional[Sequence[str]] = None,
) -> Path:
    """
    Write the gene-level projection as TSV.

    Args:
        table: AbundanceTable
        path: Output file
        columns: Gene columns to write after the identifier (default: all)

    Returns:
        Path written

    Raises:
        BroadcastConsistencyError: If a gene column varies within a gene
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    projection = _select(table.pivot_feature(), table.feature_column, columns)
    _format_booleans(projection).to_csv(path, sep="\t", index=False, na_rep=_NA)

    logger.info(f"Wrote {len(projection)} genes × {projection.shape[1]} columns to {path}")
    return path


def read_feature_table(path: Path | str, feature_column: str = "feature") -> pd.DataFrame:
    """
    Read a table written by write_feature_table.

    Identifiers are read as strings, TRUE/FALSE as booleans and NA as
    missing.
    """
    frame = pd.read_csv(
        path,
        sep="\t",
        dtype={feature_column: str},
        na_values=[_NA],
        keep_default_na=False,
        true_values=["TRUE"],
        false_values=["FALSE"],
    )
    return frame


def write_sample_table(table: AbundanceTable, path: Path | str) -> Path:
    """
    Write the sample-level projection as TSV.

    Raises:
        BroadcastConsistencyError: If a sample column varies within a sample
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    projection = table.pivot_sample()
    _format_booleans(projection).to_csv(path, sep="\t", index=False, na_rep=_NA)

    logger.info(f"Wrote {len(projection)} samples to {path}")
    return path


def write_count_matrix(
    table: AbundanceTable,
    path: Path | str,
    column: Optional[str] = None,
) -> Path:
    """
    Write an observation column as a gene × sample TSV matrix.

    Args:
        table: AbundanceTable
        path: Output file
        column: Observation column (default: count_scaled if present,
            else counts)
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if column is None:
        column = "count_scaled" if "count_scaled" in table else table.count_column
    matrix = table.to_matrix(column)
    matrix.to_csv(path, sep="\t", index_label=table.feature_column, na_rep=_NA)

    logger.info(f"Wrote {column} matrix ({matrix.shape[0]} × {matrix.shape[1]}) to {path}")
    return path
