"""
Loaders for count matrices and sample/gene annotation tables.

Expected count matrix format (CSV or TSV, delimiter sniffed):
    - First column: gene identifiers (header may be empty)
    - Remaining columns: one per sample, non-negative counts

    ```
    gene,SRR1039508,SRR1039509
    ENSG00000000003,679,448
    ENSG00000000005,0,0
    ```

Annotation tables carry one row per sample (or gene) with the key in the
first column or in a named column.

Engineering Design:
    - Fail fast: duplicate identifiers are an error, never silently
      de-duplicated
    - Library parse errors are re-raised as InputShapeError with the path
    - Counts are validated again when the AbundanceTable is built

Examples:
    >>> from tidyrna.io import load_experiment
    >>> table = load_experiment("counts.tsv", "samples.tsv", sample_key="run")
    >>> table.n_features, table.n_samples
    (63677, 8)
"""

from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd

from tidyrna.core.errors import InputShapeError
from tidyrna.core.table import AbundanceTable
from tidyrna.io.formats import check_input_file, sniff_delimiter

logger = logging.getLogger(__name__)

__all__ = ['load_count_matrix', 'load_metadata', 'load_experiment']


def _read_table(path: Path, delimiter: Optional[str], **kwargs) -> pd.DataFrame:
    delimiter = delimiter or sniff_delimiter(path)
    try:
        df = pd.read_csv(path, sep=delimiter, **kwargs)
    except pd.errors.EmptyDataError as e:
        raise InputShapeError(f"File is empty: {path}") from e
    except pd.errors.ParserError as e:
        raise InputShapeError(f"Failed to parse {path}: {e}") from e
    if df.empty:
        raise InputShapeError(f"File contains no data rows: {path}")
    return df


def _check_unique_index(df: pd.DataFrame, path: Path, what: str) -> None:
    duplicated = df.index[df.index.duplicated()]
    if len(duplicated):
        raise InputShapeError(
            f"{path}: {len(duplicated)} duplicate {what} identifiers, e.g. "
            f"{sorted(set(duplicated))[:5]}"
        )


def load_count_matrix(path: Path | str, delimiter: Optional[str] = None) -> pd.DataFrame:
    """
    Load a gene × sample count matrix.

    Args:
        path: CSV/TSV file, genes in rows, first column = gene id
        delimiter: Field delimiter; sniffed when None

    Returns:
        DataFrame of counts indexed by gene id, one column per sample

    Raises:
        FileNotFoundError: If path does not exist
        InputShapeError: If the file is empty, has duplicate gene or sample
            ids, or contains non-numeric counts
    """
    path = check_input_file(path)
    delimiter = delimiter or sniff_delimiter(path)
    df = _read_table(path, delimiter, index_col=0)

    df.index = df.index.astype(str)
    df.columns = df.columns.astype(str)
    _check_unique_index(df, path, "gene")

    # pandas renames repeated headers to "name.1"; check the raw header
    with open(path, newline="", encoding="utf-8") as f:
        header = pd.Index(next(csv.reader(f, delimiter=delimiter))[1:])
    duplicated_samples = header[header.duplicated()]
    if len(duplicated_samples):
        raise InputShapeError(
            f"{path}: duplicate sample identifiers {sorted(set(duplicated_samples))[:5]}"
        )

    non_numeric = [c for c in df.columns if not pd.api.types.is_numeric_dtype(df[c])]
    if non_numeric:
        raise InputShapeError(f"{path}: non-numeric count columns {non_numeric[:5]}")

    if df.isna().to_numpy().any():
        raise InputShapeError(f"{path}: {int(df.isna().to_numpy().sum())} missing counts")
    if np.isinf(df.to_numpy(dtype=np.float64)).any():
        raise InputShapeError(f"{path}: infinite counts")

    logger.info(f"Loaded count matrix {path.name}: {df.shape[0]} genes × {df.shape[1]} samples")
    return df


def load_metadata(
    path: Path | str,
    key: Optional[str] = None,
    delimiter: Optional[str] = None,
) -> pd.DataFrame:
    """
    Load a sample or gene annotation table.

    Args:
        path: CSV/TSV file with one row per sample (or gene)
        key: Column holding the identifiers; first column when None
        delimiter: Field delimiter; sniffed when None

    Returns:
        DataFrame indexed by identifier (as strings)

    Raises:
        InputShapeError: If the key column is missing or has duplicates
    """
    path = check_input_file(path)
    df = _read_table(path, delimiter)

    key = key or df.columns[0]
    if key not in df.columns:
        raise InputShapeError(f"{path}: key column '{key}' not found (columns: {list(df.columns)})")

    df[key] = df[key].astype(str)
    df = df.set_index(key)
    df.index.name = None
    _check_unique_index(df, path, "key")

    logger.info(f"Loaded annotations {path.name}: {len(df)} rows, columns {list(df.columns)}")
    return df


def load_experiment(
    counts: Path | str,
    samples: Path | str,
    features: Path | str | None = None,
    sample_key: Optional[str] = None,
    feature_key: Optional[str] = None,
    delimiter: Optional[str] = None,
) -> AbundanceTable:
    """
    Load counts and annotations into an AbundanceTable.

    Args:
        counts: Count matrix file
        samples: Sample annotation file (must cover exactly the matrix's samples)
        features: Optional gene annotation file (must cover exactly its genes)
        sample_key: Identifier column of the sample annotations
        feature_key: Identifier column of the gene annotations
        delimiter: Field delimiter for all files; sniffed when None
    """
    matrix = load_count_matrix(counts, delimiter=delimiter)
    sample_metadata = load_metadata(samples, key=sample_key, delimiter=delimiter)
    feature_metadata = (
        load_metadata(features, key=feature_key, delimiter=delimiter)
        if features is not None else None
    )
    return AbundanceTable.from_matrix(
        matrix,
        sample_metadata=sample_metadata,
        feature_metadata=feature_metadata,
    )
