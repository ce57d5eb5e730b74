"""
Delimited-text format detection.

Count matrices and annotation tables arrive as CSV or TSV depending on the
tool that produced them (featureCounts, Salmon/tximport exports, GEO
supplementary files). Delimiters are sniffed; column semantics are not:
the first column is always the identifier.
"""

from __future__ import annotations

import csv
from pathlib import Path

__all__ = ['sniff_delimiter', 'check_input_file']


def check_input_file(path: Path | str) -> Path:
    """
    Resolve ``path`` and check it is an existing regular file.

    Raises:
        FileNotFoundError: If the path does not exist
        ValueError: If the path is not a file
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")
    if not path.is_file():
        raise ValueError(f"Path is not a file: {path}")
    return path


def sniff_delimiter(path: Path, sample_size: int = 8192) -> str:
    """
    Auto-detect delimiter from file content.

    Uses Python's csv.Sniffer with fallback heuristics.

    Args:
        path: Path to data file
        sample_size: Bytes to sample for detection

    Returns:
        Detected delimiter character ('\\t', ',', ';' or '|')

    Raises:
        ValueError: If delimiter cannot be determined
    """
    with open(path, 'r', encoding='utf-8', errors='ignore') as f:
        sample = f.read(sample_size)

    try:
        dialect = csv.Sniffer().sniff(sample, delimiters='\t,;|')
        return dialect.delimiter
    except csv.Error:
        pass

    # Fallback: most frequent candidate in the header line
    first_line = sample.split('\n')[0]
    counts = {delimiter: first_line.count(delimiter) for delimiter in ('\t', ',', ';', '|')}

    if max(counts.values()) == 0:
        raise ValueError(
            f"Could not detect delimiter in {path}. "
            "Please specify it explicitly"
        )

    return max(counts, key=counts.get)
