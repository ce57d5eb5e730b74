"""
Input/output: delimited count matrices, annotation tables and TSV exports.
"""

from tidyrna.io.formats import sniff_delimiter
from tidyrna.io.loaders import load_count_matrix, load_experiment, load_metadata
from tidyrna.io.writers import (
    read_feature_table,
    write_count_matrix,
    write_feature_table,
    write_sample_table,
)

__all__ = [
    'sniff_delimiter',
    'load_count_matrix',
    'load_metadata',
    'load_experiment',
    'write_feature_table',
    'read_feature_table',
    'write_sample_table',
    'write_count_matrix',
]
