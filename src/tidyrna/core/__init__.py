"""
Core data structures: the long-format abundance table, the stage base
class, and the error taxonomy.
"""

from tidyrna.core.errors import (
    BroadcastConsistencyError,
    DesignRankError,
    IdentifierCollisionError,
    InputShapeError,
    TidyRnaError,
)
from tidyrna.core.table import AbundanceTable, replace_pattern, strip_prefix
from tidyrna.core.transform import Transform

__all__ = [
    'AbundanceTable',
    'Transform',
    'strip_prefix',
    'replace_pattern',
    'TidyRnaError',
    'InputShapeError',
    'IdentifierCollisionError',
    'DesignRankError',
    'BroadcastConsistencyError',
]
