"""
Error taxonomy for abundance-table pipelines.

Every stage either fully succeeds or aborts the pipeline. The failure modes
are few and each has its own class so callers (and tests) can tell an input
problem from an upstream bug:

    InputShapeError            duplicate keys, mismatched matrix/metadata
    IdentifierCollisionError   a sample rewrite mapped two ids onto one
    DesignRankError            design matrix is not full column rank
    BroadcastConsistencyError  a per-sample/per-gene column varies within its key

All classes subclass ValueError so existing ``except ValueError`` handlers
keep working.
"""

from __future__ import annotations

from typing import Sequence

__all__ = [
    'TidyRnaError',
    'InputShapeError',
    'IdentifierCollisionError',
    'DesignRankError',
    'BroadcastConsistencyError',
]


class TidyRnaError(ValueError):
    """Base class for all tidyrna errors."""


class InputShapeError(TidyRnaError):
    """Malformed input: duplicate identifiers or inconsistent dimensions."""


class IdentifierCollisionError(TidyRnaError):
    """A sample identifier rewrite is not injective over the samples in use."""

    def __init__(self, message: str, collisions: dict[str, list[str]] | None = None):
        super().__init__(message)
        self.collisions = collisions or {}


class DesignRankError(TidyRnaError):
    """Design matrix is rank-deficient (confounded factors)."""

    def __init__(
        self,
        message: str,
        confounded_columns: Sequence[str] = (),
        confounded_terms: Sequence[str] = (),
    ):
        super().__init__(message)
        self.confounded_columns = list(confounded_columns)
        self.confounded_terms = list(confounded_terms)


class BroadcastConsistencyError(TidyRnaError):
    """A column registered as constant per key varies within a key group."""

    def __init__(self, message: str, column: str, keys: Sequence[str] = ()):
        super().__init__(message)
        self.column = column
        self.keys = list(keys)
