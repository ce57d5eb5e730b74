"""
Base class for pipeline stages over an AbundanceTable.

Every stage of the RNA-seq workflow (flag lowly abundant genes, scale
libraries, reduce dimensions, test for differential abundance) is a
Transform: it receives a table and returns a new table with additional
columns. Inputs are never modified.

Biological Context:
    A count analysis is a sequence of decisions whose parameters end up in
    the methods section of a paper: which filtering thresholds, which
    normalization method, which design formula. Keeping each step as an
    object with explicit params makes that sequence reproducible and easy
    to log.

Engineering Design:
    - apply() is pure: the input table is untouched
    - validate() lists problems without raising, so callers can report all
      of them at once
    - repr() shows the parameters, e.g. ``ScaleAbundance(method=TMM)``

Examples:
    >>> from tidyrna.core.transform import Transform
    >>>
    >>> class AddLogCounts(Transform):
    ...     def __init__(self, pseudocount: float = 1.0):
    ...         super().__init__(name="AddLogCounts", params={"pseudocount": pseudocount})
    ...         self.pseudocount = pseudocount
    ...
    ...     def apply(self, table):
    ...         import numpy as np
    ...         logged = np.log2(table.to_matrix() + self.pseudocount)
    ...         return table.with_observation("log_count", logged)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from tidyrna.core.table import AbundanceTable

__all__ = ['Transform']


class Transform(ABC):
    """
    Abstract base class for table transformations.

    Attributes:
        name: Human-readable stage name (e.g., "IdentifyAbundant")
        params: Parameters used by this stage, for logging and provenance
        timestamp: When this instance was created
    """

    def __init__(self, name: str, params: dict[str, Any]) -> None:
        self.name = name
        self.params = params
        self.timestamp = datetime.now()

    @abstractmethod
    def apply(self, table: AbundanceTable) -> AbundanceTable:
        """
        Execute the stage and return a new table.

        Args:
            table: Input AbundanceTable (left unchanged)

        Returns:
            New AbundanceTable with the stage's columns added

        Raises:
            ValueError: If the stage cannot be applied (see validate())
        """

    def validate(self, table: AbundanceTable) -> list[str]:
        """
        Check preconditions before applying the stage.

        Subclasses extend this and call super().validate() first.

        Returns:
            List of error messages (empty list = valid)
        """
        errors: list[str] = []

        if table.n_features == 0 or table.n_samples == 0:
            errors.append("Cannot process empty table")

        return errors

    def _raise_if_invalid(self, table: AbundanceTable) -> None:
        errors = self.validate(table)
        if errors:
            raise ValueError(f"{self.name} cannot be applied: " + "; ".join(errors))

    def __repr__(self) -> str:
        params_str = ", ".join(f"{k}={v}" for k, v in self.params.items())
        return f"{self.name}({params_str})"
