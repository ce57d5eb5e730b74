"""
Low-abundance gene identification for RNA-seq counts.

Flags genes whose counts are too sparse to support reliable testing, using
the library-size-aware, group-size-aware rule popularised by edgeR's
``filterByExpr``. Genes are flagged, never removed: the flag is a
gene-level column ``lowly_abundant`` that later stages read.

Biological Context:
    A gene with a handful of reads in one sample carries almost no
    information about differential expression, but it still costs a test
    and inflates the multiple-testing burden. The rule keeps a gene only if
    it reaches a CPM threshold in at least as many samples as the smallest
    experimental group, so a gene expressed in only one condition is kept
    as long as that condition is fully covered.

Engineering Design:
    - The CPM cutoff scales with the median library size: a cutoff of
      ``minimum_counts`` reads in a median-sized library
    - The minimum sample size comes from the grouping factor, or from the
      leverage of a design matrix when a formula is given
    - For large groups the requirement grows only proportionally
      (``large_n`` and ``minimum_proportion``)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

import numpy as np
import pandas as pd

from tidyrna.core.table import AbundanceTable
from tidyrna.core.transform import Transform

logger = logging.getLogger(__name__)

__all__ = ['IdentifyAbundant', 'AbundanceFilterResult', 'LOWLY_ABUNDANT', 'abundant_mask']

LOWLY_ABUNDANT = "lowly_abundant"

# Tolerance for threshold comparisons
_TOL = 1e-14


@dataclass
class AbundanceFilterResult:
    """Results from low-abundance identification with full provenance."""
    passed_genes: Set[str]
    failed_genes: Set[str]
    lowly_abundant: pd.Series
    min_sample_size: float
    cpm_cutoff: float
    n_failed_cpm: int
    n_failed_total: int
    parameters: Dict[str, Any] = field(default_factory=dict)

    @property
    def n_passed(self) -> int:
        return len(self.passed_genes)

    @property
    def n_failed(self) -> int:
        return len(self.failed_genes)

    @property
    def pass_rate(self) -> float:
        total = self.n_passed + self.n_failed
        return self.n_passed / total if total > 0 else 0.0


class IdentifyAbundant(Transform):
    """
    Flag genes that fail the minimum-count-in-minimum-samples rule.

    Params:
        factor_of_interest: Sample column defining experimental groups. The
            smallest group sets the minimum number of samples. Numeric
            columns are treated as a one-variable formula.
        formula: Design formula used instead of a factor; the minimum sample
            size is 1 / max(leverage) of its design matrix.
        minimum_counts: Count a gene must reach in a median-sized library.
        minimum_total_counts: Minimum total count across all samples.
        minimum_proportion: Fraction of samples beyond ``large_n`` that must
            reach the cutoff.
        large_n: Group size beyond which the requirement grows only
            proportionally.

    Examples:
        >>> flagged = IdentifyAbundant(factor_of_interest="dex").apply(table)
        >>> flagged.pivot_feature()["lowly_abundant"].sum()
    """

    def __init__(
        self,
        factor_of_interest: Optional[str] = None,
        formula: Optional[str] = None,
        minimum_counts: float = 10,
        minimum_total_counts: float = 15,
        minimum_proportion: float = 0.7,
        large_n: float = 10,
    ):
        super().__init__(
            name="IdentifyAbundant",
            params={
                "factor_of_interest": factor_of_interest,
                "formula": formula,
                "minimum_counts": minimum_counts,
                "minimum_total_counts": minimum_total_counts,
                "minimum_proportion": minimum_proportion,
                "large_n": large_n,
            }
        )
        if factor_of_interest is not None and formula is not None:
            raise ValueError("Give either factor_of_interest or formula, not both")
        if minimum_counts < 0 or minimum_total_counts < 0:
            raise ValueError("Count thresholds must be non-negative")
        if not 0 <= minimum_proportion <= 1:
            raise ValueError(f"minimum_proportion must be in [0, 1], got {minimum_proportion}")
        self.factor_of_interest = factor_of_interest
        self.formula = formula
        self.minimum_counts = minimum_counts
        self.minimum_total_counts = minimum_total_counts
        self.minimum_proportion = minimum_proportion
        self.large_n = large_n

    def _min_sample_size(self, table: AbundanceTable) -> float:
        metadata = table.sample_metadata
        formula = self.formula

        if self.factor_of_interest is not None:
            if self.factor_of_interest not in metadata.columns:
                raise ValueError(
                    f"factor_of_interest '{self.factor_of_interest}' is not a sample column "
                    f"(available: {list(metadata.columns)})"
                )
            values = metadata[self.factor_of_interest]
            if pd.api.types.is_numeric_dtype(values) and not pd.api.types.is_bool_dtype(values):
                formula = f"~ {self.factor_of_interest}"
            else:
                group_sizes = values.astype(str).value_counts()
                group_sizes = group_sizes[group_sizes > 0]
                logger.info(f"Group sizes for '{self.factor_of_interest}': "
                            f"{group_sizes.to_dict()}")
                return float(group_sizes.min())

        if formula is not None:
            from tidyrna.stats.design_matrix import build_design, leverage

            design = build_design(formula, metadata)
            return float(1.0 / np.max(leverage(design.X)))

        return float(table.n_samples)

    def _compute_keep_mask(self, table: AbundanceTable) -> tuple[np.ndarray, Dict[str, Any]]:
        """
        Core rule: which genes are sufficiently abundant.

        Returns:
            keep_mask: Boolean array aligned with table.feature_ids
            stats: Thresholds and per-rule failure counts
        """
        counts = table.to_matrix().to_numpy(dtype=np.float64)
        library_sizes = counts.sum(axis=0)

        min_sample_size = self._min_sample_size(table)
        if min_sample_size > self.large_n:
            min_sample_size = self.large_n + (min_sample_size - self.large_n) * self.minimum_proportion

        median_library = float(np.median(library_sizes))
        if median_library <= 0:
            logger.warning("Median library size is zero; every gene will be flagged")
            cpm_cutoff = np.inf
        else:
            cpm_cutoff = self.minimum_counts / median_library * 1e6

        with np.errstate(divide="ignore", invalid="ignore"):
            cpm = counts / library_sizes[None, :] * 1e6
        n_expressed = np.sum(cpm >= cpm_cutoff, axis=1)

        keep_cpm = n_expressed >= min_sample_size - _TOL
        keep_total = counts.sum(axis=1) >= self.minimum_total_counts - _TOL

        stats = {
            "min_sample_size": float(min_sample_size),
            "cpm_cutoff": float(cpm_cutoff),
            "n_failed_cpm": int(np.sum(~keep_cpm)),
            "n_failed_total": int(np.sum(~keep_total)),
        }
        return keep_cpm & keep_total, stats

    def identify(self, table: AbundanceTable) -> AbundanceFilterResult:
        """
        Compute the low-abundance flags without modifying the table.

        Args:
            table: AbundanceTable with raw counts and sample metadata

        Returns:
            AbundanceFilterResult with passed/failed genes and thresholds
        """
        self._raise_if_invalid(table)
        logger.info(f"Identifying abundant genes: {self!r}")

        keep_mask, stats = self._compute_keep_mask(table)

        feature_ids = table.feature_ids
        lowly = pd.Series(~keep_mask, index=feature_ids, name=LOWLY_ABUNDANT)

        result = AbundanceFilterResult(
            passed_genes=set(feature_ids[keep_mask]),
            failed_genes=set(feature_ids[~keep_mask]),
            lowly_abundant=lowly,
            parameters=dict(self.params),
            **stats,
        )

        logger.info(f"Abundance filter: {result.n_passed}/{table.n_features} genes abundant "
                    f"({result.pass_rate * 100:.1f}%), min samples={result.min_sample_size:.2f}, "
                    f"CPM cutoff={result.cpm_cutoff:.3g}")
        return result

    def apply(self, table: AbundanceTable) -> AbundanceTable:
        """Write the ``lowly_abundant`` gene column; no rows are removed."""
        result = self.identify(table)
        return table.join_features(result.lowly_abundant.to_frame(), overwrite=True)

    def validate(self, table: AbundanceTable) -> list[str]:
        errors = super().validate(table)
        counts = table.data[table.count_column]
        if (counts < 0).any():
            errors.append("Table contains negative counts")
        return errors


def abundant_mask(table: AbundanceTable) -> np.ndarray:
    """
    Boolean mask over table.feature_ids of genes not flagged lowly abundant.

    Computes the flags with default settings when the table has none.
    """
    if LOWLY_ABUNDANT not in table.feature_columns:
        logger.info("No low-abundance flags on table; computing them with default settings")
        lowly = IdentifyAbundant().identify(table).lowly_abundant
    else:
        lowly = table.feature_metadata[LOWLY_ABUNDANT]
    return ~lowly.to_numpy(dtype=bool)
