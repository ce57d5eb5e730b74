"""
Ordered execution of the abundance-table workflow.

Stages, each a Transform returning a new table:

    1. rename samples        (optional identifier rewrite)
    2. IdentifyAbundant      lowly_abundant gene flag
    3. ScaleAbundance        norm_factor / lib_size / multiplier, count_scaled
    4. ReduceDimensions      PC* and/or Dim* sample columns, per method
    5. KeepVariable          separate top-variable table (heatmap only)
    6. TestDifferentialAbundance   per-gene statistics (if a formula is set)

The main table never loses rows: variable-gene selection produces a second
table so that the gene projection of the main table still covers every gene.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

import pandas as pd

from tidyrna.config import PipelineConfig
from tidyrna.core.table import AbundanceTable, strip_prefix
from tidyrna.quality.filtering import AbundanceFilterResult, IdentifyAbundant
from tidyrna.stats.differential import (
    DifferentialResult,
    TestDifferentialAbundance,
    join_statistics,
)
from tidyrna.stats.normalization import ScaleAbundance
from tidyrna.stats.reduction import KeepVariable, ReduceDimensions, ReductionResult

logger = logging.getLogger(__name__)

__all__ = ['PipelineResult', 'run_pipeline']


@dataclass
class PipelineResult:
    """Outputs of every stage.

    Attributes:
        table: Main table with all added columns (every gene retained)
        filter_result: Low-abundance statistics
        scaling_factors: Per-sample norm_factor, lib_size, multiplier
        reductions: Method name -> ReductionResult
        variable_table: Top-variable sub-table, if requested
        differential: Differential result, if a formula was configured
        stages: Repr of every applied stage, in order
    """

    table: AbundanceTable
    filter_result: AbundanceFilterResult
    scaling_factors: pd.DataFrame
    reductions: dict[str, ReductionResult] = field(default_factory=dict)
    variable_table: Optional[AbundanceTable] = None
    differential: Optional[DifferentialResult] = None
    stages: list[str] = field(default_factory=list)

    def variance_explained(self) -> pd.DataFrame:
        """Long frame of method, component and fraction of variance explained."""
        rows = [
            {"method": method, "component": component, "variance_explained": fraction}
            for method, result in self.reductions.items()
            for component, fraction in result.variance_explained.items()
        ]
        return pd.DataFrame(rows, columns=["method", "component", "variance_explained"])


def _tester(config: PipelineConfig) -> Optional[TestDifferentialAbundance]:
    settings = config.differential
    if not settings.formula:
        return None
    return TestDifferentialAbundance(
        formula=settings.formula,
        contrasts=settings.contrasts,
        method=settings.method,
        fdr_threshold=settings.fdr_threshold,
        fdr_method=settings.fdr_method,
        factor_of_interest=settings.factor_of_interest,
        n_jobs=settings.n_jobs,
    )


def _filter_stage(
    config: PipelineConfig,
    table: AbundanceTable,
    tester: Optional[TestDifferentialAbundance],
) -> IdentifyAbundant:
    settings = config.filter
    thresholds = {
        "minimum_counts": settings.minimum_counts,
        "minimum_total_counts": settings.minimum_total_counts,
        "minimum_proportion": settings.minimum_proportion,
        "large_n": settings.large_n,
    }
    if settings.factor_of_interest is None and settings.formula is None:
        # Group as the differential test would when it flags genes itself
        if tester is not None:
            return tester.abundance_filter(table, **thresholds)
        if config.differential.factor_of_interest is not None:
            return IdentifyAbundant(
                factor_of_interest=config.differential.factor_of_interest, **thresholds
            )
    return IdentifyAbundant(
        factor_of_interest=settings.factor_of_interest,
        formula=settings.formula,
        **thresholds,
    )


def run_pipeline(table: AbundanceTable, config: Optional[PipelineConfig] = None) -> PipelineResult:
    """
    Run every configured stage on ``table``.

    Args:
        table: AbundanceTable built from raw counts and sample annotations
        config: PipelineConfig; defaults run filter, TMM scaling, PCA and MDS

    Returns:
        PipelineResult

    Raises:
        IdentifierCollisionError: If the sample rewrite is not injective
        DesignRankError: If the differential design is not of full rank
        BroadcastConsistencyError: If a sample or gene column is not
            constant within its key at the end of the run
        ValueError: For any other invalid parameter or input
    """
    config = config or PipelineConfig()
    stages: list[str] = []

    logger.info(f"Starting pipeline on {table!r}")

    if config.strip_sample_prefix:
        rewrite = strip_prefix(config.strip_sample_prefix)
        table = table.rename_samples(rewrite)
        stages.append(f"rename_samples({rewrite.__name__})")

    tester = _tester(config)
    flagger = _filter_stage(config, table, tester)
    filter_result = flagger.identify(table)
    table = table.join_features(filter_result.lowly_abundant.to_frame(), overwrite=True)
    stages.append(repr(flagger))

    scaler = ScaleAbundance(
        method=config.scaling.method,
        reference_sample=config.scaling.reference_sample,
    )
    table = scaler.apply(table)
    scaling_factors = table.sample_metadata[["norm_factor", "lib_size", "multiplier"]]
    stages.append(repr(scaler))

    reductions: dict[str, ReductionResult] = {}
    for method in config.reduction.methods:
        reducer = ReduceDimensions(
            method=method,
            n_components=config.reduction.n_components,
            top=config.reduction.top,
            scale=config.reduction.scale,
        )
        result = reducer.fit(table)
        table = table.join_samples(result.coordinates, overwrite=True)
        reductions[result.method] = result
        stages.append(repr(reducer))

    variable_table = None
    if config.variable.enabled:
        selector = KeepVariable(top=config.variable.top)
        variable_table = selector.apply(table)
        stages.append(repr(selector))

    differential = None
    if tester is not None:
        differential = tester.test(table)
        table = join_statistics(table, differential)
        stages.append(repr(tester))
        for row in differential.summary().itertuples(index=False):
            logger.info(f"Contrast {row.contrast}: {row.up} up, {row.down} down "
                        f"of {row.tested} tested")
    else:
        logger.info("No differential formula configured; skipping differential testing")

    table.verify_broadcast()
    logger.info(f"Pipeline complete: {len(stages)} stages, {table!r}")

    return PipelineResult(
        table=table,
        filter_result=filter_result,
        scaling_factors=scaling_factors,
        reductions=reductions,
        variable_table=variable_table,
        differential=differential,
        stages=stages,
    )
