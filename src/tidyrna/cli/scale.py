"""
tidyrna scale command - flag lowly abundant genes and write scaled counts.

Usage:
    tidyrna scale --counts counts.tsv --output scaled.tsv --factors factors.tsv
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from tidyrna.cli._validators import _non_negative_float

logger = logging.getLogger(__name__)


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the scale subcommand."""
    parser = subparsers.add_parser(
        "scale",
        help="Compute normalization factors and write the scaled count matrix",
        description="Low-abundance filtering and library-size normalization only",
    )
    parser.add_argument("--counts", "-i", type=Path, required=True,
                        help="Count matrix (genes × samples, first column = gene id)")
    parser.add_argument("--samples", "-s", type=Path, default=None,
                        help="Sample annotation table (required with --factor)")
    parser.add_argument("--output", "-o", type=Path, required=True,
                        help="Scaled count matrix (TSV)")
    parser.add_argument("--factors", type=Path, default=None,
                        help="Also write per-sample factors (TSV)")
    parser.add_argument("--method", choices=["TMM", "upperquartile", "RLE", "none"],
                        default="TMM", help="Normalization method (default: TMM)")
    parser.add_argument("--reference-sample", default=None,
                        help="Sample used as the TMM reference")
    parser.add_argument("--factor", default=None,
                        help="Sample column defining groups for low-abundance filtering")
    parser.add_argument("--minimum-counts", type=_non_negative_float, default=10,
                        help="Minimum count in a median-sized library (default: 10)")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Debug logging")
    parser.set_defaults(func=run_scale)


def run_scale(args: argparse.Namespace) -> int:
    """Execute the scale command."""
    from tidyrna.core.table import AbundanceTable
    from tidyrna.io import (
        load_count_matrix,
        load_experiment,
        write_count_matrix,
        write_sample_table,
    )
    from tidyrna.quality import IdentifyAbundant
    from tidyrna.stats import ScaleAbundance

    if args.factor and args.samples is None:
        logger.error("--factor requires --samples")
        return 1

    if args.samples is not None:
        table = load_experiment(args.counts, args.samples)
    else:
        table = AbundanceTable.from_matrix(load_count_matrix(args.counts))

    flagger = IdentifyAbundant(factor_of_interest=args.factor, minimum_counts=args.minimum_counts)
    table = flagger.apply(table)
    table = ScaleAbundance(method=args.method, reference_sample=args.reference_sample).apply(table)

    write_count_matrix(table, args.output, column="count_scaled")
    if args.factors is not None:
        write_sample_table(table, args.factors)

    n_lowly = int(table.feature_metadata["lowly_abundant"].sum())
    print(f"Scaled {table.n_features} genes × {table.n_samples} samples "
          f"({n_lowly} lowly abundant genes excluded from factors)")
    print(f"Wrote {args.output}")
    return 0
