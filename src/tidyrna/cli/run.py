"""
tidyrna run command - full workflow from count matrix to exports.

Usage:
    tidyrna run --counts counts.tsv --samples samples.tsv --output results \\
        --formula "~ 0 + dex + cell" --contrast "dextrt - dexuntrt" --figures

Outputs (in the output directory):
    features.tsv         gene projection (flags, differential statistics)
    samples.tsv          sample projection (factors, PC*/Dim* coordinates)
    count_scaled.tsv     scaled count matrix
    variance_explained.tsv
    differential_summary.tsv   (when a formula is given)
    figures/             (with --figures) and report.html (with --report)
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path

from tidyrna.cli._validators import _jobs, _non_negative_float, _positive_int, _probability

logger = logging.getLogger(__name__)


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the run subcommand."""
    parser = subparsers.add_parser(
        "run",
        help="Filter, scale, reduce and test an RNA-seq count matrix",
        description="Run the full abundance-table workflow and export TSV results",
    )

    # Configuration file support
    parser.add_argument("--config", "-c", type=Path, default=None,
                        help="Path to YAML/JSON config file (optional, CLI args override config values)")

    parser.add_argument("--counts", "-i", type=Path, default=None,
                        help="Count matrix (genes × samples, first column = gene id)")
    parser.add_argument("--samples", "-s", type=Path, default=None,
                        help="Sample annotation table")
    parser.add_argument("--features", type=Path, default=None,
                        help="Gene annotation table (optional)")
    parser.add_argument("--sample-key", default=None,
                        help="Sample id column in the annotation table (default: first column)")
    parser.add_argument("--output", "-o", type=Path, default=None,
                        help="Output directory (default: results)")
    parser.add_argument("--strip-sample-prefix", default=None,
                        help="Literal prefix removed from every sample id")

    parser.add_argument("--factor", default=None,
                        help="Sample column defining groups for low-abundance filtering")
    parser.add_argument("--minimum-counts", type=_non_negative_float, default=None,
                        help="Minimum count in a median-sized library (default: 10)")
    parser.add_argument("--minimum-total-counts", type=_non_negative_float, default=None,
                        help="Minimum total count per gene (default: 15)")

    parser.add_argument("--scaling-method", choices=["TMM", "upperquartile", "RLE", "none"],
                        default=None, help="Normalization method (default: TMM)")

    parser.add_argument("--reduction", nargs="+", choices=["PCA", "MDS"], default=None,
                        help="Dimensionality reduction methods (default: PCA MDS)")
    parser.add_argument("--components", type=_positive_int, default=None,
                        help="Number of components per reduction (default: 2)")
    parser.add_argument("--top", type=_positive_int, default=None,
                        help="Most variable genes used for reduction (default: 500)")
    parser.add_argument("--keep-variable", type=_positive_int, default=None,
                        help="Also select this many most variable genes for the heatmap")

    parser.add_argument("--formula", default=None,
                        help='Design formula for differential testing, e.g. "~ 0 + dex + cell"')
    parser.add_argument("--contrast", action="append", default=None,
                        help="Contrast over design columns (repeatable)")
    parser.add_argument("--test", choices=["quasi_likelihood", "likelihood_ratio"], default=None,
                        help="Test method (default: quasi_likelihood)")
    parser.add_argument("--fdr", type=_probability, default=None,
                        help="FDR threshold for significance (default: 0.05)")
    parser.add_argument("--n-jobs", type=_jobs, default=None,
                        help="Parallel jobs for per-gene fits (default: 1, -1 = all cores)")

    parser.add_argument("--figures", action="store_true", default=None,
                        help="Write figures to <output>/figures")
    parser.add_argument("--report", action="store_true", default=None,
                        help="Write a self-contained HTML report (implies --figures)")
    parser.add_argument("--color-by", default=None,
                        help="Sample column used to colour sample maps")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Debug logging")

    parser.set_defaults(func=run_run)


def _overrides(args: argparse.Namespace) -> dict:
    overrides = {
        "counts": args.counts,
        "samples": args.samples,
        "features": args.features,
        "sample_key": args.sample_key,
        "strip_sample_prefix": args.strip_sample_prefix,
        "filter.factor_of_interest": args.factor,
        "filter.minimum_counts": args.minimum_counts,
        "filter.minimum_total_counts": args.minimum_total_counts,
        "scaling.method": args.scaling_method,
        "reduction.methods": args.reduction,
        "reduction.n_components": args.components,
        "reduction.top": args.top,
        "differential.formula": args.formula,
        "differential.contrasts": args.contrast,
        "differential.method": args.test,
        "differential.fdr_threshold": args.fdr,
        "differential.n_jobs": args.n_jobs,
        "export.output_dir": args.output,
        "export.figures": args.figures or args.report,
        "export.report": args.report,
        "export.color_by": args.color_by,
    }
    if args.keep_variable is not None:
        overrides["variable.enabled"] = True
        overrides["variable.top"] = args.keep_variable
    return overrides


def _write_figures(result, config) -> None:
    from tidyrna.viz import FigureCollection, RnaSeqVisualizer

    export = config.export
    figure_dir = export.output_dir / "figures"
    viz = RnaSeqVisualizer(style="paper")
    collection = FigureCollection()

    collection.add("abundance_density", viz.plot_abundance_density(result.table))
    for method, reduction in result.reductions.items():
        collection.add(
            f"{method.lower()}_samples",
            viz.plot_reduced_dimensions(result.table, reduction, color_by=export.color_by),
        )
    if result.differential is not None:
        for k, contrast in enumerate(result.differential.contrast_names, start=1):
            collection.add(f"volcano_{k}", viz.plot_volcano(result.differential, contrast))
    if result.variable_table is not None:
        annotate = [export.color_by] if export.color_by else None
        collection.add("variable_heatmap", viz.plot_heatmap(result.variable_table, annotate_by=annotate))

    collection.save_all(figure_dir, format=export.figure_format)
    if export.report:
        collection.to_html_report(export.output_dir / "report.html")
    collection.close_all()


def run_run(args: argparse.Namespace) -> int:
    """Execute the run command."""
    from tidyrna.config import PipelineConfig, apply_overrides, load_config
    from tidyrna.io import (
        load_experiment,
        write_count_matrix,
        write_feature_table,
        write_sample_table,
    )
    from tidyrna.pipeline import run_pipeline

    config = load_config(args.config) if args.config else PipelineConfig()
    config = apply_overrides(config, _overrides(args))

    if config.counts is None or config.samples is None:
        logger.error("--counts and --samples are required (on the command line or in --config)")
        return 1

    table = load_experiment(
        config.counts,
        config.samples,
        features=config.features,
        sample_key=config.sample_key,
        feature_key=config.feature_key,
    )
    logger.info(f"Loaded {table!r}")

    result = run_pipeline(table, config)

    output_dir = config.export.output_dir
    output_dir.mkdir(parents=True, exist_ok=True)

    write_feature_table(result.table, output_dir / "features.tsv")
    write_sample_table(result.table, output_dir / "samples.tsv")
    write_count_matrix(result.table, output_dir / "count_scaled.tsv", column="count_scaled")
    result.variance_explained().to_csv(output_dir / "variance_explained.tsv", sep="\t", index=False)
    if result.differential is not None:
        summary = result.differential.summary()
        summary.to_csv(output_dir / "differential_summary.tsv", sep="\t", index=False)
        for row in summary.itertuples(index=False):
            print(f"  {row.contrast}: {row.up} up, {row.down} down ({row.tested} tested)")

    if config.export.figures:
        _write_figures(result, config)

    print(f"\nFiltering: {result.filter_result.n_passed}/{result.table.n_features} genes abundant")
    print(f"Results written to {output_dir}")
    return 0
