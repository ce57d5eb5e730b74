"""
tidyrna CLI - command-line interface for long-format RNA-seq analysis.

Commands:
    tidyrna run     - Filter, scale, reduce, test and export a count matrix
    tidyrna scale   - Filter and normalize only; write the scaled matrix
"""

import argparse
import logging
import sys
from typing import Optional, List

logger = logging.getLogger(__name__)


def main(args: Optional[List[str]] = None) -> int:
    """Main CLI dispatcher for tidyrna."""
    from tidyrna import __version__

    parser = argparse.ArgumentParser(
        prog="tidyrna",
        description="Tidy RNA-seq count analysis: filtering, TMM scaling, PCA/MDS, QL differential testing",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  run     Filter, scale, reduce, test and export a count matrix
  scale   Filter and normalize only; write the scaled matrix

Examples:
  tidyrna run --counts counts.tsv --samples samples.tsv --formula "~ 0 + dex" \\
      --contrast "dextrt - dexuntrt" --output results --figures
  tidyrna run --config pipeline.yaml --fdr 0.1
  tidyrna scale --counts counts.tsv --output scaled.tsv
        """
    )

    parser.add_argument(
        "--version", "-V",
        action="version",
        version=f"%(prog)s {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Import and register subcommands
    from tidyrna.cli import run, scale
    run.register_parser(subparsers)
    scale.register_parser(subparsers)

    parsed_args = parser.parse_args(args)

    if parsed_args.command is None:
        parser.print_help()
        return 0

    logging.basicConfig(
        level=logging.DEBUG if parsed_args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )

    # Dispatch to subcommand
    try:
        return parsed_args.func(parsed_args)
    except (ValueError, FileNotFoundError) as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
