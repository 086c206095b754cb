"""
cellmatrix CLI - single-cell QC and annotation from 10x output.

Commands:
    cellmatrix qc       - QC, normalize, embed and annotate a 10x directory
    cellmatrix inspect  - Print dimensions and QC distribution of a 10x directory
"""

import argparse
import sys
from typing import Optional, List

from cellmatrix import __version__


def main(args: Optional[List[str]] = None) -> int:
    """Main CLI dispatcher for cellmatrix."""
    parser = argparse.ArgumentParser(
        prog="cellmatrix",
        description="Single-cell QC, normalization and cell-type annotation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  qc        QC, normalize, embed and annotate a 10x matrix directory
  inspect   Summarize a 10x matrix directory

Examples:
  cellmatrix inspect --input filtered_gene_bc_matrices/hg19
  cellmatrix qc --input filtered_gene_bc_matrices/hg19 --output results/pbmc \\
      --max-mito-percent 10 --min-cells 3 --n-pcs 20 --umap --markers markers.yaml
  cellmatrix qc --config pipeline.yaml --n-jobs 4
        """
    )

    parser.add_argument(
        "--version", "-V",
        action="version",
        version=f"%(prog)s {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    from cellmatrix.cli import qc, summary
    qc.register_parser(subparsers)
    summary.register_parser(subparsers)

    parsed_args = parser.parse_args(args)

    if parsed_args.command is None:
        parser.print_help()
        return 0

    return parsed_args.func(parsed_args)


if __name__ == "__main__":
    sys.exit(main())
