"""cellmatrix inspect: print the layout of a 10x matrix directory."""

import argparse
import logging
from pathlib import Path

from cellmatrix.io.loaders import load_10x_mtx
from cellmatrix.quality.metrics import PerCellQC

logger = logging.getLogger(__name__)


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the inspect subcommand."""
    parser = subparsers.add_parser(
        "inspect",
        help="Summarize a 10x matrix directory",
        description="Load a 10x directory and print its dimensions and per-cell QC distribution",
    )
    parser.add_argument("--input", "-i", type=Path, required=True,
                        help="10x directory with matrix.mtx, genes.tsv/features.tsv, barcodes.tsv")
    parser.add_argument("--mito-prefix", type=str, default="MT-",
                        help="Gene symbol prefix of mitochondrial genes (default: MT-)")
    parser.set_defaults(func=run_inspect)


def run_inspect(args: argparse.Namespace) -> int:
    """Execute the inspect subcommand."""
    logging.basicConfig(level=logging.WARNING, format='%(asctime)s - %(levelname)s - %(message)s')

    try:
        matrix = load_10x_mtx(args.input)
        PerCellQC(subsets={"Mito": args.mito_prefix}).apply(matrix)
    except (ValueError, KeyError, OSError) as e:
        logger.error("inspect failed: %s", e)
        return 1

    print(matrix)
    print()
    columns = ["sum", "detected", "subsets_Mito_percent"]
    print(matrix.sample_metadata[columns].describe().round(2).to_string())
    return 0
