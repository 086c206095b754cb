"""
cellmatrix qc: load 10x output, QC, normalize, embed, annotate, write.

Outputs (for --output results/pbmc):
    results/pbmc.samples.csv     per-cell metrics, discard flag, labels
    results/pbmc.features.csv    per-gene metrics, HVG flags
    results/pbmc.PCA.csv         principal components
    results/pbmc.UMAP.csv        UMAP layout (if enabled)
    results/pbmc.TSNE.csv        t-SNE layout (if enabled)
    results/pbmc.data.csv        logcounts (only with --write-matrix)
    results/pbmc.summary.json    container layout and QC report
"""

import argparse
import logging
from dataclasses import asdict
from pathlib import Path

from cellmatrix.cli._validators import (
    _n_jobs,
    _non_negative_float,
    _non_negative_int,
    _percentage,
    _positive_float,
    _positive_int,
)
from cellmatrix.cli.config import load_config, merge_config_with_args
from cellmatrix.io.loaders import load_10x_mtx
from cellmatrix.io.writers import (
    write_csv_matrix,
    write_feature_metadata,
    write_reduced,
    write_sample_metadata,
    write_summary,
)
from cellmatrix.pipeline import run_pipeline

logger = logging.getLogger(__name__)


def register_parser(subparsers: argparse._SubParsersAction) -> None:
    """Register the qc subcommand."""
    parser = subparsers.add_parser(
        "qc",
        help="QC, normalize, embed and annotate a 10x matrix directory",
        description="Per-cell QC, library-size normalization, PCA/UMAP/t-SNE and marker-based cell typing",
    )

    parser.add_argument("--config", "-c", type=Path, default=None,
                        help="Path to YAML/JSON config file (optional, CLI args override config values)")
    parser.add_argument("--input", "-i", type=Path, default=None,
                        help="10x directory with matrix.mtx, genes.tsv/features.tsv, barcodes.tsv")
    parser.add_argument("--output", "-o", type=Path, default=None,
                        help="Output base path (without extension)")

    qc = parser.add_argument_group("QC thresholds (disabled unless given)")
    qc.add_argument("--min-sum", type=_non_negative_float, default=None,
                    help="Minimum total counts per cell")
    qc.add_argument("--min-detected", type=_non_negative_int, default=None,
                    help="Minimum detected genes per cell")
    qc.add_argument("--max-mito-percent", type=_percentage, default=None,
                    help="Maximum mitochondrial percentage per cell (e.g. 10)")
    qc.add_argument("--mito-nmads", type=_positive_float, default=None,
                    help="Also discard cells this many MADs above the median mitochondrial percentage")
    qc.add_argument("--mito-prefix", type=str, default=None,
                    help="Gene symbol prefix of mitochondrial genes (default: MT-)")
    qc.add_argument("--min-cells", type=_non_negative_int, default=None,
                    help="Keep genes detected in at least this many cells (default: 1)")

    red = parser.add_argument_group("Feature selection and embeddings")
    red.add_argument("--n-hvg", type=_positive_int, default=None,
                     help="Number of highly variable genes (default: 2000)")
    red.add_argument("--n-pcs", type=_positive_int, default=None,
                     help="Number of principal components (default: 50)")
    red.add_argument("--umap", dest="umap", action="store_const", const=True, default=None,
                     help="Compute a UMAP layout from the PCs")
    red.add_argument("--no-umap", dest="umap", action="store_const", const=False,
                     help="Skip UMAP even if the config enables it")
    red.add_argument("--n-neighbors", type=_positive_int, default=None,
                     help="UMAP neighbourhood size (default: 15)")
    red.add_argument("--tsne", dest="tsne", action="store_const", const=True, default=None,
                     help="Compute a t-SNE layout from the PCs")
    red.add_argument("--no-tsne", dest="tsne", action="store_const", const=False,
                     help="Skip t-SNE even if the config enables it")
    red.add_argument("--perplexity", type=_positive_float, default=None,
                     help="t-SNE perplexity (default: 30)")

    ann = parser.add_argument_group("Cell-type assignment")
    ann.add_argument("--markers", type=Path, default=None,
                     help="YAML/JSON file mapping cell type to marker gene symbols")
    ann.add_argument("--min-score", type=float, default=None,
                     help="Minimum marker score for a confident label (default: 0)")

    parser.add_argument("--n-jobs", type=_n_jobs, default=None,
                        help="Parallel workers for normalization (-1 = all CPUs, default: 1)")
    parser.add_argument("--write-matrix", action="store_true",
                        help="Also write the logcounts matrix as dense CSV")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Enable debug logging")

    parser.set_defaults(func=run_qc)


def run_qc(args: argparse.Namespace) -> int:
    """Execute the qc subcommand."""
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
    )

    try:
        config_dict = load_config(args.config) if args.config else {}
        config = merge_config_with_args(config_dict, args)

        if config.input is None or config.output is None:
            logger.error("--input and --output are required (via CLI or config file)")
            return 1

        logger.info("Loading 10x data from %s", config.input)
        matrix = load_10x_mtx(config.input)
        result = run_pipeline(matrix, config)

        filtered = result.matrix
        base = str(config.output)
        write_sample_metadata(filtered, Path(base + ".samples.csv"))
        write_feature_metadata(filtered, Path(base + ".features.csv"))
        for name in filtered.reduced_names:
            write_reduced(filtered, name, Path(f"{base}.{name}.csv"))
        if args.write_matrix:
            write_csv_matrix(filtered, Path(base), assay="logcounts")

        extra = {
            "qc": asdict(result.qc),
            "n_features_before_filtering": result.n_features_before,
        }
        if result.explained_variance_ratio is not None:
            extra["pca_explained_variance_ratio"] = [float(v) for v in result.explained_variance_ratio]
        if result.assignment is not None:
            extra["cell_type_counts"] = {
                str(k): int(v) for k, v in result.assignment.labels.value_counts().items()
            }
        write_summary(filtered, Path(base + ".summary.json"), extra=extra)
    except (ValueError, KeyError, OSError) as e:
        logger.error("qc failed: %s", e)
        return 1

    logger.info("Done: %d features × %d cells", filtered.n_features, filtered.n_samples)
    return 0
