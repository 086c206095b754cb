"""
Pytest configuration and shared fixtures.

Provides synthetic single-cell count matrices with known structure (three
cell types with distinct markers, mitochondrial genes, a few damaged cells)
and a writer for Cell Ranger style directories.
"""

import gzip

import numpy as np
import pandas as pd
import pytest
import scipy.io
import scipy.sparse as sp

from cellmatrix.core.annotated_matrix import AnnotatedMatrix


CELL_TYPE_MARKERS = {
    "T cell": ["CD3E", "CD3D"],
    "B cell": ["MS4A1", "CD79A"],
    "Monocyte": ["LYZ", "CD14"],
}
MITO_GENES = ["MT-CO1", "MT-ND1", "mt-atp6"]


def generate_synthetic_counts(
    n_background: int = 40,
    cells_per_type: int = 30,
    n_damaged: int = 3,
    sparse: bool = True,
    seed: int = 42,
) -> AnnotatedMatrix:
    """
    Generate a UMI count matrix with realistic single-cell structure.

    Args:
        n_background: Number of non-marker, non-mitochondrial genes
        cells_per_type: Cells per cell type (three types)
        n_damaged: Cells (at the end) with very high mitochondrial counts
        sparse: Store counts as CSR
        seed: Random seed for reproducibility

    Returns:
        AnnotatedMatrix with ID/Symbol feature metadata, Barcode and
        true_type sample metadata, and a "counts" assay

    Design:
        - Marker genes: Poisson(20) in their own type, Poisson(0.3) elsewhere
        - Background genes: Poisson(2)
        - Mitochondrial genes: Poisson(1), Poisson(200) in damaged cells
    """
    rng = np.random.RandomState(seed)

    markers = [g for genes in CELL_TYPE_MARKERS.values() for g in genes]
    symbols = markers + MITO_GENES + [f"GENE{i:03d}" for i in range(n_background)]
    n_genes = len(symbols)

    true_types = [t for t in CELL_TYPE_MARKERS for _ in range(cells_per_type)]
    n_cells = len(true_types)

    counts = rng.poisson(2.0, size=(n_genes, n_cells)).astype(float)

    for row, gene in enumerate(markers):
        owner = next(t for t, genes in CELL_TYPE_MARKERS.items() if gene in genes)
        for col, cell_type in enumerate(true_types):
            counts[row, col] = rng.poisson(20.0 if cell_type == owner else 0.3)

    mito_rows = slice(len(markers), len(markers) + len(MITO_GENES))
    counts[mito_rows, :] = rng.poisson(1.0, size=(len(MITO_GENES), n_cells))
    if n_damaged:
        counts[mito_rows, n_cells - n_damaged:] = rng.poisson(200.0, size=(len(MITO_GENES), n_damaged))

    data = sp.csr_matrix(counts) if sparse else counts
    feature_ids = [f"ENSG{i:011d}" for i in range(n_genes)]
    barcodes = [f"CELL{j:04d}-1" for j in range(n_cells)]

    return AnnotatedMatrix(
        data=data,
        feature_metadata=pd.DataFrame({"ID": feature_ids, "Symbol": symbols}),
        sample_metadata=pd.DataFrame({"Barcode": barcodes, "true_type": true_types}),
        assays={"counts": data},
        feature_names=feature_ids,
        sample_names=barcodes,
    )


def write_10x_directory(matrix: AnnotatedMatrix, directory, version: int = 2) -> None:
    """
    Write a container as a Cell Ranger directory.

    version=2 writes plain matrix.mtx/genes.tsv/barcodes.tsv; version=3
    writes gzipped matrix.mtx.gz/features.tsv.gz/barcodes.tsv.gz with a
    feature type column.
    """
    directory.mkdir(parents=True, exist_ok=True)
    counts = sp.coo_matrix(matrix.data).astype(np.int64)
    ids = matrix.feature_metadata["ID"].tolist()
    symbols = matrix.feature_metadata["Symbol"].tolist()
    barcodes = matrix.sample_metadata["Barcode"].tolist()

    if version == 2:
        scipy.io.mmwrite(str(directory / "matrix.mtx"), counts, field="integer")
        (directory / "genes.tsv").write_text(
            "".join(f"{i}\t{s}\n" for i, s in zip(ids, symbols))
        )
        (directory / "barcodes.tsv").write_text("".join(f"{b}\n" for b in barcodes))
    else:
        scipy.io.mmwrite(str(directory / "matrix.mtx"), counts, field="integer")
        raw = (directory / "matrix.mtx").read_bytes()
        (directory / "matrix.mtx").unlink()
        with gzip.open(directory / "matrix.mtx.gz", "wb") as f:
            f.write(raw)
        with gzip.open(directory / "features.tsv.gz", "wt") as f:
            f.write("".join(f"{i}\t{s}\tGene Expression\n" for i, s in zip(ids, symbols)))
        with gzip.open(directory / "barcodes.tsv.gz", "wt") as f:
            f.write("".join(f"{b}\n" for b in barcodes))


@pytest.fixture
def example_matrix():
    """F=5 features × S=4 samples with distinct, position-encoding values."""
    data = np.arange(20, dtype=float).reshape(5, 4)
    feature_metadata = pd.DataFrame({
        "ID": [f"ENSG{i}" for i in range(5)],
        "Symbol": ["CD3E", "MS4A1", "LYZ", "NKG7", "MT-CO1"],
    })
    sample_metadata = pd.DataFrame({
        "Barcode": ["AAAC-1", "AAAG-1", "AAAT-1", "AACA-1"],
        "batch": [1, 1, 2, 2],
    })
    return AnnotatedMatrix.create(data, feature_metadata, sample_metadata)


@pytest.fixture
def synthetic_counts():
    """Sparse synthetic counts: 3 cell types × 30 cells, 3 damaged cells."""
    return generate_synthetic_counts()


@pytest.fixture
def dense_counts():
    """Same structure as synthetic_counts but with a dense primary matrix."""
    return generate_synthetic_counts(sparse=False)


@pytest.fixture
def tenx_dir(tmp_path):
    """Cell Ranger v2 directory holding synthetic_counts."""
    directory = tmp_path / "hg19"
    write_10x_directory(generate_synthetic_counts(), directory, version=2)
    return directory


@pytest.fixture
def marker_file(tmp_path):
    """YAML marker file matching the synthetic cell types."""
    path = tmp_path / "markers.yaml"
    lines = [f"{cell_type}: [{', '.join(genes)}]" for cell_type, genes in CELL_TYPE_MARKERS.items()]
    path.write_text("\n".join(lines) + "\n")
    return path
