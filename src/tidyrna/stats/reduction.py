"""
Dimensionality reduction and variable-gene selection for count tables.

Reduces the sample space to a few coordinates for exploratory plots:
- PCA: principal components of log abundance (scikit-learn, full SVD)
- MDS: classical multidimensional scaling of root-mean-square distances
  between samples over the most variable genes

Both work on log2(abundance + 1) of the scaled counts (raw counts when the
table has not been scaled), restricted to genes not flagged lowly
abundant and then to the ``top`` most variable genes.

KeepVariable selects the same top genes but keeps their rows in the
table. It is the only stage that removes rows and only runs when asked.

Examples:
    >>> reducer = ReduceDimensions(method="PCA", n_components=2)
    >>> result = reducer.fit(scaled_table)
    >>> result.variance_explained
    PC1    0.39
    PC2    0.27
    >>> with_pcs = reducer.apply(scaled_table)
    >>> with_pcs.pivot_sample()[["sample", "PC1", "PC2"]]
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from tidyrna.core.table import AbundanceTable
from tidyrna.core.transform import Transform
from tidyrna.quality.filtering import LOWLY_ABUNDANT

logger = logging.getLogger(__name__)

__all__ = [
    'ReductionMethod',
    'ReductionResult',
    'ReduceDimensions',
    'KeepVariable',
    'log_abundance',
    'top_variable',
    'classical_mds',
]


class ReductionMethod(Enum):
    """Available dimensionality reduction methods."""

    PCA = "PCA"
    MDS = "MDS"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            return cls.__members__.get(value.upper())
        return None

    @property
    def prefix(self) -> str:
        return "PC" if self is ReductionMethod.PCA else "Dim"


@dataclass(frozen=True)
class ReductionResult:
    """Result of dimensionality reduction.

    Attributes:
        coordinates: Samples × components (columns PC1.. or Dim1..)
        variance_explained: Fraction of variance explained per component
        features_used: Genes the reduction was computed on
        method: Method used
    """

    coordinates: pd.DataFrame
    variance_explained: pd.Series
    features_used: list[str]
    method: str

    @property
    def n_components(self) -> int:
        return self.coordinates.shape[1]

    def axis_labels(self) -> list[str]:
        """Axis labels with percentage of variance, e.g. 'PC1 (38.9%)'."""
        return [
            f"{name} ({100 * fraction:.1f}%)"
            for name, fraction in self.variance_explained.items()
        ]


def log_abundance(
    table: AbundanceTable,
    column: Optional[str] = None,
    log_transform: bool = True,
    abundant_only: bool = True,
) -> pd.DataFrame:
    """
    Genes × samples matrix of (log) abundance used for exploration.

    Args:
        table: AbundanceTable
        column: Observation column; default count_scaled if present, else
            the count column
        log_transform: Apply log2(x + 1)
        abundant_only: Drop genes flagged lowly abundant (if flagged)
    """
    if column is None:
        column = "count_scaled" if "count_scaled" in table else table.count_column

    matrix = table.to_matrix(column).astype(np.float64)
    if abundant_only and LOWLY_ABUNDANT in table.feature_columns:
        lowly = table.feature_metadata[LOWLY_ABUNDANT].to_numpy(dtype=bool)
        matrix = matrix.loc[~lowly]
    if log_transform:
        matrix = np.log2(matrix + 1)
    return matrix


def top_variable(matrix: pd.DataFrame, top: int) -> pd.Index:
    """
    Ids of the ``top`` genes with largest sample variance (ddof=1).

    Ties keep the gene that comes first in the matrix.
    """
    if top < 1:
        raise ValueError(f"top must be positive, got {top}")
    variances = matrix.var(axis=1, ddof=1).fillna(0.0).to_numpy()
    order = np.argsort(-variances, kind="stable")
    return matrix.index[order[:top]]


def classical_mds(
    data: NDArray[np.float64],
    n_components: int,
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """
    Classical scaling of root-mean-square distances between rows.

    Args:
        data: 2D array (n_samples, n_genes)
        n_components: Dimensions to return

    Returns:
        Tuple (coordinates, variance_explained):
        - coordinates: (n_samples, n_components)
        - variance_explained: eigenvalue fractions (n_components,)
    """
    from scipy.spatial.distance import pdist, squareform

    n_samples, n_genes = data.shape
    distances = squareform(pdist(data, metric="euclidean")) / np.sqrt(n_genes)

    centering = np.eye(n_samples) - np.ones((n_samples, n_samples)) / n_samples
    gram = -0.5 * centering @ (distances ** 2) @ centering

    eigenvalues, eigenvectors = np.linalg.eigh(gram)
    order = np.argsort(eigenvalues)[::-1]
    eigenvalues = eigenvalues[order]
    eigenvectors = eigenvectors[:, order]

    positive = np.clip(eigenvalues[:n_components], 0.0, None)
    coordinates = eigenvectors[:, :n_components] * np.sqrt(positive)[None, :]

    # Deterministic orientation: largest-magnitude entry of each axis positive
    signs = np.sign(coordinates[np.argmax(np.abs(coordinates), axis=0), range(n_components)])
    signs[signs == 0] = 1.0
    coordinates = coordinates * signs[None, :]

    total = eigenvalues[eigenvalues > 0].sum()
    fractions = positive / total if total > 0 else np.zeros(n_components)
    return coordinates, fractions


class ReduceDimensions(Transform):
    """
    Per-sample coordinates from PCA or MDS, joined as sample columns.

    Params:
        method: "PCA" or "MDS"
        n_components: Number of components/dimensions
        top: Number of most variable genes used
        scale: Standardize genes before PCA
        log_transform: Use log2(abundance + 1)
        abundance_column: Observation column to use (default count_scaled
            if present, else counts)
    """

    def __init__(
        self,
        method: ReductionMethod | str = ReductionMethod.PCA,
        n_components: int = 2,
        top: int = 500,
        scale: bool = False,
        log_transform: bool = True,
        abundance_column: Optional[str] = None,
    ):
        method = ReductionMethod(method) if isinstance(method, str) else method
        super().__init__(
            name="ReduceDimensions",
            params={
                "method": method.value,
                "n_components": n_components,
                "top": top,
                "scale": scale,
            }
        )
        if n_components < 1:
            raise ValueError(f"n_components must be positive, got {n_components}")
        self.method = method
        self.n_components = n_components
        self.top = top
        self.scale = scale
        self.log_transform = log_transform
        self.abundance_column = abundance_column

    def fit(self, table: AbundanceTable) -> ReductionResult:
        """
        Compute coordinates without modifying the table.

        Raises:
            ValueError: If n_components exceeds what the data supports
        """
        self._raise_if_invalid(table)

        matrix = log_abundance(table, self.abundance_column, self.log_transform)
        selected = top_variable(matrix, self.top)
        matrix = matrix.loc[selected]
        n_genes, n_samples = matrix.shape

        limit = min(n_samples, n_genes) if self.method is ReductionMethod.PCA else n_samples - 1
        if self.n_components > limit:
            raise ValueError(
                f"{self.method.value} with {n_samples} samples and {n_genes} genes supports "
                f"at most {limit} components, got n_components={self.n_components}"
            )

        logger.info(f"{self.method.value} on {n_genes} most variable genes × {n_samples} samples")

        data = matrix.to_numpy().T
        if self.method is ReductionMethod.PCA:
            from sklearn.decomposition import PCA

            if self.scale:
                std = data.std(axis=0, ddof=1)
                keep = std > 0
                data = (data[:, keep] - data[:, keep].mean(axis=0)) / std[keep]
            pca = PCA(n_components=self.n_components, svd_solver="full")
            coordinates = pca.fit_transform(data)
            fractions = pca.explained_variance_ratio_
        else:
            coordinates, fractions = classical_mds(data, self.n_components)

        names = [f"{self.method.prefix}{k + 1}" for k in range(self.n_components)]
        result = ReductionResult(
            coordinates=pd.DataFrame(coordinates, index=matrix.columns, columns=names),
            variance_explained=pd.Series(fractions, index=names, name="variance_explained"),
            features_used=list(matrix.index),
            method=self.method.value,
        )

        logger.info("Variance explained: " + ", ".join(result.axis_labels()))
        return result

    def apply(self, table: AbundanceTable) -> AbundanceTable:
        result = self.fit(table)
        return table.join_samples(result.coordinates, overwrite=True)

    def validate(self, table: AbundanceTable) -> list[str]:
        errors = super().validate(table)
        if table.n_samples < 2:
            errors.append("Need at least 2 samples")
        return errors


class KeepVariable(Transform):
    """
    Keep the rows of the ``top`` most variable genes.

    Variance is the sample variance (ddof=1) of log2(abundance + 1) over
    genes not flagged lowly abundant. The kept genes stay in table order.
    """

    def __init__(
        self,
        top: int = 500,
        log_transform: bool = True,
        abundance_column: Optional[str] = None,
    ):
        super().__init__(name="KeepVariable", params={"top": top})
        if top < 1:
            raise ValueError(f"top must be positive, got {top}")
        self.top = top
        self.log_transform = log_transform
        self.abundance_column = abundance_column

    def apply(self, table: AbundanceTable) -> AbundanceTable:
        self._raise_if_invalid(table)
        matrix = log_abundance(table, self.abundance_column, self.log_transform)
        selected = top_variable(matrix, self.top)
        logger.info(f"Keeping {len(selected)}/{table.n_features} most variable genes")
        return table.select_features(selected)
