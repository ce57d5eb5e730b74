"""
Library-size normalization for RNA-seq counts.

Implements the edgeR ``calcNormFactors`` family of scaling factors:
- TMM (trimmed mean of M-values): robust log-ratio against a reference sample
- Upper quartile: 75th percentile of count/library size
- RLE (relative log expression): median ratio to the per-gene geometric mean
- None: all factors equal to one

The fundamental assumption underlying TMM is that most genes are not
differentially expressed, so a trimmed, precision-weighted average of the
log-ratios between a sample and the reference estimates the composition
bias between them.

Factors are computed on abundant genes only and applied to every gene.
The effective library size of a sample is lib_size × norm_factor, and the
scaled abundance puts every sample on the scale of the median library::

    multiplier[j]        = median(lib_size) / (lib_size[j] * norm_factor[j])
    count_scaled[i, j]   = count[i, j] * multiplier[j]

References:
    - Robinson & Oshlack (2010) Genome Biology 11:R25 (TMM)
    - Bullard et al. (2010) BMC Bioinformatics 11:94 (upper quartile)
    - Anders & Huber (2010) Genome Biology 11:R106 (RLE)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy.stats import rankdata

from tidyrna.core.table import AbundanceTable
from tidyrna.core.transform import Transform
from tidyrna.quality.filtering import LOWLY_ABUNDANT, IdentifyAbundant, abundant_mask

logger = logging.getLogger(__name__)

__all__ = [
    'NormalizationMethod',
    'NormalizationResult',
    'calc_norm_factors',
    'tmm_factor',
    'ScaleAbundance',
]


class NormalizationMethod(Enum):
    """Available scaling-factor methods."""

    TMM = "TMM"
    UPPER_QUARTILE = "upperquartile"
    RLE = "RLE"
    NONE = "none"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            for member in cls:
                if member.value.lower() == value.lower():
                    return member
        return None


@dataclass(frozen=True)
class NormalizationResult:
    """Result of scaling-factor estimation.

    Attributes:
        norm_factors: Per-sample factors, geometric mean 1
        lib_sizes: Per-sample library sizes used
        method: Method used
        reference_column: Index of the TMM reference sample (None otherwise)
        n_features_used: Genes entering the estimate (after removing
            all-zero genes)
    """

    norm_factors: NDArray[np.float64]
    lib_sizes: NDArray[np.float64]
    method: str
    reference_column: int | None = None
    n_features_used: int = 0

    @property
    def effective_lib_sizes(self) -> NDArray[np.float64]:
        return self.lib_sizes * self.norm_factors


def _quantile_factors(
    data: NDArray[np.float64],
    lib_sizes: NDArray[np.float64],
    p: float = 0.75,
) -> NDArray[np.float64]:
    return np.quantile(data / lib_sizes[None, :], p, axis=0)


def _rle_factors(data: NDArray[np.float64]) -> NDArray[np.float64]:
    with np.errstate(divide="ignore"):
        geo_means = np.exp(np.mean(np.log(data), axis=1))
    expressed = geo_means > 0
    ratios = data[expressed] / geo_means[expressed, None]
    return np.median(ratios, axis=0)


def tmm_factor(
    obs: NDArray[np.float64],
    ref: NDArray[np.float64],
    lib_obs: float,
    lib_ref: float,
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
    do_weighting: bool = True,
    a_cutoff: float = -1e10,
) -> float:
    """
    TMM factor of one sample against the reference sample.

    Args:
        obs: Counts of the sample
        ref: Counts of the reference sample
        lib_obs: Library size of the sample
        lib_ref: Library size of the reference
        logratio_trim: Fraction trimmed from each end of the M-values
        sum_trim: Fraction trimmed from each end of the A-values
        do_weighting: Use inverse asymptotic variance weights
        a_cutoff: Genes with A-value at or below this are ignored

    Returns:
        Scaling factor (2 ** trimmed weighted mean of M-values)
    """
    obs = np.asarray(obs, dtype=np.float64)
    ref = np.asarray(ref, dtype=np.float64)

    with np.errstate(divide="ignore", invalid="ignore"):
        log_r = np.log2((obs / lib_obs) / (ref / lib_ref))
        abs_e = (np.log2(obs / lib_obs) + np.log2(ref / lib_ref)) / 2
        v = (lib_obs - obs) / lib_obs / obs + (lib_ref - ref) / lib_ref / ref

    fin = np.isfinite(log_r) & np.isfinite(abs_e) & (abs_e > a_cutoff)
    log_r, abs_e, v = log_r[fin], abs_e[fin], v[fin]

    if log_r.size == 0 or np.max(np.abs(log_r)) < 1e-6:
        return 1.0

    n = log_r.size
    lo_l = np.floor(n * logratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = np.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s

    rank_r = rankdata(log_r)
    rank_e = rankdata(abs_e)
    keep = (rank_r >= lo_l) & (rank_r <= hi_l) & (rank_e >= lo_s) & (rank_e <= hi_s)
    if not keep.any():
        return 1.0

    if do_weighting:
        f = np.sum(log_r[keep] / v[keep]) / np.sum(1.0 / v[keep])
    else:
        f = np.mean(log_r[keep])
    if not np.isfinite(f):
        f = 0.0
    return float(2.0 ** f)


def calc_norm_factors(
    counts: NDArray[np.float64],
    lib_sizes: NDArray[np.float64] | None = None,
    method: NormalizationMethod | str = NormalizationMethod.TMM,
    reference_column: int | None = None,
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
    do_weighting: bool = True,
    a_cutoff: float = -1e10,
    p: float = 0.75,
) -> NormalizationResult:
    """
    Compute per-sample scaling factors from a count matrix.

    Args:
        counts: 2D array (n_genes, n_samples) of counts
        lib_sizes: Library sizes; defaults to column sums of counts
        method: Scaling method (TMM, upperquartile, RLE, none)
        reference_column: TMM reference sample index. By default the sample
            whose upper quartile is closest to the mean upper quartile.
        logratio_trim: TMM M-value trim
        sum_trim: TMM A-value trim
        do_weighting: TMM precision weighting
        a_cutoff: TMM A-value cutoff
        p: Quantile for the upper-quartile method

    Returns:
        NormalizationResult with factors rescaled to geometric mean 1.

    Raises:
        ValueError: If counts is not 2D or contains negative/missing values
    """
    if isinstance(method, str):
        method = NormalizationMethod(method)

    counts = np.asarray(counts, dtype=np.float64)
    if counts.ndim != 2:
        raise ValueError(f"Expected 2D array, got {counts.ndim}D")
    if np.isnan(counts).any() or (counts < 0).any():
        raise ValueError("Counts must be non-negative and non-missing")

    n_samples = counts.shape[1]
    if lib_sizes is None:
        lib_sizes = counts.sum(axis=0)
    lib_sizes = np.asarray(lib_sizes, dtype=np.float64)
    if lib_sizes.shape != (n_samples,):
        raise ValueError(f"lib_sizes must have length {n_samples}, got {lib_sizes.shape}")

    data = counts[np.any(counts > 0, axis=1)]
    if data.shape[0] == 0 or n_samples == 1:
        method = NormalizationMethod.NONE

    if method == NormalizationMethod.TMM:
        if reference_column is None:
            f75 = _quantile_factors(data, lib_sizes, p=0.75)
            if np.median(f75) < 1e-20:
                reference_column = int(np.argmax(np.sum(np.sqrt(data), axis=0)))
            else:
                reference_column = int(np.argmin(np.abs(f75 - np.mean(f75))))
        ref = data[:, reference_column]
        factors = np.array([
            tmm_factor(
                data[:, j], ref, lib_sizes[j], lib_sizes[reference_column],
                logratio_trim=logratio_trim, sum_trim=sum_trim,
                do_weighting=do_weighting, a_cutoff=a_cutoff,
            )
            for j in range(n_samples)
        ])

    elif method == NormalizationMethod.UPPER_QUARTILE:
        factors = _quantile_factors(data, lib_sizes, p=p)

    elif method == NormalizationMethod.RLE:
        factors = _rle_factors(data) / lib_sizes

    elif method == NormalizationMethod.NONE:
        factors = np.ones(n_samples)

    else:
        raise ValueError(f"Unknown normalization method: {method}")

    if np.any(~np.isfinite(factors)) or np.any(factors <= 0):
        raise ValueError(
            f"{method.value} produced non-positive or non-finite factors: {factors}. "
            "Check for samples without counts."
        )

    factors = factors / np.exp(np.mean(np.log(factors)))

    return NormalizationResult(
        norm_factors=factors,
        lib_sizes=lib_sizes,
        method=method.value,
        reference_column=reference_column if method == NormalizationMethod.TMM else None,
        n_features_used=int(data.shape[0]),
    )


class ScaleAbundance(Transform):
    """
    Compute scaling factors on abundant genes and scale every gene.

    Adds sample columns ``norm_factor``, ``lib_size`` and ``multiplier``
    and the observation column ``count_scaled``. Genes flagged lowly
    abundant are excluded from the factor estimate but still scaled. If
    the table has no low-abundance flags, they are computed first with
    default settings and kept on the table.

    Params:
        method: Scaling method (TMM, upperquartile, RLE, none)
        reference_sample: Sample id to use as the TMM reference
        logratio_trim, sum_trim, do_weighting, a_cutoff: TMM tuning

    Examples:
        >>> scaled = ScaleAbundance(method="TMM").apply(table)
        >>> scaled.pivot_sample()[["sample", "norm_factor", "multiplier"]]
    """

    def __init__(
        self,
        method: NormalizationMethod | str = NormalizationMethod.TMM,
        reference_sample: Optional[str] = None,
        logratio_trim: float = 0.3,
        sum_trim: float = 0.05,
        do_weighting: bool = True,
        a_cutoff: float = -1e10,
    ):
        method = NormalizationMethod(method) if isinstance(method, str) else method
        super().__init__(
            name="ScaleAbundance",
            params={
                "method": method.value,
                "reference_sample": reference_sample,
                "logratio_trim": logratio_trim,
                "sum_trim": sum_trim,
            }
        )
        self.method = method
        self.reference_sample = reference_sample
        self.logratio_trim = logratio_trim
        self.sum_trim = sum_trim
        self.do_weighting = do_weighting
        self.a_cutoff = a_cutoff

    def compute_factors(self, table: AbundanceTable) -> pd.DataFrame:
        """
        Per-sample scaling factors without modifying the table.

        Returns:
            DataFrame indexed by sample id with columns norm_factor,
            lib_size and multiplier

        Raises:
            ValueError: If a sample has no counts over the abundant genes,
                or reference_sample is not in the table
        """
        counts = table.to_matrix().to_numpy(dtype=np.float64)
        lib_sizes = counts.sum(axis=0)
        abundant = abundant_mask(table)

        abundant_counts = counts[abundant]
        empty = table.sample_ids[abundant_counts.sum(axis=0) == 0]
        if len(empty):
            raise ValueError(
                f"Samples with zero library size over abundant genes cannot be scaled: "
                f"{list(empty)}"
            )

        reference_column = None
        if self.reference_sample is not None:
            if self.reference_sample not in table.sample_ids:
                raise ValueError(f"reference_sample '{self.reference_sample}' not in table")
            reference_column = int(table.sample_ids.get_loc(self.reference_sample))

        result = calc_norm_factors(
            abundant_counts,
            lib_sizes=lib_sizes,
            method=self.method,
            reference_column=reference_column,
            logratio_trim=self.logratio_trim,
            sum_trim=self.sum_trim,
            do_weighting=self.do_weighting,
            a_cutoff=self.a_cutoff,
        )

        if result.reference_column is not None:
            logger.info(f"TMM reference sample: {table.sample_ids[result.reference_column]}")
        logger.info(f"Scaling factors from {result.n_features_used} abundant genes: "
                    f"range {result.norm_factors.min():.3f}-{result.norm_factors.max():.3f}")

        multiplier = np.median(lib_sizes) / (lib_sizes * result.norm_factors)
        return pd.DataFrame(
            {
                "norm_factor": result.norm_factors,
                "lib_size": lib_sizes,
                "multiplier": multiplier,
            },
            index=table.sample_ids,
        )

    def apply(self, table: AbundanceTable) -> AbundanceTable:
        self._raise_if_invalid(table)
        logger.info(f"Applying {self!r}")

        if LOWLY_ABUNDANT not in table.feature_columns:
            table = IdentifyAbundant().apply(table)

        factors = self.compute_factors(table)
        table = table.join_samples(factors, overwrite=True)

        scaled = table.to_matrix().astype(np.float64) * factors["multiplier"].to_numpy()[None, :]
        return table.with_observation("count_scaled", scaled, overwrite=True)
