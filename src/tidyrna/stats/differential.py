"""
Differential abundance testing with negative-binomial GLMs.

Implements the edgeR quasi-likelihood workflow for RNA-seq counts:
- One negative-binomial GLM per gene with library-size offsets
- Contrast-based hypothesis testing by refitting a reduced model
- Quasi-likelihood dispersions moderated by empirical Bayes (QL F-test)
- Likelihood-ratio test as an alternative
- Multiple testing correction (FDR)

The statistical model:
    count[g, j] ~ NB(mu[g, j], phi)
    log(mu[g, j]) = X[j] · beta[g] + log(lib_size[j] * norm_factor[j])

where phi is a common dispersion shared by all genes and X is built from a
design formula over sample columns (e.g. ``~ 0 + dex + cell``). A contrast
c tests c · beta[g] = 0. The reported log-fold-change is c · beta / ln 2
from a second fit on counts plus a library-scaled prior count of 0.125,
which keeps it finite for genes absent from one group.

Quasi-likelihood F-test:
    s2[g]      = deviance[g] / df_residual
    s2_post[g] = empirical Bayes moderation of s2 (see empirical_bayes)
    F[g]       = (deviance_null[g] - deviance[g]) / s2_post[g]
    p[g]       = P(F(1, df_total) > F[g])

References:
    - Robinson, McCarthy & Smyth (2010) Bioinformatics 26(1):139-140 (edgeR)
    - Lund et al. (2012) Stat Appl Genet Mol Biol 11(5) (QL F-test)
    - Chen, Lun & Smyth (2016) F1000Research 5:1438
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, replace
from enum import Enum
from typing import Literal, Mapping, Optional, Sequence

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy import stats as scipy_stats

from tidyrna.core.table import AbundanceTable
from tidyrna.core.transform import Transform
from tidyrna.quality.filtering import LOWLY_ABUNDANT, IdentifyAbundant
from tidyrna.stats.design_matrix import DesignMatrix, build_design, parse_contrasts
from tidyrna.stats.empirical_bayes import squeeze_var
from tidyrna.stats.normalization import calc_norm_factors

logger = logging.getLogger(__name__)

__all__ = [
    'DifferentialMethod',
    'GeneFit',
    'DifferentialResult',
    'TestDifferentialAbundance',
    'fdr_correction',
    'estimate_common_dispersion',
    'result_column',
    'join_statistics',
]

_MIN_DISPERSION = 1e-4
_LOGFC_PRIOR_COUNT = 0.125
_STATISTICS = ("logFC", "logCPM", "F", "LR", "PValue", "FDR", "significant")


class DifferentialMethod(Enum):
    """Type of per-gene test."""

    QUASI_LIKELIHOOD = "quasi_likelihood"
    LIKELIHOOD_RATIO = "likelihood_ratio"


def result_column(statistic: str, contrast: str, n_contrasts: int) -> str:
    """Column name of a statistic; suffixed with the contrast when several are tested."""
    return statistic if n_contrasts == 1 else f"{statistic}__{contrast}"


@dataclass
class GeneFit:
    """GLM fit of a single gene.

    Attributes:
        coefficients: Full-model coefficients (n_params,)
        shrunk_coefficients: Full-model coefficients fitted to counts plus
            a small prior count; finite even when a group is all zero
        deviance: Full-model deviance
        null_deviances: Reduced-model deviance per contrast
        converged: Whether every fit converged
    """

    coefficients: NDArray[np.float64]
    shrunk_coefficients: NDArray[np.float64]
    deviance: float
    null_deviances: list[float]
    converged: bool = True


@dataclass(frozen=True)
class DifferentialResult:
    """Complete differential abundance results.

    Attributes:
        results: Per-gene statistics indexed by gene id (all genes; lowly
            abundant genes hold NaN statistics and significant=False)
        contrasts: Contrast name -> weight vector over design columns
        design: Design matrix used
        method: Test method
        common_dispersion: Negative-binomial dispersion shared by all genes
        prior_df: Empirical Bayes prior df of the QL dispersions
        prior_s2: Empirical Bayes prior QL dispersion
        fdr_method: FDR correction method used
        fdr_threshold: FDR threshold for significance
        n_not_converged: Genes whose GLM fits did not converge
    """

    results: pd.DataFrame
    contrasts: dict[str, NDArray[np.float64]]
    design: DesignMatrix
    method: str
    common_dispersion: float
    prior_df: float = np.nan
    prior_s2: float = np.nan
    fdr_method: str = "BH"
    fdr_threshold: float = 0.05
    n_not_converged: int = 0

    @property
    def contrast_names(self) -> list[str]:
        return list(self.contrasts)

    def column(self, statistic: str, contrast: Optional[str] = None) -> str:
        """Column of ``statistic`` for ``contrast`` (default: first contrast)."""
        contrast = contrast if contrast is not None else self.contrast_names[0]
        if contrast not in self.contrasts:
            raise KeyError(f"Unknown contrast '{contrast}' (tested: {self.contrast_names})")
        return result_column(statistic, contrast, len(self.contrasts))

    def contrast_frame(self, contrast: Optional[str] = None) -> pd.DataFrame:
        """Statistics of one contrast with unsuffixed column names."""
        columns = {}
        for statistic in _STATISTICS:
            name = self.column(statistic, contrast)
            if name in self.results.columns:
                columns[name] = statistic
        return self.results[list(columns)].rename(columns=columns)

    def with_threshold(self, fdr_threshold: float) -> DifferentialResult:
        """
        Recompute the significance flags at a new FDR threshold.

        Lowering the threshold can only turn flags from True to False.
        """
        if not 0 < fdr_threshold <= 1:
            raise ValueError(f"fdr_threshold must be in (0, 1], got {fdr_threshold}")
        results = self.results.copy()
        for name in self.contrast_names:
            fdr = results[self.column("FDR", name)]
            results[self.column("significant", name)] = (fdr < fdr_threshold).fillna(False).astype(bool)
        return replace(self, results=results, fdr_threshold=fdr_threshold)

    def significant_features(self, contrast: Optional[str] = None) -> list[str]:
        """Genes declared significant for a contrast."""
        flags = self.results[self.column("significant", contrast)]
        return flags.index[flags.to_numpy(dtype=bool)].tolist()

    def summary(self) -> pd.DataFrame:
        """Number of tested, up and down significant genes per contrast."""
        rows = []
        for name in self.contrast_names:
            frame = self.contrast_frame(name)
            significant = frame["significant"].to_numpy(dtype=bool)
            rows.append({
                "contrast": name,
                "tested": int(frame["PValue"].notna().sum()),
                "up": int(np.sum(significant & (frame["logFC"] > 0).to_numpy())),
                "down": int(np.sum(significant & (frame["logFC"] < 0).to_numpy())),
            })
        return pd.DataFrame(rows)


def _is_statistic_column(column: str) -> bool:
    return any(column == s or column.startswith(f"{s}__") for s in _STATISTICS)


def join_statistics(table: AbundanceTable, result: DifferentialResult) -> AbundanceTable:
    """
    Replace any earlier test statistics on ``table`` with ``result``'s.

    Gene columns from a previous test (plain or ``__<contrast>``-suffixed)
    are dropped first, so re-testing with other contrasts leaves no stale
    columns behind.
    """
    stale = [c for c in table.feature_columns if _is_statistic_column(c)]
    if stale:
        logger.debug(f"Dropping previous test statistics: {stale}")
        table = table.drop_columns(stale)
    return table.join_features(result.results)


def fdr_correction(
    pvalues: NDArray[np.float64],
    method: Literal["BH", "BY", "bonferroni"] = "BH",
    alpha: float = 0.05,
) -> NDArray[np.float64]:
    """
    Apply multiple testing correction.

    Args:
        pvalues: Array of raw p-values; NaN entries are left out of the
            correction and stay NaN.
        method: Correction method:
            - "BH": Benjamini-Hochberg (controls FDR)
            - "BY": Benjamini-Yekutieli (controls FDR under dependence)
            - "bonferroni": Bonferroni (controls FWER)
        alpha: Significance threshold passed to statsmodels.

    Returns:
        Array of adjusted p-values.
    """
    from statsmodels.stats.multitest import multipletests

    pvalues = np.asarray(pvalues, dtype=np.float64)
    valid_mask = ~np.isnan(pvalues)
    adj_pvals = np.full_like(pvalues, np.nan)

    if not np.any(valid_mask):
        return adj_pvals

    method_map = {"BH": "fdr_bh", "BY": "fdr_by", "bonferroni": "bonferroni"}
    _, adj_pvals[valid_mask], _, _ = multipletests(
        pvalues[valid_mask],
        alpha=alpha,
        method=method_map.get(method, method),
    )

    return adj_pvals


def _poisson_moment_dispersion(
    y: NDArray[np.float64],
    X: NDArray[np.float64],
    offset: NDArray[np.float64],
) -> float:
    """Moment estimate of NB dispersion for one gene from a Poisson fit."""
    import statsmodels.api as sm

    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        mu = sm.GLM(y, X, family=sm.families.Poisson(), offset=offset).fit(maxiter=100).mu

    df_residual = X.shape[0] - X.shape[1]
    with np.errstate(divide="ignore", invalid="ignore"):
        terms = ((y - mu) ** 2 - mu) / mu ** 2
    terms = terms[np.isfinite(terms)]
    if terms.size == 0 or df_residual <= 0:
        return np.nan
    return float(np.sum(terms) / df_residual)


def estimate_common_dispersion(
    counts: NDArray[np.float64],
    X: NDArray[np.float64],
    offset: NDArray[np.float64],
    n_jobs: int = 1,
) -> float:
    """
    Common negative-binomial dispersion across genes.

    Each gene gets a moment estimate sum(((y - mu)^2 - mu) / mu^2) / df
    from a Poisson GLM fit; the common dispersion is the median over genes,
    floored at 1e-4.

    Args:
        counts: 2D array (n_genes, n_samples)
        X: Design matrix (n_samples, n_params)
        offset: Log effective library sizes (n_samples,)
        n_jobs: Parallel jobs (joblib)
    """
    from joblib import Parallel, delayed

    if n_jobs == 1:
        estimates = [_poisson_moment_dispersion(y, X, offset) for y in counts]
    else:
        estimates = Parallel(n_jobs=n_jobs)(
            delayed(_poisson_moment_dispersion)(y, X, offset) for y in counts
        )

    estimates = np.asarray(estimates, dtype=np.float64)
    estimates = estimates[np.isfinite(estimates)]
    if estimates.size == 0:
        return _MIN_DISPERSION
    return float(max(np.median(estimates), _MIN_DISPERSION))


def _fit_gene(
    y: NDArray[np.float64],
    X: NDArray[np.float64],
    null_designs: Sequence[NDArray[np.float64]],
    offset: NDArray[np.float64],
    dispersion: float,
    prior: NDArray[np.float64],
    prior_offset: NDArray[np.float64],
) -> GeneFit:
    """Fit the full model, one reduced model per contrast and the prior-count model."""
    import statsmodels.api as sm
    from statsmodels.tools.sm_exceptions import ConvergenceWarning

    family = sm.families.NegativeBinomial(alpha=dispersion)

    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        full = sm.GLM(y, X, family=family, offset=offset).fit(maxiter=100)

        null_deviances = []
        for X0 in null_designs:
            if X0.shape[1] == 0:
                null_deviances.append(float(family.deviance(y, np.exp(offset))))
            else:
                null = sm.GLM(y, X0, family=family, offset=offset).fit(maxiter=100)
                null_deviances.append(float(null.deviance))

        shrunk = sm.GLM(y + prior, X, family=family, offset=prior_offset).fit(maxiter=100)

    converged = bool(getattr(full, "converged", True)) and not any(
        issubclass(w.category, ConvergenceWarning) for w in caught
    )

    return GeneFit(
        coefficients=np.asarray(full.params, dtype=np.float64),
        shrunk_coefficients=np.asarray(shrunk.params, dtype=np.float64),
        deviance=float(full.deviance),
        null_deviances=null_deviances,
        converged=converged,
    )


def _null_design(X: NDArray[np.float64], contrast: NDArray[np.float64]) -> NDArray[np.float64]:
    """Reduced design under c · beta = 0, by rotating X onto the contrast."""
    Q, _ = np.linalg.qr(contrast.reshape(-1, 1), mode="complete")
    return (X @ Q)[:, 1:]


def _ave_log_cpm(
    counts: NDArray[np.float64],
    effective_lib_sizes: NDArray[np.float64],
    prior_count: float = 2.0,
) -> NDArray[np.float64]:
    """Average log2 CPM per gene with a library-scaled prior count."""
    prior = prior_count * effective_lib_sizes / np.mean(effective_lib_sizes)
    cpm = (counts + prior[None, :]) / (effective_lib_sizes + 2 * prior)[None, :] * 1e6
    return np.log2(np.mean(cpm, axis=1))


class TestDifferentialAbundance(Transform):
    """
    Per-gene negative-binomial GLM test of one or more contrasts.

    Adds gene columns ``logFC``, ``logCPM``, ``F`` (or ``LR``), ``PValue``,
    ``FDR`` and ``significant``; suffixed ``__<contrast>`` when several
    contrasts are tested. Genes flagged lowly abundant are not tested.

    Params:
        formula: Design formula over sample columns, e.g. ``"~ 0 + dex"``
        contrasts: Mapping name -> expression over design columns, a list
            of expressions, or None to test the last design coefficient
        method: "quasi_likelihood" (QL F-test) or "likelihood_ratio"
        fdr_threshold: FDR below which a gene is significant
        fdr_method: "BH", "BY" or "bonferroni"
        factor_of_interest: Grouping column for the internal low-abundance
            filter; defaults to the first variable of the formula
        dispersion: Fixed NB dispersion; estimated when None
        prior_count: Prior count for logCPM
        logfc_prior_count: Prior count added (scaled by library size) to the
            fit that reports logFC, so genes absent from one group get a
            finite fold change. Test statistics use the unmodified fit.
        n_jobs: Parallel jobs for the per-gene fits (joblib)

    Examples:
        >>> tester = TestDifferentialAbundance(
        ...     formula="~ 0 + dex + cell",
        ...     contrasts={"trt_vs_untrt": "dextrt - dexuntrt"},
        ... )
        >>> result = tester.test(scaled_table)
        >>> result.summary()
    """
    __test__ = False

    def __init__(
        self,
        formula: str,
        contrasts: Mapping[str, str] | Sequence[str] | str | None = None,
        method: DifferentialMethod | str = DifferentialMethod.QUASI_LIKELIHOOD,
        fdr_threshold: float = 0.05,
        fdr_method: Literal["BH", "BY", "bonferroni"] = "BH",
        factor_of_interest: Optional[str] = None,
        dispersion: Optional[float] = None,
        prior_count: float = 2.0,
        logfc_prior_count: float = _LOGFC_PRIOR_COUNT,
        n_jobs: int = 1,
    ):
        method = DifferentialMethod(method) if isinstance(method, str) else method
        super().__init__(
            name="TestDifferentialAbundance",
            params={
                "formula": formula,
                "contrasts": contrasts,
                "method": method.value,
                "fdr_threshold": fdr_threshold,
                "fdr_method": fdr_method,
            }
        )
        if not 0 < fdr_threshold <= 1:
            raise ValueError(f"fdr_threshold must be in (0, 1], got {fdr_threshold}")
        if fdr_method not in ("BH", "BY", "bonferroni"):
            raise ValueError(f"Unknown fdr_method: {fdr_method}")
        if dispersion is not None and dispersion <= 0:
            raise ValueError(f"dispersion must be positive, got {dispersion}")
        if logfc_prior_count < 0:
            raise ValueError(f"logfc_prior_count must be non-negative, got {logfc_prior_count}")
        self.formula = formula
        self.contrasts = contrasts
        self.method = method
        self.fdr_threshold = fdr_threshold
        self.fdr_method = fdr_method
        self.factor_of_interest = factor_of_interest
        self.dispersion = dispersion
        self.prior_count = prior_count
        self.logfc_prior_count = logfc_prior_count
        self.n_jobs = n_jobs

    def abundance_filter(self, table: AbundanceTable, **thresholds) -> IdentifyAbundant:
        """
        Low-abundance rule matched to this test's design.

        Groups by ``factor_of_interest``, else by the first formula variable
        that is a sample column, else by the leverage of the whole design.

        Args:
            table: Table holding the formula's sample columns
            **thresholds: Passed to IdentifyAbundant (minimum_counts, ...)
        """
        factor = self.factor_of_interest
        if factor is None:
            design = build_design(self.formula, table.sample_metadata)
            candidates = [f for f in design.factor_names if f in table.sample_columns]
            if candidates:
                factor = candidates[0]
            else:
                return IdentifyAbundant(formula=design.formula, **thresholds)
        return IdentifyAbundant(factor_of_interest=factor, **thresholds)

    def _ensure_flags(self, table: AbundanceTable) -> AbundanceTable:
        if LOWLY_ABUNDANT in table.feature_columns:
            return table
        return self.abundance_filter(table).apply(table)

    def _effective_lib_sizes(self, table: AbundanceTable, counts: NDArray, abundant: NDArray) -> NDArray:
        lib_sizes = counts.sum(axis=0)
        if np.any(lib_sizes <= 0):
            empty = list(table.sample_ids[lib_sizes <= 0])
            raise ValueError(f"Samples with zero library size cannot be modelled: {empty}")

        if "norm_factor" in table.sample_columns:
            norm_factors = table.sample_metadata["norm_factor"].to_numpy(dtype=np.float64)
            logger.info("Using normalization factors already on the table")
        else:
            norm_factors = calc_norm_factors(counts[abundant], lib_sizes=lib_sizes).norm_factors
        return lib_sizes * norm_factors

    def test(self, table: AbundanceTable) -> DifferentialResult:
        """
        Fit and test every abundant gene.

        Args:
            table: AbundanceTable with counts and the formula's sample columns

        Returns:
            DifferentialResult with per-gene statistics for all genes

        Raises:
            DesignRankError: If the design is not of full rank
            ValueError: If the design leaves no residual degrees of freedom
                or a contrast cannot be parsed
        """
        table, design, contrasts = self._prepare(table)
        return self._test(table, design, contrasts)

    def _prepare(
        self,
        table: AbundanceTable,
    ) -> tuple[AbundanceTable, DesignMatrix, dict[str, NDArray[np.float64]]]:
        self._raise_if_invalid(table)
        design = build_design(self.formula, table.sample_metadata)
        if design.df_residual < 1:
            raise ValueError(
                f"Design '~ {design.formula}' has {design.n_params} coefficients for "
                f"{design.n_samples} samples; no residual degrees of freedom"
            )
        contrasts = parse_contrasts(self.contrasts, design.column_names)
        return self._ensure_flags(table), design, contrasts

    def _test(
        self,
        table: AbundanceTable,
        design: DesignMatrix,
        contrasts: dict[str, NDArray[np.float64]],
    ) -> DifferentialResult:
        from joblib import Parallel, delayed

        counts = table.to_matrix().to_numpy(dtype=np.float64)
        abundant = ~table.feature_metadata[LOWLY_ABUNDANT].to_numpy(dtype=bool)
        effective_lib = self._effective_lib_sizes(table, counts, abundant)
        offset = np.log(effective_lib)

        X = design.X
        tested = counts[abundant]
        n_tested = tested.shape[0]

        logger.info(f"Differential testing: {n_tested}/{table.n_features} abundant genes, "
                    f"{design.n_samples} samples, design columns {design.column_names}")
        logger.info(f"Contrasts: {list(contrasts)}")

        if n_tested == 0:
            warnings.warn("No abundant genes to test; all statistics will be missing")

        dispersion = self.dispersion
        if dispersion is None:
            dispersion = estimate_common_dispersion(tested, X, offset, n_jobs=self.n_jobs)
        logger.info(f"Common NB dispersion: {dispersion:.4g} (BCV {np.sqrt(dispersion):.3f})")

        null_designs = [_null_design(X, c) for c in contrasts.values()]
        prior = self.logfc_prior_count * effective_lib / np.mean(effective_lib)
        prior_offset = np.log(effective_lib + 2 * prior)

        if self.n_jobs == 1:
            fits = [_fit_gene(y, X, null_designs, offset, dispersion, prior, prior_offset)
                    for y in tested]
        else:
            fits = Parallel(n_jobs=self.n_jobs)(
                delayed(_fit_gene)(y, X, null_designs, offset, dispersion, prior, prior_offset)
                for y in tested
            )

        n_not_converged = sum(not fit.converged for fit in fits)
        if n_not_converged:
            warnings.warn(
                f"GLM fit did not converge for {n_not_converged}/{n_tested} genes; "
                "their statistics may be unreliable"
            )

        df_residual = design.df_residual
        deviance = np.array([fit.deviance for fit in fits], dtype=np.float64)
        logfc_coefficients = (
            np.vstack([fit.shrunk_coefficients for fit in fits]) if fits
            else np.empty((0, design.n_params))
        )

        prior_df, prior_s2 = np.nan, np.nan
        s2_post = np.full(n_tested, np.nan)
        df_total = np.full(n_tested, np.nan)
        if self.method == DifferentialMethod.QUASI_LIKELIHOOD and n_tested:
            s2 = deviance / df_residual
            s2_post, df_total, prior_df, prior_s2 = squeeze_var(s2, df_residual)
            logger.info(f"QL dispersion prior: df={prior_df:.3g}, s2={prior_s2:.4g}")

        results = pd.DataFrame(index=table.feature_ids)
        log_cpm = _ave_log_cpm(tested, effective_lib, prior_count=self.prior_count)

        n_contrasts = len(contrasts)
        for k, (name, contrast) in enumerate(contrasts.items()):
            delta = np.array([fit.null_deviances[k] for fit in fits], dtype=np.float64) - deviance
            delta = np.maximum(delta, 0.0)

            if self.method == DifferentialMethod.QUASI_LIKELIHOOD:
                with np.errstate(divide="ignore", invalid="ignore"):
                    statistic = delta / s2_post
                pvalues = scipy_stats.f.sf(statistic, 1, df_total)
                statistic_name = "F"
            else:
                statistic = delta
                pvalues = scipy_stats.chi2.sf(statistic, 1)
                statistic_name = "LR"

            columns = {
                "logFC": logfc_coefficients @ contrast / np.log(2),
                "logCPM": log_cpm,
                statistic_name: statistic,
                "PValue": pvalues,
            }
            for statistic_key, values in columns.items():
                full = np.full(table.n_features, np.nan)
                full[abundant] = values
                results[result_column(statistic_key, name, n_contrasts)] = full

            fdr = fdr_correction(
                results[result_column("PValue", name, n_contrasts)].to_numpy(),
                method=self.fdr_method,
                alpha=self.fdr_threshold,
            )
            significant = np.nan_to_num(fdr, nan=1.0) < self.fdr_threshold
            results[result_column("FDR", name, n_contrasts)] = fdr
            results[result_column("significant", name, n_contrasts)] = significant

            logger.info(f"  {name}: {int(significant.sum())} genes with FDR < {self.fdr_threshold}")

        return DifferentialResult(
            results=results,
            contrasts=contrasts,
            design=design,
            method=self.method.value,
            common_dispersion=float(dispersion),
            prior_df=float(prior_df),
            prior_s2=float(prior_s2),
            fdr_method=self.fdr_method,
            fdr_threshold=self.fdr_threshold,
            n_not_converged=n_not_converged,
        )

    def apply(self, table: AbundanceTable) -> AbundanceTable:
        """Join the per-gene statistics onto the table as gene columns."""
        logger.info(f"Applying {self!r}")
        table, design, contrasts = self._prepare(table)
        result = self._test(table, design, contrasts)
        return join_statistics(table, result)

    def validate(self, table: AbundanceTable) -> list[str]:
        errors = super().validate(table)
        if table.n_samples < 2:
            errors.append("Need at least 2 samples")
        return errors
