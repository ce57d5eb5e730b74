"""
Empirical Bayes moderation of per-gene dispersions (limma fitFDist/squeezeVar).

Per-gene quasi-likelihood dispersions estimated from a handful of samples
are noisy. Treating them as draws from a scaled inverse chi-square prior
and shrinking each towards the prior borrows strength across genes::

    s2_i | sigma2_i  ~  sigma2_i * chi2(d_i) / d_i
    1 / sigma2_i     ~  chi2(d0) / (d0 * s0^2)

    s2_post_i = (d0 * s0^2 + d_i * s2_i) / (d0 + d_i)
    df_total_i = d0 + d_i

Hyperparameters (d0, s0^2) are estimated by the method of moments on
log(s2), using digamma/trigamma identities.

References:
    Smyth (2004) Statistical Applications in Genetics and Molecular Biology 3:3
    Lund et al. (2012) Statistical Applications in Genetics and Molecular Biology 11:5
"""

from __future__ import annotations

import numpy as np
from numpy.typing import NDArray
from scipy.special import digamma, polygamma

__all__ = ['trigamma_inverse', 'fit_f_dist', 'squeeze_var']


def trigamma_inverse(x: float, tol: float = 1e-8, max_iter: int = 50) -> float:
    """
    Solve trigamma(y) = x for y by Newton's method.

    Iterates on 1/trigamma(y), which is convex and nearly linear, starting
    from y = 0.5 + 1/x.

    Args:
        x: Target trigamma value (must be positive)
        tol: Relative convergence tolerance
        max_iter: Maximum Newton iterations

    Returns:
        y such that trigamma(y) ≈ x (inf for x <= 0)
    """
    if x <= 0:
        return np.inf
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x

    y = 0.5 + 1.0 / x
    for _ in range(max_iter):
        tri = polygamma(1, y)
        dif = tri * (1.0 - tri / x) / polygamma(2, y)
        y = y + dif
        if -dif / y < tol:
            break
    return float(y)


def fit_f_dist(
    s2: NDArray[np.float64],
    df: float | NDArray[np.float64],
) -> tuple[float, float]:
    """
    Estimate prior d0 and s0² by the method of moments.

    Algorithm:
        1. z = log(s2) - digamma(df/2) + log(df/2)
        2. evar = var(z) - mean(trigamma(df/2))
        3. d0 = 2 × trigamma⁻¹(evar)
        4. s0² = exp(mean(z) + digamma(d0/2) - log(d0/2))

    Args:
        s2: Per-gene variances (n_genes,)
        df: Residual degrees of freedom (scalar or per gene)

    Returns:
        Tuple (d0, s0_sq). d0 is 0 when fewer than three usable variances
        are available (no moderation) and inf when the variances are less
        dispersed than expected under a common variance (full shrinkage).
    """
    s2 = np.asarray(s2, dtype=np.float64)
    df = np.broadcast_to(np.asarray(df, dtype=np.float64), s2.shape)

    usable = np.isfinite(s2) & (s2 > 0) & np.isfinite(df) & (df > 0)
    if usable.sum() < 3:
        positive = s2[usable]
        return 0.0, float(np.median(positive)) if positive.size else 1.0

    s2 = s2[usable]
    df_half = df[usable] / 2.0

    z = np.log(s2)
    e = z - digamma(df_half) + np.log(df_half)
    emean = float(np.mean(e))
    evar = float(np.var(e, ddof=1) - np.mean(polygamma(1, df_half)))

    if evar <= 0:
        return np.inf, float(np.exp(emean))

    d0 = 2.0 * trigamma_inverse(evar)
    if not np.isfinite(d0) or d0 > 1e10:
        return np.inf, float(np.exp(emean))

    s0_sq = float(np.exp(emean + digamma(d0 / 2.0) - np.log(d0 / 2.0)))
    return float(d0), s0_sq


def squeeze_var(
    s2: NDArray[np.float64],
    df: float | NDArray[np.float64],
    d0: float | None = None,
    s0_sq: float | None = None,
) -> tuple[NDArray[np.float64], NDArray[np.float64], float, float]:
    """
    Shrink per-gene variances towards the prior.

    Args:
        s2: Per-gene variances (n_genes,); NaN entries stay NaN
        df: Residual degrees of freedom (scalar or per gene)
        d0: Prior degrees of freedom; estimated with fit_f_dist if None
        s0_sq: Prior scale; estimated with fit_f_dist if None

    Returns:
        Tuple (s2_post, df_total, d0, s0_sq). df_total is capped at the
        pooled residual df across genes.
    """
    s2 = np.asarray(s2, dtype=np.float64)
    df = np.broadcast_to(np.asarray(df, dtype=np.float64), s2.shape).astype(np.float64)

    if d0 is None or s0_sq is None:
        d0, s0_sq = fit_f_dist(s2, df)

    if d0 == 0:
        s2_post = s2.copy()
    elif np.isinf(d0):
        s2_post = np.where(np.isnan(s2), np.nan, s0_sq)
    else:
        s2_post = (d0 * s0_sq + df * s2) / (d0 + df)

    df_pooled = float(np.nansum(df[np.isfinite(s2)]))
    df_total = np.minimum(d0 + df, df_pooled)

    return s2_post, df_total, float(d0), float(s0_sq)
