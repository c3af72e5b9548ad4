"""Prior estimation for empirical-Bayes variance moderation.

Residual variances s2_g with df_g degrees of freedom are modelled as scaled
F-distributed around a prior variance s0^2 with d0 prior degrees of freedom:

    s2_g | sigma2_g ~ sigma2_g * chi2(df_g) / df_g
    1 / sigma2_g    ~ chi2(d0) / (d0 * s0^2)

`fit_fdist` estimates (s0^2, d0) by matching moments of log(s2_g);
`fit_fdist_robust` additionally protects the estimate against outlying
variances; `squeeze_var` returns posterior variances.
"""

from typing import Optional, Tuple

import numpy as np
from scipy.special import digamma, polygamma
from scipy.stats import chi2
from scipy.stats import f as f_dist

from proteodiff.utils.utils import log_info, log_warning


def trigamma_inverse(y, tol: float = 1e-8, max_iter: int = 50):
    """Solve trigamma(x) = y for x > 0 (elementwise Newton iteration)."""
    y = np.asarray(y, dtype=float)
    scalar = y.ndim == 0
    y = np.atleast_1d(y)
    x = np.full_like(y, np.nan)

    big = y > 1e7
    small = y < 1e-6
    mid = np.isfinite(y) & (y > 0) & ~big & ~small
    x[big] = 1.0 / np.sqrt(y[big])
    x[small] = 1.0 / y[small]

    if mid.any():
        ym = y[mid]
        xm = 0.5 + 1.0 / ym
        for _ in range(max_iter):
            tri = polygamma(1, xm)
            dif = tri * (1.0 - tri / ym) / polygamma(2, xm)
            xm = xm + dif
            if np.max(-dif / xm) < tol:
                break
        else:
            log_warning("trigamma_inverse: iteration limit exceeded.")
        x[mid] = xm

    return x[0] if scalar else x


def squeeze_var_input_filter(s2: np.ndarray, df) -> np.ndarray:
    """Mask of variances usable for prior estimation (finite, df > 0)."""
    s2 = np.asarray(s2, dtype=float)
    df = np.broadcast_to(np.asarray(df, dtype=float), s2.shape)
    return np.isfinite(s2) & (s2 >= 0) & np.isfinite(df) & (df > 1e-15)


def _spline_degree(n: int, n_unique: int) -> int:
    """Polynomial degree of the variance trend, growing with the number of features."""
    splinedf = 1 + int(n >= 3) + int(n >= 6) + int(n >= 30)
    return min(splinedf, n_unique) - 1


def _poly_basis(covariate: np.ndarray, center: float, scale: float, degree: int) -> np.ndarray:
    u = (covariate - center) / scale
    return np.vander(u, degree + 1, increasing=True)


def fit_fdist(
    s2: np.ndarray,
    df1,
    covariate: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, float]:
    """
    Moment estimation of the scaled F-distribution of residual variances.

    Parameters:
    - s2: (n,) residual variances (NaN entries or df <= 0 are ignored for fitting)
    - df1: scalar or (n,) residual degrees of freedom
    - covariate: optional (n,) covariate (average log abundance) for a
      variance trend; the log-variance location is a polynomial in it

    Returns:
    - s20: prior variance, a float, or (n,) when `covariate` is given
      (evaluated for every entry, fitted or not)
    - d0: prior degrees of freedom (np.inf when variances are no more
      dispersed than sampling noise alone explains)
    """
    x = np.asarray(s2, dtype=float)
    df1 = np.broadcast_to(np.asarray(df1, dtype=float), x.shape).astype(float)
    ok = squeeze_var_input_filter(x, df1)
    if covariate is not None:
        covariate = np.asarray(covariate, dtype=float)
        ok &= np.isfinite(covariate)

    n = int(ok.sum())
    if n == 0:
        log_warning("fit_fdist: no usable residual variances; prior left undefined.")
        return (np.full(x.shape, np.nan) if covariate is not None else np.nan), np.nan
    if n == 1:
        s20 = float(x[ok][0])
        return (np.full(x.shape, s20) if covariate is not None else s20), 0.0

    xo = np.maximum(x[ok], 0)
    d = df1[ok]
    m = np.median(xo)
    if m == 0:
        log_warning("fit_fdist: more than half of residual variances are exactly zero; median set to 1.")
        m = 1.0
    xo = np.maximum(xo, 1e-5 * m)

    z = np.log(xo)
    e = z - digamma(d / 2.0) + np.log(d / 2.0)

    degree = 0
    if covariate is not None:
        degree = _spline_degree(n, len(np.unique(covariate[ok])))

    if degree < 1:
        emean = np.mean(e)
        evar = np.sum((e - emean) ** 2) / (n - 1)
        predictor = None
    else:
        cov_ok = covariate[ok]
        center = float(np.mean(cov_ok))
        scale = float(np.std(cov_ok)) or 1.0
        basis = _poly_basis(cov_ok, center, scale, degree)
        coef, _, rank, _ = np.linalg.lstsq(basis, e, rcond=None)
        emean = basis @ coef
        evar = np.sum((e - emean) ** 2) / max(n - rank, 1)

        # evaluate the trend everywhere, clamped to the fitted covariate range
        lo, hi = np.min(cov_ok), np.max(cov_ok)
        cov_all = np.where(np.isfinite(covariate), covariate, np.median(cov_ok))
        predictor = _poly_basis(np.clip(cov_all, lo, hi), center, scale, degree) @ coef

    evar = evar - np.mean(polygamma(1, d / 2.0))

    if evar > 0:
        d0 = float(2.0 * trigamma_inverse(evar))
        adjust = digamma(d0 / 2.0) - np.log(d0 / 2.0)
        if predictor is None:
            s20 = float(np.exp(emean + adjust))
        else:
            s20 = np.exp(predictor + adjust)
    else:
        d0 = np.inf
        if predictor is None:
            # pure sampling noise: the pooled mean variance is the prior
            s20 = float(np.mean(xo))
        else:
            s20 = np.exp(predictor + np.mean(digamma(d / 2.0) - np.log(d / 2.0)))

    if covariate is not None and np.ndim(s20) == 0:
        s20 = np.full(x.shape, s20)
    return s20, d0


def _upper_tail_pvalues(x: np.ndarray, df1: np.ndarray, s20: np.ndarray, d0: float) -> np.ndarray:
    """P(F >= s2 / s20) under the fitted scaled F-distribution."""
    with np.errstate(divide="ignore", invalid="ignore"):
        fstat = x / s20
    if np.isinf(d0):
        return chi2.sf(df1 * fstat, df1)
    if np.isfinite(d0) and d0 > 0:
        return f_dist.sf(fstat, df1, d0)
    return np.full(x.shape, np.nan)


def fit_fdist_robust(
    s2: np.ndarray,
    df1,
    covariate: Optional[np.ndarray] = None,
    outlier_p: float = 1e-3,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Outlier-protected prior estimation by backward search.

    Starting from all usable variances, repeatedly:
    1. Take the inlier lying furthest in the upper tail of the prior fitted on
       the current inliers.
    2. Refit the prior without it and test it against that prior.
    3. Flag it when its tail p-value is below `outlier_p`, otherwise stop.

    The cutoff is per feature, so once an outlier is flagged the search carries
    on exactly as it would have without it: the prior and the flags of the
    other features do not depend on its presence.

    Returns:
    - s20: (n,) prior variance per entry
    - d0: (n,) prior df per entry, 0 for outliers (no shrinkage)
    - outlier: (n,) boolean mask
    """
    x = np.asarray(s2, dtype=float)
    df1 = np.broadcast_to(np.asarray(df1, dtype=float), x.shape).astype(float)
    ok = squeeze_var_input_filter(x, df1)
    n = x.shape[0]
    outlier = np.zeros(n, dtype=bool)

    s20, d0 = fit_fdist(x, df1, covariate)
    while (ok & ~outlier).sum() > 3:
        inlier = ok & ~outlier
        pvals = _upper_tail_pvalues(x, df1, np.broadcast_to(s20, x.shape), d0)
        pvals = np.where(inlier, pvals, np.nan)
        if not np.isfinite(pvals).any():
            break
        candidate = int(np.nanargmin(pvals))

        held_out = outlier.copy()
        held_out[candidate] = True
        s20_loo, d0_loo = fit_fdist(np.where(held_out, np.nan, x), df1, covariate)
        p_loo = _upper_tail_pvalues(
            x[candidate:candidate + 1],
            df1[candidate:candidate + 1],
            np.broadcast_to(s20_loo, x.shape)[candidate:candidate + 1],
            d0_loo,
        )[0]
        if not (p_loo < outlier_p):
            break
        outlier = held_out
        s20, d0 = s20_loo, d0_loo

    if outlier.any():
        log_info(f"Robust prior: {int(outlier.sum())} outlying variance(s) excluded from prior estimation.")

    s20 = np.broadcast_to(np.asarray(s20, dtype=float), x.shape).astype(float)
    d0_vec = np.where(outlier, 0.0, d0)
    return s20, d0_vec, outlier


def squeeze_var(s2: np.ndarray, df, s20, d0) -> np.ndarray:
    """
    Posterior variances (df*s2 + d0*s20) / (df + d0).

    Infinite d0, or entries without residual df / variance, take the prior s20.
    """
    s2 = np.asarray(s2, dtype=float)
    df = np.broadcast_to(np.asarray(df, dtype=float), s2.shape)
    s20 = np.broadcast_to(np.asarray(s20, dtype=float), s2.shape)
    d0 = np.broadcast_to(np.asarray(d0, dtype=float), s2.shape)

    no_data = ~np.isfinite(s2) | ~(df > 0)
    with np.errstate(invalid="ignore", divide="ignore"):
        post = (df * np.where(no_data, 0.0, s2) + d0 * s20) / (df + d0)
    post = np.where(np.isinf(d0), s20, post)
    post = np.where(no_data, s20, post)
    return post
