import numpy as np
from scipy.stats import norm
from scipy.stats import t as t_dist


def t_sf(x, df):
    """Upper tail of Student's t, with df = inf meaning the normal distribution."""
    x, df = np.broadcast_arrays(np.asarray(x, dtype=float), np.asarray(df, dtype=float))
    finite_df = np.where(np.isinf(df), 1.0, df)
    return np.where(np.isinf(df), norm.sf(x), t_dist.sf(x, finite_df))


def t_isf(p, df):
    p, df = np.broadcast_arrays(np.asarray(p, dtype=float), np.asarray(df, dtype=float))
    finite_df = np.where(np.isinf(df), 1.0, df)
    return np.where(np.isinf(df), norm.isf(p), t_dist.isf(p, finite_df))


def tmixture_vector(
    t_stat: np.ndarray,
    stdev_unscaled: np.ndarray,
    df: np.ndarray,
    proportion: float = 0.01,
    v0_lim=None,
) -> float:
    """
    Prior variance of the non-null coefficients for one contrast,
    matching limma's tmixture.vector().

    The top `proportion / 2` |t| statistics are matched against the quantiles
    they would reach under a mixture of null and non-null features.

    Parameters:
    - t_stat: (n_features,) moderated t statistics
    - stdev_unscaled: (n_features,) unscaled coefficient standard deviations
    - df: (n_features,) total degrees of freedom
    - proportion: assumed proportion of differentially abundant features
    - v0_lim: optional (lower, upper) bounds for each v0 estimate

    Returns:
    - var_prior: float (NaN when too few features to estimate it)
    """
    t_stat = np.asarray(t_stat, dtype=float)
    stdev_unscaled = np.asarray(stdev_unscaled, dtype=float)
    df = np.broadcast_to(np.asarray(df, dtype=float), t_stat.shape)

    ok = np.isfinite(t_stat) & np.isfinite(stdev_unscaled) & ~np.isnan(df)
    t_stat, stdev_unscaled, df = np.abs(t_stat[ok]), stdev_unscaled[ok], df[ok].copy()
    n_stat = t_stat.shape[0]

    ntarget = int(np.ceil(proportion / 2.0 * n_stat))
    if ntarget < 1:
        return np.nan

    # with very few targets, p at least matches the selected fraction
    p = max(ntarget / n_stat, proportion)

    # put every statistic on the largest df scale
    max_df = np.max(df)
    lower = df < max_df
    if lower.any():
        tail_p = t_sf(t_stat[lower], df[lower])
        t_stat[lower] = t_isf(tail_p, max_df)
        df[lower] = max_df

    order = np.argsort(-t_stat, kind="stable")[:ntarget]
    t_top = t_stat[order]
    v1 = stdev_unscaled[order] ** 2

    r = np.arange(1, ntarget + 1)
    p0 = 2.0 * t_sf(t_top, max_df)
    ptarget = ((r - 0.5) / n_stat - (1.0 - p) * p0) / p

    v0 = np.zeros(ntarget)
    pos = ptarget > p0
    if pos.any():
        q_target = t_isf(ptarget[pos] / 2.0, max_df)
        v0[pos] = v1[pos] * ((t_top[pos] / q_target) ** 2 - 1.0)

    if v0_lim is not None:
        v0 = np.clip(v0, v0_lim[0], v0_lim[1])

    return float(np.mean(v0))


def tmixture_matrix(t_stat, stdev_unscaled, df, proportion=0.01, v0_lim=None) -> np.ndarray:
    """`tmixture_vector` applied per contrast (columns)."""
    t_stat = np.asarray(t_stat, dtype=float)
    stdev_unscaled = np.asarray(stdev_unscaled, dtype=float)
    return np.array([
        tmixture_vector(t_stat[:, j], stdev_unscaled[:, j], df, proportion, v0_lim)
        for j in range(t_stat.shape[1])
    ])
