from __future__ import annotations

import numpy as np
from statsmodels.stats.multitest import multipletests

from proteodiff.analysis.robust_prior import t_sf

P_ADJUST_METHODS = ("fdr_bh", "bonferroni", "holm", "none")


def raw_stats_from_fit(
    *,
    coefs: np.ndarray,
    stdu: np.ndarray,
    sigma: np.ndarray,
    df_res: np.ndarray,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Ordinary (unmoderated) statistics:
      se = stdu * sigma[:, None]
      t  = coefs / se
      p  = 2 * t.sf(|t|, df=df_res[:, None])
    Features without residual df get NaN.
    """
    df_res = np.asarray(df_res, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        se = stdu * sigma[:, None]
        t = coefs / se
    df_b = np.broadcast_to(df_res[:, None], t.shape)
    valid = np.isfinite(t) & (df_b > 0)
    p = np.full(t.shape, np.nan)
    p[valid] = 2 * t_sf(np.abs(t[valid]), df_b[valid])
    return se, t, p


def adjust_pvalues(p: np.ndarray, method: str = "fdr_bh") -> np.ndarray:
    """Multiple-testing adjustment of a p-value vector; NaN entries stay NaN and are not counted."""
    if method not in P_ADJUST_METHODS:
        raise ValueError(f"Unknown p-value adjustment '{method}'. Use one of {P_ADJUST_METHODS}.")
    p = np.asarray(p, dtype=float)
    out = np.full(p.shape, np.nan)
    ok = np.isfinite(p)
    if not ok.any():
        return out
    if method == "none":
        out[ok] = p[ok]
    else:
        out[ok] = multipletests(p[ok], method=method)[1]
    return out


def bh_qvalues(p: np.ndarray, method: str = "fdr_bh") -> np.ndarray:
    """Adjusted p-values (Benjamini-Hochberg by default), applied per contrast/column."""
    if p.ndim != 2:
        raise ValueError(f"Expected 2D p-value array (n_features x n_contrasts), got shape {p.shape}")
    if p.shape[1] == 0:
        return p.copy()
    return np.vstack([adjust_pvalues(p[:, j], method) for j in range(p.shape[1])]).T
