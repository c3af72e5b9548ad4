from __future__ import annotations

from dataclasses import dataclass

import anndata as ad
import numpy as np
import pandas as pd

from proteodiff.utils.semantics import COL_CONDITION


@dataclass(frozen=True)
class MissingnessResult:
    df: pd.DataFrame    # features x conditions, count of missing samples
    source: str
    rule: str


def _missingness_counts(intensity_matrix_GxN: np.ndarray, conditions: list[str]) -> dict[str, np.ndarray]:
    cond_arr = np.asarray(conditions, dtype=str)
    out: dict[str, np.ndarray] = {}
    for cond in pd.unique(cond_arr):
        mask = cond_arr == cond
        out[cond] = np.isnan(intensity_matrix_GxN[:, mask]).sum(axis=1)
    return out


def compute_missingness(adata: ad.AnnData) -> MissingnessResult:
    """
    Per-feature missing-value counts per condition.

    Uses the pre-transform `raw` layer when present (NaN is missing), else `adata.X`.
    """
    if "raw" in adata.layers:
        mat = np.asarray(adata.layers["raw"], dtype=float).T   # (G x N)
        source = "raw"
    else:
        mat = np.asarray(adata.X, dtype=float).T
        source = "X"

    counts = _missingness_counts(mat, adata.obs[COL_CONDITION].astype(str).tolist())
    df = pd.DataFrame(counts, index=adata.var_names.tolist())
    return MissingnessResult(df=df, source=source, rule="nan-is-missing")
