"""Significance classification of differential-abundance results."""

from typing import Optional

import anndata as ad
import numpy as np
import pandas as pd

from proteodiff.analysis.adata_schema import (
    EBAYES_KEYS,
    RAW_KEYS,
    UNS_CONTRAST_NAMES,
    VARM_LOG2FC,
    VARM_Q_EBAYES,
    VARM_Q_RAW,
)
from proteodiff.utils.semantics import (
    LABEL_DOWN,
    LABEL_NONE,
    LABEL_NOT_SIGNIFICANT,
    LABEL_SIGNIFICANT,
    LABEL_UP,
)


def results_table(adata: ad.AnnData, contrast: str) -> pd.DataFrame:
    """Tidy per-feature table of one contrast, built from `adata.varm`."""
    contrasts = list(adata.uns.get(UNS_CONTRAST_NAMES, []))
    if contrast not in contrasts:
        raise ValueError(f"Unknown contrast '{contrast}'. Available: {contrasts}")
    j = contrasts.index(contrast)

    cols = {}
    for key in (VARM_LOG2FC, *RAW_KEYS, *EBAYES_KEYS):
        if key in adata.varm:
            cols[key] = np.asarray(adata.varm[key])[:, j]

    df = pd.DataFrame(cols, index=adata.var_names.copy())
    df.insert(0, "contrast", contrast)
    return df


def classify(
    results: pd.DataFrame,
    q_threshold: float = 0.05,
    lfc_threshold: Optional[float] = None,
    q_col: Optional[str] = None,
    lfc_col: str = VARM_LOG2FC,
) -> pd.DataFrame:
    """
    Label each feature "significant" / "not_significant" with a direction.

    A feature is significant when q < q_threshold and, if given,
    |log2fc| > lfc_threshold (both strict). Direction is "up" / "down" by
    the sign of the effect for significant features and "none" otherwise.
    NaN statistics are never significant. Returns a new table.
    """
    if q_col is None:
        q_col = VARM_Q_EBAYES if VARM_Q_EBAYES in results.columns else VARM_Q_RAW
    for col in (q_col, lfc_col):
        if col not in results.columns:
            raise ValueError(f"Results table has no '{col}' column.")

    q = results[q_col].to_numpy(dtype=float)
    lfc = results[lfc_col].to_numpy(dtype=float)

    with np.errstate(invalid="ignore"):
        sig = np.isfinite(q) & np.isfinite(lfc) & (q < q_threshold)
        if lfc_threshold is not None:
            sig &= np.abs(lfc) > lfc_threshold

    direction = np.full(len(results), LABEL_NONE, dtype=object)
    direction[sig & (lfc > 0)] = LABEL_UP
    direction[sig & (lfc < 0)] = LABEL_DOWN

    out = results.copy()
    out["significance"] = np.where(sig, LABEL_SIGNIFICANT, LABEL_NOT_SIGNIFICANT)
    out["direction"] = direction
    return out


def classify_contrasts(
    adata: ad.AnnData,
    q_threshold: float = 0.05,
    lfc_threshold: Optional[float] = None,
) -> dict:
    """Classified results table for every contrast of `adata`."""
    return {
        name: classify(results_table(adata, name), q_threshold, lfc_threshold)
        for name in adata.uns.get(UNS_CONTRAST_NAMES, [])
    }


def summarize(classified: pd.DataFrame) -> pd.Series:
    """Counts of up / down / not significant features."""
    counts = classified["direction"].value_counts()
    return pd.Series({
        LABEL_UP: int(counts.get(LABEL_UP, 0)),
        LABEL_DOWN: int(counts.get(LABEL_DOWN, 0)),
        LABEL_NOT_SIGNIFICANT: int((classified["significance"] == LABEL_NOT_SIGNIFICANT).sum()),
    })
