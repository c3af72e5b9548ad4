import numpy as np
from typing import Tuple


def median_normalize(mat: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Median-center each sample (column) of a log-scale matrix.

    Parameters:
        mat (np.ndarray): 2D array (features x samples) with NaNs for missing values.

    Returns:
        Tuple[np.ndarray, np.ndarray]: Normalized matrix (same shape as input) and the
        per-sample medians that were subtracted.
    """
    mat = np.asarray(mat, dtype=float)
    if mat.ndim != 2:
        raise ValueError(f"Expected a 2D (features x samples) matrix, got shape {mat.shape}")

    empty = ~np.isfinite(mat).any(axis=0)
    if empty.any():
        raise ValueError(f"Cannot median-normalize sample column(s) {np.nonzero(empty)[0].tolist()} without finite values.")

    finite = np.where(np.isfinite(mat), mat, np.nan)
    medians = np.nanmedian(finite, axis=0)

    return mat - medians[None, :], medians
