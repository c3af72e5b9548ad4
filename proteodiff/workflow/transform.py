"""Logarithmic variance-stabilizing transform.

The transform is only defined for strictly positive values. Missing values
(NaN) pass through unchanged; callers decide what to do with non-positive
entries before transforming (see `nonpositive_features`).
"""

import numpy as np


def _check_base(base: float) -> float:
    base = float(base)
    if not base > 0 or base == 1.0:
        raise ValueError(f"Logarithm base must be > 0 and != 1, got {base}.")
    return base


def nonpositive_features(mat: np.ndarray) -> np.ndarray:
    """Return a boolean row mask of features holding at least one finite value <= 0."""
    mat = np.asarray(mat, dtype=float)
    return np.any(np.isfinite(mat) & (mat <= 0), axis=1)


def log_transform(mat: np.ndarray, base: float = 2) -> np.ndarray:
    """Elementwise log(x, base) of a strictly positive matrix (NaN stays NaN)."""
    base = _check_base(base)
    mat = np.asarray(mat, dtype=float)

    bad = np.isfinite(mat) & (mat <= 0)
    if bad.any():
        rows = np.unique(np.nonzero(bad)[0])
        raise ValueError(
            f"log transform undefined for non-positive values: {int(bad.sum())} value(s) "
            f"in {len(rows)} feature(s)."
        )

    return np.log(mat) / np.log(base)


def inverse_log_transform(mat: np.ndarray, base: float = 2) -> np.ndarray:
    base = _check_base(base)
    return np.power(base, np.asarray(mat, dtype=float))
