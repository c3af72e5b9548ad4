import numpy as np

from proteodiff.utils.utils import log_time


@log_time("Apply Contrasts")
def apply_contrasts(fit, contrast_matrix):
    """
    Applies contrast matrix to fitted model results.

    Parameters:
    - fit: LinearModelFit from LinearModelFitter.fit()
    - contrast_matrix: shape (p x m) → p = design coefficients, m = contrasts

    Returns:
    - beta_contrasts: (n_features x m) contrast estimates (log fold changes)
    - stdev_unscaled: (n_features x m) unscaled standard deviations; multiply by
      a residual standard deviation to obtain standard errors
    """
    C = np.asarray(contrast_matrix, dtype=float)
    if C.ndim == 1:
        C = C[:, None]
    if C.shape[0] != fit.coefficients.shape[1]:
        raise ValueError(
            f"Contrast matrix has {C.shape[0]} rows but the fit has {fit.coefficients.shape[1]} coefficients."
        )

    beta_contrasts = fit.coefficients @ C                            # (n_features x m)

    # each feature carries its own unscaled covariance (missingness patterns differ)
    var_unscaled = np.einsum("pj,gpq,qj->gj", C, fit.cov_unscaled, C)
    with np.errstate(invalid="ignore"):
        stdev_unscaled = np.sqrt(var_unscaled)

    return beta_contrasts, stdev_unscaled
