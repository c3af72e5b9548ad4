from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

from proteodiff.utils.utils import log_time, log_warning

STATUS_OK = "ok"
STATUS_NO_RESIDUAL_DF = "no_residual_df"
STATUS_INSUFFICIENT = "insufficient_observations"


@dataclass(frozen=True)
class LinearModelFit:
    coefficients: np.ndarray     # (n_features x p)
    cov_unscaled: np.ndarray     # (n_features x p x p), (X_o^T X_o)^-1 on observed samples
    stdev_unscaled: np.ndarray   # (n_features x p)
    sigma2: np.ndarray           # (n_features,) residual variance RSS / df
    df_residual: np.ndarray      # (n_features,) n_obs - rank
    n_obs: np.ndarray            # (n_features,)
    amean: np.ndarray            # (n_features,) average log abundance
    status: np.ndarray           # (n_features,) STATUS_* labels
    coef_names: Tuple[str, ...] = ()

    @property
    def n_features(self) -> int:
        return self.coefficients.shape[0]

    @property
    def fitted(self) -> np.ndarray:
        """Features that received coefficient estimates."""
        return self.status != STATUS_INSUFFICIENT

    @property
    def has_variance(self) -> np.ndarray:
        """Features contributing a residual variance to pooling."""
        return self.fitted & (self.df_residual > 0) & np.isfinite(self.sigma2)

    @property
    def df_pooled(self) -> float:
        return float(np.sum(self.df_residual[self.has_variance]))


class LinearModelFitter:
    def __init__(self, expression: np.ndarray, design_matrix: np.ndarray, coef_names: Optional[Sequence[str]] = None):
        """
        Parameters:
        - expression: (n_samples x n_features) matrix (adata.X or a layer), NaN = missing
        - design_matrix: (n_samples x n_coefficients) matrix from DesignMatrixBuilder
        """
        self.Y = np.asarray(expression, dtype=float)
        self.X = np.asarray(design_matrix, dtype=float)
        self.coef_names = tuple(coef_names or [f"coef_{i}" for i in range(self.X.shape[1])])

        if self.Y.ndim != 2 or self.X.ndim != 2:
            raise ValueError("Expression and design must both be 2D.")
        if self.Y.shape[0] != self.X.shape[0]:
            raise ValueError(
                f"Expression has {self.Y.shape[0]} samples but the design has {self.X.shape[0]} rows."
            )

        n, p = self.X.shape
        if n < p:
            raise ValueError(f"Design has fewer samples ({n}) than coefficients ({p}).")
        rank = np.linalg.matrix_rank(self.X)
        if rank < p:
            raise ValueError(f"Design matrix is rank deficient (rank {rank} < {p} columns).")

    @log_time("Linear Regressions")
    def fit(self) -> LinearModelFit:
        """
        Fits OLS for all features, vectorized per missingness pattern.

        Features sharing the same set of observed samples share one QR
        decomposition of X_o and are solved together.
        """
        X, Y = self.X, self.Y
        n, p = X.shape
        G = Y.shape[1]

        coefficients = np.full((G, p), np.nan)
        cov_unscaled = np.full((G, p, p), np.nan)
        sigma2 = np.full(G, np.nan)
        df_residual = np.zeros(G, dtype=int)
        status = np.full(G, STATUS_INSUFFICIENT, dtype=object)

        observed = np.isfinite(Y)                     # (n x G)
        n_obs = observed.sum(axis=0)
        patterns, inverse = np.unique(observed.T, axis=0, return_inverse=True)
        inverse = np.asarray(inverse).reshape(-1)

        for k, pattern in enumerate(patterns):
            cols = np.nonzero(inverse == k)[0]
            X_o = X[pattern]
            if X_o.shape[0] < p or np.linalg.matrix_rank(X_o) < p:
                continue

            Q, R = np.linalg.qr(X_o)
            R_inv = np.linalg.inv(R)
            xtx_inv = R_inv @ R_inv.T
            Y_o = Y[np.ix_(pattern, cols)]            # (n_o x g)
            betas = np.linalg.solve(R, Q.T @ Y_o)     # (p x g)
            resid = Y_o - X_o @ betas
            rss = np.sum(resid**2, axis=0)
            df = X_o.shape[0] - p

            coefficients[cols] = betas.T
            cov_unscaled[cols] = xtx_inv
            df_residual[cols] = df
            if df > 0:
                sigma2[cols] = rss / df
                status[cols] = STATUS_OK
            else:
                status[cols] = STATUS_NO_RESIDUAL_DF

        n_insufficient = int(np.sum(status == STATUS_INSUFFICIENT))
        if n_insufficient:
            log_warning(
                f"{n_insufficient} feature(s) have too few observations to fit the design; "
                f"reported with NaN statistics."
            )
        n_exact = int(np.sum(status == STATUS_NO_RESIDUAL_DF))
        if n_exact:
            log_warning(f"{n_exact} feature(s) have no residual degrees of freedom; they take the prior variance.")

        with np.errstate(invalid="ignore"):
            stdev_unscaled = np.sqrt(np.diagonal(cov_unscaled, axis1=1, axis2=2))
        with np.errstate(invalid="ignore", divide="ignore"):
            amean = np.where(n_obs > 0, np.nansum(Y, axis=0) / np.maximum(n_obs, 1), np.nan)

        return LinearModelFit(
            coefficients=coefficients,
            cov_unscaled=cov_unscaled,
            stdev_unscaled=stdev_unscaled,
            sigma2=sigma2,
            df_residual=df_residual,
            n_obs=n_obs,
            amean=amean,
            status=status,
            coef_names=self.coef_names,
        )
