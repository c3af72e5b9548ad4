from typing import Optional, Tuple

import numpy as np

from proteodiff.analysis.ebayes_prior import (
    fit_fdist,
    fit_fdist_robust,
    squeeze_var,
    squeeze_var_input_filter,
)
from proteodiff.analysis.robust_prior import t_sf, tmixture_matrix
from proteodiff.analysis.stats_ops import bh_qvalues
from proteodiff.utils.utils import log_info, log_time, log_warning


class EbayesModerator:
    def __init__(
        self,
        sigma2: np.ndarray,
        df_residual,
        amean: Optional[np.ndarray] = None,
        trend: bool = False,
        robust: bool = False,
        outlier_p: float = 1e-3,
        proportion: float = 0.01,
        stdev_coef_lim: Tuple[float, float] = (0.1, 4.0),
    ):
        """
        Parameters:
        - sigma2: (n_features,) residual variances (NaN for features without one)
        - df_residual: scalar or (n_features,) residual degrees of freedom
        - amean: (n_features,) average log abundance, required for `trend`
        - trend: prior variance follows a trend on average abundance
        - robust: protect the prior against outlying variances
        - outlier_p: per-feature tail p-value below which a variance counts as an outlier (robust mode)
        - proportion: assumed proportion of differentially abundant features (B-statistic)
        - stdev_coef_lim: bounds on the prior coefficient standard deviation (B-statistic)
        """
        self.sigma2 = np.asarray(sigma2, dtype=float)
        self.df_residual = np.broadcast_to(np.asarray(df_residual, dtype=float), self.sigma2.shape).astype(float)
        self.amean = None if amean is None else np.asarray(amean, dtype=float)
        self.trend = trend
        self.robust = robust
        self.outlier_p = outlier_p
        self.proportion = proportion
        self.stdev_coef_lim = tuple(stdev_coef_lim)

        if self.trend and self.amean is None:
            raise ValueError("Variance trend requires the average log abundance of each feature (amean).")

        self.s20 = None
        self.d0 = None
        self.outlier = np.zeros(self.sigma2.shape, dtype=bool)
        self.df_pooled = float(np.sum(self.df_residual[squeeze_var_input_filter(self.sigma2, self.df_residual)]))

    @log_time("Empirical Bayes prior")
    def fit(self):
        """Estimate the prior variance s0^2 and prior df d0 (limma `fitFDist` semantics)."""
        covariate = self.amean if self.trend else None

        if self.robust:
            s20, d0, outlier = fit_fdist_robust(
                self.sigma2, self.df_residual, covariate=covariate, outlier_p=self.outlier_p,
            )
            self.outlier = outlier
        else:
            s20, d0 = fit_fdist(self.sigma2, self.df_residual, covariate=covariate)
            d0 = np.full(self.sigma2.shape, d0, dtype=float)

        self.s20 = np.broadcast_to(np.asarray(s20, dtype=float), self.sigma2.shape).astype(float)
        self.d0 = np.asarray(d0, dtype=float)

        d0_inliers = self.d0[~self.outlier]
        d0_show = d0_inliers[0] if d0_inliers.size else np.nan
        log_info(
            f"Prior: d0={d0_show:.3g}, s0^2 median={np.nanmedian(self.s20):.3g}"
            f" (trend={self.trend}, robust={self.robust})"
        )
        if not np.all(np.isfinite(self.s20)):
            log_warning("Prior variance undefined; moderated statistics will be NaN.")
        return self

    def moderate(self):
        """
        Returns:
        - posterior (moderated) variances
        - total degrees of freedom (df_residual + d0, capped at the pooled residual df)
        """
        if self.d0 is None:
            self.fit()

        s2_post = squeeze_var(self.sigma2, self.df_residual, self.s20, self.d0)
        df_total = np.minimum(self.df_residual + self.d0, self.df_pooled)

        self.s2_post = s2_post
        self.df_total = df_total
        return s2_post, df_total

    @log_time("EBayes Computation")
    def apply_to_contrasts(
        self,
        log2fc: np.ndarray,
        stdev_unscaled: np.ndarray,
        lfc: float = 0.0,
        adjust: str = "fdr_bh",
    ) -> dict:
        """
        Moderated statistics for each contrast.

        Parameters:
        - log2fc: (n_features x n_contrasts) contrast estimates
        - stdev_unscaled: (n_features x n_contrasts) unscaled standard deviations
        - lfc: when > 0, test H0: |effect| <= lfc instead of effect == 0
        - adjust: multiple-testing method applied per contrast

        Returns:
        - dict: se, t, p, q and lods (None under a fold-change threshold),
          each of shape n_features x n_contrasts
        """
        s2_post, df_total = self.moderate()
        df_b = np.broadcast_to(df_total[:, None], log2fc.shape)

        with np.errstate(divide="ignore", invalid="ignore"):
            se = stdev_unscaled * np.sqrt(s2_post)[:, None]
            t_stat = log2fc / se
        valid = np.isfinite(t_stat) & (df_b > 0)
        p_val = np.full(log2fc.shape, np.nan)

        lods = None
        if lfc and lfc > 0:
            with np.errstate(divide="ignore", invalid="ignore"):
                abs_b = np.abs(log2fc)
                t_right = (abs_b - lfc) / se
                t_left = (abs_b + lfc) / se
            p_val[valid] = t_sf(t_right[valid], df_b[valid]) + t_sf(t_left[valid], df_b[valid])
            t_stat = np.sign(log2fc) * np.maximum(t_right, 0.0)
            t_stat[~valid] = np.nan
        else:
            p_val[valid] = 2 * t_sf(np.abs(t_stat[valid]), df_b[valid])
            lods = self._lods(t_stat, stdev_unscaled, df_total)

        p_val = np.minimum(p_val, 1.0)
        q_val = bh_qvalues(p_val, method=adjust)

        return {
            "se_ebayes": se,
            "t_ebayes": t_stat,
            "p_ebayes": p_val,
            "q_ebayes": q_val,
            "lods": lods,
        }

    def _lods(self, t_stat: np.ndarray, stdev_unscaled: np.ndarray, df_total: np.ndarray) -> np.ndarray:
        """B-statistic: log-odds that a feature is differentially abundant."""
        s20_median = np.nanmedian(self.s20)
        var_prior_lim = np.array(self.stdev_coef_lim) ** 2 / s20_median
        var_prior = tmixture_matrix(t_stat, stdev_unscaled, df_total, self.proportion, var_prior_lim)
        if np.isnan(var_prior).any():
            var_prior = np.where(np.isnan(var_prior), 1.0 / s20_median, var_prior)
            log_warning("Estimation of var.prior failed for some contrasts; set to default value.")
        self.var_prior = var_prior

        with np.errstate(divide="ignore", invalid="ignore"):
            v1 = stdev_unscaled ** 2
            r = (v1 + var_prior[None, :]) / v1
            t2 = t_stat ** 2
            if np.all(self.d0[~self.outlier] > 1e6):
                kernel = t2 * (1.0 - 1.0 / r) / 2.0
            else:
                dft = df_total[:, None]
                kernel = (1.0 + dft) / 2.0 * np.log((t2 + dft) / (t2 / r + dft))
            lods = np.log(self.proportion / (1.0 - self.proportion)) - np.log(r) / 2.0 + kernel
        return lods
