"""Tests for empirical-Bayes variance moderation."""

import numpy as np
import pytest
from scipy.special import polygamma

from proteodiff.analysis.ebayes_moderator import EbayesModerator
from proteodiff.analysis.ebayes_prior import (
    fit_fdist,
    fit_fdist_robust,
    squeeze_var,
    trigamma_inverse,
)
from proteodiff.analysis.linearmodelfitter import LinearModelFitter
from proteodiff.analysis.robust_prior import t_sf, tmixture_vector
from proteodiff.design.contrast import apply_contrasts
from proteodiff.design.contrastbuilder import ContrastBuilder
from proteodiff.design.designmatrixbuilder import DesignMatrixBuilder


def _simulated_variances(n=500, s0_sq=0.5, d0=10.0, df=4.0, seed=7):
    rng = np.random.default_rng(seed)
    sigma2 = s0_sq * d0 / rng.chisquare(d0, size=n)
    return sigma2 * rng.chisquare(df, size=n) / df


class TestPriorEstimation:

    def test_trigamma_inverse(self):
        x = np.array([0.2, 1.0, 3.7, 50.0])
        np.testing.assert_allclose(trigamma_inverse(polygamma(1, x)), x, rtol=1e-6)

    def test_recovers_prior(self):
        s2 = _simulated_variances(n=5000)
        s20, d0 = fit_fdist(s2, 4.0)
        assert s20 == pytest.approx(0.5, rel=0.1)
        assert 6.0 < d0 < 16.0

    def test_identical_variances_unchanged(self):
        s2 = np.full(50, 0.3)
        s20, d0 = fit_fdist(s2, 4.0)
        assert np.isinf(d0)
        assert s20 == pytest.approx(0.3)
        np.testing.assert_allclose(squeeze_var(s2, 4.0, s20, d0), 0.3)

    def test_missing_variances_ignored(self):
        s2 = _simulated_variances(n=200)
        with_nan = np.concatenate([s2, [np.nan, np.nan]])
        df = np.concatenate([np.full(200, 4.0), [0.0, 0.0]])
        assert fit_fdist(with_nan, df) == pytest.approx(fit_fdist(s2, 4.0))

    def test_single_variance(self):
        s20, d0 = fit_fdist(np.array([0.7, np.nan]), 3.0)
        assert s20 == pytest.approx(0.7)
        assert d0 == 0.0

    def test_trend(self):
        rng = np.random.default_rng(11)
        amean = rng.uniform(15, 30, size=400)
        s2 = np.exp(-(amean - 15) / 5) * rng.chisquare(4, size=400) / 4
        s20, d0 = fit_fdist(s2, 4.0, covariate=amean)

        assert s20.shape == (400,)
        assert s20[np.argmin(amean)] > 5 * s20[np.argmax(amean)]
        assert d0 > 0

    def test_squeeze_var(self):
        post = squeeze_var(np.array([1.0, np.nan]), np.array([4.0, 0.0]), 0.5, 4.0)
        np.testing.assert_allclose(post, [0.75, 0.5])


class TestRobustPrior:

    def test_clean_data_no_outliers(self):
        s2 = _simulated_variances()
        s20, d0, outlier = fit_fdist_robust(s2, 4.0)
        plain_s20, plain_d0 = fit_fdist(s2, 4.0)

        assert outlier.sum() <= 2
        if not outlier.any():
            np.testing.assert_allclose(s20, plain_s20)
            np.testing.assert_allclose(d0, plain_d0)

    @pytest.mark.parametrize("seed", range(20))
    def test_outlier_does_not_move_other_features(self, seed):
        clean = _simulated_variances(seed=seed)
        s2 = np.concatenate([clean, [500.0]])

        clean_s20, clean_d0, clean_outlier = fit_fdist_robust(clean, 4.0)
        s20, d0, outlier = fit_fdist_robust(s2, 4.0)

        assert outlier[-1]
        assert d0[-1] == 0.0
        np.testing.assert_array_equal(outlier[:-1], clean_outlier)
        np.testing.assert_allclose(s20[:-1], clean_s20, rtol=1e-12)
        np.testing.assert_allclose(d0[:-1], clean_d0, rtol=1e-12)

        clean_post, _ = EbayesModerator(clean, 4.0, robust=True).fit().moderate()
        post, _ = EbayesModerator(s2, 4.0, robust=True).fit().moderate()
        np.testing.assert_allclose(post[:-1], clean_post, rtol=1e-12)

    def test_outlier_inflates_unprotected_prior(self):
        clean = _simulated_variances()
        _, clean_d0 = fit_fdist(clean, 4.0)
        _, plain_d0 = fit_fdist(np.concatenate([clean, [500.0]]), 4.0)
        assert plain_d0 < clean_d0

    def test_outlier_with_trend(self):
        rng = np.random.default_rng(3)
        amean = rng.uniform(15, 30, size=300)
        clean = np.exp(-(amean - 15) / 10) * rng.chisquare(4, size=300) / 4
        s2 = np.concatenate([clean, [500.0]])
        cov = np.concatenate([amean, [22.0]])

        clean_s20, clean_d0, _ = fit_fdist_robust(clean, 4.0, covariate=amean)
        s20, d0, outlier = fit_fdist_robust(s2, 4.0, covariate=cov)

        assert outlier[-1]
        np.testing.assert_allclose(s20[:-1], clean_s20, rtol=1e-12)
        np.testing.assert_allclose(d0[:-1], clean_d0, rtol=1e-12)

    def test_outlier_keeps_own_variance(self):
        s2 = np.concatenate([_simulated_variances(), [500.0]])
        moderator = EbayesModerator(s2, 4.0, robust=True).fit()
        s2_post, df_total = moderator.moderate()

        assert s2_post[-1] == pytest.approx(500.0)
        assert df_total[-1] == pytest.approx(4.0)


class TestEbayesModerator:

    @pytest.fixture
    def fitted(self, simulated_adata):
        design = DesignMatrixBuilder(simulated_adata.obs).build()
        C, _ = ContrastBuilder(design).make_baseline_contrasts()
        fit = LinearModelFitter(simulated_adata.X, design.matrix, design.coef_names).fit()
        log2fc, stdu = apply_contrasts(fit, C)
        return fit, log2fc, stdu

    def test_moderated_statistics(self, fitted):
        fit, log2fc, stdu = fitted
        moderator = EbayesModerator(fit.sigma2, fit.df_residual, amean=fit.amean).fit()
        res = moderator.apply_to_contrasts(log2fc, stdu)

        assert res["t_ebayes"].shape == (100, 1)
        assert np.isfinite(res["p_ebayes"]).all()
        assert (res["q_ebayes"] >= res["p_ebayes"] - 1e-12).all()
        assert (moderator.df_total <= moderator.df_pooled).all()
        assert np.isfinite(res["lods"]).all()
        # true differences rank first
        assert set(np.argsort(-res["lods"][:, 0])[:10]) == set(range(10))

    def test_total_df_capped(self):
        s2 = np.full(3, 0.2)
        moderator = EbayesModerator(s2, 2.0).fit()
        _, df_total = moderator.moderate()
        np.testing.assert_allclose(df_total, 6.0)

    def test_zero_variance_gives_finite_t(self):
        s2 = _simulated_variances(n=100)
        s2[0] = 0.0
        moderator = EbayesModerator(s2, 4.0).fit()
        res = moderator.apply_to_contrasts(np.ones((100, 1)), np.full((100, 1), 0.8))

        assert np.isfinite(res["t_ebayes"][0, 0])
        assert moderator.s2_post[0] > 0

    def test_treat(self, fitted):
        fit, log2fc, stdu = fitted
        plain = EbayesModerator(fit.sigma2, fit.df_residual).fit().apply_to_contrasts(log2fc, stdu)
        treat = EbayesModerator(fit.sigma2, fit.df_residual).fit().apply_to_contrasts(log2fc, stdu, lfc=1.0)

        assert treat["lods"] is None
        assert (treat["p_ebayes"] >= plain["p_ebayes"] - 1e-12).all()
        small = np.abs(log2fc) <= 1.0
        np.testing.assert_array_equal(treat["t_ebayes"][small], 0.0)
        assert (treat["q_ebayes"][:10, 0] < 0.05).sum() >= 8

    def test_trend_and_robust(self, fitted):
        fit, log2fc, stdu = fitted
        moderator = EbayesModerator(fit.sigma2, fit.df_residual, amean=fit.amean, trend=True, robust=True).fit()
        res = moderator.apply_to_contrasts(log2fc, stdu)

        assert moderator.s20.shape == (100,)
        assert moderator.outlier.shape == (100,)
        assert np.isfinite(res["p_ebayes"]).all()

    def test_trend_requires_amean(self):
        with pytest.raises(ValueError, match="amean"):
            EbayesModerator(np.ones(5), 2.0, trend=True)

    def test_unfitted_features_get_nan(self):
        s2 = np.concatenate([_simulated_variances(n=50), [np.nan]])
        df = np.concatenate([np.full(50, 4.0), [0.0]])
        log2fc = np.ones((51, 1))
        stdu = np.full((51, 1), 0.8)
        log2fc[-1], stdu[-1] = np.nan, np.nan

        res = EbayesModerator(s2, df).fit().apply_to_contrasts(log2fc, stdu)
        assert np.isnan(res["p_ebayes"][-1, 0])
        assert np.isnan(res["q_ebayes"][-1, 0])
        assert np.isfinite(res["q_ebayes"][:-1]).all()


class TestTDistribution:

    def test_infinite_df_is_normal(self):
        assert t_sf(1.96, np.inf) == pytest.approx(0.025, abs=1e-3)

    def test_tmixture_needs_statistics(self):
        assert np.isnan(tmixture_vector(np.array([]), np.array([]), np.array([])))
