"""Tests for the per-feature linear model fitter."""

import numpy as np
import pytest

from proteodiff.analysis.linearmodelfitter import (
    STATUS_INSUFFICIENT,
    STATUS_NO_RESIDUAL_DF,
    STATUS_OK,
    LinearModelFitter,
)

DESIGN = np.array([
    [1.0, 0.0], [1.0, 0.0], [1.0, 0.0],
    [1.0, 1.0], [1.0, 1.0], [1.0, 1.0],
])


class TestLinearModelFitter:

    def test_matches_lstsq(self):
        rng = np.random.default_rng(3)
        Y = rng.normal(size=(6, 20))
        fit = LinearModelFitter(Y, DESIGN, ["Intercept", "B"]).fit()

        beta, rss, _, _ = np.linalg.lstsq(DESIGN, Y, rcond=None)
        np.testing.assert_allclose(fit.coefficients, beta.T)
        np.testing.assert_allclose(fit.sigma2, rss / 4)
        assert (fit.df_residual == 4).all()
        assert (fit.status == STATUS_OK).all()
        np.testing.assert_allclose(fit.stdev_unscaled[:, 1], np.sqrt(2.0 / 3.0))
        np.testing.assert_allclose(fit.amean, Y.mean(axis=0))
        assert fit.df_pooled == 80

    def test_zero_effect_zero_noise(self):
        Y = np.full((6, 5), 20.3)
        fit = LinearModelFitter(Y, DESIGN, ["Intercept", "B"]).fit()

        np.testing.assert_allclose(fit.coefficients[:, 0], 20.3, rtol=1e-12)
        np.testing.assert_allclose(fit.coefficients[:, 1], 0.0, atol=1e-12)
        np.testing.assert_allclose(fit.sigma2, 0.0, atol=1e-24)
        assert (fit.status == STATUS_OK).all()

    def test_missing_values_use_observed_samples(self):
        Y = np.array([
            [1.0, 1.0], [2.0, np.nan], [3.0, 3.0],
            [5.0, 5.0], [6.0, 6.0], [7.0, 7.0],
        ])
        fit = LinearModelFitter(Y, DESIGN).fit()

        np.testing.assert_allclose(fit.coefficients[1], [2.0, 4.0])
        assert fit.n_obs.tolist() == [6, 5]
        assert fit.df_residual.tolist() == [4, 3]
        # reference group reduced to two samples
        np.testing.assert_allclose(fit.cov_unscaled[1, 0, 0], 0.5)

    def test_no_residual_df(self):
        Y = np.full((6, 1), np.nan)
        Y[0, 0], Y[3, 0] = 1.0, 2.0
        fit = LinearModelFitter(Y, DESIGN).fit()

        assert fit.status[0] == STATUS_NO_RESIDUAL_DF
        np.testing.assert_allclose(fit.coefficients[0], [1.0, 1.0])
        assert np.isnan(fit.sigma2[0])
        assert fit.fitted[0] and not fit.has_variance[0]

    def test_insufficient_observations(self):
        Y = np.full((6, 2), 1.0)
        Y[3:, 0] = np.nan          # no sample of the second group
        Y[:, 1] = np.nan
        fit = LinearModelFitter(Y, DESIGN).fit()

        assert fit.status.tolist() == [STATUS_INSUFFICIENT, STATUS_INSUFFICIENT]
        assert np.isnan(fit.coefficients).all()
        assert not fit.fitted.any()
        assert np.isnan(fit.amean[1])

    def test_fewer_samples_than_coefficients(self):
        with pytest.raises(ValueError, match="fewer samples"):
            LinearModelFitter(np.ones((1, 3)), DESIGN[:1])

    def test_rank_deficient(self):
        X = np.column_stack([np.ones(6), np.ones(6)])
        with pytest.raises(ValueError, match="rank deficient"):
            LinearModelFitter(np.ones((6, 2)), X)

    def test_sample_count_mismatch(self):
        with pytest.raises(ValueError, match="samples"):
            LinearModelFitter(np.ones((5, 2)), DESIGN)
