"""Tests for design matrices and contrasts."""

import numpy as np
import pandas as pd
import pytest

from proteodiff.analysis.linearmodelfitter import LinearModelFitter
from proteodiff.design.contrast import apply_contrasts
from proteodiff.design.contrastbuilder import ContrastBuilder, parse_contrast_name
from proteodiff.design.designmatrixbuilder import DesignMatrixBuilder, check_design


def _meta(conditions):
    return pd.DataFrame({"CONDITION": conditions}, index=[f"S{i}" for i in range(len(conditions))])


class TestDesignMatrixBuilder:

    def test_treatment_coding(self):
        design = DesignMatrixBuilder(_meta(["A", "A", "B", "B", "C", "C"])).build()

        assert design.levels == ("A", "B", "C")
        assert design.reference == "A"
        assert design.coef_names == ("Intercept", "B", "C")
        np.testing.assert_array_equal(design.matrix[:, 0], 1.0)
        np.testing.assert_array_equal(design.matrix[:, 1], [0, 0, 1, 1, 0, 0])
        np.testing.assert_array_equal(design.matrix[:, 2], [0, 0, 0, 0, 1, 1])

    def test_configured_reference(self):
        design = DesignMatrixBuilder(_meta(["A", "A", "B", "B"]), {"reference": "B"}).build()
        assert design.levels == ("B", "A")
        assert design.coef_index("A") == 1
        assert design.coef_index("B") is None

    def test_configured_levels(self):
        design = DesignMatrixBuilder(_meta(["x", "y", "z", "x"]), {"levels": ["z", "x", "y"]}).build()
        assert design.levels == ("z", "x", "y")

    def test_unknown_reference(self):
        with pytest.raises(ValueError, match="Reference level"):
            DesignMatrixBuilder(_meta(["A", "B"]), {"reference": "Q"}).build()

    def test_incomplete_levels(self):
        with pytest.raises(ValueError, match="missing from configured levels"):
            DesignMatrixBuilder(_meta(["A", "B", "C"]), {"levels": ["A", "B"]}).build()

    def test_missing_group_column(self):
        with pytest.raises(ValueError, match="not found"):
            DesignMatrixBuilder(pd.DataFrame({"OTHER": ["A"]})).build()


class TestCheckDesign:

    def test_singleton_warning(self):
        meta = _meta(["A", "A", "B"])
        design = DesignMatrixBuilder(meta).build()
        with pytest.warns(UserWarning, match="single replicate"):
            messages = check_design(design, meta["CONDITION"])
        assert len(messages) == 1

    def test_imbalance_warning(self):
        meta = _meta(["A"] * 8 + ["B"] * 2)
        design = DesignMatrixBuilder(meta).build()
        with pytest.warns(UserWarning, match="Unbalanced"):
            check_design(design, meta["CONDITION"])

    def test_balanced_design_is_silent(self):
        meta = _meta(["A", "A", "B", "B"])
        design = DesignMatrixBuilder(meta).build()
        assert check_design(design, meta["CONDITION"]) == []


class TestContrasts:

    @pytest.fixture
    def design(self):
        return DesignMatrixBuilder(_meta(["A", "A", "B", "B", "C", "C"])).build()

    def test_parse_name(self):
        assert parse_contrast_name("treated_vs_control") == ("treated", "control")
        assert parse_contrast_name("B_v_A") == ("B", "A")
        with pytest.raises(ValueError, match="separator"):
            parse_contrast_name("BminusA")

    def test_reference_contrasts(self, design):
        C, names = ContrastBuilder(design).make_baseline_contrasts()
        assert names == ["B_vs_A", "C_vs_A"]
        np.testing.assert_array_equal(C, [[0, 0], [1, 0], [0, 1]])

    def test_pairwise_contrasts(self, design):
        C, names = ContrastBuilder(design).make_all_pairwise_contrasts()
        assert names == ["A_vs_B", "A_vs_C", "B_vs_C"]
        np.testing.assert_array_equal(C[:, 2], [0, 1, -1])

    def test_from_config_precedence(self, design):
        builder = ContrastBuilder(design)
        _, names = builder.from_config({"only_contrasts": ["C_vs_B"], "only_against": "B"})
        assert names == ["C_vs_B"]
        _, names = builder.from_config({"only_against": "B"})
        assert names == ["A_vs_B", "C_vs_B"]
        _, names = builder.from_config({"contrasts": "pairwise"})
        assert len(names) == 3
        _, names = builder.from_config({})
        assert names == ["B_vs_A", "C_vs_A"]

    def test_invalid_contrasts(self, design):
        builder = ContrastBuilder(design)
        with pytest.raises(ValueError, match="conditions must be in"):
            builder.make_named_contrasts(["D_vs_A"])
        with pytest.raises(ValueError, match="itself"):
            builder.make_named_contrasts(["A_vs_A"])
        with pytest.raises(ValueError, match="Unknown contrasts mode"):
            builder.from_config({"contrasts": "all"})
        with pytest.raises(ValueError, match="Baseline"):
            ContrastBuilder(design, baseline="D")

    def test_contrast_is_difference_of_group_means(self, design):
        # samples x features
        Y = np.array([
            [1.0, 5.0], [3.0, 5.0],
            [4.0, 7.0], [6.0, 7.0],
            [10.0, 1.0], [12.0, 3.0],
        ])
        fit = LinearModelFitter(Y, design.matrix, design.coef_names).fit()
        C, names = ContrastBuilder(design).from_config({"only_contrasts": ["C_vs_B", "A_vs_C"]})
        beta, stdu = apply_contrasts(fit, C)

        np.testing.assert_allclose(beta[:, 0], [11.0 - 5.0, 2.0 - 7.0])
        np.testing.assert_allclose(beta[:, 1], [2.0 - 11.0, 5.0 - 2.0])
        # two groups of two replicates: var of a difference of means is 1/2 + 1/2
        np.testing.assert_allclose(stdu, 1.0)

    def test_contrast_dimension_mismatch(self, design):
        Y = np.random.default_rng(1).normal(size=(6, 3))
        fit = LinearModelFitter(Y, design.matrix).fit()
        with pytest.raises(ValueError, match="coefficients"):
            apply_contrasts(fit, np.ones((2, 1)))
