"""Limma-style differential analysis.

This module provides:
  - `run_limma_pipeline`: design -> per-feature fit -> contrasts -> raw and
    moderated (empirical Bayes) statistics, written to AnnData
  - `clustering_pipeline`: helper running the sample QC clustering

Two engines are available: "native" (this package's fitter and moderator,
supporting variance trend, robust prior and fold-change thresholds) and
"inmoose" (limma's lmFit / contrasts_fit / eBayes as ported by inmoose).
"""

import warnings

import anndata as ad
import inmoose.limma as imo
import numpy as np
import pandas as pd
import patsy

from proteodiff.analysis.adata_schema import (
    FIT_STATUS_KEY,
    UNS_CONTRAST_NAMES,
    UNS_DESIGN,
    UNS_EBAYES,
    UNS_MISSINGNESS,
    UNS_MISSINGNESS_RULE,
    UNS_MISSINGNESS_SOURCE,
    UNS_PILOT_MODE,
)
from proteodiff.analysis.clustering import run_clustering
from proteodiff.analysis.ebayes_moderator import EbayesModerator
from proteodiff.analysis.linearmodelfitter import STATUS_OK, LinearModelFitter
from proteodiff.analysis.missingness import compute_missingness
from proteodiff.analysis.stats_ops import bh_qvalues, raw_stats_from_fit
from proteodiff.design.contrast import apply_contrasts
from proteodiff.design.contrastbuilder import ContrastBuilder, parse_contrast_name
from proteodiff.design.designmatrixbuilder import DesignMatrixBuilder, check_design
from proteodiff.utils.semantics import COL_CONDITION
from proteodiff.utils.utils import log_info, log_time, log_warning

ENGINES = ("native", "inmoose")


def _pilot_warning(msg: str) -> None:
    log_warning(msg)
    warnings.warn(msg, UserWarning, stacklevel=3)


def _attach_missingness(out: ad.AnnData, adata: ad.AnnData) -> None:
    miss = compute_missingness(adata)
    out.uns[UNS_MISSINGNESS] = miss.df
    out.uns[UNS_MISSINGNESS_SOURCE] = miss.source
    out.uns[UNS_MISSINGNESS_RULE] = miss.rule


@log_time("Analysis pipeline")
def run_limma_pipeline(adata: ad.AnnData, config: dict) -> ad.AnnData:
    """Limma workflow on `adata.X` (log abundances, NaN = missing) with optional eBayes.

    Returns a copy of `adata` with statistics in `.varm`, per-feature fit
    information in `.var`, and run parameters in `.uns`.
    """
    analysis_cfg = (config or {}).get("analysis", {}) or {}
    engine = (analysis_cfg.get("engine") or "native").lower()
    if engine not in ENGINES:
        raise ValueError(f"Unknown analysis engine '{engine}'. Use one of {ENGINES}.")
    if COL_CONDITION not in adata.obs.columns:
        raise ValueError(f"adata.obs has no '{COL_CONDITION}' column.")

    # Read design & detect pilot mode (≤1 replicate for a condition)
    obs = adata.obs.copy()
    repl_counts = obs[COL_CONDITION].astype(str).value_counts()
    n_levels = len(repl_counts)
    pilot_mode = (n_levels < 2) or (repl_counts.min() <= 1)

    # Early-out when there is only one condition: mark pilot mode and skip stats cleanly
    if n_levels < 2:
        _pilot_warning("Pilot study mode: only 1 condition detected; skipping statistical analysis.")
        out = adata.copy()
        out.uns[UNS_CONTRAST_NAMES] = []
        out.uns[UNS_PILOT_MODE] = True
        _attach_missingness(out, adata)
        return out

    if pilot_mode:
        _pilot_warning(
            "Pilot study mode: at least one condition has only 1 replicate; moderated statistics are skipped."
        )

    design = DesignMatrixBuilder(obs, analysis_cfg.get("design")).build()
    check_design(design, obs[COL_CONDITION])
    contrast_matrix, contrast_names = ContrastBuilder(design).from_config(analysis_cfg)
    log_info(f"Contrasts: {contrast_names}")

    if engine == "inmoose":
        stats, fit_info, ebayes_info = _run_inmoose(adata, design, contrast_names, analysis_cfg, pilot_mode)
    else:
        stats, fit_info, ebayes_info = _run_native(adata, design, contrast_matrix, analysis_cfg, pilot_mode)

    # Assemble into AnnData
    out = adata.copy()
    for key, arr in stats.items():
        if arr is not None:
            out.varm[key] = np.asarray(arr, dtype=float)

    for key, values in fit_info.items():
        out.var[key] = values

    out.uns[UNS_CONTRAST_NAMES] = list(contrast_names)
    out.uns[UNS_PILOT_MODE] = bool(pilot_mode)
    out.uns[UNS_DESIGN] = {
        "formula": design.formula,
        "levels": list(design.levels),
        "reference": design.reference,
        "coef_names": list(design.coef_names),
    }
    out.uns[UNS_EBAYES] = ebayes_info
    _attach_missingness(out, adata)

    return out


def _run_native(adata, design, contrast_matrix, analysis_cfg: dict, pilot_mode: bool):
    ebayes_cfg = analysis_cfg.get("ebayes", {}) or {}
    p_adjust = analysis_cfg.get("p_adjust", "fdr_bh")
    lfc = float(analysis_cfg.get("treat_lfc", 0.0) or 0.0)
    trend = bool(ebayes_cfg.get("trend", False))
    robust = bool(ebayes_cfg.get("robust", False))

    # Expression: samples x features
    fit = LinearModelFitter(np.asarray(adata.X, dtype=float), design.matrix, design.coef_names).fit()
    log2fc, stdu = apply_contrasts(fit, contrast_matrix)

    # Raw (pre-eBayes) statistics
    se_raw, t_raw, p_raw = raw_stats_from_fit(
        coefs=log2fc, stdu=stdu, sigma=np.sqrt(fit.sigma2), df_res=fit.df_residual,
    )
    q_raw = bh_qvalues(p_raw, method=p_adjust)
    stats = {"log2fc": log2fc, "se_raw": se_raw, "t_raw": t_raw, "p_raw": p_raw, "q_raw": q_raw}

    fit_info = {
        FIT_STATUS_KEY: fit.status.astype(str),
        "n_obs": fit.n_obs.astype(int),
        "df_residual": fit.df_residual.astype(int),
        "amean": fit.amean,
        "sigma2": fit.sigma2,
    }
    ebayes_info = {
        "engine": "native",
        "moderated": False,
        "trend": trend,
        "robust": robust,
        "treat_lfc": lfc,
        "p_adjust": p_adjust,
    }

    # Moderated (post-eBayes) statistics
    if not pilot_mode:
        moderator = EbayesModerator(
            fit.sigma2,
            fit.df_residual,
            amean=fit.amean,
            trend=trend,
            robust=robust,
            outlier_p=float(ebayes_cfg.get("outlier_p", 1e-3)),
            proportion=float(ebayes_cfg.get("proportion", 0.01)),
        ).fit()
        moderated = moderator.apply_to_contrasts(log2fc, stdu, lfc=lfc, adjust=p_adjust)
        stats.update(moderated)

        unfitted = ~fit.fitted
        fit_info["s2_prior"] = moderator.s20
        fit_info["s2_post"] = np.where(unfitted, np.nan, moderator.s2_post)
        fit_info["df_total"] = np.where(unfitted, np.nan, moderator.df_total)
        fit_info["variance_outlier"] = moderator.outlier.astype(bool)

        d0_inliers = moderator.d0[~moderator.outlier]
        ebayes_info.update({
            "moderated": True,
            "d0": float(d0_inliers[0]) if d0_inliers.size else float("nan"),
            "s0_squared": float(np.nanmedian(moderator.s20)),
            "df_pooled": moderator.df_pooled,
            "n_variance_outliers": int(moderator.outlier.sum()),
        })
        if getattr(moderator, "var_prior", None) is not None:
            ebayes_info["var_prior"] = np.asarray(moderator.var_prior, dtype=float)

    return stats, fit_info, ebayes_info


def _run_inmoose(adata, design, contrast_names, analysis_cfg: dict, pilot_mode: bool):
    """limma's lmFit / contrasts_fit / eBayes through inmoose (plain eBayes only)."""
    ebayes_cfg = analysis_cfg.get("ebayes", {}) or {}
    if ebayes_cfg.get("trend") or ebayes_cfg.get("robust") or (analysis_cfg.get("treat_lfc") or 0) > 0:
        raise ValueError("Variance trend, robust prior and treat_lfc require engine: native.")
    X = np.asarray(adata.X, dtype=float)
    if not np.isfinite(X).all():
        raise ValueError("The inmoose engine requires a complete matrix (no missing values); use engine: native.")
    p_adjust = analysis_cfg.get("p_adjust", "fdr_bh")

    obs = adata.obs.copy()
    levels = list(design.levels)
    for lvl in levels:
        obs[lvl] = (obs[COL_CONDITION].astype(str) == lvl).astype(int)

    # Patsy design (no intercept) - keep as Patsy DesignMatrix
    formula = "0 + " + " + ".join(levels)
    design_dm = patsy.dmatrix(formula, obs)

    # Expression: features x samples
    df_X = pd.DataFrame(X, index=adata.obs_names, columns=adata.var_names).T
    fit_imo = imo.lmFit(df_X, design=design_dm)

    contrast_defs = []
    for name in contrast_names:
        a, b = parse_contrast_name(name)
        contrast_defs.append(f"{a} - {b}")
    contrast_df = imo.makeContrasts(contrast_defs, levels=design_dm)
    fit_imo = imo.contrasts_fit(fit_imo, contrasts=contrast_df)

    coefs = np.asarray(fit_imo.coefficients.values, dtype=float)
    stdu = np.asarray(fit_imo.stdev_unscaled.values, dtype=float)
    sigma = np.asarray(fit_imo.sigma, dtype=float)
    df_res = np.asarray(fit_imo.df_residual, dtype=float)

    se_raw, t_raw, p_raw = raw_stats_from_fit(coefs=coefs, stdu=stdu, sigma=sigma, df_res=df_res)
    stats = {
        "log2fc": coefs, "se_raw": se_raw, "t_raw": t_raw, "p_raw": p_raw,
        "q_raw": bh_qvalues(p_raw, method=p_adjust),
    }
    fit_info = {
        FIT_STATUS_KEY: np.full(X.shape[1], STATUS_OK),
        "n_obs": np.full(X.shape[1], X.shape[0], dtype=int),
        "df_residual": df_res.astype(int),
        "amean": X.mean(axis=0),
        "sigma2": sigma ** 2,
    }
    ebayes_info = {"engine": "inmoose", "moderated": False, "trend": False, "robust": False,
                   "treat_lfc": 0.0, "p_adjust": p_adjust}

    if not pilot_mode:
        with np.errstate(divide="ignore", invalid="ignore"):
            fit_imo = imo.eBayes(fit_imo)

        s2post = np.asarray(fit_imo.s2_post, dtype=float)
        p_ebayes = np.asarray(fit_imo.p_value.values, dtype=float)
        stats.update({
            "se_ebayes": stdu * np.sqrt(s2post[:, np.newaxis]),
            "t_ebayes": np.asarray(fit_imo.t.values, dtype=float),
            "p_ebayes": p_ebayes,
            "q_ebayes": bh_qvalues(p_ebayes, method=p_adjust),
        })
        fit_info["s2_post"] = s2post
        ebayes_info["moderated"] = True

    return stats, fit_info, ebayes_info


@log_time("Clustering")
def clustering_pipeline(adata: ad.AnnData) -> ad.AnnData:
    """Run sample QC clustering (PCA + hierarchical clustering)."""
    return run_clustering(adata, n_pcs=adata.n_obs - 1)
