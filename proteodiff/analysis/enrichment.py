"""Over-representation (enrichment) testing of feature categories.

Given a foreground (e.g. significant proteins of a contrast) drawn from a
universe (all tested proteins), each category (GO term, pathway, ...) is
tested for over-representation with the one-sided hypergeometric test,
then corrected for multiple testing across the tested categories.
"""

from typing import Dict, Iterable, Mapping, Optional, Tuple

import anndata as ad
import numpy as np
import pandas as pd
import polars as pl
from scipy.stats import hypergeom

from proteodiff.analysis.adata_schema import FIT_STATUS_KEY, UNS_CONTRAST_NAMES, UNS_ENRICHMENT
from proteodiff.analysis.significance import classify, results_table
from proteodiff.analysis.stats_ops import adjust_pvalues
from proteodiff.utils.semantics import LABEL_DOWN, LABEL_SIGNIFICANT, LABEL_UP
from proteodiff.utils.utils import log_info, log_time, log_warning

RESULT_COLUMNS = [
    "category", "description", "overlap", "category_size", "foreground_size",
    "universe_size", "fold_enrichment", "pvalue", "qvalue", "members",
]
DIRECTIONS = ("all", LABEL_UP, LABEL_DOWN)


class EnrichmentTester:
    def __init__(
        self,
        mapping: Mapping[str, Iterable[str]],
        descriptions: Optional[Mapping[str, str]] = None,
        min_size: int = 1,
        max_size: Optional[int] = None,
    ):
        """
        Parameters:
        - mapping: feature id -> categories it belongs to
        - descriptions: optional category -> human readable description
        - min_size / max_size: bounds on the number of universe members a
          category needs to be tested
        """
        self.descriptions = dict(descriptions or {})
        self.min_size = max(1, int(min_size))
        self.max_size = max_size

        self.category_members: Dict[str, set] = {}
        for feature, categories in mapping.items():
            for cat in categories:
                self.category_members.setdefault(str(cat), set()).add(str(feature))

    def test(
        self,
        foreground: Iterable[str],
        universe: Iterable[str],
        q_threshold: Optional[float] = 0.05,
        method: str = "fdr_bh",
    ) -> pd.DataFrame:
        """
        Hypergeometric over-representation test of every category.

        Returns the categories with qvalue < q_threshold (all tested categories
        when q_threshold is None), sorted by p-value.
        """
        fg = {str(f) for f in foreground}
        univ = {str(u) for u in universe}
        if not fg <= univ:
            extra = sorted(fg - univ)
            raise ValueError(
                f"Foreground must be a subset of the universe; {len(extra)} feature(s) are not: {extra[:10]}"
            )

        N, n = len(univ), len(fg)
        rows = []
        for cat, members in self.category_members.items():
            in_universe = members & univ
            K = len(in_universe)
            if K == 0 or K < self.min_size or (self.max_size is not None and K > self.max_size):
                continue
            hits = sorted(in_universe & fg)
            k = len(hits)
            pval = float(hypergeom.sf(k - 1, N, K, n))
            fold = (k / n) / (K / N) if n > 0 else np.nan
            rows.append({
                "category": cat,
                "description": self.descriptions.get(cat, ""),
                "overlap": k,
                "category_size": K,
                "foreground_size": n,
                "universe_size": N,
                "fold_enrichment": fold,
                "pvalue": min(pval, 1.0),
                "members": ";".join(hits),
            })

        if not rows:
            log_warning("Enrichment: no category has members in the universe; nothing tested.")
            return pd.DataFrame(columns=RESULT_COLUMNS)

        res = pd.DataFrame(rows)
        res["qvalue"] = adjust_pvalues(res["pvalue"].to_numpy(), method=method)
        res = res[RESULT_COLUMNS].sort_values(["pvalue", "category"], kind="mergesort").reset_index(drop=True)

        log_info(f"Enrichment: {len(res)} categories tested, foreground={n}, universe={N}.")
        if q_threshold is not None:
            res = res[res["qvalue"] < q_threshold].reset_index(drop=True)
        return res


def load_category_mapping(
    path: str,
    id_col: str,
    category_col: str,
    description_col: Optional[str] = None,
    separator: str = ";",
) -> Tuple[Dict[str, set], Dict[str, str]]:
    """
    Read a delimited annotation table (one row per feature or per feature/category pair).

    Multi-valued category cells are split on `separator`.

    Returns:
    - mapping: feature id -> set of categories
    - descriptions: category -> description (empty without `description_col`)
    """
    delimiter = "," if str(path).endswith(".csv") else "\t"
    df = pl.read_csv(path, separator=delimiter, infer_schema_length=10000)

    needed = [id_col, category_col] + ([description_col] if description_col else [])
    missing = [c for c in needed if c not in df.columns]
    if missing:
        raise ValueError(f"Annotation table {path!r} lacks column(s) {missing}; found {df.columns}.")

    exploded = (
        df.select([
            pl.col(id_col).cast(pl.Utf8).alias("ID"),
            pl.col(category_col).cast(pl.Utf8).alias("CATEGORY"),
            (pl.col(description_col).cast(pl.Utf8) if description_col else pl.lit(None, dtype=pl.Utf8)).alias("DESCRIPTION"),
        ])
          .drop_nulls(["ID", "CATEGORY"])
          .with_columns(pl.col("CATEGORY").str.split(separator))
          .explode("CATEGORY")
          .with_columns(pl.col("CATEGORY").str.strip_chars())
          .filter(pl.col("CATEGORY") != "")
    )
    pairs = exploded.select(["ID", "CATEGORY"]).unique(maintain_order=True)

    mapping: Dict[str, set] = {}
    for fid, cat in pairs.iter_rows():
        mapping.setdefault(fid, set()).add(cat)

    # first description seen for a category wins
    descriptions = dict(
        exploded.select(["CATEGORY", "DESCRIPTION"])
                .drop_nulls()
                .unique(subset=["CATEGORY"], keep="first", maintain_order=True)
                .iter_rows()
    )

    log_info(f"Loaded {len(mapping)} annotated features, {pairs.get_column('CATEGORY').n_unique()} categories from {path}")
    return mapping, descriptions


@log_time("Enrichment")
def run_enrichment(adata: ad.AnnData, config: dict) -> ad.AnnData:
    """
    Enrichment of significant features per contrast, stored in `uns["enrichment"]` of a copy of `adata`
    as one table per "<contrast>:<direction>".

    Universe: features with a finite q-value in the contrast.
    Foreground: significant features of the contrast (optionally per direction).
    """
    adata = adata.copy()
    enr_cfg = (config or {}).get("enrichment", {}) or {}
    analysis_cfg = (config or {}).get("analysis", {}) or {}
    annotation_file = enr_cfg.get("annotation_file")
    if not annotation_file:
        log_info("Enrichment: no annotation file configured, skipped.")
        return adata

    mapping, descriptions = load_category_mapping(
        annotation_file,
        id_col=enr_cfg.get("id_column", "Protein"),
        category_col=enr_cfg.get("category_column", "Category"),
        description_col=enr_cfg.get("description_column"),
        separator=enr_cfg.get("separator", ";"),
    )

    # features are matched to the annotation through a var column or var_names
    feature_key = enr_cfg.get("feature_key")
    if feature_key and feature_key not in adata.var.columns:
        raise ValueError(f"enrichment.feature_key '{feature_key}' not found in adata.var.")
    keys = adata.var[feature_key].astype(str) if feature_key else pd.Series(adata.var_names, index=adata.var_names)
    mapping = {fid: mapping.get(key, set()) for fid, key in zip(adata.var_names, keys)}

    tester = EnrichmentTester(
        mapping,
        descriptions,
        min_size=enr_cfg.get("min_size", 1),
        max_size=enr_cfg.get("max_size"),
    )

    directions = enr_cfg.get("directions") or ["all"]
    bad = [d for d in directions if d not in DIRECTIONS]
    if bad:
        raise ValueError(f"Unknown enrichment direction(s) {bad}. Use any of {DIRECTIONS}.")

    sig_threshold = analysis_cfg.get("sign_threshold", 0.05)
    lfc_threshold = analysis_cfg.get("lfc_threshold")
    q_threshold = enr_cfg.get("q_threshold", 0.05)
    method = enr_cfg.get("p_adjust", "fdr_bh")

    contrasts = enr_cfg.get("contrasts") or list(adata.uns.get(UNS_CONTRAST_NAMES, []))
    out = dict(adata.uns.get(UNS_ENRICHMENT, {}))
    for contrast in contrasts:
        classified = classify(results_table(adata, contrast), sig_threshold, lfc_threshold)
        q_col = "q_ebayes" if "q_ebayes" in classified.columns else "q_raw"
        tested = np.isfinite(classified[q_col].to_numpy(dtype=float))
        if FIT_STATUS_KEY in adata.var.columns:
            tested &= (adata.var[FIT_STATUS_KEY] != "insufficient_observations").to_numpy()
        universe = classified.index[tested]

        for direction in directions:
            sig = (classified["significance"] == LABEL_SIGNIFICANT).to_numpy() & tested
            if direction != "all":
                sig &= (classified["direction"] == direction).to_numpy()
            foreground = classified.index[sig]
            log_info(f"Enrichment {contrast} ({direction}): {len(foreground)} significant of {len(universe)} tested")
            res = tester.test(foreground, universe, q_threshold=q_threshold, method=method)
            if res.empty:
                log_info(f"Enrichment {contrast} ({direction}): no enriched category.")
                continue
            out[f"{contrast}:{direction}"] = res

    adata.uns[UNS_ENRICHMENT] = out
    return adata
