"""Preprocessing pipeline for ProteoDiff.

This module performs:
1) Filtering (missing grouping keys, contaminants/decoys, q-value)
2) Pivoting long input to a wide (feature x sample) table
3) Rollup of child rows into parent features (PSM -> peptide -> protein)
4) Valid-value filtering of the aggregated features
5) Log transform (with an explicit non-positive value policy)
6) Normalization (per-sample median centering)

All steps record intermediate artifacts to `IntermediateResults`, which are then
assembled into a `PreprocessResults` container consumed by downstream code.
"""

from typing import List, Optional

import numpy as np
import polars as pl

from proteodiff.dataset.intermediateresults import IntermediateResults
from proteodiff.dataset.preprocessresults import PreprocessResults
from proteodiff.utils.semantics import (
    CFG_MISSING_POLICY,
    CFG_PEPTIDE_ROLLUP_METHOD,
    CFG_PROTEIN_ROLLUP_METHOD,
    COL_FILENAME,
    COL_N_PEPTIDES,
    COL_N_PSMS,
    COL_PEPTIDE,
    COL_PROTEIN,
    COL_PSM,
    COL_QVALUE,
    COL_SAMPLE,
    COL_SIGNAL,
    NONPOSITIVE_POLICIES,
    NORMALIZATION_METHODS,
)
from proteodiff.utils.utils import (
    load_contaminant_accessions,
    log_indent,
    log_info,
    log_time,
    log_warning,
    polars_matrix_to_numpy,
)
from proteodiff.workflow.aggregation import RollupStep, rollup_chain
from proteodiff.workflow.normalizers.median_normalization import median_normalize
from proteodiff.workflow.transform import log_transform, nonpositive_features

FEATURE_KEYS = (COL_PSM, COL_PEPTIDE, COL_PROTEIN)
ANNOTATION_COLS = ("GENE_NAMES", "PROTEIN_DESCRIPTIONS")


class Preprocessor:
    """Handles filtering, rollup, log transform and normalization for proteomics tables."""

    def __init__(self, config: Optional[dict] = None):
        """Initialize from a config dict mirroring the `preprocessing` section of the YAML config."""
        config = config or {}
        self.intermediate_results = IntermediateResults()
        self.input_layout = (config.get("input_layout") or "wide").strip().lower()

        # Filtering
        self.filtering = config.get("filtering") or {}
        self.contaminant_files = self.filtering.get("contaminants_files", []) or []
        self.contaminant_prefixes = self.filtering.get("contaminant_prefixes", []) or []
        self.filter_qvalue = self.filtering.get("qvalue", 0.01)
        self.min_valid_fraction = float(self.filtering.get("min_valid_fraction", 0.0) or 0.0)

        # Rollup
        self.peptide_rollup_method = config.get(CFG_PEPTIDE_ROLLUP_METHOD, "sum")
        self.protein_rollup_method = config.get(CFG_PROTEIN_ROLLUP_METHOD, "sum")
        self.missing_policy = config.get(CFG_MISSING_POLICY, "ignore")

        # Transform
        transform_cfg = config.get("transform") or {}
        self.log_base = float(transform_cfg.get("log_base", 2))
        self.on_nonpositive = (transform_cfg.get("on_nonpositive") or "exclude").lower()
        if self.on_nonpositive not in NONPOSITIVE_POLICIES:
            raise ValueError(f"Invalid on_nonpositive='{self.on_nonpositive}'. Use one of {NONPOSITIVE_POLICIES}.")

        # Normalization
        self.normalization = config.get("normalization") or {}
        self.normalization_method = (self.normalization.get("method") or "median").lower()
        if self.normalization_method not in NORMALIZATION_METHODS:
            raise ValueError(f"Invalid normalization method: {self.normalization_method}")

        self.excluded = {}

    def fit_transform(self, df: pl.DataFrame, sample_meta: pl.DataFrame, sample_cols: Optional[List[str]] = None) -> PreprocessResults:
        """Run the full preprocessing pipeline and return a `PreprocessResults` bundle."""
        steps = self._rollup_steps(df)
        keys = [s.key_col for s in steps] or [self._finest_key(df)]

        # Step 1: Filtering
        df = self._filter(df, keys)

        # Step 2: Pivoting (long input only)
        if self.input_layout == "long":
            df, sample_cols = self._pivot_long(df, sample_meta)
        sample_cols = list(sample_cols or sample_meta.get_column(COL_SAMPLE).to_list())

        # Step 3: Rollup
        feature_df, index_col = self._aggregate(df, steps, sample_cols)

        # Step 4: Valid-value filtering
        feature_df = self._filter_valid_values(feature_df, sample_cols)

        self.intermediate_results.set_columns_and_index(feature_df.select([index_col, *sample_cols]), index_col)
        raw, index = polars_matrix_to_numpy(feature_df.select([index_col, *sample_cols]), index_col=index_col)
        self.intermediate_results.add_matrix("raw", raw)

        # Step 5: Log transform
        keep, logged = self._transform(raw, index)
        feature_df = feature_df.filter(pl.Series(keep))
        raw = raw[keep]

        # Step 6: Normalization
        normalized, medians = self._normalize(logged, sample_cols)

        feature_meta = feature_df.drop(sample_cols)
        aggregated = feature_df.select([index_col, *sample_cols])

        return PreprocessResults(
            aggregated=aggregated,
            feature_meta=feature_meta,
            sample_meta=sample_meta,
            raw=raw,
            log=logged,
            normalized=normalized,
            index_col=index_col,
            sample_names=sample_cols,
            log_base=self.log_base,
            sample_medians=medians,
            excluded=self.excluded,
            meta_filtering=self.intermediate_results.metadata["filtering"],
        )

    def _finest_key(self, df: pl.DataFrame) -> str:
        for key in FEATURE_KEYS:
            if key in df.columns:
                return key
        raise ValueError(f"Input needs at least one feature identifier column among {FEATURE_KEYS}.")

    def _rollup_steps(self, df: pl.DataFrame) -> List[RollupStep]:
        steps = []
        support = COL_N_PSMS
        if self.peptide_rollup_method and COL_PEPTIDE in df.columns:
            steps.append(RollupStep(COL_PEPTIDE, self.peptide_rollup_method, COL_N_PSMS))
            support = COL_N_PEPTIDES
        if self.protein_rollup_method and COL_PROTEIN in df.columns:
            steps.append(RollupStep(COL_PROTEIN, self.protein_rollup_method, support))
        return steps

    @log_time("Filtering")
    def _filter(self, df: pl.DataFrame, keys: List[str]) -> pl.DataFrame:
        with log_indent():
            df = self._filter_missing_keys(df, keys)
            df = self._filter_contaminants(df)
            df = self._filter_by_qvalue(df)
        self.intermediate_results.add_df("filtered", df)
        return df

    def _filter_missing_keys(self, df: pl.DataFrame, keys: List[str]) -> pl.DataFrame:
        mask_keep = pl.lit(True)
        for key in keys:
            col = pl.col(key)
            if df.schema[key] == pl.Utf8:
                mask_keep = mask_keep & col.is_not_null() & (col.str.strip_chars() != "")
            else:
                mask_keep = mask_keep & col.is_not_null()

        df_kept = df.filter(mask_keep)
        n_dropped = df.height - df_kept.height
        self.intermediate_results.add_metadata("filtering", "meta_keys", {
            "keys": keys, "number_kept": df_kept.height, "number_dropped": n_dropped,
        })
        log_info(f"Missing-key filtering: kept={df_kept.height} dropped={n_dropped} (keys={keys}).")
        return df_kept

    def _filter_contaminants(self, df: pl.DataFrame) -> pl.DataFrame:
        if COL_PROTEIN not in df.columns or not (self.contaminant_files or self.contaminant_prefixes):
            log_info("Contaminant filtering: skipped.")
            return df

        accessions = set()
        for path in self.contaminant_files:
            accessions |= load_contaminant_accessions(path)

        protein = pl.col(COL_PROTEIN).cast(pl.Utf8)
        is_cont = protein.is_in(list(accessions))
        for prefix in self.contaminant_prefixes:
            is_cont = is_cont | protein.str.starts_with(prefix)

        df_kept = df.filter(~is_cont)
        n_dropped = df.height - df_kept.height
        self.intermediate_results.add_metadata("filtering", "meta_cont", {
            "files": self.contaminant_files,
            "prefixes": self.contaminant_prefixes,
            "number_kept": df_kept.height,
            "number_dropped": n_dropped,
        })
        log_info(f"Contaminant filtering: kept={df_kept.height} dropped={n_dropped}.")
        return df_kept

    def _filter_by_qvalue(self, df: pl.DataFrame) -> pl.DataFrame:
        if COL_QVALUE not in df.columns or self.filter_qvalue is None:
            self.intermediate_results.add_metadata("filtering", "meta_qvalue", {
                "skipped": True, "number_kept": df.height, "number_dropped": 0,
            })
            log_info("QVALUE filtering: skipped (column not present or threshold disabled).")
            return df

        keep_mask = pl.col(COL_QVALUE) <= self.filter_qvalue
        df_kept = df.filter(keep_mask)
        n_dropped = df.height - df_kept.height
        self.intermediate_results.add_metadata("filtering", "meta_qvalue", {
            "threshold": self.filter_qvalue,
            "number_kept": df_kept.height,
            "number_dropped": n_dropped,
        })
        log_info(f"QVALUE filtering: kept={df_kept.height} dropped={n_dropped} (thr={self.filter_qvalue}).")
        return df_kept

    @log_time("Pivoting")
    def _pivot_long(self, df: pl.DataFrame, sample_meta: pl.DataFrame):
        """Pivot helper: long -> wide (index=feature keys, columns=runs).

        Aggregates duplicated (feature, run) rows with a sum, preserving nulls
        when a group has no valid value.
        """
        index_cols = [k for k in FEATURE_KEYS if k in df.columns]
        finest = index_cols[0]
        index_cols += [c for c in ANNOTATION_COLS if c in df.columns]

        df_agg = (
            df
            .with_columns(pl.col(COL_SIGNAL).cast(pl.Float64).fill_nan(None), pl.col(COL_FILENAME).cast(pl.Utf8))
            .group_by([*index_cols, COL_FILENAME], maintain_order=True)
            .agg([
                pl.col(COL_SIGNAL).sum(),
                pl.col(COL_SIGNAL).is_not_null().sum().alias("_NVALID"),
            ])
            .with_columns(
                pl.when(pl.col("_NVALID") == 0)
                  .then(pl.lit(None))
                  .otherwise(pl.col(COL_SIGNAL))
                  .alias(COL_SIGNAL)
            )
            .drop("_NVALID")
        )

        wide = df_agg.pivot(on=COL_FILENAME, index=index_cols, values=COL_SIGNAL)

        n_dup = wide.get_column(finest).is_duplicated().sum()
        if n_dup:
            raise ValueError(f"'{finest}' maps to more than one parent in long input ({n_dup} rows).")

        annotated = sample_meta.get_column(COL_SAMPLE).to_list()
        missing = [s for s in annotated if s not in wide.columns]
        extra = [c for c in wide.columns if c not in index_cols and c not in annotated]
        if missing or extra:
            raise ValueError(f"Runs / annotation mismatch: annotated but absent={missing}, present but not annotated={extra}")

        wide = wide.select([*index_cols, *annotated])
        log_info(f"Pivoted {df.height} rows to {wide.height} features x {len(annotated)} runs.")
        return wide, annotated

    @log_time("Rollup")
    def _aggregate(self, df: pl.DataFrame, steps: List[RollupStep], sample_cols: List[str]):
        if not steps:
            index_col = self._finest_key(df)
            if df.get_column(index_col).is_duplicated().any():
                raise ValueError(f"Feature identifiers in '{index_col}' are not unique and no rollup is configured.")
            log_info(f"No rollup configured; features are '{index_col}' rows.")
            return df, index_col

        result = rollup_chain(df, sample_cols, steps, missing=self.missing_policy, annotation_cols=(COL_PROTEIN, *ANNOTATION_COLS))
        self.intermediate_results.add_df("aggregated", result.table)
        self.intermediate_results.add_metadata("aggregation", "steps", [
            {"key": s.key_col, "method": s.method, "support": s.support_col} for s in steps
        ])
        self.intermediate_results.add_metadata("aggregation", "missing_policy", self.missing_policy)
        return result.table, result.key_col

    def _filter_valid_values(self, df: pl.DataFrame, sample_cols: List[str]) -> pl.DataFrame:
        """Keep features with at least one valid value and at least `min_valid_fraction` valid samples."""
        n_valid = pl.sum_horizontal([pl.col(c).is_not_null() & ~pl.col(c).cast(pl.Float64).is_nan() for c in sample_cols])
        min_valid = max(1, int(np.ceil(self.min_valid_fraction * len(sample_cols))))

        df_kept = df.filter(n_valid >= min_valid)
        n_dropped = df.height - df_kept.height
        self.intermediate_results.add_metadata("filtering", "meta_valid", {
            "min_valid": min_valid, "number_kept": df_kept.height, "number_dropped": n_dropped,
        })
        log_info(f"Valid-value filtering: kept={df_kept.height} dropped={n_dropped} (min_valid={min_valid}).")
        return df_kept

    @log_time("Log transform")
    def _transform(self, raw: np.ndarray, index) -> tuple:
        """Apply the non-positive policy, then log-transform. Returns (row keep mask, log matrix)."""
        bad = nonpositive_features(raw)
        keep = np.ones(raw.shape[0], dtype=bool)
        mat = raw

        if bad.any():
            bad_ids = [str(i) for i in np.asarray(index)[bad]]
            if self.on_nonpositive == "exclude":
                keep = ~bad
                mat = raw[keep]
                self.excluded["nonpositive"] = bad_ids
                log_warning(f"{len(bad_ids)} feature(s) hold non-positive values and were excluded before log transform.")
            elif self.on_nonpositive == "missing":
                mat = np.where(np.isfinite(raw) & (raw <= 0), np.nan, raw)
                log_warning(f"Non-positive values in {len(bad_ids)} feature(s) set to missing before log transform.")
            # "raise": log_transform raises below

        logged = log_transform(mat, base=self.log_base)
        self.intermediate_results.add_metadata("transform", "log_base", self.log_base)
        self.intermediate_results.add_metadata("transform", "on_nonpositive", self.on_nonpositive)
        return keep, logged

    @log_time("Normalization")
    def _normalize(self, mat: np.ndarray, sample_cols: List[str]):
        if self.normalization_method == "none":
            log_info("Skipping normalization (log data kept as is)")
            medians = np.zeros(mat.shape[1])
            normalized = mat.copy()
        else:
            normalized, medians = median_normalize(mat)
            log_info("Median normalization: " + ", ".join(f"{s}={m:.3f}" for s, m in zip(sample_cols, medians)))

        self.intermediate_results.add_metadata("normalization", "method", self.normalization_method)
        self.intermediate_results.add_metadata("normalization", "medians", medians)
        return normalized, medians
