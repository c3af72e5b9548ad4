import re
from typing import Dict, List, Optional

import polars as pl

from proteodiff.utils.semantics import (
    COL_CONDITION,
    COL_FILENAME,
    COL_SAMPLE,
    INPUT_LAYOUTS,
)
from proteodiff.utils.utils import logger, log_info, log_warning


def sanitize_condition(s: Optional[str]) -> str:
    """Patsy-safe condition token."""
    s = (s or "").strip()
    # map bad chars to underscore
    s = re.sub(r"[^A-Za-z0-9_]+", "_", s)
    # must not start with a digit
    if re.match(r"^[0-9]", s or ""):
        s = "C_" + s
    # avoid empty
    return s or "C_UNLABELED"


class DataHarmonizer:
    """Harmonizes input data by renaming columns to a common format and resolves sample metadata."""

    DEFAULT_COLUMN_MAP = {
        "psm_column": "PSM",
        "peptide_column": "PEPTIDE",
        "protein_column": "PROTEIN",
        "qvalue_column": "QVALUE",
        "filename_column": "FILENAME",
        "signal_column": "SIGNAL",
        "condition_column": "CONDITION",
        "gene_names_column": "GENE_NAMES",
        "protein_descriptions_column": "PROTEIN_DESCRIPTIONS",
    }

    def __init__(self, column_config: dict):
        """Initialize column mappings with user-defined config."""
        self.column_map: Dict[str, str] = {}
        self.annotation_file = column_config.get("annotation_file", None)
        self.annotation_sample_column = column_config.get("annotation_sample_column", "Sample")
        self.annotation_condition_column = column_config.get("annotation_condition_column", "Condition")
        self.inline_samples = column_config.get("samples") or {}

        self.input_layout = (column_config.get("input_layout") or "wide").strip().lower()
        if self.input_layout not in INPUT_LAYOUTS:
            raise ValueError(f"Unknown input_layout '{self.input_layout}'. Use one of {INPUT_LAYOUTS}.")

        self.sample_columns = list(column_config.get("sample_columns") or [])
        self.sample_prefix = column_config.get("sample_prefix")

        for config_key, std_name in self.DEFAULT_COLUMN_MAP.items():
            original_col = column_config.get(config_key)
            if original_col:
                self.column_map[original_col] = std_name

    def _rename_columns_safely(self, df: pl.DataFrame) -> pl.DataFrame:
        """
        Rename to standardized names from config, but raise if we'd clobber
        a different existing column.
        """
        rename_map: Dict[str, str] = {}

        for original, target in self.column_map.items():
            if original in df.columns:
                if target in df.columns and original != target:
                    raise ValueError(
                        f"Cannot rename '{original}' to standardized '{target}' because "
                        f"'{target}' already exists in the dataset."
                    )
                rename_map[original] = target
            else:
                log_warning(f"Column '{original}' not found in input data, skipping harmonization for it.")

        return df.rename(rename_map) if rename_map else df

    def _load_annotation(self) -> pl.DataFrame:
        separator = "," if str(self.annotation_file).endswith(".csv") else "\t"
        ann = pl.read_csv(self.annotation_file, separator=separator, infer_schema_length=10000)

        for col in (self.annotation_sample_column, self.annotation_condition_column):
            if col not in ann.columns:
                raise ValueError(
                    f"Annotation file {self.annotation_file!r} must contain column '{col}'; "
                    f"found {ann.columns}."
                )

        return ann.select([
            pl.col(self.annotation_sample_column).cast(pl.Utf8).str.strip_chars().alias(COL_SAMPLE),
            pl.col(self.annotation_condition_column).cast(pl.Utf8).alias(COL_CONDITION),
        ])

    def _sample_metadata_from_long(self, df: pl.DataFrame) -> Optional[pl.DataFrame]:
        if COL_CONDITION not in df.columns or COL_FILENAME not in df.columns:
            return None
        mapping = (
            df.select([pl.col(COL_FILENAME).cast(pl.Utf8).alias(COL_SAMPLE), pl.col(COL_CONDITION).cast(pl.Utf8)])
              .unique(maintain_order=True)
        )
        conflicting = mapping.group_by(COL_SAMPLE).agg(pl.len().alias("_N")).filter(pl.col("_N") > 1)
        if conflicting.height:
            raise ValueError(
                f"Run(s) {conflicting.get_column(COL_SAMPLE).to_list()} carry more than one condition label."
            )
        return mapping

    def sample_metadata(self, df: pl.DataFrame) -> pl.DataFrame:
        """Return one (SAMPLE, CONDITION, CONDITION_ORIG) record per sample.

        Sources, first match wins: annotation file, inline `samples` mapping,
        CONDITION column of long-layout input.
        """
        if self.annotation_file:
            log_info(f"Reading sample annotation from {self.annotation_file}")
            meta = self._load_annotation()
        elif self.inline_samples:
            meta = pl.DataFrame({
                COL_SAMPLE: [str(s) for s in self.inline_samples],
                COL_CONDITION: [str(c) for c in self.inline_samples.values()],
            })
        else:
            meta = self._sample_metadata_from_long(df) if self.input_layout == "long" else None

        if meta is None or meta.height == 0:
            raise ValueError(
                "No sample metadata: provide dataset.annotation_file, dataset.samples, "
                "or a condition column in long-layout input."
            )

        if meta.get_column(COL_CONDITION).is_null().any():
            raise ValueError("Sample metadata has samples without a condition label.")

        dup = meta.group_by(COL_SAMPLE).agg(pl.len().alias("_N")).filter(pl.col("_N") > 1)
        if dup.height:
            raise ValueError(f"Sample metadata lists sample(s) more than once: {dup.get_column(COL_SAMPLE).to_list()}")

        # keep original for display, use sanitized for modeling
        meta = meta.with_columns(pl.col(COL_CONDITION).alias("CONDITION_ORIG"))
        meta = meta.with_columns(
            pl.col(COL_CONDITION).map_elements(sanitize_condition, return_dtype=pl.Utf8).alias(COL_CONDITION)
        )
        clashes = (
            meta.select(["CONDITION_ORIG", COL_CONDITION]).unique()
                .group_by(COL_CONDITION).agg(pl.col("CONDITION_ORIG").sort())
                .filter(pl.col("CONDITION_ORIG").list.len() > 1)
        )
        if clashes.height:
            merged = {tok: labels for tok, labels in clashes.iter_rows()}
            raise ValueError(f"Distinct condition labels collapse to the same model name: {merged}. Rename them.")
        return meta

    def _fmt_diff(self, missing: List[str], extra: List[str], what: str) -> None:
        if not missing and not extra:
            return
        def _fmt(lst, cap=20):
            return lst[:cap] + ([f"... (+{len(lst)-cap} more)"] if len(lst) > cap else [])
        parts = []
        if missing:
            parts.append(f"Annotated {what} not found in data ({len(missing)}): {_fmt(missing)}")
        if extra:
            parts.append(f"Data has {what} not in annotation ({len(extra)}): {_fmt(extra)}")
        msg = f"{what.capitalize()} / annotation mismatch:\n  " + "\n  ".join(parts)
        logger.error(msg)
        raise ValueError(msg)

    def resolve_sample_columns(self, df: pl.DataFrame, meta: pl.DataFrame) -> List[str]:
        """Sample columns of a wide table, checked one-to-one against the metadata."""
        annotated = meta.get_column(COL_SAMPLE).to_list()

        if self.sample_columns:
            data_samples = list(self.sample_columns)
        elif self.sample_prefix:
            data_samples = [c for c in df.columns if c.startswith(self.sample_prefix)]
        else:
            data_samples = [c for c in annotated if c in df.columns]

        missing_cols = [c for c in data_samples if c not in df.columns]
        if missing_cols:
            raise ValueError(f"Sample column(s) not found in input data: {missing_cols}")

        missing = sorted(set(annotated) - set(data_samples))
        extra = sorted(set(data_samples) - set(annotated))
        self._fmt_diff(missing, extra, "samples")

        # metadata order defines sample order
        return annotated

    def harmonize(self, df: pl.DataFrame) -> pl.DataFrame:
        df = self._rename_columns_safely(df)

        if self.input_layout == "long":
            for col in (COL_FILENAME, "SIGNAL"):
                if col not in df.columns:
                    raise ValueError(f"Long input layout requires column '{col}' (set dataset.{col.lower()}_column).")

        return df
