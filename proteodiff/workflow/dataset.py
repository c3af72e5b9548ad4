import warnings
from copy import deepcopy
from typing import List

import anndata as ad
import numpy as np
import pandas as pd
import polars as pl
import pyarrow.csv as pv_csv

from proteodiff.analysis.adata_schema import UNS_PREPROCESSING
from proteodiff.utils.harmonizer import DataHarmonizer
from proteodiff.utils.semantics import COL_FILENAME, COL_SAMPLE
from proteodiff.utils.utils import log_info, log_time
from proteodiff.workflow.preprocessing import Preprocessor

# Suppress the ImplicitModificationWarning from AnnData
warnings.filterwarnings("ignore", category=UserWarning, message=".*Transforming to str index.*")


class Dataset:
    """Loads a search-engine table, preprocesses it, and converts it to AnnData."""

    def __init__(self, **kwargs):
        """
        Initialize the dataset object.

        Args:
            kwargs: dict with all the config elements (`dataset`, `preprocessing`, ...)
        """
        dataset_cfg = kwargs.get("dataset", {}) or {}
        self.file_path = dataset_cfg.get("input_file", None)
        self.load_method = dataset_cfg.get("load_method", "polars")
        self.input_layout = (dataset_cfg.get("input_layout") or "wide").strip().lower()

        raw_excl = dataset_cfg.get("exclude_runs")
        if isinstance(raw_excl, str):
            raw_excl = [raw_excl]
        self.exclude_runs = {str(v).strip() for v in (raw_excl or []) if str(v).strip()}

        self.harmonizer = DataHarmonizer(dataset_cfg)

        preprocessing_cfg = deepcopy(kwargs.get("preprocessing", {}) or {})
        preprocessing_cfg["input_layout"] = self.input_layout
        self.preprocessor = Preprocessor(preprocessing_cfg)

        self._load_and_process()

    def _load_and_process(self):
        if not self.file_path:
            raise ValueError("No input file configured (dataset.input_file).")

        # Load and harmonize
        self.rawinput = self._load_rawdata(self.file_path)
        self.rawinput = self.harmonizer.harmonize(self.rawinput)

        # Sample metadata, then runs exclusion
        self.sample_meta = self.harmonizer.sample_metadata(self.rawinput)
        self.rawinput, self.sample_meta = self._apply_exclude_runs(self.rawinput, self.sample_meta)

        sample_cols = None
        if self.input_layout == "wide":
            sample_cols = self.harmonizer.resolve_sample_columns(self.rawinput, self.sample_meta)

        # Apply preprocessing
        self.preprocessed_data = self._apply_preprocessing(self.rawinput, sample_cols)

        # Convert to AnnData format
        self._convert_to_anndata()

    def _apply_exclude_runs(self, df: pl.DataFrame, meta: pl.DataFrame):
        """Drop runs if requested: FILENAME rows (long) or sample columns (wide)."""
        if not self.exclude_runs:
            return df, meta

        annotated = set(meta.get_column(COL_SAMPLE).to_list())
        to_drop = sorted(self.exclude_runs & annotated)
        missing = sorted(self.exclude_runs - annotated)
        if missing:
            log_info(f"Exclude runs: {len(missing)} not found in sample metadata, ignored: {missing[:10]}")
        if not to_drop:
            log_info("Exclude runs: nothing to drop.")
            return df, meta

        if self.input_layout == "long":
            df = df.filter(~pl.col(COL_FILENAME).cast(pl.Utf8).is_in(to_drop))
        else:
            df = df.drop([c for c in to_drop if c in df.columns])
        meta = meta.filter(~pl.col(COL_SAMPLE).is_in(to_drop))

        log_info(f"Exclude runs: dropped {len(to_drop)} run(s).")
        return df, meta

    @log_time("Data Loading")
    def _load_rawdata(self, file_path: str) -> pl.DataFrame:
        """Load raw data from a delimited text file using different libraries."""
        if not str(file_path).endswith((".csv", ".tsv", ".txt")):
            raise ValueError("Only CSV, TSV or TXT files are supported.")

        delimiter = "," if str(file_path).endswith(".csv") else "\t"

        if self.load_method == "polars":
            return pl.read_csv(
                file_path,
                separator=delimiter,
                infer_schema_length=10000,
                null_values=["NA", "NaN", "N/A", ""],
            )
        elif self.load_method == "pyarrow":
            parse_options = pv_csv.ParseOptions(delimiter=delimiter)
            arrow_table = pv_csv.read_csv(file_path, parse_options=parse_options)
            return pl.from_arrow(arrow_table)
        elif self.load_method == "pandas":
            df = pd.read_csv(file_path, delimiter=delimiter)
            return pl.from_pandas(df)
        else:
            raise ValueError(f"Unknown load method: {self.load_method}")

    @log_time("Data Processing")
    def _apply_preprocessing(self, df: pl.DataFrame, sample_cols: List[str]):
        return self.preprocessor.fit_transform(df, self.sample_meta, sample_cols)

    @log_time("Conversion to AnnData")
    def _convert_to_anndata(self):
        """Convert the preprocessed data to an AnnData object (samples x features)."""
        res = self.preprocessed_data
        index_col = res.index_col

        feature_meta = res.feature_meta.with_columns([
            pl.col(c).fill_null("") for c, dt in res.feature_meta.schema.items()
            if dt == pl.Utf8 and c != index_col
        ])
        var = feature_meta.to_pandas()
        var[index_col] = var[index_col].astype(str)
        var = var.set_index(index_col)
        var.index.name = None

        obs = res.sample_meta.to_pandas().set_index(COL_SAMPLE)
        obs = obs.loc[res.sample_names]
        obs.index.name = None

        self.adata = ad.AnnData(X=res.normalized.T.copy(), obs=obs, var=var)

        self.adata.layers["raw"] = res.raw.T.copy()
        self.adata.layers["log"] = res.log.T.copy()
        self.adata.layers["normalized"] = res.normalized.T.copy()

        self.adata.uns[UNS_PREPROCESSING] = {
            "input_layout": self.input_layout,
            "feature_level": index_col,
            "filtering": _stringify(res.meta_filtering),
            "rollup": {
                "peptide_rollup_method": str(self.preprocessor.peptide_rollup_method),
                "protein_rollup_method": str(self.preprocessor.protein_rollup_method),
                "missing_policy": self.preprocessor.missing_policy,
            },
            "log_base": float(res.log_base),
            "on_nonpositive": self.preprocessor.on_nonpositive,
            "excluded_nonpositive": list(res.excluded.get("nonpositive", [])),
            "normalization": {
                "method": self.preprocessor.normalization_method,
                "medians": np.asarray(res.sample_medians, dtype=float),
            },
        }

        assert list(self.adata.var_names) == [str(i) for i in res.aggregated.get_column(index_col).to_list()]

    def get_anndata(self) -> ad.AnnData:
        """Export the processed dataset as an AnnData object."""
        return self.adata


def _stringify(meta):
    """h5ad-friendly copy of nested filtering metadata (no None values)."""
    if isinstance(meta, dict):
        return {str(k): _stringify(v) for k, v in meta.items()}
    if isinstance(meta, (list, tuple)):
        return [str(v) for v in meta]
    if meta is None:
        return ""
    return meta
