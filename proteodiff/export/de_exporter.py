"""Export differential-abundance results to Excel/CSV and write .h5ad.

This module assembles a single "Summary" table (feature metadata, support
counts, log fold changes, raw and moderated p/q-values, significance calls, missingness
and intensities) plus one table per enrichment result.
"""
import math
import re
from datetime import datetime, timezone
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _pkg_version
from pathlib import Path
from typing import Dict, Optional

import pandas as pd

from proteodiff.analysis.adata_schema import UNS_CONTRAST_NAMES, UNS_ENRICHMENT, UNS_MISSINGNESS, UNS_PREPROCESSING
from proteodiff.analysis.significance import classify_contrasts, summarize
from proteodiff.utils.semantics import COL_N_PEPTIDES, COL_N_PSMS
from proteodiff.utils.utils import log_info, log_time

META_COLUMNS = ["PROTEIN", "PEPTIDE", "GENE_NAMES", "PROTEIN_DESCRIPTIONS", COL_N_PEPTIDES, COL_N_PSMS, "fit_status", "n_obs"]


def _log_label(base) -> str:
    """Short name of a log scale: log2, log10, ln or log<base>."""
    base = float(base)
    if abs(base - math.e) < 1e-9:
        return "ln"
    return f"log{base:g}"


def _sheet_name(name: str, taken: set) -> str:
    """Excel-safe, unique sheet name (max 31 characters, no []:*?/\\)."""
    base = re.sub(r"[\[\]:*?/\\]", " ", name)[:31]
    candidate, i = base, 1
    while candidate in taken:
        suffix = f"~{i}"
        candidate = base[: 31 - len(suffix)] + suffix
        i += 1
    taken.add(candidate)
    return candidate


class DEExporter:
    def __init__(
        self,
        adata,
        output_path,
        use_xlsx=True,
        sig_threshold=0.05,
        lfc_threshold=None,
    ):
        """Excel/CSV and .h5ad exporter for an analysed `AnnData`."""
        self.adata = adata
        self.output_path = Path(output_path)
        self.use_xlsx = use_xlsx
        self.sig_threshold = sig_threshold
        self.lfc_threshold = lfc_threshold
        self.contrasts = list(self.adata.uns.get(UNS_CONTRAST_NAMES, []))
        preprocessing = self.adata.uns.get(UNS_PREPROCESSING, {}) or {}
        self.log_label = _log_label(preprocessing.get("log_base", 2))

    def _get_dataframe(self, matrix_name: str) -> Optional[pd.DataFrame]:
        """Return varm[matrix_name] as a (features × contrasts) DataFrame, or None."""
        if matrix_name in self.adata.varm:
            return pd.DataFrame(self.adata.varm[matrix_name],
                                index=self.adata.var.index,
                                columns=self.contrasts)
        return None

    def _export_excel(self, tables: Dict[str, Optional[pd.DataFrame]], readme: str) -> Path:
        """Write selected tables to a single XLSX with a README sheet."""
        out_file = self.output_path.with_suffix(".xlsx")
        with pd.ExcelWriter(out_file, engine="xlsxwriter") as writer:
            writer.book.use_zip64()

            # README: one line per row
            pd.DataFrame({"README": readme.split("\n")}).to_excel(
                writer, index=False, sheet_name="README"
            )

            header_fmt = writer.book.add_format({"bold": False, "align": "left", "border": 0})

            taken = {"README"}
            for name, df in tables.items():
                if df is None:
                    continue
                sheet = _sheet_name(name, taken)
                ws = writer.book.add_worksheet(sheet)

                df_out = df.reset_index() if name == "Summary" else df
                columns = [str(c) for c in df_out.columns]
                ws.write_row(0, 0, columns, header_fmt)
                df_out.to_excel(writer, sheet_name=sheet, startrow=1, index=False, header=False)
                ws.set_column(0, max(len(columns) - 1, 0), 14)
        return out_file

    def _export_csvs(self, tables: Dict[str, Optional[pd.DataFrame]]) -> Path:
        """Write each table to a separate CSV with a shared filename prefix."""
        prefix = self.output_path.with_suffix("")
        for name, df in tables.items():
            if df is None:
                continue
            safe = re.sub(r"[^A-Za-z0-9_.-]+", "_", name)
            df.to_csv(f"{prefix}_{safe}.csv", index=(name == "Summary"))
        return Path(f"{prefix}_Summary.csv")

    def summary_table(self) -> pd.DataFrame:
        """Per-feature summary across all contrasts."""
        ad = self.adata

        meta_cols = [c for c in META_COLUMNS if c in ad.var.columns]
        meta_df = ad.var[meta_cols].copy() if meta_cols else pd.DataFrame(index=ad.var.index)

        blocks = [meta_df]
        log2fc = self._get_dataframe("log2fc")
        if log2fc is not None:
            blocks.append(log2fc.add_prefix(f"{self.log_label}FC_"))

        for key, prefix in (("p_raw", "PVALUE_RAW_"), ("q_raw", "QVALUE_RAW_"),
                            ("p_ebayes", "PVALUE_"), ("q_ebayes", "QVALUE_"), ("lods", "B_")):
            df = self._get_dataframe(key)
            if df is not None:
                blocks.append(df.add_prefix(prefix))

        if self.contrasts and log2fc is not None:
            classified = classify_contrasts(ad, self.sig_threshold, self.lfc_threshold)
            for name, df in classified.items():
                blocks.append(df[["significance", "direction"]].rename(columns={
                    "significance": f"SIGNIFICANCE_{name}",
                    "direction": f"DIRECTION_{name}",
                }))
                counts = summarize(df)
                log_info(f"{name}: {counts['up']} up, {counts['down']} down "
                         f"(q < {self.sig_threshold}, |{self.log_label}FC| > {self.lfc_threshold or 0})")

        # Missingness per group
        miss = ad.uns.get(UNS_MISSINGNESS, None)
        if miss is not None:
            miss = pd.DataFrame(miss).reindex(ad.var.index)
            blocks.append(miss.add_prefix("Missingness_"))
            blocks.append(miss.max(axis=1).rename("MAX_MISSINGNESS"))

        # Intensities (samples × features) -> (features × samples)
        blocks.append(pd.DataFrame(ad.X, index=ad.obs_names, columns=ad.var_names).T.add_prefix(f"processed_{self.log_label}_"))
        if "raw" in ad.layers:
            blocks.append(pd.DataFrame(ad.layers["raw"], index=ad.obs_names, columns=ad.var_names).T.add_prefix("Raw_"))

        summary_df = pd.concat(blocks, axis=1)
        summary_df.index.name = "FEATURE"
        return summary_df

    @log_time("Differential Abundance - exporting table")
    def export(self) -> Path:
        """Export Summary + enrichment sheets as xlsx (or csv)."""
        self.output_path.parent.mkdir(parents=True, exist_ok=True)

        tables = {"Summary": self.summary_table()}
        for key, res in (self.adata.uns.get(UNS_ENRICHMENT, {}) or {}).items():
            tables[f"Enrichment {key}"] = pd.DataFrame(res)

        readme = (
            "ProteoDiff Differential Abundance Export\n\n"
            "Sheet Descriptions:\n"
            f"- Summary: metadata, support counts, {self.log_label}FC, raw and moderated P/Q-values,\n"
            "  significance calls, missingness per condition, processed and raw intensities.\n"
            f"- Significance: q < {self.sig_threshold}"
            + (f" and |{self.log_label}FC| > {self.lfc_threshold}" if self.lfc_threshold is not None else "") + ".\n"
            "- Enrichment <contrast>:<direction>: over-represented categories among significant features.\n"
        )

        if self.use_xlsx:
            out = self._export_excel(tables, readme)
        else:
            out = self._export_csvs(tables)
        log_info(f"Results written to {out}")
        return out

    @log_time("Exporting .h5ad")
    def export_adata(self, h5ad_path: str) -> None:
        """Write a compact .h5ad with categorical metadata and package provenance."""
        for col in ["CONDITION", "CONDITION_ORIG", "GENE_NAMES", "PROTEIN_DESCRIPTIONS", "PROTEIN", "fit_status"]:
            if col in self.adata.obs.columns:
                self.adata.obs[col] = self.adata.obs[col].astype("category")
            if col in self.adata.var.columns:
                self.adata.var[col] = self.adata.var[col].astype("category")

        meta = self.adata.uns.get("proteodiff", {})
        if not isinstance(meta, dict):
            meta = {}
        try:
            pd_version = _pkg_version("proteodiff")
        except PackageNotFoundError:
            pd_version = "0+unknown"
        meta.setdefault("version", pd_version)
        meta.setdefault("created_at", datetime.now(timezone.utc).isoformat(timespec="seconds"))
        self.adata.uns["proteodiff"] = meta

        Path(h5ad_path).parent.mkdir(parents=True, exist_ok=True)
        self.adata.write(h5ad_path, compression="gzip")
