"""End-to-end tests: analysis pipeline, clustering, enrichment, export and CLI."""

import math

import anndata as ad
import numpy as np
import pandas as pd
import pytest
import yaml
from typer.testing import CliRunner

from proteodiff.analysis.enrichment import run_enrichment
from proteodiff.analysis.limma_pipeline import clustering_pipeline, run_limma_pipeline
from proteodiff.analysis.significance import classify_contrasts
from proteodiff.cli import app
from proteodiff.export.de_exporter import DEExporter, _log_label, _sheet_name


@pytest.fixture
def analysed(simulated_adata):
    return run_limma_pipeline(simulated_adata, {})


class TestLimmaPipeline:

    def test_detects_true_differences(self, analysed):
        q = analysed.varm["q_ebayes"][:, 0]
        assert analysed.uns["contrast_names"] == ["B_vs_A"]
        assert (q[:10] < 0.01).sum() >= 8
        assert (q[10:] < 0.01).sum() <= 2
        assert np.all(analysed.varm["log2fc"][:10, 0] > 1.0)

        classified = classify_contrasts(analysed, q_threshold=0.01)["B_vs_A"]
        assert (classified["direction"].iloc[:10] == "up").sum() >= 8

    def test_outputs(self, analysed):
        for key in ("log2fc", "se_raw", "t_raw", "p_raw", "q_raw", "se_ebayes", "t_ebayes", "p_ebayes", "q_ebayes", "lods"):
            assert analysed.varm[key].shape == (100, 1)
        for col in ("fit_status", "n_obs", "df_residual", "sigma2", "s2_post", "df_total", "variance_outlier"):
            assert col in analysed.var.columns
        assert analysed.uns["pilot_study_mode"] is False
        assert analysed.uns["design"]["reference"] == "A"
        assert analysed.uns["ebayes"]["moderated"] is True
        assert analysed.uns["missingness"].shape == (100, 2)

    def test_input_not_modified(self, simulated_adata):
        run_limma_pipeline(simulated_adata, {})
        assert "log2fc" not in simulated_adata.varm

    def test_missing_values(self, simulated_adata):
        X = simulated_adata.X.copy()
        X[0, 20] = np.nan
        X[:, 21] = np.nan
        X[:3, 22] = np.nan
        simulated_adata.X = X
        simulated_adata.layers["raw"] = np.exp2(X)

        out = run_limma_pipeline(simulated_adata, {})

        assert out.var["n_obs"].iloc[20] == 5
        assert out.var["fit_status"].iloc[21] == "insufficient_observations"
        assert out.var["fit_status"].iloc[22] == "insufficient_observations"
        assert np.isnan(out.varm["p_ebayes"][21:23]).all()
        assert np.isfinite(out.varm["p_ebayes"][20]).all()
        assert out.uns["missingness"].loc["PROT021", "A"] == 3

    def test_pairwise_contrasts(self, simulated_adata):
        conditions = ["A", "A", "B", "B", "C", "C"]
        simulated_adata.obs["CONDITION"] = conditions
        out = run_limma_pipeline(simulated_adata, {"analysis": {"contrasts": "pairwise"}})
        assert out.uns["contrast_names"] == ["A_vs_B", "A_vs_C", "B_vs_C"]
        assert out.varm["q_ebayes"].shape == (100, 3)

    def test_robust_trend_treat(self, simulated_adata):
        cfg = {"analysis": {"ebayes": {"trend": True, "robust": True}, "treat_lfc": 0.5}}
        out = run_limma_pipeline(simulated_adata, cfg)
        assert "lods" not in out.varm
        assert out.uns["ebayes"]["treat_lfc"] == 0.5
        assert (out.varm["q_ebayes"][:10, 0] < 0.05).sum() >= 8

    def test_pilot_mode_single_replicate(self, simulated_adata):
        adata = simulated_adata[:4].copy()
        with pytest.warns(UserWarning, match="Pilot study mode"):
            out = run_limma_pipeline(adata, {})
        assert out.uns["pilot_study_mode"] is True
        assert "q_raw" in out.varm
        assert "q_ebayes" not in out.varm

    def test_pilot_mode_single_condition(self, simulated_adata):
        simulated_adata.obs["CONDITION"] = "A"
        with pytest.warns(UserWarning, match="only 1 condition"):
            out = run_limma_pipeline(simulated_adata, {})
        assert out.uns["contrast_names"] == []

    def test_unknown_engine(self, simulated_adata):
        with pytest.raises(ValueError, match="Unknown analysis engine"):
            run_limma_pipeline(simulated_adata, {"analysis": {"engine": "edger"}})

    def test_inmoose_requires_complete_data(self, simulated_adata):
        X = simulated_adata.X.copy()
        X[0, 0] = np.nan
        simulated_adata.X = X
        with pytest.raises(ValueError, match="complete matrix"):
            run_limma_pipeline(simulated_adata, {"analysis": {"engine": "inmoose"}})

    def test_inmoose_rejects_trend(self, simulated_adata):
        with pytest.raises(ValueError, match="engine: native"):
            run_limma_pipeline(simulated_adata, {"analysis": {"engine": "inmoose", "ebayes": {"trend": True}}})


class TestClustering:

    def test_pca_and_linkage(self, analysed):
        out = clustering_pipeline(analysed)
        assert out.obsm["X_pca"].shape == (6, 5)
        assert sorted(out.uns["sample_order"]) == sorted(out.obs_names)
        assert out.uns["sample_linkage"].shape == (5, 4)

    def test_input_not_modified(self, analysed):
        clustering_pipeline(analysed)
        assert "X_pca" not in analysed.obsm
        assert "sample_order" not in analysed.uns

    def test_too_few_samples(self, simulated_adata):
        adata = simulated_adata[:2].copy()
        out = clustering_pipeline(adata)
        assert "X_pca" not in out.obsm


class TestEnrichment:

    @pytest.fixture
    def annotation(self, tmp_path):
        rows = ["Protein\tCategory"]
        rows += [f"PROT{i:03d}\tGO:DE" for i in range(10)]
        rows += [f"PROT{i:03d}\tGO:BG" for i in range(10, 60)]
        path = tmp_path / "go.tsv"
        path.write_text("\n".join(rows) + "\n")
        return path

    def test_enriched_category(self, analysed, annotation):
        cfg = {"enrichment": {"annotation_file": str(annotation), "directions": ["all", "up", "down"]}}
        out = run_enrichment(analysed, cfg)

        res = out.uns["enrichment"]["B_vs_A:all"]
        assert res["category"].iloc[0] == "GO:DE"
        assert "B_vs_A:up" in out.uns["enrichment"]
        assert "B_vs_A:down" not in out.uns["enrichment"]

    def test_input_not_modified(self, analysed, annotation):
        run_enrichment(analysed, {"enrichment": {"annotation_file": str(annotation)}})
        assert "enrichment" not in analysed.uns

    def test_skipped_without_annotation(self, analysed):
        out = run_enrichment(analysed, {})
        assert "enrichment" not in out.uns

    def test_unknown_direction(self, analysed, annotation):
        cfg = {"enrichment": {"annotation_file": str(annotation), "directions": ["sideways"]}}
        with pytest.raises(ValueError, match="Unknown enrichment direction"):
            run_enrichment(analysed, cfg)


class TestExport:

    def test_sheet_names(self):
        taken = {"README"}
        long_name = "Enrichment " + "x" * 40
        first = _sheet_name(long_name, taken)
        second = _sheet_name(long_name, taken)
        assert len(first) == len(second) == 31
        assert first != second
        assert _sheet_name("a:b/c", taken) == "a b c"

    def test_summary_table(self, analysed):
        summary = DEExporter(analysed, "unused.xlsx").summary_table()
        for col in ("log2FC_B_vs_A", "QVALUE_B_vs_A", "PVALUE_RAW_B_vs_A", "SIGNIFICANCE_B_vs_A",
                    "DIRECTION_B_vs_A", "Missingness_A", "processed_log2_A_1", "Raw_B_3"):
            assert col in summary.columns
        assert summary.index.name == "FEATURE"
        assert len(summary) == 100

    def test_labels_follow_log_base(self, analysed):
        analysed.uns["preprocessing"] = {"log_base": 10.0}
        summary = DEExporter(analysed, "unused.xlsx").summary_table()
        assert "log10FC_B_vs_A" in summary.columns
        assert "processed_log10_A_1" in summary.columns
        assert not any(c.startswith("log2FC_") for c in summary.columns)
        assert _log_label(math.e) == "ln"
        assert _log_label(2) == "log2"

    def test_csv_export(self, analysed, tmp_path):
        out = DEExporter(analysed, tmp_path / "results.xlsx", use_xlsx=False).export()
        assert out == tmp_path / "results_Summary.csv"
        df = pd.read_csv(out, index_col=0)
        assert df.loc["PROT000", "DIRECTION_B_vs_A"] == "up"

    def test_xlsx_and_h5ad_export(self, analysed, tmp_path):
        exporter = DEExporter(analysed, tmp_path / "results.xlsx")
        assert exporter.export().exists()

        h5ad = tmp_path / "results.h5ad"
        exporter.export_adata(str(h5ad))
        back = ad.read_h5ad(h5ad)
        np.testing.assert_allclose(back.varm["log2fc"], analysed.varm["log2fc"])
        assert "version" in back.uns["proteodiff"]


class TestCli:

    def test_init_writes_template(self, tmp_path):
        path = tmp_path / "config.yaml"
        result = CliRunner().invoke(app, ["init", str(path)])
        assert result.exit_code == 0
        cfg = yaml.safe_load(path.read_text())
        assert {"dataset", "preprocessing", "analysis", "exports"} <= set(cfg)

    def test_run(self, tmp_path, psm_table):
        data = tmp_path / "psms.tsv"
        psm_table.write_csv(data, separator="\t")
        samples = [c for c in psm_table.columns if c.startswith(("A_", "B_"))]
        config = {
            "dataset": {"input_file": str(data), "samples": {s: s.split("_")[0] for s in samples}},
            "preprocessing": {"filtering": {"qvalue": None}},
            "exports": {"use_xlsx": False, "path_table": str(tmp_path / "out" / "res.xlsx")},
        }
        config_path = tmp_path / "config.yaml"
        config_path.write_text(yaml.safe_dump(config))

        result = CliRunner().invoke(app, ["run", "--config", str(config_path)])

        assert result.exit_code == 0, result.output
        summary = pd.read_csv(tmp_path / "out" / "res_Summary.csv", index_col=0)
        assert list(summary.index) == ["P1", "P2", "P3"]
        assert "log2FC_B_vs_A" in summary.columns
