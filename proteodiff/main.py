from proteodiff.analysis.enrichment import run_enrichment
from proteodiff.analysis.limma_pipeline import clustering_pipeline, run_limma_pipeline
from proteodiff.export.de_exporter import DEExporter
from proteodiff.utils.utils import log_time
from proteodiff.workflow.dataset import Dataset


@log_time("ProteoDiff Pipeline")
def run_pipeline(config: dict):
    dataset = Dataset(**config)
    adata = dataset.get_anndata()
    adata = run_limma_pipeline(adata, config)

    analysis_config = config.get("analysis", {}) or {}
    if analysis_config.get("clustering", True):
        adata = clustering_pipeline(adata)

    adata = run_enrichment(adata, config)

    export_config = config.get("exports", {}) or {}
    exporter = DEExporter(
        adata,
        output_path=export_config.get("path_table", "results/proteodiff_results.xlsx"),
        use_xlsx=export_config.get("use_xlsx", True),
        sig_threshold=analysis_config.get("sign_threshold", 0.05),
        lfc_threshold=analysis_config.get("lfc_threshold"),
    )
    if export_config.get("export_table", True):
        exporter.export()

    path_h5ad = export_config.get("path_h5ad")
    if path_h5ad:
        exporter.export_adata(path_h5ad)

    return adata
