"""Sample QC clustering: PCA and hierarchical clustering of samples.

Provides:
  - run_clustering: PCA (scanpy) on the feature-mean-imputed matrix, then
                    hierarchical clustering (scipy) of samples in PCA space.
"""

from typing import Optional

import numpy as np
import scanpy as sc
import scipy.cluster.hierarchy as sch
from anndata import AnnData

from proteodiff.analysis.adata_schema import OBSM_PCA, UNS_PCA, UNS_SAMPLE_LINKAGE, UNS_SAMPLE_ORDER
from proteodiff.utils.utils import log_info, log_time, log_warning


def _pick_feature_indices(M: np.ndarray, max_features: Optional[int]) -> np.ndarray:
    """Return feature indices (≤ max_features) with the largest variance (ignoring NaNs)."""
    n_vars = M.shape[1]
    if (max_features is None) or (n_vars <= max_features):
        return np.arange(n_vars)
    var = np.nanvar(M, axis=0)
    idx = np.argsort(var)[::-1][:max_features]
    return np.sort(idx)  # keep ascending index order for stable slicing


@log_time("Running clustering pipeline")
def run_clustering(
    adata: AnnData,
    layer: Optional[str] = None,
    n_pcs: Optional[int] = None,
    hierarchical_method: str = "ward",
    hierarchical_metric: str = "euclidean",
    max_features: Optional[int] = None,
) -> AnnData:
    """PCA + hierarchical clustering of samples, stored on a copy of `adata`.

    Missing values are replaced by the feature mean for these computations only;
    features without any value are left out.
    """
    adata = adata.copy()
    data = np.asarray(adata.layers[layer] if layer is not None else adata.X, dtype=float)  # samples × features

    if adata.n_obs < 3:
        log_warning("Clustering skipped: fewer than 3 samples.")
        return adata

    keep = np.isfinite(data).any(axis=0)
    feat_idx = _pick_feature_indices(data[:, keep], max_features)
    M = data[:, keep][:, feat_idx]
    if M.shape[1] < 2:
        log_warning("Clustering skipped: fewer than 2 quantified features.")
        return adata

    col_means = np.nanmean(M, axis=0)
    M = np.where(np.isfinite(M), M, col_means[None, :])

    max_comps = min(M.shape) - 1
    n_comps = max_comps if n_pcs is None else max(1, min(n_pcs, max_comps))

    A = AnnData(X=M)
    A.obs_names = adata.obs_names.copy()
    sc.tl.pca(A, n_comps=n_comps)

    pca_matrix = A.obsm["X_pca"][:, :n_comps]
    sample_linkage = sch.linkage(pca_matrix, method=hierarchical_method, metric=hierarchical_metric)
    sample_leaves = sch.leaves_list(sample_linkage)

    adata.obsm[OBSM_PCA] = pca_matrix
    adata.uns[UNS_PCA] = {
        "variance_ratio": np.asarray(A.uns["pca"]["variance_ratio"], dtype=float),
        "variance": np.asarray(A.uns["pca"]["variance"], dtype=float),
        "n_features": int(M.shape[1]),
    }
    adata.uns[UNS_SAMPLE_LINKAGE] = sample_linkage
    adata.uns[UNS_SAMPLE_ORDER] = adata.obs_names[sample_leaves].tolist()

    log_info(f"PCA on {M.shape[1]} features, {n_comps} components; PC1 explains "
             f"{100 * adata.uns[UNS_PCA]['variance_ratio'][0]:.1f}% of variance.")
    return adata
