"""
Centralized AnnData key schema for ProteoDiff.

This module is intentionally small and declarative: it defines the canonical
keys used in .uns / .varm / .var / .obsm written by analysis/QC components.
"""

# -----------------------
# .uns (analysis metadata)
# -----------------------
UNS_CONTRAST_NAMES = "contrast_names"
UNS_PILOT_MODE = "pilot_study_mode"
UNS_DESIGN = "design"
UNS_EBAYES = "ebayes"
UNS_PREPROCESSING = "preprocessing"
UNS_ENRICHMENT = "enrichment"

# Missingness
UNS_MISSINGNESS = "missingness"
UNS_MISSINGNESS_SOURCE = "missingness_source"
UNS_MISSINGNESS_RULE = "missingness_rule"

# -----------------------
# .varm (analysis outputs, n_features x n_contrasts)
# -----------------------
VARM_LOG2FC = "log2fc"

VARM_SE_RAW = "se_raw"
VARM_T_RAW = "t_raw"
VARM_P_RAW = "p_raw"
VARM_Q_RAW = "q_raw"

VARM_SE_EBAYES = "se_ebayes"
VARM_T_EBAYES = "t_ebayes"
VARM_P_EBAYES = "p_ebayes"
VARM_Q_EBAYES = "q_ebayes"
VARM_LODS = "lods"

RAW_KEYS = (VARM_SE_RAW, VARM_T_RAW, VARM_P_RAW, VARM_Q_RAW)
EBAYES_KEYS = (VARM_SE_EBAYES, VARM_T_EBAYES, VARM_P_EBAYES, VARM_Q_EBAYES, VARM_LODS)

# -----------------------
# .var (per-feature fit information)
# -----------------------
FIT_STATUS_KEY = "fit_status"

# -----------------------
# .uns / .obsm (clustering / QC)
# -----------------------
UNS_PCA = "pca"
OBSM_PCA = "X_pca"
UNS_SAMPLE_LINKAGE = "sample_linkage"
UNS_SAMPLE_ORDER = "sample_order"
