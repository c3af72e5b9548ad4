"""
Canonical semantics for ProteoDiff.

This module is intentionally small and declarative:
  - Canonical column names after harmonization
  - Canonical configuration keys and accepted values

Implementation details live elsewhere (aggregation, normalizers, pipelines).
"""

# Canonical columns
COL_PSM = "PSM"
COL_PEPTIDE = "PEPTIDE"
COL_PROTEIN = "PROTEIN"
COL_SIGNAL = "SIGNAL"
COL_FILENAME = "FILENAME"
COL_QVALUE = "QVALUE"
COL_CONDITION = "CONDITION"
COL_SAMPLE = "SAMPLE"

# Support counts written during rollup
COL_N_PSMS = "N_PSMS"
COL_N_PEPTIDES = "N_PEPTIDES"

# Canonical rollup keys
CFG_PEPTIDE_ROLLUP_METHOD = "peptide_rollup_method"
CFG_PROTEIN_ROLLUP_METHOD = "protein_rollup_method"
CFG_MISSING_POLICY = "missing_policy"

ROLLUP_METHODS = ("sum", "mean", "median", "max", "medianpolish")
MISSING_POLICIES = ("ignore", "propagate")
NONPOSITIVE_POLICIES = ("exclude", "missing", "raise")
NORMALIZATION_METHODS = ("median", "none")
INPUT_LAYOUTS = ("wide", "long")

# Significance labels
LABEL_SIGNIFICANT = "significant"
LABEL_NOT_SIGNIFICANT = "not_significant"
LABEL_UP = "up"
LABEL_DOWN = "down"
LABEL_NONE = "none"
