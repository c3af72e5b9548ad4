from dataclasses import dataclass, field
import numpy as np
import polars as pl
from typing import Dict, List


@dataclass
class PreprocessResults:
    aggregated: pl.DataFrame        # feature-level linear abundances (index + samples)
    feature_meta: pl.DataFrame      # index + carried annotation + support counts
    sample_meta: pl.DataFrame       # SAMPLE, CONDITION, CONDITION_ORIG
    raw: np.ndarray                 # features x samples, linear
    log: np.ndarray                 # features x samples, post log
    normalized: np.ndarray          # features x samples, post normalization
    index_col: str
    sample_names: List[str]
    log_base: float
    sample_medians: np.ndarray
    excluded: Dict[str, List[str]] = field(default_factory=dict)
    meta_filtering: Dict = field(default_factory=dict)
