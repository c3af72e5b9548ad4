from dataclasses import dataclass, field
from typing import Dict, Optional, Any
import numpy as np
import polars as pl

STEPS = ("filtering", "aggregation", "transform", "normalization")


@dataclass
class IntermediateResults:
    # Store matrices at various stages of preprocessing
    matrices: Dict[str, np.ndarray] = field(default_factory=dict)

    # Store Polars DataFrames at various stages
    dfs: Dict[str, pl.DataFrame] = field(default_factory=dict)

    # Metadata recorded by each step
    metadata: Dict[str, Any] = field(default_factory=lambda: {step: {} for step in STEPS})

    # DataFrame columns post-rollup (samples)
    columns: Optional[list] = None

    # Feature identifiers used for matching consistently across matrices
    index: Optional[np.ndarray] = None

    def set_columns_and_index(self, df: pl.DataFrame, index_col: str):
        """Set columns and index once from the final feature-level table."""
        self.columns = [col for col in df.columns if col != index_col]
        self.index = df.select(index_col).to_series().to_numpy()

    def add_matrix(self, name: str, matrix: np.ndarray):
        """Add a matrix with automatic shape validation."""
        if self.index is not None and matrix.shape[0] != len(self.index):
            raise ValueError(f"Matrix '{name}' has inconsistent row dimension.")
        self.matrices[name] = matrix

    def add_df(self, name: str, df: pl.DataFrame):
        self.dfs[name] = df

    def add_metadata(self, step: str, key: str, value: Any):
        """Store metadata like thresholds, counts, methods."""
        if step not in STEPS:
            raise ValueError(f"step must be one of {STEPS}")
        self.metadata[step][key] = value
