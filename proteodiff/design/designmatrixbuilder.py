import warnings
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
import pandas as pd
import patsy

from proteodiff.utils.semantics import COL_CONDITION
from proteodiff.utils.utils import log_info, log_warning


@dataclass(frozen=True)
class DesignSpec:
    """Treatment-coded design, built once before model fitting."""
    matrix: np.ndarray              # samples x coefficients
    column_names: Tuple[str, ...]   # patsy column names
    coef_names: Tuple[str, ...]     # "Intercept" + non-reference levels
    levels: Tuple[str, ...]         # reference first
    sample_names: Tuple[str, ...]
    group_column: str
    formula: str

    @property
    def reference(self) -> str:
        return self.levels[0]

    @property
    def n_coef(self) -> int:
        return self.matrix.shape[1]

    def coef_index(self, level: str) -> Optional[int]:
        """Column holding `level`'s effect against the reference (None for the reference)."""
        if level not in self.levels:
            raise ValueError(f"Unknown condition level '{level}'. Known levels: {list(self.levels)}")
        if level == self.reference:
            return None
        return self.coef_names.index(level)


class DesignMatrixBuilder:
    def __init__(
        self,
        sample_metadata: pd.DataFrame,
        config: Optional[Dict[str, Any]] = None,
    ):
        self.meta = sample_metadata.copy()
        self.config = config or {}
        self.group_col = self.config.get("group_column", COL_CONDITION)
        self.formula: Optional[str] = None
        self.design_info: Optional[patsy.DesignInfo] = None

    def _resolve_levels(self) -> List[str]:
        observed = [str(v) for v in self.meta[self.group_col].unique()]
        configured = self.config.get("levels")
        if configured:
            configured = [str(v) for v in configured]
            unknown = [lvl for lvl in configured if lvl not in observed]
            if unknown:
                raise ValueError(f"Configured level(s) {unknown} have no samples in '{self.group_col}'.")
            unlisted = [lvl for lvl in observed if lvl not in configured]
            if unlisted:
                raise ValueError(f"Condition(s) {unlisted} are present in the data but missing from configured levels.")
            levels = configured
        else:
            levels = sorted(observed)

        reference = self.config.get("reference")
        if reference is not None:
            reference = str(reference)
            if reference not in levels:
                raise ValueError(f"Reference level '{reference}' not found in levels {levels}")
            levels = [reference] + [lvl for lvl in levels if lvl != reference]
        return levels

    def build(self) -> DesignSpec:
        if self.group_col not in self.meta.columns:
            raise ValueError(f"{self.group_col} not found in sample metadata.")
        if self.meta[self.group_col].isna().any():
            raise ValueError(f"Sample metadata has missing values in '{self.group_col}'.")

        self.meta[self.group_col] = self.meta[self.group_col].astype(str)
        levels = self._resolve_levels()
        # category order drives patsy's treatment coding: first level is the reference
        self.meta[self.group_col] = pd.Categorical(self.meta[self.group_col], categories=levels)

        self.formula = f"1 + C({self.group_col})"
        design_df = patsy.dmatrix(self.formula, self.meta, return_type="dataframe")
        self.design_info = design_df.design_info

        coef_names = ["Intercept"] + levels[1:]
        log_info(f"Design '{self.formula}': {design_df.shape[0]} samples x {design_df.shape[1]} coefficients, reference='{levels[0]}'")

        return DesignSpec(
            matrix=design_df.to_numpy(dtype=float),
            column_names=tuple(design_df.columns),
            coef_names=tuple(coef_names),
            levels=tuple(levels),
            sample_names=tuple(str(s) for s in self.meta.index),
            group_column=self.group_col,
            formula=self.formula,
        )


def check_design(design: DesignSpec, groups: pd.Series, imbalance_ratio: float = 3.0) -> List[str]:
    """Warn about statistical preconditions of the design; returns the messages emitted."""
    messages = []

    counts = groups.astype(str).value_counts()
    singletons = [lvl for lvl in design.levels if counts.get(lvl, 0) < 2]
    if singletons:
        messages.append(f"Condition(s) {singletons} have a single replicate; variance estimates rest on other groups.")
    if len(counts) > 1 and counts.min() > 0 and counts.max() / counts.min() > imbalance_ratio:
        messages.append(
            f"Unbalanced design: replicate counts range from {counts.min()} to {counts.max()} "
            f"(ratio above {imbalance_ratio})."
        )

    rank = np.linalg.matrix_rank(design.matrix)
    if rank < design.n_coef:
        messages.append(f"Design matrix is collinear: rank {rank} < {design.n_coef} columns.")

    for msg in messages:
        log_warning(msg)
        warnings.warn(msg, UserWarning, stacklevel=2)

    return messages
