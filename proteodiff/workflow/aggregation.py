"""Feature aggregation (rollup) for ProteoDiff.

Collapses child-level rows (PSMs, peptides) into parent-level rows (peptides,
proteins) by grouping on a key column. Every output row carries a support count
equal to the number of child rows combined into it.

Supported combination methods:
  - sum / mean / median / max: column-wise reductions with a configurable
    missing-value policy ("ignore" skips missing children, "propagate" makes
    the aggregate missing as soon as one child is missing)
  - medianpolish: model-based robust summary (Tukey median polish on log2
    values, back-transformed to linear scale)
"""

import warnings
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
import polars as pl

from proteodiff.utils.semantics import MISSING_POLICIES, ROLLUP_METHODS
from proteodiff.utils.utils import log_info, log_warning


@dataclass(frozen=True)
class AggregationResult:
    table: pl.DataFrame         # key + carried columns + support + samples
    key_col: str
    sample_cols: List[str]
    support_col: str

    @property
    def n_features(self) -> int:
        return self.table.height


@dataclass(frozen=True)
class RollupStep:
    key_col: str
    method: str
    support_col: str


def tukey_median_polish(
    matrix: np.ndarray,
    max_iter: int = 10,
    tol: float = 1e-4,
) -> Tuple[float, np.ndarray, bool]:
    """
    Tukey median polish of a (children x samples) log-scale matrix.

    Model: y_ij = mu + a_i + b_j + e_ij. Returns (mu, b, converged); mu + b_j is
    the parent abundance estimate for sample j. NaNs are ignored.
    """
    residuals = np.asarray(matrix, dtype=float).copy()
    overall = 0.0
    col_effects = np.zeros(residuals.shape[1])
    converged = False

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)  # all-NaN slices
        for _ in range(max_iter):
            old = residuals.copy()

            row_medians = np.nanmedian(residuals, axis=1)
            residuals = residuals - row_medians[:, None]
            overall += np.nanmedian(row_medians)

            col_medians = np.nanmedian(residuals, axis=0)
            residuals = residuals - col_medians[None, :]
            col_effects += col_medians - np.nanmedian(col_medians)
            overall += np.nanmedian(col_medians)

            max_change = np.nanmax(np.abs(residuals - old)) if np.isfinite(residuals).any() else 0.0
            if max_change < tol:
                converged = True
                break

    return float(overall), col_effects, converged


def _require_columns(df: pl.DataFrame, cols: Sequence[str]) -> None:
    missing = [c for c in cols if c not in df.columns]
    if missing:
        raise ValueError(f"Aggregation requires column(s) {missing}; available: {df.columns}")


def _reduce_expr(col: str, method: str) -> pl.Expr:
    fn_map = {
        "sum":    pl.col(col).sum(),
        "mean":   pl.col(col).mean(),
        "median": pl.col(col).median(),
        "max":    pl.col(col).max(),
    }
    return fn_map[method]


def aggregate_features(
    df: pl.DataFrame,
    key_col: str,
    sample_cols: Sequence[str],
    method: str = "sum",
    missing: str = "ignore",
    support_col: str = "N_CHILDREN",
    carry_cols: Optional[Sequence[str]] = None,
    sum_cols: Optional[Sequence[str]] = None,
) -> AggregationResult:
    """Aggregate child rows sharing `key_col` into one parent row.

    Args:
        df: Child-level table (one row per child, one column per sample).
        key_col: Parent identifier column. Rows with a missing key must be
            removed beforehand.
        sample_cols: Quantitative columns to combine.
        method: One of "sum", "mean", "median", "max", "medianpolish".
        missing: "ignore" or "propagate".
        support_col: Name of the output column holding the child count.
        carry_cols: Annotation columns kept with their first value per parent.
        sum_cols: Numeric annotation columns summed per parent (e.g. a lower
            level support count).

    Returns:
        AggregationResult with rows in first-appearance order of the keys.
    """
    if method not in ROLLUP_METHODS:
        raise ValueError(f"Unsupported aggregation method '{method}'. Use one of {ROLLUP_METHODS}.")
    if missing not in MISSING_POLICIES:
        raise ValueError(f"Unsupported missing-value policy '{missing}'. Use one of {MISSING_POLICIES}.")

    sample_cols = list(sample_cols)
    carry_cols = [c for c in (carry_cols or []) if c != key_col]
    sum_cols = list(sum_cols or [])
    _require_columns(df, [key_col, *sample_cols, *carry_cols, *sum_cols])

    keys = df.get_column(key_col)
    n_bad_keys = keys.is_null().sum()
    if keys.dtype == pl.Utf8:
        n_bad_keys += (keys.str.strip_chars() == "").sum()
    if n_bad_keys:
        raise ValueError(f"{n_bad_keys} row(s) have a missing '{key_col}'; filter them before aggregation.")

    # NaN and null both mean "missing" from here on
    df = df.with_columns([
        pl.col(c).cast(pl.Float64).fill_nan(None) for c in sample_cols
    ])

    meta_aggs = [pl.len().alias(support_col)]
    meta_aggs += [pl.col(c).first() for c in carry_cols]
    meta_aggs += [pl.col(c).sum() for c in sum_cols]

    if method == "medianpolish":
        meta = df.group_by(key_col, maintain_order=True).agg(meta_aggs)
        values = _medianpolish_groups(df, key_col, sample_cols, missing)
        # both frames follow first-appearance order of the keys
        table = meta.hstack(values.drop(key_col))
    else:
        value_aggs = []
        for c in sample_cols:
            value_aggs.append(_reduce_expr(c, method).alias(c))
            value_aggs.append(pl.col(c).is_not_null().sum().alias(f"{c}__NVALID"))
            value_aggs.append(pl.col(c).is_null().sum().alias(f"{c}__NMISSING"))

        table = df.group_by(key_col, maintain_order=True).agg(meta_aggs + value_aggs)

        # Null-preserving guard: groups with no valid value (or, when
        # propagating, any missing value) are forced to null.
        guards = []
        for c in sample_cols:
            cond = pl.col(f"{c}__NVALID") == 0
            if missing == "propagate":
                cond = cond | (pl.col(f"{c}__NMISSING") > 0)
            guards.append(pl.when(cond).then(pl.lit(None)).otherwise(pl.col(c)).alias(c))
        table = table.with_columns(guards).drop(
            [f"{c}__NVALID" for c in sample_cols] + [f"{c}__NMISSING" for c in sample_cols]
        )

    table = table.select([key_col, *carry_cols, support_col, *sum_cols, *sample_cols])

    return AggregationResult(table=table, key_col=key_col, sample_cols=sample_cols, support_col=support_col)


def _medianpolish_groups(
    df: pl.DataFrame,
    key_col: str,
    sample_cols: List[str],
    missing: str,
) -> pl.DataFrame:
    """Median polish summary per key, returned on linear scale."""
    n_nonpos = 0
    rows = {key_col: [], **{c: [] for c in sample_cols}}

    for (key,), sub in df.group_by(key_col, maintain_order=True):
        mat = sub.select(sample_cols).to_numpy().astype(float)
        nonpos = np.isfinite(mat) & (mat <= 0)
        n_nonpos += int(nonpos.sum())
        mat = np.where(nonpos, np.nan, mat)

        with np.errstate(divide="ignore", invalid="ignore"):
            logmat = np.log2(mat)

        if mat.shape[0] == 1:
            est = logmat[0]
        else:
            overall, col_effects, _ = tukey_median_polish(logmat)
            est = overall + col_effects

        all_missing = ~np.isfinite(logmat).any(axis=0)
        est = np.where(all_missing, np.nan, est)
        if missing == "propagate":
            est = np.where(~np.isfinite(logmat).all(axis=0), np.nan, est)

        rows[key_col].append(key)
        for c, v in zip(sample_cols, np.exp2(est)):
            rows[c].append(None if not np.isfinite(v) else float(v))

    if n_nonpos:
        log_warning(f"Median polish: {n_nonpos} non-positive value(s) treated as missing.")

    schema = {key_col: df.schema[key_col], **{c: pl.Float64 for c in sample_cols}}
    return pl.DataFrame(rows, schema=schema)


def rollup_chain(
    df: pl.DataFrame,
    sample_cols: Sequence[str],
    steps: Sequence[RollupStep],
    missing: str = "ignore",
    annotation_cols: Optional[Sequence[str]] = None,
) -> AggregationResult:
    """Run successive aggregations (e.g. PSM -> peptide -> protein).

    Keys of later steps and `annotation_cols` are carried through every step,
    and each earlier support count is summed into the later level.
    """
    if not steps:
        raise ValueError("rollup_chain requires at least one step.")

    current = df
    result = None
    previous_support: List[str] = []
    annotation_cols = [c for c in (annotation_cols or []) if c in df.columns]

    for i, step in enumerate(steps):
        later_keys = [s.key_col for s in steps[i + 1:]]
        _require_columns(current, [step.key_col, *later_keys])

        # A child mapping to several parents keeps its first parent only
        for later in later_keys:
            n_ambiguous = (
                current.group_by(step.key_col)
                .agg(pl.col(later).n_unique().alias("_N"))
                .filter(pl.col("_N") > 1)
                .height
            )
            if n_ambiguous:
                log_warning(f"{n_ambiguous} '{step.key_col}' value(s) map to more than one '{later}'; first kept.")

        result = aggregate_features(
            current,
            key_col=step.key_col,
            sample_cols=sample_cols,
            method=step.method,
            missing=missing,
            support_col=step.support_col,
            carry_cols=later_keys + [c for c in annotation_cols if c not in later_keys],
            sum_cols=previous_support,
        )
        log_info(
            f"Rollup to {step.key_col} ({step.method}, missing={missing}): "
            f"{current.height} -> {result.n_features} rows."
        )
        current = result.table
        previous_support = previous_support + [step.support_col]

    return result
