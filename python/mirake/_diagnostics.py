"""
Weight and balance diagnostics.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import narwhals as nw
import numpy as np
from narwhals.typing import IntoFrameT

from ._errors import ConfigurationError, MissingColumnError

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray

    from ._orchestrate import ImputationRun

__all__ = ["weight_summary", "weighted_margins", "balance_table", "pooled_balance"]


def weight_summary(
    df: IntoFrameT,
    weight_col: str = "final_weight",
    by: str | list[str] | None = None,
) -> IntoFrameT:
    """
    Summarize weight diagnostics, optionally by group.

    Parameters
    ----------
    df
        DataFrame with weight column.
    weight_col
        Name of weight column.
    by
        Column(s) to group by (e.g., "treat"). If None, returns overall summary.

    Returns
    -------
    DataFrame
        Summary with n, n_positive, effective_n, efficiency_pct, weight_mean,
        weight_std, weight_median, weight_min, weight_max, weight_ratio.
        ``weight_ratio`` uses the smallest positive weight, so unmatched
        records (weight 0) do not make it infinite.

    Examples
    --------
    >>> mirake.weight_summary(result.data, "final_weight")
    >>> mirake.weight_summary(result.data, "final_weight", by="treat")
    """
    df_nw = nw.from_native(df, eager_only=True)
    if weight_col not in df_nw.columns:
        raise MissingColumnError(f"Weight column '{weight_col}' not found")

    positive = "__mirake_positive__"
    df_nw = df_nw.with_columns(
        nw.when(nw.col(weight_col) > 0).then(nw.col(weight_col)).alias(positive)
    )

    w = nw.col(weight_col)
    sum_w = w.sum()
    sum_w_sq = (w ** 2).sum()
    n = nw.len()

    agg_exprs = [
        n.alias("n"),
        nw.col(positive).count().alias("n_positive"),
        ((sum_w ** 2) / sum_w_sq).alias("effective_n"),
        ((sum_w ** 2) / (n * sum_w_sq) * 100).alias("efficiency_pct"),
        w.mean().alias("weight_mean"),
        w.std().alias("weight_std"),
        w.median().alias("weight_median"),
        w.min().alias("weight_min"),
        w.max().alias("weight_max"),
        (w.max() / nw.col(positive).min()).alias("weight_ratio"),
    ]

    if by is None:
        result = df_nw.select(agg_exprs)
    else:
        if isinstance(by, str):
            by = [by]
        result = df_nw.group_by(by).agg(agg_exprs).sort(by)

    return nw.to_native(result)


def _weights_array(df_nw: nw.DataFrame, weights: str | ArrayLike | None) -> NDArray[np.float64]:
    if weights is None:
        return np.ones(len(df_nw), dtype=np.float64)
    if isinstance(weights, str):
        if weights not in df_nw.columns:
            raise MissingColumnError(f"Weight column '{weights}' not found")
        return df_nw.get_column(weights).fill_null(0).to_numpy().astype(np.float64)
    arr = np.asarray(weights, dtype=np.float64)
    if arr.shape != (len(df_nw),):
        raise ConfigurationError(f"weights has shape {arr.shape}, expected ({len(df_nw)},)")
    return arr


def _margins_of(values: list[Any], w: NDArray[np.float64]) -> dict[Any, float]:
    total = w.sum()
    out: dict[Any, float] = {}
    for value, weight in zip(values, w):
        out[value] = out.get(value, 0.0) + weight
    if total <= 0:
        return {k: 0.0 for k in out}
    return {k: v / total for k, v in out.items()}


def weighted_margins(
    df: Any,
    weights: str | ArrayLike | None,
    columns: list[str] | tuple[str, ...],
    by: str | None = None,
) -> dict[Any, Any]:
    """
    Weighted proportion of each level of each column.

    Returns ``{column: {level: proportion}}``, or one such dict per value of
    ``by``. Records with zero weight contribute nothing.
    """
    df_nw = nw.from_native(df, eager_only=True)
    w = _weights_array(df_nw, weights)
    missing = set(columns) - set(df_nw.columns)
    if missing:
        raise MissingColumnError(f"Columns not found: {sorted(missing)}")

    data = {col: df_nw.get_column(col).to_list() for col in columns}
    if by is None:
        return {col: _margins_of(data[col], w) for col in columns}

    if by not in df_nw.columns:
        raise MissingColumnError(f"Group column '{by}' not found")
    groups = df_nw.get_column(by).to_list()
    out: dict[Any, Any] = {}
    for key in dict.fromkeys(groups):
        mask = np.array([g == key for g in groups])
        out[key] = {
            col: _margins_of([v for v, m in zip(data[col], mask) if m], w[mask])
            for col in columns
        }
    return out


def _weighted_mean_var(x: NDArray[np.float64], w: NDArray[np.float64]) -> tuple[float, float]:
    total = w.sum()
    if total <= 0:
        return float("nan"), float("nan")
    mean = float(np.sum(w * x) / total)
    var = float(np.sum(w * (x - mean) ** 2) / total)
    return mean, var


def _covariate_matrix(df_nw: nw.DataFrame, covariates: list[str]) -> dict[str, NDArray[np.float64]]:
    """Numeric columns as-is, everything else one-hot per observed level."""
    out: dict[str, NDArray[np.float64]] = {}
    for col in covariates:
        series = df_nw.get_column(col)
        if series.null_count() > 0:
            raise ConfigurationError(f"Covariate '{col}' has missing values")
        if series.dtype.is_numeric() or series.dtype == nw.Boolean:
            out[col] = series.to_numpy().astype(np.float64)
            continue
        values = series.to_list()
        for level in sorted(set(values), key=str):
            out[f"{col}={level}"] = np.array([v == level for v in values], dtype=np.float64)
    return out


def balance_table(
    df: IntoFrameT,
    treatment: str,
    covariates: list[str] | tuple[str, ...],
    weights: str | ArrayLike | None = "final_weight",
) -> IntoFrameT:
    """
    Weighted covariate means per arm and standardized mean differences.

    Parameters
    ----------
    df
        Record set, e.g. ``result.data``.
    treatment
        Binary 0/1 treatment column.
    covariates
        Covariates to compare. Non-numeric columns are split into one
        indicator per level (``"col=level"``).
    weights
        Weight column name, an array, or None for unweighted.

    Returns
    -------
    DataFrame
        One row per covariate (or level) with ``mean_treated``,
        ``mean_control``, ``smd_unweighted`` and ``smd``. The SMD denominator
        is the unweighted pooled standard deviation of the two arms, so the
        weighted and unweighted SMDs are on the same scale.
    """
    df_nw = nw.from_native(df, eager_only=True)
    missing = ({treatment} | set(covariates)) - set(df_nw.columns)
    if missing:
        raise MissingColumnError(f"Columns not found: {sorted(missing)}")

    w = _weights_array(df_nw, weights)
    treat = df_nw.get_column(treatment).to_numpy().astype(np.float64) == 1
    ones = np.ones(len(w))

    rows: dict[str, list] = {
        "covariate": [],
        "mean_treated": [],
        "mean_control": [],
        "smd_unweighted": [],
        "smd": [],
    }
    for name, x in _covariate_matrix(df_nw, list(covariates)).items():
        raw_t, var_t = _weighted_mean_var(x[treat], ones[treat])
        raw_c, var_c = _weighted_mean_var(x[~treat], ones[~treat])
        sd = np.sqrt((var_t + var_c) / 2)

        mean_t, _ = _weighted_mean_var(x[treat], w[treat])
        mean_c, _ = _weighted_mean_var(x[~treat], w[~treat])

        rows["covariate"].append(name)
        rows["mean_treated"].append(mean_t)
        rows["mean_control"].append(mean_c)
        rows["smd_unweighted"].append((raw_t - raw_c) / sd if sd > 0 else 0.0)
        rows["smd"].append((mean_t - mean_c) / sd if sd > 0 else 0.0)

    return nw.to_native(nw.from_dict(rows, backend=nw.get_native_namespace(df_nw)))


def pooled_balance(
    run: ImputationRun,
    treatment: str,
    covariates: list[str] | tuple[str, ...],
    weights_column: str = "final_weight",
    allow_partial: bool = False,
) -> Any:
    """
    ``balance_table`` averaged across imputations.

    Levels that appear in only some imputations are averaged over the
    imputations where they appear; ``n_imputations`` reports how many.
    """
    results = run.completed(allow_partial=allow_partial)
    sums: dict[str, np.ndarray] = {}
    counts: dict[str, int] = {}
    backend = None
    fields = ("mean_treated", "mean_control", "smd_unweighted", "smd")

    for result in results:
        table = nw.from_native(
            balance_table(result.data, treatment, covariates, weights_column), eager_only=True
        )
        backend = nw.get_native_namespace(table)
        names = table.get_column("covariate").to_list()
        values = np.column_stack([table.get_column(f).to_numpy() for f in fields])
        for name, row in zip(names, values):
            sums[name] = sums.get(name, np.zeros(len(fields))) + row
            counts[name] = counts.get(name, 0) + 1

    rows: dict[str, list] = {"covariate": list(sums)}
    for j, f in enumerate(fields):
        rows[f] = [float(sums[name][j] / counts[name]) for name in sums]
    rows["n_imputations"] = [counts[name] for name in sums]
    return nw.to_native(nw.from_dict(rows, backend=backend))
