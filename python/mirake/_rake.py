"""
Narwhals-based raking API.

Supports both polars and pandas DataFrames transparently. Raking runs over
the eligible records only; ineligible records always end with weight 0.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import narwhals as nw
import numpy as np
from narwhals.typing import IntoFrameT

from ._engine import RakeResult, calculate_efficiency, normalize_proportions, rim_iterate
from ._errors import (
    ConfigurationError,
    MissingColumnError,
    NonConvergenceError,
    RakingConvergenceWarning,
    TargetSpecError,
    TargetSpecMismatchError,
)

if TYPE_CHECKING:
    from narwhals.typing import IntoFrame
    from numpy.typing import ArrayLike, NDArray

__all__ = [
    "raking_engine",
    "rake",
    "rake_with_diagnostics",
    "check_targets",
    "validate_targets",
    "RakeResult",
    "GroupedRakeResult",
]

logger = logging.getLogger(__name__)

Targets = dict[str, dict[Any, float]]

_SUM_TOLERANCE = 1e-4


def _column_to_numpy(df: nw.DataFrame, col: str) -> np.ndarray:
    """Extract one column as a numpy array, keeping its native value type."""
    return np.asarray(df.get_column(col).to_numpy())


def _add_weight_column(
    df: nw.DataFrame,
    weights: np.ndarray,
    column_name: str,
) -> nw.DataFrame:
    """Add a numpy array as a new column to a narwhals DataFrame."""
    nw_series = nw.new_series(
        column_name,
        weights,
        dtype=nw.Float64,
        backend=nw.get_native_namespace(df),
    )
    return df.with_columns(nw_series)


def _normalize_targets(
    targets: Targets | list[Targets],
) -> Targets:
    """
    Normalize targets to a consistent format.

    Accepts:
    - Dict: {"c_smoking_history": {True: 64, False: 36}, "dem_race": {...}}
    - List of dicts (weightipy style): [{"c_smoking_history": {...}}, {"dem_race": {...}}]

    Percentages are converted to proportions.
    """
    if isinstance(targets, list):
        merged: Targets = {}
        for t in targets:
            merged.update(t)
        targets = merged
    return {col: normalize_proportions(props) for col, props in targets.items()}


def _is_null(value: Any) -> bool:
    return value is None or (isinstance(value, float) and value != value)


def _target_problems(
    df_nw: nw.DataFrame,
    targets: Targets,
    eligible: NDArray[np.bool_] | None,
) -> tuple[list[tuple[type[Exception], str]], list[str]]:
    """Collect (error class, message) pairs and warning messages."""
    errors: list[tuple[type[Exception], str]] = []
    warns: list[str] = []
    if eligible is None:
        eligible = np.ones(len(df_nw), dtype=bool)

    for col, props in targets.items():
        if col not in df_nw.columns:
            errors.append((MissingColumnError, f"Target column '{col}' not found in DataFrame"))
            continue

        values = list(props.values())
        if any(_is_null(v) or v < 0 for v in values):
            errors.append((TargetSpecError, f"Targets for '{col}' contain negative or missing values"))
            continue
        total = sum(values)
        if abs(total - 1.0) > _SUM_TOLERANCE:
            errors.append(
                (TargetSpecError, f"Targets for '{col}' sum to {total:.6g}, expected 1.0 (or 100%)")
            )
            continue

        data = _column_to_numpy(df_nw, col)
        eligible_values = data[eligible].tolist()
        if any(_is_null(v) for v in eligible_values):
            errors.append(
                (TargetSpecError, f"Column '{col}' has missing values among records to be re-weighted")
            )
            continue

        observed = {v for v in data.tolist() if not _is_null(v)}
        observed_eligible = set(eligible_values)

        unknown = [v for v in observed if v not in props]
        if unknown:
            errors.append(
                (
                    TargetSpecMismatchError,
                    f"Levels {sorted(map(str, unknown))} of '{col}' have no target proportion",
                )
            )
            continue

        for code, target_value in props.items():
            if code in observed_eligible:
                continue
            if target_value > 0:
                errors.append(
                    (
                        TargetSpecMismatchError,
                        f"Level {code!r} of '{col}' has target {target_value:.4g} "
                        "but no record to be re-weighted carries it",
                    )
                )
            else:
                warns.append(f"Code {code!r} in targets for '{col}' not found in data")

    return errors, warns


def check_targets(
    df: IntoFrame,
    targets: Targets | list[Targets],
    eligible: ArrayLike | None = None,
) -> Targets:
    """
    Raise on the first problem with ``targets`` against ``df``.

    Returns the normalized targets (proportions) when everything lines up.
    """
    df_nw = nw.from_native(df, eager_only=True)
    targets_dict = _normalize_targets(targets)
    mask = None if eligible is None else np.asarray(eligible, dtype=bool)
    errors, _ = _target_problems(df_nw, targets_dict, mask)
    if errors:
        exc_class, message = errors[0]
        raise exc_class(message)
    return targets_dict


def _as_base_weights(base_weights: ArrayLike | None, n_rows: int) -> NDArray[np.float64]:
    if base_weights is None:
        return np.ones(n_rows, dtype=np.float64)
    base = np.array(base_weights, dtype=np.float64, copy=True)
    if base.shape != (n_rows,):
        raise ConfigurationError(
            f"base_weights has shape {base.shape}, expected ({n_rows},)"
        )
    if not np.isfinite(base).all() or (base < 0).any():
        raise ConfigurationError("base_weights must be finite and non-negative")
    return base


def _as_eligibility(
    eligibility: ArrayLike | None,
    base: NDArray[np.float64],
) -> NDArray[np.bool_]:
    if eligibility is None:
        return base > 0
    mask = np.asarray(eligibility)
    if mask.shape != base.shape:
        raise ConfigurationError(
            f"eligibility has shape {mask.shape}, expected {base.shape}"
        )
    # A zero base weight can never be raked up to a positive weight
    return mask.astype(bool) & (base > 0)


def _passthrough(base: NDArray[np.float64], eligible: NDArray[np.bool_]) -> RakeResult:
    positive = base[eligible & (base > 0)]
    return RakeResult(
        weights=base.copy(),
        iterations=0,
        converged=True,
        efficiency=calculate_efficiency(base[eligible]),
        weight_min=float(positive.min()) if len(positive) else 0.0,
        weight_max=float(base.max()) if len(base) else 0.0,
        performed=False,
    )


def _handle_nonconvergence(
    result: RakeResult,
    tolerance: float,
    policy: str,
    label: str = "",
) -> None:
    if result.converged:
        return
    message = (
        f"Raking{label} did not converge within {result.iterations} iterations "
        f"(max deviation {result.max_deviation:.3g}, tolerance {tolerance:g})"
    )
    if policy == "raise":
        raise NonConvergenceError(message)
    warnings.warn(message, RakingConvergenceWarning, stacklevel=3)


def _scale_to_total(
    weights: NDArray[np.float64],
    eligible: NDArray[np.bool_],
    total: float | None,
) -> None:
    if total is None:
        return
    if total <= 0:
        raise ValueError(f"total must be positive, got {total}")
    raked_sum = weights[eligible].sum()
    if raked_sum > 0:
        weights[eligible] *= total / raked_sum


def raking_engine(
    records: IntoFrame,
    targets: Targets | list[Targets] | None,
    base_weights: ArrayLike | None = None,
    eligibility: ArrayLike | None = None,
    *,
    by: str | list[str] | tuple[str, ...] | None = None,
    max_iterations: int = 1000,
    tolerance: float = 1e-4,
    min_cap: float | None = None,
    max_cap: float | None = None,
    on_nonconvergence: str = "raise",
    total: float | None = None,
    cap_correction: bool = True,
) -> RakeResult | GroupedRakeResult:
    """
    Rake the eligible records of ``records`` to target marginal proportions.

    Parameters
    ----------
    records
        Record set (polars or pandas) holding the targeted covariates.
    targets
        ``{covariate: {level: proportion}}``. Proportions (0-1) or
        percentages (0-100). ``None`` or ``{}`` means no raking: base weights
        pass through unchanged and the result has ``performed=False``.
    base_weights
        Starting weight per record (matching indicator or IPW weight).
        Defaults to 1 for every record.
    eligibility
        Boolean mask of records to re-weight. Defaults to ``base_weights > 0``.
        Records with a zero base weight are never eligible.
    by
        Column(s) to rake within, e.g. the treatment column so that every
        arm reproduces the targets on its own.
    max_iterations
        Maximum number of raking rounds.
    tolerance
        Convergence criterion: largest absolute gap between achieved and
        target proportions.
    min_cap, max_cap
        Optional bounds on weights relative to the mean eligible weight.
    on_nonconvergence
        ``"raise"`` raises ``NonConvergenceError``; ``"warn"`` emits a
        ``RakingConvergenceWarning`` and returns ``converged=False``.
    total
        If set, scale the raked weights so they sum to this value.

    Returns
    -------
    RakeResult or GroupedRakeResult
        ``weights`` covers every record in input order; ineligible records
        carry 0 (or their unchanged base weight on pass-through).

    Raises
    ------
    MissingColumnError, TargetSpecError, TargetSpecMismatchError
        Before any weight is computed.
    NonConvergenceError
        If the iteration budget is exhausted and ``on_nonconvergence="raise"``.
    """
    if on_nonconvergence not in ("raise", "warn"):
        raise ConfigurationError(
            f"on_nonconvergence must be 'raise' or 'warn', got '{on_nonconvergence}'"
        )

    df_nw = nw.from_native(records, eager_only=True)
    n_rows = len(df_nw)
    base = _as_base_weights(base_weights, n_rows)
    eligible = _as_eligibility(eligibility, base)

    if not targets:
        logger.info("No target distributions specified, no re-weighting will be performed.")
        return _passthrough(base, eligible)

    targets_dict = _normalize_targets(targets)
    errors, warns = _target_problems(df_nw, targets_dict, eligible)
    if errors:
        exc_class, message = errors[0]
        raise exc_class(message)
    for message in warns:
        logger.debug(message)

    target_columns = list(targets_dict.keys())
    columns = {col: _column_to_numpy(df_nw, col) for col in target_columns}

    if by is not None:
        return _rake_by(
            df_nw,
            columns,
            targets_dict,
            base,
            eligible,
            [by] if isinstance(by, str) else list(by),
            max_iterations=max_iterations,
            tolerance=tolerance,
            min_cap=min_cap,
            max_cap=max_cap,
            on_nonconvergence=on_nonconvergence,
            total=total,
            cap_correction=cap_correction,
        )

    indices = np.nonzero(eligible)[0]
    result = rim_iterate(
        column_data={col: data[indices] for col, data in columns.items()},
        targets=targets_dict,
        base_weights=base[indices],
        max_iterations=max_iterations,
        tolerance=tolerance,
        min_cap=min_cap,
        max_cap=max_cap,
        cap_correction=cap_correction,
    )
    _handle_nonconvergence(result, tolerance, on_nonconvergence)

    full_weights = np.zeros(n_rows, dtype=np.float64)
    full_weights[indices] = result.weights
    _scale_to_total(full_weights, eligible, total)

    result.weights = full_weights
    return result


def _rake_by(
    df_nw: nw.DataFrame,
    columns: dict[str, np.ndarray],
    targets: Targets,
    base: NDArray[np.float64],
    eligible: NDArray[np.bool_],
    by: list[str],
    *,
    max_iterations: int,
    tolerance: float,
    min_cap: float | None,
    max_cap: float | None,
    on_nonconvergence: str,
    total: float | None,
    cap_correction: bool,
) -> GroupedRakeResult:
    missing = set(by) - set(df_nw.columns)
    if missing:
        raise MissingColumnError(f"Grouping columns not found in DataFrame: {missing}")

    by_data = [_column_to_numpy(df_nw, col).tolist() for col in by]
    keys = [row[0] if len(by) == 1 else tuple(row) for row in zip(*by_data)]

    full_weights = np.zeros(len(base), dtype=np.float64)
    group_results: dict[Any, RakeResult] = {}

    # Groups in order of first appearance among eligible records
    group_indices: dict[Any, list[int]] = {}
    for i in np.nonzero(eligible)[0]:
        group_indices.setdefault(keys[i], []).append(int(i))

    for group_key, index_list in group_indices.items():
        indices = np.asarray(index_list, dtype=np.intp)
        group_mask = np.zeros(len(base), dtype=bool)
        group_mask[indices] = True
        errors, _ = _target_problems(df_nw, targets, group_mask)
        if errors:
            exc_class, message = errors[0]
            raise exc_class(f"Group {group_key!r}: {message}")

        result = rim_iterate(
            column_data={col: data[indices] for col, data in columns.items()},
            targets=targets,
            base_weights=base[indices],
            max_iterations=max_iterations,
            tolerance=tolerance,
            min_cap=min_cap,
            max_cap=max_cap,
            cap_correction=cap_correction,
        )
        _handle_nonconvergence(result, tolerance, on_nonconvergence, f" in group {group_key!r}")

        result.weights = result.weights.copy()
        group_results[group_key] = result
        full_weights[indices] = result.weights

    _scale_to_total(full_weights, eligible, total)

    return GroupedRakeResult(weights=full_weights, group_results=group_results)


@dataclass
class GroupedRakeResult:
    """Result of grouped raking with per-group diagnostics."""

    weights: np.ndarray
    """Weight factors for every record, 0 for ineligible records."""

    group_results: dict[Any, RakeResult]
    """Per-group weighting diagnostics."""

    performed: bool = True

    @property
    def converged(self) -> bool:
        return all(r.converged for r in self.group_results.values())

    @property
    def iterations(self) -> int:
        return max((r.iterations for r in self.group_results.values()), default=0)

    @property
    def max_deviation(self) -> float:
        return max((r.max_deviation for r in self.group_results.values()), default=0.0)

    @property
    def efficiency(self) -> float:
        return calculate_efficiency(self.weights[self.weights > 0])

    def summary(self) -> dict[str, Any]:
        return {
            "performed": self.performed,
            "iterations": self.iterations,
            "converged": self.converged,
            "max_deviation": self.max_deviation,
            "efficiency": round(self.efficiency, 2),
            "groups": len(self.group_results),
        }

    def summary_df(self) -> dict[str, list]:
        """Return summary as dict suitable for DataFrame creation."""
        rows = {
            "group": [],
            "n": [],
            "iterations": [],
            "converged": [],
            "efficiency": [],
            "weight_min": [],
            "weight_max": [],
            "weight_ratio": [],
        }
        for group, result in self.group_results.items():
            rows["group"].append(group)
            rows["n"].append(len(result.weights))
            rows["iterations"].append(result.iterations)
            rows["converged"].append(result.converged)
            rows["efficiency"].append(round(result.efficiency, 2))
            rows["weight_min"].append(round(result.weight_min, 4))
            rows["weight_max"].append(round(result.weight_max, 4))
            rows["weight_ratio"].append(round(result.weight_ratio, 2))
        return rows


def rake(
    df: IntoFrameT,
    targets: Targets | list[Targets],
    *,
    base_weight_column: str | None = None,
    eligibility_column: str | None = None,
    by: str | list[str] | None = None,
    max_iterations: int = 1000,
    tolerance: float = 1e-4,
    min_cap: float | None = None,
    max_cap: float | None = None,
    weight_column: str = "weight",
    on_nonconvergence: str = "raise",
    total: float | None = None,
    cap_correction: bool = True,
) -> IntoFrameT:
    """
    Apply raking weights to a DataFrame.

    Examples
    --------
    >>> import polars as pl
    >>> import mirake
    >>> df = pl.DataFrame({"smoker": [True, True, False, False, False]})
    >>> weighted = mirake.rake(df, {"smoker": {True: 64, False: 36}})
    >>> weighted["weight"]
    """
    result_df, _ = rake_with_diagnostics(
        df,
        targets,
        base_weight_column=base_weight_column,
        eligibility_column=eligibility_column,
        by=by,
        max_iterations=max_iterations,
        tolerance=tolerance,
        min_cap=min_cap,
        max_cap=max_cap,
        weight_column=weight_column,
        on_nonconvergence=on_nonconvergence,
        total=total,
        cap_correction=cap_correction,
    )
    return result_df


def rake_with_diagnostics(
    df: IntoFrameT,
    targets: Targets | list[Targets],
    *,
    base_weight_column: str | None = None,
    eligibility_column: str | None = None,
    by: str | list[str] | None = None,
    max_iterations: int = 1000,
    tolerance: float = 1e-4,
    min_cap: float | None = None,
    max_cap: float | None = None,
    weight_column: str = "weight",
    on_nonconvergence: str = "raise",
    total: float | None = None,
    cap_correction: bool = True,
) -> tuple[IntoFrameT, RakeResult | GroupedRakeResult]:
    """
    Apply raking weights and return diagnostics.

    Same as rake() but also returns the RakeResult (or GroupedRakeResult
    when ``by`` is given).

    Parameters
    ----------
    base_weight_column
        Column holding starting weights (e.g. matching or IPW weights).
    eligibility_column
        Boolean (or 0/1) column selecting the records to re-weight.
    """
    df_nw = nw.from_native(df, eager_only=True)

    for col in (base_weight_column, eligibility_column):
        if col is not None and col not in df_nw.columns:
            raise MissingColumnError(f"Column '{col}' not found in DataFrame")

    base = None if base_weight_column is None else _column_to_numpy(df_nw, base_weight_column)
    eligibility = (
        None if eligibility_column is None else _column_to_numpy(df_nw, eligibility_column)
    )

    result = raking_engine(
        df_nw,
        targets,
        base,
        eligibility,
        by=by,
        max_iterations=max_iterations,
        tolerance=tolerance,
        min_cap=min_cap,
        max_cap=max_cap,
        on_nonconvergence=on_nonconvergence,
        total=total,
        cap_correction=cap_correction,
    )

    result_df = _add_weight_column(df_nw, result.weights, weight_column)
    return nw.to_native(result_df), result


def validate_targets(
    df: IntoFrame,
    targets: Targets | list[Targets],
) -> dict[str, list[str]]:
    """
    Validate targets against a DataFrame without raising.

    Errors (raking would refuse to run):
    - Target column missing
    - Proportions negative or not summing to 100% / 1.0
    - Missing values in a targeted column
    - Data levels without a target, or positive targets without data

    Warnings:
    - Zero-proportion target codes absent from the data

    Returns
    -------
    dict
        {"errors": [...], "warnings": [...]}
    """
    df_nw = nw.from_native(df, eager_only=True)
    targets_dict = _normalize_targets(targets)
    errors, warns = _target_problems(df_nw, targets_dict, None)
    return {"errors": [message for _, message in errors], "warnings": warns}
