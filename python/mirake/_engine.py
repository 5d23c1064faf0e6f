"""
NumPy RIM engine: iterative proportional fitting over eligible records.

Operates on plain arrays that already hold only the records being raked;
the frame-level API in ``_rake.py`` handles eligibility, validation and
scattering weights back to the full record set.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import NDArray

__all__ = [
    "RakeResult",
    "rim_iterate",
    "normalize_proportions",
    "calculate_efficiency",
]

logger = logging.getLogger(__name__)

_PERCENT_TOLERANCE = 1e-2


@dataclass
class RakeResult:
    """Result of a raking operation."""

    weights: NDArray[np.float64]
    iterations: int
    converged: bool
    efficiency: float
    weight_min: float
    weight_max: float
    max_deviation: float = 0.0
    performed: bool = True
    """False when no target distributions were given and weights passed through."""
    margins: dict[str, dict[Any, float]] = field(default_factory=dict)
    """Achieved weighted proportions per targeted covariate and level."""

    @property
    def weight_ratio(self) -> float:
        return self.weight_max / self.weight_min if self.weight_min > 0 else float("inf")

    def summary(self) -> dict[str, Any]:
        return {
            "performed": self.performed,
            "iterations": self.iterations,
            "converged": self.converged,
            "max_deviation": self.max_deviation,
            "efficiency": round(self.efficiency, 2),
            "weight_min": round(self.weight_min, 4),
            "weight_max": round(self.weight_max, 4),
            "weight_ratio": round(self.weight_ratio, 2),
        }


def normalize_proportions(props: dict[Any, float]) -> dict[Any, float]:
    """Percentages (sum of 100) become proportions; anything else is copied as given."""
    total = sum(props.values())
    if abs(total - 100.0) <= _PERCENT_TOLERANCE:
        return {k: v / 100.0 for k, v in props.items()}
    return dict(props)


def _build_index_cache(
    data: NDArray,
    target_codes: list[Any],
) -> dict[Any, NDArray[np.intp]]:
    cache = {}
    for code in target_codes:
        mask = data == code
        cache[code] = np.nonzero(mask)[0]
    return cache


def rake_on_variable(
    weights: NDArray[np.float64],
    index_cache: dict[Any, NDArray[np.intp]],
    target_props: dict[Any, float],
    total: float,
) -> NDArray[np.float64]:
    for code, target_prop in target_props.items():
        indices = index_cache.get(code)
        if indices is None or len(indices) == 0:
            continue
        current_sum = weights[indices].sum()
        if current_sum > 0:
            weights[indices] *= target_prop * total / current_sum
    return weights


def apply_caps(
    weights: NDArray[np.float64],
    min_cap: float | None,
    max_cap: float | None,
) -> NDArray[np.float64]:
    """Bound positive weights to [min_cap, max_cap] times the mean weight.

    The weight total is restored after every clipping pass.
    """
    if max_cap is None and min_cap is None:
        return weights
    total = weights.sum()
    positive = weights > 0
    if total <= 0 or not positive.any():
        return weights
    max_iter = 100
    for _ in range(max_iter):
        changed = False
        mean = weights.mean()
        if max_cap is not None and weights.max() > max_cap * mean:
            weights = np.where(positive, np.clip(weights, None, max_cap * mean), 0.0)
            weights = weights * (total / weights.sum())
            changed = True
        mean = weights.mean()
        if min_cap is not None and weights[positive].min() < min_cap * mean:
            weights = np.where(positive, np.clip(weights, min_cap * mean, None), 0.0)
            weights = weights * (total / weights.sum())
            changed = True
        if not changed:
            break
    return weights


def calculate_efficiency(weights: NDArray[np.float64]) -> float:
    n = len(weights)
    if n == 0:
        return 0.0
    sum_w = weights.sum()
    sum_w_sq = (weights**2).sum()
    if sum_w_sq == 0:
        return 0.0
    return (sum_w**2 / (n * sum_w_sq)) * 100


def _margins(
    weights: NDArray[np.float64],
    index_caches: dict[str, dict[Any, NDArray[np.intp]]],
    targets: dict[str, dict[Any, float]],
) -> dict[str, dict[Any, float]]:
    total = weights.sum()
    margins: dict[str, dict[Any, float]] = {}
    for col, props in targets.items():
        margins[col] = {
            code: (float(weights[index_caches[col][code]].sum() / total) if total > 0 else 0.0)
            for code in props
        }
    return margins


def _max_deviation(
    margins: dict[str, dict[Any, float]],
    targets: dict[str, dict[Any, float]],
) -> float:
    deviation = 0.0
    for col, props in targets.items():
        for code, target_prop in props.items():
            deviation = max(deviation, abs(margins[col][code] - target_prop))
    return float(deviation)


def rim_iterate(
    column_data: dict[str, NDArray],
    targets: dict[str, dict[Any, float]],
    base_weights: NDArray[np.float64] | None = None,
    max_iterations: int = 1000,
    tolerance: float = 1e-4,
    min_cap: float | None = None,
    max_cap: float | None = None,
    cap_correction: bool = True,
) -> RakeResult:
    """
    Rake ``base_weights`` until every targeted marginal is within ``tolerance``.

    One round adjusts each targeted covariate in turn. The sum of the
    weights is preserved, so raking a set of unit weights keeps their mean
    at 1. Iteration stops on convergence or after ``max_iterations`` rounds;
    the caller decides what non-convergence means.
    """
    first_col = next(iter(column_data.values()))
    n_rows = len(first_col)

    if n_rows == 0:
        return RakeResult(
            weights=np.array([], dtype=np.float64),
            iterations=0,
            converged=True,
            efficiency=100.0,
            weight_min=1.0,
            weight_max=1.0,
        )

    normalized_targets = {col: normalize_proportions(props) for col, props in targets.items()}

    index_caches = {}
    for col, props in normalized_targets.items():
        if col not in column_data:
            raise KeyError(f"Target column '{col}' not found in data")
        index_caches[col] = _build_index_cache(column_data[col], list(props.keys()))

    if base_weights is None:
        weights = np.ones(n_rows, dtype=np.float64)
    else:
        weights = np.array(base_weights, dtype=np.float64, copy=True)
    total = weights.sum()

    effective_min_cap = min_cap
    effective_max_cap = max_cap
    if cap_correction:
        if effective_max_cap is not None:
            effective_max_cap += 0.0001
        if effective_min_cap is not None:
            effective_min_cap -= 0.0001

    margins = _margins(weights, index_caches, normalized_targets)
    deviation = _max_deviation(margins, normalized_targets)
    converged = bool(deviation < tolerance)
    iteration = 0

    while not converged and iteration < max_iterations:
        iteration += 1

        for col, props in normalized_targets.items():
            weights = rake_on_variable(weights, index_caches[col], props, total)

        if effective_min_cap is not None or effective_max_cap is not None:
            weights = apply_caps(weights, effective_min_cap, effective_max_cap)

        margins = _margins(weights, index_caches, normalized_targets)
        deviation = _max_deviation(margins, normalized_targets)
        converged = bool(deviation < tolerance)

    logger.debug(
        "Raking finished after %d rounds (converged=%s, max deviation=%.3g)",
        iteration,
        converged,
        deviation,
    )

    positive = weights[weights > 0]
    return RakeResult(
        weights=weights,
        iterations=iteration,
        converged=converged,
        efficiency=calculate_efficiency(weights),
        weight_min=float(positive.min()) if len(positive) else 0.0,
        weight_max=float(weights.max()),
        max_deviation=float(deviation),
        margins=margins,
    )
