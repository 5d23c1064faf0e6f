"""Inverse-probability-of-treatment weights and quantile trimming."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from ._config import WeightingConfig

if TYPE_CHECKING:
    from numpy.typing import NDArray

__all__ = ["ipw_weights", "trim_weights"]


def ipw_weights(
    scores: NDArray[np.float64],
    treatment: NDArray[np.int64],
    config: WeightingConfig,
) -> NDArray[np.float64]:
    """
    Weights targeting ``config.estimand``, trimmed if ``config.trim_at`` is set.

    ATT: treated 1, controls ps / (1 - ps).
    ATE: 1 / ps and 1 / (1 - ps), optionally stabilised by the marginal
    treatment prevalence.
    ATC: treated (1 - ps) / ps, controls 1.
    """
    ps = np.asarray(scores, dtype=np.float64)
    treated = np.asarray(treatment) == 1

    if config.estimand == "ATT":
        weights = np.where(treated, 1.0, ps / (1.0 - ps))
        focal = treated
    elif config.estimand == "ATC":
        weights = np.where(treated, (1.0 - ps) / ps, 1.0)
        focal = ~treated
    else:
        weights = np.where(treated, 1.0 / ps, 1.0 / (1.0 - ps))
        if config.stabilize:
            p_treat = treated.mean()
            weights = weights * np.where(treated, p_treat, 1.0 - p_treat)
        focal = None

    if config.trim_at is not None:
        # The focal arm's weights are fixed at 1 and are not trimmed
        subset = ~focal if focal is not None else None
        weights = trim_weights(weights, config.trim_at, lower=config.trim_lower, subset=subset)

    return weights


def trim_weights(
    weights: NDArray[np.float64],
    at: float,
    *,
    lower: bool = False,
    subset: NDArray[np.bool_] | None = None,
) -> NDArray[np.float64]:
    """
    Cap weights at the ``at`` quantile (``at < 0.5`` is read as ``1 - at``).

    With ``lower=True`` weights below the mirrored ``1 - at`` quantile are
    raised to it as well. Quantiles are computed over ``subset`` (all records
    by default) and only weights in ``subset`` are changed.
    """
    if not 0 < at < 1:
        raise ValueError(f"at must be strictly between 0 and 1, got {at}")
    if at < 0.5:
        at = 1.0 - at

    trimmed = np.array(weights, dtype=np.float64, copy=True)
    mask = np.ones(len(trimmed), dtype=bool) if subset is None else np.asarray(subset, dtype=bool)
    if not mask.any():
        return trimmed

    values = trimmed[mask]
    upper_value = np.quantile(values, at)
    values = np.minimum(values, upper_value)
    if lower:
        lower_value = np.quantile(trimmed[mask], 1.0 - at)
        values = np.maximum(values, lower_value)
    trimmed[mask] = values
    return trimmed
