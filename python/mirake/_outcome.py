"""
Weighted outcome models fit per imputation and pooled with Rubin's rules.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import narwhals as nw
import numpy as np
import pandas as pd
from lifelines import CoxPHFitter

from ._errors import MissingColumnError
from ._pooling import PooledEstimate, pool

if TYPE_CHECKING:
    from ._orchestrate import ImputationRun

__all__ = ["cox_outcome", "estimate_effect"]

logger = logging.getLogger(__name__)

OutcomeFitter = Callable[[Any], tuple[float, float]]


def cox_outcome(
    duration_col: str,
    event_col: str,
    treatment_col: str,
    weights_col: str = "final_weight",
    cluster_col: str | None = "subclass",
    robust: bool = True,
    penalizer: float = 0.0,
) -> OutcomeFitter:
    """
    Build a weighted Cox fitter returning ``(log_hazard_ratio, std_error)``.

    Records with zero weight (unmatched or ineligible) are dropped before
    fitting. Robust standard errors are clustered on ``cluster_col`` when it
    is present and complete among the kept records (matched pairs), and
    left unclustered otherwise.
    """

    def fit(frame: Any) -> tuple[float, float]:
        df_nw = nw.from_native(frame, eager_only=True)
        required = [duration_col, event_col, treatment_col, weights_col]
        missing = set(required) - set(df_nw.columns)
        if missing:
            raise MissingColumnError(f"Outcome columns not found: {sorted(missing)}")

        weights = df_nw.get_column(weights_col).to_numpy().astype(np.float64)
        keep = weights > 0

        data = {
            "duration": df_nw.get_column(duration_col).to_numpy().astype(np.float64)[keep],
            "event": df_nw.get_column(event_col).to_numpy().astype(np.float64)[keep],
            treatment_col: df_nw.get_column(treatment_col).to_numpy().astype(np.float64)[keep],
            "weight": weights[keep],
        }

        use_cluster = None
        if cluster_col is not None and cluster_col in df_nw.columns:
            series = df_nw.get_column(cluster_col)
            nulls = series.is_null().to_numpy()[keep]
            if keep.any() and not nulls.any():
                data["cluster"] = series.fill_null(-1).to_numpy().astype(np.float64)[keep]
                use_cluster = "cluster"
            else:
                logger.debug("Cluster column '%s' incomplete; fitting unclustered", cluster_col)

        cph = CoxPHFitter(penalizer=penalizer)
        cph.fit(
            pd.DataFrame(data),
            duration_col="duration",
            event_col="event",
            weights_col="weight",
            cluster_col=use_cluster,
            robust=robust,
        )
        return float(cph.params_[treatment_col]), float(cph.standard_errors_[treatment_col])

    return fit


def estimate_effect(
    run: ImputationRun,
    fitter: OutcomeFitter,
    *,
    conf_level: float = 0.95,
    dfcom: float | None = None,
    allow_partial: bool = False,
) -> PooledEstimate:
    """
    Fit ``fitter`` on every successful imputation and pool the estimates.

    Parameters
    ----------
    run
        Output of ``run_across_imputations``.
    fitter
        Callable taking one result frame and returning
        ``(estimate, standard_error)``, e.g. ``cox_outcome(...)``.
    conf_level
        Confidence level of the pooled interval.
    allow_partial
        Pool over the successful imputations when some failed.

    Returns
    -------
    PooledEstimate
        Call ``.exp()`` for the hazard ratio scale.
    """
    results = run.completed(allow_partial=allow_partial)
    estimates = [fitter(result.data) for result in results]
    logger.info("Pooling %d of %d per-imputation estimates", len(estimates), run.n_imputations)
    return pool(
        estimates,
        conf_level=conf_level,
        dfcom=dfcom,
        expected_m=run.n_imputations,
        allow_partial=allow_partial,
    )
