"""
Rubin's rules for combining per-imputation estimates.

The degrees of freedom follow Barnard & Rubin (1999) with the small-sample
adjustment used by R's ``mice::pool``; without a complete-data df they
reduce to the classic Rubin (1987) formula.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import numpy as np
from scipy import stats

from ._errors import ConfigurationError, IncompleteImputationsError

__all__ = ["PooledEstimate", "pool", "pool_coefficients"]

_LAMBDA_FLOOR = 1e-4


@dataclass(frozen=True)
class PooledEstimate:
    """Pooled point estimate with Rubin's variance decomposition."""

    estimate: float
    std_error: float
    within: float
    between: float
    total: float
    df: float
    ci_lower: float
    ci_upper: float
    m: int
    riv: float
    lambda_: float
    fmi: float
    conf_level: float = 0.95

    def exp(self) -> tuple[float, float, float]:
        """Exponentiated estimate and confidence limits (e.g. a hazard ratio)."""
        return math.exp(self.estimate), math.exp(self.ci_lower), math.exp(self.ci_upper)

    def summary(self) -> dict[str, Any]:
        return {
            "estimate": self.estimate,
            "std_error": self.std_error,
            "ci_lower": self.ci_lower,
            "ci_upper": self.ci_upper,
            "conf_level": self.conf_level,
            "df": self.df,
            "m": self.m,
            "within": self.within,
            "between": self.between,
            "total": self.total,
            "riv": self.riv,
            "lambda": self.lambda_,
            "fmi": self.fmi,
        }


def _barnard_rubin_df(m: int, lambda_: float, dfcom: float | None) -> float:
    lambda_ = max(lambda_, _LAMBDA_FLOOR)
    df_old = (m - 1) / lambda_**2
    if dfcom is None or math.isinf(dfcom):
        return df_old
    df_obs = (dfcom + 1) / (dfcom + 3) * dfcom * (1 - lambda_)
    return df_old * df_obs / (df_old + df_obs)


def pool(
    estimates: Sequence[tuple[float, float]],
    *,
    conf_level: float = 0.95,
    dfcom: float | None = None,
    expected_m: int | None = None,
    allow_partial: bool = False,
) -> PooledEstimate:
    """
    Combine ``(estimate, standard_error)`` pairs with Rubin's rules.

    Parameters
    ----------
    estimates
        One ``(estimate, standard_error)`` pair per imputation.
    conf_level
        Confidence level of the interval.
    dfcom
        Complete-data degrees of freedom. ``None`` means infinite.
    expected_m
        Number of imputations the caller started with. Pooling fewer raises
        ``IncompleteImputationsError`` unless ``allow_partial`` is True.

    Returns
    -------
    PooledEstimate
        With M = 1 the between-imputation variance is 0, so the pooled
        estimate and standard error equal the single input.
    """
    if not 0 < conf_level < 1:
        raise ConfigurationError(f"conf_level must be between 0 and 1, got {conf_level}")
    pairs = np.asarray(list(estimates), dtype=np.float64)
    if pairs.size == 0:
        raise ConfigurationError("Cannot pool zero estimates")
    if pairs.ndim != 2 or pairs.shape[1] != 2:
        raise ConfigurationError("estimates must be (estimate, standard_error) pairs")
    if not np.all(np.isfinite(pairs)):
        raise ConfigurationError("estimates contain non-finite values")
    if np.any(pairs[:, 1] < 0):
        raise ConfigurationError("standard errors must be non-negative")

    m = len(pairs)
    if expected_m is not None and m < expected_m and not allow_partial:
        raise IncompleteImputationsError(
            f"Pooling {m} estimates but {expected_m} imputations were expected; "
            "pass allow_partial=True to pool the available ones"
        )

    qs = pairs[:, 0]
    within = float(np.mean(pairs[:, 1] ** 2))
    estimate = float(np.mean(qs))

    if m == 1:
        between = 0.0
        total = within
        riv = lambda_ = fmi = 0.0
        df = math.inf if dfcom is None else float(dfcom)
    else:
        between = float(np.var(qs, ddof=1))
        total = within + (1 + 1 / m) * between
        lambda_ = (1 + 1 / m) * between / total if total > 0 else 0.0
        riv = (1 + 1 / m) * between / within if within > 0 else math.inf
        df = _barnard_rubin_df(m, lambda_, dfcom)
        fmi = (riv + 2 / (df + 3)) / (riv + 1) if math.isfinite(riv) else 1.0

    std_error = math.sqrt(total)
    alpha = 1 - conf_level
    if math.isinf(df):
        crit = float(stats.norm.ppf(1 - alpha / 2))
    else:
        crit = float(stats.t.ppf(1 - alpha / 2, df))

    return PooledEstimate(
        estimate=estimate,
        std_error=std_error,
        within=within,
        between=between,
        total=total,
        df=df,
        ci_lower=estimate - crit * std_error,
        ci_upper=estimate + crit * std_error,
        m=m,
        riv=riv,
        lambda_=lambda_,
        fmi=fmi,
        conf_level=conf_level,
    )


def pool_coefficients(
    fits: Sequence[dict[str, tuple[float, float]]],
    **kwargs: Any,
) -> dict[str, PooledEstimate]:
    """
    Pool several coefficients term by term.

    Every fit must report the same terms. Keyword arguments go to ``pool``.
    """
    if not fits:
        raise ConfigurationError("Cannot pool zero fits")
    terms = list(fits[0])
    for i, fit in enumerate(fits[1:], start=1):
        if set(fit) != set(terms):
            raise ConfigurationError(
                f"Fit {i} reports terms {sorted(fit)}, expected {sorted(terms)}"
            )
    return {term: pool([fit[term] for fit in fits], **kwargs) for term in terms}
