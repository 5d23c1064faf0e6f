"""
Immutable configuration values passed into each pipeline call.

Nothing here is module-level state: callers build their own specs and
configs, so concurrent analyses can use different covariate sets.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from ._errors import ConfigurationError

__all__ = [
    "PropensitySpec",
    "MatchingConfig",
    "WeightingConfig",
    "RakingConfig",
    "MODES",
]

MODES = ("matching", "weighting")

_ESTIMANDS = ("ATT", "ATE", "ATC")
_M_ORDERS = ("largest", "smallest", "random", "data")


@dataclass(frozen=True)
class PropensitySpec:
    """
    Treatment-assignment model specification.

    Parameters
    ----------
    treatment
        Binary treatment column (the model outcome).
    predictors
        Covariate columns. Numeric and boolean columns enter as-is
        (standardised); anything else is one-hot encoded.
    estimator
        Optional scikit-learn classifier with ``predict_proba``. Defaults to
        an unpenalised logistic regression.
    """

    treatment: str
    predictors: tuple[str, ...]
    estimator: Any = field(default=None, compare=False)

    def __post_init__(self) -> None:
        # Accept any sequence of names but store a tuple
        object.__setattr__(self, "predictors", tuple(self.predictors))
        if not self.predictors:
            raise ConfigurationError("PropensitySpec needs at least one predictor")
        if self.treatment in self.predictors:
            raise ConfigurationError(
                f"Treatment column '{self.treatment}' cannot also be a predictor"
            )
        if len(set(self.predictors)) != len(self.predictors):
            raise ConfigurationError("PropensitySpec predictors contain duplicates")

    @property
    def columns(self) -> list[str]:
        return [self.treatment, *self.predictors]


@dataclass(frozen=True)
class MatchingConfig:
    """Nearest-neighbour matching on the propensity distance."""

    method: Literal["nearest"] = "nearest"
    distance: Literal["glm", "logit"] = "glm"
    ratio: int = 1
    caliper: float | None = None
    std_caliper: bool = True
    replace: bool = False
    m_order: Literal["largest", "smallest", "random", "data"] = "largest"
    estimand: Literal["ATT"] = "ATT"

    def __post_init__(self) -> None:
        if self.method != "nearest":
            raise ConfigurationError(
                f"Unsupported matching method '{self.method}', expected 'nearest'"
            )
        if self.distance not in ("glm", "logit"):
            raise ConfigurationError(
                f"distance must be 'glm' or 'logit', got '{self.distance}'"
            )
        if not isinstance(self.ratio, int) or self.ratio < 1:
            raise ConfigurationError(f"ratio must be a positive integer, got {self.ratio}")
        if self.caliper is not None and self.caliper <= 0:
            raise ConfigurationError(f"caliper must be positive, got {self.caliper}")
        if self.m_order not in _M_ORDERS:
            raise ConfigurationError(
                f"m_order must be one of {_M_ORDERS}, got '{self.m_order}'"
            )
        if self.estimand != "ATT":
            raise ConfigurationError("Nearest-neighbour matching targets the ATT only")


@dataclass(frozen=True)
class WeightingConfig:
    """Inverse-probability-of-treatment weighting."""

    method: Literal["glm"] = "glm"
    estimand: Literal["ATT", "ATE", "ATC"] = "ATT"
    stabilize: bool = False
    trim_at: float | None = None
    trim_lower: bool = False

    def __post_init__(self) -> None:
        if self.method != "glm":
            raise ConfigurationError(
                f"Unsupported weighting method '{self.method}', expected 'glm'"
            )
        if self.estimand not in _ESTIMANDS:
            raise ConfigurationError(
                f"estimand must be one of {_ESTIMANDS}, got '{self.estimand}'"
            )
        if self.trim_at is not None and not 0 < self.trim_at < 1:
            raise ConfigurationError(
                f"trim_at must be a quantile strictly between 0 and 1, got {self.trim_at}"
            )
        if self.stabilize and self.estimand != "ATE":
            raise ConfigurationError("stabilize only applies to the ATE")


@dataclass(frozen=True)
class RakingConfig:
    """
    Raking (iterative proportional fitting) settings.

    ``eligibility_threshold`` decides which records are re-weighted: a
    record is eligible iff its base weight is strictly greater than the
    threshold. The default 0.0 reproduces "weight != 0".
    """

    max_iterations: int = 1000
    tolerance: float = 1e-4
    min_cap: float | None = None
    max_cap: float | None = None
    on_nonconvergence: Literal["raise", "warn"] = "raise"
    eligibility_threshold: float = 0.0
    by: str | tuple[str, ...] | None = None
    total: float | None = None

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ConfigurationError("max_iterations must be at least 1")
        if self.tolerance <= 0:
            raise ConfigurationError("tolerance must be positive")
        if self.on_nonconvergence not in ("raise", "warn"):
            raise ConfigurationError(
                f"on_nonconvergence must be 'raise' or 'warn', got '{self.on_nonconvergence}'"
            )
        if self.eligibility_threshold < 0:
            raise ConfigurationError("eligibility_threshold must be non-negative")
        if self.min_cap is not None and self.max_cap is not None and self.min_cap > self.max_cap:
            raise ConfigurationError("min_cap cannot exceed max_cap")
        if self.total is not None and self.total <= 0:
            raise ConfigurationError(f"total must be positive, got {self.total}")
        if isinstance(self.by, list):
            object.__setattr__(self, "by", tuple(self.by))

    def engine_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for ``raking_engine``."""
        return {
            "by": self.by,
            "max_iterations": self.max_iterations,
            "tolerance": self.tolerance,
            "min_cap": self.min_cap,
            "max_cap": self.max_cap,
            "on_nonconvergence": self.on_nonconvergence,
            "total": self.total,
        }
