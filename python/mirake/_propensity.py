"""Propensity-score model fitting on a single complete dataset."""

from __future__ import annotations

import warnings
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import narwhals as nw
import numpy as np
import pandas as pd
from scipy.special import logit
from sklearn.base import clone
from sklearn.compose import ColumnTransformer
from sklearn.exceptions import ConvergenceWarning
from sklearn.linear_model import LogisticRegression
from sklearn.pipeline import Pipeline
from sklearn.preprocessing import OneHotEncoder, StandardScaler

from ._config import PropensitySpec
from ._errors import PropensityModelError

if TYPE_CHECKING:
    from narwhals.typing import IntoFrame
    from numpy.typing import NDArray

__all__ = ["PropensityModel", "fit_propensity", "treatment_indicator"]


@dataclass
class PropensityModel:
    """Fitted treatment-assignment model and its per-record outputs."""

    spec: PropensitySpec
    estimator: Any
    scores: NDArray[np.float64]
    """P(treatment = 1 | covariates) per record, in input order."""
    treatment: NDArray[np.int64]

    @property
    def linear_predictor(self) -> NDArray[np.float64]:
        return logit(np.clip(self.scores, 1e-12, 1 - 1e-12))

    def distance(self, kind: str = "glm") -> NDArray[np.float64]:
        """Matching distance: the score itself (``"glm"``) or its logit."""
        if kind == "glm":
            return self.scores
        if kind == "logit":
            return self.linear_predictor
        raise PropensityModelError(f"Unknown distance '{kind}'")


def treatment_indicator(values: np.ndarray, column: str) -> NDArray[np.int64]:
    """Validate a binary treatment column and return it as 0/1 integers."""
    observed = set(values.tolist())
    if any(v is None or (isinstance(v, float) and v != v) for v in observed):
        raise PropensityModelError(f"Treatment column '{column}' has missing values")
    if not observed <= {0, 1}:
        raise PropensityModelError(
            f"Treatment column '{column}' must be binary (0/1), found {sorted(map(str, observed))}"
        )
    if len(observed) < 2:
        raise PropensityModelError(f"Treatment column '{column}' has a single arm only")
    return np.asarray(values, dtype=np.int64)


def _design_frame(
    df_nw: nw.DataFrame,
    predictors: tuple[str, ...],
) -> tuple[pd.DataFrame, list[str], list[str]]:
    columns: dict[str, np.ndarray] = {}
    numeric: list[str] = []
    categorical: list[str] = []
    for col in predictors:
        series = df_nw.get_column(col)
        if series.null_count() > 0:
            raise PropensityModelError(f"Predictor '{col}' has missing values")
        values = np.asarray(series.to_numpy())
        if values.dtype.kind in "biuf":
            columns[col] = values.astype(np.float64)
            numeric.append(col)
        else:
            columns[col] = values.astype(str)
            categorical.append(col)
    return pd.DataFrame(columns), numeric, categorical


def _build_estimator(spec: PropensitySpec, numeric: list[str], categorical: list[str]) -> Pipeline:
    transformers = []
    if numeric:
        transformers.append(("num", StandardScaler(), numeric))
    if categorical:
        transformers.append(
            ("cat", OneHotEncoder(drop="first", sparse_output=False), categorical)
        )
    if spec.estimator is not None:
        model = clone(spec.estimator)
    else:
        # C=inf is an unpenalised fit
        model = LogisticRegression(C=np.inf, max_iter=5_000)
    return Pipeline([("prep", ColumnTransformer(transformers)), ("model", model)])


def fit_propensity(frame: IntoFrame, spec: PropensitySpec) -> PropensityModel:
    """
    Fit the treatment-assignment model described by ``spec``.

    Raises
    ------
    PropensityModelError
        On a missing column, missing values, a non-binary or single-arm
        treatment, non-convergence, or fitted probabilities of exactly 0
        or 1. There is no fallback model.
    """
    df_nw = nw.from_native(frame, eager_only=True)

    missing = [c for c in spec.columns if c not in df_nw.columns]
    if missing:
        raise PropensityModelError(f"Propensity model columns not found: {missing}")

    treat = treatment_indicator(np.asarray(df_nw.get_column(spec.treatment).to_numpy()), spec.treatment)
    X, numeric, categorical = _design_frame(df_nw, spec.predictors)
    estimator = _build_estimator(spec, numeric, categorical)

    with warnings.catch_warnings():
        warnings.simplefilter("error", ConvergenceWarning)
        try:
            estimator.fit(X, treat)
        except (ValueError, ConvergenceWarning, np.linalg.LinAlgError) as exc:
            raise PropensityModelError(f"Propensity model failed to fit: {exc}") from exc

    classes = list(estimator.classes_)
    scores = np.asarray(estimator.predict_proba(X)[:, classes.index(1)], dtype=np.float64)

    if not np.isfinite(scores).all():
        raise PropensityModelError("Propensity model produced non-finite scores")
    if ((scores <= 0) | (scores >= 1)).any():
        raise PropensityModelError(
            "Propensity model produced probabilities of exactly 0 or 1 (complete separation)"
        )

    return PropensityModel(spec=spec, estimator=estimator, scores=scores, treatment=treat)
