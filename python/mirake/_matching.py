"""
Greedy nearest-neighbour matching on a propensity distance.

Every record keeps its position: unmatched units get weight 0 and
subclass -1, so callers always see the complete record set.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from ._config import MatchingConfig
from ._errors import DataSufficiencyWarning, InsufficientMatchesError

if TYPE_CHECKING:
    from numpy.typing import NDArray

__all__ = ["MatchResult", "nearest_neighbor_match"]

logger = logging.getLogger(__name__)


@dataclass
class MatchResult:
    """Per-record matching output, aligned with the input order."""

    weights: NDArray[np.float64]
    """Matching weights: 1 for matched treated, ratio-adjusted for controls, 0 if unmatched."""

    subclass: NDArray[np.int64]
    """Matched-set id (1-based), -1 for unmatched units and under replacement."""

    caliper: float | None
    """Caliper on the distance scale actually applied."""

    n_treated: int
    n_control: int
    n_matched_treated: int
    n_matched_control: int

    @property
    def matched(self) -> NDArray[np.bool_]:
        return self.weights > 0


def _treated_order(
    distance: NDArray[np.float64],
    treated_idx: NDArray[np.intp],
    m_order: str,
    rng: np.random.Generator | None,
) -> NDArray[np.intp]:
    if m_order == "largest":
        return treated_idx[np.argsort(-distance[treated_idx], kind="stable")]
    if m_order == "smallest":
        return treated_idx[np.argsort(distance[treated_idx], kind="stable")]
    if m_order == "random":
        rng = rng if rng is not None else np.random.default_rng()
        return rng.permutation(treated_idx)
    return treated_idx


def nearest_neighbor_match(
    distance: NDArray[np.float64],
    treatment: NDArray[np.int64],
    config: MatchingConfig,
    rng: np.random.Generator | None = None,
) -> MatchResult:
    """
    Match each treated unit to its ``ratio`` nearest controls.

    Matching proceeds in ``ratio`` passes; in each pass every still-eligible
    treated unit (in ``m_order``) takes the closest available control within
    the caliper. A treated unit that finds no first match stays unmatched.
    Without replacement a control is used at most once.

    Control weights are the sum over their matched treated units of
    1 / (number of controls matched to that unit), rescaled so that they
    sum to the number of matched controls.

    Raises
    ------
    InsufficientMatchesError
        If not a single treated unit could be matched.
    """
    distance = np.asarray(distance, dtype=np.float64)
    treatment = np.asarray(treatment)
    n = len(distance)

    treated_idx = np.nonzero(treatment == 1)[0]
    control_idx = np.nonzero(treatment == 0)[0]
    n_treated, n_control = len(treated_idx), len(control_idx)

    if not config.replace and n_control < config.ratio * n_treated:
        warnings.warn(
            f"Fewer control units ({n_control}) than needed for {config.ratio}:1 matching "
            f"of {n_treated} treated units; not all treated units will be matched.",
            DataSufficiencyWarning,
            stacklevel=2,
        )

    caliper = None
    if config.caliper is not None:
        caliper = config.caliper * float(np.std(distance, ddof=1)) if config.std_caliper else config.caliper

    control_distance = distance[control_idx]
    available = np.ones(n_control, dtype=bool)
    matches: dict[int, list[int]] = {}

    order = _treated_order(distance, treated_idx, config.m_order, rng)
    for pass_number in range(config.ratio):
        for t in order:
            t = int(t)
            if pass_number > 0 and t not in matches:
                continue
            gaps = np.abs(control_distance - distance[t])
            if not config.replace:
                gaps[~available] = np.inf
            elif t in matches:
                gaps[matches[t]] = np.inf
            j = int(np.argmin(gaps)) if n_control else -1
            if j < 0 or not np.isfinite(gaps[j]):
                continue
            if caliper is not None and gaps[j] > caliper:
                continue
            matches.setdefault(t, []).append(j)
            if not config.replace:
                available[j] = False

    if not matches:
        raise InsufficientMatchesError(
            f"No treated unit could be matched ({n_treated} treated, {n_control} controls, "
            f"caliper={caliper})"
        )

    weights = np.zeros(n, dtype=np.float64)
    subclass = np.full(n, -1, dtype=np.int64)
    control_weights = np.zeros(n_control, dtype=np.float64)

    for set_id, (t, controls) in enumerate(matches.items(), start=1):
        weights[t] = 1.0
        for j in controls:
            control_weights[j] += 1.0 / len(controls)
        if not config.replace:
            subclass[t] = set_id
            subclass[control_idx[controls]] = set_id

    used = control_weights > 0
    n_matched_control = int(used.sum())
    control_weights *= n_matched_control / control_weights.sum()
    weights[control_idx] = control_weights

    n_matched_treated = len(matches)
    logger.debug(
        "Matched %d/%d treated units to %d/%d controls (caliper=%s)",
        n_matched_treated,
        n_treated,
        n_matched_control,
        n_control,
        caliper,
    )
    if n_matched_treated < n_treated:
        logger.info("%d treated units left unmatched", n_treated - n_matched_treated)

    return MatchResult(
        weights=weights,
        subclass=subclass,
        caliper=caliper,
        n_treated=n_treated,
        n_control=n_control,
        n_matched_treated=n_matched_treated,
        n_matched_control=n_matched_control,
    )
