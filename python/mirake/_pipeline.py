"""
Per-dataset match/weight and re-weight pipeline.

``match_or_weight`` runs the propensity model, matching or weighting, the
optional raking step and weight composition on one complete dataset, and
returns every input record in input order with its weights attached.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import narwhals as nw
import numpy as np

from ._compose import attach_weights, compose_weights, ensure_id_column
from ._config import MODES, MatchingConfig, PropensitySpec, RakingConfig, WeightingConfig
from ._engine import RakeResult
from ._errors import ConfigurationError, MissingColumnError, TargetSpecMismatchError
from ._matching import MatchResult, nearest_neighbor_match
from ._propensity import PropensityModel, fit_propensity
from ._rake import GroupedRakeResult, check_targets, raking_engine
from ._weighting import ipw_weights

if TYPE_CHECKING:
    from narwhals.typing import IntoFrame
    from numpy.typing import NDArray

__all__ = [
    "MatchWeightResult",
    "GroupedMatchWeightResult",
    "match_or_weight",
    "match_or_weight_by",
    "check_stratum_targets",
    "resolve_config",
]

logger = logging.getLogger(__name__)

Targets = dict[str, dict[Any, float]]

DISTANCE_COLUMN = "distance"
WEIGHTS_COLUMN = "weights"
SUBCLASS_COLUMN = "subclass"
FINAL_WEIGHT_COLUMN = "final_weight"


@dataclass
class MatchWeightResult:
    """Matched or weighted (and possibly re-weighted) record set for one dataset."""

    data: Any
    """Native frame: all input records in input order plus ``distance``,
    ``weights``, ``subclass`` (matching only) and ``final_weight``."""

    mode: str
    propensity: PropensityModel
    base_weights: NDArray[np.float64]
    eligible: NDArray[np.bool_]
    raking: RakeResult | GroupedRakeResult
    final_weights: NDArray[np.float64]
    match: MatchResult | None = None

    @property
    def reweighted(self) -> bool:
        """True when target distributions were applied."""
        return self.raking.performed

    def summary(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "mode": self.mode,
            "n": len(self.final_weights),
            "n_eligible": int(self.eligible.sum()),
            "reweighted": self.reweighted,
            "raking": self.raking.summary(),
        }
        if self.match is not None:
            out["n_matched_treated"] = self.match.n_matched_treated
            out["n_matched_control"] = self.match.n_matched_control
        return out


@dataclass
class GroupedMatchWeightResult:
    """Stratified result: one ``MatchWeightResult`` per stratum, recombined."""

    data: Any
    mode: str
    base_weights: NDArray[np.float64]
    eligible: NDArray[np.bool_]
    final_weights: NDArray[np.float64]
    group_results: dict[Any, MatchWeightResult] = field(default_factory=dict)

    @property
    def reweighted(self) -> bool:
        return any(r.reweighted for r in self.group_results.values())

    def summary(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "n": len(self.final_weights),
            "n_eligible": int(self.eligible.sum()),
            "reweighted": self.reweighted,
            "strata": {key: r.summary() for key, r in self.group_results.items()},
        }


def resolve_config(
    mode: str,
    config: MatchingConfig | WeightingConfig | None,
) -> MatchingConfig | WeightingConfig:
    """Check ``mode`` and that ``config`` belongs to it; fill in defaults."""
    if mode not in MODES:
        raise ConfigurationError(f"mode needs to be either matching or weighting, got '{mode}'")
    expected = MatchingConfig if mode == "matching" else WeightingConfig
    if config is None:
        return expected()
    if not isinstance(config, expected):
        raise ConfigurationError(
            f"mode '{mode}' expects a {expected.__name__}, got {type(config).__name__}"
        )
    return config


def _as_rng(seed: int | np.random.SeedSequence | None) -> np.random.Generator:
    return np.random.default_rng(seed)


def match_or_weight(
    dataset: IntoFrame,
    spec: PropensitySpec,
    mode: str,
    config: MatchingConfig | WeightingConfig | None = None,
    targets: Targets | list[Targets] | None = None,
    *,
    raking: RakingConfig | None = None,
    id_column: str = "caseid",
    seed: int | np.random.SeedSequence | None = None,
) -> MatchWeightResult:
    """
    Match or weight one complete dataset and optionally re-weight it.

    Parameters
    ----------
    dataset
        One complete (imputed) dataset, polars or pandas.
    spec
        Treatment-assignment model specification.
    mode
        ``"matching"`` or ``"weighting"``.
    config
        ``MatchingConfig`` or ``WeightingConfig`` matching ``mode``.
    targets
        Target marginal proportions. Matched units (or units with a weight
        above ``raking.eligibility_threshold``) are raked to them. ``None``
        skips raking and the final weight equals the base weight.
    raking
        Raking settings; defaults to ``RakingConfig()``.
    id_column
        Stable record identifier, added as ``1..n`` when absent.
    seed
        Seed for random matching order.

    Returns
    -------
    MatchWeightResult
        ``data`` holds every input record (matched and unmatched) in input order.
    """
    config = resolve_config(mode, config)
    raking = raking if raking is not None else RakingConfig()

    frame = ensure_id_column(dataset, id_column)
    if targets:
        # Fail on a bad target specification before fitting anything
        check_targets(frame, targets)
    if raking.by is not None:
        by = [raking.by] if isinstance(raking.by, str) else list(raking.by)
        missing = set(by) - set(nw.from_native(frame, eager_only=True).columns)
        if missing:
            raise MissingColumnError(f"Raking group columns not found: {missing}")

    model = fit_propensity(frame, spec)

    match = None
    if isinstance(config, MatchingConfig):
        distance = model.distance(config.distance)
        match = nearest_neighbor_match(distance, model.treatment, config, rng=_as_rng(seed))
        base = match.weights
    else:
        distance = model.scores
        base = ipw_weights(model.scores, model.treatment, config)

    eligible = base > raking.eligibility_threshold

    rake_result = raking_engine(frame, targets, base, eligible, **raking.engine_kwargs())
    final = compose_weights(base, eligible, rake_result)

    columns = {
        DISTANCE_COLUMN: distance,
        WEIGHTS_COLUMN: base,
    }
    if match is not None:
        columns[SUBCLASS_COLUMN] = match.subclass
    columns[FINAL_WEIGHT_COLUMN] = final

    data = attach_weights(
        frame,
        columns,
        null_if_negative=(SUBCLASS_COLUMN,) if match is not None else (),
    )

    return MatchWeightResult(
        data=data,
        mode=mode,
        propensity=model,
        base_weights=base,
        eligible=eligible,
        raking=rake_result,
        final_weights=final,
        match=match,
    )


def _stratum_keys(df_nw: nw.DataFrame, by: list[str]) -> list[Any]:
    missing = set(by) - set(df_nw.columns)
    if missing:
        raise MissingColumnError(f"Stratification columns not found: {missing}")
    for col in by:
        if df_nw.get_column(col).null_count() > 0:
            raise ConfigurationError(f"Stratification column '{col}' has missing values")
    data = [df_nw.get_column(col).to_list() for col in by]
    return [row[0] if len(by) == 1 else tuple(row) for row in zip(*data)]


def _stratum_rows(keys: list[Any]) -> dict[Any, list[int]]:
    rows: dict[Any, list[int]] = {}
    for i, key in enumerate(keys):
        rows.setdefault(key, []).append(i)
    return rows


def check_stratum_targets(
    dataset: IntoFrame,
    stratify_by: str | list[str] | tuple[str, ...],
    targets: Targets | list[Targets] | None = None,
    stratum_targets: dict[Any, Targets] | None = None,
) -> None:
    """
    Raise on a target problem in any stratum before any model is fit.

    Every ``stratum_targets`` key must name an observed stratum, and the
    targets each stratum will be raked to must line up with its records.
    """
    by = [stratify_by] if isinstance(stratify_by, str) else list(stratify_by)
    df_nw = nw.from_native(dataset, eager_only=True)
    stratum_rows = _stratum_rows(_stratum_keys(df_nw, by))

    if stratum_targets:
        unknown = [key for key in stratum_targets if key not in stratum_rows]
        if unknown:
            raise TargetSpecMismatchError(
                f"stratum_targets keys {sorted(map(repr, unknown))} match no stratum of {by}; "
                f"observed strata: {sorted(map(repr, stratum_rows))}"
            )

    idx_col = "__mirake_idx__"
    df_with_idx = df_nw.with_row_index(idx_col)
    for key, rows in stratum_rows.items():
        chosen = _targets_for(key, targets, stratum_targets)
        if not chosen:
            continue
        sub = df_with_idx.filter(nw.col(idx_col).is_in(rows)).drop(idx_col)
        try:
            check_targets(sub, chosen)
        except ConfigurationError as exc:
            raise type(exc)(f"Stratum {key!r}: {exc}") from exc


def _targets_for(
    key: Any,
    targets: Targets | list[Targets] | None,
    stratum_targets: dict[Any, Targets] | None,
) -> Targets | list[Targets] | None:
    if stratum_targets is not None and key in stratum_targets:
        return stratum_targets[key]
    return targets


def match_or_weight_by(
    dataset: IntoFrame,
    stratify_by: str | list[str] | tuple[str, ...],
    spec: PropensitySpec,
    mode: str,
    config: MatchingConfig | WeightingConfig | None = None,
    targets: Targets | list[Targets] | None = None,
    *,
    stratum_targets: dict[Any, Targets] | None = None,
    raking: RakingConfig | None = None,
    id_column: str = "caseid",
    seed: int | np.random.SeedSequence | None = None,
) -> GroupedMatchWeightResult:
    """
    Run ``match_or_weight`` independently within each stratum.

    The propensity model is re-fit per stratum. Stratum outputs are written
    back to their original row positions, so every record appears exactly
    once and in input order. ``subclass`` ids are offset per stratum to stay
    unique. ``stratum_targets`` overrides ``targets`` for the strata it names.
    """
    config = resolve_config(mode, config)
    by = [stratify_by] if isinstance(stratify_by, str) else list(stratify_by)

    frame = ensure_id_column(dataset, id_column)
    df_nw = nw.from_native(frame, eager_only=True)
    n_rows = len(df_nw)
    stratum_rows = _stratum_rows(_stratum_keys(df_nw, by))
    check_stratum_targets(frame, by, targets, stratum_targets)

    seed_seq = seed if isinstance(seed, np.random.SeedSequence) else np.random.SeedSequence(seed)
    children = seed_seq.spawn(len(stratum_rows))

    idx_col = "__mirake_idx__"
    df_with_idx = df_nw.with_row_index(idx_col)

    distance = np.zeros(n_rows, dtype=np.float64)
    base = np.zeros(n_rows, dtype=np.float64)
    final = np.zeros(n_rows, dtype=np.float64)
    eligible = np.zeros(n_rows, dtype=bool)
    subclass = np.full(n_rows, -1, dtype=np.int64)
    group_results: dict[Any, MatchWeightResult] = {}
    offset = 0

    for (key, rows), child in zip(stratum_rows.items(), children):
        sub = df_with_idx.filter(nw.col(idx_col).is_in(rows)).drop(idx_col)
        chosen = _targets_for(key, targets, stratum_targets)
        logger.debug("Stratum %r: %d records", key, len(rows))
        result = match_or_weight(
            nw.to_native(sub),
            spec,
            mode,
            config,
            chosen,
            raking=raking,
            id_column=id_column,
            seed=child,
        )

        positions = np.asarray(rows, dtype=np.intp)
        distance[positions] = result.propensity.distance(
            config.distance if isinstance(config, MatchingConfig) else "glm"
        )
        base[positions] = result.base_weights
        final[positions] = result.final_weights
        eligible[positions] = result.eligible
        if result.match is not None:
            sets = result.match.subclass
            subclass[positions] = np.where(sets >= 0, sets + offset, -1)
            offset += int(sets.max(initial=0))
        group_results[key] = result

    columns = {DISTANCE_COLUMN: distance, WEIGHTS_COLUMN: base}
    if mode == "matching":
        columns[SUBCLASS_COLUMN] = subclass
    columns[FINAL_WEIGHT_COLUMN] = final

    data = attach_weights(
        frame,
        columns,
        null_if_negative=(SUBCLASS_COLUMN,) if mode == "matching" else (),
    )

    return GroupedMatchWeightResult(
        data=data,
        mode=mode,
        base_weights=base,
        eligible=eligible,
        final_weights=final,
        group_results=group_results,
    )
