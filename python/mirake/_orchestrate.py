"""
Cross-imputation orchestrator.

Runs the per-dataset pipeline once per imputed dataset, in parallel with
joblib, and collects the per-imputation results, failures and warnings.
"""

from __future__ import annotations

import logging
import warnings
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

import numpy as np
from joblib import Parallel, delayed

from ._config import MatchingConfig, PropensitySpec, RakingConfig, WeightingConfig
from ._errors import (
    ConfigurationError,
    ImputationFailedError,
    IncompleteImputationsError,
    RecoverableError,
)
from ._imputations import Imputations
from ._pipeline import (
    GroupedMatchWeightResult,
    MatchWeightResult,
    check_stratum_targets,
    match_or_weight,
    match_or_weight_by,
    resolve_config,
)
from ._rake import check_targets

__all__ = ["ImputationRun", "run_across_imputations"]

logger = logging.getLogger(__name__)

_ON_ERROR = ("raise", "continue")

Result = MatchWeightResult | GroupedMatchWeightResult


@dataclass
class ImputationRun(Sequence):
    """
    Outcome of ``run_across_imputations``.

    Indexing returns the result for one imputation, or None when that
    imputation failed under ``on_error="continue"``.
    """

    results: list[Result | None]
    failures: dict[int, str] = field(default_factory=dict)
    warnings: dict[int, list[str]] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.results)

    def __getitem__(self, index):
        return self.results[index]

    @property
    def n_imputations(self) -> int:
        return len(self.results)

    @property
    def n_succeeded(self) -> int:
        return sum(r is not None for r in self.results)

    @property
    def complete(self) -> bool:
        return self.n_succeeded == self.n_imputations

    def completed(self, allow_partial: bool = False) -> list[Result]:
        """
        Successful results in imputation order.

        Raises ``IncompleteImputationsError`` when any imputation failed,
        unless ``allow_partial`` acknowledges pooling over fewer than M.
        """
        if not self.complete and not allow_partial:
            raise IncompleteImputationsError(
                f"Only {self.n_succeeded} of {self.n_imputations} imputations succeeded "
                f"(failed: {sorted(self.failures)}); pass allow_partial=True to continue"
            )
        return [r for r in self.results if r is not None]

    def summary(self) -> dict[str, Any]:
        return {
            "n_imputations": self.n_imputations,
            "n_succeeded": self.n_succeeded,
            "failures": dict(self.failures),
            "n_warnings": sum(len(v) for v in self.warnings.values()),
            "results": [r.summary() if r is not None else None for r in self.results],
        }


def _run_one(
    index: int,
    dataset: Any,
    seed: np.random.SeedSequence,
    kwargs: dict[str, Any],
) -> tuple[int, Result | None, list[tuple[type[Warning], str]], BaseException | None]:
    """Worker: run one imputation and hand back result, warnings and error."""
    stratify_by = kwargs.pop("stratify_by")
    stratum_targets = kwargs.pop("stratum_targets")

    result = None
    error = None
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        try:
            if stratify_by is None:
                result = match_or_weight(dataset, seed=seed, **kwargs)
            else:
                result = match_or_weight_by(
                    dataset,
                    stratify_by,
                    seed=seed,
                    stratum_targets=stratum_targets,
                    **kwargs,
                )
        except Exception as exc:
            # Re-raised or recorded by the caller
            error = exc

    messages = [(w.category, str(w.message)) for w in caught]
    return index, result, messages, error


def run_across_imputations(
    imputations: Imputations | Sequence[Any],
    spec: PropensitySpec,
    mode: str,
    config: MatchingConfig | WeightingConfig | None = None,
    targets: dict | list | None = None,
    *,
    raking: RakingConfig | None = None,
    stratify_by: str | list[str] | None = None,
    stratum_targets: dict[Any, dict] | None = None,
    id_column: str = "caseid",
    n_jobs: int = 1,
    seed: int | None = 42,
    on_error: str = "raise",
) -> ImputationRun:
    """
    Match or weight every imputed dataset and optionally re-weight it.

    Parameters
    ----------
    imputations
        ``Imputations`` or a sequence of complete datasets (polars or pandas).
    spec, mode, config, targets, raking, id_column
        Passed to ``match_or_weight`` for each imputation.
    stratify_by
        Column(s) partitioning each dataset into strata that are matched or
        weighted independently.
    stratum_targets
        Per-stratum target distributions, keyed by stratum value.
    n_jobs
        Worker processes; ``-1`` uses all cores. Results do not depend on it.
    seed
        Root seed; each imputation receives its own spawned child seed.
    on_error
        ``"raise"`` stops at the first failure. ``"continue"`` records
        recoverable failures (non-convergence, no matches) and keeps going.

    Returns
    -------
    ImputationRun
        Results in imputation order, plus failures and warnings per index.
    """
    if on_error not in _ON_ERROR:
        raise ConfigurationError(f"on_error must be 'raise' or 'continue', got '{on_error}'")
    config = resolve_config(mode, config)

    if not isinstance(imputations, Imputations):
        imputations = Imputations(imputations, id_column=id_column)
    elif imputations.id_column is None:
        # Re-check with the identifier column the pipeline will use
        imputations = Imputations(list(imputations), id_column=id_column)

    if stratum_targets and stratify_by is None:
        raise ConfigurationError("stratum_targets requires stratify_by")

    for index, dataset in enumerate(imputations):
        try:
            if stratify_by is not None:
                check_stratum_targets(dataset, stratify_by, targets, stratum_targets)
            elif targets:
                check_targets(dataset, targets)
        except ConfigurationError as exc:
            raise type(exc)(f"Imputation {index}: {exc}") from exc

    n_imp = len(imputations)
    seeds = np.random.SeedSequence(seed).spawn(n_imp)
    kwargs = {
        "spec": spec,
        "mode": mode,
        "config": config,
        "targets": targets,
        "raking": raking,
        "id_column": id_column,
        "stratify_by": stratify_by,
        "stratum_targets": stratum_targets,
    }

    logger.info(
        "Running %s over %d imputations (n_jobs=%d, on_error=%s)", mode, n_imp, n_jobs, on_error
    )
    # Results arrive in imputation order; a fail-fast error stops consumption
    outputs = Parallel(n_jobs=n_jobs, return_as="generator")(
        delayed(_run_one)(i, dataset, child, dict(kwargs))
        for i, (dataset, child) in enumerate(zip(imputations, seeds))
    )

    results: list[Result | None] = [None] * n_imp
    failures: dict[int, str] = {}
    collected: dict[int, list[str]] = {}

    for index, result, messages, error in outputs:
        if messages:
            collected[index] = [msg for _, msg in messages]
            for category, msg in messages:
                warnings.warn(f"Imputation {index}: {msg}", category, stacklevel=2)

        if error is None:
            results[index] = result
            logger.debug("Imputation %d finished", index)
            continue

        if on_error == "continue" and isinstance(error, RecoverableError):
            failures[index] = f"{type(error).__name__}: {error}"
            logger.warning("Imputation %d failed and was skipped: %s", index, error)
            continue

        raise ImputationFailedError(
            f"Imputation {index} failed: {type(error).__name__}: {error}", index=index
        ) from error

    run = ImputationRun(results=results, failures=failures, warnings=collected)
    logger.info("Finished %d of %d imputations", run.n_succeeded, n_imp)
    return run
