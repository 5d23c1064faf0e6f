"""
mirake - Propensity matching/weighting with raking across multiple imputations.

Supports both polars and pandas DataFrames.

Example
-------
>>> import mirake
>>>
>>> spec = mirake.PropensitySpec(
...     treatment="treat",
...     predictors=("dem_age_index_cont", "dem_sex_cont", "c_smoking_history"),
... )
>>> targets = {
...     "dem_sex_cont": {0: 0.62, 1: 0.38},
...     "c_smoking_history": {True: 0.36, False: 0.64},
... }
>>> run = mirake.run_across_imputations(
...     imputed_datasets,
...     spec,
...     "matching",
...     mirake.MatchingConfig(caliper=0.01),
...     targets,
...     n_jobs=-1,
... )
>>> fitter = mirake.cox_outcome("fu_itt_months", "death_itt", "treat")
>>> pooled = mirake.estimate_effect(run, fitter)
>>> pooled.exp()
"""

import logging
from importlib.metadata import PackageNotFoundError, version

from ._config import MatchingConfig, PropensitySpec, RakingConfig, WeightingConfig
from ._diagnostics import balance_table, pooled_balance, weight_summary, weighted_margins
from ._engine import RakeResult, rim_iterate
from ._errors import (
    ConfigurationError,
    DataSufficiencyWarning,
    ImputationFailedError,
    ImputationMismatchError,
    IncompleteImputationsError,
    InsufficientMatchesError,
    MirakeError,
    MirakeWarning,
    MissingColumnError,
    NonConvergenceError,
    PropensityModelError,
    RakingConvergenceWarning,
    RecoverableError,
    TargetSpecError,
    TargetSpecMismatchError,
)
from ._imputations import Imputations
from ._loaders import load_stratum_targets, load_targets
from ._matching import MatchResult, nearest_neighbor_match
from ._orchestrate import ImputationRun, run_across_imputations
from ._outcome import cox_outcome, estimate_effect
from ._pipeline import (
    GroupedMatchWeightResult,
    MatchWeightResult,
    check_stratum_targets,
    match_or_weight,
    match_or_weight_by,
)
from ._pooling import PooledEstimate, pool, pool_coefficients
from ._propensity import PropensityModel, fit_propensity
from ._rake import (
    GroupedRakeResult,
    check_targets,
    rake,
    rake_with_diagnostics,
    raking_engine,
    validate_targets,
)
from ._weighting import ipw_weights, trim_weights

try:
    __version__ = version("mirake")
except PackageNotFoundError:
    __version__ = "0.0.0"  # Fallback for development

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    # Pipeline
    "run_across_imputations",
    "match_or_weight",
    "match_or_weight_by",
    "Imputations",
    # Configuration
    "PropensitySpec",
    "MatchingConfig",
    "WeightingConfig",
    "RakingConfig",
    # Components
    "fit_propensity",
    "nearest_neighbor_match",
    "ipw_weights",
    "trim_weights",
    "raking_engine",
    "rim_iterate",
    "rake",
    "rake_with_diagnostics",
    "check_targets",
    "check_stratum_targets",
    "validate_targets",
    # Pooling and outcome
    "pool",
    "pool_coefficients",
    "cox_outcome",
    "estimate_effect",
    # Diagnostics
    "weight_summary",
    "weighted_margins",
    "balance_table",
    "pooled_balance",
    # Loaders
    "load_targets",
    "load_stratum_targets",
    # Result types
    "RakeResult",
    "GroupedRakeResult",
    "PropensityModel",
    "MatchResult",
    "MatchWeightResult",
    "GroupedMatchWeightResult",
    "ImputationRun",
    "PooledEstimate",
    # Errors and warnings
    "MirakeError",
    "ConfigurationError",
    "MissingColumnError",
    "TargetSpecError",
    "TargetSpecMismatchError",
    "PropensityModelError",
    "ImputationMismatchError",
    "RecoverableError",
    "NonConvergenceError",
    "InsufficientMatchesError",
    "ImputationFailedError",
    "IncompleteImputationsError",
    "MirakeWarning",
    "DataSufficiencyWarning",
    "RakingConvergenceWarning",
]
