"""
Exception and warning taxonomy for mirake.

Configuration errors are raised before any matching or raking work starts.
Recoverable errors are the only ones the orchestrator may record and skip
when running fail-soft.
"""

from __future__ import annotations

__all__ = [
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


class MirakeError(Exception):
    """Base class for all mirake errors."""


class ConfigurationError(MirakeError, ValueError):
    """Invalid configuration: bad mode, bad config values, unusable inputs."""


class MissingColumnError(ConfigurationError, KeyError):
    """A required column is not present in the record set."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the message readable
        return str(self.args[0]) if self.args else ""


class TargetSpecError(ConfigurationError):
    """Target distributions are malformed (sums, negative values, nulls)."""


class TargetSpecMismatchError(TargetSpecError):
    """Target labels do not line up with the levels observed in the data."""


class PropensityModelError(ConfigurationError):
    """The treatment-assignment model could not be fit."""


class ImputationMismatchError(ConfigurationError):
    """Imputed datasets disagree on row count, columns or row identity."""


class RecoverableError(MirakeError):
    """Failure local to one dataset that a fail-soft run may skip."""


class NonConvergenceError(RecoverableError, RuntimeError):
    """Raking exhausted its iteration budget without reaching the tolerance."""


class InsufficientMatchesError(RecoverableError):
    """Matching produced no matched pairs."""


class ImputationFailedError(MirakeError):
    """A per-imputation task failed; ``index`` is the 0-based imputation index."""

    def __init__(self, message: str, index: int | None = None) -> None:
        super().__init__(message)
        self.index = index


class IncompleteImputationsError(MirakeError):
    """Pooling was requested over fewer than the expected M estimates."""


class MirakeWarning(UserWarning):
    """Base class for mirake warnings."""


class DataSufficiencyWarning(MirakeWarning):
    """Too few controls, or treated units left unmatched."""


class RakingConvergenceWarning(MirakeWarning):
    """Raking did not converge and the policy asked for a warning only."""
