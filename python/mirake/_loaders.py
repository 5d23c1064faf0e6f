"""
Loader utilities for target distributions.

Functions to load external target proportions from long-format tables into
the nested dict structure expected by ``raking_engine`` and
``run_across_imputations``.
"""

from __future__ import annotations

import warnings
from pathlib import Path
from typing import TYPE_CHECKING, Any

from ._errors import MissingColumnError

if TYPE_CHECKING:
    import polars as pl

__all__ = ["load_targets", "load_stratum_targets"]


def _read_table(
    source: str | Path | pl.DataFrame,
    sheet_name: str | int | None,
) -> pl.DataFrame:
    import polars as pl

    if isinstance(source, (str, Path)):
        source = Path(source)
        if source.suffix in (".xlsx", ".xls"):
            if sheet_name is None:
                return pl.read_excel(source)
            if isinstance(sheet_name, int):
                return pl.read_excel(source, sheet_id=sheet_name + 1)
            return pl.read_excel(source, sheet_name=sheet_name)
        if source.suffix == ".csv":
            return pl.read_csv(source)
        raise ValueError(f"Unsupported file type: {source.suffix}")
    if isinstance(source, pl.DataFrame):
        return source
    raise TypeError(f"Expected file path or polars DataFrame, got {type(source)}")


def _coerce_code(code: Any) -> Any:
    # CSV readers hand back "true"/"false" for logical covariates
    if isinstance(code, str) and code.lower() in ("true", "false"):
        return code.lower() == "true"
    return code


def _warn_on_bad_sums(targets: dict[str, dict[Any, float]], label: str = "") -> None:
    for var_name, props in targets.items():
        total = sum(props.values())
        # Round to 2 decimal places to handle floating point
        if round(total, 2) not in (1.0, 100.0):
            warnings.warn(
                f"{label}variable '{var_name}': targets sum to {total:.2f}, "
                "expected 1 or 100%",
                UserWarning,
                stacklevel=3,
            )


def load_targets(
    source: str | Path | pl.DataFrame,
    *,
    var_col: str = "target_var",
    code_col: str = "target_code",
    target_col: str = "target_pct",
    sheet_name: str | int | None = None,
    validate: bool = True,
) -> dict[str, dict[Any, float]]:
    """
    Load target distributions from a long-format table.

    Parameters
    ----------
    source
        File path (xlsx, csv) or existing polars DataFrame.
    var_col
        Column containing covariate names (e.g., "c_smoking_history").
    code_col
        Column containing level labels (e.g., True/False or "White").
    target_col
        Column containing target proportions or percentages.
    sheet_name
        Sheet name or 0-based index if source is an Excel file.
    validate
        If True, warn when a covariate's targets sum to neither 1 nor 100.

    Returns
    -------
    dict
        ``{covariate: {level: target}}`` ready for ``raking_engine``.

    Expected input format:

        target_var        | target_code | target_pct
        c_smoking_history | true        | 64
        c_smoking_history | false       | 36
        dem_race          | White       | 57
        ...

    Notes
    -----
    - "true"/"false" codes are read as booleans; other types are kept as-is,
      so codes must match the values stored in the data.
    """
    df = _read_table(source, sheet_name)

    required_cols = {var_col, code_col, target_col}
    missing = required_cols - set(df.columns)
    if missing:
        raise MissingColumnError(f"Missing required columns: {missing}")

    targets: dict[str, dict[Any, float]] = {}
    for row in df.iter_rows(named=True):
        code = _coerce_code(row[code_col])
        targets.setdefault(row[var_col], {})[code] = float(row[target_col])

    if validate:
        _warn_on_bad_sums(targets)

    return targets


def load_stratum_targets(
    source: str | Path | pl.DataFrame,
    *,
    stratum_col: str = "stratum",
    var_col: str = "target_var",
    code_col: str = "target_code",
    target_col: str = "target_pct",
    sheet_name: str | int | None = None,
    validate: bool = True,
) -> dict[Any, dict[str, dict[Any, float]]]:
    """
    Load per-stratum target distributions from a long-format table.

    Returns ``{stratum: {covariate: {level: target}}}`` for the
    ``stratum_targets`` argument of ``run_across_imputations``.

    Expected input format:

        stratum | target_var        | target_code | target_pct
        0       | c_smoking_history | true        | 60
        0       | c_smoking_history | false       | 40
        1       | c_smoking_history | true        | 70
        ...

    Stratum keys keep their table type; they must equal the values of the
    ``stratify_by`` column.
    """
    df = _read_table(source, sheet_name)

    required_cols = {stratum_col, var_col, code_col, target_col}
    missing = required_cols - set(df.columns)
    if missing:
        raise MissingColumnError(f"Missing required columns: {missing}")

    # Sort for consistent processing
    df = df.sort(stratum_col, var_col)

    schemes: dict[Any, dict[str, dict[Any, float]]] = {}
    for row in df.iter_rows(named=True):
        code = _coerce_code(row[code_col])
        schemes.setdefault(row[stratum_col], {}).setdefault(row[var_col], {})[code] = float(
            row[target_col]
        )

    if validate:
        for stratum, targets in schemes.items():
            _warn_on_bad_sums(targets, label=f"Stratum '{stratum}', ")

    return schemes
