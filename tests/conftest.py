"""
Shared fixtures: a seeded oncology-cohort simulator and an imputation generator.

The cohort mimics a real-world comparison of a first-line treatment
(``treat=1``) against comparator therapy, with confounded assignment and a
time-to-event outcome.
"""

import numpy as np
import pandas as pd
import polars as pl
import pytest

import mirake

RACE_LEVELS = ["White", "Asian", "Other"]
REGION_LEVELS = ["Northeast", "Midwest", "South", "West"]
PREDICTORS = (
    "dem_age_index_cont",
    "dem_sex_cont",
    "c_smoking_history",
    "c_ecog_cont",
    "dem_race",
)


def simulate_cohort(n: int = 1200, seed: int = 2024) -> pl.DataFrame:
    """Confounded treatment assignment with an exponential survival outcome."""
    rng = np.random.default_rng(seed)

    age = np.round(rng.normal(66, 10, n), 1)
    sex = rng.binomial(1, 0.38, n).astype(np.int64)
    smoking = rng.random(n) < 0.4
    ecog = rng.binomial(1, 0.45, n).astype(np.int64)
    race = rng.choice(RACE_LEVELS, size=n, p=[0.6, 0.3, 0.1])
    region = rng.choice(REGION_LEVELS, size=n, p=[0.2, 0.2, 0.35, 0.25])

    lin = (
        -1.0
        + 0.02 * (age - 66)
        + 0.3 * sex
        - 0.4 * smoking
        + 0.2 * ecog
        + 0.5 * (race == "Asian")
    )
    treat = rng.binomial(1, 1 / (1 + np.exp(-lin))).astype(np.int64)

    hazard = 0.03 * np.exp(-0.3 * treat + 0.02 * (age - 66) + 0.3 * ecog)
    event_time = rng.exponential(1 / hazard)
    censor_time = rng.uniform(6, 48, n)

    return pl.DataFrame(
        {
            "caseid": np.arange(1, n + 1, dtype=np.int64),
            "treat": treat,
            "dem_age_index_cont": age,
            "dem_sex_cont": sex,
            "c_smoking_history": smoking,
            "c_ecog_cont": ecog,
            "dem_race": race,
            "dem_region": region,
            "fu_itt_months": np.round(np.minimum(event_time, censor_time), 2),
            "death_itt": (event_time <= censor_time).astype(np.int64),
        }
    )


def make_imputations(
    df: pl.DataFrame,
    m: int = 3,
    missing_frac: float = 0.15,
    seed: int = 7,
) -> list[pl.DataFrame]:
    """
    M complete datasets that differ only where values were "missing".

    Age and ECOG are re-drawn for the same subset of rows in every dataset,
    so row identity (and ``caseid``) lines up across imputations.
    """
    rng = np.random.default_rng(seed)
    n = len(df)
    missing = rng.random(n) < missing_frac
    n_missing = int(missing.sum())

    datasets = []
    for _ in range(m):
        age = df["dem_age_index_cont"].to_numpy().copy()
        ecog = df["c_ecog_cont"].to_numpy().copy()
        age[missing] = np.round(rng.normal(66, 10, n_missing), 1)
        ecog[missing] = rng.binomial(1, 0.45, n_missing)
        datasets.append(
            df.with_columns(
                pl.Series("dem_age_index_cont", age),
                pl.Series("c_ecog_cont", ecog.astype(np.int64)),
            )
        )
    return datasets


def to_pandas(df: pl.DataFrame) -> pd.DataFrame:
    """Build a pandas copy column by column (no pyarrow needed)."""
    return pd.DataFrame({col: df[col].to_list() for col in df.columns})


@pytest.fixture
def cohort():
    return simulate_cohort()


@pytest.fixture
def cohort_pandas(cohort):
    return to_pandas(cohort)


@pytest.fixture
def imputed(cohort):
    return make_imputations(cohort, m=3)


@pytest.fixture
def spec():
    return mirake.PropensitySpec(treatment="treat", predictors=PREDICTORS)


@pytest.fixture
def targets():
    """Target marginals for the matched population (proportions)."""
    return {
        "dem_sex_cont": {0: 0.55, 1: 0.45},
        "c_smoking_history": {True: 0.36, False: 0.64},
        "dem_race": {"White": 0.55, "Asian": 0.35, "Other": 0.10},
    }
