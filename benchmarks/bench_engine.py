"""
Benchmark: RIM engine throughput and cross-imputation parallelism.

Run with: python benchmarks/bench_engine.py
"""

from __future__ import annotations

import time
from typing import Any

import numpy as np
import polars as pl


def make_survey_data(
    n: int,
    n_vars: int = 5,
    n_codes_per_var: int = 4,
    seed: int = 42,
) -> tuple[dict[str, np.ndarray], dict[str, dict[int, float]]]:
    """Generate synthetic covariates and uneven targets."""
    rng = np.random.default_rng(seed)

    column_data = {}
    targets = {}

    for v in range(n_vars):
        col_name = f"var_{v}"
        column_data[col_name] = rng.integers(1, n_codes_per_var + 1, size=n).astype(np.int64)

        # Uneven targets force meaningful raking
        raw = rng.dirichlet(np.ones(n_codes_per_var)) * 100
        targets[col_name] = {code + 1: float(pct) for code, pct in enumerate(raw)}

    return column_data, targets


def bench_engine(
    column_data: dict[str, np.ndarray],
    targets: dict[str, dict[Any, float]],
    repeats: int = 10,
) -> float:
    """Time rim_iterate on unit base weights."""
    from mirake._engine import rim_iterate

    # Warmup
    rim_iterate(column_data, targets)

    times = []
    for _ in range(repeats):
        t0 = time.perf_counter()
        result = rim_iterate(column_data, targets)
        t1 = time.perf_counter()
        times.append(t1 - t0)

    avg_ms = np.mean(times) * 1000
    print(f"  Engine: {avg_ms:.2f} ms (converged={result.converged}, iter={result.iterations})")
    return avg_ms


def make_imputed_cohort(n: int, m: int, seed: int = 42) -> list[pl.DataFrame]:
    """M copies of a confounded cohort differing in re-drawn ages."""
    rng = np.random.default_rng(seed)
    age = rng.normal(66, 10, n)
    sex = rng.binomial(1, 0.4, n)
    ecog = rng.binomial(1, 0.45, n)
    lin = -1.0 + 0.02 * (age - 66) + 0.3 * sex + 0.2 * ecog
    treat = rng.binomial(1, 1 / (1 + np.exp(-lin)))
    missing = rng.random(n) < 0.15

    datasets = []
    for _ in range(m):
        imputed_age = age.copy()
        imputed_age[missing] = rng.normal(66, 10, int(missing.sum()))
        datasets.append(
            pl.DataFrame(
                {
                    "caseid": np.arange(1, n + 1),
                    "treat": treat.astype(np.int64),
                    "age": imputed_age,
                    "sex": sex.astype(np.int64),
                    "ecog": ecog.astype(np.int64),
                }
            )
        )
    return datasets


def bench_imputations(n: int, m: int, n_jobs: int) -> float:
    """Time matching plus re-weighting across ``m`` imputations."""
    import mirake

    datasets = make_imputed_cohort(n, m)
    spec = mirake.PropensitySpec(treatment="treat", predictors=("age", "sex", "ecog"))
    targets = {"sex": {0: 0.55, 1: 0.45}, "ecog": {0: 0.6, 1: 0.4}}

    t0 = time.perf_counter()
    run = mirake.run_across_imputations(
        datasets,
        spec,
        "matching",
        mirake.MatchingConfig(caliper=0.01),
        targets,
        n_jobs=n_jobs,
    )
    elapsed_ms = (time.perf_counter() - t0) * 1000
    print(f"  n_jobs={n_jobs:>2}: {elapsed_ms:.0f} ms ({run.n_succeeded}/{m} imputations)")
    return elapsed_ms


def main():
    print("=" * 60)
    print("mirake engine benchmark")
    print("=" * 60)

    scenarios = [
        ("Small cohort (n=500, 3 vars)", 500, 3, 3),
        ("Medium cohort (n=5,000, 5 vars)", 5_000, 5, 4),
        ("Large cohort (n=50,000, 5 vars)", 50_000, 5, 4),
        ("XL cohort (n=100,000, 8 vars)", 100_000, 8, 5),
    ]

    for name, n, n_vars, n_codes in scenarios:
        print(f"\n{name}")
        print("-" * 40)
        column_data, targets = make_survey_data(n, n_vars, n_codes)
        bench_engine(column_data, targets)

    print(f"\n{'=' * 60}")
    print("Matching + re-weighting: 10 imputations x 3,500 records")
    print("-" * 40)

    sequential_ms = bench_imputations(3_500, 10, n_jobs=1)
    parallel_ms = bench_imputations(3_500, 10, n_jobs=-1)
    print(f"  Speedup: {sequential_ms / parallel_ms:.1f}x")


if __name__ == "__main__":
    main()
