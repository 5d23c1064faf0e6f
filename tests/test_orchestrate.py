"""
Tests for the imputation container and the cross-imputation orchestrator.

Run with: pytest tests/test_orchestrate.py -v
"""

import numpy as np
import polars as pl
import pytest

import mirake
from mirake import MatchingConfig, RakingConfig

# flag_a and flag_b cannot both reach these margins when flag_b == flag_a
CONFLICTING_TARGETS = {"flag_a": {0: 0.5, 1: 0.5}, "flag_b": {0: 0.8, 1: 0.2}}


@pytest.fixture
def conflicting(cohort):
    """Three imputations; raking cannot converge on imputation 1 only."""
    rng = np.random.default_rng(11)
    n = len(cohort)
    datasets = []
    for m in range(3):
        a = rng.integers(0, 2, n).astype(np.int64)
        b = a.copy() if m == 1 else rng.integers(0, 2, n).astype(np.int64)
        datasets.append(cohort.with_columns(pl.Series("flag_a", a), pl.Series("flag_b", b)))
    return datasets


# ---------------------------------------------------------------------------
# TestImputations
# ---------------------------------------------------------------------------


class TestImputations:
    def test_sequence_behaviour(self, imputed):
        imps = mirake.Imputations(imputed, id_column="caseid")
        assert len(imps) == 3
        assert imps.m == 3
        assert imps.complete(1) is imputed[1]
        assert all(a is b for a, b in zip(imps, imputed))

    def test_long_format(self, imputed):
        imps = mirake.Imputations(imputed)
        long = imps.to_long()
        assert len(long) == 3 * len(imputed[0])
        assert sorted(long[".imp"].unique().to_list()) == [1, 2, 3]

        back = mirake.Imputations.from_long(long, id_column="caseid")
        assert len(back) == 3
        assert back.complete(2).equals(imputed[2])

    def test_from_long_skips_original(self, imputed):
        original = imputed[0].with_columns(pl.lit(0, dtype=pl.Int64).alias(".imp"))
        long = pl.concat([original, mirake.Imputations(imputed).to_long()])
        assert len(mirake.Imputations.from_long(long)) == 3
        assert len(mirake.Imputations.from_long(long, include_original=True)) == 4

    def test_row_count_mismatch(self, imputed):
        with pytest.raises(mirake.ImputationMismatchError, match="rows"):
            mirake.Imputations([imputed[0], imputed[1].head(100)])

    def test_column_mismatch(self, imputed):
        with pytest.raises(mirake.ImputationMismatchError, match="columns"):
            mirake.Imputations([imputed[0], imputed[1].drop("dem_region")])

    def test_id_order_mismatch(self, imputed):
        shuffled = imputed[1].reverse()
        with pytest.raises(mirake.ImputationMismatchError, match="caseid"):
            mirake.Imputations([imputed[0], shuffled], id_column="caseid")

    def test_empty(self):
        with pytest.raises(mirake.ConfigurationError):
            mirake.Imputations([])


# ---------------------------------------------------------------------------
# TestRunAcrossImputations
# ---------------------------------------------------------------------------


class TestRunAcrossImputations:
    def test_one_result_per_imputation(self, imputed, spec, targets):
        run = mirake.run_across_imputations(imputed, spec, "matching", MatchingConfig(), targets)
        assert isinstance(run, mirake.ImputationRun)
        assert run.n_imputations == run.n_succeeded == 3
        assert run.failures == {}
        for dataset, result in zip(imputed, run):
            assert result.data["caseid"].to_list() == dataset["caseid"].to_list()
            assert result.raking.converged

    def test_results_differ_across_imputations(self, imputed, spec, targets):
        run = mirake.run_across_imputations(imputed, spec, "matching", MatchingConfig(), targets)
        assert not np.array_equal(run[0].propensity.scores, run[1].propensity.scores)

    def test_reproducible_with_seed(self, imputed, spec, targets):
        config = MatchingConfig(m_order="random")
        a = mirake.run_across_imputations(imputed, spec, "matching", config, targets, seed=3)
        b = mirake.run_across_imputations(imputed, spec, "matching", config, targets, seed=3)
        for ra, rb in zip(a, b):
            np.testing.assert_array_equal(ra.final_weights, rb.final_weights)

    def test_parallel_matches_sequential(self, imputed, spec, targets):
        config = MatchingConfig(m_order="random")
        sequential = mirake.run_across_imputations(
            imputed, spec, "matching", config, targets, n_jobs=1, seed=9
        )
        parallel = mirake.run_across_imputations(
            imputed, spec, "matching", config, targets, n_jobs=2, seed=9
        )
        for rs, rp in zip(sequential, parallel):
            np.testing.assert_array_equal(rs.final_weights, rp.final_weights)

    def test_accepts_imputations_container(self, imputed, spec):
        imps = mirake.Imputations(imputed, id_column="caseid")
        run = mirake.run_across_imputations(imps, spec, "weighting")
        assert run.n_succeeded == 3
        assert not run[0].reweighted

    def test_stratified(self, imputed, spec, targets):
        run = mirake.run_across_imputations(
            imputed, spec, "matching", None, targets, stratify_by="dem_region"
        )
        for result in run:
            assert isinstance(result, mirake.GroupedMatchWeightResult)
            assert len(result.group_results) == 4

    def test_clean_run_reports_no_warnings(self, imputed, spec, targets):
        run = mirake.run_across_imputations(imputed, spec, "matching", MatchingConfig(), targets)
        assert run.warnings == {}
        assert run.summary()["n_warnings"] == 0

    def test_summary(self, imputed, spec, targets):
        summary = mirake.run_across_imputations(imputed, spec, "matching", None, targets).summary()
        assert summary["n_imputations"] == 3
        assert len(summary["results"]) == 3


class TestPreflight:
    """Inconsistent inputs are rejected before any imputation is processed."""

    def test_mismatched_imputations(self, imputed, spec):
        with pytest.raises(mirake.ImputationMismatchError):
            mirake.run_across_imputations([imputed[0], imputed[1].head(10)], spec, "matching")

    def test_bad_targets(self, imputed, spec):
        with pytest.raises(mirake.TargetSpecError, match="Imputation 0"):
            mirake.run_across_imputations(
                imputed, spec, "matching", None, {"dem_sex_cont": {0: 0.5, 1: 0.6}}
            )

    def test_bad_stratum_targets_before_any_fit(self, imputed, spec, monkeypatch):
        calls = []
        real_fit = mirake._pipeline.fit_propensity

        def counting_fit(*args, **kwargs):
            calls.append(1)
            return real_fit(*args, **kwargs)

        monkeypatch.setattr("mirake._pipeline.fit_propensity", counting_fit)
        with pytest.raises(mirake.TargetSpecError, match="Imputation 0: Stratum .West."):
            mirake.run_across_imputations(
                imputed,
                spec,
                "matching",
                stratify_by="dem_region",
                stratum_targets={"West": {"dem_sex_cont": {0: 0.9, 1: 0.9}}},
            )
        assert calls == []

    def test_unknown_stratum_key(self, imputed, spec, targets):
        with pytest.raises(mirake.TargetSpecMismatchError, match="Westt"):
            mirake.run_across_imputations(
                imputed,
                spec,
                "matching",
                None,
                targets,
                stratify_by="dem_region",
                stratum_targets={"Westt": targets},
            )

    def test_stratum_targets_need_strata(self, imputed, spec, targets):
        with pytest.raises(mirake.ConfigurationError, match="stratify_by"):
            mirake.run_across_imputations(
                imputed, spec, "matching", None, targets, stratum_targets={"West": targets}
            )

    def test_bad_on_error(self, imputed, spec):
        with pytest.raises(mirake.ConfigurationError):
            mirake.run_across_imputations(imputed, spec, "matching", on_error="skip")

    def test_bad_mode(self, imputed, spec):
        with pytest.raises(mirake.ConfigurationError):
            mirake.run_across_imputations(imputed, spec, "subclassification")


class TestFailurePolicy:
    raking = RakingConfig(max_iterations=50)

    def test_fail_fast_names_imputation(self, conflicting, spec):
        with pytest.raises(mirake.ImputationFailedError) as excinfo:
            mirake.run_across_imputations(
                conflicting, spec, "matching", None, CONFLICTING_TARGETS, raking=self.raking
            )
        assert excinfo.value.index == 1
        assert isinstance(excinfo.value.__cause__, mirake.NonConvergenceError)

    def test_fail_soft_records_failure(self, conflicting, spec):
        run = mirake.run_across_imputations(
            conflicting,
            spec,
            "matching",
            None,
            CONFLICTING_TARGETS,
            raking=self.raking,
            on_error="continue",
        )
        assert run.n_succeeded == 2
        assert run[1] is None
        assert list(run.failures) == [1]
        assert "NonConvergenceError" in run.failures[1]

    def test_partial_results_need_acknowledgement(self, conflicting, spec):
        run = mirake.run_across_imputations(
            conflicting,
            spec,
            "matching",
            None,
            CONFLICTING_TARGETS,
            raking=self.raking,
            on_error="continue",
        )
        with pytest.raises(mirake.IncompleteImputationsError):
            run.completed()
        assert len(run.completed(allow_partial=True)) == 2

    def test_configuration_errors_always_abort(self, imputed):
        spec = mirake.PropensitySpec(treatment="treat", predictors=("not_a_column",))
        with pytest.raises(mirake.ImputationFailedError) as excinfo:
            mirake.run_across_imputations(imputed, spec, "matching", on_error="continue")
        assert isinstance(excinfo.value.__cause__, mirake.PropensityModelError)

    def test_warnings_collected_per_imputation(self, conflicting, spec):
        raking = RakingConfig(max_iterations=50, on_nonconvergence="warn")
        with pytest.warns(mirake.RakingConvergenceWarning, match="Imputation 1"):
            run = mirake.run_across_imputations(
                conflicting, spec, "matching", None, CONFLICTING_TARGETS, raking=raking
            )
        assert run.n_succeeded == 3
        assert 1 in run.warnings
        assert any("did not converge" in msg for msg in run.warnings[1])
        assert not run[1].raking.converged
