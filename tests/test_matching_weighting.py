"""
Tests for the propensity model, nearest-neighbour matching, IPW weights and
configuration validation.

Run with: pytest tests/test_matching_weighting.py -v
"""

import numpy as np
import polars as pl
import pytest
from sklearn.linear_model import LogisticRegression

import mirake
from mirake import MatchingConfig, PropensitySpec, RakingConfig, WeightingConfig


# ---------------------------------------------------------------------------
# TestPropensity: fit_propensity()
# ---------------------------------------------------------------------------


class TestPropensity:
    def test_scores(self, cohort, spec):
        model = mirake.fit_propensity(cohort, spec)
        assert model.scores.shape == (len(cohort),)
        assert np.all((model.scores > 0) & (model.scores < 1))
        np.testing.assert_array_equal(model.treatment, cohort["treat"].to_numpy())

    def test_logit_distance(self, cohort, spec):
        model = mirake.fit_propensity(cohort, spec)
        p = model.scores
        np.testing.assert_allclose(model.distance("logit"), np.log(p / (1 - p)))
        np.testing.assert_array_equal(model.distance("glm"), p)

    def test_pandas_matches_polars(self, cohort, cohort_pandas, spec):
        scores_pl = mirake.fit_propensity(cohort, spec).scores
        scores_pd = mirake.fit_propensity(cohort_pandas, spec).scores
        np.testing.assert_allclose(scores_pd, scores_pl, rtol=1e-6)

    def test_custom_estimator(self, cohort):
        spec = PropensitySpec(
            treatment="treat",
            predictors=("dem_age_index_cont", "dem_race"),
            estimator=LogisticRegression(C=0.5, max_iter=1000),
        )
        model = mirake.fit_propensity(cohort, spec)
        assert np.all((model.scores > 0) & (model.scores < 1))

    def test_missing_column(self, cohort):
        spec = PropensitySpec(treatment="treat", predictors=("nope",))
        with pytest.raises(mirake.PropensityModelError):
            mirake.fit_propensity(cohort, spec)

    def test_single_arm(self, cohort, spec):
        df = cohort.with_columns(pl.lit(1, dtype=pl.Int64).alias("treat"))
        with pytest.raises(mirake.PropensityModelError, match="single arm"):
            mirake.fit_propensity(df, spec)

    def test_non_binary_treatment(self, cohort, spec):
        df = cohort.with_columns((pl.col("treat") * 2).alias("treat"))
        with pytest.raises(mirake.PropensityModelError, match="binary"):
            mirake.fit_propensity(df, spec)

    def test_missing_predictor_values(self, cohort, spec):
        ages = cohort["dem_age_index_cont"].to_list()
        ages[3] = None
        df = cohort.with_columns(pl.Series("dem_age_index_cont", ages, dtype=pl.Float64))
        with pytest.raises(mirake.PropensityModelError, match="missing"):
            mirake.fit_propensity(df, spec)


# ---------------------------------------------------------------------------
# TestNearestNeighbor: nearest_neighbor_match()
# ---------------------------------------------------------------------------


class TestNearestNeighbor:
    def test_one_to_one(self):
        distance = np.array([0.9, 0.5, 0.88, 0.52, 0.1])
        treat = np.array([1, 1, 0, 0, 0])
        result = mirake.nearest_neighbor_match(distance, treat, MatchingConfig())
        np.testing.assert_array_equal(result.weights, [1, 1, 1, 1, 0])
        np.testing.assert_array_equal(result.subclass, [1, 2, 1, 2, -1])
        assert result.n_matched_treated == 2
        assert result.n_matched_control == 2

    def test_caliper_leaves_treated_unmatched(self):
        distance = np.array([0.9, 0.3, 0.88, 0.52, 0.1])
        treat = np.array([1, 1, 0, 0, 0])
        config = MatchingConfig(caliper=0.05, std_caliper=False)
        result = mirake.nearest_neighbor_match(distance, treat, config)
        np.testing.assert_array_equal(result.weights, [1, 0, 1, 0, 0])
        assert result.caliper == pytest.approx(0.05)
        assert result.n_matched_treated == 1

    def test_caliper_in_standard_deviations(self):
        distance = np.array([0.9, 0.5, 0.88, 0.52, 0.1])
        treat = np.array([1, 1, 0, 0, 0])
        result = mirake.nearest_neighbor_match(distance, treat, MatchingConfig(caliper=0.2))
        assert result.caliper == pytest.approx(0.2 * np.std(distance, ddof=1))

    def test_order_matters(self):
        """Smallest-first lets the low-score treated unit take the shared control."""
        distance = np.array([0.6, 0.4, 0.5, 0.0])
        treat = np.array([1, 1, 0, 0])
        largest = mirake.nearest_neighbor_match(distance, treat, MatchingConfig())
        smallest = mirake.nearest_neighbor_match(distance, treat, MatchingConfig(m_order="smallest"))
        assert largest.subclass[2] == largest.subclass[0]
        assert smallest.subclass[2] == smallest.subclass[1]

    def test_ratio_weights(self):
        distance = np.array([0.9, 0.5, 0.88, 0.52, 0.85])
        treat = np.array([1, 1, 0, 0, 0])
        with pytest.warns(mirake.DataSufficiencyWarning):
            result = mirake.nearest_neighbor_match(distance, treat, MatchingConfig(ratio=2))
        # Controls of the 2-control set count 1/2 each, rescaled to 3 matched controls
        np.testing.assert_allclose(result.weights, [1, 1, 0.75, 1.5, 0.75])
        assert result.weights[treat == 0].sum() == pytest.approx(result.n_matched_control)

    def test_with_replacement(self):
        distance = np.array([0.9, 0.89, 0.88, 0.1])
        treat = np.array([1, 1, 0, 0])
        result = mirake.nearest_neighbor_match(distance, treat, MatchingConfig(replace=True))
        np.testing.assert_array_equal(result.weights, [1, 1, 1, 0])
        assert np.all(result.subclass == -1)

    def test_too_few_controls_warns(self):
        distance = np.array([0.9, 0.8, 0.7, 0.75])
        treat = np.array([1, 1, 1, 0])
        with pytest.warns(mirake.DataSufficiencyWarning):
            result = mirake.nearest_neighbor_match(distance, treat, MatchingConfig())
        assert result.n_matched_treated == 1

    def test_no_match_raises(self):
        distance = np.array([0.9, 0.1])
        treat = np.array([1, 0])
        config = MatchingConfig(caliper=0.01, std_caliper=False)
        with pytest.raises(mirake.InsufficientMatchesError):
            mirake.nearest_neighbor_match(distance, treat, config)

    def test_random_order_reproducible(self):
        rng = np.random.default_rng(0)
        distance = rng.random(200)
        treat = (rng.random(200) < 0.3).astype(np.int64)
        config = MatchingConfig(m_order="random")
        a = mirake.nearest_neighbor_match(distance, treat, config, rng=np.random.default_rng(5))
        b = mirake.nearest_neighbor_match(distance, treat, config, rng=np.random.default_rng(5))
        np.testing.assert_array_equal(a.subclass, b.subclass)

    def test_each_control_used_once(self):
        rng = np.random.default_rng(1)
        distance = rng.random(300)
        treat = (rng.random(300) < 0.3).astype(np.int64)
        result = mirake.nearest_neighbor_match(distance, treat, MatchingConfig())
        sets = result.subclass[result.subclass > 0]
        _, counts = np.unique(sets, return_counts=True)
        assert np.all(counts == 2)


# ---------------------------------------------------------------------------
# TestWeighting: ipw_weights(), trim_weights()
# ---------------------------------------------------------------------------


class TestWeighting:
    ps = np.array([0.2, 0.5, 0.8, 0.25])
    treat = np.array([1, 1, 0, 0])

    def test_att(self):
        w = mirake.ipw_weights(self.ps, self.treat, WeightingConfig(estimand="ATT"))
        np.testing.assert_allclose(w, [1, 1, 4, 1 / 3])

    def test_ate(self):
        w = mirake.ipw_weights(self.ps, self.treat, WeightingConfig(estimand="ATE"))
        np.testing.assert_allclose(w, [5, 2, 5, 4 / 3])

    def test_ate_stabilized(self):
        w = mirake.ipw_weights(
            self.ps, self.treat, WeightingConfig(estimand="ATE", stabilize=True)
        )
        np.testing.assert_allclose(w, [2.5, 1, 2.5, 2 / 3])

    def test_atc(self):
        w = mirake.ipw_weights(self.ps, self.treat, WeightingConfig(estimand="ATC"))
        np.testing.assert_allclose(w, [4, 1, 1, 1])

    def test_att_trimming_leaves_treated_alone(self):
        rng = np.random.default_rng(3)
        ps = rng.uniform(0.05, 0.95, 500)
        treat = (rng.random(500) < 0.4).astype(np.int64)
        untrimmed = mirake.ipw_weights(ps, treat, WeightingConfig())
        trimmed = mirake.ipw_weights(ps, treat, WeightingConfig(trim_at=0.9))
        np.testing.assert_array_equal(trimmed[treat == 1], 1.0)
        cap = np.quantile(untrimmed[treat == 0], 0.9)
        assert trimmed[treat == 0].max() == pytest.approx(cap)

    def test_trim_weights(self):
        w = np.arange(1, 11, dtype=np.float64)
        trimmed = mirake.trim_weights(w, 0.9)
        assert trimmed.max() == pytest.approx(np.quantile(w, 0.9))
        assert trimmed.min() == 1.0

    def test_trim_weights_mirrors_low_quantile(self):
        w = np.arange(1, 11, dtype=np.float64)
        np.testing.assert_array_equal(mirake.trim_weights(w, 0.1), mirake.trim_weights(w, 0.9))

    def test_trim_weights_lower(self):
        w = np.arange(1, 11, dtype=np.float64)
        trimmed = mirake.trim_weights(w, 0.9, lower=True)
        assert trimmed.min() == pytest.approx(np.quantile(w, 0.1))

    def test_trim_weights_subset(self):
        w = np.array([100.0, 1.0, 2.0, 3.0, 50.0])
        subset = np.array([False, True, True, True, True])
        trimmed = mirake.trim_weights(w, 0.5, subset=subset)
        assert trimmed[0] == 100.0
        assert trimmed[4] == pytest.approx(np.quantile(w[subset], 0.5))


# ---------------------------------------------------------------------------
# TestConfig
# ---------------------------------------------------------------------------


class TestConfig:
    def test_spec_stores_tuple(self):
        spec = PropensitySpec(treatment="treat", predictors=["a", "b"])
        assert spec.predictors == ("a", "b")
        assert spec.columns == ["treat", "a", "b"]

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"treatment": "treat", "predictors": ()},
            {"treatment": "treat", "predictors": ("treat", "age")},
            {"treatment": "treat", "predictors": ("age", "age")},
        ],
    )
    def test_bad_spec(self, kwargs):
        with pytest.raises(mirake.ConfigurationError):
            PropensitySpec(**kwargs)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"method": "optimal"},
            {"distance": "mahalanobis"},
            {"ratio": 0},
            {"caliper": -0.1},
            {"m_order": "closest"},
            {"estimand": "ATE"},
        ],
    )
    def test_bad_matching_config(self, kwargs):
        with pytest.raises(mirake.ConfigurationError):
            MatchingConfig(**kwargs)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"method": "gbm"},
            {"estimand": "ATO"},
            {"trim_at": 1.5},
            {"estimand": "ATT", "stabilize": True},
        ],
    )
    def test_bad_weighting_config(self, kwargs):
        with pytest.raises(mirake.ConfigurationError):
            WeightingConfig(**kwargs)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"max_iterations": 0},
            {"tolerance": 0},
            {"on_nonconvergence": "ignore"},
            {"eligibility_threshold": -1},
            {"min_cap": 3.0, "max_cap": 2.0},
            {"total": 0},
        ],
    )
    def test_bad_raking_config(self, kwargs):
        with pytest.raises(mirake.ConfigurationError):
            RakingConfig(**kwargs)

    def test_config_errors_are_value_errors(self):
        with pytest.raises(ValueError):
            MatchingConfig(ratio=0)
