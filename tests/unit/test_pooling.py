"""Unit tests for fixed- and random-effects pooling."""

import math

import pytest

from metaengine.core.errors import InsufficientData, InvalidInput
from metaengine.core.models import EffectMeasure, ModelType, TauMethod
from metaengine.core.normalization import normalize_studies
from metaengine.meta.pooling import pool, resolve_options


class TestPool:
    """Combined estimates under FE and RE."""

    def test_random_effects_dl_example(self, three_studies) -> None:
        result = pool(three_studies, "RE", method="DL")
        assert 0.8 <= result.estimate <= 2.1
        assert result.tau_squared == pytest.approx(0.308720, abs=1e-5)
        assert result.heterogeneity.tau_squared == pytest.approx(result.tau_squared)
        assert result.method is TauMethod.DL
        assert result.k == 3

    def test_fixed_effect_estimate(self, three_studies) -> None:
        result = pool(three_studies, "FE")
        assert result.estimate == pytest.approx(1.276686, abs=1e-5)
        assert result.se == pytest.approx(math.sqrt(1 / 33.361111), abs=1e-6)
        assert result.tau_squared == 0.0
        assert result.method is None
        assert result.prediction_interval is None

    @pytest.mark.parametrize("method", ["DL", "REML", "PM", "ML"])
    def test_random_effects_ci_not_narrower(self, three_studies, method) -> None:
        fe = pool(three_studies, "FE")
        re = pool(three_studies, "RE", method=method)
        assert re.ci_upper - re.ci_lower >= fe.ci_upper - fe.ci_lower

    def test_single_study(self, make_studies) -> None:
        """One study pools to itself with no heterogeneity."""
        result = pool(make_studies([0.42], [0.15]), "RE")
        assert result.estimate == pytest.approx(0.42)
        assert result.se == pytest.approx(0.15)
        assert result.tau_squared == 0.0
        assert result.heterogeneity.applicable is False
        assert result.prediction_interval is None
        assert result.weights["s1"] == pytest.approx(100.0)

    def test_empty_set(self) -> None:
        with pytest.raises(InsufficientData):
            pool([])

    def test_weights_sum_to_100(self, three_studies) -> None:
        result = pool(three_studies, "RE", method="REML")
        assert sum(result.weights.values()) == pytest.approx(100.0)
        assert set(result.weights) == {"s1", "s2", "s3"}

    def test_prediction_interval_contains_ci(self, three_studies) -> None:
        result = pool(three_studies, "RE", method="DL")
        pi = result.prediction_interval
        assert pi.lower <= result.ci_lower
        assert pi.upper >= result.ci_upper

    def test_ratio_measure_back_transformed(self, make_studies) -> None:
        studies = make_studies([2.0, 2.0, 2.0], [0.2, 0.3, 0.25], measure="OR")
        result = pool(studies, "RE")
        assert result.effect_measure is EffectMeasure.OR
        assert result.estimate == pytest.approx(2.0)
        assert result.additive_estimate == pytest.approx(math.log(2.0))
        assert result.ci_lower < 2.0 < result.ci_upper
        assert result.ci_lower > 0

    def test_p_value_from_z(self, three_studies) -> None:
        result = pool(three_studies, "FE")
        assert result.z_value == pytest.approx(result.additive_estimate / result.se)
        assert 0.0 <= result.p_value < 1e-6

    def test_defaults_from_settings(self, three_studies) -> None:
        result = pool(three_studies)
        assert result.model_type is ModelType.RE
        assert result.method is TauMethod.REML


class TestResolveOptions:
    def test_mixed_measures_rejected(self) -> None:
        smd = normalize_studies([{"study_id": "a", "effect_size": 0.2, "se": 0.1}], "SMD")
        odds = normalize_studies([{"study_id": "b", "effect_size": 1.5, "se": 0.1}], "OR")
        with pytest.raises(InvalidInput):
            pool(smd + odds)

    def test_mismatched_measure_rejected(self, three_studies) -> None:
        with pytest.raises(InvalidInput):
            pool(three_studies, effect_measure="OR")

    def test_measure_inferred_from_studies(self, make_studies) -> None:
        studies = make_studies([1.2], [0.1], measure="RR")
        _, measure, _ = resolve_options(studies)
        assert measure is EffectMeasure.RR

    def test_method_dropped_for_fixed_effect(self, three_studies) -> None:
        model, _, method = resolve_options(three_studies, "FE", method="PM")
        assert model is ModelType.FE
        assert method is None
