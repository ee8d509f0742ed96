"""Unit tests for the request dispatcher and the MetaAnalyzer facade."""

import pytest

from metaengine.core.models import AnalysisRequest
from metaengine.meta.analyzer import MetaAnalyzer
from metaengine.meta.service import handle_request, status_code_for


def _request(operation, studies, **parameters):
    return {"operation": operation, "studies": studies, "parameters": parameters}


class TestHandleRequest:
    """End-to-end dispatch of each operation."""

    def test_run_analysis(self, moderated_records) -> None:
        response = handle_request(_request("run_analysis", moderated_records, modelType="RE", method="DL"))
        assert response.success
        assert response.error is None
        assert response.results["k"] == 8
        assert response.results["method"] == "DL"
        assert "meta_regression" not in response.results
        assert status_code_for(response) == 200

    def test_run_analysis_with_moderators(self, moderated_records) -> None:
        response = handle_request(_request("run_analysis", moderated_records, moderators=["dose"]))
        assert response.success
        assert response.results["meta_regression"]["coefficients"][1]["name"] == "dose"

    def test_run_analysis_with_bad_moderator(self, moderated_records) -> None:
        """A failing regression is reported in its slot; pooling still succeeds."""
        response = handle_request(_request("run_analysis", moderated_records, moderators=["latitude"]))
        assert response.success
        assert response.results["meta_regression"]["kind"] == "invalid_moderator"

    def test_heterogeneity(self, moderated_records) -> None:
        response = handle_request(_request("heterogeneity", moderated_records))
        assert response.success
        assert 0.0 <= response.results["i_squared"] <= 100.0

    def test_subgroup(self, moderated_records) -> None:
        response = handle_request(_request("subgroup_analysis", moderated_records, subgroupVar="region"))
        assert response.success
        assert [g["name"] for g in response.results["subgroups"]] == ["EU", "US"]

    def test_subgroup_requires_variable(self, moderated_records) -> None:
        response = handle_request(_request("subgroup_analysis", moderated_records))
        assert not response.success
        assert response.error.kind == "invalid_input"
        assert response.error.field == "subgroupVar"
        assert status_code_for(response) == 400

    def test_sensitivity(self, moderated_records) -> None:
        response = handle_request(_request("sensitivity_analysis", moderated_records, sortBy="dose"))
        assert response.success
        assert response.results["cumulative"]["sort_by"] == "dose"
        assert len(response.results["leave_one_out"]["entries"]) == 8

    def test_publication_bias_with_two_studies(self) -> None:
        studies = [
            {"study_id": "a", "effect_size": 0.3, "se": 0.1},
            {"study_id": "b", "effect_size": 0.5, "se": 0.2},
        ]
        response = handle_request(_request("publication_bias", studies))
        assert response.success
        for key in ("egger_test", "begg_test", "trim_and_fill", "fail_safe_n"):
            assert response.results[key]["kind"] == "insufficient_data"

    def test_meta_regression(self, moderated_records) -> None:
        response = handle_request(_request("meta_regression", moderated_records, moderators=["dose", "region"]))
        assert response.success
        assert response.results["q_model"]["df"] == 2

    def test_meta_regression_requires_moderators(self, moderated_records) -> None:
        response = handle_request(_request("meta_regression", moderated_records))
        assert not response.success
        assert response.error.kind == "invalid_input"

    def test_unknown_operation(self) -> None:
        response = handle_request(_request("network_meta_analysis", []))
        assert not response.success
        assert response.error.kind == "invalid_input"
        assert status_code_for(response) == 400

    def test_missing_field_names_study(self) -> None:
        studies = [
            {"study_id": "a", "effect_size": 0.3, "se": 0.1},
            {"study_id": "b", "effect_size": 0.5},
        ]
        response = handle_request(_request("run_analysis", studies))
        assert not response.success
        assert response.error.kind == "missing_required_field"
        assert response.error.study_id == "b"
        assert response.error.field == "se"
        assert response.results is None

    @pytest.mark.parametrize("se", [1e-170, 1e170])
    def test_extreme_se_is_structured_error(self, se) -> None:
        studies = [
            {"study_id": "a", "effect_size": 0.3, "se": 0.1},
            {"study_id": "b", "effect_size": 0.5, "se": se},
        ]
        response = handle_request(_request("run_analysis", studies))
        assert not response.success
        assert response.error.kind == "invalid_input"
        assert response.error.study_id == "b"
        assert response.error.field == "se"
        assert status_code_for(response) == 400

    def test_empty_study_list(self) -> None:
        response = handle_request(_request("run_analysis", []))
        assert response.error.kind == "insufficient_data"
        assert status_code_for(response) == 422

    def test_invalid_moderator_status(self, moderated_records) -> None:
        response = handle_request(_request("subgroup_analysis", moderated_records, subgroupVar="latitude"))
        assert response.error.kind == "invalid_moderator"
        assert status_code_for(response) == 422

    def test_accepts_request_model(self, moderated_records) -> None:
        request = AnalysisRequest.model_validate(_request("heterogeneity", moderated_records))
        assert handle_request(request).success

    def test_ratio_measure(self) -> None:
        studies = [
            {"study_id": "a", "events_treatment": 12, "n_treatment": 100, "events_control": 20, "n_control": 100},
            {"study_id": "b", "events_treatment": 8, "n_treatment": 80, "events_control": 15, "n_control": 80},
            {"study_id": "c", "effect_size": 0.7, "ci_lower": 0.5, "ci_upper": 0.98},
        ]
        response = handle_request(_request("run_analysis", studies, effectMeasure="OR"))
        assert response.success
        assert response.results["effect_measure"] == "OR"
        assert 0.0 < response.results["estimate"] < 1.0


class TestMetaAnalyzer:
    def test_from_records(self, moderated_records) -> None:
        analyzer = MetaAnalyzer.from_records(moderated_records, model_type="FE")
        assert len(analyzer.studies) == 8
        assert analyzer.pool().k == 8
        assert analyzer.subgroup("region").total_k == 8
        assert analyzer.regress(["dose"]).k == 8

    def test_forest_plot_frame(self, three_studies) -> None:
        frame = MetaAnalyzer(three_studies, "RE", method="DL").forest_plot_frame()
        assert len(frame) == 4
        assert list(frame["type"]) == ["study", "study", "study", "pooled"]
        assert frame["weight"].iloc[:3].sum() == pytest.approx(100.0)
        assert (frame["ci_lower"] <= frame["effect"]).all()

    def test_measure_taken_from_studies(self, make_studies) -> None:
        analyzer = MetaAnalyzer(make_studies([1.2, 1.5], [0.1, 0.2], measure="RR"))
        assert analyzer.effect_measure.value == "RR"
