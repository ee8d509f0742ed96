"""Unit tests for leave-one-out, cumulative and influence analyses."""

import pytest

from metaengine.core.errors import ErrorKind, InsufficientData
from metaengine.meta.pooling import pool
from metaengine.meta.results import AnalysisIssue
from metaengine.meta.sensitivity import (
    cumulative,
    influence,
    leave_one_out,
    order_studies,
    sensitivity,
)


class TestLeaveOneOut:
    def test_one_entry_per_study(self, moderated_studies) -> None:
        result = leave_one_out(moderated_studies, "RE", method="DL")
        ids = [e.study_id for e in result.entries]
        assert len(result.entries) == len(moderated_studies)
        assert len(set(ids)) == len(ids)
        assert all(e.k == len(moderated_studies) - 1 for e in result.entries)

    def test_entry_matches_repooling(self, three_studies) -> None:
        result = leave_one_out(three_studies, "FE")
        dropped = next(e for e in result.entries if e.study_id == "s2")
        expected = pool([three_studies[0], three_studies[2]], "FE")
        assert dropped.estimate == pytest.approx(expected.estimate)
        assert dropped.percent_change == pytest.approx(
            (expected.estimate - result.baseline_estimate) / abs(result.baseline_estimate) * 100
        )

    def test_zero_baseline_has_no_percent_change(self, make_studies) -> None:
        result = leave_one_out(make_studies([-0.5, 0.5], [0.1, 0.1]), "FE")
        assert result.baseline_estimate == 0.0
        assert all(e.percent_change is None for e in result.entries)

    def test_identical_studies_give_no_change(self, make_studies) -> None:
        result = leave_one_out(make_studies([0.4] * 5, [0.2] * 5), "RE", method="DL")
        assert all(e.percent_change == pytest.approx(0.0, abs=1e-9) for e in result.entries)

    def test_heterogeneous_studies_shift_estimate(self, three_studies) -> None:
        result = leave_one_out(three_studies, "RE", method="DL")
        changes = [e.percent_change for e in result.entries]
        assert all(abs(c) > 1e-6 for c in changes)
        assert max(abs(c) for c in changes) > 10.0

    def test_entries_keyed_by_study_not_position(self, moderated_studies) -> None:
        forward = leave_one_out(moderated_studies, "RE", method="REML")
        backward = leave_one_out(list(reversed(moderated_studies)), "RE", method="REML")
        by_id = {e.study_id: e for e in forward.entries}
        assert [e.study_id for e in backward.entries] == [s.study_id for s in reversed(moderated_studies)]
        for entry in backward.entries:
            assert entry.estimate == pytest.approx(by_id[entry.study_id].estimate, abs=1e-7)
            assert entry.percent_change == pytest.approx(by_id[entry.study_id].percent_change, abs=1e-6)

    def test_requires_two_studies(self, make_studies) -> None:
        with pytest.raises(InsufficientData):
            leave_one_out(make_studies([0.3], [0.1]))

    def test_to_frame(self, three_studies) -> None:
        frame = leave_one_out(three_studies, "FE").to_frame()
        assert list(frame["study_id"]) == ["s1", "s2", "s3"]


class TestCumulative:
    def test_last_step_equals_full_pool(self, small_study_effects) -> None:
        result = cumulative(small_study_effects, "year", "RE", method="REML")
        full = pool(small_study_effects, "RE", method="REML")
        last = result.entries[-1]
        assert last.k == len(small_study_effects)
        assert last.estimate == pytest.approx(full.estimate)
        assert last.tau_squared == pytest.approx(full.tau_squared, abs=1e-8)

    def test_sorted_by_year(self, make_studies) -> None:
        studies = make_studies([0.1, 0.2, 0.3], [0.1] * 3, year=[2015, 2001, 2008])
        result = cumulative(studies, "year", "FE")
        assert [e.study_id for e in result.entries] == ["s2", "s3", "s1"]
        assert [e.sort_value for e in result.entries] == [2001, 2008, 2015]
        assert [e.k for e in result.entries] == [1, 2, 3]
        assert result.sort_key_applied is True

    def test_descending(self, make_studies) -> None:
        studies = make_studies([0.1, 0.2, 0.3], [0.1] * 3, year=[2015, 2001, 2008])
        result = cumulative(studies, "year", "FE", descending=True)
        assert [e.study_id for e in result.entries] == ["s1", "s3", "s2"]

    def test_first_step_is_single_study(self, make_studies) -> None:
        studies = make_studies([0.1, 0.2], [0.1, 0.2], year=[2001, 2002])
        first = cumulative(studies, "year", "RE").entries[0]
        assert first.estimate == pytest.approx(0.1)
        assert first.tau_squared == 0.0
        assert first.i_squared is None

    def test_absent_key_keeps_input_order(self, three_studies) -> None:
        result = cumulative(three_studies, "year", "FE")
        assert result.sort_key_applied is False
        assert [e.study_id for e in result.entries] == ["s1", "s2", "s3"]

    def test_precision_key(self, three_studies) -> None:
        result = cumulative(three_studies, "precision", "FE", descending=True)
        assert [e.study_id for e in result.entries] == ["s3", "s1", "s2"]


class TestOrderStudies:
    def test_missing_values_go_last(self, make_studies) -> None:
        studies = make_studies([0.1, 0.2, 0.3], [0.1] * 3, year=[None, 2010, 2005])
        ordered, applied = order_studies(studies, "year")
        assert applied
        assert [s.study_id for s in ordered] == ["s3", "s2", "s1"]

    def test_stable_for_ties(self, make_studies) -> None:
        studies = make_studies([0.1, 0.2, 0.3], [0.1] * 3, year=[2010, 2010, 2001])
        ordered, _ = order_studies(studies, "year")
        assert [s.study_id for s in ordered] == ["s3", "s1", "s2"]


class TestInfluence:
    def test_outlier_flagged(self, make_studies) -> None:
        studies = make_studies([0.10, 0.12, 0.09, 0.11, 0.10, 2.0], [0.1] * 6)
        result = influence(studies, "FE")
        outlier = next(e for e in result.entries if e.study_id == "s6")
        assert outlier.influential
        assert outlier.cook_distance == max(e.cook_distance for e in result.entries)
        assert "s6" in result.influential_study_ids
        assert sum(e.weight for e in result.entries) == pytest.approx(100.0)

    def test_deleted_statistics(self, three_studies) -> None:
        result = influence(three_studies, "RE", method="DL")
        assert len(result.entries) == 3
        assert all(e.tau_squared_deleted >= 0 for e in result.entries)
        assert all(e.q_deleted >= 0 for e in result.entries)

    def test_custom_threshold(self, three_studies) -> None:
        result = influence(three_studies, "FE", threshold=100.0)
        assert result.threshold == 100.0
        assert result.influential_study_ids == []


class TestSensitivity:
    def test_all_parts_present(self, small_study_effects) -> None:
        result = sensitivity(small_study_effects, "RE", method="DL", sort_by="year")
        assert result.baseline.k == 6
        assert len(result.leave_one_out.entries) == 6
        assert result.cumulative.entries[-1].estimate == pytest.approx(result.baseline.estimate)
        assert len(result.influence.entries) == 6

    def test_single_study_scoped_failures(self, make_studies) -> None:
        result = sensitivity(make_studies([0.3], [0.1]), "FE")
        assert result.baseline.estimate == pytest.approx(0.3)
        assert isinstance(result.leave_one_out, AnalysisIssue)
        assert result.leave_one_out.kind == ErrorKind.INSUFFICIENT_DATA.value
        assert isinstance(result.influence, AnalysisIssue)
        assert len(result.cumulative.entries) == 1

    def test_baseline_failure_propagates(self) -> None:
        with pytest.raises(InsufficientData):
            sensitivity([])
