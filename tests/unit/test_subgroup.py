"""Unit tests for subgroup analysis."""

import pytest

from metaengine.core.errors import ErrorKind, InvalidModerator
from metaengine.meta.heterogeneity import heterogeneity
from metaengine.meta.pooling import pool
from metaengine.meta.results import AnalysisIssue
from metaengine.meta.subgroup import partition, subgroup


class TestPartition:
    def test_first_appearance_order(self, moderated_studies) -> None:
        groups = partition(moderated_studies, "region")
        assert list(groups) == ["EU", "US"]
        assert [s.study_id for s in groups["EU"]] == ["s1", "s2", "s3", "s6"]

    def test_numeric_levels_are_strings(self, make_studies) -> None:
        studies = make_studies([0.1, 0.2, 0.3], [0.1] * 3, arm=[1, 2, 1])
        assert list(partition(studies, "arm")) == ["1", "2"]


class TestSubgroup:
    def test_counts_add_up(self, moderated_studies) -> None:
        result = subgroup(moderated_studies, "region", "RE", method="DL")
        assert sum(g.k for g in result.subgroups) == result.total_k == 8
        assert result.between_group.df == len(result.subgroups) - 1
        assert result.between_group.q_between >= 0.0
        assert 0.0 <= result.between_group.p_value <= 1.0

    def test_group_results_match_pooling(self, moderated_studies) -> None:
        result = subgroup(moderated_studies, "region", "FE")
        eu = next(g for g in result.subgroups if g.name == "EU")
        expected = pool([s for s in moderated_studies if s.moderators["region"] == "EU"], "FE")
        assert eu.result.estimate == pytest.approx(expected.estimate)
        assert eu.study_ids == ("s1", "s2", "s3", "s6")

    def test_fixed_effect_q_partition(self, moderated_studies) -> None:
        """Q_between = Q_total - sum of within-group Q under FE."""
        result = subgroup(moderated_studies, "region", "FE")
        q_total = heterogeneity(moderated_studies).q_statistic
        q_within = sum(g.result.heterogeneity.q_statistic for g in result.subgroups)
        assert result.between_group.q_between == pytest.approx(q_total - q_within, abs=1e-8)

    def test_single_group(self, make_studies) -> None:
        studies = make_studies([0.1, 0.2, 0.3], [0.1] * 3, region=["EU", "EU", "EU"])
        result = subgroup(studies, "region")
        assert len(result.subgroups) == 1
        assert isinstance(result.between_group, AnalysisIssue)
        assert result.between_group.kind == ErrorKind.INSUFFICIENT_DATA.value

    def test_singleton_groups_under_random_effects(self, make_studies) -> None:
        """Two one-study groups cannot support a random-effects between-group test."""
        studies = make_studies([0.1, 0.5], [0.1, 0.1], region=["EU", "US"])
        result = subgroup(studies, "region", "RE")
        assert len(result.subgroups) == 2
        assert all(g.result.heterogeneity.applicable is False for g in result.subgroups)
        assert isinstance(result.between_group, AnalysisIssue)

    def test_missing_values_excluded(self, make_studies) -> None:
        studies = make_studies(
            [0.1, 0.2, 0.3, 0.4], [0.1] * 4, region=["EU", None, "US", "US"]
        )
        result = subgroup(studies, "region", "FE")
        assert result.excluded_study_ids == ("s2",)
        assert result.total_k == 3

    def test_absent_moderator(self, moderated_studies) -> None:
        with pytest.raises(InvalidModerator):
            subgroup(moderated_studies, "latitude")

    def test_empty_moderator_name(self, moderated_studies) -> None:
        with pytest.raises(InvalidModerator):
            subgroup(moderated_studies, "")
