"""Shared fixtures: small study sets with known statistics."""

import os
from typing import Any, Callable, Dict, List, Sequence, Tuple

import pytest

# Keep test output readable
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from metaengine.core.models import Study  # noqa: E402
from metaengine.core.normalization import normalize_studies  # noqa: E402

StudyFactory = Callable[..., Tuple[Study, ...]]


def build_records(
    effects: Sequence[float],
    ses: Sequence[float],
    **columns: Sequence[Any],
) -> List[Dict[str, Any]]:
    """Raw records ``s1..sk`` with extra per-study columns."""
    records = []
    for i, (effect, se) in enumerate(zip(effects, ses)):
        record: Dict[str, Any] = {"study_id": f"s{i + 1}", "effect_size": effect, "se": se}
        for name, values in columns.items():
            if values[i] is not None:
                record[name] = values[i]
        records.append(record)
    return records


@pytest.fixture
def make_studies() -> StudyFactory:
    """Return a factory building normalized studies from effects and SEs."""

    def factory(
        effects: Sequence[float],
        ses: Sequence[float],
        measure: str = "SMD",
        **columns: Sequence[Any],
    ) -> Tuple[Study, ...]:
        return normalize_studies(build_records(effects, ses, **columns), measure)

    return factory


@pytest.fixture
def three_studies(make_studies: StudyFactory) -> Tuple[Study, ...]:
    """Three heterogeneous SMD studies (DL tau² ≈ 0.3087, Q ≈ 8.426)."""
    return make_studies([1.5, 2.1, 0.8], [0.3, 0.4, 0.25])


@pytest.fixture
def small_study_effects(make_studies: StudyFactory) -> Tuple[Study, ...]:
    """Six studies where effects grow with the standard error."""
    return make_studies(
        [0.1, 0.2, 0.3, 0.5, 0.8, 1.0],
        [0.05, 0.1, 0.15, 0.25, 0.35, 0.45],
        year=[2001, 2003, 2005, 2008, 2012, 2015],
    )


@pytest.fixture
def moderated_records() -> List[Dict[str, Any]]:
    """Eight records with a numeric and a categorical moderator."""
    effects = [0.20, 0.35, 0.30, 0.55, 0.60, 0.45, 0.80, 0.70]
    ses = [0.10, 0.12, 0.15, 0.11, 0.14, 0.13, 0.16, 0.12]
    return build_records(
        effects,
        ses,
        year=[2010, 2011, 2012, 2013, 2014, 2015, 2016, 2017],
        dose=[1.0, 1.5, 2.0, 2.5, 3.0, 3.5, 4.0, 4.5],
        region=["EU", "EU", "EU", "US", "US", "EU", "US", "US"],
    )


@pytest.fixture
def moderated_studies(moderated_records: List[Dict[str, Any]]) -> Tuple[Study, ...]:
    return normalize_studies(moderated_records, "SMD")

