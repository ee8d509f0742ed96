"""Immutable result objects produced by the engines.

Results are frozen Pydantic models so that they can be handed to the
presentation and narrative layers verbatim and serialised to JSON with
``model_dump(mode="json")``.  Sub-analyses that could not be computed
carry an :class:`AnalysisIssue` in place of numbers.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional, Tuple, TypeVar, Union

import pandas as pd
from pydantic import BaseModel, ConfigDict, Field

from ..core.errors import MetaAnalysisError
from ..core.models import EffectMeasure, ModelType, ModeratorValue, TauMethod

T = TypeVar("T")


class FrozenResult(BaseModel):
    model_config = ConfigDict(frozen=True, protected_namespaces=())


class AnalysisIssue(FrozenResult):
    """A sub-analysis that could not produce a statistic."""

    kind: str
    message: str

    @classmethod
    def from_error(cls, error: MetaAnalysisError) -> "AnalysisIssue":
        return cls(kind=error.kind.value, message=error.message)


def run_scoped(name: str, test: Callable[[], T], logger: logging.Logger) -> Union[T, AnalysisIssue]:
    """Run one sub-analysis, turning an engine error into an issue entry."""
    try:
        return test()
    except MetaAnalysisError as exc:
        logger.warning(f"{name} not computed: {exc.message}")
        return AnalysisIssue.from_error(exc)


class Interval(FrozenResult):
    lower: float
    upper: float


class HeterogeneityResult(FrozenResult):
    """Cochran's Q and derived heterogeneity measures.

    With a single study the Q-based measures are undefined; they are
    reported as ``None`` with ``applicable`` set to ``False``.
    """

    k: int
    q_statistic: Optional[float] = None
    q_df: int
    q_pvalue: Optional[float] = None
    i_squared: Optional[float] = Field(None, ge=0.0, le=100.0)
    tau_squared: float = Field(..., ge=0.0)
    tau: float = Field(..., ge=0.0)
    h_squared: Optional[float] = None
    h: Optional[float] = None
    applicable: bool = True
    interpretation: str


class PooledResult(FrozenResult):
    """Combined estimate on the reporting scale.

    ``estimate``, ``ci_lower``, ``ci_upper`` and the prediction interval
    are back-transformed for ratio measures; ``additive_estimate`` and
    ``se`` stay on the pooling scale.
    """

    model_type: ModelType
    effect_measure: EffectMeasure
    method: Optional[TauMethod] = None
    k: int
    estimate: float
    ci_lower: float
    ci_upper: float
    additive_estimate: float
    se: float
    z_value: float
    p_value: float
    tau_squared: float = Field(..., ge=0.0)
    prediction_interval: Optional[Interval] = None
    heterogeneity: HeterogeneityResult
    weights: Dict[str, float] = Field(default_factory=dict)


# -----------------------------------------------------------------------------
# Publication bias
# -----------------------------------------------------------------------------

class EggerTest(FrozenResult):
    intercept: float
    slope: float
    se: float
    t_value: float
    df: int
    p_value: float
    ci: Interval
    interpretation: str


class BeggTest(FrozenResult):
    rank_correlation: float
    p_value: float
    correlation: str
    interpretation: str


class ImputedStudy(FrozenResult):
    effect_size: float
    yi: float
    se: float


class TrimAndFill(FrozenResult):
    original_estimate: float
    adjusted_estimate: float
    adjusted_ci: Interval
    n_missing: int
    side: str
    studies_added: Tuple[ImputedStudy, ...] = ()
    iterations: int
    message: str


class FailSafeN(FrozenResult):
    rosenthal: int = Field(..., ge=0)
    orwin: Optional[int] = Field(None, ge=0)
    orwin_target: Optional[float] = None
    combined_z: float
    combined_p: float
    alpha: float
    interpretation: str


class PublicationBiasResult(FrozenResult):
    k: int
    effect_measure: EffectMeasure
    egger_test: Union[EggerTest, AnalysisIssue]
    begg_test: Union[BeggTest, AnalysisIssue]
    trim_and_fill: Union[TrimAndFill, AnalysisIssue]
    fail_safe_n: Union[FailSafeN, AnalysisIssue]


# -----------------------------------------------------------------------------
# Subgroups
# -----------------------------------------------------------------------------

class SubgroupSummary(FrozenResult):
    name: str
    k: int
    study_ids: Tuple[str, ...]
    result: PooledResult


class BetweenGroupTest(FrozenResult):
    q_between: float = Field(..., ge=0.0)
    df: int
    p_value: float


class SubgroupResult(FrozenResult):
    moderator: str
    model_type: ModelType
    effect_measure: EffectMeasure
    method: Optional[TauMethod] = None
    total_k: int
    subgroups: Tuple[SubgroupSummary, ...]
    between_group: Union[BetweenGroupTest, AnalysisIssue]
    excluded_study_ids: Tuple[str, ...] = ()


# -----------------------------------------------------------------------------
# Sensitivity
# -----------------------------------------------------------------------------

class LeaveOneOutEntry(FrozenResult):
    study_id: str
    study_label: str
    k: int
    estimate: float
    ci_lower: float
    ci_upper: float
    p_value: float
    i_squared: Optional[float] = None
    tau_squared: float
    percent_change: Optional[float] = None


class LeaveOneOutResult(FrozenResult):
    baseline_estimate: float
    entries: Tuple[LeaveOneOutEntry, ...]

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame([entry.model_dump() for entry in self.entries])


class CumulativeEntry(FrozenResult):
    step: int
    study_id: str
    study_label: str
    sort_value: Optional[ModeratorValue] = None
    k: int
    estimate: float
    ci_lower: float
    ci_upper: float
    p_value: float
    i_squared: Optional[float] = None
    tau_squared: float


class CumulativeResult(FrozenResult):
    sort_by: str
    sort_key_applied: bool
    entries: Tuple[CumulativeEntry, ...]

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame([entry.model_dump() for entry in self.entries])


class InfluenceEntry(FrozenResult):
    study_id: str
    study_label: str
    rstudent: float
    cook_distance: float
    tau_squared_deleted: float
    q_deleted: float
    weight: float
    influential: bool


class InfluenceResult(FrozenResult):
    threshold: float
    entries: Tuple[InfluenceEntry, ...]

    @property
    def influential_study_ids(self) -> List[str]:
        return [entry.study_id for entry in self.entries if entry.influential]


class SensitivityResult(FrozenResult):
    baseline: PooledResult
    leave_one_out: Union[LeaveOneOutResult, AnalysisIssue]
    cumulative: Union[CumulativeResult, AnalysisIssue]
    influence: Union[InfluenceResult, AnalysisIssue]


# -----------------------------------------------------------------------------
# Meta-regression
# -----------------------------------------------------------------------------

class Coefficient(FrozenResult):
    name: str
    estimate: float
    se: float
    z_value: float
    p_value: float
    ci_lower: float
    ci_upper: float


class ChiSquareStatistic(FrozenResult):
    statistic: float
    df: int
    p_value: Optional[float] = None


class RegressionResult(FrozenResult):
    moderators: Tuple[str, ...]
    model_type: ModelType
    effect_measure: EffectMeasure
    method: Optional[TauMethod] = None
    k: int
    coefficients: Tuple[Coefficient, ...]
    q_model: ChiSquareStatistic
    q_residual: ChiSquareStatistic
    q_total: float = Field(..., ge=0.0)
    r_squared: Optional[float] = Field(None, ge=0.0, le=1.0)
    r_squared_tau: Optional[float] = None
    tau_squared: float = Field(..., ge=0.0)
    i_squared: Optional[float] = None
    reference_levels: Dict[str, str] = Field(default_factory=dict)
    excluded_study_ids: Tuple[str, ...] = ()

    def coefficient(self, name: str) -> Coefficient:
        for coef in self.coefficients:
            if coef.name == name:
                return coef
        raise KeyError(name)
