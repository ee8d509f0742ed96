"""Subgroup analysis over a categorical moderator."""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Union

from ..core.errors import InvalidModerator
from ..core.models import EffectMeasure, ModelType, Study, TauMethod
from ..utils.logging import get_logger
from .pooling import pool, resolve_options
from .regression import level_name, regress
from .results import AnalysisIssue, BetweenGroupTest, SubgroupResult, SubgroupSummary, run_scoped

logger = get_logger(__name__)


def partition(studies: Sequence[Study], moderator: str) -> Dict[str, List[Study]]:
    """Group studies by the stringified moderator value, in order of first appearance."""
    groups: Dict[str, List[Study]] = {}
    for study in studies:
        value = study.moderator_value(moderator)
        if value is None:
            continue
        groups.setdefault(level_name(value), []).append(study)
    return groups


def _between_groups(
    studies: Sequence[Study],
    moderator: str,
    model: ModelType,
    measure: EffectMeasure,
    method: Optional[TauMethod],
) -> BetweenGroupTest:
    fit = regress(studies, [moderator], model, measure, method, categorical=[moderator])
    return BetweenGroupTest(
        q_between=max(0.0, fit.q_model.statistic),
        df=fit.q_model.df,
        p_value=fit.q_model.p_value,
    )


def subgroup(
    studies: Sequence[Study],
    moderator: str,
    model_type: Union[ModelType, str, None] = None,
    effect_measure: Union[EffectMeasure, str, None] = None,
    method: Union[TauMethod, str, None] = None,
) -> SubgroupResult:
    """Pool each level of ``moderator`` separately and test between groups.

    Q_between is the omnibus test of a meta-regression with the
    moderator as a categorical predictor (df = groups - 1), not the sum
    of within-group statistics.  Studies without the moderator are left
    out and listed in ``excluded_study_ids``.

    Raises:
        InvalidModerator: no study carries ``moderator``.
    """
    model, measure, tau_method = resolve_options(studies, model_type, effect_measure, method)
    if not moderator:
        raise InvalidModerator("A subgroup variable is required", field="subgroup_var")
    groups = partition(studies, moderator)
    if not groups:
        raise InvalidModerator(f"Moderator '{moderator}' is absent from all studies", field=moderator)

    included = [s for s in studies if s.moderator_value(moderator) is not None]
    excluded = tuple(s.study_id for s in studies if s.moderator_value(moderator) is None)
    if excluded:
        logger.warning(f"{len(excluded)} studies lack '{moderator}' and were excluded from subgroups")

    summaries = tuple(
        SubgroupSummary(
            name=name,
            k=len(members),
            study_ids=tuple(s.study_id for s in members),
            result=pool(members, model, measure, tau_method),
        )
        for name, members in groups.items()
    )

    between: Union[BetweenGroupTest, AnalysisIssue]
    if len(groups) < 2:
        between = AnalysisIssue(
            kind="insufficient_data",
            message=f"Between-group test needs at least two subgroups of '{moderator}', found one",
        )
    else:
        between = run_scoped(
            f"Between-group test for '{moderator}'",
            lambda: _between_groups(included, moderator, model, measure, tau_method),
            logger,
        )

    logger.info(f"Subgroup analysis on '{moderator}': {len(groups)} groups, {len(included)} studies")
    return SubgroupResult(
        moderator=moderator,
        model_type=model,
        effect_measure=measure,
        method=tau_method,
        total_k=len(included),
        subgroups=summaries,
        between_group=between,
        excluded_study_ids=excluded,
    )
