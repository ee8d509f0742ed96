"""Sensitivity analyses: leave-one-out, cumulative pooling and influence."""

from __future__ import annotations

import math
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from ..config.settings import settings
from ..core.errors import InsufficientData
from ..core.models import EffectMeasure, ModeratorValue, ModelType, Study, TauMethod
from ..utils.logging import get_logger
from .heterogeneity import cochran_q
from .pooling import fit_intercept, pool, resolve_options, study_arrays
from .regression import level_name
from .results import (
    CumulativeEntry,
    CumulativeResult,
    InfluenceEntry,
    InfluenceResult,
    LeaveOneOutEntry,
    LeaveOneOutResult,
    SensitivityResult,
    run_scoped,
)

logger = get_logger(__name__)

BUILTIN_SORT_KEYS = ("year", "effect_size", "se", "precision", "sample_size")


def _require_two(studies: Sequence[Study], analysis: str) -> None:
    if len(studies) < 2:
        raise InsufficientData(f"{analysis} requires at least 2 studies, got {len(studies)}")


def leave_one_out(
    studies: Sequence[Study],
    model_type: Union[ModelType, str, None] = None,
    effect_measure: Union[EffectMeasure, str, None] = None,
    method: Union[TauMethod, str, None] = None,
) -> LeaveOneOutResult:
    """Re-pool with each study omitted in turn.

    ``percent_change`` compares each estimate to the full-sample
    estimate on the reporting scale and is ``None`` when that estimate
    is exactly zero.
    """
    _require_two(studies, "Leave-one-out analysis")
    model, measure, tau_method = resolve_options(studies, model_type, effect_measure, method)
    baseline = pool(studies, model, measure, tau_method).estimate

    entries = []
    for index, omitted in enumerate(studies):
        remaining = [s for j, s in enumerate(studies) if j != index]
        result = pool(remaining, model, measure, tau_method)
        change = None
        if baseline != 0:
            change = (result.estimate - baseline) / abs(baseline) * 100.0
        entries.append(
            LeaveOneOutEntry(
                study_id=omitted.study_id,
                study_label=omitted.study_label,
                k=result.k,
                estimate=result.estimate,
                ci_lower=result.ci_lower,
                ci_upper=result.ci_upper,
                p_value=result.p_value,
                i_squared=result.heterogeneity.i_squared,
                tau_squared=result.tau_squared,
                percent_change=change,
            )
        )
    return LeaveOneOutResult(baseline_estimate=baseline, entries=tuple(entries))


def sort_value(study: Study, key: str) -> Optional[ModeratorValue]:
    """Value of ``key`` used to order studies for cumulative pooling."""
    if key == "effect_size":
        return study.effect_size
    if key == "se":
        return study.se
    if key == "precision":
        return 1.0 / study.se
    return study.moderator_value(key)


def order_studies(
    studies: Sequence[Study],
    key: str,
    descending: bool = False,
) -> Tuple[List[Study], bool]:
    """Stable sort by ``key``; studies lacking it go last.

    Returns the ordered studies and whether the key was applied.  When no
    study carries the key the input order is kept.
    """
    values = [sort_value(s, key) for s in studies]
    present = [v for v in values if v is not None]
    if not present:
        return list(studies), False

    numeric = all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in present)

    def rank(value: ModeratorValue):
        return value if numeric else level_name(value)

    indexed = [(i, s, v) for i, (s, v) in enumerate(zip(studies, values))]
    with_key = [item for item in indexed if item[2] is not None]
    without_key = [item for item in indexed if item[2] is None]
    with_key.sort(key=lambda item: rank(item[2]), reverse=descending)
    return [s for _, s, _ in with_key + without_key], True


def cumulative(
    studies: Sequence[Study],
    sort_by: str = "year",
    model_type: Union[ModelType, str, None] = None,
    effect_measure: Union[EffectMeasure, str, None] = None,
    method: Union[TauMethod, str, None] = None,
    descending: bool = False,
) -> CumulativeResult:
    """Pool the first 1, 2, ..., k studies in ``sort_by`` order.

    The last entry equals :func:`~metaengine.meta.pooling.pool` on the
    full set.
    """
    if not studies:
        raise InsufficientData("Cumulative analysis requires at least 1 study")
    model, measure, tau_method = resolve_options(studies, model_type, effect_measure, method)
    ordered, applied = order_studies(studies, sort_by, descending)
    if not applied:
        logger.warning(
            f"Sort key '{sort_by}' is absent from all studies; cumulative analysis uses input order"
        )

    entries = []
    for step in range(1, len(ordered) + 1):
        result = pool(ordered[:step], model, measure, tau_method)
        added = ordered[step - 1]
        entries.append(
            CumulativeEntry(
                step=step,
                study_id=added.study_id,
                study_label=added.study_label,
                sort_value=sort_value(added, sort_by),
                k=result.k,
                estimate=result.estimate,
                ci_lower=result.ci_lower,
                ci_upper=result.ci_upper,
                p_value=result.p_value,
                i_squared=result.heterogeneity.i_squared,
                tau_squared=result.tau_squared,
            )
        )
    return CumulativeResult(sort_by=sort_by, sort_key_applied=applied, entries=tuple(entries))


def influence(
    studies: Sequence[Study],
    model_type: Union[ModelType, str, None] = None,
    effect_measure: Union[EffectMeasure, str, None] = None,
    method: Union[TauMethod, str, None] = None,
    threshold: Optional[float] = None,
) -> InfluenceResult:
    """Case-deletion diagnostics for each study.

    For study i, with the model refitted without it:

    - ``rstudent``: (y_i - mu_(-i)) / sqrt(v_i + tau²_(-i) + Var(mu_(-i)))
    - ``cook_distance``: (mu - mu_(-i))² / Var(mu)
    - ``tau_squared_deleted`` and ``q_deleted``: tau² and Cochran's Q
      of the remaining studies
    - ``weight``: relative weight (%) in the full model

    A study is flagged when ``|rstudent|`` exceeds ``threshold``.
    """
    _require_two(studies, "Influence analysis")
    threshold = threshold if threshold is not None else settings.influence_threshold
    model, _, tau_method = resolve_options(studies, model_type, effect_measure, method)
    y, v = study_arrays(studies)
    full = fit_intercept(y, v, model, tau_method)
    mu = float(full.beta[0])
    var_mu = float(full.vcov[0, 0])
    relative = full.weights / np.sum(full.weights) * 100.0

    entries = []
    for i, study in enumerate(studies):
        keep = np.arange(len(y)) != i
        deleted = fit_intercept(y[keep], v[keep], model, tau_method)
        mu_deleted = float(deleted.beta[0])
        rstudent = (y[i] - mu_deleted) / math.sqrt(
            v[i] + deleted.tau_squared + float(deleted.vcov[0, 0])
        )
        cook = (mu - mu_deleted) ** 2 / var_mu
        entries.append(
            InfluenceEntry(
                study_id=study.study_id,
                study_label=study.study_label,
                rstudent=float(rstudent),
                cook_distance=float(cook),
                tau_squared_deleted=deleted.tau_squared,
                q_deleted=cochran_q(y[keep], 1.0 / v[keep]),
                weight=float(relative[i]),
                influential=bool(abs(rstudent) > threshold),
            )
        )
    flagged = [e.study_id for e in entries if e.influential]
    if flagged:
        logger.info(f"Influential studies (|rstudent| > {threshold}): {', '.join(flagged)}")
    return InfluenceResult(threshold=threshold, entries=tuple(entries))


def sensitivity(
    studies: Sequence[Study],
    model_type: Union[ModelType, str, None] = None,
    effect_measure: Union[EffectMeasure, str, None] = None,
    method: Union[TauMethod, str, None] = None,
    sort_by: str = "year",
) -> SensitivityResult:
    """Baseline pooling plus leave-one-out, cumulative and influence analyses.

    A failure in one sub-analysis is reported in its slot; the baseline
    must succeed.
    """
    model, measure, tau_method = resolve_options(studies, model_type, effect_measure, method)
    baseline = pool(studies, model, measure, tau_method)
    result = SensitivityResult(
        baseline=baseline,
        leave_one_out=run_scoped(
            "Leave-one-out", lambda: leave_one_out(studies, model, measure, tau_method), logger
        ),
        cumulative=run_scoped(
            "Cumulative analysis",
            lambda: cumulative(studies, sort_by, model, measure, tau_method),
            logger,
        ),
        influence=run_scoped(
            "Influence analysis", lambda: influence(studies, model, measure, tau_method), logger
        ),
    )
    logger.info(f"Sensitivity analysis completed for {len(studies)} studies")
    return result
