"""Publication-bias diagnostics.

Egger's regression test, Begg's rank-correlation test, Duval and
Tweedie's trim-and-fill and fail-safe N (Rosenthal, Orwin).  Each test
needs at least three studies; :func:`assess_publication_bias` runs all
four and reports a failing test as an :class:`AnalysisIssue` without
discarding the others.
"""

from __future__ import annotations

import math
from typing import Optional, Sequence, Union

import numpy as np
from scipy import stats

from ..config.settings import settings
from ..core.errors import InsufficientData, InvalidInput, NumericalInstability
from ..core.models import EffectMeasure, ModelType, Study, TauMethod
from ..core.normalization import from_additive
from ..utils.logging import get_logger
from .estimators import fit_weighted
from .numerics import normal_critical, normal_two_sided_p, t_critical, t_two_sided_p
from .pooling import fit_intercept, resolve_options, study_arrays
from .results import (
    BeggTest,
    EggerTest,
    FailSafeN,
    ImputedStudy,
    Interval,
    PublicationBiasResult,
    TrimAndFill,
    run_scoped,
)

logger = get_logger(__name__)

MIN_STUDIES = 3


def _require_studies(studies: Sequence[Study], test: str) -> None:
    if len(studies) < MIN_STUDIES:
        raise InsufficientData(
            f"{test} requires at least {MIN_STUDIES} studies, got {len(studies)}"
        )


def egger_test(studies: Sequence[Study]) -> EggerTest:
    """Egger's regression test for funnel-plot asymmetry.

    Regresses the standard normal deviate ``y/se`` on precision
    ``1/se``; an intercept different from zero indicates small-study
    effects.  The intercept is tested with a t statistic on ``k - 2``
    degrees of freedom.
    """
    _require_studies(studies, "Egger's test")
    y, v = study_arrays(studies)
    se = np.sqrt(v)
    if np.ptp(se) == 0:
        raise NumericalInstability("Egger's test is undefined when all studies share the same se")
    k = len(y)
    df = k - 2
    reg = stats.linregress(1.0 / se, y / se)
    intercept_se = float(reg.intercept_stderr)
    if not math.isfinite(intercept_se) or intercept_se <= 0:
        raise NumericalInstability("Egger regression fits perfectly; intercept se is zero")
    t_value = float(reg.intercept) / intercept_se
    p_value = t_two_sided_p(t_value, df)
    half_width = t_critical(df) * intercept_se
    if p_value < settings.egger_alpha:
        interpretation = "Significant funnel plot asymmetry (possible small-study effects)"
    else:
        interpretation = "No significant funnel plot asymmetry"
    return EggerTest(
        intercept=float(reg.intercept),
        slope=float(reg.slope),
        se=intercept_se,
        t_value=t_value,
        df=df,
        p_value=p_value,
        ci=Interval(lower=float(reg.intercept) - half_width, upper=float(reg.intercept) + half_width),
        interpretation=interpretation,
    )


def begg_test(studies: Sequence[Study], correlation: str = "spearman") -> BeggTest:
    """Begg's rank-correlation test.

    ``spearman`` correlates effect sizes with their standard errors.
    ``kendall`` follows Begg and Mazumdar: Kendall's tau between the
    variance-standardised deviates from the fixed-effect estimate and
    the sampling variances.
    """
    _require_studies(studies, "Begg's test")
    y, v = study_arrays(studies)
    if correlation == "spearman":
        result = stats.spearmanr(y, np.sqrt(v))
    elif correlation == "kendall":
        w = 1.0 / v
        theta = np.sum(w * y) / np.sum(w)
        v_star = v - 1.0 / np.sum(w)
        deviates = (y - theta) / np.sqrt(v_star)
        result = stats.kendalltau(deviates, v)
    else:
        raise InvalidInput(
            f"Unknown rank correlation '{correlation}' (expected spearman or kendall)",
            field="begg_correlation",
        )
    rho, p_value = float(result[0]), float(result[1])
    if not (math.isfinite(rho) and math.isfinite(p_value)):
        raise NumericalInstability("Rank correlation is undefined (constant effects or standard errors)")
    if p_value < settings.egger_alpha:
        interpretation = "Significant rank correlation between effect and precision"
    else:
        interpretation = "No significant rank correlation between effect and precision"
    return BeggTest(
        rank_correlation=rho,
        p_value=p_value,
        correlation=correlation,
        interpretation=interpretation,
    )


def _missing_side(y: np.ndarray, v: np.ndarray) -> str:
    """Side of the funnel on which studies are missing.

    A positive association between effect and se means small studies
    report larger effects, so the gap sits on the left.
    """
    se = np.sqrt(v)
    if np.ptp(se) == 0:
        return "left"
    design = np.column_stack([np.ones_like(se), se])
    slope = float(fit_weighted(y, v, design).beta[1])
    return "right" if slope < 0 else "left"


def _l0_estimator(rank_sum: float, k: int) -> int:
    return max(0, int(np.round((4.0 * rank_sum - k * (k + 1)) / (2.0 * k - 1.0))))


def trim_and_fill(
    studies: Sequence[Study],
    model_type: Union[ModelType, str, None] = None,
    effect_measure: Union[EffectMeasure, str, None] = None,
    method: Union[TauMethod, str, None] = None,
) -> TrimAndFill:
    """Duval and Tweedie's trim-and-fill with the L0 estimator.

    The ``k0`` most extreme studies on the over-represented side are
    trimmed and the model refitted until ``k0`` stabilises; their mirror
    images around the trimmed estimate are then added and the full set
    is re-pooled.
    """
    _require_studies(studies, "Trim-and-fill")
    model, measure, tau_method = resolve_options(studies, model_type, effect_measure, method)
    y, v = study_arrays(studies)
    k = len(y)
    original = fit_intercept(y, v, model, tau_method)

    side = _missing_side(y, v)
    sign = -1.0 if side == "right" else 1.0
    order = np.argsort(sign * y, kind="stable")
    ys, vs = sign * y[order], v[order]

    k0 = 0
    for iteration in range(1, settings.trimfill_max_iter + 1):
        previous = k0
        trimmed = fit_intercept(ys[: k - k0], vs[: k - k0], model, tau_method)
        beta = float(trimmed.beta[0])
        centered = ys - beta
        ranks = stats.rankdata(np.abs(centered), method="ordinal")
        rank_sum = float(np.sum(ranks[centered > 0]))
        k0 = min(_l0_estimator(rank_sum, k), k - 1)
        if k0 == previous:
            break
    else:
        raise NumericalInstability(
            f"Trim-and-fill did not converge within {settings.trimfill_max_iter} iterations"
        )

    z_crit = settings.z_critical
    original_estimate = from_additive(float(original.beta[0]), measure)
    if k0 == 0:
        se = math.sqrt(original.vcov[0, 0])
        estimate = float(original.beta[0])
        logger.debug(f"Trim-and-fill: no studies imputed after {iteration} iterations")
        return TrimAndFill(
            original_estimate=original_estimate,
            adjusted_estimate=original_estimate,
            adjusted_ci=Interval(
                lower=from_additive(estimate - z_crit * se, measure),
                upper=from_additive(estimate + z_crit * se, measure),
            ),
            n_missing=0,
            side=side,
            studies_added=(),
            iterations=iteration,
            message="No adjustment needed: no missing studies were estimated (k0 = 0)",
        )

    fill_y = sign * (2.0 * beta - ys[k - k0:])
    fill_v = vs[k - k0:]
    adjusted = fit_intercept(np.concatenate([y, fill_y]), np.concatenate([v, fill_v]), model, tau_method)
    estimate = float(adjusted.beta[0])
    se = math.sqrt(adjusted.vcov[0, 0])
    added = tuple(
        ImputedStudy(effect_size=from_additive(float(yi), measure), yi=float(yi), se=math.sqrt(vi))
        for yi, vi in zip(fill_y, fill_v)
    )
    logger.info(f"Trim-and-fill imputed {k0} studies on the {side} side")
    return TrimAndFill(
        original_estimate=original_estimate,
        adjusted_estimate=from_additive(estimate, measure),
        adjusted_ci=Interval(
            lower=from_additive(estimate - z_crit * se, measure),
            upper=from_additive(estimate + z_crit * se, measure),
        ),
        n_missing=k0,
        side=side,
        studies_added=added,
        iterations=iteration,
        message=f"{k0} missing {'study' if k0 == 1 else 'studies'} imputed on the {side} side",
    )


def fail_safe_n(
    studies: Sequence[Study],
    orwin_target: Optional[float] = None,
    alpha: Optional[float] = None,
) -> FailSafeN:
    """Rosenthal's and Orwin's fail-safe N.

    Rosenthal: null studies needed to pull the Stouffer combined z below
    the two-sided critical value, ``ceil((Σz)² / z_crit² - k)``.
    Orwin: null studies needed to bring the unweighted mean effect down
    to ``orwin_target`` (additive scale, default half the mean).
    """
    _require_studies(studies, "Fail-safe N")
    alpha = alpha if alpha is not None else settings.fail_safe_alpha
    y, v = study_arrays(studies)
    k = len(y)
    z_scores = y / np.sqrt(v)
    z_sum = float(np.sum(z_scores))
    combined_z = z_sum / math.sqrt(k)
    z_crit = normal_critical(alpha)
    rosenthal = max(0, math.ceil(z_sum ** 2 / z_crit ** 2 - k))

    mean_effect = float(np.mean(y))
    orwin: Optional[int] = None
    target = orwin_target if orwin_target is not None else mean_effect / 2.0
    if target != 0:
        orwin = max(0, math.ceil(k * (abs(mean_effect) - abs(target)) / abs(target)))

    if rosenthal > 5 * k + 10:
        interpretation = f"Robust: fail-safe N exceeds the 5k + 10 tolerance level ({5 * k + 10})"
    else:
        interpretation = f"Fail-safe N is below the 5k + 10 tolerance level ({5 * k + 10})"
    return FailSafeN(
        rosenthal=rosenthal,
        orwin=orwin,
        orwin_target=target,
        combined_z=combined_z,
        combined_p=normal_two_sided_p(combined_z),
        alpha=alpha,
        interpretation=interpretation,
    )


def assess_publication_bias(
    studies: Sequence[Study],
    model_type: Union[ModelType, str, None] = None,
    effect_measure: Union[EffectMeasure, str, None] = None,
    method: Union[TauMethod, str, None] = None,
    begg_correlation: str = "spearman",
    orwin_target: Optional[float] = None,
) -> PublicationBiasResult:
    """Run all four publication-bias diagnostics.

    With fewer than three studies every slot holds an
    ``insufficient_data`` issue.  Otherwise each test fails on its own.
    """
    model, measure, tau_method = resolve_options(studies, model_type, effect_measure, method)
    result = PublicationBiasResult(
        k=len(studies),
        effect_measure=measure,
        egger_test=run_scoped("Egger's test", lambda: egger_test(studies), logger),
        begg_test=run_scoped("Begg's test", lambda: begg_test(studies, begg_correlation), logger),
        trim_and_fill=run_scoped(
            "Trim-and-fill", lambda: trim_and_fill(studies, model, measure, tau_method), logger
        ),
        fail_safe_n=run_scoped("Fail-safe N", lambda: fail_safe_n(studies, orwin_target), logger),
    )
    logger.info(f"Publication bias assessed for {len(studies)} studies")
    return result
