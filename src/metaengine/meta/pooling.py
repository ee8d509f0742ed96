"""Fixed- and random-effects pooling."""

from __future__ import annotations

import math
from typing import Optional, Sequence, Tuple, Union

import numpy as np

from ..config.settings import settings
from ..core.errors import InsufficientData, InvalidInput
from ..core.models import EffectMeasure, ModelType, Study, TauMethod
from ..core.normalization import from_additive
from ..utils.logging import get_logger
from .estimators import ModelFit, fit_model, intercept_design
from .heterogeneity import heterogeneity_from_arrays
from .numerics import normal_two_sided_p, t_critical
from .results import Interval, PooledResult

logger = get_logger(__name__)

ModelOptions = Tuple[ModelType, EffectMeasure, Optional[TauMethod]]


def resolve_options(
    studies: Sequence[Study],
    model_type: Union[ModelType, str, None] = None,
    effect_measure: Union[EffectMeasure, str, None] = None,
    method: Union[TauMethod, str, None] = None,
) -> ModelOptions:
    """Fill defaults and check that the studies share one effect measure.

    ``method`` only applies to random-effects models and is returned as
    ``None`` for fixed-effect pooling.
    """
    model = ModelType(model_type or settings.default_model_type)
    measures = {s.effect_measure for s in studies}
    if len(measures) > 1:
        found = ", ".join(sorted(m.value for m in measures))
        raise InvalidInput(f"Studies mix effect measures ({found})", field="effect_measure")
    if effect_measure is not None:
        measure = EffectMeasure(effect_measure)
        if measures and measure not in measures:
            raise InvalidInput(
                f"Studies were normalized as {next(iter(measures)).value}, "
                f"cannot pool them as {measure.value}",
                field="effect_measure",
            )
    elif measures:
        measure = next(iter(measures))
    else:
        measure = EffectMeasure(settings.default_effect_measure)
    tau_method = None
    if model is ModelType.RE:
        tau_method = TauMethod(method or settings.default_method)
    return model, measure, tau_method


def study_arrays(studies: Sequence[Study]) -> Tuple[np.ndarray, np.ndarray]:
    """Additive-scale effects and sampling variances."""
    y = np.array([s.yi for s in studies], dtype=float)
    v = np.array([s.vi for s in studies], dtype=float)
    return y, v


def fit_intercept(
    y: np.ndarray,
    v: np.ndarray,
    model_type: ModelType,
    method: Optional[TauMethod],
) -> ModelFit:
    """Intercept-only model: the pooled estimate is ``beta[0]``."""
    if len(y) == 0:
        raise InsufficientData("Pooling requires at least one study")
    return fit_model(y, v, intercept_design(len(y)), model_type, method or TauMethod.DL)


def summarize_fit(
    fit: ModelFit,
    y: np.ndarray,
    v: np.ndarray,
    model_type: ModelType,
    effect_measure: EffectMeasure,
    method: Optional[TauMethod],
    study_ids: Sequence[str],
) -> PooledResult:
    """Build a :class:`PooledResult` from an intercept-only fit."""
    k = len(y)
    z_crit = settings.z_critical
    estimate = float(fit.beta[0])
    se = float(math.sqrt(fit.vcov[0, 0]))
    z_value = estimate / se
    lower, upper = estimate - z_crit * se, estimate + z_crit * se

    prediction = None
    if model_type is ModelType.RE and k > 1:
        half_width = t_critical(k - 1) * math.sqrt(fit.tau_squared + se ** 2)
        prediction = Interval(
            lower=from_additive(estimate - half_width, effect_measure),
            upper=from_additive(estimate + half_width, effect_measure),
        )

    fe_weights = 1.0 / v
    het = heterogeneity_from_arrays(
        y,
        fe_weights,
        tau_squared=fit.tau_squared if model_type is ModelType.RE else None,
    )
    relative = fit.weights / np.sum(fit.weights) * 100.0

    return PooledResult(
        model_type=model_type,
        effect_measure=effect_measure,
        method=method,
        k=k,
        estimate=from_additive(estimate, effect_measure),
        ci_lower=from_additive(lower, effect_measure),
        ci_upper=from_additive(upper, effect_measure),
        additive_estimate=estimate,
        se=se,
        z_value=z_value,
        p_value=normal_two_sided_p(z_value),
        tau_squared=fit.tau_squared,
        prediction_interval=prediction,
        heterogeneity=het,
        weights={sid: float(w) for sid, w in zip(study_ids, relative)},
    )


def pool(
    studies: Sequence[Study],
    model_type: Union[ModelType, str, None] = None,
    effect_measure: Union[EffectMeasure, str, None] = None,
    method: Union[TauMethod, str, None] = None,
) -> PooledResult:
    """Compute a combined estimate across ``studies``.

    Ratio measures are pooled on the log scale and exponentiated on
    output.  A single study returns its own estimate with tau² = 0 and
    heterogeneity marked as not applicable.

    Raises:
        InsufficientData: ``studies`` is empty.
        InvalidInput: studies mix effect measures or do not match
            ``effect_measure``.
        NumericalInstability: the tau² estimator did not converge.
    """
    if not studies:
        raise InsufficientData("Pooling requires at least one study")
    model, measure, tau_method = resolve_options(studies, model_type, effect_measure, method)
    y, v = study_arrays(studies)
    fit = fit_intercept(y, v, model, tau_method)
    result = summarize_fit(fit, y, v, model, measure, tau_method, [s.study_id for s in studies])
    logger.debug(
        f"Pooled {result.k} studies ({model.value}/{measure.value}"
        f"{'/' + tau_method.value if tau_method else ''}): "
        f"estimate={result.estimate:.4f}, tau²={result.tau_squared:.4g}"
    )
    return result
