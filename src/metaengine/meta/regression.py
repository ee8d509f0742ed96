"""Meta-regression on study-level moderators."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np

from ..config.settings import settings
from ..core.errors import InsufficientData, InvalidInput, InvalidModerator
from ..core.models import EffectMeasure, ModelType, ModeratorValue, Study, TauMethod
from ..utils.logging import get_logger
from .estimators import estimate_tau_squared, fit_model, intercept_design, residual_q
from .numerics import chi2_sf, normal_two_sided_p
from .pooling import resolve_options, study_arrays
from .results import ChiSquareStatistic, Coefficient, RegressionResult

logger = get_logger(__name__)


@dataclass
class Design:
    """Design matrix for the studies that carry every moderator."""

    X: np.ndarray
    columns: List[str]
    studies: List[Study]
    excluded: List[str] = field(default_factory=list)
    reference_levels: Dict[str, str] = field(default_factory=dict)


def _is_numeric(value: ModeratorValue) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def level_name(value: ModeratorValue) -> str:
    """Categorical level label; integral floats lose their ``.0``."""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def build_design(
    studies: Sequence[Study],
    moderators: Sequence[str],
    categorical: Iterable[str] = (),
) -> Design:
    """Build an intercept-plus-moderators design matrix.

    Numeric moderators enter as-is.  Any other moderator, and any listed
    in ``categorical``, is expanded into indicator columns with its first
    level (in study order) as the reference.  Studies missing one of the
    moderators are left out and reported in ``excluded``.

    Raises:
        InvalidModerator: a moderator is absent from every study or does
            not vary across the included studies.
    """
    if not moderators:
        raise InvalidInput("At least one moderator is required", field="moderators")
    forced = set(categorical)
    for name in moderators:
        if all(s.moderator_value(name) is None for s in studies):
            raise InvalidModerator(f"Moderator '{name}' is absent from all studies", field=name)

    included: List[Study] = []
    excluded: List[str] = []
    for study in studies:
        if all(study.moderator_value(name) is not None for name in moderators):
            included.append(study)
        else:
            excluded.append(study.study_id)
    if excluded:
        logger.warning(
            f"Excluding {len(excluded)} studies without moderator values: {', '.join(excluded)}"
        )

    columns = ["intercept"]
    blocks = [np.ones((len(included), 1))]
    reference_levels: Dict[str, str] = {}
    for name in moderators:
        values = [s.moderator_value(name) for s in included]
        if name not in forced and all(_is_numeric(value) for value in values):
            column = np.array(values, dtype=float)
            if len(column) and np.ptp(column) == 0:
                raise InvalidModerator(f"Moderator '{name}' does not vary across studies", field=name)
            columns.append(name)
            blocks.append(column[:, None])
            continue
        labels = [level_name(value) for value in values]
        levels = list(dict.fromkeys(labels))
        if len(levels) < 2:
            raise InvalidModerator(
                f"Moderator '{name}' has a single level and cannot explain heterogeneity",
                field=name,
            )
        reference_levels[name] = levels[0]
        for level in levels[1:]:
            columns.append(f"{name}[{level}]")
            blocks.append(np.array([[1.0 if label == level else 0.0] for label in labels]))
    return Design(
        X=np.hstack(blocks),
        columns=columns,
        studies=included,
        excluded=excluded,
        reference_levels=reference_levels,
    )


def wald_test(beta: np.ndarray, vcov: np.ndarray) -> Tuple[float, int]:
    """Joint Wald chi-square for all non-intercept coefficients."""
    b = beta[1:]
    if len(b) == 0:
        return 0.0, 0
    statistic = float(b @ np.linalg.solve(vcov[1:, 1:], b))
    return statistic, len(b)


# Relative size below which a quadratic form is rounding noise
Q_ROUNDING = 1e-12


def _clamp_q(q: float, y: np.ndarray, v: np.ndarray) -> float:
    """Zero out Q values that are rounding noise around 0 (possibly negative)."""
    scale = float(np.sum(y * y / v))
    return 0.0 if q <= Q_ROUNDING * scale else q


def regress(
    studies: Sequence[Study],
    moderators: Sequence[str],
    model_type: Union[ModelType, str, None] = None,
    effect_measure: Union[EffectMeasure, str, None] = None,
    method: Union[TauMethod, str, None] = None,
    categorical: Iterable[str] = (),
) -> RegressionResult:
    """Weighted least-squares meta-regression.

    Coefficients are on the additive scale (log ratio for ``OR``/``RR``)
    and tested with z statistics.  ``r_squared`` is the share of the
    fixed-effect Q explained by the moderators, clamped to [0, 1];
    random-effects fits also report the proportional reduction in tau².

    Raises:
        InvalidModerator: a moderator is absent or constant.
        InsufficientData: too few studies for the number of coefficients.
        NumericalInstability: the design is singular or tau² diverged.
    """
    model, measure, tau_method = resolve_options(studies, model_type, effect_measure, method)
    design = build_design(studies, list(moderators), categorical)
    k = len(design.studies)
    p = design.X.shape[1]
    needed = p + 1 if model is ModelType.RE else p
    if k < needed:
        raise InsufficientData(
            f"Meta-regression with {p} coefficients needs at least {needed} studies, got {k}"
        )

    y, v = study_arrays(design.studies)
    X = design.X
    fit = fit_model(y, v, X, model, tau_method)
    z_crit = settings.z_critical

    coefficients = []
    for name, estimate, se in zip(design.columns, fit.beta, fit.se):
        z_value = float(estimate / se)
        coefficients.append(
            Coefficient(
                name=name,
                estimate=float(estimate),
                se=float(se),
                z_value=z_value,
                p_value=normal_two_sided_p(z_value),
                ci_lower=float(estimate - z_crit * se),
                ci_upper=float(estimate + z_crit * se),
            )
        )

    qm, qm_df = wald_test(fit.beta, fit.vcov)
    q_res = _clamp_q(residual_q(y, v, X), y, v)
    res_df = k - p
    q_total = _clamp_q(residual_q(y, v, intercept_design(k)), y, v)
    # Undefined when the effects are homogeneous to begin with
    r_squared: Optional[float] = None
    if q_total > 0:
        r_squared = min(1.0, max(0.0, (q_total - q_res) / q_total))

    r_squared_tau: Optional[float] = None
    if model is ModelType.RE:
        tau2_total = estimate_tau_squared(y, v, intercept_design(k), tau_method)
        if tau2_total > 0:
            r_squared_tau = max(0.0, (tau2_total - fit.tau_squared) / tau2_total)

    i_squared = None
    if res_df > 0 and q_res > 0:
        i_squared = max(0.0, 100.0 * (q_res - res_df) / q_res)

    logger.info(
        f"Meta-regression on {', '.join(moderators)}: k={k}, QM={qm:.3f} (df={qm_df}), "
        f"R²={'-' if r_squared is None else format(r_squared, '.3f')}"
    )
    return RegressionResult(
        moderators=tuple(moderators),
        model_type=model,
        effect_measure=measure,
        method=tau_method,
        k=k,
        coefficients=tuple(coefficients),
        q_model=ChiSquareStatistic(statistic=qm, df=qm_df, p_value=chi2_sf(qm, qm_df)),
        q_residual=ChiSquareStatistic(
            statistic=q_res,
            df=res_df,
            p_value=chi2_sf(q_res, res_df) if res_df > 0 else None,
        ),
        q_total=q_total,
        r_squared=r_squared,
        r_squared_tau=r_squared_tau,
        tau_squared=fit.tau_squared,
        i_squared=i_squared,
        reference_levels=design.reference_levels,
        excluded_study_ids=tuple(design.excluded),
    )
