"""Study normalization.

Turns heterogeneous raw study records into immutable :class:`Study`
values.  Missing effect sizes and standard errors are derived from
whichever subset of fields is present; a record that cannot be
completed aborts the whole batch, since silently dropping it would
change the population being pooled.
"""

import math
from typing import Any, Iterable, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError
from scipy import stats

from ..config.settings import settings
from ..utils.logging import get_logger
from . import effect_sizes
from .errors import InvalidInput, MetaAnalysisError, MissingRequiredField
from .models import EffectMeasure, RawStudy, SampleSize, Study

logger = get_logger(__name__)

StudyInput = Union[RawStudy, Mapping[str, Any]]

# Inverse-variance weights, their squares and sums stay finite inside this range
SE_RANGE = (1e-50, 1e50)


def to_additive(value: float, measure: EffectMeasure) -> float:
    """Map a reported effect onto the scale used for pooling."""
    if measure.is_ratio:
        if value <= 0:
            raise InvalidInput(f"{measure.value} must be positive, got {value}")
        return math.log(value)
    return value


def from_additive(value: float, measure: EffectMeasure) -> float:
    """Back-transform a pooled value for reporting."""
    return math.exp(value) if measure.is_ratio else value


def make_label(raw: RawStudy, position: int) -> str:
    """Display label: explicit label, else ``Author (Year)``, else ``Study n``."""
    if raw.study_label:
        return raw.study_label
    if raw.author and raw.year:
        return f"{raw.author} ({raw.year})"
    return f"Study {position}"


def _group_sizes(raw: RawStudy) -> Tuple[Optional[int], Optional[int]]:
    n1 = raw.n_treatment
    n2 = raw.n_control
    if raw.sample_size is not None:
        n1 = n1 or raw.sample_size.treatment
        n2 = n2 or raw.sample_size.control
    return n1, n2


def _from_raw_data(raw: RawStudy, measure: EffectMeasure) -> Optional[Tuple[float, float]]:
    """Derive ``(yi, se)`` from counts, group summaries or a correlation."""
    n1, n2 = _group_sizes(raw)
    if measure.is_ratio:
        if None in (raw.events_treatment, raw.events_control, n1, n2):
            return None
        calculator = effect_sizes.log_odds_ratio if measure is EffectMeasure.OR else effect_sizes.log_risk_ratio
        return calculator(raw.events_treatment, n1, raw.events_control, n2)
    if measure in (EffectMeasure.MD, EffectMeasure.SMD):
        values = (raw.mean_treatment, raw.sd_treatment, n1, raw.mean_control, raw.sd_control, n2)
        if any(v is None for v in values):
            return None
        calculator = effect_sizes.hedges_g if measure is EffectMeasure.SMD else effect_sizes.mean_difference
        return calculator(*values)
    if raw.correlation is None:
        return None
    n = raw.n
    if n is None and n1 is not None and n2 is not None:
        n = n1 + n2
    if n is None:
        return None
    return effect_sizes.correlation(raw.correlation, n)


def _interval_on_additive_scale(
    interval: Tuple[float, float], measure: EffectMeasure
) -> Tuple[float, float]:
    lower, upper = interval
    return to_additive(lower, measure), to_additive(upper, measure)


def normalize_study(
    record: StudyInput,
    effect_measure: Union[EffectMeasure, str],
    position: int = 1,
) -> Study:
    """Validate and complete a single study record.

    Raises:
        InvalidInput: the record does not match the study shape or
            holds an unusable value.
        MissingRequiredField: the effect size or its standard error
            cannot be derived from the fields present.
    """
    measure = EffectMeasure(effect_measure)
    if isinstance(record, RawStudy):
        raw = record
    else:
        try:
            raw = RawStudy.model_validate(dict(record))
        except ValidationError as exc:
            first = exc.errors()[0]
            field = ".".join(str(part) for part in first["loc"]) or None
            study_id = record.get("study_id") if isinstance(record, Mapping) else None
            raise InvalidInput(
                f"Study record {position} is malformed: {field}: {first['msg']}",
                study_id=str(study_id) if study_id is not None else None,
                field=field,
            ) from exc

    try:
        return _complete(raw, measure, position)
    except MetaAnalysisError as exc:
        if exc.study_id is None:
            exc.study_id = raw.study_id
            exc.message = f"Study '{raw.study_id}': {exc.message}"
            exc.args = (exc.message,)
        raise


def _complete(raw: RawStudy, measure: EffectMeasure, position: int) -> Study:
    z = settings.z_critical
    derived = None
    interval = (
        _interval_on_additive_scale(raw.confidence_interval, measure)
        if raw.confidence_interval is not None
        else None
    )

    # Effect size: reported, then raw data, then CI midpoint
    if raw.effect_size is not None:
        yi = to_additive(raw.effect_size, measure)
    else:
        derived = _from_raw_data(raw, measure)
        if derived is not None:
            yi = derived[0]
        elif interval is not None:
            yi = (interval[0] + interval[1]) / 2
        else:
            raise MissingRequiredField(
                "effect_size is missing and cannot be derived "
                "(no raw counts, group summaries or confidence interval)",
                study_id=raw.study_id,
                field="effect_size",
            )

    # Standard error: reported, then CI width, then raw data, then p-value
    if raw.se is not None:
        se = raw.se
    elif interval is not None and interval[1] > interval[0]:
        se = (interval[1] - interval[0]) / (2 * z)
    else:
        if derived is None:
            derived = _from_raw_data(raw, measure)
        if derived is not None:
            se = derived[1]
        elif raw.p_value is not None and 0 < raw.p_value < 1 and yi != 0:
            se = abs(yi) / stats.norm.isf(raw.p_value / 2)
        else:
            raise MissingRequiredField(
                "se is missing and cannot be derived "
                "(no confidence interval, raw data or usable p_value)",
                study_id=raw.study_id,
                field="se",
            )

    if not math.isfinite(se) or se <= 0:
        raise InvalidInput(
            f"se must be finite and positive, got {se}",
            study_id=raw.study_id,
            field="se",
        )
    if not SE_RANGE[0] <= se <= SE_RANGE[1]:
        raise InvalidInput(
            f"se {se:g} is outside the usable range [{SE_RANGE[0]:g}, {SE_RANGE[1]:g}]",
            study_id=raw.study_id,
            field="se",
        )
    if not math.isfinite(yi):
        raise InvalidInput(
            f"effect_size is not finite ({yi})",
            study_id=raw.study_id,
            field="effect_size",
        )

    weight = raw.weight if raw.weight is not None else 1.0 / (se * se)
    effect_size = raw.effect_size if raw.effect_size is not None else from_additive(yi, measure)

    sample_size = raw.sample_size
    if sample_size is None and (raw.n_treatment or raw.n_control):
        sample_size = SampleSize(treatment=raw.n_treatment, control=raw.n_control)

    return Study(
        study_id=raw.study_id,
        study_label=make_label(raw, position),
        effect_measure=measure,
        effect_size=effect_size,
        yi=yi,
        se=se,
        weight=weight,
        year=raw.year,
        author=raw.author,
        sample_size=sample_size,
        p_value=raw.p_value,
        confidence_interval=raw.confidence_interval,
        moderators=raw.extra_moderators(),
    )


def normalize_studies(
    records: Iterable[StudyInput],
    effect_measure: Union[EffectMeasure, str],
) -> Tuple[Study, ...]:
    """Normalize a batch of records, preserving input order.

    The first failing record aborts the batch; partially normalized
    sets are never returned.
    """
    measure = EffectMeasure(effect_measure)
    studies: List[Study] = []
    seen = set()
    for position, record in enumerate(records, start=1):
        study = normalize_study(record, measure, position)
        if study.study_id in seen:
            raise InvalidInput(
                f"Duplicate study_id '{study.study_id}'",
                study_id=study.study_id,
                field="study_id",
            )
        seen.add(study.study_id)
        studies.append(study)
    logger.debug(f"Normalized {len(studies)} studies ({measure.value})")
    return tuple(studies)
