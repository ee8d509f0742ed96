"""Request dispatcher.

:func:`handle_request` is the single entry point used by the HTTP API
and the CLI.  It validates the request envelope, normalizes the study
batch (a single bad record rejects the whole batch), runs the requested
operation and returns an :class:`AnalysisResponse` whose ``results``
are plain JSON-compatible structures.  Engine errors never escape: they
are reported with their kind, message and offending study/field.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Mapping, Sequence, Union

from pydantic import ValidationError

from ..core.errors import ErrorKind, InvalidInput, MetaAnalysisError
from ..core.models import (
    AnalysisParameters,
    AnalysisRequest,
    AnalysisResponse,
    ErrorDetail,
    Operation,
    Study,
)
from ..core.normalization import normalize_studies
from ..utils.logging import get_logger
from .bias import assess_publication_bias
from .heterogeneity import heterogeneity
from .pooling import pool
from .regression import regress
from .results import run_scoped
from .sensitivity import sensitivity
from .subgroup import subgroup

logger = get_logger(__name__)

# HTTP status used by the web layer for each failure kind
HTTP_STATUS: Dict[ErrorKind, int] = {
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.MISSING_REQUIRED_FIELD: 400,
    ErrorKind.INSUFFICIENT_DATA: 422,
    ErrorKind.INVALID_MODERATOR: 422,
    ErrorKind.NUMERICAL_INSTABILITY: 422,
}


def status_code_for(response: AnalysisResponse) -> int:
    if response.success or response.error is None:
        return 200
    return HTTP_STATUS.get(ErrorKind(response.error.kind), 422)


def _run_analysis(studies: Sequence[Study], params: AnalysisParameters) -> Dict[str, Any]:
    pooled = pool(studies, params.model_type, params.effect_measure, params.method)
    results = pooled.model_dump(mode="json")
    if params.moderators:
        regression = run_scoped(
            "Meta-regression",
            lambda: regress(
                studies, params.moderators, params.model_type, params.effect_measure, params.method
            ),
            logger,
        )
        results["meta_regression"] = regression.model_dump(mode="json")
    return results


def _heterogeneity(studies: Sequence[Study], params: AnalysisParameters) -> Dict[str, Any]:
    return heterogeneity(studies).model_dump(mode="json")


def _subgroup(studies: Sequence[Study], params: AnalysisParameters) -> Dict[str, Any]:
    if not params.subgroup_var:
        raise InvalidInput("subgroup_analysis requires parameters.subgroupVar", field="subgroupVar")
    result = subgroup(
        studies, params.subgroup_var, params.model_type, params.effect_measure, params.method
    )
    return result.model_dump(mode="json")


def _sensitivity(studies: Sequence[Study], params: AnalysisParameters) -> Dict[str, Any]:
    result = sensitivity(
        studies, params.model_type, params.effect_measure, params.method, sort_by=params.sort_by
    )
    return result.model_dump(mode="json")


def _publication_bias(studies: Sequence[Study], params: AnalysisParameters) -> Dict[str, Any]:
    result = assess_publication_bias(
        studies,
        params.model_type,
        params.effect_measure,
        params.method,
        begg_correlation=params.begg_correlation,
    )
    return result.model_dump(mode="json")


def _meta_regression(studies: Sequence[Study], params: AnalysisParameters) -> Dict[str, Any]:
    if not params.moderators:
        raise InvalidInput("meta_regression requires parameters.moderators", field="moderators")
    result = regress(
        studies, params.moderators, params.model_type, params.effect_measure, params.method
    )
    return result.model_dump(mode="json")


HANDLERS: Dict[Operation, Callable[[Sequence[Study], AnalysisParameters], Dict[str, Any]]] = {
    Operation.RUN_ANALYSIS: _run_analysis,
    Operation.HETEROGENEITY: _heterogeneity,
    Operation.SUBGROUP_ANALYSIS: _subgroup,
    Operation.SENSITIVITY_ANALYSIS: _sensitivity,
    Operation.PUBLICATION_BIAS: _publication_bias,
    Operation.META_REGRESSION: _meta_regression,
}


def error_response(error: MetaAnalysisError) -> AnalysisResponse:
    return AnalysisResponse(
        success=False,
        message=error.message,
        error=ErrorDetail(**error.to_dict()),
    )


def _validation_error(exc: ValidationError) -> InvalidInput:
    first = exc.errors()[0]
    field = ".".join(str(part) for part in first["loc"]) or None
    return InvalidInput(f"Invalid request: {field}: {first['msg']}", field=field)


def parse_request(payload: Union[AnalysisRequest, Mapping[str, Any]]) -> AnalysisRequest:
    """Validate the request envelope.

    Raises:
        InvalidInput: unknown operation, malformed parameters or a
            ``studies`` field that is not a list of objects.
    """
    if isinstance(payload, AnalysisRequest):
        return payload
    try:
        return AnalysisRequest.model_validate(dict(payload))
    except ValidationError as exc:
        raise _validation_error(exc) from exc


def handle_request(payload: Union[AnalysisRequest, Mapping[str, Any]]) -> AnalysisResponse:
    """Run one analysis request end to end."""
    try:
        request = parse_request(payload)
        params = request.parameters
        studies = normalize_studies(request.studies, params.effect_measure)
        results = HANDLERS[request.operation](studies, params)
    except MetaAnalysisError as exc:
        logger.warning(
            f"Request failed ({exc.kind.value}): {exc.message}",
            extra={"error_kind": exc.kind.value, "study_id": exc.study_id},
        )
        return error_response(exc)

    logger.info(
        f"Completed {request.operation.value} on {len(studies)} studies",
        extra={"operation": request.operation.value, "k": len(studies), "method": params.method.value if params.method else None},
    )
    return AnalysisResponse(
        success=True,
        results=results,
        message=f"{request.operation.value} completed for {len(studies)} studies",
    )
