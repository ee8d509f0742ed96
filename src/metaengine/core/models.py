"""Core domain models for studies and analysis requests."""

import math
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from .errors import InvalidInput

ModeratorValue = Union[StrictBool, StrictInt, StrictFloat, str]


class EffectMeasure(str, Enum):
    """Effect measures supported by the engine."""
    OR = "OR"
    RR = "RR"
    SMD = "SMD"
    MD = "MD"
    COR = "COR"

    @property
    def is_ratio(self) -> bool:
        """Ratio measures are pooled on the log scale."""
        return self in (EffectMeasure.OR, EffectMeasure.RR)


class ModelType(str, Enum):
    """Pooling model."""
    FE = "FE"
    RE = "RE"


class TauMethod(str, Enum):
    """Between-study variance estimators."""
    DL = "DL"
    REML = "REML"
    PM = "PM"
    ML = "ML"


class Operation(str, Enum):
    """Operations accepted by the request dispatcher."""
    RUN_ANALYSIS = "run_analysis"
    HETEROGENEITY = "heterogeneity"
    SUBGROUP_ANALYSIS = "subgroup_analysis"
    SENSITIVITY_ANALYSIS = "sensitivity_analysis"
    PUBLICATION_BIAS = "publication_bias"
    META_REGRESSION = "meta_regression"


class SampleSize(BaseModel):
    """Per-arm sample sizes."""
    model_config = ConfigDict(frozen=True)

    treatment: Optional[int] = Field(None, ge=1)
    control: Optional[int] = Field(None, ge=1)

    @property
    def total(self) -> Optional[int]:
        if self.treatment is None and self.control is None:
            return None
        return (self.treatment or 0) + (self.control or 0)


class RawStudy(BaseModel):
    """A study record as received from an upload or extraction step.

    Only ``study_id`` is mandatory at this stage.  Completeness is
    checked by the normalizer, which derives whatever it can from the
    fields that are present.  Unknown scalar keys are kept as extra
    fields and become moderators after normalization.
    """

    model_config = ConfigDict(extra="allow")

    study_id: str
    study_label: Optional[str] = None
    effect_size: Optional[float] = None
    se: Optional[float] = None
    weight: Optional[float] = Field(None, gt=0)
    year: Optional[int] = Field(None, ge=1000, le=2100)
    author: Optional[str] = None
    sample_size: Optional[SampleSize] = None
    p_value: Optional[float] = Field(None, ge=0.0, le=1.0)
    confidence_interval: Optional[Tuple[float, float]] = None

    # Raw 2x2 counts (OR, RR)
    events_treatment: Optional[int] = Field(None, ge=0)
    n_treatment: Optional[int] = Field(None, ge=1)
    events_control: Optional[int] = Field(None, ge=0)
    n_control: Optional[int] = Field(None, ge=1)

    # Group summaries (MD, SMD)
    mean_treatment: Optional[float] = None
    sd_treatment: Optional[float] = Field(None, gt=0)
    mean_control: Optional[float] = None
    sd_control: Optional[float] = Field(None, gt=0)

    # Correlation (COR)
    correlation: Optional[float] = Field(None, ge=-1.0, le=1.0)
    n: Optional[int] = Field(None, ge=1)

    moderators: Dict[str, ModeratorValue] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _drop_missing(cls, data: Any) -> Any:
        """Treat NaN and empty strings (spreadsheet blanks) as absent."""
        if not isinstance(data, dict):
            return data
        cleaned = {}
        for key, value in data.items():
            if value is None:
                continue
            if isinstance(value, float) and math.isnan(value):
                continue
            if isinstance(value, str) and not value.strip():
                continue
            cleaned[key] = value
        # Tabular inputs carry the interval as two columns
        if "confidence_interval" not in cleaned and "ci_lower" in cleaned and "ci_upper" in cleaned:
            cleaned["confidence_interval"] = (cleaned.pop("ci_lower"), cleaned.pop("ci_upper"))
        return cleaned

    @field_validator("study_id", mode="before")
    @classmethod
    def _stringify_id(cls, v: Any) -> Any:
        if isinstance(v, bool):
            return v
        if isinstance(v, int):
            return str(v)
        if isinstance(v, float) and v.is_integer():
            return str(int(v))
        return v

    @field_validator("study_id")
    @classmethod
    def _non_empty_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("study_id must not be empty")
        return v

    @field_validator("confidence_interval")
    @classmethod
    def _ordered_interval(cls, v: Optional[Tuple[float, float]]) -> Optional[Tuple[float, float]]:
        if v is not None and v[0] > v[1]:
            raise ValueError("confidence_interval lower bound exceeds upper bound")
        return v

    def extra_moderators(self) -> Dict[str, ModeratorValue]:
        """Extra keys, merged under explicit ``moderators``.

        Raises:
            InvalidInput: an extra key holds a list, mapping or other
                non-scalar value.
        """
        extras: Dict[str, ModeratorValue] = {}
        for key, value in (self.model_extra or {}).items():
            if not isinstance(value, (bool, int, float, str)):
                raise InvalidInput(
                    f"Moderator '{key}' must be a scalar, got {type(value).__name__}",
                    study_id=self.study_id,
                    field=key,
                )
            extras[key] = value
        extras.update(self.moderators)
        return extras


class Study(BaseModel):
    """A fully populated, immutable study ready for pooling.

    ``effect_size`` is on the reported scale (e.g. an odds ratio);
    ``yi`` is the additive-scale value used by every engine (the
    natural log for ratio measures, identity otherwise).  ``se`` is
    always on the additive scale.
    """

    model_config = ConfigDict(frozen=True)

    study_id: str
    study_label: str
    effect_measure: EffectMeasure
    effect_size: float
    yi: float
    se: float = Field(..., gt=0)
    weight: float = Field(..., gt=0)
    year: Optional[int] = None
    author: Optional[str] = None
    sample_size: Optional[SampleSize] = None
    p_value: Optional[float] = None
    confidence_interval: Optional[Tuple[float, float]] = None
    moderators: Dict[str, ModeratorValue] = Field(default_factory=dict)

    @property
    def vi(self) -> float:
        """Sampling variance on the additive scale."""
        return self.se ** 2

    def moderator_value(self, key: str) -> Optional[ModeratorValue]:
        """Look up a moderator, falling back to first-class study fields."""
        if key in self.moderators:
            return self.moderators[key]
        if key == "year":
            return self.year
        if key == "author":
            return self.author
        if key == "sample_size":
            return self.sample_size.total if self.sample_size else None
        return None


class AnalysisParameters(BaseModel):
    """Parameters block of an analysis request (camelCase accepted)."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        protected_namespaces=(),
    )

    model_type: ModelType = ModelType.RE
    effect_measure: EffectMeasure = EffectMeasure.SMD
    method: Optional[TauMethod] = None
    subgroup_var: Optional[str] = None
    moderators: List[str] = Field(default_factory=list)
    sort_by: str = "year"
    begg_correlation: str = Field("spearman", pattern="^(spearman|kendall)$")


class AnalysisRequest(BaseModel):
    """Request accepted by :func:`metaengine.meta.service.handle_request`."""

    operation: Operation
    studies: List[Dict[str, Any]] = Field(
        default_factory=list,
        validation_alias=AliasChoices("studies", "data"),
    )
    parameters: AnalysisParameters = Field(default_factory=AnalysisParameters)


class ErrorDetail(BaseModel):
    """Machine-readable error attached to a failed response."""
    kind: str
    message: str
    study_id: Optional[str] = None
    field: Optional[str] = None


class AnalysisResponse(BaseModel):
    """Response envelope returned for every request."""
    success: bool
    results: Optional[Dict[str, Any]] = None
    message: Optional[str] = None
    error: Optional[ErrorDetail] = None
