"""Error taxonomy for the meta-analysis engine.

Every failure the engine reports carries a machine-distinguishable
:class:`ErrorKind` plus a message naming the input that caused it.
Engines raise these exceptions; the request dispatcher and the
publication-bias/sensitivity aggregators turn them into structured
payloads instead of numeric placeholders.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Classification of engine errors."""
    MISSING_REQUIRED_FIELD = "missing_required_field"  # study cannot be normalized
    INSUFFICIENT_DATA = "insufficient_data"            # too few studies for the operation
    INVALID_MODERATOR = "invalid_moderator"            # moderator unusable or absent
    NUMERICAL_INSTABILITY = "numerical_instability"    # non-convergence, singular design
    INVALID_INPUT = "invalid_input"                    # value present but malformed


class MetaAnalysisError(Exception):
    """Base class for all engine errors."""

    kind: ErrorKind = ErrorKind.INVALID_INPUT

    def __init__(
        self,
        message: str,
        *,
        study_id: Optional[str] = None,
        field: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.study_id = study_id
        self.field = field

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "study_id": self.study_id,
            "field": self.field,
        }


class MissingRequiredField(MetaAnalysisError):
    """A study lacks a field that cannot be derived from the others."""

    kind = ErrorKind.MISSING_REQUIRED_FIELD


class InsufficientData(MetaAnalysisError):
    """Fewer studies than the operation requires."""

    kind = ErrorKind.INSUFFICIENT_DATA


class InvalidModerator(MetaAnalysisError):
    """Requested moderator is absent from all studies or has no variation."""

    kind = ErrorKind.INVALID_MODERATOR


class NumericalInstability(MetaAnalysisError):
    """An iterative estimator diverged or a design matrix is singular."""

    kind = ErrorKind.NUMERICAL_INSTABILITY


class InvalidInput(MetaAnalysisError):
    """A field is present but its value cannot be used."""

    kind = ErrorKind.INVALID_INPUT
