"""Statistical meta‑analysis and synthesis.

This module defines the :class:`MetaAnalyzer` class, a convenience
facade that normalizes a batch of raw study records once and then runs
any of the engines on them with shared defaults.  It also produces
data frames suitable for forest plot visualisation.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence, Union

import pandas as pd

from ..config.settings import settings
from ..core.models import EffectMeasure, ModelType, Study, TauMethod
from ..core.normalization import StudyInput, from_additive, normalize_studies
from ..utils.logging import get_logger
from .bias import assess_publication_bias
from .heterogeneity import heterogeneity
from .pooling import pool
from .regression import regress
from .results import (
    HeterogeneityResult,
    PooledResult,
    PublicationBiasResult,
    RegressionResult,
    SensitivityResult,
    SubgroupResult,
)
from .sensitivity import sensitivity
from .subgroup import subgroup

logger = get_logger(__name__)


class MetaAnalyzer:
    """Perform meta‑analysis on a set of studies.

    Example:
        >>> analyzer = MetaAnalyzer.from_records(rows, effect_measure="OR")
        >>> pooled = analyzer.pool()
        >>> bias = analyzer.publication_bias()
    """

    def __init__(
        self,
        studies: Sequence[Study],
        model_type: Union[ModelType, str, None] = None,
        effect_measure: Union[EffectMeasure, str, None] = None,
        method: Union[TauMethod, str, None] = None,
    ):
        self.studies = tuple(studies)
        self.model_type = ModelType(model_type or settings.default_model_type)
        if effect_measure is None and self.studies:
            effect_measure = self.studies[0].effect_measure
        self.effect_measure = EffectMeasure(effect_measure or settings.default_effect_measure)
        self.method = TauMethod(method or settings.default_method)

    @classmethod
    def from_records(
        cls,
        records: Iterable[StudyInput],
        model_type: Union[ModelType, str, None] = None,
        effect_measure: Union[EffectMeasure, str, None] = None,
        method: Union[TauMethod, str, None] = None,
    ) -> "MetaAnalyzer":
        """Normalize raw records and build an analyzer over them."""
        measure = EffectMeasure(effect_measure or settings.default_effect_measure)
        studies = normalize_studies(records, measure)
        return cls(studies, model_type, measure, method)

    def _options(self) -> dict:
        return {
            "model_type": self.model_type,
            "effect_measure": self.effect_measure,
            "method": self.method,
        }

    def pool(self) -> PooledResult:
        return pool(self.studies, **self._options())

    def heterogeneity(self) -> HeterogeneityResult:
        return heterogeneity(self.studies)

    def publication_bias(self, begg_correlation: str = "spearman") -> PublicationBiasResult:
        return assess_publication_bias(
            self.studies, begg_correlation=begg_correlation, **self._options()
        )

    def subgroup(self, moderator: str) -> SubgroupResult:
        return subgroup(self.studies, moderator, **self._options())

    def sensitivity(self, sort_by: str = "year") -> SensitivityResult:
        return sensitivity(self.studies, sort_by=sort_by, **self._options())

    def regress(self, moderators: List[str]) -> RegressionResult:
        return regress(self.studies, moderators, **self._options())

    def forest_plot_frame(self, pooled: Optional[PooledResult] = None) -> pd.DataFrame:
        """Create a DataFrame for forest plot visualisation.

        Study rows carry their own 95% CI and relative weight; the final
        row holds the pooled estimate.  Values are on the reporting scale.
        """
        pooled = pooled or self.pool()
        z_crit = settings.z_critical
        rows = []
        for study in self.studies:
            rows.append({
                "study_id": study.study_id,
                "study": study.study_label,
                "effect": study.effect_size,
                "ci_lower": from_additive(study.yi - z_crit * study.se, study.effect_measure),
                "ci_upper": from_additive(study.yi + z_crit * study.se, study.effect_measure),
                "weight": pooled.weights.get(study.study_id),
                "type": "study",
            })
        rows.append({
            "study_id": None,
            "study": f"Pooled ({pooled.model_type.value})",
            "effect": pooled.estimate,
            "ci_lower": pooled.ci_lower,
            "ci_upper": pooled.ci_upper,
            "weight": None,
            "type": "pooled",
        })
        return pd.DataFrame(rows)
