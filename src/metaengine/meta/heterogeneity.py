"""Heterogeneity statistics (Cochran's Q, I², H², tau²)."""

from __future__ import annotations

import math
from typing import Optional, Sequence

import numpy as np

from ..core.errors import InsufficientData, InvalidInput
from ..core.models import Study
from .numerics import chi2_sf
from .results import HeterogeneityResult


def interpret_i_squared(i_squared: Optional[float]) -> str:
    """Reporting bands for I² (Higgins et al. 2003)."""
    if i_squared is None:
        return "not applicable (single study)"
    if i_squared < 25:
        return "low heterogeneity"
    if i_squared < 50:
        return "moderate heterogeneity"
    if i_squared < 75:
        return "substantial heterogeneity"
    return "considerable heterogeneity"


def cochran_q(effects: np.ndarray, weights: np.ndarray) -> float:
    """Weighted sum of squared deviations from the weighted mean."""
    pooled = np.sum(weights * effects) / np.sum(weights)
    return float(np.sum(weights * (effects - pooled) ** 2))


def moment_tau_squared(q: float, df: int, weights: np.ndarray) -> float:
    """Method-of-moments tau², clamped at zero."""
    c = float(np.sum(weights) - np.sum(weights ** 2) / np.sum(weights))
    if df <= 0 or c <= 0:
        return 0.0
    return max(0.0, (q - df) / c)


def heterogeneity_from_arrays(
    effects: np.ndarray,
    weights: np.ndarray,
    tau_squared: Optional[float] = None,
) -> HeterogeneityResult:
    k = len(effects)
    if k == 0:
        raise InsufficientData("Heterogeneity requires at least one study")
    if k == 1:
        return HeterogeneityResult(
            k=1,
            q_statistic=None,
            q_df=0,
            tau_squared=0.0,
            tau=0.0,
            applicable=False,
            interpretation=interpret_i_squared(None),
        )

    df = k - 1
    q = cochran_q(effects, weights)
    i_squared = max(0.0, 100.0 * (q - df) / q) if q > 0 else 0.0
    i_squared = min(i_squared, 100.0)
    h_squared = q / df
    if tau_squared is None:
        tau_squared = moment_tau_squared(q, df, weights)
    tau_squared = max(0.0, float(tau_squared))
    return HeterogeneityResult(
        k=k,
        q_statistic=q,
        q_df=df,
        q_pvalue=chi2_sf(q, df),
        i_squared=i_squared,
        tau_squared=tau_squared,
        tau=math.sqrt(tau_squared),
        h_squared=h_squared,
        h=math.sqrt(h_squared),
        interpretation=interpret_i_squared(i_squared),
    )


def heterogeneity(
    studies: Sequence[Study],
    weights: Optional[Sequence[float]] = None,
    tau_squared: Optional[float] = None,
) -> HeterogeneityResult:
    """Heterogeneity of an arbitrary weighted study set.

    Args:
        studies: Normalized studies (a full set or a subgroup).
        weights: Weights used for Q; inverse-variance ``1/se²`` when
            omitted.
        tau_squared: Between-study variance to report.  When omitted the
            method-of-moments estimate ``(Q - df) / (Σw - Σw²/Σw)`` is
            used.

    Returns:
        A :class:`HeterogeneityResult`.  For a single study the Q-based
        measures are ``None`` and ``applicable`` is ``False``.
    """
    effects = np.array([s.yi for s in studies], dtype=float)
    if weights is None:
        w = np.array([1.0 / s.vi for s in studies], dtype=float)
    else:
        w = np.asarray(weights, dtype=float)
        if w.shape != effects.shape:
            raise InvalidInput(f"Expected {len(effects)} weights, got {len(w)}")
        if np.any(~np.isfinite(w)) or np.any(w <= 0):
            raise InvalidInput("Weights must be finite and positive", field="weights")
    return heterogeneity_from_arrays(effects, w, tau_squared)
