"""Weighted least-squares fitting and between-study variance estimators.

Every estimator works on a general design matrix ``X`` so that the
intercept-only pooling model and meta-regression share one code path.
With ``X`` a column of ones the DerSimonian-Laird estimator reduces to
the familiar ``(Q - df) / (sum(w) - sum(w^2) / sum(w))``.

References
----------
DerSimonian, R., & Laird, N. (1986). Controlled Clinical Trials, 7, 177-188.
Paule, R. C., & Mandel, J. (1982). J. Res. Natl. Bur. Stand., 87, 377-385.
Viechtbauer, W. (2005). J. Educ. Behav. Stat., 30, 261-293.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.optimize import brentq

from ..config.settings import settings
from ..core.errors import NumericalInstability
from ..core.models import ModelType, TauMethod
from ..utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ModelFit:
    """Coefficients of a weighted fit at a fixed tau²."""

    beta: np.ndarray
    vcov: np.ndarray
    tau_squared: float
    weights: np.ndarray

    @property
    def se(self) -> np.ndarray:
        return np.sqrt(np.diag(self.vcov))


def intercept_design(k: int) -> np.ndarray:
    return np.ones((k, 1))


def _check_design(X: np.ndarray) -> None:
    if np.linalg.matrix_rank(X) < X.shape[1]:
        raise NumericalInstability(
            "Design matrix is singular (moderators are collinear or constant)"
        )


def _inverse(matrix: np.ndarray) -> np.ndarray:
    try:
        return np.linalg.inv(matrix)
    except np.linalg.LinAlgError as exc:
        raise NumericalInstability(f"Weighted cross-product matrix is singular: {exc}") from exc


def fit_weighted(y: np.ndarray, v: np.ndarray, X: np.ndarray, tau_squared: float = 0.0) -> ModelFit:
    """Weighted least squares with weights ``1 / (v + tau²)``."""
    weights = 1.0 / (v + tau_squared)
    xtw = X.T * weights
    vcov = _inverse(xtw @ X)
    beta = vcov @ (xtw @ y)
    return ModelFit(beta=beta, vcov=vcov, tau_squared=float(tau_squared), weights=weights)


def _projection(v: np.ndarray, X: np.ndarray, tau_squared: float) -> np.ndarray:
    """P = W - W X (X'WX)^-1 X'W."""
    weights = 1.0 / (v + tau_squared)
    wx = X * weights[:, None]
    middle = _inverse(X.T @ wx)
    return np.diag(weights) - wx @ middle @ wx.T


def residual_q(y: np.ndarray, v: np.ndarray, X: np.ndarray, tau_squared: float = 0.0) -> float:
    """Weighted residual sum of squares, y'Py (Cochran's Q when tau² = 0)."""
    P = _projection(v, X, tau_squared)
    return float(y @ P @ y)


def tau2_dl(y: np.ndarray, v: np.ndarray, X: np.ndarray) -> float:
    """DerSimonian-Laird (generalised method of moments). Never iterates."""
    k, p = X.shape
    if k <= p:
        return 0.0
    P = _projection(v, X, 0.0)
    q = float(y @ P @ y)
    trace = float(np.trace(P))
    if trace <= 0 or q <= k - p:
        return 0.0
    return max(0.0, (q - (k - p)) / trace)


def tau2_pm(
    y: np.ndarray,
    v: np.ndarray,
    X: np.ndarray,
    max_iter: Optional[int] = None,
    tol: Optional[float] = None,
) -> float:
    """Paule-Mandel: root of the generalised Q equation Q(tau²) = k - p."""
    k, p = X.shape
    if k <= p:
        return 0.0
    max_iter = max_iter or settings.tau2_max_iter
    tol = tol or settings.tau2_tolerance
    target = k - p

    def excess(tau_squared: float) -> float:
        return residual_q(y, v, X, tau_squared) - target

    if excess(0.0) <= 0:
        return 0.0
    upper = max(float(np.var(y)), float(np.max(v)), 1e-8)
    for _ in range(100):
        if excess(upper) < 0:
            break
        upper *= 2.0
    else:
        raise NumericalInstability("Paule-Mandel estimator could not bracket tau²")
    try:
        root = brentq(excess, 0.0, upper, xtol=tol, maxiter=max_iter)
    except RuntimeError as exc:
        raise NumericalInstability(
            f"Paule-Mandel estimator did not converge within {max_iter} iterations"
        ) from exc
    return max(0.0, float(root))


def _fisher_scoring(
    y: np.ndarray,
    v: np.ndarray,
    X: np.ndarray,
    restricted: bool,
    max_iter: Optional[int] = None,
    tol: Optional[float] = None,
) -> float:
    """(Restricted) maximum likelihood via Fisher scoring with step halving."""
    k, p = X.shape
    if k <= p:
        return 0.0
    max_iter = max_iter or settings.tau2_max_iter
    tol = tol or settings.tau2_tolerance
    label = "REML" if restricted else "ML"

    tau_squared = tau2_dl(y, v, X)
    for iteration in range(1, max_iter + 1):
        P = _projection(v, X, tau_squared)
        Py = P @ y
        if restricted:
            score = float(Py @ Py) - float(np.trace(P))
            information = float(np.sum(P * P))
        else:
            weights = 1.0 / (v + tau_squared)
            score = float(Py @ Py) - float(np.sum(weights))
            information = float(np.sum(weights ** 2))
        if not np.isfinite(score) or information <= 0:
            raise NumericalInstability(f"{label} estimator produced a non-finite update")
        step = score / information
        halvings = 0
        while tau_squared + step < 0 and halvings < 60:
            step /= 2.0
            halvings += 1
        updated = max(0.0, tau_squared + step)
        if abs(updated - tau_squared) < tol:
            logger.debug(f"{label} converged after {iteration} iterations (tau²={updated:.6g})")
            return updated
        tau_squared = updated
    raise NumericalInstability(f"{label} estimator did not converge within {max_iter} iterations")


def estimate_tau_squared(
    y: np.ndarray,
    v: np.ndarray,
    X: Optional[np.ndarray] = None,
    method: TauMethod = TauMethod.REML,
    max_iter: Optional[int] = None,
    tol: Optional[float] = None,
) -> float:
    """Estimate the (residual) between-study variance with ``method``."""
    y = np.asarray(y, dtype=float)
    v = np.asarray(v, dtype=float)
    if X is None:
        X = intercept_design(len(y))
    method = TauMethod(method)
    if method is TauMethod.DL:
        return tau2_dl(y, v, X)
    if method is TauMethod.PM:
        return tau2_pm(y, v, X, max_iter=max_iter, tol=tol)
    return _fisher_scoring(y, v, X, restricted=method is TauMethod.REML, max_iter=max_iter, tol=tol)


def fit_model(
    y: np.ndarray,
    v: np.ndarray,
    X: np.ndarray,
    model_type: ModelType,
    method: TauMethod,
) -> ModelFit:
    """Fit a fixed- or random-effects model on design ``X``."""
    _check_design(X)
    tau_squared = 0.0
    if ModelType(model_type) is ModelType.RE:
        tau_squared = estimate_tau_squared(y, v, X, method)
    return fit_weighted(y, v, X, tau_squared)
