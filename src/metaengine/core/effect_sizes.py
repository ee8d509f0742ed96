"""Effect size calculators for studies reported as raw summaries.

All calculators return ``(yi, se)`` on the additive scale used for
pooling: log odds/risk ratios for binary outcomes, raw or standardized
mean differences for continuous outcomes and the correlation itself
for ``COR``.
"""

import math
from typing import Tuple

from .errors import InvalidInput

# Haldane-Anscombe correction applied when any 2x2 cell is zero
CONTINUITY_CORRECTION = 0.5


def _check_counts(events: int, total: int, arm: str) -> None:
    if events > total:
        raise InvalidInput(f"{arm} events ({events}) exceed group size ({total})")


def log_odds_ratio(
    events_treatment: int,
    n_treatment: int,
    events_control: int,
    n_control: int,
) -> Tuple[float, float]:
    """Log odds ratio and its standard error from a 2x2 table.

    log(OR) = log((a*d) / (b*c)),  SE = sqrt(1/a + 1/b + 1/c + 1/d)
    """
    _check_counts(events_treatment, n_treatment, "treatment")
    _check_counts(events_control, n_control, "control")
    a = float(events_treatment)
    b = float(n_treatment - events_treatment)
    c = float(events_control)
    d = float(n_control - events_control)
    if min(a, b, c, d) == 0:
        a, b, c, d = (x + CONTINUITY_CORRECTION for x in (a, b, c, d))
    log_or = math.log((a * d) / (b * c))
    se = math.sqrt(1 / a + 1 / b + 1 / c + 1 / d)
    return log_or, se


def log_risk_ratio(
    events_treatment: int,
    n_treatment: int,
    events_control: int,
    n_control: int,
) -> Tuple[float, float]:
    """Log risk ratio and its standard error from a 2x2 table."""
    _check_counts(events_treatment, n_treatment, "treatment")
    _check_counts(events_control, n_control, "control")
    a, n1 = float(events_treatment), float(n_treatment)
    c, n2 = float(events_control), float(n_control)
    if a == 0 or c == 0:
        a, c = a + CONTINUITY_CORRECTION, c + CONTINUITY_CORRECTION
        n1, n2 = n1 + 2 * CONTINUITY_CORRECTION, n2 + 2 * CONTINUITY_CORRECTION
    log_rr = math.log((a / n1) / (c / n2))
    se = math.sqrt(1 / a - 1 / n1 + 1 / c - 1 / n2)
    if se <= 0:
        raise InvalidInput("risk ratio variance is zero (all participants had events)")
    return log_rr, se


def mean_difference(
    mean_treatment: float,
    sd_treatment: float,
    n_treatment: int,
    mean_control: float,
    sd_control: float,
    n_control: int,
) -> Tuple[float, float]:
    """Raw mean difference with unpooled standard error."""
    md = mean_treatment - mean_control
    se = math.sqrt(sd_treatment ** 2 / n_treatment + sd_control ** 2 / n_control)
    return md, se


def hedges_g(
    mean_treatment: float,
    sd_treatment: float,
    n_treatment: int,
    mean_control: float,
    sd_control: float,
    n_control: int,
) -> Tuple[float, float]:
    """Standardized mean difference with Hedges' small-sample correction."""
    n1, n2 = n_treatment, n_control
    df = n1 + n2 - 2
    if df < 2:
        raise InvalidInput("Hedges' g needs at least 4 participants across both groups")
    pooled_sd = math.sqrt(((n1 - 1) * sd_treatment ** 2 + (n2 - 1) * sd_control ** 2) / df)
    d = (mean_treatment - mean_control) / pooled_sd
    correction = 1 - 3 / (4 * df - 1)
    g = d * correction
    se = math.sqrt((n1 + n2) / (n1 * n2) + g ** 2 / (2 * (n1 + n2)))
    return g, se


def correlation(r: float, n: int) -> Tuple[float, float]:
    """Correlation coefficient with its large-sample standard error."""
    if n < 3:
        raise InvalidInput("correlation needs a sample size of at least 3")
    se = (1 - r ** 2) / math.sqrt(n - 1)
    if se <= 0:
        raise InvalidInput("correlation of +/-1 has zero standard error")
    return r, se
