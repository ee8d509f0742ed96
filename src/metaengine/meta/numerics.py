"""Distribution helpers shared by the engines."""

import math

from scipy import special, stats


def chi2_sf(statistic: float, df: int) -> float:
    """Chi-square survival function, Q(df/2, x/2) of the regularized upper incomplete gamma."""
    if df <= 0:
        raise ValueError("chi-square degrees of freedom must be positive")
    return float(special.gammaincc(df / 2.0, max(statistic, 0.0) / 2.0))


def normal_two_sided_p(z: float) -> float:
    return float(2.0 * stats.norm.sf(abs(z)))


def t_two_sided_p(t: float, df: int) -> float:
    return float(2.0 * stats.t.sf(abs(t), df))


def t_critical(df: int, level: float = 0.95) -> float:
    return float(stats.t.ppf(1.0 - (1.0 - level) / 2.0, df))


def normal_critical(alpha: float) -> float:
    """Two-sided critical value for significance level ``alpha``."""
    return float(stats.norm.isf(alpha / 2.0))


def safe_sqrt(value: float) -> float:
    return math.sqrt(max(value, 0.0))
