"""Meta-analysis engine: pooling, heterogeneity, publication bias, subgroups,
sensitivity analyses and meta-regression over normalized study records."""

__version__ = "0.1.0"
