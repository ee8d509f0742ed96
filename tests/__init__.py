"""Test suite for the meta-analysis engine.

Unit tests cover normalization, the tau² estimators and each analysis
engine; integration tests drive the HTTP API and the CLI end to end.
Run ``pytest`` from the project root.
"""
