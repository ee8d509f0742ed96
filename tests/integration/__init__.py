"""Integration tests exercising the HTTP API and CLI."""
