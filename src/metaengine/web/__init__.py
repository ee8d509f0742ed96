"""Web package for the meta-analysis engine.

This package contains the FastAPI application exposing the analysis
operations over HTTP, both synchronously and as background jobs.

To start the web server from the CLI use:
    metaengine serve --port 8000 --reload
"""
