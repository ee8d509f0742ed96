"""FastAPI web application for the meta-analysis engine.

This module defines the FastAPI application and includes the API
routes. It also provides a convenience function to launch the server
via Uvicorn.
"""

from __future__ import annotations

from typing import Dict

from fastapi import FastAPI
import uvicorn

from .. import __version__
from .routes import active_jobs, router


# Create FastAPI app
app = FastAPI(
    title="Meta-Analysis Engine",
    description="Pooling, heterogeneity, publication bias, subgroup, sensitivity and meta-regression analyses",
    version=__version__,
)

# Include API routes
app.include_router(router)


@app.get("/health")
async def health() -> Dict[str, object]:
    """Liveness probe."""
    return {"status": "ok", "version": __version__, "jobs": len(active_jobs)}


def start_server(host: str = "127.0.0.1", port: int = 8000, reload: bool = False) -> None:
    """Start the Uvicorn web server.

    Parameters
    ----------
    host: str
        Host to bind the server to.
    port: int
        Port to listen on. Defaults to 8000.
    reload: bool
        Whether to enable auto-reload. Useful during development.
    """
    uvicorn.run(
        "metaengine.web.app:app",
        host=host,
        port=port,
        reload=reload,
    )


if __name__ == "__main__":
    start_server()
