"""FastAPI application entry point.

Single Responsibility: Configure and run the FastAPI application.
"""

from __future__ import annotations

import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ..engine.guardrail_meta import GUARDRAIL_META_HEADER
from . import routes

# Application metadata
APP_TITLE = "Guardrail Context Engine API"
APP_DESCRIPTION = "Routing, history windowing and retrieval context for RAG chat"
APP_VERSION = "1.0.0"

# CORS configuration
CORS_ORIGINS = [
    "http://localhost:5173",      # Vite dev server
    "http://127.0.0.1:5173",
    "http://localhost:3000",      # Alternative dev port
    "http://127.0.0.1:3000",
]


def create_app() -> FastAPI:
    app = FastAPI(
        title=APP_TITLE,
        description=APP_DESCRIPTION,
        version=APP_VERSION,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )

    origins = list(CORS_ORIGINS)
    extra_origins = os.getenv("CORS_ORIGINS", "")
    if extra_origins:
        origins.extend([o.strip() for o in extra_origins.split(",") if o.strip()])

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        # Browsers hide non-safelisted response headers unless exposed
        expose_headers=[GUARDRAIL_META_HEADER],
    )

    app.include_router(routes.router, prefix="/api")

    @app.get("/api")
    async def api_root():
        """API root endpoint."""
        return {
            "name": APP_TITLE,
            "version": APP_VERSION,
            "docs": "/api/docs",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.api.app:app",
        host="0.0.0.0",
        port=int(os.getenv("API_PORT", "8000")),
        reload=True,
    )
