"""
FastAPI application for the catalog pipeline.

Provides REST endpoints for:
- Starting and stopping the pipeline (price markup, then catalog syncs)
- Checking pipeline status
- Streaming pipeline progress to the browser

Run with:
    cd backend
    source venv/bin/activate
    uvicorn api.main:app --reload --port 5000
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from document_store import open_store
from sync_errors import StoreError

from .routes import pipeline
from .services.pipeline_runner import PipelineCoordinator


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: datetime
    database: str
    pipeline: str


def create_app(coordinator: Optional[PipelineCoordinator] = None) -> FastAPI:
    """Build the application around a pipeline coordinator."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan handler.

        Starts the pipeline worker on startup and stops any active run on
        shutdown.
        """
        app.state.coordinator = coordinator or PipelineCoordinator()
        app.state.coordinator.start_worker()
        print("Pipeline worker started")

        yield

        app.state.coordinator.shutdown()
        print("Pipeline worker stopped")

    app = FastAPI(
        title="Catalog Pipeline API",
        description="Runs the storefront catalog pipeline and streams its progress",
        version="1.0.0",
        lifespan=lifespan,
    )

    # The progress page is served from a separate dev server
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(pipeline.router)

    @app.get("/api/health", response_model=HealthResponse, tags=["health"])
    def health_check():
        """
        Health check endpoint.

        Returns:
            Health status including document store connectivity
        """
        db_status = "unknown"

        try:
            with open_store("products"):
                db_status = "connected"
        except StoreError as e:
            db_status = f"error: {str(e)}"

        return HealthResponse(
            status="ok",
            timestamp=datetime.now(timezone.utc),
            database=db_status,
            pipeline="running" if app.state.coordinator.is_running else "idle",
        )

    @app.get("/", tags=["root"])
    def root():
        """
        Root endpoint with API information.

        Returns:
            API welcome message and documentation link
        """
        return {
            "message": "Catalog Pipeline API",
            "version": "1.0.0",
            "docs": "/docs",
            "health": "/api/health",
        }

    return app


app = create_app()
