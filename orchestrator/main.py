"""FastAPI application entry point."""

import logging
import os
import threading
from typing import Optional

import sqlalchemy
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from orchestrator.errors import OrchestratorError
from orchestrator.routes import clients, jobs, webhooks
from orchestrator.runtime import Runtime, build_runtime
from orchestrator.worker import worker_loop

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


def run_migrations(runtime: Runtime):
    """Run Alembic migrations unless the jobs table already exists."""
    db = runtime.session_factory()
    try:
        table_exists = sqlalchemy.inspect(db.get_bind()).has_table("jobs")
    finally:
        db.close()

    if table_exists:
        logger.info("Database tables already exist, skipping migrations")
        return

    logger.info("Running database migrations...")
    from alembic import command
    from alembic.config import Config

    alembic_cfg = Config(os.path.join(os.path.dirname(os.path.dirname(__file__)), "alembic.ini"))
    command.upgrade(alembic_cfg, "head")
    logger.info("Database migrations completed successfully")


def create_app(runtime: Optional[Runtime] = None, start_worker: bool = True) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        runtime: Services to serve; built from settings when omitted
        start_worker: Start the background worker thread on startup

    Returns:
        FastAPI app
    """
    app = FastAPI(
        title="Diagnostic Pipeline Orchestrator",
        description="Queue, workflow and webhook engine for the client diagnostic pipeline",
        version="0.1.0",
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(webhooks.router)
    app.include_router(jobs.router)
    app.include_router(clients.router)

    app.state.runtime = runtime or build_runtime()

    # Worker thread management
    app.state.worker_thread = None
    app.state.worker_stop_event = threading.Event()

    @app.exception_handler(OrchestratorError)
    async def orchestrator_error_handler(request: Request, exc: OrchestratorError):
        """Map engine errors to JSON responses with their status code."""
        if exc.http_status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(
            status_code=exc.http_status,
            content={
                "detail": exc.message,
                "error_class": exc.error_class,
                "retryable": exc.retryable,
            },
        )

    @app.on_event("startup")
    async def startup_event():
        """Run migrations and start the background worker."""
        logger.info("Starting application...")

        if not start_worker:
            return

        try:
            run_migrations(app.state.runtime)
        except Exception as e:
            logger.error(f"Startup database check/migration error: {e}")
            logger.info("Continuing startup - assuming database is ready")

        logger.info("Starting background worker thread...")
        app.state.worker_thread = threading.Thread(
            target=worker_loop,
            args=(app.state.worker_stop_event, app.state.runtime),
            daemon=True,
        )
        app.state.worker_thread.start()
        logger.info("Background worker thread started")

    @app.on_event("shutdown")
    async def shutdown_event():
        """Stop the background worker when the app shuts down."""
        logger.info("Shutting down application...")

        # Signal worker to stop
        app.state.worker_stop_event.set()

        # Wait for worker thread to finish (with timeout)
        worker_thread = app.state.worker_thread
        if worker_thread and worker_thread.is_alive():
            worker_thread.join(timeout=10)
            logger.info("Background worker thread stopped")

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.get("/")
    def root():
        """Root endpoint."""
        return {
            "name": "Diagnostic Pipeline Orchestrator",
            "version": "0.1.0",
            "status": "running",
        }

    return app


app = create_app()
