"""APEX - FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from apex_engine.api import tasks_router
from apex_engine.config import settings
from apex_engine.core.errors import (
    ApexError,
    ConfigurationError,
    DependencyUnmetError,
    DuplicateIdError,
    InvalidTransitionError,
    RetryExhaustedError,
    TaskNotFoundError,
)
from apex_engine.core.orchestrator import TaskOrchestrator, create_orchestrator

logger = logging.getLogger(__name__)

# Domain error -> HTTP status, most specific first
ERROR_STATUS_CODES: list[tuple[type[ApexError], int]] = [
    (TaskNotFoundError, 404),
    (InvalidTransitionError, 409),
    (RetryExhaustedError, 409),
    (DependencyUnmetError, 409),
    (DuplicateIdError, 409),
    (ConfigurationError, 400),
]


def status_code_for(error: ApexError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


def create_app(orchestrator: Optional[TaskOrchestrator] = None) -> FastAPI:
    """Build the application around ``orchestrator`` (created from settings if omitted)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler for startup/shutdown."""
        logger.info(f"Starting {settings.app_name}...")

        if app.state.orchestrator is None:
            settings.workspaces_path.mkdir(parents=True, exist_ok=True)
            app.state.orchestrator = create_orchestrator()
        engine: TaskOrchestrator = app.state.orchestrator

        try:
            await engine.start()
        except (ApexError, OSError) as e:
            logger.warning(f"Container event monitoring unavailable: {e}")
        await engine.start_task_runner()

        yield

        logger.info(f"Shutting down {settings.app_name}...")
        try:
            await engine.stop()
        except Exception as e:
            logger.error(f"Error stopping orchestrator: {e}")

    app = FastAPI(
        title=settings.app_name,
        description="Task orchestration engine for multi-stage development workflows",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator

    @app.exception_handler(ApexError)
    async def apex_error_handler(request: Request, exc: ApexError) -> JSONResponse:
        status_code = status_code_for(exc)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(
            status_code=status_code,
            content={"detail": str(exc), "error": type(exc).__name__},
        )

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc), "error": "ValidationError"})

    app.include_router(tasks_router)

    @app.get("/api/health")
    async def health_check(request: Request):
        """Health check endpoint."""
        engine: Optional[TaskOrchestrator] = request.app.state.orchestrator
        if engine is None:
            return {"status": "starting", "version": "0.1.0"}

        return {
            "status": "healthy",
            "version": "0.1.0",
            **(await engine.get_system_status()),
        }

    return app


app = create_app()


# =============================================================================
# Development server
# =============================================================================


def run() -> None:
    """Serve the API with uvicorn using the configured host and port."""
    import uvicorn

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    uvicorn.run(
        "apex_engine.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
