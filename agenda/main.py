"""Agenda application entry point.

Environment:
    AGENDA_ENV                  # development/production (default: development)
    AGENDA_LOG_LEVEL            # DEBUG/INFO/WARNING/ERROR (default: INFO)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from agenda import __version__
from agenda.api.middleware import FixedWindowLimiter, RateLimitMiddleware
from agenda.api.routes import health_router, router
from agenda.config import get_settings
from agenda.database import close_db
from agenda.errors import AgendaError, ValidationError
from agenda.logging_config import get_logger, setup_logging
from agenda.orchestrator import Orchestrator

setup_logging()
logger = get_logger(__name__)


def _validation_message(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "Invalid request"


async def agenda_error_handler(request: Request, exc: AgendaError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=exc.message, code=exc.code)
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": exc.message})


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    error = ValidationError(_validation_message(exc))
    return JSONResponse(status_code=error.status_code, content={"error": error.code, "detail": error.message})


def create_app(orchestrator: Optional[Orchestrator] = None, start_trigger: bool = True) -> FastAPI:
    """Build the FastAPI app. A prebuilt orchestrator keeps its engine; only its pool is released."""
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        owned = orchestrator is None
        orch = orchestrator or Orchestrator(settings)
        logger.info("agenda_starting", version=__version__)
        await orch.startup(start_trigger=start_trigger)
        app.state.orchestrator = orch
        try:
            yield
        finally:
            await orch.shutdown()
            app.state.orchestrator = None
            if owned:
                await close_db()
            else:
                await orch.engine.dispose()

    app = FastAPI(
        title="Agenda",
        description="Scheduled, encrypted journal exports delivered by email and SMS",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(
        RateLimitMiddleware,
        limiter=FixedWindowLimiter(
            settings.agenda_rate_limit_max_requests,
            settings.agenda_rate_limit_window_seconds,
        ),
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(AgendaError, agenda_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(router, prefix="/api")
    app.include_router(health_router)
    return app


app = create_app()


def run() -> None:
    """Start the API server with uvicorn."""
    settings = get_settings()
    uvicorn.run(
        "agenda.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.agenda_env == "development",
        log_level=settings.agenda_log_level.lower(),
    )


if __name__ == "__main__":
    run()
