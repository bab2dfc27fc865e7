import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from autolot.config import settings
from autolot.exceptions import (
    ConfigConflictError,
    ConfigError,
    ConfigNotFoundError,
    FormatError,
    RunAlreadyActiveError,
    SourceConnectionError,
)
from autolot.api import deps
from autolot.api.middleware import add_request_id, enforce_body_size, log_requests

# Routers
from autolot.api.routers import imports, system

# Configure logging
logging.basicConfig(level=getattr(logging, settings.logging.level.upper(), logging.INFO))
logger = logging.getLogger("autolot.api")


def _error(request: Request, status_code: int, error: str, detail: str, **extra) -> JSONResponse:
    payload = {"error": error, "detail": detail, **extra}
    rid = getattr(request.state, "request_id", None)
    if rid:
        payload["request_id"] = rid
    return JSONResponse(status_code=status_code, content=payload)


@asynccontextmanager
async def lifespan(app: FastAPI):
    deps.get_registry().reset_stale_runs()
    scheduler = deps.get_scheduler()
    if settings.scheduler.enabled:
        scheduler.start()
    try:
        yield
    finally:
        scheduler.shutdown()
        deps.get_run_manager().shutdown(wait=False)


def create_app(db_path: Optional[Path] = None, upload_dir: Optional[Path] = None) -> FastAPI:
    """
    Factory to build the FastAPI application.
    Overriding db_path / upload_dir updates the global settings and drops cached services (used in tests).
    """
    if db_path or upload_dir:
        if db_path:
            settings.paths.db_path = Path(db_path)
        if upload_dir:
            settings.paths.upload_dir = Path(upload_dir)
        deps.reset()

    app = FastAPI(title=f"{settings.app.name} API", version=settings.app.version, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Custom Middleware
    app.middleware("http")(add_request_id)
    app.middleware("http")(enforce_body_size)
    if settings.logging.log_requests:
        app.middleware("http")(log_requests)

    app.include_router(system.router)
    app.include_router(imports.router)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        if isinstance(exc, StarletteHTTPException):
            return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})
        rid = getattr(request.state, "request_id", None)
        logger.exception("Unhandled error", extra={"path": str(request.url), "request_id": rid})
        return _error(request, 500, "internal_error", "Unexpected server error")

    @app.exception_handler(ConfigNotFoundError)
    async def not_found_handler(request: Request, exc: ConfigNotFoundError):
        return _error(request, 404, "not_found", str(exc))

    @app.exception_handler(ConfigConflictError)
    async def conflict_handler(request: Request, exc: ConfigConflictError):
        return _error(request, 409, "name_conflict", str(exc))

    @app.exception_handler(ConfigError)
    async def config_error_handler(request: Request, exc: ConfigError):
        return _error(request, 422, "invalid_config", str(exc))

    @app.exception_handler(RunAlreadyActiveError)
    async def run_active_handler(request: Request, exc: RunAlreadyActiveError):
        return _error(request, 409, "run_already_active", str(exc), run_id=exc.run_id)

    @app.exception_handler(SourceConnectionError)
    async def connection_error_handler(request: Request, exc: SourceConnectionError):
        return _error(request, 422, "source_unreachable", str(exc))

    @app.exception_handler(FormatError)
    async def format_error_handler(request: Request, exc: FormatError):
        return _error(request, 422, "invalid_source", str(exc), row_number=exc.row_number)

    return app

# Module-level app for uvicorn entrypoint
app = create_app()
