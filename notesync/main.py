"""FastAPI application entry point."""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError
from starlette.middleware.trustedhost import TrustedHostMiddleware

from notesync import __version__
from notesync.api.admin import router as admin_router
from notesync.api.auth import router as auth_router
from notesync.api.health import router as health_router
from notesync.api.sync import router as sync_router
from notesync.config import Settings
from notesync.database import create_engine
from notesync.exceptions import (
    AuthenticationFailure,
    InternalServerError,
    ServerIdMismatch,
    StorageFailure,
    SyncAborted,
    UnknownUser,
)
from notesync.models.base import Base
from notesync.services.user_service import ensure_admin_user
from notesync.services.repository import DatabaseBackend

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncEngine
    from starlette.responses import Response

logger = logging.getLogger(__name__)

_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Cache-Control": "no-store",
}
_RETRY_AFTER = {"Retry-After": "1"}
_DEBUG_HOSTS = ["localhost", "127.0.0.1", "::1", "test", "testserver"]


def _configure_logging(debug: bool) -> None:
    """Send application logs to stdout; DEBUG only in debug mode."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        stream=sys.stdout,
        force=True,
    )
    noisy = {
        "uvicorn.access": logging.WARNING,
        "sqlalchemy.engine": logging.INFO if debug else logging.WARNING,
    }
    for name, level in noisy.items():
        logging.getLogger(name).setLevel(level)


def _sqlite_file(database_url: str) -> Path | None:
    if not database_url.startswith("sqlite") or "///" not in database_url:
        return None
    location = database_url.split("///", 1)[1]
    return None if location == ":memory:" else Path(location)


async def init_storage(app: FastAPI, settings: Settings) -> AsyncEngine:
    """Create the engine and schema, bootstrap the admin account, publish the backend."""
    db_file = _sqlite_file(settings.database_url)
    if db_file is not None:
        db_file.parent.mkdir(parents=True, exist_ok=True)

    engine, session_factory = create_engine(settings)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with session_factory() as session:
            await ensure_admin_user(session, settings)
    except Exception:
        logger.critical("Database initialization failed; check the database path and permissions")
        await engine.dispose()
        raise

    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.backend = DatabaseBackend(session_factory, settings)
    return engine


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    settings: Settings = app.state.settings
    settings.validate_runtime_security()
    _configure_logging(settings.debug)
    logger.info("Starting NoteSync %s (debug=%s)", __version__, settings.debug)

    engine = await init_storage(app, settings)
    try:
        yield
    finally:
        await engine.dispose()
        logger.info("NoteSync stopped")


def _json_error(
    status_code: int, detail: Any, *, headers: dict[str, str] | None = None, **extra: Any
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code, content={"detail": detail, **extra}, headers=headers
    )


def _log_failure(request: Request, exc: Exception) -> None:
    logger.error(
        "%s in %s %s: %s",
        type(exc).__name__,
        request.method,
        request.url.path,
        exc,
        exc_info=exc,
    )


async def _on_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {
            "field": str(err["loc"][-1]) if err.get("loc") else "unknown",
            "message": err.get("msg", "Invalid value"),
        }
        for err in exc.errors()
    ]
    logger.warning("Invalid request to %s %s: %s", request.method, request.url.path, errors)
    return _json_error(422, errors)


async def _on_authentication_failure(request: Request, exc: Exception) -> JSONResponse:
    logger.info("Authentication failed for %s %s", request.method, request.url.path)
    return _json_error(401, "Access denied", headers={"WWW-Authenticate": "Bearer"})


async def _on_unknown_user(request: Request, exc: Exception) -> JSONResponse:
    logger.warning("%s (%s %s)", exc, request.method, request.url.path)
    return _json_error(404, "Unknown user")


async def _on_server_id_mismatch(request: Request, exc: ServerIdMismatch) -> JSONResponse:
    logger.info("%s (%s %s)", exc, request.method, request.url.path)
    return _json_error(409, "Server id mismatch, full resync required", server_id=exc.server_id)


async def _on_sync_aborted(request: Request, exc: SyncAborted) -> JSONResponse:
    _log_failure(request, exc)
    if exc.retryable:
        return _json_error(503, "Sync aborted, retry later", headers=_RETRY_AFTER)
    return _json_error(500, "Sync aborted")


async def _on_storage_failure(request: Request, exc: StorageFailure) -> JSONResponse:
    _log_failure(request, exc)
    if exc.transient:
        return _json_error(503, "Storage temporarily unavailable", headers=_RETRY_AFTER)
    return _json_error(500, "Storage operation failed")


async def _on_runtime_error(request: Request, exc: Exception) -> JSONResponse:
    if isinstance(exc, (NotImplementedError, RecursionError)):
        raise exc
    _log_failure(request, exc)
    return _json_error(500, "Internal processing error")


async def _on_internal_error(request: Request, exc: Exception) -> JSONResponse:
    _log_failure(request, exc)
    return _json_error(500, "Internal server error")


async def _on_value_error(request: Request, exc: Exception) -> JSONResponse:
    _log_failure(request, exc)
    return _json_error(422, str(exc) or "Invalid value")


async def _on_operational_error(request: Request, exc: Exception) -> JSONResponse:
    _log_failure(request, exc)
    return _json_error(503, "Database temporarily unavailable", headers=_RETRY_AFTER)


_EXCEPTION_HANDLERS: dict[type[Exception], Callable[..., Awaitable[Response]]] = {
    RequestValidationError: _on_validation_error,
    AuthenticationFailure: _on_authentication_failure,
    UnknownUser: _on_unknown_user,
    ServerIdMismatch: _on_server_id_mismatch,
    SyncAborted: _on_sync_aborted,
    StorageFailure: _on_storage_failure,
    RuntimeError: _on_runtime_error,
    InternalServerError: _on_internal_error,
    ValueError: _on_value_error,
    OperationalError: _on_operational_error,
}


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or Settings()
    docs = settings.debug or settings.expose_docs

    app = FastAPI(
        title="NoteSync",
        description="Note synchronization server",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if docs else None,
        redoc_url="/redoc" if docs else None,
        openapi_url="/openapi.json" if docs else None,
    )
    app.state.settings = settings

    app.add_middleware(GZipMiddleware, minimum_size=500)
    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=False,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    allowed_hosts = settings.trusted_hosts or (_DEBUG_HOSTS if settings.debug else [])
    if allowed_hosts:
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=allowed_hosts)

    @app.middleware("http")
    async def add_security_headers(
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        response = await call_next(request)
        for header, value in _SECURITY_HEADERS.items():
            response.headers.setdefault(header, value)
        return response

    for router in (health_router, auth_router, admin_router, sync_router):
        app.include_router(router)
    for exc_type, handler in _EXCEPTION_HANDLERS.items():
        app.add_exception_handler(exc_type, handler)

    return app


app = create_app()


def cli_entry() -> None:
    """Run the server with uvicorn."""
    import uvicorn

    settings: Settings = app.state.settings
    uvicorn.run("notesync.main:app", host=settings.host, port=settings.port, reload=settings.debug)
