"""FastAPI application factory.

Maps the engine's error taxonomy onto HTTP statuses in one place; routes
raise domain errors and never build error responses themselves.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from wharchive.domain.errors import (
    ArchiveError,
    AuthorizationError,
    ConflictError,
    DataIntegrityError,
    NotFoundError,
    TransientGatewayError,
    ValidationError,
)
from wharchive.engine import Engine, build_engine
from wharchive.observability.correlation import CORRELATION_ID_HEADER, correlation_scope
from wharchive.observability.logging import get_logger
from wharchive.observability.redaction import safe_log_context
from wharchive.whatsapp.gateway_client import GatewayRequestError

from .routes import sessions, webhooks_evolution

logger = get_logger(__name__)

_STATUS_BY_ERROR: list[tuple[type[ArchiveError], int]] = [
    (ValidationError, 400),
    (AuthorizationError, 403),
    (NotFoundError, 404),
    (ConflictError, 409),
    (TransientGatewayError, 503),
    (GatewayRequestError, 502),
    (DataIntegrityError, 500),
]


def status_for(exc: ArchiveError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


def create_app(engine: Engine | None = None) -> FastAPI:
    """Create the FastAPI app around an engine (built from env if None)."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        app.state.engine.shutdown()

    app = FastAPI(
        title="WhatsApp Archive",
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.engine = engine if engine is not None else build_engine()

    # Correlation ID middleware
    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next) -> Response:
        with correlation_scope(request.headers.get(CORRELATION_ID_HEADER)) as cid:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = cid
            return response

    @app.get("/health", include_in_schema=False)
    def health() -> dict:
        return {"status": "ok"}

    @app.exception_handler(ArchiveError)
    async def archive_error_handler(request: Request, exc: ArchiveError) -> JSONResponse:
        status = status_for(exc)
        log = logger.error if status >= 500 else logger.info
        log(
            "request failed",
            extra={
                "extra_fields": safe_log_context(
                    path=request.url.path,
                    status=status,
                    error_type=type(exc).__name__,
                )
            },
        )
        return JSONResponse(
            status_code=status,
            content={"error": type(exc).__name__, "detail": str(exc)},
        )

    app.include_router(webhooks_evolution.router)
    app.include_router(sessions.router)

    return app
