import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from issuebridge.core.config import Settings, get_settings
from issuebridge.core.context import AppContext
from issuebridge.core.errors import IssueBridgeError
from issuebridge.core.limiter import RateLimitContextMiddleware, limiter, limits_from_settings
from issuebridge.core.logging import configure_structlog
from issuebridge.core.middleware import RequestIdMiddleware, SecurityHeadersMiddleware
from issuebridge.core.sentry import init_sentry
from issuebridge.github.router import router as github_router
from issuebridge.setup.router import router as setup_router

logger = logging.getLogger(__name__)


async def _issuebridge_error_handler(request: Request, exc: IssueBridgeError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Drop the echoed input: it can be an API key.
    errors = [
        {key: value for key, value in error.items() if key not in ("input", "ctx")}
        for error in exc.errors()
    ]
    return JSONResponse(status_code=422, content={"detail": jsonable_encoder(errors)})


async def _unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(
        "Unhandled %s on %s %s",
        exc.__class__.__name__, request.method, request.url.path,
        exc_info=exc,
    )
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def create_app(
    settings: Optional[Settings] = None,
    *,
    github_transport: Optional[httpx.AsyncBaseTransport] = None,
    processor_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    settings = settings or get_settings()

    # ---------------------------------------------------------------------------
    # Logging: configure structlog before anything below logs
    # ---------------------------------------------------------------------------
    configure_structlog(debug=settings.debug)

    # ---------------------------------------------------------------------------
    # Sentry: initialised here so it captures startup errors too
    # ---------------------------------------------------------------------------
    init_sentry(
        dsn=settings.sentry_dsn,
        environment="development" if settings.debug else "production",
    )

    ctx = AppContext.build(
        settings,
        github_transport=github_transport,
        processor_transport=processor_transport,
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        await ctx.startup()
        try:
            yield
        finally:
            await ctx.aclose()

    _app = FastAPI(
        title="IssueBridge",
        description="Credential broker and webhook gateway for GitHub Apps",
        version="0.1.0",
        lifespan=lifespan,
    )
    _app.state.context = ctx

    # ---------------------------------------------------------------------------
    # Error handlers
    # ---------------------------------------------------------------------------
    _app.add_exception_handler(IssueBridgeError, _issuebridge_error_handler)
    _app.add_exception_handler(RequestValidationError, _validation_error_handler)
    _app.add_exception_handler(Exception, _unhandled_error_handler)

    # ---------------------------------------------------------------------------
    # Rate limiter state: SlowAPI reads limiter from app.state
    # ---------------------------------------------------------------------------
    _app.state.limiter = limiter
    _app.state.rate_limits = limits_from_settings(settings)
    _app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # ---------------------------------------------------------------------------
    # Middleware (registered outermost → innermost; executed innermost → outermost)
    # ---------------------------------------------------------------------------
    _app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    # SlowAPI must be before security headers so 429s also get security headers
    _app.add_middleware(SlowAPIMiddleware)
    # Binds this app's limit strings before SlowAPI evaluates them
    _app.add_middleware(RateLimitContextMiddleware)

    _app.add_middleware(SecurityHeadersMiddleware)

    # Request ID: inject / forward X-Request-ID, bind the delivery id
    _app.add_middleware(RequestIdMiddleware)

    # ---------------------------------------------------------------------------
    # Routes
    # ---------------------------------------------------------------------------

    @_app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "ok"}

    _app.include_router(github_router)
    _app.include_router(setup_router)

    return _app
