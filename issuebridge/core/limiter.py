"""SlowAPI rate limiter singleton.

Nothing here is user-authenticated: webhooks come from GitHub's delivery
network and setup calls from whoever holds the deployment URL. Limits
are therefore keyed on the client IP.

The limiter object and its in-memory buckets are process-wide, as SlowAPI
requires. The limit strings are per app: ``create_app()`` stores them on
``app.state.rate_limits`` and ``RateLimitContextMiddleware`` binds them to
a ContextVar for the request. SlowAPI evaluates the callables below on
every request and calls them without arguments, so they read the
ContextVar rather than the request.

Usage in route handlers:
    @router.post("/some-endpoint")
    @limiter.limit(webhook_limit)
    async def handler(request: Request, ...):
        ...

The ``Request`` parameter is required by SlowAPI even if the handler
doesn't use it directly.
"""

from contextvars import ContextVar
from typing import Awaitable, Callable

from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from issuebridge.core.config import Settings

limiter = Limiter(key_func=get_remote_address, default_limits=[])

DEFAULT_LIMITS = {
    "webhook": "120/minute",
    "setup": "10/minute",
}

_limits_var: ContextVar[dict[str, str]] = ContextVar("rate_limits", default=DEFAULT_LIMITS)


def limits_from_settings(settings: Settings) -> dict[str, str]:
    return {
        "webhook": settings.webhook_rate_limit,
        "setup": settings.setup_rate_limit,
    }


def webhook_limit() -> str:
    return _limits_var.get()["webhook"]


def setup_limit() -> str:
    return _limits_var.get()["setup"]


class RateLimitContextMiddleware(BaseHTTPMiddleware):
    """Bind ``request.app.state.rate_limits`` for the request lifetime.

    Must wrap ``SlowAPIMiddleware``, which evaluates route limits itself.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        limits = getattr(request.app.state, "rate_limits", DEFAULT_LIMITS)
        token = _limits_var.set(limits)
        try:
            return await call_next(request)
        finally:
            _limits_var.reset(token)
