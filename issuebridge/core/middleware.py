"""ASGI middleware for the IssueBridge service.

Registered in order (outermost first):
  1. CORSMiddleware, added by FastAPI directly
  2. RequestIdMiddleware: injects or forwards X-Request-ID and binds the
     GitHub delivery id for webhook requests
  3. SecurityHeadersMiddleware: adds security response headers

The ContextVars below are the single source of truth for the current
request and delivery ids. The logging layer reads them so every log line
emitted while handling a webhook can be matched to GitHub's delivery log.
"""

import uuid
from contextvars import ContextVar
from typing import Awaitable, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

_request_id_var: ContextVar[str] = ContextVar("request_id", default="")
_delivery_id_var: ContextVar[str] = ContextVar("delivery_id", default="")


def get_request_id() -> str:
    """Return the current request's ID, or an empty string outside a request."""
    return _request_id_var.get()


def get_delivery_id() -> str:
    """Return the X-GitHub-Delivery of the webhook being handled, if any."""
    return _delivery_id_var.get()


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Read or generate X-Request-ID and make it available for the request lifetime.

    - If the client sends X-Request-ID, that value is reused.
    - If absent, a fresh UUID4 is generated.
    - The ID is always echoed back in the response header.
    - X-GitHub-Delivery, when present, is bound alongside it.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        delivery_id = request.headers.get("X-GitHub-Delivery", "")

        request_token = _request_id_var.set(request_id)
        delivery_token = _delivery_id_var.set(delivery_id)
        try:
            response = await call_next(request)
        finally:
            _delivery_id_var.reset(delivery_token)
            _request_id_var.reset(request_token)

        response.headers["X-Request-ID"] = request_id
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Attach security-related headers to every outgoing response.

      X-Content-Type-Options: nosniff
        Stops browsers from MIME-sniffing JSON error bodies.

      X-Frame-Options: DENY
        Nothing here is meant to be framed.

      Referrer-Policy: no-referrer
        Setup callback URLs carry a one-time manifest code in the query
        string; it must not leak through the Referer header.

      Cache-Control: no-store
        Status and setup responses describe credentials.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cache-Control"] = "no-store"
        return response
