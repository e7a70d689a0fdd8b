"""Sentry SDK integration for the IssueBridge service.

Captures exceptions and performance traces without leaking secrets.

Key decisions:
  - ``send_default_pii=False``: no user data sent.
  - ``before_send`` scrubs any event field whose key contains a sensitive
    keyword. Tenant private keys, webhook secrets, installation tokens and
    the deployment API key all match.
  - No-op when SENTRY_DSN is empty so local runs and CI are unaffected.
"""

from __future__ import annotations

import logging
from typing import Any

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)

_SENSITIVE_KEYS = frozenset(
    {"private_key", "webhook_secret", "pem", "api_key", "secret", "token", "password", "dsn"}
)
_SENSITIVE_HEADERS = frozenset({"authorization", "x-hub-signature-256", "cookie"})
REDACTED = "[REDACTED]"


def _scrub_secrets(event: dict[str, Any], hint: Any) -> dict[str, Any]:
    """Sentry before_send hook: redact values for sensitive keys.

    Walks ``extra``, ``request.data`` and ``request.headers`` and replaces
    the value of any matching key with "[REDACTED]".
    """
    _scrub_dict(event.get("extra", {}))
    request = event.get("request", {})
    request_data = request.get("data", {})
    if isinstance(request_data, dict):
        _scrub_dict(request_data)
    headers = request.get("headers", {})
    if isinstance(headers, dict):
        for name in list(headers):
            if name.lower() in _SENSITIVE_HEADERS:
                headers[name] = REDACTED
    return event


def _scrub_dict(d: dict[str, Any]) -> None:
    """Recursively redact sensitive values in-place."""
    for key in list(d.keys()):
        if any(sensitive in str(key).lower() for sensitive in _SENSITIVE_KEYS):
            d[key] = REDACTED
        elif isinstance(d[key], dict):
            _scrub_dict(d[key])


def init_sentry(dsn: str, environment: str = "development") -> None:
    """Initialise the Sentry SDK. Empty *dsn* disables it."""
    if not dsn or not dsn.strip():
        logger.debug("Sentry DSN not configured; skipping initialisation")
        return

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
        ],
        traces_sample_rate=0.1,
        send_default_pii=False,
        before_send=_scrub_secrets,
    )
    logger.info("Sentry initialised (environment=%s)", environment)
