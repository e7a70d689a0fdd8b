"""Exception taxonomy for the trust core.

Every error carries the HTTP status it maps to and a public ``detail``
string. The detail is what clients see; it never contains secret
material, and for authentication failures it never says which part of
the check failed.

Most of these are caught at a component boundary and turned into
``None`` / ``False`` / a structured response. Only the request-level
errors (``MissingHeaders``, ``InvalidPayload``, ``SignatureMismatch``,
``UnknownTenant``) are allowed to reach the FastAPI exception handler.
"""

from __future__ import annotations


class IssueBridgeError(Exception):
    status_code: int = 500
    detail: str = "Internal server error"

    def __init__(self, detail: str | None = None) -> None:
        if detail is not None:
            self.detail = detail
        super().__init__(self.detail)


class ConfigurationError(IssueBridgeError):
    detail = "Service is misconfigured"


class DecryptionError(IssueBridgeError):
    """Ciphertext is corrupt, truncated, or was sealed with an unknown key."""

    detail = "Secret unavailable"


class MissingHeaders(IssueBridgeError):
    status_code = 400
    detail = "Missing required headers"


class InvalidPayload(IssueBridgeError):
    status_code = 400
    detail = "Invalid JSON payload"


class SignatureMismatch(IssueBridgeError):
    status_code = 401
    detail = "Invalid signature"


class UnknownTenant(IssueBridgeError):
    status_code = 404
    detail = "App not configured"


class TokenExchangeFailure(IssueBridgeError):
    """GitHub rejected the app assertion or the exchange never completed."""

    status_code = 502
    detail = "Installation token unavailable"


class DispatchFailure(IssueBridgeError):
    detail = "Dispatch failed"


class DispatchTimeout(DispatchFailure):
    detail = "Dispatch timed out"
