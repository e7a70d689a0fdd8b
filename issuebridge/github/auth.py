"""GitHub App authentication.

Builds the short-lived RS256 assertion (an "app JWT") that proves the
service holds a tenant's private key. The assertion is only ever
exchanged for an installation access token; it is never used for
ordinary API calls.

GitHub App auth flow:
1. Generate a JWT signed with the App's private key
2. Exchange the JWT for a short-lived installation access token
3. Use the installation token for API calls scoped to that installation
"""

import time
from typing import Optional

import jwt

# Backdate to absorb clock skew between us and GitHub.
CLOCK_SKEW_SECONDS = 60
# GitHub rejects app JWTs that live longer than ten minutes.
ASSERTION_LIFETIME_SECONDS = 600


def create_app_jwt(app_id: str, private_key: str, now: Optional[int] = None) -> str:
    """Create a JWT for authenticating as the GitHub App *app_id*.

    Args:
        app_id: The GitHub App id, used as the ``iss`` claim.
        private_key: PEM-encoded RSA private key for the app.
        now: Unix timestamp to issue at. Defaults to the current time.

    Raises:
        ValueError: if either credential is empty.
    """
    if not app_id or not private_key:
        raise ValueError("GitHub App credentials not configured for this tenant")

    issued = int(time.time()) if now is None else now
    payload = {
        "iat": issued - CLOCK_SKEW_SECONDS,
        "exp": issued + ASSERTION_LIFETIME_SECONDS,
        "iss": str(app_id),
    }

    return jwt.encode(payload, private_key, algorithm="RS256")
