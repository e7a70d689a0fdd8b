"""GitHub REST client for the calls the trust core makes itself.

Uses a shared ``httpx.AsyncClient`` owned by the application context so
connection pools survive across webhooks. Three operations:

1. Exchange an app JWT for an installation access token
2. Comment on an issue (acknowledgement / failure notices)
3. Convert an app-manifest code into app credentials (setup flow)

Repository contents, branches and pull requests are the processing
unit's business and are not handled here.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import httpx
import jwt

from issuebridge.core.errors import TokenExchangeFailure
from issuebridge.github.auth import create_app_jwt

logger = logging.getLogger(__name__)

GITHUB_API_VERSION = "2022-11-28"


class InstallationAccessToken:
    __slots__ = ("token", "expires_at")

    def __init__(self, token: str, expires_at: datetime) -> None:
        self.token = token
        self.expires_at = expires_at

    def __repr__(self) -> str:
        return f"InstallationAccessToken(expires_at={self.expires_at.isoformat()})"


def parse_github_timestamp(value: str) -> datetime:
    """Parse GitHub's ISO-8601 timestamps (``2024-01-01T00:00:00Z``)."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class GitHubClient:
    def __init__(
        self,
        http: httpx.AsyncClient,
        api_base: str = "https://api.github.com",
        user_agent: str = "issuebridge",
    ) -> None:
        self._http = http
        self._api_base = api_base.rstrip("/")
        self._user_agent = user_agent

    async def exchange_installation_token(
        self,
        app_id: str,
        private_key: str,
        installation_id: str,
    ) -> InstallationAccessToken:
        """Exchange a freshly signed app JWT for an installation access token.

        Installation tokens are scoped to the repos the installer granted
        and expire after one hour.

        Raises:
            TokenExchangeFailure: GitHub answered non-2xx, the response was
                malformed, or the request never completed.
        """
        try:
            app_jwt = create_app_jwt(app_id, private_key)
        except (ValueError, TypeError, jwt.PyJWTError) as exc:
            logger.error("Could not sign app assertion for app %s: %s", app_id, exc.__class__.__name__)
            raise TokenExchangeFailure() from exc
        url = f"{self._api_base}/app/installations/{installation_id}/access_tokens"

        try:
            response = await self._http.post(url, headers=self._headers(app_jwt))
        except httpx.HTTPError as exc:
            logger.error(
                "Token exchange for app %s installation %s failed: %s",
                app_id, installation_id, exc.__class__.__name__,
            )
            raise TokenExchangeFailure() from exc

        if not response.is_success:
            logger.error(
                "GitHub rejected token exchange for app %s installation %s: %d %s",
                app_id, installation_id, response.status_code, response.text[:200],
            )
            raise TokenExchangeFailure()

        try:
            data = response.json()
            token = InstallationAccessToken(
                token=data["token"],
                expires_at=parse_github_timestamp(data["expires_at"]),
            )
        except (ValueError, KeyError, TypeError) as exc:
            logger.error("Malformed token exchange response for app %s", app_id)
            raise TokenExchangeFailure() from exc

        logger.info(
            "Obtained installation token for app %s (expires %s)",
            app_id, token.expires_at.isoformat(),
        )
        return token

    async def create_issue_comment(
        self,
        token: str,
        owner: str,
        repo: str,
        issue_number: int,
        body: str,
    ) -> dict[str, Any]:
        """POST /repos/{owner}/{repo}/issues/{issue_number}/comments"""
        response = await self._http.post(
            f"{self._api_base}/repos/{owner}/{repo}/issues/{issue_number}/comments",
            headers=self._headers(token),
            json={"body": body},
        )
        response.raise_for_status()
        return response.json()

    async def convert_manifest(self, code: str) -> dict[str, Any]:
        """POST /app-manifests/{code}/conversions

        Returns the new app's data including ``id``, ``pem`` and
        ``webhook_secret``. Unauthenticated: the one-time code
        is the credential.
        """
        response = await self._http.post(
            f"{self._api_base}/app-manifests/{code}/conversions",
            headers=self._headers(None),
        )
        response.raise_for_status()
        return response.json()

    def _headers(self, bearer: str | None) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": GITHUB_API_VERSION,
            "User-Agent": self._user_agent,
        }
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        return headers
