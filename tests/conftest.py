"""Shared test fixtures for the IssueBridge test suite.

Each test gets a fresh app built by ``create_app()`` against an
in-memory SQLite database and a freshly generated encryption key.
Outbound HTTP goes through ``httpx.MockTransport``: ``FakeGitHub``
stands in for api.github.com and ``FakeProcessor`` for the processing
unit. Both record every request they receive.
"""

import asyncio
import json
from collections.abc import AsyncGenerator
from datetime import timedelta
from typing import Any, Optional

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from httpx import ASGITransport, AsyncClient

from issuebridge.core.config import Settings
from issuebridge.core.context import AppContext
from issuebridge.core.limiter import limiter
from issuebridge.crypto.box import generate_key
from issuebridge.db.models import utcnow
from issuebridge.github.webhooks import sign_payload
from issuebridge.main import create_app
from issuebridge.vault.schemas import OwnerInfo, RepositoryRef, TenantCredential

TEST_APP_ID = "12345"
TEST_WEBHOOK_SECRET = "s3cr3t"
TEST_INSTALLATION_ID = "777"
TEST_API_KEY = "sk-ant-test-key-0000"


# ---------------------------------------------------------------------------
# Fake upstreams
# ---------------------------------------------------------------------------


class FakeGitHub:
    """Minimal api.github.com: token exchange, issue comments, manifests."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.comments: list[dict[str, Any]] = []
        self.tokens_issued = 0
        self.token_status = 201
        self.token_lifetime = timedelta(hours=1)
        self.exchange_delay = 0.0
        self.comment_status = 201
        self.manifest_status = 201
        self.manifest: dict[str, Any] = {}

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path.startswith("/app/installations/") and path.endswith("/access_tokens"):
            if self.exchange_delay:
                await asyncio.sleep(self.exchange_delay)
            if self.token_status >= 400:
                return httpx.Response(self.token_status, json={"message": "Bad credentials"})
            self.tokens_issued += 1
            expires_at = utcnow() + self.token_lifetime
            return httpx.Response(
                201,
                json={
                    "token": f"ghs_test_token_{self.tokens_issued}",
                    "expires_at": expires_at.strftime("%Y-%m-%dT%H:%M:%SZ"),
                },
            )

        if path.endswith("/comments"):
            if self.comment_status >= 400:
                return httpx.Response(self.comment_status, json={"message": "Forbidden"})
            self.comments.append({"path": path, **json.loads(request.content)})
            return httpx.Response(201, json={"id": len(self.comments)})

        if path.startswith("/app-manifests/"):
            return httpx.Response(self.manifest_status, json=self.manifest)

        return httpx.Response(404, json={"message": "Not Found"})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def exchange_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith("/access_tokens")]


class FakeProcessor:
    """Records dispatches and answers with a configurable response."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.status_code = 200
        self.body: Any = {"success": True, "message": "Pull request opened"}
        self.delay = 0.0

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append((request.url.path, json.loads(request.content)))
        if self.delay:
            await asyncio.sleep(self.delay)
        return httpx.Response(self.status_code, json=self.body)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def payloads_for(self, path: str) -> list[dict[str, Any]]:
        return [payload for called, payload in self.calls if called == path]


# ---------------------------------------------------------------------------
# Keys and settings
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def rsa_private_key_pem() -> str:
    """A throwaway RSA key standing in for a GitHub App private key."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        encryption_key=generate_key(),
        github_api_base="https://api.github.test",
        processing_unit_url="http://processor.test",
        dispatch_timeout_seconds=5.0,
        sentry_dsn="",
        debug=False,
    )


@pytest.fixture
def github_api() -> FakeGitHub:
    return FakeGitHub()


@pytest.fixture
def processor() -> FakeProcessor:
    return FakeProcessor()


# ---------------------------------------------------------------------------
# App, context and client
# ---------------------------------------------------------------------------


@pytest.fixture
def app(settings, github_api, processor):
    """Create the app with both outbound dependencies mocked.

    The SlowAPI limiter keeps in-memory buckets on a module-level
    singleton; reset them so tests do not share rate-limit state.
    """
    limiter.reset()
    return create_app(
        settings,
        github_transport=github_api.transport(),
        processor_transport=processor.transport(),
    )


@pytest.fixture
async def ctx(app) -> AsyncGenerator[AppContext, None]:
    """The app's context with tables created.

    ``ASGITransport`` does not run the lifespan, so startup and shutdown
    are driven here.
    """
    context: AppContext = app.state.context
    await context.startup()
    yield context
    await context.aclose()


@pytest.fixture
async def client(app, ctx) -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------


@pytest.fixture
async def tenant(ctx, rsa_private_key_pem) -> TenantCredential:
    """Tenant 12345 with webhook secret "s3cr3t", installed on one repo."""
    credential = TenantCredential(
        app_id=TEST_APP_ID,
        encrypted_private_key=ctx.crypto.encrypt(rsa_private_key_pem),
        encrypted_webhook_secret=ctx.crypto.encrypt(TEST_WEBHOOK_SECRET),
        installation_id=TEST_INSTALLATION_ID,
        owner=OwnerInfo(login="octo-org", type="Organization", id=42),
        permissions={"issues": "write", "metadata": "read"},
        events=["issues"],
        repositories=[RepositoryRef(id=1, name="widgets", full_name="octo-org/widgets")],
    )
    await ctx.vault.store(credential)
    return credential


@pytest.fixture
async def deployment_key(ctx) -> str:
    await ctx.vault.store_deployment_secret(ctx.crypto.encrypt(TEST_API_KEY), utcnow())
    return TEST_API_KEY


# ---------------------------------------------------------------------------
# Webhook helpers
# ---------------------------------------------------------------------------


def _webhook_headers(
    event: str,
    body: bytes,
    *,
    secret: Optional[str] = TEST_WEBHOOK_SECRET,
    delivery: str = "delivery-1",
    target_id: Optional[str] = None,
) -> dict[str, str]:
    headers = {
        "X-GitHub-Event": event,
        "X-GitHub-Delivery": delivery,
        "Content-Type": "application/json",
    }
    if secret is not None:
        headers["X-Hub-Signature-256"] = sign_payload(body, secret)
    if target_id is not None:
        headers["X-GitHub-Hook-Installation-Target-Id"] = target_id
    return headers


@pytest.fixture
def send_webhook(client):
    """POST a signed webhook; returns the response.

    ``secret=None`` omits the signature header entirely.
    """

    async def _send(
        event: str,
        payload: dict[str, Any],
        *,
        secret: Optional[str] = TEST_WEBHOOK_SECRET,
        delivery: str = "delivery-1",
        target_id: Optional[str] = None,
    ) -> httpx.Response:
        body = json.dumps(payload).encode("utf-8")
        headers = _webhook_headers(
            event, body, secret=secret, delivery=delivery, target_id=target_id
        )
        return await client.post("/webhooks/github", content=body, headers=headers)

    return _send


def _installation_block(app_id: str = TEST_APP_ID) -> dict[str, Any]:
    return {"id": int(TEST_INSTALLATION_ID), "app_id": int(app_id)}


@pytest.fixture
def issue_payload() -> dict[str, Any]:
    """An ``issues`` webhook body for tenant 12345."""
    return {
        "action": "opened",
        "installation": _installation_block(),
        "issue": {
            "id": 9001,
            "number": 7,
            "title": "Widget explodes on startup",
            "body": "Steps to reproduce...",
            "labels": [{"name": "bug"}],
            "user": {"login": "reporter"},
        },
        "repository": {
            "id": 1,
            "name": "widgets",
            "full_name": "octo-org/widgets",
            "clone_url": "https://github.com/octo-org/widgets.git",
            "owner": {"login": "octo-org"},
        },
    }
