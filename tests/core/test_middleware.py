"""Tests for middleware: request ID, delivery ID, security headers, rate limit."""

import uuid

from httpx import ASGITransport, AsyncClient

from issuebridge.core.config import Settings
from issuebridge.core.limiter import limiter
from issuebridge.core.middleware import get_delivery_id
from issuebridge.crypto.box import generate_key
from issuebridge.main import create_app


class TestRequestIdMiddleware:
    async def test_response_includes_request_id_header(self, client: AsyncClient) -> None:
        res = await client.get("/health")
        uuid.UUID(res.headers["x-request-id"])

    async def test_client_supplied_request_id_is_echoed_back(self, client: AsyncClient) -> None:
        my_id = str(uuid.uuid4())
        res = await client.get("/health", headers={"X-Request-ID": my_id})
        assert res.headers["x-request-id"] == my_id

    async def test_request_id_present_on_error_responses(self, client: AsyncClient) -> None:
        res = await client.post("/webhooks/github", content=b"{}")
        assert res.status_code == 400
        assert "x-request-id" in res.headers

    async def test_delivery_id_does_not_leak_past_request(self, send_webhook) -> None:
        await send_webhook("ping", {"zen": "z"}, secret=None, delivery="abc-123")
        assert get_delivery_id() == ""


class TestSecurityHeadersMiddleware:
    async def test_headers_on_success(self, client: AsyncClient) -> None:
        res = await client.get("/health")
        assert res.headers["x-content-type-options"] == "nosniff"
        assert res.headers["x-frame-options"] == "DENY"
        assert res.headers["referrer-policy"] == "no-referrer"
        assert res.headers["cache-control"] == "no-store"

    async def test_headers_on_404(self, client: AsyncClient) -> None:
        res = await client.get("/nonexistent-endpoint")
        assert res.status_code == 404
        assert res.headers["x-frame-options"] == "DENY"


class TestRateLimit:
    async def test_setup_endpoint_is_rate_limited(self) -> None:
        limiter.reset()
        app = create_app(_limited_settings("2/minute"))
        ctx = app.state.context
        await ctx.startup()
        try:
            codes = await _post_setup(app, times=3)
        finally:
            await ctx.aclose()
            limiter.reset()

        assert codes == [200, 200, 429]

    async def test_limits_are_per_app(self) -> None:
        limiter.reset()
        strict = create_app(_limited_settings("2/minute"))
        relaxed = create_app(_limited_settings("50/minute"))
        contexts = [strict.state.context, relaxed.state.context]
        for ctx in contexts:
            await ctx.startup()
        try:
            strict_codes = await _post_setup(strict, times=3)
            relaxed_codes = await _post_setup(relaxed, times=3)
        finally:
            for ctx in contexts:
                await ctx.aclose()
            limiter.reset()

        assert strict_codes == [200, 200, 429]
        assert relaxed_codes == [200, 200, 200]


def _limited_settings(setup_rate_limit: str) -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        encryption_key=generate_key(),
        setup_rate_limit=setup_rate_limit,
        debug=False,
    )


async def _post_setup(app, times: int) -> list[int]:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        return [
            (await ac.post("/claude-setup", json={"anthropic_api_key": "sk-ant-x"})).status_code
            for _ in range(times)
        ]
