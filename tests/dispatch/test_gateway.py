"""Tests for timeout-bounded dispatch."""

import asyncio
import time

import httpx
import pytest

from issuebridge.dispatch.gateway import DispatchGateway
from issuebridge.dispatch.schemas import DispatchRequest

REQUEST = DispatchRequest(path="/process-issue", payload={"ISSUE_NUMBER": "7"})


def _target(response: httpx.Response, delay: float = 0.0):
    async def call(request: DispatchRequest) -> httpx.Response:
        if delay:
            await asyncio.sleep(delay)
        return response

    return call


class TestDispatchSuccess:
    async def test_returns_downstream_body(self):
        gateway = DispatchGateway()
        response = await gateway.dispatch(
            _target(httpx.Response(200, json={"success": True, "message": "done"})),
            REQUEST,
            name="claude-issue-1",
            route="/process-issue",
        )
        assert response.ok
        assert response.status_code == 200
        assert response.body == {"success": True, "message": "done"}

    async def test_non_object_json_is_wrapped(self):
        gateway = DispatchGateway()
        response = await gateway.dispatch(_target(httpx.Response(200, json=[1, 2])), REQUEST)
        assert response.body == {"result": [1, 2]}

    async def test_non_json_body_is_wrapped(self):
        gateway = DispatchGateway()
        response = await gateway.dispatch(_target(httpx.Response(200, text="plain")), REQUEST)
        assert response.body == {"message": "plain"}


class TestDispatchTimeout:
    async def test_timeout_returns_structured_500_promptly(self):
        gateway = DispatchGateway()
        started = time.perf_counter()

        response = await gateway.dispatch(
            _target(httpx.Response(200, json={}), delay=1.0),
            REQUEST,
            name="claude-issue-1",
            route="/process-issue",
            timeout=0.1,
        )

        elapsed = time.perf_counter() - started
        assert 0.1 <= elapsed < 0.5
        assert response.status_code == 500
        assert response.body["error"] == "Dispatch timed out"
        assert response.body["name"] == "claude-issue-1"
        assert response.body["route"] == "/process-issue"
        assert "0.1" in response.body["message"]

    async def test_abandoned_call_is_tracked_then_reaped(self):
        gateway = DispatchGateway()
        await gateway.dispatch(
            _target(httpx.Response(200, json={}), delay=0.2), REQUEST, timeout=0.05
        )
        assert gateway.abandoned_count == 1

        await asyncio.sleep(0.3)
        assert gateway.abandoned_count == 0

    async def test_shutdown_cancels_abandoned_calls(self):
        gateway = DispatchGateway()
        await gateway.dispatch(
            _target(httpx.Response(200, json={}), delay=10), REQUEST, timeout=0.01
        )
        assert gateway.abandoned_count == 1

        await gateway.shutdown()
        assert gateway.abandoned_count == 0

    async def test_default_timeout_applies(self):
        gateway = DispatchGateway(default_timeout=0.05)
        response = await gateway.dispatch(_target(httpx.Response(200), delay=1.0), REQUEST)
        assert response.body["error"] == "Dispatch timed out"
        await gateway.shutdown()


class TestDispatchFailure:
    @pytest.mark.parametrize("status", [400, 404, 502])
    async def test_non_2xx_becomes_500(self, status):
        gateway = DispatchGateway()
        response = await gateway.dispatch(_target(httpx.Response(status, json={})), REQUEST)
        assert response.status_code == 500
        assert response.body["error"] == "Dispatch failed"
        assert response.body["upstream_status"] == status

    async def test_transport_error_becomes_500(self):
        async def call(request):
            raise httpx.ConnectError("connection refused")

        gateway = DispatchGateway()
        response = await gateway.dispatch(call, REQUEST, name="n", route="/webhook")
        assert response.status_code == 500
        assert response.body["error"] == "Dispatch failed"
        assert "ConnectError" in response.body["message"]


class TestDispatchLogging:
    async def test_logs_start_and_duration(self, caplog):
        caplog.set_level("INFO", logger="issuebridge.dispatch.gateway")
        gateway = DispatchGateway()
        await gateway.dispatch(
            _target(httpx.Response(200, json={})), REQUEST, name="claude-issue-1", route="/process-issue"
        )
        assert "Starting dispatch to claude-issue-1" in caplog.text
        assert "duration=" in caplog.text

    async def test_payload_secrets_are_not_logged(self, caplog):
        caplog.set_level("DEBUG", logger="issuebridge")
        gateway = DispatchGateway()
        secret_request = DispatchRequest(path="/process-issue", payload={"GITHUB_TOKEN": "ghs_secret"})
        await gateway.dispatch(_target(httpx.Response(200, json={})), secret_request)
        assert "ghs_secret" not in caplog.text
        assert "ghs_secret" not in repr(secret_request)
