"""Timeout-bounded dispatch to the processing unit.

``DispatchGateway.dispatch`` races the downstream call against a
wall-clock timer. Whatever happens, the caller gets a
``DispatchResponse`` back and never an exception:

  • downstream answers 2xx in time  → its status and JSON body
  • downstream answers non-2xx      → 500, {"error": "Dispatch failed", ...}
  • transport error                 → 500, {"error": "Dispatch failed", ...}
  • timer fires first               → 500, {"error": "Dispatch timed out", ...}

On timeout the downstream task is abandoned, not cancelled: there is no
cooperative cancellation signal to send the processing unit, and tearing
down the HTTP request mid-flight would leave it in an unknown state.
Abandoned tasks are tracked so their eventual outcome is logged and so
shutdown can cancel any still running.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

import httpx

from issuebridge.core.errors import DispatchFailure, DispatchTimeout
from issuebridge.dispatch.schemas import DispatchRequest, DispatchResponse

logger = logging.getLogger(__name__)

DispatchTarget = Callable[[DispatchRequest], Awaitable[httpx.Response]]

DEFAULT_TIMEOUT_SECONDS = 300.0


class DispatchGateway:
    def __init__(self, default_timeout: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self._default_timeout = default_timeout
        self._abandoned: set[asyncio.Task] = set()

    @property
    def abandoned_count(self) -> int:
        return len(self._abandoned)

    async def dispatch(
        self,
        target: DispatchTarget,
        request: DispatchRequest,
        *,
        name: str = "unknown",
        route: str = "unknown",
        timeout: Optional[float] = None,
    ) -> DispatchResponse:
        timeout = self._default_timeout if timeout is None else timeout
        started = time.perf_counter()
        logger.info("Starting dispatch to %s for route %s (timeout=%ss)", name, route, timeout)

        task = asyncio.ensure_future(target(request))
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if not done:
            self._abandon(task, name, route)
            return self._failure(
                DispatchTimeout(),
                f"Dispatch timeout after {timeout}s",
                name, route, started,
            )

        exc = task.exception()
        if exc is not None:
            return self._failure(
                DispatchFailure(),
                f"{exc.__class__.__name__}: {exc}",
                name, route, started,
            )

        response = task.result()
        if not response.is_success:
            return self._failure(
                DispatchFailure(),
                f"Processing unit returned status {response.status_code}",
                name, route, started,
                upstream_status=response.status_code,
            )

        try:
            body = response.json()
        except ValueError:
            body = {"message": response.text}
        if not isinstance(body, dict):
            body = {"result": body}

        logger.info(
            "Dispatch to %s for route %s completed: status=%d duration=%dms",
            name, route, response.status_code, _elapsed_ms(started),
        )
        return DispatchResponse(status_code=response.status_code, body=body)

    async def shutdown(self) -> None:
        """Cancel abandoned calls that are still running."""
        pending = list(self._abandoned)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.info("Cancelled %d abandoned dispatch(es) on shutdown", len(pending))

    def _abandon(self, task: asyncio.Task, name: str, route: str) -> None:
        self._abandoned.add(task)

        def _reap(finished: asyncio.Task) -> None:
            self._abandoned.discard(finished)
            if finished.cancelled():
                return
            exc = finished.exception()
            if exc is not None:
                logger.warning(
                    "Abandoned dispatch to %s for route %s later failed: %s",
                    name, route, exc.__class__.__name__,
                )
            else:
                logger.info(
                    "Abandoned dispatch to %s for route %s later finished: status=%d",
                    name, route, finished.result().status_code,
                )

        task.add_done_callback(_reap)

    @staticmethod
    def _failure(
        error: DispatchFailure,
        message: str,
        name: str,
        route: str,
        started: float,
        upstream_status: Optional[int] = None,
    ) -> DispatchResponse:
        logger.error(
            "Dispatch to %s for route %s failed after %dms: %s",
            name, route, _elapsed_ms(started), message,
        )
        body = {
            "error": error.detail,
            "message": message,
            "name": name,
            "route": route,
        }
        if upstream_status is not None:
            body["upstream_status"] = upstream_status
        return DispatchResponse(status_code=500, body=body)


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
