"""HTTP client for the processing unit (the issue-solving agent).

The processing unit is an opaque service: it receives the issue context
plus the credentials it needs and answers ``{success, message, error?}``.
This module only knows how to reach it; timing and failure normalisation
live in ``DispatchGateway``.
"""

import logging

import httpx

from issuebridge.dispatch.schemas import DispatchRequest

logger = logging.getLogger(__name__)

PROCESS_ISSUE_ROUTE = "/process-issue"
NOTIFY_ROUTE = "/webhook"


class ProcessingUnitClient:
    """Callable dispatch target: ``await client(request) -> httpx.Response``."""

    def __init__(self, http: httpx.AsyncClient, base_url: str) -> None:
        self._http = http
        self._base_url = base_url.rstrip("/")

    async def __call__(self, request: DispatchRequest) -> httpx.Response:
        url = f"{self._base_url}{request.path}"
        logger.debug("POST %s (%d fields)", url, len(request.payload))
        return await self._http.post(url, json=request.payload)
