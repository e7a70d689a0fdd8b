"""Application context: every long-lived component, built once.

``create_app()`` builds an ``AppContext`` from ``Settings`` and stores it
on ``app.state.context``. Route handlers receive it through the
``get_context`` dependency, and components receive what they need through
their constructors. Nothing below this object reads the environment or
a module-level singleton.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import httpx
from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine

from issuebridge.core.config import Settings
from issuebridge.crypto.box import CryptoBox
from issuebridge.db.session import build_engine, build_session_factory, create_tables
from issuebridge.dispatch.gateway import DispatchGateway
from issuebridge.dispatch.processor import ProcessingUnitClient
from issuebridge.github.client import GitHubClient
from issuebridge.github.tokens import TokenCache
from issuebridge.vault.service import CredentialVault

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    crypto: CryptoBox
    engine: AsyncEngine
    vault: CredentialVault
    github: GitHubClient
    tokens: TokenCache
    gateway: DispatchGateway
    processor: ProcessingUnitClient
    github_http: httpx.AsyncClient
    processor_http: httpx.AsyncClient

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        github_transport: Optional[httpx.AsyncBaseTransport] = None,
        processor_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "AppContext":
        """Wire every component from *settings*.

        The optional transports let tests substitute ``httpx.MockTransport``
        for the two outbound HTTP dependencies.
        """
        crypto = CryptoBox.from_settings(settings)
        engine = build_engine(settings)
        vault = CredentialVault(build_session_factory(engine), crypto)

        github_http = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.github_api_timeout_seconds, connect=10.0),
            transport=github_transport,
        )
        github = GitHubClient(
            github_http,
            api_base=settings.github_api_base,
            user_agent=settings.github_user_agent,
        )
        tokens = TokenCache(
            vault,
            github,
            refresh_margin=timedelta(seconds=settings.token_refresh_margin_seconds),
        )

        # The gateway owns the wall-clock limit; the HTTP client only
        # bounds connection setup.
        processor_http = httpx.AsyncClient(
            timeout=httpx.Timeout(None, connect=10.0),
            transport=processor_transport,
        )
        processor = ProcessingUnitClient(processor_http, settings.processing_unit_url)
        gateway = DispatchGateway(default_timeout=settings.dispatch_timeout_seconds)

        return cls(
            settings=settings,
            crypto=crypto,
            engine=engine,
            vault=vault,
            github=github,
            tokens=tokens,
            gateway=gateway,
            processor=processor,
            github_http=github_http,
            processor_http=processor_http,
        )

    async def startup(self) -> None:
        await create_tables(self.engine)
        if self.settings.retired_encryption_keys:
            await self.vault.rotate_all()
        logger.info("Credential store ready")

    async def aclose(self) -> None:
        await self.gateway.shutdown()
        await self.github_http.aclose()
        await self.processor_http.aclose()
        await self.engine.dispose()


def get_context(request: Request) -> AppContext:
    """FastAPI dependency returning the application's context."""
    return request.app.state.context
