"""Installation access token cache.

Tokens are cached in the tenant's vault partition and reused while they
have more than ``refresh_margin`` (five minutes by default) of life
left. On a miss the cache signs a fresh app assertion with the tenant's
decrypted private key and exchanges it with GitHub.

Refresh is single-flight per tenant: concurrent misses for the same app
queue on a per-app refresh lock, and every waiter re-reads the cache
after acquiring it, so only the first performs the network exchange and
the rest reuse its token. The refresh lock is separate from the vault's
partition lock so the slow network call never blocks ordinary vault
operations for that tenant.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from issuebridge.core.errors import TokenExchangeFailure
from issuebridge.db.models import utcnow
from issuebridge.github.client import GitHubClient
from issuebridge.vault.partitions import PartitionRegistry
from issuebridge.vault.service import CredentialVault

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_MARGIN = timedelta(minutes=5)


class TokenCache:
    def __init__(
        self,
        vault: CredentialVault,
        github: GitHubClient,
        refresh_margin: timedelta = DEFAULT_REFRESH_MARGIN,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._vault = vault
        self._github = github
        self._refresh_margin = refresh_margin
        self._clock = clock
        self._refresh_locks = PartitionRegistry()

    async def get_installation_token(self, app_id: str) -> Optional[str]:
        """Return a usable installation token for *app_id*, or None.

        None means the tenant has no credential or installation yet, its
        private key could not be decrypted, or GitHub refused the
        exchange. Callers decide whether that fails their request.
        """
        token = await self._usable_cached(app_id)
        if token is not None:
            return token

        async with self._refresh_locks.hold(app_id):
            # Another request may have refreshed while we waited.
            token = await self._usable_cached(app_id)
            if token is not None:
                return token
            return await self._refresh(app_id)

    async def invalidate(self, app_id: str) -> None:
        await self._vault.drop_cached_token(app_id)

    async def _usable_cached(self, app_id: str) -> Optional[str]:
        cached = await self._vault.get_cached_token(app_id)
        if cached is None:
            logger.debug("No cached installation token for app %s", app_id)
            return None
        if cached.is_usable(self._clock(), self._refresh_margin):
            logger.debug("Using cached installation token for app %s", app_id)
            return cached.token.get_secret_value()
        logger.info(
            "Cached installation token for app %s expires in %ds; refreshing",
            app_id, int(cached.remaining(self._clock()).total_seconds()),
        )
        return None

    async def _refresh(self, app_id: str) -> Optional[str]:
        credential = await self._vault.get(app_id)
        if credential is None or not credential.installation_id:
            logger.warning(
                "Cannot mint token for app %s (has_config=%s, has_installation=%s)",
                app_id, credential is not None,
                bool(credential and credential.installation_id),
            )
            return None

        secrets = await self._vault.get_decrypted_secrets(app_id)
        if secrets is None:
            logger.warning("Cannot mint token for app %s: private key unavailable", app_id)
            return None

        try:
            issued = await self._github.exchange_installation_token(
                app_id,
                secrets.private_key.get_secret_value(),
                credential.installation_id,
            )
        except TokenExchangeFailure:
            return None

        await self._vault.cache_token(app_id, issued.token, issued.expires_at)
        return issued.token
