"""CredentialVault: partitioned, encrypted secret storage.

The vault is the only component that touches the credential tables.
Every public method names a partition (a GitHub App id, or the fixed
deployment partition) and runs entirely inside that partition's lock:

    lock(partition) -> open session -> read -> modify -> commit -> unlock

so two webhooks for the same tenant can never interleave a
read-modify-write on its repository list or webhook counter, while
different tenants proceed in parallel.

Secrets are stored as ``CryptoBox`` blobs. Plaintext leaves the vault
only through ``load_secrets`` / ``load_webhook_secret`` /
``get_decrypted_secrets`` /
``get_decrypted_deployment_secret`` and is never logged; log lines carry
presence booleans and non-secret identifiers only.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Callable, Optional

from pydantic import SecretStr
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from issuebridge.core.errors import DecryptionError, UnknownTenant
from issuebridge.crypto.box import CryptoBox
from issuebridge.db.models import (
    DeploymentSecret,
    GitHubAppConfig,
    InstallationTokenCache,
    as_utc,
    utcnow,
)
from issuebridge.vault.partitions import PartitionRegistry
from issuebridge.vault.schemas import (
    DEPLOYMENT_PARTITION,
    CachedToken,
    DecryptedSecrets,
    InstallationStats,
    OwnerInfo,
    RepositoryRef,
    TenantCredential,
    WebhookStats,
)

logger = logging.getLogger(__name__)


class CredentialVault:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        crypto: CryptoBox,
        partitions: Optional[PartitionRegistry] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._crypto = crypto
        self._partitions = partitions or PartitionRegistry()
        self._clock = clock

    @property
    def crypto(self) -> CryptoBox:
        return self._crypto

    @asynccontextmanager
    async def _partition(self, key: str) -> AsyncIterator[AsyncSession]:
        async with self._partitions.hold(key):
            async with self._session_factory() as session:
                yield session

    # ------------------------------------------------------------------
    # Tenant credential
    # ------------------------------------------------------------------

    async def store(self, credential: TenantCredential) -> None:
        """Full upsert of the tenant's row. Idempotent."""
        async with self._partition(credential.app_id) as session:
            row = await session.get(GitHubAppConfig, credential.app_id)
            if row is None:
                row = GitHubAppConfig(app_id=credential.app_id)
                session.add(row)
            _apply_credential(row, credential)
            await session.commit()

        logger.info(
            "Stored app config for app %s (%d repositories, owner=%s)",
            credential.app_id,
            len(credential.repositories),
            credential.owner.login,
        )

    async def get(self, app_id: str) -> Optional[TenantCredential]:
        async with self._partition(app_id) as session:
            row = await session.get(GitHubAppConfig, app_id)
            return _to_credential(row) if row else None

    async def load_secrets(self, app_id: str) -> DecryptedSecrets:
        """Decrypt the tenant's private key and webhook secret.

        Raises:
            UnknownTenant: the partition has never been initialised.
            DecryptionError: a stored blob failed authentication.
        """
        async with self._partition(app_id) as session:
            row = await session.get(GitHubAppConfig, app_id)
            if row is None:
                raise UnknownTenant()
            blobs = (row.encrypted_private_key, row.encrypted_webhook_secret)

        private_key = self._crypto.decrypt(blobs[0])
        webhook_secret = self._crypto.decrypt(blobs[1])
        return DecryptedSecrets(private_key=private_key, webhook_secret=webhook_secret)

    async def load_webhook_secret(self, app_id: str) -> SecretStr:
        """Decrypt only the webhook secret; the private key blob is left sealed.

        Raises the same errors as ``load_secrets``.
        """
        async with self._partition(app_id) as session:
            row = await session.get(GitHubAppConfig, app_id)
            if row is None:
                raise UnknownTenant()
            blob = row.encrypted_webhook_secret

        return SecretStr(self._crypto.decrypt(blob))

    async def get_decrypted_secrets(self, app_id: str) -> Optional[DecryptedSecrets]:
        """Like ``load_secrets`` but returns None instead of raising."""
        try:
            return await self.load_secrets(app_id)
        except UnknownTenant:
            logger.info("No credentials stored for app %s", app_id)
            return None
        except DecryptionError as exc:
            logger.error("Failed to decrypt credentials for app %s: %s", app_id, exc)
            return None
        except SQLAlchemyError as exc:
            logger.error(
                "Storage error reading credentials for app %s: %s",
                app_id, exc.__class__.__name__,
            )
            return None

    async def update_installation(
        self,
        app_id: str,
        installation_id: str,
        repositories: list[RepositoryRef],
        owner: Optional[OwnerInfo] = None,
    ) -> bool:
        """Merge installation details. No-op (returns False) without a credential.

        A token cached for a different installation is dropped in the same
        transaction.
        """
        async with self._partition(app_id) as session:
            row = await session.get(GitHubAppConfig, app_id)
            if row is None:
                logger.info("Ignoring installation update for unconfigured app %s", app_id)
                return False
            if row.installation_id != str(installation_id):
                await session.execute(
                    delete(InstallationTokenCache).where(InstallationTokenCache.app_id == app_id)
                )
            row.installation_id = str(installation_id)
            row.repositories = _dedupe([r.model_dump() for r in repositories])
            if owner is not None:
                row.owner_login = owner.login
                row.owner_type = owner.type
                row.owner_id = owner.id
            await session.commit()

        logger.info(
            "Updated installation %s for app %s (%d repositories)",
            installation_id, app_id, len(repositories),
        )
        return True

    async def clear_installation(self, app_id: str) -> bool:
        """Forget installation id, repositories and cached token after uninstall."""
        async with self._partition(app_id) as session:
            row = await session.get(GitHubAppConfig, app_id)
            if row is None:
                return False
            row.installation_id = None
            row.repositories = []
            await session.execute(
                delete(InstallationTokenCache).where(InstallationTokenCache.app_id == app_id)
            )
            await session.commit()

        logger.info("Cleared installation for app %s", app_id)
        return True

    async def add_repository(self, app_id: str, repo: RepositoryRef) -> bool:
        """Append *repo* unless its id is already present. Returns True if added."""
        async with self._partition(app_id) as session:
            row = await session.get(GitHubAppConfig, app_id)
            if row is None:
                return False
            if any(r["id"] == repo.id for r in row.repositories):
                return False
            row.repositories = [*row.repositories, repo.model_dump()]
            await session.commit()

        logger.info("Added repository %s to app %s", repo.full_name, app_id)
        return True

    async def remove_repository(self, app_id: str, repo_id: int) -> bool:
        """Drop the repository with *repo_id*. Returns True if one was removed."""
        async with self._partition(app_id) as session:
            row = await session.get(GitHubAppConfig, app_id)
            if row is None:
                return False
            remaining = [r for r in row.repositories if r["id"] != repo_id]
            if len(remaining) == len(row.repositories):
                return False
            row.repositories = remaining
            await session.commit()

        logger.info("Removed repository %d from app %s", repo_id, app_id)
        return True

    async def record_webhook_delivery(self, app_id: str) -> None:
        async with self._partition(app_id) as session:
            row = await session.get(GitHubAppConfig, app_id)
            if row is None:
                return
            row.webhook_count = (row.webhook_count or 0) + 1
            row.last_webhook_at = self._clock()
            await session.commit()

    async def rotate_secrets(self, app_id: str) -> bool:
        """Re-encrypt blobs still sealed with a retired key. Returns True if rewritten."""
        async with self._partition(app_id) as session:
            row = await session.get(GitHubAppConfig, app_id)
            if row is None:
                return False
            rotated = False
            for attr in ("encrypted_private_key", "encrypted_webhook_secret"):
                blob = getattr(row, attr)
                if self._crypto.needs_rotation(blob):
                    setattr(row, attr, self._crypto.encrypt(self._crypto.decrypt(blob)))
                    rotated = True
            if rotated:
                await session.commit()

        if rotated:
            logger.info("Re-encrypted secrets for app %s with the primary key", app_id)
        return rotated

    async def list_app_ids(self) -> list[str]:
        async with self._session_factory() as session:
            result = await session.scalars(select(GitHubAppConfig.app_id))
            return list(result)

    async def rotate_all(self) -> int:
        """Re-seal every tenant's blobs and the deployment secret.

        A blob no configured key can open is logged and skipped so one
        corrupt tenant does not block the rest. Returns the number of
        partitions rewritten.
        """
        rewritten = 0
        for app_id in await self.list_app_ids():
            try:
                if await self.rotate_secrets(app_id):
                    rewritten += 1
            except DecryptionError as exc:
                logger.error("Cannot rotate secrets for app %s: %s", app_id, exc)
        try:
            if await self.rotate_deployment_secret():
                rewritten += 1
        except DecryptionError as exc:
            logger.error("Cannot rotate deployment secret: %s", exc)

        logger.info("Key rotation finished: %d partition(s) re-encrypted", rewritten)
        return rewritten

    # ------------------------------------------------------------------
    # Installation token cache (lives in the tenant's partition)
    # ------------------------------------------------------------------

    async def get_cached_token(self, app_id: str) -> Optional[CachedToken]:
        async with self._partition(app_id) as session:
            row = await session.get(InstallationTokenCache, app_id)
            if row is None:
                return None
            return CachedToken(
                token=row.token,
                expires_at=as_utc(row.expires_at),
                issued_at=as_utc(row.issued_at),
            )

    async def cache_token(self, app_id: str, token: str, expires_at: datetime) -> int:
        """Purge expired tokens, then store *token*. Returns the purge count."""
        async with self._partition(app_id) as session:
            now = self._clock()
            purged = await self._purge_expired(session, app_id, now)
            row = await session.get(InstallationTokenCache, app_id)
            if row is None:
                row = InstallationTokenCache(app_id=app_id)
                session.add(row)
            row.token = token
            row.expires_at = as_utc(expires_at)
            row.issued_at = now
            await session.commit()

        logger.info(
            "Cached installation token for app %s (expires %s, purged %d)",
            app_id, as_utc(expires_at).isoformat(), purged,
        )
        return purged

    async def drop_cached_token(self, app_id: str) -> None:
        async with self._partition(app_id) as session:
            await session.execute(
                delete(InstallationTokenCache).where(InstallationTokenCache.app_id == app_id)
            )
            await session.commit()

    async def cleanup_expired_tokens(self, app_id: str) -> int:
        async with self._partition(app_id) as session:
            purged = await self._purge_expired(session, app_id, self._clock())
            await session.commit()

        logger.info("Cleaned up %d expired token(s) for app %s", purged, app_id)
        return purged

    @staticmethod
    async def _purge_expired(session: AsyncSession, app_id: str, now: datetime) -> int:
        row = await session.get(InstallationTokenCache, app_id)
        if row is None or as_utc(row.expires_at) >= now:
            return 0
        await session.delete(row)
        await session.flush()
        return 1

    # ------------------------------------------------------------------
    # Deployment secret (singleton partition)
    # ------------------------------------------------------------------

    async def store_deployment_secret(self, encrypted_key: str, setup_at: datetime) -> None:
        async with self._partition(DEPLOYMENT_PARTITION) as session:
            row = await session.get(DeploymentSecret, DEPLOYMENT_PARTITION)
            if row is None:
                row = DeploymentSecret(partition_key=DEPLOYMENT_PARTITION)
                session.add(row)
            row.encrypted_api_key = encrypted_key
            row.setup_at = as_utc(setup_at)
            await session.commit()

        logger.info("Stored deployment secret (setup_at=%s)", as_utc(setup_at).isoformat())

    async def get_decrypted_deployment_secret(self) -> Optional[str]:
        try:
            async with self._partition(DEPLOYMENT_PARTITION) as session:
                row = await session.get(DeploymentSecret, DEPLOYMENT_PARTITION)
                if row is None:
                    logger.info("No deployment secret configured")
                    return None
                blob = row.encrypted_api_key
            return self._crypto.decrypt(blob)
        except DecryptionError as exc:
            logger.error("Failed to decrypt deployment secret: %s", exc)
            return None
        except SQLAlchemyError as exc:
            logger.error("Storage error reading deployment secret: %s", exc.__class__.__name__)
            return None

    async def rotate_deployment_secret(self) -> bool:
        """Re-encrypt the deployment secret if a retired key sealed it."""
        async with self._partition(DEPLOYMENT_PARTITION) as session:
            row = await session.get(DeploymentSecret, DEPLOYMENT_PARTITION)
            if row is None or not self._crypto.needs_rotation(row.encrypted_api_key):
                return False
            row.encrypted_api_key = self._crypto.encrypt(self._crypto.decrypt(row.encrypted_api_key))
            await session.commit()

        logger.info("Re-encrypted deployment secret with the primary key")
        return True

    async def has_deployment_secret(self) -> bool:
        async with self._partition(DEPLOYMENT_PARTITION) as session:
            count = await session.scalar(
                select(func.count()).select_from(DeploymentSecret)
            )
            return bool(count)

    # ------------------------------------------------------------------
    # Read-only summaries
    # ------------------------------------------------------------------

    async def get_webhook_stats(self, app_id: str) -> WebhookStats:
        credential = await self.get(app_id)
        if credential is None:
            return WebhookStats()
        return WebhookStats(
            total_webhooks=credential.webhook_count,
            last_webhook_at=credential.last_webhook_at,
        )

    async def get_installation_stats(self, app_id: str) -> InstallationStats:
        credential = await self.get(app_id)
        has_secret = await self.has_deployment_secret()
        if credential is None:
            return InstallationStats(has_deployment_secret=has_secret)
        return InstallationStats(
            app_id=credential.app_id,
            repository_count=len(credential.repositories),
            has_deployment_secret=has_secret,
            installation_id=credential.installation_id,
            created_at=credential.created_at,
        )


def _dedupe(repositories: list[dict]) -> list[dict]:
    seen: set[int] = set()
    unique = []
    for repo in repositories:
        if repo["id"] in seen:
            continue
        seen.add(repo["id"])
        unique.append(repo)
    return unique


def _apply_credential(row: GitHubAppConfig, credential: TenantCredential) -> None:
    row.encrypted_private_key = credential.encrypted_private_key
    row.encrypted_webhook_secret = credential.encrypted_webhook_secret
    row.installation_id = credential.installation_id
    row.owner_login = credential.owner.login
    row.owner_type = credential.owner.type
    row.owner_id = credential.owner.id
    row.permissions = dict(credential.permissions)
    row.events = list(credential.events)
    row.repositories = _dedupe([r.model_dump() for r in credential.repositories])
    row.created_at = as_utc(credential.created_at)
    row.last_webhook_at = as_utc(credential.last_webhook_at)
    row.webhook_count = credential.webhook_count


def _to_credential(row: GitHubAppConfig) -> TenantCredential:
    return TenantCredential(
        app_id=row.app_id,
        encrypted_private_key=row.encrypted_private_key,
        encrypted_webhook_secret=row.encrypted_webhook_secret,
        installation_id=row.installation_id,
        owner=OwnerInfo(login=row.owner_login, type=row.owner_type, id=row.owner_id),
        permissions=dict(row.permissions or {}),
        events=list(row.events or []),
        repositories=[RepositoryRef(**r) for r in row.repositories or []],
        created_at=as_utc(row.created_at),
        last_webhook_at=as_utc(row.last_webhook_at),
        webhook_count=row.webhook_count or 0,
    )
