"""Pydantic schemas for the credential vault.

Plaintext secrets only ever live in ``DecryptedSecrets`` and are typed
as ``SecretStr`` so an accidental ``repr`` or log line prints ``**********``
instead of the value.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr

DEPLOYMENT_PARTITION = "claude-config"


class OwnerInfo(BaseModel):
    login: str
    type: str = "User"
    id: int = 0


class RepositoryRef(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    full_name: str
    private: bool = False


class TenantCredential(BaseModel):
    """Everything stored for one GitHub App. Secrets are ciphertext."""

    app_id: str
    encrypted_private_key: str = Field(repr=False)
    encrypted_webhook_secret: str = Field(repr=False)
    installation_id: Optional[str] = None
    owner: OwnerInfo
    permissions: dict[str, str] = Field(default_factory=dict)
    events: list[str] = Field(default_factory=list)
    repositories: list[RepositoryRef] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_webhook_at: Optional[datetime] = None
    webhook_count: int = 0


class DecryptedSecrets(BaseModel):
    private_key: SecretStr
    webhook_secret: SecretStr


class CachedToken(BaseModel):
    token: SecretStr
    expires_at: datetime
    issued_at: datetime

    def remaining(self, now: datetime) -> timedelta:
        return self.expires_at - now

    def is_usable(self, now: datetime, margin: timedelta) -> bool:
        return self.remaining(now) > margin


class WebhookStats(BaseModel):
    total_webhooks: int = 0
    last_webhook_at: Optional[datetime] = None


class InstallationStats(BaseModel):
    app_id: Optional[str] = None
    repository_count: int = 0
    has_deployment_secret: bool = False
    installation_id: Optional[str] = None
    created_at: Optional[datetime] = None
