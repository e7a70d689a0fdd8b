"""Pydantic schemas for GitHub integration endpoints."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from issuebridge.vault.schemas import OwnerInfo, RepositoryRef


class WebhookResponse(BaseModel):
    """Acknowledgement response for webhook events."""

    received: bool = True
    event: str
    action: str = ""
    message: str = ""
    zen: Optional[str] = None


class GitHubStatusResponse(BaseModel):
    """Safe view of a tenant's configuration. Never carries secrets."""

    app_id: str
    owner: OwnerInfo
    repositories: list[RepositoryRef]
    permissions: dict[str, str]
    events: list[str]
    created_at: datetime
    last_webhook_at: Optional[datetime] = None
    webhook_count: int
    installation_id: Optional[str] = None
    has_credentials: bool
