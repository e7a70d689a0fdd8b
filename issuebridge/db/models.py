"""SQLAlchemy 2.0 declarative models for the credential store.

Every table is keyed by a partition key: ``app_id`` for per-tenant rows,
a fixed deployment key for the singleton deployment secret. One row per
partition; the vault upserts rather than inserting duplicates.

Uses dialect-agnostic types (JSON, DateTime) so models work with both
PostgreSQL (production) and SQLite (tests). SQLite drops tzinfo on the
way back, so readers normalise through ``as_utc``.
"""

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import BigInteger, DateTime, ForeignKey, Integer, JSON, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class GitHubAppConfig(Base):
    """One configured GitHub App (a tenant)."""

    __tablename__ = "github_app_configs"

    app_id: Mapped[str] = mapped_column(Text, primary_key=True)
    encrypted_private_key: Mapped[str] = mapped_column(Text, nullable=False)
    encrypted_webhook_secret: Mapped[str] = mapped_column(Text, nullable=False)
    installation_id: Mapped[Optional[str]] = mapped_column(Text)
    owner_login: Mapped[str] = mapped_column(Text, nullable=False)
    owner_type: Mapped[str] = mapped_column(Text, nullable=False, default="User")
    owner_id: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    permissions: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)
    events: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    # Ordered list of {"id", "name", "full_name", "private"} dicts, unique by id.
    repositories: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    last_webhook_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    webhook_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class InstallationTokenCache(Base):
    """The cached installation access token for a tenant (at most one)."""

    __tablename__ = "installation_tokens"

    app_id: Mapped[str] = mapped_column(
        ForeignKey("github_app_configs.app_id", ondelete="CASCADE"), primary_key=True
    )
    token: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    issued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class DeploymentSecret(Base):
    """The processing unit's own credential to the AI provider."""

    __tablename__ = "deployment_secrets"

    partition_key: Mapped[str] = mapped_column(Text, primary_key=True)
    encrypted_api_key: Mapped[str] = mapped_column(Text, nullable=False)
    setup_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
