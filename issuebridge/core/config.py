from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _normalise_db_url(url: str) -> str:
    """Ensure the DATABASE_URL uses an async driver prefix.

    Managed Postgres providers emit plain ``postgresql://`` connection
    strings. SQLAlchemy's async engine requires ``postgresql+asyncpg://``.
    SQLite URLs are upgraded to ``sqlite+aiosqlite://`` the same way.
    """
    if url.startswith("postgresql://") or url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1).replace(
            "postgresql://", "postgresql+asyncpg://", 1
        )
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Built exactly once in ``create_app()`` and carried on the
    ``AppContext``; components receive it by reference and never read
    the environment themselves.

    Secret material
    ───────────────
    • ENCRYPTION_KEY            base64 of 32 random bytes (AES-256-GCM)
    • PREVIOUS_ENCRYPTION_KEYS  comma-separated retired keys, decrypt-only

    Generate a key with ``python -c "import os,base64;print(base64.b64encode(os.urandom(32)).decode())"``.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Storage
    database_url: str = "sqlite+aiosqlite:///./issuebridge.db"

    @field_validator("database_url", mode="before")
    @classmethod
    def normalise_database_url(cls, v: str) -> str:
        return _normalise_db_url(v)

    # At-rest encryption for tenant secrets and the deployment key.
    encryption_key: str = ""
    previous_encryption_keys: str = ""

    @property
    def retired_encryption_keys(self) -> list[str]:
        return _split_csv(self.previous_encryption_keys)

    # GitHub
    github_api_base: str = "https://api.github.com"
    github_user_agent: str = "issuebridge"
    github_api_timeout_seconds: float = 30.0
    # Header a trusted proxy (GitHub itself, in practice) sets to the app id
    # the webhook was addressed to. Only used when the payload lacks app_id.
    tenant_header: str = "X-GitHub-Hook-Installation-Target-Id"
    # Cached installation tokens are reused only while they have more than
    # this much lifetime left.
    token_refresh_margin_seconds: int = 300

    # Processing unit (the issue-solving agent)
    processing_unit_url: str = "http://localhost:8080"
    dispatch_timeout_seconds: float = 300.0

    # CORS origins, as a JSON list in the environment.
    cors_origins: list[str] = ["*"]

    # Rate limiting in SlowAPI format, e.g. "10/minute", "100/hour".
    webhook_rate_limit: str = "120/minute"
    setup_rate_limit: str = "10/minute"

    # Sentry; leave blank to disable error capture.
    sentry_dsn: str = ""

    # App
    debug: bool = True


def get_settings() -> Settings:
    return Settings()
