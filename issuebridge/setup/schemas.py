"""Pydantic schemas for the setup endpoints."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, SecretStr, field_validator

ANTHROPIC_KEY_PREFIX = "sk-ant-"


class ClaudeSetupRequest(BaseModel):
    anthropic_api_key: SecretStr

    @field_validator("anthropic_api_key")
    @classmethod
    def check_prefix(cls, v: SecretStr) -> SecretStr:
        if not v.get_secret_value().startswith(ANTHROPIC_KEY_PREFIX):
            raise ValueError(f"API key must start with '{ANTHROPIC_KEY_PREFIX}'")
        return v


class ClaudeSetupResponse(BaseModel):
    configured: bool = True
    setup_at: datetime
    message: str = "Anthropic API key stored"


class ManifestConversionResponse(BaseModel):
    """Result of turning a manifest code into stored app credentials."""

    app_id: str
    name: Optional[str] = None
    html_url: Optional[str] = None
    owner: str
    message: str = "GitHub App created; install it on your repositories next"
