"""Setup endpoints: GitHub App manifest callback and deployment API key.

``GET /gh-setup/callback`` is where GitHub redirects after the operator
creates an app from a manifest. The one-time ``code`` is exchanged for
the app's id, private key and webhook secret, which are encrypted and
stored as a new tenant.

``POST /claude-setup`` stores the deployment-wide Anthropic API key that
the processing unit needs for every issue.
"""

import logging

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from issuebridge.core.context import AppContext, get_context
from issuebridge.core.limiter import limiter, setup_limit
from issuebridge.db.models import utcnow
from issuebridge.setup.schemas import (
    ClaudeSetupRequest,
    ClaudeSetupResponse,
    ManifestConversionResponse,
)
from issuebridge.vault.schemas import OwnerInfo, TenantCredential

logger = logging.getLogger(__name__)

router = APIRouter(tags=["setup"])

DEFAULT_PERMISSIONS = {
    "contents": "read",
    "metadata": "read",
    "pull_requests": "write",
    "issues": "write",
}
DEFAULT_EVENTS = ["issues"]


@router.get("/gh-setup/callback", response_model=ManifestConversionResponse)
@limiter.limit(setup_limit)
async def manifest_callback(
    request: Request,
    code: str = Query(..., min_length=1),
    ctx: AppContext = Depends(get_context),
) -> ManifestConversionResponse:
    """Exchange a manifest code for app credentials and store them."""
    try:
        app_data = await ctx.github.convert_manifest(code)
    except httpx.HTTPStatusError as exc:
        logger.error("Manifest conversion rejected: %d", exc.response.status_code)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="GitHub rejected the manifest code",
        ) from exc
    except httpx.HTTPError as exc:
        logger.error("Manifest conversion failed: %s", exc.__class__.__name__)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Could not reach GitHub",
        ) from exc

    try:
        app_id = str(app_data["id"])
        pem = app_data["pem"]
        webhook_secret = app_data["webhook_secret"]
    except (KeyError, TypeError) as exc:
        logger.error("Manifest conversion response is missing credentials")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="GitHub returned incomplete app credentials",
        ) from exc

    owner_login = (app_data.get("owner") or {}).get("login") or "unknown"
    logger.info(
        "App credentials received (app_id=%s, name=%s, owner=%s)",
        app_id, app_data.get("name"), owner_login,
    )

    credential = TenantCredential(
        app_id=app_id,
        encrypted_private_key=ctx.crypto.encrypt(pem),
        encrypted_webhook_secret=ctx.crypto.encrypt(webhook_secret),
        # Type and id are filled in by the installation webhook.
        owner=OwnerInfo(login=owner_login),
        permissions=dict(DEFAULT_PERMISSIONS),
        events=list(DEFAULT_EVENTS),
        created_at=utcnow(),
    )
    await ctx.vault.store(credential)

    return ManifestConversionResponse(
        app_id=app_id,
        name=app_data.get("name"),
        html_url=app_data.get("html_url"),
        owner=owner_login,
    )


@router.post("/claude-setup", response_model=ClaudeSetupResponse)
@limiter.limit(setup_limit)
async def claude_setup(
    request: Request,
    body: ClaudeSetupRequest,
    ctx: AppContext = Depends(get_context),
) -> ClaudeSetupResponse:
    """Encrypt and store the deployment's Anthropic API key."""
    setup_at = utcnow()
    encrypted = ctx.crypto.encrypt(body.anthropic_api_key.get_secret_value())
    await ctx.vault.store_deployment_secret(encrypted, setup_at)
    return ClaudeSetupResponse(setup_at=setup_at)
