"""GitHub webhook and tenant status endpoints.

The webhook endpoint is public (GitHub cannot authenticate any other
way) but every non-ping delivery must carry a valid X-Hub-Signature-256
for the tenant it claims to be addressed to.
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from fastapi.responses import JSONResponse

from issuebridge.core.context import AppContext, get_context
from issuebridge.core.errors import UnknownTenant
from issuebridge.core.limiter import limiter, webhook_limit
from issuebridge.github.routing import EventRouter
from issuebridge.github.schemas import GitHubStatusResponse, WebhookResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["github"])


@router.post("/webhooks/github", response_model=WebhookResponse)
@limiter.limit(webhook_limit)
async def handle_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    ctx: AppContext = Depends(get_context),
) -> JSONResponse:
    """Authenticate a GitHub delivery and route it to its tenant.

    Anything slow (issue processing, notifications) is scheduled as a
    background task so the response goes back well inside GitHub's
    delivery timeout.
    """
    body = await request.body()
    outcome = await EventRouter(ctx).handle(body, request.headers)

    if outcome.follow_up is not None:
        background_tasks.add_task(outcome.follow_up)

    return JSONResponse(
        status_code=outcome.status_code,
        content=outcome.body.model_dump(exclude_none=True),
    )


@router.get("/gh-status", response_model=GitHubStatusResponse)
async def github_status(
    app_id: str = Query(..., min_length=1),
    ctx: AppContext = Depends(get_context),
) -> GitHubStatusResponse:
    """Summarise a tenant's configuration without exposing any secret."""
    credential = await ctx.vault.get(app_id)
    if credential is None:
        raise UnknownTenant()

    secrets = await ctx.vault.get_decrypted_secrets(app_id)
    stats = await ctx.vault.get_webhook_stats(app_id)

    return GitHubStatusResponse(
        app_id=credential.app_id,
        owner=credential.owner,
        repositories=credential.repositories,
        permissions=credential.permissions,
        events=credential.events,
        created_at=credential.created_at,
        last_webhook_at=stats.last_webhook_at,
        webhook_count=stats.total_webhooks,
        installation_id=credential.installation_id,
        has_credentials=secrets is not None,
    )
