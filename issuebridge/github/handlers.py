"""Per-event webhook handlers.

Each handler receives an already-authenticated payload and the tenant's
app id, updates the vault, and returns a ``WebhookOutcome``. Work that
can outlast GitHub's ten-second delivery timeout (anything that talks to
the processing unit) is returned as ``follow_up`` and run by the router
after the response is sent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable, Optional

import httpx
from pydantic import ValidationError

from issuebridge.core.context import AppContext
from issuebridge.dispatch.processor import NOTIFY_ROUTE, PROCESS_ISSUE_ROUTE
from issuebridge.dispatch.schemas import DispatchRequest, IssueContext, ProcessingResult
from issuebridge.github.schemas import WebhookResponse
from issuebridge.github.webhooks import parse_installation_event, parse_repository_changes

logger = logging.getLogger(__name__)

ACK_COMMENT = (
    "🤖 **Claude Code Assistant**\n\n"
    "I've received this issue and I'm analyzing it now. "
    "I'll start working on a solution shortly!"
)
FAILURE_COMMENT = (
    "❌ I encountered an error while setting up to work on this issue: {reason}\n\n"
    "I'll need human assistance to resolve this."
)
MISSING_KEY_REASON = "Claude API key not configured. Please visit /claude-setup first."


@dataclass
class WebhookOutcome:
    status_code: int
    body: WebhookResponse
    follow_up: Optional[Callable[[], Awaitable[Any]]] = None


class WebhookHandlers:
    def __init__(self, ctx: AppContext) -> None:
        self._ctx = ctx

    # ------------------------------------------------------------------
    # installation
    # ------------------------------------------------------------------

    async def installation(self, app_id: str, payload: dict) -> WebhookOutcome:
        event = parse_installation_event(payload)
        action = event["action"]

        if action == "created" and event["installation_id"]:
            await self._ctx.vault.update_installation(
                app_id,
                event["installation_id"],
                event["repositories"],
                owner=event["owner"],
            )
            message = "Installation recorded"
        elif action == "deleted":
            await self._ctx.vault.clear_installation(app_id)
            message = "Installation removed"
        else:
            logger.info("Unhandled installation action %r for app %s", action, app_id)
            message = "Installation event acknowledged"

        return WebhookOutcome(
            200, WebhookResponse(event="installation", action=action, message=message)
        )

    # ------------------------------------------------------------------
    # installation_repositories
    # ------------------------------------------------------------------

    async def installation_repositories(self, app_id: str, payload: dict) -> WebhookOutcome:
        changes = parse_repository_changes(payload)
        action = changes["action"]

        if action == "added":
            added = 0
            for repo in changes["added"]:
                if await self._ctx.vault.add_repository(app_id, repo):
                    added += 1
            message = f"Added {added} repositories"
        elif action == "removed":
            removed = 0
            for repo_id in changes["removed"]:
                if await self._ctx.vault.remove_repository(app_id, repo_id):
                    removed += 1
            message = f"Removed {removed} repositories"
        else:
            message = "Repository event acknowledged"

        logger.info("installation_repositories %s for app %s: %s", action, app_id, message)
        return WebhookOutcome(
            200,
            WebhookResponse(event="installation_repositories", action=action, message=message),
        )

    # ------------------------------------------------------------------
    # issues
    # ------------------------------------------------------------------

    async def issues(self, app_id: str, payload: dict) -> WebhookOutcome:
        action = payload.get("action", "")
        issue = payload.get("issue") or {}
        repository = payload.get("repository") or {}

        logger.info(
            "Issue event %r for %s#%s (app %s)",
            action, repository.get("full_name"), issue.get("number"), app_id,
        )

        if not issue or not repository:
            return WebhookOutcome(
                200,
                WebhookResponse(event="issues", action=action, message="Missing issue data"),
            )

        if action == "opened":
            return WebhookOutcome(
                200,
                WebhookResponse(event="issues", action=action, message="Issue queued for processing"),
                follow_up=partial(self.process_new_issue, app_id, issue, repository),
            )

        return WebhookOutcome(
            200,
            WebhookResponse(event="issues", action=action, message="Issue event forwarded"),
            follow_up=partial(self.notify_issue_event, action, issue, repository),
        )

    async def process_new_issue(
        self,
        app_id: str,
        issue: dict,
        repository: dict,
    ) -> Optional[ProcessingResult]:
        """Acknowledge the issue, hand it to the processing unit, report failures."""
        owner = (repository.get("owner") or {}).get("login", "")
        repo_name = repository.get("name", "")
        number = issue.get("number")

        token = await self._ctx.tokens.get_installation_token(app_id)
        if token is None:
            logger.error(
                "No installation token for app %s; cannot process %s#%s",
                app_id, repository.get("full_name"), number,
            )
            return None

        await self._comment(token, owner, repo_name, number, ACK_COMMENT)

        api_key = await self._ctx.vault.get_decrypted_deployment_secret()
        if not api_key:
            logger.error("Deployment secret missing; cannot process issue %s", number)
            await self._comment(
                token, owner, repo_name, number,
                FAILURE_COMMENT.format(reason=MISSING_KEY_REASON),
            )
            return None

        try:
            context = IssueContext.from_webhook(issue, repository)
        except (KeyError, ValidationError) as exc:
            logger.error("Issue payload for app %s is incomplete: %s", app_id, exc.__class__.__name__)
            return None

        response = await self._ctx.gateway.dispatch(
            self._ctx.processor,
            DispatchRequest(path=PROCESS_ISSUE_ROUTE, payload=context.to_payload(token, api_key)),
            name=f"claude-issue-{context.issue_id}",
            route=PROCESS_ISSUE_ROUTE,
            timeout=self._ctx.settings.dispatch_timeout_seconds,
        )

        if not response.ok:
            await self._comment(
                token, owner, repo_name, number,
                FAILURE_COMMENT.format(reason=response.body.get("message", "processing failed")),
            )
            return None

        try:
            result = ProcessingResult.model_validate(response.body)
        except ValidationError:
            logger.error("Processing unit returned an unexpected body for issue %s", number)
            return None

        if result.success:
            logger.info("Processing completed for issue %s: %s", number, result.message)
        else:
            logger.warning("Processing failed for issue %s: %s", number, result.error)
            await self._comment(
                token, owner, repo_name, number,
                FAILURE_COMMENT.format(reason=result.error or result.message),
            )
        return result

    async def notify_issue_event(self, action: str, issue: dict, repository: dict) -> None:
        """Forward a lightweight summary of a non-opening issue event."""
        payload = {
            "event": "issues",
            "action": action,
            "repository": repository.get("full_name"),
            "issue_number": issue.get("number"),
            "issue_title": issue.get("title"),
            "issue_author": (issue.get("user") or {}).get("login"),
        }
        await self._ctx.gateway.dispatch(
            self._ctx.processor,
            DispatchRequest(path=NOTIFY_ROUTE, payload=payload),
            name=f"repo-{repository.get('id')}",
            route=NOTIFY_ROUTE,
            timeout=self._ctx.settings.dispatch_timeout_seconds,
        )

    async def _comment(self, token: str, owner: str, repo: str, number: Any, body: str) -> bool:
        if not owner or not repo or number is None:
            return False
        try:
            await self._ctx.github.create_issue_comment(token, owner, repo, int(number), body)
            return True
        except httpx.HTTPError as exc:
            logger.error(
                "Failed to comment on %s/%s#%s: %s",
                owner, repo, number, exc.__class__.__name__,
            )
            return False
