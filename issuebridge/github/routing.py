"""Webhook pipeline: authenticate a delivery, then route it to its handler.

``EventRouter.handle`` takes the raw body and the request headers and
either returns a ``WebhookOutcome`` or raises an ``IssueBridgeError``
subclass that the app's exception handler turns into a JSON error.

Order matters: headers, JSON, ping, tenant, secret, signature, delivery
counter, dispatch. The signature check always runs on the raw bytes and
always before any state is touched.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping, Optional

from issuebridge.core.context import AppContext
from issuebridge.core.errors import (
    DecryptionError,
    InvalidPayload,
    MissingHeaders,
    SignatureMismatch,
)
from issuebridge.github.handlers import WebhookHandlers, WebhookOutcome
from issuebridge.github.schemas import WebhookResponse
from issuebridge.github.webhooks import verify_webhook_signature

logger = logging.getLogger(__name__)

EVENT_HEADER = "X-GitHub-Event"
DELIVERY_HEADER = "X-GitHub-Delivery"
SIGNATURE_HEADER = "X-Hub-Signature-256"


class EventRouter:
    def __init__(self, ctx: AppContext, handlers: Optional[WebhookHandlers] = None) -> None:
        self._ctx = ctx
        self._handlers = handlers or WebhookHandlers(ctx)
        self._routes = {
            "installation": self._handlers.installation,
            "installation_repositories": self._handlers.installation_repositories,
            "issues": self._handlers.issues,
        }

    def resolve_tenant(self, payload: dict[str, Any], headers: Mapping[str, str]) -> Optional[str]:
        """Work out which GitHub App a delivery was addressed to.

        ``installation.app_id`` wins when present. Otherwise the trusted
        target-id header names the app, whether or not the payload carries
        an installation.
        """
        installation = payload.get("installation")
        if isinstance(installation, dict):
            app_id = installation.get("app_id")
            if app_id:
                return str(app_id)

        header_value = headers.get(self._ctx.settings.tenant_header)
        if header_value:
            return header_value.strip() or None
        return None

    async def handle(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookOutcome:
        event = headers.get(EVENT_HEADER)
        delivery_id = headers.get(DELIVERY_HEADER)
        signature = headers.get(SIGNATURE_HEADER)

        if not event or not delivery_id:
            raise MissingHeaders()
        if event != "ping" and not signature:
            raise MissingHeaders("Missing signature header")

        try:
            payload = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError) as exc:
            raise InvalidPayload() from exc
        if not isinstance(payload, dict):
            raise InvalidPayload()

        logger.info("Received GitHub webhook: event=%s delivery=%s", event, delivery_id)

        if event == "ping":
            return WebhookOutcome(
                200,
                WebhookResponse(
                    event="ping",
                    message="Webhook endpoint is active",
                    zen=payload.get("zen"),
                ),
            )

        app_id = self.resolve_tenant(payload, headers)
        if app_id is None:
            logger.warning("Could not determine tenant for delivery %s", delivery_id)
            raise InvalidPayload("Cannot determine tenant for webhook")

        try:
            webhook_secret = await self._ctx.vault.load_webhook_secret(app_id)
        except DecryptionError as exc:
            logger.error("Webhook secret for app %s could not be decrypted", app_id)
            raise DecryptionError("Webhook secret unavailable") from exc

        if not verify_webhook_signature(raw_body, signature, webhook_secret.get_secret_value()):
            logger.warning("Invalid webhook signature for app %s delivery %s", app_id, delivery_id)
            raise SignatureMismatch()

        await self._ctx.vault.record_webhook_delivery(app_id)
        return await self.route(event, app_id, payload)

    async def route(self, event: str, app_id: str, payload: dict[str, Any]) -> WebhookOutcome:
        handler = self._routes.get(event)
        if handler is None:
            logger.info("Ignoring unhandled event %s for app %s", event, app_id)
            return WebhookOutcome(
                200,
                WebhookResponse(
                    event=event,
                    action=payload.get("action", ""),
                    message=f"Event {event} acknowledged",
                ),
            )
        return await handler(app_id, payload)
