"""GitHub webhook verification and payload parsing.

The webhook secret is per tenant and comes out of the vault; it must
never be logged or exposed.

Signature verification uses HMAC-SHA256 as specified by GitHub:
https://docs.github.com/en/webhooks/using-webhooks/validating-webhook-deliveries

Verification must run on the exact bytes received. Re-serialising a
parsed payload changes whitespace and key order and breaks the MAC.
"""

import hashlib
import hmac
from typing import Any, Optional

from issuebridge.vault.schemas import OwnerInfo, RepositoryRef

SIGNATURE_PREFIX = "sha256="


def verify_webhook_signature(
    payload_body: bytes,
    signature_header: Optional[str],
    secret: str,
) -> bool:
    """Verify that a webhook payload was signed with *secret*.

    Args:
        payload_body: Raw request body bytes.
        signature_header: Value of the X-Hub-Signature-256 header.
        secret: The tenant's decrypted webhook secret.

    Returns:
        True if the signature is valid, False otherwise.
    """
    if not secret:
        return False

    if not signature_header or not signature_header.startswith(SIGNATURE_PREFIX):
        return False

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        payload_body,
        hashlib.sha256,
    ).hexdigest()

    received_signature = signature_header[len(SIGNATURE_PREFIX):]

    # compare_digest is constant-time for equal lengths and rejects unequal
    # lengths without inspecting content. Non-ASCII input cannot match.
    try:
        received = received_signature.encode("ascii")
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(expected_signature.encode("ascii"), received)


def sign_payload(payload_body: bytes, secret: str) -> str:
    """Build the X-Hub-Signature-256 header value for *payload_body*."""
    digest = hmac.new(secret.encode("utf-8"), payload_body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def _repository_ref(raw: dict[str, Any]) -> RepositoryRef:
    return RepositoryRef(
        id=raw["id"],
        name=raw.get("name", ""),
        full_name=raw.get("full_name", ""),
        private=bool(raw.get("private", False)),
    )


def parse_installation_event(payload: dict) -> dict:
    """Extract relevant data from a GitHub App installation event.

    Returns a dict with action, installation_id, owner and repo list.
    """
    installation = payload.get("installation") or {}
    account = installation.get("account") or {}
    installation_id = installation.get("id")

    return {
        "action": payload.get("action", ""),
        "installation_id": str(installation_id) if installation_id is not None else None,
        "owner": OwnerInfo(
            login=account.get("login", "unknown"),
            type=account.get("type", "User"),
            id=account.get("id", 0),
        ),
        "repositories": [
            _repository_ref(r) for r in payload.get("repositories") or [] if "id" in r
        ],
    }


def parse_repository_changes(payload: dict) -> dict:
    """Extract the added/removed repositories from an installation_repositories event."""
    return {
        "action": payload.get("action", ""),
        "added": [
            _repository_ref(r) for r in payload.get("repositories_added") or [] if "id" in r
        ],
        "removed": [
            r["id"] for r in payload.get("repositories_removed") or [] if "id" in r
        ],
    }
