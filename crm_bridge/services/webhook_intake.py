from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any, Iterable

from crm_bridge.schemas.webhook import WebhookDecision
from crm_bridge.services.contact_extractor import (
    first_non_empty,
    resolve_account_id,
    resolve_conversation_id,
)

SUPPORTED_EVENTS = {"message_created", "conversation_status_changed"}
RESOLVED_STATUS = "resolved"

# message_created carries the message status at the top level, so the
# conversation status is checked first when an event name is present.
EVENT_STATUS_PATHS = ("conversation.status", "status")
PLAIN_STATUS_PATHS = ("status", "conversation.status")


class WebhookFormatError(ValueError):
    pass


def signature_for(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: str | None) -> bool:
    if not signature:
        return False
    cleaned = signature.strip().removeprefix("sha256=")
    return hmac.compare_digest(signature_for(secret, body), cleaned)


def _unwrap(value: Any) -> Any:
    if isinstance(value, list):
        if not value:
            return None
        first = value[0]
        return first.get("body") if isinstance(first, dict) else None
    if isinstance(value, dict):
        nested = value.get("body")
        return nested if isinstance(nested, dict) else value
    return None


def unwrap_webhook(body: bytes) -> dict[str, Any]:
    """Return the event object from any of the accepted envelope shapes.

    Accepted: ``[{"body": {...}}]``, ``{"body": {...}}``, a bare object, or any
    of those encoded once more as a JSON string.
    """
    try:
        decoded: Any = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise WebhookFormatError("invalid_json") from exc

    if isinstance(decoded, str):
        try:
            decoded = json.loads(decoded)
        except json.JSONDecodeError as exc:
            raise WebhookFormatError("invalid_json") from exc

    payload = _unwrap(decoded)
    if not isinstance(payload, dict):
        raise WebhookFormatError("unsupported_format")
    return payload


def evaluate_webhook(
    payload: dict[str, Any],
    ignored_account_ids: Iterable[str] = (),
) -> WebhookDecision:
    conversation_id = resolve_conversation_id(payload) or None
    account_id = resolve_account_id(payload)
    ignored = {str(item).strip() for item in ignored_account_ids if str(item).strip()}

    if account_id and account_id in ignored:
        return WebhookDecision(
            accepted=False, reason="account_ignored", conversation_id=conversation_id
        )

    event = str(payload.get("event") or "").strip()
    if event and event not in SUPPORTED_EVENTS:
        return WebhookDecision(
            accepted=False, reason="event_not_supported", conversation_id=conversation_id
        )

    status_paths = EVENT_STATUS_PATHS if event else PLAIN_STATUS_PATHS
    status = first_non_empty(payload, status_paths).lower()
    if status != RESOLVED_STATUS:
        return WebhookDecision(
            accepted=False, reason="conversation_not_resolved", conversation_id=conversation_id
        )

    return WebhookDecision(accepted=True, conversation_id=conversation_id)
