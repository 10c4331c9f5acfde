from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

from .models import SocialPlatform

logger = logging.getLogger(__name__)

SUBSCRIBE_MODE = "subscribe"

_OBJECT_PLATFORMS: dict[str, SocialPlatform] = {
    "page": "Facebook",
    "instagram": "Instagram",
}


class MalformedWebhookError(ValueError):
    """Raised when a webhook body is not an event envelope at all."""


@dataclass(frozen=True)
class InboundTextEvent:
    sender_id: str
    text: str
    platform: SocialPlatform
    sent_at: datetime | None


@dataclass
class WebhookBatch:
    events: list[InboundTextEvent] = field(default_factory=list)
    skipped: int = 0


@dataclass(frozen=True)
class WebhookSignatureVerification:
    verified: bool
    reason: str | None = None


def verify_subscription(
    *,
    mode: str | None,
    token: str | None,
    challenge: str | None,
    expected_token: str,
) -> str | None:
    """Return the challenge to echo, or None when the handshake must be refused."""
    if mode != SUBSCRIBE_MODE or challenge is None:
        return None
    if not token or not expected_token:
        return None
    if not hmac.compare_digest(token.encode("utf-8"), expected_token.encode("utf-8")):
        return None
    return challenge


def _normalize_header_value(headers: Mapping[str, str], key: str) -> str | None:
    value = headers.get(key)
    if value is None:
        lowered_key = key.lower()
        for header_key, header_value in headers.items():
            if header_key.lower() == lowered_key:
                value = header_value
                break
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


def verify_hub_signature(
    *,
    mode: str,
    body: bytes,
    headers: Mapping[str, str],
    app_secrets: list[str],
) -> WebhookSignatureVerification:
    if mode == "off":
        return WebhookSignatureVerification(verified=True)

    if not app_secrets:
        return WebhookSignatureVerification(verified=False, reason="app_secret_missing")

    provided = _normalize_header_value(headers, "X-Hub-Signature-256")
    if provided is None:
        return WebhookSignatureVerification(verified=False, reason="signature_missing")
    if provided.startswith("sha256="):
        provided = provided.split("=", 1)[1]
    provided = provided.lower()

    for secret in app_secrets:
        expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        if hmac.compare_digest(expected, provided):
            return WebhookSignatureVerification(verified=True)
    return WebhookSignatureVerification(verified=False, reason="signature_mismatch")


def _event_time(raw: Any) -> datetime | None:
    if raw is None:
        return None
    try:
        millis = int(raw)
    except (TypeError, ValueError):
        return None
    if millis <= 0:
        return None
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)


def _parse_messaging_event(event: Mapping[str, Any], platform: SocialPlatform) -> InboundTextEvent | None:
    message = event.get("message")
    if not isinstance(message, dict):
        # delivery receipts, reads and postbacks carry no message body
        return None
    if message.get("is_echo"):
        return None
    text = message.get("text")
    if not isinstance(text, str) or not text:
        return None
    sender_id = str(event["sender"]["id"]).strip()
    if not sender_id:
        raise ValueError("sender id is blank")
    return InboundTextEvent(
        sender_id=sender_id,
        text=text,
        platform=platform,
        sent_at=_event_time(event.get("timestamp")),
    )


def parse_webhook_payload(body: Any) -> WebhookBatch:
    if not isinstance(body, dict):
        raise MalformedWebhookError("webhook body must be a JSON object")

    batch = WebhookBatch()
    platform = _OBJECT_PLATFORMS.get(str(body.get("object", "")))
    if platform is None:
        logger.info("ignoring webhook for unsupported object type %r", body.get("object"))
        return batch

    entries = body.get("entry")
    if not isinstance(entries, list):
        raise MalformedWebhookError("webhook body has no entry list")

    for entry in entries:
        messaging = entry.get("messaging") if isinstance(entry, dict) else None
        if not isinstance(messaging, list):
            batch.skipped += 1
            continue
        for event in messaging:
            try:
                parsed = _parse_messaging_event(event, platform)
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                logger.warning("skipping malformed messaging event: %s", exc)
                batch.skipped += 1
                continue
            if parsed is None:
                batch.skipped += 1
                continue
            batch.events.append(parsed)
    return batch
