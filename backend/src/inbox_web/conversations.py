from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from .broadcaster import UpdateBroadcaster
from .models import Message
from .platform_sender import PlatformSender, ProviderSendRequest, mask_recipient
from .store import ConversationStore
from .webhook import MalformedWebhookError, parse_webhook_payload

logger = logging.getLogger(__name__)


class PlatformNotConnectedError(Exception):
    """Raised when the conversation's platform has no usable credential."""

    def __init__(self, platform: str) -> None:
        super().__init__(f"{platform} is not connected")
        self.platform = platform


class UpstreamSendError(Exception):
    """Raised when the platform send API rejects a message or cannot be reached."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


@dataclass(frozen=True)
class WebhookIngestResult:
    accepted: int
    skipped: int
    failed: int


class ConversationService:
    def __init__(
        self,
        *,
        store: ConversationStore,
        broadcaster: UpdateBroadcaster,
        sender: PlatformSender,
    ) -> None:
        self._store = store
        self._broadcaster = broadcaster
        self._sender = sender

    async def ingest_webhook(self, body: Any) -> WebhookIngestResult:
        try:
            batch = parse_webhook_payload(body)
        except MalformedWebhookError as exc:
            logger.warning("discarding malformed webhook payload: %s", exc)
            return WebhookIngestResult(accepted=0, skipped=0, failed=1)

        accepted = 0
        failed = 0
        for event in batch.events:
            try:
                result = self._store.append_inbound(
                    sender_id=event.sender_id,
                    text=event.text,
                    platform=event.platform,
                    sent_at=event.sent_at,
                )
            except (OSError, ValueError) as exc:
                logger.error("failed to store message from %s: %s", mask_recipient(event.sender_id), exc)
                failed += 1
                continue
            accepted += 1
            logger.info(
                "stored inbound message for %s (%d messages)",
                result.conversation.id,
                len(result.conversation.messages),
            )
            await self._broadcaster.broadcast(result.conversation)

        return WebhookIngestResult(accepted=accepted, skipped=batch.skipped, failed=failed)

    async def send_message(self, conversation_id: str, text: str) -> Message:
        """Deliver text upstream, then append and broadcast it.

        Nothing is written unless the platform accepted the message.
        """
        conversation, connection = self._store.resolve_recipient(conversation_id)
        platform = conversation.customer.platform
        if connection is None or not connection.connected or not connection.access_token.strip():
            raise PlatformNotConnectedError(platform)

        request = ProviderSendRequest(
            conversation_id=conversation.id,
            platform=platform,
            recipient_id=conversation.customer.id,
            text=text,
            page_id=connection.page_id,
            access_token=connection.access_token,
        )
        result = await asyncio.to_thread(self._sender.send_text, request)
        if result.status != "sent":
            logger.error(
                "send to %s failed for %s: %s",
                platform,
                conversation.id,
                result.error_message or result.error_code,
            )
            raise UpstreamSendError(
                result.error_code or "send_failed",
                result.error_message or f"{platform} rejected the message",
            )

        updated, message = self._store.append_outbound(conversation.id, text)
        await self._broadcaster.broadcast(updated)
        return message
