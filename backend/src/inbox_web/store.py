from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import count
from threading import Lock
from typing import Iterator

from .document_store import DocumentBackend
from .models import (
    AiConfig,
    AutomationConfig,
    AutomationRule,
    AutomationRuleUpsertRequest,
    CalendarEvent,
    CalendarEventUpsertRequest,
    Conversation,
    Customer,
    GoogleCalendarConfig,
    Message,
    MessageSender,
    MessageType,
    PlatformConnection,
    PlatformConnectionUpdate,
    Service,
    ServiceUpsertRequest,
    SocialPlatform,
    StoreDocument,
    WebhookConfig,
    format_timestamp,
    message_preview,
)

logger = logging.getLogger(__name__)

NEW_LEAD_TAG = "New Lead"

_PLATFORM_LABELS: dict[str, str] = {
    "Facebook": "Messenger",
    "Instagram": "Instagram",
    "TikTok": "TikTok",
}


class ConversationNotFoundError(KeyError):
    """Raised when an operation references a conversation id that does not exist."""


class ServiceNotFoundError(KeyError):
    """Raised when a service id is not in the catalog."""


class AutomationRuleNotFoundError(KeyError):
    """Raised when an automation rule id does not exist."""


class CalendarEventNotFoundError(KeyError):
    """Raised when a calendar event id does not exist."""


@dataclass(frozen=True)
class IngestResult:
    conversation: Conversation
    message: Message
    created: bool


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def conversation_id_for(customer_id: str) -> str:
    return f"conv_{customer_id}"


def sort_conversations(conversations: list[Conversation]) -> None:
    conversations.sort(key=lambda value: value.sort_key(), reverse=True)


def _find_conversation(document: StoreDocument, conversation_id: str) -> Conversation | None:
    for conversation in document.conversations:
        if conversation.id == conversation_id:
            return conversation
    return None


def _placeholder_customer(customer_id: str, platform: SocialPlatform) -> Customer:
    display_name = f"{_PLATFORM_LABELS.get(platform, platform)} User {customer_id}"
    return Customer(
        id=customer_id,
        username=display_name,
        real_name=display_name,
        platform=platform,
        avatar_url=f"https://picsum.photos/seed/{customer_id}/100/100",
        tags=[NEW_LEAD_TAG],
    )


def _append(conversation: Conversation, message: Message) -> None:
    conversation.messages.append(message)
    conversation.last_message_preview = message_preview(message.text)
    conversation.timestamp = message.timestamp


class ConversationStore:
    """Owns the persisted conversation graph and configuration.

    Every mutation is a whole-document load, in-memory change and save held
    under one lock, so two writers never interleave.
    """

    def __init__(self, backend: DocumentBackend) -> None:
        self._lock = Lock()
        self._backend = backend
        self._message_counter = count(1)

    def reset(self) -> None:
        with self._lock:
            self._backend.reset()
            self._message_counter = count(1)

    @contextmanager
    def _mutate(self) -> Iterator[StoreDocument]:
        with self._lock:
            document = self._backend.load()
            yield document
            self._backend.save(document)

    def _read(self) -> StoreDocument:
        with self._lock:
            return self._backend.load()

    def _next_message_id(self, sender: MessageSender, created_at: datetime) -> str:
        return f"msg_{sender}_{int(created_at.timestamp() * 1000)}_{next(self._message_counter)}"

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    def list_conversations(self) -> list[Conversation]:
        return self._read().conversations

    def get_conversation(self, conversation_id: str) -> Conversation:
        conversation = _find_conversation(self._read(), conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    def find_by_customer(self, customer_id: str) -> Conversation | None:
        for conversation in self._read().conversations:
            if conversation.customer.id == customer_id:
                return conversation
        return None

    def append_inbound(
        self,
        *,
        sender_id: str,
        text: str,
        platform: SocialPlatform,
        sent_at: datetime | None = None,
        message_type: MessageType = "Private Message",
    ) -> IngestResult:
        created_at = sent_at or _now_utc()
        with self._mutate() as document:
            message = Message(
                id=self._next_message_id("user", created_at),
                text=text,
                sender="user",
                timestamp=format_timestamp(created_at),
                type=message_type,
            )
            conversation = next(
                (value for value in document.conversations if value.customer.id == sender_id),
                None,
            )
            created = conversation is None
            if conversation is None:
                conversation = Conversation(
                    id=conversation_id_for(sender_id),
                    customer=_placeholder_customer(sender_id, platform),
                    messages=[message],
                    last_message_preview=message_preview(text),
                    unread_count=1,
                    timestamp=message.timestamp,
                )
                document.conversations.insert(0, conversation)
            else:
                _append(conversation, message)
                conversation.unread_count += 1
            sort_conversations(document.conversations)
            snapshot = conversation.model_copy(deep=True)
        if created:
            logger.info("created conversation %s for new %s sender", snapshot.id, platform)
        return IngestResult(conversation=snapshot, message=message, created=created)

    def append_outbound(self, conversation_id: str, text: str) -> tuple[Conversation, Message]:
        created_at = _now_utc()
        with self._mutate() as document:
            conversation = _find_conversation(document, conversation_id)
            if conversation is None:
                raise ConversationNotFoundError(conversation_id)
            message = Message(
                id=self._next_message_id("bot", created_at),
                text=text,
                sender="bot",
                timestamp=format_timestamp(created_at),
                type="Private Message",
            )
            _append(conversation, message)
            sort_conversations(document.conversations)
            snapshot = conversation.model_copy(deep=True)
        return snapshot, message

    def resolve_recipient(self, conversation_id: str) -> tuple[Conversation, PlatformConnection | None]:
        document = self._read()
        conversation = _find_conversation(document, conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        connection = next(
            (value for value in document.connections if value.platform == conversation.customer.platform),
            None,
        )
        return conversation, connection

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def list_connections(self) -> list[PlatformConnection]:
        return self._read().connections

    def app_secrets(self) -> list[str]:
        return [value.app_secret for value in self._read().connections if value.app_secret.strip()]

    def update_connection(self, update: PlatformConnectionUpdate) -> PlatformConnection:
        changes = update.model_dump(exclude_none=True)
        with self._mutate() as document:
            for index, existing in enumerate(document.connections):
                if existing.platform == update.platform:
                    merged = existing.model_copy(update=changes)
                    document.connections[index] = merged
                    return merged
            created = PlatformConnection(**changes)
            document.connections.append(created)
            return created

    def get_ai_config(self) -> AiConfig:
        return self._read().ai_config

    def set_ai_config(self, config: AiConfig) -> AiConfig:
        with self._mutate() as document:
            document.ai_config = config
        return config

    def get_webhook_config(self) -> WebhookConfig:
        return self._read().webhook_config

    def set_verify_token(self, verify_token: str) -> WebhookConfig:
        with self._mutate() as document:
            document.webhook_config = document.webhook_config.model_copy(update={"verify_token": verify_token})
            return document.webhook_config

    def get_automation_config(self) -> AutomationConfig:
        return self._read().automation_config

    def set_automation_config(self, config: AutomationConfig) -> AutomationConfig:
        with self._mutate() as document:
            document.automation_config = config
        return config

    def get_google_calendar_config(self) -> GoogleCalendarConfig:
        return self._read().google_calendar_config

    # ------------------------------------------------------------------
    # Catalog, rules and calendar
    # ------------------------------------------------------------------

    def list_services(self) -> list[Service]:
        return self._read().services

    def upsert_service(self, payload: ServiceUpsertRequest) -> Service:
        service = Service(
            id=payload.id or f"serv_{uuid.uuid4().hex[:12]}",
            name=payload.name,
            price=payload.price,
            description=payload.description,
        )
        with self._mutate() as document:
            document.services = _upsert_by_id(document.services, service)
        return service

    def delete_service(self, service_id: str) -> None:
        with self._mutate() as document:
            remaining = [value for value in document.services if value.id != service_id]
            if len(remaining) == len(document.services):
                raise ServiceNotFoundError(service_id)
            document.services = remaining

    def list_automation_rules(self) -> list[AutomationRule]:
        return self._read().automation_rules

    def upsert_automation_rule(self, payload: AutomationRuleUpsertRequest) -> AutomationRule:
        rule = AutomationRule(
            id=payload.id or f"rule_{uuid.uuid4().hex[:12]}",
            platform=payload.platform,
            trigger=payload.trigger,
            keywords=payload.keywords,
            public_reply=payload.public_reply,
            system_prompt=payload.system_prompt,
        )
        with self._mutate() as document:
            document.automation_rules = _upsert_by_id(document.automation_rules, rule)
        return rule

    def delete_automation_rule(self, rule_id: str) -> None:
        with self._mutate() as document:
            remaining = [value for value in document.automation_rules if value.id != rule_id]
            if len(remaining) == len(document.automation_rules):
                raise AutomationRuleNotFoundError(rule_id)
            document.automation_rules = remaining

    def list_calendar_events(self) -> list[CalendarEvent]:
        return sorted(self._read().calendar_events, key=lambda value: value.start)

    def upsert_calendar_event(self, payload: CalendarEventUpsertRequest) -> CalendarEvent:
        event = CalendarEvent(
            id=payload.id or f"evt_{uuid.uuid4().hex[:12]}",
            title=payload.title,
            start=payload.start,
            end=payload.end,
            customer_name=payload.customer_name,
            service=payload.service,
        )
        with self._mutate() as document:
            document.calendar_events = _upsert_by_id(document.calendar_events, event)
        return event

    def delete_calendar_event(self, event_id: str) -> None:
        with self._mutate() as document:
            remaining = [value for value in document.calendar_events if value.id != event_id]
            if len(remaining) == len(document.calendar_events):
                raise CalendarEventNotFoundError(event_id)
            document.calendar_events = remaining


def _upsert_by_id(items: list, item) -> list:
    replaced = False
    updated = []
    for existing in items:
        if existing.id == item.id:
            updated.append(item)
            replaced = True
        else:
            updated.append(existing)
    if not replaced:
        updated.append(item)
    return updated
