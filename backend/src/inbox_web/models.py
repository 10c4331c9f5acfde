from __future__ import annotations

import time
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

SocialPlatform = Literal["Facebook", "Instagram", "TikTok"]
ConnectablePlatform = Literal["Facebook", "Instagram", "TikTok", "WhatsApp"]
MessageSender = Literal["user", "bot"]
MessageType = Literal["Private Message", "Comment"]

PREVIEW_LENGTH = 40


def message_preview(text: str) -> str:
    return text[:PREVIEW_LENGTH] + "..."


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def format_timestamp(value: datetime) -> str:
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class Customer(BaseModel):
    id: str
    username: str
    real_name: str
    platform: SocialPlatform = "Facebook"
    avatar_url: str = ""
    phone: str = ""
    email: str = ""
    notes: str = ""
    tags: list[str] = Field(default_factory=list)


class Message(BaseModel):
    id: str
    text: str
    sender: MessageSender
    timestamp: str
    type: MessageType = "Private Message"


class Conversation(BaseModel):
    id: str
    customer: Customer
    messages: list[Message] = Field(default_factory=list)
    last_message_preview: str = ""
    unread_count: int = 0
    timestamp: str

    @property
    def last_message(self) -> Message | None:
        return self.messages[-1] if self.messages else None

    def sort_key(self) -> datetime:
        return parse_timestamp(self.timestamp)


class PlatformConnection(BaseModel):
    platform: ConnectablePlatform
    connected: bool = False
    app_id: str = ""
    app_secret: str = ""
    page_id: str = ""
    access_token: str = ""


class PlatformConnectionUpdate(BaseModel):
    platform: ConnectablePlatform
    connected: bool | None = None
    app_id: str | None = None
    app_secret: str | None = None
    page_id: str | None = None
    access_token: str | None = None


class AiConfig(BaseModel):
    api_key: str = ""


def default_verify_token() -> str:
    return f"metaluxe-token-{int(time.time() * 1000)}"


class WebhookConfig(BaseModel):
    verify_token: str = Field(default_factory=default_verify_token)
    callback_url: str = "YOUR_SERVER_URL/api/webhook"


class WebhookTokenUpdate(BaseModel):
    verify_token: str = Field(min_length=1, max_length=256)

    @field_validator("verify_token")
    @classmethod
    def _strip_token(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("verify_token cannot be blank")
        return stripped


class AutomationConfig(BaseModel):
    welcome_message: str = ""


class GoogleCalendarConfig(BaseModel):
    connected: bool = False
    user_email: str | None = None


class Service(BaseModel):
    id: str
    name: str
    price: str
    description: str = ""


class ServiceUpsertRequest(BaseModel):
    id: str | None = None
    name: str = Field(min_length=1, max_length=200)
    price: str = Field(min_length=1, max_length=64)
    description: str = ""


class AutomationRule(BaseModel):
    id: str
    platform: SocialPlatform
    trigger: Literal["comment"] = "comment"
    keywords: list[str] = Field(default_factory=list)
    public_reply: str = ""
    system_prompt: str = ""


class AutomationRuleUpsertRequest(BaseModel):
    id: str | None = None
    platform: SocialPlatform
    trigger: Literal["comment"] = "comment"
    keywords: list[str] = Field(default_factory=list)
    public_reply: str = ""
    system_prompt: str = ""

    @field_validator("keywords")
    @classmethod
    def _normalize_keywords(cls, value: list[str]) -> list[str]:
        normalized: list[str] = []
        for raw in value:
            keyword = str(raw).strip().lower()
            if keyword and keyword not in normalized:
                normalized.append(keyword)
        return normalized


class CalendarEvent(BaseModel):
    id: str
    title: str
    start: datetime
    end: datetime
    customer_name: str | None = None
    service: str | None = None


class CalendarEventUpsertRequest(BaseModel):
    id: str | None = None
    title: str = Field(min_length=1, max_length=200)
    start: datetime
    end: datetime
    customer_name: str | None = None
    service: str | None = None

    @model_validator(mode="after")
    def _validate_window(self) -> CalendarEventUpsertRequest:
        if self.end < self.start:
            raise ValueError("end must be greater than or equal to start")
        return self


class StoreDocument(BaseModel):
    connections: list[PlatformConnection] = Field(default_factory=list)
    ai_config: AiConfig = Field(default_factory=AiConfig)
    webhook_config: WebhookConfig = Field(default_factory=WebhookConfig)
    automation_config: AutomationConfig = Field(default_factory=AutomationConfig)
    google_calendar_config: GoogleCalendarConfig = Field(default_factory=GoogleCalendarConfig)
    services: list[Service] = Field(default_factory=list)
    automation_rules: list[AutomationRule] = Field(default_factory=list)
    calendar_events: list[CalendarEvent] = Field(default_factory=list)
    conversations: list[Conversation] = Field(default_factory=list)


class SendMessageRequest(BaseModel):
    text: str = Field(min_length=1, max_length=2000)

    @field_validator("text")
    @classmethod
    def _reject_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("text cannot be blank")
        return value


class StatusMessageResponse(BaseModel):
    message: str


class DeleteResponse(BaseModel):
    id: str
    deleted: bool
