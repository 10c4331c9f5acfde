from __future__ import annotations

import json
import logging

from fastapi import APIRouter, HTTPException, Query, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.responses import PlainTextResponse

from .broadcaster import UpdateBroadcaster, WebSocketPushConnection
from .config import Settings, get_settings
from .conversations import ConversationService, PlatformNotConnectedError, UpstreamSendError
from .document_store import create_document_backend
from .models import (
    AiConfig,
    AutomationConfig,
    AutomationRule,
    AutomationRuleUpsertRequest,
    CalendarEvent,
    CalendarEventUpsertRequest,
    Conversation,
    DeleteResponse,
    GoogleCalendarConfig,
    Message,
    PlatformConnection,
    PlatformConnectionUpdate,
    SendMessageRequest,
    Service,
    ServiceUpsertRequest,
    StatusMessageResponse,
    WebhookConfig,
    WebhookTokenUpdate,
)
from .platform_sender import PlatformSender, create_platform_sender
from .store import (
    AutomationRuleNotFoundError,
    CalendarEventNotFoundError,
    ConversationNotFoundError,
    ConversationStore,
    ServiceNotFoundError,
)
from .webhook import verify_hub_signature, verify_subscription

logger = logging.getLogger(__name__)

WEBHOOK_ACK = "EVENT_RECEIVED"

_settings = get_settings()
router = APIRouter(prefix=_settings.api_prefix, tags=["inbox"])


def _create_store(settings: Settings) -> ConversationStore:
    return ConversationStore(
        create_document_backend(
            backend=settings.store_backend,
            store_path=settings.store_path,
            database_url=settings.database_url,
        )
    )


def _create_sender(settings: Settings) -> PlatformSender:
    return create_platform_sender(
        sender_type=settings.platform_sender_type,
        base_url=settings.graph_api_base_url,
        timeout_seconds=settings.graph_api_timeout_seconds,
    )


conversation_store: ConversationStore = _create_store(_settings)
broadcaster = UpdateBroadcaster()
platform_sender: PlatformSender = _create_sender(_settings)
conversation_service = ConversationService(
    store=conversation_store,
    broadcaster=broadcaster,
    sender=platform_sender,
)


def reset_runtime_state_for_tests() -> None:
    conversation_store.reset()


# ---------------------------------------------------------------------------
# Platform webhook
# ---------------------------------------------------------------------------


@router.get("/webhook")
def verify_webhook(
    mode: str | None = Query(default=None, alias="hub.mode"),
    token: str | None = Query(default=None, alias="hub.verify_token"),
    challenge: str | None = Query(default=None, alias="hub.challenge"),
) -> Response:
    expected = conversation_store.get_webhook_config().verify_token
    echoed = verify_subscription(mode=mode, token=token, challenge=challenge, expected_token=expected)
    if echoed is None:
        logger.warning("webhook verification failed (mode=%s)", mode)
        return Response(status_code=status.HTTP_403_FORBIDDEN)
    logger.info("webhook verified successfully")
    return PlainTextResponse(echoed)


@router.post("/webhook")
async def receive_webhook(request: Request) -> PlainTextResponse:
    # Platforms retry non-2xx responses aggressively, so every outcome acknowledges.
    try:
        body = await request.body()
        verification = verify_hub_signature(
            mode=_settings.webhook_signature_mode,
            body=body,
            headers=request.headers,
            app_secrets=conversation_store.app_secrets(),
        )
        if not verification.verified:
            logger.warning("webhook signature check failed: %s", verification.reason)
            if _settings.webhook_signature_mode == "enforce":
                return PlainTextResponse(WEBHOOK_ACK)
        result = await conversation_service.ingest_webhook(json.loads(body))
        logger.info(
            "webhook processed: accepted=%d skipped=%d failed=%d",
            result.accepted,
            result.skipped,
            result.failed,
        )
    except ValueError as exc:
        logger.warning("webhook body is not valid JSON: %s", exc)
    except Exception:
        logger.exception("error processing webhook event")
    return PlainTextResponse(WEBHOOK_ACK)


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


@router.get("/conversations", response_model=list[Conversation])
def list_conversations() -> list[Conversation]:
    return conversation_store.list_conversations()


@router.get("/conversations/{conversation_id}", response_model=Conversation)
def get_conversation(conversation_id: str) -> Conversation:
    try:
        return conversation_store.get_conversation(conversation_id)
    except ConversationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"conversation not found: {conversation_id}") from exc


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=Message,
    status_code=status.HTTP_201_CREATED,
)
async def send_conversation_message(conversation_id: str, payload: SendMessageRequest) -> Message:
    try:
        return await conversation_service.send_message(conversation_id, payload.text)
    except ConversationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"conversation not found: {conversation_id}") from exc
    except PlatformNotConnectedError as exc:
        raise HTTPException(status_code=400, detail=f"platform not connected: {exc.platform}") from exc
    except UpstreamSendError as exc:
        raise HTTPException(status_code=500, detail=f"upstream send failed: {exc.error_code}") from exc


@router.websocket("/ws")
async def push_channel(websocket: WebSocket) -> None:
    await websocket.accept()
    connection = WebSocketPushConnection(websocket)
    broadcaster.register(connection)
    try:
        while True:
            # Clients send no application frames; this only waits for the disconnect.
            await websocket.receive_text()
    except WebSocketDisconnect as exc:
        logger.debug("push connection %s disconnected with code %s", connection.connection_id, exc.code)
    finally:
        broadcaster.unregister(connection)


# ---------------------------------------------------------------------------
# Integrations
# ---------------------------------------------------------------------------


@router.get("/connections", response_model=list[PlatformConnection])
def list_connections() -> list[PlatformConnection]:
    return conversation_store.list_connections()


@router.post("/connections", response_model=StatusMessageResponse)
def save_connection(payload: PlatformConnectionUpdate) -> StatusMessageResponse:
    conversation_store.update_connection(payload)
    return StatusMessageResponse(message="Connection updated successfully")


@router.get("/ai-config", response_model=AiConfig)
def get_ai_config() -> AiConfig:
    return conversation_store.get_ai_config()


@router.post("/ai-config", response_model=StatusMessageResponse)
def save_ai_config(payload: AiConfig) -> StatusMessageResponse:
    conversation_store.set_ai_config(AiConfig(api_key=payload.api_key.strip()))
    return StatusMessageResponse(message="AI configuration saved.")


@router.get("/webhook-config", response_model=WebhookConfig)
def get_webhook_config() -> WebhookConfig:
    return conversation_store.get_webhook_config()


@router.post("/webhook-config", response_model=StatusMessageResponse)
def save_webhook_config(payload: WebhookTokenUpdate) -> StatusMessageResponse:
    conversation_store.set_verify_token(payload.verify_token)
    return StatusMessageResponse(message="Webhook token updated.")


@router.get("/google-calendar-config", response_model=GoogleCalendarConfig)
def get_google_calendar_config() -> GoogleCalendarConfig:
    return conversation_store.get_google_calendar_config()


# ---------------------------------------------------------------------------
# Automation
# ---------------------------------------------------------------------------


@router.get("/automation-config", response_model=AutomationConfig)
def get_automation_config() -> AutomationConfig:
    return conversation_store.get_automation_config()


@router.post("/automation-config", response_model=StatusMessageResponse)
def save_automation_config(payload: AutomationConfig) -> StatusMessageResponse:
    conversation_store.set_automation_config(payload)
    return StatusMessageResponse(message="Automation configuration saved.")


@router.get("/automation-rules", response_model=list[AutomationRule])
def list_automation_rules() -> list[AutomationRule]:
    return conversation_store.list_automation_rules()


@router.post("/automation-rules", response_model=AutomationRule)
def save_automation_rule(payload: AutomationRuleUpsertRequest) -> AutomationRule:
    return conversation_store.upsert_automation_rule(payload)


@router.delete("/automation-rules/{rule_id}", response_model=DeleteResponse)
def delete_automation_rule(rule_id: str) -> DeleteResponse:
    try:
        conversation_store.delete_automation_rule(rule_id)
    except AutomationRuleNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"automation rule not found: {rule_id}") from exc
    return DeleteResponse(id=rule_id, deleted=True)


@router.get("/services", response_model=list[Service])
def list_services() -> list[Service]:
    return conversation_store.list_services()


@router.post("/services", response_model=Service)
def save_service(payload: ServiceUpsertRequest) -> Service:
    return conversation_store.upsert_service(payload)


@router.delete("/services/{service_id}", response_model=DeleteResponse)
def delete_service(service_id: str) -> DeleteResponse:
    try:
        conversation_store.delete_service(service_id)
    except ServiceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"service not found: {service_id}") from exc
    return DeleteResponse(id=service_id, deleted=True)


# ---------------------------------------------------------------------------
# Calendar
# ---------------------------------------------------------------------------


@router.get("/calendar-events", response_model=list[CalendarEvent])
def list_calendar_events() -> list[CalendarEvent]:
    return conversation_store.list_calendar_events()


@router.post("/calendar-events", response_model=CalendarEvent)
def save_calendar_event(payload: CalendarEventUpsertRequest) -> CalendarEvent:
    return conversation_store.upsert_calendar_event(payload)


@router.delete("/calendar-events/{event_id}", response_model=DeleteResponse)
def delete_calendar_event(event_id: str) -> DeleteResponse:
    try:
        conversation_store.delete_calendar_event(event_id)
    except CalendarEventNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"calendar event not found: {event_id}") from exc
    return DeleteResponse(id=event_id, deleted=True)
