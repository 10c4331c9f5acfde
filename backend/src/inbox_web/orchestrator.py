from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

import httpx

from .assistant import AssistantProvider
from .client_api import ApiError, InboxApiClient
from .client_sync import ClientSyncController, ConversationChange
from .models import AiConfig, Conversation, Message, format_timestamp, message_preview

logger = logging.getLogger(__name__)

AI_NOT_CONFIGURED_TEXT = (
    "AI not configured. Please add your Google Gemini API Key in the 'Integrations' settings "
    "to enable automated responses."
)
AUDIO_NOT_CONFIGURED_TEXT = (
    "Audio transcription requires a configured AI. Please add your Google Gemini API Key "
    "in the 'Integrations' settings."
)
INVALID_API_KEY_TEXT = "AI API Key is invalid. Please check it in the 'Integrations' settings."
CONNECTIVITY_ERROR_TEXT = "Sorry, I'm having trouble connecting. Please try again later."
AUDIO_FAILED_TEXT = "Sorry, I couldn't understand the audio. Please try again."

_CREDENTIAL_MARKERS = ("API Key", "API key")


def voice_message_text(transcript: str) -> str:
    return f'🎙️ "{transcript}"'


def classify_generation_error(exc: BaseException) -> str:
    if any(marker in str(exc) for marker in _CREDENTIAL_MARKERS):
        return INVALID_API_KEY_TEXT
    return CONNECTIVITY_ERROR_TEXT


def should_auto_reply(conversation: Conversation, *, typing: bool) -> bool:
    """Newest message is from the customer, no reply is in flight, and the one before it was not."""
    if typing or not conversation.messages:
        return False
    if conversation.messages[-1].sender != "user":
        return False
    if len(conversation.messages) >= 2 and conversation.messages[-2].sender == "user":
        return False
    return True


def streaming_view(conversation: Conversation, text: str) -> Conversation:
    placeholder = Message(
        id=f"msg_bot_streaming_{conversation.id}",
        text=text,
        sender="bot",
        timestamp=format_timestamp(datetime.now(timezone.utc)),
    )
    view = conversation.model_copy(deep=True)
    view.messages.append(placeholder)
    view.timestamp = placeholder.timestamp
    view.last_message_preview = message_preview(text)
    return view


class ReplyOrchestrator:
    """Drives automatic replies from conversation updates seen by the sync controller.

    A conversation is "typing" while a reply or transcription is in flight;
    every generated or fixed text leaves through the server relay exactly once.
    """

    def __init__(
        self,
        *,
        sync: ClientSyncController,
        api: InboxApiClient,
        assistants: AssistantProvider,
        debounce_seconds: float = 0.5,
    ) -> None:
        self._sync = sync
        self._api = api
        self._assistants = assistants
        self._debounce_seconds = debounce_seconds
        self._typing: set[str] = set()
        # Newest customer message already answered, per conversation.
        self._handled: dict[str, str] = {}
        self._server_copies: dict[str, Conversation] = {}
        self._pending: dict[str, asyncio.Task[None]] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    def attach(self) -> None:
        self._sync.subscribe(self.on_change)

    def is_typing(self, conversation_id: str) -> bool:
        return conversation_id in self._typing

    def on_change(self, change: ConversationChange) -> None:
        if change.local:
            return
        conversation = change.conversation
        self._server_copies[conversation.id] = conversation
        if not should_auto_reply(conversation, typing=self.is_typing(conversation.id)):
            return
        newest = conversation.messages[-1]
        if self._handled.get(conversation.id) == newest.id:
            return
        self._handled[conversation.id] = newest.id

        pending = self._pending.pop(conversation.id, None)
        if pending is not None:
            pending.cancel()
        task = asyncio.get_running_loop().create_task(self._debounced_reply(conversation.id))
        self._pending[conversation.id] = task
        self._track(task)

    async def drain(self) -> None:
        """Wait for every scheduled reply to finish."""
        while True:
            pending = [task for task in self._tasks if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    async def _debounced_reply(self, conversation_id: str) -> None:
        await asyncio.sleep(self._debounce_seconds)
        self._pending.pop(conversation_id, None)
        if self.is_typing(conversation_id):
            return
        await self.generate_reply(conversation_id)

    async def generate_reply(self, conversation_id: str) -> None:
        self._typing.add(conversation_id)
        try:
            conversation = self._sync.get_conversation(conversation_id)
            if conversation is None:
                logger.warning("conversation %s disappeared before reply generation", conversation_id)
                return
            ai_config = await self._refresh_ai_config()
            assistant = self._assistants.get(ai_config.api_key)
            if assistant is None:
                await self._relay(conversation_id, AI_NOT_CONFIGURED_TEXT)
                return

            accumulated = ""
            try:
                async for fragment in assistant.stream_reply(conversation.messages, self._sync.services):
                    accumulated += fragment
                    base = self._server_copies.get(conversation_id, conversation)
                    self._sync.publish_local(streaming_view(base, accumulated))
            except Exception as exc:
                logger.exception("reply generation failed for %s", conversation_id)
                if accumulated:
                    self._discard_streaming_view(conversation_id, conversation)
                await self._relay(conversation_id, classify_generation_error(exc))
                return

            if not accumulated.strip():
                logger.warning("reply generation for %s produced no text", conversation_id)
                if accumulated:
                    self._discard_streaming_view(conversation_id, conversation)
                await self._relay(conversation_id, CONNECTIVITY_ERROR_TEXT)
                return
            if await self._relay(conversation_id, accumulated) is None:
                self._discard_streaming_view(conversation_id, conversation)
        finally:
            self._typing.discard(conversation_id)

    async def send_audio(self, conversation_id: str, audio: bytes, mime_type: str) -> bool:
        """Transcribe a recorded clip and relay it as a voice-sourced message."""
        if self.is_typing(conversation_id):
            logger.info("ignoring audio for %s while a reply is in flight", conversation_id)
            return False
        self._typing.add(conversation_id)
        try:
            ai_config = await self._refresh_ai_config()
            assistant = self._assistants.get(ai_config.api_key)
            if assistant is None:
                await self._relay(conversation_id, AUDIO_NOT_CONFIGURED_TEXT)
                return True
            try:
                transcript = await assistant.transcribe(audio, mime_type)
            except Exception:
                logger.exception("audio transcription failed for %s", conversation_id)
                await self._relay(conversation_id, AUDIO_FAILED_TEXT)
                return True
            await self._relay(conversation_id, voice_message_text(transcript))
            return True
        finally:
            self._typing.discard(conversation_id)

    async def _refresh_ai_config(self) -> AiConfig:
        try:
            self._sync.ai_config = await self._api.fetch_ai_config()
        except (ApiError, httpx.HTTPError) as exc:
            logger.warning("could not refresh AI configuration, using cached copy: %s", exc)
        return self._sync.ai_config

    def _discard_streaming_view(self, conversation_id: str, fallback: Conversation) -> None:
        self._sync.publish_local(self._server_copies.get(conversation_id, fallback))

    async def _relay(self, conversation_id: str, text: str) -> Message | None:
        try:
            return await self._api.send_message(conversation_id, text)
        except (ApiError, httpx.HTTPError) as exc:
            logger.error("relay to %s failed: %s", conversation_id, exc)
            return None

    def _track(self, task: asyncio.Task[None]) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
