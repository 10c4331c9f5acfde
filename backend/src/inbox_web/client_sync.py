from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx
from pydantic import ValidationError
from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import WebSocketException

from .client_api import ApiError, InboxApiClient
from .models import AiConfig, Conversation, Customer, Service

logger = logging.getLogger(__name__)

ConnectFactory = Callable[[str], Awaitable[Any]]


@dataclass(frozen=True)
class ConversationChange:
    conversation: Conversation
    previous: Conversation | None = None
    # True for orchestrator-published streaming views that never reached the server.
    local: bool = False


ChangeListener = Callable[[ConversationChange], None]


def merge_conversation(conversations: list[Conversation], updated: Conversation) -> list[Conversation]:
    """Replace the entry with the same id (or prepend it) and re-sort newest first."""
    merged = [updated if value.id == updated.id else value for value in conversations]
    if not any(value.id == updated.id for value in conversations):
        merged.insert(0, updated)
    merged.sort(key=lambda value: value.sort_key(), reverse=True)
    return merged


@dataclass
class ReconnectState:
    base_delay: float = 3.0
    backoff_factor: float = 1.0
    max_delay: float = 30.0
    attempt: int = 0
    next_delay: float = field(init=False)
    handle: asyncio.TimerHandle | None = None

    def __post_init__(self) -> None:
        self.next_delay = self.base_delay

    @property
    def pending(self) -> bool:
        return self.handle is not None and not self.handle.cancelled()

    def cancel(self) -> None:
        if self.handle is not None:
            self.handle.cancel()
            self.handle = None

    def reset(self) -> None:
        self.cancel()
        self.attempt = 0
        self.next_delay = self.base_delay

    def advance(self) -> float:
        """Count one more attempt and return the delay to wait before it."""
        delay = self.next_delay
        self.attempt += 1
        self.next_delay = min(self.max_delay, max(self.base_delay, self.next_delay * self.backoff_factor))
        return delay

    def schedule(self, loop: asyncio.AbstractEventLoop, callback: Callable[[], None]) -> float:
        """Arm the single reconnect timer, replacing any pending one; returns the delay used."""
        self.cancel()
        delay = self.advance()
        self.handle = loop.call_later(delay, callback)
        return delay


class ClientSyncController:
    """Keeps a local, non-authoritative copy of the inbox in step with the server."""

    def __init__(
        self,
        *,
        api: InboxApiClient,
        push_url: str,
        reconnect: ReconnectState | None = None,
        connect: ConnectFactory | None = None,
    ) -> None:
        self._api = api
        self._push_url = push_url
        self._connect: ConnectFactory = connect or websocket_connect
        self.reconnect = reconnect or ReconnectState()
        self.conversations: list[Conversation] = []
        self.selected: Conversation | None = None
        self.ai_config = AiConfig()
        self.services: list[Service] = []
        self._listeners: list[ChangeListener] = []
        self._websocket: Any = None
        self._connection_task: asyncio.Task[None] | None = None
        self._stopped = False
        self._has_connected = False

    # ------------------------------------------------------------------
    # Local state
    # ------------------------------------------------------------------

    def subscribe(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        for conversation in self.conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    def select(self, conversation_id: str) -> Conversation | None:
        self.selected = self.get_conversation(conversation_id)
        return self.selected

    @property
    def unread_total(self) -> int:
        return sum(value.unread_count for value in self.conversations)

    @property
    def customers(self) -> list[Customer]:
        seen: dict[str, Customer] = {}
        for conversation in self.conversations:
            seen.setdefault(conversation.customer.id, conversation.customer)
        return list(seen.values())

    async def load(self, *, notify: bool = False) -> None:
        """Replace local state with the server's.

        With ``notify`` every conversation that is new or differs from the
        local copy is reported to listeners, as if it had been pushed.
        """
        previous = {value.id: value for value in self.conversations}
        self.conversations, self.ai_config, self.services = await asyncio.gather(
            self._api.fetch_conversations(),
            self._api.fetch_ai_config(),
            self._api.fetch_services(),
        )
        if self.selected is None and self.conversations:
            self.selected = self.conversations[0]
        elif self.selected is not None:
            self.selected = self.get_conversation(self.selected.id)
        logger.info("loaded %d conversations and %d services", len(self.conversations), len(self.services))
        if not notify:
            return
        for conversation in list(self.conversations):
            before = previous.get(conversation.id)
            if before != conversation:
                self._notify(ConversationChange(conversation=conversation, previous=before))

    def apply_update(self, conversation: Conversation, *, local: bool = False) -> ConversationChange:
        previous = self.get_conversation(conversation.id)
        self.conversations = merge_conversation(self.conversations, conversation)
        if self.selected is not None and self.selected.id == conversation.id:
            self.selected = conversation
        change = ConversationChange(conversation=conversation, previous=previous, local=local)
        self._notify(change)
        return change

    def _notify(self, change: ConversationChange) -> None:
        for listener in list(self._listeners):
            listener(change)

    def publish_local(self, conversation: Conversation) -> ConversationChange:
        return self.apply_update(conversation, local=True)

    # ------------------------------------------------------------------
    # Push channel
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Load the inbox, retrying until the server answers, then open the push channel."""
        self._stopped = False
        while True:
            try:
                await self.load()
                break
            except (ApiError, httpx.HTTPError) as exc:
                delay = self.reconnect.advance()
                logger.warning(
                    "initial load failed (attempt %d), retrying in %.1fs: %s", self.reconnect.attempt, delay, exc
                )
                await asyncio.sleep(delay)
            if self._stopped:
                return
        self.reconnect.reset()
        self.connect()

    def connect(self) -> None:
        self.reconnect.handle = None
        if self._stopped:
            return
        self._connection_task = asyncio.get_running_loop().create_task(self._run_connection())

    async def stop(self) -> None:
        self._stopped = True
        self.reconnect.cancel()
        if self._websocket is not None:
            await self._websocket.close()
        if self._connection_task is not None:
            await asyncio.gather(self._connection_task, return_exceptions=True)

    async def wait_closed(self) -> None:
        if self._connection_task is not None:
            await self._connection_task

    async def _run_connection(self) -> None:
        try:
            websocket = await self._connect(self._push_url)
        except (OSError, WebSocketException) as exc:
            logger.warning("push channel connect to %s failed: %s", self._push_url, exc)
            self._on_close()
            return

        self._websocket = websocket
        resumed = self._has_connected
        self._on_open()
        if resumed:
            await self._catch_up()
        try:
            async for frame in websocket:
                self._on_message(frame)
        except (OSError, WebSocketException) as exc:
            await self._on_error(exc)
        finally:
            self._websocket = None
            self._on_close()

    def _on_open(self) -> None:
        self._has_connected = True
        self.reconnect.reset()
        logger.info("push channel connected to %s", self._push_url)

    async def _catch_up(self) -> None:
        # Broadcasts sent while the channel was down are not replayed.
        try:
            await self.load(notify=True)
        except (ApiError, httpx.HTTPError) as exc:
            logger.warning("reload after reconnect failed: %s", exc)

    def _on_message(self, frame: str | bytes) -> None:
        try:
            conversation = Conversation.model_validate_json(frame)
        except ValidationError as exc:
            logger.warning("ignoring unreadable push frame: %s", exc.errors()[:1])
            return
        self.apply_update(conversation)

    async def _on_error(self, exc: Exception) -> None:
        logger.warning("push channel error: %s", exc)
        if self._websocket is not None:
            await self._websocket.close()

    def _on_close(self) -> None:
        if self._stopped:
            return
        delay = self.reconnect.schedule(asyncio.get_running_loop(), self.connect)
        logger.info("push channel closed; reconnect attempt %d in %.1fs", self.reconnect.attempt, delay)
