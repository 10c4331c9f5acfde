from __future__ import annotations

import asyncio

import httpx
import pytest
from websockets.exceptions import WebSocketException

from inbox_web.client_sync import ClientSyncController, ConversationChange, ReconnectState, merge_conversation
from inbox_web.models import AiConfig, Conversation, Customer, Message, Service


def _conversation(conversation_id: str, timestamp: str, *, text: str = "hello", unread: int = 1) -> Conversation:
    customer_id = conversation_id.removeprefix("conv_")
    return Conversation(
        id=conversation_id,
        customer=Customer(id=customer_id, username=f"User {customer_id}", real_name=f"User {customer_id}"),
        messages=[Message(id=f"m_{conversation_id}_{timestamp}", text=text, sender="user", timestamp=timestamp)],
        last_message_preview=f"{text}...",
        unread_count=unread,
        timestamp=timestamp,
    )


class FakeApi:
    def __init__(self, conversations: list[Conversation], *, failed_loads: int = 0) -> None:
        self.conversations = conversations
        self.failed_loads = failed_loads
        self.fetch_calls = 0
        self.sent: list[tuple[str, str]] = []

    async def fetch_conversations(self) -> list[Conversation]:
        self.fetch_calls += 1
        if self.failed_loads:
            self.failed_loads -= 1
            raise httpx.ConnectError("connection refused")
        return list(self.conversations)

    async def fetch_ai_config(self) -> AiConfig:
        return AiConfig(api_key="key-1")

    async def fetch_services(self) -> list[Service]:
        return [Service(id="serv1", name="Facial", price="$80", description="Deep cleanse")]


class FakeSocket:
    def __init__(self, frames: list[str], *, error: Exception | None = None) -> None:
        self._frames = frames
        self._error = error
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self._frames:
            yield frame
        if self._error is not None:
            raise self._error

    async def close(self) -> None:
        self.closed = True


def test_merge_replaces_existing_entry_and_resorts() -> None:
    older = _conversation("conv_1", "2026-01-01T09:00:00.000Z")
    newer = _conversation("conv_2", "2026-01-01T10:00:00.000Z")
    updated = _conversation("conv_1", "2026-01-01T11:00:00.000Z", text="bumped")

    merged = merge_conversation([newer, older], updated)

    assert [value.id for value in merged] == ["conv_1", "conv_2"]
    assert merged[0].messages[-1].text == "bumped"


def test_merge_prepends_unknown_entry() -> None:
    existing = _conversation("conv_1", "2026-01-01T09:00:00.000Z")
    unseen = _conversation("conv_9", "2026-01-01T12:00:00.000Z")

    merged = merge_conversation([existing], unseen)

    assert [value.id for value in merged] == ["conv_9", "conv_1"]


def test_load_selects_most_recent_conversation() -> None:
    api = FakeApi(
        [
            _conversation("conv_2", "2026-01-01T10:00:00.000Z"),
            _conversation("conv_1", "2026-01-01T09:00:00.000Z"),
        ]
    )
    controller = ClientSyncController(api=api, push_url="ws://inbox.test/api/ws")  # type: ignore[arg-type]

    asyncio.run(controller.load())

    assert controller.selected is not None
    assert controller.selected.id == "conv_2"
    assert controller.ai_config.api_key == "key-1"
    assert [value.name for value in controller.services] == ["Facial"]


def test_update_replaces_selection_with_same_id_and_notifies() -> None:
    api = FakeApi([_conversation("conv_1", "2026-01-01T09:00:00.000Z")])
    controller = ClientSyncController(api=api, push_url="ws://inbox.test/api/ws")  # type: ignore[arg-type]
    changes: list[ConversationChange] = []
    controller.subscribe(changes.append)
    asyncio.run(controller.load())
    updated = _conversation("conv_1", "2026-01-01T09:05:00.000Z", text="second", unread=2)

    controller.apply_update(updated)

    assert controller.selected == updated
    assert len(changes) == 1
    assert changes[0].previous is not None
    assert changes[0].previous.messages[-1].text == "hello"
    assert changes[0].local is False


def test_unread_total_and_customers_follow_local_state() -> None:
    api = FakeApi(
        [
            _conversation("conv_1", "2026-01-01T09:00:00.000Z", unread=2),
            _conversation("conv_2", "2026-01-01T10:00:00.000Z", unread=3),
        ]
    )
    controller = ClientSyncController(api=api, push_url="ws://inbox.test/api/ws")  # type: ignore[arg-type]
    asyncio.run(controller.load())

    assert controller.unread_total == 5
    assert {value.id for value in controller.customers} == {"1", "2"}


def test_reconnect_state_keeps_single_pending_timer() -> None:
    async def run() -> None:
        loop = asyncio.get_running_loop()
        state = ReconnectState(base_delay=10.0)
        fired: list[str] = []

        state.schedule(loop, lambda: fired.append("first"))
        first_handle = state.handle
        state.schedule(loop, lambda: fired.append("second"))

        assert first_handle is not None and first_handle.cancelled()
        assert state.pending
        assert state.attempt == 2
        assert state.next_delay == 10.0
        state.reset()
        assert not state.pending
        assert state.attempt == 0

    asyncio.run(run())


def test_reconnect_state_backoff_is_capped() -> None:
    async def run() -> list[float]:
        loop = asyncio.get_running_loop()
        state = ReconnectState(base_delay=1.0, backoff_factor=2.0, max_delay=5.0)
        delays = [state.schedule(loop, lambda: None) for _ in range(5)]
        state.cancel()
        return delays

    assert asyncio.run(run()) == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_push_frames_merge_and_close_schedules_reconnect() -> None:
    update = _conversation("conv_1", "2026-01-01T12:00:00.000Z", text="pushed")
    socket = FakeSocket([update.model_dump_json(), "{not a conversation"])

    async def connect(url: str) -> FakeSocket:
        assert url == "ws://inbox.test/api/ws"
        return socket

    async def run() -> ClientSyncController:
        controller = ClientSyncController(
            api=FakeApi([_conversation("conv_1", "2026-01-01T09:00:00.000Z")]),  # type: ignore[arg-type]
            push_url="ws://inbox.test/api/ws",
            reconnect=ReconnectState(base_delay=30.0),
            connect=connect,
        )
        await controller.start()
        await controller.wait_closed()
        assert controller.reconnect.pending
        assert controller.reconnect.attempt == 1
        await controller.stop()
        assert not controller.reconnect.pending
        return controller

    controller = asyncio.run(run())

    assert controller.conversations[0].messages[-1].text == "pushed"
    assert controller.selected is not None
    assert controller.selected.messages[-1].text == "pushed"


def test_socket_error_closes_socket_and_reconnects() -> None:
    socket = FakeSocket([], error=WebSocketException("protocol error"))

    async def connect(url: str) -> FakeSocket:
        return socket

    async def run() -> ClientSyncController:
        controller = ClientSyncController(
            api=FakeApi([]),  # type: ignore[arg-type]
            push_url="ws://inbox.test/api/ws",
            reconnect=ReconnectState(base_delay=30.0),
            connect=connect,
        )
        await controller.start()
        await controller.wait_closed()
        pending = controller.reconnect.pending
        await controller.stop()
        assert pending
        return controller

    asyncio.run(run())

    assert socket.closed is True


def test_failed_connects_retry_until_open_resets_backoff() -> None:
    update = _conversation("conv_5", "2026-01-01T12:00:00.000Z")
    outcomes: list[object] = [OSError("refused"), OSError("refused"), FakeSocket([update.model_dump_json()])]
    attempts: list[str] = []

    async def connect(url: str) -> FakeSocket:
        attempts.append(url)
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome  # type: ignore[return-value]

    async def run() -> ReconnectState:
        received = asyncio.Event()
        controller = ClientSyncController(
            api=FakeApi([]),  # type: ignore[arg-type]
            push_url="ws://inbox.test/api/ws",
            reconnect=ReconnectState(base_delay=0.001, backoff_factor=2.0, max_delay=0.004),
            connect=connect,
        )
        controller.subscribe(lambda change: received.set())
        await controller.start()
        await asyncio.wait_for(received.wait(), timeout=5)
        await controller.wait_closed()
        state = controller.reconnect
        attempt, next_delay = state.attempt, state.next_delay
        await controller.stop()
        assert attempt == 1
        assert next_delay == pytest.approx(0.002)
        return state

    asyncio.run(run())

    assert len(attempts) == 3


def test_start_retries_initial_load_until_server_answers() -> None:
    api = FakeApi([_conversation("conv_1", "2026-01-01T09:00:00.000Z")], failed_loads=2)

    async def connect(url: str) -> FakeSocket:
        return FakeSocket([])

    async def run() -> ClientSyncController:
        controller = ClientSyncController(
            api=api,  # type: ignore[arg-type]
            push_url="ws://inbox.test/api/ws",
            reconnect=ReconnectState(base_delay=0.001),
            connect=connect,
        )
        await controller.start()
        assert controller.reconnect.attempt == 0
        await controller.stop()
        return controller

    controller = asyncio.run(run())

    assert api.fetch_calls == 3
    assert [value.id for value in controller.conversations] == ["conv_1"]


def test_reconnect_reloads_and_reports_missed_conversations() -> None:
    missed = _conversation("conv_2", "2026-01-01T10:00:00.000Z", text="anyone there?")
    api = FakeApi([_conversation("conv_1", "2026-01-01T09:00:00.000Z")])
    connects: list[int] = []

    async def connect(url: str) -> FakeSocket:
        connects.append(len(connects))
        if len(connects) == 2:
            api.conversations.append(missed)
        if len(connects) > 2:
            raise OSError("refused")
        return FakeSocket([])

    async def run() -> tuple[ClientSyncController, list[ConversationChange]]:
        changes: list[ConversationChange] = []
        seen = asyncio.Event()
        controller = ClientSyncController(
            api=api,  # type: ignore[arg-type]
            push_url="ws://inbox.test/api/ws",
            reconnect=ReconnectState(base_delay=0.001),
            connect=connect,
        )

        def record(change: ConversationChange) -> None:
            changes.append(change)
            seen.set()

        controller.subscribe(record)
        await controller.start()
        await asyncio.wait_for(seen.wait(), timeout=5)
        await controller.stop()
        return controller, changes

    controller, changes = asyncio.run(run())

    assert api.fetch_calls == 2
    assert {value.id for value in controller.conversations} == {"conv_1", "conv_2"}
    assert [change.conversation.id for change in changes] == ["conv_2"]
    assert changes[0].previous is None
    assert changes[0].local is False
