# tests/client/test_session.py
"""
Тесты клиентской сессии: переподключение, трекинг, подписки.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable
from unittest.mock import MagicMock

import pytest

from live_location.client import ClientSession, ManualPositionSource, PositionOptions
from live_location.common.constants import (
    ConnectionPhase,
    MessageType,
    SubscriptionAction,
    UserRole,
)
from live_location.common.errors import ReconnectExhausted
from live_location.client.session import with_token
from live_location.shared.codec import build_subscription, decode, to_wire


class FakeWebSocket:
    """WebSocket клиента в памяти."""

    def __init__(self) -> None:
        self.sent: list[str] = []
        self.close_code: int | None = None
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, data: str) -> None:
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.drop(code)

    def feed(self, raw: str | Exception) -> None:
        self._incoming.put_nowait(raw)

    def drop(self, code: int = 1006) -> None:
        if self.close_code is None:
            self.close_code = code
            self._incoming.put_nowait(None)

    def of_type(self, msg_type: MessageType) -> list:
        return [e for e in map(decode, self.sent) if e.type is msg_type]

    def __aiter__(self) -> "FakeWebSocket":
        return self

    async def __anext__(self) -> str:
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item


class FakeConnector:
    """Фабрика соединений: первые `failures` попыток падают."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.urls: list[str] = []
        self.sockets: list[FakeWebSocket] = []

    async def __call__(self, url: str) -> FakeWebSocket:
        self.urls.append(url)
        if len(self.urls) <= self.failures:
            raise OSError("Connection refused")
        websocket = FakeWebSocket()
        self.sockets.append(websocket)
        return websocket


class SlowConnector(FakeConnector):
    """Фабрика, у которой открытие висит до release."""

    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()

    async def __call__(self, url: str) -> FakeWebSocket:
        self.urls.append(url)
        await self.release.wait()
        websocket = FakeWebSocket()
        self.sockets.append(websocket)
        return websocket


async def wait_until(
predicate: Callable[[], Any], timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def make_session(connector: FakeConnector, **kwargs) -> ClientSession:
    options: dict[str, Any] = {
        "sender_id": "D1",
        "sender_role": UserRole.DRIVER,
        "order_id": "O1",
        "client_id": "client_1",
        "update_interval": 0.01,
        "reconnect_interval": 0.0,
        "max_reconnect_attempts": 3,
        "position_options": PositionOptions(),
        "connect": connector,
    }
    options.update(kwargs)
    return ClientSession("ws://relay.local/ws", **options)


def test_with_token() -> None:
    assert with_token("ws://h/ws", None) == "ws://h/ws"
    assert with_token("ws://h/ws", "abc") == "ws://h/ws?token=abc"
    assert with_token("ws://h/ws?v=1", "a b") == "ws://h/ws?v=1&token=a+b"


class TestConnection:
    """Подключение и переподключение."""

    @pytest.mark.asyncio
    async def test_open_sends_identify(self) -> None:
        connector = FakeConnector()
        on_open = MagicMock()
        session = make_session(connector, token="secret", on_open=on_open)

        await wait_until(lambda: session.is_open)

        assert connector.urls == ["ws://relay.local/ws?token=secret"]
        [identify] = connector.sockets[0].of_type(MessageType.AUTHENTICATION)
        assert identify.sender_id == "D1"
        assert identify.payload.client_id == "client_1"
        on_open.assert_called_once()

        await session.close_connection()

    @pytest.mark.asyncio
    async def test_exhaustion_after_max_failed_opens(self) -> None:
        connector = FakeConnector(failures=100)
        exhausted = MagicMock()
        errors = MagicMock()
        session = make_session(connector, on_reconnect_exhausted=exhausted, on_error=errors)

        with pytest.raises(ReconnectExhausted) as exc_info:
            await asyncio.wait_for(session.wait_closed(), 1.0)

        assert len(connector.urls) == 3
        assert exc_info.value.attempts == 3
        assert session.phase is ConnectionPhase.CLOSED
        assert errors.call_count == 3
        exhausted.assert_called_once_with(session.exhausted)

    @pytest.mark.asyncio
    async def test_successful_open_resets_attempts(self) -> None:
        connector = FakeConnector(failures=2)
        session = make_session(connector)

        await wait_until(lambda: session.is_open)

        assert len(connector.urls) == 3
        assert session.reconnect_attempts == 0
        await session.close_connection()

    @pytest.mark.asyncio
    async def test_reconnect_after_drop(self) -> None:
        connector = FakeConnector()
        closes: list = []
        session = make_session(connector, on_close=closes.append)
        await wait_until(lambda: session.is_open)

        connector.sockets[0].drop(1006)
        await wait_until(lambda: len(connector.sockets) == 2 and session.is_open)

        assert closes == [1006]
        assert connector.sockets[1].of_type(MessageType.AUTHENTICATION)
        await session.close_connection()

    @pytest.mark.asyncio
    async def test_close_connection_prevents_reconnect(self) -> None:
        connector = FakeConnector()
        session = make_session(connector)
        await wait_until(lambda: session.is_open)

        await session.close_connection()
        await asyncio.sleep(0.05)

        assert connector.sockets[0].close_code == 1000
        assert len(connector.urls) == 1
        assert session.phase is ConnectionPhase.CLOSED
        await asyncio.wait_for(session.wait_closed(), 1.0)

    @pytest.mark.asyncio
    async def test_close_during_reconnect_wait(self) -> None:
        connector = FakeConnector(failures=1)
        session = make_session(connector, reconnect_interval=0.2)
        await wait_until(lambda: session.phase is ConnectionPhase.RECONNECTING)

        await session.close_connection()
        await asyncio.sleep(0.3)

        assert len(connector.urls) == 1
        assert session.phase is ConnectionPhase.CLOSED
        await asyncio.wait_for(session.wait_closed(), 1.0)

    @pytest.mark.asyncio
    async def test_close_during_inflight_connect(self) -> None:
        connector = SlowConnector()
        session = make_session(connector)
        await wait_until(lambda: connector.urls)
        assert session.phase is ConnectionPhase.CONNECTING

        await session.close_connection()
        connector.release.set()
        await asyncio.sleep(0.05)

        assert len(connector.urls) == 1
        assert connector.sockets == []
        assert session.phase is ConnectionPhase.CLOSED
        await asyncio.wait_for(session.wait_closed(), 1.0)

    @pytest.mark.asyncio
    async def test_send_message_when_closed(self) -> None:
        session = make_session(FakeConnector(), autoconnect=False)

        assert session.phase is ConnectionPhase.DISCONNECTED
        assert await session.send_message({"a": 1}) is False
        assert await session.send_location() is False


class TestMessages:
    """Входящие сообщения."""

    @pytest.mark.asyncio
    async def test_subscription_updates_local_set(self) -> None:
        connector = FakeConnector()
        received: list = []
        session = make_session(connector, sender_role=UserRole.CUSTOMER, on_message=received.append)
        await wait_until(lambda: session.is_open)
        websocket = connector.sockets[0]

        websocket.feed("garbage")
        websocket.feed(to_wire(build_subscription(
            "system", UserRole.SYSTEM, SubscriptionAction.SUBSCRIBE, ["order:O1", "driver:D1"],
        )))
        await wait_until(lambda: len(received) == 1)
        assert session.subscriptions == {"order:O1", "driver:D1"}

        websocket.feed(to_wire(build_subscription(
            "system", UserRole.SYSTEM, SubscriptionAction.UNSUBSCRIBE, ["driver:D1"],
        )))
        await wait_until(lambda: len(received) == 2)
        assert session.subscriptions == {"order:O1"}

        await session.close_connection()

    @pytest.mark.asyncio
    async def test_async_callback(self) -> None:
        connector = FakeConnector()
        received: list = []

        async def on_message(envelope) -> None:
            received.append(envelope)

        session = make_session(connector, on_message=on_message)
        await wait_until(lambda: session.is_open)

        connector.sockets[0].feed('{"type": "SYSTEM", "senderId": "system", "senderRole": "SYSTEM"}')
        await wait_until(lambda: len(received) == 1)

        assert received[0].type is MessageType.SYSTEM
        await session.close_connection()


class TestCallbackErrors:
    """Ошибки колбэков и чтения не ломают переподключение."""

    @pytest.mark.asyncio
    async def test_on_open_error_keeps_reconnect(self) -> None:
        connector = FakeConnector()
        on_open = MagicMock(side_effect=ValueError("boom"))
        session = make_session(connector, on_open=on_open)
        await wait_until(lambda: session.is_open)

        connector.sockets[0].drop()
        await wait_until(lambda: len(connector.sockets) == 2 and session.is_open)

        assert on_open.call_count == 2
        await session.close_connection()

    @pytest.mark.asyncio
    async def test_on_message_error_keeps_socket(self) -> None:
        connector = FakeConnector()
        received: list = []

        def on_message(envelope) -> None:
            received.append(envelope)
            raise ValueError("boom")

        session = make_session(connector, on_message=on_message)
        await wait_until(lambda: session.is_open)
        websocket = connector.sockets[0]

        frame = '{"type": "SYSTEM", "senderId": "system", "senderRole": "SYSTEM"}'
        websocket.feed(frame)
        websocket.feed(frame)
        await wait_until(lambda: len(received) == 2)

        assert len(connector.sockets) == 1
        assert websocket.close_code is None
        assert session.is_open
        await session.close_connection()

    @pytest.mark.asyncio
    async def test_on_close_error_keeps_reconnect(self) -> None:
        connector = FakeConnector()

        async def on_close(code) -> None:
            raise ValueError("boom")

        session = make_session(connector, on_close=on_close)
        await wait_until(lambda: session.is_open)

        connector.sockets[0].drop(1006)
        await wait_until(lambda: len(connector.sockets) == 2 and session.is_open)

        await session.close_connection()
        assert session.phase is ConnectionPhase.CLOSED

    @pytest.mark.asyncio
    async def test_read_error_closes_socket_and_reconnects(self) -> None:
        connector = FakeConnector()
        errors = MagicMock()
        session = make_session(connector, on_error=errors)
        await wait_until(lambda: session.is_open)

        connector.sockets[0].feed(RuntimeError("read failed"))
        await wait_until(lambda: len(connector.sockets) == 2 and session.is_open)

        assert connector.sockets[0].close_code == 1011
        errors.assert_called_once()
        await session.close_connection()


class TestTracking:
    """Сбор и отправка позиции."""

    @pytest.mark.asyncio
    async def test_tracking_sends_latest_position(self) -> None:
        connector = FakeConnector()
        source = ManualPositionSource()
        session = make_session(connector, position_source=source)
        await wait_until(lambda: session.is_open)
        websocket = connector.sockets[0]

        session.start_tracking()
        source.push({"latitude": 37.0, "longitude": -122.0}, timestamp=1700000000000)
        await wait_until(lambda: websocket.of_type(MessageType.LOCATION_UPDATE))

        update = websocket.of_type(MessageType.LOCATION_UPDATE)[0]
        assert update.order_id == "O1"
        assert update.sender_role is UserRole.DRIVER
        assert update.payload.coordinates.latitude == 37.0
        assert update.payload.timestamp == 1700000000000

        session.stop_tracking()
        assert source.active_watches == 0
        assert session.tracking_active is False
        await session.close_connection()

    @pytest.mark.asyncio
    async def test_no_position_nothing_sent(self) -> None:
        connector = FakeConnector()
        session = make_session(connector)
        await wait_until(lambda: session.is_open)

        session.start_tracking()
        await asyncio.sleep(0.05)

        assert connector.sockets[0].of_type(MessageType.LOCATION_UPDATE) == []
        await session.close_connection()

    @pytest.mark.asyncio
    async def test_tracking_resumes_after_reconnect(self) -> None:
        connector = FakeConnector()
        source = ManualPositionSource()
        session = make_session(connector, position_source=source)
        await wait_until(lambda: session.is_open)
        session.start_tracking()

        connector.sockets[0].drop()
        await wait_until(lambda: len(connector.sockets) == 2 and session.is_open)

        assert session.tracking_active is True
        assert source.active_watches == 1
        source.push({"latitude": 1.0, "longitude": 2.0})
        await wait_until(lambda: connector.sockets[1].of_type(MessageType.LOCATION_UPDATE))
        await session.close_connection()

    @pytest.mark.asyncio
    async def test_position_error_is_logged(self) -> None:
        source = ManualPositionSource()
        session = make_session(FakeConnector(), position_source=source, autoconnect=False)
        session.start_tracking()

        source.fail(TimeoutError("no fix"))

        assert session.last_position is None
        session.stop_tracking()
