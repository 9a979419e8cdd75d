"""
Клиентская сессия живой локации.

Держит WebSocket к релею, переподключается с ограниченным числом попыток,
собирает позицию устройства и раз в update_interval отправляет последнюю
известную точку.

Фазы: DISCONNECTED -> CONNECTING -> OPEN -> RECONNECTING -> CONNECTING ... -> CLOSED
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any, Awaitable, Callable
from urllib.parse import urlencode, urlsplit, urlunsplit
from uuid import uuid4

import websockets
from websockets.exceptions import ConnectionClosed

from live_location.client.position import (
    ManualPositionSource,
    Position,
    PositionOptions,
    PositionSource,
)
from live_location.common.constants import (
    CloseCode,
    CloseReason,
    ConnectionPhase,
    MessageType,
    SubscriptionAction,
    TypeMsg,
    UserRole,
)
from live_location.common.errors import MalformedMessage, ReconnectExhausted
from live_location.common.logger import get_logger, log_error, log_info, log_warning
from live_location.shared.codec import (
    Outbound,
    build_identify,
    build_location_update,
    decode,
    to_frame,
)
from live_location.shared.models.envelope import Envelope, SubscriptionPayload

LOGGER_NAME = "live_location.client"

Connector = Callable[[str], Awaitable[Any]]
Callback = Callable[..., Any]


def with_token(url: str, token: str | None) -> str:
    """Добавляет ?token= к URL, если токен задан."""
    if not token:
        return url
    parts = urlsplit(url)
    query = f"{parts.query}&" if parts.query else ""
    return urlunsplit(parts._replace(query=query + urlencode({"token": token})))


async def _maybe_await(callback: Callback | None, *args: Any) -> None:
    """Вызывает пользовательский колбэк. Его ошибки логируются и не ломают сессию."""
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        name = getattr(callback, "__name__", repr(callback))
        await log_error(f"Ошибка в колбэке {name}: {e}", logger_name=LOGGER_NAME, exc_info=True)


class ClientSession:
    """
    Сессия клиента релея.

    Создание сессии сразу планирует подключение на текущем event loop,
    поэтому конструировать её нужно внутри корутины.
    """

    def __init__(
        self,
        url: str,
        *,
        sender_id: str | None = None,
        sender_role: UserRole = UserRole.DRIVER,
        order_id: str | None = None,
        client_id: str | None = None,
        token: str | None = None,
        update_interval: float | None = None,
        reconnect_interval: float | None = None,
        max_reconnect_attempts: int | None = None,
        position_source: PositionSource | None = None,
        position_options: PositionOptions | None = None,
        on_open: Callback | None = None,
        on_message: Callback | None = None,
        on_error: Callback | None = None,
        on_close: Callback | None = None,
        on_reconnect_exhausted: Callback | None = None,
        connect: Connector | None = None,
        autoconnect: bool = True,
    ) -> None:
        if (
            update_interval is None
            or reconnect_interval is None
            or max_reconnect_attempts is None
            or position_options is None
        ):
            from live_location.config import settings
            client = settings.client
            update_interval = client.UPDATE_INTERVAL if update_interval is None else update_interval
            reconnect_interval = client.RECONNECT_INTERVAL if reconnect_interval is None else reconnect_interval
            if max_reconnect_attempts is None:
                max_reconnect_attempts = client.MAX_RECONNECT_ATTEMPTS
            position_options = position_options or PositionOptions(
                enable_high_accuracy=client.HIGH_ACCURACY,
                timeout=client.POSITION_TIMEOUT,
            )

        self.url = url
        self.client_id = client_id or f"client_{uuid4().hex}"
        self.sender_id = sender_id or self.client_id
        self.sender_role = sender_role
        self.order_id = order_id
        self.token = token

        self.update_interval = update_interval
        self.reconnect_interval = reconnect_interval
        self.max_reconnect_attempts = max_reconnect_attempts
        self.position_source: PositionSource = position_source or ManualPositionSource()
        self.position_options = position_options

        self.on_open = on_open
        self.on_message = on_message
        self.on_error = on_error
        self.on_close = on_close
        self.on_reconnect_exhausted = on_reconnect_exhausted
        self._connect: Connector = connect or websockets.connect

        # Состояние
        self.phase = ConnectionPhase.DISCONNECTED
        self.tracking_active = False
        self.last_position: Position | None = None
        self.reconnect_attempts = 0
        self.subscriptions: set[str] = set()
        self.exhausted: ReconnectExhausted | None = None

        self._websocket: Any = None
        self._closing = False
        self._runner: asyncio.Task | None = None
        self._ticker: asyncio.Task | None = None
        self._watch_id: int | None = None
        self._closed = asyncio.Event()

        if autoconnect:
            self.connect()

    # =========================================================================
    # СОЕДИНЕНИЕ
    # =========================================================================

    @property
    def is_open(self) -> bool:
        return self.phase is ConnectionPhase.OPEN and self._websocket is not None

    def connect(self) -> asyncio.Task:
        """Запускает цикл соединения, если он ещё не запущен."""
        if self._runner is None or self._runner.done():
            self._runner = asyncio.get_running_loop().create_task(self._run())
        return self._runner

    async def _run(self) -> None:
        try:
            while not self._closing:
                self.phase = ConnectionPhase.CONNECTING
                try:
                    websocket = await self._connect(with_token(self.url, self.token))
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.reconnect_attempts += 1
                    await log_warning(
                        f"Не удалось подключиться к {self.url} "
                        f"({self.reconnect_attempts}/{self.max_reconnect_attempts}): {e}",
                        logger_name=LOGGER_NAME,
                    )
                    await _maybe_await(self.on_error, e)
                    if self.reconnect_attempts >= self.max_reconnect_attempts:
                        await self._exhaust()
                        return
                    await self._wait_before_reconnect()
                    continue

                if self._closing:
                    await websocket.close(CloseCode.NORMAL, CloseReason.CLIENT_CLOSED)
                    break

                await self._serve(websocket)
                if self._closing:
                    break
                await self._wait_before_reconnect()
        finally:
            if self.phase is not ConnectionPhase.CLOSED and self._closing:
                self.phase = ConnectionPhase.CLOSED
                self._closed.set()

    async def _serve(self, websocket: Any) -> None:
        """Одно открытое соединение: от open до close."""
        self._websocket = websocket
        self.reconnect_attempts = 0
        self.phase = ConnectionPhase.OPEN
        await log_info(f"WebSocket подключён: {self.url}", type_msg=TypeMsg.INFO, logger_name=LOGGER_NAME)

        await self.send_message(build_identify(self.sender_id, self.sender_role, self.client_id))
        if self.tracking_active:
            self.start_tracking()
        await _maybe_await(self.on_open)

        try:
            async for raw in websocket:
                await self._dispatch(raw)
        except ConnectionClosed:
            pass
        except Exception as e:
            await log_error(f"Ошибка WebSocket: {e}", logger_name=LOGGER_NAME, exc_info=True)
            await _maybe_await(self.on_error, e)
            await self._abandon(websocket)
        finally:
            self._websocket = None
            self._stop_sampling()

        code = getattr(websocket, "close_code", None)
        await log_info(
            f"WebSocket отключён (code: {code})",
            type_msg=TypeMsg.INFO,
            logger_name=LOGGER_NAME,
        )
        await _maybe_await(self.on_close, code)

    async def _abandon(self, websocket: Any) -> None:
        """Закрывает сокет, с которым больше не работаем."""
        try:
            await websocket.close(CloseCode.INTERNAL_ERROR, CloseReason.CLIENT_ERROR)
        except Exception as e:
            await log_warning(f"Не удалось закрыть WebSocket: {e}", logger_name=LOGGER_NAME)

    async def _wait_before_reconnect(self) -> None:
        self.phase = ConnectionPhase.RECONNECTING
        await asyncio.sleep(self.reconnect_interval)

    async def _exhaust(self) -> None:
        self.exhausted = ReconnectExhausted(self.reconnect_attempts)
        self.phase = ConnectionPhase.CLOSED
        self._stop_sampling()
        self._closed.set()
        await log_error(self.exhausted.message, logger_name=LOGGER_NAME)
        await _maybe_await(self.on_reconnect_exhausted, self.exhausted)

    async def wait_closed(self) -> None:
        """
        Ждёт перехода в CLOSED.

        Raises:
            ReconnectExhausted: если сессия закрылась из-за исчерпания попыток
        """
        await self._closed.wait()
        if self.exhausted is not None:
            raise self.exhausted

    async def close_connection(self) -> None:
        """
        Закрывает соединение по инициативе клиента.

        Переподключения не будет, запланированная попытка отменяется.
        """
        self._closing = True
        self.stop_tracking()

        websocket, self._websocket = self._websocket, None
        if websocket is not None:
            try:
                await websocket.close(CloseCode.NORMAL, CloseReason.CLIENT_CLOSED)
            except ConnectionClosed:
                pass

        runner, self._runner = self._runner, None
        if runner is not None and not runner.done():
            runner.cancel()
            try:
                await runner
            except asyncio.CancelledError:
                pass

        if self.phase is not ConnectionPhase.CLOSED:
            self.phase = ConnectionPhase.CLOSED
            self._closed.set()

    # =========================================================================
    # СООБЩЕНИЯ
    # =========================================================================

    async def send_message(self, message: Outbound) -> bool:
        """
        Отправляет конверт, словарь или строку.

        Returns:
            False, если соединение не открыто или запись не удалась
        """
        websocket = self._websocket
        if websocket is None or self.phase is not ConnectionPhase.OPEN:
            return False
        try:
            await websocket.send(to_frame(message))
        except ConnectionClosed:
            return False
        except Exception as e:
            await log_error(f"Ошибка отправки сообщения: {e}", logger_name=LOGGER_NAME)
            return False
        return True

    async def _dispatch(self, raw: str | bytes) -> None:
        try:
            envelope = decode(raw)
        except MalformedMessage as e:
            await log_warning(f"Некорректное сообщение от сервера: {e.message}", logger_name=LOGGER_NAME)
            return

        if envelope.type is MessageType.SUBSCRIPTION:
            self._apply_subscription(envelope)

        await _maybe_await(self.on_message, envelope)

    def _apply_subscription(self, envelope: Envelope) -> None:
        payload: SubscriptionPayload = envelope.payload
        if payload.action is SubscriptionAction.SUBSCRIBE:
            self.subscriptions.update(payload.topics)
        else:
            self.subscriptions.difference_update(payload.topics)

    # =========================================================================
    # ТРЕКИНГ
    # =========================================================================

    def start_tracking(self) -> None:
        """
        Начинает сбор позиции и периодическую отправку.

        Повторный вызов перезапускает сбор. Флаг tracking_active переживает
        переподключения: после open трекинг возобновляется сам.
        """
        self._stop_sampling()
        self.tracking_active = True
        self._watch_id = self.position_source.watch_position(
            self._on_position,
            self._on_position_error,
            self.position_options,
        )
        self._ticker = asyncio.get_running_loop().create_task(self._tick_loop())

    def stop_tracking(self, clear_intent: bool = True) -> None:
        """Останавливает сбор позиции и таймер отправки."""
        self._stop_sampling()
        if clear_intent:
            self.tracking_active = False

    def _stop_sampling(self) -> None:
        if self._watch_id is not None:
            self.position_source.clear_watch(self._watch_id)
            self._watch_id = None
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None

    def _on_position(self, position: Position) -> None:
        self.last_position = position

    def _on_position_error(self, error: Exception) -> None:
        # Колбэк источника синхронный
        get_logger(LOGGER_NAME).error(f"Ошибка получения позиции: {error}")

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.update_interval)
            await self.send_location()

    async def send_location(self) -> bool:
        """
        Отправляет последнюю известную позицию.

        Пропускается, если позиции ещё нет или соединение не открыто.
        """
        position = self.last_position
        if position is None or not self.is_open:
            return False

        envelope = build_location_update(
            self.sender_id,
            self.sender_role,
            position.coordinates,
            order_id=self.order_id,
            device_timestamp=position.timestamp,
        )
        return await self.send_message(envelope)
