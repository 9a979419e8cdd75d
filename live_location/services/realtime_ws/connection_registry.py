# live_location/services/realtime_ws/connection_registry.py
"""
Реестр WebSocket соединений.

Один пользователь — одно соединение. Реестр хранит подписки на топики,
время последней активности и закрывает соединения, которые молчат дольше
stale_after секунд.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Protocol, runtime_checkable

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from live_location.common.constants import (
    CloseCode,
    CloseReason,
    MessageType,
    TypeMsg,
)
from live_location.common.logger import get_logger, log_error, log_info
from live_location.shared.codec import encode, to_wire
from live_location.shared.models.user import User

logger = get_logger("connection_registry")

DEFAULT_STALE_AFTER = 120.0


# =============================================================================
# ТРАНСПОРТ
# =============================================================================

@runtime_checkable
class Transport(Protocol):
    """Двунаправленный канал одного клиента."""

    @property
    def is_open(self) -> bool: ...

    async def send_text(self, data: str) -> None: ...

    async def ping(self) -> None: ...

    async def close(self, code: int = CloseCode.NORMAL, reason: str = "") -> None: ...


class StarletteTransport:
    """
    Транспорт поверх FastAPI/Starlette WebSocket.

    У Starlette нет API для ping-кадров, поэтому ping — это SYSTEM-конверт
    keep-alive. Протокольные ping/pong отправляет сам uvicorn.
    """

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket

    @property
    def websocket(self) -> WebSocket:
        return self._websocket

    @property
    def is_open(self) -> bool:
        return (
            self._websocket.client_state == WebSocketState.CONNECTED
            and self._websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_text(self, data: str) -> None:
        await self._websocket.send_text(data)

    async def ping(self) -> None:
        keep_alive = encode(type=MessageType.SYSTEM, payload={"action": "ping"})
        await self._websocket.send_text(to_wire(keep_alive))

    async def close(self, code: int = CloseCode.NORMAL, reason: str = "") -> None:
        if WebSocketState.DISCONNECTED in (
            self._websocket.application_state,
            self._websocket.client_state,
        ):
            return
        await self._websocket.close(code=code, reason=reason)


# =============================================================================
# СОЕДИНЕНИЕ
# =============================================================================

@dataclass
class Connection:
    """Запись реестра. Транспортом владеет только эта запись."""
    transport: Transport
    user: User
    last_activity: float
    subscriptions: set[str] = field(default_factory=set)
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def user_id(self) -> str:
        return self.user.id


class ConnectionRegistry:
    """
    Реестр соединений.

    Поддерживает:
    - Регистрацию с заменой предыдущего соединения пользователя
    - Подписки на топики (order:{id}, driver:{id})
    - Периодическую проверку живости
    - Корректное завершение всех соединений

    Все изменения таблиц идут под одним asyncio.Lock,
    ввод-вывод транспорта — вне блокировки.
    """

    def __init__(
        self,
        stale_after: float = DEFAULT_STALE_AFTER,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.stale_after = stale_after
        self._clock = clock
        self._lock = asyncio.Lock()

        # user_id -> Connection
        self._connections: dict[str, Connection] = {}

        # topic -> set of user_ids
        self._topics: dict[str, set[str]] = {}

        self._sweep_task: asyncio.Task | None = None

        # Для статистики
        self._total_connections: int = 0
        self._total_evicted: int = 0

    # -------------------------------------------------------------------------
    # Регистрация
    # -------------------------------------------------------------------------

    async def register(self, user: User, transport: Transport) -> Connection:
        """
        Регистрирует соединение пользователя.

        Если у пользователя уже есть соединение — оно закрывается с кодом 4000.
        """
        connection = Connection(transport=transport, user=user, last_activity=self._clock())

        async with self._lock:
            previous = self._connections.pop(user.id, None)
            if previous is not None:
                self._drop_topics(previous)
            self._connections[user.id] = connection
            self._total_connections += 1

        if previous is not None and previous.transport is not transport:
            await log_info(
                f"Соединение пользователя {user.id} заменено новым",
                type_msg=TypeMsg.INFO,
            )
            await self._close_transport(previous.transport, CloseCode.REPLACED, CloseReason.REPLACED)

        return connection

    async def deregister(self, user_id: str, transport: Transport | None = None) -> bool:
        """
        Удаляет соединение. Повторный вызов ничего не делает.

        Если передан transport — запись удаляется, только если она всё ещё
        владеет этим транспортом.
        """
        async with self._lock:
            connection = self._connections.get(user_id)
            if connection is None:
                return False
            if transport is not None and connection.transport is not transport:
                return False
            del self._connections[user_id]
            self._drop_topics(connection)
        return True

    async def touch(self, user_id: str) -> None:
        """Обновляет время последней активности."""
        async with self._lock:
            connection = self._connections.get(user_id)
            if connection is not None:
                connection.last_activity = self._clock()

    # -------------------------------------------------------------------------
    # Подписки
    # -------------------------------------------------------------------------

    async def subscribe(self, user_id: str, topics: Iterable[str]) -> list[str]:
        """
        Подписывает пользователя на топики.

        Returns:
            Список новых подписок (пустой, если соединения нет)
        """
        added: list[str] = []
        async with self._lock:
            connection = self._connections.get(user_id)
            if connection is None:
                return added
            for topic in topics:
                if not topic or topic in connection.subscriptions:
                    continue
                connection.subscriptions.add(topic)
                self._topics.setdefault(topic, set()).add(user_id)
                added.append(topic)
        return added

    async def unsubscribe(self, user_id: str, topics: Iterable[str]) -> list[str]:
        """Отписывает пользователя от топиков."""
        removed: list[str] = []
        async with self._lock:
            connection = self._connections.get(user_id)
            if connection is None:
                return removed
            for topic in topics:
                if topic not in connection.subscriptions:
                    continue
                connection.subscriptions.discard(topic)
                self._discard_from_topic(user_id, topic)
                removed.append(topic)
        return removed

    def _drop_topics(self, connection: Connection) -> None:
        for topic in connection.subscriptions:
            self._discard_from_topic(connection.user_id, topic)

    def _discard_from_topic(self, user_id: str, topic: str) -> None:
        subscribers = self._topics.get(topic)
        if subscribers is None:
            return
        subscribers.discard(user_id)
        if not subscribers:
            del self._topics[topic]

    # -------------------------------------------------------------------------
    # Чтение
    # -------------------------------------------------------------------------

    def get(self, user_id: str) -> Connection | None:
        return self._connections.get(user_id)

    def snapshot(self) -> list[Connection]:
        """Копия списка соединений для обхода без блокировки."""
        return list(self._connections.values())

    def subscribers(self, topic: str) -> list[Connection]:
        """Соединения, подписанные на топик (снимок)."""
        user_ids = list(self._topics.get(topic, ()))
        return [self._connections[uid] for uid in user_ids if uid in self._connections]

    def get_user_subscriptions(self, user_id: str) -> set[str]:
        connection = self._connections.get(user_id)
        if connection is None:
            return set()
        return connection.subscriptions.copy()

    def get_connected_users(self) -> list[str]:
        return list(self._connections)

    def get_connection_count(self) -> int:
        return len(self._connections)

    def get_stats(self) -> dict[str, Any]:
        """Получить статистику."""
        return {
            "active_connections": len(self._connections),
            "total_topics": len(self._topics),
            "total_connections_ever": self._total_connections,
            "total_evicted": self._total_evicted,
            "connections_by_role": self._count_by_role(),
        }

    def _count_by_role(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for connection in self._connections.values():
            role = connection.user.role.value
            counts[role] = counts.get(role, 0) + 1
        return counts

    # -------------------------------------------------------------------------
    # Живость
    # -------------------------------------------------------------------------

    async def sweep(self) -> list[str]:
        """
        Один проход проверки живости.

        Соединения без активности дольше stale_after закрываются с кодом 1000
        и удаляются, остальным отправляется ping.

        Returns:
            ID удалённых пользователей
        """
        now = self._clock()
        stale: list[Connection] = []
        alive: list[Connection] = []

        async with self._lock:
            for user_id, connection in list(self._connections.items()):
                if now - connection.last_activity > self.stale_after:
                    del self._connections[user_id]
                    self._drop_topics(connection)
                    stale.append(connection)
                else:
                    alive.append(connection)
            self._total_evicted += len(stale)

        for connection in stale:
            await log_info(
                f"Закрытие неактивного соединения: {connection.user_id}",
                type_msg=TypeMsg.INFO,
            )
            await self._close_transport(connection.transport, CloseCode.NORMAL, CloseReason.STALE)

        for connection in alive:
            try:
                await connection.transport.ping()
            except Exception as e:
                await log_error(f"Ошибка ping для {connection.user_id}: {e}")

        return [c.user_id for c in stale]

    def start_liveness_sweep(self, interval: float) -> asyncio.Task:
        """Запускает периодический sweep. Повторный вызов возвращает текущую задачу."""
        if self._sweep_task is not None and not self._sweep_task.done():
            return self._sweep_task
        self._sweep_task = asyncio.create_task(self._sweep_loop(interval))
        return self._sweep_task

    async def stop_liveness_sweep(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except Exception as e:
                await log_error(f"Ошибка проверки живости соединений: {e}", exc_info=True)

    async def shutdown(self) -> None:
        """Останавливает sweep и закрывает все соединения с кодом 1001."""
        await self.stop_liveness_sweep()

        async with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()
            self._topics.clear()

        for connection in connections:
            await self._close_transport(connection.transport, CloseCode.GOING_AWAY, CloseReason.SHUTDOWN)

        if connections:
            await log_info(
                f"Закрыто соединений при остановке: {len(connections)}",
                type_msg=TypeMsg.INFO,
            )

    async def _close_transport(self, transport: Transport, code: int, reason: str) -> None:
        """Закрыть транспорт. Ошибки уже разорванного канала только логируются."""
        try:
            await transport.close(code, reason)
        except Exception as e:
            logger.debug(f"Транспорт уже закрыт ({code} {reason}): {e}")
