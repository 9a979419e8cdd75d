"""
Рассылка сообщений по соединениям реестра.
"""

from __future__ import annotations

from live_location.common.constants import TypeMsg
from live_location.common.logger import log_error, log_info
from live_location.services.realtime_ws.connection_registry import (
    Connection,
    ConnectionRegistry,
)
from live_location.shared.codec import Outbound, to_frame


class Router:
    """
    Доставка кадров пользователям, подписчикам топика и всем.

    Ошибки записи не пробрасываются: соединение удаляется из реестра,
    вызывающий получает False / меньший счётчик.
    """

    def __init__(self, registry: ConnectionRegistry) -> None:
        self._registry = registry
        self._total_messages_sent: int = 0

    @property
    def total_messages_sent(self) -> int:
        return self._total_messages_sent

    async def send_to_user(self, user_id: str, message: Outbound) -> bool:
        """
        Отправить сообщение конкретному пользователю.

        Returns:
            True если сообщение отправлено, False если пользователь не подключен
            или запись не удалась
        """
        connection = self._registry.get(user_id)
        if connection is None:
            return False
        return await self._deliver(connection, to_frame(message))

    async def send_to_topic(self, topic: str, message: Outbound) -> int:
        """
        Отправить сообщение всем подписчикам топика.

        Returns:
            Количество успешно отправленных сообщений
        """
        connections = self._registry.subscribers(topic)
        if not connections:
            return 0
        return await self._fan_out(connections, to_frame(message))

    async def broadcast(self, message: Outbound) -> int:
        """Отправить сообщение всем подключенным клиентам."""
        return await self._fan_out(self._registry.snapshot(), to_frame(message))

    async def _fan_out(self, connections: list[Connection], frame: str) -> int:
        sent_count = 0
        for connection in connections:
            if await self._deliver(connection, frame):
                sent_count += 1
        return sent_count

    async def _deliver(self, connection: Connection, frame: str) -> bool:
        transport = connection.transport
        if not transport.is_open:
            await log_info(
                f"Соединение {connection.user_id} закрыто, сообщение не доставлено",
                type_msg=TypeMsg.DEBUG,
            )
            await self._registry.deregister(connection.user_id, transport)
            return False

        try:
            await transport.send_text(frame)
        except Exception as e:
            await log_error(f"Ошибка отправки пользователю {connection.user_id}: {e}")
            await self._registry.deregister(connection.user_id, transport)
            return False

        self._total_messages_sent += 1
        return True
