# live_location/infra/event_bus.py
"""
Мост в durable log на базе RabbitMQ.

Топики (location-updates, order-assignments) — routing key в durable topic
exchange. Каждая группа потребителей читает топик через свою durable очередь
`<group>.<topic>`. Процесс релея читает через собственную очередь
`<instance_id>.<topic>` (exclusive, auto_delete), поэтому каждый процесс
получает свою копию потока, а очереди упавших процессов брокер удаляет сам.
"""

from __future__ import annotations

import asyncio
import gzip
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable
from uuid import uuid4

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import (
    AbstractChannel,
    AbstractConnection,
    AbstractExchange,
    AbstractIncomingMessage,
    AbstractQueue,
)
from aio_pika.exceptions import AMQPError, ChannelInvalidStateError

from live_location.common.constants import TypeMsg
from live_location.common.errors import BridgeUnavailable
from live_location.common.logger import get_logger, log_error, log_info

logger = get_logger("event_bus")

KEY_HEADER = "x-key"
ORIGIN_HEADER = "x-origin"

COMPRESSION_NONE = "none"
COMPRESSION_GZIP = "gzip"


# =============================================================================
# СООБЩЕНИЕ ШИНЫ
# =============================================================================

@dataclass
class BridgeMessage:
    """Входящее сообщение из шины."""
    topic: str
    value: Any
    key: str | None = None
    origin: str | None = None
    headers: dict[str, Any] = field(default_factory=dict)


BridgeHandler = Callable[[BridgeMessage], Awaitable[None]]


def encode_value(value: Any) -> bytes:
    """Сериализует значение в JSON-байты."""
    if hasattr(value, "model_dump"):
        value = value.model_dump(mode="json", by_alias=True, exclude_none=True)
    return json.dumps(value, ensure_ascii=False, default=str).encode("utf-8")


def decode_value(body: bytes, content_encoding: str | None = None) -> Any:
    """JSON-значение из тела; нераспознанное тело возвращается как есть."""
    if content_encoding == COMPRESSION_GZIP:
        try:
            body = gzip.decompress(body)
        except OSError:
            return body
    try:
        return json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return body


# =============================================================================
# PRODUCER
# =============================================================================

class LocationBridgeProducer:
    """
    Публикация записей в durable log.

    acks: 0 — без подтверждения брокера, иначе ждём publisher confirm.
    compression: none | gzip.
    instance_id: уникален для каждого экземпляра, уходит в заголовок x-origin.
    """

    def __init__(
        self,
        url: str | None = None,
        exchange_name: str | None = None,
        client_id: str | None = None,
        acks: int | None = None,
        timeout: float | None = None,
        compression: str | None = None,
        instance_id: str | None = None,
    ) -> None:
        if url is None:
            from live_location.config import settings
            url = settings.rabbitmq.url
            exchange_name = exchange_name or settings.rabbitmq.RABBITMQ_EXCHANGE
            client_id = client_id or settings.rabbitmq.RABBITMQ_CLIENT_ID
            acks = settings.rabbitmq.BRIDGE_ACKS if acks is None else acks
            timeout = settings.rabbitmq.BRIDGE_TIMEOUT if timeout is None else timeout
            compression = compression or settings.rabbitmq.BRIDGE_COMPRESSION

        self._url = url
        self._exchange_name = exchange_name or "live_location.events"
        self.client_id = client_id or "live-location-service"
        self.instance_id = instance_id or f"{self.client_id}-{uuid4().hex[:8]}"
        self.acks = -1 if acks is None else acks
        self.timeout = 30.0 if timeout is None else timeout
        self.compression = compression or COMPRESSION_NONE

        self._connection: AbstractConnection | None = None
        # publisher_confirms -> (channel, exchange)
        self._channels: dict[bool, tuple[AbstractChannel, AbstractExchange]] = {}

    @property
    def is_connected(self) -> bool:
        """Проверяет, активно ли соединение."""
        return self._connection is not None and not self._connection.is_closed

    async def connect(self) -> None:
        """Подключается к RabbitMQ и объявляет exchange."""
        if self.is_connected:
            return

        await log_info("Подключение producer к RabbitMQ...", type_msg=TypeMsg.INFO)

        self._connection = await aio_pika.connect_robust(self._url, client_properties={
            "connection_name": f"{self.instance_id}-producer",
        })
        await self._exchange_for(confirm=True)

        await log_info("Producer подключён к RabbitMQ", type_msg=TypeMsg.INFO)

    async def disconnect(self) -> None:
        """Закрывает соединение с RabbitMQ."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            self._channels = {}
            await log_info("Producer отключён от RabbitMQ", type_msg=TypeMsg.INFO)

    async def _exchange_for(self, confirm: bool) -> AbstractExchange:
        if confirm in self._channels:
            return self._channels[confirm][1]
        if self._connection is None:
            raise BridgeUnavailable("Producer is not connected")

        channel = await self._connection.channel(publisher_confirms=confirm)
        exchange = await channel.declare_exchange(
            self._exchange_name,
            ExchangeType.TOPIC,
            durable=True,
        )
        self._channels[confirm] = (channel, exchange)
        return exchange

    def _build_message(self, key: str | None, value: Any, compression: str) -> Message:
        body = encode_value(value)
        content_encoding = None
        if compression == COMPRESSION_GZIP:
            body = gzip.compress(body)
            content_encoding = COMPRESSION_GZIP

        headers: dict[str, Any] = {ORIGIN_HEADER: self.instance_id}
        if key is not None:
            headers[KEY_HEADER] = key

        return Message(
            body=body,
            content_type="application/json",
            content_encoding=content_encoding,
            message_id=str(uuid4()),
            headers=headers,
            delivery_mode=DeliveryMode.PERSISTENT,
            timestamp=datetime.now(timezone.utc),
        )

    async def publish(
        self,
        topic: str,
        key: str | None,
        value: Any,
        acks: int | None = None,
        timeout: float | None = None,
        compression: str | None = None,
    ) -> None:
        """
        Публикует запись в топик.

        Args:
            topic: топик (routing key)
            key: ключ партиционирования (для локаций — orderId)
            value: JSON-совместимое значение или pydantic-модель

        Raises:
            BridgeUnavailable: нет соединения, брокер отклонил запись или таймаут
        """
        if not self.is_connected:
            raise BridgeUnavailable(
                "Не удалось опубликовать: нет соединения с RabbitMQ",
                {"topic": topic},
            )

        acks = self.acks if acks is None else acks
        timeout = self.timeout if timeout is None else timeout
        message = self._build_message(key, value, compression or self.compression)

        try:
            exchange = await self._exchange_for(confirm=acks != 0)
            await exchange.publish(
                message,
                routing_key=topic,
                mandatory=False,
                timeout=timeout,
            )
        except BridgeUnavailable:
            raise
        except (asyncio.TimeoutError, AMQPError, ChannelInvalidStateError) as e:
            raise BridgeUnavailable(
                f"Ошибка публикации в {topic}: {e!r}",
                {"topic": topic, "key": key},
            ) from e

        await log_info(
            f"Запись опубликована: {topic} key={key}",
            type_msg=TypeMsg.DEBUG,
        )

    async def publish_batch(
        self,
        topic: str,
        records: Iterable[tuple[str | None, Any]],
        acks: int | None = None,
        timeout: float | None = None,
        compression: str | None = None,
    ) -> int:
        """
        Публикует пачку (key, value) в один топик.

        Returns:
            Количество опубликованных записей

        Raises:
            BridgeUnavailable: на первой неудачной записи
        """
        count = 0
        for key, value in records:
            await self.publish(topic, key, value, acks=acks, timeout=timeout, compression=compression)
            count += 1
        return count


# =============================================================================
# CONSUMER
# =============================================================================

class LocationBridgeConsumer:
    """
    Чтение топиков durable log группой потребителей.

    Очередь на топик: `<group_id>.<topic>`, durable, привязана к exchange
    по routing key = топику. С instance_id очередь своя у экземпляра:
    `<instance_id>.<topic>`, exclusive, живёт пока живо соединение.
    """

    def __init__(
        self,
        url: str | None = None,
        exchange_name: str | None = None,
        group_id: str | None = None,
        prefetch_count: int | None = None,
        instance_id: str | None = None,
    ) -> None:
        if url is None:
            from live_location.config import settings
            url = settings.rabbitmq.url
            exchange_name = exchange_name or settings.rabbitmq.RABBITMQ_EXCHANGE
            group_id = group_id or settings.rabbitmq.consumer_group
            prefetch_count = prefetch_count or settings.rabbitmq.RABBITMQ_PREFETCH_COUNT

        self._url = url
        self._exchange_name = exchange_name or "live_location.events"
        self.group_id = group_id or "live-location-service-consumer"
        self._prefetch_count = prefetch_count or 10
        self.instance_id = instance_id

        self._connection: AbstractConnection | None = None
        self._channel: AbstractChannel | None = None
        self._exchange: AbstractExchange | None = None
        self._queues: dict[str, AbstractQueue] = {}
        # topic -> consumer tag
        self._consumer_tags: dict[str, str] = {}
        self._handler: BridgeHandler | None = None
        self._started = False

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    @property
    def topics(self) -> list[str]:
        return list(self._queues)

    def queue_name(self, topic: str) -> str:
        return f"{self.instance_id or self.group_id}.{topic}"

    def on_message(self, handler: BridgeHandler) -> None:
        """Устанавливает обработчик входящих сообщений."""
        self._handler = handler

    async def connect(self) -> None:
        if self.is_connected:
            return

        await log_info("Подключение consumer к RabbitMQ...", type_msg=TypeMsg.INFO)

        self._connection = await aio_pika.connect_robust(self._url, client_properties={
            "connection_name": self.instance_id or self.group_id,
        })
        self._channel = await self._connection.channel()
        await self._channel.set_qos(prefetch_count=self._prefetch_count)
        self._exchange = await self._channel.declare_exchange(
            self._exchange_name,
            ExchangeType.TOPIC,
            durable=True,
        )

        await log_info(f"Consumer {self.group_id} подключён к RabbitMQ", type_msg=TypeMsg.INFO)

    async def subscribe(self, topics: Iterable[str]) -> None:
        """
        Объявляет очереди группы для топиков.

        Если consumer уже запущен — чтение новых топиков начинается сразу.
        """
        if not self.is_connected or self._channel is None or self._exchange is None:
            raise BridgeUnavailable("Не удалось подписаться: нет соединения с RabbitMQ")

        for topic in topics:
            if topic in self._queues:
                continue
            if self.instance_id:
                queue = await self._channel.declare_queue(self.queue_name(topic), exclusive=True)
            else:
                queue = await self._channel.declare_queue(self.queue_name(topic), durable=True)
            await queue.bind(self._exchange, routing_key=topic)
            self._queues[topic] = queue
            await log_info(f"Подписка на топик: {topic}", type_msg=TypeMsg.DEBUG)

            if self._started:
                await self._consume(topic)

    async def start(self) -> None:
        """Начинает чтение всех подписанных топиков."""
        if self._handler is None:
            raise RuntimeError("Message handler is not set")
        self._started = True
        for topic in self._queues:
            await self._consume(topic)

    async def pause(self, topics: Iterable[str]) -> None:
        """Приостанавливает чтение топиков. Сообщения копятся в очереди."""
        for topic in topics:
            tag = self._consumer_tags.pop(topic, None)
            queue = self._queues.get(topic)
            if tag is not None and queue is not None:
                await queue.cancel(tag)
                await log_info(f"Топик приостановлен: {topic}", type_msg=TypeMsg.DEBUG)

    async def resume(self, topics: Iterable[str]) -> None:
        for topic in topics:
            if topic in self._queues:
                await self._consume(topic)

    async def disconnect(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            self._channel = None
            self._exchange = None
            self._queues = {}
            self._consumer_tags = {}
            self._started = False
            await log_info(f"Consumer {self.group_id} отключён от RabbitMQ", type_msg=TypeMsg.INFO)

    async def _consume(self, topic: str) -> None:
        if topic in self._consumer_tags:
            return
        queue = self._queues[topic]
        self._consumer_tags[topic] = await queue.consume(self._process)

    async def _process(self, message: AbstractIncomingMessage) -> None:
        """Разбирает сообщение и передаёт обработчику. Ошибки обработчика логируются."""
        async with message.process():
            headers = dict(message.headers or {})
            key = headers.get(KEY_HEADER)
            origin = headers.get(ORIGIN_HEADER)
            incoming = BridgeMessage(
                topic=message.routing_key or "",
                value=decode_value(message.body, message.content_encoding),
                key=key.decode() if isinstance(key, bytes) else key,
                origin=origin.decode() if isinstance(origin, bytes) else origin,
                headers=headers,
            )

            if self._handler is None:
                return
            try:
                await self._handler(incoming)
            except Exception as e:
                await log_error(
                    f"Ошибка в обработчике сообщения {incoming.topic}: {e}",
                    exc_info=True,
                )
