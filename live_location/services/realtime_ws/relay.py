# live_location/services/realtime_ws/relay.py
"""
Сервис релея локаций.

Связывает реестр соединений, маршрутизатор, хранилище привязок и мост
в durable log. Единственная проверка прав: локацию по заказу может
присылать только назначенный на него водитель.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Mapping, Protocol, runtime_checkable
from uuid import uuid4

from pydantic import ValidationError

from live_location.common.constants import (
    BRIDGE_ASSIGNMENT_TOPIC,
    BRIDGE_LOCATION_TOPIC,
    SYSTEM_SENDER_ID,
    MessageType,
    OrderMappingStatus,
    SubscriptionAction,
    TypeMsg,
    UserRole,
    driver_topic,
    order_topic,
)
from live_location.common.errors import BridgeUnavailable, MalformedMessage, Unauthorized
from live_location.common.logger import log_error, log_info, log_warning
from live_location.core.orders import (
    OrderMapping,
    OrderMappingStore,
    create_order_mapping_store,
)
from live_location.infra.event_bus import (
    BridgeMessage,
    LocationBridgeConsumer,
    LocationBridgeProducer,
)
from live_location.services.realtime_ws.connection_registry import (
    Connection,
    ConnectionRegistry,
    Transport,
)
from live_location.services.realtime_ws.router import Router
from live_location.shared.codec import (
    Outbound,
    build_location_update,
    build_order_assignment,
    build_status_update,
    build_subscription,
    build_welcome,
    decode,
)
from live_location.shared.models.envelope import (
    Envelope,
    LocationPayload,
    SubscriptionPayload,
)
from live_location.shared.models.user import LocationRecord, User


@runtime_checkable
class TokenVerifier(Protocol):
    """Проверка токена подключения. Встраивающее приложение подставляет свою."""

    async def verify_token(self, token: str) -> User | None: ...


def anonymous_user() -> User:
    """Анонимный пользователь для режима без аутентификации."""
    return User(id=f"anon_{int(time.time() * 1000)}_{uuid4().hex[:7]}", role=UserRole.SYSTEM)


def extract_token(
    query_params: Mapping[str, str],
    headers: Mapping[str, str],
) -> str | None:
    """Токен из query-параметра `token`, затем из `Authorization: Bearer`."""
    token = query_params.get("token")
    if token:
        return token

    authorization = headers.get("authorization") or headers.get("Authorization")
    if authorization:
        scheme, _, credentials = authorization.partition(" ")
        if scheme.lower() == "bearer" and credentials.strip():
            return credentials.strip()
    return None


class LiveLocationService:
    """
    Релей живых локаций.

    Водитель шлёт LOCATION_UPDATE по заказу, сервис проверяет привязку
    и пересылает координаты пассажиру этого заказа. При включённом мосте
    запись зеркалируется в топик location-updates (ключ — orderId).
    """

    def __init__(
        self,
        store: OrderMappingStore | None = None,
        registry: ConnectionRegistry | None = None,
        router: Router | None = None,
        producer: LocationBridgeProducer | None = None,
        consumer: LocationBridgeConsumer | None = None,
        verifier: TokenVerifier | None = None,
        *,
        auth_enabled: bool | None = None,
        bridge_enabled: bool | None = None,
        ping_interval: float | None = None,
        stale_after: float | None = None,
    ) -> None:
        if auth_enabled is None or bridge_enabled is None or ping_interval is None or stale_after is None:
            from live_location.config import settings
            auth_enabled = settings.auth.AUTH_ENABLED if auth_enabled is None else auth_enabled
            bridge_enabled = settings.rabbitmq.BRIDGE_ENABLED if bridge_enabled is None else bridge_enabled
            ping_interval = settings.websocket.WS_PING_INTERVAL if ping_interval is None else ping_interval
            stale_after = settings.websocket.WS_STALE_AFTER if stale_after is None else stale_after

        self.store = create_order_mapping_store(store=store)
        self.registry = registry or ConnectionRegistry(stale_after=stale_after)
        self.router = router or Router(self.registry)
        self.verifier = verifier
        self.auth_enabled = auth_enabled
        self.ping_interval = ping_interval

        if bridge_enabled:
            producer = producer or LocationBridgeProducer()
            # Своя очередь на процесс: каждый релей получает копию потока
            consumer = consumer or LocationBridgeConsumer(instance_id=producer.instance_id)
        self.producer = producer
        self.consumer = consumer

        self._running = False
        self._mirror_tasks: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._running

    # =========================================================================
    # ЖИЗНЕННЫЙ ЦИКЛ
    # =========================================================================

    async def start(self) -> None:
        """Подключает мост и запускает проверку живости."""
        if self._running:
            return

        try:
            if self.producer is not None:
                await self.producer.connect()

            if self.consumer is not None:
                await self.consumer.connect()
                self.consumer.on_message(self.on_bridge_message)
                await self.consumer.subscribe([BRIDGE_LOCATION_TOPIC])
                await self.consumer.start()

            self.registry.start_liveness_sweep(self.ping_interval)
            self._running = True
            await log_info("Live Location сервис запущен", type_msg=TypeMsg.INFO)
        except Exception as e:
            await log_error(f"Не удалось запустить Live Location сервис: {e}", exc_info=True)
            await self.stop()
            raise

    async def stop(self) -> None:
        """Отключает мост, закрывает все соединения."""
        if self._mirror_tasks:
            await asyncio.gather(*self._mirror_tasks, return_exceptions=True)

        if self.consumer is not None:
            await self.consumer.disconnect()
        if self.producer is not None:
            await self.producer.disconnect()

        await self.registry.shutdown()
        self._running = False
        await log_info("Live Location сервис остановлен", type_msg=TypeMsg.INFO)

    # =========================================================================
    # АУТЕНТИФИКАЦИЯ
    # =========================================================================

    extract_token = staticmethod(extract_token)

    async def authenticate(self, token: str | None) -> User | None:
        """
        Возвращает пользователя соединения или None.

        Без аутентификации — анонимный SYSTEM-пользователь.
        Исключение верификатора считается отказом.
        """
        if not self.auth_enabled:
            return anonymous_user()

        if not token:
            await log_warning("Токен аутентификации не передан")
            return None

        if self.verifier is None:
            await log_warning("Аутентификация включена, но верификатор токенов не задан")
            return None

        try:
            return await self.verifier.verify_token(token)
        except Exception as e:
            await log_error(f"Ошибка проверки токена: {e}")
            return None

    # =========================================================================
    # СОБЫТИЯ СОЕДИНЕНИЯ
    # =========================================================================

    async def on_connect(self, user: User, transport: Transport) -> Connection:
        """
        Регистрирует соединение и подписывает на открытые заказы.

        Пассажир получает order:<id> и driver:<driverId>, водитель — order:<id>.
        """
        connection = await self.registry.register(user, transport)
        await log_info(f"Пользователь подключён: {user.id} ({user.role})", type_msg=TypeMsg.INFO)

        for mapping in await self._open_mappings_for(user):
            await self._subscribe_to_order(user.id, user.role, mapping)

        await self.router.send_to_user(user.id, build_welcome(user.id, user.role))
        return connection

    async def on_frame(self, user: User, raw: str | bytes) -> Envelope | None:
        """
        Обрабатывает входящий кадр.

        Returns:
            Разобранный конверт или None, если кадр отброшен
        """
        await self.registry.touch(user.id)

        try:
            envelope = decode(raw)
        except MalformedMessage as e:
            await log_warning(f"Некорректное сообщение от {user.id}: {e.message}")
            return None

        match envelope.type:
            case MessageType.SUBSCRIPTION:
                await self._handle_subscription(user, envelope)
            case MessageType.LOCATION_UPDATE:
                await self.handle_location_update(envelope, user)
            case _:
                await log_info(
                    f"Сообщение {envelope.wire_type} от {user.id} без обработки",
                    type_msg=TypeMsg.DEBUG,
                )
        return envelope

    async def on_disconnect(self, user: User, transport: Transport, code: int | None = None) -> None:
        removed = await self.registry.deregister(user.id, transport)
        if removed:
            await log_info(
                f"Пользователь отключён: {user.id} ({user.role}), code: {code}",
                type_msg=TypeMsg.INFO,
            )

    async def _handle_subscription(self, user: User, envelope: Envelope) -> None:
        payload: SubscriptionPayload = envelope.payload
        if payload.action is SubscriptionAction.SUBSCRIBE:
            await self.registry.subscribe(user.id, payload.topics)
        else:
            await self.registry.unsubscribe(user.id, payload.topics)

    # =========================================================================
    # ЛОКАЦИИ
    # =========================================================================

    async def handle_location_update(self, envelope: Envelope, user: User) -> bool:
        """
        Пересылает локацию водителя пассажиру заказа.

        Returns:
            True если обновление принято (и отправлено пассажиру или в мост)
        """
        try:
            mapping = await self._authorize_location(envelope, user)
        except Unauthorized as e:
            await log_warning(e.message)
            return False
        except Exception as e:
            await log_error(f"Ошибка чтения привязки заказа {envelope.order_id}: {e}", exc_info=True)
            return False

        payload: LocationPayload = envelope.payload
        order_id = mapping.order_id
        record = LocationRecord(
            user_id=user.id,
            user_role=user.role,
            order_id=order_id,
            coordinates=payload.coordinates,
            device_timestamp=payload.timestamp if payload.timestamp is not None else int(time.time() * 1000),
            metadata=payload.metadata,
        )
        self._mirror(BRIDGE_LOCATION_TOPIC, order_id, record)

        message = build_location_update(
            user.id,
            user.role,
            payload.coordinates,
            order_id=order_id,
            metadata=payload.metadata,
            device_timestamp=payload.timestamp,
        )
        delivered = await self.router.send_to_user(mapping.customer_id, message)

        await log_info(
            f"Локация водителя {user.id} по заказу {order_id} -> пассажир "
            f"{mapping.customer_id} ({'доставлено' if delivered else 'не подключён'})",
            type_msg=TypeMsg.DEBUG,
        )
        return True

    async def _authorize_location(self, envelope: Envelope, user: User) -> OrderMapping:
        """
        Привязка заказа, по которому пользователь вправе слать локацию.

        Raises:
            Unauthorized: не водитель, нет заказа или водитель на него не назначен
        """
        if user.role is not UserRole.DRIVER:
            raise Unauthorized(f"Локация от пользователя, который не водитель: {user.id}")

        order_id = envelope.order_id
        if not order_id or not isinstance(envelope.payload, LocationPayload):
            raise Unauthorized(f"Некорректное обновление локации от {user.id}")

        mapping = await self.store.get(order_id)
        if mapping is None:
            raise Unauthorized(f"Привязка не найдена для заказа: {order_id}", {"order_id": order_id})

        if mapping.driver_id != user.id:
            raise Unauthorized(
                f"Водитель {user.id} не назначен на заказ {order_id}",
                {"order_id": order_id, "user_id": user.id},
            )
        return mapping

    def _mirror(self, topic: str, key: str, value: Any) -> None:
        """Фоновая публикация в мост; ошибка только логируется."""
        if self.producer is None:
            return
        task = asyncio.create_task(self._publish(topic, key, value))
        self._mirror_tasks.add(task)
        task.add_done_callback(self._mirror_tasks.discard)

    async def _publish(self, topic: str, key: str, value: Any) -> None:
        try:
            await self.producer.publish(topic, key, value)
        except BridgeUnavailable as e:
            await log_error(f"Не удалось зеркалировать в {topic}: {e.message}")
        except Exception as e:
            await log_error(f"Ошибка зеркалирования в {topic}: {e}", exc_info=True)

    async def on_bridge_message(self, message: BridgeMessage) -> None:
        """Адаптер обработчика consumer: собственные записи пропускаются."""
        if self.producer is not None and message.origin == self.producer.instance_id:
            return
        await self.handle_bridge_message(message.topic, message.value)

    async def handle_bridge_message(self, topic: str, value: Any) -> bool:
        """
        Пересылает запись локации из другого процесса пассажиру,
        если он подключён к этому процессу.
        """
        if topic != BRIDGE_LOCATION_TOPIC:
            return False

        try:
            record = LocationRecord.model_validate(value)
        except ValidationError as e:
            await log_warning(f"Некорректная запись локации из шины: {e}")
            return False

        if not record.order_id:
            await log_warning("Запись локации из шины без orderId")
            return False

        mapping = await self.store.get(record.order_id)
        if mapping is None:
            await log_warning(f"Привязка не найдена для заказа: {record.order_id}")
            return False

        if self.registry.get(mapping.customer_id) is None:
            return False

        message = build_location_update(
            record.user_id,
            record.user_role,
            record.coordinates,
            order_id=record.order_id,
            metadata=record.metadata,
            device_timestamp=record.device_timestamp,
        )
        return await self.router.send_to_user(mapping.customer_id, message)

    # =========================================================================
    # ЗАКАЗЫ
    # =========================================================================

    async def assign_driver_to_order(
        self,
        order_id: str,
        customer_id: str,
        driver_id: str,
        details: dict[str, Any] | None = None,
    ) -> OrderMapping:
        """
        Назначает водителя на заказ.

        Сохраняет привязку ASSIGNED, уведомляет обе стороны и подписывает
        уже подключённых участников на топики заказа.
        Пробрасываются только ошибки хранилища.
        """
        mapping = await self.store.save(OrderMapping(
            order_id=order_id,
            customer_id=customer_id,
            driver_id=driver_id,
            status=OrderMappingStatus.ASSIGNED,
        ))

        message = build_order_assignment(order_id, customer_id, driver_id, details)
        await self.router.send_to_user(customer_id, message)
        await self.router.send_to_user(driver_id, message)

        await self._subscribe_to_order(customer_id, UserRole.CUSTOMER, mapping)
        await self._subscribe_to_order(driver_id, UserRole.DRIVER, mapping)

        self._mirror(BRIDGE_ASSIGNMENT_TOPIC, order_id, message)

        await log_info(
            f"Водитель {driver_id} назначен на заказ {order_id} пассажира {customer_id}",
            type_msg=TypeMsg.INFO,
        )
        return mapping

    async def update_order_status(
        self,
        order_id: str,
        status: OrderMappingStatus,
        updated_by: str,
    ) -> OrderMapping:
        """
        Меняет статус заказа и уведомляет обе стороны.

        Raises:
            NotFound: привязки нет
            InvalidStatusTransition: переход недопустим
        """
        mapping = await self.store.update_status(order_id, status)

        message = build_status_update(order_id, mapping.status, updated_by)
        await self.router.send_to_user(mapping.customer_id, message)
        await self.router.send_to_user(mapping.driver_id, message)

        await log_info(
            f"Статус заказа {order_id} изменён на {mapping.status} ({updated_by})",
            type_msg=TypeMsg.INFO,
        )
        return mapping

    async def _open_mappings_for(self, user: User) -> list[OrderMapping]:
        match user.role:
            case UserRole.CUSTOMER:
                mappings = await self.store.list_by_customer(user.id)
            case UserRole.DRIVER:
                mappings = await self.store.list_by_driver(user.id)
            case _:
                return []
        return [m for m in mappings if m.is_open]

    async def _subscribe_to_order(self, user_id: str, role: UserRole, mapping: OrderMapping) -> None:
        """Подписывает подключённого участника на топики заказа и сообщает ему об этом."""
        if self.registry.get(user_id) is None:
            return

        topics = [order_topic(mapping.order_id)]
        if role is UserRole.CUSTOMER:
            topics.append(driver_topic(mapping.driver_id))

        await self.registry.subscribe(user_id, topics)
        await self.router.send_to_user(user_id, build_subscription(
            SYSTEM_SENDER_ID,
            UserRole.SYSTEM,
            SubscriptionAction.SUBSCRIBE,
            topics,
            recipient_id=user_id,
        ))

    # =========================================================================
    # ДОСТАВКА
    # =========================================================================

    async def send_to_user(self, user_id: str, message: Outbound) -> bool:
        return await self.router.send_to_user(user_id, message)

    async def send_to_topic(self, topic: str, message: Outbound) -> int:
        return await self.router.send_to_topic(topic, message)

    async def broadcast(self, message: Outbound) -> int:
        return await self.router.broadcast(message)

    def get_connected_users(self) -> list[str]:
        return self.registry.get_connected_users()

    def get_connection_count(self) -> int:
        return self.registry.get_connection_count()

    def get_stats(self) -> dict[str, Any]:
        return {
            **self.registry.get_stats(),
            "total_messages_sent": self.router.total_messages_sent,
            "bridge_connected": bool(self.producer and self.producer.is_connected),
        }
