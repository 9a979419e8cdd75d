"""
Хранилище привязок заказов.

OrderMappingStore — контракт для любых бэкендов,
InMemoryOrderMappingStore — реализация в памяти процесса.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod

from live_location.common.constants import OrderMappingStatus
from live_location.common.errors import InvalidStatusTransition, NotFound
from live_location.common.logger import get_logger
from live_location.core.orders.models import OrderMapping, utc_now

logger = get_logger("orders")


# Повтор текущего статуса разрешён: это обновление updated_at
ALLOWED_TRANSITIONS: dict[OrderMappingStatus, list[OrderMappingStatus]] = {
    OrderMappingStatus.ASSIGNED: [OrderMappingStatus.IN_PROGRESS, OrderMappingStatus.CANCELLED],
    OrderMappingStatus.IN_PROGRESS: [OrderMappingStatus.COMPLETED, OrderMappingStatus.CANCELLED],
    OrderMappingStatus.COMPLETED: [],
    OrderMappingStatus.CANCELLED: [],
}


def can_transition(current: OrderMappingStatus, new: OrderMappingStatus) -> bool:
    """Проверяет, допустим ли переход статуса."""
    if current == new:
        return not current.is_terminal
    return new in ALLOWED_TRANSITIONS.get(current, [])


class OrderMappingStore(ABC):
    """Контракт хранилища привязок."""

    @abstractmethod
    async def get(self, order_id: str) -> OrderMapping | None:
        ...

    @abstractmethod
    async def list_by_customer(self, customer_id: str) -> list[OrderMapping]:
        ...

    @abstractmethod
    async def list_by_driver(self, driver_id: str) -> list[OrderMapping]:
        ...

    @abstractmethod
    async def save(self, mapping: OrderMapping) -> OrderMapping:
        """Создаёт или заменяет привязку. updated_at выставляется заново."""

    @abstractmethod
    async def update_status(self, order_id: str, status: OrderMappingStatus) -> OrderMapping:
        """
        Меняет статус привязки.

        Raises:
            NotFound: привязки нет
            InvalidStatusTransition: переход нарушает жизненный цикл
        """

    @abstractmethod
    async def remove(self, order_id: str) -> bool:
        ...


class InMemoryOrderMappingStore(OrderMappingStore):
    """Привязки в словаре процесса. Без вытеснения."""

    def __init__(self) -> None:
        self._mappings: dict[str, OrderMapping] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._mappings)

    async def get(self, order_id: str) -> OrderMapping | None:
        async with self._lock:
            return self._mappings.get(order_id)

    async def list_by_customer(self, customer_id: str) -> list[OrderMapping]:
        async with self._lock:
            return [m for m in self._mappings.values() if m.customer_id == customer_id]

    async def list_by_driver(self, driver_id: str) -> list[OrderMapping]:
        async with self._lock:
            return [m for m in self._mappings.values() if m.driver_id == driver_id]

    async def save(self, mapping: OrderMapping) -> OrderMapping:
        stored = mapping.model_copy(update={"updated_at": utc_now()})
        async with self._lock:
            self._mappings[stored.order_id] = stored
        return stored

    async def update_status(self, order_id: str, status: OrderMappingStatus) -> OrderMapping:
        status = OrderMappingStatus(status)
        async with self._lock:
            mapping = self._mappings.get(order_id)
            if mapping is None:
                raise NotFound(order_id)

            if not can_transition(mapping.status, status):
                raise InvalidStatusTransition(order_id, mapping.status.value, status.value)

            updated = mapping.model_copy(update={"status": status, "updated_at": utc_now()})
            self._mappings[order_id] = updated
        return updated

    async def remove(self, order_id: str) -> bool:
        async with self._lock:
            return self._mappings.pop(order_id, None) is not None


STORE_KINDS: dict[str, type[OrderMappingStore]] = {
    "memory": InMemoryOrderMappingStore,
}


def create_order_mapping_store(
    kind: str | None = None,
    store: OrderMappingStore | None = None,
) -> OrderMappingStore:
    """
    Возвращает хранилище привязок.

    Args:
        kind: тег из конфигурации (STORAGE_TYPE); None — взять из настроек
        store: готовая реализация, имеет приоритет над тегом
    """
    if store is not None:
        return store

    if kind is None:
        from live_location.config import settings
        kind = settings.storage.STORAGE_TYPE

    factory = STORE_KINDS.get(kind.lower())
    if factory is None:
        logger.warning(f"Неизвестный тип хранилища '{kind}', используется memory")
        factory = InMemoryOrderMappingStore
    return factory()
