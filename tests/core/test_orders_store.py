# tests/core/test_orders_store.py
"""
Тесты хранилища привязок заказов.
"""

from __future__ import annotations

import pytest

from live_location.common.constants import OrderMappingStatus
from live_location.common.errors import InvalidStatusTransition, NotFound
from live_location.core.orders import (
    InMemoryOrderMappingStore,
    OrderMapping,
    can_transition,
    create_order_mapping_store,
)


def _mapping(order_id: str = "O1", customer_id: str = "C1", driver_id: str = "D1") -> OrderMapping:
    return OrderMapping(order_id=order_id, customer_id=customer_id, driver_id=driver_id)


class TestOrderMapping:
    """Тесты модели привязки."""

    def test_defaults(self) -> None:
        mapping = _mapping()

        assert mapping.status is OrderMappingStatus.ASSIGNED
        assert mapping.is_open
        assert mapping.created_at.tzinfo is not None

    def test_camel_case_dump(self) -> None:
        data = _mapping().model_dump(mode="json", by_alias=True)

        assert data["orderId"] == "O1"
        assert data["customerId"] == "C1"
        assert data["status"] == "ASSIGNED"


class TestTransitions:
    """Тесты жизненного цикла статуса."""

    @pytest.mark.parametrize(
        "current,new,expected",
        [
            (OrderMappingStatus.ASSIGNED, OrderMappingStatus.IN_PROGRESS, True),
            (OrderMappingStatus.ASSIGNED, OrderMappingStatus.CANCELLED, True),
            (OrderMappingStatus.ASSIGNED, OrderMappingStatus.COMPLETED, False),
            (OrderMappingStatus.IN_PROGRESS, OrderMappingStatus.COMPLETED, True),
            (OrderMappingStatus.IN_PROGRESS, OrderMappingStatus.ASSIGNED, False),
            (OrderMappingStatus.IN_PROGRESS, OrderMappingStatus.IN_PROGRESS, True),
            (OrderMappingStatus.COMPLETED, OrderMappingStatus.CANCELLED, False),
            (OrderMappingStatus.CANCELLED, OrderMappingStatus.CANCELLED, False),
        ],
    )
    def test_can_transition(
        self,
        current: OrderMappingStatus,
        new: OrderMappingStatus,
        expected: bool,
    ) -> None:
        assert can_transition(current, new) is expected


class TestInMemoryStore:
    """Тесты InMemoryOrderMappingStore."""

    @pytest.mark.asyncio
    async def test_save_and_get(self, store: InMemoryOrderMappingStore) -> None:
        saved = await store.save(_mapping())

        assert await store.get("O1") == saved
        assert saved.updated_at >= saved.created_at
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_get_missing(self, store: InMemoryOrderMappingStore) -> None:
        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_save_replaces(self, store: InMemoryOrderMappingStore) -> None:
        await store.save(_mapping())
        await store.save(_mapping(driver_id="D2"))

        mapping = await store.get("O1")
        assert mapping is not None
        assert mapping.driver_id == "D2"
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_list_by_party(self, store: InMemoryOrderMappingStore) -> None:
        await store.save(_mapping("O1", "C1", "D1"))
        await store.save(_mapping("O2", "C2", "D1"))
        await store.save(_mapping("O3", "C1", "D2"))

        assert {m.order_id for m in await store.list_by_driver("D1")} == {"O1", "O2"}
        assert {m.order_id for m in await store.list_by_customer("C1")} == {"O1", "O3"}
        assert await store.list_by_customer("C9") == []

    @pytest.mark.asyncio
    async def test_update_status(self, store: InMemoryOrderMappingStore) -> None:
        saved = await store.save(_mapping())

        updated = await store.update_status("O1", OrderMappingStatus.IN_PROGRESS)

        assert updated.status is OrderMappingStatus.IN_PROGRESS
        assert updated.updated_at >= saved.updated_at
        assert updated.created_at == saved.created_at
        assert (await store.get("O1")).status is OrderMappingStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_update_status_accepts_string(self, store: InMemoryOrderMappingStore) -> None:
        await store.save(_mapping())

        updated = await store.update_status("O1", "CANCELLED")

        assert updated.status is OrderMappingStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_update_status_missing_does_not_create(
        self,
        store: InMemoryOrderMappingStore,
    ) -> None:
        with pytest.raises(NotFound) as exc_info:
            await store.update_status("missing", OrderMappingStatus.COMPLETED)

        assert exc_info.value.order_id == "missing"
        assert await store.get("missing") is None
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_invalid_transition_keeps_status(
        self,
        store: InMemoryOrderMappingStore,
    ) -> None:
        await store.save(_mapping())
        await store.update_status("O1", OrderMappingStatus.CANCELLED)

        with pytest.raises(InvalidStatusTransition):
            await store.update_status("O1", OrderMappingStatus.IN_PROGRESS)

        assert (await store.get("O1")).status is OrderMappingStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_remove(self, store: InMemoryOrderMappingStore) -> None:
        await store.save(_mapping())

        assert await store.remove("O1") is True
        assert await store.remove("O1") is False
        assert await store.get("O1") is None


class TestStoreFactory:
    """Тесты create_order_mapping_store."""

    def test_memory(self) -> None:
        assert isinstance(create_order_mapping_store("memory"), InMemoryOrderMappingStore)

    def test_injected_store_wins(self, store: InMemoryOrderMappingStore) -> None:
        assert create_order_mapping_store("memory", store=store) is store

    def test_unknown_kind_falls_back(self) -> None:
        assert isinstance(create_order_mapping_store("postgres"), InMemoryOrderMappingStore)

    def test_kind_from_settings(self) -> None:
        assert isinstance(create_order_mapping_store(), InMemoryOrderMappingStore)
