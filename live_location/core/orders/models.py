"""
Модели привязки заказа к участникам.
"""

from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from live_location.common.constants import OrderMappingStatus


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class OrderMapping(BaseModel):
    """
    Привязка заказа: кто водитель, кто пассажир и в каком статусе заказ.

    Меняется только через OrderMappingStore.update_status.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    order_id: str = Field(..., min_length=1, description="ID заказа")
    customer_id: str = Field(..., min_length=1, description="ID пассажира")
    driver_id: str = Field(..., min_length=1, description="ID водителя")
    status: OrderMappingStatus = Field(OrderMappingStatus.ASSIGNED, description="Статус")

    created_at: datetime = Field(default_factory=utc_now, description="Время создания")
    updated_at: datetime = Field(default_factory=utc_now, description="Время изменения")

    @property
    def is_open(self) -> bool:
        """Заказ ещё не завершён и не отменён."""
        return not self.status.is_terminal
