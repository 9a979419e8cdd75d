"""
Привязки заказов к водителю и пассажиру.
"""

from live_location.core.orders.models import OrderMapping
from live_location.core.orders.store import (
    ALLOWED_TRANSITIONS,
    InMemoryOrderMappingStore,
    OrderMappingStore,
    can_transition,
    create_order_mapping_store,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "InMemoryOrderMappingStore",
    "OrderMapping",
    "OrderMappingStore",
    "can_transition",
    "create_order_mapping_store",
]
