"""
Общие константы и перечисления.
"""

from enum import Enum


class TypeMsg(str, Enum):
    """Типы сообщений для логирования."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class UserRole(str, Enum):
    """Роли участников соединения."""
    DRIVER = "DRIVER"
    CUSTOMER = "CUSTOMER"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"

    def __str__(self) -> str:
        return self.value


class MessageType(str, Enum):
    """
    Типы конвертов.

    UNKNOWN — для типов, которые прислал более новый клиент:
    такие конверты принимаются, но специально не маршрутизируются.
    """
    LOCATION_UPDATE = "LOCATION_UPDATE"
    ORDER_ASSIGNMENT = "ORDER_ASSIGNMENT"
    SUBSCRIPTION = "SUBSCRIPTION"
    AUTHENTICATION = "AUTHENTICATION"
    SYSTEM = "SYSTEM"
    UNKNOWN = "UNKNOWN"

    def __str__(self) -> str:
        return self.value


class OrderMappingStatus(str, Enum):
    """Статусы привязки заказа."""
    ASSIGNED = "ASSIGNED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        return self in (OrderMappingStatus.COMPLETED, OrderMappingStatus.CANCELLED)


class SubscriptionAction(str, Enum):
    """Действия подпротокола подписок."""
    SUBSCRIBE = "subscribe"
    UNSUBSCRIBE = "unsubscribe"


class ConnectionPhase(str, Enum):
    """Фазы клиентской сессии."""
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    OPEN = "OPEN"
    RECONNECTING = "RECONNECTING"
    CLOSED = "CLOSED"


class CloseCode:
    """Коды закрытия WebSocket."""
    NORMAL = 1000
    GOING_AWAY = 1001
    INTERNAL_ERROR = 1011
    REPLACED = 4000
    AUTH_FAILED = 4001


class CloseReason:
    """Тексты причин закрытия."""
    STALE = "Connection timeout due to inactivity"
    SHUTDOWN = "Server shutting down"
    REPLACED = "Connection replaced"
    AUTH_FAILED = "Authentication failed"
    INTERNAL_ERROR = "Internal server error"
    CLIENT_CLOSED = "Client closed"
    CLIENT_ERROR = "Client error"


# Топики подписок
ORDER_TOPIC_PREFIX = "order:"
DRIVER_TOPIC_PREFIX = "driver:"

# Топики шины (durable log)
BRIDGE_LOCATION_TOPIC = "location-updates"
BRIDGE_ASSIGNMENT_TOPIC = "order-assignments"

SYSTEM_SENDER_ID = "system"


def order_topic(order_id: str) -> str:
    """Топик обновлений заказа."""
    return f"{ORDER_TOPIC_PREFIX}{order_id}"


def driver_topic(driver_id: str) -> str:
    """Топик локации водителя."""
    return f"{DRIVER_TOPIC_PREFIX}{driver_id}"
