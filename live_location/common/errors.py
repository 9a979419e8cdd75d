"""
Иерархия ошибок релея.
"""

from __future__ import annotations

from typing import Any


class LiveLocationError(Exception):
    """Базовая ошибка сервиса."""

    code: str = "live_location_error"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class MalformedMessage(LiveLocationError):
    """Кадр не является валидным конвертом."""

    code = "malformed_message"


class NotFound(LiveLocationError):
    """Привязка заказа не найдена."""

    code = "not_found"

    def __init__(self, order_id: str) -> None:
        super().__init__(
            f"Order mapping not found for order ID: {order_id}",
            {"order_id": order_id},
        )
        self.order_id = order_id


class InvalidStatusTransition(LiveLocationError):
    """Недопустимый переход статуса привязки."""

    code = "invalid_status_transition"

    def __init__(self, order_id: str, current: str, requested: str) -> None:
        super().__init__(
            f"Invalid transition from {current} to {requested} for order {order_id}",
            {"order_id": order_id, "current": current, "requested": requested},
        )


class Unauthorized(LiveLocationError):
    """Отправитель не имеет права на действие."""

    code = "unauthorized"


class BridgeUnavailable(LiveLocationError):
    """Шина событий недоступна."""

    code = "bridge_unavailable"


class ReconnectExhausted(LiveLocationError):
    """Клиент исчерпал попытки переподключения."""

    code = "reconnect_exhausted"

    def __init__(self, attempts: int) -> None:
        super().__init__(
            f"Reconnect attempts exhausted after {attempts} failed opens",
            {"attempts": attempts},
        )
        self.attempts = attempts
