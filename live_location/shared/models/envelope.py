"""
Конверт — единица обмена по WebSocket.

Поля на проводе в camelCase: type, senderId, senderRole, recipientId,
recipientRole, orderId, payload, timestamp.
Payload типизирован по полю type; для SYSTEM и неизвестных типов — произвольный.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from live_location.common.constants import (
    MessageType,
    OrderMappingStatus,
    SubscriptionAction,
    UserRole,
)


def utc_now_iso() -> str:
    """Текущее время UTC в ISO-8601 с миллисекундами и суффиксом Z."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class WireModel(BaseModel):
    """База для моделей провода: camelCase алиасы, неизменяемость."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class Coordinates(WireModel):
    """Координаты в формате Geolocation API."""
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    altitude: float | None = None
    accuracy: float | None = Field(default=None, ge=0)
    altitude_accuracy: float | None = None
    heading: float | None = None
    speed: float | None = None


# =============================================================================
# PAYLOAD ПО ТИПАМ
# =============================================================================

class LocationPayload(WireModel):
    """Payload LOCATION_UPDATE. timestamp — время устройства (ISO или мс)."""
    coordinates: Coordinates
    timestamp: str | float | None = None
    metadata: dict[str, Any] | None = None


class OrderAssignmentPayload(WireModel):
    """Payload ORDER_ASSIGNMENT."""
    order_id: str
    customer_id: str
    driver_id: str
    status: OrderMappingStatus = OrderMappingStatus.ASSIGNED
    timestamp: str = Field(default_factory=utc_now_iso)
    details: dict[str, Any] | None = None


class SubscriptionPayload(WireModel):
    """Payload SUBSCRIPTION: {action, topics}."""
    action: SubscriptionAction
    topics: list[str] = Field(default_factory=list)


class AuthenticationPayload(WireModel):
    """Payload AUTHENTICATION (identify от клиента, токен и т.п.)."""
    model_config = ConfigDict(extra="allow")

    action: str | None = None
    client_id: str | None = None
    token: str | None = None


PAYLOAD_MODELS: dict[MessageType, type[WireModel]] = {
    MessageType.LOCATION_UPDATE: LocationPayload,
    MessageType.ORDER_ASSIGNMENT: OrderAssignmentPayload,
    MessageType.SUBSCRIPTION: SubscriptionPayload,
    MessageType.AUTHENTICATION: AuthenticationPayload,
}


# =============================================================================
# КОНВЕРТ
# =============================================================================

class Envelope(WireModel):
    """
    Конверт сообщения.

    Создаётся один раз стороной-отправителем и дальше не меняется.
    Неизвестный type сохраняется в raw_type, сам type становится UNKNOWN.
    """
    type: MessageType
    sender_id: str = Field(..., min_length=1)
    sender_role: UserRole
    recipient_id: str | None = None
    recipient_role: UserRole | None = None
    order_id: str | None = None
    payload: Any = Field(default_factory=dict)
    timestamp: str = Field(default_factory=utc_now_iso)
    raw_type: str | None = Field(default=None, exclude=True)

    @model_validator(mode="before")
    @classmethod
    def _resolve_type_and_payload(cls, data: Any) -> Any:
        """Нормализует type и валидирует payload под известный тип."""
        if not isinstance(data, dict):
            return data

        data = dict(data)
        raw = data.get("type", MessageType.SYSTEM)

        if isinstance(raw, MessageType):
            msg_type = raw
        else:
            try:
                msg_type = MessageType(raw)
            except ValueError:
                msg_type = MessageType.UNKNOWN
                if "rawType" not in data and "raw_type" not in data:
                    data["raw_type"] = str(raw)
        data["type"] = msg_type

        payload = data.get("payload")
        if payload is None:
            payload = {}

        model = PAYLOAD_MODELS.get(msg_type)
        if model is not None and not isinstance(payload, model):
            try:
                payload = model.model_validate(payload)
            except ValidationError as e:
                raise ValueError(f"Invalid {msg_type.value} payload: {e}") from e

        data["payload"] = payload
        return data

    @property
    def wire_type(self) -> str:
        """Тип в том виде, в каком он уходит на провод."""
        if self.type is MessageType.UNKNOWN and self.raw_type:
            return self.raw_type
        return self.type.value
