"""
Кодек конвертов.

encode — сборка конверта с дефолтами, decode — разбор кадра с провода,
to_wire — сериализация в JSON-кадр. Плюс билдеры типовых конвертов.
"""

from __future__ import annotations

import json
from typing import Any, Iterable

from pydantic import ValidationError

from live_location.common.constants import (
    MessageType,
    OrderMappingStatus,
    SubscriptionAction,
    SYSTEM_SENDER_ID,
    UserRole,
)
from live_location.common.errors import MalformedMessage
from live_location.shared.models.envelope import (
    AuthenticationPayload,
    Coordinates,
    Envelope,
    LocationPayload,
    OrderAssignmentPayload,
    SubscriptionPayload,
    WireModel,
    utc_now_iso,
)

REQUIRED_FIELDS = ("type", "senderId", "senderRole")

# Необязательные поля верхнего уровня: на провод не пишем, если не заданы
_OPTIONAL_WIRE_FIELDS = ("recipientId", "recipientRole", "orderId")


def encode(
    *,
    type: MessageType | str = MessageType.SYSTEM,
    sender_id: str = SYSTEM_SENDER_ID,
    sender_role: UserRole | str = UserRole.SYSTEM,
    recipient_id: str | None = None,
    recipient_role: UserRole | str | None = None,
    order_id: str | None = None,
    payload: Any = None,
    timestamp: str | None = None,
) -> Envelope:
    """
    Собирает конверт, подставляя дефолты для опущенных полей.

    Raises:
        MalformedMessage: если поля не проходят валидацию
    """
    data: dict[str, Any] = {
        "type": type,
        "sender_id": sender_id,
        "sender_role": sender_role,
        "recipient_id": recipient_id,
        "recipient_role": recipient_role,
        "order_id": order_id,
        "payload": {} if payload is None else payload,
        "timestamp": timestamp or utc_now_iso(),
    }
    try:
        return Envelope.model_validate(data)
    except ValidationError as e:
        raise MalformedMessage(f"Invalid envelope fields: {e}") from e


def decode(raw: str | bytes | bytearray) -> Envelope:
    """
    Разбирает кадр с провода.

    Неизвестные типы не являются ошибкой, лишние поля игнорируются.

    Raises:
        MalformedMessage: не JSON, не объект, нет обязательных полей
            или payload не соответствует известному типу
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedMessage(f"Frame is not valid UTF-8: {e}") from e

    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise MalformedMessage(f"Failed to parse message: {e}") from e

    if not isinstance(data, dict):
        raise MalformedMessage("Invalid message format: expected a JSON object")

    missing = [key for key in REQUIRED_FIELDS if not data.get(key)]
    if missing:
        raise MalformedMessage(
            f"Invalid message format: missing required fields {', '.join(missing)}",
            {"missing": missing},
        )

    try:
        return Envelope.model_validate(data)
    except ValidationError as e:
        raise MalformedMessage(f"Invalid message format: {e}") from e


def to_dict(envelope: Envelope) -> dict[str, Any]:
    """Конверт в JSON-совместимый словарь в формате провода."""
    data = envelope.model_dump(mode="json", by_alias=True)
    data["type"] = envelope.wire_type
    for key in _OPTIONAL_WIRE_FIELDS:
        if data.get(key) is None:
            data.pop(key, None)
    # Пустые поля типизированного payload тоже не пишем
    if isinstance(envelope.payload, WireModel):
        data["payload"] = envelope.payload.model_dump(mode="json", by_alias=True, exclude_none=True)
    return data


def to_wire(envelope: Envelope) -> str:
    """Конверт в текстовый JSON-кадр."""
    return json.dumps(to_dict(envelope), ensure_ascii=False, separators=(",", ":"))


Outbound = Envelope | dict[str, Any] | str


def to_frame(message: Outbound) -> str:
    """Конверт, словарь или готовая строка — в текстовый кадр."""
    if isinstance(message, Envelope):
        return to_wire(message)
    if isinstance(message, str):
        return message
    return json.dumps(message, ensure_ascii=False, default=str)


# =============================================================================
# БИЛДЕРЫ
# =============================================================================

def build_location_update(
    sender_id: str,
    sender_role: UserRole,
    coordinates: Coordinates | dict[str, Any],
    order_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    device_timestamp: str | float | None = None,
) -> Envelope:
    """LOCATION_UPDATE. Без device_timestamp в payload кладётся текущее время."""
    payload = LocationPayload(
        coordinates=Coordinates.model_validate(coordinates),
        timestamp=device_timestamp if device_timestamp is not None else utc_now_iso(),
        metadata=metadata,
    )
    return encode(
        type=MessageType.LOCATION_UPDATE,
        sender_id=sender_id,
        sender_role=sender_role,
        order_id=order_id,
        payload=payload,
    )


def build_order_assignment(
    order_id: str,
    customer_id: str,
    driver_id: str,
    details: dict[str, Any] | None = None,
) -> Envelope:
    """ORDER_ASSIGNMENT от системы для обеих сторон заказа."""
    payload = OrderAssignmentPayload(
        order_id=order_id,
        customer_id=customer_id,
        driver_id=driver_id,
        status=OrderMappingStatus.ASSIGNED,
        details=details,
    )
    return encode(
        type=MessageType.ORDER_ASSIGNMENT,
        order_id=order_id,
        payload=payload,
    )


def build_subscription(
    sender_id: str,
    sender_role: UserRole,
    action: SubscriptionAction,
    topics: Iterable[str],
    recipient_id: str | None = None,
) -> Envelope:
    """SUBSCRIPTION с действием и списком топиков."""
    return encode(
        type=MessageType.SUBSCRIPTION,
        sender_id=sender_id,
        sender_role=sender_role,
        recipient_id=recipient_id,
        payload=SubscriptionPayload(action=action, topics=list(topics)),
    )


def build_identify(sender_id: str, sender_role: UserRole, client_id: str) -> Envelope:
    """AUTHENTICATION/identify со стабильным идентификатором клиента."""
    return encode(
        type=MessageType.AUTHENTICATION,
        sender_id=sender_id,
        sender_role=sender_role,
        payload=AuthenticationPayload(action="identify", client_id=client_id),
    )


def build_status_update(order_id: str, status: OrderMappingStatus, updated_by: str) -> Envelope:
    """SYSTEM-уведомление о смене статуса заказа."""
    return encode(
        type=MessageType.SYSTEM,
        sender_id=updated_by,
        sender_role=UserRole.SYSTEM,
        order_id=order_id,
        payload={"status": status.value, "timestamp": utc_now_iso()},
    )


def build_welcome(user_id: str, role: UserRole) -> Envelope:
    """SYSTEM-приветствие после успешного подключения."""
    return encode(
        type=MessageType.SYSTEM,
        recipient_id=user_id,
        payload={
            "message": "Connected successfully",
            "userId": user_id,
            "role": role.value,
        },
    )
