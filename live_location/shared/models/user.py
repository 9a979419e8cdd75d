"""
Пользователь соединения и нормализованная запись локации.
"""

from __future__ import annotations

from typing import Any

from pydantic import Field

from live_location.common.constants import UserRole
from live_location.shared.models.envelope import Coordinates, WireModel, utc_now_iso


class User(WireModel):
    """Аутентифицированный участник соединения."""
    id: str = Field(..., min_length=1)
    role: UserRole
    metadata: dict[str, Any] | None = None


class LocationRecord(WireModel):
    """Запись локации, которая зеркалируется в шину."""
    user_id: str
    user_role: UserRole
    order_id: str | None = None
    coordinates: Coordinates
    timestamp: str = Field(default_factory=utc_now_iso)
    device_timestamp: str | float | None = None
    metadata: dict[str, Any] | None = None
