"""
Модели провода и общие DTO.
"""

from live_location.shared.models.envelope import (
    Envelope,
    Coordinates,
    LocationPayload,
    OrderAssignmentPayload,
    SubscriptionPayload,
    AuthenticationPayload,
    utc_now_iso,
)
from live_location.shared.models.user import User, LocationRecord
from live_location.shared.models.common import ErrorResponse, HealthStatus

__all__ = [
    "Envelope",
    "Coordinates",
    "LocationPayload",
    "OrderAssignmentPayload",
    "SubscriptionPayload",
    "AuthenticationPayload",
    "utc_now_iso",
    "User",
    "LocationRecord",
    "ErrorResponse",
    "HealthStatus",
]
