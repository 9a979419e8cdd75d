"""
Клиентская сессия живой локации.
"""

from live_location.client.position import (
    ManualPositionSource,
    Position,
    PositionOptions,
    PositionSource,
)
from live_location.client.session import ClientSession

__all__ = [
    "ClientSession",
    "ManualPositionSource",
    "Position",
    "PositionOptions",
    "PositionSource",
]
