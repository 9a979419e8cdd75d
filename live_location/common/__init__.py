"""
Общие утилиты, константы, ошибки и логгер.
"""

from live_location.common.logger import get_logger, log_info, log_error, log_warning, log_debug
from live_location.common.constants import TypeMsg, UserRole, MessageType, OrderMappingStatus
from live_location.common.errors import (
    LiveLocationError,
    MalformedMessage,
    NotFound,
    InvalidStatusTransition,
    Unauthorized,
    BridgeUnavailable,
    ReconnectExhausted,
)

__all__ = [
    "get_logger",
    "log_info",
    "log_error",
    "log_warning",
    "log_debug",
    "TypeMsg",
    "UserRole",
    "MessageType",
    "OrderMappingStatus",
    "LiveLocationError",
    "MalformedMessage",
    "NotFound",
    "InvalidStatusTransition",
    "Unauthorized",
    "BridgeUnavailable",
    "ReconnectExhausted",
]
