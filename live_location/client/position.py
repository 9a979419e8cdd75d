"""
Источники позиции устройства для клиентской сессии.

PositionSource — стратегия в духе Geolocation API: watch_position
подписывает колбэки на поток координат, clear_watch отписывает.
"""

from __future__ import annotations

import itertools
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, runtime_checkable

from live_location.shared.models.envelope import Coordinates


@dataclass(frozen=True)
class PositionOptions:
    """Параметры наблюдения за позицией."""
    enable_high_accuracy: bool = True
    maximum_age: float = 0.0
    timeout: float = 5.0


@dataclass(frozen=True)
class Position:
    """Отсчёт позиции. timestamp — время устройства в мс."""
    coordinates: Coordinates
    timestamp: float = field(default_factory=lambda: time.time() * 1000)


PositionCallback = Callable[[Position], Any]
PositionErrorCallback = Callable[[Exception], Any]


@runtime_checkable
class PositionSource(Protocol):
    """Поток позиций устройства."""

    def watch_position(
        self,
        on_position: PositionCallback,
        on_error: PositionErrorCallback | None = None,
        options: PositionOptions | None = None,
    ) -> int: ...

    def clear_watch(self, watch_id: int) -> None: ...


class ManualPositionSource:
    """
    Источник, который кормит хост-приложение.

    push() раздаёт отсчёт всем активным наблюдателям, fail() — ошибку.
    """

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._watchers: dict[int, tuple[PositionCallback, PositionErrorCallback | None, PositionOptions]] = {}

    @property
    def active_watches(self) -> int:
        return len(self._watchers)

    def watch_position(
        self,
        on_position: PositionCallback,
        on_error: PositionErrorCallback | None = None,
        options: PositionOptions | None = None,
    ) -> int:
        watch_id = next(self._ids)
        self._watchers[watch_id] = (on_position, on_error, options or PositionOptions())
        return watch_id

    def clear_watch(self, watch_id: int) -> None:
        self._watchers.pop(watch_id, None)

    def push(
        self,
        coordinates: Coordinates | dict[str, Any],
        timestamp: float | None = None,
    ) -> Position:
        """Публикует новый отсчёт."""
        coords = Coordinates.model_validate(coordinates)
        position = Position(coords) if timestamp is None else Position(coords, timestamp)
        for on_position, _, _ in list(self._watchers.values()):
            on_position(position)
        return position

    def fail(self, error: Exception) -> None:
        """Сообщает об ошибке получения позиции."""
        for _, on_error, _ in list(self._watchers.values()):
            if on_error is not None:
                on_error(error)
