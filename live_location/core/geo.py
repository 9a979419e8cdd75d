"""
Геометрия на сфере: расстояние, азимут, ETA.
"""

from __future__ import annotations

import math
from typing import Protocol


EARTH_RADIUS_KM = 6371.0


class HasLatLon(Protocol):
    latitude: float
    longitude: float


def calculate_distance(point_a: HasLatLon, point_b: HasLatLon) -> float:
    """
    Вычисляет расстояние между двумя точками (в км) по формуле Haversine.
    """
    dlat = math.radians(point_b.latitude - point_a.latitude)
    dlon = math.radians(point_b.longitude - point_a.longitude)

    a = (math.sin(dlat / 2) ** 2 +
         math.cos(math.radians(point_a.latitude)) * math.cos(math.radians(point_b.latitude)) *
         math.sin(dlon / 2) ** 2)

    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def calculate_bearing(start: HasLatLon, destination: HasLatLon) -> float:
    """Начальный азимут от start к destination в градусах, [0, 360)."""
    start_lat = math.radians(start.latitude)
    dest_lat = math.radians(destination.latitude)
    dlon = math.radians(destination.longitude - start.longitude)

    y = math.sin(dlon) * math.cos(dest_lat)
    x = (math.cos(start_lat) * math.sin(dest_lat) -
         math.sin(start_lat) * math.cos(dest_lat) * math.cos(dlon))

    bearing = (math.degrees(math.atan2(y, x)) + 360) % 360
    # -0.0 % 360 и округление atan2 могут дать ровно 360.0
    return 0.0 if bearing >= 360 else bearing


def estimate_time_of_arrival(
    current: HasLatLon,
    destination: HasLatLon,
    speed_kmh: float | None,
) -> float:
    """
    Оценка времени в пути в миллисекундах.

    Returns:
        math.inf, если скорость не задана или не положительна
    """
    if not speed_kmh or speed_kmh <= 0:
        return math.inf

    hours = calculate_distance(current, destination) / speed_kmh
    return hours * 60 * 60 * 1000


def is_within_radius(center: HasLatLon, point: HasLatLon, radius_km: float) -> bool:
    return calculate_distance(center, point) <= radius_km


def format_coordinates(point: HasLatLon) -> str:
    """'lat, lon' с шестью знаками после запятой."""
    return f"{point.latitude:.6f}, {point.longitude:.6f}"
