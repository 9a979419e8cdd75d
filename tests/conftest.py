# tests/conftest.py
"""
Общие фикстуры и настройки для тестов.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable

import pytest

from live_location.common.constants import CloseCode, UserRole
from live_location.core.orders import InMemoryOrderMappingStore
from live_location.services.realtime_ws.connection_registry import ConnectionRegistry
from live_location.services.realtime_ws.relay import LiveLocationService
from live_location.services.realtime_ws.router import Router
from live_location.shared.codec import decode
from live_location.shared.models.envelope import Envelope
from live_location.shared.models.user import User


# =============================================================================
# ФИКСТУРЫ КОНФИГУРАЦИИ
# =============================================================================

@pytest.fixture(scope="session")
def project_root() -> Path:
    """Корневая директория проекта."""
    return Path(__file__).parent.parent


@pytest.fixture(scope="session")
def config_path(project_root: Path) -> Path:
    """Путь к файлу конфигурации."""
    return project_root / "config" / "config.json"


@pytest.fixture
def mock_config() -> dict[str, Any]:
    """Мок конфигурации для тестов."""
    return {
        "_comment_system": "Системные настройки",
        "PROJECT_NAME": "live_location_test",
        "VERSION": "1.0.0-test",
        "DEBUG": True,
        "LOG_LEVEL": "DEBUG",
        "ENVIRONMENT": "test",
        "LOG_FORMAT": "json",
        "LOG_TO_FILE": False,
        "WS_HOST": "127.0.0.1",
        "WS_PORT": 9001,
        "WS_PATH": "live",
        "WS_PING_INTERVAL": 10.0,
        "WS_STALE_AFTER": 60.0,
        "AUTH_ENABLED": True,
        "STORAGE_TYPE": "memory",
        "BRIDGE_ENABLED": True,
        "RABBITMQ_HOST": "rabbit",
        "RABBITMQ_PORT": 5673,
        "RABBITMQ_USER": "relay",
        "RABBITMQ_PASSWORD": "secret",
        "RABBITMQ_VHOST": "/",
        "RABBITMQ_CLIENT_ID": "relay-test",
        "BRIDGE_COMPRESSION": "gzip",
        "MAX_RECONNECT_ATTEMPTS": 3,
    }


@pytest.fixture
def temp_config_file(tmp_path: Path, mock_config: dict[str, Any]) -> Path:
    """Временный config.json."""
    path = tmp_path / "config.json"
    path.write_text(json.dumps(mock_config), encoding="utf-8")
    return path


# =============================================================================
# ТРАНСПОРТ
# =============================================================================

class FakeTransport:
    """Транспорт в памяти: запоминает отправленные кадры и закрытие."""

    def __init__(self, fail_send: bool = False) -> None:
        self.sent: list[str] = []
        self.pings = 0
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self.fail_send = fail_send

    @property
    def is_open(self) -> bool:
        return self.close_code is None

    async def send_text(self, data: str) -> None:
        if self.fail_send:
            raise ConnectionResetError("broken pipe")
        self.sent.append(data)

    async def ping(self) -> None:
        self.pings += 1

    async def close(self, code: int = CloseCode.NORMAL, reason: str = "") -> None:
        self.close_code = code
        self.close_reason = reason

    def envelopes(self) -> list[Envelope]:
        return [decode(frame) for frame in self.sent]

    def of_type(self, msg_type: str) -> list[Envelope]:
        return [e for e in self.envelopes() if e.wire_type == msg_type]


@pytest.fixture
def make_transport() -> Callable[..., FakeTransport]:
    """Фабрика FakeTransport."""
    return FakeTransport


class FakeClock:
    """Управляемые монотонные часы."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# ПОЛЬЗОВАТЕЛИ
# =============================================================================

@pytest.fixture
def driver() -> User:
    return User(id="D1", role=UserRole.DRIVER)


@pytest.fixture
def other_driver() -> User:
    return User(id="D2", role=UserRole.DRIVER)


@pytest.fixture
def customer() -> User:
    return User(id="C1", role=UserRole.CUSTOMER)


# =============================================================================
# СЕРВИСЫ
# =============================================================================

@pytest.fixture
def store() -> InMemoryOrderMappingStore:
    return InMemoryOrderMappingStore()


@pytest.fixture
def registry(clock: FakeClock) -> ConnectionRegistry:
    return ConnectionRegistry(stale_after=120.0, clock=clock)


@pytest.fixture
def router(registry: ConnectionRegistry) -> Router:
    return Router(registry)


@pytest.fixture
def relay(
    store: InMemoryOrderMappingStore,
    registry: ConnectionRegistry,
    router: Router,
) -> LiveLocationService:
    """Релей без моста и без аутентификации."""
    return LiveLocationService(
        store=store,
        registry=registry,
        router=router,
        auth_enabled=False,
        bridge_enabled=False,
        ping_interval=30.0,
        stale_after=120.0,
    )
