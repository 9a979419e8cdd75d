"""
Загрузчик конфигурации релея.
Источник — config/config.json, адреса и секреты переопределяются из окружения.
"""

from __future__ import annotations

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# ПУТИ
# =============================================================================

def get_project_root() -> Path:
    """Корневая директория проекта."""
    return Path(__file__).parent.parent.parent


def get_config_path() -> Path:
    """Путь к файлу конфигурации (можно переопределить LIVE_LOCATION_CONFIG)."""
    override = os.getenv("LIVE_LOCATION_CONFIG")
    if override:
        return Path(override)
    return get_project_root() / "config" / "config.json"


def load_config_json(path: Path | None = None) -> dict[str, Any]:
    """
    Загружает config.json.
    Отсутствующий файл — пустой словарь (работаем на дефолтах).
    """
    config_path = path or get_config_path()
    if not config_path.exists():
        return {}

    with open(config_path, "r", encoding="utf-8") as f:
        data = json.load(f)

    # Ключи _comment_* — комментарии в JSON
    return {k: v for k, v in data.items() if not k.startswith("_comment_")}


# =============================================================================
# СЕКЦИИ
# =============================================================================

class SystemSettings(BaseModel):
    """Системные настройки."""
    PROJECT_NAME: str = "live_location"
    VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    ENVIRONMENT: str = "development"


class LoggingSettings(BaseModel):
    """Настройки логирования."""
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: Literal["json", "colored"] = "colored"
    LOG_TO_FILE: bool = False
    LOG_FILE_PATH: str = "logs/relay.log"
    LOG_MAX_BYTES: int = 10485760


class WebSocketSettings(BaseModel):
    """Настройки WebSocket-шлюза."""
    WS_HOST: str = "0.0.0.0"
    WS_PORT: int = 8089
    WS_PATH: str = "/ws"
    WS_PING_INTERVAL: float = 30.0
    WS_STALE_AFTER: float = 120.0
    WS_MAX_PAYLOAD: int = 1024 * 1024

    @field_validator("WS_PATH")
    @classmethod
    def ensure_leading_slash(cls, v: str) -> str:
        """Путь всегда начинается со слэша."""
        return v if v.startswith("/") else f"/{v}"


class AuthSettings(BaseModel):
    """Настройки аутентификации соединений."""
    AUTH_ENABLED: bool = False


class StorageSettings(BaseModel):
    """Бэкенд хранилища привязок заказов."""
    STORAGE_TYPE: str = "memory"


class RabbitMQSettings(BaseModel):
    """Шина событий (durable log) на RabbitMQ."""
    BRIDGE_ENABLED: bool = False
    RABBITMQ_HOST: str = "localhost"
    RABBITMQ_PORT: int = 5672
    RABBITMQ_USER: str = "guest"
    RABBITMQ_PASSWORD: str = "guest"
    RABBITMQ_VHOST: str = "/"
    RABBITMQ_EXCHANGE: str = "live_location.events"
    RABBITMQ_PREFETCH_COUNT: int = 10
    RABBITMQ_CLIENT_ID: str = "live-location-service"
    BRIDGE_ACKS: int = -1
    BRIDGE_TIMEOUT: float = 30.0
    BRIDGE_COMPRESSION: Literal["none", "gzip"] = "none"

    @field_validator("RABBITMQ_PASSWORD", mode="before")
    @classmethod
    def get_from_env(cls, v: str) -> str:
        """Пароль из окружения имеет приоритет."""
        env_pass = os.getenv("RABBITMQ_PASSWORD", "")
        if env_pass:
            return env_pass
        return v

    @property
    def url(self) -> str:
        """URL для подключения к RabbitMQ."""
        return (
            f"amqp://{self.RABBITMQ_USER}:{self.RABBITMQ_PASSWORD}"
            f"@{self.RABBITMQ_HOST}:{self.RABBITMQ_PORT}{self.RABBITMQ_VHOST}"
        )

    @property
    def consumer_group(self) -> str:
        """Имя группы потребителя (префикс очередей)."""
        return f"{self.RABBITMQ_CLIENT_ID}-consumer"


class ClientSettings(BaseModel):
    """Дефолты клиентской сессии."""
    UPDATE_INTERVAL: float = 5.0
    RECONNECT_INTERVAL: float = 3.0
    MAX_RECONNECT_ATTEMPTS: int = 5
    POSITION_TIMEOUT: float = 5.0
    HIGH_ACCURACY: bool = True


# =============================================================================
# ГЛАВНЫЙ КЛАСС
# =============================================================================

class Settings(BaseSettings):
    """
    Настройки приложения.
    Агрегирует все секции конфигурации.
    """
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    system: SystemSettings = Field(default_factory=SystemSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    websocket: WebSocketSettings = Field(default_factory=WebSocketSettings)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    rabbitmq: RabbitMQSettings = Field(default_factory=RabbitMQSettings)
    client: ClientSettings = Field(default_factory=ClientSettings)

    @classmethod
    def from_config_json(cls, path: Path | None = None) -> "Settings":
        """
        Собирает Settings из config.json.
        Хосты, порты и секреты переопределяются переменными окружения.
        """
        data = load_config_json(path)

        def pick(key: str, default: Any, env: bool = False) -> Any:
            if env and os.getenv(key) is not None:
                return os.environ[key]
            return data.get(key, default)

        return cls(
            system=SystemSettings(
                PROJECT_NAME=pick("PROJECT_NAME", "live_location"),
                VERSION=pick("VERSION", "1.0.0"),
                DEBUG=pick("DEBUG", False),
                LOG_LEVEL=pick("LOG_LEVEL", "INFO", env=True),
                ENVIRONMENT=pick("ENVIRONMENT", "development", env=True),
            ),
            logging=LoggingSettings(
                LOG_LEVEL=pick("LOG_LEVEL", "INFO", env=True),
                LOG_FORMAT=pick("LOG_FORMAT", "colored", env=True),
                LOG_TO_FILE=pick("LOG_TO_FILE", False),
                LOG_FILE_PATH=pick("LOG_FILE_PATH", "logs/relay.log"),
                LOG_MAX_BYTES=pick("LOG_MAX_BYTES", 10485760),
            ),
            websocket=WebSocketSettings(
                WS_HOST=pick("WS_HOST", "0.0.0.0", env=True),
                WS_PORT=int(pick("WS_PORT", 8089, env=True)),
                WS_PATH=pick("WS_PATH", "/ws"),
                WS_PING_INTERVAL=pick("WS_PING_INTERVAL", 30.0),
                WS_STALE_AFTER=pick("WS_STALE_AFTER", 120.0),
                WS_MAX_PAYLOAD=pick("WS_MAX_PAYLOAD", 1024 * 1024),
            ),
            auth=AuthSettings(
                AUTH_ENABLED=pick("AUTH_ENABLED", False, env=True),
            ),
            storage=StorageSettings(
                STORAGE_TYPE=pick("STORAGE_TYPE", "memory", env=True),
            ),
            rabbitmq=RabbitMQSettings(
                BRIDGE_ENABLED=pick("BRIDGE_ENABLED", False, env=True),
                RABBITMQ_HOST=pick("RABBITMQ_HOST", "localhost", env=True),
                RABBITMQ_PORT=int(pick("RABBITMQ_PORT", 5672, env=True)),
                RABBITMQ_USER=pick("RABBITMQ_USER", "guest", env=True),
                RABBITMQ_PASSWORD=pick("RABBITMQ_PASSWORD", "guest", env=True),
                RABBITMQ_VHOST=pick("RABBITMQ_VHOST", "/"),
                RABBITMQ_EXCHANGE=pick("RABBITMQ_EXCHANGE", "live_location.events"),
                RABBITMQ_PREFETCH_COUNT=pick("RABBITMQ_PREFETCH_COUNT", 10),
                RABBITMQ_CLIENT_ID=pick("RABBITMQ_CLIENT_ID", "live-location-service", env=True),
                BRIDGE_ACKS=pick("BRIDGE_ACKS", -1),
                BRIDGE_TIMEOUT=pick("BRIDGE_TIMEOUT", 30.0),
                BRIDGE_COMPRESSION=pick("BRIDGE_COMPRESSION", "none"),
            ),
            client=ClientSettings(
                UPDATE_INTERVAL=pick("UPDATE_INTERVAL", 5.0),
                RECONNECT_INTERVAL=pick("RECONNECT_INTERVAL", 3.0),
                MAX_RECONNECT_ATTEMPTS=pick("MAX_RECONNECT_ATTEMPTS", 5),
                POSITION_TIMEOUT=pick("POSITION_TIMEOUT", 5.0),
                HIGH_ACCURACY=pick("HIGH_ACCURACY", True),
            ),
        )


@lru_cache()
def get_settings() -> Settings:
    """
    Синглтон настроек приложения.
    Перед сборкой подгружает .env из корня проекта.
    """
    from dotenv import load_dotenv

    env_path = get_project_root() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    return Settings.from_config_json()


settings = get_settings()
