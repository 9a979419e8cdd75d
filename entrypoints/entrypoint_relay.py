#!/usr/bin/env python3
"""
Entrypoint для шлюза живых локаций.

Запуск:
    python entrypoints/entrypoint_relay.py

Порт по умолчанию: 8089 (WS_PORT)
"""

import sys
from pathlib import Path

# Добавляем корневую директорию проекта в путь
project_root = Path(__file__).parent.parent.resolve()
sys.path.insert(0, str(project_root))

import uvicorn

from live_location.common.logger import setup_logging
from live_location.config import settings


def main() -> None:
    """Запустить шлюз живых локаций."""
    setup_logging()

    uvicorn.run(
        "live_location.services.realtime_ws.app:app",
        host=settings.websocket.WS_HOST,
        port=settings.websocket.WS_PORT,
        ws_max_size=settings.websocket.WS_MAX_PAYLOAD,
        reload=settings.system.DEBUG,
        log_level=settings.system.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
