"""
Сервисы приложения.

Сервисы:
- realtime_ws: WebSocket-шлюз релея живых локаций
"""

__all__: list[str] = []
