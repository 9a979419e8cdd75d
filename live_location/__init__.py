"""
Live Location — релей живой геопозиции водителя пассажиру по WebSocket.

Пакеты:
- shared: конверт и кодек провода
- core: привязки заказов, геометрия
- services.realtime_ws: реестр соединений, маршрутизатор, релей, FastAPI-шлюз
- infra: мост в durable log (RabbitMQ)
- client: клиентская сессия с переподключением и трекингом
"""

__version__ = "1.0.0"
