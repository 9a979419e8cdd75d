# live_location/services/realtime_ws/__init__.py
"""
Realtime WebSocket Gateway — релей живых локаций.

Обеспечивает:
- WebSocket соединения водителей и пассажиров
- Пересылку локации водителя пассажиру заказа
- Подписки на топики order:{id} и driver:{id}
- Зеркалирование в durable log (RabbitMQ)
"""
