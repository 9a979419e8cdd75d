# live_location/services/realtime_ws/app.py
"""
FastAPI приложение WebSocket-шлюза живых локаций.

WebSocket endpoint:
- {WS_PATH} (по умолчанию /ws) — токен в ?token= или Authorization: Bearer

REST endpoints:
- GET /health — проверка здоровья
- GET /stats — статистика соединений
- POST /broadcast — SYSTEM-сообщение в топик или всем
- POST /api/v1/orders/assign — назначить водителя на заказ
- PATCH /api/v1/orders/{order_id}/status — сменить статус заказа
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from live_location.common.constants import (
    CloseCode,
    CloseReason,
    MessageType,
    OrderMappingStatus,
    SYSTEM_SENDER_ID,
)
from live_location.common.errors import InvalidStatusTransition, NotFound
from live_location.common.logger import log_error
from live_location.core.orders import OrderMapping
from live_location.services.realtime_ws.connection_registry import StarletteTransport
from live_location.services.realtime_ws.relay import LiveLocationService
from live_location.shared.codec import encode
from live_location.shared.models.common import ErrorResponse, HealthStatus


# === MODELS ===

class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BroadcastRequest(ApiModel):
    """Запрос на broadcast."""
    topic: str | None = None  # Если None — всем
    message: dict[str, Any]


class BroadcastResponse(ApiModel):
    sent_count: int


class StatsResponse(BaseModel):
    """Статистика соединений."""
    active_connections: int
    total_topics: int
    total_connections_ever: int
    total_evicted: int
    total_messages_sent: int
    connections_by_role: dict[str, int]
    bridge_connected: bool


class AssignOrderRequest(ApiModel):
    """Назначение водителя на заказ."""
    order_id: str = Field(..., min_length=1)
    customer_id: str = Field(..., min_length=1)
    driver_id: str = Field(..., min_length=1)
    details: dict[str, Any] | None = None


class UpdateStatusRequest(ApiModel):
    """Смена статуса заказа."""
    status: OrderMappingStatus
    updated_by: str = SYSTEM_SENDER_ID


# === APP FACTORY ===

def create_app(relay: LiveLocationService | None = None, ws_path: str | None = None) -> FastAPI:
    """
    Собирает приложение шлюза.

    Args:
        relay: готовый сервис релея (иначе создаётся из настроек)
        ws_path: путь WebSocket endpoint (иначе WS_PATH из настроек)
    """
    from live_location.config import settings

    relay = relay or LiveLocationService()
    ws_path = ws_path or settings.websocket.WS_PATH
    version = settings.system.VERSION

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Жизненный цикл приложения."""
        await relay.start()
        yield
        await relay.stop()

    app = FastAPI(
        title="Live Location Gateway",
        description="WebSocket сервис релея локаций водителей пассажирам.",
        version=version,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.relay = relay

    # === HEALTH CHECK ===

    @app.get("/health", response_model=HealthStatus, tags=["Health"])
    async def health_check() -> HealthStatus:
        """Проверка здоровья сервиса."""
        dependencies: dict[str, str] = {}
        if relay.producer is not None:
            dependencies["bridge"] = "up" if relay.producer.is_connected else "down"

        status = "healthy" if relay.is_running and "down" not in dependencies.values() else "degraded"
        return HealthStatus(
            status=status,
            service="live_location_gateway",
            version=version,
            dependencies=dependencies,
        )

    # === STATS ===

    @app.get("/stats", response_model=StatsResponse, tags=["Stats"])
    async def get_stats() -> StatsResponse:
        """Получить статистику соединений."""
        return StatsResponse(**relay.get_stats())

    # === BROADCAST ===

    @app.post("/broadcast", response_model=BroadcastResponse, tags=["Admin"])
    async def broadcast_message(request: BroadcastRequest) -> BroadcastResponse:
        """
        Отправить SYSTEM-сообщение клиентам.

        - Если указан `topic` — только подписчикам топика
        - Если `topic=null` — всем подключенным
        """
        envelope = encode(type=MessageType.SYSTEM, payload=request.message)
        if request.topic:
            sent = await relay.send_to_topic(request.topic, envelope)
        else:
            sent = await relay.broadcast(envelope)

        return BroadcastResponse(sent_count=sent)

    # === ORDERS ===

    @app.post(
        "/api/v1/orders/assign",
        response_model=OrderMapping,
        status_code=201,
        tags=["Orders"],
    )
    async def assign_order(request: AssignOrderRequest) -> OrderMapping:
        """Назначить водителя на заказ и уведомить обе стороны."""
        return await relay.assign_driver_to_order(
            request.order_id,
            request.customer_id,
            request.driver_id,
            request.details,
        )

    @app.patch(
        "/api/v1/orders/{order_id}/status",
        response_model=OrderMapping,
        responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
        tags=["Orders"],
    )
    async def update_order_status(order_id: str, request: UpdateStatusRequest) -> OrderMapping:
        """Сменить статус заказа."""
        try:
            return await relay.update_order_status(order_id, request.status, request.updated_by)
        except NotFound as e:
            raise HTTPException(
                status_code=404,
                detail=ErrorResponse(error_code=e.code, message=e.message, details=e.details).model_dump(),
            )
        except InvalidStatusTransition as e:
            raise HTTPException(
                status_code=409,
                detail=ErrorResponse(error_code=e.code, message=e.message, details=e.details).model_dump(),
            )

    # === WEBSOCKET ===

    @app.websocket(ws_path)
    async def websocket_endpoint(websocket: WebSocket) -> None:
        """
        WebSocket живых локаций.

        Входящие кадры — JSON-конверты:
        - LOCATION_UPDATE от водителя (с orderId)
        - SUBSCRIPTION {action, topics}
        """
        token = relay.extract_token(websocket.query_params, websocket.headers)
        user = await relay.authenticate(token)

        await websocket.accept()
        if user is None:
            await websocket.close(code=CloseCode.AUTH_FAILED, reason=CloseReason.AUTH_FAILED)
            return

        transport = StarletteTransport(websocket)
        code: int = CloseCode.NORMAL
        try:
            await relay.on_connect(user, transport)
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    code = message.get("code", CloseCode.NORMAL)
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes") or b""
                await relay.on_frame(user, raw)

        except WebSocketDisconnect as e:
            code = e.code
        except Exception as e:
            await log_error(f"Ошибка WebSocket соединения {user.id}: {e}", exc_info=True)
            code = CloseCode.INTERNAL_ERROR
            await transport.close(CloseCode.INTERNAL_ERROR, CloseReason.INTERNAL_ERROR)
        finally:
            await relay.on_disconnect(user, transport, code)

    return app


app = create_app()


# === STARTUP ===

if __name__ == "__main__":
    import uvicorn
    from live_location.config import settings

    uvicorn.run(
        app,
        host=settings.websocket.WS_HOST,
        port=settings.websocket.WS_PORT,
        ws_max_size=settings.websocket.WS_MAX_PAYLOAD,
    )
