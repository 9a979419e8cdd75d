"""
Инфраструктура: мост в durable log (RabbitMQ).
"""

from live_location.infra.event_bus import (
    BridgeMessage,
    LocationBridgeConsumer,
    LocationBridgeProducer,
)

__all__ = ["BridgeMessage", "LocationBridgeConsumer", "LocationBridgeProducer"]
