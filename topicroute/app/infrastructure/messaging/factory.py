"""Transport factory: selects implementation from config. Only place that imports concrete transports."""
from __future__ import annotations

from topicroute.app.config.settings import Settings
from topicroute.app.infrastructure.messaging.inmemory.in_memory_transport import InMemoryTransport
from topicroute.app.infrastructure.messaging.rabbitmq.rabbitmq_transport import RabbitMQTransport
from topicroute.app.ports.transport import MessageTransport


def create_transport(settings: Settings) -> MessageTransport:
    backend = settings.transport_backend.strip().lower()

    if backend == "rabbitmq":
        return RabbitMQTransport(settings)

    if backend == "inmemory":
        return InMemoryTransport()

    raise ValueError(f"Unsupported transport backend: {backend}")
