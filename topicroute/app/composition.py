"""Composition root: build a Container wired to the transport selected by settings."""
from __future__ import annotations

from topicroute.app.application.container import Container
from topicroute.app.config.settings import Settings
from topicroute.app.infrastructure.messaging.factory import create_transport


def create_container(settings: Settings | None = None) -> Container:
    return Container(create_transport(settings or Settings()))
