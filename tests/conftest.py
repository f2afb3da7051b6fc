from __future__ import annotations

import pytest

from tests.support import Recorder
from topicroute.app.application.container import Container
from topicroute.app.infrastructure.messaging.inmemory.in_memory_transport import InMemoryTransport


@pytest.fixture()
def transport() -> InMemoryTransport:
    return InMemoryTransport()


@pytest.fixture()
def container(transport: InMemoryTransport) -> Container:
    return Container(transport)


@pytest.fixture()
def recorder() -> Recorder:
    return Recorder()
