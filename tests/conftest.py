from __future__ import annotations

import random
from typing import Callable

import httpx
import pytest

from m3w_loadtest.client import MediaLibraryClient
from m3w_loadtest.config import ServiceConfig
from m3w_loadtest.metrics import MetricsBuffer
from m3w_loadtest.workload import WorkerContext


@pytest.fixture
def service_config() -> ServiceConfig:
    return ServiceConfig(
        base_url="http://m3w.test",
        token="token-123",
        library_id="lib-1",
        song_id="song-1",
    )


@pytest.fixture
def make_client(service_config: ServiceConfig):
    clients: list[MediaLibraryClient] = []

    def factory(
        handler: Callable[[httpx.Request], httpx.Response],
        config: ServiceConfig | None = None,
    ) -> MediaLibraryClient:
        client = MediaLibraryClient(config or service_config, transport=httpx.MockTransport(handler))
        clients.append(client)
        return client

    yield factory
    for client in clients:
        client.close()


@pytest.fixture
def pauses() -> list[float]:
    return []


@pytest.fixture
def worker_context(pauses: list[float]) -> WorkerContext:
    return WorkerContext(
        worker_id=1,
        metrics=MetricsBuffer(),
        rng=random.Random(7),
        pause=pauses.append,
    )
