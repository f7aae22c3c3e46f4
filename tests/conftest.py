"""Pytest hooks and fixtures."""

from __future__ import annotations

import pytest

from almondcloud.backend.client import BackendClient
from fake_engine import FakeEngine, backend_config


def pytest_configure(config):
    """Register custom markers (also in pyproject.toml)."""
    config.addinivalue_line(
        "markers",
        "network: opens loopback sockets",
    )


@pytest.fixture
async def engine():
    eng = FakeEngine()
    await eng.start()
    yield eng
    await eng.stop()


@pytest.fixture
async def backend(engine):
    client = BackendClient(backend_config(engine.address))
    client.start()
    await client.wait_ready(2.0)
    yield client
    await client.stop()
