"""Integration fixtures: a clean Redis database around every test."""

from __future__ import annotations

import pytest


@pytest.fixture(autouse=True)
async def clean_redis(redis_client):
    """Flush the shared container database before and after each test."""
    await redis_client.flushdb()
    yield
    await redis_client.flushdb()
