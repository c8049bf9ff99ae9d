"""Root conftest: suite markers and the session-scoped Redis container.

The Redis 7 container is only started when a test requests it; unit tests
run entirely on in-memory repositories.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path

import pytest
import redis as sync_redis
from dotenv import load_dotenv
from redis.asyncio import Redis
from testcontainers.core.container import DockerContainer

logger = logging.getLogger(__name__)

# Load repository-root .env for test opt-ins (existing env vars stay authoritative).
load_dotenv(dotenv_path=Path(__file__).resolve().parents[1] / ".env", override=False)


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Attach suite markers from test path.

    - `tests/unit/*` -> `unit`
    - `tests/integration/*` -> `integration`
    - `tests/scenarios/*` -> `scenario`
    """
    root = Path(__file__).resolve().parents[1]
    for item in items:
        item_path = Path(str(item.fspath)).resolve()
        try:
            rel = item_path.relative_to(root)
        except ValueError:
            continue

        parts = rel.parts
        if len(parts) < 2 or parts[0] != "tests":
            continue
        if parts[1] == "unit":
            item.add_marker(pytest.mark.unit)
        elif parts[1] == "integration":
            item.add_marker(pytest.mark.integration)
        elif parts[1] == "scenarios":
            item.add_marker(pytest.mark.scenario)


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------

_READY_ATTEMPTS = 30


def _wait_for_redis(host: str, port: int) -> None:
    """Block until the container answers PING, or re-raise the last error."""
    client = sync_redis.Redis(host=host, port=port)
    try:
        for attempt in range(1, _READY_ATTEMPTS + 1):
            try:
                client.ping()
                return
            except (sync_redis.ConnectionError, sync_redis.TimeoutError) as exc:
                if attempt == _READY_ATTEMPTS:
                    raise
                logger.debug(
                    "Redis not ready (attempt %d/%d): %s", attempt, _READY_ATTEMPTS, exc
                )
                time.sleep(1)
    finally:
        client.close()


@pytest.fixture(scope="session")
def redis_container():
    """Start one Redis 7 container for the whole session and yield its URL."""
    with DockerContainer("redis:7-alpine").with_exposed_ports(6379) as container:
        host = container.get_container_host_ip()
        port = int(container.get_exposed_port(6379))
        _wait_for_redis(host, port)
        yield f"redis://{host}:{port}"


@pytest.fixture()
async def redis_client(redis_container):
    """Yield an async Redis client connected to the test container."""
    client = Redis.from_url(redis_container)
    yield client
    await client.aclose()
