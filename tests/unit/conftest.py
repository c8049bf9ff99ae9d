"""Unit test fixtures: in-memory FastMCP client and metric cleanup."""

from __future__ import annotations

import pytest
from fastmcp import Client

from trailguard.config import BackupConfig
from trailguard.config import TrailguardConfig
from trailguard.observability import reset_metrics


@pytest.fixture(autouse=True)
def clean_metrics():
    """Reset in-process latency aggregates and counters between tests."""
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture()
def backup_dir(tmp_path):
    return tmp_path / "backups"


@pytest.fixture()
async def mcp_client(backup_dir):
    """Yield a FastMCP Client wired to an in-memory Trailguard server."""
    from trailguard.server import configure
    from trailguard.server import mcp
    from trailguard.server import shutdown

    await configure(
        config=TrailguardConfig(backup=BackupConfig(directory=str(backup_dir))),
        enable_queue=True,
    )

    async with Client(mcp) as client:
        yield client

    await shutdown()
