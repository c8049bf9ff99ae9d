"""MCP protocol-level integration tests on the Redis backend.

Verifies tool registration, recording, integrity verification and the
backup round trip through ``fastmcp.Client`` with a real Redis container.
"""

from __future__ import annotations

import asyncio
import json

import pytest
from fastmcp import Client

from trailguard.config import BackupConfig
from trailguard.config import TrailguardConfig
from trailguard.server import _get_services
from trailguard.server import configure
from trailguard.server import mcp
from trailguard.server import shutdown


@pytest.fixture(autouse=True)
async def _configured(redis_container, tmp_path):
    await configure(
        redis_url=redis_container,
        config=TrailguardConfig(backup=BackupConfig(directory=str(tmp_path / "backups"))),
        enable_queue=True,
    )
    yield
    await shutdown()


def _parse(result) -> dict:
    return json.loads(result.content[0].text)


async def _record(client: Client, **arguments) -> dict:
    payload = {"type": "users.update", "description": "Updated user", "causer_id": "alice"}
    payload.update(arguments)
    return _parse(await client.call_tool("record_activity", payload))


class TestMcpProtocol:
    """Protocol-level checks for the Trailguard server."""

    async def test_list_tools(self):
        async with Client(mcp) as client:
            tools = await client.list_tools()
            names = {t.name for t in tools}
            assert names == {
                "record_activity",
                "verify_integrity",
                "check_suspicious_ips",
                "detect_anomalies",
                "identify_patterns",
                "security_report",
                "create_backup",
                "verify_backup",
                "restore_backup",
                "list_backups",
                "cleanup_backups",
            }

    async def test_record_masks_secrets_in_storage(self, redis_client):
        async with Client(mcp) as client:
            data = await _record(
                client,
                type="login",
                description="User logged in",
                properties={"password": "secret123", "remember": True},
            )

        raw = await redis_client.get(f"trailguard:event:{data['activity_id']}")
        stored = json.loads(raw)
        assert stored["properties"]["password"] == "[FILTERED]"
        assert stored["properties"]["remember"] is True
        assert "secret123" not in raw.decode()

    async def test_tampering_is_detected(self, redis_client):
        async with Client(mcp) as client:
            first = await _record(client, subject_id="1")
            second = await _record(client, subject_id="2")

            key = f"trailguard:event:{second['activity_id']}"
            stored = json.loads(await redis_client.get(key))
            stored["description"] = "Nothing to see here"
            await redis_client.set(key, json.dumps(stored))

            report = _parse(await client.call_tool("verify_integrity", {}))["data"]

        assert report["total"] == 2
        assert report["verified"] == 1
        assert [c["id"] for c in report["corrupted"]] == [second["activity_id"]]
        assert first["activity_id"] not in [c["id"] for c in report["corrupted"]]

    async def test_queued_events_are_persisted(self):
        async with Client(mcp) as client:
            for i in range(5):
                data = await _record(client, subject_id=str(i), queued=True)
                assert data["status"] == "queued"

            await _get_services().queue.drain()

            report = _parse(await client.call_tool("verify_integrity", {}))["data"]

        assert report["total"] == 5
        assert report["success"] is True

    async def test_concurrent_records_get_unique_ids(self):
        async with Client(mcp) as client:
            results = await asyncio.gather(
                *(_record(client, subject_id=str(i)) for i in range(20))
            )

        ids = [r["activity_id"] for r in results]
        assert len(set(ids)) == 20

    async def test_backup_restore_after_data_loss(self, redis_client):
        async with Client(mcp) as client:
            for i in range(3):
                await _record(client, subject_id=str(i))

            created = _parse(await client.call_tool("create_backup", {}))
            assert created["status"] == "ok"
            filename = created["data"]["manifest"]["filename"]

            await redis_client.flushdb()

            restored = _parse(
                await client.call_tool("restore_backup", {"filename": filename})
            )
            assert restored["status"] == "ok"
            assert restored["data"]["imported"] == 3

            report = _parse(await client.call_tool("verify_integrity", {}))["data"]

        assert report["total"] == 3
        assert report["verified"] == 3
