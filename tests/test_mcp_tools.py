"""
Tests for all 17 MCP tools in feedvault.mcp.tools.

Tests use direct coroutine calls (not MCP protocol) via a mock FastMCP.
"""

import io
import json

import pytest

from feedvault.config import AdmissionConfig, VaultConfig
from feedvault.mcp.audit import AuditLogger
from feedvault.mcp.tools import TOOL_COUNT, register_vault_tools
from feedvault.service import VaultService
from feedvault.store import RecordStore

from conftest import FakeTime, make_raw


# ---------------------------------------------------------------------------
# Mock FastMCP
# ---------------------------------------------------------------------------


class MockMCP:
    """Minimal FastMCP mock that captures tool registrations."""

    def __init__(self):
        self.tools = {}

    def tool(self):
        def decorator(fn):
            self.tools[fn.__name__] = fn
            return fn
        return decorator


@pytest.fixture
def mcp_env(clock):
    """Service over an in-memory store, mock MCP, and a buffered audit log."""
    cfg = VaultConfig(admission=AdmissionConfig(drain_interval_s=3600.0))
    service = VaultService(cfg, store=RecordStore(":memory:", clock=clock), clock=FakeTime())
    mcp = MockMCP()
    buf = io.StringIO()
    register_vault_tools(mcp, service, audit=AuditLogger(output=buf))
    return {"mcp": mcp, "service": service, "audit": buf}


async def call(env, tool_name, **kwargs):
    """Call a registered MCP tool by name."""
    return await env["mcp"].tools[tool_name](**kwargs)


def audit_records(env):
    env["audit"].seek(0)
    return [json.loads(ln) for ln in env["audit"].read().splitlines() if ln]


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestToolCount:
    def test_all_tools_registered(self, mcp_env):
        assert len(mcp_env["mcp"].tools) == TOOL_COUNT == 17

    def test_all_tool_names(self, mcp_env):
        expected = {
            "vault_ingest", "vault_query", "vault_search", "vault_stats",
            "vault_event_log", "vault_get_settings", "vault_update_settings",
            "vault_export", "vault_import", "vault_cleanup", "vault_optimize",
            "vault_quota_status", "vault_quota_check", "vault_force_cleanup",
            "vault_clear_all", "vault_delete", "vault_health",
        }
        assert set(mcp_env["mcp"].tools) == expected


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


class TestIngestAndRead:
    @pytest.mark.asyncio
    async def test_ingest_then_query(self, mcp_env):
        r = await call(mcp_env, "vault_ingest", record=make_raw(1))
        assert r["status"] == "ok"
        assert r["data"]["accepted"] is True

        page = await call(mcp_env, "vault_query", author="Author 1")
        assert page["data"]["totalCount"] == 1
        await mcp_env["service"].stop()

    @pytest.mark.asyncio
    async def test_rejected_ingest_audited(self, mcp_env):
        r = await call(mcp_env, "vault_ingest", record={"id": "nothing"})
        assert r["data"]["accepted"] is False
        rec = audit_records(mcp_env)[-1]
        assert rec["tool"] == "vault_ingest"
        assert rec["outcome"] == "rejected"
        assert rec["d"]["reason"] == "no_content"
        await mcp_env["service"].stop()

    @pytest.mark.asyncio
    async def test_search_and_filters(self, mcp_env):
        for i in range(3):
            await call(mcp_env, "vault_ingest", record=make_raw(i))
        r = await call(mcp_env, "vault_search", query="number 2")
        assert [item["id"] for item in r["data"]["items"]] == ["post-2"]
        r = await call(mcp_env, "vault_search", query="post", has_media=True)
        assert r["data"]["totalCount"] == 0
        await mcp_env["service"].stop()

    @pytest.mark.asyncio
    async def test_bad_date_is_error(self, mcp_env):
        r = await call(mcp_env, "vault_query", date_from="not-a-date")
        assert r["status"] == "error"
        assert audit_records(mcp_env)[-1]["outcome"] == "error"
        await mcp_env["service"].stop()

    @pytest.mark.asyncio
    async def test_stats_and_events(self, mcp_env):
        await call(mcp_env, "vault_ingest", record=make_raw(1))
        stats = await call(mcp_env, "vault_stats")
        assert stats["data"]["total_records"] == 1
        await call(mcp_env, "vault_delete", record_id="post-1")
        events = await call(mcp_env, "vault_event_log", limit=1)
        assert events["data"]["events"][0]["event"] == "post_deleted"
        await mcp_env["service"].stop()


class TestSettingsAndData:
    @pytest.mark.asyncio
    async def test_update_settings(self, mcp_env):
        r = await call(mcp_env, "vault_update_settings", settings={"cleanup_days": 9})
        assert r["data"]["cleanup_days"] == 9
        r = await call(mcp_env, "vault_get_settings")
        assert r["data"]["cleanup_days"] == 9
        r = await call(mcp_env, "vault_update_settings", settings={"bogus": 1})
        assert r["status"] == "error"
        await mcp_env["service"].stop()

    @pytest.mark.asyncio
    async def test_export_import_json_string(self, mcp_env):
        await call(mcp_env, "vault_ingest", record=make_raw(1))
        exported = await call(mcp_env, "vault_export")
        envelope = exported["data"]
        envelope["posts"]["post-9"] = make_raw(9)
        r = await call(mcp_env, "vault_import", data=json.dumps(envelope))
        assert r["data"] == {"imported": 1, "skipped": 1, "errors": 0}
        await mcp_env["service"].stop()

    @pytest.mark.asyncio
    async def test_import_invalid_json(self, mcp_env):
        r = await call(mcp_env, "vault_import", data="{broken")
        assert r["status"] == "error"
        assert r["message"].startswith("Invalid JSON")
        assert audit_records(mcp_env)[-1]["outcome"] == "error"
        await mcp_env["service"].stop()


class TestStorage:
    @pytest.mark.asyncio
    async def test_cleanup_optimize_quota(self, mcp_env):
        await call(mcp_env, "vault_ingest", record=make_raw(1))
        assert (await call(mcp_env, "vault_cleanup"))["data"]["removedCount"] == 0
        assert "optimizedCount" in (await call(mcp_env, "vault_optimize"))["data"]
        quota = await call(mcp_env, "vault_quota_status")
        assert quota["data"]["status"] == "ok"
        checked = await call(mcp_env, "vault_quota_check")
        assert checked["data"]["record_count"] == 1
        await mcp_env["service"].stop()

    @pytest.mark.asyncio
    async def test_force_cleanup(self, mcp_env):
        for i in range(3):
            await call(mcp_env, "vault_ingest", record=make_raw(i))
        r = await call(mcp_env, "vault_force_cleanup")
        assert r["data"] == {"removedCount": 3}
        assert mcp_env["service"].store.count() == 0
        assert audit_records(mcp_env)[-1]["tool"] == "vault_force_cleanup"
        await mcp_env["service"].stop()

    @pytest.mark.asyncio
    async def test_clear_all_requires_confirm(self, mcp_env):
        await call(mcp_env, "vault_ingest", record=make_raw(1))
        r = await call(mcp_env, "vault_clear_all")
        assert r["status"] == "error"
        assert mcp_env["service"].store.count() == 1
        assert audit_records(mcp_env)[-1]["outcome"] == "rejected"

        r = await call(mcp_env, "vault_clear_all", confirm=True)
        assert r["data"] == {"cleared": True}
        assert mcp_env["service"].store.count() == 0
        await mcp_env["service"].stop()

    @pytest.mark.asyncio
    async def test_health(self, mcp_env):
        r = await call(mcp_env, "vault_health")
        assert r["status"] == "ok"
        assert r["data"]["admission"]["max_requests"] == 20
        await mcp_env["service"].stop()


class TestAuditTrail:
    @pytest.mark.asyncio
    async def test_every_call_audited(self, mcp_env):
        await call(mcp_env, "vault_stats")
        await call(mcp_env, "vault_get_settings")
        records = audit_records(mcp_env)
        assert [r["tool"] for r in records] == ["vault_stats", "vault_get_settings"]
        assert len({r["rid"] for r in records}) == 2
        assert all(r["db"] == ":memory:" for r in records)
        await mcp_env["service"].stop()

    @pytest.mark.asyncio
    async def test_ingest_detail_has_hash_not_body(self, mcp_env):
        raw = make_raw(1, text="secret body text " * 50)
        await call(mcp_env, "vault_ingest", record=raw)
        rec = audit_records(mcp_env)[-1]
        assert rec["d"]["id"] == "post-1"
        assert len(rec["d"]["hash"]) == 64
        assert "secret body text" not in json.dumps(rec)
        await mcp_env["service"].stop()
