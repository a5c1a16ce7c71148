"""Integration tests for the MCP tools"""

from datetime import timedelta
from unittest.mock import patch

import pytest
from fastmcp import Client
from fastmcp.exceptions import McpError, ToolError

from freshwatch import mcp_server
from freshwatch.config import config
from freshwatch.models.analytics import PeriodType
from freshwatch.models.content import RewrittenContent
from freshwatch.services.change_detector import ChangeDetector
from freshwatch.services.refresh_orchestrator import RefreshOrchestrator
from tests.helpers import T0, make_snapshot, success_outcome

URL = "https://example.com/product"

# Raised by Client.call_tool when a tool fails
TOOL_ERRORS = (ToolError, McpError)


class TestMcpTools:
    """Test the MCP tools against a temporary database"""

    @pytest.fixture(autouse=True)
    def settings_path(self, tmp_path, monkeypatch):
        monkeypatch.setattr(config, "freshness_settings_path", str(tmp_path / "freshness.yaml"))
        monkeypatch.delenv("FRESHNESS_AUTO_REFRESH", raising=False)

    @pytest.fixture
    def orchestrator(self, database):
        orchestrator = RefreshOrchestrator(database=database, worker_id="worker-test")
        with patch.object(mcp_server, "_get_orchestrator", return_value=orchestrator):
            yield orchestrator

    @pytest.fixture
    def tracked(self, orchestrator):
        return orchestrator.tracker.initialize("item-1", URL, make_snapshot(), now=T0)

    async def call(self, tool: str, **arguments):
        async with Client(mcp_server.mcp) as client:
            result = await client.call_tool(tool, arguments)
        return result.structured_content

    def add_versions(self, orchestrator, count: int) -> None:
        """Record `count` further content versions of item-1"""
        previous = make_snapshot()
        for n in range(count):
            at = T0 + timedelta(hours=25 * (n + 1))
            snapshot = make_snapshot(title=f"Example Product v{n + 2}")
            change = ChangeDetector().detect_changes(previous, snapshot)
            rewritten = RewrittenContent(title=f"Rewrite {n + 2}")
            orchestrator.tracker.mark_checked(
                "item-1", success_outcome(snapshot, change, at=at, rewritten=rewritten), at
            )
            previous = snapshot

    @pytest.mark.asyncio
    async def test_request_refresh(self, tracked, orchestrator):
        result = await self.call("request_refresh", item_id="item-1")

        assert result["queued"] is True
        assert result["entry"]["item_id"] == "item-1"
        assert result["entry"]["refresh_type"] == "manual"
        assert orchestrator.scheduler.active_entry("item-1") is not None

    @pytest.mark.asyncio
    async def test_request_refresh_while_processing(self, tracked, orchestrator):
        orchestrator.scheduler.enqueue("item-1", now=T0)
        orchestrator.scheduler.claim_next("worker-test", now=T0)

        result = await self.call("request_refresh", item_id="item-1")

        assert result == {"queued": False, "reason": "refresh already in progress"}

    @pytest.mark.asyncio
    async def test_request_refresh_untracked(self, orchestrator):
        with pytest.raises(TOOL_ERRORS, match="Item missing is not tracked"):
            await self.call("request_refresh", item_id="missing")

    @pytest.mark.asyncio
    async def test_batch_refresh(self, tracked, orchestrator):
        orchestrator.tracker.initialize("item-2", f"{URL}/2", make_snapshot(), now=T0)
        orchestrator.scheduler.enqueue("item-2", now=T0)

        result = await self.call(
            "batch_refresh", item_ids=["item-1", "item-2", "missing"], priority="high"
        )

        assert result["queued"] == 1
        assert result["skipped"] == 1
        assert result["not_tracked"] == ["missing"]
        entry = orchestrator.scheduler.active_entry("item-1")
        assert entry.batch_id == result["batch_id"]
        assert entry.priority.value == "high"

    @pytest.mark.asyncio
    async def test_batch_refresh_invalid_arguments(self, orchestrator):
        with pytest.raises(TOOL_ERRORS, match="Invalid priority: urgent"):
            await self.call("batch_refresh", item_ids=["item-1"], priority="urgent")
        with pytest.raises(TOOL_ERRORS, match="item_ids must hold"):
            await self.call("batch_refresh", item_ids=[])

    @pytest.mark.asyncio
    async def test_get_freshness(self, tracked, orchestrator):
        result = await self.call("get_freshness", item_id="item-1")

        assert result["record"]["item_id"] == "item-1"
        assert result["record"]["content_version"] == 1
        assert result["active_refresh"] is None

        orchestrator.request_refresh("item-1", now=T0)
        result = await self.call("get_freshness", item_id="item-1")
        assert result["active_refresh"]["status"] == "pending"

    @pytest.mark.asyncio
    async def test_get_freshness_untracked(self, orchestrator):
        with pytest.raises(TOOL_ERRORS, match="Item missing is not tracked"):
            await self.call("get_freshness", item_id="missing")

    @pytest.mark.asyncio
    async def test_list_versions_pages(self, tracked, orchestrator):
        self.add_versions(orchestrator, 2)

        first = await self.call("list_versions", item_id="item-1", limit=2)
        assert [v["version_number"] for v in first["versions"]] == [3, 2]
        assert first["next_cursor"] == 2

        last = await self.call(
            "list_versions", item_id="item-1", limit=2, before=first["next_cursor"]
        )
        assert [v["version_number"] for v in last["versions"]] == [1]
        assert last["next_cursor"] is None

    @pytest.mark.asyncio
    async def test_list_versions_limit_bounds(self, tracked):
        for limit in (0, 101):
            with pytest.raises(TOOL_ERRORS, match="limit must be between 1 and 100"):
                await self.call("list_versions", item_id="item-1", limit=limit)

        result = await self.call("list_versions", item_id="item-1", limit=100)
        assert len(result["versions"]) == 1

    @pytest.mark.asyncio
    async def test_list_versions_untracked(self, orchestrator):
        with pytest.raises(TOOL_ERRORS, match="Item missing is not tracked"):
            await self.call("list_versions", item_id="missing")

    @pytest.mark.asyncio
    async def test_rollback_version(self, tracked, orchestrator):
        self.add_versions(orchestrator, 2)

        result = await self.call("rollback_version", item_id="item-1", version=2)

        assert result["rolled_back_to"] == 2
        assert result["record"]["rewritten_metadata"]["title"] == "Rewrite 2"
        assert orchestrator.tracker.get("item-1").rewritten_metadata["title"] == "Rewrite 2"

    @pytest.mark.asyncio
    async def test_rollback_errors(self, tracked):
        with pytest.raises(TOOL_ERRORS, match="Item item-1 has no version 9"):
            await self.call("rollback_version", item_id="item-1", version=9)
        with pytest.raises(TOOL_ERRORS, match="Item missing is not tracked"):
            await self.call("rollback_version", item_id="missing", version=1)

    @pytest.mark.asyncio
    async def test_queue_status(self, tracked, orchestrator):
        orchestrator.scheduler.enqueue("item-1", now=T0)

        result = await self.call("queue_status")

        assert result["depth"]["pending"] == 1

    @pytest.mark.asyncio
    async def test_get_analytics(self, tracked, orchestrator):
        orchestrator.analytics.rollup(T0, T0 + timedelta(days=1), PeriodType.DAILY)

        result = await self.call("get_analytics", period_type="daily", limit=5)

        assert len(result["rows"]) == 1
        assert result["rows"][0]["period_type"] == "daily"
        assert (await self.call("get_analytics", period_type="hourly"))["rows"] == []

    @pytest.mark.asyncio
    async def test_get_analytics_invalid_period(self, orchestrator):
        with pytest.raises(TOOL_ERRORS, match="Invalid period_type: yearly"):
            await self.call("get_analytics", period_type="yearly")
