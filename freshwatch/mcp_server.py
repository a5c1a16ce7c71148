"""MCP server implementation using fastmcp"""

import asyncio
import logging
import threading
from typing import Any

from apscheduler.schedulers.background import BackgroundScheduler
from fastmcp import FastMCP
from fastmcp.exceptions import McpError
from mcp.types import ErrorData
from starlette.responses import JSONResponse

from freshwatch.config import config
from freshwatch.models.analytics import PeriodType
from freshwatch.models.content import ContentVersion
from freshwatch.models.freshness import RefreshPriority
from freshwatch.services.errors import ItemNotTrackedError, VersionNotFoundError
from freshwatch.services.refresh_orchestrator import RefreshOrchestrator
from freshwatch.services.telemetry import get_telemetry_service

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

mcp = FastMCP(name="freshwatch", version="1.0.0")

# Background refresh orchestrator
_refresh_orchestrator: RefreshOrchestrator | None = None
_scheduler: BackgroundScheduler | None = None

_init_lock = threading.Lock()

MAX_BATCH_ITEMS = 1000


def _get_orchestrator() -> RefreshOrchestrator:
    """Get or initialize the orchestrator shared by all tools"""
    global _refresh_orchestrator

    with _init_lock:
        if _refresh_orchestrator is None:
            _refresh_orchestrator = RefreshOrchestrator(telemetry=get_telemetry_service())
    return _refresh_orchestrator


def _not_tracked(item_id: str) -> McpError:
    return McpError(ErrorData(code=-32002, message=f"Item {item_id} is not tracked"))


@mcp.tool()
async def request_refresh(item_id: str) -> dict[str, Any]:
    """Queue an immediate manual refresh of a tracked item

    Any pending scheduled refresh of the item is replaced. Items flagged for
    review after malformed content are returned to automatic scheduling.

    Args:
        item_id: Identifier of the tracked item

    Returns:
        dict: The queued entry, or queued=false if a refresh is already running
    """
    orchestrator = _get_orchestrator()
    try:
        entry = await asyncio.to_thread(orchestrator.request_refresh, item_id)
    except ItemNotTrackedError as e:
        raise _not_tracked(item_id) from e

    if entry is None:
        return {"queued": False, "reason": "refresh already in progress"}
    return {"queued": True, "entry": entry.model_dump(mode="json")}


@mcp.tool()
async def batch_refresh(item_ids: list[str], priority: str = "normal") -> dict[str, Any]:
    """Queue refreshes for several tracked items at once

    Args:
        item_ids: Identifiers of the items (1-1000)
        priority: low, normal, high or critical (default: normal)

    Returns:
        dict: Batch id, counts of queued and skipped items, and unknown ids
    """
    if not 1 <= len(item_ids) <= MAX_BATCH_ITEMS:
        raise McpError(
            ErrorData(code=-32602, message=f"item_ids must hold 1 to {MAX_BATCH_ITEMS} ids")
        )
    try:
        level = RefreshPriority(priority)
    except ValueError as e:
        raise McpError(
            ErrorData(
                code=-32602,
                message=f"Invalid priority: {priority}. Must be: low, normal, high or critical",
            )
        ) from e

    orchestrator = _get_orchestrator()
    result = await asyncio.to_thread(orchestrator.request_batch_refresh, item_ids, level)
    return result.model_dump(mode="json")


@mcp.tool()
async def get_freshness(item_id: str) -> dict[str, Any]:
    """Get the freshness record of a tracked item

    Args:
        item_id: Identifier of the tracked item

    Returns:
        dict: Freshness record plus the active queue entry, if any
    """
    orchestrator = _get_orchestrator()
    record = await asyncio.to_thread(orchestrator.tracker.get, item_id)
    if record is None:
        raise _not_tracked(item_id)

    active = await asyncio.to_thread(orchestrator.scheduler.active_entry, item_id)
    return {
        "record": record.model_dump(mode="json"),
        "active_refresh": active.model_dump(mode="json") if active else None,
    }


@mcp.tool()
async def list_versions(item_id: str, limit: int = 10, before: int | None = None) -> dict[str, Any]:
    """List content versions of a tracked item, newest first

    Args:
        item_id: Identifier of the tracked item
        limit: Maximum number of versions (1-100, default: 10)
        before: Only versions older than this version number

    Returns:
        dict: Versions and the cursor for the next page
    """
    if not 1 <= limit <= 100:
        raise McpError(ErrorData(code=-32602, message="limit must be between 1 and 100"))

    orchestrator = _get_orchestrator()

    def load() -> list[ContentVersion] | None:
        if orchestrator.tracker.get(item_id) is None:
            return None
        return list(orchestrator.versions.history(item_id, limit=limit, cursor=before))

    versions = await asyncio.to_thread(load)
    if versions is None:
        raise _not_tracked(item_id)

    next_cursor = versions[-1].version_number if len(versions) == limit else None
    return {
        "versions": [version.model_dump(mode="json") for version in versions],
        "next_cursor": next_cursor,
    }


@mcp.tool()
async def rollback_version(item_id: str, version: int) -> dict[str, Any]:
    """Restore the rewritten metadata stored with an earlier content version

    Args:
        item_id: Identifier of the tracked item
        version: Version number to restore

    Returns:
        dict: The updated freshness record
    """
    orchestrator = _get_orchestrator()
    try:
        record = await asyncio.to_thread(orchestrator.tracker.rollback, item_id, version)
    except ItemNotTrackedError as e:
        raise _not_tracked(item_id) from e
    except VersionNotFoundError as e:
        raise McpError(ErrorData(code=-32002, message=str(e))) from e

    return {"record": record.model_dump(mode="json"), "rolled_back_to": version}


@mcp.tool()
async def queue_status() -> dict[str, Any]:
    """Get the number of refresh queue entries per status

    Returns:
        dict: Counts keyed by status
    """
    depth = await asyncio.to_thread(_get_orchestrator().scheduler.queue_depth)
    return {"depth": depth}


@mcp.tool()
async def get_analytics(period_type: str = "hourly", limit: int = 24) -> dict[str, Any]:
    """Get stored refresh analytics rollups

    Args:
        period_type: hourly, daily, weekly or custom (default: hourly)
        limit: Maximum number of periods (default: 24)

    Returns:
        dict: Analytics rows, most recent period first
    """
    try:
        pt = PeriodType(period_type)
    except ValueError as e:
        raise McpError(
            ErrorData(
                code=-32602,
                message=f"Invalid period_type: {period_type}. Must be: hourly, daily, weekly or custom",
            )
        ) from e

    rows = await asyncio.to_thread(_get_orchestrator().analytics.get_rows, pt, limit)
    return {"rows": [row.model_dump(mode="json") for row in rows]}


# Both routes (/ and /health) point to the same function
@mcp.custom_route("/", methods=["GET"])
@mcp.custom_route("/health", methods=["GET"])
def health_check(request):
    return JSONResponse({"status": "ok"})


def _startup_sync() -> None:
    """Start background freshness jobs on server startup"""
    global _scheduler

    if not config.scheduler_enabled:
        logger.info("Background freshness jobs are disabled")
        return

    try:
        logger.info("Initializing background refresh orchestrator")
        orchestrator = _get_orchestrator()
        _scheduler = BackgroundScheduler()
        orchestrator.configure_scheduler_sync(_scheduler)
        _scheduler.start()
        logger.info("Background refresh orchestrator started successfully")
    except Exception as e:
        logger.error(f"Failed to start background refresh orchestrator: {e}")
        # Don't fail server startup if background jobs fail to initialize


def _shutdown_sync() -> None:
    """Gracefully shutdown on server shutdown"""
    global _scheduler

    if _refresh_orchestrator:
        try:
            _refresh_orchestrator.stop_scheduler_sync()
        except Exception as e:
            logger.error(f"Error shutting down refresh orchestrator: {e}")

    if _scheduler:
        try:
            logger.info("Shutting down background refresh scheduler")
            _scheduler.shutdown(wait=False)
            logger.info("Background refresh scheduler stopped")
        except Exception as e:
            logger.error(f"Error shutting down scheduler: {e}")
        _scheduler = None


def main() -> None:
    """Entry point for the MCP server"""
    _startup_sync()

    try:
        mcp.run(transport="streamable-http", host=config.mcp_host, port=config.mcp_port)
    finally:
        _shutdown_sync()


if __name__ == "__main__":
    main()
