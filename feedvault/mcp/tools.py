"""
feedvault MCP Tools — one async tool per vault command.

Thin wrappers around VaultService.handle(). Each tool follows the same
order:

    ① Build the command message from tool arguments
    ② Dispatch through the service (sanitizer, admission, store)
    ③ Audit log — always, including on failure (in finally block)

Tool groups:
    INGEST:   vault_ingest
    READ:     vault_query, vault_search, vault_stats, vault_event_log
    SETTINGS: vault_get_settings, vault_update_settings
    DATA:     vault_export, vault_import
    STORAGE:  vault_cleanup, vault_force_cleanup, vault_optimize,
              vault_quota_status, vault_quota_check, vault_clear_all
    CRUD:     vault_delete
    HEALTH:   vault_health
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Optional

from feedvault.mcp.audit import AuditLogger
from feedvault.service import VaultService

logger = logging.getLogger(__name__)

TOOL_COUNT = 17


def _filters(
    author: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    has_media: bool = False,
) -> Dict[str, Any]:
    f: Dict[str, Any] = {}
    if author:
        f["author"] = author
    if date_from:
        f["date_from"] = date_from
    if date_to:
        f["date_to"] = date_to
    if has_media:
        f["has_media"] = True
    return f


def register_vault_tools(
    mcp,
    service: VaultService,
    *,
    audit: Optional[AuditLogger] = None,
) -> None:
    """
    Register all 17 vault MCP tools on a FastMCP server instance.

    Args:
        mcp: FastMCP server instance.
        service: Started VaultService (owns store and pipeline).
        audit: AuditLogger for structured logging. None → stderr.
    """
    if audit is None:
        audit = AuditLogger()
    db_path = service.store.db_path

    async def _dispatch(
        tool: str, message: Dict[str, Any], detail: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        t0 = time.monotonic()
        rid = audit.new_rid()
        outcome = "ok"
        detail = dict(detail or {})
        try:
            response = await service.handle(message)
            if response["status"] != "ok":
                outcome = "error"
                detail["message"] = response.get("message", "")[:200]
            elif tool == "vault_ingest" and not response["data"].get("accepted"):
                outcome = "rejected"
                detail["reason"] = response["data"].get("reason")
            return response
        except Exception as e:
            outcome = "error"
            logger.exception("Tool %s failed", tool)
            return {"status": "error", "message": f"{tool} failed: {e}"}
        finally:
            audit.log(tool, rid, db_path, outcome, detail,
                      (time.monotonic() - t0) * 1000)

    # =====================================================================
    # INGEST
    # =====================================================================

    @mcp.tool()
    async def vault_ingest(record: Dict[str, Any]) -> Dict[str, Any]:
        """Sanitize and save one scraped record.

        The record is sanitized (markup, scripts and tracking parameters
        stripped), checked for duplicates, then either written immediately
        or queued when the rate limit (20 per minute) is reached.

        Args:
            record: Raw record object (id, title, text, postUrl, author,
                media, engagement, timestamp).

        Returns:
            data.accepted: True if saved or queued.
            data.queued: True if waiting in the admission queue.
            data.reason: Rejection reason (duplicate, no_content, ...).
        """
        return await _dispatch(
            "vault_ingest", {"action": "ingest", "data": record},
            AuditLogger.make_record_detail(record),
        )

    # =====================================================================
    # READ
    # =====================================================================

    @mcp.tool()
    async def vault_query(
        author: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        has_media: bool = False,
        page: int = 1,
        limit: int = 50,
    ) -> Dict[str, Any]:
        """List saved records, newest first, with optional filters.

        Args:
            author: Case-insensitive substring of the author name.
            date_from: ISO-8601 lower bound on savedAt.
            date_to: ISO-8601 upper bound on savedAt.
            has_media: Only records with at least one media item.
            page: 1-based page number.
            limit: Page size (max 1000).
        """
        return await _dispatch("vault_query", {
            "action": "query",
            "filters": _filters(author, date_from, date_to, has_media),
            "page": page,
            "limit": limit,
        }, {"page": page, "limit": limit})

    @mcp.tool()
    async def vault_search(
        query: str,
        author: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        has_media: bool = False,
    ) -> Dict[str, Any]:
        """Substring search over title, text, and author name.

        Title matches rank first, then newest first.
        """
        return await _dispatch("vault_search", {
            "action": "search",
            "query": query,
            "filters": _filters(author, date_from, date_to, has_media),
        }, {"query_len": len(query)})

    @mcp.tool()
    async def vault_stats() -> Dict[str, Any]:
        """Record counts (today/week/month), unique authors, storage size."""
        return await _dispatch("vault_stats", {"action": "stats"})

    @mcp.tool()
    async def vault_event_log(limit: int = 100) -> Dict[str, Any]:
        """Most recent vault events (cleanups, imports, deletions), newest first."""
        return await _dispatch("vault_event_log", {"action": "eventLog", "limit": limit})

    # =====================================================================
    # SETTINGS
    # =====================================================================

    @mcp.tool()
    async def vault_get_settings() -> Dict[str, Any]:
        """Current storage settings."""
        return await _dispatch("vault_get_settings", {"action": "getSettings"})

    @mcp.tool()
    async def vault_update_settings(settings: Dict[str, Any]) -> Dict[str, Any]:
        """Merge a partial settings object into the stored settings.

        Keys: max_records, auto_cleanup, cleanup_days, warning_threshold,
        critical_threshold, save_images, save_videos, enable_notifications.
        Unknown keys or out-of-range values are rejected.
        """
        return await _dispatch(
            "vault_update_settings",
            {"action": "updateSettings", "settings": settings},
            {"keys": sorted(settings) if isinstance(settings, dict) else []},
        )

    # =====================================================================
    # DATA
    # =====================================================================

    @mcp.tool()
    async def vault_export() -> Dict[str, Any]:
        """Export all records as a versioned envelope (export-sanitized)."""
        return await _dispatch("vault_export", {"action": "export"})

    @mcp.tool()
    async def vault_import(data: str) -> Dict[str, Any]:
        """Import an export envelope (JSON string).

        Every record is re-sanitized; duplicates and invalid records are
        skipped. Envelopes over 50 MB or 10 000 records are rejected.

        Returns:
            data.imported, data.skipped, data.errors
        """
        detail: Dict[str, Any] = {"bytes": len(data.encode("utf-8"))}
        try:
            envelope = json.loads(data)
        except json.JSONDecodeError as e:
            audit.log("vault_import", audit.new_rid(), db_path, "error", detail, 0.0)
            return {"status": "error", "message": f"Invalid JSON: {e}"}
        return await _dispatch("vault_import", {"action": "import", "data": envelope}, detail)

    # =====================================================================
    # STORAGE
    # =====================================================================

    @mcp.tool()
    async def vault_cleanup() -> Dict[str, Any]:
        """Remove records older than the cleanup_days setting."""
        return await _dispatch("vault_cleanup", {"action": "cleanup"})

    @mcp.tool()
    async def vault_force_cleanup() -> Dict[str, Any]:
        """Age cleanup topped up with the oldest records, regardless of quota."""
        return await _dispatch("vault_force_cleanup", {"action": "forceCleanup"})

    @mcp.tool()
    async def vault_optimize() -> Dict[str, Any]:
        """Shrink stored records (long text, extra media, empty fields)."""
        return await _dispatch("vault_optimize", {"action": "optimize"})

    @mcp.tool()
    async def vault_quota_status() -> Dict[str, Any]:
        """Measure storage usage against estimated capacity (no cleanup)."""
        return await _dispatch("vault_quota_status", {"action": "quotaStatus"})

    @mcp.tool()
    async def vault_quota_check() -> Dict[str, Any]:
        """Measure storage usage and run the cleanup tier it calls for."""
        return await _dispatch("vault_quota_check", {"action": "quotaCheck"})

    @mcp.tool()
    async def vault_clear_all(confirm: bool = False) -> Dict[str, Any]:
        """Delete every record and reset settings to defaults.

        DESTRUCTIVE — requires confirm=true.
        """
        if not confirm:
            audit.log("vault_clear_all", audit.new_rid(), db_path, "rejected",
                      {"confirm": False}, 0.0)
            return {"status": "error", "message": "Refusing to clear without confirm=true"}
        return await _dispatch("vault_clear_all", {"action": "clearAll"})

    # =====================================================================
    # CRUD / HEALTH
    # =====================================================================

    @mcp.tool()
    async def vault_delete(record_id: str) -> Dict[str, Any]:
        """Delete one record by id."""
        return await _dispatch("vault_delete", {"action": "delete", "id": record_id},
                               {"id": record_id[:200]})

    @mcp.tool()
    async def vault_health() -> Dict[str, Any]:
        """Sanitization health sample, admission queue status, quota status."""
        return await _dispatch("vault_health", {"action": "health"})

    logger.info("Registered %d vault MCP tools", TOOL_COUNT)
