"""
Vault Service — the single owned instance behind every entry point.

Owns the store, sanitizer, deduplicator, admission queue, quota monitor,
and quota ticker. Constructed once at process start and passed by
reference to the MCP tools and the CLI.

Ingest protocol:
    sanitize -> dedup check -> admission (direct or queued)
      -> dedup re-check -> mark_seen -> quota check -> insert_if_absent
    Any failure after mark_seen rolls the mark back.

Concurrency: one asyncio event loop. Every store mutation runs under a
single asyncio.Lock; blocking SQLite calls run in worker threads via
asyncio.to_thread.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Union

from feedvault.admission import AdmissionQueue
from feedvault.commands import (
    CleanupCommand,
    ClearAllCommand,
    Command,
    CommandKind,
    DeleteCommand,
    EventLogCommand,
    ExportCommand,
    ForceCleanupCommand,
    GetSettingsCommand,
    HealthCommand,
    ImportCommand,
    IngestCommand,
    OptimizeCommand,
    QueryCommand,
    QuotaCheckCommand,
    QuotaStatusCommand,
    SearchCommand,
    StatsCommand,
    UpdateSettingsCommand,
    check_exhaustive,
    parse_command,
)
from feedvault.config import Settings, VaultConfig
from feedvault.dedup import Deduplicator
from feedvault.export_import import build_export_envelope, import_envelope
from feedvault.quota import Notifier, QuotaMonitor
from feedvault.sanitizer import RecordSanitizer
from feedvault.scheduler import Ticker
from feedvault.store import RecordStore, StoreIOError
from feedvault.types import InsertResult, Record

logger = logging.getLogger(__name__)

# CommandKind -> VaultService method name
_HANDLERS: Dict[CommandKind, str] = {
    CommandKind.INGEST: "_on_ingest",
    CommandKind.QUERY: "_on_query",
    CommandKind.SEARCH: "_on_search",
    CommandKind.DELETE: "_on_delete",
    CommandKind.STATS: "_on_stats",
    CommandKind.GET_SETTINGS: "_on_get_settings",
    CommandKind.UPDATE_SETTINGS: "_on_update_settings",
    CommandKind.EXPORT: "_on_export",
    CommandKind.IMPORT: "_on_import",
    CommandKind.CLEANUP: "_on_cleanup",
    CommandKind.CLEAR_ALL: "_on_clear_all",
    CommandKind.QUOTA_STATUS: "_on_quota_status",
    CommandKind.QUOTA_CHECK: "_on_quota_check",
    CommandKind.FORCE_CLEANUP: "_on_force_cleanup",
    CommandKind.OPTIMIZE: "_on_optimize",
    CommandKind.EVENT_LOG: "_on_event_log",
    CommandKind.HEALTH: "_on_health",
}

check_exhaustive(_HANDLERS, "VaultService handlers")


class VaultService:
    """Ingestion pipeline and command handlers over one RecordStore."""

    def __init__(
        self,
        config: Optional[VaultConfig] = None,
        *,
        store: Optional[RecordStore] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config or VaultConfig()
        cfg = self._config
        self._store = store or RecordStore(
            db_path=cfg.store.db_path,
            wal_mode=cfg.store.wal_mode,
            default_settings=cfg.settings,
            event_log_capacity=cfg.store.event_log_capacity,
        )
        self._sanitizer = RecordSanitizer(cfg.sanitizer)
        self._dedup = Deduplicator()
        self._admission = AdmissionQueue(self._write_record, cfg.admission, clock=clock)
        self._quota = QuotaMonitor(self._store, cfg.quota, notifier)
        self._ticker = Ticker(
            "quota",
            self._quota_tick,
            interval_s=cfg.quota.check_interval_s,
            first_delay_s=cfg.quota.first_check_delay_s,
        )
        self._write_lock = asyncio.Lock()
        self._closed = False

    # -- Components --------------------------------------------------------

    @property
    def config(self) -> VaultConfig:
        return self._config

    @property
    def store(self) -> RecordStore:
        return self._store

    @property
    def sanitizer(self) -> RecordSanitizer:
        return self._sanitizer

    @property
    def dedup(self) -> Deduplicator:
        return self._dedup

    @property
    def admission(self) -> AdmissionQueue:
        return self._admission

    @property
    def quota(self) -> QuotaMonitor:
        return self._quota

    @property
    def ticker(self) -> Ticker:
        return self._ticker

    # -- Lifecycle ---------------------------------------------------------

    async def start(self) -> None:
        """Create default settings and start the periodic quota check."""
        settings = await self._run(self._store.get_settings)
        self._ticker.start()
        logger.info("Vault service started (max_records=%d, db=%s)",
                    settings.max_records, self._store.db_path)

    async def stop(self) -> None:
        """Stop timers and the drain task, then close the store."""
        if self._closed:
            return
        await self._ticker.stop()
        await self._admission.stop()
        async with self._write_lock:
            self._store.close()
        self._closed = True
        logger.info("Vault service stopped")

    async def __aenter__(self) -> VaultService:
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()

    @staticmethod
    async def _run(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await asyncio.to_thread(fn, *args, **kwargs)

    # -- Ingest pipeline ---------------------------------------------------

    async def ingest(self, raw: Any) -> Dict[str, Any]:
        """Sanitize, dedup-check, and submit one raw record.

        Returns {accepted, queued?, id?, reason?}. Rejections are results,
        not errors; only store failures raise.
        """
        verdict = self._sanitizer.sanitize(raw)
        if verdict.rejected or verdict.record is None:
            logger.debug("Record rejected: %s", verdict.reason)
            return {"accepted": False, "reason": verdict.reason}
        record = verdict.record

        settings: Settings = await self._run(self._store.get_settings)
        self._filter_media(record, settings)

        if self._dedup.has_seen(record.id):
            return {"accepted": False, "id": record.id, "reason": "duplicate"}

        outcome = await self._admission.submit(record)
        if outcome.queued:
            return {"accepted": True, "queued": True, "id": record.id}
        result: InsertResult = outcome.result
        if result.duplicate:
            return {"accepted": False, "id": record.id, "reason": "duplicate"}
        return {"accepted": True, "queued": False, "id": record.id}

    async def ingest_all(
        self, raws: Iterable[Any], *, wait: bool = True,
    ) -> Dict[str, int]:
        """Ingest a batch; with wait, return once the admission backlog is empty."""
        counts = {"accepted": 0, "queued": 0, "rejected": 0, "duplicates": 0}
        for raw in raws:
            reply = await self.ingest(raw)
            if reply["accepted"]:
                counts["queued" if reply.get("queued") else "accepted"] += 1
            elif reply.get("reason") == "duplicate":
                counts["duplicates"] += 1
            else:
                counts["rejected"] += 1
        if wait:
            while self._admission.queue_length or self._admission.draining:
                await asyncio.sleep(self._config.admission.drain_interval_s)
        return counts

    async def _write_record(self, record: Record) -> InsertResult:
        """Admission processor: dedup re-check, quota check, insert."""
        if self._dedup.has_seen(record.id):
            return InsertResult(record_id=record.id, inserted=False)
        self._dedup.mark_seen(record.id)
        try:
            async with self._write_lock:
                await self._run(self._quota.check)
                result = await self._run(self._store.insert_if_absent, record)
        except BaseException:
            self._dedup.forget(record.id)
            raise
        if result.inserted:
            logger.debug("Record saved: %s (evicted %d)", record.id, result.evicted)
        return result

    @staticmethod
    def _filter_media(record: Record, settings: Settings) -> None:
        record.media = [
            m for m in record.media
            if (m.type == "image" and settings.save_images)
            or (m.type == "video" and settings.save_videos)
        ]

    async def _quota_tick(self) -> None:
        async with self._write_lock:
            await self._run(self._quota.check)

    # -- Command dispatch --------------------------------------------------

    async def handle(self, message: Union[Mapping[str, Any], Command]) -> Dict[str, Any]:
        """Run one command. Returns {"status": "ok", "data": ...} or
        {"status": "error", "message": ...}.
        """
        try:
            command = parse_command(message) if isinstance(message, Mapping) else message
            handler = getattr(self, _HANDLERS[command.kind])
            data = await handler(command)
        except (ValueError, StoreIOError) as e:
            logger.warning("Command failed: %s", e)
            return {"status": "error", "message": str(e)}
        return {"status": "ok", "data": data}

    async def _on_ingest(self, cmd: IngestCommand) -> Dict[str, Any]:
        return await self.ingest(cmd.raw)

    async def _on_query(self, cmd: QueryCommand) -> Dict[str, Any]:
        page = await self._run(self._store.query, cmd.filters, cmd.page, cmd.limit)
        return page.to_dict()

    async def _on_search(self, cmd: SearchCommand) -> Dict[str, Any]:
        if not cmd.query.strip():
            page = await self._run(self._store.query, cmd.filters)
            return {"items": page.to_dict()["items"], "totalCount": page.total_count,
                    "searchQuery": cmd.query}
        records = await self._run(self._store.search, cmd.query, cmd.filters)
        return {
            "items": [r.to_dict() for r in records],
            "totalCount": len(records),
            "searchQuery": cmd.query,
        }

    async def _on_delete(self, cmd: DeleteCommand) -> Dict[str, Any]:
        async with self._write_lock:
            deleted = await self._run(self._store.delete, cmd.id)
        if deleted:
            self._dedup.forget(cmd.id)
            await self._run(self._store.log_event, "post_deleted", {"id": cmd.id})
        return {"deleted": deleted}

    async def _on_stats(self, cmd: StatsCommand) -> Dict[str, Any]:
        return await self._run(self._store.stats)

    async def _on_get_settings(self, cmd: GetSettingsCommand) -> Dict[str, Any]:
        settings = await self._run(self._store.get_settings)
        return settings.to_dict()

    async def _on_update_settings(self, cmd: UpdateSettingsCommand) -> Dict[str, Any]:
        async with self._write_lock:
            settings = await self._run(self._store.update_settings, cmd.delta)
        await self._run(self._store.log_event, "settings_updated", {"keys": sorted(cmd.delta)})
        return settings.to_dict()

    async def _on_export(self, cmd: ExportCommand) -> Dict[str, Any]:
        envelope = await self._run(build_export_envelope, self._store, self._sanitizer)
        await self._run(self._store.log_event, "posts_exported", {
            "postsCount": envelope["postsCount"], "skippedCount": envelope["skippedCount"],
        })
        return envelope

    async def _on_import(self, cmd: ImportCommand) -> Dict[str, Any]:
        async with self._write_lock:
            result = await self._run(import_envelope, self._store, self._sanitizer, cmd.envelope)
        await self._run(self._store.log_event, "posts_imported", result.to_dict())
        return result.to_dict()

    async def _on_cleanup(self, cmd: CleanupCommand) -> Dict[str, Any]:
        async with self._write_lock:
            settings = await self._run(self._store.get_settings)
            removed = await self._run(self._store.cleanup_by_age, settings.cleanup_days)
        await self._run(self._store.log_event, "posts_cleaned", {"removedCount": removed})
        return {"removedCount": removed}

    async def _on_clear_all(self, cmd: ClearAllCommand) -> Dict[str, Any]:
        async with self._write_lock:
            removed = await self._run(self._store.reset)
            self._dedup.clear()
        await self._run(self._store.log_event, "data_cleared", {"removedCount": removed})
        return {"cleared": True}

    async def _on_quota_status(self, cmd: QuotaStatusCommand) -> Dict[str, Any]:
        snapshot = await self._run(self._quota.measure)
        return snapshot.to_dict()

    async def _on_quota_check(self, cmd: QuotaCheckCommand) -> Dict[str, Any]:
        async with self._write_lock:
            snapshot = await self._run(self._quota.check)
        return snapshot.to_dict()

    async def _on_force_cleanup(self, cmd: ForceCleanupCommand) -> Dict[str, Any]:
        async with self._write_lock:
            settings = await self._run(self._store.get_settings)
            removed = await self._run(
                self._store.cleanup_moderate, settings.cleanup_days,
                batch_min=self._config.quota.cleanup_batch_size,
            )
        await self._run(self._store.log_event, "storage_cleanup",
                        {"tier": "forced", "removed_count": removed})
        return {"removedCount": removed}

    async def _on_optimize(self, cmd: OptimizeCommand) -> Dict[str, Any]:
        async with self._write_lock:
            optimized = await self._run(self._store.optimize)
        return {"optimizedCount": optimized}

    async def _on_event_log(self, cmd: EventLogCommand) -> Dict[str, Any]:
        events = await self._run(self._store.read_events, cmd.limit)
        return {"events": [e.to_dict() for e in events]}

    async def _on_health(self, cmd: HealthCommand) -> Dict[str, Any]:
        page = await self._run(self._store.query, None, 1, 10)
        return {
            "sanitization": self._sanitizer.health(page.items),
            "admission": self._admission.status(),
            "quota_status": self._quota.status,
            "dedup_size": len(self._dedup),
            "quota_ticker": {
                "running": self._ticker.running,
                "ticks": self._ticker.ticks,
                "failures": self._ticker.failures,
            },
        }
