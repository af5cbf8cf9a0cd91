"""
Quota Monitor — storage health state machine with tiered remediation.

    percent_used = total_bytes / estimated_capacity_bytes

    percent >= critical (0.95)  -> CRITICAL: aggressive cleanup, critical
                                   notification, tighten settings
    percent >= warning  (0.80)  -> WARNING: moderate cleanup, warning
                                   notification
    otherwise                   -> OK

No hysteresis band: remediation runs on every check that measures at or
over a threshold. Remediation failures are logged, never raised.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from feedvault.config import QuotaConfig, Settings, ValidationError
from feedvault.store import RecordStore, StoreIOError
from feedvault.types import QuotaSnapshot, QuotaStatus, format_bytes

logger = logging.getLogger(__name__)

Notifier = Callable[[str, str, str], None]


def log_notifier(level: str, title: str, message: str) -> None:
    """Default notifier: critical -> ERROR, anything else -> WARNING."""
    if level == "critical":
        logger.error("%s: %s", title, message)
    else:
        logger.warning("%s: %s", title, message)


def classify(percent: float, settings: Settings) -> QuotaStatus:
    """Map a usage ratio to a quota status."""
    if percent >= settings.critical_threshold:
        return "critical"
    if percent >= settings.warning_threshold:
        return "warning"
    return "ok"


class QuotaMonitor:
    """Measures the store and remediates when usage crosses a threshold."""

    def __init__(
        self,
        store: RecordStore,
        config: Optional[QuotaConfig] = None,
        notifier: Optional[Notifier] = None,
    ):
        self._store = store
        self._config = config or QuotaConfig()
        self._notifier = notifier or log_notifier
        self._status: QuotaStatus = "ok"

    @property
    def status(self) -> QuotaStatus:
        """Status computed by the last check()."""
        return self._status

    # -- Measurement -------------------------------------------------------

    def estimate_capacity(self) -> int:
        """min(free disk space x platform_fraction, max_storage_bytes).

        Falls back to max_storage_bytes for in-memory stores or when the
        platform cannot report free space. capacity_bytes overrides both.
        """
        cfg = self._config
        if cfg.capacity_bytes is not None:
            return cfg.capacity_bytes
        db_path = self._store.db_path
        if db_path == ":memory:":
            return cfg.max_storage_bytes
        try:
            free = shutil.disk_usage(Path(db_path).resolve().parent).free
        except OSError as e:
            logger.debug("Cannot read disk usage for %s: %s", db_path, e)
            return cfg.max_storage_bytes
        platform = int(free * cfg.platform_fraction)
        return min(platform, cfg.max_storage_bytes) if platform > 0 else cfg.max_storage_bytes

    def measure(self) -> QuotaSnapshot:
        """Current usage without remediation."""
        total, record_bytes, count = self._store.measure()
        capacity = self.estimate_capacity()
        percent = total / capacity if capacity > 0 else 0.0
        settings = self._store.get_settings()
        return QuotaSnapshot(
            total_bytes=total,
            record_bytes=record_bytes,
            record_count=count,
            estimated_capacity_bytes=capacity,
            percent_used=percent,
            status=classify(percent, settings),
        )

    # -- Check + remediation -----------------------------------------------

    def check(self) -> QuotaSnapshot:
        """Measure, remediate according to the tier, and cache the snapshot.

        Raises:
            StoreIOError: only if the measurement itself fails.
        """
        snapshot = self.measure()
        previous, self._status = self._status, snapshot.status
        if previous != snapshot.status:
            logger.info("Quota status %s -> %s (%.1f%% of %s)",
                        previous, snapshot.status, snapshot.percent_used * 100,
                        format_bytes(snapshot.estimated_capacity_bytes))

        if snapshot.status == "critical":
            self._remediate_critical(snapshot)
        elif snapshot.status == "warning":
            self._remediate_warning(snapshot)

        try:
            self._store.save_quota_snapshot(snapshot)
        except StoreIOError as e:
            logger.warning("Could not cache quota snapshot: %s", e)
        return snapshot

    def _remediate_warning(self, snapshot: QuotaSnapshot) -> None:
        try:
            settings = self._store.get_settings()
            removed = self._store.cleanup_moderate(
                settings.cleanup_days, batch_min=self._config.cleanup_batch_size,
            )
            self._record_cleanup("moderate", removed, snapshot)
            self._notify(
                "warning",
                "Storage warning",
                f"Storage is {round(snapshot.percent_used * 100)}% full. "
                f"Removed {removed} old record(s).",
            )
        except (StoreIOError, ValidationError) as e:
            logger.error("Moderate cleanup failed: %s", e)

    def _remediate_critical(self, snapshot: QuotaSnapshot) -> None:
        cfg = self._config
        try:
            removed = self._store.cleanup_aggressive(
                cfg.aggressive_fraction, batch_min=cfg.cleanup_batch_size,
            )
            self._record_cleanup("aggressive", removed, snapshot)
            self._notify(
                "critical",
                "Storage critical",
                f"Storage is {round(snapshot.percent_used * 100)}% full. "
                f"Removed {removed} record(s) and tightened storage settings.",
            )
            self._tighten_settings()
        except (StoreIOError, ValidationError) as e:
            logger.error("Aggressive cleanup failed: %s", e)

    def _tighten_settings(self) -> None:
        cfg = self._config
        settings = self._store.get_settings()
        delta: Dict[str, Any] = {}
        if settings.max_records > cfg.critical_max_records:
            delta["max_records"] = cfg.critical_max_records
        if not settings.auto_cleanup:
            delta["auto_cleanup"] = True
        if settings.cleanup_days > cfg.critical_cleanup_days:
            delta["cleanup_days"] = cfg.critical_cleanup_days
        if settings.save_videos:
            delta["save_videos"] = False
        if delta:
            self._store.update_settings(delta)
            logger.warning("Storage settings tightened: %s", delta)

    def _record_cleanup(self, tier: str, removed: int, snapshot: QuotaSnapshot) -> None:
        self._store.log_event("storage_cleanup", {
            "tier": tier,
            "removed_count": removed,
            "percent_used": round(snapshot.percent_used, 4),
        })

    def _notify(self, level: str, title: str, message: str) -> None:
        if not self._store.get_settings().enable_notifications:
            return
        try:
            self._notifier(level, title, message)
        except Exception as e:
            logger.warning("Notifier failed: %s", e)
