"""
Vault Configuration

Configuration dataclasses for feedvault: user-facing settings (persisted in
the store), sanitizer limits, admission queue, quota monitor, and store.
Includes load_config() for reading a JSON config file with silent fallback
to compiled defaults.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(ValueError):
    """Raised when config values are out of valid range."""

    pass


def _check_range(
    errors: List[str], name: str, value, lo, hi, typ=None,
) -> None:
    """Append an error message if value is out of [lo, hi] or wrong type."""
    if typ is not None and (not isinstance(value, typ) or isinstance(value, bool)):
        expected = (
            typ.__name__ if isinstance(typ, type)
            else "|".join(t.__name__ for t in typ)
        )
        errors.append(f"{name}: expected {expected}, got {type(value).__name__}")
        return
    if value < lo or value > hi:
        errors.append(f"{name}: {value} not in [{lo}, {hi}]")


def _check_bool(errors: List[str], name: str, value) -> None:
    if not isinstance(value, bool):
        errors.append(f"{name}: expected bool, got {type(value).__name__}")


# ---------------------------------------------------------------------------
# Settings (user-facing, persisted)
# ---------------------------------------------------------------------------


@dataclass
class Settings:
    """Storage settings. Created with defaults on first run, persisted in the store."""
    max_records: int = 1000
    auto_cleanup: bool = True
    cleanup_days: int = 30
    warning_threshold: float = 0.8
    critical_threshold: float = 0.95
    save_images: bool = True
    save_videos: bool = False
    enable_notifications: bool = True

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "settings.max_records", self.max_records, 1, 1_000_000, int)
        _check_range(errors, "settings.cleanup_days", self.cleanup_days, 1, 3650, int)
        _check_range(errors, "settings.warning_threshold",
                     self.warning_threshold, 0.0, 1.0, (int, float))
        _check_range(errors, "settings.critical_threshold",
                     self.critical_threshold, 0.0, 1.0, (int, float))
        if not errors and self.warning_threshold > self.critical_threshold:
            errors.append(
                "settings.warning_threshold: must not exceed critical_threshold"
            )
        for name in ("auto_cleanup", "save_images", "save_videos", "enable_notifications"):
            _check_bool(errors, f"settings.{name}", getattr(self, name))
        return errors

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Settings:
        """Build settings from a dict, ignoring unknown keys."""
        known = set(cls.__dataclass_fields__.keys())
        return cls(**{k: v for k, v in d.items() if k in known})

    def merged(self, delta: Dict[str, Any]) -> Settings:
        """Return a copy with delta applied. Unknown keys raise ValidationError."""
        known = set(self.__dataclass_fields__.keys())
        unknown = sorted(set(delta) - known)
        if unknown:
            raise ValidationError(f"Unknown settings: {', '.join(unknown)}")
        data = self.to_dict()
        data.update(delta)
        return Settings(**data)


# ---------------------------------------------------------------------------
# Component configuration
# ---------------------------------------------------------------------------


_DEFAULT_ALLOWED_HOSTS = [
    "linkedin.com",
    "licdn.com",
    "media.licdn.com",
    "media-exp1.licdn.com",
    "media-exp2.licdn.com",
    "dms.licdn.com",
]

_DEFAULT_TRACKING_PARAMS = [
    "utm_source", "utm_medium", "utm_campaign", "utm_content", "utm_term",
    "gclid", "fbclid", "msclkid", "_ga", "mc_eid",
]


@dataclass
class SanitizerConfig:
    """Sanitizer limits and URL allow-list."""
    max_title: int = 500
    max_text: int = 10_000
    max_author_name: int = 200
    max_alt: int = 300
    max_url: int = 2000
    max_id: int = 200
    max_media_ingest: int = 10
    max_bytes_storage: int = 150_000
    max_bytes_content: int = 100_000
    future_tolerance_s: int = 3600
    allowed_hosts: List[str] = field(default_factory=lambda: list(_DEFAULT_ALLOWED_HOSTS))
    tracking_params: List[str] = field(default_factory=lambda: list(_DEFAULT_TRACKING_PARAMS))

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "sanitizer.max_title", self.max_title, 10, 100_000, int)
        _check_range(errors, "sanitizer.max_text", self.max_text, 10, 1_000_000, int)
        _check_range(errors, "sanitizer.max_url", self.max_url, 20, 100_000, int)
        _check_range(errors, "sanitizer.max_media_ingest", self.max_media_ingest, 0, 100, int)
        _check_range(errors, "sanitizer.max_bytes_storage",
                     self.max_bytes_storage, 1000, 10_000_000, int)
        _check_range(errors, "sanitizer.max_bytes_content",
                     self.max_bytes_content, 1000, 10_000_000, int)
        if not self.allowed_hosts:
            errors.append("sanitizer.allowed_hosts: must not be empty")
        return errors


@dataclass
class AdmissionConfig:
    """Sliding-window rate limiter and bounded FIFO."""
    max_requests: int = 20
    window_ms: int = 60_000
    queue_max: int = 50
    drain_interval_s: float = 3.0
    staleness_s: float = 300.0
    log_throttle_s: float = 10.0

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "admission.max_requests", self.max_requests, 1, 100_000, int)
        _check_range(errors, "admission.window_ms", self.window_ms, 1, 86_400_000, int)
        _check_range(errors, "admission.queue_max", self.queue_max, 1, 100_000, int)
        _check_range(errors, "admission.drain_interval_s",
                     self.drain_interval_s, 0.0, 3600.0, (int, float))
        _check_range(errors, "admission.staleness_s",
                     self.staleness_s, 0.0, 86_400.0, (int, float))
        return errors


@dataclass
class QuotaConfig:
    """Quota monitor: capacity estimate, cleanup batch sizes, tick schedule."""
    max_storage_bytes: int = 10 * 1024 * 1024
    platform_fraction: float = 0.1
    capacity_bytes: Optional[int] = None
    cleanup_batch_size: int = 50
    aggressive_fraction: float = 0.3
    critical_max_records: int = 500
    critical_cleanup_days: int = 14
    first_check_delay_s: float = 30 * 60.0
    check_interval_s: float = 60 * 60.0

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "quota.max_storage_bytes",
                     self.max_storage_bytes, 1024, 2**40, int)
        _check_range(errors, "quota.platform_fraction",
                     self.platform_fraction, 0.0, 1.0, (int, float))
        if self.capacity_bytes is not None:
            _check_range(errors, "quota.capacity_bytes",
                         self.capacity_bytes, 1, 2**40, int)
        _check_range(errors, "quota.cleanup_batch_size",
                     self.cleanup_batch_size, 0, 100_000, int)
        _check_range(errors, "quota.aggressive_fraction",
                     self.aggressive_fraction, 0.0, 1.0, (int, float))
        _check_range(errors, "quota.check_interval_s",
                     self.check_interval_s, 1.0, 7 * 86_400.0, (int, float))
        return errors


@dataclass
class StoreConfig:
    """SQLite store configuration."""
    db_path: str = ".feedvault/vault.db"
    wal_mode: bool = True
    event_log_capacity: int = 100

    def validate(self) -> List[str]:
        """Return list of validation error messages (empty = valid)."""
        errors: List[str] = []
        _check_range(errors, "store.event_log_capacity",
                     self.event_log_capacity, 1, 100_000, int)
        return errors


@dataclass
class VaultConfig:
    """Top-level feedvault configuration."""
    store: StoreConfig = field(default_factory=StoreConfig)
    sanitizer: SanitizerConfig = field(default_factory=SanitizerConfig)
    admission: AdmissionConfig = field(default_factory=AdmissionConfig)
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    settings: Settings = field(default_factory=Settings)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> VaultConfig:
        """Build config from a nested dict (e.g. JSON)."""
        kwargs: Dict[str, Any] = {}
        if "store" in d:
            kwargs["store"] = StoreConfig(**d["store"])
        if "sanitizer" in d:
            kwargs["sanitizer"] = SanitizerConfig(**d["sanitizer"])
        if "admission" in d:
            kwargs["admission"] = AdmissionConfig(**d["admission"])
        if "quota" in d:
            kwargs["quota"] = QuotaConfig(**d["quota"])
        if "settings" in d:
            kwargs["settings"] = Settings(**d["settings"])
        return cls(**kwargs)

    def validate(self) -> List[str]:
        """Validate all config sections. Returns list of error messages."""
        errors: List[str] = []
        errors.extend(self.store.validate())
        errors.extend(self.sanitizer.validate())
        errors.extend(self.admission.validate())
        errors.extend(self.quota.validate())
        errors.extend(self.settings.validate())
        return errors


def load_config(
    path: Optional[str] = None, *, strict: bool = False,
) -> VaultConfig:
    """Load config from a JSON file. Returns defaults if file missing/invalid.

    Args:
        path: Path to config.json. If None, returns compiled defaults.
        strict: If True, raise ValidationError on invalid config values.

    Returns:
        VaultConfig with values from file or defaults.

    Raises:
        ValidationError: If strict=True and config values are out of range.
    """
    if path is None:
        cfg = VaultConfig()
    else:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            cfg = VaultConfig.from_dict(data)
        except (FileNotFoundError, json.JSONDecodeError, TypeError, KeyError):
            cfg = VaultConfig()

    if strict:
        errors = cfg.validate()
        if errors:
            raise ValidationError(
                f"Config validation failed: {'; '.join(errors)}"
            )

    return cfg
