"""
feedvault — a sanitized, self-managing local vault for scraped feed records.

Untrusted records are sanitized, deduplicated, rate limited, and written to
a single SQLite database that keeps itself within count, age, and storage
quota limits.
"""

__version__ = "0.3.0"

from feedvault.types import (
    Author,
    Engagement,
    InsertResult,
    MediaItem,
    QueryPage,
    QuotaSnapshot,
    Record,
    VaultEvent,
)
from feedvault.config import Settings, VaultConfig, load_config
from feedvault.store import RecordStore, StoreIOError, SCHEMA_VERSION
from feedvault.sanitizer import RecordSanitizer, SanitizationRejected
from feedvault.service import VaultService

__all__ = [
    "__version__",
    "Author",
    "Engagement",
    "InsertResult",
    "MediaItem",
    "QueryPage",
    "QuotaSnapshot",
    "Record",
    "VaultEvent",
    "Settings",
    "VaultConfig",
    "load_config",
    "RecordStore",
    "StoreIOError",
    "SCHEMA_VERSION",
    "RecordSanitizer",
    "SanitizationRejected",
    "VaultService",
]
