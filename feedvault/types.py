"""
Record Data Model — Canonical Storage Units

Defines the sanitized record schema (author, media, engagement), quota
snapshots, query pages, and insert results. Records serialize to camelCase
dictionaries: the same shape is used in the database payload column and in
export envelopes.
"""

from __future__ import annotations

import json
import random
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

# ---------------------------------------------------------------------------
# Type aliases
# ---------------------------------------------------------------------------

MediaType = Literal["image", "video"]
QuotaStatus = Literal["ok", "warning", "critical"]

VALID_MEDIA_TYPES: set = {"image", "video"}
VALID_QUOTA_STATUSES: set = {"ok", "warning", "critical"}

SANITIZATION_VERSION = "1.0"


def _now_iso() -> str:
    """Current UTC time as ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string into an aware datetime. None if unparsable."""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _generate_id(prefix: str = "generated") -> str:
    """Synthesize a record id from a millisecond timestamp and a random suffix."""
    return f"{prefix}-{int(time.time() * 1000)}-{random.randint(0, 999)}"


def json_size(value: Any) -> int:
    """Byte size of the compact JSON serialization of value."""
    return len(json.dumps(value, ensure_ascii=False, separators=(",", ":")).encode("utf-8"))


# ---------------------------------------------------------------------------
# Record parts
# ---------------------------------------------------------------------------

@dataclass
class Author:
    """Author block of a record. Every field is sanitized independently."""

    name: str = ""
    title: str = ""
    profile_url: str = ""
    avatar: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "title": self.title,
            "profileUrl": self.profile_url,
            "avatar": self.avatar,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Author:
        return cls(
            name=d.get("name", "") or "",
            title=d.get("title", "") or "",
            profile_url=d.get("profileUrl", "") or "",
            avatar=d.get("avatar", "") or "",
        )


@dataclass
class MediaItem:
    """One image or video attached to a record."""

    type: MediaType = "image"
    url: str = ""
    alt: str = ""
    poster: str = ""

    def __post_init__(self):
        if self.type not in VALID_MEDIA_TYPES:
            raise ValueError(f"Invalid media type: {self.type!r}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> MediaItem:
        known = set(cls.__dataclass_fields__.keys())
        return cls(**{k: v for k, v in d.items() if k in known})


@dataclass
class Engagement:
    """Engagement counters, non-negative and capped at 1e9."""

    likes: int = 0
    comments: int = 0
    shares: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Engagement:
        known = set(cls.__dataclass_fields__.keys())
        return cls(**{k: v for k, v in d.items() if k in known})


# ---------------------------------------------------------------------------
# Record (canonical)
# ---------------------------------------------------------------------------

_RECORD_KEYS = {
    "id": "id",
    "title": "title",
    "text": "text",
    "url": "url",
    "post_url": "postUrl",
    "timestamp": "timestamp",
    "scraped_at": "scrapedAt",
    "saved_at": "savedAt",
    "sanitized_at": "sanitizedAt",
    "sanitization_version": "sanitizationVersion",
    "imported_at": "importedAt",
    "import_source": "importSource",
}


@dataclass
class Record:
    """
    Sanitized record — the unit of storage.

    Rules:
    - id is non-empty and unique within the store.
    - saved_at is assigned by the store at insert time, never by callers.
    - Instances handed out by the store are copies; mutating them does not
      change stored state.
    """

    id: str = ""
    title: str = ""
    text: str = ""
    url: str = ""
    post_url: str = ""
    author: Author = field(default_factory=Author)
    media: List[MediaItem] = field(default_factory=list)
    engagement: Engagement = field(default_factory=Engagement)
    timestamp: str = ""
    scraped_at: str = ""
    saved_at: str = ""
    sanitized_at: str = ""
    sanitization_version: str = SANITIZATION_VERSION
    imported_at: Optional[str] = None
    import_source: Optional[str] = None

    def __post_init__(self):
        """Coerce nested dicts produced by deserialization."""
        if isinstance(self.author, dict):
            self.author = Author.from_dict(self.author)
        self.media = [
            MediaItem.from_dict(m) if isinstance(m, dict) else m for m in self.media
        ]
        if isinstance(self.engagement, dict):
            self.engagement = Engagement.from_dict(self.engagement)

    @property
    def has_media(self) -> bool:
        return len(self.media) > 0

    def has_content(self) -> bool:
        """True if the record carries a title, text, author name, or post URL."""
        return bool(
            self.title.strip()
            or self.text.strip()
            or self.author.name.strip()
            or self.post_url.strip()
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a camelCase dict (JSON-safe)."""
        d: Dict[str, Any] = {}
        for attr, key in _RECORD_KEYS.items():
            value = getattr(self, attr)
            if value is None:
                continue
            d[key] = value
        d["author"] = self.author.to_dict()
        d["media"] = [m.to_dict() for m in self.media]
        d["engagement"] = self.engagement.to_dict()
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> Record:
        """Deserialize from a camelCase dict, ignoring unknown keys."""
        kwargs: Dict[str, Any] = {}
        for attr, key in _RECORD_KEYS.items():
            if key in d and d[key] is not None:
                kwargs[attr] = d[key]
        if isinstance(d.get("author"), dict):
            kwargs["author"] = Author.from_dict(d["author"])
        if isinstance(d.get("media"), list):
            kwargs["media"] = [
                MediaItem.from_dict(m) for m in d["media"] if isinstance(m, dict)
            ]
        if isinstance(d.get("engagement"), dict):
            kwargs["engagement"] = Engagement.from_dict(d["engagement"])
        return cls(**kwargs)

    def to_json(self) -> str:
        """Serialize to indented JSON string."""
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2)


# ---------------------------------------------------------------------------
# Store results
# ---------------------------------------------------------------------------

@dataclass
class InsertResult:
    """Outcome of Store.insert_if_absent."""

    record_id: str
    inserted: bool
    evicted: int = 0

    @property
    def duplicate(self) -> bool:
        return not self.inserted


@dataclass
class QueryPage:
    """One page of query results, newest first."""

    items: List[Record] = field(default_factory=list)
    total_count: int = 0
    page: int = 1
    limit: int = 50
    has_more: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [r.to_dict() for r in self.items],
            "totalCount": self.total_count,
            "page": self.page,
            "limit": self.limit,
            "hasMore": self.has_more,
        }


# ---------------------------------------------------------------------------
# Quota snapshot
# ---------------------------------------------------------------------------

@dataclass
class QuotaSnapshot:
    """Storage measurement against estimated capacity. Recomputed each tick."""

    total_bytes: int = 0
    record_bytes: int = 0
    record_count: int = 0
    estimated_capacity_bytes: int = 0
    percent_used: float = 0.0
    status: QuotaStatus = "ok"
    checked_at: str = field(default_factory=_now_iso)

    def __post_init__(self):
        if self.status not in VALID_QUOTA_STATUSES:
            raise ValueError(f"Invalid quota status: {self.status!r}")

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["formatted"] = {
            "total_bytes": format_bytes(self.total_bytes),
            "record_bytes": format_bytes(self.record_bytes),
            "estimated_capacity": format_bytes(self.estimated_capacity_bytes),
            "percent_used": f"{round(self.percent_used * 100)}%",
        }
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> QuotaSnapshot:
        known = set(cls.__dataclass_fields__.keys())
        return cls(**{k: v for k, v in d.items() if k in known})


def format_bytes(n: int) -> str:
    """Human-readable byte count (B, KB, MB, GB)."""
    if n <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB"]
    value = float(n)
    i = 0
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    return f"{round(value, 2):g} {units[i]}"


# ---------------------------------------------------------------------------
# Event log entry
# ---------------------------------------------------------------------------

@dataclass
class VaultEvent:
    """Entry of the bounded event log."""

    event: str = ""
    timestamp: str = field(default_factory=_now_iso)
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
