"""
Record Sanitizer — Untrusted Input Gate

Turns an untrusted RawRecord (plain dict from an extractor) into a Record, or
rejects it. Three levels:
- Field cleaning: markup, script schemes, control characters, length caps,
  URL allow-list and tracking-parameter removal
- High-risk content: neutralized in place; rejected only if neutralization fails
- Size guard: oversized records are truncated, not rejected

Pure: no I/O, no store access. Failures are reported in the verdict, never raised.
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional
from urllib.parse import parse_qsl, unquote, urlencode, urlsplit, urlunsplit

from feedvault.config import SanitizerConfig
from feedvault.types import (
    SANITIZATION_VERSION,
    Author,
    Engagement,
    MediaItem,
    Record,
    _generate_id,
    _now_iso,
    _parse_iso,
    json_size,
)

logger = logging.getLogger(__name__)

Stage = Literal["content", "storage"]
SanitizeAction = Literal["accept", "reject"]

ENGAGEMENT_MAX = 1_000_000_000
TRUNCATION_MARKER = "..."


class SanitizationRejected(ValueError):
    """Raised by sanitize_or_raise when a raw record is rejected."""

    def __init__(self, reasons: List[str]):
        self.reasons = reasons
        super().__init__("; ".join(reasons) or "rejected")


# ---------------------------------------------------------------------------
# Verdict
# ---------------------------------------------------------------------------


@dataclass
class SanitizeVerdict:
    """Result of sanitizing one raw record."""

    action: SanitizeAction
    record: Optional[Record] = None
    reasons: List[str] = field(default_factory=list)
    neutralized: bool = False
    truncated: bool = False

    @property
    def accepted(self) -> bool:
        return self.action == "accept"

    @property
    def rejected(self) -> bool:
        return self.action == "reject"

    @property
    def reason(self) -> str:
        return "; ".join(self.reasons)


# ---------------------------------------------------------------------------
# Pattern sets
# ---------------------------------------------------------------------------

_ID_DISALLOWED = re.compile(r"[^A-Za-z0-9_:\-]")

# Script and style blocks are dropped with their body, other tags become a space
_SCRIPT_BLOCK = re.compile(r"<\s*(script|style)\b[^>]*>.*?<\s*/\s*\1\s*>", re.IGNORECASE | re.DOTALL)
_TAG = re.compile(r"<[^>]*>")
_DANGEROUS_SCHEME = re.compile(r"(?:javascript|vbscript|data)\s*:", re.IGNORECASE)
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]")
_WHITESPACE = re.compile(r"\s+")

# Definite blocks, checked against the JSON serialization of a record
_HIGH_RISK_PATTERNS = [
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"vbscript:", re.IGNORECASE),
    re.compile(r"<script>", re.IGNORECASE),
    re.compile(r"<script\s", re.IGNORECASE),
    re.compile(r"(?<!blocked-)eval\(\\?[\"']", re.IGNORECASE),
    re.compile(r"new\s+Function\(\\?[\"']", re.IGNORECASE),
]

# Logged only; too many false positives to block
_MONITOR_PATTERNS = [
    re.compile(r"data:", re.IGNORECASE),
    re.compile(r"onclick", re.IGNORECASE),
    re.compile(r"onerror", re.IGNORECASE),
    re.compile(r"onload", re.IGNORECASE),
]

_NEUTRALIZERS = [
    (re.compile(r"javascript:", re.IGNORECASE), "blocked-js:"),
    (re.compile(r"vbscript:", re.IGNORECASE), "blocked-vbs:"),
    (re.compile(r"<script", re.IGNORECASE), "<blocked-script"),
    (re.compile(r"(?<!blocked-)eval\(", re.IGNORECASE), "blocked-eval("),
    (re.compile(r"new\s+Function\(", re.IGNORECASE), "blocked-function("),
]


def contains_executable_content(obj: Any) -> bool:
    """True if the JSON serialization of obj matches a high-risk pattern."""
    text = json.dumps(obj, ensure_ascii=False)
    if any(p.search(text) for p in _HIGH_RISK_PATTERNS):
        return True
    if any(p.search(text) for p in _MONITOR_PATTERNS):
        logger.debug("Low-risk pattern present in record data (allowed)")
    return False


def _neutralize(serialized: str) -> str:
    for pattern, replacement in _NEUTRALIZERS:
        serialized = pattern.sub(replacement, serialized)
    return serialized


def _truncate(text: str, limit: int, marker: str = TRUNCATION_MARKER) -> str:
    if len(text) <= limit:
        return text
    return text[: max(limit - len(marker), 0)] + marker


# ---------------------------------------------------------------------------
# Sanitizer
# ---------------------------------------------------------------------------


class RecordSanitizer:
    """
    Sanitizes raw records into canonical Records.

    Rejects:
    - non-dict input
    - no usable id and no content to synthesize one from
    - no title, text, author name, or post URL (content-less)
    - high-risk content that cannot be neutralized

    Never rejects for size or for a blocked URL: the record is truncated,
    the URL is blanked, and the offending media item is dropped.
    """

    def __init__(self, config: Optional[SanitizerConfig] = None):
        self._config = config or SanitizerConfig()
        self._allowed_hosts = [h.lower().lstrip(".") for h in self._config.allowed_hosts]
        self._tracking = set(self._config.tracking_params)

    @property
    def config(self) -> SanitizerConfig:
        return self._config

    # -- Entry points ------------------------------------------------------

    def sanitize(self, raw: Any, stage: Stage = "storage") -> SanitizeVerdict:
        """Sanitize a raw record. Returns an accept or reject verdict."""
        if not isinstance(raw, dict):
            return SanitizeVerdict(action="reject", reasons=["invalid_input: not an object"])

        try:
            record = self._build(raw)
        except (TypeError, ValueError) as e:
            logger.warning("Sanitizer failed on record: %s", e)
            return SanitizeVerdict(action="reject", reasons=[f"invalid_input: {e}"])

        if not record.has_content():
            reason = "no_content" if record.id else "missing_id"
            return SanitizeVerdict(action="reject", reasons=[reason])
        if not record.id:
            record.id = _generate_id("generated")
            logger.info("Generated missing id %s", record.id)

        verdict = SanitizeVerdict(action="accept")

        data = record.to_dict()
        if contains_executable_content(data):
            logger.warning("Executable content detected in %s, neutralizing", record.id)
            try:
                data = json.loads(_neutralize(json.dumps(data, ensure_ascii=False)))
                record = Record.from_dict(data)
            except (json.JSONDecodeError, TypeError, ValueError) as e:
                logger.error("Could not neutralize record %s: %s", record.id, e)
                return SanitizeVerdict(action="reject", reasons=[f"executable_content: {e}"])
            verdict.neutralized = True

        limit = (
            self._config.max_bytes_storage if stage == "storage"
            else self._config.max_bytes_content
        )
        size = json_size(record.to_dict())
        if size > limit:
            logger.warning("Record %s too large (%d bytes > %d), truncating", record.id, size, limit)
            record = self.truncate(record)
            verdict.truncated = True

        record.sanitized_at = _now_iso()
        record.sanitization_version = SANITIZATION_VERSION
        verdict.record = record
        return verdict

    def sanitize_or_raise(self, raw: Any, stage: Stage = "storage") -> Record:
        """Sanitize, raising SanitizationRejected on reject."""
        verdict = self.sanitize(raw, stage=stage)
        if verdict.rejected or verdict.record is None:
            raise SanitizationRejected(verdict.reasons)
        return verdict.record

    # -- Field cleaners ----------------------------------------------------

    def clean_id(self, value: Any) -> str:
        """Keep [A-Za-z0-9_:-], truncated to max_id. Non-strings become ''."""
        if not isinstance(value, str):
            return ""
        return _ID_DISALLOWED.sub("", value)[: self._config.max_id]

    def clean_text(self, value: Any, max_length: Optional[int] = None) -> str:
        """Strip markup, script schemes, and control characters; collapse whitespace."""
        if not value or not isinstance(value, str):
            return ""
        text = _SCRIPT_BLOCK.sub(" ", value)
        text = _TAG.sub(" ", text)
        # Control characters go before scheme matching: "da\x01ta:" must not
        # survive as "data:"
        text = _CONTROL_CHARS.sub("", _WHITESPACE.sub(" ", text))
        # Repeat until stable so nested schemes cannot reassemble
        previous = None
        while previous != text:
            previous = text
            text = _DANGEROUS_SCHEME.sub("", text)
        text = _WHITESPACE.sub(" ", text).strip()
        limit = max_length if max_length is not None else self._config.max_text
        return _truncate(text, limit).strip()

    def clean_url(self, value: Any) -> str:
        """Return the cleaned URL, or '' if scheme, host, or content is not allowed."""
        if not value or not isinstance(value, str):
            return ""
        url = value.strip()
        if _CONTROL_CHARS.search(url):
            return ""
        decoded = unquote(url)
        if _DANGEROUS_SCHEME.search(decoded) or "<script" in decoded.lower():
            return ""
        try:
            parts = urlsplit(url)
            host = (parts.hostname or "").lower()
        except ValueError:
            logger.debug("Invalid URL dropped: %r", url[:100])
            return ""
        if parts.scheme.lower() not in ("http", "https"):
            return ""
        if not self.host_allowed(host):
            logger.debug("Blocked URL host: %s", host)
            return ""
        query = [
            (k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
            if k not in self._tracking
        ]
        cleaned = urlunsplit((
            parts.scheme.lower(), parts.netloc, parts.path,
            urlencode(query), parts.fragment,
        ))
        if len(cleaned) > self._config.max_url:
            return ""
        return cleaned

    def host_allowed(self, host: str) -> bool:
        """Host equals an allow-listed host or is a subdomain of one."""
        if not host:
            return False
        return any(host == h or host.endswith("." + h) for h in self._allowed_hosts)

    def clean_timestamp(self, value: Any) -> str:
        """ISO-8601 UTC string; future values beyond tolerance clamp to now."""
        if value is None or value == "" or isinstance(value, bool):
            return ""
        if isinstance(value, (int, float)):
            if not math.isfinite(value):
                return ""
            try:
                dt = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
            except (OverflowError, OSError, ValueError):
                return ""
        else:
            dt = _parse_iso(value) if isinstance(value, str) else None
            if dt is None:
                return ""
        now = datetime.now(timezone.utc)
        if dt > now + timedelta(seconds=self._config.future_tolerance_s):
            return now.isoformat()
        return dt.astimezone(timezone.utc).isoformat()

    def clean_author(self, value: Any) -> Author:
        if not isinstance(value, dict):
            return Author()
        return Author(
            name=self.clean_text(value.get("name"), self._config.max_author_name),
            title=self.clean_text(value.get("title"), self._config.max_title),
            profile_url=self.clean_url(value.get("profileUrl")),
            avatar=self.clean_url(value.get("avatar")),
        )

    def clean_media(self, value: Any) -> List[MediaItem]:
        """At most max_media_ingest items; items with bad type or URL are dropped."""
        if not isinstance(value, list):
            return []
        items: List[MediaItem] = []
        for raw in value[: self._config.max_media_ingest]:
            if not isinstance(raw, dict) or raw.get("type") not in ("image", "video"):
                continue
            url = self.clean_url(raw.get("url"))
            if not url:
                continue
            items.append(MediaItem(
                type=raw["type"],
                url=url,
                alt=self.clean_text(raw.get("alt"), self._config.max_alt),
                poster=self.clean_url(raw.get("poster")) if raw.get("poster") else "",
            ))
        return items

    @staticmethod
    def clean_engagement(value: Any) -> Engagement:
        """Counters in [0, 1e9], floored; anything else becomes 0."""
        if not isinstance(value, dict):
            return Engagement()
        counts: Dict[str, int] = {}
        for key in ("likes", "comments", "shares"):
            v = value.get(key)
            if (
                isinstance(v, (int, float)) and not isinstance(v, bool)
                and math.isfinite(v) and 0 <= v <= ENGAGEMENT_MAX
            ):
                counts[key] = int(math.floor(v))
            else:
                counts[key] = 0
        return Engagement(**counts)

    # -- Size handling -----------------------------------------------------

    @staticmethod
    def truncate(record: Record) -> Record:
        """Shrink an oversized record: text 5000, title 200, media 5."""
        if len(record.text) > 5000:
            record.text = record.text[:5000] + "... [truncated]"
        if len(record.title) > 200:
            record.title = record.title[:200] + TRUNCATION_MARKER
        if len(record.media) > 5:
            record.media = record.media[:5]
        return record

    # -- Export ------------------------------------------------------------

    def clean_text_for_export(self, value: Any) -> str:
        if not value or not isinstance(value, str):
            return ""
        text = _TAG.sub("", value)
        text = re.sub(r"(?:javascript|vbscript)\s*:", "", text, flags=re.IGNORECASE)
        return _CONTROL_CHARS.sub("", text).strip()

    def sanitize_for_export(self, data: Any) -> Optional[Dict[str, Any]]:
        """Export-safe copy of a stored record dict. None if id or savedAt missing."""
        if not isinstance(data, dict):
            return None
        if not data.get("id") or not data.get("savedAt"):
            return None
        out = json.loads(json.dumps(data, ensure_ascii=False))
        for key in ("title", "text"):
            if out.get(key):
                out[key] = self.clean_text_for_export(out[key])
        for key in ("url", "postUrl"):
            if out.get(key):
                out[key] = self.clean_url(out[key])
        if isinstance(out.get("author"), dict):
            a = out["author"]
            out["author"] = {
                "name": self.clean_text_for_export(a.get("name")),
                "title": self.clean_text_for_export(a.get("title")),
                "profileUrl": self.clean_url(a.get("profileUrl")),
                "avatar": self.clean_url(a.get("avatar")),
            }
        if isinstance(out.get("media"), list):
            media = []
            for m in out["media"]:
                if not isinstance(m, dict) or m.get("type") not in ("image", "video"):
                    continue
                url = self.clean_url(m.get("url"))
                if not url:
                    continue
                media.append({
                    "type": m["type"],
                    "url": url,
                    "alt": self.clean_text_for_export(m.get("alt")),
                    "poster": self.clean_url(m.get("poster")),
                })
            out["media"] = media
        out["exportedAt"] = _now_iso()
        return out

    # -- Health ------------------------------------------------------------

    @staticmethod
    def health(records: List[Record], sample: int = 10) -> Dict[str, Any]:
        """Sample the newest records for sanitization metadata and security issues."""
        recent = sorted(records, key=lambda r: r.saved_at, reverse=True)[:sample]
        sanitized = sum(1 for r in recent if r.sanitized_at and r.sanitization_version)
        issues = sum(1 for r in recent if contains_executable_content(r.to_dict()))
        rate = sanitized / len(recent) if recent else 1.0
        return {
            "active": rate > 0.8,
            "security_active": issues == 0,
            "sanitization_rate": rate,
            "security_issues": issues,
            "checked_records": len(recent),
        }

    # -- Internals ---------------------------------------------------------

    def _build(self, raw: Dict[str, Any]) -> Record:
        cfg = self._config
        return Record(
            id=self.clean_id(raw.get("id")),
            title=self.clean_text(raw.get("title"), cfg.max_title),
            text=self.clean_text(raw.get("text"), cfg.max_text),
            url=self.clean_url(raw.get("url")),
            post_url=self.clean_url(raw.get("postUrl")),
            author=self.clean_author(raw.get("author")),
            media=self.clean_media(raw.get("media")),
            engagement=self.clean_engagement(raw.get("engagement")),
            timestamp=self.clean_timestamp(raw.get("timestamp")),
            scraped_at=self.clean_timestamp(raw.get("scrapedAt")),
        )
