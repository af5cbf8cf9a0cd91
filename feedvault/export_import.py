"""
Export/Import — JSON Envelope Backup and Migration

Export walks every stored record through the sanitizer's export-safe subset
and wraps the result in a versioned envelope:

    {version, exportDate, postsCount, skippedCount, posts: {id: record},
     exportMetadata}

Import validates the envelope (posts map present, <= 50 MiB serialized,
<= 10 000 records), re-sanitizes every record, skips duplicates and failures
independently, then applies the same limit enforcement as normal inserts.
The sanitizer is never bypassed.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import IO, Any, Dict, List

from feedvault import __version__
from feedvault.sanitizer import RecordSanitizer
from feedvault.store import RecordStore
from feedvault.types import SANITIZATION_VERSION, Record, _now_iso, json_size

logger = logging.getLogger(__name__)

EXPORT_VERSION = "1.0"
MAX_IMPORT_BYTES = 50 * 1024 * 1024
MAX_IMPORT_RECORDS = 10_000


class ImportValidationError(ValueError):
    """Envelope malformed or over the size/count limits. Nothing is imported."""


# ---------------------------------------------------------------------------
# Result type
# ---------------------------------------------------------------------------


@dataclass
class ImportResult:
    """Counts from an import operation."""

    imported: int = 0
    skipped: int = 0
    errors: int = 0
    evicted: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "imported": self.imported,
            "skipped": self.skipped,
            "errors": self.errors,
        }


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


def build_export_envelope(
    store: RecordStore, sanitizer: RecordSanitizer,
) -> Dict[str, Any]:
    """Export every stored record through the export-safe sanitizer."""
    posts: Dict[str, Dict[str, Any]] = {}
    skipped = 0
    for data in store.export_all():
        clean = sanitizer.sanitize_for_export(data)
        if clean is None:
            skipped += 1
            logger.warning("Skipped record during export: %s", data.get("id"))
            continue
        posts[clean["id"]] = clean
    logger.info("Export completed: %d record(s) exported, %d skipped", len(posts), skipped)
    return {
        "version": EXPORT_VERSION,
        "exportDate": _now_iso(),
        "postsCount": len(posts),
        "skippedCount": skipped,
        "posts": posts,
        "exportMetadata": {
            "generator": f"feedvault {__version__}",
            "sanitizationVersion": SANITIZATION_VERSION,
        },
    }


def write_envelope(envelope: Dict[str, Any], output: IO[str]) -> None:
    """Write an envelope as indented JSON."""
    json.dump(envelope, output, ensure_ascii=False, indent=2)
    output.write("\n")


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------


def validate_import_envelope(envelope: Any) -> Dict[str, Any]:
    """Check envelope structure and limits.

    Returns:
        The envelope's posts map.

    Raises:
        ImportValidationError: malformed, oversized, or too many records.
    """
    if not isinstance(envelope, dict):
        raise ImportValidationError("Invalid import data format: expected an object")
    posts = envelope.get("posts")
    if not isinstance(posts, dict):
        raise ImportValidationError("Invalid import data format: 'posts' map missing")
    if len(posts) > MAX_IMPORT_RECORDS:
        raise ImportValidationError(
            f"Too many records in import ({len(posts)} > {MAX_IMPORT_RECORDS})"
        )
    size = json_size(envelope)
    if size > MAX_IMPORT_BYTES:
        raise ImportValidationError(
            f"Import data too large ({size} bytes > {MAX_IMPORT_BYTES})"
        )
    return posts


def read_envelope(source: IO[str]) -> Dict[str, Any]:
    """Parse an envelope from a JSON stream.

    Raises:
        ImportValidationError: if the stream is not valid JSON.
    """
    try:
        return json.load(source)
    except json.JSONDecodeError as e:
        raise ImportValidationError(f"Invalid JSON: {e}") from e


def import_envelope(
    store: RecordStore,
    sanitizer: RecordSanitizer,
    envelope: Any,
) -> ImportResult:
    """Validate, re-sanitize, and merge an export envelope into the store.

    Existing savedAt values are kept so export then import is a fixed point.
    """
    posts = validate_import_envelope(envelope)
    source = str(envelope.get("version") or "unknown")
    result = ImportResult()

    accepted: List[Record] = []
    seen: set = set()
    for key, raw in posts.items():
        try:
            if isinstance(raw, dict) and not raw.get("id"):
                raw = {**raw, "id": key}
            verdict = sanitizer.sanitize(raw)
            if verdict.rejected or verdict.record is None:
                logger.debug("Import skipped %s: %s", key, verdict.reason)
                result.skipped += 1
                continue
            record = verdict.record
            if record.id in seen:
                result.skipped += 1
                continue
            record.saved_at = _carry_saved_at(sanitizer, raw)
            seen.add(record.id)
            accepted.append(record)
        except (TypeError, ValueError, KeyError) as e:
            logger.error("Error processing import record %s: %s", key, e)
            result.errors += 1

    counts = store.import_merge(accepted, source=source)
    result.imported = counts.imported
    result.skipped += counts.skipped
    result.evicted = counts.evicted

    logger.info(
        "Import completed: %d imported, %d skipped, %d errors",
        result.imported, result.skipped, result.errors,
    )
    return result


def _carry_saved_at(sanitizer: RecordSanitizer, raw: Dict[str, Any]) -> str:
    return sanitizer.clean_timestamp(raw.get("savedAt")) if raw.get("savedAt") else ""


def export_to_file(
    store: RecordStore, sanitizer: RecordSanitizer, path: str,
) -> Dict[str, Any]:
    """Build an envelope and write it to path. Returns the envelope."""
    envelope = build_export_envelope(store, sanitizer)
    with open(path, "w", encoding="utf-8") as fh:
        write_envelope(envelope, fh)
    return envelope


def import_from_file(
    store: RecordStore, sanitizer: RecordSanitizer, path: str,
) -> ImportResult:
    """Read an envelope from path and import it."""
    with open(path, "r", encoding="utf-8") as fh:
        envelope = read_envelope(fh)
    return import_envelope(store, sanitizer, envelope)
