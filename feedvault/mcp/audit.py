"""
MCP Audit Logger — structured JSONL logging for vault tool calls.

Privacy rules:
- Never log raw record content beyond a 120-char title preview
- Include a SHA-256 hash of the serialized record for correlation

The log() method is fire-and-forget: it catches all exceptions internally
and never disrupts tool execution.
"""

from __future__ import annotations

import hashlib
import json
import sys
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

AUDIT_SCHEMA_VERSION = 1
PREVIEW_MAX_CHARS = 120


class AuditLogger:
    """Structured JSONL audit logger for MCP tool calls."""

    def __init__(self, output: Optional[TextIO] = None):
        """
        Args:
            output: File handle for audit output. None → stderr.
        """
        self._output = output if output is not None else sys.stderr

    def new_rid(self) -> str:
        """Generate a new request ID (UUID4 hex string)."""
        return uuid.uuid4().hex

    def log(
        self,
        tool: str,
        rid: str,
        db_path: str,
        outcome: str,
        detail: Optional[Dict[str, Any]] = None,
        latency_ms: float = 0.0,
    ) -> None:
        """
        Write one JSONL audit record. Fire-and-forget — never raises.

        Args:
            tool: MCP tool name (e.g. "vault_ingest").
            rid: Request ID (from new_rid()).
            db_path: Vault database path.
            outcome: "ok", "rejected", or "error".
            detail: Tool-specific fields.
            latency_ms: Wall-clock latency in milliseconds.
        """
        try:
            now = datetime.now(timezone.utc)
            record: Dict[str, Any] = {
                "v": AUDIT_SCHEMA_VERSION,
                "ts": now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z",
                "rid": rid,
                "tool": tool,
                "db": db_path,
                "outcome": outcome,
            }
            if detail:
                record["d"] = detail
            record["ms"] = round(latency_ms, 1)

            line = json.dumps(record, ensure_ascii=False, separators=(",", ":"))
            self._output.write(line + "\n")
            self._output.flush()
        except Exception:
            # Fire-and-forget: audit failures must never disrupt tool execution
            pass

    @staticmethod
    def make_record_detail(raw: Any) -> Dict[str, Any]:
        """
        Build safe audit detail fields for a raw record.

        - id: the raw id as submitted (may be absent)
        - bytes: serialized size
        - hash: SHA-256 of the serialization
        - preview: first 120 chars of the title, newlines → space
        """
        try:
            serialized = json.dumps(raw, ensure_ascii=False, sort_keys=True, default=str)
        except (TypeError, ValueError):
            serialized = repr(raw)
        data = serialized.encode("utf-8")
        title = raw.get("title") if isinstance(raw, dict) else None
        preview = ""
        if isinstance(title, str):
            preview = title[:PREVIEW_MAX_CHARS].replace("\n", " ").replace("\r", "")
            if len(title) > PREVIEW_MAX_CHARS:
                preview = preview.rstrip() + "…"
        return {
            "id": str(raw.get("id", ""))[:200] if isinstance(raw, dict) else "",
            "bytes": len(data),
            "hash": hashlib.sha256(data).hexdigest(),
            "preview": preview,
        }
