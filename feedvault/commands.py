"""
Command Interface — closed set of request kinds with typed payloads.

Messages are plain dicts:

    {"action": "query", "filters": {"author": "ada"}, "page": 2, "limit": 20}

``action`` (or ``kind``) accepts the wire name (``getSettings``) or the
snake_case name (``get_settings``). parse_command() returns one payload
dataclass per kind; dispatch tables are checked with check_exhaustive() so
that adding a kind without a handler fails at import time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Union


class CommandError(ValueError):
    """Unknown command kind or malformed payload."""


class CommandKind(str, Enum):
    INGEST = "ingest"
    QUERY = "query"
    SEARCH = "search"
    DELETE = "delete"
    STATS = "stats"
    GET_SETTINGS = "getSettings"
    UPDATE_SETTINGS = "updateSettings"
    EXPORT = "export"
    IMPORT = "import"
    CLEANUP = "cleanup"
    CLEAR_ALL = "clearAll"
    QUOTA_STATUS = "quotaStatus"
    QUOTA_CHECK = "quotaCheck"
    FORCE_CLEANUP = "forceCleanup"
    OPTIMIZE = "optimize"
    EVENT_LOG = "eventLog"
    HEALTH = "health"


def _lookup_kind(name: Any) -> CommandKind:
    if not isinstance(name, str) or not name:
        raise CommandError("Missing command action")
    for kind in CommandKind:
        if name == kind.value or name.lower() == kind.name.lower():
            return kind
    raise CommandError(f"Unknown command: {name}")


def _as_dict(message: Mapping[str, Any], key: str) -> Dict[str, Any]:
    value = message.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise CommandError(f"'{key}' must be an object")
    return dict(value)


def _as_int(message: Mapping[str, Any], key: str, default: int) -> int:
    value = message.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise CommandError(f"'{key}' must be an integer")
    return value


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


@dataclass
class IngestCommand:
    kind: ClassVar[CommandKind] = CommandKind.INGEST
    raw: Any = None

    @classmethod
    def from_message(cls, m: Mapping[str, Any]) -> IngestCommand:
        if "data" not in m:
            raise CommandError("ingest requires 'data'")
        return cls(raw=m["data"])


@dataclass
class QueryCommand:
    kind: ClassVar[CommandKind] = CommandKind.QUERY
    filters: Dict[str, Any] = field(default_factory=dict)
    page: int = 1
    limit: int = 50

    @classmethod
    def from_message(cls, m: Mapping[str, Any]) -> QueryCommand:
        return cls(
            filters=_as_dict(m, "filters"),
            page=_as_int(m, "page", 1),
            limit=_as_int(m, "limit", 50),
        )


@dataclass
class SearchCommand:
    kind: ClassVar[CommandKind] = CommandKind.SEARCH
    query: str = ""
    filters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, m: Mapping[str, Any]) -> SearchCommand:
        query = m.get("query", "")
        if not isinstance(query, str):
            raise CommandError("'query' must be a string")
        return cls(query=query, filters=_as_dict(m, "filters"))


@dataclass
class DeleteCommand:
    kind: ClassVar[CommandKind] = CommandKind.DELETE
    id: str = ""

    @classmethod
    def from_message(cls, m: Mapping[str, Any]) -> DeleteCommand:
        record_id = m.get("id") or m.get("postId")
        if not isinstance(record_id, str) or not record_id:
            raise CommandError("delete requires 'id'")
        return cls(id=record_id)


@dataclass
class UpdateSettingsCommand:
    kind: ClassVar[CommandKind] = CommandKind.UPDATE_SETTINGS
    delta: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, m: Mapping[str, Any]) -> UpdateSettingsCommand:
        return cls(delta=_as_dict(m, "settings"))


@dataclass
class ImportCommand:
    kind: ClassVar[CommandKind] = CommandKind.IMPORT
    envelope: Any = None

    @classmethod
    def from_message(cls, m: Mapping[str, Any]) -> ImportCommand:
        if "data" not in m:
            raise CommandError("import requires 'data'")
        return cls(envelope=m["data"])


@dataclass
class EventLogCommand:
    kind: ClassVar[CommandKind] = CommandKind.EVENT_LOG
    limit: int = 100

    @classmethod
    def from_message(cls, m: Mapping[str, Any]) -> EventLogCommand:
        return cls(limit=_as_int(m, "limit", 100))


class _NoPayload:
    """Mixin for kinds that carry no fields."""

    @classmethod
    def from_message(cls, m: Mapping[str, Any]):
        return cls()


@dataclass
class StatsCommand(_NoPayload):
    kind: ClassVar[CommandKind] = CommandKind.STATS


@dataclass
class GetSettingsCommand(_NoPayload):
    kind: ClassVar[CommandKind] = CommandKind.GET_SETTINGS


@dataclass
class ExportCommand(_NoPayload):
    kind: ClassVar[CommandKind] = CommandKind.EXPORT


@dataclass
class CleanupCommand(_NoPayload):
    kind: ClassVar[CommandKind] = CommandKind.CLEANUP


@dataclass
class ClearAllCommand(_NoPayload):
    kind: ClassVar[CommandKind] = CommandKind.CLEAR_ALL


@dataclass
class QuotaStatusCommand(_NoPayload):
    kind: ClassVar[CommandKind] = CommandKind.QUOTA_STATUS


@dataclass
class QuotaCheckCommand(_NoPayload):
    kind: ClassVar[CommandKind] = CommandKind.QUOTA_CHECK


@dataclass
class ForceCleanupCommand(_NoPayload):
    kind: ClassVar[CommandKind] = CommandKind.FORCE_CLEANUP


@dataclass
class OptimizeCommand(_NoPayload):
    kind: ClassVar[CommandKind] = CommandKind.OPTIMIZE


@dataclass
class HealthCommand(_NoPayload):
    kind: ClassVar[CommandKind] = CommandKind.HEALTH


Command = Union[
    IngestCommand, QueryCommand, SearchCommand, DeleteCommand,
    UpdateSettingsCommand, ImportCommand, EventLogCommand,
    StatsCommand, GetSettingsCommand, ExportCommand, CleanupCommand,
    ClearAllCommand, QuotaStatusCommand, QuotaCheckCommand, ForceCleanupCommand,
    OptimizeCommand, HealthCommand,
]

PAYLOAD_TYPES: Dict[CommandKind, type] = {
    cls.kind: cls for cls in Command.__args__  # type: ignore[attr-defined]
}


def check_exhaustive(table: Mapping[CommandKind, Any], name: str) -> None:
    """Raise if table does not cover every CommandKind exactly once."""
    missing = set(CommandKind) - set(table)
    extra = set(table) - set(CommandKind)
    if missing or extra:
        raise RuntimeError(
            f"{name} is not exhaustive: missing={sorted(k.value for k in missing)} "
            f"extra={sorted(map(str, extra))}"
        )


check_exhaustive(PAYLOAD_TYPES, "PAYLOAD_TYPES")


def parse_command(message: Any) -> Command:
    """Build a typed command from a message dict.

    Raises:
        CommandError: unknown action or malformed payload.
    """
    if not isinstance(message, Mapping):
        raise CommandError("Command message must be an object")
    kind = _lookup_kind(message.get("action", message.get("kind")))
    return PAYLOAD_TYPES[kind].from_message(message)
