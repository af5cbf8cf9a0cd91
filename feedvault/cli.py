"""
feedvault CLI — local vault commands

Commands:
    feedvault ingest  FILE [--no-wait]           — .jsonl/.json records → vault
    feedvault query   [--author A] [--from D]    — filtered listing → stdout
    feedvault search  "text"                     — title/text/author search
    feedvault show    <id>                       — display a single record
    feedvault delete  <id>                       — delete a record
    feedvault stats                              — counts and storage size
    feedvault settings [--set KEY=VALUE ...]     — show or update settings
    feedvault export  [-o FILE]                  — export envelope → stdout/file
    feedvault import  FILE                       — merge an export envelope
    feedvault cleanup [--force]                  — age-based cleanup (+ oldest)
    feedvault optimize                           — shrink stored records
    feedvault quota   [--check]                  — storage usage (and remediate)
    feedvault events  [--limit N]                — recent vault events
    feedvault health                             — sanitization + queue health
    feedvault clear   --yes                      — delete everything
    feedvault serve                              — start MCP server (foreground)

Environment variables:
    FEEDVAULT_DB      Path to SQLite database (default: .feedvault/vault.db)
    FEEDVAULT_CONFIG  JSON config file (default: compiled defaults)

Precedence (invariant):
    CLI --flag  >  FEEDVAULT_* env var  >  config file  >  compiled default

Exit codes:
    0  Success (including idempotent no-op)
    1  Operational error (bad args, rejected command, invalid import)
    2  Internal failure (unexpected exception, I/O error)
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Defensive env parsing (never crash on bad export)
# ---------------------------------------------------------------------------


def _env_str(name: str, default: Optional[str]) -> Optional[str]:
    """Parse string env var with fallback."""
    return os.environ.get(name) or default


# ---------------------------------------------------------------------------
# Resolvers
# ---------------------------------------------------------------------------


def _resolve_config(args: Optional[argparse.Namespace] = None):
    """Load config: --config > FEEDVAULT_CONFIG > defaults; --db > FEEDVAULT_DB > config."""
    from feedvault.config import load_config

    path = getattr(args, "config", None) or _env_str("FEEDVAULT_CONFIG", None)
    config = load_config(path, strict=True)
    db = getattr(args, "db", None) or _env_str("FEEDVAULT_DB", None)
    if db:
        config.store.db_path = db
    return config


def _open_service(args: argparse.Namespace):
    from feedvault.service import VaultService
    return VaultService(_resolve_config(args))


def _execute(args: argparse.Namespace, message: Dict[str, Any]) -> Any:
    """Run one command against a fresh service; exit 1 on a failed response."""

    async def _go() -> Dict[str, Any]:
        service = _open_service(args)
        try:
            return await service.handle(message)
        finally:
            await service.stop()

    response = asyncio.run(_go())
    if response["status"] != "ok":
        _warn(f"Error: {response.get('message', 'command failed')}")
        sys.exit(1)
    return response["data"]


def _emit(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


# ---------------------------------------------------------------------------
# Stderr helpers (respect --quiet)
# ---------------------------------------------------------------------------

_quiet = False


def _info(msg: str) -> None:
    """Print progress to stderr (suppressed by --quiet)."""
    if not _quiet:
        print(msg, file=sys.stderr)


def _warn(msg: str) -> None:
    """Print warning to stderr (always visible)."""
    print(msg, file=sys.stderr)


def _print_record_line(item: Dict[str, Any]) -> None:
    author = (item.get("author") or {}).get("name", "")
    title = item.get("title") or (item.get("text") or "")[:60]
    print(f"[{item['id']}] {item.get('savedAt', '')[:19]}  {author}: {title}")


# ===========================================================================
# Command: ingest
# ===========================================================================


def cmd_ingest(args: argparse.Namespace) -> None:
    """Read raw records from a file and push them through the pipeline."""
    from feedvault.extract import extractor_for_path

    try:
        extractor = extractor_for_path(args.file)
    except (FileNotFoundError, ValueError) as e:
        _warn(f"Error: {e}")
        sys.exit(1)

    async def _go() -> Dict[str, int]:
        service = _open_service(args)
        try:
            return await service.ingest_all(extractor.iter_records(), wait=not args.no_wait)
        finally:
            await service.stop()

    counts = asyncio.run(_go())
    if getattr(args, "json", False):
        _emit({"status": "ok", **counts})
    else:
        _info(
            f"[ingest] {counts['accepted']} saved, {counts['queued']} queued, "
            f"{counts['duplicates']} duplicate(s), {counts['rejected']} rejected"
        )
        if counts["queued"] and args.no_wait:
            _warn("Warning: queued records were discarded (--no-wait)")


# ===========================================================================
# Command: query / search / show
# ===========================================================================


def _filters_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    f: Dict[str, Any] = {}
    if getattr(args, "author", None):
        f["author"] = args.author
    if getattr(args, "date_from", None):
        f["date_from"] = args.date_from
    if getattr(args, "date_to", None):
        f["date_to"] = args.date_to
    if getattr(args, "has_media", False):
        f["has_media"] = True
    return f


def cmd_query(args: argparse.Namespace) -> None:
    """List records, newest first."""
    data = _execute(args, {
        "action": "query", "filters": _filters_from_args(args),
        "page": args.page, "limit": args.limit,
    })
    if getattr(args, "json", False):
        _emit(data)
        return
    for item in data["items"]:
        _print_record_line(item)
    _info(f"page {data['page']}, {len(data['items'])} of {data['totalCount']}"
          + (" (more)" if data["hasMore"] else ""))


def cmd_search(args: argparse.Namespace) -> None:
    """Substring search over title, text, and author."""
    data = _execute(args, {
        "action": "search", "query": args.query, "filters": _filters_from_args(args),
    })
    if getattr(args, "json", False):
        _emit(data)
        return
    if not data["items"]:
        _info("No records found.")
        return
    for item in data["items"]:
        _print_record_line(item)


def cmd_show(args: argparse.Namespace) -> None:
    """Display a single record."""
    config = _resolve_config(args)
    from feedvault.store import RecordStore

    store = RecordStore(db_path=config.store.db_path, wal_mode=config.store.wal_mode)
    try:
        record = store.get(args.id)
    finally:
        store.close()
    if record is None:
        _warn(f"Record not found: {args.id}")
        sys.exit(1)
    print(record.to_json())


def cmd_delete(args: argparse.Namespace) -> None:
    """Delete one record."""
    data = _execute(args, {"action": "delete", "id": args.id})
    if not data["deleted"]:
        _warn(f"Record not found: {args.id}")
        sys.exit(1)
    _info(f"Deleted {args.id}")


# ===========================================================================
# Command: stats / settings
# ===========================================================================


def cmd_stats(args: argparse.Namespace) -> None:
    """Show vault statistics."""
    stats = _execute(args, {"action": "stats"})
    if getattr(args, "json", False):
        _emit(stats)
        return
    print("Vault Statistics")
    print("=" * 40)
    print(f"  Total records:   {stats['total_records']}")
    print(f"  Today:           {stats['records_today']}")
    print(f"  This week:       {stats['records_this_week']}")
    print(f"  This month:      {stats['records_this_month']}")
    print(f"  With media:      {stats['records_with_media']}")
    print(f"  Unique authors:  {stats['unique_authors']}")
    print(f"  Oldest:          {stats['oldest_record'] or '-'}")
    print(f"  Newest:          {stats['newest_record'] or '-'}")
    print(f"  Storage:         {stats['storage_size']['formatted']}")


def _parse_setting(pair: str) -> tuple:
    """KEY=VALUE with the value parsed as JSON when possible (true, 500, 0.9)."""
    if "=" not in pair:
        raise ValueError(f"Expected KEY=VALUE, got {pair!r}")
    key, raw = pair.split("=", 1)
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        value = raw
    return key.strip(), value


def cmd_settings(args: argparse.Namespace) -> None:
    """Show or update settings."""
    if args.set:
        try:
            delta = dict(_parse_setting(p) for p in args.set)
        except ValueError as e:
            _warn(f"Error: {e}")
            sys.exit(1)
        data = _execute(args, {"action": "updateSettings", "settings": delta})
    else:
        data = _execute(args, {"action": "getSettings"})
    _emit(data)


# ===========================================================================
# Command: export / import
# ===========================================================================


def cmd_export(args: argparse.Namespace) -> None:
    """Write an export envelope to stdout or a file."""
    from feedvault.export_import import write_envelope

    envelope = _execute(args, {"action": "export"})
    if args.output:
        with open(args.output, "w", encoding="utf-8") as fh:
            write_envelope(envelope, fh)
    else:
        write_envelope(envelope, sys.stdout)
    _info(f"[export] {envelope['postsCount']} record(s) exported, "
          f"{envelope['skippedCount']} skipped")


def cmd_import(args: argparse.Namespace) -> None:
    """Merge an export envelope into the vault."""
    from feedvault.export_import import ImportValidationError, read_envelope

    try:
        if args.file == "-":
            envelope = read_envelope(sys.stdin)
        else:
            with open(args.file, "r", encoding="utf-8") as fh:
                envelope = read_envelope(fh)
    except FileNotFoundError:
        _warn(f"Error: file not found: {args.file}")
        sys.exit(1)
    except ImportValidationError as e:
        _warn(f"Error: {e}")
        sys.exit(1)

    result = _execute(args, {"action": "import", "data": envelope})
    if getattr(args, "json", False):
        _emit(result)
    else:
        _info(f"[import] {result['imported']} imported, {result['skipped']} skipped, "
              f"{result['errors']} error(s)")


# ===========================================================================
# Command: cleanup / optimize / quota / clear
# ===========================================================================


def cmd_cleanup(args: argparse.Namespace) -> None:
    action = "forceCleanup" if args.force else "cleanup"
    data = _execute(args, {"action": action})
    _info(f"[cleanup] {data['removedCount']} record(s) removed")
    if getattr(args, "json", False):
        _emit(data)


def cmd_optimize(args: argparse.Namespace) -> None:
    data = _execute(args, {"action": "optimize"})
    _info(f"[optimize] {data['optimizedCount']} record(s) optimized")
    if getattr(args, "json", False):
        _emit(data)


def cmd_quota(args: argparse.Namespace) -> None:
    """Show quota usage; --check also runs tiered remediation."""
    _emit(_execute(args, {"action": "quotaCheck" if args.check else "quotaStatus"}))


def cmd_events(args: argparse.Namespace) -> None:
    data = _execute(args, {"action": "eventLog", "limit": args.limit})
    if getattr(args, "json", False):
        _emit(data)
        return
    for ev in data["events"]:
        print(f"{ev['timestamp'][:19]}  {ev['event']:18s} {json.dumps(ev['data'])}")


def cmd_health(args: argparse.Namespace) -> None:
    _emit(_execute(args, {"action": "health"}))


def cmd_clear(args: argparse.Namespace) -> None:
    """Delete all records and reset settings."""
    if not args.yes:
        _warn("Refusing to clear the vault without --yes")
        sys.exit(1)
    _execute(args, {"action": "clearAll"})
    _info("[clear] vault cleared")


# ===========================================================================
# Command: serve  (start MCP server)
# ===========================================================================


def cmd_serve(args: argparse.Namespace) -> None:
    """Start the feedvault MCP server in foreground."""
    try:
        from feedvault.mcp.server import build_parser as mcp_parser
        from feedvault.mcp.server import create_server
    except ImportError:
        _warn("MCP dependencies not installed. Run: pip install feedvault[mcp]")
        sys.exit(1)

    server_argv: List[str] = []
    config = _resolve_config(args)
    server_argv.extend(["--db", config.store.db_path])
    cfg_path = getattr(args, "config", None) or _env_str("FEEDVAULT_CONFIG", None)
    if cfg_path:
        server_argv.extend(["--config", cfg_path])
    if getattr(args, "verbose", False):
        server_argv.append("--verbose")

    server_args = mcp_parser().parse_args(server_argv)

    try:
        mcp, _ = create_server(server_args)
    except ImportError:
        _warn("MCP dependencies not installed. Run: pip install feedvault[mcp]")
        sys.exit(1)

    _info(f"feedvault MCP server (db={server_args.db})")
    _info("Press Ctrl+C to stop.")
    mcp.run()


# ===========================================================================
# Main
# ===========================================================================


def _add_filter_arguments(p: argparse.ArgumentParser) -> None:
    p.add_argument("--author", default=None, help="Author name substring (case-insensitive)")
    p.add_argument("--from", dest="date_from", default=None, help="savedAt lower bound (ISO-8601)")
    p.add_argument("--to", dest="date_to", default=None, help="savedAt upper bound (ISO-8601)")
    p.add_argument("--has-media", action="store_true", help="Only records with media")


def main() -> None:
    """CLI entry point: feedvault <command> [args]."""
    global _quiet

    # SUPPRESS defaults prevent subparser defaults from overriding
    # values parsed at the main-parser level (argparse parents quirk).
    _db_default = _env_str("FEEDVAULT_DB", ".feedvault/vault.db")
    _common = argparse.ArgumentParser(add_help=False)
    _common.add_argument(
        "--db", default=argparse.SUPPRESS,
        help=f"Path to SQLite database (default: {_db_default})",
    )
    _common.add_argument(
        "--config", default=argparse.SUPPRESS,
        help="JSON config file (default: $FEEDVAULT_CONFIG)",
    )
    _common.add_argument(
        "--quiet", "-q", action="store_true", default=argparse.SUPPRESS,
        help="Suppress stderr progress messages",
    )
    _common.add_argument(
        "--json", action="store_true", default=argparse.SUPPRESS,
        help="Machine-readable JSON output",
    )
    _common.add_argument(
        "-v", "--verbose", action="store_true", default=argparse.SUPPRESS,
        help="Enable verbose logging",
    )

    parser = argparse.ArgumentParser(
        prog="feedvault",
        description="feedvault — sanitized, self-managing local record vault",
        parents=[_common],
    )
    sub = parser.add_subparsers(dest="command", help="Available commands")

    p = sub.add_parser("ingest", parents=[_common], help="Ingest raw records from a .jsonl/.json file")
    p.add_argument("file", help="Source file")
    p.add_argument("--no-wait", action="store_true",
                   help="Do not wait for rate-limited records to drain")
    p.set_defaults(func=cmd_ingest)

    p = sub.add_parser("query", parents=[_common], help="List records (newest first)")
    _add_filter_arguments(p)
    p.add_argument("--page", type=int, default=1, help="Page number (default: 1)")
    p.add_argument("--limit", type=int, default=50, help="Page size (default: 50)")
    p.set_defaults(func=cmd_query)

    p = sub.add_parser("search", parents=[_common], help="Search title, text and author")
    p.add_argument("query", help="Search text")
    _add_filter_arguments(p)
    p.set_defaults(func=cmd_search)

    p = sub.add_parser("show", parents=[_common], help="Show a record")
    p.add_argument("id", help="Record ID")
    p.set_defaults(func=cmd_show)

    p = sub.add_parser("delete", parents=[_common], help="Delete a record")
    p.add_argument("id", help="Record ID")
    p.set_defaults(func=cmd_delete)

    p = sub.add_parser("stats", parents=[_common], help="Vault statistics")
    p.set_defaults(func=cmd_stats)

    p = sub.add_parser("settings", parents=[_common], help="Show or update settings")
    p.add_argument("--set", action="append", metavar="KEY=VALUE",
                   help="Setting to change (repeatable)")
    p.set_defaults(func=cmd_settings)

    p = sub.add_parser("export", parents=[_common], help="Export all records as JSON")
    p.add_argument("-o", "--output", default=None, help="Output file (default: stdout)")
    p.set_defaults(func=cmd_export)

    p = sub.add_parser("import", parents=[_common], help="Import an export envelope")
    p.add_argument("file", help="Envelope file ('-' for stdin)")
    p.set_defaults(func=cmd_import)

    p = sub.add_parser("cleanup", parents=[_common], help="Remove records older than cleanup_days")
    p.add_argument("--force", action="store_true",
                   help="Also remove the oldest records up to the cleanup batch size")
    p.set_defaults(func=cmd_cleanup)

    p = sub.add_parser("optimize", parents=[_common], help="Shrink stored records")
    p.set_defaults(func=cmd_optimize)

    p = sub.add_parser("quota", parents=[_common], help="Storage usage against capacity")
    p.add_argument("--check", action="store_true", help="Also run tiered cleanup")
    p.set_defaults(func=cmd_quota)

    p = sub.add_parser("events", parents=[_common], help="Recent vault events")
    p.add_argument("--limit", type=int, default=20, help="Max events (default: 20)")
    p.set_defaults(func=cmd_events)

    p = sub.add_parser("health", parents=[_common], help="Sanitization and queue health")
    p.set_defaults(func=cmd_health)

    p = sub.add_parser("clear", parents=[_common], help="Delete all records and settings")
    p.add_argument("--yes", action="store_true", help="Confirm")
    p.set_defaults(func=cmd_clear)

    p = sub.add_parser("serve", parents=[_common], help="Start MCP server")
    p.set_defaults(func=cmd_serve)

    # -- Parse and dispatch ------------------------------------------------
    args = parser.parse_args()

    _quiet = getattr(args, "quiet", False)

    if getattr(args, "verbose", False):
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(name)s %(levelname)s %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    from feedvault.config import ValidationError

    try:
        args.func(args)
    except ValidationError as e:
        _warn(f"Error: {e}")
        sys.exit(1)
    except BrokenPipeError:
        # Handle broken pipe gracefully (e.g. feedvault export | head)
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        sys.exit(0)
    except KeyboardInterrupt:
        sys.exit(0)
    except Exception as e:
        _warn(f"Internal error: {e}")
        if getattr(args, "verbose", False):
            import traceback
            traceback.print_exc(file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
