"""
feedvault MCP Server — sanitized, self-managing record vault over MCP

Standalone MCP server exposing the vault command interface via the Model
Context Protocol.

Architecture: thin MCP layer delegating to one VaultService.
Zero business logic in this module — all logic lives in feedvault/*.
The service is started and stopped by the FastMCP lifespan, so the quota
ticker runs on the server's event loop and stops before the store closes.

Usage:
    python -m feedvault.mcp.server --db /path/to/vault.db
    python -m feedvault.mcp.server --config vault.json --audit-log audit.jsonl
"""

from __future__ import annotations

import argparse
import logging
import os
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

# Instructions embedded in FastMCP — always visible to any MCP client.
_MCP_INSTRUCTIONS = (
    "Local vault of sanitized social-feed records (17 tools).\n"
    "\n"
    "SAVE:     Use vault_ingest for each scraped record (rate limited,\n"
    "          20/min; extra records are queued, not lost).\n"
    "FIND:     Use vault_query for filtered listing, vault_search for text.\n"
    "DATA:     Use vault_export/vault_import for JSON backup/migration.\n"
    "STORAGE:  The vault cleans itself up when storage runs low;\n"
    "          vault_quota_status shows current usage,\n"
    "          vault_quota_check also runs the tiered cleanup.\n"
    "\n"
    "Rules:\n"
    "- Records are sanitized: markup, scripts and tracking parameters are\n"
    "  removed, only allow-listed hosts are kept in URLs\n"
    "- vault_clear_all is destructive and requires confirm=true\n"
)


def build_parser() -> argparse.ArgumentParser:
    """Build CLI argument parser for the vault MCP server."""
    p = argparse.ArgumentParser(
        prog="feedvault-mcp",
        description="feedvault MCP Server — sanitized, self-managing record vault",
    )
    p.add_argument(
        "--db",
        default=os.environ.get("FEEDVAULT_DB"),
        help="SQLite database path (default: config value or $FEEDVAULT_DB)",
    )
    p.add_argument(
        "--config",
        default=os.environ.get("FEEDVAULT_CONFIG"),
        help="JSON config file (default: $FEEDVAULT_CONFIG or compiled defaults)",
    )
    p.add_argument(
        "--audit-log",
        default=None,
        help="Audit log file path (default: stderr)",
    )
    p.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    return p


def create_server(args=None):
    """
    Create and configure the FastMCP server with vault tools.

    Args:
        args: Parsed argparse.Namespace, or None to parse from sys.argv.

    Returns:
        (mcp_server, service) tuple.
    """
    from mcp.server.fastmcp import FastMCP

    from feedvault.config import load_config
    from feedvault.mcp.audit import AuditLogger
    from feedvault.mcp.tools import register_vault_tools
    from feedvault.service import VaultService

    if args is None:
        args = build_parser().parse_args()

    config = load_config(args.config, strict=True)
    if args.db:
        config.store.db_path = args.db

    service = VaultService(config)

    audit_output = None
    if args.audit_log:
        audit_output = open(args.audit_log, "a", encoding="utf-8")
    audit = AuditLogger(output=audit_output)

    @asynccontextmanager
    async def lifespan(_server):
        await service.start()
        try:
            yield {}
        finally:
            await service.stop()

    mcp = FastMCP(
        name="feedvault",
        instructions=_MCP_INSTRUCTIONS,
        lifespan=lifespan,
    )

    register_vault_tools(mcp, service, audit=audit)

    logger.info(
        "feedvault MCP server ready: db=%s, config=%s",
        config.store.db_path, args.config or "(defaults)",
    )

    return mcp, service


def main():
    """CLI entry point — parse args, create server, run."""
    parser = build_parser()
    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    mcp, _service = create_server(args)
    mcp.run()


if __name__ == "__main__":
    main()
