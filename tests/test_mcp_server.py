"""Tests for feedvault.mcp.server — argument parsing and server assembly."""

import json

import pytest

from feedvault.config import ValidationError
from feedvault.mcp.server import build_parser


class TestParser:
    def test_env_defaults(self, monkeypatch):
        monkeypatch.setenv("FEEDVAULT_DB", "/tmp/env.db")
        monkeypatch.delenv("FEEDVAULT_CONFIG", raising=False)
        args = build_parser().parse_args([])
        assert args.db == "/tmp/env.db"
        assert args.config is None
        assert args.audit_log is None

    def test_flags(self):
        args = build_parser().parse_args(["--db", "x.db", "--audit-log", "a.jsonl", "-v"])
        assert (args.db, args.audit_log, args.verbose) == ("x.db", "a.jsonl", True)


class TestCreateServer:
    def test_db_override(self, tmp_path):
        pytest.importorskip("mcp.server.fastmcp")
        from feedvault.mcp.server import create_server

        db = str(tmp_path / "v.db")
        args = build_parser().parse_args(["--db", db, "--audit-log", str(tmp_path / "a.jsonl")])
        mcp, service = create_server(args)
        assert service.store.db_path == db
        assert mcp.name == "feedvault"
        service.store.close()

    def test_invalid_config_rejected(self, tmp_path):
        pytest.importorskip("mcp.server.fastmcp")
        from feedvault.mcp.server import create_server

        cfg = tmp_path / "cfg.json"
        cfg.write_text(json.dumps({"admission": {"max_requests": 0}}), encoding="utf-8")
        args = build_parser().parse_args(["--db", str(tmp_path / "v.db"), "--config", str(cfg)])
        with pytest.raises(ValidationError):
            create_server(args)
