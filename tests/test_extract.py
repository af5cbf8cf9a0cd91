"""Tests for feedvault.extract — source adapters."""

import io
import json

import pytest

from feedvault.extract import (
    Extractor,
    JsonArrayExtractor,
    JsonLinesExtractor,
    extractor_for_path,
)


class TestJsonLines:
    def test_skips_blank_and_malformed(self):
        src = io.StringIO('{"id": "a"}\n\n{broken\n[1, 2]\n{"id": "b"}\n')
        ex = JsonLinesExtractor(src)
        assert [r["id"] for r in ex.iter_records()] == ["a", "b"]
        assert ex.malformed == 2

    def test_reads_path(self, tmp_path):
        p = tmp_path / "feed.jsonl"
        p.write_text('{"id": "x"}\n{"id": "y"}\n', encoding="utf-8")
        assert len(list(JsonLinesExtractor(str(p)).iter_records())) == 2


class TestJsonArray:
    def test_array(self):
        src = io.StringIO(json.dumps([{"id": "a"}, "junk", {"id": "b"}]))
        assert [r["id"] for r in JsonArrayExtractor(src).iter_records()] == ["a", "b"]

    def test_envelope(self):
        src = io.StringIO(json.dumps({"version": "1.0", "posts": {"a": {"id": "a"}}}))
        assert list(JsonArrayExtractor(src).iter_records()) == [{"id": "a"}]

    def test_other_shape_rejected(self):
        with pytest.raises(ValueError, match="JSON array"):
            list(JsonArrayExtractor(io.StringIO('{"id": "a"}')).iter_records())


class TestDispatch:
    def test_by_extension(self, tmp_path):
        for name, cls in (
            ("a.jsonl", JsonLinesExtractor),
            ("a.NDJSON", JsonLinesExtractor),
            ("a.json", JsonArrayExtractor),
        ):
            p = tmp_path / name
            p.write_text("[]", encoding="utf-8")
            ex = extractor_for_path(str(p))
            assert isinstance(ex, cls)
            assert isinstance(ex, Extractor)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            extractor_for_path(str(tmp_path / "absent.json"))

    def test_unsupported_extension(self, tmp_path):
        p = tmp_path / "feed.csv"
        p.write_text("id\n", encoding="utf-8")
        with pytest.raises(ValueError, match="Unsupported"):
            extractor_for_path(str(p))
