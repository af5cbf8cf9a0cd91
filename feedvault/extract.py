"""
Record Extraction — source adapters producing raw records

The core never parses markup. A source adapter implements the Extractor
protocol and yields opaque raw records (plain dicts) for the sanitizer.

Supports:
    .jsonl .ndjson   one JSON object per line (malformed lines skipped)
    .json            a JSON array of objects, or an export envelope
                     ({"posts": {id: record}})

The public entry point is ``extractor_for_path(path)``.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import IO, Any, Dict, Iterator, Protocol, Union, runtime_checkable

logger = logging.getLogger(__name__)

RawRecord = Dict[str, Any]

JSONL_EXTS = frozenset({".jsonl", ".ndjson"})
JSON_EXTS = frozenset({".json"})


@runtime_checkable
class Extractor(Protocol):
    """Anything that yields raw records."""

    def iter_records(self) -> Iterator[RawRecord]:
        ...


class JsonLinesExtractor:
    """One JSON object per line. Blank lines are ignored."""

    def __init__(self, source: Union[str, IO[str]]):
        self._source = source
        self.malformed = 0

    def iter_records(self) -> Iterator[RawRecord]:
        if isinstance(self._source, str):
            with open(self._source, "r", encoding="utf-8") as fh:
                yield from self._parse(fh)
        else:
            yield from self._parse(self._source)

    def _parse(self, fh: IO[str]) -> Iterator[RawRecord]:
        for lineno, line in enumerate(fh, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError as e:
                self.malformed += 1
                logger.warning("Malformed JSON on line %d: %s", lineno, e)
                continue
            if not isinstance(data, dict):
                self.malformed += 1
                logger.warning("Line %d is not a JSON object, skipped", lineno)
                continue
            yield data


class JsonArrayExtractor:
    """A JSON array of records, or an envelope with a ``posts`` map."""

    def __init__(self, source: Union[str, IO[str]]):
        self._source = source

    def iter_records(self) -> Iterator[RawRecord]:
        if isinstance(self._source, str):
            with open(self._source, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        else:
            data = json.load(self._source)

        if isinstance(data, dict) and isinstance(data.get("posts"), dict):
            items = list(data["posts"].values())
        elif isinstance(data, list):
            items = data
        else:
            raise ValueError("Expected a JSON array or an object with a 'posts' map")

        for item in items:
            if isinstance(item, dict):
                yield item
            else:
                logger.warning("Skipping non-object entry of type %s", type(item).__name__)


def extractor_for_path(path: str) -> Extractor:
    """Pick an adapter from the file extension.

    Raises:
        FileNotFoundError: When the file does not exist.
        ValueError: When the file extension is not supported.
    """
    p = Path(path)
    if not p.is_file():
        raise FileNotFoundError(path)
    ext = p.suffix.lower()
    if ext in JSONL_EXTS:
        return JsonLinesExtractor(str(p))
    if ext in JSON_EXTS:
        return JsonArrayExtractor(str(p))
    raise ValueError(f"Unsupported source format: {ext or '(none)'}")
