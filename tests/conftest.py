"""Shared fixtures and raw-record factories for feedvault tests."""

from datetime import datetime, timedelta, timezone

import pytest

from feedvault.config import Settings
from feedvault.store import RecordStore
from feedvault.types import Author, Record


def make_raw(i: int = 0, **overrides):
    """A well-formed raw record as an extractor would produce it."""
    raw = {
        "id": f"post-{i}",
        "title": f"Post number {i}",
        "text": f"Body of post {i} about distributed systems",
        "postUrl": f"https://www.linkedin.com/feed/update/urn:li:activity:{1000 + i}",
        "author": {
            "name": f"Author {i % 7}",
            "title": "Engineer",
            "profileUrl": f"https://www.linkedin.com/in/author-{i % 7}",
        },
        "media": [],
        "engagement": {"likes": i, "comments": 1, "shares": 0},
        "timestamp": "2026-01-15T10:00:00Z",
    }
    raw.update(overrides)
    return raw


def make_record(i: int = 0, **overrides) -> Record:
    """A sanitized-shaped Record for direct store tests."""
    fields = dict(
        id=f"rec-{i}",
        title=f"Record {i}",
        text=f"Text of record {i}",
        post_url=f"https://www.linkedin.com/feed/update/{i}",
        author=Author(name=f"Author {i % 5}"),
        sanitized_at="2026-01-01T00:00:00+00:00",
    )
    fields.update(overrides)
    return Record(**fields)


class FakeClock:
    """Manually advanced wall clock returning aware datetimes."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeTime:
    """Manually advanced epoch-seconds clock for the admission queue."""

    def __init__(self, start: float = 1_800_000_000.0):
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    """In-memory store driven by a fake clock."""
    s = RecordStore(":memory:", clock=clock)
    yield s
    s.close()


@pytest.fixture
def small_store(clock):
    """In-memory store with max_records=10 and auto cleanup disabled."""
    s = RecordStore(
        ":memory:",
        default_settings=Settings(max_records=10, auto_cleanup=False),
        clock=clock,
    )
    yield s
    s.close()
