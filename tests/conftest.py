"""
Shared pytest fixtures for marginalia tests.

Provides a controllable clock, in-memory stores and fake record and
metadata sources, so no test touches the network or ~/.marginalia.
"""

from pathlib import Path
from typing import Any, Callable, Iterable, Optional

import pytest

from marginalia.bounded_store import BoundedStore
from marginalia.config import EngineConfig


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRecordSource:
    """
    In-memory record source.

    fetch_batch returns every record held; push() delivers to the
    current subscribers, as a live server connection would.
    """

    def __init__(self, records: Iterable[Any] = ()):
        self.records = list(records)
        self.fetch_calls = 0
        self._subscribers: list[Callable[[Any], None]] = []

    async def fetch_batch(self, filter: dict[str, Any]) -> list[Any]:
        self.fetch_calls += 1
        return list(self.records)

    def subscribe(self, filter: dict[str, Any], on_record: Callable[[Any], None]):
        self._subscribers.append(on_record)

        def unsubscribe() -> None:
            if on_record in self._subscribers:
                self._subscribers.remove(on_record)

        return unsubscribe

    def push(self, record: Any) -> None:
        for callback in list(self._subscribers):
            callback(record)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


class FakeMetadataSource:
    """Metadata source answering from a dict and counting calls."""

    def __init__(self, profiles: Optional[dict[str, dict]] = None):
        self.profiles = profiles or {}
        self.calls: list[str] = []

    async def fetch_metadata(self, key: str) -> Optional[dict[str, Any]]:
        self.calls.append(key)
        return self.profiles.get(key)


def record(
    id: str,
    *,
    key: Optional[str] = None,
    created_at: int = 0,
    kind: str = "published",
    revises: Optional[str] = None,
    author: str = "alice",
    targets: Iterable[str] = (),
    **payload: Any,
) -> dict[str, Any]:
    """Build a wire-format record mapping."""
    d: dict[str, Any] = {
        "id": id,
        "author": author,
        "created_at": created_at,
        "kind": kind,
    }
    if key is not None:
        d["logical_key"] = key
    if revises is not None:
        d["revises_id"] = revises
    if targets:
        d["targets"] = list(targets)
    if payload:
        d["payload"] = payload
    return d


def tombstone(id: str, *targets: str, created_at: int = 0, author: str = "alice") -> dict[str, Any]:
    return record(id, kind="tombstone", targets=targets, created_at=created_at, author=author)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    """In-memory bounded store with a small capacity."""
    s = BoundedStore(capacity=1000, protection_seconds=60.0, clock=clock)
    yield s
    s.close()


@pytest.fixture
def engine_config(tmp_path: Path) -> EngineConfig:
    """Default configuration rooted in a temp directory."""
    return EngineConfig(path=tmp_path)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Keep tests away from the user's store and metadata service."""
    monkeypatch.setenv("MARGINALIA_STORE_PATH", str(tmp_path / "default-store"))
    monkeypatch.delenv("MARGINALIA_METADATA_URL", raising=False)
    monkeypatch.delenv("MARGINALIA_API_KEY", raising=False)
