"""
Version resolution for revised and deleted documents.

Records from independent servers arrive unordered, duplicated and
partially overlapping. resolve() is a pure function of the full input
set: it is re-run from scratch on each new batch, never updated
incrementally, so delivery order cannot change the result.

The current record of a logical document is the revision no other
surviving revision points at. When several qualify (a deleted middle
link, or concurrent edits without a link) the latest author-asserted
created_at wins, then the greatest id. created_at is signed by the
author but not verifiable against any clock: a writer can win a tie
by back- or forward-dating.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from .errors import MalformedRecord
from .types import Record, TOMBSTONE

logger = logging.getLogger(__name__)


@dataclass
class Resolution:
    """
    Outcome of one resolve() pass.

    Attributes:
        current: One record per logical key plus every surviving
            key-less record, newest first
        malformed: Inputs skipped for lacking required fields
        duplicates: Inputs collapsed because their id was already seen
        tombstoned: Content records dropped by a tombstone
        superseded: Surviving revisions that are not current
        revoked: Ids invalidated by a tombstone, including ids absent
            from the input
    """
    current: list[Record] = field(default_factory=list)
    malformed: int = 0
    duplicates: int = 0
    tombstoned: int = 0
    superseded: int = 0
    revoked: set[str] = field(default_factory=set)

    @property
    def by_key(self) -> dict[str, Record]:
        """Current records that have a logical key, keyed by it."""
        return {r.logical_key: r for r in self.current if r.logical_key is not None}

    @property
    def ids(self) -> list[str]:
        return [r.id for r in self.current]


def _group_key(record: Record) -> tuple[str, str]:
    # Key-less records form singleton groups under their own id
    if record.logical_key is not None:
        return ("key", record.logical_key)
    return ("id", record.id)


def _recency(record: Record) -> tuple[int, str]:
    return (record.created_at, record.id)


class VersionResolver:
    """Computes the single current record per logical document."""

    def __init__(self, *, honor_foreign_tombstones: bool = True):
        """
        Args:
            honor_foreign_tombstones: If False, a tombstone only
                invalidates records by the same author.
        """
        self._honor_foreign = honor_foreign_tombstones

    def _parse(self, records: Iterable[Any], result: Resolution) -> list[Record]:
        """Parse inputs and collapse duplicate ids (first delivery wins)."""
        seen: dict[str, Record] = {}
        for raw in records:
            if isinstance(raw, Record):
                record = raw
                if not record.id:
                    result.malformed += 1
                    continue
            else:
                try:
                    record = Record.from_dict(raw)
                except MalformedRecord as e:
                    logger.debug("Skipping malformed record: %s", e)
                    result.malformed += 1
                    continue
            if record.id in seen:
                result.duplicates += 1
                continue
            seen[record.id] = record
        return list(seen.values())

    def _surviving(
        self,
        records: Iterable[Any],
        kinds: Optional[Iterable[str]],
        result: Resolution,
    ) -> list[Record]:
        """Parse, dedupe and drop tombstoned content records."""
        parsed = self._parse(records, result)

        tombstones = [r for r in parsed if r.kind == TOMBSTONE]
        content = [r for r in parsed if r.kind != TOMBSTONE]
        if kinds is not None:
            wanted = set(kinds)
            content = [r for r in content if r.kind in wanted]

        invalidated: dict[str, set[str]] = {}
        for tombstone in tombstones:
            for target in tombstone.targets:
                invalidated.setdefault(target, set()).add(tombstone.author)
        if self._honor_foreign:
            result.revoked.update(invalidated)

        surviving = []
        for record in content:
            authors = invalidated.get(record.id)
            if authors is not None and (self._honor_foreign or record.author in authors):
                result.tombstoned += 1
                result.revoked.add(record.id)
                continue
            surviving.append(record)
        return surviving

    def resolve(
        self,
        records: Iterable[Any],
        kinds: Optional[Iterable[str]] = None,
    ) -> Resolution:
        """
        Resolve a batch of records to the current version of each document.

        Args:
            records: Records or record mappings, in any order, with
                duplicates allowed
            kinds: Restrict the content kinds considered (tombstones
                always apply)

        Returns:
            Resolution with the current records and skip counts
        """
        result = Resolution()
        surviving = self._surviving(records, kinds, result)

        groups: dict[tuple[str, str], list[Record]] = {}
        for record in surviving:
            groups.setdefault(_group_key(record), []).append(record)

        current = []
        for members in groups.values():
            winner = self._current_of(members)
            current.append(winner)
            result.superseded += len(members) - 1

        current.sort(key=lambda r: (-r.created_at, r.id))
        result.current = current
        logger.debug(
            "Resolved %d current of %d surviving (%d tombstoned, %d malformed, %d duplicates)",
            len(current), len(surviving), result.tombstoned, result.malformed, result.duplicates,
        )
        return result

    def _current_of(self, members: list[Record]) -> Record:
        referenced = {r.revises_id for r in members if r.revises_id is not None}
        heads = [r for r in members if r.id not in referenced]
        if not heads:
            # Every member is referenced: a revision cycle
            logger.warning(
                "Revision cycle among %d records for %s",
                len(members), members[0].logical_key,
            )
            heads = members
        return max(heads, key=_recency)

    def history(
        self,
        records: Iterable[Any],
        logical_key: str,
        kinds: Optional[Iterable[str]] = None,
    ) -> list[Record]:
        """
        Surviving revisions of one logical document, newest first.

        Follows revises_id links back from the current record, then
        appends revisions the chain does not reach, newest first.
        """
        result = Resolution()
        members = [
            r for r in self._surviving(records, kinds, result)
            if r.logical_key == logical_key
        ]
        if not members:
            return []

        by_id = {r.id: r for r in members}
        chain = []
        node: Optional[Record] = self._current_of(members)
        while node is not None and node.id in by_id:
            chain.append(by_id.pop(node.id))
            node = by_id.get(node.revises_id) if node.revises_id else None

        rest = sorted(by_id.values(), key=_recency, reverse=True)
        return chain + rest


class RecordFeed:
    """
    Accumulates pushed deliveries and re-resolves the full set each time.

    Deliveries may arrive from several sources in any order; records are
    keyed by id, so duplicates are free.
    """

    def __init__(self, resolver: Optional[VersionResolver] = None):
        self._resolver = resolver or VersionResolver()
        self._records: dict[str, Any] = {}
        self._malformed = 0
        self._last = Resolution()

    def add(self, records: Iterable[Any]) -> Resolution:
        """Add a batch and return the resolution of everything seen so far."""
        for raw in records:
            if isinstance(raw, Record):
                record_id = raw.id
            elif isinstance(raw, dict):
                record_id = raw.get("id")
            else:
                record_id = None
            if not isinstance(record_id, str) or not record_id:
                self._malformed += 1
                continue
            self._records.setdefault(record_id, raw)

        self._last = self._resolver.resolve(self._records.values())
        self._last.malformed += self._malformed
        return self._last

    @property
    def records(self) -> list[Any]:
        return list(self._records.values())

    @property
    def resolution(self) -> Resolution:
        """The most recent resolution."""
        return self._last

    def __len__(self) -> int:
        return len(self._records)
