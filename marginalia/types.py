"""
Data types for the reconciliation and annotation engine.

Records arrive from the replicated store as immutable, signed units.
Annotations are the user's highlights, cached in a denormalized form
that tolerates missing fields.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from .errors import MalformedRecord


# Record kinds
DRAFT = "draft"
PUBLISHED = "published"
TOMBSTONE = "tombstone"
ANNOTATION = "annotation"

# Numeric kinds used on the wire by the replicated store
WIRE_KINDS = {
    30024: DRAFT,
    30023: PUBLISHED,
    5: TOMBSTONE,
    9802: ANNOTATION,
}

# Unix timestamps with this many digits or more are in milliseconds
_MILLIS_DIGITS = 13


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a timestamp string to a timezone-aware UTC datetime.

    Handles the canonical format (no suffix) as well as 'Z' and
    '+00:00' suffixes.
    """
    ts = ts.replace("Z", "+00:00")
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def normalize_created_at(value: Any) -> int:
    """
    Normalize an author-asserted timestamp to unix seconds.

    Accepts seconds or milliseconds (13+ digits), as int, float or
    digit string, and ISO-8601 strings. Anything unparseable is 0,
    which sorts oldest.
    """
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        raw = str(int(value))
        seconds = int(value)
    elif isinstance(value, str):
        raw = value.strip()
        if not raw:
            return 0
        if raw.lstrip("-").isdigit():
            seconds = int(raw)
        else:
            try:
                return int(parse_utc_timestamp(raw).timestamp())
            except (ValueError, OverflowError):
                return 0
    else:
        return 0
    if len(raw.lstrip("-")) >= _MILLIS_DIGITS:
        seconds //= 1000
    return seconds


def normalize_kind(value: Any) -> str:
    """Map wire kinds (e.g. 30023) to kind names; pass names through."""
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, int):
        return WIRE_KINDS.get(value, str(value))
    if isinstance(value, str):
        if value.isdigit():
            return WIRE_KINDS.get(int(value), value)
        return value
    return ""


def _first(data: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        if name in data and data[name] is not None:
            return data[name]
    return None


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value)
    return value or None


def _optional_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class Record:
    """
    An immutable unit of content from the replicated store.

    Two records with the same id are the same record regardless of
    which source delivered them.

    Attributes:
        id: Content-derived, globally unique identifier
        author: Stable identity key of the signer
        created_at: Author-asserted unix seconds (untrusted)
        kind: draft, published, tombstone, annotation, or other
        logical_key: Groups revisions of one logical document
        revises_id: The prior record this one supersedes
        targets: Ids invalidated by a tombstone
        payload: Opaque content and structured fields
    """
    id: str
    author: str = ""
    created_at: int = 0
    kind: str = PUBLISHED
    logical_key: Optional[str] = None
    revises_id: Optional[str] = None
    targets: tuple[str, ...] = ()
    payload: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def is_tombstone(self) -> bool:
        return self.kind == TOMBSTONE

    @classmethod
    def from_dict(cls, data: Any) -> "Record":
        """
        Build a Record from a wire or cache mapping.

        Accepts snake_case and camelCase field names.

        Raises:
            MalformedRecord: If data is not a mapping or has no usable id
        """
        if not isinstance(data, Mapping):
            raise MalformedRecord(f"Record must be a mapping, got {type(data).__name__}")
        record_id = data.get("id")
        if not isinstance(record_id, str) or not record_id.strip():
            raise MalformedRecord("Record is missing an id")

        targets = _first(data, "targets") or ()
        if isinstance(targets, str):
            targets = (targets,)
        payload = _first(data, "payload")

        return cls(
            id=record_id,
            author=str(_first(data, "author", "pubkey") or ""),
            created_at=normalize_created_at(_first(data, "created_at", "createdAt")),
            kind=normalize_kind(_first(data, "kind")) or PUBLISHED,
            logical_key=_optional_str(_first(data, "logical_key", "logicalKey")),
            revises_id=_optional_str(_first(data, "revises_id", "revisesId")),
            targets=tuple(str(t) for t in targets if t),
            payload=dict(payload) if isinstance(payload, Mapping) else {},
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the snake_case form stored in the cache."""
        d: dict[str, Any] = {
            "id": self.id,
            "author": self.author,
            "created_at": self.created_at,
            "kind": self.kind,
        }
        if self.logical_key is not None:
            d["logical_key"] = self.logical_key
        if self.revises_id is not None:
            d["revises_id"] = self.revises_id
        if self.targets:
            d["targets"] = list(self.targets)
        if self.payload:
            d["payload"] = self.payload
        return d


def annotation_id(document_id: str, anchor_text: str, start: int, created_at: int) -> str:
    """Content-addressed id for a locally created annotation."""
    material = f"{document_id}\x00{start}\x00{created_at}\x00{anchor_text}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class Annotation:
    """
    A user highlight anchored to a document's rendered plain text.

    Offsets are absolute character positions at creation time and may
    be stale; re-application locates anchor_text verbatim instead.
    Cached annotations may lack offsets when the original record was
    never available locally.
    """
    id: str
    document_id: str
    anchor_text: str
    start_offset: Optional[int] = None
    end_offset: Optional[int] = None
    created_at: int = 0
    author: str = ""
    context_text: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "Annotation":
        """
        Build an Annotation from a cached mapping, tolerating gaps.

        Raises:
            MalformedRecord: If there is no anchor text to locate
        """
        if not isinstance(data, Mapping):
            raise MalformedRecord(f"Annotation must be a mapping, got {type(data).__name__}")
        anchor_text = _first(data, "anchor_text", "anchorText", "content")
        if not isinstance(anchor_text, str) or not anchor_text.strip():
            raise MalformedRecord("Annotation has no anchor text")
        document_id = str(_first(data, "document_id", "documentId", "postId") or "")
        start = _optional_int(_first(data, "start_offset", "startOffset", "start"))
        end = _optional_int(_first(data, "end_offset", "endOffset", "end"))
        created_at = normalize_created_at(_first(data, "created_at", "createdAt"))
        ann_id = _optional_str(_first(data, "id"))
        if ann_id is None:
            ann_id = annotation_id(document_id, anchor_text, start or 0, created_at)
        return cls(
            id=ann_id,
            document_id=document_id,
            anchor_text=anchor_text,
            start_offset=start,
            end_offset=end,
            created_at=created_at,
            author=str(_first(data, "author") or ""),
            context_text=_optional_str(_first(data, "context_text", "contextText", "context")),
        )

    @classmethod
    def from_record(cls, record: Record) -> "Annotation":
        """
        Build an Annotation from an annotation Record.

        Raises:
            MalformedRecord: If the record is not an annotation or lacks text
        """
        if record.kind != ANNOTATION:
            raise MalformedRecord(f"Record {record.id} is a {record.kind}, not an annotation")
        p = record.payload
        data = {
            "id": record.id,
            "document_id": _first(p, "document_id", "documentId") or record.logical_key,
            "anchor_text": _first(p, "anchor_text", "content"),
            "start_offset": _first(p, "start_offset", "start"),
            "end_offset": _first(p, "end_offset", "end"),
            "created_at": record.created_at,
            "author": record.author,
            "context_text": _first(p, "context_text", "context"),
        }
        return cls.from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "document_id": self.document_id,
            "anchor_text": self.anchor_text,
            "start_offset": self.start_offset,
            "end_offset": self.end_offset,
            "created_at": self.created_at,
        }
        if self.author:
            d["author"] = self.author
        if self.context_text:
            d["context_text"] = self.context_text
        return d

    def to_payload(self) -> dict[str, Any]:
        """Payload for publishing this annotation as a Record."""
        payload: dict[str, Any] = {
            "document_id": self.document_id,
            "content": self.anchor_text,
        }
        if self.start_offset is not None and self.end_offset is not None:
            payload["start"] = self.start_offset
            payload["end"] = self.end_offset
        if self.context_text:
            payload["context"] = self.context_text
        return payload


@dataclass(frozen=True)
class CacheEntry:
    """A value held by the bounded store."""
    namespace: str
    key: str
    value: Any
    written_at: float
