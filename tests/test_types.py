"""Tests for record and annotation parsing."""

import pytest

from marginalia.errors import MalformedRecord
from marginalia.types import (
    ANNOTATION,
    DRAFT,
    PUBLISHED,
    TOMBSTONE,
    Annotation,
    Record,
    annotation_id,
    normalize_created_at,
    normalize_kind,
)


class TestNormalizeCreatedAt:

    @pytest.mark.parametrize("value, expected", [
        (1_700_000_000, 1_700_000_000),
        (1_700_000_000_123, 1_700_000_000),
        ("1700000000", 1_700_000_000),
        ("1700000000123", 1_700_000_000),
        (1_700_000_000.9, 1_700_000_000),
        ("2023-11-14T22:13:20Z", 1_700_000_000),
        ("2023-11-14T22:13:20", 1_700_000_000),
        (None, 0),
        ("", 0),
        ("yesterday", 0),
        (True, 0),
        ([1], 0),
    ])
    def test_values(self, value, expected):
        assert normalize_created_at(value) == expected


class TestNormalizeKind:

    def test_wire_kinds(self):
        assert normalize_kind(30023) == PUBLISHED
        assert normalize_kind(30024) == DRAFT
        assert normalize_kind(5) == TOMBSTONE
        assert normalize_kind("9802") == ANNOTATION

    def test_names_pass_through(self):
        assert normalize_kind("published") == PUBLISHED
        assert normalize_kind(1) == "1"


class TestRecord:

    def test_from_dict_snake_and_camel(self):
        snake = Record.from_dict({
            "id": "r1", "author": "a", "created_at": 5,
            "logical_key": "k", "revises_id": "r0",
        })
        camel = Record.from_dict({
            "id": "r1", "pubkey": "a", "createdAt": 5,
            "logicalKey": "k", "revisesId": "r0",
        })
        assert snake == camel
        assert snake.kind == PUBLISHED

    def test_payload_not_part_of_identity(self):
        a = Record.from_dict({"id": "r1", "payload": {"title": "A"}})
        b = Record.from_dict({"id": "r1", "payload": {"title": "B"}})
        assert a == b

    def test_tombstone_targets(self):
        r = Record.from_dict({"id": "t", "kind": 5, "targets": "r1"})
        assert r.is_tombstone
        assert r.targets == ("r1",)

    @pytest.mark.parametrize("data", [None, [], "r1", {}, {"id": ""}, {"id": 7}])
    def test_malformed(self, data):
        with pytest.raises(MalformedRecord):
            Record.from_dict(data)

    def test_to_dict_round_trip(self):
        r = Record(
            id="r1", author="a", created_at=5, logical_key="k",
            revises_id="r0", payload={"title": "T"},
        )
        again = Record.from_dict(r.to_dict())
        assert again == r
        assert again.payload == {"title": "T"}


class TestAnnotation:

    def test_from_dict_aliases(self):
        a = Annotation.from_dict({
            "id": "h1", "postId": "doc", "anchorText": "brave",
            "startOffset": 6, "endOffset": "11", "createdAt": 10,
        })
        assert (a.document_id, a.anchor_text, a.start_offset, a.end_offset) == ("doc", "brave", 6, 11)

    def test_missing_id_is_derived(self):
        a = Annotation.from_dict({"document_id": "doc", "anchor_text": "brave", "start_offset": 6})
        assert a.id == annotation_id("doc", "brave", 6, 0)

    def test_bad_offsets_become_none(self):
        a = Annotation.from_dict({"anchor_text": "brave", "start_offset": "six"})
        assert a.start_offset is None

    @pytest.mark.parametrize("data", [None, {}, {"anchor_text": "  "}, {"anchor_text": 3}])
    def test_requires_anchor_text(self, data):
        with pytest.raises(MalformedRecord):
            Annotation.from_dict(data)

    def test_from_record(self):
        r = Record.from_dict({
            "id": "h1", "kind": 9802, "author": "a", "created_at": 9,
            "payload": {"document_id": "doc", "content": "brave", "start": 6, "end": 11},
        })
        a = Annotation.from_record(r)
        assert (a.id, a.document_id, a.author, a.created_at) == ("h1", "doc", "a", 9)
        assert a.to_payload() == {"document_id": "doc", "content": "brave", "start": 6, "end": 11}

    def test_from_record_rejects_other_kinds(self):
        with pytest.raises(MalformedRecord, match="not an annotation"):
            Annotation.from_record(Record(id="p1"))
