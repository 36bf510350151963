"""Tests for selection anchoring and marker re-application."""

import pytest
from bs4 import BeautifulSoup

from marginalia.anchors import AnnotationAnchor, Selection
from marginalia.rendered import ANNOTATION_ATTR, MARKER_CLASS, SoupTextTree
from marginalia.types import Annotation

HTML = "<p>Hello <b>brave</b> new world</p>"


def _soup(html=HTML):
    return BeautifulSoup(html, "html.parser")


def _marks(soup):
    return soup.find_all("mark", attrs={ANNOTATION_ATTR: True})


def _ann(id, text, start=None, document_id="doc", created_at=0):
    end = start + len(text) if start is not None else None
    return Annotation(
        id=id, document_id=document_id, anchor_text=text,
        start_offset=start, end_offset=end, created_at=created_at,
    )


class TestTextTree:

    def test_text_concatenates_runs(self):
        tree = SoupTextTree(_soup())
        assert tree.text() == "Hello brave new world"
        assert [r.start for r in tree.runs()] == [0, 6, 11]

    def test_non_display_text_excluded(self):
        tree = SoupTextTree(_soup("<p>a<!-- note --></p><script>var x;</script><style>p{}</style><p>b</p>"))
        assert tree.text() == "ab"

    def test_locate_text_node(self):
        soup = _soup()
        tree = SoupTextTree(soup)
        assert tree.locate(soup.b.string, 2) == 8

    def test_locate_element_child_index(self):
        soup = _soup()
        tree = SoupTextTree(soup)
        assert tree.locate(soup.p, 1) == 6
        assert tree.locate(soup.p, 3) == 21

    def test_locate_foreign_node(self):
        tree = SoupTextTree(_soup())
        other = _soup("<p>elsewhere</p>")
        assert tree.locate(other.p.string, 0) is None
        assert tree.locate(other.p, 0) is None

    def test_equal_strings_are_distinct_nodes(self):
        soup = _soup("<p>same</p><p>same</p>")
        second = soup.find_all("p")[1].string
        assert SoupTextTree(soup).locate(second, 0) == 4

    def test_wrap_across_elements_preserves_text(self):
        soup = _soup()
        tree = SoupTextTree(soup)
        assert tree.wrap(6, 15, "a1") == 2
        assert tree.text() == "Hello brave new world"
        assert [m.get_text() for m in _marks(soup)] == ["brave", " new"]
        # Structure intact: "brave" still inside <b>
        assert soup.b.mark is not None

    def test_strip_restores_original(self):
        soup = _soup()
        tree = SoupTextTree(soup)
        tree.wrap(6, 15, "a1")
        assert tree.strip_markers() == 2
        assert str(soup) == HTML


class TestComputeOffsets:

    def test_substring_fallback(self):
        anchor = AnnotationAnchor().compute_offsets(
            "Hello brave new world", Selection(text="brave new"),
        )
        assert (anchor.start, anchor.end, anchor.strategy) == (6, 15, "substring")

    def test_structural_from_text_nodes(self):
        soup = _soup()
        tree = SoupTextTree(soup)
        selection = Selection(
            text="brave new",
            start_node=soup.b.string, start_offset=0,
            end_node=soup.p.contents[2], end_offset=4,
        )
        anchor = AnnotationAnchor().compute_offsets(tree.text(), selection, tree)
        assert (anchor.start, anchor.end, anchor.strategy) == (6, 15, "structural")

    def test_structural_from_element_nodes(self):
        soup = _soup()
        tree = SoupTextTree(soup)
        selection = Selection(
            text="brave new world",
            start_node=soup.p, start_offset=1,
            end_node=soup.p, end_offset=3,
        )
        anchor = AnnotationAnchor().compute_offsets(tree.text(), selection, tree)
        assert (anchor.start, anchor.end) == (6, 21)

    def test_structural_picks_selected_repeat(self):
        soup = _soup("<p>the cat</p><p>the cat</p>")
        tree = SoupTextTree(soup)
        second = soup.find_all("p")[1].string
        selection = Selection(
            text="the cat", start_node=second, start_offset=0,
            end_node=second, end_offset=7,
        )
        anchor = AnnotationAnchor().compute_offsets(tree.text(), selection, tree)
        assert anchor.start == 7

    def test_selection_whitespace_trimmed(self):
        soup = _soup()
        tree = SoupTextTree(soup)
        selection = Selection(
            text=" brave ",
            start_node=soup.p.contents[0], start_offset=5,
            end_node=soup.p.contents[2], end_offset=1,
        )
        anchor = AnnotationAnchor().compute_offsets(tree.text(), selection, tree)
        assert tree.text()[anchor.start:anchor.end] == "brave"

    def test_misaligned_range_falls_back_near_hint(self):
        text = "one two one two"
        tree = SoupTextTree(_soup(f"<p>{text}</p>"))
        node = tree.runs()[0].node
        # Range covers "o one", but the selection says "one"
        selection = Selection(
            text="one", start_node=node, start_offset=6, end_node=node, end_offset=11,
        )
        anchor = AnnotationAnchor().compute_offsets(text, selection, tree)
        assert anchor.strategy == "substring"
        assert anchor.start == 8

    def test_not_found(self):
        anchor = AnnotationAnchor().compute_offsets("Hello", Selection(text="absent"))
        assert anchor is None

    def test_blank_selection(self):
        assert AnnotationAnchor().compute_offsets("Hello", Selection(text="   ")) is None


class TestReapply:

    def test_marks_each_annotation(self):
        soup = _soup()
        applied = AnnotationAnchor().reapply(soup, "doc", [_ann("a1", "brave new", 6)])
        assert applied == 1
        marks = _marks(soup)
        assert {m[ANNOTATION_ATTR] for m in marks} == {"a1"}
        assert all(MARKER_CLASS in m["class"] for m in marks)

    def test_idempotent(self):
        soup = _soup()
        anchor = AnnotationAnchor()
        annotations = [_ann("a1", "brave new", 6), _ann("a2", "Hello", 0)]
        anchor.reapply(soup, "doc", annotations)
        once = str(soup)
        anchor.reapply(soup, "doc", annotations)
        assert str(soup) == once

    def test_repeated_phrase_marked_once_per_annotation(self):
        soup = _soup("<p>the cat sat and the cat ran and the cat hid</p>")
        applied = AnnotationAnchor().reapply(soup, "doc", [
            _ann("a1", "the cat", 0),
            _ann("a2", "the cat", 18),
        ])
        assert applied == 2
        assert [m[ANNOTATION_ATTR] for m in _marks(soup)] == ["a1", "a2"]

    def test_single_annotation_never_marks_every_occurrence(self):
        soup = _soup("<p>echo echo echo</p>")
        AnnotationAnchor().reapply(soup, "doc", [_ann("a1", "echo", 5)])
        assert len(_marks(soup)) == 1

    def test_drifted_text_skipped(self):
        soup = _soup()
        applied = AnnotationAnchor().reapply(soup, "doc", [
            _ann("gone", "vanished phrase", 3),
            _ann("ok", "world", 16),
        ])
        assert applied == 1
        assert [m[ANNOTATION_ATTR] for m in _marks(soup)] == ["ok"]

    def test_stale_offsets_ignored(self):
        soup = _soup("<p>Intro added later. Hello brave new world</p>")
        applied = AnnotationAnchor().reapply(soup, "doc", [_ann("a1", "brave", 6)])
        assert applied == 1
        assert _marks(soup)[0].get_text() == "brave"

    def test_other_documents_and_malformed_skipped(self):
        soup = _soup()
        applied = AnnotationAnchor().reapply(soup, "doc", [
            _ann("x", "Hello", 0, document_id="other"),
            {"id": "broken"},
            {"anchor_text": "world"},
        ])
        assert applied == 1

    def test_removed_annotation_unmarked(self):
        soup = _soup()
        anchor = AnnotationAnchor()
        anchor.reapply(soup, "doc", [_ann("a1", "brave", 6)])
        assert anchor.reapply(soup, "doc", []) == 0
        assert _marks(soup) == []
        assert str(soup) == HTML

    @pytest.mark.parametrize("container", [None, "", "<p>   </p>"])
    def test_empty_container(self, container):
        assert AnnotationAnchor().reapply(container, "doc", [_ann("a1", "x", 0)]) == 0

    def test_unsupported_container(self):
        assert AnnotationAnchor().reapply(42, "doc", [_ann("a1", "x", 0)]) == 0

    @pytest.mark.parametrize("text", ["", "   ", None])
    def test_annotation_without_text_not_applied(self, text):
        soup = _soup("<p>hello</p>")
        bad = Annotation(id="x", document_id="doc", anchor_text=text)
        assert AnnotationAnchor().reapply(soup, "doc", [bad]) == 0
        assert str(soup) == "<p>hello</p>"

    def test_annotation_without_text_does_not_block_others(self):
        soup = _soup()
        applied = AnnotationAnchor().reapply(soup, "doc", [
            Annotation(id="empty", document_id="doc", anchor_text=""),
            Annotation(id="none", document_id="doc", anchor_text=None, start_offset="0"),
            _ann("ok", "world", 16),
        ])
        assert applied == 1
        assert [m[ANNOTATION_ATTR] for m in _marks(soup)] == ["ok"]

    def test_accepts_text_tree(self):
        tree = SoupTextTree(_soup())
        assert AnnotationAnchor().reapply(tree, "doc", [_ann("a1", "world", 16)]) == 1
        assert "<mark" in str(tree)

    def test_custom_marker(self):
        soup = _soup()
        anchor = AnnotationAnchor(marker_tag="span", marker_class="hl")
        anchor.reapply(soup, "doc", [_ann("a1", "world", 16)])
        span = soup.find("span", attrs={ANNOTATION_ATTR: "a1"})
        assert span is not None
        assert span.get_attribute_list("class") == ["hl"]
