"""
Text-bearing tree abstraction over rendered documents.

The anchoring algorithms only need an ordered sequence of text runs,
a way to map a native selection boundary onto that sequence, and a
way to insert and remove marker wrappers. TextTree is that interface;
SoupTextTree implements it for BeautifulSoup trees produced from the
renderer's HTML.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable

from bs4 import BeautifulSoup, NavigableString, Tag
from bs4.element import PreformattedString

logger = logging.getLogger(__name__)

MARKER_TAG = "mark"
MARKER_CLASS = "marginalia-annotation"
ANNOTATION_ATTR = "data-annotation-id"

# Elements whose strings are not part of the displayed text
_NON_TEXT_PARENTS = frozenset({"script", "style", "template"})


@dataclass(frozen=True)
class TextRun:
    """One text-bearing node and its absolute start offset."""
    node: Any
    start: int
    text: str

    @property
    def end(self) -> int:
        return self.start + len(self.text)


@runtime_checkable
class TextTree(Protocol):
    """The narrow tree interface the anchoring algorithms use."""

    def runs(self) -> list[TextRun]: ...

    def text(self) -> str: ...

    def locate(self, node: Any, offset: int) -> Optional[int]: ...

    def strip_markers(self) -> int: ...

    def wrap(self, start: int, end: int, annotation_id: str) -> int: ...


def _is_text_node(node: Any) -> bool:
    if not isinstance(node, NavigableString) or isinstance(node, PreformattedString):
        return False
    parent = node.parent
    return parent is None or parent.name not in _NON_TEXT_PARENTS


class SoupTextTree:
    """
    TextTree over a BeautifulSoup element.

    Text nodes are NavigableStrings (comments, CDATA and the contents of
    script/style/template excluded). Node identity is by object, not by
    string value: two equal strings are distinct nodes.
    """

    def __init__(
        self,
        container: Tag,
        *,
        marker_tag: str = MARKER_TAG,
        marker_class: str = MARKER_CLASS,
    ):
        self._container = container
        self._marker_tag = marker_tag
        self._marker_class = marker_class
        if isinstance(container, BeautifulSoup):
            self._soup = container
        else:
            self._soup = next(
                (p for p in container.parents if isinstance(p, BeautifulSoup)),
                None,
            ) or BeautifulSoup("", "html.parser")

    @classmethod
    def from_html(cls, html: str, **kwargs) -> "SoupTextTree":
        """Parse rendered HTML into a tree."""
        return cls(BeautifulSoup(html, "html.parser"), **kwargs)

    @property
    def container(self) -> Tag:
        return self._container

    def runs(self) -> list[TextRun]:
        """Text-bearing nodes in document order with absolute offsets."""
        runs = []
        offset = 0
        for node in self._container.descendants:
            if not _is_text_node(node):
                continue
            text = str(node)
            if not text:
                continue
            runs.append(TextRun(node, offset, text))
            offset += len(text)
        return runs

    def text(self) -> str:
        return "".join(run.text for run in self.runs())

    def locate(self, node: Any, offset: int) -> Optional[int]:
        """
        Map a selection boundary to an absolute offset.

        Text nodes take a character offset; element nodes take a child
        index, as a DOM Range does.

        Returns:
            Absolute offset, or None if node is not inside this tree
        """
        if offset < 0:
            return None

        if isinstance(node, NavigableString):
            for run in self.runs():
                if run.node is node:
                    return run.start + min(offset, len(run.text))
            return None

        if not isinstance(node, Tag):
            return None
        if node is not self._container and not any(
            p is self._container for p in node.parents
        ):
            return None

        children = node.contents
        if offset < len(children):
            return self._start_of(children[offset])
        return self._end_of(node)

    def _start_of(self, target: Any) -> Optional[int]:
        """Absolute offset where target's text begins."""
        position = 0
        for node in self._container.descendants:
            if node is target:
                return position
            if _is_text_node(node):
                position += len(str(node))
        return None

    def _end_of(self, element: Tag) -> Optional[int]:
        start = self._start_of(element) if element is not self._container else 0
        if start is None:
            return None
        length = sum(len(str(n)) for n in element.descendants if _is_text_node(n))
        return start + length

    def _markers(self) -> list[Tag]:
        return self._container.find_all(
            self._marker_tag, attrs={ANNOTATION_ATTR: True},
        )

    def strip_markers(self) -> int:
        """
        Remove previously applied markers, restoring plain text runs.

        Returns:
            Number of markers removed
        """
        markers = self._markers()
        for marker in markers:
            marker.unwrap()
        if markers:
            # Merge the text runs the markers split apart
            self._container.smooth()
        return len(markers)

    def wrap(self, start: int, end: int, annotation_id: str) -> int:
        """
        Wrap the text in [start, end) in markers.

        A range crossing element boundaries gets one marker per text
        node segment, so the element structure is left intact.

        Returns:
            Number of marker elements inserted
        """
        if end <= start:
            return 0
        inserted = 0
        for run in self.runs():
            if run.end <= start or run.start >= end:
                continue
            lo = max(start, run.start) - run.start
            hi = min(end, run.end) - run.start

            marker = self._soup.new_tag(
                self._marker_tag,
                attrs={"class": self._marker_class, ANNOTATION_ATTR: annotation_id},
            )
            marker.string = run.text[lo:hi]

            pieces: list[Any] = []
            if lo > 0:
                pieces.append(NavigableString(run.text[:lo]))
            pieces.append(marker)
            if hi < len(run.text):
                pieces.append(NavigableString(run.text[hi:]))
            run.node.replace_with(*pieces)
            inserted += 1
        return inserted

    def __str__(self) -> str:
        return str(self._container)


class HtmlRenderer:
    """Renderer for content that is already HTML."""

    def render(self, content: str) -> BeautifulSoup:
        return BeautifulSoup(content, "html.parser")
