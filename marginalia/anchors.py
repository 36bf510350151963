"""
Annotation anchoring: selection offsets and idempotent re-marking.

Rendered text is not guaranteed to have stable node boundaries across
renders, so anchoring works in three tiers: a structural walk of the
text-bearing tree, then a plain substring search of the document text,
then giving up (the caller must not persist the annotation).

Re-marking never replays stored offsets. It strips old markers, then
claims the first unconsumed verbatim occurrence of each annotation's
text in start-offset order, so repeated phrases are marked once per
annotation rather than everywhere.
"""

import logging
import sys
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from bs4 import Tag

from .errors import AnchorNotFound, MalformedRecord
from .rendered import MARKER_CLASS, MARKER_TAG, SoupTextTree, TextTree
from .types import Annotation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Selection:
    """
    A user selection inside rendered content.

    The node/offset pairs play the role of a DOM Range: text nodes take
    character offsets, element nodes take child indices. They may be
    omitted when only the selected text is known.
    """
    text: str
    start_node: Any = None
    start_offset: int = 0
    end_node: Any = None
    end_offset: int = 0


@dataclass(frozen=True)
class Anchor:
    """Absolute [start, end) offsets in the document's plain text."""
    start: int
    end: int
    strategy: str  # "structural" or "substring"


def _trimmed(document_text: str, start: int, end: int, text: str) -> Optional[Anchor]:
    """Validate a structural range against the text, trimming whitespace."""
    if start < 0 or end > len(document_text) or end <= start:
        return None
    raw = document_text[start:end]
    lead = len(raw) - len(raw.lstrip())
    trail = len(raw) - len(raw.rstrip())
    start, end = start + lead, end - trail
    if document_text[start:end] != text:
        return None
    return Anchor(start, end, "structural")


def _nearest_occurrence(document_text: str, text: str, hint: Optional[int]) -> int:
    """
    Offset of text in document_text, nearest hint when given.

    Raises:
        AnchorNotFound: If text does not appear verbatim
    """
    pos = document_text.find(text)
    if pos == -1:
        raise AnchorNotFound(f"{text[:40]!r} not found in document text")
    if hint is None:
        return pos
    best = pos
    while pos != -1:
        if abs(pos - hint) < abs(best - hint):
            best = pos
        if pos > hint:
            break
        pos = document_text.find(text, pos + 1)
    return best


def _claim_occurrence(text: str, anchor_text: str, claimed: set[tuple[int, int]]) -> int:
    """
    First occurrence of anchor_text not already claimed.

    Raises:
        AnchorNotFound: If every occurrence is claimed or there is none
    """
    length = len(anchor_text)
    pos = text.find(anchor_text)
    while pos != -1:
        if (pos, pos + length) not in claimed:
            return pos
        pos = text.find(anchor_text, pos + 1)
    raise AnchorNotFound(f"{anchor_text[:40]!r} has no unclaimed occurrence")


def _sort_key(annotation: Annotation) -> tuple[int, int, str]:
    start = annotation.start_offset
    if not isinstance(start, int) or isinstance(start, bool):
        start = sys.maxsize
    created = annotation.created_at if isinstance(annotation.created_at, int) else 0
    return (start, created, str(annotation.id))


class AnnotationAnchor:
    """Computes annotation offsets and re-applies markers to rendered content."""

    def __init__(self, *, marker_tag: str = MARKER_TAG, marker_class: str = MARKER_CLASS):
        self._marker_tag = marker_tag
        self._marker_class = marker_class

    def tree_for(self, container: Any) -> Optional[TextTree]:
        """Wrap a rendered container in a TextTree (None passes through)."""
        if container is None:
            return None
        # Tag answers any attribute lookup, so test it before the protocol
        if isinstance(container, Tag):
            return SoupTextTree(
                container, marker_tag=self._marker_tag, marker_class=self._marker_class,
            )
        if isinstance(container, TextTree):
            return container
        if isinstance(container, str):
            return SoupTextTree.from_html(
                container, marker_tag=self._marker_tag, marker_class=self._marker_class,
            )
        raise TypeError(f"Cannot anchor within {type(container).__name__}")

    def compute_offsets(
        self,
        document_text: str,
        selection: Selection,
        tree: Optional[TextTree] = None,
    ) -> Optional[Anchor]:
        """
        Compute absolute offsets for a selection.

        Args:
            document_text: The document's rendered plain text
            selection: Selected text and, optionally, its range boundaries
            tree: The rendered tree the range boundaries belong to

        Returns:
            Anchor with document_text[start:end] == selected text, or
            None if the selection cannot be located
        """
        text = (selection.text or "").strip()
        if not text or not document_text:
            return None

        hint = None
        if tree is not None and selection.start_node is not None and selection.end_node is not None:
            start = tree.locate(selection.start_node, selection.start_offset)
            end = tree.locate(selection.end_node, selection.end_offset)
            if start is not None and end is not None:
                anchor = _trimmed(document_text, start, end, text)
                if anchor is not None:
                    return anchor
                hint = start
            logger.debug("Structural walk could not align selection, falling back to search")

        try:
            pos = _nearest_occurrence(document_text, text, hint)
        except AnchorNotFound as e:
            logger.debug("Selection not anchored: %s", e)
            return None
        return Anchor(pos, pos + len(text), "substring")

    def reapply(
        self,
        container: Any,
        document_id: str,
        annotations: Iterable[Any],
    ) -> int:
        """
        Strip old markers and mark each annotation's text once.

        Safe to call on every render. Annotations for other documents,
        malformed entries and text that no longer appears verbatim are
        skipped.

        Args:
            container: Rendered content (bs4 Tag, TextTree, HTML string
                or None)
            document_id: Document the container renders
            annotations: Annotations or cached annotation mappings

        Returns:
            Number of annotations marked
        """
        try:
            tree = self.tree_for(container)
        except TypeError as e:
            logger.warning("Cannot re-apply annotations: %s", e)
            return 0
        if tree is None:
            return 0

        tree.strip_markers()
        text = tree.text()
        if not text.strip():
            return 0

        valid = []
        for raw in annotations or ():
            try:
                annotation = raw if isinstance(raw, Annotation) else Annotation.from_dict(raw)
            except MalformedRecord as e:
                logger.debug("Skipping malformed annotation: %s", e)
                continue
            text_ok = isinstance(annotation.anchor_text, str) and annotation.anchor_text.strip()
            if not text_ok:
                logger.debug("Skipping annotation %s without anchor text", annotation.id)
                continue
            if annotation.document_id and annotation.document_id != document_id:
                continue
            valid.append(annotation)
        valid.sort(key=_sort_key)

        claimed: set[tuple[int, int]] = set()
        spans = []
        for annotation in valid:
            try:
                start = _claim_occurrence(text, annotation.anchor_text, claimed)
            except AnchorNotFound as e:
                logger.debug("Annotation %s drifted: %s", annotation.id, e)
                continue
            span = (start, start + len(annotation.anchor_text))
            claimed.add(span)
            spans.append((span, annotation.id))

        applied = 0
        for (start, end), annotation_id in spans:
            if tree.wrap(start, end, annotation_id) > 0:
                applied += 1
        return applied
