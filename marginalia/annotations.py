"""
Annotation cache backed by the bounded store.

Each document's annotations are kept as one ordered list under the
document id in the annotations namespace. The list is a denormalized
fast path: entries may lack fields when the original record was never
available locally, and reads skip whatever cannot be parsed.

A full cache never loses the user's annotation: create() returns it
even when the write is dropped, so the caller can still publish it as
a record. Repeated dropped writes raise one non-blocking notice.
"""

import logging
import time
from dataclasses import replace
from typing import Any, Callable, Iterable, Optional

from .anchors import AnnotationAnchor, Selection
from .bounded_store import BoundedStore
from .errors import MalformedRecord
from .rendered import TextTree
from .types import ANNOTATION, Annotation, Record, annotation_id

logger = logging.getLogger(__name__)

ANNOTATIONS_NAMESPACE = "annotations"

# Consecutive dropped writes before the user is told
DEFAULT_FAILURE_THRESHOLD = 3


class AnnotationBook:
    """Reads, appends and removes cached annotations per document."""

    def __init__(
        self,
        store: BoundedStore,
        *,
        anchor: Optional[AnnotationAnchor] = None,
        namespace: str = ANNOTATIONS_NAMESPACE,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        on_notice: Optional[Callable[[str], None]] = None,
    ):
        """
        Args:
            store: Shared bounded store
            anchor: Offset computation for create()
            namespace: Store namespace for annotation lists
            failure_threshold: Consecutive dropped writes before notice
            on_notice: Called once with a message when persistence is
                failing; must not block
        """
        self._store = store
        self._anchor = anchor or AnnotationAnchor()
        self._namespace = namespace
        self._failure_threshold = max(1, failure_threshold)
        self._on_notice = on_notice
        self._degraded = False

    @property
    def degraded(self) -> bool:
        """True while annotation writes keep being dropped."""
        return self._degraded

    def get(self, document_id: str) -> list[Annotation]:
        """Cached annotations for a document, ordered by start offset."""
        raw = self._store.get(self._namespace, document_id)
        if not isinstance(raw, list):
            return []
        annotations = []
        for item in raw:
            try:
                annotation = Annotation.from_dict(item)
            except MalformedRecord as e:
                logger.debug("Skipping cached annotation for %s: %s", document_id, e)
                continue
            if not annotation.document_id:
                annotation = replace(annotation, document_id=document_id)
            annotations.append(annotation)
        return annotations

    def append(self, annotation: Annotation) -> bool:
        """
        Add an annotation to its document's list.

        Returns:
            True if the cache write succeeded
        """
        return self._extend(annotation.document_id, [annotation])

    def _extend(self, document_id: str, new: Iterable[Annotation]) -> bool:
        by_id = {a.id: a for a in self.get(document_id)}
        for annotation in new:
            by_id[annotation.id] = annotation
        ordered = sorted(
            by_id.values(),
            key=lambda a: (a.start_offset is None, a.start_offset or 0, a.created_at, a.id),
        )
        ok = self._store.set(self._namespace, document_id, [a.to_dict() for a in ordered])
        self._after_write(ok)
        return ok

    def _after_write(self, ok: bool) -> None:
        if ok:
            if self._degraded:
                logger.info("Annotation cache writes recovered")
            self._degraded = False
            return
        streak = self._store.failure_streak(self._namespace)
        if streak >= self._failure_threshold and not self._degraded:
            self._degraded = True
            message = (
                "Highlights could not be saved to the local cache "
                f"({streak} attempts). They are still published."
            )
            logger.warning(message)
            if self._on_notice is not None:
                self._on_notice(message)

    def create(
        self,
        document_id: str,
        document_text: str,
        selection: Selection,
        tree: Optional[TextTree] = None,
        *,
        author: str = "",
        created_at: Optional[int] = None,
    ) -> Optional[Annotation]:
        """
        Anchor a selection and cache the resulting annotation.

        Returns:
            The annotation (even if the cache write was dropped), or
            None if the selection could not be anchored
        """
        anchor = self._anchor.compute_offsets(document_text, selection, tree)
        if anchor is None:
            logger.info("Selection in %s could not be anchored; not saved", document_id)
            return None

        anchor_text = document_text[anchor.start:anchor.end]
        created = int(time.time()) if created_at is None else created_at
        annotation = Annotation(
            id=annotation_id(document_id, anchor_text, anchor.start, created),
            document_id=document_id,
            anchor_text=anchor_text,
            start_offset=anchor.start,
            end_offset=anchor.end,
            created_at=created,
            author=author,
        )
        self.append(annotation)
        return annotation

    def ingest(self, records: Iterable[Any]) -> int:
        """
        Cache annotation records delivered by the record source.

        Returns:
            Number of annotations cached
        """
        by_document: dict[str, list[Annotation]] = {}
        for raw in records:
            try:
                record = raw if isinstance(raw, Record) else Record.from_dict(raw)
                if record.kind != ANNOTATION:
                    continue
                annotation = Annotation.from_record(record)
            except MalformedRecord as e:
                logger.debug("Skipping annotation record: %s", e)
                continue
            if not annotation.document_id:
                continue
            by_document.setdefault(annotation.document_id, []).append(annotation)

        cached = 0
        for document_id, annotations in by_document.items():
            if self._extend(document_id, annotations):
                cached += len(annotations)
        return cached

    def remove(self, document_id: str, annotation_id: str) -> bool:
        """
        Remove one annotation from the cache.

        Returns:
            True if it was present and the cache was updated
        """
        current = self.get(document_id)
        remaining = [a for a in current if a.id != annotation_id]
        if len(remaining) == len(current):
            return False
        if not remaining:
            return self._store.delete(self._namespace, document_id)
        return self._store.set(self._namespace, document_id, [a.to_dict() for a in remaining])

    def forget(self, annotation_ids: Iterable[str]) -> int:
        """
        Remove the given annotations from every document's list.

        Used for tombstoned annotations, whose document may not be known.

        Returns:
            Number of annotations removed
        """
        doomed = set(annotation_ids)
        if not doomed:
            return 0
        removed = 0
        for document_id in self._store.keys(self._namespace):
            current = self.get(document_id)
            remaining = [a for a in current if a.id not in doomed]
            if len(remaining) == len(current):
                continue
            if remaining:
                self._store.set(self._namespace, document_id, [a.to_dict() for a in remaining])
            else:
                self._store.delete(self._namespace, document_id)
            removed += len(current) - len(remaining)
        return removed
