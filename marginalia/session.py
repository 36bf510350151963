"""
Application session: one set of engine components with a shared cache.

The bounded store, coalescer, resolver, anchor and annotation cache are
built once per session and passed to each other explicitly. Closing
the session cancels outstanding lookups and closes the store.
"""

import logging
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from .anchors import Anchor, AnnotationAnchor, Selection
from .annotations import AnnotationBook
from .bounded_store import BoundedStore
from .coalescer import FetchCoalescer
from .config import EngineConfig, get_default_store_path, load_or_create_config
from .errors import MalformedRecord
from .logging_config import configure_ops_log, remove_ops_log
from .metadata_client import MetadataClient
from .protocol import MetadataSource, RecordSource, Renderer
from .rendered import HtmlRenderer, TextTree
from .types import ANNOTATION, Annotation, Record
from .versions import RecordFeed, Resolution, VersionResolver

logger = logging.getLogger(__name__)

REVISIONS_NAMESPACE = "revisions"


class Session:
    """
    Reconciliation and annotation engine for one application session.

    Example:
        with Session() as s:
            resolution = s.reconcile(records)
            s.highlight(soup, document_id)
    """

    def __init__(
        self,
        store_path: Optional[str | Path] = None,
        *,
        config: Optional[EngineConfig] = None,
        store: Optional[BoundedStore] = None,
        metadata_source: Optional[MetadataSource] = None,
        renderer: Optional[Renderer] = None,
        on_notice: Optional[Callable[[str], None]] = None,
    ) -> None:
        """
        Open a session.

        Args:
            store_path: Store directory. Uses the default if not specified.
            config: Pre-loaded EngineConfig (skips filesystem config discovery).
            store: Injected bounded store (skips creating cache.db).
            metadata_source: Injected metadata source (skips the HTTP client).
            renderer: Renders content for render_annotated().
            on_notice: Non-blocking user notification callback.
        """
        if config is not None:
            self._config = config
        else:
            path = Path(store_path).expanduser() if store_path is not None else get_default_store_path()
            self._config = load_or_create_config(path)

        self._ops_log_handler = None
        if store is not None:
            self._store = store
        else:
            self._ops_log_handler = configure_ops_log(self._config.path)
            cache = self._config.cache
            self._store = BoundedStore(
                self._config.cache_path,
                capacity=cache.capacity,
                protection_seconds=cache.protection_seconds,
                low_water=cache.low_water,
            )

        self._metadata_source = metadata_source
        meta = self._config.metadata
        if metadata_source is None and meta.api_url:
            self._metadata_source = MetadataClient(
                meta.api_url,
                meta.api_key or None,
                timeout=meta.timeout,
                retries=meta.retries,
            )

        marks = self._config.annotations
        self.anchor = AnnotationAnchor(marker_tag=marks.marker_tag, marker_class=marks.marker_class)
        self.coalescer = FetchCoalescer(self._store)
        self.resolver = VersionResolver()
        self.feed = RecordFeed(self.resolver)
        self.annotations = AnnotationBook(
            self._store,
            anchor=self.anchor,
            failure_threshold=marks.failure_threshold,
            on_notice=on_notice,
        )
        self._renderer = renderer or HtmlRenderer()
        self._unsubscribers: list[Callable[[], None]] = []

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def store(self) -> BoundedStore:
        return self._store

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    def reconcile(self, records: Iterable[Any]) -> Resolution:
        """
        Resolve records and cache the current revision per logical key.

        Cached revisions whose key has no surviving record (all of its
        revisions were tombstoned) are dropped from the cache. Only
        surviving annotation records are cached; tombstoned ones are
        removed from the annotation cache.
        """
        records = list(records)
        resolution = self.resolver.resolve(records)
        current = resolution.by_key

        for key, record in current.items():
            self._store.set(REVISIONS_NAMESPACE, key, record.to_dict())

        seen_keys = set()
        for raw in records:
            key = raw.logical_key if isinstance(raw, Record) else None
            if key is None and isinstance(raw, dict):
                key = raw.get("logical_key") or raw.get("logicalKey")
            if key:
                seen_keys.add(key)
        for key in seen_keys - current.keys():
            if self._store.delete(REVISIONS_NAMESPACE, key):
                logger.info("Dropped cached revision for deleted document %s", key)

        self.annotations.ingest(r for r in resolution.current if r.kind == ANNOTATION)
        forgotten = self.annotations.forget(resolution.revoked)
        if forgotten:
            logger.info("Dropped %d cached annotations for deleted records", forgotten)
        if resolution.malformed:
            logger.info("Skipped %d malformed records", resolution.malformed)
        return resolution

    def cached_revision(self, logical_key: str) -> Optional[Record]:
        """The last resolved current record for a logical key, if cached."""
        raw = self._store.get(REVISIONS_NAMESPACE, logical_key)
        if raw is None:
            return None
        try:
            return Record.from_dict(raw)
        except MalformedRecord:
            return None

    async def refresh(self, source: RecordSource, filter: dict[str, Any]) -> Resolution:
        """Pull a batch into the session feed and reconcile everything seen."""
        batch = list(await source.fetch_batch(filter))
        self.feed.add(batch)
        return self.reconcile(self.feed.records)

    def follow(
        self,
        source: RecordSource,
        filter: dict[str, Any],
        on_change: Optional[Callable[[Resolution], None]] = None,
    ) -> Callable[[], None]:
        """
        Subscribe to pushed records, reconciling on every delivery.

        Returns:
            Callable that cancels the subscription
        """
        def on_record(record: Any) -> None:
            self.feed.add([record])
            resolution = self.reconcile(self.feed.records)
            if on_change is not None:
                on_change(resolution)

        unsubscribe = source.subscribe(filter, on_record)
        self._unsubscribers.append(unsubscribe)
        return unsubscribe

    # -------------------------------------------------------------------------
    # Metadata
    # -------------------------------------------------------------------------

    async def lookup(self, key: str) -> Optional[dict[str, Any]]:
        """Metadata for key, coalesced and cached; None if unavailable."""
        source = self._metadata_source
        if source is None:
            return self.coalescer.cached(key)
        return await self.coalescer.resolve(key, lambda: source.fetch_metadata(key))

    # -------------------------------------------------------------------------
    # Annotations
    # -------------------------------------------------------------------------

    def anchor_selection(
        self,
        document_text: str,
        selection: Selection,
        tree: Optional[TextTree] = None,
    ) -> Optional[Anchor]:
        return self.anchor.compute_offsets(document_text, selection, tree)

    def annotate(
        self,
        document_id: str,
        document_text: str,
        selection: Selection,
        tree: Optional[TextTree] = None,
        *,
        author: str = "",
    ) -> Optional[Annotation]:
        """Anchor and cache a new annotation; None if it cannot be anchored."""
        return self.annotations.create(document_id, document_text, selection, tree, author=author)

    def highlight(self, container: Any, document_id: str) -> int:
        """Re-apply cached annotations to freshly rendered content."""
        return self.anchor.reapply(container, document_id, self.annotations.get(document_id))

    def render_annotated(self, document_id: str, content: str) -> tuple[Any, int]:
        """Render content and mark its cached annotations."""
        rendered = self._renderer.render(content)
        return rendered, self.highlight(rendered, document_id)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Cancel subscriptions, close the store and detach the ops log."""
        for unsubscribe in self._unsubscribers:
            try:
                unsubscribe()
            except Exception as e:
                logger.warning("Unsubscribe failed: %s", e)
        self._unsubscribers.clear()
        self._store.close()
        remove_ops_log(self._ops_log_handler)
        self._ops_log_handler = None

    async def aclose(self) -> None:
        """Cancel outstanding lookups, close the HTTP client, then close()."""
        await self.coalescer.aclose()
        if isinstance(self._metadata_source, MetadataClient):
            await self._metadata_source.aclose()
        self.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
        return False
