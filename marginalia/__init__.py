"""
marginalia: version reconciliation, bounded caching and annotation
anchoring for documents published to a replicated record store.

Quick start:
    from marginalia import Session

    with Session() as s:
        resolution = s.reconcile(records)
        s.highlight(rendered_html_tree, document_id)
"""

from .anchors import Anchor, AnnotationAnchor, Selection
from .annotations import AnnotationBook
from .bounded_store import BoundedStore
from .coalescer import FetchCoalescer
from .errors import (
    AnchorNotFound,
    CapacityExceeded,
    LookupFailed,
    MalformedRecord,
    MarginaliaError,
)
from .metadata_client import MetadataClient
from .rendered import SoupTextTree, TextTree
from .session import Session
from .types import Annotation, Record
from .versions import RecordFeed, Resolution, VersionResolver

__all__ = [
    "Anchor",
    "AnchorNotFound",
    "Annotation",
    "AnnotationAnchor",
    "AnnotationBook",
    "BoundedStore",
    "CapacityExceeded",
    "FetchCoalescer",
    "LookupFailed",
    "MalformedRecord",
    "MarginaliaError",
    "MetadataClient",
    "Record",
    "RecordFeed",
    "Resolution",
    "Selection",
    "Session",
    "SoupTextTree",
    "TextTree",
    "VersionResolver",
]
