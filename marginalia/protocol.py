"""
Protocol definitions for the engine's external collaborators.

- RecordSource: supplies raw records from one or more servers
- MetadataSource: resolves a key to profile metadata
- Renderer: turns document content into a text-bearing tree

The engine never depends on how many servers back a record source,
or on how content is rendered; only on these interfaces.
"""

from typing import Any, Callable, Iterable, Optional, Protocol, runtime_checkable


@runtime_checkable
class RecordSource(Protocol):
    """
    Pull and push access to records.

    Implementations may deliver the same record more than once and in
    any order.
    """

    async def fetch_batch(self, filter: dict[str, Any]) -> Iterable[Any]: ...

    def subscribe(
        self,
        filter: dict[str, Any],
        on_record: Callable[[Any], None],
    ) -> Callable[[], None]: ...


@runtime_checkable
class MetadataSource(Protocol):
    """External identity/metadata service; only called via FetchCoalescer."""

    async def fetch_metadata(self, key: str) -> Optional[dict[str, Any]]: ...


@runtime_checkable
class Renderer(Protocol):
    """Renders document content to a tree the engine can read and mark up."""

    def render(self, content: str) -> Any: ...
