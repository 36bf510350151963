"""
Single-flight coalescing of keyed external lookups.

At most one producer call is outstanding per key. Concurrent callers
for the same key await the same task, even if they passed different
producers (the first caller's producer wins). Successful non-None
results populate the bounded store; failures and None results are not
cached, so a later call retries.

A caller that stops awaiting does not cancel the shared lookup: the
task still settles and still fills the cache for the next caller.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from .bounded_store import BoundedStore
from .errors import LookupFailed

logger = logging.getLogger(__name__)

METADATA_NAMESPACE = "metadata"

Producer = Callable[[], Awaitable[Optional[Any]]]


class FetchCoalescer:
    """Coalesces concurrent lookups per key and caches their results."""

    def __init__(self, store: BoundedStore, *, namespace: str = METADATA_NAMESPACE):
        self._store = store
        self._namespace = namespace
        self._in_flight: dict[str, asyncio.Task] = {}

    @property
    def in_flight(self) -> int:
        """Number of lookups currently outstanding."""
        return len(self._in_flight)

    def is_pending(self, key: str) -> bool:
        return key in self._in_flight

    def cached(self, key: str) -> Optional[Any]:
        """Cached result for key, without triggering a lookup."""
        return self._store.get(self._namespace, key)

    def invalidate(self, key: str) -> bool:
        """Drop the cached result so the next resolve looks it up again."""
        return self._store.delete(self._namespace, key)

    async def resolve(self, key: str, producer: Producer) -> Optional[Any]:
        """
        Resolve key through the cache, an in-flight lookup, or producer.

        Args:
            key: Lookup key
            producer: Zero-argument callable returning an awaitable result

        Returns:
            The value, or None if absent or the lookup failed
        """
        cached = self._store.get(self._namespace, key)
        if cached is not None:
            return cached

        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._run(key, producer))
            self._in_flight[key] = task
        else:
            logger.debug("Joining in-flight lookup for %s", key)

        return await asyncio.shield(task)

    async def _run(self, key: str, producer: Producer) -> Optional[Any]:
        try:
            try:
                value = await producer()
            except LookupFailed as e:
                logger.warning("Lookup failed for %s: %s", key, e)
                return None
            except Exception as e:
                # Producers other than MetadataClient may raise anything
                logger.warning("Lookup failed for %s: %s: %s", key, type(e).__name__, e)
                return None

            if value is not None:
                if not self._store.set(self._namespace, key, value):
                    logger.info("Lookup result for %s not cached (store full)", key)
            return value
        finally:
            self._in_flight.pop(key, None)

    async def aclose(self) -> None:
        """Cancel outstanding lookups and wait for them to finish."""
        tasks = list(self._in_flight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()
