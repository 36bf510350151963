"""
HTTP client for the identity/metadata service.

Resolves a key (an author identity) to its profile metadata. Only
called through FetchCoalescer, which caches successes and turns
LookupFailed into an absent result.

Timeouts are this client's policy, not the coalescer's.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional
from urllib.parse import quote, urlparse

import httpx

from .errors import LookupFailed

logger = logging.getLogger(__name__)

# Retry config for transient failures
DEFAULT_RETRIES = 2
RETRY_BACKOFF_BASE = 0.5  # seconds

DEFAULT_TIMEOUT = 10.0


class MetadataClient:
    """Async HTTP client for metadata lookups."""

    def __init__(
        self,
        api_url: str,
        api_key: Optional[str] = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        retries: int = DEFAULT_RETRIES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._api_url = api_url.rstrip("/")
        self._retries = max(0, retries)

        # Refuse non-HTTPS for remote APIs (bearer token would be sent in cleartext)
        if not self._api_url.startswith("https://"):
            host = urlparse(self._api_url).hostname or ""
            if host not in ("localhost", "127.0.0.1", "::1"):
                raise ValueError(
                    f"Metadata API URL must use HTTPS (got {self._api_url}). "
                    "Use HTTPS to protect API credentials, or use localhost for local development."
                )

        headers: dict[str, str] = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self._client = httpx.AsyncClient(
            base_url=self._api_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def fetch_metadata(self, key: str) -> Optional[dict[str, Any]]:
        """GET /v1/metadata/{key} -> metadata dict, or None if unknown.

        Retries transient errors (5xx, 429, timeouts, connection errors)
        with exponential backoff.

        Raises:
            LookupFailed: If the service rejects the request or stays
                unavailable after all retries
        """
        path = f"/v1/metadata/{quote(key, safe='')}"
        last_error: Exception | None = None

        for attempt in range(self._retries + 1):
            try:
                resp = await self._client.get(path)
                if resp.status_code == 404:
                    return None
                resp.raise_for_status()
                data = resp.json()
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if status < 500 and status != 429:
                    raise LookupFailed(
                        f"Metadata lookup rejected for {key}: {status}"
                    ) from e
                last_error = e
            except (httpx.TimeoutException, httpx.TransportError) as e:
                last_error = e
            except ValueError as e:
                raise LookupFailed(f"Metadata for {key} is not JSON: {e}") from e
            else:
                if not isinstance(data, dict):
                    raise LookupFailed(f"Metadata for {key} is not an object")
                metadata = data.get("metadata", data)
                return metadata if isinstance(metadata, dict) else None

            if attempt < self._retries:
                delay = RETRY_BACKOFF_BASE * (2 ** attempt)
                logger.info(
                    "Metadata lookup attempt %d for %s failed, retrying in %.1fs: %s",
                    attempt + 1, key, delay, last_error,
                )
                await asyncio.sleep(delay)

        raise LookupFailed(
            f"Metadata lookup for {key} failed after {self._retries + 1} attempts: {last_error}"
        ) from last_error

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()
