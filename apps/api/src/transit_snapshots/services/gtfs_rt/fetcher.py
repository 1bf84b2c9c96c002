"""Downloads provider feeds for the ingest worker.

Transient failures (network errors, 5xx, 408 and 429) are retried with
exponential backoff. Other client errors mean the feed URL or credentials are
wrong and fail the feed for this poll cycle immediately.
"""

from __future__ import annotations

import asyncio
import hashlib

import httpx

from transit_snapshots.errors import FeedFetchError
from transit_snapshots.logging import get_logger

__all__ = ["FeedFetchError", "GtfsRtFetcher"]

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SEC = 30
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_BASE = 2.0

RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})


def _is_retryable(exc: Exception) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status >= 500 or status in RETRYABLE_CLIENT_STATUSES
    return True


class GtfsRtFetcher:
    """Fetches raw GTFS-RT protobuf bytes and their sha256 digest."""

    def __init__(
        self,
        timeout_sec: int = DEFAULT_TIMEOUT_SEC,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        max_bytes: int | None = None,
    ) -> None:
        self.timeout_sec = timeout_sec
        self.max_retries = max(1, max_retries)
        self.backoff_base = backoff_base
        self.max_bytes = max_bytes

    async def _download(self, url: str, headers: dict[str, str] | None) -> bytes:
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout_sec),
            follow_redirects=True,
            headers=headers or {},
        ) as client:
            response = await client.get(url)
            response.raise_for_status()
            data = response.content

        if not data:
            raise FeedFetchError("Empty response body")
        if self.max_bytes is not None and len(data) > self.max_bytes:
            raise FeedFetchError(f"Feed body of {len(data)} bytes exceeds {self.max_bytes}")
        return data

    async def fetch(
        self,
        url: str,
        provider_id: str,
        feed_type: str,
        poll_id: str,
        headers: dict[str, str] | None = None,
    ) -> tuple[bytes, str]:
        """Download one feed.

        Args:
            url: Feed URL.
            provider_id: Provider the feed belongs to.
            feed_type: Feed label such as "trip_updates".
            poll_id: Correlation ID for this poll cycle.
            headers: Extra request headers, e.g. an API key.

        Returns:
            Tuple of (protobuf_bytes, sha256_hex_digest).

        Raises:
            FeedFetchError: On a non-retryable response or once retries run out.
        """
        log = logger.bind(provider_id=provider_id, feed_type=feed_type, poll_id=poll_id)

        attempt = 0
        while True:
            attempt += 1
            try:
                data = await self._download(url, headers)
            except (httpx.HTTPStatusError, httpx.RequestError, FeedFetchError) as exc:
                status = (
                    exc.response.status_code if isinstance(exc, httpx.HTTPStatusError) else None
                )
                if not _is_retryable(exc):
                    log.error("Feed rejected by provider", status_code=status, error=str(exc))
                    raise FeedFetchError(
                        f"Provider rejected {provider_id}/{feed_type} with HTTP {status}",
                        status_code=status,
                    ) from exc
                if attempt >= self.max_retries:
                    log.error("Feed fetch exhausted retries", attempts=attempt, error=str(exc))
                    raise FeedFetchError(
                        f"Failed to fetch {provider_id}/{feed_type} after {attempt} attempts",
                        status_code=status,
                    ) from exc
                delay = self.backoff_base**attempt
                log.warning(
                    "Feed fetch failed, retrying",
                    attempt=attempt,
                    delay_sec=delay,
                    error=str(exc),
                )
                await asyncio.sleep(delay)
                continue

            feed_hash = hashlib.sha256(data).hexdigest()
            log.info(
                "Feed downloaded",
                attempt=attempt,
                size_bytes=len(data),
                feed_hash=feed_hash[:12],
            )
            return data, feed_hash
