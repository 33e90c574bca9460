"""
Cache Manager

Keeps the member-message corpus warm in memory.

- Snapshots are immutable and replaced by reference on refresh
- Refreshes are single-flight: concurrent callers share one fetch
- A failed refresh never replaces the last good snapshot
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from ..common.message_source import SourceUnavailable
from ..common.schemas import CorpusSnapshot, Message
from .corpus_index import build_snapshot

logger = logging.getLogger("memberqa.retriever.cache")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CacheManager:
    """
    Holds the current CorpusSnapshot with TTL expiry.

    Constructed once by the process bootstrap and injected where needed;
    tests build fresh instances.

    Usage:
        cache = CacheManager(HttpMessageSource(config.source), ttl_seconds=3600)
        snapshot = await cache.get_snapshot()
    """

    def __init__(
        self,
        source: Any,
        ttl_seconds: float = 3600.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize cache manager.

        Args:
            source: Message source exposing ``async fetch_all() -> List[Message]``
            ttl_seconds: Snapshot lifetime before a transparent refresh
            clock: Returns the current aware datetime (injectable for tests)
        """
        self._source = source
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock or _utcnow
        self._snapshot: Optional[CorpusSnapshot] = None
        self._inflight: Optional["asyncio.Future[CorpusSnapshot]"] = None

    @property
    def snapshot(self) -> Optional[CorpusSnapshot]:
        """Current snapshot without triggering a refresh"""
        return self._snapshot

    def _is_expired(self, snapshot: Optional[CorpusSnapshot]) -> bool:
        if snapshot is None:
            return True
        return self._clock() - snapshot.fetched_at > self._ttl

    def next_refresh_time(self) -> Optional[datetime]:
        if self._snapshot is None:
            return None
        return self._snapshot.fetched_at + self._ttl

    async def get_snapshot(self) -> CorpusSnapshot:
        """
        Return the current snapshot, refreshing first if missing or stale.

        Raises:
            SourceUnavailable: if the fetch fails and no snapshot exists
        """
        snapshot = self._snapshot
        if not self._is_expired(snapshot):
            return snapshot

        try:
            return await self.refresh()
        except SourceUnavailable as e:
            stale = self._snapshot
            if stale is None:
                raise
            logger.warning(
                "StaleServedOnRefreshFailure: serving snapshot from %s (%d messages): %s",
                stale.fetched_at.isoformat(),
                stale.stats.total_messages,
                e,
            )
            return stale

    async def refresh(self) -> CorpusSnapshot:
        """
        Force a refresh.

        If a refresh is already in flight, await that one instead of
        issuing another fetch. All concurrent callers receive the same
        snapshot, or the same error.
        """
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self._perform_refresh())
            self._inflight.add_done_callback(self._clear_inflight)
        # Shield so one cancelled caller does not abort the shared refresh
        return await asyncio.shield(self._inflight)

    def _clear_inflight(self, task: "asyncio.Future[CorpusSnapshot]") -> None:
        if not task.cancelled():
            # Marks the exception retrieved even if every caller went away
            task.exception()
        if self._inflight is task:
            self._inflight = None

    async def _perform_refresh(self) -> CorpusSnapshot:
        """Fetch, index and atomically publish a new snapshot"""
        logger.info("Refreshing corpus cache...")
        started = time.monotonic()

        try:
            messages: List[Message] = list(await self._source.fetch_all())
        except SourceUnavailable as e:
            logger.error("Cache refresh failed: %s", e)
            raise
        except Exception as e:
            logger.error("Cache refresh failed: %s", e, exc_info=True)
            raise SourceUnavailable(f"Failed to fetch messages: {e}") from e

        snapshot = build_snapshot(messages, fetched_at=self._clock())
        self._snapshot = snapshot

        duration_ms = (time.monotonic() - started) * 1000
        logger.info(
            "Cache refreshed in %.0fms (%d messages, %d users)",
            duration_ms,
            snapshot.stats.total_messages,
            snapshot.stats.unique_users,
        )
        logger.info("Next refresh: %s", self.next_refresh_time().isoformat())
        return snapshot

    def status(self) -> Dict[str, Any]:
        """Describe the cache without side effects"""
        snapshot = self._snapshot
        next_refresh = self.next_refresh_time()
        return {
            "loaded": snapshot is not None,
            "message_count": len(snapshot.messages) if snapshot else 0,
            "last_refreshed": snapshot.fetched_at.isoformat() if snapshot else None,
            "next_refresh": next_refresh.isoformat() if next_refresh else None,
            "is_expired": self._is_expired(snapshot),
            "is_refreshing": self._inflight is not None and not self._inflight.done(),
        }

    def clear(self) -> None:
        """Discard the snapshot (mainly for testing)"""
        self._snapshot = None
        logger.info("Cache cleared")
