"""
NoteDigest Backend — Summary Cache
====================================

What:  Maps fingerprints to previously produced summaries.
Why:   The cache is the primary cost control of the pipeline. A repeat
       request for the same note and style is answered without touching the
       quota ledger or Gemini.
How:   An in-memory dict of immutable CacheEntry objects plus a creation-order
       queue used for expiry and capacity eviction.
Who:   SummarizationService reads before the quota check and writes through
       after every successful upstream call.

Eviction Policy:
    - TTL (default 24h) from creation, independent of access. Expired
      entries are treated as misses and swept from the front of the queue.
    - Capacity (default 10 000 entries): once exceeded, the oldest-created
      entries are removed first.
    - No LRU: summaries are cheap to keep and expensive to recompute, so
      staleness is the only reason to drop one early.

Write Semantics (first writer wins):
    put() for a fingerprint that already holds a live entry keeps the
    existing entry. An equal rewrite (same source content hash and style)
    is a no-op; a different one means two different inputs share a
    fingerprint, which raises CacheCollisionError instead of silently
    replacing the summary.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional, Tuple

from app.exceptions import CacheCollisionError
from app.schemas.summary import CacheEntry
from app.services.locks import StripedLock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheStats:
    entries: int
    hits: int
    misses: int

    @property
    def hit_ratio(self) -> Optional[float]:
        lookups = self.hits + self.misses
        if not lookups:
            return None
        return round(self.hits / lookups, 4)


class SummaryCache:
    """
    In-memory TTL cache for summaries with a hard entry limit.

    Thread Safety:
        put() performs get-or-insert under the fingerprint's lock stripe.
        Eviction holds its own lock and takes a stripe only to delete a
        single entry, so it never waits on a put() that waits on it.
        Hit/miss counters are approximate under heavy concurrency.
    """

    def __init__(
        self,
        ttl_seconds: float = 86400,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.time,
        stripes: int = 64,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        # (fingerprint, created_at) in insertion order
        self._order: Deque[Tuple[str, float]] = deque()
        self._locks = StripedLock(stripes)
        self._eviction_lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, fingerprint: str) -> Optional[CacheEntry]:
        """Live entry for `fingerprint`, or None on a miss or expired entry."""
        entry = self._entries.get(fingerprint)
        if entry is None or self._is_expired(entry, self._clock()):
            self._misses += 1
            return None
        self._hits += 1
        return entry

    def put(self, entry: CacheEntry) -> CacheEntry:
        """
        Store `entry` unless a live entry already holds its fingerprint.

        Returns:
            The entry now stored for the fingerprint: `entry` itself, or the
            earlier equal entry when another writer got there first.

        Raises:
            CacheCollisionError: A live entry with a different source content
                hash or style exists for the same fingerprint.
        """
        fingerprint = entry.fingerprint
        with self._locks.for_key(fingerprint):
            existing = self._entries.get(fingerprint)
            if existing is not None and not self._is_expired(existing, self._clock()):
                if (
                    existing.source_content_hash != entry.source_content_hash
                    or existing.style != entry.style
                ):
                    logger.error(
                        "Fingerprint collision for %s: cached content %s/%s, new content %s/%s",
                        fingerprint,
                        existing.source_content_hash,
                        existing.style.value,
                        entry.source_content_hash,
                        entry.style.value,
                    )
                    raise CacheCollisionError(
                        fingerprint,
                        context={
                            "cached_content_hash": existing.source_content_hash,
                            "new_content_hash": entry.source_content_hash,
                        },
                    )
                return existing
            self._entries[fingerprint] = entry

        with self._eviction_lock:
            self._order.append((fingerprint, entry.created_at))
        self._evict()
        return entry

    def stats(self) -> CacheStats:
        return CacheStats(entries=len(self._entries), hits=self._hits, misses=self._misses)

    def __len__(self) -> int:
        return len(self._entries)

    def _evict(self) -> int:
        """
        Pop expired, superseded and over-capacity entries off the queue front.

        The queue is in creation order, so expired entries and the oldest
        entries are always at the front.
        """
        evicted = 0
        now = self._clock()
        with self._eviction_lock:
            while self._order:
                fingerprint, created_at = self._order[0]
                current = self._entries.get(fingerprint)
                superseded = current is None or current.created_at != created_at
                expired = now - created_at >= self.ttl_seconds
                overflow = len(self._entries) > self.max_entries
                if not (superseded or expired or overflow):
                    break

                self._order.popleft()
                if superseded:
                    continue
                with self._locks.for_key(fingerprint):
                    current = self._entries.get(fingerprint)
                    if current is not None and current.created_at == created_at:
                        del self._entries[fingerprint]
                        evicted += 1

        if evicted:
            logger.debug("Evicted %d cached summaries (%d remain)", evicted, len(self._entries))
        return evicted

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at >= self.ttl_seconds
