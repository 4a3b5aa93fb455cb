"""
NoteDigest Backend — Quota Ledger
===================================

What:  Per-user admission control for AI summarization calls.
Why:   Every cache miss costs a Gemini call. The ledger bounds that cost per
       user: by default 20 calls per 60-minute window.
How:   One UsageRecord per user. try_admit() rolls an expired window over and
       checks-and-increments the count in a single critical section guarded
       by that user's lock stripe.
Who:   Called by SummarizationService on cache misses only; cache hits never
       reach the ledger. Read by GET /api/usage.

Algorithm: Fixed Window With Reset
    window_start is set by the first admission after the previous window
    expired; the window lasts window_seconds from there. A user can burst
    up to 2x the limit across a window boundary, which is acceptable here.

    Why not a sliding log (like a per-timestamp list):
    - Fixed window stores one integer per user instead of one float per call
    - Exactness at the boundary does not matter for cost control

Accounting Policy:
    An admission is consumed by every upstream call attempt, including calls
    that later fail. A flapping upstream therefore cannot burn unlimited
    Gemini requests on behalf of one user. There is no refund.

Production Upgrade Path:
    Single-process only. For multiple workers, move the record into Redis
    (INCR + EXPIRE on a per-window key) behind the same try_admit() contract.
"""

import itertools
import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from app.services.locks import StripedLock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Admission:
    """
    Outcome of try_admit().

    admitted:     True when the caller may call upstream
    remaining:    Calls left in the window after this admission
    retry_after:  Seconds until the window resets (only meaningful on denial)
    """

    admitted: bool
    remaining: int
    retry_after: int = 0


@dataclass
class UsageRecord:
    """Upstream calls of one user in the active window. Owned by the ledger."""

    user_id: str
    window_start: float
    count: int = 0


@dataclass(frozen=True)
class UsageSnapshot:
    """Read-only view of a user's quota, as served by GET /api/usage."""

    user_id: str
    window_start: Optional[datetime]
    resets_at: Optional[datetime]
    count: int
    limit: int
    remaining: int


class QuotaLedger:
    """
    In-memory fixed-window quota ledger.

    Thread Safety:
        Each user maps onto a stripe of a StripedLock. The rollover, the
        limit check and the increment happen under that stripe, so two
        concurrent callers can never both take the last slot, and a window
        reset can never be lost. Unrelated users rarely share a stripe and
        never share a record.
    """

    # Expired records are swept every N admissions
    PURGE_EVERY = 1000

    def __init__(
        self,
        max_calls: int = 20,
        window_seconds: float = 3600,
        clock: Callable[[], float] = time.time,
        stripes: int = 64,
    ):
        if max_calls < 1:
            raise ValueError("max_calls must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self._clock = clock
        self._records: Dict[str, UsageRecord] = {}
        self._locks = StripedLock(stripes)
        self._admissions = itertools.count(1)

    def try_admit(self, user_id: str) -> Admission:
        """
        Consume one upstream call for `user_id` if the window allows it.

        Returns:
            Admission(admitted=True, remaining=n) on success, or
            Admission(admitted=False, remaining=0, retry_after=s) when the
            window is exhausted. Denials do not change the record.
        """
        with self._locks.for_key(user_id):
            now = self._clock()
            record = self._records.get(user_id)
            if record is None or self._is_expired(record, now):
                # Rollover: new window starts with this admission
                record = UsageRecord(user_id=user_id, window_start=now)
                self._records[user_id] = record

            if record.count >= self.max_calls:
                retry_after = max(
                    1, math.ceil(record.window_start + self.window_seconds - now)
                )
                logger.warning(
                    "Quota exhausted for user %s: %d/%d calls, resets in %ds",
                    user_id,
                    record.count,
                    self.max_calls,
                    retry_after,
                )
                return Admission(admitted=False, remaining=0, retry_after=retry_after)

            record.count += 1
            remaining = self.max_calls - record.count

        if next(self._admissions) % self.PURGE_EVERY == 0:
            self.purge_expired()

        return Admission(admitted=True, remaining=remaining)

    def usage(self, user_id: str) -> UsageSnapshot:
        """Current quota state of a user. Read-only: never opens a window."""
        with self._locks.for_key(user_id):
            now = self._clock()
            record = self._records.get(user_id)
            if record is None or self._is_expired(record, now):
                return UsageSnapshot(
                    user_id=user_id,
                    window_start=None,
                    resets_at=None,
                    count=0,
                    limit=self.max_calls,
                    remaining=self.max_calls,
                )
            return UsageSnapshot(
                user_id=user_id,
                window_start=_to_datetime(record.window_start),
                resets_at=_to_datetime(record.window_start + self.window_seconds),
                count=record.count,
                limit=self.max_calls,
                remaining=max(0, self.max_calls - record.count),
            )

    def purge_expired(self) -> int:
        """
        Drop records whose window has expired.

        What:    Prevents the ledger from growing with every user ever seen.
        When:    Every PURGE_EVERY admissions, or on demand.
        Returns: Number of records removed.
        """
        removed = 0
        for user_id in list(self._records):
            with self._locks.for_key(user_id):
                record = self._records.get(user_id)
                if record is not None and self._is_expired(record, self._clock()):
                    del self._records[user_id]
                    removed += 1
        if removed:
            logger.debug("Purged %d expired quota records", removed)
        return removed

    def __len__(self) -> int:
        return len(self._records)

    def _is_expired(self, record: UsageRecord, now: float) -> bool:
        return now >= record.window_start + self.window_seconds


def _to_datetime(epoch_seconds: float) -> datetime:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)
