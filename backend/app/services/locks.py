"""
NoteDigest Backend — Striped Per-Key Locks
============================================

What:  A fixed pool of threading locks, selected by hashing a key.
Why:   The quota ledger and the summary cache need per-key atomicity
       (compare-and-increment per user, get-or-insert per fingerprint)
       without one global lock serializing unrelated users.
How:   `locks.for_key("user-42")` always returns the same lock for the same
       key; different keys usually land on different stripes.

Usage rule:
    Critical sections are synchronous and short. Never `await` while holding
    a stripe: the lock is a threading.Lock and would block the event loop.
"""

import threading
import zlib
from typing import List


class StripedLock:
    """Maps keys onto `stripes` independent locks."""

    def __init__(self, stripes: int = 64):
        if stripes < 1:
            raise ValueError("stripes must be >= 1")
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(stripes)]

    def for_key(self, key: str) -> threading.Lock:
        # crc32 rather than hash(): stable across processes and PYTHONHASHSEED
        index = zlib.crc32(key.encode("utf-8")) % len(self._locks)
        return self._locks[index]

    def __len__(self) -> int:
        return len(self._locks)
