"""Fingerprint-keyed cache used to skip redundant external calls."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    value: Any
    expires_at: float


class ContentCache:
    """In-process TTL cache with a per-key lock for single-flight loading."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._key_locks: Dict[str, asyncio.Lock] = {}
        self._lock = threading.Lock()
        self.stats = {"hits": 0, "misses": 0, "puts": 0}

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.stats["misses"] += 1
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                self.stats["misses"] += 1
                return None
            self.stats["hits"] += 1
            return entry.value

    def put(self, key: str, value: Any, ttl: float) -> None:
        with self._lock:
            self._entries[key] = _Entry(value=value, expires_at=self._clock() + ttl)
            self.stats["puts"] += 1

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def key_lock(self, key: str) -> asyncio.Lock:
        """Lock held while loading key, so identical concurrent inputs call out once."""
        with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._key_locks[key] = lock
            return lock

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.expires_at <= now]
            for key in expired:
                del self._entries[key]
                lock = self._key_locks.get(key)
                if lock is not None and not lock.locked():
                    del self._key_locks[key]
        if expired:
            logger.debug(f"Purged {len(expired)} expired cache entries")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def snapshot(self) -> Dict[str, Any]:
        return {"entries": len(self), **self.stats}
