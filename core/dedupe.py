"""
Dedupe Store - TTL-keyed idempotency cache

Gates event-driven capability runs so the same trigger is processed at
most once per handler inside the TTL window.

Design:
- One instance per process, injected into the dispatcher (no module global)
- acquire_once = check + mark with no await in between (atomic under asyncio)
- Lazy cleanup, only once size exceeds half the cap: drop expired entries,
  then evict oldest-inserted until at or under the cap
- Insertion order is first_seen order, so eviction pops from the front
- Process-local only; multi-instance deployments need an external claim store
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from core.constitution import HARD_LIMITS

logger = logging.getLogger("agentsafe.dedupe")


@dataclass
class DedupeEntry:
    key: str
    first_seen: float
    expires_at: float


def dedupe_key(event_id: str, handler_id: str, extra: Optional[str] = None) -> str:
    """`event_id:handler_id[:extra]`"""
    key = f"{event_id}:{handler_id}"
    return f"{key}:{extra}" if extra else key


class DedupeStore:

    def __init__(
        self,
        default_ttl: float = HARD_LIMITS.DEDUPE_DEFAULT_TTL_SECONDS,
        max_entries: int = HARD_LIMITS.DEDUPE_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, DedupeEntry] = {}
        self._evictions = 0

    def is_duplicate(self, key: str, ttl: Optional[float] = None) -> bool:
        """True if key was processed and has not expired. Expired keys are dropped.

        `ttl` is unused: expiry is fixed when the key is marked. It is accepted
        so callers can pass the same arguments to all three operations.
        """
        entry = self._entries.get(key)
        if entry is None:
            return False
        if self._clock() > entry.expires_at:
            del self._entries[key]
            return False
        return True

    def mark_processed(self, key: str, ttl: Optional[float] = None) -> None:
        now = self._clock()
        ttl = self.default_ttl if ttl is None else ttl
        # Re-marking moves the key to the back so insertion order stays first_seen order
        self._entries.pop(key, None)
        self._entries[key] = DedupeEntry(key=key, first_seen=now, expires_at=now + ttl)
        self._maybe_cleanup()

    def acquire_once(self, key: str, ttl: Optional[float] = None) -> bool:
        """Claim key. True only for the first caller inside the TTL window."""
        if self.is_duplicate(key, ttl):
            return False
        self.mark_processed(key, ttl)
        return True

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self) -> dict:
        return {
            "size": len(self._entries),
            "max_entries": self.max_entries,
            "default_ttl_s": self.default_ttl,
            "evictions": self._evictions,
        }

    def _maybe_cleanup(self) -> None:
        if len(self._entries) <= self.max_entries / 2:
            return

        now = self._clock()
        expired = [k for k, e in self._entries.items() if now > e.expires_at]
        for k in expired:
            del self._entries[k]

        overflow = len(self._entries) - self.max_entries
        if overflow > 0:
            for k in list(self._entries)[:overflow]:
                del self._entries[k]
            self._evictions += overflow
            logger.warning(f"Dedupe store over cap: evicted {overflow} oldest entries")
