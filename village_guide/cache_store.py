"""
In-process key/value cache with TTLs, tags and a pub/sub channel.

The coordinator and the knowledge store share one CacheStore. Every
method is a coroutine so a networked cache can replace this one without
touching callers; the in-memory implementation never actually suspends.

Semantics:
    - Expiry is lazy: an expired entry is evicted the first time it is
      read (get, mget, keys) after its deadline.
    - Tags allow bulk invalidation. delete_by_tags scans every entry,
      O(n), which is fine at village scale.
    - Missing keys read as None. Nothing here raises for absence.
    - publish() delivers to every subscriber; a subscriber that raises
      is logged and the rest still run.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

logger = logging.getLogger("village_guide.cache_store")

Subscriber = Callable[[Any], Any]


@dataclass
class CacheEntry:
    """A single cached value.

    Attributes:
        key: Cache key.
        value: Stored value, returned verbatim.
        expires_at: Clock time after which the entry is dead (None = never).
        tags: Labels for bulk invalidation.
    """
    key: str
    value: Any
    expires_at: Optional[float] = None
    tags: Set[str] = field(default_factory=set)

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now > self.expires_at


class CacheStore:
    """Async in-memory cache.

    Usage:
        cache = CacheStore()
        await cache.set("spot:red_001", spot, ttl=3600, tags=["spots", "red"])
        spot = await cache.get("spot:red_001")
        await cache.delete_by_tags(["red"])
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._subscribers: Dict[str, List[Subscriber]] = {}
        self._hits = 0
        self._misses = 0
        self._expirations = 0

    # ------------------------------------------------------------------
    # Key/value
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None
        if entry.is_expired(self._clock()):
            del self._entries[key]
            self._expirations += 1
            self._misses += 1
            return None
        self._hits += 1
        return entry.value

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> None:
        """Store a value, replacing any previous entry for the key.

        Args:
            key: Cache key.
            value: Value to store.
            ttl: Lifetime in seconds (None or 0 = no expiry).
            tags: Labels for delete_by_tags.
        """
        expires_at = self._clock() + ttl if ttl else None
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            expires_at=expires_at,
            tags=set(tags or ()),
        )

    async def mget(self, keys: List[str]) -> List[Any]:
        return [await self.get(key) for key in keys]

    async def mset(
        self,
        entries: Iterable[Tuple[str, Any]],
        ttl: Optional[float] = None,
    ) -> None:
        for key, value in entries:
            await self.set(key, value, ttl=ttl)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def delete_by_tags(self, tags: Iterable[str]) -> int:
        """Remove every entry sharing at least one tag. Returns the count."""
        wanted = set(tags)
        doomed = [k for k, e in self._entries.items() if e.tags & wanted]
        for key in doomed:
            del self._entries[key]
        if doomed:
            logger.debug("Invalidated %d entries by tags %s", len(doomed), sorted(wanted))
        return len(doomed)

    async def keys(self, pattern: str = "*") -> List[str]:
        """Live keys matching a glob pattern ("query:*", "hot:*")."""
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            del self._entries[key]
        self._expirations += len(expired)
        return [k for k in self._entries if fnmatch.fnmatchcase(k, pattern)]

    async def clear(self) -> None:
        self._entries.clear()

    # ------------------------------------------------------------------
    # Pub/sub
    # ------------------------------------------------------------------

    async def publish(self, channel: str, message: Any) -> int:
        """Deliver a message to every subscriber of a channel.

        Returns the number of handlers that ran without error.
        """
        delivered = 0
        for handler in list(self._subscribers.get(channel, [])):
            try:
                outcome = handler(message)
                if asyncio.iscoroutine(outcome):
                    await outcome
                delivered += 1
            except Exception as e:
                logger.warning(
                    "Subscriber on channel '%s' failed: %s", channel, e,
                )
        return delivered

    async def subscribe(self, channel: str, handler: Subscriber) -> None:
        self._subscribers.setdefault(channel, []).append(handler)

    async def unsubscribe(self, channel: str, handler: Subscriber) -> None:
        handlers = self._subscribers.get(channel, [])
        if handler in handlers:
            handlers.remove(handler)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        lookups = self._hits + self._misses
        return {
            "size": len(self._entries),
            "hits": self._hits,
            "misses": self._misses,
            "expirations": self._expirations,
            "hit_rate": self._hits / lookups if lookups else 0.0,
            "channels": {c: len(h) for c, h in self._subscribers.items()},
        }
