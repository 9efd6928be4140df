"""
In-flight request deduplication.

When a visitor double-taps "send", the same (session, content) pair
arrives twice while the first is still being answered. The first caller
acquires the key and does the work; later callers wait on the owner's
Future instead of reprocessing, and give up after a bounded timeout.

One asyncio.Future per in-flight key. release() resolves it (with the
owner's result, or None on error/cancellation) and removes the key, so
the table only ever holds requests that are actually running.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

logger = logging.getLogger("village_guide.dedup")


class RequestDeduplicator:
    """Tracks in-flight requests by key.

    Usage:
        if dedup.try_acquire(key):
            try:
                result = await work()
            finally:
                dedup.release(key, result)
        else:
            result = await dedup.wait_for(key, timeout=30.0)
    """

    def __init__(self):
        self._in_flight: Dict[str, asyncio.Future] = {}
        self._waits = 0
        self._timeouts = 0

    @staticmethod
    def make_key(session_id: str, content: str) -> str:
        return f"{session_id}:{content}"

    def try_acquire(self, key: str) -> bool:
        """Claim a key. False if another caller already owns it."""
        if key in self._in_flight:
            return False
        self._in_flight[key] = asyncio.get_running_loop().create_future()
        return True

    def release(self, key: str, result: Any = None) -> None:
        """Finish a key and wake every waiter with ``result``."""
        future = self._in_flight.pop(key, None)
        if future is not None and not future.done():
            future.set_result(result)

    def is_in_flight(self, key: str) -> bool:
        return key in self._in_flight

    async def wait_for(self, key: str, timeout: float) -> Optional[Any]:
        """Wait for the owner of ``key`` to finish.

        Returns the owner's result, or None if the key is not in flight,
        the owner finished without a result, or the wait timed out.
        """
        future = self._in_flight.get(key)
        if future is None:
            return None

        self._waits += 1
        try:
            # shield: a timed-out waiter must not cancel the owner's future
            return await asyncio.wait_for(asyncio.shield(future), timeout)
        except asyncio.TimeoutError:
            self._timeouts += 1
            logger.info("Gave up waiting for in-flight request %r", key)
            return None

    def __len__(self) -> int:
        return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "in_flight": len(self._in_flight),
            "waits": self._waits,
            "wait_timeouts": self._timeouts,
        }
