"""
Cache invalidation when the knowledge base changes.

An admin edit (create/update/delete of knowledge items) makes cached
answers stale. CacheNotificationService drops what could be affected,
optionally preloads the new content, tells every registered frontend
callback, and publishes the event on the ``cache:updated`` channel.

    CREATE / UPDATE    drop knowledge:<id>, similarity records, hot and exact
                       answers and search results; preload new Q&A content
                       (ttl: config.ttl.knowledge_ttl)
    DELETE             same drops, no preload
    BATCH_UPDATE       clear every coordinator cache; preload the batch
    BATCH_DELETE       clear every coordinator cache

Invalidation errors are logged, never raised: a failed cleanup must not
take the admin request down with it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

if TYPE_CHECKING:
    from village_guide.coordinator import CoordinationManager

logger = logging.getLogger("village_guide.notifications")

UPDATE_CHANNEL = "cache:updated"

FrontendCallback = Callable[["CacheUpdateNotification"], Any]


class CacheUpdateType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    BATCH_UPDATE = "batch_update"
    BATCH_DELETE = "batch_delete"


@dataclass
class CacheUpdateNotification:
    """A change to the knowledge base.

    Attributes:
        type: What happened.
        knowledge_ids: Affected knowledge item ids.
        content: New item (CREATE/UPDATE) or list of items (BATCH_UPDATE).
            Items with "question" and "answer" are preloaded.
        source: "admin", "system" or "api".
        timestamp: When the change happened.
    """
    type: CacheUpdateType
    knowledge_ids: List[str] = field(default_factory=list)
    content: Any = None
    source: str = "admin"
    timestamp: float = field(default_factory=time.time)

    def summary(self) -> str:
        count = len(self.knowledge_ids)
        return {
            CacheUpdateType.CREATE: f"新增 {count} 个知识项",
            CacheUpdateType.UPDATE: f"更新 {count} 个知识项",
            CacheUpdateType.DELETE: f"删除 {count} 个知识项",
            CacheUpdateType.BATCH_UPDATE: f"批量更新 {count} 个知识项",
            CacheUpdateType.BATCH_DELETE: f"批量删除 {count} 个知识项",
        }[self.type]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "knowledge_ids": list(self.knowledge_ids),
            "source": self.source,
            "timestamp": self.timestamp,
            "summary": self.summary(),
        }


class CacheNotificationService:
    """Applies knowledge-base changes to the coordinator's caches.

    Usage:
        service = CacheNotificationService(coordinator)
        unregister = service.register_frontend_callback(on_update)
        await service.notify_cache_update(CacheUpdateNotification(
            type=CacheUpdateType.UPDATE, knowledge_ids=["k1"],
        ))
    """

    def __init__(
        self,
        coordinator: CoordinationManager,
        preload_ttl: Optional[float] = None,
        max_log: int = 100,
    ):
        self.coordinator = coordinator
        self.preload_ttl = (
            preload_ttl if preload_ttl is not None
            else coordinator.config.ttl.knowledge_ttl
        )
        self.max_log = max_log
        self._callbacks: List[FrontendCallback] = []
        self._log: List[Dict[str, Any]] = []

    def register_frontend_callback(self, callback: FrontendCallback) -> Callable[[], None]:
        """Register a callback. Returns a function that unregisters it."""
        self._callbacks.append(callback)

        def unregister() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unregister

    async def notify_cache_update(self, notification: CacheUpdateNotification) -> None:
        logger.info(
            "Cache update from %s: %s", notification.source, notification.summary(),
        )
        try:
            await self._update_related_caches(notification)
        except Exception as e:
            logger.error("Cache invalidation for %s failed: %s", notification.type.value, e)

        await self._notify_frontend(notification)
        await self.coordinator.cache.publish(UPDATE_CHANNEL, notification.to_dict())
        self._log.append(notification.to_dict())
        if len(self._log) > self.max_log:
            self._log = self._log[-self.max_log:]

    async def _update_related_caches(self, notification: CacheUpdateNotification) -> None:
        kind = notification.type
        if kind in (CacheUpdateType.CREATE, CacheUpdateType.UPDATE):
            await self._clear_related(notification.knowledge_ids)
            if isinstance(notification.content, dict):
                await self._preload([notification.content])
        elif kind == CacheUpdateType.DELETE:
            await self._clear_related(notification.knowledge_ids)
        elif kind == CacheUpdateType.BATCH_UPDATE:
            await self.coordinator.clear_cache()
            if isinstance(notification.content, list):
                await self._preload(notification.content)
        elif kind == CacheUpdateType.BATCH_DELETE:
            await self.coordinator.clear_cache()

    async def _clear_related(self, knowledge_ids: List[str]) -> None:
        cache = self.coordinator.cache
        for knowledge_id in knowledge_ids:
            await cache.delete(f"knowledge:{knowledge_id}")
        for key in await cache.keys("hot:*"):
            await cache.delete(key)
        await cache.delete_by_tags(["search", "query"])
        self.coordinator.similarity.clear()
        logger.debug("Cleared caches related to %d knowledge items", len(knowledge_ids))

    async def _preload(self, items: List[Any]) -> int:
        loaded = 0
        for item in items:
            if not isinstance(item, dict):
                continue
            if not (item.get("question") and item.get("answer")):
                continue
            await self.coordinator.cache.set(
                f"knowledge:{item.get('id', '')}",
                {**item, "preloaded": True, "preload_time": time.time()},
                ttl=self.preload_ttl,
            )
            loaded += 1
        if loaded:
            logger.info("Preloaded %d knowledge items", loaded)
        return loaded

    async def _notify_frontend(self, notification: CacheUpdateNotification) -> None:
        for callback in list(self._callbacks):
            try:
                outcome = callback(notification)
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception as e:
                logger.warning("Frontend callback failed: %s", e)

    def recent_updates(self, limit: int = 20) -> List[Dict[str, Any]]:
        return self._log[-limit:]
