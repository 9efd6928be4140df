"""
Knowledge store: what the village guide knows without asking an LLM.

The coordinator only depends on the KnowledgeStore protocol
(``get_spots_by_category`` and ``search_knowledge``). StaticKnowledgeStore
is the built-in implementation over the village's spots and historical
figures. Lookups are cached in the shared CacheStore:

    spots:category:<category>   ttl 3600s, tags ["spots", <category>]
    search:<query>              ttl 1800s, tags ["search"]

so an admin update can invalidate them by tag.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple

from village_guide.cache_store import CacheStore

logger = logging.getLogger("village_guide.knowledge")

CATEGORY_TTL = 3600.0
SEARCH_TTL = 1800.0
ALL_CATEGORIES = "scenic"


@dataclass
class Spot:
    """A point of interest in the village."""
    id: str
    name: str
    category: str               # "red", "nature", "culture"
    description: str
    coord: str = ""
    detail: str = ""
    tags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "category": self.category,
            "description": self.description,
            "coord": self.coord,
            "detail": self.detail,
            "tags": list(self.tags),
            "kind": "spot",
        }


@dataclass
class Figure:
    """A historical figure connected to the village."""
    id: str
    name: str
    description: str
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "detail": self.detail,
            "kind": "figure",
        }


class KnowledgeStore(Protocol):
    async def get_spots_by_category(self, category: str) -> List[Dict[str, Any]]:
        ...

    async def search_knowledge(self, query: str) -> List[Dict[str, Any]]:
        ...


# ---------------------------------------------------------------------------
# Built-in village data
# ---------------------------------------------------------------------------

DEFAULT_SPOTS: Tuple[Spot, ...] = (
    Spot(
        id="red_001",
        name="永春辛亥革命纪念馆",
        category="red",
        description="缅怀先烈，传承红色基因",
        coord="118.205240,25.234112",
        detail=(
            "永春辛亥革命纪念馆依托东里村郑氏宗祠修建而成。辛亥革命时期，"
            "大批旅居海外的永春籍华侨出资出力，投身革命队伍。"
        ),
        tags=["爱国教育", "郑氏宗祠", "辛亥风云"],
    ),
    Spot(
        id="red_002",
        name="旌义状石碑",
        category="red",
        description="孙中山亲颁，见证华侨爱国情",
        coord="118.204236,25.235664",
        detail="1912年，孙中山先生为表彰郑玉指对革命的巨大贡献，特颁发“旌义状”。",
        tags=["国家一级文物", "孙中山", "华侨之光"],
    ),
    Spot(
        id="nature_001",
        name="油桐花海",
        category="nature",
        description="五月飞雪，浪漫桐花",
        coord="118.203624,25.237795",
        detail="每年暮春初夏，东里水库旁的千亩油桐花竞相绽放。",
        tags=["打卡圣地", "摄影天堂", "季节限定"],
    ),
    Spot(
        id="culture_001",
        name="传统婚庆体验馆",
        category="culture",
        description="十里红妆，梦回千年",
        coord="118.205500,25.234800",
        detail="依托古厝改造的婚庆体验馆，还原了闽南传统的婚嫁场景。",
        tags=["非遗体验", "古厝新生", "婚纱摄影"],
    ),
)

DEFAULT_FIGURES: Tuple[Figure, ...] = (
    Figure(
        id="p_zheng_yuzhi",
        name="郑玉指",
        description="获孙中山亲颁“旌义状”。",
        detail=(
            "郑玉指（1851—1929年），早年出洋到马来亚经商，1906年加入同盟会，"
            "毁家纾难支持革命。1912年，孙中山亲颁“旌义状”表彰。"
        ),
    ),
    Figure(
        id="p_song",
        name="宋渊源",
        description="辛亥革命猛将，追随孙中山。",
        detail="宋渊源（1881—1961），早年加入中国同盟会，在光复福建的战役中立下战功。",
    ),
    Figure(
        id="p_li_tiemin",
        name="李铁民",
        description="被誉为“华侨革命第一笔”。",
        detail="李铁民（1898—1956），著名侨领，创办报刊宣传革命思想。",
    ),
    Figure(
        id="p_zheng_chengkuai",
        name="郑成快",
        description="辛亥革命功臣，荣获二等奖章。",
        detail="郑成快，福建永春东里人，在光复福州等战役中表现英勇。",
    ),
)


class StaticKnowledgeStore:
    """In-memory knowledge store backed by the shared cache.

    Usage:
        store = StaticKnowledgeStore(cache)
        red_spots = await store.get_spots_by_category("red")
        hits = await store.search_knowledge("郑玉指是谁")
    """

    def __init__(
        self,
        cache: CacheStore,
        spots: Optional[Tuple[Spot, ...]] = None,
        figures: Optional[Tuple[Figure, ...]] = None,
    ):
        self.cache = cache
        self.spots = list(spots if spots is not None else DEFAULT_SPOTS)
        self.figures = list(figures if figures is not None else DEFAULT_FIGURES)
        self._lookups = 0

    async def get_spots_by_category(self, category: str) -> List[Dict[str, Any]]:
        """Spots in a category ("scenic" lists every spot)."""
        key = f"spots:category:{category}"
        cached = await self.cache.get(key)
        if cached is not None:
            return cached

        self._lookups += 1
        spots = [
            s.to_dict() for s in self.spots
            if category == ALL_CATEGORIES or s.category == category
        ]
        await self.cache.set(key, spots, ttl=CATEGORY_TTL, tags=["spots", category])
        return spots

    async def search_knowledge(self, query: str) -> List[Dict[str, Any]]:
        """Spots and figures whose name, tags or description the query mentions.

        Name matches rank before tag/description matches; within each
        group, figures rank before spots.
        """
        key = f"search:{query}"
        cached = await self.cache.get(key)
        if cached is not None:
            return cached

        self._lookups += 1
        scored: List[Tuple[int, Dict[str, Any]]] = []
        for figure in self.figures:
            if figure.name in query:
                scored.append((0, figure.to_dict()))
            elif _mentions(query, figure.description + figure.detail):
                scored.append((2, figure.to_dict()))
        for spot in self.spots:
            if spot.name in query:
                scored.append((1, spot.to_dict()))
            elif any(t in query for t in spot.tags) or _mentions(query, spot.detail):
                scored.append((3, spot.to_dict()))

        results = [item for _, item in sorted(scored, key=lambda pair: pair[0])]
        await self.cache.set(key, results, ttl=SEARCH_TTL, tags=["search"])
        logger.debug("Knowledge search %r: %d results", query, len(results))
        return results

    def get_stats(self) -> Dict[str, Any]:
        return {
            "spots": len(self.spots),
            "figures": len(self.figures),
            "uncached_lookups": self._lookups,
        }


def _mentions(query: str, text: str, min_len: int = 3) -> bool:
    """True if the query contains any ``min_len``-character run of ``text``."""
    for i in range(len(text) - min_len + 1):
        if text[i:i + min_len] in query:
            return True
    return False
