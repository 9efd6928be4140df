"""
Near-duplicate question matching.

Visitors ask the same thing in slightly different words ("郑玉指是谁" vs
"郑玉指是谁？"). Before doing any real work, the coordinator asks the
SimilarityMatcher whether a recently answered question is close enough
to reuse its answer.

Score (0.0-1.0):
    0.4 * edit similarity     1 - levenshtein(q1, q2) / max(len(q1), len(q2))
    0.6 * keyword jaccard     |k1 & k2| / |k1 | k2|

Keywords are whitespace-separated tokens after punctuation is blanked
out, with single-character tokens and common Chinese stop words removed.
Identical normalized strings score 1.0 without further work.

Match selection is best-above-threshold: every cached question is
scored and the highest score at or above the threshold wins. Ties go to
the question cached first, so the answer is deterministic for a given
cache state.

Records carry a scope (the spot the question was asked at). A lookup
only considers records from its own scope, so an answer built around
one spot is never reused at another.

The record set is bounded. When an insert pushes it past capacity, the
records are sorted by timestamp and the oldest half is dropped in one
batch.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Set, Tuple

import numpy as np

logger = logging.getLogger("village_guide.similarity")

EDIT_WEIGHT = 0.4
KEYWORD_WEIGHT = 0.6

# Scores are compared after rounding so float noise in the weighted sum
# cannot push an exact-threshold score below the threshold.
_SCORE_PRECISION = 9

_NON_WORD = re.compile(r"[^\u4e00-\u9fa5a-zA-Z0-9\s]")

STOP_WORDS: Set[str] = {
    "的", "了", "在", "是", "我", "有", "和", "就", "不", "人",
    "都", "一", "个", "上", "也", "很", "到", "说", "要", "去",
    "你", "会", "着", "没有", "看", "好", "自己", "这",
}


@dataclass
class SimilarityRecord:
    """A previously answered question."""
    query: str
    result: Any
    timestamp: float
    scope: str = ""


@dataclass
class SimilarityMatch:
    """A cached answer reused for a near-duplicate question.

    Attributes:
        result: The cached result, unchanged.
        similarity: Blended score that accepted the match.
        original_query: The cached question that matched.
    """
    result: Any
    similarity: float
    original_query: str


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def normalize(query: str) -> str:
    return query.lower().strip()


def levenshtein(a: str, b: str) -> int:
    """Edit distance between two strings (insert/delete/substitute = 1).

    Works one row of the DP table at a time. Substitution and deletion
    are vectorized directly; the left-to-right insertion chain is a
    running minimum of ``row[k] + (j - k)``.
    """
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)

    target = np.fromiter((ord(c) for c in b), dtype=np.int64, count=len(b))
    offsets = np.arange(len(b) + 1, dtype=np.int64)
    prev = offsets.copy()

    for i, ch in enumerate(a, start=1):
        cost = (target != ord(ch)).astype(np.int64)
        row = np.empty_like(prev)
        row[0] = i
        row[1:] = np.minimum(prev[1:] + 1, prev[:-1] + cost)
        prev = np.minimum.accumulate(row - offsets) + offsets

    return int(prev[-1])


def extract_keywords(text: str) -> Set[str]:
    words = _NON_WORD.sub(" ", text).split()
    return {w for w in words if len(w) > 1 and w not in STOP_WORDS}


def keyword_similarity(k1: Set[str], k2: Set[str]) -> float:
    """Jaccard similarity of two keyword sets."""
    if not k1 and not k2:
        return 1.0
    if not k1 or not k2:
        return 0.0
    return len(k1 & k2) / len(k1 | k2)


def similarity(query1: str, query2: str) -> float:
    """Blended edit-distance + keyword similarity of two questions."""
    q1 = normalize(query1)
    q2 = normalize(query2)
    if q1 == q2:
        return 1.0

    edit_sim = 1.0 - levenshtein(q1, q2) / max(len(q1), len(q2))
    kw_sim = keyword_similarity(extract_keywords(q1), extract_keywords(q2))
    return EDIT_WEIGHT * edit_sim + KEYWORD_WEIGHT * kw_sim


def meets_threshold(score: float, threshold: float) -> bool:
    return round(score, _SCORE_PRECISION) >= threshold


# ---------------------------------------------------------------------------
# Matcher
# ---------------------------------------------------------------------------

class SimilarityMatcher:
    """Bounded history of answered questions with fuzzy lookup.

    Usage:
        matcher = SimilarityMatcher()
        matcher.cache_question("郑玉指是谁", result)
        match = matcher.find_similar_question("郑玉指是谁？")
        if match:
            reuse(match.result)
    """

    def __init__(
        self,
        threshold: float = 0.7,
        capacity: int = 100,
        clock: Callable[[], float] = time.time,
    ):
        self.threshold = threshold
        self.capacity = capacity
        self._clock = clock
        self._records: Dict[Tuple[str, str], SimilarityRecord] = {}
        self._evictions = 0

    def find_similar_question(
        self, query: str, scope: str = "",
    ) -> Optional[SimilarityMatch]:
        best: Optional[SimilarityRecord] = None
        best_score = -1.0

        for record in self._records.values():
            if record.scope != scope:
                continue
            score = similarity(query, record.query)
            if meets_threshold(score, self.threshold) and score > best_score:
                best, best_score = record, score

        if best is None:
            return None

        logger.debug(
            "Similar question found: %r ~ %r (%.1f%%)",
            query, best.query, best_score * 100,
        )
        return SimilarityMatch(
            result=best.result,
            similarity=min(best_score, 1.0),
            original_query=best.query,
        )

    def cache_question(self, query: str, result: Any, scope: str = "") -> None:
        self._records[(scope, query)] = SimilarityRecord(
            query=query, result=result, timestamp=self._clock(), scope=scope,
        )
        if len(self._records) > self.capacity:
            self._evict()

    def clear(self) -> None:
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, query: str) -> bool:
        return any(r.query == query for r in self._records.values())

    def get_cache_stats(self) -> Dict[str, Any]:
        return {
            "size": len(self._records),
            "capacity": self.capacity,
            "similarity_threshold": self.threshold,
            "evictions": self._evictions,
        }

    def _evict(self) -> None:
        """Drop the oldest half of the records in one pass."""
        by_age = sorted(self._records.values(), key=lambda r: r.timestamp)
        drop = self.capacity // 2
        for record in by_age[:drop]:
            del self._records[(record.scope, record.query)]
        self._evictions += drop
        logger.debug("Evicted %d oldest similarity records", drop)
