"""
Hot question detection.

Counts how often each normalized question is asked. A question seen at
least ``threshold`` times is "hot": its answer is cached longer and the
background preload task keeps it warm.

Counts never decrease while a question is tracked. To keep memory
bounded in a long-running process the detector tracks at most
``max_patterns`` distinct questions; past that, the question seen least
recently is forgotten.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, List

logger = logging.getLogger("village_guide.hot_questions")


@dataclass
class HotPattern:
    """A tracked question and how often it was asked."""
    query: str
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return {"query": self.query, "count": self.count}


def normalize_query(query: str) -> str:
    return query.lower().strip()


class HotQuestionDetector:
    """Frequency counter over normalized questions.

    Usage:
        detector = HotQuestionDetector(threshold=5)
        detector.record_query("门票价格")
        if detector.is_hot_question("门票价格"):
            ...
    """

    def __init__(
        self,
        threshold: int = 5,
        max_patterns: int = 10000,
        top_n: int = 20,
    ):
        self.threshold = threshold
        self.max_patterns = max_patterns
        self.top_n = top_n
        # Most recently seen last.
        self._counts: "OrderedDict[str, int]" = OrderedDict()
        self._forgotten = 0

    def record_query(self, query: str) -> int:
        """Count one occurrence. Returns the new count."""
        key = normalize_query(query)
        count = self._counts.pop(key, 0) + 1
        self._counts[key] = count

        if count == self.threshold:
            logger.info("Question became hot: %r", key)

        while len(self._counts) > self.max_patterns:
            self._counts.popitem(last=False)
            self._forgotten += 1
        return count

    def get_count(self, query: str) -> int:
        return self._counts.get(normalize_query(query), 0)

    def is_hot_question(self, query: str) -> bool:
        return self.get_count(query) >= self.threshold

    def get_hot_questions(self) -> List[HotPattern]:
        """Most-asked tracked questions, highest count first.

        Only questions that crossed the threshold are listed.
        """
        hot = [
            HotPattern(query=q, count=c)
            for q, c in self._counts.items()
            if c >= self.threshold
        ]
        hot.sort(key=lambda p: p.count, reverse=True)
        return hot[:self.top_n]

    def reset(self) -> None:
        self._counts.clear()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "tracked_patterns": len(self._counts),
            "max_patterns": self.max_patterns,
            "threshold": self.threshold,
            "forgotten": self._forgotten,
        }
