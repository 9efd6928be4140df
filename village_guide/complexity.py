"""
Query complexity analyzer.

Picks the processing strategy for a question: SIMPLE questions take the
fast path (canned answers, direct tool calls), MEDIUM and COMPLEX ones
take the full path.

Rules, in order:
    - shorter than 20 characters with no question/exclamation mark -> SIMPLE
    - longer than 100 characters, a comparison/recommendation keyword,
      or more than 3 clauses when split on punctuation               -> COMPLEX
    - otherwise                                                      -> MEDIUM

Pure heuristics, no I/O; cost is negligible next to a cache lookup.
"""

from __future__ import annotations

import re

from village_guide.config import QueryComplexity

SIMPLE_MAX_LENGTH = 20
COMPLEX_MIN_LENGTH = 100
COMPLEX_MIN_CLAUSES = 4

_QUESTION_MARKS = re.compile(r"[?？!！]")
_CLAUSE_SPLIT = re.compile(r"[，。！？,.!?]")

COMPLEX_PATTERNS = [
    r"比较|对比|推荐|哪个好|怎么办|如何",
    r"(?<![a-z])(compare|recommend|versus|vs)(?![a-z])",
]


class QueryComplexityAnalyzer:
    """Classifies a question as SIMPLE, MEDIUM or COMPLEX."""

    def analyze(self, query: str) -> QueryComplexity:
        if len(query) < SIMPLE_MAX_LENGTH and not _QUESTION_MARKS.search(query):
            return QueryComplexity.SIMPLE

        lower = query.lower()
        if (
            len(query) > COMPLEX_MIN_LENGTH
            or any(re.search(p, lower) for p in COMPLEX_PATTERNS)
            or len(_CLAUSE_SPLIT.split(query)) >= COMPLEX_MIN_CLAUSES
        ):
            return QueryComplexity.COMPLEX

        return QueryComplexity.MEDIUM
