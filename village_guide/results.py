"""
Typed results of the query pipeline.

Each processing strategy produces its own result type; the ``strategy``
field is the discriminator. Callers that only want text can read
``content``. Everything else is strategy-specific.

    HotCacheResult     answer served from the hot namespace
    QuickAnswerResult  canned answer or spot listing, no tool call
    ToolResult         knowledge / shopping / map tool answer
    AIResult           LLM-backed tool answer (chat, photo recognition)
    FallbackResult     every downstream option failed
    WaitResult         an identical request is still being answered

``ProcessResponse`` wraps a result with per-request metadata (cached,
timing, similarity) and is what ``process_input`` returns.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from village_guide.config import InputType, OutputFormat

# Strategy names
STRATEGY_SIMILARITY = "similarity_cache"
STRATEGY_HOT_CACHE = "hot_cache"
STRATEGY_QUICK_ANSWER = "quick_answer"
STRATEGY_TOOL_FAST = "tool_fast"
STRATEGY_TOOL_DEFAULT = "tool_default"
STRATEGY_TOOL = "tool"
STRATEGY_AI = "ai"
STRATEGY_FALLBACK = "fallback"
STRATEGY_WAIT = "wait_completion"

FALLBACK_MESSAGE = "抱歉，查询过程中出现了问题，请稍后重试。"
WAIT_MESSAGE = "处理完成，请稍等..."


@dataclass
class _Result:
    content: str
    strategy: str = ""
    input_type: InputType = InputType.TEXT
    output_format: OutputFormat = OutputFormat.TEXT

    def with_content(self, content: str, output_format: OutputFormat):
        """Copy with reformatted content for another output format."""
        return dataclasses.replace(
            self, content=content, output_format=output_format,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = dataclasses.asdict(self)
        data["input_type"] = self.input_type.value
        data["output_format"] = self.output_format.value
        return data


@dataclass
class HotCacheResult(_Result):
    strategy: str = STRATEGY_HOT_CACHE
    original_strategy: str = ""


@dataclass
class QuickAnswerResult(_Result):
    strategy: str = STRATEGY_QUICK_ANSWER
    data: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class ToolResult(_Result):
    """Answer from a tool that needs no LLM.

    ``strategy`` is ``tool_fast`` for the spot listing, ``tool_default``
    for a non-AI tool called on the fast path, and ``tool`` on the full path.
    """
    strategy: str = STRATEGY_TOOL
    tool: str = ""
    category: str = ""
    data: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class AIResult(_Result):
    strategy: str = STRATEGY_AI
    tool: str = ""
    category: str = ""
    provider: str = ""


@dataclass
class FallbackResult(_Result):
    content: str = FALLBACK_MESSAGE
    strategy: str = STRATEGY_FALLBACK
    failed_strategy: str = ""
    error: str = ""
    circuit_open: bool = False


@dataclass
class WaitResult(_Result):
    content: str = WAIT_MESSAGE
    strategy: str = STRATEGY_WAIT


QueryResult = Union[
    HotCacheResult,
    QuickAnswerResult,
    ToolResult,
    AIResult,
    FallbackResult,
    WaitResult,
]

UNCACHEABLE_STRATEGIES = frozenset({STRATEGY_FALLBACK, STRATEGY_WAIT})


def is_cacheable(result: QueryResult) -> bool:
    return result.strategy not in UNCACHEABLE_STRATEGIES


def is_query_result(value: Any) -> bool:
    return isinstance(value, _Result)


@dataclass
class ProcessResponse:
    """What ``process_input`` hands back to the caller.

    Attributes:
        result: The strategy-specific result.
        cached: True when served from the similarity or exact cache.
        response_time_ms: Wall time spent inside process_input.
        strategy: Strategy that produced this response. Differs from
            ``result.strategy`` for similarity hits.
        similarity: Match score for similarity hits.
        original_query: Cached question that matched (similarity hits).
    """
    result: QueryResult
    cached: bool
    response_time_ms: float
    strategy: str = ""
    similarity: Optional[float] = None
    original_query: Optional[str] = None

    def __post_init__(self):
        if not self.strategy:
            self.strategy = self.result.strategy

    @property
    def content(self) -> str:
        return self.result.content

    def to_dict(self) -> Dict[str, Any]:
        data = self.result.to_dict()
        data.update({
            "strategy": self.strategy,
            "cached": self.cached,
            "response_time_ms": round(self.response_time_ms, 2),
        })
        if self.similarity is not None:
            data["similarity"] = round(self.similarity, 4)
            data["original_query"] = self.original_query
        return data
