"""
CoordinationManager: the end-to-end question pipeline.

process_input() answers one visitor turn, cheapest option first:

    1. count the question for hot detection
    2. similarity cache       near-duplicate of a recent question at the
                              same spot
    3-4. exact / hot cache    same question, type, output format and spot
    5. deduplication          identical (session, content) already running:
                              wait for it instead of doing the work twice
    6. route                  hot answer -> fast path (SIMPLE) -> full path
    7. cache with a TTL       hot 2h, simple 1h, everything else 30min
    8. remember for similarity matching
    9. release the in-flight marker

Downstream calls (tools, knowledge lookups, the LLM chain) all go
through the ResilientDispatcher. When they are exhausted the visitor
gets a FallbackResult with a plain-language apology, never an
exception. Cache and similarity errors are logged and skipped:
caching is an optimization, not a dependency.

Everything is constructed per instance (cache, clock, dispatcher, LLM
chain can be injected), so tests get an isolated coordinator each time.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from village_guide.cache_store import CacheStore
from village_guide.complexity import QueryComplexityAnalyzer
from village_guide.config import (
    CoordinatorConfig,
    InputType,
    OutputFormat,
    QueryComplexity,
)
from village_guide.dedup import RequestDeduplicator
from village_guide.dispatcher import (
    AgentMessage,
    AgentRole,
    DispatchOutcome,
    DispatchResult,
    MessageType,
    ResilientDispatcher,
    Sleep,
)
from village_guide.hot_questions import HotQuestionDetector
from village_guide.intent import TOOL_KNOWLEDGE, Intent, IntentClassifier
from village_guide.knowledge import ALL_CATEGORIES, KnowledgeStore, StaticKnowledgeStore
from village_guide.llm_client import LLMProviderChain
from village_guide.results import (
    STRATEGY_AI,
    STRATEGY_SIMILARITY,
    STRATEGY_TOOL,
    STRATEGY_TOOL_DEFAULT,
    STRATEGY_TOOL_FAST,
    AIResult,
    FallbackResult,
    HotCacheResult,
    ProcessResponse,
    QueryResult,
    QuickAnswerResult,
    ToolResult,
    WaitResult,
    is_cacheable,
    is_query_result,
)
from village_guide.similarity import SimilarityMatcher
from village_guide.tools import AI_TOOLS, AgentMonitor, ToolExecutor

logger = logging.getLogger("village_guide.coordinator")

PRELOAD_SESSION = "preload"

QUICK_ANSWERS: Dict[str, str] = {
    "东里村在哪": "东里村位于浙江省丽水市龙泉市，是一个美丽的古村落。",
    "门票价格": "东里村免费开放，无需门票。",
    "开放时间": "东里村全天开放，建议游览时间为2-3小时。",
    "怎么去": "可以乘坐高铁到丽水站，然后转乘巴士到东里村。",
}

SPOT_LISTING_KEYWORDS = ("景点", "推荐")
SPOT_LISTING_LIMIT = 3
NO_SPOTS_REPLY = "暂未找到相关景点信息。"

_VOICE_FILLERS = re.compile(r"嗯|啊|呃|那个|这个")
_VOICE_LEADINS = re.compile(r"说一下|告诉我|介绍一下")
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class InputContext:
    """One visitor turn.

    Attributes:
        content: Question text (speech transcript for VOICE input).
        type: How the visitor asked.
        output_format: How the answer will be presented.
        session_id: Visitor session; part of the deduplication key.
        user_id: Visitor id for usage stats ("anonymous" if unknown).
        spot: Spot the visitor is at, used as tool context.
        timestamp: When the turn was submitted.
    """
    content: str
    type: InputType = InputType.TEXT
    output_format: OutputFormat = OutputFormat.TEXT
    session_id: str = "default"
    user_id: str = "anonymous"
    spot: str = ""
    timestamp: float = field(default_factory=time.time)


# ---------------------------------------------------------------------------
# Key and text helpers
# ---------------------------------------------------------------------------

def normalize_content(content: str) -> str:
    return _WHITESPACE.sub(" ", content.lower().strip())


def make_cache_key(ctx: InputContext) -> str:
    """Stable key over (normalized content, input type, output format, spot).

    The spot is part of the key because tool prompts (chat, photo
    narration) are built around it.
    """
    raw = json.dumps(
        {
            "content": normalize_content(ctx.content),
            "spot": ctx.spot,
            "type": ctx.type.value,
            "output_format": ctx.output_format.value,
        },
        sort_keys=True,
        ensure_ascii=False,
    )
    return "query:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


def hot_cache_key(content: str, spot: str = "") -> str:
    if spot:
        return f"hot:{spot}:{normalize_content(content)}"
    return f"hot:{normalize_content(content)}"


def preprocess_voice_input(content: str) -> str:
    """Strip spoken fillers and lead-ins from a speech transcript."""
    return _VOICE_LEADINS.sub("", _VOICE_FILLERS.sub("", content)).strip()


def reformat_for_voice(content: str, max_chars: int = 200) -> str:
    content = re.sub(r"[•·]", "，", content)
    content = re.sub(r"\n+", "。", content)
    return content[:max_chars]


def format_spot_listing(spots: List[Dict[str, Any]]) -> str:
    if not spots:
        return NO_SPOTS_REPLY
    return "\n".join(
        f"{i}. {s['name']}\n   {s.get('description') or '暂无描述'}\n"
        for i, s in enumerate(spots, start=1)
    )


class CoordinationManager:
    """Routes visitor questions through caches, tools and the LLM chain.

    Usage:
        coordinator = CoordinationManager(config, llm=LLMProviderChain())
        await coordinator.start()
        response = await coordinator.process_input(InputContext("郑玉指是谁"))
        print(response.content, response.strategy, response.cached)
        await coordinator.shutdown()
    """

    def __init__(
        self,
        config: Optional[CoordinatorConfig] = None,
        cache: Optional[CacheStore] = None,
        knowledge: Optional[KnowledgeStore] = None,
        llm: Optional[LLMProviderChain] = None,
        dispatcher: Optional[ResilientDispatcher] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.config = config if config is not None else CoordinatorConfig()
        cfg = self.config

        self.cache = cache if cache is not None else CacheStore()
        self.similarity = SimilarityMatcher(
            threshold=cfg.similarity_threshold,
            capacity=cfg.similarity_capacity,
        )
        self.hot = HotQuestionDetector(
            threshold=cfg.hot_threshold,
            max_patterns=cfg.hot_max_patterns,
            top_n=cfg.hot_top_n,
        )
        self.intent = IntentClassifier(cfg.extra_intent_keywords)
        self.complexity = QueryComplexityAnalyzer()
        self.dedup = RequestDeduplicator()
        if dispatcher is None:
            dispatcher = ResilientDispatcher(
                retry=cfg.retry, breaker_policy=cfg.circuit_breaker, sleep=sleep,
            )
        self.dispatcher = dispatcher
        self.knowledge = (
            knowledge if knowledge is not None else StaticKnowledgeStore(self.cache)
        )
        self.llm = llm
        self.tools = ToolExecutor(
            knowledge=self.knowledge,
            llm=llm,
            dispatcher=self.dispatcher,
            enabled_tools=cfg.enabled_tools,
            default_spot=cfg.default_spot,
        )
        self.monitor = AgentMonitor()

        self.dispatcher.register(AgentRole.FRONTEND, self._on_message)
        self.dispatcher.register(AgentRole.TOOLS, self.tools.handle)
        self.dispatcher.register(AgentRole.KNOWLEDGE, self._on_knowledge_request)
        self.dispatcher.register(AgentRole.MONITOR, self.monitor.handle)

        self._metrics = {
            "total_queries": 0,
            "cache_hits": 0,
            "similarity_hits": 0,
            "dedup_waits": 0,
            "fallbacks": 0,
            "circuit_open_rejections": 0,
            "terminal_errors": 0,
            "preload_runs": 0,
        }
        self._preload_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def process_input(self, ctx: InputContext) -> ProcessResponse:
        start = time.perf_counter()

        def elapsed_ms() -> float:
            return (time.perf_counter() - start) * 1000

        # Preload replays are not visitor questions
        visitor = ctx.session_id != PRELOAD_SESSION
        if visitor:
            self._metrics["total_queries"] += 1
            self.hot.record_query(ctx.content)

        match = self._find_similar(ctx.content, ctx.spot)
        if match is not None:
            if visitor:
                self._metrics["cache_hits"] += 1
                self._metrics["similarity_hits"] += 1
            return ProcessResponse(
                result=match.result,
                cached=True,
                response_time_ms=elapsed_ms(),
                strategy=STRATEGY_SIMILARITY,
                similarity=match.similarity,
                original_query=match.original_query,
            )

        key = make_cache_key(ctx)
        hot_key = hot_cache_key(ctx.content, ctx.spot)
        cached = await self._check_cache(key, hot_key, ctx.output_format)
        if cached is not None:
            if visitor:
                self._metrics["cache_hits"] += 1
            return ProcessResponse(
                result=cached, cached=True, response_time_ms=elapsed_ms(),
            )

        dedup_key = RequestDeduplicator.make_key(ctx.session_id, ctx.content)
        if not self.dedup.try_acquire(dedup_key):
            self._metrics["dedup_waits"] += 1
            result = await self.dedup.wait_for(dedup_key, self.config.dedup_wait_timeout_s)
            if result is None:
                result = WaitResult(input_type=ctx.type, output_format=ctx.output_format)
            return ProcessResponse(
                result=result, cached=False, response_time_ms=elapsed_ms(),
            )

        result: Optional[QueryResult] = None
        try:
            is_hot = self.hot.is_hot_question(ctx.content)
            complexity = self.complexity.analyze(ctx.content)
            result = await self._route(ctx, is_hot, complexity, hot_key)

            if is_cacheable(result):
                await self._store(key, hot_key, result, is_hot, complexity)
                self._remember(ctx.content, ctx.spot, result)
            if isinstance(result, FallbackResult):
                self._metrics["fallbacks"] += 1
        finally:
            self.dedup.release(dedup_key, result)

        return ProcessResponse(
            result=result, cached=False, response_time_ms=elapsed_ms(),
        )

    async def _route(
        self,
        ctx: InputContext,
        is_hot: bool,
        complexity: QueryComplexity,
        hot_key: str,
    ) -> QueryResult:
        try:
            if is_hot:
                hot_answer = await self._cached_result(hot_key)
                if hot_answer is not None:
                    return self._as_hot_result(hot_answer, ctx.output_format)

            if complexity == QueryComplexity.SIMPLE:
                result = await self._fast_path(ctx)
                if result is not None:
                    return result

            return await self._full_path(ctx)
        except Exception as e:
            logger.exception("Routing failed for %r", ctx.content)
            return FallbackResult(
                input_type=ctx.type,
                output_format=ctx.output_format,
                failed_strategy="route",
                error=str(e),
            )

    async def _fast_path(self, ctx: InputContext) -> Optional[QueryResult]:
        """Canned answer, spot listing, or a direct non-AI tool call.

        Returns None when the question needs the full path.
        """
        normalized = ctx.content.lower().strip()
        for question, answer in QUICK_ANSWERS.items():
            if question in normalized:
                return QuickAnswerResult(
                    content=answer, input_type=ctx.type, output_format=ctx.output_format,
                )

        if any(k in ctx.content for k in SPOT_LISTING_KEYWORDS):
            outcome = await self._dispatch(
                AgentRole.KNOWLEDGE,
                "get_spots_by_category",
                {"category": ALL_CATEGORIES},
            )
            if not outcome.ok:
                return self._fallback(ctx, STRATEGY_TOOL_FAST, outcome)
            spots = (outcome.payload or [])[:SPOT_LISTING_LIMIT]
            return ToolResult(
                content=format_spot_listing(spots),
                strategy=STRATEGY_TOOL_FAST,
                input_type=ctx.type,
                output_format=ctx.output_format,
                tool="get_spots_by_category",
                data=spots,
            )

        intent = self.intent.classify(ctx.content, ctx.type)
        if intent.needs_ai:
            return None
        return await self._call_tool(ctx, ctx.content, intent, STRATEGY_TOOL_DEFAULT)

    async def _full_path(self, ctx: InputContext) -> QueryResult:
        text = ctx.content
        if ctx.type == InputType.VOICE:
            text = preprocess_voice_input(text)
        intent = self.intent.classify(text, ctx.type)
        strategy = STRATEGY_AI if intent.needs_ai else STRATEGY_TOOL
        return await self._call_tool(ctx, text, intent, strategy)

    async def _call_tool(
        self,
        ctx: InputContext,
        text: str,
        intent: Intent,
        strategy: str,
    ) -> QueryResult:
        outcome = await self._dispatch(
            AgentRole.TOOLS,
            "call_tool",
            {
                "tool_name": intent.tool,
                "query": text,
                "spot": ctx.spot or self.config.default_spot,
                "user_id": ctx.user_id,
            },
        )
        if not outcome.ok:
            return self._fallback(ctx, strategy, outcome)

        payload = outcome.payload or {}
        content = payload.get("content", "")
        data = payload.get("data") or []
        if ctx.output_format == OutputFormat.VOICE:
            if data and intent.tool == TOOL_KNOWLEDGE:
                content = "、".join(r["name"] for r in data[:3] if r.get("name"))
            else:
                content = reformat_for_voice(content, self.config.voice_max_chars)

        if intent.tool in AI_TOOLS:
            return AIResult(
                content=content,
                strategy=strategy,
                input_type=ctx.type,
                output_format=ctx.output_format,
                tool=intent.tool,
                category=intent.category,
                provider=payload.get("provider", ""),
            )
        return ToolResult(
            content=content,
            strategy=strategy,
            input_type=ctx.type,
            output_format=ctx.output_format,
            tool=intent.tool,
            category=intent.category,
            data=data,
        )

    async def _dispatch(
        self, target: AgentRole, action: str, payload: Dict[str, Any],
    ) -> DispatchResult:
        return await self.dispatcher.dispatch_with_retry(AgentMessage(
            source=AgentRole.FRONTEND,
            target=target,
            action=action,
            payload=payload,
        ))

    def _fallback(
        self, ctx: InputContext, strategy: str, outcome: DispatchResult,
    ) -> FallbackResult:
        circuit_open = outcome.outcome == DispatchOutcome.CIRCUIT_OPEN
        if circuit_open:
            self._metrics["circuit_open_rejections"] += 1
        return FallbackResult(
            input_type=ctx.type,
            output_format=ctx.output_format,
            failed_strategy=strategy,
            error=outcome.error,
            circuit_open=circuit_open,
        )

    # ------------------------------------------------------------------
    # Caching (errors never fail the request)
    # ------------------------------------------------------------------

    def _find_similar(self, content: str, spot: str):
        try:
            return self.similarity.find_similar_question(content, scope=spot)
        except Exception as e:
            logger.warning("Similarity lookup failed: %s", e)
            return None

    def _remember(self, content: str, spot: str, result: QueryResult) -> None:
        try:
            self.similarity.cache_question(content, result, scope=spot)
        except Exception as e:
            logger.warning("Similarity insert failed: %s", e)

    async def _cache_get(self, key: str) -> Any:
        try:
            return await self.cache.get(key)
        except Exception as e:
            logger.warning("Cache read for %s failed: %s", key, e)
            return None

    async def _cached_result(self, key: str) -> Optional[QueryResult]:
        """A cached QueryResult, or None. Foreign values count as a miss."""
        value = await self._cache_get(key)
        if value is None:
            return None
        if not is_query_result(value):
            logger.warning(
                "Ignoring cache entry %s of unexpected type %s", key, type(value).__name__,
            )
            return None
        return value

    async def _check_cache(
        self, key: str, hot_key: str, output_format: OutputFormat,
    ) -> Optional[QueryResult]:
        hot_answer = await self._cached_result(hot_key)
        if hot_answer is not None:
            return self._as_hot_result(hot_answer, output_format)

        cached = await self._cached_result(key)
        if cached is None:
            return None
        return self._reformat(cached, output_format)

    async def _store(
        self,
        key: str,
        hot_key: str,
        result: QueryResult,
        is_hot: bool,
        complexity: QueryComplexity,
    ) -> None:
        ttl_policy = self.config.ttl
        if is_hot:
            ttl = ttl_policy.hot_ttl
        elif complexity == QueryComplexity.SIMPLE:
            ttl = ttl_policy.simple_ttl
        else:
            ttl = ttl_policy.default_ttl

        try:
            await self.cache.set(key, result, ttl=ttl, tags=["query"])
            if is_hot:
                await self.cache.set(hot_key, result, ttl=ttl, tags=["hot"])
        except Exception as e:
            logger.warning("Cache write for %s failed: %s", key, e)

    def _reformat(self, result: QueryResult, output_format: OutputFormat) -> QueryResult:
        if result.output_format == output_format:
            return result
        content = result.content
        if output_format == OutputFormat.VOICE:
            content = reformat_for_voice(content, self.config.voice_max_chars)
        return result.with_content(content, output_format)

    def _as_hot_result(self, cached: QueryResult, output_format: OutputFormat) -> QueryResult:
        if isinstance(cached, HotCacheResult):
            return self._reformat(cached, output_format)
        hot = HotCacheResult(
            content=cached.content,
            input_type=cached.input_type,
            output_format=cached.output_format,
            original_strategy=cached.strategy,
        )
        return self._reformat(hot, output_format)

    # ------------------------------------------------------------------
    # Role handlers
    # ------------------------------------------------------------------

    async def _on_message(self, msg: AgentMessage) -> None:
        """FRONTEND handler: terminal errors from the dispatcher."""
        if msg.type == MessageType.ERROR:
            self._metrics["terminal_errors"] += 1
            logger.warning(
                "Request %s to %s ended: %s",
                msg.payload.get("original_id"),
                msg.payload.get("service"),
                msg.payload.get("error"),
            )

    async def _on_knowledge_request(self, msg: AgentMessage) -> Any:
        if msg.action == "get_spots_by_category":
            return await self.knowledge.get_spots_by_category(msg.payload.get("category", ""))
        if msg.action == "search_knowledge":
            return await self.knowledge.search_knowledge(msg.payload.get("query", ""))
        raise ValueError(f"Unknown knowledge action '{msg.action}'")

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def get_performance_metrics(self) -> Dict[str, Any]:
        total = self._metrics["total_queries"]
        hot_questions = self.hot.get_hot_questions()
        return {
            **self._metrics,
            "cache_hit_rate": self._metrics["cache_hits"] / total if total else 0.0,
            "hot_questions": len(hot_questions),
            "top_hot_questions": [p.to_dict() for p in hot_questions],
            "dispatcher": self.dispatcher.get_stats(),
            "system_health": self.dispatcher.get_system_health(),
            "cache": self.cache.get_stats(),
            "similarity": self.similarity.get_cache_stats(),
            "hot_detector": self.hot.get_stats(),
            "dedup": self.dedup.get_stats(),
            "monitor": self.monitor.get_stats(),
        }

    async def clear_cache(self) -> None:
        """Drop every cached answer and forget hot-question counts."""
        await self.cache.clear()
        self.similarity.clear()
        self.hot.reset()
        logger.info("Coordinator caches cleared")

    async def run_preload_cycle(self) -> int:
        """Re-run the top hot questions so their answers stay cached.

        Returns how many questions were processed.
        """
        self._metrics["preload_runs"] += 1
        processed = 0
        for pattern in self.hot.get_hot_questions()[:self.config.preload_count]:
            try:
                await self.process_input(InputContext(
                    content=pattern.query, session_id=PRELOAD_SESSION,
                ))
                processed += 1
            except Exception as e:
                logger.warning("Preload of %r failed: %s", pattern.query, e)
        if processed:
            logger.info("Preloaded %d hot questions", processed)
        return processed

    async def start(self) -> None:
        if self.llm is not None:
            await self.llm.startup()
        if self._preload_task is None:
            self._preload_task = asyncio.get_running_loop().create_task(
                self._preload_loop(),
            )
        logger.info("Coordinator started")

    async def shutdown(self) -> None:
        if self._preload_task is not None:
            self._preload_task.cancel()
            try:
                await self._preload_task
            except asyncio.CancelledError:
                pass
            self._preload_task = None
        if self.llm is not None:
            await self.llm.shutdown()
        logger.info("Coordinator stopped")

    async def _preload_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.preload_interval_s)
            await self.run_preload_cycle()
