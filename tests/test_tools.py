"""
Tests for the knowledge store, the tool executor and the usage monitor.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from village_guide.cache_store import CacheStore
from village_guide.dispatcher import AgentMessage, AgentRole, MessageType, ResilientDispatcher
from village_guide.errors import ProviderError, ToolNotFoundError, VillageGuideError
from village_guide.knowledge import StaticKnowledgeStore
from village_guide.llm_client import Completion
from village_guide.tools import (
    AI_CALL_COST,
    NO_KNOWLEDGE_REPLY,
    NO_ROUTE_REPLY,
    SHOPPING_REPLY,
    AgentMonitor,
    ToolExecutor,
    format_records,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def cache():
    return CacheStore()


@pytest.fixture
def knowledge(cache):
    return StaticKnowledgeStore(cache)


@pytest.fixture
def llm():
    chain = MagicMock()
    chain.complete = AsyncMock(return_value=Completion(
        provider="SiliconFlow", model="Qwen", content={"text": "欢迎来到东里村"},
    ))
    return chain


@pytest.fixture
def monitor():
    return AgentMonitor()


@pytest.fixture
def executor(knowledge, llm, monitor):
    dispatcher = ResilientDispatcher()
    dispatcher.register(AgentRole.MONITOR, monitor.handle)
    return ToolExecutor(knowledge, llm=llm, dispatcher=dispatcher)


# ---------------------------------------------------------------------------
# Knowledge store
# ---------------------------------------------------------------------------

class TestKnowledgeStore:
    @pytest.mark.asyncio
    async def test_spots_by_category(self, knowledge):
        red = await knowledge.get_spots_by_category("red")
        assert [s["name"] for s in red] == ["永春辛亥革命纪念馆", "旌义状石碑"]
        assert all(s["kind"] == "spot" for s in red)

    @pytest.mark.asyncio
    async def test_scenic_lists_everything(self, knowledge):
        assert len(await knowledge.get_spots_by_category("scenic")) == 4

    @pytest.mark.asyncio
    async def test_unknown_category_is_empty(self, knowledge):
        assert await knowledge.get_spots_by_category("sports") == []

    @pytest.mark.asyncio
    async def test_category_lookup_cached_with_tags(self, knowledge, cache):
        await knowledge.get_spots_by_category("red")
        await knowledge.get_spots_by_category("red")
        assert knowledge.get_stats()["uncached_lookups"] == 1

        assert await cache.delete_by_tags(["red"]) == 1
        await knowledge.get_spots_by_category("red")
        assert knowledge.get_stats()["uncached_lookups"] == 2

    @pytest.mark.asyncio
    async def test_search_figure_by_name_first(self, knowledge):
        results = await knowledge.search_knowledge("郑玉指是谁")
        assert results[0]["name"] == "郑玉指"
        assert results[0]["kind"] == "figure"
        # The stele's story mentions him too
        assert "旌义状石碑" in [r["name"] for r in results]

    @pytest.mark.asyncio
    async def test_search_by_tag(self, knowledge):
        results = await knowledge.search_knowledge("哪里适合婚纱摄影")
        assert [r["name"] for r in results] == ["传统婚庆体验馆"]

    @pytest.mark.asyncio
    async def test_search_no_match(self, knowledge):
        assert await knowledge.search_knowledge("xyz") == []

    @pytest.mark.asyncio
    async def test_search_cached(self, knowledge, cache):
        await knowledge.search_knowledge("郑玉指")
        await knowledge.search_knowledge("郑玉指")
        assert knowledge.get_stats()["uncached_lookups"] == 1
        assert await cache.keys("search:*") == ["search:郑玉指"]


# ---------------------------------------------------------------------------
# Tool executor
# ---------------------------------------------------------------------------

class TestToolExecutor:
    @pytest.mark.asyncio
    async def test_knowledge_tool(self, executor):
        result = await executor.call_tool("get_related_knowledge", {"query": "郑玉指是谁"})
        assert result["tool"] == "get_related_knowledge"
        assert result["content"].startswith("• 郑玉指: ")
        assert result["data"][0]["name"] == "郑玉指"

    @pytest.mark.asyncio
    async def test_knowledge_tool_no_match(self, executor):
        result = await executor.call_tool("get_related_knowledge", {"query": "xyz"})
        assert result["content"] == NO_KNOWLEDGE_REPLY
        assert result["data"] == []

    @pytest.mark.asyncio
    async def test_shopping_tool(self, executor):
        result = await executor.call_tool("get_shopping_info", {"query": "特产"})
        assert result["content"] == SHOPPING_REPLY

    @pytest.mark.asyncio
    async def test_map_known_spot(self, executor):
        result = await executor.call_tool("get_map", {"query": "怎么去油桐花海"})
        assert "油桐花海" in result["content"]
        assert result["data"][0]["id"] == "nature_001"

    @pytest.mark.asyncio
    async def test_map_unknown_spot(self, executor):
        result = await executor.call_tool("get_map", {"query": "怎么去仙灵瀑布"})
        assert result["content"] == NO_ROUTE_REPLY

    @pytest.mark.asyncio
    async def test_voice_interaction(self, executor, llm):
        result = await executor.call_tool(
            "voice_interaction", {"query": "这里好玩吗", "spot": "油桐花海"},
        )
        assert result["content"] == "欢迎来到东里村"
        assert result["provider"] == "SiliconFlow"
        system_prompt, user_prompt = llm.complete.call_args.args
        assert "油桐花海" in system_prompt
        assert "这里好玩吗" in user_prompt

    @pytest.mark.asyncio
    async def test_object_recognition(self, executor, llm):
        llm.complete.return_value = Completion(
            provider="Zhipu", model="GLM", content={"explanation": "这是旌义状石碑"},
        )
        result = await executor.call_tool("object_recognition", {})
        assert result["content"] == "这是旌义状石碑"
        assert result["provider"] == "Zhipu"
        assert "东里村" in llm.complete.call_args.args[0]

    @pytest.mark.asyncio
    async def test_ai_tool_without_llm(self, knowledge):
        executor = ToolExecutor(knowledge)
        with pytest.raises(ProviderError):
            await executor.call_tool("voice_interaction", {"query": "你好"})

    @pytest.mark.asyncio
    async def test_unknown_tool(self, executor):
        with pytest.raises(ToolNotFoundError) as exc_info:
            await executor.call_tool("teleport", {})
        assert exc_info.value.tool_name == "teleport"

    @pytest.mark.asyncio
    async def test_disabled_tool(self, knowledge):
        executor = ToolExecutor(knowledge, enabled_tools=["get_map"])
        assert executor.available_tools == ["get_map"]
        with pytest.raises(ToolNotFoundError):
            await executor.call_tool("get_shopping_info", {})

    @pytest.mark.asyncio
    async def test_handle_call_tool_message(self, executor):
        result = await executor.handle(AgentMessage(
            source=AgentRole.FRONTEND,
            target=AgentRole.TOOLS,
            action="call_tool",
            payload={"tool_name": "get_shopping_info"},
        ))
        assert result["tool"] == "get_shopping_info"
        assert executor.get_stats()["calls"] == {"get_shopping_info": 1}

    @pytest.mark.asyncio
    async def test_handle_rejects_other_actions(self, executor):
        with pytest.raises(VillageGuideError):
            await executor.handle(AgentMessage(
                source=AgentRole.FRONTEND, target=AgentRole.TOOLS, action="reboot",
            ))


def test_format_records():
    text = format_records([
        {"name": "郑玉指", "detail": "辛亥志士"},
        {"name": "油桐花海", "description": "五月飞雪"},
    ])
    assert text == "• 郑玉指: 辛亥志士\n• 油桐花海: 五月飞雪"


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------

class TestMonitor:
    @pytest.mark.asyncio
    async def test_tool_calls_are_logged(self, executor, monitor):
        await executor.call_tool("get_map", {"query": "怎么去油桐花海", "user_id": "u1"})
        records = monitor.recent_records()
        assert len(records) == 1
        assert records[0]["tool_name"] == "get_map"
        assert records[0]["success"] is True
        assert monitor.get_user_stats("u1")["total_queries"] == 1
        assert monitor.get_user_stats("u1")["total_cost"] == 0.0

    @pytest.mark.asyncio
    async def test_ai_calls_cost(self, executor, monitor):
        await executor.call_tool("voice_interaction", {"query": "你好", "user_id": "u1"})
        await executor.call_tool("voice_interaction", {"query": "再见", "user_id": "u1"})
        assert monitor.get_user_stats("u1")["total_cost"] == round(2 * AI_CALL_COST, 2)

    @pytest.mark.asyncio
    async def test_failed_call_logged_not_counted(self, executor, monitor, llm):
        llm.complete.side_effect = ProviderError("all down")
        with pytest.raises(ProviderError):
            await executor.call_tool("voice_interaction", {"query": "你好", "user_id": "u2"})

        assert monitor.recent_records()[-1]["success"] is False
        assert monitor.recent_records()[-1]["error"] == "all down"
        assert monitor.get_user_stats("u2") is None

    def test_record_cap(self):
        monitor = AgentMonitor(max_records=3)
        for i in range(5):
            monitor.record({"user_id": "u", "tool_name": "get_map", "success": True, "n": i})
        assert [r["n"] for r in monitor.recent_records()] == [2, 3, 4]
        assert monitor.get_user_stats("u")["total_queries"] == 5

    @pytest.mark.asyncio
    async def test_error_messages_counted(self, monitor):
        await monitor.handle(AgentMessage(
            source=AgentRole.SYSTEM,
            target=AgentRole.MONITOR,
            type=MessageType.ERROR,
            action="request_failed",
        ))
        assert monitor.errors_received == 1
        assert monitor.recent_records() == []

    def test_stats(self):
        monitor = AgentMonitor()
        monitor.record({"user_id": "a", "tool_name": "voice_interaction", "success": True})
        monitor.record({"user_id": "b", "tool_name": "get_map", "success": False})
        stats = monitor.get_stats()
        assert stats["records"] == 2
        assert stats["success_rate"] == 0.5
        assert stats["users"] == 1
        assert stats["total_cost"] == 0.1
