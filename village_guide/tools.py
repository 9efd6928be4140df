"""
Tool executor (TOOLS role) and usage monitor (MONITOR role).

The coordinator never calls a tool directly: it sends a ``call_tool``
message through the ResilientDispatcher, which gives every tool its own
circuit breaker. ToolExecutor.handle is the TOOLS handler.

Tools:
    get_related_knowledge  knowledge store search     (no AI)
    get_shopping_info      local shopping guidance    (no AI)
    get_map                walking directions to a spot (no AI)
    voice_interaction      guide chat via the LLM chain
    object_recognition     photo narration via the LLM chain

After each call the executor sends a ``tool_call_logged`` event to the
MONITOR role. AgentMonitor keeps the last 100 calls and per-user stats.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from village_guide.dispatcher import (
    AgentMessage,
    AgentRole,
    MessageType,
    ResilientDispatcher,
)
from village_guide.errors import ProviderError, ToolNotFoundError, VillageGuideError
from village_guide.intent import (
    TOOL_AI_CHAT,
    TOOL_KNOWLEDGE,
    TOOL_MAP,
    TOOL_OBJECT_RECOGNITION,
    TOOL_SHOPPING,
)
from village_guide.knowledge import ALL_CATEGORIES, KnowledgeStore
from village_guide.llm_client import LLMProviderChain

logger = logging.getLogger("village_guide.tools")

AI_TOOLS = frozenset({TOOL_AI_CHAT, TOOL_OBJECT_RECOGNITION})

# Cost estimate per LLM-backed call, in yuan.
AI_CALL_COST = 0.1

NO_KNOWLEDGE_REPLY = "抱歉，暂时没有找到相关的红色文化资料。您可以前往东里村革命纪念馆了解更多历史故事。"
SHOPPING_REPLY = "附近商家信息加载中，您可以先逛逛周边，或者询问当地村民推荐。"
NO_ROUTE_REPLY = "导航服务暂时不可用，建议您查看景区指示牌或询问工作人员。"

CHAT_PROMPT = (
    '你是一个热情、博学的乡村导游"小A"。当前景点是"{spot}"。请用口语化风格回答。'
    '返回JSON格式：{{ "text": "回答内容", "need_manual_input": false }}'
)
PHOTO_PROMPT = (
    '你是一个专业的乡村导游。用户上传了一张在"{spot}"拍摄的照片。'
    "请模拟识别这张照片，并生成一段富有感染力的解说词，介绍图中的内容。"
    '返回JSON格式：{{ "explanation": "解说词内容，100字左右" }}'
)


def format_route(spot_name: str) -> str:
    return f"从当前位置出发，向北走约5分钟，在古樟树路口右转，前行200米到达{spot_name}。"


def format_records(records: Sequence[Dict[str, Any]]) -> str:
    """One "• name: description" line per knowledge record."""
    return "\n".join(
        f"• {r['name']}: {r.get('detail') or r.get('description', '')}"
        for r in records
    )


class ToolExecutor:
    """Runs tools on behalf of the TOOLS role.

    Usage:
        executor = ToolExecutor(knowledge, llm, dispatcher)
        dispatcher.register(AgentRole.TOOLS, executor.handle)
    """

    def __init__(
        self,
        knowledge: KnowledgeStore,
        llm: Optional[LLMProviderChain] = None,
        dispatcher: Optional[ResilientDispatcher] = None,
        enabled_tools: Optional[Sequence[str]] = None,
        default_spot: str = "东里村",
    ):
        self.knowledge = knowledge
        self.llm = llm
        self.dispatcher = dispatcher
        self.default_spot = default_spot
        self._tools: Dict[str, Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]] = {
            TOOL_KNOWLEDGE: self._related_knowledge,
            TOOL_SHOPPING: self._shopping_info,
            TOOL_MAP: self._map,
            TOOL_AI_CHAT: self._voice_interaction,
            TOOL_OBJECT_RECOGNITION: self._object_recognition,
        }
        self.enabled_tools = set(enabled_tools if enabled_tools is not None else self._tools)
        self._call_counts: Dict[str, int] = {}

    @property
    def available_tools(self) -> List[str]:
        return sorted(t for t in self._tools if t in self.enabled_tools)

    async def handle(self, msg: AgentMessage) -> Dict[str, Any]:
        if msg.action != "call_tool":
            raise VillageGuideError(f"Tools role cannot handle action '{msg.action}'")
        return await self.call_tool(msg.payload.get("tool_name", ""), msg.payload)

    async def call_tool(self, tool_name: str, params: Dict[str, Any]) -> Dict[str, Any]:
        tool = self._tools.get(tool_name)
        if tool is None or tool_name not in self.enabled_tools:
            raise ToolNotFoundError(tool_name)

        self._call_counts[tool_name] = self._call_counts.get(tool_name, 0) + 1
        start = time.time()
        try:
            result = await tool(params)
        except Exception as e:
            await self._log_call(tool_name, params, False, start, str(e))
            raise
        await self._log_call(tool_name, params, True, start)
        return result

    # -- Tools -----------------------------------------------------------

    async def _related_knowledge(self, params: Dict[str, Any]) -> Dict[str, Any]:
        records = await self.knowledge.search_knowledge(params.get("query", ""))
        content = format_records(records) if records else NO_KNOWLEDGE_REPLY
        return {"tool": TOOL_KNOWLEDGE, "content": content, "data": records}

    async def _shopping_info(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return {"tool": TOOL_SHOPPING, "content": SHOPPING_REPLY, "data": []}

    async def _map(self, params: Dict[str, Any]) -> Dict[str, Any]:
        query = params.get("query", "")
        spots = await self.knowledge.get_spots_by_category(ALL_CATEGORIES)
        for spot in spots:
            if spot["name"] in query:
                return {
                    "tool": TOOL_MAP,
                    "content": format_route(spot["name"]),
                    "data": [spot],
                }
        return {"tool": TOOL_MAP, "content": NO_ROUTE_REPLY, "data": []}

    async def _voice_interaction(self, params: Dict[str, Any]) -> Dict[str, Any]:
        spot = params.get("spot") or self.default_spot
        question = params.get("query", "")
        user_prompt = f"用户提问：{question}" if question else "用户到达景点，开始讲解。"
        completion = await self._complete(CHAT_PROMPT.format(spot=spot), user_prompt)
        return {
            "tool": TOOL_AI_CHAT,
            "content": _field(completion.content, "text"),
            "provider": completion.provider,
        }

    async def _object_recognition(self, params: Dict[str, Any]) -> Dict[str, Any]:
        spot = params.get("spot") or self.default_spot
        completion = await self._complete(PHOTO_PROMPT.format(spot=spot), "请识别这张照片。")
        return {
            "tool": TOOL_OBJECT_RECOGNITION,
            "content": _field(completion.content, "explanation"),
            "provider": completion.provider,
        }

    async def _complete(self, system_prompt: str, user_prompt: str):
        if self.llm is None:
            raise ProviderError("No LLM provider configured")
        return await self.llm.complete(system_prompt, user_prompt, json_mode=True)

    # -- Monitoring --------------------------------------------------------

    async def _log_call(
        self,
        tool_name: str,
        params: Dict[str, Any],
        success: bool,
        start: float,
        error: str = "",
    ) -> None:
        if self.dispatcher is None:
            return
        event = AgentMessage(
            source=AgentRole.TOOLS,
            target=AgentRole.MONITOR,
            type=MessageType.EVENT,
            action="tool_call_logged",
            payload={
                "user_id": params.get("user_id") or "anonymous",
                "tool_name": tool_name,
                "success": success,
                "response_time_ms": (time.time() - start) * 1000,
                "error": error,
            },
        )
        try:
            await self.dispatcher.dispatch(event)
        except Exception as e:
            logger.warning("Could not log %s call to monitor: %s", tool_name, e)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "available_tools": self.available_tools,
            "calls": dict(self._call_counts),
        }


def _field(content: Any, key: str) -> str:
    if isinstance(content, dict):
        return str(content.get(key, ""))
    return str(content)


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------

@dataclass
class UserStats:
    user_id: str
    total_queries: int = 0
    total_cost: float = 0.0
    last_active: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "total_queries": self.total_queries,
            "total_cost": round(self.total_cost, 2),
            "last_active": self.last_active,
        }


class AgentMonitor:
    """Bookkeeping for tool calls (MONITOR role).

    Keeps the most recent ``max_records`` call records and running
    per-user totals. Only successful calls count toward user stats.
    """

    def __init__(self, max_records: int = 100):
        self.max_records = max_records
        self._records: List[Dict[str, Any]] = []
        self._users: Dict[str, UserStats] = {}
        self.errors_received = 0

    async def handle(self, msg: AgentMessage) -> None:
        if msg.type == MessageType.ERROR:
            self.errors_received += 1
            return
        if msg.action == "tool_call_logged":
            self.record(msg.payload)

    def record(self, entry: Dict[str, Any]) -> None:
        record = dict(entry)
        record.setdefault("timestamp", time.time())
        self._records.append(record)
        if len(self._records) > self.max_records:
            self._records = self._records[-self.max_records:]

        if not record.get("success"):
            return
        user_id = record.get("user_id") or "anonymous"
        stats = self._users.get(user_id)
        if stats is None:
            stats = UserStats(user_id=user_id)
            self._users[user_id] = stats
        stats.total_queries += 1
        stats.last_active = record["timestamp"]
        if record.get("tool_name") in AI_TOOLS:
            stats.total_cost += AI_CALL_COST

    def recent_records(self, limit: int = 20) -> List[Dict[str, Any]]:
        return self._records[-limit:]

    def get_user_stats(self, user_id: str) -> Optional[Dict[str, Any]]:
        stats = self._users.get(user_id)
        return stats.to_dict() if stats else None

    def get_stats(self) -> Dict[str, Any]:
        total = len(self._records)
        ok = sum(1 for r in self._records if r.get("success"))
        return {
            "records": total,
            "success_rate": ok / total if total else 0.0,
            "users": len(self._users),
            "total_cost": round(sum(u.total_cost for u in self._users.values()), 2),
        }
