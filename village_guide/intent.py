"""
Intent classifier: which tool answers a visitor's question.

Rule-based keyword membership, evaluated in a fixed priority order:

    1. History / red culture   -> get_related_knowledge  (no AI)
    2. Shopping / food         -> get_shopping_info      (no AI)
    3. Navigation              -> get_map                (no AI)
    4. Anything else           -> voice_interaction      (needs AI)

The first rule with a matching keyword wins; there is no scoring. The
order is policy: a question touching both history and food ("革命老区有
什么好吃的") is a history question. Photo input skips the rules and
always goes to object recognition.

Classification never fails. The default rule always yields a valid
route.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from village_guide.config import InputType

# Tool names shared with the tool executor.
TOOL_KNOWLEDGE = "get_related_knowledge"
TOOL_SHOPPING = "get_shopping_info"
TOOL_MAP = "get_map"
TOOL_AI_CHAT = "voice_interaction"
TOOL_OBJECT_RECOGNITION = "object_recognition"

CATEGORY_RED_CULTURE = "红色文化"
CATEGORY_SHOPPING = "美食购物"
CATEGORY_NAVIGATION = "地图导航"
CATEGORY_AI_CHAT = "智能对话"
CATEGORY_PHOTO = "图片识别"


@dataclass(frozen=True)
class Intent:
    """Classifier output.

    Attributes:
        tool: Tool the executor should call.
        needs_ai: Whether answering requires an LLM call.
        category: Human-facing category label.
    """
    tool: str
    needs_ai: bool
    category: str

    def to_dict(self) -> Dict[str, object]:
        return {
            "tool": self.tool,
            "needs_ai": self.needs_ai,
            "category": self.category,
        }


# ---------------------------------------------------------------------------
# Keyword rules
# ---------------------------------------------------------------------------

HISTORY_KEYWORDS: Tuple[str, ...] = (
    "历史", "知识", "故事", "革命", "红色", "纪念", "辛亥", "旌义状",
    # The village's historical figures
    "郑玉指", "宋渊源", "李铁民", "郑成快",
)

SHOPPING_KEYWORDS: Tuple[str, ...] = (
    "买", "吃", "特色", "美食", "商店", "特产",
)

NAVIGATION_KEYWORDS: Tuple[str, ...] = (
    "地图", "导航", "怎么走", "在哪", "怎么去", "路线",
)

DEFAULT_INTENT = Intent(TOOL_AI_CHAT, True, CATEGORY_AI_CHAT)
PHOTO_INTENT = Intent(TOOL_OBJECT_RECOGNITION, True, CATEGORY_PHOTO)


class IntentClassifier:
    """Maps question text to a tool.

    Usage:
        classifier = IntentClassifier()
        intent = classifier.classify("郑玉指是谁")
        # Intent(tool="get_related_knowledge", needs_ai=False, category="红色文化")

    Extra keywords (from config) extend a rule's vocabulary but never
    change the rule order.
    """

    def __init__(
        self,
        extra_keywords: Optional[Dict[str, Iterable[str]]] = None,
    ):
        extra = extra_keywords or {}
        self._rules: List[Tuple[Tuple[str, ...], Intent]] = [
            (
                HISTORY_KEYWORDS + tuple(extra.get("history", ())),
                Intent(TOOL_KNOWLEDGE, False, CATEGORY_RED_CULTURE),
            ),
            (
                SHOPPING_KEYWORDS + tuple(extra.get("shopping", ())),
                Intent(TOOL_SHOPPING, False, CATEGORY_SHOPPING),
            ),
            (
                NAVIGATION_KEYWORDS + tuple(extra.get("navigation", ())),
                Intent(TOOL_MAP, False, CATEGORY_NAVIGATION),
            ),
        ]

    def classify(
        self,
        text: str,
        input_type: InputType = InputType.TEXT,
    ) -> Intent:
        if input_type == InputType.PHOTO:
            return PHOTO_INTENT

        for keywords, intent in self._rules:
            if any(k in text for k in keywords):
                return intent
        return DEFAULT_INTENT
