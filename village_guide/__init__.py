"""
Village Guide — Query Routing & Caching Coordinator

Answers visitor questions about 东里村 through a tiered pipeline:
similarity cache, exact and hot caches, in-flight deduplication, a fast
path of canned answers and knowledge tools, and a full path of intent
classification plus tool or LLM calls behind a resilient dispatcher
(timeouts, exponential backoff, per-service circuit breakers).

The FastAPI surface lives in ``village_guide.app`` and is not imported
here, so the library can be used without a web server.
"""

__version__ = "0.1.0"

from village_guide.cache_store import CacheStore
from village_guide.complexity import QueryComplexityAnalyzer
from village_guide.config import (
    CacheTTLPolicy,
    CircuitBreakerPolicy,
    CoordinatorConfig,
    InputType,
    OutputFormat,
    ProviderConfig,
    QueryComplexity,
    RetryPolicy,
    load_config,
)
from village_guide.coordinator import CoordinationManager, InputContext
from village_guide.dedup import RequestDeduplicator
from village_guide.dispatcher import (
    AgentMessage,
    AgentRole,
    CircuitBreaker,
    CircuitState,
    DispatchOutcome,
    DispatchResult,
    MessageType,
    ResilientDispatcher,
)
from village_guide.errors import (
    CircuitOpenError,
    ProviderError,
    ToolNotFoundError,
    VillageGuideError,
)
from village_guide.hot_questions import HotQuestionDetector
from village_guide.intent import Intent, IntentClassifier
from village_guide.knowledge import KnowledgeStore, StaticKnowledgeStore
from village_guide.llm_client import LLMProviderChain, WebhookNotifier
from village_guide.notifications import (
    CacheNotificationService,
    CacheUpdateNotification,
    CacheUpdateType,
)
from village_guide.results import ProcessResponse
from village_guide.similarity import SimilarityMatcher

__all__ = [
    # Pipeline
    "CoordinationManager",
    "InputContext",
    "ProcessResponse",
    # Components
    "CacheStore",
    "SimilarityMatcher",
    "HotQuestionDetector",
    "IntentClassifier",
    "Intent",
    "QueryComplexityAnalyzer",
    "RequestDeduplicator",
    "ResilientDispatcher",
    "CircuitBreaker",
    "CircuitState",
    "AgentMessage",
    "AgentRole",
    "MessageType",
    "DispatchOutcome",
    "DispatchResult",
    "KnowledgeStore",
    "StaticKnowledgeStore",
    "LLMProviderChain",
    "WebhookNotifier",
    "CacheNotificationService",
    "CacheUpdateNotification",
    "CacheUpdateType",
    # Configuration
    "CoordinatorConfig",
    "CacheTTLPolicy",
    "RetryPolicy",
    "CircuitBreakerPolicy",
    "ProviderConfig",
    "InputType",
    "OutputFormat",
    "QueryComplexity",
    "load_config",
    # Errors
    "VillageGuideError",
    "ProviderError",
    "CircuitOpenError",
    "ToolNotFoundError",
]
