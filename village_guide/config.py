"""
Configuration for the village guide query coordinator.

Everything tunable about the pipeline lives here: cache TTLs, similarity
and hot-question thresholds, retry and circuit-breaker policy, the LLM
provider chain, and the extra intent keywords an operator may add.

CoordinatorConfig is frozen. Runtime changes go through
``with_updates()``, which builds a new validated config instead of
patching fields in place. The coordinator only reads the config it was
constructed with.

The config can be loaded from YAML but has sensible defaults for
zero-config startup. Secrets (provider API keys, webhook URL) are read
from the environment, never from the YAML file.
"""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import yaml

logger = logging.getLogger("village_guide.config")


class InputType(str, Enum):
    """How the visitor asked."""
    TEXT = "text"
    VOICE = "voice"
    PHOTO = "photo"


class OutputFormat(str, Enum):
    """How the answer will be presented."""
    TEXT = "text"
    VOICE = "voice"


class QueryComplexity(str, Enum):
    """Processing tier picked by the complexity analyzer."""
    SIMPLE = "simple"      # Fast path
    MEDIUM = "medium"      # Full path
    COMPLEX = "complex"    # Full path


@dataclass(frozen=True)
class CacheTTLPolicy:
    """Cache lifetimes in seconds, by query kind."""

    hot_ttl: float = 7200.0
    simple_ttl: float = 3600.0
    default_ttl: float = 1800.0
    knowledge_ttl: float = 7200.0

    def __post_init__(self):
        for name in ("hot_ttl", "simple_ttl", "default_ttl", "knowledge_ttl"):
            if getattr(self, name) <= 0:
                raise ValueError(
                    f"CacheTTLPolicy: {name} must be positive "
                    f"({getattr(self, name)})"
                )


@dataclass(frozen=True)
class RetryPolicy:
    """Timeout and exponential-backoff settings for dispatched calls.

    Attributes:
        max_retries: Retries after the first attempt.
        base_delay_s: Delay before the first retry.
        backoff_multiplier: Delay growth per retry.
        timeout_s: Per-attempt timeout.
    """

    max_retries: int = 3
    base_delay_s: float = 1.0
    backoff_multiplier: float = 2.0
    timeout_s: float = 15.0

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError(
                f"RetryPolicy: max_retries cannot be negative ({self.max_retries})"
            )
        if self.base_delay_s < 0:
            raise ValueError(
                f"RetryPolicy: base_delay_s cannot be negative ({self.base_delay_s})"
            )
        if self.backoff_multiplier < 1.0:
            raise ValueError(
                f"RetryPolicy: backoff_multiplier must be >= 1.0 "
                f"({self.backoff_multiplier})"
            )
        if self.timeout_s <= 0:
            raise ValueError(
                f"RetryPolicy: timeout_s must be positive ({self.timeout_s})"
            )

    def delay_for(self, attempt: int) -> float:
        """Backoff delay before retry number ``attempt`` (0-based)."""
        return self.base_delay_s * (self.backoff_multiplier ** attempt)


@dataclass(frozen=True)
class CircuitBreakerPolicy:
    """When a downstream service is considered broken, and for how long."""

    failure_threshold: int = 5
    reset_timeout_s: float = 30.0

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ValueError(
                f"CircuitBreakerPolicy: failure_threshold must be >= 1 "
                f"({self.failure_threshold})"
            )
        if self.reset_timeout_s <= 0:
            raise ValueError(
                f"CircuitBreakerPolicy: reset_timeout_s must be positive "
                f"({self.reset_timeout_s})"
            )


@dataclass(frozen=True)
class ProviderConfig:
    """An OpenAI-compatible chat completion provider.

    Attributes:
        name: Provider label used in logs and alerts.
        base_url: API root, e.g. "https://api.siliconflow.cn/v1".
        model: Model name sent in the request body.
        api_key_env: Environment variable holding the API key.
        temperature: Sampling temperature.
        timeout_s: Total time allowed for one call. The timeouts of all
            providers together must fit inside the dispatcher's
            per-attempt timeout.
    """

    name: str = ""
    base_url: str = ""
    model: str = ""
    api_key_env: str = ""
    temperature: float = 0.7
    timeout_s: float = 6.0

    def __post_init__(self):
        if not self.name:
            raise ValueError("ProviderConfig: name is required")
        if not self.base_url:
            raise ValueError(f"ProviderConfig '{self.name}': base_url is required")
        if self.timeout_s <= 0:
            raise ValueError(
                f"ProviderConfig '{self.name}': timeout_s must be positive "
                f"({self.timeout_s})"
            )

    @property
    def api_key(self) -> str:
        return os.environ.get(self.api_key_env, "") if self.api_key_env else ""


def default_providers() -> Tuple[ProviderConfig, ...]:
    """Primary and fallback LLM providers."""
    return (
        ProviderConfig(
            name="SiliconFlow",
            base_url="https://api.siliconflow.cn/v1",
            model="Qwen/Qwen2.5-7B-Instruct",
            api_key_env="SILICON_FLOW_API_KEY",
        ),
        ProviderConfig(
            name="Zhipu",
            base_url="https://open.bigmodel.cn/api/paas/v4",
            model="GLM-4-Flash",
            api_key_env="ZHIPU_API_KEY",
        ),
    )


@dataclass(frozen=True)
class CoordinatorConfig:
    """Top-level configuration.

    Attributes:
        ttl: Cache lifetimes.
        retry: Dispatcher timeout/backoff.
        circuit_breaker: Per-service breaker policy.
        providers: LLM providers, tried in order.
        similarity_threshold: Minimum blended similarity for a match.
        similarity_capacity: Similarity records kept before eviction.
        hot_threshold: Repetitions before a query counts as hot.
        hot_max_patterns: Distinct queries tracked by the hot detector.
        hot_top_n: Size of the hot-question leaderboard.
        preload_interval_s: Background hot-cache refresh period.
        preload_count: Hot questions refreshed per cycle.
        dedup_wait_timeout_s: Longest a duplicate request waits for the owner.
        voice_max_chars: Truncation length when reformatting for voice.
        default_spot: Spot name used as tool context.
        webhook_url_env: Environment variable with the alert webhook URL.
        extra_intent_keywords: Additional keywords per intent category,
            keyed by "history", "shopping" or "navigation".
        enabled_tools: Tools the executor may call.
    """

    ttl: CacheTTLPolicy = field(default_factory=CacheTTLPolicy)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    circuit_breaker: CircuitBreakerPolicy = field(default_factory=CircuitBreakerPolicy)
    providers: Tuple[ProviderConfig, ...] = field(default_factory=default_providers)
    similarity_threshold: float = 0.7
    similarity_capacity: int = 100
    hot_threshold: int = 5
    hot_max_patterns: int = 10000
    hot_top_n: int = 20
    preload_interval_s: float = 3600.0
    preload_count: int = 10
    dedup_wait_timeout_s: float = 30.0
    voice_max_chars: int = 200
    default_spot: str = "东里村"
    webhook_url_env: str = "VILLAGE_GUIDE_WEBHOOK_URL"
    extra_intent_keywords: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    enabled_tools: Tuple[str, ...] = (
        "get_related_knowledge",
        "get_shopping_info",
        "get_map",
        "voice_interaction",
        "object_recognition",
    )

    def __post_init__(self):
        if not (0.0 < self.similarity_threshold <= 1.0):
            raise ValueError(
                f"CoordinatorConfig: similarity_threshold must be in (0, 1] "
                f"({self.similarity_threshold})"
            )
        if self.similarity_capacity < 2:
            raise ValueError(
                f"CoordinatorConfig: similarity_capacity must be >= 2 "
                f"({self.similarity_capacity})"
            )
        if self.hot_threshold < 1:
            raise ValueError(
                f"CoordinatorConfig: hot_threshold must be >= 1 "
                f"({self.hot_threshold})"
            )
        if self.hot_max_patterns < 1:
            raise ValueError(
                f"CoordinatorConfig: hot_max_patterns must be >= 1 "
                f"({self.hot_max_patterns})"
            )
        if self.preload_interval_s <= 0:
            raise ValueError(
                f"CoordinatorConfig: preload_interval_s must be positive "
                f"({self.preload_interval_s})"
            )
        if self.dedup_wait_timeout_s <= 0:
            raise ValueError(
                f"CoordinatorConfig: dedup_wait_timeout_s must be positive "
                f"({self.dedup_wait_timeout_s})"
            )
        provider_budget = sum(p.timeout_s for p in self.providers)
        if self.providers and provider_budget >= self.retry.timeout_s:
            raise ValueError(
                f"CoordinatorConfig: provider timeouts add up to {provider_budget}s, "
                f"which does not fit in retry.timeout_s ({self.retry.timeout_s}s)"
            )
        unknown = set(self.extra_intent_keywords) - {"history", "shopping", "navigation"}
        if unknown:
            raise ValueError(
                f"CoordinatorConfig: unknown intent keyword groups {sorted(unknown)}"
            )

    @property
    def webhook_url(self) -> str:
        return os.environ.get(self.webhook_url_env, "")

    def with_updates(self, **changes: Any) -> CoordinatorConfig:
        """Return a copy with the given fields replaced (validated)."""
        unknown = set(changes) - {f.name for f in dataclasses.fields(self)}
        if unknown:
            raise ValueError(f"Unknown config fields: {sorted(unknown)}")
        return dataclasses.replace(self, **changes)


# ---------------------------------------------------------------------------
# YAML loading
# ---------------------------------------------------------------------------

def load_config(path: Optional[str] = None) -> CoordinatorConfig:
    """Load a CoordinatorConfig from a YAML file.

    Missing file or empty document gives the defaults. Sections map to
    the nested policies::

        ttl: {hot_ttl: 7200, simple_ttl: 3600, default_ttl: 1800}
        retry: {max_retries: 3, base_delay_s: 1.0}
        circuit_breaker: {failure_threshold: 5, reset_timeout_s: 30}
        providers:
          - {name: SiliconFlow, base_url: ..., model: ..., api_key_env: ...}
        similarity_threshold: 0.7
        extra_intent_keywords: {navigation: [停车场]}
    """
    if path is None or not os.path.exists(path):
        if path is not None:
            logger.warning("Config file not found: %s (using defaults)", path)
        return CoordinatorConfig()

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    if not data:
        logger.warning("Empty config file: %s (using defaults)", path)
        return CoordinatorConfig()

    kwargs: Dict[str, Any] = {}
    if "ttl" in data:
        kwargs["ttl"] = CacheTTLPolicy(**(data.pop("ttl") or {}))
    if "retry" in data:
        kwargs["retry"] = RetryPolicy(**(data.pop("retry") or {}))
    if "circuit_breaker" in data:
        kwargs["circuit_breaker"] = CircuitBreakerPolicy(
            **(data.pop("circuit_breaker") or {})
        )
    if "providers" in data:
        kwargs["providers"] = tuple(
            ProviderConfig(**p) for p in (data.pop("providers") or [])
        )
    if "extra_intent_keywords" in data:
        kwargs["extra_intent_keywords"] = {
            group: tuple(words or [])
            for group, words in (data.pop("extra_intent_keywords") or {}).items()
        }
    if "enabled_tools" in data:
        kwargs["enabled_tools"] = tuple(data.pop("enabled_tools") or [])

    kwargs.update(data)
    config = CoordinatorConfig(**kwargs)
    logger.info("Loaded coordinator config from %s", path)
    return config
