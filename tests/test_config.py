"""
Tests for configuration validation and YAML loading.
"""

import os
from unittest.mock import patch

import pytest

from village_guide.config import (
    CacheTTLPolicy,
    CircuitBreakerPolicy,
    CoordinatorConfig,
    ProviderConfig,
    RetryPolicy,
    default_providers,
    load_config,
)


class TestDefaults:
    def test_pipeline_defaults(self):
        config = CoordinatorConfig()
        assert config.similarity_threshold == 0.7
        assert config.similarity_capacity == 100
        assert config.hot_threshold == 5
        assert config.hot_top_n == 20
        assert config.preload_count == 10
        assert config.preload_interval_s == 3600.0
        assert config.ttl.hot_ttl == 7200.0
        assert config.ttl.simple_ttl == 3600.0
        assert config.ttl.default_ttl == 1800.0
        assert config.retry.max_retries == 3
        assert config.retry.timeout_s == 15.0
        assert config.circuit_breaker.failure_threshold == 5
        assert config.circuit_breaker.reset_timeout_s == 30.0

    def test_default_providers(self):
        names = [p.name for p in default_providers()]
        assert names == ["SiliconFlow", "Zhipu"]

    def test_backoff(self):
        retry = RetryPolicy()
        assert [retry.delay_for(i) for i in range(3)] == [1.0, 2.0, 4.0]


class TestValidation:
    @pytest.mark.parametrize("changes", [
        {"similarity_threshold": 0.0},
        {"similarity_threshold": 1.5},
        {"similarity_capacity": 1},
        {"hot_threshold": 0},
        {"hot_max_patterns": 0},
        {"preload_interval_s": 0},
        {"dedup_wait_timeout_s": -1},
        {"extra_intent_keywords": {"weather": ("下雨",)}},
    ])
    def test_bad_values_rejected(self, changes):
        with pytest.raises(ValueError):
            CoordinatorConfig(**changes)

    def test_policy_validation(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_retries=-1)
        with pytest.raises(ValueError):
            RetryPolicy(backoff_multiplier=0.5)
        with pytest.raises(ValueError):
            RetryPolicy(timeout_s=0)
        with pytest.raises(ValueError):
            CircuitBreakerPolicy(failure_threshold=0)
        with pytest.raises(ValueError):
            CacheTTLPolicy(hot_ttl=0)
        with pytest.raises(ValueError):
            ProviderConfig(name="x")

    def test_provider_timeouts_must_fit_dispatch_timeout(self):
        slow = ProviderConfig(name="slow", base_url="https://slow.test", timeout_s=10)
        with pytest.raises(ValueError, match="provider timeouts"):
            CoordinatorConfig(providers=(slow, slow))
        assert CoordinatorConfig(providers=(slow,)).providers == (slow,)
        with pytest.raises(ValueError):
            CoordinatorConfig().with_updates(retry=RetryPolicy(timeout_s=5))

    def test_default_providers_fit_dispatch_timeout(self):
        config = CoordinatorConfig()
        assert sum(p.timeout_s for p in config.providers) < config.retry.timeout_s

    def test_frozen(self):
        config = CoordinatorConfig()
        with pytest.raises(Exception):
            config.hot_threshold = 10


class TestWithUpdates:
    def test_returns_new_config(self):
        config = CoordinatorConfig()
        updated = config.with_updates(hot_threshold=3)
        assert updated.hot_threshold == 3
        assert config.hot_threshold == 5

    def test_validates(self):
        with pytest.raises(ValueError):
            CoordinatorConfig().with_updates(similarity_threshold=2.0)

    def test_unknown_field(self):
        with pytest.raises(ValueError, match="Unknown config fields"):
            CoordinatorConfig().with_updates(colour="red")


class TestSecrets:
    def test_provider_key_from_env(self):
        provider = ProviderConfig(
            name="p", base_url="https://p.test", api_key_env="VG_TEST_KEY",
        )
        with patch.dict(os.environ, {"VG_TEST_KEY": "sk-123"}):
            assert provider.api_key == "sk-123"

    def test_webhook_url_from_env(self):
        with patch.dict(os.environ, {"VILLAGE_GUIDE_WEBHOOK_URL": "https://hooks.test"}):
            assert CoordinatorConfig().webhook_url == "https://hooks.test"


class TestLoadConfig:
    def test_no_path(self):
        assert load_config(None) == CoordinatorConfig()

    def test_missing_file(self, tmp_path):
        assert load_config(str(tmp_path / "nope.yaml")) == CoordinatorConfig()

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(str(path)) == CoordinatorConfig()

    def test_sections(self, tmp_path):
        path = tmp_path / "guide.yaml"
        path.write_text(
            "ttl:\n"
            "  hot_ttl: 600\n"
            "retry:\n"
            "  max_retries: 1\n"
            "  base_delay_s: 0.5\n"
            "circuit_breaker:\n"
            "  failure_threshold: 2\n"
            "providers:\n"
            "  - name: Local\n"
            "    base_url: http://localhost:8000/v1\n"
            "    model: qwen\n"
            "    api_key_env: LOCAL_KEY\n"
            "similarity_threshold: 0.8\n"
            "default_spot: 油桐花海\n"
            "extra_intent_keywords:\n"
            "  navigation: [停车场]\n"
            "enabled_tools: [get_map]\n",
            encoding="utf-8",
        )
        config = load_config(str(path))

        assert config.ttl.hot_ttl == 600
        assert config.ttl.simple_ttl == 3600.0
        assert config.retry.max_retries == 1
        assert config.retry.base_delay_s == 0.5
        assert config.circuit_breaker.failure_threshold == 2
        assert [p.name for p in config.providers] == ["Local"]
        assert config.similarity_threshold == 0.8
        assert config.default_spot == "油桐花海"
        assert config.extra_intent_keywords == {"navigation": ("停车场",)}
        assert config.enabled_tools == ("get_map",)

    def test_invalid_values_raise(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("hot_threshold: 0\n")
        with pytest.raises(ValueError):
            load_config(str(path))
