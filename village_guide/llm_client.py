"""
LLM completion with provider fallback.

Every LLM-backed tool goes through LLMProviderChain.complete(). The chain
tries each configured provider in order (SiliconFlow first, Zhipu as the
fallback by default) against its OpenAI-compatible
``/chat/completions`` endpoint. When a provider fails and another one
is left to try, a webhook alert is fired so the operator learns about
the outage; the alert is fire-and-forget and never retried.

If every provider fails, ProviderError is raised. The dispatcher treats
that like any other downstream failure (retry, then circuit breaking).

Environment variables:
    SILICON_FLOW_API_KEY      SiliconFlow
    ZHIPU_API_KEY             Zhipu
    VILLAGE_GUIDE_WEBHOOK_URL alert webhook root (alerts off when unset)
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
import urllib.parse
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Set

import httpx

from village_guide.config import ProviderConfig, default_providers
from village_guide.errors import ProviderError

logger = logging.getLogger("village_guide.llm_client")

_CODE_FENCE = re.compile(r"```json\n?|```")


@dataclass
class Completion:
    """A successful completion.

    Attributes:
        provider: Name of the provider that answered.
        model: Model that answered.
        content: Parsed JSON object in JSON mode, otherwise text.
    """
    provider: str
    model: str
    content: Any


def strip_code_fences(text: str) -> str:
    return _CODE_FENCE.sub("", text).strip()


# ---------------------------------------------------------------------------
# Webhook alerts
# ---------------------------------------------------------------------------

class WebhookNotifier:
    """Fire-and-forget provider failure alerts.

    The alert is a GET to ``<webhook_url>/<date>-<provider>-<model>-<error>``
    with every path part URL-encoded and the error cut to 50 characters.
    """

    def __init__(self, webhook_url: str = ""):
        self.webhook_url = webhook_url.rstrip("/")
        self._client: Optional[httpx.AsyncClient] = None
        self._tasks: Set[asyncio.Task] = set()
        self.sent = 0
        self.failed = 0

    async def startup(self):
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(10.0))

    async def shutdown(self):
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._client:
            await self._client.aclose()
            self._client = None

    def build_url(self, provider: str, model: str, error: str) -> str:
        date_str = time.strftime("%Y-%m-%d_%H:%M:%S")
        safe_error = re.sub(r"[\r\n]", " ", error)[:50]
        parts = "-".join(
            urllib.parse.quote(p, safe="")
            for p in (provider, model, safe_error)
        )
        return f"{self.webhook_url}/{date_str}-{parts}"

    def alert(self, provider: str, model: str, error: str) -> None:
        """Schedule an alert without waiting for it."""
        if not self.webhook_url or self._client is None:
            return
        task = asyncio.get_running_loop().create_task(
            self._send(self.build_url(provider, model, error)),
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send(self, url: str) -> None:
        try:
            await self._client.get(url)
            self.sent += 1
        except Exception as e:
            self.failed += 1
            logger.warning("Webhook alert failed: %s", e)


# ---------------------------------------------------------------------------
# Provider chain
# ---------------------------------------------------------------------------

class LLMProviderChain:
    """OpenAI-compatible chat completion with ordered provider fallback.

    Usage:
        chain = LLMProviderChain()
        await chain.startup()
        completion = await chain.complete(system_prompt, user_prompt)
        await chain.shutdown()
    """

    def __init__(
        self,
        providers: Optional[Sequence[ProviderConfig]] = None,
        notifier: Optional[WebhookNotifier] = None,
    ):
        self.providers = list(providers if providers is not None else default_providers())
        if not self.providers:
            raise ValueError("LLMProviderChain needs at least one provider")
        self.notifier = notifier
        self._client: Optional[httpx.AsyncClient] = None
        self._calls: Dict[str, Dict[str, int]] = {
            p.name: {"success": 0, "failure": 0} for p in self.providers
        }

    async def startup(self):
        timeout = max(p.timeout_s for p in self.providers)
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        if self.notifier is not None:
            await self.notifier.startup()

    async def shutdown(self):
        if self._client:
            await self._client.aclose()
            self._client = None
        if self.notifier is not None:
            await self.notifier.shutdown()

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        json_mode: bool = True,
    ) -> Completion:
        """Ask each provider in turn until one answers.

        Raises:
            ProviderError: every provider failed.
        """
        if not self._client:
            raise ProviderError("LLM client not started")

        last_error: Optional[ProviderError] = None
        for i, provider in enumerate(self.providers):
            try:
                content = await self._call_with_deadline(
                    provider, system_prompt, user_prompt, json_mode,
                )
            except ProviderError as e:
                self._calls[provider.name]["failure"] += 1
                last_error = e
                if i < len(self.providers) - 1:
                    logger.warning(
                        "Provider %s failed (%s), falling back to %s",
                        provider.name, e, self.providers[i + 1].name,
                    )
                    if self.notifier is not None:
                        self.notifier.alert(provider.name, provider.model, str(e))
                continue

            self._calls[provider.name]["success"] += 1
            return Completion(
                provider=provider.name, model=provider.model, content=content,
            )

        logger.error("All LLM providers failed: %s", last_error)
        raise ProviderError(
            f"All providers failed: {last_error}",
            provider=last_error.provider if last_error else "",
        )

    async def _call_with_deadline(
        self,
        provider: ProviderConfig,
        system_prompt: str,
        user_prompt: str,
        json_mode: bool,
    ) -> Any:
        # httpx timeouts are per phase; this bounds the whole call
        try:
            return await asyncio.wait_for(
                self._call_provider(provider, system_prompt, user_prompt, json_mode),
                timeout=provider.timeout_s,
            )
        except asyncio.TimeoutError as e:
            raise ProviderError(
                f"timeout after {provider.timeout_s}s", provider=provider.name,
            ) from e

    async def _call_provider(
        self,
        provider: ProviderConfig,
        system_prompt: str,
        user_prompt: str,
        json_mode: bool,
    ) -> Any:
        api_key = provider.api_key
        if not api_key:
            raise ProviderError(
                f"{provider.api_key_env or 'API key'} not set", provider=provider.name,
            )

        payload: Dict[str, Any] = {
            "model": provider.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": provider.temperature,
            "stream": False,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        try:
            resp = await self._client.post(
                f"{provider.base_url}/chat/completions",
                json=payload,
                headers={
                    "Content-Type": "application/json",
                    "Authorization": f"Bearer {api_key}",
                },
                timeout=provider.timeout_s,
            )
        except httpx.TimeoutException as e:
            raise ProviderError(f"timeout: {e}", provider=provider.name) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"network error: {e}", provider=provider.name) from e

        if resp.status_code != 200:
            logger.warning(
                "Provider %s returned %d: %s",
                provider.name, resp.status_code, resp.text[:200],
            )
            raise ProviderError(f"HTTP {resp.status_code}", provider=provider.name)

        try:
            data = resp.json()
            text = data["choices"][0]["message"]["content"] or "{}"
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ProviderError(
                f"malformed response: {e}", provider=provider.name,
            ) from e

        cleaned = strip_code_fences(text)
        if not json_mode:
            return cleaned
        try:
            return json.loads(cleaned)
        except json.JSONDecodeError as e:
            raise ProviderError(
                "Invalid JSON response from API", provider=provider.name,
            ) from e

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "providers": [p.name for p in self.providers],
            "calls": {name: dict(c) for name, c in self._calls.items()},
        }
        if self.notifier is not None:
            stats["alerts_sent"] = self.notifier.sent
            stats["alerts_failed"] = self.notifier.failed
        return stats
