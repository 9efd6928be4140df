"""Exception types raised inside the coordinator.

None of these reach the caller of ``process_input``; the coordinator turns
downstream exhaustion into a FallbackResult.
"""

from __future__ import annotations


class VillageGuideError(Exception):
    """Base class for coordinator errors."""


class ProviderError(VillageGuideError):
    """Every LLM provider in the chain failed."""

    def __init__(self, message: str, provider: str = ""):
        self.provider = provider
        super().__init__(message)


class CircuitOpenError(VillageGuideError):
    """A call was rejected because the service's circuit is open."""

    def __init__(self, service: str, retry_after: float):
        self.service = service
        self.retry_after = retry_after
        super().__init__(
            f"Circuit open for '{service}', retry after {retry_after:.1f}s"
        )


class ToolNotFoundError(VillageGuideError):
    """The tool executor has no tool by that name (or it is disabled)."""

    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__(f"Tool '{tool_name}' not found")
