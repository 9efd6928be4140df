"""
Resilient message dispatcher between the coordinator's roles.

The pipeline is split into logical roles that talk by message:

    FRONTEND   intake (the coordinator itself)
    TOOLS      tool executor (knowledge lookups, LLM-backed tools)
    KNOWLEDGE  knowledge store access
    MONITOR    usage bookkeeping
    SYSTEM     the dispatcher, as the source of terminal error messages

Each role registers one async handler. ``dispatch`` delivers a message
as-is; ``dispatch_with_retry`` adds the failure handling every
downstream call needs:

    - per-attempt timeout (asyncio.wait_for)
    - exponential backoff retry: delay = base_delay * multiplier ** attempt
    - a circuit breaker per downstream service ("tool:<name>" for tool
      calls, "agent:<role>" otherwise). An open circuit fails fast and
      is not retried.
    - on exhaustion, a terminal ERROR message to the original source
      instead of a silent failure
    - cancellation is terminal: recorded, never retried, never counted
      as a breaker failure, and re-raised to the caller

Circuit breaker state machine (per service):

    CLOSED ──(failures ≥ threshold)──► OPEN
    OPEN   ──(reset_timeout since last failure)──► HALF_OPEN
    HALF_OPEN ──(probe succeeds)──► CLOSED
    HALF_OPEN ──(probe fails)──► OPEN (failure timer restarts)

Only one probe is let through in HALF_OPEN; other callers keep failing
fast until the probe settles.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from village_guide.config import CircuitBreakerPolicy, RetryPolicy
from village_guide.errors import CircuitOpenError, VillageGuideError

logger = logging.getLogger("village_guide.dispatcher")

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[Any]]


class AgentRole(str, Enum):
    FRONTEND = "frontend"
    TOOLS = "tools"
    KNOWLEDGE = "knowledge"
    MONITOR = "monitor"
    SYSTEM = "system"
    BROADCAST = "broadcast"


class MessageType(str, Enum):
    REQUEST = "request"
    RESPONSE = "response"
    EVENT = "event"
    ERROR = "error"


@dataclass
class AgentMessage:
    """A message between roles.

    Attributes:
        source: Sending role. Terminal errors are routed back here.
        target: Receiving role, or BROADCAST for every other role.
        type: REQUEST / RESPONSE / EVENT / ERROR.
        action: What to do, e.g. "call_tool".
        payload: Action arguments.
        id: Unique message id (also the pending-table key).
        timestamp: Creation time (wall clock).
    """
    source: AgentRole
    target: AgentRole
    type: MessageType = MessageType.REQUEST
    action: str = ""
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: float = field(default_factory=time.time)

    @property
    def service_name(self) -> str:
        """Circuit-breaker key for this message's downstream service."""
        if self.action == "call_tool":
            return f"tool:{self.payload.get('tool_name', '')}"
        return f"agent:{self.target.value}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source.value,
            "target": self.target.value,
            "type": self.type.value,
            "action": self.action,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }


Handler = Callable[[AgentMessage], Awaitable[Any]]


# ---------------------------------------------------------------------------
# Circuit breaker
# ---------------------------------------------------------------------------

class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Failure tracker for one downstream service.

    Call ``before_call()`` before each attempt (raises CircuitOpenError
    when the call must not go through), then exactly one of
    ``record_success()``, ``record_failure()`` or ``record_cancelled()``.
    """

    def __init__(
        self,
        service: str,
        policy: Optional[CircuitBreakerPolicy] = None,
        clock: Clock = time.monotonic,
    ):
        self.service = service
        self.policy = policy or CircuitBreakerPolicy()
        self._clock = clock
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self._probe_in_flight = False

    @property
    def is_open(self) -> bool:
        return self.state != CircuitState.CLOSED

    def before_call(self) -> None:
        if self.state == CircuitState.CLOSED:
            return

        if self.state == CircuitState.OPEN:
            elapsed = self._clock() - (self.last_failure_time or 0.0)
            remaining = self.policy.reset_timeout_s - elapsed
            if remaining > 0:
                raise CircuitOpenError(self.service, remaining)
            self.state = CircuitState.HALF_OPEN
            logger.info("Circuit for '%s' half-open, probing", self.service)

        if self._probe_in_flight:
            raise CircuitOpenError(self.service, 0.0)
        self._probe_in_flight = True

    def record_success(self) -> None:
        if self.state != CircuitState.CLOSED:
            logger.info("Circuit for '%s' closed", self.service)
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self._probe_in_flight = False

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self._clock()
        was_probe = self.state == CircuitState.HALF_OPEN
        self._probe_in_flight = False

        if was_probe or self.failure_count >= self.policy.failure_threshold:
            if self.state != CircuitState.OPEN:
                logger.warning(
                    "Circuit for '%s' opened after %d failures",
                    self.service, self.failure_count,
                )
            self.state = CircuitState.OPEN

    def record_cancelled(self) -> None:
        """A cancelled call settles nothing; free the probe slot."""
        self._probe_in_flight = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "last_failure_time": self.last_failure_time,
            "is_open": self.is_open,
        }


# ---------------------------------------------------------------------------
# Dispatch results
# ---------------------------------------------------------------------------

class DispatchOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"              # Retries exhausted
    CIRCUIT_OPEN = "circuit_open"  # Rejected without calling
    CANCELLED = "cancelled"        # Caller gave up; re-raised, never retried


@dataclass
class DispatchResult:
    """Outcome of ``dispatch_with_retry``.

    Attributes:
        outcome: How the call ended.
        service: Circuit-breaker key of the downstream service.
        payload: Handler return value (SUCCESS only).
        error: Last error message (FAILED / CIRCUIT_OPEN).
        attempts: Handler invocations made.
    """
    outcome: DispatchOutcome
    service: str
    payload: Any = None
    error: str = ""
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.outcome == DispatchOutcome.SUCCESS


@dataclass
class PendingRequest:
    message: AgentMessage
    started_at: float
    attempt: int = 0


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

class ResilientDispatcher:
    """Routes messages to role handlers with timeout, retry and breaking.

    Usage:
        dispatcher = ResilientDispatcher()
        dispatcher.register(AgentRole.TOOLS, tool_executor.handle)
        result = await dispatcher.dispatch_with_retry(AgentMessage(
            source=AgentRole.FRONTEND,
            target=AgentRole.TOOLS,
            action="call_tool",
            payload={"tool_name": "get_map", "query": "怎么去油桐花海"},
        ))
        if result.ok:
            use(result.payload)
    """

    def __init__(
        self,
        retry: Optional[RetryPolicy] = None,
        breaker_policy: Optional[CircuitBreakerPolicy] = None,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        self.retry = retry or RetryPolicy()
        self.breaker_policy = breaker_policy or CircuitBreakerPolicy()
        self._clock = clock
        self._sleep = sleep
        self._handlers: Dict[AgentRole, Handler] = {}
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._pending: Dict[str, PendingRequest] = {}
        self._history: List[Dict[str, Any]] = []
        self._max_history = 100

        self._stats = {
            "dispatched": 0,
            "successes": 0,
            "failures": 0,
            "retries": 0,
            "timeouts": 0,
            "circuit_open_rejections": 0,
            "cancellations": 0,
            "terminal_errors": 0,
        }

    # -- Registration --------------------------------------------------

    def register(self, role: AgentRole, handler: Handler) -> None:
        if role == AgentRole.BROADCAST:
            raise ValueError("Cannot register a handler for BROADCAST")
        if role in self._handlers:
            logger.warning("Replacing handler for role %s", role.value)
        self._handlers[role] = handler

    def unregister(self, role: AgentRole) -> bool:
        return self._handlers.pop(role, None) is not None

    def get_breaker(self, service: str) -> CircuitBreaker:
        breaker = self._breakers.get(service)
        if breaker is None:
            breaker = CircuitBreaker(service, self.breaker_policy, self._clock)
            self._breakers[service] = breaker
        return breaker

    # -- Plain dispatch ------------------------------------------------

    async def dispatch(self, msg: AgentMessage) -> Any:
        """Deliver a message with no retry or breaking.

        Single target: returns the handler's result; handler errors
        propagate. BROADCAST: every other role's handler runs
        concurrently and one failure does not stop the rest. Returns
        {role value: result or exception}.
        """
        self._stats["dispatched"] += 1

        if msg.target == AgentRole.BROADCAST:
            targets = [r for r in self._handlers if r != msg.source]
            outcomes = await asyncio.gather(
                *(self._handlers[r](msg) for r in targets),
                return_exceptions=True,
            )
            results: Dict[str, Any] = {}
            for role, outcome in zip(targets, outcomes):
                if isinstance(outcome, Exception):
                    logger.warning(
                        "Broadcast '%s' to %s failed: %s",
                        msg.action, role.value, outcome,
                    )
                results[role.value] = outcome
            return results

        handler = self._handlers.get(msg.target)
        if handler is None:
            raise VillageGuideError(
                f"No handler registered for role '{msg.target.value}'"
            )
        return await handler(msg)

    # -- Resilient dispatch --------------------------------------------

    async def dispatch_with_retry(self, msg: AgentMessage) -> DispatchResult:
        """Deliver a message with timeout, retry and circuit breaking.

        Never raises for downstream failure; the outcome is in the
        returned DispatchResult. CancelledError is re-raised.
        """
        service = msg.service_name
        breaker = self.get_breaker(service)
        self._pending[msg.id] = PendingRequest(message=msg, started_at=self._clock())
        attempts = 0
        last_error = ""
        in_attempt = False

        try:
            for attempt in range(self.retry.max_retries + 1):
                if attempt > 0:
                    self._stats["retries"] += 1
                    await self._sleep(self.retry.delay_for(attempt - 1))

                try:
                    breaker.before_call()
                except CircuitOpenError as e:
                    self._stats["circuit_open_rejections"] += 1
                    logger.warning("%s", e)
                    result = DispatchResult(
                        outcome=DispatchOutcome.CIRCUIT_OPEN,
                        service=service,
                        error=str(e),
                        attempts=attempts,
                    )
                    self._record(msg, result.outcome, attempts)
                    await self._send_terminal_error(msg, result)
                    return result

                attempts += 1
                self._pending[msg.id].attempt = attempts
                in_attempt = True
                try:
                    payload = await asyncio.wait_for(
                        self.dispatch(msg), timeout=self.retry.timeout_s,
                    )
                except asyncio.TimeoutError:
                    in_attempt = False
                    breaker.record_failure()
                    self._stats["timeouts"] += 1
                    last_error = f"timeout after {self.retry.timeout_s:.1f}s"
                    logger.warning(
                        "Attempt %d to %s timed out", attempts, service,
                    )
                    continue
                except Exception as e:
                    in_attempt = False
                    breaker.record_failure()
                    last_error = str(e) or type(e).__name__
                    logger.warning(
                        "Attempt %d to %s failed: %s", attempts, service, e,
                    )
                    continue

                in_attempt = False
                breaker.record_success()
                self._stats["successes"] += 1
                self._record(msg, DispatchOutcome.SUCCESS, attempts)
                return DispatchResult(
                    outcome=DispatchOutcome.SUCCESS,
                    service=service,
                    payload=payload,
                    attempts=attempts,
                )

            self._stats["failures"] += 1
            logger.error(
                "Request %s to %s failed after %d attempts: %s",
                msg.id, service, attempts, last_error,
            )
            result = DispatchResult(
                outcome=DispatchOutcome.FAILED,
                service=service,
                error=last_error,
                attempts=attempts,
            )
            self._record(msg, result.outcome, attempts)
            await self._send_terminal_error(msg, result)
            return result
        except asyncio.CancelledError:
            if in_attempt:
                breaker.record_cancelled()
            self._stats["cancellations"] += 1
            self._record(msg, DispatchOutcome.CANCELLED, attempts)
            logger.info("Request %s to %s cancelled", msg.id, service)
            raise
        finally:
            self._pending.pop(msg.id, None)

    async def _send_terminal_error(
        self, msg: AgentMessage, result: DispatchResult,
    ) -> None:
        """Tell the original sender its request is finished for good."""
        self._stats["terminal_errors"] += 1
        if msg.source not in self._handlers:
            return
        error_msg = AgentMessage(
            source=AgentRole.SYSTEM,
            target=msg.source,
            type=MessageType.ERROR,
            action="request_failed",
            payload={
                "original_id": msg.id,
                "service": result.service,
                "outcome": result.outcome.value,
                "error": result.error,
                "message": "请求失败，请稍后重试",
            },
        )
        try:
            await self.dispatch(error_msg)
        except Exception as e:
            logger.warning(
                "Could not deliver terminal error to %s: %s",
                msg.source.value, e,
            )

    # -- Introspection -------------------------------------------------

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def get_system_health(self) -> Dict[str, Any]:
        return {
            "registered_roles": [r.value for r in self._handlers],
            "pending_requests": len(self._pending),
            "circuit_breakers": {
                name: b.to_dict() for name, b in self._breakers.items()
            },
            "open_circuits": [
                name for name, b in self._breakers.items() if b.is_open
            ],
        }

    def get_stats(self) -> Dict[str, Any]:
        return dict(self._stats)

    def pending_requests(self) -> List[Dict[str, Any]]:
        now = self._clock()
        return [
            {
                "id": p.message.id,
                "service": p.message.service_name,
                "attempt": p.attempt,
                "age_s": now - p.started_at,
            }
            for p in self._pending.values()
        ]

    def recent_outcomes(self, limit: int = 20) -> List[Dict[str, Any]]:
        return self._history[-limit:]

    def _record(
        self, msg: AgentMessage, outcome: DispatchOutcome, attempts: int,
    ) -> None:
        self._history.append({
            "id": msg.id,
            "service": msg.service_name,
            "outcome": outcome.value,
            "attempts": attempts,
            "timestamp": time.time(),
        })
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]
