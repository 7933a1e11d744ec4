"""
Multi-level rate limiting for integration tool calls.

Limits are enforced per connection, agent and tool with a sliding 60-second
window. Counting goes through a narrow ``CounterStore`` interface so the
in-process store can be swapped for a shared one without touching the policy.

Key features:
- Sliding-window log per key (exact counts, no burst at window edges)
- Atomic check-and-increment under a single async lock, across every key of a call
- Idle windows evicted before live ones, plus background cleanup
- Monotonic time for clock-jump immunity
"""

import asyncio
import math
from collections import OrderedDict, deque
from dataclasses import dataclass
from time import monotonic
from typing import (
    Callable,
    Deque,
    Dict,
    Iterable,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
)

from ..config import Settings, get_settings
from ..types import Connection, Grant, IntegrationProviderConfig, ToolDefinition
from ..utils.logging import get_logger

logger = get_logger(__name__)

GLOBAL_AGENT = "global"
PROVIDER_SCOPE = "provider"
ESCAPE_PREFIX = "~"

# (key, window_ms, max_requests)
CounterCheck = Tuple[str, int, int]


@dataclass(frozen=True)
class CounterResult:
    """Outcome of one check-and-increment."""

    allowed: bool
    retry_after: Optional[int]  # Whole seconds, only when rejected
    current: int
    remaining: int


@dataclass(frozen=True)
class RateLimitDecision:
    """Policy-level answer returned to the saga."""

    allowed: bool
    retry_after: Optional[int]
    limit: int
    remaining: int
    key: str


class CounterStore(Protocol):
    """Shared counter backing; implementations must make each call atomic."""

    async def check_and_increment(
        self, key: str, window_ms: int, max_requests: int
    ) -> CounterResult: ...

    async def check_and_increment_all(
        self, checks: Sequence[CounterCheck]
    ) -> List[CounterResult]:
        """Count one request against every key, or against none if any key is full."""
        ...

    async def reset(self, key: str) -> None: ...


class InMemoryCounterStore:
    """
    Process-local sliding-window counter store.

    Each key keeps the monotonic timestamps of the requests admitted in the
    current window. A single lock covers every key, which keeps
    check-and-increment atomic across concurrent saga runs and across the
    keys of one multi-key check.
    """

    def __init__(
        self,
        max_keys: int = 10000,
        cleanup_interval: int = 300,
        clock: Callable[[], float] = monotonic,
    ):
        self.max_keys = max_keys
        self.cleanup_interval = cleanup_interval
        self._clock = clock
        self._windows: "OrderedDict[str, Deque[float]]" = OrderedDict()
        self._window_lengths: Dict[str, float] = {}
        self._lock = asyncio.Lock()
        self._cleanup_task: Optional[asyncio.Task] = None

    async def start(self):
        """Start background cleanup task."""
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())
        logger.info(
            "Integration counter store started",
            max_keys=self.max_keys,
            cleanup_interval=self.cleanup_interval,
        )

    async def stop(self):
        """Stop background cleanup task."""
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        logger.info("Integration counter store stopped")

    def _expired_keys(self, now: float) -> List[str]:
        return [
            key
            for key, timestamps in self._windows.items()
            if not timestamps
            or timestamps[-1] <= now - self._window_lengths.get(key, 0.0)
        ]

    def _drop(self, keys: Iterable[str]) -> None:
        for key in keys:
            del self._windows[key]
            self._window_lengths.pop(key, None)

    def _make_room(self, now: float) -> None:
        """Free a slot for a new key; idle windows go before live ones."""
        expired = self._expired_keys(now)
        if expired:
            self._drop(expired)
            return

        evicted_key, _ = self._windows.popitem(last=False)
        self._window_lengths.pop(evicted_key, None)
        logger.warning(
            "Live rate limit window evicted (LRU)",
            evicted_key=evicted_key,
            window_count=len(self._windows),
        )

    def _window(self, key: str, window: float, now: float) -> Deque[float]:
        """Fetch or create a key's window, pruned to the last ``window`` seconds."""
        timestamps = self._windows.get(key)

        if timestamps is None:
            if len(self._windows) >= self.max_keys:
                self._make_room(now)
            timestamps = deque()
            self._windows[key] = timestamps
        else:
            self._windows.move_to_end(key)

        self._window_lengths[key] = window

        cutoff = now - window
        while timestamps and timestamps[0] <= cutoff:
            timestamps.popleft()
        return timestamps

    async def check_and_increment(
        self, key: str, window_ms: int, max_requests: int
    ) -> CounterResult:
        results = await self.check_and_increment_all([(key, window_ms, max_requests)])
        return results[0]

    async def check_and_increment_all(
        self, checks: Sequence[CounterCheck]
    ) -> List[CounterResult]:
        """
        Check every ``(key, window_ms, max_requests)`` and count the request
        against all of them only when each one has room.

        When any key is full nothing is counted and every result is rejected;
        only the full keys carry ``retry_after``.
        """
        async with self._lock:
            now = self._clock()
            windows = [
                self._window(key, window_ms / 1000.0, now) for key, window_ms, _ in checks
            ]
            admitted = all(
                len(timestamps) < max_requests
                for timestamps, (_, _, max_requests) in zip(windows, checks)
            )

            results = []
            for timestamps, (_, window_ms, max_requests) in zip(windows, checks):
                if admitted:
                    timestamps.append(now)
                    results.append(
                        CounterResult(
                            allowed=True,
                            retry_after=None,
                            current=len(timestamps),
                            remaining=max(0, max_requests - len(timestamps)),
                        )
                    )
                elif len(timestamps) >= max_requests:
                    retry_after = max(
                        1, math.ceil(timestamps[0] + window_ms / 1000.0 - now)
                    )
                    results.append(
                        CounterResult(
                            allowed=False,
                            retry_after=retry_after,
                            current=len(timestamps),
                            remaining=0,
                        )
                    )
                else:
                    results.append(
                        CounterResult(
                            allowed=False,
                            retry_after=None,
                            current=len(timestamps),
                            remaining=max_requests - len(timestamps),
                        )
                    )
            return results

    async def reset(self, key: str) -> None:
        async with self._lock:
            self._windows.pop(key, None)
            self._window_lengths.pop(key, None)

    def key_count(self) -> int:
        """Number of tracked windows (for diagnostics)."""
        return len(self._windows)

    async def _cleanup_loop(self):
        """Background task to remove idle windows."""
        while True:
            try:
                await asyncio.sleep(self.cleanup_interval)
                await self.cleanup()
            except asyncio.CancelledError:
                logger.info("Counter store cleanup loop cancelled")
                break
            except Exception as e:
                logger.error(
                    "Counter store cleanup error",
                    error=str(e),
                    error_type=type(e).__name__,
                )

    async def cleanup(self) -> int:
        """Drop windows whose newest request has aged out. Returns the count dropped."""
        async with self._lock:
            expired = self._expired_keys(self._clock())
            self._drop(expired)

        if expired:
            logger.info(
                "Counter store cleanup completed",
                expired_count=len(expired),
                remaining_windows=len(self._windows),
            )
        return len(expired)


def _tool_scope(tool_name: str) -> str:
    # Tool ids never collide with the provider key or with each other
    if tool_name == PROVIDER_SCOPE or tool_name.startswith(ESCAPE_PREFIX):
        return ESCAPE_PREFIX + tool_name
    return tool_name


def build_rate_limit_key(
    connection_id: str, agent_id: Optional[str], tool_name: Optional[str]
) -> str:
    """
    ``integration:{connection}:{agent|global}:{tool|provider}``.

    A tool whose id is ``provider`` (or starts with ``~``) gets a ``~``
    prefix so it never shares the provider-level window.
    """
    scope = _tool_scope(tool_name) if tool_name else PROVIDER_SCOPE
    return f"integration:{connection_id}:{agent_id or GLOBAL_AGENT}:{scope}"


def resolve_effective_rate_limit(
    provider: Optional[IntegrationProviderConfig] = None,
    connection: Optional[Connection] = None,
    grant: Optional[Grant] = None,
    tool: Optional[ToolDefinition] = None,
    settings: Optional[Settings] = None,
) -> int:
    """
    Most restrictive configured requests-per-minute value.

    Falls back to the default (30) when nothing is configured and clamps the
    result to the allowed range (1..1000).
    """
    settings = settings or get_settings()

    candidates = []
    if provider is not None and provider.rate_limit is not None:
        candidates.append(provider.rate_limit.requests_per_minute)
    if (
        connection is not None
        and connection.config_overrides is not None
        and connection.config_overrides.rate_limit is not None
    ):
        candidates.append(connection.config_overrides.rate_limit.requests_per_minute)
    if grant is not None and grant.rate_limit_override is not None:
        candidates.append(grant.rate_limit_override.requests_per_minute)
    if tool is not None and tool.rate_limit is not None:
        candidates.append(tool.rate_limit.requests_per_minute)

    limit = min(candidates) if candidates else settings.integration_default_rpm
    return max(settings.integration_min_rpm, min(settings.integration_max_rpm, limit))


class IntegrationRateLimiter:
    """Applies integration rate limit policy on top of a CounterStore."""

    def __init__(
        self,
        store: Optional[CounterStore] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store or InMemoryCounterStore(
            max_keys=self.settings.rate_limit_max_keys,
            cleanup_interval=self.settings.rate_limit_cleanup_interval,
        )
        self.window_ms = self.settings.rate_limit_window_seconds * 1000

    def _clamp(self, requests_per_minute: int) -> int:
        return max(
            self.settings.integration_min_rpm,
            min(self.settings.integration_max_rpm, requests_per_minute),
        )

    async def check_integration_rate_limit(
        self,
        connection_id: str,
        agent_id: Optional[str],
        tool_name: Optional[str],
        requests_per_minute: int,
    ) -> RateLimitDecision:
        """
        Count one call against the tool (or provider, when ``tool_name`` is None) key.

        Args:
            connection_id: Connection being called
            agent_id: Calling agent, None for connection-wide limits
            tool_name: Tool id, None for the provider-level key
            requests_per_minute: Limit for this key

        Returns:
            RateLimitDecision with a whole-second ``retry_after`` when rejected
        """
        key = build_rate_limit_key(connection_id, agent_id, tool_name)
        limit = self._clamp(requests_per_minute)

        result = await self.store.check_and_increment(key, self.window_ms, limit)

        if not result.allowed:
            logger.warning(
                "Integration rate limit exceeded",
                key=key,
                limit=limit,
                retry_after=result.retry_after,
            )
        else:
            logger.debug(
                "Integration rate limit check passed",
                key=key,
                limit=limit,
                remaining=result.remaining,
            )

        return RateLimitDecision(
            allowed=result.allowed,
            retry_after=result.retry_after,
            limit=limit,
            remaining=result.remaining,
            key=key,
        )

    async def check_integration_rate_limits(
        self,
        connection_id: str,
        agent_id: Optional[str],
        tool_name: str,
        requests_per_minute: int,
        provider_requests_per_minute: Optional[int] = None,
    ) -> RateLimitDecision:
        """
        Count one call against the tool key and, when configured, the provider key.

        Both keys are checked before either is counted, so a call rejected by
        one level never uses up a slot at the other.

        Returns:
            The tool-level decision when admitted, otherwise the decision of
            the key that rejected the call (the longest ``retry_after`` wins)
        """
        limits = [
            (
                build_rate_limit_key(connection_id, agent_id, tool_name),
                self._clamp(requests_per_minute),
            )
        ]
        if provider_requests_per_minute is not None:
            limits.append(
                (
                    build_rate_limit_key(connection_id, agent_id, None),
                    self._clamp(provider_requests_per_minute),
                )
            )

        results = await self.store.check_and_increment_all(
            [(key, self.window_ms, limit) for key, limit in limits]
        )

        decisions = [
            RateLimitDecision(
                allowed=result.allowed,
                retry_after=result.retry_after,
                limit=limit,
                remaining=result.remaining,
                key=key,
            )
            for (key, limit), result in zip(limits, results)
        ]
        blocking = [d for d in decisions if d.retry_after is not None]
        if not blocking:
            logger.debug(
                "Integration rate limit check passed",
                keys=[d.key for d in decisions],
                remaining=decisions[0].remaining,
            )
            return decisions[0]

        decision = max(blocking, key=lambda d: d.retry_after)
        logger.warning(
            "Integration rate limit exceeded",
            key=decision.key,
            limit=decision.limit,
            retry_after=decision.retry_after,
        )
        return decision

    async def reset_integration_rate_limit(
        self,
        connection_id: str,
        agent_id: Optional[str],
        tool_name: Optional[str] = None,
    ) -> None:
        """Clear a key's window, e.g. after the connection is re-authorized."""
        key = build_rate_limit_key(connection_id, agent_id, tool_name)
        await self.store.reset(key)
        logger.info("Integration rate limit reset", key=key)


# Singleton instance for dependency injection
_integration_rate_limiter: Optional[IntegrationRateLimiter] = None


def get_integration_rate_limiter() -> IntegrationRateLimiter:
    """Get or create singleton integration rate limiter instance."""
    global _integration_rate_limiter

    if _integration_rate_limiter is None:
        _integration_rate_limiter = IntegrationRateLimiter()

    return _integration_rate_limiter
