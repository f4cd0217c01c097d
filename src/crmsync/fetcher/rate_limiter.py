"""Daily token budget rate limiting."""

import asyncio
import random
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

from crmsync.models.data_models import TokenBudget, canonical_entity_type
from crmsync.models.errors import RateLimitError
from crmsync.monitoring.logger import StructuredLogger
from crmsync.store.counter_store import CounterStore


def _parse_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


class RateLimitManager:
    """Token-budget rate limiter shared by every worker through the counter store.

    Each API call costs a number of tokens looked up by entity type (files cost
    2, everything else 1 by default). Usage is tracked per UTC day under
    ``<prefix>:usage:<YYYY-MM-DD>`` and the key expires at the next UTC
    midnight, so the budget resets without any explicit job.
    """

    DEFAULT_RETRY_AFTER = 60.0

    def __init__(
        self,
        store: CounterStore,
        daily_budget: int = 10000,
        token_costs: Optional[Dict[str, int]] = None,
        max_delay: float = 16.0,
        jitter: bool = True,
        enabled: bool = True,
        key_prefix: str = "crmsync:rate_limit",
        now: Callable[[], float] = time.time,
        sleeper: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        logger: Optional[StructuredLogger] = None,
    ):
        """Initialize rate limiter.

        Args:
            store: Shared counter store holding the daily usage
            daily_budget: Tokens available per UTC day (default: 10000)
            token_costs: Cost per entity type; unknown types cost 1
            max_delay: Cap for backoff and server retry hints in seconds (default: 16)
            jitter: Whether exponential backoff adds up to 10% jitter
            enabled: When False every request is admitted and nothing is counted
            key_prefix: Prefix for counter store keys
            now: Wall clock returning epoch seconds (default: time.time)
            sleeper: Async sleep function (default: asyncio.sleep)
            rng: Random source for jitter
            logger: Optional structured logger
        """
        self.store = store
        self.daily_budget = daily_budget
        self.token_costs = dict(token_costs or {"files": 2})
        self.max_delay = max_delay
        self.jitter = jitter
        self.enabled = enabled
        self.key_prefix = key_prefix
        self._now = now
        self._sleep = sleeper
        self._rng = rng or random.Random()
        self.logger = logger or StructuredLogger("crmsync.rate_limit")

    def _utc_now(self) -> datetime:
        return datetime.fromtimestamp(self._now(), tz=timezone.utc)

    def usage_key(self) -> str:
        return f"{self.key_prefix}:usage:{self._utc_now().date().isoformat()}"

    def time_until_reset(self) -> float:
        """Seconds until the next UTC midnight."""
        current = self._utc_now()
        tomorrow = datetime.combine(current.date() + timedelta(days=1), datetime.min.time(), tzinfo=timezone.utc)
        return (tomorrow - current).total_seconds()

    def token_cost(self, endpoint: str) -> int:
        return self.token_costs.get(canonical_entity_type(endpoint), 1)

    async def current_usage(self) -> int:
        return int(await self.store.get(self.usage_key(), 0))

    async def can_admit(self, endpoint: str, cost: Optional[int] = None) -> bool:
        """
        Check whether a request to ``endpoint`` fits in today's budget.

        Args:
            endpoint: Entity type or endpoint path
            cost: Explicit token cost; looked up from the cost table when None

        Returns:
            False exactly when used + cost would exceed the daily budget
        """
        if not self.enabled:
            return True

        cost = self.token_cost(endpoint) if cost is None else cost
        used = await self.current_usage()
        if used + cost > self.daily_budget:
            self.logger.warning(
                "rate_limit_budget_exhausted",
                endpoint=endpoint,
                cost=cost,
                used=used,
                daily_budget=self.daily_budget,
                reset_in_seconds=round(self.time_until_reset()),
            )
            return False
        return True

    async def consume(self, endpoint: str, cost: Optional[int] = None) -> int:
        """
        Record token usage for a completed request.

        Returns:
            Total tokens used today after this request
        """
        if not self.enabled:
            return await self.current_usage()

        cost = self.token_cost(endpoint) if cost is None else cost
        used = await self.store.increment(self.usage_key(), cost, ttl=self.time_until_reset())
        self.logger.debug("tokens_consumed", endpoint=endpoint, cost=cost, used=used, daily_budget=self.daily_budget)
        return used

    def wait_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """
        Delay before the next attempt after a rate limit.

        A server hint wins and is only capped at ``max_delay``. Without one the
        delay grows exponentially (1, 2, 4, ... seconds) up to ``max_delay``
        with up to 10% added jitter.

        Args:
            attempt: 1-based attempt number
            retry_after: Retry-After hint from the server in seconds

        Returns:
            Delay in seconds
        """
        if retry_after is not None:
            return float(min(retry_after, self.max_delay))

        delay = float(min(2 ** max(0, attempt - 1), self.max_delay))
        if self.jitter:
            delay += self._rng.uniform(0, delay * 0.1)
        return delay

    async def wait_for_rate_limit(self, attempt: int, retry_after: Optional[float] = None) -> float:
        delay = self.wait_delay(attempt, retry_after)
        self.logger.log("rate_limit_wait", attempt=attempt, delay=round(delay, 3), retry_after=retry_after)
        await self._sleep(delay)
        return delay

    async def remaining_tokens(self) -> int:
        return max(0, self.daily_budget - await self.current_usage())

    async def usage_percentage(self) -> float:
        return (await self.current_usage() / self.daily_budget) * 100

    async def is_approaching_limit(self, threshold: float = 80.0) -> bool:
        return await self.usage_percentage() > threshold

    async def is_limit_exceeded(self) -> bool:
        return await self.current_usage() >= self.daily_budget

    async def budget(self) -> TokenBudget:
        return TokenBudget(
            used=await self.current_usage(),
            daily_limit=self.daily_budget,
            window_start=self._utc_now().date().isoformat(),
        )

    async def handle_rate_limit_response(
        self, headers: Mapping[str, Any], endpoint: str = ""
    ) -> RateLimitError:
        """
        Interpret the rate-limit headers of a 429 response.

        The server's ``x-ratelimit-used`` value overwrites the local counter so
        that usage from other clients of the same account is accounted for.

        Args:
            headers: Response headers (matched case-insensitively)
            endpoint: Endpoint that was rate limited

        Returns:
            RateLimitError carrying the header values
        """
        lowered = {str(k).lower(): v for k, v in headers.items()}
        remaining = _parse_int(lowered.get("x-ratelimit-remaining"))
        used = _parse_int(lowered.get("x-ratelimit-used"))
        limit = _parse_int(lowered.get("x-ratelimit-limit"))
        reset_time = _parse_int(lowered.get("x-ratelimit-reset"))
        hinted = _parse_int(lowered.get("retry-after"))
        retry_after = float(hinted) if hinted is not None else self.DEFAULT_RETRY_AFTER

        if used is not None and self.enabled:
            await self.store.put(self.usage_key(), used, ttl=self.time_until_reset())

        self.logger.warning(
            "rate_limit_response",
            endpoint=endpoint,
            remaining=remaining,
            used=used,
            limit=limit,
            reset_time=reset_time,
            retry_after=retry_after,
        )

        return RateLimitError(
            f"Rate limit exceeded for {endpoint or 'request'}",
            status_code=429,
            retry_after=retry_after,
            remaining=remaining,
            used=used,
            limit=limit,
            reset_time=reset_time,
            retry_after_hint=hinted is not None,
            context={"endpoint": endpoint},
        )

    async def status(self) -> Dict[str, Any]:
        used = await self.current_usage()
        return {
            "enabled": self.enabled,
            "daily_budget": self.daily_budget,
            "used": used,
            "remaining": max(0, self.daily_budget - used),
            "usage_percentage": round(used / self.daily_budget * 100, 2),
            "approaching_limit": used / self.daily_budget * 100 > 80.0,
            "reset_in_seconds": round(self.time_until_reset()),
        }

    async def reset(self) -> None:
        """Clear today's usage (manual recovery and tests)."""
        await self.store.delete(self.usage_key())
        self.logger.log("rate_limit_reset")
