"""Per-error-kind circuit breaker backed by the shared counter store."""

from typing import Any, Dict, Iterable, Optional, Union

from crmsync.models.data_models import CircuitState, ErrorKind
from crmsync.monitoring.logger import StructuredLogger
from crmsync.store.counter_store import CounterStore


KindLike = Union[ErrorKind, str]


def _kind_name(kind: KindLike) -> str:
    return kind.value if isinstance(kind, ErrorKind) else str(kind)


class CircuitBreaker:
    """
    Circuit breaker with CLOSED/OPEN states per error kind.

    State lives in the counter store so every worker sees the same circuit:
    - ``<prefix>:failures:<kind>`` counts failures; its TTL (the window) is
      refreshed on every failure
    - ``<prefix>:open:<kind>`` marks an open circuit until its TTL (the
      cooldown) lapses

    There is no half-open probe: the circuit closes on the first recorded
    success of that kind or when the open marker expires.
    """

    def __init__(
        self,
        store: CounterStore,
        failure_threshold: int = 5,
        window_seconds: float = 600.0,
        cooldown_seconds: float = 300.0,
        key_prefix: str = "crmsync:circuit",
        logger: Optional[StructuredLogger] = None,
    ):
        """
        Initialize circuit breaker.

        Args:
            store: Shared counter store
            failure_threshold: Number of failures before opening circuit
            window_seconds: Lifetime of the failure counter after the last failure
            cooldown_seconds: Time an open circuit rejects calls
            key_prefix: Prefix for counter store keys
            logger: Optional structured logger
        """
        self.store = store
        self.failure_threshold = failure_threshold
        self.window_seconds = window_seconds
        self.cooldown_seconds = cooldown_seconds
        self.key_prefix = key_prefix
        self.logger = logger or StructuredLogger("crmsync.circuit")

    def _failures_key(self, kind: KindLike) -> str:
        return f"{self.key_prefix}:failures:{_kind_name(kind)}"

    def _open_key(self, kind: KindLike) -> str:
        return f"{self.key_prefix}:open:{_kind_name(kind)}"

    async def record_failure(self, kind: KindLike) -> int:
        """
        Count a failure and open the circuit once the threshold is reached.

        Returns:
            Failure count inside the current window
        """
        failures = await self.store.increment(self._failures_key(kind), 1, ttl=self.window_seconds)
        if failures >= self.failure_threshold and not await self.store.exists(self._open_key(kind)):
            await self.store.put(self._open_key(kind), True, ttl=self.cooldown_seconds)
            self.logger.circuit_breaker_state(_kind_name(kind), CircuitState.OPEN.value, failures=failures)
        return failures

    async def record_success(self, kind: KindLike) -> None:
        """Reset the failure counter and close the circuit for ``kind``."""
        was_open = await self.store.delete(self._open_key(kind))
        await self.store.delete(self._failures_key(kind))
        if was_open:
            self.logger.circuit_breaker_state(_kind_name(kind), CircuitState.CLOSED.value)

    async def is_open(self, kind: KindLike) -> bool:
        return await self.store.exists(self._open_key(kind))

    async def state(self, kind: KindLike) -> CircuitState:
        return CircuitState.OPEN if await self.is_open(kind) else CircuitState.CLOSED

    async def failure_count(self, kind: KindLike) -> int:
        return int(await self.store.get(self._failures_key(kind), 0))

    async def first_open(self, kinds: Iterable[ErrorKind]) -> Optional[ErrorKind]:
        """Return the first kind in ``kinds`` whose circuit is open."""
        for kind in kinds:
            if await self.is_open(kind):
                return kind
        return None

    async def status(self) -> Dict[str, Any]:
        result = {}
        for kind in ErrorKind:
            result[kind.value] = {
                "state": (await self.state(kind)).value,
                "failures": await self.failure_count(kind),
            }
        return result

    async def reset(self, kind: Optional[KindLike] = None) -> None:
        """Reset one circuit, or every circuit when ``kind`` is None."""
        kinds = [kind] if kind is not None else list(ErrorKind)
        for k in kinds:
            await self.store.delete(self._open_key(k))
            await self.store.delete(self._failures_key(k))
