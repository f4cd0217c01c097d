"""Exception classification with per-kind retry policy."""

import random
from typing import Any, Dict, Optional

import httpx

from crmsync.fetcher.circuit_breaker import CircuitBreaker
from crmsync.fetcher.transport import TransportError
from crmsync.models.data_models import ErrorKind
from crmsync.models.errors import (
    ApiError,
    AuthError,
    ConnectionFailure,
    NotFoundError,
    OutOfMemoryError,
    QuotaError,
    RateLimitError,
    ServerError,
    SyncError,
)
from crmsync.monitoring.logger import StructuredLogger


CONNECTION_KEYWORDS = (
    "connection",
    "timeout",
    "timed out",
    "dns",
    "ssl",
    "certificate",
    "network",
    "unreachable",
    "refused",
    "reset",
    "broken pipe",
)

MEMORY_KEYWORDS = (
    "memory",
    "out of memory",
    "memory limit",
    "memory exhausted",
    "allocation",
    "fatal error",
)

# Kinds whose delay grows with the attempt number
BACKOFF_KINDS = (ErrorKind.SERVER, ErrorKind.CONNECTION, ErrorKind.RATE_LIMIT)

MAX_BACKOFF_SECONDS = 60.0


def _status_code(error: BaseException) -> Optional[int]:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    status = getattr(error, "status_code", None)
    return status if isinstance(status, int) else None


def _retry_after_header(headers: Any) -> Optional[float]:
    if not headers:
        return None
    for key, value in dict(headers).items():
        if str(key).lower() == "retry-after":
            try:
                return float(value)
            except (TypeError, ValueError):
                return None
    return None


class ErrorClassifier:
    """
    Maps raw exceptions onto the ``SyncError`` taxonomy and decides retries.

    Status codes win over message inspection:
    - 401/403 -> auth (never retried)
    - 402 -> quota
    - 404 or "item not found" -> not found
    - 429 -> rate limit (Retry-After honored, default 60s)
    - 5xx -> server (retry after 30s)
    - other 4xx -> generic API error

    Without a status code, connection and memory keywords in the message
    select the connection and memory kinds; anything else is generic and
    not retryable.
    """

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        rng: Optional[random.Random] = None,
        logger: Optional[StructuredLogger] = None,
    ):
        """
        Initialize classifier.

        Args:
            circuit_breaker: Breaker consulted by should_retry and fed by record_*
            rng: Random source for retry jitter
            logger: Optional structured logger
        """
        self.circuit_breaker = circuit_breaker
        self._rng = rng or random.Random()
        self.logger = logger or StructuredLogger("crmsync.errors")

    def classify(self, error: BaseException, context: Optional[Dict[str, Any]] = None) -> SyncError:
        """
        Classify an exception.

        Args:
            error: Raised exception
            context: Operation context (operation, entity_type, page, ...)

        Returns:
            Classified error; an existing SyncError is returned with context added
        """
        context = dict(context or {})

        if isinstance(error, SyncError):
            return error.add_context(**context)

        status = _status_code(error)
        if status is not None:
            classified = self._classify_status(error, status, context)
        elif isinstance(error, (httpx.TimeoutException, httpx.TransportError, ConnectionError, TimeoutError)):
            classified = self._connection_error(error, context)
        elif isinstance(error, MemoryError):
            classified = self._memory_error(error, context)
        else:
            classified = self._classify_message(error, context)

        classified.__cause__ = error
        return classified

    def _classify_status(self, error: BaseException, status: int, context: Dict[str, Any]) -> SyncError:
        message = str(error) or f"HTTP {status}"
        if status == 401:
            return AuthError(
                f"Authentication failed: {message}",
                status_code=status,
                max_retries=2,
                context=context,
                suggestion="Check the API token or OAuth credentials",
            )
        if status == 403:
            return AuthError(
                f"Access forbidden: {message}",
                status_code=status,
                max_retries=1,
                context=context,
                suggestion="Check the permissions of the API user",
            )
        if status == 402:
            return QuotaError(
                f"Payment required or quota exceeded: {message}",
                status_code=status,
                context=context,
                suggestion="Check the account plan and API quota",
            )
        if status == 404 or "item not found" in message.lower():
            return self._not_found(message, context, status)
        if status == 429:
            headers = error.headers if isinstance(error, TransportError) else getattr(
                getattr(error, "response", None), "headers", None
            )
            hinted = _retry_after_header(headers)
            return RateLimitError(
                f"Rate limit exceeded: {message}",
                status_code=status,
                retry_after=hinted if hinted is not None else RateLimitError.default_retry_after,
                retry_after_hint=hinted is not None,
                context=context,
            )
        if status >= 500:
            return ServerError(f"Server error: {message}", status_code=status, context=context)
        return ApiError(message, status_code=status, context=context)

    def _not_found(self, message: str, context: Dict[str, Any], status: Optional[int] = 404) -> NotFoundError:
        entity_type = context.get("entity_type", "unknown")
        return NotFoundError(
            message,
            status_code=status or 404,
            context=context,
            suggestion=(
                f"Consider removing '{entity_type}' from the enabled entity types "
                "if it is not available for this account"
            ),
        )

    def _connection_error(self, error: BaseException, context: Dict[str, Any]) -> ConnectionFailure:
        message = str(error) or type(error).__name__
        return ConnectionFailure(
            f"Connection error: {message}",
            context=context,
            suggestion="Check network connectivity to the CRM API",
        )

    def _memory_error(self, error: BaseException, context: Dict[str, Any]) -> OutOfMemoryError:
        message = str(error) or "memory exhausted"
        return OutOfMemoryError(
            f"Memory error: {message}",
            context=context,
            suggestion="Reduce the page size or raise the memory limit",
        )

    def _classify_message(self, error: BaseException, context: Dict[str, Any]) -> SyncError:
        message = str(error)
        lowered = message.lower()

        if "item not found" in lowered:
            return self._not_found(message, context)
        if any(keyword in lowered for keyword in CONNECTION_KEYWORDS):
            return self._connection_error(error, context)
        if any(keyword in lowered for keyword in MEMORY_KEYWORDS):
            return self._memory_error(error, context)

        if not message.strip():
            operation = context.get("operation", "operation")
            entity_type = context.get("entity_type", "unknown")
            message = f"{type(error).__name__} during {operation} for {entity_type}"
        return ApiError(message, context=context)

    async def should_retry(self, error: SyncError, attempt: int) -> bool:
        """
        Decide whether ``attempt`` may be followed by another one.

        Returns:
            False when the kind's circuit is open, the error is not retryable
            or ``attempt`` has reached the error's max_retries
        """
        if await self.circuit_breaker.is_open(error.kind):
            return False
        if not error.retryable:
            return False
        return attempt < error.max_retries

    def retry_delay(self, error: SyncError, attempt: int) -> float:
        """
        Delay before retrying ``error`` after ``attempt``.

        Server, connection and rate-limit errors back off exponentially from
        1s (capped at 60s) but never below their retry_after; other kinds use
        retry_after as is. A uniform +/-10% jitter is applied.
        """
        base = float(error.retry_after)
        if error.kind in BACKOFF_KINDS:
            base = max(base, min(2 ** max(0, attempt - 1), MAX_BACKOFF_SECONDS))
        jitter = self._rng.uniform(-0.1, 0.1) * base
        return max(0.0, base + jitter)

    async def record_failure(self, error: SyncError) -> int:
        failures = await self.circuit_breaker.record_failure(error.kind)
        self.logger.debug(
            "error_recorded",
            kind=error.kind.value,
            status=error.status_code,
            failures=failures,
            error=error.message,
        )
        return failures

    async def record_success(self, kind: ErrorKind) -> None:
        await self.circuit_breaker.record_success(kind)
