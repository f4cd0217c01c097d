"""Classified error hierarchy for the sync engine.

Every failure that crosses a component boundary is expressed as a
``SyncError`` subclass. The class fixes the error kind and the default retry
policy; instances may override the policy (for example a 401 allows two
attempts while a 403 allows one).
"""

from typing import Any, Dict, List, Optional, Type

from crmsync.models.data_models import ErrorKind


class SyncError(Exception):
    """Base class for classified sync errors."""

    kind: ErrorKind = ErrorKind.GENERIC
    default_retryable: bool = False
    default_retry_after: float = 0.0
    default_max_retries: int = 0

    def __init__(
        self,
        message: str = "",
        *,
        status_code: Optional[int] = None,
        retryable: Optional[bool] = None,
        retry_after: Optional[float] = None,
        max_retries: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
        suggestion: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.retryable = self.default_retryable if retryable is None else retryable
        self.retry_after = self.default_retry_after if retry_after is None else retry_after
        self.max_retries = self.default_max_retries if max_retries is None else max_retries
        self.context: Dict[str, Any] = dict(context or {})
        self.suggestion = suggestion
        # Records fetched before the failure; filled in by the orchestrator
        self.partial_records: List[Dict[str, Any]] = []

    def add_context(self, **context: Any) -> "SyncError":
        for key, value in context.items():
            self.context.setdefault(key, value)
        return self

    @classmethod
    def for_kind(cls, kind: ErrorKind, message: str = "", **kwargs: Any) -> "SyncError":
        """Build the error class registered for ``kind``."""
        error_cls = _KIND_TO_CLASS.get(kind, ApiError)
        return error_cls(message, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": type(self).__name__,
            "kind": self.kind.value,
            "message": self.message,
            "status_code": self.status_code,
            "retryable": self.retryable,
            "retry_after": self.retry_after,
            "max_retries": self.max_retries,
            "context": self.context,
            "suggestion": self.suggestion,
        }


class ApiError(SyncError):
    """Generic API or client error; never retried."""
    kind = ErrorKind.GENERIC


class AuthError(SyncError):
    kind = ErrorKind.AUTH
    default_max_retries = 1


class QuotaError(SyncError):
    kind = ErrorKind.QUOTA
    default_max_retries = 1


class RateLimitError(SyncError):
    """Rate limit hit on the server or local daily budget exhausted."""

    kind = ErrorKind.RATE_LIMIT
    default_retryable = True
    default_retry_after = 60.0
    default_max_retries = 5

    def __init__(
        self,
        message: str = "",
        *,
        remaining: Optional[int] = None,
        used: Optional[int] = None,
        limit: Optional[int] = None,
        reset_time: Optional[int] = None,
        retry_after_hint: bool = False,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.remaining = remaining
        self.used = used
        self.limit = limit
        self.reset_time = reset_time
        # True when retry_after came from the server instead of the default
        self.retry_after_hint = retry_after_hint

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(remaining=self.remaining, used=self.used, limit=self.limit, reset_time=self.reset_time)
        return data


class ServerError(SyncError):
    kind = ErrorKind.SERVER
    default_retryable = True
    default_retry_after = 30.0
    default_max_retries = 5


class ConnectionFailure(SyncError):
    kind = ErrorKind.CONNECTION
    default_retryable = True
    default_retry_after = 10.0
    default_max_retries = 5


class OutOfMemoryError(SyncError):
    kind = ErrorKind.MEMORY
    default_retryable = True
    default_retry_after = 5.0
    default_max_retries = 2


class NotFoundError(SyncError):
    kind = ErrorKind.NOT_FOUND


class SyncCancelledError(SyncError):
    """Raised when a running sync observes its cancellation signal."""


_KIND_TO_CLASS: Dict[ErrorKind, Type[SyncError]] = {
    ErrorKind.CONNECTION: ConnectionFailure,
    ErrorKind.AUTH: AuthError,
    ErrorKind.QUOTA: QuotaError,
    ErrorKind.RATE_LIMIT: RateLimitError,
    ErrorKind.SERVER: ServerError,
    ErrorKind.MEMORY: OutOfMemoryError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.GENERIC: ApiError,
}
