"""Remote access with token budgeting, classification and circuit breaking."""

from .circuit_breaker import CircuitBreaker
from .error_classifier import ErrorClassifier
from .rate_limiter import RateLimitManager
from .transport import ApiResponse, EndpointRegistry, HttpTransport, TransportError

__all__ = [
    "ApiResponse",
    "CircuitBreaker",
    "EndpointRegistry",
    "ErrorClassifier",
    "HttpTransport",
    "RateLimitManager",
    "TransportError",
]
