"""Remote CRM transport: endpoint registry and httpx client."""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol

import httpx

from crmsync.models.data_models import canonical_entity_type
from crmsync.monitoring.logger import StructuredLogger
from crmsync.processor.normalizer import normalize_records


@dataclass
class ApiResponse:
    """Decoded API response with records already normalized."""
    status_code: int
    success: bool
    data: List[Dict[str, Any]] = field(default_factory=list)
    headers: Dict[str, str] = field(default_factory=dict)
    additional_data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    # False for endpoints that ignore the start offset
    paginated: bool = True

    @property
    def more_items(self) -> Optional[bool]:
        pagination = self.additional_data.get("pagination") or {}
        return pagination.get("more_items_in_collection")


class TransportError(Exception):
    """Raw failure at the transport boundary, before classification."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.headers = dict(headers or {})
        self.body = body

    @classmethod
    def from_response(cls, response: ApiResponse, entity_type: str) -> "TransportError":
        message = response.error or f"Request for {entity_type} failed with status {response.status_code}"
        return cls(message, status_code=response.status_code, headers=response.headers)


class Transport(Protocol):
    async def call(self, entity_type: str, params: Dict[str, Any]) -> ApiResponse:
        ...


@dataclass(frozen=True)
class Endpoint:
    """How one entity type maps onto the remote API."""
    entity_type: str
    path: str
    supports_sort: bool = True
    supports_pagination: bool = True

    def build_params(self, params: Dict[str, Any]) -> Dict[str, Any]:
        query = {k: v for k, v in params.items() if v is not None}
        if not self.supports_sort:
            query.pop("sort", None)
        if not self.supports_pagination:
            query.pop("start", None)
        return query


DEFAULT_ENDPOINTS = (
    Endpoint("activities", "activities"),
    Endpoint("deals", "deals"),
    Endpoint("files", "files"),
    Endpoint("goals", "goals/find", supports_sort=False, supports_pagination=False),
    Endpoint("notes", "notes"),
    Endpoint("organizations", "organizations"),
    Endpoint("persons", "persons"),
    Endpoint("pipelines", "pipelines", supports_sort=False),
    Endpoint("products", "products"),
    Endpoint("stages", "stages", supports_sort=False),
    Endpoint("users", "users", supports_sort=False, supports_pagination=False),
    Endpoint("currencies", "currencies", supports_sort=False, supports_pagination=False),
)


class EndpointRegistry:
    """Entity type to endpoint dispatch table."""

    def __init__(self, endpoints: Iterable[Endpoint] = DEFAULT_ENDPOINTS):
        self._endpoints: Dict[str, Endpoint] = {}
        for endpoint in endpoints:
            self.register(endpoint)

    def register(self, endpoint: Endpoint) -> None:
        self._endpoints[endpoint.entity_type] = endpoint

    def supports(self, entity_type: str) -> bool:
        return canonical_entity_type(entity_type) in self._endpoints

    def get(self, entity_type: str) -> Endpoint:
        """
        Raises:
            KeyError: If no endpoint is registered for the entity type
        """
        key = canonical_entity_type(entity_type)
        if key not in self._endpoints:
            raise KeyError(f"No endpoint registered for entity type: {entity_type}")
        return self._endpoints[key]

    def entity_types(self) -> List[str]:
        return sorted(self._endpoints)


class HttpTransport:
    """
    Transport over httpx.AsyncClient.

    Provides:
    - Configurable connect and read timeouts
    - Connection pooling via httpx
    - Context manager for proper lifecycle management

    HTTP error statuses are returned as unsuccessful ``ApiResponse`` objects;
    network failures propagate as httpx exceptions for the classifier.
    """

    def __init__(
        self,
        base_url: str,
        api_token: Optional[str] = None,
        registry: Optional[EndpointRegistry] = None,
        connect_timeout: float = 5.0,
        read_timeout: float = 30.0,
        write_timeout: float = 10.0,
        pool_timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[StructuredLogger] = None,
    ):
        """
        Initialize HTTP transport.

        Args:
            base_url: API base URL, e.g. https://api.pipedrive.com/v1
            api_token: Token sent as the api_token query parameter
            registry: Endpoint registry (defaults to the standard entity set)
            connect_timeout: Connection timeout in seconds
            read_timeout: Read timeout in seconds
            write_timeout: Write timeout in seconds
            pool_timeout: Pool timeout in seconds
            transport: Optional httpx transport (e.g. ASGITransport in tests)
            logger: Optional structured logger
        """
        self.base_url = base_url
        self.api_token = api_token
        self.registry = registry or EndpointRegistry()
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.write_timeout = write_timeout
        self.pool_timeout = pool_timeout
        self._transport = transport
        self.logger = logger or StructuredLogger("crmsync.transport")
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        """Enter async context manager."""
        timeout = httpx.Timeout(
            connect=self.connect_timeout,
            read=self.read_timeout,
            write=self.write_timeout,
            pool=self.pool_timeout
        )
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Exit async context manager."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def call(self, entity_type: str, params: Dict[str, Any]) -> ApiResponse:
        """
        Fetch one page of ``entity_type``.

        Args:
            entity_type: Registered entity type
            params: Query parameters (limit, start, sort)

        Returns:
            Decoded response

        Raises:
            RuntimeError: If used outside the async context manager
            httpx.TransportError: On network failures and timeouts
        """
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")

        endpoint = self.registry.get(entity_type)
        query = endpoint.build_params(params)
        if self.api_token:
            query["api_token"] = self.api_token

        response = await self._client.get(endpoint.path, params=query)
        self.logger.debug("http_response", entity_type=entity_type, status=response.status_code)
        return self._decode(response, paginated=endpoint.supports_pagination)

    @staticmethod
    def _decode(response: httpx.Response, paginated: bool = True) -> ApiResponse:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {"data": body}

        headers = dict(response.headers)
        if response.is_success and body.get("success", True):
            return ApiResponse(
                status_code=response.status_code,
                success=True,
                data=normalize_records(body.get("data")),
                headers=headers,
                additional_data=body.get("additional_data") or {},
                paginated=paginated,
            )

        return ApiResponse(
            status_code=response.status_code,
            success=False,
            headers=headers,
            error=body.get("error") or response.reason_phrase or f"HTTP {response.status_code}",
        )
