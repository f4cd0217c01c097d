"""Core data models for the CRM sync engine."""

from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional


MAX_PAGE_SIZE = 500

ENTITY_TYPES: List[str] = [
    "activities",
    "deals",
    "files",
    "goals",
    "notes",
    "organizations",
    "persons",
    "pipelines",
    "products",
    "stages",
    "users",
]

# Singular forms used in webhook meta blocks and endpoint paths
SINGULAR_ENTITY_TYPES: Dict[str, str] = {
    "activity": "activities",
    "deal": "deals",
    "file": "files",
    "goal": "goals",
    "note": "notes",
    "organization": "organizations",
    "person": "persons",
    "pipeline": "pipelines",
    "product": "products",
    "stage": "stages",
    "user": "users",
}

SYNC_CONTEXTS = ("sync", "command", "scheduler", "webhook", "test")


def canonical_entity_type(endpoint: str) -> str:
    """
    Reduce an endpoint path or entity name to its plural entity type.

    Examples: "/v1/deals/5?limit=1" -> "deals", "person" -> "persons".

    Args:
        endpoint: Entity name, singular name or endpoint path

    Returns:
        Lowercase plural entity type
    """
    path = endpoint.split("?", 1)[0].strip().strip("/").lower()
    segments = [s for s in path.split("/") if s]
    if segments and segments[0] in ("v1", "v2", "api"):
        segments = segments[1:]
    name = segments[0] if segments else path
    return SINGULAR_ENTITY_TYPES.get(name, name)


class ErrorKind(Enum):
    """Classified error categories."""
    CONNECTION = "connection"
    AUTH = "auth"
    QUOTA = "quota"
    RATE_LIMIT = "rate_limit"
    SERVER = "server"
    MEMORY = "memory"
    NOT_FOUND = "not_found"
    GENERIC = "generic"


# Kinds that describe the health of the upstream API rather than a single request
UPSTREAM_ERROR_KINDS = (ErrorKind.SERVER, ErrorKind.CONNECTION, ErrorKind.RATE_LIMIT)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"


class WebhookAction(Enum):
    """Normalized webhook actions tracked for merge detection."""
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"


class MigrationStrategy(Enum):
    """How relation conflicts are resolved when a merged entity's links move."""
    BOTH = "both"
    MIGRATE = "migrate"
    SKIP = "skip"

    @classmethod
    def parse(cls, value: Any) -> "MigrationStrategy":
        """Accept enum members, values and the keep_* aliases."""
        if isinstance(value, cls):
            return value
        aliases = {
            "keep_both": cls.BOTH,
            "keep_merged": cls.MIGRATE,
            "keep_surviving": cls.SKIP,
        }
        text = str(value).lower()
        if text in aliases:
            return aliases[text]
        return cls(text)


@dataclass(frozen=True)
class SyncOptions:
    """Immutable options for a single entity-type sync."""
    entity_type: str
    page_size: int = MAX_PAGE_SIZE
    full_scan: bool = False
    overwrite_existing: bool = False
    context: str = "sync"
    emit_events: bool = True

    def __post_init__(self) -> None:
        if not self.entity_type or not self.entity_type.strip():
            raise ValueError("entity_type must not be empty")
        if not 1 <= self.page_size <= MAX_PAGE_SIZE:
            raise ValueError(
                f"page_size must be between 1 and {MAX_PAGE_SIZE}, got: {self.page_size}"
            )
        if self.context not in SYNC_CONTEXTS:
            raise ValueError(f"context must be one of {SYNC_CONTEXTS}, got: {self.context}")
        object.__setattr__(self, "entity_type", canonical_entity_type(self.entity_type))

    def with_changes(self, **changes: Any) -> "SyncOptions":
        """Return a validated copy with the given fields replaced."""
        return replace(self, **changes)

    @classmethod
    def for_command(
        cls,
        entity_type: str,
        full_data: bool = False,
        force: bool = False,
        page_size: int = MAX_PAGE_SIZE,
    ) -> "SyncOptions":
        return cls(
            entity_type=entity_type,
            page_size=page_size,
            full_scan=full_data,
            overwrite_existing=force,
            context="command",
        )

    @classmethod
    def for_scheduler(
        cls,
        entity_type: str,
        force: bool = False,
        page_size: int = MAX_PAGE_SIZE,
    ) -> "SyncOptions":
        """Scheduled runs only pull the latest modifications."""
        return cls(
            entity_type=entity_type,
            page_size=page_size,
            full_scan=False,
            overwrite_existing=force,
            context="scheduler",
        )

    @classmethod
    def for_testing(cls, entity_type: str, **overrides: Any) -> "SyncOptions":
        values: Dict[str, Any] = {
            "page_size": 10,
            "context": "test",
            "emit_events": False,
        }
        values.update(overrides)
        return cls(entity_type=entity_type, **values)


@dataclass
class SyncResult:
    """Outcome of syncing one entity type."""
    entity_type: str
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    records_fetched: int = 0
    execution_time: float = 0.0
    error_message: Optional[str] = None
    error_items: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def total_processed(self) -> int:
        return self.created + self.updated + self.skipped + self.errors

    @property
    def success(self) -> bool:
        return self.error_message is None

    @property
    def success_rate(self) -> float:
        """Fraction of processed records that did not fail (1.0 when nothing was processed)."""
        total = self.total_processed
        if total == 0:
            return 1.0
        return (total - self.errors) / total

    def merge(self, other: "SyncResult") -> "SyncResult":
        """
        Combine two results for the same entity type.

        Raises:
            ValueError: If the entity types differ
        """
        if other.entity_type != self.entity_type:
            raise ValueError(
                f"Cannot merge results for {self.entity_type} and {other.entity_type}"
            )
        return SyncResult(
            entity_type=self.entity_type,
            created=self.created + other.created,
            updated=self.updated + other.updated,
            skipped=self.skipped + other.skipped,
            errors=self.errors + other.errors,
            records_fetched=self.records_fetched + other.records_fetched,
            execution_time=self.execution_time + other.execution_time,
            error_message=self.error_message or other.error_message,
            error_items=self.error_items + other.error_items,
        )

    @classmethod
    def failure(cls, entity_type: str, message: str, execution_time: float = 0.0) -> "SyncResult":
        return cls(
            entity_type=entity_type,
            errors=1,
            execution_time=execution_time,
            error_message=message,
        )

    def summary(self) -> str:
        status = "ok" if self.success else f"failed: {self.error_message}"
        return (
            f"{self.entity_type}: {self.created} created, {self.updated} updated, "
            f"{self.skipped} skipped, {self.errors} errors ({status})"
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["total_processed"] = self.total_processed
        data["success"] = self.success
        data["success_rate"] = self.success_rate
        return data


@dataclass
class TokenBudget:
    """Daily token usage for the current UTC day."""
    used: int
    daily_limit: int
    window_start: str  # ISO date of the UTC day

    @property
    def remaining(self) -> int:
        return max(0, self.daily_limit - self.used)


@dataclass
class MemorySample:
    """Point-in-time memory reading used for batch sizing."""
    used_bytes: int
    limit_bytes: int
    usage_percent: float
    batch_size: int
    operation: str = ""
    timestamp: float = 0.0


@dataclass
class HealthRecord:
    """Result of a single health probe."""
    healthy: bool
    response_time_ms: float
    status_code: Optional[int]
    error: Optional[str]
    checked_at: float
    endpoint: str


@dataclass
class HealthStats:
    """Statistics derived from the health history."""
    total_checks: int
    successful_checks: int
    failed_checks: int
    success_rate: float
    average_response_time_ms: float
    min_response_time_ms: float
    max_response_time_ms: float


@dataclass
class WebhookEvent:
    """A webhook notification reduced to what merge detection needs."""
    correlation_id: str
    action: WebhookAction
    entity_type: str
    entity_id: Any
    timestamp: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "action": self.action.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WebhookEvent":
        return cls(
            correlation_id=data["correlation_id"],
            action=WebhookAction(data["action"]),
            entity_type=data["entity_type"],
            entity_id=data["entity_id"],
            timestamp=float(data["timestamp"]),
        )


@dataclass
class MigrationResult:
    """Counts from re-pointing relations of a merged entity."""
    migrated: int = 0
    skipped: int = 0
    conflicts: int = 0
    errors: int = 0


@dataclass
class MergeInference:
    """A merge inferred from correlated webhook events."""
    entity_type: str
    merged_id: Any
    surviving_id: Any
    correlation_id: str
    migration: Optional[MigrationResult] = None


@dataclass
class RunSummary:
    """Totals across every entity type in one run."""
    entities: int
    records_fetched: int
    created: int
    updated: int
    skipped: int
    errors: int
    failed_entities: int
    processing_time_seconds: float
    success_rate: float  # Range 0.0-1.0


@dataclass
class RunReport:
    """Complete run result."""
    summary: RunSummary
    results: List[SyncResult]
    started_at: str
    finished_at: str
