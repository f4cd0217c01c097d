"""Configuration management for the CRM sync engine."""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from crmsync.models.data_models import (
    ENTITY_TYPES,
    MAX_PAGE_SIZE,
    MigrationStrategy,
    canonical_entity_type,
)


DEFAULT_TOKEN_COSTS: Dict[str, int] = {
    **{entity_type: 1 for entity_type in ENTITY_TYPES},
    "files": 2,
    "custom_fields": 1,
    "webhooks": 1,
}


class SyncEngineConfig(BaseModel):
    """Main sync engine configuration."""

    # Remote API
    api_base_url: str = Field(default="https://api.pipedrive.com/v1", description="Base URL of the CRM API")
    api_token: Optional[str] = Field(default=None, description="API token sent as the api_token query parameter")
    connect_timeout: float = Field(default=5.0, description="HTTP connect timeout in seconds")
    read_timeout: float = Field(default=30.0, description="HTTP read timeout in seconds")

    enabled_entities: List[str] = Field(
        default_factory=lambda: list(ENTITY_TYPES),
        description="Entity types synced when none are given explicitly"
    )

    # Daily token budget
    rate_limit_enabled: bool = Field(default=True, description="Enforce the daily token budget")
    daily_token_budget: int = Field(default=10000, description="Tokens available per UTC day")
    rate_limit_max_delay: float = Field(default=16.0, description="Upper bound for rate-limit backoff in seconds")
    rate_limit_jitter: bool = Field(default=True, description="Add up to 10% jitter to exponential backoff")
    token_costs: Dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_TOKEN_COSTS),
        description="Token cost per entity type (unknown types cost 1)"
    )

    # Circuit breaker
    circuit_breaker_failure_threshold: int = Field(default=5, description="Failures of one kind before the circuit opens")
    circuit_breaker_window: int = Field(default=600, description="Rolling window for failure counters in seconds")
    circuit_breaker_cooldown: int = Field(default=300, description="Seconds an open circuit stays open")

    # Memory management
    memory_threshold_percent: float = Field(default=80.0, description="Soft threshold where batches start shrinking")
    memory_critical_percent: float = Field(default=95.0, description="Usage that aborts pagination")
    min_batch_size: int = Field(default=10, description="Smallest adaptive batch size")
    max_batch_size: int = Field(default=MAX_PAGE_SIZE, description="Largest adaptive batch size")
    force_gc: bool = Field(default=True, description="Collect garbage when above the soft threshold")
    gc_every_pages: int = Field(default=10, description="Force a collection every N pages")
    memory_limit_mb: Optional[int] = Field(default=None, description="Process memory limit; system memory when unset")

    # Health monitoring
    health_check_enabled: bool = Field(default=True, description="Probe the API before syncing")
    health_check_interval: int = Field(default=300, description="Minimum seconds between scheduled probes")
    health_check_endpoint: str = Field(default="currencies", description="Lightweight endpoint used as a probe")
    health_failure_threshold: int = Field(default=3, description="Consecutive failures considered an outage")
    health_degradation_ms: float = Field(default=1000.0, description="Mean latency above which the API is degraded")
    health_cache_ttl: int = Field(default=60, description="Seconds a health verdict stays cached")

    # Pagination
    default_page_size: int = Field(default=MAX_PAGE_SIZE, description="Page size when none is requested")
    max_pages: int = Field(default=100, description="Hard cap on pages per full scan")
    max_concurrent_syncs: int = Field(default=3, description="Entity types synced concurrently")

    # Webhooks
    merge_detection_enabled: bool = Field(default=True, description="Infer merges from correlated webhook events")
    merge_detection_window: int = Field(default=30, description="Seconds events are grouped per correlation id")
    merge_auto_migrate_relations: bool = Field(default=True, description="Re-point relations of merged entities")
    merge_strategy: MigrationStrategy = Field(default=MigrationStrategy.BOTH, description="Relation conflict strategy")
    webhook_auto_sync: bool = Field(default=True, description="Apply webhook payloads to the local store")

    # Scheduled sync
    scheduler_force: bool = Field(default=True, description="Overwrite existing records on scheduled runs")
    scheduler_page_size: int = Field(default=MAX_PAGE_SIZE, description="Latest records fetched per entity on scheduled runs")

    # Shared counters
    redis_url: Optional[str] = Field(default=None, description="Redis URL for shared counters; in-process when unset")
    key_prefix: str = Field(default="crmsync", description="Prefix for counter store keys")

    # Logging and output
    log_level: str = Field(default="INFO", description="Logging level")
    output_directory: str = Field(default="out", description="Output directory for run reports")
    output_filename: str = Field(default="summary.json", description="Output JSON filename")

    @field_validator('api_base_url')
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate URL format."""
        if not v.startswith(('http://', 'https://')):
            raise ValueError(f"URL must start with http:// or https://, got: {v}")
        return v.rstrip('/')

    @field_validator('enabled_entities')
    @classmethod
    def validate_entities(cls, v: List[str]) -> List[str]:
        return [canonical_entity_type(entity) for entity in v]

    @field_validator(
        'daily_token_budget',
        'circuit_breaker_failure_threshold',
        'circuit_breaker_window',
        'circuit_breaker_cooldown',
        'min_batch_size',
        'gc_every_pages',
        'max_pages',
        'max_concurrent_syncs',
        'health_failure_threshold',
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError(f"value must be positive, got: {v}")
        return v

    @field_validator('max_batch_size', 'default_page_size', 'scheduler_page_size')
    @classmethod
    def validate_page_size(cls, v: int) -> int:
        if not 1 <= v <= MAX_PAGE_SIZE:
            raise ValueError(f"page size must be between 1 and {MAX_PAGE_SIZE}, got: {v}")
        return v

    @field_validator('memory_threshold_percent', 'memory_critical_percent')
    @classmethod
    def validate_percent(cls, v: float) -> float:
        if not 0 < v <= 100:
            raise ValueError(f"percentage must be in (0, 100], got: {v}")
        return v

    @field_validator('merge_strategy', mode='before')
    @classmethod
    def validate_strategy(cls, v: Any) -> MigrationStrategy:
        return MigrationStrategy.parse(v)

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {v}")
        return level

    @model_validator(mode='after')
    def validate_ranges(self) -> "SyncEngineConfig":
        if self.min_batch_size > self.max_batch_size:
            raise ValueError(
                f"min_batch_size ({self.min_batch_size}) must not exceed max_batch_size ({self.max_batch_size})"
            )
        if self.memory_threshold_percent >= self.memory_critical_percent:
            raise ValueError(
                f"memory_threshold_percent ({self.memory_threshold_percent}) must be below "
                f"memory_critical_percent ({self.memory_critical_percent})"
            )
        return self

    @property
    def output_path(self) -> Path:
        """Get full output file path."""
        return Path(self.output_directory) / self.output_filename

    # Environment variable overrides
    @classmethod
    def env_overrides(cls) -> Dict[str, Any]:
        """Collect CRMSYNC_* environment variables as raw field overrides."""
        env_mappings = {
            "CRMSYNC_API_BASE_URL": "api_base_url",
            "CRMSYNC_API_TOKEN": "api_token",
            "CRMSYNC_DAILY_TOKEN_BUDGET": "daily_token_budget",
            "CRMSYNC_RATE_LIMIT_ENABLED": "rate_limit_enabled",
            "CRMSYNC_CIRCUIT_BREAKER_THRESHOLD": "circuit_breaker_failure_threshold",
            "CRMSYNC_CIRCUIT_BREAKER_COOLDOWN": "circuit_breaker_cooldown",
            "CRMSYNC_MEMORY_THRESHOLD": "memory_threshold_percent",
            "CRMSYNC_MEMORY_LIMIT_MB": "memory_limit_mb",
            "CRMSYNC_MIN_BATCH_SIZE": "min_batch_size",
            "CRMSYNC_MAX_BATCH_SIZE": "max_batch_size",
            "CRMSYNC_HEALTH_CHECK_ENABLED": "health_check_enabled",
            "CRMSYNC_MERGE_DETECTION_ENABLED": "merge_detection_enabled",
            "CRMSYNC_MERGE_STRATEGY": "merge_strategy",
            "CRMSYNC_SCHEDULER_FORCE": "scheduler_force",
            "CRMSYNC_SCHEDULER_PAGE_SIZE": "scheduler_page_size",
            "CRMSYNC_REDIS_URL": "redis_url",
            "CRMSYNC_LOG_LEVEL": "log_level",
        }

        overrides: Dict[str, Any] = {}
        for env_var, field_name in env_mappings.items():
            if env_var in os.environ:
                # pydantic coerces strings such as "5000" or "false"
                overrides[field_name] = os.environ[env_var]
        if "CRMSYNC_ENABLED_ENTITIES" in os.environ:
            overrides["enabled_entities"] = [
                e.strip() for e in os.environ["CRMSYNC_ENABLED_ENTITIES"].split(",") if e.strip()
            ]
        return overrides

    @classmethod
    def from_env(cls) -> "SyncEngineConfig":
        """Create configuration with environment variable overrides."""
        return cls(**cls.env_overrides())


class ConfigManager:
    """Manages configuration loading with override precedence."""

    def __init__(self, config_file: Optional[Path] = None):
        self.config_file = Path(config_file) if config_file else Path("config/config.yaml")
        self._config: Optional[SyncEngineConfig] = None

    def load_config(self, cli_overrides: Optional[Dict] = None) -> SyncEngineConfig:
        """
        Load configuration with override precedence: CLI > ENV > YAML.

        Each tier overrides values from lower tiers; CLI values of None are
        ignored so unset flags never mask the file or environment.

        Args:
            cli_overrides: Optional dictionary of CLI flag overrides

        Returns:
            Fully merged SyncEngineConfig instance

        Raises:
            pydantic.ValidationError: If configuration validation fails
        """
        config_dict: Dict[str, Any] = {}

        if self.config_file.exists():
            with open(self.config_file, 'r') as f:
                yaml_config = yaml.safe_load(f)
                if yaml_config:
                    config_dict.update(yaml_config)

        config_dict.update(SyncEngineConfig.env_overrides())

        if cli_overrides:
            config_dict.update({k: v for k, v in cli_overrides.items() if v is not None})

        self._config = SyncEngineConfig(**config_dict)
        return self._config

    @property
    def config(self) -> SyncEngineConfig:
        """Get the loaded configuration."""
        if self._config is None:
            self._config = self.load_config()
        return self._config
