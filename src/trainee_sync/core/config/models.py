"""
Configuration data models for trainee-sync.

These models define the structure of .trainee-sync.json and
~/.config/trainee-sync/config.json files, with validation and type safety
via Pydantic.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class StoreConfig(BaseModel):
    """
    Downstream record store.

    The memory backend is for tests and dry runs; sqlite persists records
    to a local database file.
    """
    backend: str = Field(
        default="memory",
        pattern="^(memory|sqlite)$",
        description="Store backend: 'memory' or 'sqlite'"
    )
    path: str = Field(
        default=".trainee-sync/records.db",
        description="Database file for the sqlite backend"
    )


class CacheConfig(BaseModel):
    """Read-through record cache and request de-duplication cache."""
    backend: str = Field(
        default="memory",
        pattern="^(memory|redis)$",
        description="Cache backend: 'memory' or 'redis'"
    )
    url: str = Field(
        default="redis://localhost:6379/0",
        description="Connection URL for the redis backend"
    )
    prefix: str = Field(
        default="trainee-sync",
        description="Key prefix for all cache entries"
    )
    ttl_seconds: int = Field(
        default=3600,
        ge=1,
        description="Lifetime of cached records"
    )


class RetryConfig(BaseModel):
    """
    Retry budget for transient store failures during apply.

    Delays grow as base_delay * multiplier ** attempt, with ±jitter_ratio
    random variance.
    """
    max_attempts: int = Field(
        default=5,
        ge=1,
        description="Total apply attempts before the notification fails"
    )
    base_delay: float = Field(
        default=0.2,
        gt=0.0,
        description="Delay in seconds before the first retry"
    )
    multiplier: float = Field(
        default=2.0,
        ge=1.0,
        description="Exponential backoff multiplier"
    )
    max_delay: float = Field(
        default=10.0,
        gt=0.0,
        description="Upper bound on any single delay, in seconds"
    )
    jitter: bool = Field(
        default=True,
        description="Add random variance to delays"
    )
    jitter_ratio: float = Field(
        default=0.2,
        ge=0.0,
        le=1.0,
        description="Random variance ratio for jitter (0.0-1.0)"
    )


class RepairConfig(BaseModel):
    """
    Bounded repair window for notifications whose dependencies never arrive.

    A deferred notification re-evaluated more than max_attempts times, or
    older than max_age_seconds, is applied anyway and logged as a data
    quality problem.
    """
    max_attempts: int = Field(
        default=5,
        ge=0,
        description="Re-evaluations allowed while dependencies are missing"
    )
    max_age_seconds: float = Field(
        default=900.0,
        gt=0.0,
        description="How long a notification may stay deferred"
    )


class DeferredConfig(BaseModel):
    """Durability of the deferred queue across restarts."""
    durability: str = Field(
        default="memory",
        pattern="^(memory|file)$",
        description="'memory' rebuilds from redeliveries; 'file' snapshots on shutdown"
    )
    snapshot_path: str = Field(
        default=".trainee-sync/deferred.jsonl",
        description="Snapshot file used when durability is 'file'"
    )


class GatewayConfig(BaseModel):
    """Inbound message handling."""
    max_receive_count: int = Field(
        default=5,
        ge=1,
        description="Deliveries allowed before a failing message is dead-lettered"
    )
    batch_size: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Messages fetched per receive call"
    )
    poll_wait_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="How long a receive call waits for messages"
    )


class WorkerConfig(BaseModel):
    """Worker pool sizing."""
    workers: int = Field(
        default=4,
        ge=1,
        description="Concurrent workers pulling from the transport"
    )
    sweep_interval_seconds: float = Field(
        default=30.0,
        gt=0.0,
        description="How often deferred notifications are checked for repair"
    )


class RequestConfig(BaseModel):
    """On-demand requests for missing dependencies."""
    enabled: bool = Field(
        default=True,
        description="Ask upstream to publish records that are referenced but missing"
    )
    dedupe_ttl_seconds: int = Field(
        default=300,
        ge=1,
        description="Suppress repeat requests for the same record within this window"
    )


class LoggingConfig(BaseModel):
    """Log output."""
    level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR)$",
        description="Root log level"
    )


class SyncConfig(BaseModel):
    """
    Top-level trainee-sync configuration.

    This is the root configuration model that encompasses all settings.
    It's loaded from defaults, user config, project config, and env vars.

    Example:
        >>> config = SyncConfig(
        ...     store=StoreConfig(backend="sqlite"),
        ...     repair=RepairConfig(max_attempts=3),
        ... )
        >>> config.repair.max_attempts
        3
    """
    store: StoreConfig = Field(
        default_factory=StoreConfig,
        description="Record store"
    )
    cache: CacheConfig = Field(
        default_factory=CacheConfig,
        description="Record cache"
    )
    retry: RetryConfig = Field(
        default_factory=RetryConfig,
        description="Apply retry budget"
    )
    repair: RepairConfig = Field(
        default_factory=RepairConfig,
        description="Bounded repair window"
    )
    deferred: DeferredConfig = Field(
        default_factory=DeferredConfig,
        description="Deferred queue durability"
    )
    gateway: GatewayConfig = Field(
        default_factory=GatewayConfig,
        description="Inbound gateway"
    )
    workers: WorkerConfig = Field(
        default_factory=WorkerConfig,
        description="Worker pool"
    )
    requests: RequestConfig = Field(
        default_factory=RequestConfig,
        description="On-demand dependency requests"
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging"
    )

    model_config = ConfigDict(
        extra="allow",  # Allow extra fields for forward compatibility
        validate_assignment=True,
    )

    @model_validator(mode="after")
    def _check_retry_bounds(self) -> "SyncConfig":
        if self.retry.max_delay < self.retry.base_delay:
            raise ValueError("retry.max_delay must be >= retry.base_delay")
        return self

    def snapshot_path(self) -> Optional[str]:
        """Snapshot file for the deferred queue, or None when memory-only."""
        if self.deferred.durability == "file":
            return self.deferred.snapshot_path
        return None
