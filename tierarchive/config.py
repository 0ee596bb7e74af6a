"""
Configuration management for TierArchive.

All configuration is done via environment variables - no config files inside containers.
This module provides typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - Production deployments MUST set explicit values for the S3 bucket
    - Secrets are never logged or exposed in error messages

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Deprecate settings by logging warnings but continuing to support them
    - Keep the defaults for threshold, retries and cache TTL stable; they
      change which records get archived
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class HotBackend(Enum):
    """Supported hot store backends."""

    SQLITE = "sqlite"
    MEMORY = "memory"


class ColdBackend(Enum):
    """Supported cold store backends."""

    S3 = "s3"
    MEMORY = "memory"


class TriggerMode(Enum):
    """How archival runs are triggered."""

    INTERVAL = "interval"
    CHANGEFEED = "changefeed"


class ChangeFeedBackend(Enum):
    """Supported change feed backends."""

    KINESIS = "kinesis"
    MEMORY = "memory"


@dataclass(frozen=True)
class ArchivalConfig:
    """Archival orchestrator configuration.

    Attributes:
        threshold_days: Records older than this are eligible for archival
        chunk_size: Candidates per chunk (unit of work for one worker)
        max_concurrent_workers: Worker pool size (None = derived from governor rate)
        record_concurrency: Concurrent records within one chunk
        verify_content: Compare content checksum on read-back, not only existence
        scan_page_size: Candidates fetched per hot store scan query
        operation_timeout_seconds: Upper bound on any single backend call
        cold_prefix: Prefix for cold object names
    """

    threshold_days: int = 90
    chunk_size: int = 500
    max_concurrent_workers: int | None = None
    record_concurrency: int = 8
    verify_content: bool = True
    scan_page_size: int = 1000
    operation_timeout_seconds: float = 30.0
    cold_prefix: str = "archive"

    @classmethod
    def from_env(cls) -> ArchivalConfig:
        """Load configuration from environment variables."""
        workers = os.getenv("ARCHIVAL_MAX_WORKERS")
        return cls(
            threshold_days=int(os.getenv("ARCHIVAL_THRESHOLD_DAYS", "90")),
            chunk_size=int(os.getenv("ARCHIVAL_CHUNK_SIZE", "500")),
            max_concurrent_workers=int(workers) if workers else None,
            record_concurrency=int(os.getenv("ARCHIVAL_RECORD_CONCURRENCY", "8")),
            verify_content=_env_bool("ARCHIVAL_VERIFY_CONTENT", "true"),
            scan_page_size=int(os.getenv("ARCHIVAL_SCAN_PAGE_SIZE", "1000")),
            operation_timeout_seconds=float(
                os.getenv("ARCHIVAL_OPERATION_TIMEOUT_SECONDS", "30")
            ),
            cold_prefix=os.getenv("S3_ARCHIVE_PREFIX", "archive"),
        )


@dataclass(frozen=True)
class RetryConfig:
    """Per-record retry policy.

    Attributes:
        max_attempts: Attempts before a record is dead-lettered
        backoff_base_seconds: Delay before the first retry
        backoff_factor: Multiplier applied per attempt
        backoff_cap_seconds: Maximum delay
        jitter_ratio: Random extra delay as a fraction of the computed delay
        throttle_retry_limit: Throttled retries allowed before they count as attempts
    """

    max_attempts: int = 3
    backoff_base_seconds: float = 1.0
    backoff_factor: float = 2.0
    backoff_cap_seconds: float = 30.0
    jitter_ratio: float = 0.1
    throttle_retry_limit: int = 20

    @classmethod
    def from_env(cls) -> RetryConfig:
        """Load configuration from environment variables."""
        return cls(
            max_attempts=int(os.getenv("ARCHIVAL_MAX_RETRY_ATTEMPTS", "3")),
            backoff_base_seconds=float(os.getenv("ARCHIVAL_BACKOFF_BASE", "1.0")),
            backoff_factor=float(os.getenv("ARCHIVAL_BACKOFF_FACTOR", "2.0")),
            backoff_cap_seconds=float(os.getenv("ARCHIVAL_BACKOFF_CAP", "30.0")),
            jitter_ratio=float(os.getenv("ARCHIVAL_BACKOFF_JITTER", "0.1")),
            throttle_retry_limit=int(os.getenv("ARCHIVAL_THROTTLE_RETRY_LIMIT", "20")),
        )


@dataclass(frozen=True)
class GovernorConfig:
    """Throughput governor configuration.

    Attributes:
        max_requests_per_second: Ceiling for record attempts per second (0 disables)
        min_requests_per_second: Floor the rate never drops below when throttled
        recovery_step: Rate added back per successful attempt
    """

    max_requests_per_second: float = 200.0
    min_requests_per_second: float = 5.0
    recovery_step: float = 1.0

    @classmethod
    def from_env(cls) -> GovernorConfig:
        """Load configuration from environment variables."""
        return cls(
            max_requests_per_second=float(os.getenv("GOVERNOR_MAX_RPS", "200")),
            min_requests_per_second=float(os.getenv("GOVERNOR_MIN_RPS", "5")),
            recovery_step=float(os.getenv("GOVERNOR_RECOVERY_STEP", "1.0")),
        )


@dataclass(frozen=True)
class BreakerConfig:
    """Circuit breaker configuration.

    Attributes:
        error_rate_threshold: Error fraction in the window that opens the breaker
        window_size: Number of recent attempts considered
        min_calls: Attempts required before the breaker may open
        cooldown_seconds: How long dispatch pauses once open
    """

    error_rate_threshold: float = 0.5
    window_size: int = 50
    min_calls: int = 20
    cooldown_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> BreakerConfig:
        """Load configuration from environment variables."""
        return cls(
            error_rate_threshold=float(os.getenv("BREAKER_ERROR_RATE", "0.5")),
            window_size=int(os.getenv("BREAKER_WINDOW", "50")),
            min_calls=int(os.getenv("BREAKER_MIN_CALLS", "20")),
            cooldown_seconds=float(os.getenv("BREAKER_COOLDOWN_SECONDS", "30")),
        )


@dataclass(frozen=True)
class CacheConfig:
    """Read-through cache configuration.

    Attributes:
        enabled: Whether cold reads are cached
        ttl_seconds: Entry time-to-live
        max_entries: Maximum cached records (LRU eviction)
        read_retries: Gateway retries for transient tier failures
    """

    enabled: bool = True
    ttl_seconds: int = 3600
    max_entries: int = 10000
    read_retries: int = 2

    @classmethod
    def from_env(cls) -> CacheConfig:
        """Load configuration from environment variables."""
        return cls(
            enabled=_env_bool("CACHE_ENABLED", "true"),
            ttl_seconds=int(os.getenv("CACHE_TTL_SECONDS", "3600")),
            max_entries=int(os.getenv("CACHE_MAX_ENTRIES", "10000")),
            read_retries=int(os.getenv("GATEWAY_READ_RETRIES", "2")),
        )


@dataclass(frozen=True)
class StorageConfig:
    """Local storage configuration.

    Attributes:
        hot_backend: Hot store backend
        cold_backend: Cold store backend
        data_dir: Directory for SQLite databases
        hot_db_name: Hot store database file name
        state_db_name: Dead-letter and checkpoint database file name
        busy_timeout_ms: SQLite busy timeout in milliseconds
        wal_mode: SQLite WAL mode enabled
    """

    hot_backend: HotBackend = HotBackend.SQLITE
    cold_backend: ColdBackend = ColdBackend.S3
    data_dir: str = "/var/lib/tierarchive"
    hot_db_name: str = "hot.db"
    state_db_name: str = "engine_state.db"
    busy_timeout_ms: int = 5000
    wal_mode: bool = True

    @classmethod
    def from_env(cls) -> StorageConfig:
        """Load configuration from environment variables."""
        hot = os.getenv("HOT_BACKEND", "sqlite").lower()
        cold = os.getenv("COLD_BACKEND", "s3").lower()
        try:
            hot_backend = HotBackend(hot)
        except ValueError:
            raise ValueError(f"Invalid HOT_BACKEND '{hot}'. Must be one of: sqlite, memory")
        try:
            cold_backend = ColdBackend(cold)
        except ValueError:
            raise ValueError(f"Invalid COLD_BACKEND '{cold}'. Must be one of: s3, memory")
        return cls(
            hot_backend=hot_backend,
            cold_backend=cold_backend,
            data_dir=os.getenv("DATA_DIR", "/var/lib/tierarchive"),
            hot_db_name=os.getenv("HOT_DB_NAME", "hot.db"),
            state_db_name=os.getenv("STATE_DB_NAME", "engine_state.db"),
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            wal_mode=_env_bool("SQLITE_WAL_MODE", "true"),
        )

    @property
    def hot_db_path(self) -> str:
        return str(Path(self.data_dir) / self.hot_db_name)

    @property
    def state_db_path(self) -> str:
        return str(Path(self.data_dir) / self.state_db_name)


@dataclass(frozen=True)
class S3Config:
    """S3 configuration for the cold store.

    Attributes:
        bucket: S3 bucket name
        region: AWS region
        endpoint_url: Custom endpoint URL (for MinIO)
        access_key_id: AWS access key ID (optional, uses AWS credential chain)
        secret_access_key: AWS secret access key (optional)
        storage_class: Storage class for archived objects
    """

    bucket: str = "tierarchive-cold"
    region: str = "us-east-1"
    endpoint_url: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None
    storage_class: str = "STANDARD_IA"

    @classmethod
    def from_env(cls) -> S3Config:
        """Load configuration from environment variables."""
        return cls(
            bucket=os.getenv("S3_BUCKET", "tierarchive-cold"),
            region=os.getenv("S3_REGION", os.getenv("AWS_REGION", "us-east-1")),
            endpoint_url=os.getenv("S3_ENDPOINT"),
            access_key_id=os.getenv("AWS_ACCESS_KEY_ID"),
            secret_access_key=os.getenv("AWS_SECRET_ACCESS_KEY"),
            storage_class=os.getenv("S3_STORAGE_CLASS", "STANDARD_IA"),
        )


@dataclass(frozen=True)
class TriggerConfig:
    """Archival trigger configuration.

    Attributes:
        mode: interval (periodic scan) or changefeed (event driven)
        interval_seconds: Time between scans in interval mode
        batch_size: Maximum candidates per change-feed batch
        batch_window_seconds: Maximum time to collect one change-feed batch
        max_pending: Not-yet-eligible change events held in memory
        requeue_poll_seconds: How often requeued dead letters are re-injected
        shutdown_grace_seconds: How long shutdown waits for in-flight chunks
    """

    mode: TriggerMode = TriggerMode.INTERVAL
    interval_seconds: float = 3600.0
    batch_size: int = 500
    batch_window_seconds: float = 5.0
    max_pending: int = 100000
    requeue_poll_seconds: float = 60.0
    shutdown_grace_seconds: float = 30.0

    @classmethod
    def from_env(cls) -> TriggerConfig:
        """Load configuration from environment variables."""
        mode_str = os.getenv("TRIGGER_MODE", "interval").lower()
        try:
            mode = TriggerMode(mode_str)
        except ValueError:
            raise ValueError(
                f"Invalid TRIGGER_MODE '{mode_str}'. Must be one of: interval, changefeed"
            )
        return cls(
            mode=mode,
            interval_seconds=float(os.getenv("TRIGGER_INTERVAL_SECONDS", "3600")),
            batch_size=int(os.getenv("TRIGGER_BATCH_SIZE", "500")),
            batch_window_seconds=float(os.getenv("TRIGGER_BATCH_WINDOW_SECONDS", "5")),
            max_pending=int(os.getenv("TRIGGER_MAX_PENDING", "100000")),
            requeue_poll_seconds=float(os.getenv("TRIGGER_REQUEUE_POLL_SECONDS", "60")),
            shutdown_grace_seconds=float(os.getenv("SHUTDOWN_GRACE_SECONDS", "30")),
        )


@dataclass(frozen=True)
class KinesisConfig:
    """AWS Kinesis change feed configuration.

    Attributes:
        stream_name: Kinesis stream name
        region: AWS region
        endpoint_url: Custom endpoint URL (for LocalStack testing)
        max_records_per_get: Maximum records per GetRecords call
        iterator_type: Shard iterator type (TRIM_HORIZON, LATEST, etc.)
    """

    stream_name: str = "tierarchive-changes"
    region: str = "us-east-1"
    endpoint_url: str | None = None
    max_records_per_get: int = 1000
    iterator_type: str = "TRIM_HORIZON"

    @classmethod
    def from_env(cls) -> KinesisConfig:
        """Load configuration from environment variables."""
        return cls(
            stream_name=os.getenv("KINESIS_STREAM_NAME", "tierarchive-changes"),
            region=os.getenv("AWS_REGION", os.getenv("AWS_DEFAULT_REGION", "us-east-1")),
            endpoint_url=os.getenv("KINESIS_ENDPOINT_URL"),
            max_records_per_get=int(os.getenv("KINESIS_MAX_RECORDS", "1000")),
            iterator_type=os.getenv("KINESIS_ITERATOR_TYPE", "TRIM_HORIZON"),
        )


@dataclass(frozen=True)
class ObservabilityConfig:
    """Observability and logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class EngineConfig:
    """Complete engine configuration.

    This aggregates all configuration sections and provides validation.

    Attributes:
        archival: Orchestrator configuration
        retry: Per-record retry policy
        governor: Throughput governor
        breaker: Circuit breaker
        cache: Read-through cache
        storage: Backend selection and local storage
        s3: S3 configuration (if cold backend is S3)
        trigger: Trigger configuration
        changefeed_backend: Which change feed to use in changefeed mode
        kinesis: Kinesis configuration (if change feed backend is KINESIS)
        observability: Logging configuration
    """

    archival: ArchivalConfig = field(default_factory=ArchivalConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    governor: GovernorConfig = field(default_factory=GovernorConfig)
    breaker: BreakerConfig = field(default_factory=BreakerConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    s3: S3Config = field(default_factory=S3Config)
    trigger: TriggerConfig = field(default_factory=TriggerConfig)
    changefeed_backend: ChangeFeedBackend = ChangeFeedBackend.KINESIS
    kinesis: KinesisConfig = field(default_factory=KinesisConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load complete configuration from environment variables.

        Returns:
            EngineConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        backend_str = os.getenv("CHANGEFEED_BACKEND", "kinesis").lower()
        try:
            changefeed_backend = ChangeFeedBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid CHANGEFEED_BACKEND '{backend_str}'. Must be one of: kinesis, memory"
            )

        config = cls(
            archival=ArchivalConfig.from_env(),
            retry=RetryConfig.from_env(),
            governor=GovernorConfig.from_env(),
            breaker=BreakerConfig.from_env(),
            cache=CacheConfig.from_env(),
            storage=StorageConfig.from_env(),
            s3=S3Config.from_env(),
            trigger=TriggerConfig.from_env(),
            changefeed_backend=changefeed_backend,
            kinesis=KinesisConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    @property
    def worker_count(self) -> int:
        """Effective worker pool size.

        When not set explicitly, one worker per 25 req/s of governor headroom,
        between 1 and 16. An ungoverned engine gets 4 workers.
        """
        if self.archival.max_concurrent_workers:
            return self.archival.max_concurrent_workers
        rate = self.governor.max_requests_per_second
        if rate <= 0:
            return 4
        return max(1, min(16, int(rate // 25)))

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.archival.threshold_days < 0:
            raise ValueError("ARCHIVAL_THRESHOLD_DAYS must be >= 0")
        if not 1 <= self.archival.chunk_size <= 1000:
            raise ValueError("ARCHIVAL_CHUNK_SIZE must be between 1 and 1000")
        if self.archival.max_concurrent_workers is not None and self.archival.max_concurrent_workers < 1:
            raise ValueError("ARCHIVAL_MAX_WORKERS must be >= 1")
        if self.archival.record_concurrency < 1:
            raise ValueError("ARCHIVAL_RECORD_CONCURRENCY must be >= 1")
        if self.retry.max_attempts < 1:
            raise ValueError("ARCHIVAL_MAX_RETRY_ATTEMPTS must be >= 1")
        if self.retry.backoff_base_seconds < 0 or self.retry.backoff_cap_seconds < 0:
            raise ValueError("Backoff base and cap must be >= 0")
        if self.retry.backoff_factor < 1:
            raise ValueError("ARCHIVAL_BACKOFF_FACTOR must be >= 1")
        if self.governor.max_requests_per_second > 0 and self.governor.min_requests_per_second <= 0:
            raise ValueError("GOVERNOR_MIN_RPS must be > 0 when the governor is enabled")
        if not 0 < self.breaker.error_rate_threshold <= 1:
            raise ValueError("BREAKER_ERROR_RATE must be in (0, 1]")
        if self.cache.ttl_seconds <= 0:
            raise ValueError("CACHE_TTL_SECONDS must be > 0")
        if self.trigger.requeue_poll_seconds <= 0:
            raise ValueError("TRIGGER_REQUEUE_POLL_SECONDS must be > 0")
        if self.trigger.shutdown_grace_seconds < 0:
            raise ValueError("SHUTDOWN_GRACE_SECONDS must be >= 0")

        if self.storage.cold_backend == ColdBackend.S3 and not self.s3.bucket:
            raise ValueError("S3_BUCKET is required when COLD_BACKEND=s3")
        if (
            self.trigger.mode == TriggerMode.CHANGEFEED
            and self.changefeed_backend == ChangeFeedBackend.KINESIS
            and not self.kinesis.stream_name
        ):
            raise ValueError("KINESIS_STREAM_NAME is required when CHANGEFEED_BACKEND=kinesis")

        if not os.path.exists(self.storage.data_dir):
            logger.warning(
                f"Data directory does not exist: {self.storage.data_dir}. "
                "It will be created on startup."
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "Engine configuration loaded",
            extra={
                "threshold_days": self.archival.threshold_days,
                "chunk_size": self.archival.chunk_size,
                "workers": self.worker_count,
                "max_retry_attempts": self.retry.max_attempts,
                "hot_backend": self.storage.hot_backend.value,
                "cold_backend": self.storage.cold_backend.value,
                "s3_bucket": self.s3.bucket
                if self.storage.cold_backend == ColdBackend.S3
                else None,
                "trigger_mode": self.trigger.mode.value,
                "changefeed_backend": self.changefeed_backend.value
                if self.trigger.mode == TriggerMode.CHANGEFEED
                else None,
                "cache_enabled": self.cache.enabled,
                "cache_ttl_seconds": self.cache.ttl_seconds,
                "data_dir": self.storage.data_dir,
                "log_level": self.observability.log_level,
            },
        )
