"""
Relay configuration
Loads settings from environment variables (prefix TRACKING_) and builds the
immutable configuration objects handed to the admission pipeline and the
delivery worker at construction time.
"""
from functools import lru_cache
from typing import Optional, Tuple

from prometheus_client import Counter
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.exceptions import ConfigurationError


# Prometheus metrics
config_error_counter = Counter(
    'tracking_config_validation_errors_total',
    'Total configuration validation errors',
    ['error_type']
)


class AdmissionConfig(BaseModel):
    """Admission pipeline settings (dedup window, quality gate, enrichment toggles)."""

    model_config = ConfigDict(frozen=True)

    dedup_window_minutes: int = Field(default=60, ge=1, le=10080)
    min_match_quality: int = Field(default=20, ge=0, le=100)
    target_external_scale: int = Field(default=8, ge=1, le=10)

    enrichment_enabled: bool = Field(default=True)
    store_profiles: bool = Field(default=True)
    infer_country_from_phone: bool = Field(default=True)
    cross_surface_matching: bool = Field(default=True)
    log_match_quality: bool = Field(default=True)

    max_batch_size: int = Field(default=100, ge=1, le=1000)


class DeliveryConfig(BaseModel):
    """Delivery worker settings (attempt budget, backoff table, timeouts)."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1, le=10)
    retry_backoff_seconds: Tuple[int, ...] = Field(default=(10, 60, 300))
    delivery_timeout_seconds: float = Field(default=30.0, gt=0, le=300)
    lease_ttl_seconds: float = Field(default=45.0, gt=0, le=3600)
    overlap_requeue_seconds: int = Field(default=5, ge=0, le=600)
    batch_chunk_size: int = Field(default=100, ge=1, le=100)

    @model_validator(mode="after")
    def check_timing(self):
        if not self.retry_backoff_seconds:
            config_error_counter.labels(error_type='empty_backoff_table').inc()
            raise ConfigurationError("retry_backoff_seconds must not be empty")

        if list(self.retry_backoff_seconds) != sorted(self.retry_backoff_seconds):
            config_error_counter.labels(error_type='backoff_not_monotonic').inc()
            raise ConfigurationError(
                f"retry_backoff_seconds must be non-decreasing: {self.retry_backoff_seconds}"
            )

        # A lease shorter than the hard timeout would let a second attempt
        # start while the first one is still in flight.
        if self.lease_ttl_seconds < self.delivery_timeout_seconds:
            config_error_counter.labels(error_type='lease_shorter_than_timeout').inc()
            raise ConfigurationError(
                f"lease_ttl_seconds ({self.lease_ttl_seconds}) must be >= "
                f"delivery_timeout_seconds ({self.delivery_timeout_seconds})"
            )
        return self

    def backoff_for(self, attempt: int) -> int:
        """Delay before the attempt following `attempt` (1-based)."""
        index = min(max(attempt, 1) - 1, len(self.retry_backoff_seconds) - 1)
        return self.retry_backoff_seconds[index]


class TrackingSettings(BaseSettings):
    """Relay settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="TRACKING_",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================================================
    # APPLICATION
    # ========================================================================
    ENV: str = Field(default="development", description="Environment name")
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_JSON: bool = Field(default=False, description="Render logs as JSON")
    API_VERSION: str = Field(default="v1", description="Intake API version")

    # ========================================================================
    # STORAGE
    # ========================================================================
    DATABASE_URL: str = Field(
        default="sqlite:///./tracking.db",
        description="SQLAlchemy database URL"
    )
    REDIS_URL: str = Field(
        default="redis://localhost:6379/0",
        description="Redis URL for the delivery queue and leases"
    )
    ENCRYPTION_KEY: Optional[str] = Field(
        default=None,
        description="Fernet key for credentials and identity payloads"
    )

    # ========================================================================
    # DELIVERY DRIVER
    # ========================================================================
    DRIVER: str = Field(default="graph", description="graph or null")
    GRAPH_API_BASE_URL: str = Field(default="https://graph.facebook.com")
    GRAPH_API_VERSION: str = Field(default="v21.0")

    # ========================================================================
    # ADMISSION
    # ========================================================================
    DEDUP_WINDOW_MINUTES: int = Field(default=60)
    MIN_MATCH_QUALITY: int = Field(default=20)
    TARGET_EMQ: int = Field(default=8)
    ADVANCED_MATCHING: bool = Field(default=True, description="Profile enrichment")
    STORE_PROFILES: bool = Field(default=True)
    INFER_COUNTRY_FROM_PHONE: bool = Field(default=True)
    CROSS_SURFACE_MATCHING: bool = Field(default=True)
    LOG_MATCH_QUALITY: bool = Field(default=True)

    # ========================================================================
    # DELIVERY WORKER
    # ========================================================================
    MAX_ATTEMPTS: int = Field(default=3)
    RETRY_BACKOFF_SECONDS: str = Field(
        default="10,60,300",
        description="Comma-separated retry delay table in seconds"
    )
    DELIVERY_TIMEOUT_SECONDS: float = Field(default=30.0)
    LEASE_TTL_SECONDS: float = Field(default=45.0)
    OVERLAP_REQUEUE_SECONDS: int = Field(default=5)
    BATCH_CHUNK_SIZE: int = Field(default=100)
    WORKER_CONCURRENCY: int = Field(default=4, ge=1, le=64)
    WORKER_POLL_INTERVAL_SECONDS: float = Field(default=1.0, gt=0)

    @field_validator("DRIVER")
    @classmethod
    def check_driver(cls, v):
        if v not in ("graph", "null"):
            config_error_counter.labels(error_type='unknown_driver').inc()
            raise ValueError(f"Unknown delivery driver: {v}")
        return v

    def backoff_table(self) -> Tuple[int, ...]:
        try:
            return tuple(
                int(item.strip())
                for item in self.RETRY_BACKOFF_SECONDS.split(",")
                if item.strip()
            )
        except ValueError as exc:
            config_error_counter.labels(error_type='invalid_backoff_table').inc()
            raise ConfigurationError(
                f"Invalid RETRY_BACKOFF_SECONDS: {self.RETRY_BACKOFF_SECONDS!r}"
            ) from exc

    def admission_config(self) -> AdmissionConfig:
        return AdmissionConfig(
            dedup_window_minutes=self.DEDUP_WINDOW_MINUTES,
            min_match_quality=self.MIN_MATCH_QUALITY,
            target_external_scale=self.TARGET_EMQ,
            enrichment_enabled=self.ADVANCED_MATCHING,
            store_profiles=self.STORE_PROFILES,
            infer_country_from_phone=self.INFER_COUNTRY_FROM_PHONE,
            cross_surface_matching=self.CROSS_SURFACE_MATCHING,
            log_match_quality=self.LOG_MATCH_QUALITY,
        )

    def delivery_config(self) -> DeliveryConfig:
        return DeliveryConfig(
            max_attempts=self.MAX_ATTEMPTS,
            retry_backoff_seconds=self.backoff_table(),
            delivery_timeout_seconds=self.DELIVERY_TIMEOUT_SECONDS,
            lease_ttl_seconds=self.LEASE_TTL_SECONDS,
            overlap_requeue_seconds=self.OVERLAP_REQUEUE_SECONDS,
            batch_chunk_size=self.BATCH_CHUNK_SIZE,
        )


@lru_cache()
def get_settings() -> TrackingSettings:
    """Get cached settings instance"""
    return TrackingSettings()
