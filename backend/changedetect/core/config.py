"""
Configuration Management with Celery Support

Nested pydantic-settings sections, each with its own environment prefix.
"""

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List, Optional, Dict, Any

from changedetect.core.enums import LogLevel, HashAlgorithm

class DatabaseSettings(BaseSettings):
    """Database configuration section."""
    model_config = SettingsConfigDict(env_prefix="DB_")

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    user: str = Field(default="changedetect", description="Database user")
    password: SecretStr = Field(
        default=SecretStr("changedetect"),
        description="Database password"
    )
    name: str = Field(default="changedetect", description="Database name")
    url: Optional[str] = Field(None, description="Override database URL")

    # Connection pool settings
    pool_size: int = Field(default=10, description="Connection pool size")
    max_overflow: int = Field(default=20, description="Max overflow connections")
    pool_timeout: int = Field(default=30, description="Pool timeout in seconds")
    pool_recycle: int = Field(default=3600, description="Recycle connections after seconds")
    pool_pre_ping: bool = Field(default=True, description="Test connections before using")

    @property
    def database_url(self) -> str:
        """Construct database URL from components."""
        if self.url:
            return self.url
        return f"postgresql://{self.user}:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.name}"

class RedisSettings(BaseSettings):
    """Redis configuration section."""
    model_config = SettingsConfigDict(env_prefix="REDIS_")

    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    db: int = Field(default=0, description="Redis database number")
    password: Optional[SecretStr] = Field(None, description="Redis password")
    url: Optional[str] = Field(None, description="Override Redis URL")

    # Connection pool settings
    max_connections: int = Field(default=50, description="Max connections in pool")
    socket_keepalive: bool = Field(default=True, description="Enable TCP keepalive")
    socket_connect_timeout: int = Field(default=5, description="Connection timeout")

    @property
    def redis_url(self) -> str:
        """Construct Redis URL from components."""
        if self.url:
            return self.url

        auth_part = f":{self.password.get_secret_value()}@" if self.password else ""
        return f"redis://{auth_part}{self.host}:{self.port}/{self.db}"

class CelerySettings(BaseSettings):
    """Celery configuration section."""
    model_config = SettingsConfigDict(env_prefix="CELERY_")

    # Broker settings
    broker_url: Optional[str] = Field(None, description="Celery broker URL")
    result_backend: Optional[str] = Field(None, description="Celery result backend")

    # Task settings
    task_serializer: str = Field(default="json", description="Task serialization format")
    result_serializer: str = Field(default="json", description="Result serialization format")
    accept_content: List[str] = Field(default=["json"], description="Accepted content types")
    timezone: str = Field(default="UTC", description="Celery timezone")
    enable_utc: bool = Field(default=True, description="Use UTC timestamps")

    # Worker settings
    worker_prefetch_multiplier: int = Field(default=1, description="Prefetch multiplier")
    worker_max_tasks_per_child: int = Field(default=1000, description="Max tasks per worker")

    # Task execution settings
    task_acks_late: bool = Field(default=True, description="Acknowledge tasks late")
    task_reject_on_worker_lost: bool = Field(default=True, description="Reject on worker lost")
    task_time_limit: int = Field(default=3900, description="Hard time limit (seconds)")
    task_soft_time_limit: int = Field(default=3600, description="Soft time limit (seconds)")
    result_expires: int = Field(default=3600, description="Result expiration (seconds)")

    # Beat schedule
    sync_interval_minutes: int = Field(default=5, description="Hash sync interval")
    publish_interval_minutes: int = Field(default=1, description="Delivery run interval")
    purge_interval_hours: int = Field(default=24, description="Tombstone purge interval")

    # Queue routing
    task_routes: Dict[str, str] = Field(
        default_factory=lambda: {
            "changedetect.tasks.publish_tasks.*": "publishing",
            "changedetect.tasks.maintenance_tasks.*": "maintenance"
        },
        description="Task routing rules"
    )
    task_default_queue: str = Field(default="default", description="Default queue name")

    @property
    def celery_broker_url(self) -> str:
        """Get broker URL with fallback to Redis settings."""
        if self.broker_url:
            return self.broker_url
        return settings.redis.redis_url

    @property
    def celery_result_backend(self) -> str:
        """Get result backend URL with fallback to Redis settings."""
        if self.result_backend:
            return self.result_backend
        return settings.redis.redis_url

    def get_celery_config(self) -> Dict[str, Any]:
        """Get complete Celery configuration dictionary."""
        return {
            'broker_url': self.celery_broker_url,
            'result_backend': self.celery_result_backend,
            'broker_connection_retry_on_startup': True,
            'task_serializer': self.task_serializer,
            'result_serializer': self.result_serializer,
            'accept_content': self.accept_content,
            'timezone': self.timezone,
            'enable_utc': self.enable_utc,
            'worker_prefetch_multiplier': self.worker_prefetch_multiplier,
            'worker_max_tasks_per_child': self.worker_max_tasks_per_child,
            'task_acks_late': self.task_acks_late,
            'task_reject_on_worker_lost': self.task_reject_on_worker_lost,
            'task_time_limit': self.task_time_limit,
            'task_soft_time_limit': self.task_soft_time_limit,
            'result_expires': self.result_expires,
            'task_routes': self.task_routes,
            'task_default_queue': self.task_default_queue,
        }

class HashingSettings(BaseSettings):
    """Fingerprinting and change detection configuration."""
    model_config = SettingsConfigDict(env_prefix="HASHING_")

    algorithm: HashAlgorithm = Field(default=HashAlgorithm.MD5, description="Fingerprint digest")
    batch_size: int = Field(default=1000, description="Entities per bulk hash chunk")
    detection_page_size: int = Field(default=500, description="Entities per detection page")
    propagation_max_depth: int = Field(default=10, description="Max parent levels walked per pass")
    purge_after_days: int = Field(default=30, description="Tombstone age before purge")
    registry_modules: List[str] = Field(
        default_factory=list,
        description="Modules imported at start-up to register entity sources and contracts"
    )

class PublishingSettings(BaseSettings):
    """Delivery scheduler configuration."""
    model_config = SettingsConfigDict(env_prefix="PUBLISH_")

    # Contract defaults
    retry_intervals: Dict[int, int] = Field(
        default_factory=lambda: {1: 30, 2: 300, 3: 21600},
        description="Attempt number -> seconds before the next attempt"
    )
    default_batch_size: int = Field(default=100, description="Tasks per target per run")
    default_delay_ms: int = Field(default=50, description="Pause after each successful delivery")
    max_validation_errors: int = Field(default=100, description="Validation budget per run (0 = unlimited)")
    max_infrastructure_errors: int = Field(default=1, description="Infrastructure budget per run (0 = unlimited)")

    # Run control
    job_timeout: int = Field(default=1800, description="Overall run timeout (seconds)")
    dispatch_delay: int = Field(default=10, description="Delay before a follow-up run (seconds)")
    lease_key: str = Field(default="bulk_publish_job_running", description="Scheduler lease key")
    lease_ttl: int = Field(default=1860, description="Scheduler lease TTL (seconds)")
    sync_lease_key: str = Field(default="hash_sync_job_running", description="Sync lease key")
    sync_lease_ttl: int = Field(default=3600, description="Sync lease TTL (seconds)")

    # Built-in webhook target
    webhook_timeout: int = Field(default=10, description="Webhook request timeout (seconds)")

class ObservabilitySettings(BaseSettings):
    """Monitoring and observability configuration."""
    model_config = SettingsConfigDict(env_prefix="OBSERVABILITY_")

    log_level: LogLevel = LogLevel.INFO
    log_format: str = "json"  # json or text

class Settings(BaseSettings):
    """Main application settings with all configurations."""
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application metadata
    project_name: str = Field(default="ChangeDetect", description="Project name")
    version: str = Field(default="1.0.0", description="Application version")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Configuration sections
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    celery: CelerySettings = Field(default_factory=CelerySettings)
    hashing: HashingSettings = Field(default_factory=HashingSettings)
    publishing: PublishingSettings = Field(default_factory=PublishingSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)

    def to_dict(self) -> Dict[str, Any]:
        """Convert settings to dictionary (for debugging)."""
        return {
            "project_name": self.project_name,
            "version": self.version,
            "debug": self.debug,
            "database": {
                "host": self.database.host,
                "port": self.database.port,
                "name": self.database.name
            },
            "redis": {
                "host": self.redis.host,
                "port": self.redis.port,
                "db": self.redis.db
            },
            "hashing": {
                "algorithm": self.hashing.algorithm.value,
                "batch_size": self.hashing.batch_size,
                "registry_modules": self.hashing.registry_modules
            },
            "publishing": {
                "retry_intervals": self.publishing.retry_intervals,
                "job_timeout": self.publishing.job_timeout,
                "lease_key": self.publishing.lease_key
            }
        }

# Global settings instance
settings = Settings()

__all__ = ['settings', 'Settings']
