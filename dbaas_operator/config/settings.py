"""
Operator configuration using Pydantic Settings.
Loads configuration from environment variables with validation.
"""
from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Main operator settings with environment variable loading."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="dbaas-operator", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    environment: str = Field(default="development", description="Environment (development/staging/production/testing)")
    debug: bool = Field(default=False, description="Debug mode")
    log_level: str = Field(default="INFO", description="Logging level")

    # Kubernetes
    kubeconfig_path: Optional[str] = Field(
        default=None, description="Path to kubeconfig file (None for in-cluster)"
    )
    k8s_in_cluster: bool = Field(default=False, description="Running inside Kubernetes cluster")
    watch_namespace: str = Field(
        default="", description="Namespace to watch (empty string watches all namespaces)"
    )
    operator_name: str = Field(default="MongoDB operator", description="Event source component name")

    # Workers
    worker_count: int = Field(default=2, ge=1, le=64, description="Concurrent reconcile workers")
    max_requeues: int = Field(default=5, ge=0, le=100, description="Requeues before a transient failure is surfaced")
    requeue_base_delay: float = Field(default=1.0, gt=0, description="Initial backoff delay in seconds")
    requeue_max_delay: float = Field(default=300.0, gt=0, description="Maximum backoff delay in seconds")
    resync_period: int = Field(default=600, ge=10, description="Full resync interval in seconds")
    watch_timeout: int = Field(default=300, ge=10, description="Server-side watch timeout in seconds")

    # Readiness / termination polling
    readiness_poll_interval: float = Field(default=2.0, gt=0, description="Readiness poll interval in seconds")
    readiness_timeout: float = Field(default=300.0, gt=0, description="Readiness wait bound in seconds")
    termination_timeout: float = Field(default=180.0, gt=0, description="Wait bound for halted workloads to go away")

    # Version catalog
    version_cache_ttl: int = Field(default=30, ge=0, description="In-memory version metadata TTL in seconds")
    version_catalog_path: Optional[str] = Field(
        default=None, description="Optional YAML file with MongoDB version metadata"
    )

    # Leader election (Redis)
    leader_election_enabled: bool = Field(default=False, description="Run workers only on the elected leader")
    redis_url: Optional[str] = Field(default=None, description="Redis connection URL for leader election")
    redis_max_connections: int = Field(default=10, ge=1, le=100, description="Redis max connections")
    leader_lease_duration: int = Field(default=30, ge=5, le=600, description="Leader lease duration in seconds")

    # Sentry
    sentry_dsn: Optional[str] = Field(default=None, description="Sentry DSN for error tracking")
    sentry_traces_sample_rate: float = Field(
        default=0.1, ge=0.0, le=1.0, description="Sentry traces sample rate"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment."""
        valid_envs = ["development", "staging", "production", "testing"]
        if v.lower() not in valid_envs:
            raise ValueError(f"Environment must be one of {valid_envs}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"


# Global settings instance
settings = Settings()
