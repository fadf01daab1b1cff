"""Runtime configuration using Pydantic Settings."""

from functools import lru_cache
from pathlib import Path
from urllib.parse import urlparse

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ephemeral_services.core.exceptions import MissingEnvironmentError

RUNTIME_DIR_ENV = "EPHEMERAL_RUNTIME_DIR"
USE_EXISTING_K8S_CONTEXT_ENV = "EPHEMERAL_USE_EXISTING_K8S_CONTEXT"


class Settings(BaseSettings):
    """Settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="EPHEMERAL_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Process-scoped directory backing every bind mount
    runtime_dir: str | None = Field(
        default=None,
        validation_alias=AliasChoices(RUNTIME_DIR_ENV, "OUT_DIR"),
        description="Directory where service config, TLS material and kubeconfig are written",
    )

    # Presence of the variable is the switch, any value (even empty) enables it
    use_existing_k8s_context: str | None = Field(
        default=None,
        validation_alias=AliasChoices(USE_EXISTING_K8S_CONTEXT_ENV, "USE_EXISTING_K8S_CONTEXT"),
        description="Use the ambient kubeconfig/in-cluster credentials instead of starting k3s",
    )

    # Docker settings
    docker_host: str | None = Field(
        default=None,
        validation_alias=AliasChoices("DOCKER_HOST"),
        description="Docker daemon URL (e.g., unix:///var/run/docker.sock, tcp://10.0.0.5:2375)",
    )
    docker_network: str = Field(
        default="testcontainers",
        description="User-defined bridge network every service container joins",
    )

    # Startup bounds
    readiness_timeout_seconds: float = Field(
        default=300.0,
        description="Upper bound on waiting for a container's readiness log line",
        gt=0.0,
    )
    readiness_poll_interval_seconds: float = Field(
        default=0.5,
        description="Interval between container log polls while waiting for readiness",
        gt=0.0,
        le=10.0,
    )
    stop_timeout_seconds: int = Field(
        default=10,
        description="Seconds docker waits for a graceful stop before killing",
        ge=0,
    )

    # k3s settings
    kube_version: str = Field(
        default="latest",
        description="Kubernetes version for the k3s cluster (e.g., 1.31, v1.30, latest)",
    )

    # Optional fixed host ports (None lets docker choose an ephemeral port)
    git_ssh_host_port: int | None = Field(default=None, ge=1, le=65535)
    git_http_host_port: int | None = Field(default=None, ge=1, le=65535)
    k3s_api_host_port: int | None = Field(default=None, ge=1, le=65535)

    # Logging settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    log_json: bool = Field(
        default=False,
        description="Emit console logs as JSON",
    )
    log_file_path: str | None = Field(
        default=None,
        description="Optional rotating log file",
    )
    log_file_max_bytes: int = Field(default=10 * 1024 * 1024, ge=1024)
    log_file_backup_count: int = Field(default=3, ge=0)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure the log level is one the logging module knows."""
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Invalid log level: {v}")
        return level

    @property
    def use_existing_cluster(self) -> bool:
        return self.use_existing_k8s_context is not None

    @property
    def docker_hostname(self) -> str:
        """Hostname under which published container ports are reachable."""
        if self.docker_host:
            parsed = urlparse(self.docker_host)
            if parsed.scheme in ("tcp", "http", "https") and parsed.hostname:
                return parsed.hostname
        return "localhost"

    def require_runtime_dir(self) -> Path:
        """Return the runtime directory or fail with a configuration error."""
        if not self.runtime_dir:
            raise MissingEnvironmentError(
                RUNTIME_DIR_ENV,
                hint="point it (or OUT_DIR) at a writable directory",
            )
        return Path(self.runtime_dir)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
