"""Consolidated exception hierarchy for ephemeral service fixtures.

This module provides an exception hierarchy that:
1. Categorizes errors by the lifecycle stage that failed (configuration,
   container start, readiness, post-start commands, client materialization)
2. Enables structured error logging via ``to_dict()``
3. Lets concurrent callers waiting on the same service observe one identical
   failure object

Configuration errors are raised while descriptors are built, before any
container is touched. Runtime errors abort the whole startup of a service.
"""

from __future__ import annotations

from typing import Any


class EphemeralServiceError(Exception):
    """Base exception for all ephemeral-service errors."""

    default_message: str = "An unexpected error occurred"
    default_error_code: str = "INTERNAL_ERROR"
    stage: str = "unknown"

    def __init__(
        self,
        message: str | None = None,
        *,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "code": self.error_code,
            "stage": self.stage,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


# Configuration Errors
class ConfigurationError(EphemeralServiceError):
    default_message = "Invalid runtime configuration"
    default_error_code = "CONFIGURATION_ERROR"
    stage = "configuration"


class UnsupportedVersionError(ConfigurationError):
    """Raised when a requested Kubernetes version has no known image tag."""

    default_message = "Kube version is not supported"
    default_error_code = "UNSUPPORTED_VERSION"

    def __init__(self, version: str, *, supported: list[str] | None = None) -> None:
        self.version = version
        details: dict[str, Any] = {"version": version}
        if supported:
            details["supported"] = supported
        super().__init__(f"Kube version '{version}' is not supported", details=details)


class MissingEnvironmentError(ConfigurationError):
    """Raised when a required environment variable is not set."""

    default_message = "Required environment variable is not set"
    default_error_code = "MISSING_ENVIRONMENT"

    def __init__(self, variable: str, *, hint: str | None = None) -> None:
        self.variable = variable
        message = f"`{variable}` environment variable isn't set"
        if hint:
            message = f"{message}, {hint}"
        super().__init__(message, details={"variable": variable})


# Runtime Interaction Errors
class RuntimeInteractionError(EphemeralServiceError):
    default_message = "Container runtime operation failed"
    default_error_code = "RUNTIME_ERROR"
    stage = "container_start"


class ContainerStartError(RuntimeInteractionError):
    default_message = "Failed to start container"
    default_error_code = "CONTAINER_START_FAILED"


class ReadinessTimeoutError(RuntimeInteractionError):
    """Raised when the readiness log line does not appear in time."""

    default_message = "Timed out waiting for container readiness"
    default_error_code = "READINESS_TIMEOUT"
    stage = "readiness"

    def __init__(
        self,
        container: str,
        *,
        message: str,
        timeout: float,
    ) -> None:
        self.container = container
        self.timeout = timeout
        super().__init__(
            f"Container '{container}' did not report '{message}' within {timeout:.0f}s",
            details={"container": container, "expected": message, "timeout": timeout},
        )


class PostStartCommandError(RuntimeInteractionError):
    """Raised when a post-start command exits with a non-zero status."""

    default_message = "Post-start command failed"
    default_error_code = "POST_START_COMMAND_FAILED"
    stage = "post_start"

    def __init__(
        self,
        description: str,
        *,
        exit_code: int,
        output: str = "",
    ) -> None:
        self.description = description
        self.exit_code = exit_code
        self.output = output
        super().__init__(
            f"Post-start command '{description}' exited with status {exit_code}",
            details={"command": description, "exit_code": exit_code, "output": output},
        )


class ContainerTeardownError(RuntimeInteractionError):
    default_message = "Failed to tear down container"
    default_error_code = "CONTAINER_TEARDOWN_FAILED"
    stage = "teardown"


# I/O Errors
class StorageIOError(EphemeralServiceError):
    """Raised when configuration or certificate files cannot be written."""

    default_message = "Failed to write service files"
    default_error_code = "IO_ERROR"
    stage = "io"

    def __init__(self, message: str | None = None, *, path: str | None = None, **kwargs: Any) -> None:
        details = kwargs.pop("details", {}) or {}
        if path:
            details["path"] = path
        super().__init__(message, details=details, **kwargs)


# Client Materialization Errors
class ClientMaterializationError(EphemeralServiceError):
    default_message = "Failed to build a client for the service"
    default_error_code = "CLIENT_MATERIALIZATION_FAILED"
    stage = "client_materialization"


class KubeconfigError(ClientMaterializationError):
    default_message = "Failed to load kubeconfig"
    default_error_code = "KUBECONFIG_ERROR"


class ClientConstructionError(ClientMaterializationError):
    default_message = "Kubernetes client rejected the configuration"
    default_error_code = "CLIENT_CONSTRUCTION_FAILED"


# Lifecycle Errors
class ServiceUnavailableError(EphemeralServiceError):
    """Raised when a service slot has already been torn down."""

    default_message = "Service has been shut down"
    default_error_code = "SERVICE_UNAVAILABLE"
    stage = "lifecycle"

    def __init__(self, service: str) -> None:
        self.service = service
        super().__init__(
            f"Service '{service}' has been shut down for this process",
            details={"service": service},
        )
