"""Ephemeral git server and k3s cluster containers for integration tests."""

from ephemeral_services.core.container import ServiceKind, get_registry
from ephemeral_services.core.exceptions import (
    ClientMaterializationError,
    ConfigurationError,
    EphemeralServiceError,
    RuntimeInteractionError,
    StorageIOError,
)
from ephemeral_services.core.shutdown import shutdown_services
from ephemeral_services.services.fixtures import (
    get_git_server_endpoint,
    get_git_server_hostname,
    get_kube_client,
)
from ephemeral_services.services.gitea import GitServer, GitServerEndpoint, RepoVisibility
from ephemeral_services.services.k3s import K3sFeature, K8sCluster

__version__ = "0.1.0"

__all__ = [
    "ClientMaterializationError",
    "ConfigurationError",
    "EphemeralServiceError",
    "GitServer",
    "GitServerEndpoint",
    "K3sFeature",
    "K8sCluster",
    "RepoVisibility",
    "RuntimeInteractionError",
    "ServiceKind",
    "StorageIOError",
    "get_git_server_endpoint",
    "get_git_server_hostname",
    "get_kube_client",
    "get_registry",
    "shutdown_services",
]
