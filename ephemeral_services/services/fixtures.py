"""Public entry points handing ready-to-use service handles to test code.

Usage:
    hostname = await get_git_server_hostname()
    endpoint = await get_git_server_endpoint()
    requests.get(f"{endpoint.api_url}/version")
    api_client = await get_kube_client()
    pods = CoreV1Api(api_client).list_namespaced_pod("default")
"""

from __future__ import annotations

from kubernetes.client import ApiClient

from ephemeral_services.core.config import Settings, get_settings
from ephemeral_services.core.container import ServiceKind, ServiceRegistry, get_registry
from ephemeral_services.core.logging import get_logger
from ephemeral_services.core.shutdown import register_shutdown_hook
from ephemeral_services.services.gitea import GitServerEndpoint, git_server_endpoint
from ephemeral_services.services.k3s import get_client, load_existing_cluster_client

logger = get_logger(__name__)


async def get_git_server_hostname(registry: ServiceRegistry | None = None) -> str:
    """Hostname of the shared git server, starting it on first use.

    Raises:
        EphemeralServiceError: If the git server could not be started
    """
    register_shutdown_hook()
    registry = registry or get_registry()
    async with registry.read(ServiceKind.GIT_SERVER) as container:
        return await container.get_host()


async def get_git_server_endpoint(registry: ServiceRegistry | None = None) -> GitServerEndpoint:
    """Host-reachable SSH and web addresses of the shared git server.

    The git server publishes its ports on ephemeral host ports unless fixed
    ones are configured, so this is the handle to build URLs from.

    Raises:
        EphemeralServiceError: If the git server could not be started
    """
    register_shutdown_hook()
    registry = registry or get_registry()
    async with registry.read(ServiceKind.GIT_SERVER) as container:
        return await git_server_endpoint(container)


async def get_kube_client(
    registry: ServiceRegistry | None = None,
    settings: Settings | None = None,
) -> ApiClient:
    """Kubernetes API client for the shared k3s cluster.

    When the existing-context override is set, no container is started and
    the client is built from the ambient in-cluster or kubeconfig
    credentials; a non-empty override value names the kubeconfig context.

    Raises:
        EphemeralServiceError: If the cluster could not be started or the
            client could not be built
    """
    settings = settings or get_settings()
    if settings.use_existing_cluster:
        context = settings.use_existing_k8s_context or None
        logger.info("Using existing Kubernetes context", extra={"context": context or "current"})
        return await load_existing_cluster_client(context)

    register_shutdown_hook()
    registry = registry or get_registry()
    async with registry.read(ServiceKind.K3S_CLUSTER) as container:
        return await get_client(container)
