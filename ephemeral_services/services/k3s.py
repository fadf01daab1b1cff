"""k3s single-node cluster descriptor builder and Kubernetes client materializer.

The cluster writes its kubeconfig into a bind-mounted host directory. The
server URL in that file points at the in-container API port, so
``get_client()`` rewrites every cluster entry to the host-mapped port before
building an isolated ``ApiClient`` from it.
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from kubernetes import config as kube_config
from kubernetes.client import ApiClient, Configuration

from ephemeral_services.core.config import Settings
from ephemeral_services.core.exceptions import (
    ClientConstructionError,
    KubeconfigError,
    StorageIOError,
)
from ephemeral_services.core.logging import get_logger
from ephemeral_services.core.protocols import ContainerHandle
from ephemeral_services.services.descriptor import ContainerSpec, Mount, ReadyCondition
from ephemeral_services.services.versions import DEFAULT_KUBE_VERSION, version_to_tag

logger = get_logger(__name__)

K3S_IMAGE_NAME = "rancher/k3s"

K3S_KUBE_API_PORT = 6443
K3S_RANCHER_WEBHOOK_PORT = 8443
K3S_TRAEFIK_HTTP_PORT = 80

K3S_CONTAINER_NAME = "k3s"
K3S_DEFAULT_SNAPSHOTTER = "native"
K3S_USERNS_MODE = "host"

KUBECONFIG_CONTAINER_FOLDER = "/etc/rancher/k3s/"
KUBECONFIG_FILE_NAME = "k3s.yaml"

RUNTIME_FOLDER_SUFFIX = "k3s-runtime"


class K3sFeature(str, Enum):
    """Optional built-in k3s components, in command-line flag order."""

    TRAEFIK = "traefik"
    SERVICE_LB = "servicelb"
    COREDNS = "coredns"
    AGENT = "agent"
    HELM_CONTROLLER = "helm-controller"
    LOCAL_STORAGE = "local-storage"
    METRICS_SERVER = "metrics-server"
    NETWORK_POLICY = "network-policy"

    @property
    def disable_flag(self) -> str:
        if self in _STANDALONE_FLAG_FEATURES:
            return f"--disable-{self.value}"
        return f"--disable={self.value}"


# Components with their own --disable-<name> switch instead of --disable=<name>
_STANDALONE_FLAG_FEATURES = frozenset(
    {K3sFeature.AGENT, K3sFeature.HELM_CONTROLLER, K3sFeature.NETWORK_POLICY}
)

# Features toggled by with_all_features(); the node agent is left alone
BULK_FEATURES: tuple[K3sFeature, ...] = tuple(f for f in K3sFeature if f is not K3sFeature.AGENT)


@dataclass(frozen=True)
class K8sCluster:
    """Configuration snapshot of a k3s server container.

    Attributes:
        kubeconfig_dir: Host directory mounted at ``/etc/rancher/k3s/``
        tag: Resolved k3s image tag
        snapshotter: containerd snapshotter passed to ``k3s server``
        disabled: Features turned off
        container_name: Fixed docker container name
        api_host_port: Fixed host port for the API server, or None
    """

    kubeconfig_dir: Path
    tag: str = version_to_tag(DEFAULT_KUBE_VERSION)
    snapshotter: str = K3S_DEFAULT_SNAPSHOTTER
    disabled: frozenset[K3sFeature] = frozenset()
    container_name: str | None = K3S_CONTAINER_NAME
    api_host_port: int | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> K8sCluster:
        """Default cluster with the kubeconfig under ``<runtime_dir>/k3s-runtime``.

        Raises:
            MissingEnvironmentError: If no runtime directory is configured.
            UnsupportedVersionError: If ``settings.kube_version`` is unknown.
        """
        return cls(
            kubeconfig_dir=settings.require_runtime_dir() / RUNTIME_FOLDER_SUFFIX,
            tag=version_to_tag(settings.kube_version),
            api_host_port=settings.k3s_api_host_port,
        )

    def with_kube_version(self, version: str) -> K8sCluster:
        """Raises UnsupportedVersionError for versions without a known tag."""
        return replace(self, tag=version_to_tag(version))

    def with_snapshotter(self, snapshotter: str) -> K8sCluster:
        return replace(self, snapshotter=snapshotter)

    def with_feature(self, feature: K3sFeature, enabled: bool) -> K8sCluster:
        if enabled:
            return replace(self, disabled=self.disabled - {feature})
        return replace(self, disabled=self.disabled | {feature})

    def with_traefik(self, enabled: bool) -> K8sCluster:
        return self.with_feature(K3sFeature.TRAEFIK, enabled)

    def with_service_lb(self, enabled: bool) -> K8sCluster:
        return self.with_feature(K3sFeature.SERVICE_LB, enabled)

    def with_coredns(self, enabled: bool) -> K8sCluster:
        return self.with_feature(K3sFeature.COREDNS, enabled)

    def with_agent(self, enabled: bool) -> K8sCluster:
        return self.with_feature(K3sFeature.AGENT, enabled)

    def with_helm_controller(self, enabled: bool) -> K8sCluster:
        return self.with_feature(K3sFeature.HELM_CONTROLLER, enabled)

    def with_local_storage(self, enabled: bool) -> K8sCluster:
        return self.with_feature(K3sFeature.LOCAL_STORAGE, enabled)

    def with_metrics_server(self, enabled: bool) -> K8sCluster:
        return self.with_feature(K3sFeature.METRICS_SERVER, enabled)

    def with_network_policy(self, enabled: bool) -> K8sCluster:
        return self.with_feature(K3sFeature.NETWORK_POLICY, enabled)

    def with_all_features(self, enabled: bool) -> K8sCluster:
        """Toggle every optional component except the node agent."""
        if enabled:
            return replace(self, disabled=self.disabled - set(BULK_FEATURES))
        return replace(self, disabled=self.disabled | set(BULK_FEATURES))

    def with_kubeconfig_folder(self, folder: str | Path) -> K8sCluster:
        return replace(self, kubeconfig_dir=Path(folder))

    def with_container_name(self, name: str | None) -> K8sCluster:
        return replace(self, container_name=name)

    def with_api_host_port(self, port: int | None) -> K8sCluster:
        return replace(self, api_host_port=port)

    def is_enabled(self, feature: K3sFeature) -> bool:
        return feature not in self.disabled

    def command(self) -> tuple[str, ...]:
        flags = [f.disable_flag for f in K3sFeature if f in self.disabled]
        return ("server", f"--snapshotter={self.snapshotter}", *flags)

    def exposed_ports(self) -> tuple[int, ...]:
        if self.is_enabled(K3sFeature.TRAEFIK):
            return (K3S_KUBE_API_PORT, K3S_RANCHER_WEBHOOK_PORT, K3S_TRAEFIK_HTTP_PORT)
        return (K3S_KUBE_API_PORT, K3S_RANCHER_WEBHOOK_PORT)

    def ready_condition(self) -> ReadyCondition:
        return ReadyCondition.on_stderr("Node controller sync successful")

    @property
    def kubeconfig_path(self) -> Path:
        return self.kubeconfig_dir / KUBECONFIG_FILE_NAME

    def mounts(self) -> tuple[Mount, ...]:
        return (Mount.bind(self.kubeconfig_dir, KUBECONFIG_CONTAINER_FOLDER),)

    def finalize(self) -> ContainerSpec:
        """Create the kubeconfig directory and return the container spec.

        Raises:
            StorageIOError: If the kubeconfig directory cannot be created.
        """
        try:
            self.kubeconfig_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError(
                f"Failed to create kubeconfig directory: {e}",
                path=str(self.kubeconfig_dir),
            ) from e

        host_ports: dict[int, int] = {}
        if self.api_host_port is not None:
            host_ports[K3S_KUBE_API_PORT] = self.api_host_port

        logger.info(
            "k3s descriptor finalized",
            extra={
                "tag": self.tag,
                "disabled": sorted(f.value for f in self.disabled),
                "kubeconfig_dir": str(self.kubeconfig_dir),
            },
        )

        return ContainerSpec(
            name=K3S_IMAGE_NAME,
            tag=self.tag,
            exposed_ports=self.exposed_ports(),
            ready=self.ready_condition(),
            env={"K3S_KUBECONFIG_MODE": "644"},
            mounts=self.mounts(),
            command=self.command(),
            container_name=self.container_name,
            host_ports=host_ports,
            privileged=True,
            userns_mode=K3S_USERNS_MODE,
        )

    async def get_kubeconfig(self) -> str:
        """Raw kubeconfig written by the cluster.

        Raises:
            KubeconfigError: If the file is missing or unreadable.
        """
        return await asyncio.to_thread(read_kubeconfig, self.kubeconfig_dir)


# =============================================================================
# Client materialization
# =============================================================================


def read_kubeconfig(folder: Path) -> str:
    path = folder / KUBECONFIG_FILE_NAME
    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise KubeconfigError(
            f"Failed to read kubeconfig {path}: {e}",
            details={"path": str(path)},
        ) from e


def parse_kubeconfig(raw: str) -> dict[str, Any]:
    try:
        doc = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise KubeconfigError(f"Failed to parse kubeconfig: {e}") from e
    if not isinstance(doc, dict):
        raise KubeconfigError("Kubeconfig is not a mapping")
    return doc


def rewrite_kubeconfig(doc: dict[str, Any], port: int) -> dict[str, Any]:
    """Return a copy of ``doc`` with every cluster pointing at ``127.0.0.1:<port>``."""
    rewritten = copy.deepcopy(doc)
    for entry in rewritten.get("clusters") or []:
        cluster = entry.get("cluster")
        if isinstance(cluster, dict):
            cluster["server"] = f"https://127.0.0.1:{port}"
    return rewritten


def kubeconfig_mount_source(container: ContainerHandle) -> Path:
    for mount in container.spec.mounts:
        if mount.target == KUBECONFIG_CONTAINER_FOLDER:
            return mount.source
    raise KubeconfigError(
        f"Container {container.spec.display_name} has no kubeconfig mount",
        details={"container": container.spec.display_name},
    )


async def get_client(container: ContainerHandle) -> ApiClient:
    """Build an API client for a running k3s container.

    Raises:
        KubeconfigError: If the kubeconfig cannot be read or parsed
        ClientConstructionError: If the Kubernetes client rejects it
    """
    raw = await asyncio.to_thread(read_kubeconfig, kubeconfig_mount_source(container))
    doc = parse_kubeconfig(raw)

    port = await container.get_host_port_ipv4(K3S_KUBE_API_PORT)
    rewritten = rewrite_kubeconfig(doc, port)

    try:
        client = await asyncio.to_thread(kube_config.new_client_from_config_dict, rewritten)
    except (kube_config.ConfigException, ValueError, TypeError) as e:
        raise ClientConstructionError(f"Failed to build Kubernetes client: {e}") from e

    logger.info(
        "Kubernetes client ready",
        extra={"server": f"https://127.0.0.1:{port}", "container_id": container.id},
    )
    return client


def _existing_cluster_client(context: str | None) -> ApiClient:
    configuration = Configuration()
    try:
        kube_config.load_incluster_config(client_configuration=configuration)
        logger.info("Using in-cluster Kubernetes credentials")
        return ApiClient(configuration)
    except kube_config.ConfigException as e:
        logger.debug(f"Not running in a cluster, falling back to kubeconfig: {e}")

    client = kube_config.new_client_from_config(context=context)
    logger.info("Using kubeconfig credentials", extra={"context": context or "current"})
    return client


async def load_existing_cluster_client(context: str | None = None) -> ApiClient:
    """Client against the ambient in-cluster or kubeconfig credentials.

    Args:
        context: kubeconfig context name, None for the current context

    Raises:
        ClientConstructionError: If no usable credentials are found
    """
    try:
        return await asyncio.to_thread(_existing_cluster_client, context)
    except (kube_config.ConfigException, OSError, ValueError, TypeError) as e:
        raise ClientConstructionError(
            f"Failed to load existing Kubernetes context: {e}",
            details={"context": context},
        ) from e
