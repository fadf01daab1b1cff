"""Unit tests for the k3s descriptor builder and client materializer."""

from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest
import yaml

from ephemeral_services.core.config import Settings
from ephemeral_services.core.exceptions import (
    ClientConstructionError,
    KubeconfigError,
    UnsupportedVersionError,
)
from ephemeral_services.services.descriptor import LogStream
from ephemeral_services.services.k3s import (
    K3S_KUBE_API_PORT,
    K3S_RANCHER_WEBHOOK_PORT,
    K3S_TRAEFIK_HTTP_PORT,
    KUBECONFIG_CONTAINER_FOLDER,
    KUBECONFIG_FILE_NAME,
    K3sFeature,
    K8sCluster,
    get_client,
    load_existing_cluster_client,
    rewrite_kubeconfig,
)

from fakes import FakeContainer

ALL_DISABLE_FLAGS = (
    "--disable=traefik",
    "--disable=servicelb",
    "--disable=coredns",
    "--disable-agent",
    "--disable-helm-controller",
    "--disable=local-storage",
    "--disable=metrics-server",
    "--disable-network-policy",
)


def _kubeconfig(server: str = "https://127.0.0.1:6443") -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [
            {"name": "default", "cluster": {"server": server, "insecure-skip-tls-verify": True}},
            {"name": "other", "cluster": {"server": "http://10.0.0.1:8080"}},
        ],
        "contexts": [{"name": "default", "context": {"cluster": "default", "user": "default"}}],
        "current-context": "default",
        "users": [{"name": "default", "user": {"token": "abc123"}}],
    }


@pytest.fixture
def cluster(settings: Settings) -> K8sCluster:
    return K8sCluster.from_settings(settings)


class TestDefaults:
    def test_default_tag_and_snapshotter(self, cluster: K8sCluster) -> None:
        assert cluster.tag == "v1.31.1-k3s1"
        assert cluster.command() == ("server", "--snapshotter=native")

    def test_kubeconfig_dir_follows_runtime_dir(self, cluster: K8sCluster, runtime_dir: Path) -> None:
        assert cluster.kubeconfig_dir == runtime_dir / "k3s-runtime"
        assert cluster.kubeconfig_path == runtime_dir / "k3s-runtime" / KUBECONFIG_FILE_NAME

    def test_settings_version_is_resolved(self, settings: Settings) -> None:
        settings = settings.model_copy(update={"kube_version": "v1.28"})
        assert K8sCluster.from_settings(settings).tag == "v1.28.14-k3s1"

    def test_unknown_settings_version_fails_at_build_time(self, settings: Settings) -> None:
        settings = settings.model_copy(update={"kube_version": "1.99"})
        with pytest.raises(UnsupportedVersionError):
            K8sCluster.from_settings(settings)

    def test_readiness_on_stderr(self, cluster: K8sCluster) -> None:
        condition = cluster.ready_condition()
        assert condition.message == "Node controller sync successful"
        assert condition.stream is LogStream.STDERR


class TestVersion:
    def test_with_kube_version(self, cluster: K8sCluster) -> None:
        assert cluster.with_kube_version("1.27").tag == "v1.27.16-k3s1"

    def test_with_unsupported_version_raises_synchronously(self, cluster: K8sCluster) -> None:
        with pytest.raises(UnsupportedVersionError):
            cluster.with_kube_version("1.10")


class TestCommand:
    def test_all_disabled_flags_in_fixed_order(self, cluster: K8sCluster) -> None:
        command = cluster.with_all_features(False).with_agent(False).command()
        assert command == ("server", "--snapshotter=native", *ALL_DISABLE_FLAGS)

    def test_order_independent_of_call_order(self, cluster: K8sCluster) -> None:
        first = cluster.with_network_policy(False).with_traefik(False).with_coredns(False)
        second = cluster.with_coredns(False).with_traefik(False).with_network_policy(False)

        assert first.command() == second.command()
        assert first.command()[2:] == ("--disable=traefik", "--disable=coredns", "--disable-network-policy")

    @pytest.mark.parametrize(
        ("feature", "flag"),
        list(zip(K3sFeature, ALL_DISABLE_FLAGS, strict=True)),
    )
    def test_each_feature_flag(self, cluster: K8sCluster, feature: K3sFeature, flag: str) -> None:
        assert cluster.with_feature(feature, False).command()[2:] == (flag,)
        assert flag in cluster.with_all_features(False).with_agent(False).command()

    def test_reenabling_removes_flag(self, cluster: K8sCluster) -> None:
        assert cluster.with_metrics_server(False).with_metrics_server(True).command() == cluster.command()

    def test_all_features_leaves_agent_alone(self, cluster: K8sCluster) -> None:
        assert "--disable-agent" not in cluster.with_all_features(False).command()
        assert "--disable-agent" in cluster.with_agent(False).with_all_features(True).command()

    def test_custom_snapshotter(self, cluster: K8sCluster) -> None:
        assert cluster.with_snapshotter("overlayfs").command()[1] == "--snapshotter=overlayfs"

    def test_specific_setters(self, cluster: K8sCluster) -> None:
        configured = (
            cluster.with_service_lb(False)
            .with_helm_controller(False)
            .with_local_storage(False)
        )
        assert configured.command()[2:] == (
            "--disable=servicelb",
            "--disable-helm-controller",
            "--disable=local-storage",
        )


class TestExposedPorts:
    def test_traefik_enabled(self, cluster: K8sCluster) -> None:
        assert cluster.exposed_ports() == (K3S_KUBE_API_PORT, K3S_RANCHER_WEBHOOK_PORT, K3S_TRAEFIK_HTTP_PORT)

    def test_traefik_disabled(self, cluster: K8sCluster) -> None:
        assert cluster.with_traefik(False).exposed_ports() == (K3S_KUBE_API_PORT, K3S_RANCHER_WEBHOOK_PORT)


class TestFinalize:
    def test_spec(self, cluster: K8sCluster) -> None:
        spec = cluster.with_all_features(False).finalize()

        assert cluster.kubeconfig_dir.is_dir()
        assert spec.image == "rancher/k3s:v1.31.1-k3s1"
        assert dict(spec.env) == {"K3S_KUBECONFIG_MODE": "644"}
        assert spec.privileged is True
        assert spec.userns_mode == "host"
        assert spec.container_name == "k3s"
        assert spec.exec_commands == ()
        assert [(m.source, m.target) for m in spec.mounts] == [
            (cluster.kubeconfig_dir, KUBECONFIG_CONTAINER_FOLDER)
        ]
        assert spec.command == cluster.with_all_features(False).command()

    def test_kubeconfig_folder_override(self, cluster: K8sCluster, tmp_path: Path) -> None:
        folder = tmp_path / "custom"
        spec = cluster.with_kubeconfig_folder(folder).finalize()

        assert folder.is_dir()
        assert spec.mounts[0].source == folder

    def test_api_host_port(self, cluster: K8sCluster) -> None:
        spec = cluster.with_api_host_port(9443).finalize()
        assert dict(spec.host_ports) == {K3S_KUBE_API_PORT: 9443}


class TestRewriteKubeconfig:
    def test_every_cluster_points_at_mapped_port(self) -> None:
        rewritten = rewrite_kubeconfig(_kubeconfig("https://0.0.0.0:6443"), 51234)
        servers = [c["cluster"]["server"] for c in rewritten["clusters"]]
        assert servers == ["https://127.0.0.1:51234", "https://127.0.0.1:51234"]

    def test_other_fields_untouched(self) -> None:
        original = _kubeconfig()
        rewritten = rewrite_kubeconfig(original, 1)

        assert rewritten["users"] == original["users"]
        assert rewritten["contexts"] == original["contexts"]
        assert rewritten["clusters"][0]["cluster"]["insecure-skip-tls-verify"] is True

    def test_input_not_mutated(self) -> None:
        original = _kubeconfig()
        rewrite_kubeconfig(original, 1)
        assert original["clusters"][0]["cluster"]["server"] == "https://127.0.0.1:6443"

    def test_document_without_clusters(self) -> None:
        assert rewrite_kubeconfig({"kind": "Config"}, 1) == {"kind": "Config"}


class TestGetKubeconfig:
    @pytest.mark.asyncio
    async def test_reads_raw_file(self, cluster: K8sCluster) -> None:
        cluster.kubeconfig_dir.mkdir(parents=True)
        cluster.kubeconfig_path.write_text("apiVersion: v1\n")

        assert await cluster.get_kubeconfig() == "apiVersion: v1\n"

    @pytest.mark.asyncio
    async def test_missing_file(self, cluster: K8sCluster) -> None:
        with pytest.raises(KubeconfigError):
            await cluster.get_kubeconfig()


class TestGetClient:
    @pytest.mark.asyncio
    async def test_client_targets_mapped_port(self, cluster: K8sCluster) -> None:
        spec = cluster.finalize()
        cluster.kubeconfig_path.write_text(yaml.safe_dump(_kubeconfig()))
        container = FakeContainer(spec)

        client = await get_client(container)

        assert client.configuration.host == f"https://127.0.0.1:{40000 + K3S_KUBE_API_PORT}"

    @pytest.mark.asyncio
    async def test_missing_kubeconfig(self, cluster: K8sCluster) -> None:
        container = FakeContainer(cluster.finalize())

        with pytest.raises(KubeconfigError) as exc_info:
            await get_client(container)

        assert exc_info.value.stage == "client_materialization"

    @pytest.mark.asyncio
    async def test_unparseable_kubeconfig(self, cluster: K8sCluster) -> None:
        spec = cluster.finalize()
        cluster.kubeconfig_path.write_text("clusters: [unterminated\n")

        with pytest.raises(KubeconfigError):
            await get_client(FakeContainer(spec))

    @pytest.mark.asyncio
    async def test_non_mapping_kubeconfig(self, cluster: K8sCluster) -> None:
        spec = cluster.finalize()
        cluster.kubeconfig_path.write_text("- just\n- a list\n")

        with pytest.raises(KubeconfigError):
            await get_client(FakeContainer(spec))

    @pytest.mark.asyncio
    async def test_rejected_kubeconfig(self, cluster: K8sCluster) -> None:
        spec = cluster.finalize()
        doc = _kubeconfig()
        doc["current-context"] = "missing"
        cluster.kubeconfig_path.write_text(yaml.safe_dump(doc))

        with pytest.raises(ClientConstructionError):
            await get_client(FakeContainer(spec))


class TestExistingCluster:
    @pytest.mark.asyncio
    async def test_falls_back_to_kubeconfig(self) -> None:
        from kubernetes import config as kube_config

        with (
            patch.object(
                kube_config,
                "load_incluster_config",
                side_effect=kube_config.ConfigException("not in cluster"),
            ),
            patch.object(kube_config, "new_client_from_config", return_value="client") as from_config,
        ):
            client = await load_existing_cluster_client("dev")

        assert client == "client"
        from_config.assert_called_once_with(context="dev")

    @pytest.mark.asyncio
    async def test_no_credentials(self) -> None:
        from kubernetes import config as kube_config

        with (
            patch.object(
                kube_config,
                "load_incluster_config",
                side_effect=kube_config.ConfigException("not in cluster"),
            ),
            patch.object(
                kube_config,
                "new_client_from_config",
                side_effect=kube_config.ConfigException("no kubeconfig"),
            ),
            pytest.raises(ClientConstructionError, match="no kubeconfig"),
        ):
            await load_existing_cluster_client()
