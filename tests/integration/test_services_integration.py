"""Integration tests against a real Docker daemon.

These start the actual Gitea and k3s images and take minutes on a cold
image cache. They are skipped unless EPHEMERAL_RUN_INTEGRATION is set and a
Docker daemon answers.

Run with:
    EPHEMERAL_RUN_INTEGRATION=1 pytest tests/integration -m integration
"""

import asyncio
import json
import os
from collections.abc import Iterator

import httpx
import pytest
from kubernetes.client import CoreV1Api

from ephemeral_services.core.config import Settings
from ephemeral_services.core.container import ServiceKind, ServiceRegistry, wire_services
from ephemeral_services.core.docker_client import DockerRuntime
from ephemeral_services.services.fixtures import (
    get_git_server_endpoint,
    get_git_server_hostname,
    get_kube_client,
)
from ephemeral_services.services.gitea import (
    GITEA_DEFAULT_ADMIN_PASSWORD,
    GITEA_DEFAULT_ADMIN_USERNAME,
    GITEA_HTTP_PORT,
    GitServer,
    RepoVisibility,
)


def _docker_available() -> bool:
    if not os.environ.get("EPHEMERAL_RUN_INTEGRATION"):
        return False
    return asyncio.run(DockerRuntime().ping())


pytestmark = [
    pytest.mark.integration,
    pytest.mark.slow,
    pytest.mark.timeout(600),
    pytest.mark.skipif(
        not _docker_available(),
        reason="set EPHEMERAL_RUN_INTEGRATION=1 with a reachable Docker daemon",
    ),
]


@pytest.fixture
def docker_registry(settings: Settings) -> Iterator[ServiceRegistry]:
    git_server = (
        GitServer.from_settings(settings)
        .with_repo("infra")
        .with_repo("docs", RepoVisibility.PUBLIC)
    )
    registry = ServiceRegistry()
    wire_services(registry, settings=settings, git_server=git_server)
    yield registry
    registry.shutdown()


@pytest.mark.asyncio
async def test_git_server_serves_provisioned_repositories(docker_registry: ServiceRegistry) -> None:
    hostname = await get_git_server_hostname(docker_registry)
    assert hostname

    async with docker_registry.read(ServiceKind.GIT_SERVER) as container:
        assert await container.get_host_port_ipv4(GITEA_HTTP_PORT) > 0
        result = await container.exec(
            (
                "curl",
                "--silent",
                "--fail",
                "-u",
                f"{GITEA_DEFAULT_ADMIN_USERNAME}:{GITEA_DEFAULT_ADMIN_PASSWORD}",
                f"http://localhost:{GITEA_HTTP_PORT}/api/v1/user/repos",
            )
        )

    assert result.ok, result.output
    repos = {repo["name"]: repo["private"] for repo in json.loads(result.output)}
    assert repos == {"infra": True, "docs": False}


@pytest.mark.asyncio
async def test_git_server_reachable_from_host(docker_registry: ServiceRegistry) -> None:
    endpoint = await get_git_server_endpoint(docker_registry)

    async with httpx.AsyncClient(
        auth=(GITEA_DEFAULT_ADMIN_USERNAME, GITEA_DEFAULT_ADMIN_PASSWORD),
        timeout=30.0,
    ) as client:
        version = await client.get(f"{endpoint.api_url}/version")
        repo = await client.get(f"{endpoint.api_url}/repos/{GITEA_DEFAULT_ADMIN_USERNAME}/docs")

    assert version.status_code == 200
    assert repo.status_code == 200
    assert repo.json()["clone_url"].endswith(f"/{GITEA_DEFAULT_ADMIN_USERNAME}/docs.git")


@pytest.mark.asyncio
async def test_k3s_cluster_answers_api_requests(docker_registry: ServiceRegistry, settings: Settings) -> None:
    client = await get_kube_client(docker_registry, settings)

    namespaces = await asyncio.to_thread(CoreV1Api(client).list_namespace)

    assert "default" in {ns.metadata.name for ns in namespaces.items}
