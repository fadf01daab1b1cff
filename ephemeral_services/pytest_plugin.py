"""pytest plugin exposing the shared services as session fixtures.

Registered through the ``pytest11`` entry point, so installing the package is
enough:

    def test_clone(git_server_endpoint: GitServerEndpoint) -> None:
        url = git_server_endpoint.clone_url("git-admin", "infra")

    def test_pods(kube_client: ApiClient) -> None:
        CoreV1Api(kube_client).list_namespaced_pod("default")

Containers are torn down when the session finishes; the process-exit hook
stays registered for runs that never reach that point.
"""

import asyncio

import pytest
from kubernetes.client import ApiClient

from ephemeral_services.core.logging import get_logger
from ephemeral_services.core.shutdown import shutdown_services
from ephemeral_services.services.fixtures import (
    get_git_server_endpoint,
    get_git_server_hostname,
    get_kube_client,
)
from ephemeral_services.services.gitea import GitServerEndpoint

logger = get_logger(__name__)


@pytest.fixture(scope="session")
def git_server_hostname() -> str:
    """Hostname of the shared git server."""
    return asyncio.run(get_git_server_hostname())


@pytest.fixture(scope="session")
def git_server_endpoint() -> GitServerEndpoint:
    """Host-reachable SSH and web addresses of the shared git server."""
    return asyncio.run(get_git_server_endpoint())


@pytest.fixture(scope="session")
def kube_client() -> ApiClient:
    """API client for the shared k3s cluster (or the existing context)."""
    return asyncio.run(get_kube_client())


def pytest_sessionfinish(session: pytest.Session, exitstatus: int) -> None:
    logger.debug(f"Test session finished with status {exitstatus}, tearing down services")
    shutdown_services()
