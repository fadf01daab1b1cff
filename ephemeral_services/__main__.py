"""Start a service container by hand and keep it up until Ctrl-C.

Usage:
    python -m ephemeral_services git-server --tls --repo infra
    python -m ephemeral_services k3s --kube-version 1.30
"""

import argparse
import asyncio
import sys

from ephemeral_services.core.config import get_settings
from ephemeral_services.core.container import ServiceRegistry, set_registry, wire_services
from ephemeral_services.core.exceptions import EphemeralServiceError
from ephemeral_services.core.logging import setup_logging
from ephemeral_services.core.shutdown import shutdown_services
from ephemeral_services.services.fixtures import get_git_server_endpoint, get_kube_client
from ephemeral_services.services.gitea import GitServer, RepoVisibility
from ephemeral_services.services.k3s import K8sCluster


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m ephemeral_services",
        description="Run an ephemeral service container until interrupted",
    )
    subparsers = parser.add_subparsers(dest="service", required=True)

    git = subparsers.add_parser("git-server", help="Start the Gitea git server")
    git.add_argument("--tls", action="store_true", help="Serve the web UI and API over HTTPS")
    git.add_argument("--hostname", help="Externally reachable hostname (default: localhost)")
    git.add_argument("--ssh-port", type=int, help="Fixed host port for SSH (default: ephemeral)")
    git.add_argument("--http-port", type=int, help="Fixed host port for the web UI (default: ephemeral)")
    git.add_argument(
        "--repo",
        action="append",
        default=[],
        help="Create a private repository (repeatable)",
    )
    git.add_argument(
        "--public-repo",
        action="append",
        default=[],
        help="Create a public repository (repeatable)",
    )

    k3s = subparsers.add_parser("k3s", help="Start the k3s cluster")
    k3s.add_argument("--kube-version", help="Kubernetes version (e.g., 1.30, latest)")
    k3s.add_argument(
        "--all-features",
        action="store_true",
        help="Keep traefik, coredns and the other optional components enabled",
    )

    return parser


def build_git_server(args: argparse.Namespace) -> GitServer:
    server = GitServer.from_settings(get_settings())
    if args.hostname:
        server = server.with_git_server_hostname(args.hostname)
    if args.ssh_port or args.http_port:
        server = server.with_host_ports(
            ssh=args.ssh_port or server.ssh_host_port,
            http=args.http_port or server.http_host_port,
        )
    if args.tls:
        server = server.with_tls(True)
    for name in args.repo:
        server = server.with_repo(name)
    for name in args.public_repo:
        server = server.with_repo(name, RepoVisibility.PUBLIC)
    return server


def build_cluster(args: argparse.Namespace) -> K8sCluster:
    cluster = K8sCluster.from_settings(get_settings()).with_all_features(args.all_features)
    if args.kube_version:
        cluster = cluster.with_kube_version(args.kube_version)
    return cluster


async def run(args: argparse.Namespace) -> None:
    if args.service == "git-server":
        server = build_git_server(args)
        registry = ServiceRegistry()
        wire_services(registry, git_server=server)
        set_registry(registry)

        endpoint = await get_git_server_endpoint()
        print(f"Git server is running on host {endpoint.host}")
        print(f"  web:   {endpoint.http_url}")
        print(f"  ssh:   ssh://git@{endpoint.host}:{endpoint.ssh_port}")
        print(f"  admin: {server.admin.username}")
        if server.tls_ca():
            print("  CA certificate:")
            print(server.tls_ca())
    else:
        cluster = build_cluster(args)
        registry = ServiceRegistry()
        wire_services(registry, k8s_cluster=cluster)
        set_registry(registry)

        client = await get_kube_client()
        print(f"k3s cluster is running at {client.configuration.host}")
        print(f"  kubeconfig: {cluster.kubeconfig_path}")

    print("Press Ctrl-C to stop")
    await asyncio.Event().wait()


def main() -> int:
    """Main entry point for the CLI."""
    args = build_parser().parse_args()
    setup_logging()

    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        print("\nShutting down")
    except EphemeralServiceError as e:
        print(f"Error ({e.stage}): {e.message}", file=sys.stderr)
        return 1
    finally:
        shutdown_services()
    return 0


if __name__ == "__main__":
    sys.exit(main())
