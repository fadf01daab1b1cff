"""Gitea git-server descriptor builder.

``GitServer`` is an immutable configuration snapshot: every ``with_*`` call
returns a new instance and leaves the original untouched. ``finalize()``
creates the host directories backing the config and data mounts, renders
``app.ini`` (plus TLS material when enabled) into the config mount and returns
the ``ContainerSpec`` the runtime starts.

Usage:
    server = (
        GitServer.from_settings(get_settings())
        .with_admin_account("admin", "secret", ssh_public_key=key)
        .with_repo("infra")
        .with_repo("docs", RepoVisibility.PUBLIC)
        .with_tls(True)
    )
    spec = server.finalize()
"""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path

from jinja2 import Environment, PackageLoader, StrictUndefined

from ephemeral_services.core.config import Settings
from ephemeral_services.core.exceptions import StorageIOError
from ephemeral_services.core.logging import get_logger
from ephemeral_services.core.protocols import ContainerHandle
from ephemeral_services.core.tls import CERT_FILE_NAME, KEY_FILE_NAME, TlsMaterial
from ephemeral_services.services.descriptor import (
    ContainerSpec,
    ExecCommand,
    Mount,
    ReadyCondition,
)

logger = get_logger(__name__)

GITEA_IMAGE_NAME = "gitea/gitea"
GITEA_IMAGE_TAG = "1.22.3-rootless"

GITEA_SSH_PORT = 2222
GITEA_HTTP_PORT = 3000
GITEA_HTTP_REDIRECT_PORT = 3080

GITEA_DEFAULT_ADMIN_USERNAME = "git-admin"
GITEA_DEFAULT_ADMIN_PASSWORD = "git-admin"  # noqa: S105

GITEA_CONTAINER_NAME = "git-server"
GITEA_CONFIG_FILE_NAME = "app.ini"

CONTAINER_CONFIG_FOLDER = "/etc/gitea"
CONTAINER_DATA_FOLDER = "/var/lib/gitea"

RUNTIME_FOLDER_SUFFIX = "gitea-runtime"

# Container label carrying the web protocol, read back by git_server_endpoint()
PROTOCOL_LABEL = "org.ephemeral-services.git-server.protocol"

_jinja_env = Environment(
    loader=PackageLoader("ephemeral_services", "templates"),
    autoescape=False,  # noqa: S701 - ini file, not HTML
    undefined=StrictUndefined,
    keep_trailing_newline=True,
)


class RepoVisibility(str, Enum):
    PRIVATE = "private"
    PUBLIC = "public"


@dataclass(frozen=True, slots=True)
class RepositorySpec:
    """A repository created for the admin account after startup."""

    name: str
    visibility: RepoVisibility = RepoVisibility.PRIVATE

    @property
    def private(self) -> bool:
        return self.visibility is RepoVisibility.PRIVATE


@dataclass(frozen=True, slots=True)
class GitServerAccount:
    """Admin account created inside the container."""

    username: str = GITEA_DEFAULT_ADMIN_USERNAME
    password: str = GITEA_DEFAULT_ADMIN_PASSWORD
    ssh_public_key: str | None = None


@dataclass(frozen=True, slots=True)
class GitServerEndpoint:
    """Host-reachable addresses of a running git server.

    Attributes:
        host: Hostname under which the published ports are reachable
        ssh_port: Host port forwarded to the SSH listener
        http_port: Host port forwarded to the web listener
        protocol: ``http`` or ``https``
    """

    host: str
    ssh_port: int
    http_port: int
    protocol: str = "http"

    @property
    def http_url(self) -> str:
        return f"{self.protocol}://{self.host}:{self.http_port}"

    @property
    def api_url(self) -> str:
        return f"{self.http_url}/api/v1"

    def clone_url(self, owner: str, repo: str) -> str:
        return f"{self.http_url}/{owner}/{repo}.git"

    def ssh_clone_url(self, owner: str, repo: str) -> str:
        return f"ssh://git@{self.host}:{self.ssh_port}/{owner}/{repo}.git"


@dataclass(frozen=True)
class GitServer:
    """Configuration snapshot of a Gitea container.

    Attributes:
        config_dir: Host directory mounted at ``/etc/gitea``
        data_dir: Host directory mounted at ``/var/lib/gitea``
        admin: Admin account created post-start
        repositories: Repositories created post-start, in order
        config_env: Extra container environment entries
        admin_commands: Extra ``gitea admin`` sub-commands run post-start
        tls: TLS material, or None for plain HTTP
        hostname: Externally reachable hostname (config DOMAIN and cert SAN)
        container_name: Fixed docker container name
        ssh_host_port: Fixed host port for SSH, or None for an ephemeral one
        http_host_port: Fixed host port for the web listener, or None

    ``app.ini`` advertises the fixed host ports in ``ROOT_URL`` and
    ``SSH_PORT`` when they are set. With ephemeral host ports, the reachable
    addresses are only known once the container runs: see
    ``git_server_endpoint()``.
    """

    config_dir: Path
    data_dir: Path
    admin: GitServerAccount = GitServerAccount()
    repositories: tuple[RepositorySpec, ...] = ()
    config_env: tuple[tuple[str, str], ...] = ()
    admin_commands: tuple[tuple[str, ...], ...] = ()
    tls: TlsMaterial | None = None
    hostname: str = "localhost"
    container_name: str | None = GITEA_CONTAINER_NAME
    ssh_host_port: int | None = None
    http_host_port: int | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> GitServer:
        """Default server with mounts under ``<runtime_dir>/gitea-runtime``.

        Raises:
            MissingEnvironmentError: If no runtime directory is configured.
        """
        base_dir = settings.require_runtime_dir() / RUNTIME_FOLDER_SUFFIX
        return cls(
            config_dir=base_dir / "config",
            data_dir=base_dir / "data",
            ssh_host_port=settings.git_ssh_host_port,
            http_host_port=settings.git_http_host_port,
        )

    # -------------------------------------------------------------------------
    # Configuration
    # -------------------------------------------------------------------------

    def with_admin_account(
        self,
        username: str,
        password: str,
        ssh_public_key: str | None = None,
    ) -> GitServer:
        return replace(
            self,
            admin=GitServerAccount(
                username=username,
                password=password,
                ssh_public_key=ssh_public_key,
            ),
        )

    def with_repo(
        self,
        name: str,
        visibility: RepoVisibility = RepoVisibility.PRIVATE,
    ) -> GitServer:
        return replace(
            self,
            repositories=(*self.repositories, RepositorySpec(name=name, visibility=visibility)),
        )

    def with_config_env(self, key: str, value: str) -> GitServer:
        return replace(self, config_env=(*self.config_env, (key, value)))

    def with_admin_command(self, *args: str) -> GitServer:
        """Run ``gitea admin <args>`` after the admin account exists."""
        return replace(self, admin_commands=(*self.admin_commands, tuple(args)))

    def with_tls(self, enabled: bool = True) -> GitServer:
        """Enable TLS with self-issued material, or disable TLS."""
        if not enabled:
            return replace(self, tls=None)
        if self.tls is not None:
            return self
        return replace(self, tls=TlsMaterial.issue(self.hostname))

    def with_tls_cert(self, cert_pem: str, key_pem: str) -> GitServer:
        """Enable TLS with externally issued material."""
        return replace(self, tls=TlsMaterial.accept(cert_pem, key_pem))

    def with_git_server_hostname(self, hostname: str) -> GitServer:
        updated = replace(self, hostname=hostname)
        if self.tls is not None and self.tls.ca_pem is not None:
            # self-issued certificates follow the hostname
            updated = replace(updated, tls=TlsMaterial.issue(hostname))
        return updated

    def with_container_name(self, name: str | None) -> GitServer:
        return replace(self, container_name=name)

    def with_host_ports(self, ssh: int | None = None, http: int | None = None) -> GitServer:
        """Publish SSH and the web listener on fixed host ports (None: ephemeral)."""
        return replace(self, ssh_host_port=ssh, http_host_port=http)

    # -------------------------------------------------------------------------
    # Derived properties
    # -------------------------------------------------------------------------

    @property
    def tls_enabled(self) -> bool:
        return self.tls is not None

    @property
    def protocol(self) -> str:
        return "https" if self.tls_enabled else "http"

    def tls_ca(self) -> str | None:
        """PEM of the synthesized CA, None for plain HTTP or external certs."""
        return self.tls.ca_pem if self.tls is not None else None

    def exposed_ports(self) -> tuple[int, ...]:
        """SSH and the web listener always, the redirect listener with TLS.

        The web listener on ``GITEA_HTTP_PORT`` serves plain HTTP without TLS
        and HTTPS with TLS; the redirect listener bounces HTTP to it.
        """
        if self.tls_enabled:
            return (GITEA_SSH_PORT, GITEA_HTTP_PORT, GITEA_HTTP_REDIRECT_PORT)
        return (GITEA_SSH_PORT, GITEA_HTTP_PORT)

    def ready_condition(self) -> ReadyCondition:
        return ReadyCondition.on_stdout(
            f"Starting new Web server: tcp:0.0.0.0:{GITEA_HTTP_PORT}"
        )

    def render_config(self) -> str:
        """Render ``app.ini`` for this configuration."""
        template = _jinja_env.get_template("gitea/app.ini.j2")
        tls = None
        if self.tls_enabled:
            tls = {
                "cert_file": CERT_FILE_NAME,
                "key_file": KEY_FILE_NAME,
                "redirect_port": GITEA_HTTP_REDIRECT_PORT,
            }
        return template.render(
            data_path=CONTAINER_DATA_FOLDER,
            config_path=CONTAINER_CONFIG_FOLDER,
            ssh_port=GITEA_SSH_PORT,
            http_port=GITEA_HTTP_PORT,
            advertised_ssh_port=self.ssh_host_port or GITEA_SSH_PORT,
            advertised_http_port=self.http_host_port or GITEA_HTTP_PORT,
            protocol=self.protocol,
            hostname=self.hostname,
            tls=tls,
        )

    # -------------------------------------------------------------------------
    # Post-start commands
    # -------------------------------------------------------------------------

    def _api_call(self, description: str, path: str, payload: dict[str, object]) -> ExecCommand:
        url = f"{self.protocol}://localhost:{GITEA_HTTP_PORT}/api/v1{path}"
        return ExecCommand.of(
            description,
            "curl",
            "--silent",
            "--show-error",
            "--fail",
            "--insecure",
            "-u",
            f"{self.admin.username}:{self.admin.password}",
            "-X",
            "POST",
            "-H",
            "Content-Type: application/json",
            "-d",
            json.dumps(payload),
            url,
        )

    def exec_commands(self) -> tuple[ExecCommand, ...]:
        """Admin account, SSH key, repositories, then extra admin commands."""
        commands = [
            ExecCommand.of(
                f"create admin account {self.admin.username}",
                "gitea",
                "admin",
                "user",
                "create",
                "--username",
                self.admin.username,
                "--password",
                self.admin.password,
                "--email",
                f"{self.admin.username}@localhost",
                "--admin",
                "--must-change-password=false",
            )
        ]

        if self.admin.ssh_public_key:
            commands.append(
                self._api_call(
                    f"register SSH key for {self.admin.username}",
                    "/user/keys",
                    {"title": "default", "key": self.admin.ssh_public_key, "read_only": False},
                )
            )

        for repo in self.repositories:
            commands.append(
                self._api_call(
                    f"create {repo.visibility.value} repository {repo.name}",
                    "/user/repos",
                    {"name": repo.name, "private": repo.private},
                )
            )

        for args in self.admin_commands:
            commands.append(
                ExecCommand.of(f"gitea admin {' '.join(args[:2])}".rstrip(), "gitea", "admin", *args)
            )

        return tuple(commands)

    # -------------------------------------------------------------------------
    # Finalization
    # -------------------------------------------------------------------------

    def mounts(self) -> tuple[Mount, ...]:
        return (
            Mount.bind(self.config_dir, CONTAINER_CONFIG_FOLDER),
            Mount.bind(self.data_dir, CONTAINER_DATA_FOLDER),
        )

    def finalize(self) -> ContainerSpec:
        """Materialize host files and return the container spec.

        Creates the config and data directories, writes TLS material when
        enabled and writes the rendered ``app.ini``. Run once, immediately
        before the container is created.

        Raises:
            StorageIOError: If a directory or file cannot be written.
        """
        rendered = self.render_config()
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError(
                f"Failed to create git server directories: {e}",
                path=str(self.config_dir.parent),
            ) from e

        if self.tls is not None:
            self.tls.store_to(self.config_dir)

        config_path = self.config_dir / GITEA_CONFIG_FILE_NAME
        try:
            config_path.write_text(rendered, encoding="utf-8")
        except OSError as e:
            raise StorageIOError(
                f"Failed to write git server config: {e}",
                path=str(config_path),
            ) from e

        logger.info(
            "Git server descriptor finalized",
            extra={
                "config_dir": str(self.config_dir),
                "protocol": self.protocol,
                "repositories": len(self.repositories),
            },
        )

        host_ports: dict[int, int] = {}
        if self.ssh_host_port is not None:
            host_ports[GITEA_SSH_PORT] = self.ssh_host_port
        if self.http_host_port is not None:
            host_ports[GITEA_HTTP_PORT] = self.http_host_port

        return ContainerSpec(
            name=GITEA_IMAGE_NAME,
            tag=GITEA_IMAGE_TAG,
            exposed_ports=self.exposed_ports(),
            ready=self.ready_condition(),
            env=dict(self.config_env),
            mounts=self.mounts(),
            exec_commands=self.exec_commands(),
            container_name=self.container_name,
            host_ports=host_ports,
            labels={PROTOCOL_LABEL: self.protocol},
        )


async def git_server_endpoint(container: ContainerHandle) -> GitServerEndpoint:
    """Host-reachable addresses of a started git-server container."""
    return GitServerEndpoint(
        host=await container.get_host(),
        ssh_port=await container.get_host_port_ipv4(GITEA_SSH_PORT),
        http_port=await container.get_host_port_ipv4(GITEA_HTTP_PORT),
        protocol=container.spec.labels.get(PROTOCOL_LABEL, "http"),
    )
