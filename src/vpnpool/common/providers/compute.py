"""
Compute provisioning for VPN endpoints.

Each session gets its own WireGuard container. The orchestrator only talks
to the `ComputeProvisioner` protocol; `DockerProvisioner` is the production
implementation on top of the docker SDK.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol, cast

import docker
import requests
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.models.containers import Container

from vpnpool.common import settings
from vpnpool.common.errors import (
    FatalProviderError,
    ProviderError,
    TransientProviderError,
)

logger = logging.getLogger(__name__)

CONTAINER_PREFIX = "vpn-"
SESSION_LABEL = "vpn-session"
TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}
BYTES_PATTERN = re.compile(r"transferred:\s*(\d+)")


class Health(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass
class EndpointRef:
    compute_ref: str
    public_host: str
    port: int


@dataclass
class ProvisionParams:
    """Everything a compute unit needs to bring up the tunnel."""

    client_address: str
    server_private_key: str
    client_public_key: str
    port: int = field(default_factory=lambda: settings.VPN_PORT)
    image: str = field(default_factory=lambda: settings.VPN_IMAGE)
    labels: dict[str, str] = field(default_factory=dict)


class ComputeProvisioner(Protocol):
    def start(self, session_id: str, params: ProvisionParams) -> EndpointRef:
        """Start a compute unit. Raises TransientProviderError or FatalProviderError."""
        ...

    def stop(self, compute_ref: str) -> None:
        """Stop and remove a compute unit. A unit that is already gone is not an error."""
        ...

    def get_status(self, compute_ref: str) -> Health: ...

    def bytes_transferred(self, compute_ref: str) -> int | None: ...


def classify_docker_error(error: Exception) -> ProviderError:
    """Map a docker SDK failure onto the transient/fatal split."""
    if isinstance(error, ProviderError):
        return error
    if isinstance(error, ImageNotFound):
        return FatalProviderError(f"VPN image not available: {error}")
    if isinstance(error, APIError):
        if error.status_code in TRANSIENT_STATUS_CODES:
            return TransientProviderError(f"Container runtime unavailable: {error}")
        return FatalProviderError(f"Container runtime rejected request: {error}")
    if isinstance(error, (requests.exceptions.Timeout, requests.exceptions.ConnectionError)):
        return TransientProviderError(f"Container runtime unreachable: {error}")
    if isinstance(error, (TimeoutError, ConnectionError)):
        return TransientProviderError(str(error))
    return FatalProviderError(str(error))


def parse_bytes_transferred(logs: str) -> int | None:
    matches = BYTES_PATTERN.findall(logs)
    if not matches:
        return None
    return int(matches[-1])


class DockerProvisioner:
    """Runs one WireGuard container per session."""

    def __init__(self, client: docker.DockerClient | None = None):
        self._client = client

    @property
    def docker(self) -> docker.DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise TransientProviderError(f"Cannot connect to Docker daemon: {e}")
            logger.info("Connected to Docker daemon")
        return self._client

    def _container(self, compute_ref: str) -> Container:
        return cast(Container, self.docker.containers.get(compute_ref))

    def start(self, session_id: str, params: ProvisionParams) -> EndpointRef:
        container_name = f"{CONTAINER_PREFIX}{session_id}"
        container_port = f"{params.port}/udp"
        try:
            container = cast(
                Container,
                self.docker.containers.run(
                    params.image,
                    name=container_name,
                    detach=True,
                    environment={
                        "SERVER_PRIVATE_KEY": params.server_private_key,
                        "CLIENT_PUBLIC_KEY": params.client_public_key,
                        "CLIENT_ADDRESS": params.client_address,
                        "LISTEN_PORT": str(params.port),
                    },
                    # Host port picked by Docker so several endpoints can coexist
                    ports={container_port: None},
                    labels={SESSION_LABEL: session_id, **params.labels},
                    cap_add=["NET_ADMIN"],
                    sysctls={"net.ipv4.ip_forward": "1"},
                    security_opt=["no-new-privileges:true"],
                    mem_limit=settings.VPN_CONTAINER_MEMORY_LIMIT,
                ),
            )
            container.reload()
        except (DockerException, requests.exceptions.RequestException) as e:
            logger.error(f"Failed to start VPN container for {session_id}: {e}")
            self._remove_quietly(container_name)
            raise classify_docker_error(e)

        bindings = (container.ports or {}).get(container_port) or []
        host_port = int(bindings[0]["HostPort"]) if bindings else params.port
        logger.info(f"Started container {container_name} ({container.short_id})")
        return EndpointRef(
            compute_ref=container_name,
            public_host=settings.VPN_PUBLIC_HOST,
            port=host_port,
        )

    def _remove_quietly(self, container_name: str) -> None:
        try:
            self._container(container_name).remove(force=True)
        except NotFound:
            pass
        except (DockerException, requests.exceptions.RequestException) as e:
            logger.warning(f"Could not clean up container {container_name}: {e}")

    def stop(self, compute_ref: str) -> None:
        try:
            container = self._container(compute_ref)
            container.stop(timeout=10)
            container.remove()
            logger.info(f"Stopped and removed container: {compute_ref}")
        except NotFound:
            logger.debug(f"Container not found: {compute_ref}")
        except (DockerException, requests.exceptions.RequestException) as e:
            logger.error(f"Error stopping container {compute_ref}: {e}")
            raise classify_docker_error(e)

    def get_status(self, compute_ref: str) -> Health:
        try:
            container = self._container(compute_ref)
        except NotFound:
            return Health.UNHEALTHY
        except (DockerException, requests.exceptions.RequestException) as e:
            logger.warning(f"Health check failed for {compute_ref}: {e}")
            return Health.UNKNOWN

        if container.status == "running":
            return Health.HEALTHY
        if container.status in ("exited", "dead", "removing"):
            return Health.UNHEALTHY
        return Health.DEGRADED

    def bytes_transferred(self, compute_ref: str) -> int | None:
        try:
            logs = self._container(compute_ref).logs(tail=200)
        except (DockerException, requests.exceptions.RequestException) as e:
            logger.debug(f"No transfer stats for {compute_ref}: {e}")
            return None
        return parse_bytes_transferred(logs.decode("utf-8", errors="replace"))
