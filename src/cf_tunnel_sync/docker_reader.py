"""Docker Engine access: snapshot the labels of running containers."""

from __future__ import annotations

from typing import Any

import docker
import structlog

from cf_tunnel_sync.models import ContainerInfo

logger = structlog.get_logger(__name__)


def container_from_summary(summary: dict[str, Any]) -> ContainerInfo:
    """Convert a container-list entry (``GET /containers/json``) to :class:`ContainerInfo`."""
    names = summary.get("Names") or []
    name = names[0].lstrip("/") if names else ""
    return ContainerInfo(
        id=summary.get("Id", ""),
        name=name,
        labels=dict(summary.get("Labels") or {}),
    )


class DockerReader:
    """Lists running containers through the Docker SDK.

    Parameters
    ----------
    host:
        Engine URL (``unix:///var/run/docker.sock``, ``tcp://...``). Empty
        means the SDK's environment defaults.
    api_version:
        Pinned Engine API version; empty negotiates with the daemon.
    timeout:
        Seconds to wait on Engine API calls.
    """

    def __init__(self, host: str = "", api_version: str = "", timeout: int = 10) -> None:
        self._host = host
        self._api_version = api_version or "auto"
        self._timeout = timeout
        self._client: docker.DockerClient | None = None

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            if self._host:
                self._client = docker.DockerClient(
                    base_url=self._host, version=self._api_version, timeout=self._timeout
                )
            else:
                self._client = docker.from_env(version=self._api_version, timeout=self._timeout)
            logger.info("docker_client_initialised", host=self._host or "env", api_version=self._api_version)
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def list_running_containers(self) -> list[ContainerInfo]:
        """Return every running container with its labels.

        Raises
        ------
        docker.errors.DockerException
            When the Engine cannot be reached or rejects the request.
        """
        # Sparse listing keeps this to a single Engine call.
        containers = self.client.containers.list(sparse=True)
        result = [container_from_summary(c.attrs) for c in containers]
        logger.debug("docker_containers_listed", count=len(result))
        return result
