from __future__ import annotations

import logging
from typing import Any, Iterator

import docker
from docker.errors import DockerException, NotFound

from .models import ACTION_DIE, ACTION_START, ContainerInfo

log = logging.getLogger(__name__)


def _client() -> docker.DockerClient:
    return docker.from_env()


def _env_map(env: list[str] | None) -> dict[str, str]:
    out: dict[str, str] = {}
    for item in env or []:
        key, sep, value = item.partition("=")
        if sep:
            out[key] = value
    return out


class DockerRuntime:
    """Read-only view of the Docker daemon used by the reconciler."""

    def __init__(self, client: Any | None = None):
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = _client()
        return self._client

    def available(self) -> bool:
        try:
            self.client.ping()
            return True
        except DockerException:
            return False

    def events(self) -> Iterator[tuple[str, str]]:
        """Yield (container name, action) for container start/die events.

        Blocks between events; raises DockerException when the stream breaks.
        """
        stream = self.client.events(
            decode=True,
            filters={"type": "container", "event": [ACTION_START, ACTION_DIE]},
        )
        try:
            for event in stream:
                action = event.get("Action") or event.get("status")
                if action not in (ACTION_START, ACTION_DIE):
                    continue
                attrs = (event.get("Actor") or {}).get("Attributes") or {}
                name = attrs.get("name") or event.get("id")
                if name:
                    yield name, action
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()

    def inspect(self, container: str) -> ContainerInfo | None:
        """Environment of *container*, or None when it no longer exists."""
        try:
            c = self.client.containers.get(container)
        except NotFound:
            return None
        config = c.attrs.get("Config") or {}
        return ContainerInfo(name=c.name, env=_env_map(config.get("Env")))

    def network_members(self, network: str) -> list[str]:
        """Names of the containers attached to *network* (empty if it doesn't exist)."""
        try:
            net = self.client.networks.get(network)
        except NotFound:
            log.warning("Docker network %r does not exist", network)
            return []
        members = (net.attrs.get("Containers") or {}).values()
        return sorted(m["Name"] for m in members if m.get("Name"))
