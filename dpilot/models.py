from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

ORIGIN_CONTAINER = "container"
ORIGIN_HOST = "host-file"
ORIGINS = (ORIGIN_CONTAINER, ORIGIN_HOST)

ACTION_START = "start"
ACTION_DIE = "die"


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def normalize_domain(domain: str) -> str:
    d = domain.strip().lower().rstrip(".")
    if not d:
        raise ValueError("domain must not be empty")
    if any(ch.isspace() for ch in d):
        raise ValueError(f"domain must not contain whitespace: {domain!r}")
    return d


@dataclass(frozen=True)
class RouteEntry:
    domain: str
    target: str  # "<host-gateway>:<port>" or "<container>:<port>"
    origin: str  # container|host-file
    container: str | None = None
    terminal: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "domain", normalize_domain(self.domain))
        if self.origin not in ORIGINS:
            raise ValueError(f"unknown route origin {self.origin!r}")

    @classmethod
    def for_container(cls, domain: str, container: str, port: int) -> "RouteEntry":
        return cls(domain=domain, target=f"{container}:{int(port)}", origin=ORIGIN_CONTAINER, container=container)

    @classmethod
    def for_host(cls, domain: str, port: int, host_gateway: str) -> "RouteEntry":
        return cls(domain=domain, target=f"{host_gateway}:{int(port)}", origin=ORIGIN_HOST)

    @property
    def port(self) -> int:
        return int(self.target.rsplit(":", 1)[1])


@dataclass(frozen=True)
class LifecycleSignal:
    container: str
    action: str  # start|die


@dataclass(frozen=True)
class HostRoutesSignal:
    reason: str = "changed"


@dataclass(frozen=True)
class RepairSignal:
    requested_at: str = field(default_factory=utc_now)


@dataclass(frozen=True)
class ContainerInfo:
    name: str
    env: dict[str, str]

    def vhost(self, key: str) -> str | None:
        raw = self.env.get(key, "").strip()
        return raw or None

    def port(self, key: str, default: int) -> int:
        raw = self.env.get(key, "").strip()
        if not raw:
            return default
        return int(raw)
