from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Files
    config_path: str = os.getenv("DPILOT_CONFIG_PATH", "/etc/caddy/config.json")
    host_routes_path: str = os.getenv("DPILOT_HOST_ROUTES_PATH", "/opt/host-routes.conf")
    mappings_path: str = os.getenv("DPILOT_MAPPINGS_PATH", "/opt/domain_mappings.txt")
    access_log_path: str = os.getenv("DPILOT_ACCESS_LOG_PATH", "/var/log/caddy/access.log")
    db_path: str = os.getenv("DPILOT_DB_PATH", "/var/lib/domainpilot/events.db")

    # Docker
    docker_network: str = os.getenv("DPILOT_DOCKER_NETWORK", "domainpilot-proxy")
    self_container: str = os.getenv("DPILOT_SELF_CONTAINER", "caddy-proxy")
    vhost_env: str = os.getenv("DPILOT_VHOST_ENV", "DOMAINPILOT_VHOST")
    port_env: str = os.getenv("DPILOT_PORT_ENV", "DOMAINPILOT_CONTAINER_PORT")
    default_port: int = _env_int("DPILOT_DEFAULT_PORT", 80)
    host_gateway: str = os.getenv("DPILOT_HOST_GATEWAY", "host.docker.internal")

    # Routing document
    wildcard_suffix: str = os.getenv("DPILOT_WILDCARD_SUFFIX", "docker.local")
    admin_host: str = os.getenv("DPILOT_ADMIN_HOST", "localhost")
    health_path: str = os.getenv("DPILOT_HEALTH_PATH", "/_healthz")
    server_name: str = "srv0"

    # Caddy engine
    caddy_bin: str = os.getenv("DPILOT_CADDY_BIN", "caddy")
    admin_listen: str = os.getenv("DPILOT_ADMIN_LISTEN", "localhost:2019")
    engine_timeout_s: float = _env_float("DPILOT_ENGINE_TIMEOUT_S", 10.0)
    backoff_unit_s: float = _env_float("DPILOT_BACKOFF_UNIT_S", 1.0)
    apply_attempts: int = _env_int("DPILOT_APPLY_ATTEMPTS", 5)
    ready_attempts: int = _env_int("DPILOT_READY_ATTEMPTS", 5)

    # Watchers
    watch_interval_s: float = _env_float("DPILOT_WATCH_INTERVAL_S", 1.0)
    watch_idle_timeout_s: float = _env_float("DPILOT_WATCH_IDLE_TIMEOUT_S", 300.0)
    resubscribe_max_s: float = _env_float("DPILOT_RESUBSCRIBE_MAX_S", 30.0)

    # Operator API
    api_host: str = os.getenv("DPILOT_API_HOST", "127.0.0.1")
    api_port: int = _env_int("DPILOT_API_PORT", 2020)

    log_level: str = os.getenv("DPILOT_LOG_LEVEL", "INFO").upper()
    # DEBUG=1 logs every committed document.
    debug: bool = _env_bool("DEBUG", False)

    @property
    def admin_url(self) -> str:
        return f"http://{self.admin_listen}"

    @property
    def api_url(self) -> str:
        return f"http://{self.api_host}:{self.api_port}"


settings = Settings()
