"""Caddy process control and admin API calls."""
from __future__ import annotations

import logging
import subprocess

import httpx

from .errors import EngineError
from .settings import Settings

log = logging.getLogger(__name__)


class CaddyEngine:
    def __init__(self, settings: Settings, transport: httpx.BaseTransport | None = None):
        self.settings = settings
        self.admin_url = settings.admin_url.rstrip("/")
        self.timeout_s = settings.engine_timeout_s
        self.transport = transport

    def _run(self, cmd: list[str]) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(cmd, check=False, capture_output=True, text=True, timeout=self.timeout_s * 3)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise EngineError(f"Command failed: {' '.join(cmd)}: {e}") from e
        if result.returncode != 0:
            raise EngineError(f"Command failed: {' '.join(cmd)}\nstderr: {result.stderr.strip()}")
        return result

    def start(self, config_path: str) -> None:
        log.info("Starting Caddy with %s", config_path)
        self._run([self.settings.caddy_bin, "start", "--config", config_path])

    def stop(self) -> None:
        log.info("Stopping Caddy")
        self._run([self.settings.caddy_bin, "stop", "--address", self.settings.admin_listen])

    def load(self, config_json: str) -> tuple[bool, str]:
        """POST a full config to the admin /load endpoint.

        Returns (accepted, message).
        """
        try:
            with httpx.Client(timeout=self.timeout_s, follow_redirects=False, transport=self.transport) as client:
                resp = client.post(
                    f"{self.admin_url}/load",
                    content=config_json.encode("utf-8"),
                    headers={"Content-Type": "application/json"},
                )
        except httpx.HTTPError as e:
            return False, f"{type(e).__name__}: {e}"
        if resp.status_code != 200:
            return False, f"HTTP {resp.status_code}: {resp.text.strip()[:500]}"
        return True, "OK"

    def is_responsive(self) -> bool:
        """True when the admin endpoint answers."""
        try:
            with httpx.Client(timeout=min(self.timeout_s, 2.0), follow_redirects=False, transport=self.transport) as client:
                resp = client.get(f"{self.admin_url}/config/")
        except httpx.HTTPError:
            return False
        return resp.status_code == 200
