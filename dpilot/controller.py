from __future__ import annotations

import logging
import time
from typing import Callable, Protocol

from . import document as d
from .document import ConfigDocument
from .errors import ApplyFailure, EngineError
from .settings import Settings

log = logging.getLogger(__name__)


class Engine(Protocol):
    def start(self, config_path: str) -> None: ...

    def stop(self) -> None: ...

    def load(self, config_json: str) -> tuple[bool, str]: ...

    def is_responsive(self) -> bool: ...


def backoff_delays(unit: float, attempts: int, first: int = 1) -> list[float]:
    """Exponential delays: first*unit, doubling, one per attempt."""
    return [unit * first * (2**i) for i in range(max(0, attempts))]


class ProxyController:
    """Pushes committed documents into the running engine."""

    def __init__(self, engine: Engine, settings: Settings, sleep: Callable[[float], None] = time.sleep):
        self.engine = engine
        self.settings = settings
        self.sleep = sleep

    def apply(self, document: ConfigDocument) -> None:
        """Load *document* into the engine, retrying with backoff.

        After the last failed attempt the engine is checked; if it doesn't
        answer it gets a full stop/start cycle. Raises ApplyFailure either way.
        """
        payload = d.dumps(document)
        last = "not attempted"
        delays = backoff_delays(self.settings.backoff_unit_s, self.settings.apply_attempts)
        for attempt, delay in enumerate(delays, start=1):
            ok, msg = self.engine.load(payload)
            if ok:
                if attempt > 1:
                    log.info("Caddy accepted the configuration on attempt %d", attempt)
                return
            last = msg
            log.warning("Caddy reload attempt %d/%d failed: %s (retrying in %.0fs)", attempt, len(delays), msg, delay)
            self.sleep(delay)

        if not self.engine.is_responsive():
            log.error("Caddy admin endpoint is unresponsive after %d reload attempts; restarting it", len(delays))
            self._restart()
        raise ApplyFailure(f"Caddy rejected the configuration after {len(delays)} attempts: {last}")

    def start_if_not_running(self) -> bool:
        """Start the engine unless its admin endpoint already answers.

        Returns True when a start was issued.
        """
        if self.engine.is_responsive():
            log.info("Caddy is already running")
            return False
        self.engine.start(self.settings.config_path)
        return True

    def wait_until_ready(self, attempts: int | None = None) -> bool:
        """Poll the admin endpoint with 2,4,8,... unit sleeps.

        Best effort: returns False after the last attempt instead of raising.
        """
        n = self.settings.ready_attempts if attempts is None else attempts
        for delay in backoff_delays(self.settings.backoff_unit_s, n, first=2):
            if self.engine.is_responsive():
                return True
            log.info("Waiting for Caddy admin endpoint (next check in %.0fs)", delay)
            self.sleep(delay)
        if self.engine.is_responsive():
            return True
        log.warning("Caddy did not confirm readiness; continuing anyway")
        return False

    def _restart(self) -> None:
        try:
            self.engine.stop()
        except EngineError as e:
            log.warning("Stopping Caddy failed: %s", e)
        try:
            self.engine.start(self.settings.config_path)
        except EngineError as e:
            log.error("Restarting Caddy failed: %s", e)
