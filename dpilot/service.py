from __future__ import annotations

import logging
import queue
from threading import Event, Thread
from typing import Any

from .controller import Engine, ProxyController
from .db import EventJournal
from .docker_ops import DockerRuntime
from .engine import CaddyEngine
from .models import RepairSignal
from .reconciler import Reconciler
from .settings import Settings
from .sources import FileChangeSource, LifecycleSource
from .store import ConfigStore

log = logging.getLogger(__name__)


class DomainPilot:
    """Wires store, engine, Docker and the two event sources around one reconciler."""

    def __init__(
        self,
        settings: Settings,
        runtime: Any | None = None,
        engine: Engine | None = None,
        journal: EventJournal | None = None,
    ):
        self.settings = settings
        self.signals: "queue.Queue[Any]" = queue.Queue()
        self.journal = journal if journal is not None else EventJournal(settings.db_path)
        self.runtime = runtime if runtime is not None else DockerRuntime()
        self.store = ConfigStore(settings)
        self.controller = ProxyController(engine if engine is not None else CaddyEngine(settings), settings)
        self.reconciler = Reconciler(
            settings,
            self.store,
            self.controller,
            self.runtime,
            journal=self.journal,
            signals=self.signals,
        )
        self.lifecycle = LifecycleSource(
            self.runtime,
            self.signals,
            ignore=[settings.self_container],
            max_backoff_s=settings.resubscribe_max_s,
        )
        self.file_watch = FileChangeSource(
            settings.host_routes_path,
            self.signals,
            interval_s=settings.watch_interval_s,
            idle_timeout_s=settings.watch_idle_timeout_s,
        )
        self.ready = Event()
        self._thr: Thread | None = None

    def run(self) -> None:
        """Startup sequence, then hand over to the concurrent loops."""
        self.journal.init()
        try:
            self.reconciler.bootstrap()
        except Exception:
            # The loops below converge whatever the startup sequence missed.
            log.exception("Startup reconciliation failed; starting the event loops anyway")
        self.file_watch.start()
        self.lifecycle.start()
        self.reconciler.start()
        self.ready.set()
        log.info("DomainPilot is ready")

    def start(self) -> None:
        """Run the startup sequence on a background thread."""
        if self._thr and self._thr.is_alive():
            return
        self._thr = Thread(target=self._run_logged, daemon=True, name="dpilot-startup")
        self._thr.start()

    def _run_logged(self) -> None:
        try:
            self.run()
        except Exception:
            log.exception("DomainPilot startup failed")
            raise

    def stop(self, timeout: float = 2.0) -> None:
        workers = (self.lifecycle, self.file_watch, self.reconciler)
        for w in workers:
            w.stop()
        for w in workers:
            w.join(timeout)

    def request_repair(self) -> None:
        self.signals.put(RepairSignal())

    def status(self) -> dict[str, Any]:
        return {
            "ready": self.ready.is_set(),
            "pending_signals": self.signals.qsize(),
            "lifecycle_source": self.lifecycle.running,
            "file_watch": self.file_watch.running,
            "applied": self.reconciler.applied,
        }
