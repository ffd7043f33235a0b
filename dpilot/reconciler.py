from __future__ import annotations

import logging
import queue
import sqlite3
from threading import Event, Lock, Thread
from typing import Any, Protocol

import requests
from docker.errors import DockerException

from . import builder, hostfile, mappings
from . import document as d
from .builder import BuildResult
from .controller import ProxyController
from .db import EventJournal
from .document import ConfigDocument
from .errors import ApplyFailure, EngineError, HostRoutesError, InvalidDocument
from .models import (
    ACTION_DIE,
    ACTION_START,
    ORIGIN_CONTAINER,
    ContainerInfo,
    HostRoutesSignal,
    LifecycleSignal,
    RepairSignal,
    RouteEntry,
)
from .settings import Settings
from .store import ConfigStore

log = logging.getLogger(__name__)


class ContainerLookup(Protocol):
    def inspect(self, container: str) -> ContainerInfo | None: ...

    def network_members(self, network: str) -> list[str]: ...


class Reconciler:
    """Single writer of the routing document.

    Signals from the event sources are consumed one at a time from
    ``self.signals``; every Builder -> Store -> Controller sequence runs under
    ``self._lock`` so two changes can never interleave.
    """

    def __init__(
        self,
        settings: Settings,
        store: ConfigStore,
        controller: ProxyController,
        runtime: ContainerLookup,
        journal: EventJournal | None = None,
        signals: "queue.Queue[Any] | None" = None,
    ):
        self.settings = settings
        self.store = store
        self.controller = controller
        self.runtime = runtime
        self.journal = journal
        self.signals: "queue.Queue[Any]" = signals if signals is not None else queue.Queue()
        self._lock = Lock()
        self._stop = Event()
        self._thr: Thread | None = None
        self.applied = 0
        # Claims dropped as conflicts, retried once the domain is free again.
        self._container_claims: dict[str, set[str]] = {}
        self._host_claims: set[str] = set()

    # --- consumer loop ---

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, daemon=True, name="reconciler")
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()

    def join(self, timeout: float | None = None) -> None:
        if self._thr is not None:
            self._thr.join(timeout)

    def _loop(self) -> None:
        self._event("INFO", "Reconciler started")
        while not self._stop.is_set():
            try:
                signal = self.signals.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                self.handle(signal)
            except Exception as e:
                self._event("ERROR", f"Reconciliation failed: {type(e).__name__}: {e}")
                log.exception("Unhandled error while handling %r", signal)
            finally:
                self.signals.task_done()

    def run_pending(self) -> int:
        """Handle every queued signal on the calling thread. Returns the count."""
        n = 0
        while True:
            try:
                signal = self.signals.get_nowait()
            except queue.Empty:
                return n
            try:
                self.handle(signal)
            finally:
                self.signals.task_done()
            n += 1

    def handle(self, signal: Any) -> bool:
        """Dispatch one signal. Returns True when a new document was committed."""
        if isinstance(signal, LifecycleSignal):
            return self.on_lifecycle(signal.container, signal.action)
        if isinstance(signal, HostRoutesSignal):
            return self.on_host_routes(signal.reason)
        if isinstance(signal, RepairSignal):
            return self.on_repair()
        raise TypeError(f"unknown signal {signal!r}")

    # --- startup ---

    def bootstrap(self) -> None:
        """Bring the proxy from nothing to fully reconciled, in order."""
        with self._lock:
            self.store.ensure_baseline()
            current = self.store.current
            repaired = builder.repair_error_handling(current, self.settings)
            if d.dumps(repaired) != d.dumps(current):
                self.store.commit(repaired)
            hostfile.ensure_file(self.settings.host_routes_path)

        try:
            self.controller.start_if_not_running()
        except EngineError as e:
            self._event("ERROR", f"Could not start Caddy: {e}")
        self.controller.wait_until_ready()

        self.on_host_routes("startup")
        self.scan_existing_containers()

    def scan_existing_containers(self) -> None:
        log.info("Scanning for existing containers...")
        try:
            members = [m for m in self.runtime.network_members(self.settings.docker_network) if not self._is_self(m)]
        except (DockerException, requests.exceptions.RequestException) as e:
            self._event("ERROR", f"Could not list members of network {self.settings.docker_network}: {e}")
            return

        self._prune_missing(set(members))
        for name in members:
            log.info("Found existing container: %s", name)
            try:
                self.on_lifecycle(name, ACTION_START)
            except Exception as e:
                self._event("ERROR", f"Skipping container during startup scan: {type(e).__name__}: {e}", container=name)
                log.exception("Startup scan failed for %s", name)

    def _prune_missing(self, members: set[str]) -> None:
        """Drop container routes left over from containers that are gone."""
        with self._lock:
            stale = [
                e
                for e in d.route_entries(self.store.current, self.settings)
                if e.origin == ORIGIN_CONTAINER and e.container not in members
            ]
            if not stale:
                return
            result = builder.build(self.store.current, self.settings, remove=stale)
            for e in result.removed:
                self._event("INFO", "Removing route for container that is no longer running", e.domain, e.container)
            if self._commit_and_apply(result.document, "prune"):
                self._requeue_freed(result)

    def _is_self(self, name: str) -> bool:
        return bool(self.settings.self_container) and self.settings.self_container in name

    # --- handlers ---

    def on_lifecycle(self, container: str, action: str) -> bool:
        if action not in (ACTION_START, ACTION_DIE):
            return False
        try:
            info = self.runtime.inspect(container)
        except (DockerException, requests.exceptions.RequestException) as e:
            self._event("WARN", f"Could not inspect container on {action}: {e}", container=container)
            return False
        if info is None:
            log.info("Container %s is gone; nothing to %s", container, "add" if action == ACTION_START else "remove")
            return False

        domain = info.vhost(self.settings.vhost_env)
        if not domain:
            log.info("No domain found for container %s", info.name)
            return False

        port = self.settings.default_port
        try:
            port = info.port(self.settings.port_env, self.settings.default_port)
        except ValueError:
            if action == ACTION_START:
                self._event("WARN", f"Invalid {self.settings.port_env} value; route not added", domain, info.name)
                return False
        try:
            entry = RouteEntry.for_container(domain, info.name, port)
        except ValueError as e:
            self._event("WARN", f"Invalid {self.settings.vhost_env} value: {e}", container=info.name)
            return False

        with self._lock:
            current = self.store.current
            if action == ACTION_START:
                result = builder.build(current, self.settings, add=[entry])
                if result.changed:
                    self._drop_claim(entry.domain, info.name)
                elif not result.conflicts:
                    log.info("Domain %s already exists in configuration", entry.domain)
                    return False
            else:
                self._drop_claim(entry.domain, info.name)
                result = builder.build(current, self.settings, remove=[entry])
                if not result.changed:
                    log.info("No route for %s owned by %s; nothing to remove", entry.domain, info.name)
                    return False
            self._report(result)
            committed = self._commit_and_apply(result.document, action, entry.domain, info.name)
            if committed:
                self._requeue_freed(result)
            return committed

    def on_host_routes(self, reason: str = "changed") -> bool:
        log.info("Configuring host routes from %s (%s)", self.settings.host_routes_path, reason)
        try:
            routes = hostfile.load_routes(self.settings.host_routes_path, self.settings.host_gateway)
        except HostRoutesError as e:
            self._event("ERROR", str(e))
            return False
        if routes is None:
            log.warning("Host routes file %s is missing; keeping current host routes", self.settings.host_routes_path)
            return False

        with self._lock:
            result = builder.build(self.store.current, self.settings, host_routes=routes)
            # Each rebuild re-reads every host claim, so only its own conflicts count.
            self._host_claims.clear()
            self._report(result)
            committed = self._commit_and_apply(result.document, "host-routes")
            if committed:
                self._requeue_freed(result)
            return committed

    def on_repair(self) -> bool:
        with self._lock:
            candidate = builder.repair_error_handling(self.store.current, self.settings)
            self._event("INFO", "Repairing error handling block")
            return self._commit_and_apply(candidate, "repair", force=True)

    # --- helpers ---

    def _report(self, result: BuildResult) -> None:
        for e in result.removed:
            self._event("INFO", f"Removed route {e.domain} -> {e.target}", e.domain, e.container)
        for e in result.added:
            self._event("INFO", f"Added route {e.domain} -> {e.target}", e.domain, e.container)
        for rejected, holder in result.conflicts:
            if rejected.origin == ORIGIN_CONTAINER and rejected.container:
                self._container_claims.setdefault(rejected.domain, set()).add(rejected.container)
            else:
                self._host_claims.add(rejected.domain)
            self._event(
                "WARN",
                f"Domain already routed to {holder.target} ({holder.origin}); ignoring {rejected.origin} claim for {rejected.target}",
                rejected.domain,
                rejected.container,
            )

    def _drop_claim(self, domain: str, container: str) -> None:
        names = self._container_claims.get(domain)
        if names:
            names.discard(container)
            if not names:
                del self._container_claims[domain]

    def _requeue_freed(self, result: BuildResult) -> None:
        """Queue a retry for every claim that lost to a route this build removed."""
        still_live = {e.domain for e in result.added}
        retry_host_file = False
        for e in result.removed:
            if e.domain in still_live:
                continue
            for name in sorted(self._container_claims.pop(e.domain, ())):
                log.info("Domain %s is free again; retrying claim by %s", e.domain, name)
                self.signals.put(LifecycleSignal(container=name, action=ACTION_START))
            if e.domain in self._host_claims:
                log.info("Domain %s is free again; re-reading host routes", e.domain)
                retry_host_file = True
        if retry_host_file:
            self.signals.put(HostRoutesSignal(reason="domain-freed"))

    def _commit_and_apply(
        self,
        candidate: ConfigDocument,
        reason: str,
        domain: str | None = None,
        container: str | None = None,
        force: bool = False,
    ) -> bool:
        """Validate, swap and push. Failures are logged; the process never dies here."""
        if not force and d.dumps(candidate) == d.dumps(self.store.current):
            return False
        try:
            committed = self.store.commit(candidate)
        except InvalidDocument as e:
            self._event("ERROR", f"Rejected invalid configuration ({reason}): {e}", domain, container)
            return False
        if self.settings.debug:
            log.info("Committed configuration (%s):\n%s", reason, d.dumps(committed))

        log.info("Reloading Caddy")
        try:
            self.controller.apply(committed)
            self.applied += 1
        except ApplyFailure as e:
            self._event("ERROR", f"{e}; Caddy keeps serving its previous configuration", domain, container)
        self.publish_mappings(committed)
        return True

    def publish_mappings(self, doc: ConfigDocument | None = None) -> str:
        entries = d.route_entries(doc or self.store.current, self.settings)
        try:
            text = mappings.publish(self.settings.mappings_path, entries)
        except OSError as e:
            log.warning("Could not write %s: %s", self.settings.mappings_path, e)
            text = mappings.render(entries)
        log.info("Listing all domain mappings...\n%s", text)
        return text

    def _event(self, level: str, message: str, domain: str | None = None, container: str | None = None) -> None:
        context = " ".join(f"{k}={v}" for k, v in (("domain", domain), ("container", container)) if v)
        log.log(_LEVELS.get(level, logging.INFO), "%s%s", message, f" [{context}]" if context else "")
        if self.journal is not None:
            try:
                self.journal.record(level, message, domain=domain, container=container)
            except (sqlite3.Error, OSError) as e:
                log.warning("Could not record event: %s", e)


_LEVELS = {"DEBUG": logging.DEBUG, "INFO": logging.INFO, "WARN": logging.WARNING, "ERROR": logging.ERROR}
