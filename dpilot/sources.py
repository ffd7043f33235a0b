"""Producers of "desired state changed" signals.

Both sources run on their own daemon thread and only ever put signals on the
reconciler's queue; neither touches the routing document.
"""
from __future__ import annotations

import logging
import os
import queue
import time
from threading import Event, Thread
from typing import Any, Callable, Iterable, Iterator, Protocol

import requests
from docker.errors import DockerException

from .models import HostRoutesSignal, LifecycleSignal

log = logging.getLogger(__name__)


class EventStream(Protocol):
    def events(self) -> Iterator[tuple[str, str]]: ...


class _Worker:
    name = "worker"

    def __init__(self) -> None:
        self._stop = Event()
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, daemon=True, name=self.name)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()

    def join(self, timeout: float | None = None) -> None:
        if self._thr is not None:
            self._thr.join(timeout)

    @property
    def running(self) -> bool:
        return bool(self._thr and self._thr.is_alive())

    def _loop(self) -> None:
        raise NotImplementedError


class LifecycleSource(_Worker):
    """Follows the Docker event stream and resubscribes whenever it drops."""

    name = "lifecycle-source"

    def __init__(
        self,
        runtime: EventStream,
        signals: "queue.Queue[Any]",
        ignore: Iterable[str] = (),
        max_backoff_s: float = 30.0,
        sleep: Callable[[float], None] | None = None,
    ):
        super().__init__()
        self.runtime = runtime
        self.signals = signals
        self.ignore = {x for x in ignore if x}
        self.max_backoff_s = max(1.0, float(max_backoff_s))
        self._sleep = sleep
        self.subscriptions = 0

    def _wait(self, seconds: float) -> None:
        if self._sleep is not None:
            self._sleep(seconds)
        else:
            self._stop.wait(seconds)

    def is_self(self, name: str) -> bool:
        return any(x in name for x in self.ignore)

    def _loop(self) -> None:
        log.info("Listening to Docker container events...")
        failures = 0
        while not self._stop.is_set():
            try:
                self.subscriptions += 1
                for name, action in self.runtime.events():
                    failures = 0
                    if self._stop.is_set():
                        return
                    if self.is_self(name):
                        continue
                    self.signals.put(LifecycleSignal(container=name, action=action))
                # A clean end of stream (daemon restart) still means resubscribe.
                log.warning("Docker event stream ended; resubscribing")
            except (DockerException, requests.exceptions.RequestException) as e:
                failures += 1
                log.warning("Docker event stream failed (%s: %s); resubscribing", type(e).__name__, e)
            except Exception:
                # urllib3 ProtocolError, StreamParseError and friends come through unwrapped.
                failures += 1
                log.exception("Unexpected error on the Docker event stream; resubscribing")
            if self._stop.is_set():
                return
            self._wait(min(self.max_backoff_s, float(2 ** min(failures, 10))))


class FileChangeSource(_Worker):
    """Polls the host routes file and signals on any change.

    Create, modify, delete and rename all change the stat fingerprint. An idle
    timeout also produces a signal, which covers filesystems (bind mounts on
    some hosts) where edits don't update what we can observe.
    """

    name = "file-change-source"

    def __init__(
        self,
        path: str,
        signals: "queue.Queue[Any]",
        interval_s: float = 1.0,
        idle_timeout_s: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__()
        self.path = path
        self.signals = signals
        self.interval_s = max(0.05, float(interval_s))
        self.idle_timeout_s = float(idle_timeout_s)
        self.clock = clock
        self._last = self.fingerprint()
        self._last_signal = clock()
        self._missing_reported = False

    def fingerprint(self) -> tuple[int, int, int, int] | None:
        try:
            st = os.stat(self.path)
        except FileNotFoundError:
            return None
        return (st.st_ino, st.st_dev, st.st_size, st.st_mtime_ns)

    def poll_once(self) -> str | None:
        """Check once; enqueue and return the reason if a signal was emitted."""
        current = self.fingerprint()
        reason: str | None = None
        if current != self._last:
            if current is None:
                reason = "deleted"
            elif self._last is None:
                reason = "created"
            else:
                reason = "modified"
            self._last = current
        elif self.idle_timeout_s > 0 and self.clock() - self._last_signal >= self.idle_timeout_s:
            reason = "idle-timeout"

        if current is None and not self._missing_reported:
            log.warning("Host routes file %s is missing; polling until it reappears", self.path)
            self._missing_reported = True
        elif current is not None and self._missing_reported:
            log.info("Host routes file %s is back", self.path)
            self._missing_reported = False

        if reason is None:
            return None
        self._last_signal = self.clock()
        if reason != "idle-timeout":
            log.info("Host routes file %s, reconfiguring...", reason)
        self.signals.put(HostRoutesSignal(reason=reason))
        return reason

    def _loop(self) -> None:
        log.info("Watching %s for changes", self.path)
        self._last = self.fingerprint()
        self._last_signal = self.clock()
        while not self._stop.wait(self.interval_s):
            try:
                self.poll_once()
            except OSError as e:
                log.warning("Polling %s failed: %s", self.path, e)
