import os
import sys
from dataclasses import replace

import pytest
from docker.errors import NotFound

# Ensure project root is importable (so `import main` / `import cli` work without installing)
_project_root = os.path.dirname(os.path.dirname(__file__))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from dpilot.controller import ProxyController  # noqa: E402
from dpilot.db import EventJournal  # noqa: E402
from dpilot.docker_ops import DockerRuntime  # noqa: E402
from dpilot.reconciler import Reconciler  # noqa: E402
from dpilot.settings import Settings  # noqa: E402
from dpilot.store import ConfigStore  # noqa: E402


class FakeContainer:
    def __init__(self, name, env=None):
        self.name = name
        self.attrs = {"Config": {"Env": [f"{k}={v}" for k, v in (env or {}).items()]}}


class FakeContainers:
    def __init__(self):
        self.by_name = {}

    def get(self, name):
        try:
            return self.by_name[name]
        except KeyError:
            raise NotFound(f"No such container: {name}")


class FakeNetwork:
    def __init__(self, members):
        self.attrs = {"Containers": {f"id-{m}": {"Name": m} for m in members}}


class FakeNetworks:
    def __init__(self):
        self.members = {}

    def get(self, name):
        if name not in self.members:
            raise NotFound(f"network {name} not found")
        return FakeNetwork(self.members[name])


class FakeDockerClient:
    """Just enough of docker.DockerClient for DockerRuntime."""

    def __init__(self):
        self.containers = FakeContainers()
        self.networks = FakeNetworks()
        self.streams = []  # each item: list of events, or an exception to raise
        self.events_calls = []

    def add(self, name, env=None, network=None):
        self.containers.by_name[name] = FakeContainer(name, env)
        if network:
            self.networks.members.setdefault(network, []).append(name)

    def remove(self, name):
        self.containers.by_name.pop(name, None)
        for members in self.networks.members.values():
            if name in members:
                members.remove(name)

    def ping(self):
        return True

    def events(self, decode=False, filters=None):
        self.events_calls.append(filters)
        item = self.streams.pop(0) if self.streams else []
        if isinstance(item, Exception):
            raise item
        return iter(item)


class FakeEngine:
    def __init__(self, fail_loads=0, responsive=True):
        self.fail_loads = fail_loads
        self.responsive = responsive
        self.loads = []
        self.started = []
        self.stopped = 0
        self.checks = 0

    def start(self, config_path):
        self.started.append(config_path)

    def stop(self):
        self.stopped += 1

    def load(self, config_json):
        self.loads.append(config_json)
        if self.fail_loads > 0:
            self.fail_loads -= 1
            return False, "HTTP 400: bad config"
        return True, "OK"

    def is_responsive(self):
        self.checks += 1
        return self.responsive


@pytest.fixture
def settings(tmp_path) -> Settings:
    return replace(
        Settings(),
        config_path=str(tmp_path / "caddy" / "config.json"),
        host_routes_path=str(tmp_path / "host-routes.conf"),
        mappings_path=str(tmp_path / "domain_mappings.txt"),
        access_log_path=str(tmp_path / "access.log"),
        db_path=str(tmp_path / "events.db"),
        self_container="caddy-proxy",
        debug=False,
    )


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def docker_client():
    return FakeDockerClient()


@pytest.fixture
def store(settings):
    s = ConfigStore(settings)
    s.ensure_baseline()
    return s


@pytest.fixture
def journal(settings):
    j = EventJournal(settings.db_path)
    j.init()
    return j


@pytest.fixture
def reconciler(settings, store, engine, docker_client, journal, sleeps):
    controller = ProxyController(engine, settings, sleep=sleeps.append)
    return Reconciler(settings, store, controller, DockerRuntime(client=docker_client), journal=journal)
