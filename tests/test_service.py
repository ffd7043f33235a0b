from dpilot.docker_ops import DockerRuntime
from dpilot.service import DomainPilot


def _service(settings, engine, docker_client):
    return DomainPilot(settings, runtime=DockerRuntime(client=docker_client), engine=engine)


def test_loops_start_even_when_startup_fails(settings, engine, docker_client):
    svc = _service(settings, engine, docker_client)

    def broken_bootstrap():
        raise RuntimeError("docker went away mid-scan")

    svc.reconciler.bootstrap = broken_bootstrap

    svc.run()
    try:
        assert svc.ready.is_set()
        st = svc.status()
        assert st["lifecycle_source"] is True
        assert st["file_watch"] is True
    finally:
        svc.stop()


def test_stop_joins_the_worker_threads(settings, engine, docker_client):
    svc = _service(settings, engine, docker_client)
    svc.run()

    svc.stop(timeout=5.0)

    st = svc.status()
    assert st["lifecycle_source"] is False
    assert st["file_watch"] is False
    assert not svc.reconciler._thr.is_alive()


def test_stop_before_start_is_harmless(settings, engine, docker_client):
    _service(settings, engine, docker_client).stop()
