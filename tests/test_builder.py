import pytest

from dpilot import builder
from dpilot import document as d
from dpilot.models import ORIGIN_CONTAINER, ORIGIN_HOST, RouteEntry


def _ids(doc, settings):
    return [r.id for r in doc.server(settings.server_name).routes]


def _subjects(doc):
    return [s for p in doc.policies for s in p.subjects]


def _host(domain, port, settings):
    return RouteEntry.for_host(domain, port, settings.host_gateway)


def test_container_add_inserts_before_catch_all(settings):
    base = d.baseline(settings)
    web = RouteEntry.for_container("a.docker.local", "web1", 80)

    result = builder.build(base, settings, add=[web])

    assert result.added == [web]
    assert _ids(result.document, settings) == [d.HEALTH_ID, "dpilot-container-a.docker.local", d.CATCH_ALL_ID]
    rule = result.document.server(settings.server_name).routes[1]
    assert rule.hosts == ["a.docker.local"]
    assert rule.dial == "web1:80"
    assert rule.terminal is True
    # wildcard covers it: no explicit subject
    assert _subjects(result.document) == ["*.docker.local"]
    # input untouched
    assert _ids(base, settings) == [d.HEALTH_ID, d.CATCH_ALL_ID]


def test_adding_an_existing_domain_is_a_no_op(settings):
    web = RouteEntry.for_container("a.docker.local", "web1", 80)
    first = builder.build(d.baseline(settings), settings, add=[web]).document

    again = builder.build(first, settings, add=[web])

    assert not again.changed
    assert again.conflicts == []
    assert d.dumps(again.document) == d.dumps(first)


def test_removal_only_touches_the_named_domain(settings):
    a = RouteEntry.for_container("a.docker.local", "web1", 80)
    b = RouteEntry.for_container("b.docker.local", "web2", 8080)
    doc = builder.build(d.baseline(settings), settings, add=[a, b]).document

    result = builder.build(doc, settings, remove=["a.docker.local"])

    assert [e.domain for e in result.removed] == ["a.docker.local"]
    assert _ids(result.document, settings) == [d.HEALTH_ID, "dpilot-container-b.docker.local", d.CATCH_ALL_ID]


def test_removal_by_entry_respects_the_owner(settings):
    a = RouteEntry.for_container("a.docker.local", "web1", 80)
    doc = builder.build(d.baseline(settings), settings, add=[a]).document

    other = RouteEntry.for_container("a.docker.local", "web9", 80)
    result = builder.build(doc, settings, remove=[other])

    assert not result.changed
    assert _ids(result.document, settings) == _ids(doc, settings)


def test_host_routes_replace_wholesale_in_file_order(settings):
    web = RouteEntry.for_container("a.docker.local", "web1", 80)
    doc = builder.build(d.baseline(settings), settings, add=[web]).document
    doc = builder.build(
        doc, settings, host_routes=[_host("old.docker.local", 1000, settings), _host("keep.docker.local", 2000, settings)]
    ).document

    wanted = [
        _host("zeta.docker.local", 4000, settings),
        _host("keep.docker.local", 2000, settings),
        _host("alpha.docker.local", 5000, settings),
    ]
    result = builder.build(doc, settings, host_routes=wanted)

    entries = d.route_entries(result.document, settings)
    hosts = [(e.domain, e.port) for e in entries if e.origin == ORIGIN_HOST]
    assert hosts == [("zeta.docker.local", 4000), ("keep.docker.local", 2000), ("alpha.docker.local", 5000)]
    assert [e.domain for e in entries if e.origin == ORIGIN_CONTAINER] == ["a.docker.local"]
    assert [e.domain for e in result.removed] == ["old.docker.local"]
    assert sorted(e.domain for e in result.added) == ["alpha.docker.local", "zeta.docker.local"]
    assert entries[-1].domain == "alpha.docker.local"


def test_host_route_port_change_is_reported(settings):
    doc = builder.build(d.baseline(settings), settings, host_routes=[_host("api.docker.local", 3000, settings)]).document

    result = builder.build(doc, settings, host_routes=[_host("api.docker.local", 3001, settings)])

    assert [e.port for e in result.removed] == [3000]
    assert [e.port for e in result.added] == [3001]
    assert result.document.server(settings.server_name).routes[1].dial == "host.docker.internal:3001"


def test_existing_container_route_wins_over_host_route(settings):
    web = RouteEntry.for_container("shared.docker.local", "web1", 80)
    doc = builder.build(d.baseline(settings), settings, add=[web]).document

    result = builder.build(doc, settings, host_routes=[_host("shared.docker.local", 3000, settings)])

    entries = d.route_entries(result.document, settings)
    assert [(e.domain, e.origin, e.target) for e in entries] == [("shared.docker.local", ORIGIN_CONTAINER, "web1:80")]
    assert len(result.conflicts) == 1
    rejected, holder = result.conflicts[0]
    assert rejected.origin == ORIGIN_HOST
    assert holder == web


def test_existing_host_route_wins_over_container(settings):
    doc = builder.build(d.baseline(settings), settings, host_routes=[_host("shared.docker.local", 3000, settings)]).document

    result = builder.build(doc, settings, add=[RouteEntry.for_container("shared.docker.local", "web1", 80)])

    assert not result.changed
    assert result.conflicts[0][1].origin == ORIGIN_HOST


def test_duplicate_lines_in_host_file_keep_the_first(settings):
    result = builder.build(
        d.baseline(settings),
        settings,
        host_routes=[_host("dup.docker.local", 3000, settings), _host("dup.docker.local", 4000, settings)],
    )

    entries = d.route_entries(result.document, settings)
    assert [(e.domain, e.port) for e in entries] == [("dup.docker.local", 3000)]
    assert len(result.added) == 1
    assert len(result.conflicts) == 1


def test_explicit_tls_subject_added_once_and_removed_with_the_route(settings):
    ext = RouteEntry.for_container("myapp.test", "web1", 80)
    doc = builder.build(d.baseline(settings), settings, add=[ext]).document
    assert _subjects(doc) == ["*.docker.local", "myapp.test"]

    doc = builder.build(doc, settings, add=[ext]).document
    assert _subjects(doc).count("myapp.test") == 1

    doc = builder.build(doc, settings, remove=["myapp.test"]).document
    assert _subjects(doc) == ["*.docker.local"]


def test_host_file_domains_get_and_lose_explicit_subjects(settings):
    doc = builder.build(d.baseline(settings), settings, host_routes=[_host("api.example.dev", 3000, settings)]).document
    assert "api.example.dev" in _subjects(doc)

    doc = builder.build(doc, settings, host_routes=[]).document
    assert _subjects(doc) == ["*.docker.local"]


@pytest.mark.parametrize(
    "domain,explicit",
    [
        ("a.docker.local", False),
        ("A.Docker.Local", False),
        ("localhost", False),
        ("docker.local", True),
        # A wildcard certificate only covers one label, so deeper names get
        # their own subject even though they share the suffix.
        ("a.b.docker.local", True),
        ("example.com", True),
    ],
)
def test_needs_explicit_subject(settings, domain, explicit):
    assert d.needs_explicit_subject(domain, settings) is explicit


def test_fixed_rules_stay_at_the_ends(settings):
    doc = d.baseline(settings)
    server = doc.server(settings.server_name)
    # scramble: catch-all first, health last
    server.routes = list(reversed(server.routes))

    result = builder.build(doc, settings, add=[RouteEntry.for_container("x.docker.local", "web", 80)])

    ids = _ids(result.document, settings)
    assert ids[0] == d.HEALTH_ID
    assert ids[-1] == d.CATCH_ALL_ID


def test_ordering_invariant_over_a_sequence_of_changes(settings):
    doc = d.baseline(settings)
    steps = [
        dict(add=[RouteEntry.for_container("a.docker.local", "web1", 80)]),
        dict(host_routes=[_host("h1.docker.local", 3000, settings), _host("h2.example", 3001, settings)]),
        dict(add=[RouteEntry.for_container("b.example", "web2", 81)]),
        dict(remove=["a.docker.local"]),
        dict(host_routes=[_host("h2.example", 3001, settings)]),
        dict(remove=["b.example"]),
        dict(host_routes=[]),
    ]
    for step in steps:
        doc = builder.build(doc, settings, **step).document
        d.validate(doc, settings)
        ids = _ids(doc, settings)
        assert ids[0] == d.HEALTH_ID
        assert ids[-1] == d.CATCH_ALL_ID

    assert d.dumps(doc) == d.dumps(d.baseline(settings))


def test_add_rejects_host_routes(settings):
    with pytest.raises(ValueError):
        builder.build(d.baseline(settings), settings, add=[_host("a.docker.local", 1, settings)])


def test_repair_restores_error_block_and_keeps_routes(settings):
    web = RouteEntry.for_container("a.docker.local", "web1", 80)
    doc = builder.build(d.baseline(settings), settings, add=[web]).document
    server = doc.server(settings.server_name)
    server.errors = None
    server.routes = server.routes[1:]  # health check lost

    repaired = builder.repair_error_handling(doc, settings)

    d.validate(repaired, settings)
    assert [e.domain for e in d.route_entries(repaired, settings)] == ["a.docker.local"]
    assert repaired.server(settings.server_name).errors.routes[0].id == d.ERROR_ID


def test_second_container_claim_is_a_conflict(settings):
    web1 = RouteEntry.for_container("a.docker.local", "web1", 80)
    doc = builder.build(d.baseline(settings), settings, add=[web1]).document

    web9 = RouteEntry.for_container("a.docker.local", "web9", 80)
    result = builder.build(doc, settings, add=[web9])

    assert not result.changed
    assert result.conflicts == [(web9, web1)]
