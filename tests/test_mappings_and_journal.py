import os

import pytest

from dpilot import mappings
from dpilot.db import EventJournal, _resolve_db_path
from dpilot.models import RouteEntry


def test_render_table_has_fixed_width():
    entries = [
        RouteEntry.for_container("a.docker.local", "web1", 80),
        RouteEntry.for_host("api.docker.local", 3000, "host.docker.internal"),
    ]

    text = mappings.render(entries)

    lines = text.splitlines()
    assert all(len(line) == mappings.TOTAL_WIDTH for line in lines)
    assert "DomainPilot Mappings" in lines[1]
    assert "container: web1:80" in text
    assert "localhost:3000" in text
    assert "host.docker.internal" not in text


def test_render_empty_listing():
    text = mappings.render([])
    assert "No domains configured yet" in text
    assert "Add some in host-routes.conf" in text


def test_long_names_are_truncated():
    long_domain = "a-really-long-service-name-for-testing-the-table.docker.local"
    text = mappings.render([RouteEntry.for_container(long_domain, "c" * 50, 8080)])

    assert long_domain not in text
    assert "..." in text
    assert all(len(line) == mappings.TOTAL_WIDTH for line in text.splitlines())


def test_truncate():
    assert mappings.truncate("short", 10) == "short"
    assert mappings.truncate("abcdefghijkl", 8) == "abcde..."


def test_publish_writes_file(tmp_path):
    path = tmp_path / "opt" / "domain_mappings.txt"

    text = mappings.publish(str(path), [])

    assert path.read_text(encoding="utf-8") == text


def test_journal_records_and_filters(tmp_path):
    journal = EventJournal(str(tmp_path / "events.db"))
    journal.init()

    journal.record("info", "Added route a.docker.local -> web1:80", domain="a.docker.local", container="web1")
    journal.record("WARN", "Invalid port", container="api")
    journal.record("INFO", "Added route b.docker.local -> web2:80", domain="b.docker.local", container="web2")

    rows = journal.latest()
    assert [r.message for r in rows][0].startswith("Added route b")
    assert rows[-1].level == "INFO"

    only_a = journal.latest_dicts(domain="A.docker.local")
    assert len(only_a) == 1
    assert only_a[0]["container"] == "web1"


def test_journal_trims_old_rows(tmp_path):
    journal = EventJournal(str(tmp_path / "events.db"), keep=3)
    journal.init()

    for i in range(10):
        journal.record("INFO", f"event {i}")

    assert [r.message for r in journal.latest()] == ["event 9", "event 8", "event 7"]


def test_db_path_directory_is_resolved(tmp_path):
    d = tmp_path / "data"
    d.mkdir()
    assert _resolve_db_path(str(d)) == str(d / "events.db")


def test_publish_removes_the_temp_file_on_failure(tmp_path, monkeypatch):
    def denied(path, mode):
        raise PermissionError(13, "Permission denied", path)

    monkeypatch.setattr(os, "chmod", denied)

    with pytest.raises(PermissionError):
        mappings.publish(str(tmp_path / "domain_mappings.txt"), [])

    assert os.listdir(tmp_path) == []
