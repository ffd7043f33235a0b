"""Pure document builder: (current document, desired routes) -> candidate.

Container routes are applied incrementally, host routes wholesale. The fixed
health check is kept first and the catch-all last, since Caddy evaluates the
route list in order and the first terminal match wins.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from . import document as d
from .document import ConfigDocument, Route
from .models import ORIGIN_CONTAINER, ORIGIN_HOST, RouteEntry
from .settings import Settings


@dataclass
class BuildResult:
    document: ConfigDocument
    added: list[RouteEntry] = field(default_factory=list)
    removed: list[RouteEntry] = field(default_factory=list)
    conflicts: list[tuple[RouteEntry, RouteEntry]] = field(default_factory=list)  # (rejected, holder)

    @property
    def changed(self) -> bool:
        return bool(self.added or self.removed)


def build(
    current: ConfigDocument,
    s: Settings,
    add: Iterable[RouteEntry] = (),
    remove: Iterable[RouteEntry | str] = (),
    host_routes: list[RouteEntry] | None = None,
) -> BuildResult:
    """Return a new document with the requested changes; *current* is not touched.

    add: container routes to insert (no-op if the domain is already routed;
        a claim by another container or the host file is a conflict).
    remove: domains whose container route should go. Passing the RouteEntry
        instead restricts removal to the container that owns the route.
    host_routes: when given, replaces every host-file route, in this order.
    """
    doc = current.copy_deep()
    server = doc.server(s.server_name)
    head, variable, tail = _split(server.routes, s)

    live: dict[str, RouteEntry] = {}
    rules: list[tuple[RouteEntry, Route]] = []
    for rule in variable:
        e = d.route_entry(rule, s)
        if e is None or e.domain in live:
            continue
        live[e.domain] = e
        rules.append((e, rule))

    result = BuildResult(document=doc)

    for item in remove:
        if isinstance(item, RouteEntry):
            domain, owner = item.domain, item.container
        else:
            domain, owner = item.lower(), None
        e = live.get(domain)
        if e is None or e.origin != ORIGIN_CONTAINER:
            continue
        # Another container may have claimed the domain first.
        if owner is not None and e.container is not None and e.container != owner:
            continue
        del live[domain]
        rules = [(x, r) for x, r in rules if x.domain != domain]
        result.removed.append(e)

    for entry in add:
        if entry.origin != ORIGIN_CONTAINER:
            raise ValueError("only container routes are added incrementally")
        holder = live.get(entry.domain)
        if holder is not None:
            if holder.origin != entry.origin or holder.container != entry.container:
                result.conflicts.append((entry, holder))
            continue
        live[entry.domain] = entry
        rules.append((entry, d.route_rule(entry)))
        result.added.append(entry)

    if host_routes is not None:
        old_hosts = {x.domain: x for x, _ in rules if x.origin == ORIGIN_HOST}
        rules = [(x, r) for x, r in rules if x.origin != ORIGIN_HOST]
        for domain in old_hosts:
            del live[domain]
        for entry in host_routes:
            if entry.origin != ORIGIN_HOST:
                raise ValueError("host_routes must only contain host-file routes")
            holder = live.get(entry.domain)
            if holder is not None:
                result.conflicts.append((entry, holder))
                continue
            live[entry.domain] = entry
            rules.append((entry, d.route_rule(entry)))
        for domain, old in old_hosts.items():
            new = live.get(domain)
            if new is None:
                result.removed.append(old)
            elif new != old:
                result.removed.append(old)
                result.added.append(new)
        for domain, entry in live.items():
            if entry.origin == ORIGIN_HOST and domain not in old_hosts:
                result.added.append(entry)

    server.routes = [head, *(r for _, r in rules), tail]
    _sync_policies(doc, s, live, result)
    return result


def repair_error_handling(current: ConfigDocument, s: Settings) -> ConfigDocument:
    """Restore the error block and fixed rules from the baseline, keeping routes."""
    doc = current.copy_deep()
    server = doc.server(s.server_name)
    _, variable, _ = _split(server.routes, s)
    server.routes = [d.health_route(s), *variable, d.catch_all_route(s)]
    server.errors = d.error_block(s)
    if not any(d.wildcard_subject(s) in p.subjects for p in doc.policies):
        doc.policies.insert(0, d.wildcard_policy(s))
    return doc


def _split(routes: list[Route], s: Settings) -> tuple[Route, list[Route], Route]:
    head: Route | None = None
    tail: Route | None = None
    variable: list[Route] = []
    for rule in routes:
        if rule.id == d.HEALTH_ID:
            if head is None:
                head = rule
        elif rule.id == d.CATCH_ALL_ID:
            if tail is None:
                tail = rule
        else:
            variable.append(rule)
    if head is None:
        head = d.health_route(s)
    if tail is None:
        tail = d.catch_all_route(s)
    return head, variable, tail


def _sync_policies(doc: ConfigDocument, s: Settings, live: dict[str, RouteEntry], result: BuildResult) -> None:
    policies = doc.policies
    for e in result.removed:
        if e.domain in live or not d.needs_explicit_subject(e.domain, s):
            continue
        emptied: list[int] = []
        for i, p in enumerate(policies):
            if e.domain in p.subjects and d.wildcard_subject(s) not in p.subjects:
                p.subjects = [x for x in p.subjects if x != e.domain]
                if not p.subjects:
                    emptied.append(i)
        for i in reversed(emptied):
            del policies[i]

    for e in result.added:
        if not d.needs_explicit_subject(e.domain, s):
            continue
        if any(e.domain in p.subjects for p in policies):
            continue
        policies.append(d.explicit_policy(e.domain))
