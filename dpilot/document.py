"""Caddy JSON routing document: schema, fixed rules and structural checks.

The document is modelled with pydantic so that anything unknown to us (extra
handler options, Caddy fields added by hand) survives a load/dump cycle
untouched. Only the parts the controller relies on are typed.
"""
from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import InvalidDocument
from .models import ORIGIN_CONTAINER, ORIGIN_HOST, RouteEntry
from .settings import Settings

HEALTH_ID = "dpilot-health"
CATCH_ALL_ID = "dpilot-catch-all"
ERROR_ID = "dpilot-error"
CONTAINER_ID_PREFIX = "dpilot-container-"
HOST_ID_PREFIX = "dpilot-host-"

CERT_LIFETIME = "87600h"

NOT_CONFIGURED_PAGE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Domain not configured</title></head>
<body>
<h1>{http.request.host} is not configured</h1>
<p>Set DOMAINPILOT_VHOST on a container attached to the proxy network,
or add the domain to host-routes.conf.</p>
</body>
</html>
"""

ERROR_PAGE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{http.error.status_code} {http.error.status_text}</title></head>
<body>
<h1>{http.error.status_code} {http.error.status_text}</h1>
<p>DomainPilot could not complete the request to {http.request.host}.</p>
</body>
</html>
"""


class _Model(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class Match(_Model):
    host: list[str] = Field(default_factory=list)
    path: list[str] | None = None


class Route(_Model):
    id: str | None = Field(default=None, alias="@id")
    match: list[Match] = Field(default_factory=list)
    handle: list[dict[str, Any]] = Field(default_factory=list)
    terminal: bool | None = None

    @property
    def hosts(self) -> list[str]:
        out: list[str] = []
        for m in self.match:
            out.extend(m.host)
        return out

    @property
    def dial(self) -> str | None:
        for h in self.handle:
            for upstream in h.get("upstreams") or []:
                if isinstance(upstream, dict) and upstream.get("dial"):
                    return str(upstream["dial"])
        return None


class ErrorsConfig(_Model):
    routes: list[Route] = Field(default_factory=list)


class Server(_Model):
    listen: list[str]
    routes: list[Route]
    errors: ErrorsConfig | None = None
    logs: dict[str, Any] | None = None


class HttpApp(_Model):
    servers: dict[str, Server]


class TlsPolicy(_Model):
    subjects: list[str] = Field(default_factory=list)
    issuers: list[dict[str, Any]] = Field(default_factory=list)


class Automation(_Model):
    policies: list[TlsPolicy] = Field(default_factory=list)


class TlsApp(_Model):
    automation: Automation


class Apps(_Model):
    http: HttpApp
    tls: TlsApp


class AdminConfig(_Model):
    listen: str


class ConfigDocument(_Model):
    admin: AdminConfig
    apps: Apps
    logging: dict[str, Any] | None = None

    def server(self, name: str) -> Server:
        return self.apps.http.servers[name]

    @property
    def policies(self) -> list[TlsPolicy]:
        return self.apps.tls.automation.policies

    def copy_deep(self) -> "ConfigDocument":
        return self.model_copy(deep=True)


# --- serialization ---

def dumps(doc: ConfigDocument) -> str:
    return json.dumps(doc.model_dump(by_alias=True, exclude_none=True), indent=2) + "\n"


def parse(raw: str | bytes | dict[str, Any]) -> ConfigDocument:
    """Parse raw JSON (or an already decoded mapping) into a document.

    Raises InvalidDocument for anything that is not parseable or does not have
    the required top-level sections.
    """
    try:
        if isinstance(raw, dict):
            return ConfigDocument.model_validate(raw)
        return ConfigDocument.model_validate_json(raw)
    except ValidationError as e:
        raise InvalidDocument(f"document does not match the expected schema: {e.error_count()} error(s): {_first_error(e)}") from e
    except ValueError as e:
        raise InvalidDocument(f"document is not valid JSON: {e}") from e


def _first_error(e: ValidationError) -> str:
    errs = e.errors()
    if not errs:
        return str(e)
    first = errs[0]
    loc = ".".join(str(x) for x in first.get("loc", ()))
    return f"{loc}: {first.get('msg')}"


# --- fixed members ---

def health_route(s: Settings) -> Route:
    return Route(
        id=HEALTH_ID,
        match=[Match(host=[s.admin_host], path=[s.health_path])],
        handle=[{"handler": "static_response", "status_code": 200, "body": "OK"}],
        terminal=True,
    )


def catch_all_route(s: Settings) -> Route:
    return Route(
        id=CATCH_ALL_ID,
        match=[Match(host=[wildcard_subject(s)])],
        handle=[
            {
                "handler": "static_response",
                "status_code": 404,
                "headers": {"Content-Type": ["text/html; charset=utf-8"]},
                "body": NOT_CONFIGURED_PAGE,
            }
        ],
        terminal=True,
    )


def error_block(s: Settings) -> ErrorsConfig:
    return ErrorsConfig(
        routes=[
            Route(
                id=ERROR_ID,
                handle=[
                    {
                        "handler": "static_response",
                        "status_code": "{http.error.status_code}",
                        "headers": {"Content-Type": ["text/html; charset=utf-8"]},
                        "body": ERROR_PAGE,
                    }
                ],
                terminal=True,
            )
        ]
    )


def wildcard_subject(s: Settings) -> str:
    return f"*.{s.wildcard_suffix}"


def wildcard_policy(s: Settings) -> TlsPolicy:
    return TlsPolicy(
        subjects=[wildcard_subject(s)],
        issuers=[{"module": "internal", "ca": "local", "lifetime": CERT_LIFETIME}],
    )


def explicit_policy(domain: str) -> TlsPolicy:
    return TlsPolicy(subjects=[domain], issuers=[{"module": "internal", "lifetime": CERT_LIFETIME}])


def baseline(s: Settings) -> ConfigDocument:
    """Minimal valid document: health check, catch-all, wildcard TLS policy."""
    server = Server(
        listen=[":80", ":443"],
        routes=[health_route(s), catch_all_route(s)],
        errors=error_block(s),
        logs={"default_logger_name": "access"},
    )
    return ConfigDocument(
        admin=AdminConfig(listen=s.admin_listen),
        apps=Apps(
            http=HttpApp(servers={s.server_name: server}),
            tls=TlsApp(automation=Automation(policies=[wildcard_policy(s)])),
        ),
        logging={
            "logs": {
                "access": {
                    "writer": {"output": "file", "filename": s.access_log_path},
                    "encoder": {"format": "json"},
                    "include": ["http.log.access.access"],
                }
            }
        },
    )


def needs_explicit_subject(domain: str, s: Settings) -> bool:
    """True when the wildcard policy and the loopback admin host don't cover *domain*.

    A wildcard certificate only covers a single label, so a.b.<suffix> still
    needs its own subject.
    """
    d = domain.lower()
    if d == s.admin_host.lower():
        return False
    suffix = "." + s.wildcard_suffix.lower()
    if d.endswith(suffix):
        label = d[: -len(suffix)]
        if label and "." not in label:
            return False
    return True


# --- variable members ---

def route_rule(entry: RouteEntry) -> Route:
    prefix = CONTAINER_ID_PREFIX if entry.origin == ORIGIN_CONTAINER else HOST_ID_PREFIX
    return Route(
        id=f"{prefix}{entry.domain}",
        match=[Match(host=[entry.domain])],
        handle=[{"handler": "reverse_proxy", "upstreams": [{"dial": entry.target}]}],
        terminal=entry.terminal,
    )


def is_fixed(rule: Route) -> bool:
    return rule.id in {HEALTH_ID, CATCH_ALL_ID}


def route_entry(rule: Route, s: Settings) -> RouteEntry | None:
    """Recover the RouteEntry a variable rule was built from.

    Rules written before ids were introduced are classified by their dial
    address. Returns None for fixed rules and anything that isn't a
    single-host reverse proxy.
    """
    if is_fixed(rule):
        return None
    hosts = rule.hosts
    dial = rule.dial
    if len(hosts) != 1 or not dial or ":" not in dial:
        return None
    rid = rule.id or ""
    if rid.startswith(CONTAINER_ID_PREFIX):
        origin = ORIGIN_CONTAINER
    elif rid.startswith(HOST_ID_PREFIX):
        origin = ORIGIN_HOST
    elif dial.startswith(f"{s.host_gateway}:"):
        origin = ORIGIN_HOST
    else:
        origin = ORIGIN_CONTAINER
    container = dial.rsplit(":", 1)[0] if origin == ORIGIN_CONTAINER else None
    return RouteEntry(domain=hosts[0], target=dial, origin=origin, container=container, terminal=rule.terminal is not False)


def route_entries(doc: ConfigDocument, s: Settings) -> list[RouteEntry]:
    out: list[RouteEntry] = []
    for rule in doc.server(s.server_name).routes:
        e = route_entry(rule, s)
        if e is not None:
            out.append(e)
    return out


def validate(doc: ConfigDocument, s: Settings) -> None:
    """Check the invariants Caddy's own schema can't express for us.

    Raises InvalidDocument.
    """
    server = doc.apps.http.servers.get(s.server_name)
    if server is None:
        raise InvalidDocument(f"missing http server {s.server_name!r}")
    routes = server.routes
    if len(routes) < 2:
        raise InvalidDocument("routes must contain at least the health check and the catch-all")
    if routes[0].id != HEALTH_ID:
        raise InvalidDocument("health check rule is not first")
    if routes[-1].id != CATCH_ALL_ID:
        raise InvalidDocument("catch-all rule is not last")
    ids = [r.id for r in routes]
    if ids.count(HEALTH_ID) != 1 or ids.count(CATCH_ALL_ID) != 1:
        raise InvalidDocument("fixed rules must appear exactly once")
    if server.errors is None or not server.errors.routes:
        raise InvalidDocument("error handling block is missing")

    seen: set[str] = set()
    for rule in routes[1:-1]:
        hosts = rule.hosts
        if len(hosts) != 1:
            raise InvalidDocument(f"route {rule.id or '?'} must match exactly one host")
        if rule.dial is None:
            raise InvalidDocument(f"route for {hosts[0]} has no upstream")
        d = hosts[0].lower()
        if d in seen:
            raise InvalidDocument(f"domain {d} is routed more than once")
        seen.add(d)

    if not any(wildcard_subject(s) in p.subjects for p in doc.policies):
        raise InvalidDocument(f"TLS policy for {wildcard_subject(s)} is missing")
