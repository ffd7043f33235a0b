"""DomainPilot daemon: admin API plus the background reconciliation loops.

Run with ``python cli.py serve`` (or ``uvicorn main:app``).
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import PlainTextResponse

from dpilot import document as d
from dpilot import mappings
from dpilot.errors import InvalidDocument
from dpilot.service import DomainPilot
from dpilot.settings import settings

log = logging.getLogger("dpilot")

service: DomainPilot | None = None


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def build_service() -> DomainPilot:
    return DomainPilot(settings)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    global service
    configure_logging(settings.log_level)
    service = build_service()
    log.info("Make sure to add the env var '%s' to your containers with the domain name you want to use.", settings.vhost_env)
    log.info("You can set '%s' to specify a non-default port (default is %d).", settings.port_env, settings.default_port)
    log.info("Attach containers to the '%s' network (as external) to route them.", settings.docker_network)
    log.info("To route localhost ports, edit '%s' with format: 'domain port'", settings.host_routes_path)
    service.start()
    try:
        yield
    finally:
        service.stop()


app = FastAPI(title="DomainPilot", lifespan=lifespan)


def _service() -> DomainPilot:
    if service is None:
        raise HTTPException(status_code=503, detail="DomainPilot is not running")
    return service


@app.get("/health")
def health() -> dict:
    svc = _service()
    st = svc.status()
    return {"status": "healthy" if st["ready"] else "starting", **st}


@app.get("/mappings")
def get_mappings(format: str = Query("json", pattern="^(json|text)$")):
    svc = _service()
    try:
        doc = svc.store.load()
    except InvalidDocument as e:
        raise HTTPException(status_code=503, detail=f"Caddy configuration unavailable: {e}")
    entries = d.route_entries(doc, svc.settings)
    if format == "text":
        return PlainTextResponse(mappings.render(entries))
    return {"mappings": [asdict(e) for e in entries]}


@app.get("/events")
def get_events(limit: int = Query(50, ge=1, le=1000), domain: str | None = None) -> dict:
    svc = _service()
    return {"events": svc.journal.latest_dicts(limit=limit, domain=domain)}


@app.post("/repair", status_code=202)
def repair() -> dict:
    svc = _service()
    svc.request_repair()
    return {"status": "queued"}
