from __future__ import annotations

import argparse
import json
import sys
import time
from collections import deque
from dataclasses import asdict, replace

import requests

from dpilot import document as d
from dpilot import mappings
from dpilot.docker_ops import DockerRuntime
from dpilot.engine import CaddyEngine
from dpilot.errors import InvalidDocument
from dpilot.settings import settings
from dpilot.store import ConfigStore


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def tail_lines(path: str, n: int) -> list[str]:
    with open(path, encoding="utf-8", errors="replace") as f:
        return list(deque(f, maxlen=max(0, n)))


def follow(path: str, poll_s: float = 0.5) -> None:
    with open(path, encoding="utf-8", errors="replace") as f:
        f.seek(0, 2)
        while True:
            line = f.readline()
            if line:
                sys.stdout.write(line)
                sys.stdout.flush()
            else:
                time.sleep(poll_s)


def cmd_list(config_path: str) -> int:
    store = ConfigStore(replace(settings, config_path=config_path))
    try:
        doc = store.load()
    except InvalidDocument as e:
        print(f"Caddy configuration not found or invalid ({e}). Is DomainPilot running?", file=sys.stderr)
        return 1
    print(mappings.render(d.route_entries(doc, store.settings)), end="")
    return 0


def cmd_logs(lines: int, follow_log: bool) -> int:
    try:
        for line in tail_lines(settings.access_log_path, lines):
            sys.stdout.write(line)
        if follow_log:
            follow(settings.access_log_path)
    except FileNotFoundError:
        print(f"No access log at {settings.access_log_path} yet.", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        pass
    return 0


def cmd_debug(api: str) -> int:
    report: dict = {"settings": asdict(settings)}

    store = ConfigStore(settings)
    try:
        doc = store.load()
        entries = d.route_entries(doc, settings)
        report["document"] = {
            "path": settings.config_path,
            "valid": True,
            "routes": len(entries),
            "tls_subjects": [s for p in doc.policies for s in p.subjects],
        }
    except InvalidDocument as e:
        report["document"] = {"path": settings.config_path, "valid": False, "error": str(e)}

    report["caddy_admin_reachable"] = CaddyEngine(settings).is_responsive()
    report["docker_available"] = DockerRuntime().available()
    try:
        report["daemon"] = requests.get(f"{api}/health", timeout=5).json()
    except requests.RequestException as e:
        report["daemon"] = {"error": f"{type(e).__name__}: {e}"}

    _print(report)
    return 0


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="DomainPilot: Caddy routing for local Docker development")
    p.add_argument("--api", default=settings.api_url, help="Daemon admin API base URL")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_serve = sub.add_parser("serve", help="Run the controller daemon")
    s_serve.add_argument("--host", default=settings.api_host)
    s_serve.add_argument("--port", type=int, default=settings.api_port)

    s_list = sub.add_parser("list", help="List domain mappings")
    s_list.add_argument("--config", default=settings.config_path, help="Path of the Caddy JSON document")

    s_ev = sub.add_parser("events", help="Show reconciler events")
    s_ev.add_argument("--limit", type=int, default=20)
    s_ev.add_argument("--domain")

    s_logs = sub.add_parser("logs", help="Show the Caddy access log")
    s_logs.add_argument("-n", "--lines", type=int, default=50)
    s_logs.add_argument("-f", "--follow", action="store_true")

    sub.add_parser("debug", help="Print diagnostics")
    sub.add_parser("repair", help="Ask the daemon to rebuild the error handling block")

    args = p.parse_args(argv)

    base = args.api.rstrip("/")

    if args.cmd == "serve":
        import uvicorn

        from main import configure_logging

        configure_logging(settings.log_level)
        uvicorn.run("main:app", host=args.host, port=args.port, log_level=settings.log_level.lower())
        return 0

    if args.cmd == "list":
        return cmd_list(args.config)

    if args.cmd == "events":
        params: dict = {"limit": args.limit}
        if args.domain:
            params["domain"] = args.domain
        r = requests.get(f"{base}/events", params=params, timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    if args.cmd == "logs":
        return cmd_logs(args.lines, args.follow)

    if args.cmd == "debug":
        return cmd_debug(base)

    if args.cmd == "repair":
        r = requests.post(f"{base}/repair", timeout=10)
        _print(r.json())
        return 0 if r.ok else 1

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
