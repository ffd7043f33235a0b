"""Parser for host-routes.conf (``<domain> <port>`` per line)."""
from __future__ import annotations

import logging
import os

from .errors import HostRoutesError
from .models import RouteEntry

log = logging.getLogger(__name__)

TEMPLATE = """# DomainPilot Host Routes Configuration
# Format: domain port
#
# Examples:
# local-api.docker.local 3000
# my-frontend.docker.local 8080
# websocket-service.docker.local 9000
"""


def ensure_file(path: str) -> bool:
    """Create the routes file with an example header if missing. Returns True if created."""
    if os.path.exists(path):
        return False
    parent = os.path.dirname(os.path.abspath(path))
    os.makedirs(parent, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(TEMPLATE)
    log.info("Created initial host routes configuration file %s", path)
    return True


def parse_lines(lines: list[str]) -> list[tuple[str, int]]:
    """Return (domain, port) pairs in file order.

    Blank lines and ``#`` comments are skipped; malformed lines are logged and
    skipped.
    """
    pairs: list[tuple[str, int]] = []
    for lineno, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split()
        if len(parts) < 2:
            log.warning("host-routes line %d: expected '<domain> <port>', got %r", lineno, line)
            continue
        if len(parts) > 2:
            log.warning("host-routes line %d: ignoring extra fields %r", lineno, parts[2:])
        domain, port_raw = parts[0], parts[1]
        try:
            port = int(port_raw)
        except ValueError:
            log.warning("host-routes line %d: port %r is not a number", lineno, port_raw)
            continue
        if not 1 <= port <= 65535:
            log.warning("host-routes line %d: port %d out of range", lineno, port)
            continue
        pairs.append((domain.lower(), port))
    return pairs


def read_pairs(path: str) -> list[tuple[str, int]] | None:
    """Parse the routes file. Returns None when the file is missing."""
    try:
        with open(path, encoding="utf-8") as f:
            return parse_lines(f.read().splitlines())
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError) as e:
        raise HostRoutesError(f"cannot read {path}: {e}") from e


def load_routes(path: str, host_gateway: str) -> list[RouteEntry] | None:
    pairs = read_pairs(path)
    if pairs is None:
        return None
    routes: list[RouteEntry] = []
    for domain, port in pairs:
        try:
            routes.append(RouteEntry.for_host(domain, port, host_gateway))
        except ValueError as e:
            log.warning("Skipping host route %r: %s", domain, e)
    return routes
