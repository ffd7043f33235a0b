from __future__ import annotations

import os
import tempfile

from .models import ORIGIN_HOST, RouteEntry

DOMAIN_COL = 40
TARGET_COL = 35
TOTAL_WIDTH = DOMAIN_COL + TARGET_COL + 7
TITLE = "DomainPilot Mappings"


def truncate(text: str, max_length: int) -> str:
    if len(text) > max_length:
        return text[: max_length - 3] + "..."
    return text


def describe_target(entry: RouteEntry) -> str:
    if entry.origin == ORIGIN_HOST:
        return f"localhost:{entry.port}"
    return f"container: {entry.target}"


def _row(left: str, right: str) -> str:
    return f"║ {left:<{DOMAIN_COL}} ║ {right:<{TARGET_COL}} ║"


def _rule(left: str, mid: str, right: str) -> str:
    return f"{left}═{'═' * DOMAIN_COL}═{mid}═{'═' * TARGET_COL}═{right}"


def render(entries: list[RouteEntry]) -> str:
    """Render the human readable domain -> target table."""
    inner = TOTAL_WIDTH - 2
    lines = [
        "╔" + "═" * inner + "╗",
        "║" + TITLE.center(inner) + "║",
        _rule("╠", "╦", "╣"),
        _row("Domain", "Target"),
        _rule("╠", "╬", "╣"),
    ]
    for e in entries:
        lines.append(_row(truncate(e.domain, DOMAIN_COL - 1), truncate(describe_target(e), TARGET_COL - 1)))
    if not entries:
        lines.append(_row("No domains configured yet", "Add some in host-routes.conf"))
    lines.append(_rule("╚", "╩", "╝"))
    return "\n".join(lines) + "\n"


def publish(path: str, entries: list[RouteEntry]) -> str:
    """Write the listing next to the config so `cli.py list` can show it."""
    text = render(entries)
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".mappings-", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
        os.chmod(tmp, 0o644)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise
    return text
