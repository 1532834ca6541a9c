from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import parse_qs, urlsplit

LOGGER = logging.getLogger(__name__)

Checker = Callable[[], None]
"""A probe check: returns normally when healthy, raises with the reason otherwise."""


def ping() -> None:
    return None


class ProbeRegistry:
    """Named liveness and readiness checks served under ``/healthz`` and ``/readyz``."""

    def __init__(self) -> None:
        self._checks: dict[str, dict[str, Checker]] = {"/healthz": {}, "/readyz": {}}
        self._lock = threading.Lock()

    def add_healthz_check(self, name: str, check: Checker) -> None:
        with self._lock:
            self._checks["/healthz"][name] = check

    def add_readyz_check(self, name: str, check: Checker) -> None:
        with self._lock:
            self._checks["/readyz"][name] = check

    def handles(self, path: str) -> bool:
        return path in self._checks

    def evaluate(self, path: str) -> tuple[bool, list[str]]:
        """Run every check registered for ``path``; returns (healthy, report lines)."""
        with self._lock:
            checks = dict(self._checks[path])
        healthy = True
        lines: list[str] = []
        for name in sorted(checks):
            try:
                checks[name]()
                lines.append(f"[+]{name} ok")
            except Exception as exc:
                healthy = False
                lines.append(f"[-]{name} failed: {exc}")
        return healthy, lines


class _ProbeHandler(BaseHTTPRequestHandler):
    registry: ProbeRegistry

    def _respond(self, status: int, body: bytes = b"") -> None:
        self.send_response(status)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("X-Content-Type-Options", "nosniff")
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        url = urlsplit(self.path)
        path = url.path.rstrip("/") or "/"
        if not self.registry.handles(path):
            self._respond(404)
            return

        healthy, lines = self.registry.evaluate(path)
        verbose = "verbose" in parse_qs(url.query, keep_blank_values=True)
        if healthy and not verbose:
            self._respond(200, b"ok")
            return

        probe = path.lstrip("/")
        summary = f"{probe} check passed" if healthy else f"{probe} check failed"
        body = "\n".join([*lines, summary]).encode()
        self._respond(200 if healthy else 500, body)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("configmap_controller.health").debug(fmt, *args)


def make_probe_handler(registry: ProbeRegistry) -> type[_ProbeHandler]:
    """Return a handler class bound to ``registry``.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    class _BoundProbeHandler(_ProbeHandler):
        pass

    _BoundProbeHandler.registry = registry
    return _BoundProbeHandler


def start_health_server(registry: ProbeRegistry, port: int) -> ThreadingHTTPServer:
    """Start the probe HTTP server in a daemon thread and return it."""
    server = ThreadingHTTPServer(("0.0.0.0", port), make_probe_handler(registry))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True, name="health-probes").start()
    LOGGER.info("Health probe server listening on :%d", server.server_address[1])
    return server
