from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)

ReadinessProbe = Callable[[], Mapping[str, bool]]


class _HealthHandler(BaseHTTPRequestHandler):
    """Serves liveness, readiness, leadership and Prometheus metrics."""

    readiness_probe: ReadinessProbe
    leader_event: threading.Event | None

    def _is_leader(self) -> bool:
        return self.leader_event is None or self.leader_event.is_set()

    def _respond(self, status: int, body: bytes = b"", content_type: str | None = None) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _readyz(self) -> None:
        state = dict(self.readiness_probe())
        leader = self._is_leader()
        ready = bool(state) and all(state.values()) and leader
        parts = [f"{kind}={'true' if synced else 'false'}" for kind, synced in sorted(state.items())]
        parts.append(f"leader={'true' if leader else 'false'}")
        self._respond(200 if ready else 503, " ".join(parts).encode())

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/leadz":
            if self._is_leader():
                self._respond(200, b"ok")
            else:
                self._respond(503, b"not leader")
        elif self.path == "/readyz":
            self._readyz()
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def make_health_handler(
    readiness_probe: ReadinessProbe, leader: threading.Event | None = None
) -> type[_HealthHandler]:
    """Return a handler class bound to *readiness_probe*.

    The stdlib server instantiates handlers without arguments, so the probe
    and leader event are bound as class attributes.
    """

    probe = readiness_probe

    class _BoundHealthHandler(_HealthHandler):
        readiness_probe = staticmethod(probe)
        leader_event = leader

    return _BoundHealthHandler


def start_health_server(
    readiness_probe: ReadinessProbe, port: int, leader: threading.Event | None = None
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    server = ThreadingHTTPServer(
        ("0.0.0.0", port),  # noqa: S104
        make_health_handler(readiness_probe, leader=leader),
    )
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    LOGGER.info("Health server listening on :%d", port)
    return server
