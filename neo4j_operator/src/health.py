from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)


class _OperatorHealthHandler(BaseHTTPRequestHandler):
    """Serves liveness, readiness, leadership and Prometheus metrics."""

    ready_event: threading.Event
    leader_event: threading.Event | None

    def _is_leader(self) -> bool:
        return self.leader_event is None or self.leader_event.is_set()

    def _respond(self, status: int, body: bytes = b"", content_type: str | None = None) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        path = self.path.split("?", 1)[0]
        if path == "/healthz":
            self._respond(200, b"ok")
        elif path == "/leadz":
            if self._is_leader():
                self._respond(200, b"ok")
            else:
                self._respond(503, b"not leader")
        elif path == "/readyz":
            # A standby replica is healthy but must not receive traffic.
            ready = self.ready_event.is_set()
            leader = self._is_leader()
            body = f"ready={str(ready).lower()} leader={str(leader).lower()}".encode()
            self._respond(200 if ready and leader else 503, body)
        elif path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def make_health_handler(
    ready: threading.Event, leader: threading.Event | None = None
) -> type[_OperatorHealthHandler]:
    """Return a handler class bound to the given events.

    The stdlib server instantiates handlers itself, so the events travel as
    class attributes.
    """

    class _BoundHandler(_OperatorHealthHandler):
        ready_event = ready
        leader_event = leader

    return _BoundHandler


def start_health_server(
    ready: threading.Event,
    port: int,
    leader: threading.Event | None = None,
    host: str = "0.0.0.0",  # noqa: S104
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    server = ThreadingHTTPServer((host, port), make_health_handler(ready, leader=leader))
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    LOGGER.info("Health server listening on %s:%d", host, server.server_address[1])
    return server
