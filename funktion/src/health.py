from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)


class _HealthHandler(BaseHTTPRequestHandler):
    """Serves liveness, readiness, leadership and Prometheus metrics endpoints.

    ``/readyz`` is healthy only once every informer cache has synced and, when
    leader election is on, this replica holds the lease.
    """

    synced_event: threading.Event
    leader_event: threading.Event | None
    pending_fn: Callable[[], int] | None

    def _leader(self) -> bool:
        return self.leader_event is None or self.leader_event.is_set()

    def _respond(self, status: int, body: bytes = b"", content_type: str | None = None) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/leadz":
            if self._leader():
                self._respond(200, b"ok")
            else:
                self._respond(503, b"not leader")
        elif self.path == "/readyz":
            synced = self.synced_event.is_set()
            leader = self._leader()
            body = f"synced={str(synced).lower()} leader={str(leader).lower()}"
            if self.pending_fn is not None:
                body += f" pending={self.pending_fn()}"
            self._respond(200 if synced and leader else 503, body.encode())
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def make_health_handler(
    synced: threading.Event,
    leader: threading.Event | None = None,
    pending_fn: Callable[[], int] | None = None,
) -> type[_HealthHandler]:
    """Return a handler class bound to the operator's state.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    class _BoundHealthHandler(_HealthHandler):
        synced_event = synced
        leader_event = leader

    _BoundHealthHandler.pending_fn = staticmethod(pending_fn) if pending_fn else None  # type: ignore[assignment]
    return _BoundHealthHandler


def start_health_server(
    synced: threading.Event,
    port: int,
    leader: threading.Event | None = None,
    pending_fn: Callable[[], int] | None = None,
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(synced, leader=leader, pending_fn=pending_fn)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    LOGGER.info("Health server listening on :%d", port)
    return server
