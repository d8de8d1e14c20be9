"""
JSON health endpoint for the monitor loop.

GET /health (or / and /healthz) returns the loop's status snapshot with
200 when healthy and 503 otherwise, so a supervisor can probe it without
parsing the body. A heartbeat older than ``stale_after_seconds`` marks the
loop unhealthy even when the last tick itself succeeded: the loop may be
wedged inside a tick.
"""

from __future__ import annotations

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

HEALTH_PATHS = frozenset({"/", "/health", "/healthz"})

StatusProvider = Callable[[], Dict[str, Any]]


def evaluate_health(payload: Dict[str, Any], stale_after_seconds: Optional[float]) -> Tuple[int, Dict[str, Any]]:
    """HTTP status and the (possibly annotated) payload."""
    payload = dict(payload)
    issues = list(payload.get("issues") or [])

    age = payload.get("heartbeat_age_seconds")
    if stale_after_seconds is not None and age is not None and age > stale_after_seconds:
        issues.append("heartbeat_stale")

    ok = bool(payload.get("ok", True)) and not issues
    payload["issues"] = issues
    payload["ok"] = ok
    return (200 if ok else 503), payload


class _HealthRequestHandler(BaseHTTPRequestHandler):
    server: "_HealthHTTPServer"

    def do_GET(self):  # type: ignore[override]
        if self.path.split("?", 1)[0] not in HEALTH_PATHS:
            self._reply(404, {"error": "not found"})
            return

        try:
            status, payload = evaluate_health(self.server.status_provider(), self.server.stale_after_seconds)
        except Exception as exc:
            logger.warning("Health status provider failed: %s", exc)
            status, payload = 503, {"ok": False, "error": str(exc)}
        self._reply(status, payload)

    def _reply(self, status: int, payload: Dict[str, Any]) -> None:
        body = json.dumps(payload, default=str).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: Any) -> None:  # pragma: no cover - suppress access log
        return


class _HealthHTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address, status_provider: StatusProvider, stale_after_seconds: Optional[float]):
        self.status_provider = status_provider
        self.stale_after_seconds = stale_after_seconds
        super().__init__(address, _HealthRequestHandler)


class HealthServer:
    """Serves the status snapshot from a daemon thread; never drives the loop."""

    def __init__(self, port: int, status_provider: StatusProvider, host: str = "0.0.0.0",
                 stale_after_seconds: Optional[float] = None):
        self._address = (host, int(port))
        self._status_provider = status_provider
        self._stale_after_seconds = stale_after_seconds
        self._server: Optional[_HealthHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> Optional[int]:
        return self._server.server_port if self._server else None

    def start(self) -> None:
        if self._server is not None:
            return
        self._server = _HealthHTTPServer(self._address, self._status_provider, self._stale_after_seconds)
        self._thread = threading.Thread(target=self._server.serve_forever, name="HealthServer", daemon=True)
        self._thread.start()
        logger.info("Health server listening on %s:%s", self._address[0], self._server.server_port)

    def stop(self) -> None:
        server, thread = self._server, self._thread
        self._server = self._thread = None
        if server is None:
            return
        server.shutdown()
        server.server_close()
        if thread is not None:
            thread.join(timeout=3)


__all__ = ["HealthServer", "evaluate_health"]
