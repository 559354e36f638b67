"""HTTP endpoints exposing engine health and status as JSON."""

from __future__ import annotations

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

Provider = Callable[[], Dict[str, Any]]

HEALTH_PATHS = ("/", "/health", "/healthz")
STATUS_PATH = "/status"


def _health_code(payload: Dict[str, Any]) -> int:
    # WARNING still serves traffic; only CRITICAL fails the check
    return 503 if payload.get("status") == "CRITICAL" else 200


class HealthServer:
    """
    Background JSON server for the engine.

    ``/health`` (aliases ``/`` and ``/healthz``) serves the health provider
    and answers 503 while the engine is CRITICAL. ``/status`` serves the
    status provider when one is configured; otherwise it is a 404.
    """

    def __init__(self, port: int, health_provider: Provider, status_provider: Optional[Provider] = None,
                 host: str = "0.0.0.0"):
        self._host = host
        self._port = int(port)
        self._routes: Dict[str, Tuple[Provider, Callable[[Dict[str, Any]], int]]] = {
            path: (health_provider, _health_code) for path in HEALTH_PATHS
        }
        if status_provider is not None:
            self._routes[STATUS_PATH] = (status_provider, lambda _payload: 200)
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> Optional[int]:
        return self._server.server_port if self._server else None

    def start(self) -> None:
        if self._server is not None:
            return

        self._server = ThreadingHTTPServer((self._host, self._port), self._handler_for(self._routes))
        self._server.daemon_threads = True
        self._thread = threading.Thread(target=self._server.serve_forever, name="HealthServer", daemon=True)
        self._thread.start()
        logger.info(f"Health server on {self._host}:{self._server.server_port} ({', '.join(sorted(self._routes))})")

    def stop(self) -> None:
        server, thread = self._server, self._thread
        self._server, self._thread = None, None
        if server is None:
            return
        try:
            server.shutdown()
            server.server_close()
        except OSError as exc:
            logger.warning(f"Health server did not close cleanly: {exc}")
        if thread:
            thread.join(timeout=3)

    @staticmethod
    def _handler_for(routes):

        class Handler(BaseHTTPRequestHandler):
            def do_GET(self):  # type: ignore[override]
                route = routes.get(self.path.split("?", 1)[0])
                if route is None:
                    self._send_json(404, {"error": f"unknown path {self.path}"})
                    return

                provider, code_for = route
                payload = provider() or {}
                self._send_json(code_for(payload), payload)

            def _send_json(self, code: int, payload: Dict[str, Any]) -> None:
                body = json.dumps(payload, default=str).encode("utf-8")
                self.send_response(code)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format: str, *args: Any) -> None:
                logger.debug(f"{self.address_string()} {format % args}")

        return Handler


__all__ = ["HealthServer"]
