"""HTTP front end that routes application requests through the offline proxy."""

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

from .config import ServerConfig
from .models import Request, Response
from .network import HOP_BY_HOP_HEADERS, NetworkError
from .registration import ProxyRegistration
from .security import ProxyURLError, validate_proxy_url

logger = logging.getLogger(__name__)

HEALTH_PATH = "/__proxy/health"

# Headers recomputed for the outgoing response.
_SKIPPED_HEADERS = HOP_BY_HOP_HEADERS | {"content-length", "content-encoding"}


class ServerError(Exception):
    """Raised when the proxy server cannot be started."""

    pass


class ProxyHandler(BaseHTTPRequestHandler):
    """Forwards each request to the registration and writes back the answer."""

    # Class-level references set by factory
    registration: Optional[ProxyRegistration] = None
    base_url: Optional[str] = None
    allowed_origins: List[str] = []

    def log_message(self, format: str, *args: Any) -> None:
        """Override to use Python logging instead of stderr."""
        logger.debug("Proxy %s - %s", self.address_string(), format % args)

    def _send_json(self, code: int, data: Dict[str, Any]) -> None:
        """Send a JSON response with the given status code."""
        body = json.dumps(data, indent=2).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Connection", "close")
        self.end_headers()
        self.wfile.write(body)

    def _send_error_json(self, code: int, message: str) -> None:
        """Send a JSON error response."""
        self._send_json(code, {"error": message})

    def _send_proxied(self, response: Response) -> None:
        """Replay a proxied response to the client."""
        self.send_response(response.status, response.reason or None)
        for name, value in response.headers.items():
            if name.lower() not in _SKIPPED_HEADERS:
                self.send_header(name, value)
        self.send_header("Content-Length", str(len(response.body)))
        self.send_header("Connection", "close")
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(response.body)

    def _target_url(self) -> str:
        """Absolute URL of the request (forward-proxy form or origin-relative path)."""
        if self.path.startswith(("http://", "https://")):
            return self.path
        if not self.base_url:
            raise ProxyURLError(f"Relative request '{self.path}' but no base URL is configured")
        return urljoin(self.base_url, self.path)

    def _read_body(self) -> Optional[bytes]:
        length = int(self.headers.get("Content-Length") or 0)
        if length <= 0:
            return None
        return self.rfile.read(length)

    def _handle(self) -> None:
        """Handle any method: validate, dispatch, and reply."""
        if self.path == HEALTH_PATH:
            self._handle_health()
            return

        try:
            url = self._target_url()
            validate_proxy_url(url, self.allowed_origins)
        except ProxyURLError as e:
            self._send_error_json(403, str(e))
            return

        try:
            body = self._read_body()
        except ValueError:
            self._send_error_json(400, f"Invalid Content-Length: {self.headers.get('Content-Length')}")
            return

        request = Request(
            method=self.command,
            url=url,
            headers={name: value for name, value in self.headers.items()},
            body=body,
        )

        try:
            response = self.registration.fetch(request)
        except NetworkError as e:
            logger.warning("No response for %s %s: %s", request.method, url, e)
            self._send_error_json(502, f"Network unavailable: {e}")
            return
        except Exception as e:
            logger.exception("Error handling request: %s", e)
            self._send_error_json(500, "Internal server error")
            return

        self._send_proxied(response)

    def _handle_health(self) -> None:
        """Handle the health endpoint without touching the cache."""
        active = self.registration.active if self.registration else None
        self._send_json(
            200,
            {
                "status": "ok",
                "generation": active.generation if active else None,
                "state": self.registration.state.value if self.registration else None,
            },
        )

    do_GET = _handle
    do_HEAD = _handle
    do_POST = _handle
    do_PUT = _handle
    do_PATCH = _handle
    do_DELETE = _handle
    do_OPTIONS = _handle


def _create_handler_class(
    registration: ProxyRegistration,
    base_url: Optional[str] = None,
    allowed_origins: Optional[List[str]] = None,
) -> type:
    """Create a handler class with the registration and routing settings bound."""

    class BoundProxyHandler(ProxyHandler):
        pass

    BoundProxyHandler.registration = registration
    BoundProxyHandler.base_url = base_url
    BoundProxyHandler.allowed_origins = list(allowed_origins or [])
    return BoundProxyHandler


class ProxyServer:
    """Threaded HTTP server in front of the offline proxy."""

    def __init__(
        self,
        config: ServerConfig,
        registration: ProxyRegistration,
        base_url: Optional[str] = None,
    ) -> None:
        """Initialize the proxy server.

        Args:
            config: Server configuration.
            registration: Registration answering every request.
            base_url: Origin that origin-relative request paths resolve against.
        """
        self.config = config
        self.registration = registration
        self.base_url = base_url
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> int:
        """Port the server is bound to (useful when configured with port 0)."""
        if self._server is not None:
            return self._server.server_address[1]
        return self.config.port

    def start(self) -> None:
        """Start the server in a background thread.

        Raises:
            ServerError: If the server fails to start.
        """
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Proxy server is already running")
            return

        try:
            handler_class = _create_handler_class(
                self.registration,
                self.base_url,
                self.config.allowed_origins,
            )
            self._server = ThreadingHTTPServer((self.config.host, self.config.port), handler_class)
            self._server.daemon_threads = True

            self._thread = threading.Thread(
                target=self._server.serve_forever,
                kwargs={"poll_interval": 0.5},
                name="proxy-server",
                daemon=True,
            )
            self._thread.start()

            logger.info("Proxy server listening on %s:%d", self.config.host, self.port)

        except OSError as e:
            if e.errno == 98 or e.errno == 48:  # EADDRINUSE (Linux=98, macOS=48)
                raise ServerError(
                    f"Port {self.config.port} is already in use. "
                    f"Another process may be using this port, or offlineproxy is already running."
                )
            elif e.errno == 13:  # EACCES - Permission denied
                raise ServerError(
                    f"Permission denied for port {self.config.port}. "
                    f"Ports below 1024 require root privileges. "
                    f"Use a port >= 1024 or run with elevated permissions."
                )
            else:
                raise ServerError(f"Failed to start proxy server on port {self.config.port}: {e}")

    def stop(self) -> None:
        """Stop the server gracefully."""
        if self._thread is None:
            return

        logger.info("Stopping proxy server...")
        if self._server:
            self._server.shutdown()
            self._server.server_close()

        if self._thread.is_alive():
            self._thread.join(timeout=5.0)

        self._server = None
        self._thread = None
        logger.info("Proxy server stopped")

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._thread is not None and self._thread.is_alive()
