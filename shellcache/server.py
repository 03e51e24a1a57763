"""HTTP front server that routes client requests through the active worker."""

import asyncio
import json
import logging
import threading
from collections.abc import Coroutine
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, Optional

from .config import ServerConfig
from .models import MODE_CORS, Request, Response, origin_of
from .network import NetworkError
from .registration import Registration
from .strategy import FetchFn

logger = logging.getLogger(__name__)

# Paths under this prefix are handled by the server itself, never intercepted.
CONTROL_PREFIX = "/__shellcache"

CLIENT_HEADER = "X-Shellcache-Client"

# Maximum accepted request body (control messages and passthrough uploads).
MAX_REQUEST_BODY = 1024 * 1024

# Response headers recomputed by the server when relaying a response.
_RELAY_SKIPPED_HEADERS = frozenset({"content-length", "connection", "transfer-encoding", "keep-alive"})


class ServerError(Exception):
    """Raised when the front server fails to start."""
    pass


class AsyncRunner:
    """Runs an asyncio event loop in a background thread.

    All worker and registration code runs on this single loop; HTTP handler
    threads hand coroutines over with submit().
    """

    def __init__(self) -> None:
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._started = threading.Event()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._started.clear()
        self._thread = threading.Thread(target=self._run, name="shellcache-loop", daemon=True)
        self._thread.start()
        self._started.wait()

    def _run(self) -> None:
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)
        self._started.set()
        try:
            self._loop.run_forever()
        finally:
            self._loop.close()

    def submit(self, coro: Coroutine[Any, Any, Any], timeout: Optional[float] = None) -> Any:
        """Run a coroutine on the loop and block until its result is available."""
        if self._loop is None:
            coro.close()
            raise RuntimeError("AsyncRunner is not running")
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result(timeout)

    def stop(self) -> None:
        if self._loop is None or self._thread is None:
            return
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=5.0)
        self._loop = None
        self._thread = None


async def serve_request(
    registration: Registration,
    fetch: FetchFn,
    request: Request,
    client_id: Optional[str] = None,
) -> Response:
    """Answer a client request: through the active worker, or straight from the network.

    Raises:
        NetworkError: When the request reached the network and got no response.
    """
    worker = await registration.controller()
    response = None
    if worker is not None:
        response = await worker.handle_fetch(request, client_id)
    if response is None:
        response = await fetch(request)
    return response


class ShellHandler(BaseHTTPRequestHandler):
    """HTTP request handler relaying requests through the interception layer."""

    # Class-level references set by factory
    origin: str = ""
    registration: Optional[Registration] = None
    fetch: Optional[FetchFn] = None
    runner: Optional[AsyncRunner] = None

    protocol_version = "HTTP/1.1"

    def log_message(self, format: str, *args: Any) -> None:
        """Override to use Python logging instead of stderr."""
        logger.debug("HTTP %s - %s", self.address_string(), format % args)

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

    def _send_relayed(self, response: Response) -> None:
        self.send_response(response.status, response.status_text or None)
        for name, value in response.headers.items():
            if name not in _RELAY_SKIPPED_HEADERS:
                self.send_header(name, value)
        self.send_header("Content-Length", str(len(response.body)))
        self.send_header("Connection", "close")
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(response.body)

    def _content_length(self) -> int:
        """Parse Content-Length. Raises ValueError if it is not a non-negative integer."""
        length = int(self.headers.get("Content-Length") or 0)
        if length < 0:
            raise ValueError(f"negative length {length}")
        return length

    def _read_body(self, length: int) -> Optional[bytes]:
        return self.rfile.read(length) if length else None

    def _is_origin_form(self) -> bool:
        """True if the request target is a path on the configured origin.

        Absolute-form targets ("http://host/...") and protocol-relative paths
        ("//host/...") would turn the server into an open proxy.
        """
        if not self.path.startswith("/") or self.path.startswith("//"):
            return False
        return origin_of(self._target_url()) == origin_of(self.origin)

    def _target_url(self) -> str:
        return origin_of(self.origin) + self.path

    def _build_request(self, body: Optional[bytes]) -> Request:
        destination = self.headers.get("Sec-Fetch-Dest", "")
        return Request(
            url=self._target_url(),
            method=self.command,
            headers={name: value for name, value in self.headers.items()},
            mode=self.headers.get("Sec-Fetch-Mode", MODE_CORS),
            destination="" if destination == "empty" else destination,
            body=body,
        )

    def _handle(self) -> None:
        try:
            length = self._content_length()
        except ValueError:
            self._send_error_json(400, "Invalid Content-Length header")
            return
        if length > MAX_REQUEST_BODY:
            self._send_error_json(413, f"Request body exceeds {MAX_REQUEST_BODY} bytes")
            return

        if not self._is_origin_form():
            logger.warning("Rejected request target %r from %s", self.path, self.address_string())
            self._send_error_json(400, "Request target must be a path on the application origin")
            return

        body = self._read_body(length)
        try:
            if self.path.startswith(CONTROL_PREFIX + "/"):
                self._handle_control(body)
            else:
                self._handle_intercepted(body)
        except Exception as e:
            logger.exception("Error handling request: %s", e)
            self._send_error_json(500, "Internal server error")

    do_GET = _handle
    do_HEAD = _handle
    do_POST = _handle
    do_PUT = _handle
    do_PATCH = _handle
    do_DELETE = _handle
    do_OPTIONS = _handle

    def _handle_intercepted(self, body: Optional[bytes]) -> None:
        request = self._build_request(body)
        client_id = self.headers.get(CLIENT_HEADER)
        try:
            response = self.runner.submit(serve_request(self.registration, self.fetch, request, client_id))
        except NetworkError as e:
            logger.warning("No response for %s %s: %s", request.method, request.url, e)
            self._send_error_json(502, "Network unavailable")
            return
        self._send_relayed(response)

    def _handle_control(self, body: Optional[bytes]) -> None:
        route = self.path[len(CONTROL_PREFIX):]

        if route == "/health" and self.command == "GET":
            self._handle_health()
        elif route == "/message" and self.command == "POST":
            self._handle_message(body)
        elif route == "/clients" and self.command == "POST":
            self._handle_connect(body)
        elif route.startswith("/clients/") and self.command == "DELETE":
            self._handle_disconnect(route[len("/clients/"):])
        else:
            self._send_error_json(404, "Not found")

    def _handle_health(self) -> None:
        """Handle GET /__shellcache/health - report the worker generations."""
        registration = self.registration

        def describe(worker) -> Optional[Dict[str, str]]:
            if worker is None:
                return None
            return {"cache": worker.cache_name, "state": worker.state.value}

        self._send_json(
            200,
            {
                "status": "ok",
                "active": describe(registration.active),
                "waiting": describe(registration.waiting),
                "clients": len(registration.clients.all()),
            },
        )

    def _handle_message(self, body: Optional[bytes]) -> None:
        """Handle POST /__shellcache/message - deliver a control message to the active worker.

        Malformed or unknown messages are accepted and ignored.
        """
        try:
            data = json.loads(body) if body else None
        except (json.JSONDecodeError, UnicodeDecodeError):
            data = None

        source = self.headers.get(CLIENT_HEADER)
        for worker in (self.registration.waiting, self.registration.active):
            if worker is not None:
                self.runner.submit(worker.handle_message(data, source))
        self._send_json(202, {"accepted": True})

    def _handle_connect(self, body: Optional[bytes]) -> None:
        """Handle POST /__shellcache/clients - open a client controlled by the active worker."""
        try:
            data = json.loads(body) if body else {}
        except (json.JSONDecodeError, UnicodeDecodeError):
            data = {}
        url = data.get("url", self.origin) if isinstance(data, dict) else self.origin
        client = self.registration.clients.connect(str(url), controller=self.registration.active)
        self._send_json(201, {"id": client.id})

    def _handle_disconnect(self, client_id: str) -> None:
        """Handle DELETE /__shellcache/clients/<id> - close a client."""
        if self.registration.clients.get(client_id) is None:
            self._send_error_json(404, f"Client '{client_id}' not found")
            return
        self.runner.submit(self.registration.disconnect(client_id))
        self._send_json(200, {"closed": client_id})


def _create_handler_class(
    origin: str,
    registration: Registration,
    fetch: FetchFn,
    runner: AsyncRunner,
) -> type:
    """Create a handler class with the registration and loop bound."""

    class BoundShellHandler(ShellHandler):
        pass

    BoundShellHandler.origin = origin.rstrip("/") + "/"
    BoundShellHandler.registration = registration
    BoundShellHandler.fetch = staticmethod(fetch)
    BoundShellHandler.runner = runner
    return BoundShellHandler


class ShellServer:
    """Threaded HTTP front server for the interception layer."""

    def __init__(
        self,
        config: ServerConfig,
        origin: str,
        registration: Registration,
        fetch: FetchFn,
        runner: AsyncRunner,
    ) -> None:
        """Initialize the front server.

        Args:
            config: Server configuration.
            origin: Origin that relative request paths are resolved against.
            registration: Registration whose active worker intercepts requests.
            fetch: Network fetcher for requests that are not intercepted.
            runner: Event loop thread running the worker.
        """
        self.config = config
        self.origin = origin
        self.registration = registration
        self.fetch = fetch
        self.runner = runner
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._shutdown_event = threading.Event()

    def start(self) -> None:
        """Start the server in a background thread.

        Raises:
            ServerError: If the server fails to start.
        """
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Front server is already running")
            return

        try:
            handler_class = _create_handler_class(self.origin, self.registration, self.fetch, self.runner)
            self._server = ThreadingHTTPServer((self.config.host, self.config.port), handler_class)
            self._server.daemon_threads = True
            self._server.timeout = 1.0  # Allow periodic shutdown checks

            self._shutdown_event.clear()
            self._thread = threading.Thread(
                target=self._serve_forever,
                name="shellcache-server",
                daemon=True,
            )
            self._thread.start()

            logger.info("Front server started on port %d for %s", self.config.port, self.origin)

        except OSError as e:
            if e.errno == 98 or e.errno == 48:  # EADDRINUSE (Linux=98, macOS=48)
                raise ServerError(
                    f"Port {self.config.port} is already in use. "
                    f"Another process may be using this port, or shellcache is already running."
                )
            elif e.errno == 13:  # EACCES - Permission denied
                raise ServerError(
                    f"Permission denied for port {self.config.port}. "
                    f"Ports below 1024 require root privileges."
                )
            else:
                raise ServerError(f"Failed to start front server on port {self.config.port}: {e}")

    def _serve_forever(self) -> None:
        """Server loop that checks for shutdown."""
        while not self._shutdown_event.is_set():
            if self._server:
                self._server.handle_request()

    def stop(self) -> None:
        """Stop the server gracefully."""
        if self._thread is None:
            return

        logger.info("Stopping front server...")
        self._shutdown_event.set()

        if self._server:
            self._server.server_close()

        if self._thread.is_alive():
            self._thread.join(timeout=5.0)

        self._server = None
        self._thread = None
        logger.info("Front server stopped")

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._thread is not None and self._thread.is_alive()
