"""Streamable HTTP transport: JSON-RPC over POST, server notifications over SSE."""

from __future__ import annotations

import io
import json
import queue
import select
import socket
import threading
import time
import uuid
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import IO, Any, Callable, Mapping
from urllib.parse import urlsplit

from .logger import StdLogger, default_logger
from .session import (
    DEFAULT_CHANNEL_CAPACITY,
    JSONRPC_VERSION,
    PARSE_ERROR,
    ClientSession,
    Context,
    ServerTool,
    SessionError,
    SessionServer,
)
from .session_ids import (
    InsecureStatefulSessionIdManager,
    SessionIdManager,
    StatelessSessionIdManager,
)

HEADER_SESSION_ID = "Mcp-Session-Id"
METHOD_INITIALIZE = "initialize"
DEFAULT_ENDPOINT_PATH = "/mcp"
_POLL_INTERVAL = 0.05

HTTPContextFunc = Callable[[Context, Any], Context]


def _to_json(obj: Any) -> Any:
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _encode(message: Any) -> str:
    return json.dumps(message, default=_to_json, separators=(",", ":"), ensure_ascii=False)


def write_sse_event(stream: IO[Any], data: Any) -> None:
    """Write ``data`` as one SSE ``message`` event to a text or binary stream.

    Raises ``ValueError`` if ``data`` cannot be encoded and ``OSError`` if
    writing fails.
    """
    try:
        payload = _encode(data)
    except (TypeError, ValueError) as err:
        raise ValueError(f"failed to marshal data: {err}") from err
    text = f"event: message\ndata: {payload}\n\n"
    try:
        if isinstance(stream, io.TextIOBase):
            stream.write(text)
        else:
            stream.write(text.encode("utf-8"))
    except OSError as err:
        raise OSError(f"failed to write SSE event: {err}") from err


def _send_plain(request: BaseHTTPRequestHandler, status: int, message: str) -> None:
    body = (message + "\n").encode("utf-8")
    request.send_response(status)
    request.send_header("Content-Type", "text/plain; charset=utf-8")
    request.send_header("X-Content-Type-Options", "nosniff")
    request.send_header("Content-Length", str(len(body)))
    request.end_headers()
    request.wfile.write(body)


def _send_empty(request: BaseHTTPRequestHandler, status: int) -> None:
    request.send_response(status)
    request.send_header("Content-Length", "0")
    request.end_headers()


def _read_body(request: BaseHTTPRequestHandler) -> bytes:
    try:
        length = int(request.headers.get("Content-Length") or 0)
    except ValueError:
        length = 0
    return request.rfile.read(length) if length > 0 else b""


def _client_gone(request: BaseHTTPRequestHandler) -> bool:
    sock = getattr(request, "connection", None)
    if sock is None:
        return False
    try:
        readable, _, _ = select.select([sock], [], [], 0)
        if not readable:
            return False
        return sock.recv(1, socket.MSG_PEEK) == b""
    except (OSError, ValueError):
        return True


def _message_method(message: Any) -> str:
    """Return the ``method`` of a decoded message, as the POST handler sees it."""
    if message is None:
        return ""
    if not isinstance(message, dict):
        raise ValueError("message is not a JSON object")
    method = message.get("method")
    if method is None:
        return ""
    if not isinstance(method, str):
        raise ValueError("method is not a string")
    return method


class SessionToolsStore:
    """Per-session tool maps, keyed by session id, shared across requests."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tools: dict[str, dict[str, ServerTool]] = {}

    def get(self, session_id: str) -> dict[str, ServerTool] | None:
        with self._lock:
            tools = self._tools.get(session_id)
            return None if tools is None else dict(tools)

    def set(self, session_id: str, tools: Mapping[str, ServerTool] | None) -> None:
        with self._lock:
            if tools is None:
                self._tools.pop(session_id, None)
            else:
                self._tools[session_id] = dict(tools)


class StreamableHTTPSession(ClientSession):
    """A session that lives for one request; its tools live in a shared store."""

    def __init__(self, session_id: str, tools: SessionToolsStore) -> None:
        super().__init__(
            session_id, queue.Queue(maxsize=DEFAULT_CHANNEL_CAPACITY), initialized=True
        )
        self.tools = tools

    def initialize(self) -> None:
        """Nothing to do: the session is always ready."""

    def is_initialized(self) -> bool:
        return True

    def get_session_tools(self) -> dict[str, ServerTool] | None:
        return self.tools.get(self.session_id)

    def set_session_tools(self, tools: Mapping[str, ServerTool] | None) -> None:
        self.tools.set(self.session_id, tools)


class _PostStream:
    """The response of one POST, upgraded to an event stream on first notification."""

    def __init__(self, request: BaseHTTPRequestHandler, logger: StdLogger) -> None:
        self.request = request
        self.logger = logger
        self.upgraded = False
        self._lock = threading.Lock()

    def forward(self, notification: Any) -> None:
        with self._lock:
            if not self.upgraded:
                self.upgraded = True
                self.request.send_response(HTTPStatus.ACCEPTED)
                self.request.send_header("Content-Type", "text/event-stream")
                self.request.send_header("Connection", "keep-alive")
                self.request.send_header("Cache-Control", "no-cache")
                self.request.end_headers()
            try:
                write_sse_event(self.request.wfile, notification)
                self.request.wfile.flush()
            except (OSError, ValueError) as err:
                self.logger.error("Failed to write SSE event: %s", err)

    def pump(self, session: StreamableHTTPSession, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                notification = session.notification_channel.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            self.forward(notification)

    def drain(self, session: StreamableHTTPSession) -> None:
        while True:
            try:
                notification = session.notification_channel.get_nowait()
            except queue.Empty:
                return
            self.forward(notification)


class StreamableHTTPServer:
    """Serves a session server over the streamable HTTP transport.

    Options: ``endpoint_path`` (used by :meth:`start` only), ``stateless``,
    ``session_id_manager`` (takes precedence over ``stateless``),
    ``heartbeat_interval`` (seconds; 0 disables), ``context_func`` and
    ``logger``.
    """

    def __init__(self, server: SessionServer, **kwargs: Any) -> None:
        self.server = server
        self.session_tools = SessionToolsStore()
        self.endpoint_path = "/" + str(
            kwargs.pop("endpoint_path", DEFAULT_ENDPOINT_PATH)
        ).strip("/")
        manager: SessionIdManager | None = kwargs.pop("session_id_manager", None)
        stateless = bool(kwargs.pop("stateless", False))
        if manager is None:
            manager = (
                StatelessSessionIdManager()
                if stateless
                else InsecureStatefulSessionIdManager()
            )
        self.session_id_manager = manager
        self.heartbeat_interval = float(kwargs.pop("heartbeat_interval", 0.0))
        self.context_func: HTTPContextFunc | None = kwargs.pop("context_func", None)
        self.logger: StdLogger = kwargs.pop("logger", None) or default_logger()
        if kwargs:
            raise TypeError(
                f"unknown streamable HTTP options: {', '.join(sorted(kwargs))}"
            )
        self._lock = threading.Lock()
        self._closed = threading.Event()
        self._httpd: ThreadingHTTPServer | None = None
        self._serving = False

    # --- lifecycle ---------------------------------------------------------

    def start(self, addr: str) -> None:
        """Listen on ``host:port`` and serve :attr:`endpoint_path` until shutdown."""
        host, _, port = addr.rpartition(":")
        with self._lock:
            if self._closed.is_set():
                raise RuntimeError("server closed")
            self._httpd = ThreadingHTTPServer(
                (host, int(port or 0)), self._handler_class(mounted=True)
            )
            self._serving = True
            httpd = self._httpd
        httpd.serve_forever()

    def shutdown(self) -> None:
        """Stop open event streams and the HTTP server, if one was started."""
        with self._lock:
            self._closed.set()
            httpd, serving = self._httpd, self._serving
            self._httpd = None
            self._serving = False
        if httpd is None:
            return
        if serving:
            httpd.shutdown()
        httpd.server_close()

    # --- HTTP handlers -----------------------------------------------------

    def handle_request(self, request: BaseHTTPRequestHandler) -> None:
        """Dispatch a request by method: POST, GET or DELETE."""
        if request.command == "POST":
            self._handle_post(request)
        elif request.command == "GET":
            self._handle_get(request)
        elif request.command == "DELETE":
            self._handle_delete(request)
        else:
            _send_plain(request, HTTPStatus.NOT_FOUND, "404 page not found")

    def _handle_post(self, request: BaseHTTPRequestHandler) -> None:
        if request.headers.get("Content-Type") != "application/json":
            _send_plain(
                request,
                HTTPStatus.BAD_REQUEST,
                "Invalid content type: must be 'application/json'",
            )
            return
        body = _read_body(request)
        try:
            text = body.decode("utf-8")
            method = _message_method(json.loads(text))
        except ValueError:
            self._write_jsonrpc_error(
                request, None, PARSE_ERROR, "request body is not valid json"
            )
            return
        is_initialize = method == METHOD_INITIALIZE

        if is_initialize:
            session_id = self.session_id_manager.generate()
        else:
            session_id = request.headers.get(HEADER_SESSION_ID, "")
            try:
                terminated = self.session_id_manager.validate(session_id)
            except (ValueError, LookupError):
                _send_plain(request, HTTPStatus.BAD_REQUEST, "Invalid session ID")
                return
            if terminated:
                _send_plain(request, HTTPStatus.NOT_FOUND, "Session terminated")
                return

        session = StreamableHTTPSession(session_id, self.session_tools)
        ctx = self.server.with_context(Context(), session)
        if self.context_func is not None:
            ctx = self.context_func(ctx, request)

        stream = _PostStream(request, self.logger)
        stop = threading.Event()
        pump = threading.Thread(target=stream.pump, args=(session, stop), daemon=True)
        pump.start()
        try:
            response = self.server.handle_message(ctx, text)
        finally:
            stop.set()
            pump.join()
            stream.drain(session)

        if response is None:
            if not stream.upgraded:
                _send_empty(request, HTTPStatus.ACCEPTED)
            return
        if ctx.is_cancelled():
            return
        if stream.upgraded:
            try:
                write_sse_event(request.wfile, response)
                request.wfile.flush()
            except (OSError, ValueError) as err:
                self.logger.error("Failed to write final SSE response event: %s", err)
            return

        try:
            payload = (_encode(response) + "\n").encode("utf-8")
        except (TypeError, ValueError) as err:
            self.logger.error("Failed to write response: %s", err)
            payload = b""
        request.send_response(HTTPStatus.OK)
        request.send_header("Content-Type", "application/json")
        if is_initialize and session_id:
            request.send_header(HEADER_SESSION_ID, session_id)
        request.send_header("Content-Length", str(len(payload)))
        request.end_headers()
        request.wfile.write(payload)

    def _handle_get(self, request: BaseHTTPRequestHandler) -> None:
        session_id = request.headers.get(HEADER_SESSION_ID) or str(uuid.uuid4())
        session = StreamableHTTPSession(session_id, self.session_tools)
        ctx = Context()
        try:
            self.server.register_session(ctx, session)
        except SessionError as err:
            _send_plain(
                request, HTTPStatus.BAD_REQUEST, f"Session registration failed: {err}"
            )
            return
        try:
            self._listen(request, session)
        finally:
            self.server.unregister_session(ctx, session_id)
            ctx.cancel()

    def _listen(self, request: BaseHTTPRequestHandler, session: StreamableHTTPSession) -> None:
        request.send_response(HTTPStatus.ACCEPTED)
        request.send_header("Content-Type", "text/event-stream")
        request.send_header("Cache-Control", "no-cache")
        request.send_header("Connection", "keep-alive")
        request.end_headers()
        request.wfile.flush()

        interval = self.heartbeat_interval
        next_beat = time.monotonic() + interval if interval > 0 else None
        while not self._closed.is_set():
            pending: list[Any] = []
            try:
                pending.append(session.notification_channel.get(timeout=_POLL_INTERVAL))
            except queue.Empty:
                if _client_gone(request):
                    return
            if next_beat is not None and time.monotonic() >= next_beat:
                pending.append({"jsonrpc": JSONRPC_VERSION, "method": "ping"})
                next_beat = time.monotonic() + interval
            for item in pending:
                try:
                    write_sse_event(request.wfile, item)
                    request.wfile.flush()
                except (OSError, ValueError) as err:
                    self.logger.error("Failed to write SSE event: %s", err)
                    return

    def _handle_delete(self, request: BaseHTTPRequestHandler) -> None:
        session_id = request.headers.get(HEADER_SESSION_ID, "")
        try:
            not_allowed = self.session_id_manager.terminate(session_id)
        except (ValueError, LookupError, OSError) as err:
            _send_plain(
                request,
                HTTPStatus.INTERNAL_SERVER_ERROR,
                f"Session termination failed: {err}",
            )
            return
        if not_allowed:
            _send_plain(
                request, HTTPStatus.METHOD_NOT_ALLOWED, "Session termination not allowed"
            )
            return
        self.session_tools.set(session_id, None)
        _send_empty(request, HTTPStatus.OK)

    def _write_jsonrpc_error(
        self, request: BaseHTTPRequestHandler, request_id: Any, code: int, message: str
    ) -> None:
        payload = {
            "jsonrpc": JSONRPC_VERSION,
            "id": request_id,
            "error": {"code": code, "message": message},
        }
        body = (json.dumps(payload, separators=(",", ":")) + "\n").encode("utf-8")
        request.send_response(HTTPStatus.BAD_REQUEST)
        request.send_header("Content-Type", "application/json")
        request.send_header("Content-Length", str(len(body)))
        request.end_headers()
        request.wfile.write(body)

    def _handler_class(self, mounted: bool) -> type[BaseHTTPRequestHandler]:
        owner = self

        class _Handler(BaseHTTPRequestHandler):
            def _dispatch(self) -> None:
                if mounted and urlsplit(self.path).path != owner.endpoint_path:
                    _send_plain(self, HTTPStatus.NOT_FOUND, "404 page not found")
                    return
                owner.handle_request(self)

            do_GET = do_POST = do_PUT = do_DELETE = do_PATCH = do_HEAD = do_OPTIONS = _dispatch

            def log_message(self, format: str, *args: Any) -> None:
                pass

        return _Handler

    def request_handler_class(self) -> type[BaseHTTPRequestHandler]:
        """Return a request handler class that serves every path."""
        return self._handler_class(mounted=False)


class _LiveServer:
    """A streamable HTTP server listening on a loopback port."""

    def __init__(
        self, url: str, owner: StreamableHTTPServer, thread: threading.Thread
    ) -> None:
        self.url = url
        self.owner = owner
        self._thread = thread

    def close(self) -> None:
        self.owner.shutdown()
        self._thread.join(timeout=5)

    def __enter__(self) -> _LiveServer:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


def new_test_streamable_http_server(server: SessionServer, **kwargs: Any) -> _LiveServer:
    """Start a streamable HTTP server on a free loopback port, serving every path."""
    owner = StreamableHTTPServer(server, **kwargs)
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), owner.request_handler_class())
    host, port = httpd.server_address[:2]
    with owner._lock:
        owner._httpd = httpd
        owner._serving = True
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    return _LiveServer(f"http://{host}:{port}", owner, thread)