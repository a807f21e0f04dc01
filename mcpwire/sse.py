"""A Server-Sent Events transport: one event stream per client plus a POST endpoint."""

from __future__ import annotations

import itertools
import json
import queue
import select
import socket
import threading
import uuid
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable
from urllib.parse import parse_qs, unquote, urlsplit

from .logger import StdLogger, default_logger
from .session import (
    DEFAULT_CHANNEL_CAPACITY,
    INVALID_REQUEST,
    JSONRPC_VERSION,
    PARSE_ERROR,
    ClientSession,
    Context,
    ServerTool,
    SessionError,
    SessionNotFoundError,
    SessionServer,
)
from .sse_paths import (
    DynamicPathConfigError,
    SSEEndpoints,
    clean_base_url,
    normalize_url_path,
)

INVALID_PARAMS = -32602
DEFAULT_LOG_LEVEL = "error"
DEFAULT_KEEP_ALIVE_INTERVAL = 10.0
_POLL_INTERVAL = 0.05
_MARSHAL_FAILURE_EVENT = (
    'event: message\ndata: {"error": "internal error","jsonrpc": "2.0", "id": null}\n\n'
)

SSEContextFunc = Callable[[Context, Any], Context]


class SSESession(ClientSession):
    """A client connected to the event stream."""

    def __init__(self, session_id: str) -> None:
        super().__init__(session_id, queue.Queue(maxsize=DEFAULT_CHANNEL_CAPACITY))
        self.done = threading.Event()
        self.event_queue: queue.Queue[str] = queue.Queue(maxsize=DEFAULT_CHANNEL_CAPACITY)
        self._lock = threading.Lock()
        self._request_ids = itertools.count(1)
        self._log_level: str | None = None
        self._tools: dict[str, ServerTool] = {}
        self._client_info: dict[str, Any] | None = None

    def initialize(self) -> None:
        """Mark the session ready and reset the log level to its default."""
        with self._lock:
            self._log_level = DEFAULT_LOG_LEVEL
        super().initialize()

    def is_initialized(self) -> bool:
        return super().is_initialized()

    def set_log_level(self, level: str) -> None:
        with self._lock:
            self._log_level = level

    def get_log_level(self) -> str:
        with self._lock:
            return self._log_level or DEFAULT_LOG_LEVEL

    def get_session_tools(self) -> dict[str, ServerTool]:
        with self._lock:
            return dict(self._tools)

    def set_session_tools(self, tools: dict[str, ServerTool] | None) -> None:
        with self._lock:
            self._tools = dict(tools or {})

    def set_client_info(self, client_info: dict[str, Any]) -> None:
        with self._lock:
            self._client_info = dict(client_info)

    def get_client_info(self) -> dict[str, Any]:
        with self._lock:
            return dict(self._client_info or {})

    def _next_request_id(self) -> int:
        with self._lock:
            return next(self._request_ids)


def _to_json(obj: Any) -> Any:
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _encode(message: Any) -> str:
    return json.dumps(message, default=_to_json, separators=(",", ":"), ensure_ascii=False)


def _write(request: BaseHTTPRequestHandler, text: str) -> None:
    request.wfile.write(text.encode("utf-8"))
    request.wfile.flush()


def _send_plain(request: BaseHTTPRequestHandler, status: int, message: str) -> None:
    body = (message + "\n").encode("utf-8")
    request.send_response(status)
    request.send_header("Content-Type", "text/plain; charset=utf-8")
    request.send_header("X-Content-Type-Options", "nosniff")
    request.send_header("Content-Length", str(len(body)))
    request.end_headers()
    request.wfile.write(body)


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


class SSEServer:
    """Serves a session server over an SSE stream and a message endpoint.

    Options: ``base_url``, ``base_path``, ``dynamic_base_path``,
    ``message_endpoint``, ``sse_endpoint``, ``append_query_to_message_endpoint``,
    ``use_full_url_for_message_endpoint``, ``keep_alive``,
    ``keep_alive_interval`` (seconds), ``context_func``, ``http_server``,
    ``logger`` and ``log_requests`` (write an access line per request to the
    logger; off by default).
    """

    def __init__(self, server: SessionServer, **kwargs: Any) -> None:
        self.server = server
        self.endpoints = SSEEndpoints()
        if "base_url" in kwargs:
            cleaned = clean_base_url(kwargs.pop("base_url"))
            if cleaned is not None:
                self.endpoints.base_url = cleaned
        if "base_path" in kwargs:
            self.endpoints.base_path = normalize_url_path(kwargs.pop("base_path"))
        dynamic = kwargs.pop("dynamic_base_path", None)
        if dynamic is not None:
            self.endpoints.dynamic_base_path = dynamic
        if "message_endpoint" in kwargs:
            self.endpoints.message_endpoint = kwargs.pop("message_endpoint")
        if "sse_endpoint" in kwargs:
            self.endpoints.sse_endpoint = kwargs.pop("sse_endpoint")
        if "use_full_url_for_message_endpoint" in kwargs:
            self.endpoints.use_full_url_for_message_endpoint = bool(
                kwargs.pop("use_full_url_for_message_endpoint")
            )
        self.append_query_to_message_endpoint = bool(
            kwargs.pop("append_query_to_message_endpoint", False)
        )
        has_interval = "keep_alive_interval" in kwargs
        self.keep_alive_interval = float(
            kwargs.pop("keep_alive_interval", DEFAULT_KEEP_ALIVE_INTERVAL)
        )
        self.keep_alive = bool(kwargs.pop("keep_alive", has_interval))
        self.context_func: SSEContextFunc | None = kwargs.pop("context_func", None)
        self.logger: StdLogger = kwargs.pop("logger", None) or default_logger()
        self.log_requests = bool(kwargs.pop("log_requests", False))
        self._httpd: ThreadingHTTPServer | None = kwargs.pop("http_server", None)
        if kwargs:
            raise TypeError(f"unknown SSE server options: {', '.join(sorted(kwargs))}")
        self._sessions: dict[str, SSESession] = {}
        self._lock = threading.Lock()
        self._started = False
        self._closed = False

    # --- lifecycle ---------------------------------------------------------

    def start(self, addr: str) -> None:
        """Listen on ``host:port`` and serve until :meth:`shutdown` is called."""
        host, _, port = addr.rpartition(":")
        with self._lock:
            if self._closed:
                raise RuntimeError("server closed")
            if self._httpd is None:
                self._httpd = ThreadingHTTPServer(
                    (host, int(port or 0)), self.request_handler_class()
                )
            else:
                bound_host, bound_port = self._httpd.server_address[:2]
                existing = f"{bound_host}:{bound_port}"
                if addr and addr != existing:
                    raise ValueError(
                        f"conflicting listen address: http_server({existing!r}) vs start({addr!r})"
                    )
                self._httpd.RequestHandlerClass = self.request_handler_class()
            self._started = True
            httpd = self._httpd
        httpd.serve_forever()

    def shutdown(self) -> None:
        """Close every session's stream and stop the HTTP server."""
        with self._lock:
            self._closed = True
            httpd, started = self._httpd, self._started
            if httpd is None:
                return
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.done.set()
        if started:
            httpd.shutdown()
        httpd.server_close()

    # --- events ------------------------------------------------------------

    def send_event_to_session(self, session_id: str, event: Any) -> None:
        """Queue ``event`` as a message on the stream of ``session_id``."""
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"session not found: {session_id}")
        data = _encode(event)
        if session.done.is_set():
            raise SessionError("session closed")
        try:
            session.event_queue.put_nowait(f"event: message\ndata: {data}\n\n")
        except queue.Full:
            raise SessionError("event queue full") from None

    @staticmethod
    def _put_event(session: SSESession, event: str) -> bool:
        while not session.done.is_set():
            try:
                session.event_queue.put(event, timeout=_POLL_INTERVAL)
                return True
            except queue.Full:
                continue
        return False

    # --- HTTP handlers -----------------------------------------------------

    def handle_request(self, request: BaseHTTPRequestHandler) -> None:
        """Route a request to the SSE or message handler by exact path."""
        if self.endpoints.dynamic_base_path is not None:
            _send_plain(
                request,
                HTTPStatus.INTERNAL_SERVER_ERROR,
                str(DynamicPathConfigError("handle_request")),
            )
            return
        path = unquote(urlsplit(request.path).path)
        sse_path = self.endpoints.complete_sse_path()
        if sse_path and path == sse_path:
            self.handle_sse(request)
            return
        message_path = self.endpoints.complete_message_path()
        if message_path and path == message_path:
            self.handle_message(request)
            return
        _send_plain(request, HTTPStatus.NOT_FOUND, "404 page not found")

    def handle_sse(self, request: BaseHTTPRequestHandler) -> None:
        """Open an event stream for a new session and pump events into it."""
        if request.command != "GET":
            _send_plain(request, HTTPStatus.METHOD_NOT_ALLOWED, "Method not allowed")
            return
        session = SSESession(str(uuid.uuid4()))
        with self._lock:
            self._sessions[session.session_id] = session
        conn_ctx = Context()
        try:
            try:
                self.server.register_session(conn_ctx, session)
            except SessionError as err:
                _send_plain(
                    request,
                    HTTPStatus.INTERNAL_SERVER_ERROR,
                    f"Session registration failed: {err}",
                )
                return
            try:
                self._stream(request, session, conn_ctx)
            finally:
                self.server.unregister_session(conn_ctx, session.session_id)
        finally:
            conn_ctx.cancel()
            with self._lock:
                self._sessions.pop(session.session_id, None)

    def _stream(
        self, request: BaseHTTPRequestHandler, session: SSESession, conn_ctx: Context
    ) -> None:
        request.send_response(HTTPStatus.OK)
        request.send_header("Content-Type", "text/event-stream")
        request.send_header("Cache-Control", "no-cache")
        request.send_header("Connection", "keep-alive")
        request.send_header("Access-Control-Allow-Origin", "*")
        request.end_headers()

        threading.Thread(
            target=self._forward_notifications, args=(session, conn_ctx), daemon=True
        ).start()
        if self.keep_alive:
            threading.Thread(
                target=self._send_pings, args=(session, conn_ctx), daemon=True
            ).start()

        endpoint = self.endpoints.message_endpoint_for_client(request, session.session_id)
        query = urlsplit(request.path).query
        if self.append_query_to_message_endpoint and query:
            endpoint += "&" + query
        try:
            _write(request, f"event: endpoint\ndata: {endpoint}\r\n\r\n")
        except (OSError, ValueError):
            session.done.set()
            return

        while not session.done.is_set():
            try:
                event = session.event_queue.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                if _client_gone(request):
                    session.done.set()
                    return
                continue
            try:
                _write(request, event)
            except (OSError, ValueError):
                session.done.set()
                return

    def _forward_notifications(self, session: SSESession, conn_ctx: Context) -> None:
        while not session.done.is_set() and not conn_ctx.is_cancelled():
            try:
                notification = session.notification_channel.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            try:
                data = _encode(notification)
            except (TypeError, ValueError):
                continue
            if not self._put_event(session, f"event: message\ndata: {data}\n\n"):
                return

    def _send_pings(self, session: SSESession, conn_ctx: Context) -> None:
        while not session.done.wait(self.keep_alive_interval):
            if conn_ctx.is_cancelled():
                return
            ping = {
                "jsonrpc": JSONRPC_VERSION,
                "id": session._next_request_id(),
                "method": "ping",
            }
            if not self._put_event(session, f"event: message\ndata:{_encode(ping)}\n\n"):
                return

    def handle_message(self, request: BaseHTTPRequestHandler) -> None:
        """Accept a JSON-RPC message; its response goes out on the session's stream."""
        if request.command != "POST":
            self._write_jsonrpc_error(request, None, INVALID_REQUEST, "Method not allowed")
            return
        body = _read_body(request)
        query = parse_qs(urlsplit(request.path).query)
        session_id = query.get("sessionId", [""])[0]
        if not session_id:
            self._write_jsonrpc_error(request, None, INVALID_PARAMS, "Missing sessionId")
            return
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            self._write_jsonrpc_error(request, None, INVALID_PARAMS, "Invalid session ID")
            return

        ctx = self.server.with_context(Context(), session)
        if self.context_func is not None:
            ctx = self.context_func(ctx, request)

        try:
            text = body.decode("utf-8").lstrip()
            _, end = json.JSONDecoder().raw_decode(text)
        except ValueError:
            self._write_jsonrpc_error(request, None, PARSE_ERROR, "Parse error")
            return
        raw = text[:end]

        request.send_response(HTTPStatus.ACCEPTED)
        request.send_header("Content-Length", "0")
        request.end_headers()

        threading.Thread(
            target=self._process_message, args=(ctx, session, raw), daemon=True
        ).start()

    def _process_message(self, ctx: Context, session: SSESession, raw: str) -> None:
        try:
            response = self.server.handle_message(ctx, raw)
        finally:
            ctx.cancel()
        if response is None:
            return
        try:
            message = f"event: message\ndata: {_encode(response)}\n\n"
        except (TypeError, ValueError) as err:
            self.logger.error("failed to marshal response: %s", err)
            message = _MARSHAL_FAILURE_EVENT
        if session.done.is_set():
            return
        try:
            session.event_queue.put_nowait(message)
        except queue.Full:
            self.logger.error("Event queue full for session %s", session.session_id)

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

    def request_handler_class(self) -> type[BaseHTTPRequestHandler]:
        """Return a request handler class that routes through :meth:`handle_request`."""
        owner = self

        class _Handler(BaseHTTPRequestHandler):
            def _dispatch(self) -> None:
                owner.handle_request(self)

            do_GET = do_POST = do_PUT = do_DELETE = do_PATCH = do_HEAD = do_OPTIONS = _dispatch

            def log_message(self, format: str, *args: Any) -> None:
                """Send access lines to the server's logger when enabled."""
                if owner.log_requests:
                    owner.logger.info("%s - %s", self.address_string(), format % args)

        return _Handler


class _LiveServer:
    """An SSE server listening on a loopback port, for tests and local use."""

    def __init__(self, url: str, sse: SSEServer, thread: threading.Thread) -> None:
        self.url = url
        self.sse = sse
        self._thread = thread

    def close(self) -> None:
        self.sse.shutdown()
        self._thread.join(timeout=5)

    def __enter__(self) -> _LiveServer:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


def new_test_server(server: SessionServer, **kwargs: Any) -> _LiveServer:
    """Start an SSE server on a free loopback port with its base URL set."""
    sse = SSEServer(server, **kwargs)
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), sse.request_handler_class())
    host, port = httpd.server_address[:2]
    sse.endpoints.base_url = f"http://{host}:{port}"
    with sse._lock:
        sse._httpd = httpd
        sse._started = True
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    return _LiveServer(sse.endpoints.base_url, sse, thread)