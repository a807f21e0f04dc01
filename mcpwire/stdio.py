"""Serve a single client session over line-delimited JSON on a pair of streams."""

from __future__ import annotations

import io
import json
import queue
import signal
import sys
import threading
from concurrent.futures import CancelledError
from typing import IO, Any, Callable

from .logger import StdLogger, default_logger
from .session import (
    DEFAULT_CHANNEL_CAPACITY,
    JSONRPC_VERSION,
    PARSE_ERROR,
    ClientSession,
    Context,
    SessionServer,
)

STDIO_SESSION_ID = "stdio"
DEFAULT_LOG_LEVEL = "error"
_POLL_INTERVAL = 0.05

ContextFunc = Callable[[Context], Context]


class StdioSession(ClientSession):
    """The one client session of a stdio server."""

    def __init__(self) -> None:
        super().__init__(
            STDIO_SESSION_ID, queue.Queue(maxsize=DEFAULT_CHANNEL_CAPACITY)
        )
        self._lock = threading.Lock()
        self._log_level: str | None = None
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

    def set_client_info(self, client_info: dict[str, Any]) -> None:
        with self._lock:
            self._client_info = dict(client_info)

    def get_client_info(self) -> dict[str, Any]:
        with self._lock:
            return dict(self._client_info or {})


def _to_json(obj: Any) -> Any:
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _encode(message: Any) -> str:
    return json.dumps(message, default=_to_json, separators=(",", ":"), ensure_ascii=False)


def _is_binary(stream: Any) -> bool:
    return isinstance(stream, (io.RawIOBase, io.BufferedIOBase))


def _start_reader(stdin: IO[Any]) -> queue.Queue:
    """Read complete lines from ``stdin`` on a background thread.

    The queue receives each line, then None at end of input, or the exception
    that stopped reading. A final line without a newline counts as end of input.
    """
    lines: queue.Queue = queue.Queue()

    def run() -> None:
        while True:
            try:
                line = stdin.readline()
            except Exception as err:  # noqa: BLE001 - handed to the consumer
                lines.put(err)
                return
            if isinstance(line, (bytes, bytearray)):
                line = bytes(line).decode("utf-8", errors="replace")
            if not line or not line.endswith("\n"):
                lines.put(None)
                return
            lines.put(line)

    threading.Thread(target=run, daemon=True).start()
    return lines


class StdioServer:
    """Runs a session server over standard input and output streams."""

    def __init__(
        self,
        server: SessionServer,
        error_logger: StdLogger | None = None,
        context_func: ContextFunc | None = None,
    ) -> None:
        self.server = server
        self.error_logger = error_logger if error_logger is not None else default_logger()
        self.context_func = context_func
        self.session = StdioSession()
        self._write_lock = threading.Lock()

    def listen(self, ctx: Context, stdin: IO[Any], stdout: IO[Any]) -> None:
        """Handle messages from ``stdin`` until end of input or cancellation.

        Raises ``CancelledError`` when ``ctx`` is cancelled, and re-raises
        errors met while reading input or writing responses.
        """
        self.server.register_session(ctx, self.session)
        try:
            session_ctx = self.server.with_context(ctx, self.session)
            if self.context_func is not None:
                session_ctx = self.context_func(session_ctx)
            stop = threading.Event()
            notifier = threading.Thread(
                target=self._handle_notifications,
                args=(session_ctx, stdout, stop),
                daemon=True,
            )
            notifier.start()
            try:
                self._process_input_stream(session_ctx, stdin, stdout)
            finally:
                stop.set()
                notifier.join()
        finally:
            self.server.unregister_session(ctx, self.session.session_id)

    def _handle_notifications(
        self, ctx: Context, stdout: IO[Any], stop: threading.Event
    ) -> None:
        channel = self.session.notification_channel
        while not ctx.is_cancelled():
            try:
                notification = channel.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                if stop.is_set():
                    return
                continue
            try:
                self._write_response(notification, stdout)
            except (OSError, TypeError, ValueError) as err:
                self.error_logger.error("Error writing notification: %s", err)

    def _process_input_stream(self, ctx: Context, stdin: IO[Any], stdout: IO[Any]) -> None:
        lines = _start_reader(stdin)
        while True:
            if ctx.is_cancelled():
                raise CancelledError("context canceled")
            try:
                item = lines.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            if item is None:
                return
            if isinstance(item, BaseException):
                self.error_logger.error("Error reading input: %s", item)
                raise item
            try:
                self._process_message(ctx, item, stdout)
            except (OSError, TypeError, ValueError) as err:
                self.error_logger.error("Error handling message: %s", err)
                raise

    def _process_message(self, ctx: Context, line: str, stdout: IO[Any]) -> None:
        try:
            json.loads(line)
        except ValueError:
            self._write_response(
                {
                    "jsonrpc": JSONRPC_VERSION,
                    "id": None,
                    "error": {"code": PARSE_ERROR, "message": "Parse error"},
                },
                stdout,
            )
            return
        response = self.server.handle_message(ctx, line)
        if response is not None:
            self._write_response(response, stdout)

    def _write_response(self, message: Any, stdout: IO[Any]) -> None:
        data = _encode(message) + "\n"
        with self._write_lock:
            if _is_binary(stdout):
                stdout.write(data.encode("utf-8"))
            else:
                stdout.write(data)
            flush = getattr(stdout, "flush", None)
            if callable(flush):
                flush()


def serve_stdio(
    server: SessionServer,
    error_logger: StdLogger | None = None,
    context_func: ContextFunc | None = None,
) -> None:
    """Serve ``server`` on the process's standard streams.

    SIGTERM and SIGINT cancel the session, which raises ``CancelledError``.
    """
    stdio = StdioServer(server, error_logger, context_func)
    ctx = Context()
    previous: dict[int, Any] = {}
    if threading.current_thread() is threading.main_thread():
        for sig in (signal.SIGTERM, signal.SIGINT):
            previous[sig] = signal.signal(sig, lambda *_: ctx.cancel())
    try:
        stdio.listen(ctx, sys.stdin, sys.stdout)
    finally:
        for sig, handler in previous.items():
            if handler is not None:
                signal.signal(sig, handler)