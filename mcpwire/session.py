"""Client sessions, per-session tools and notification delivery."""

from __future__ import annotations

import json
import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, Mapping

JSONRPC_VERSION = "2.0"
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
TOOLS_LIST_CHANGED = "notifications/tools/list_changed"
DEFAULT_CHANNEL_CAPACITY = 100


class SessionError(Exception):
    """Base class for session failures."""

    default_message = "session error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class SessionExistsError(SessionError):
    default_message = "session already exists"


class SessionNotFoundError(SessionError):
    default_message = "session not found"


class SessionNotInitializedError(SessionError):
    default_message = "session not properly initialized"


class NotificationNotInitializedError(SessionError):
    default_message = "notification channel not initialized"


class NotificationChannelBlockedError(SessionError):
    default_message = "notification channel blocked"


class SessionToolsUnsupportedError(SessionError):
    default_message = "session does not support per-session tools"


@dataclass(frozen=True)
class JSONRPCNotification:
    """A JSON-RPC notification sent from server to client."""

    method: str
    params: Mapping[str, Any] | None = None
    jsonrpc: str = JSONRPC_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "jsonrpc": self.jsonrpc,
            "method": self.method,
            "params": dict(self.params or {}),
        }


class ClientSession:
    """An active client connection that can receive notifications."""

    def __init__(
        self,
        session_id: str,
        notification_channel: queue.Queue | None = None,
        initialized: bool = False,
    ) -> None:
        self.session_id = session_id
        self.notification_channel = (
            notification_channel
            if notification_channel is not None
            else queue.Queue(maxsize=DEFAULT_CHANNEL_CAPACITY)
        )
        self._initialized = threading.Event()
        if initialized:
            self._initialized.set()

    def initialize(self) -> None:
        """Mark the session ready to accept notifications."""
        self._initialized.set()

    def is_initialized(self) -> bool:
        return self._initialized.is_set()


@dataclass(frozen=True)
class ServerTool:
    """A tool definition paired with the callable that serves it."""

    tool: Mapping[str, Any]
    handler: Callable[..., Any] | None = None

    @property
    def name(self) -> str:
        return self.tool["name"]


_NO_KEY = object()
_SESSION_KEY = object()


class Context:
    """A chain of key/value pairs with cancellation, passed through handlers."""

    def __init__(self) -> None:
        self._parent: Context | None = None
        self._key: Any = _NO_KEY
        self._value: Any = None
        self._cancelled = threading.Event()

    def with_value(self, key: Any, value: Any) -> Context:
        """Return a child context carrying ``key`` mapped to ``value``."""
        child = Context()
        child._parent = self
        child._key = key
        child._value = value
        return child

    def value(self, key: Any) -> Any:
        """Return the nearest value stored under ``key``, or None."""
        ctx: Context | None = self
        while ctx is not None:
            if ctx._key is not _NO_KEY and ctx._key == key:
                return ctx._value
            ctx = ctx._parent
        return None

    def cancel(self) -> None:
        """Cancel this context and every context derived from it."""
        self._cancelled.set()

    def is_cancelled(self) -> bool:
        ctx: Context | None = self
        while ctx is not None:
            if ctx._cancelled.is_set():
                return True
            ctx = ctx._parent
        return False


def client_session_from_context(ctx: Context) -> ClientSession | None:
    """Return the client session stored in ``ctx``, if any."""
    return ctx.value(_SESSION_KEY)


def _supports_tools(session: Any) -> bool:
    return callable(getattr(session, "get_session_tools", None)) and callable(
        getattr(session, "set_session_tools", None)
    )


def _error_response(request_id: Any, code: int, message: str) -> dict[str, Any]:
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "error": {"code": code, "message": message},
    }


ErrorHook = Callable[[Context, Any, str, Any, BaseException], None]
SessionHook = Callable[[Context, ClientSession], None]
MessageHandler = Callable[[Context, Any], Any]


class SessionServer:
    """Keeps track of client sessions and delivers notifications to them.

    ``handler`` processes incoming JSON-RPC messages; ``tool_list_changed``
    is the tools capability flag (None until tools are first used).
    """

    def __init__(
        self,
        handler: MessageHandler | None = None,
        tool_list_changed: bool | None = None,
    ) -> None:
        self._handler = handler
        self.tool_list_changed = tool_list_changed
        self._sessions: dict[str, ClientSession] = {}
        self._lock = threading.Lock()
        self._on_error: list[ErrorHook] = []
        self._on_register: list[SessionHook] = []
        self._on_unregister: list[SessionHook] = []

    # --- hooks -------------------------------------------------------------

    def add_on_error(self, hook: ErrorHook) -> None:
        self._on_error.append(hook)

    def add_on_register_session(self, hook: SessionHook) -> None:
        self._on_register.append(hook)

    def add_on_unregister_session(self, hook: SessionHook) -> None:
        self._on_unregister.append(hook)

    def _report_error(
        self, ctx: Context, method: str, session_id: str, err: BaseException
    ) -> None:
        hooks = list(self._on_error)
        if not hooks:
            return
        message = {"method": method, "sessionID": session_id}

        def run() -> None:
            for hook in hooks:
                hook(ctx, None, "notification", message, err)

        threading.Thread(target=run, daemon=True).start()

    # --- sessions ----------------------------------------------------------

    def with_context(self, ctx: Context, session: ClientSession) -> Context:
        """Return a context carrying ``session`` as the current client."""
        return ctx.with_value(_SESSION_KEY, session)

    def register_session(self, ctx: Context, session: ClientSession) -> None:
        with self._lock:
            if session.session_id in self._sessions:
                raise SessionExistsError()
            self._sessions[session.session_id] = session
        for hook in list(self._on_register):
            hook(ctx, session)

    def unregister_session(self, ctx: Context, session_id: str) -> None:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return
        for hook in list(self._on_unregister):
            hook(ctx, session)

    def _lookup(self, session_id: str) -> ClientSession:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError()
        return session

    # --- messages ----------------------------------------------------------

    def handle_message(self, ctx: Context, raw: Any) -> Any:
        """Process one JSON-RPC message and return the response, if any."""
        if self._handler is not None:
            return self._handler(ctx, raw)
        if isinstance(raw, (bytes, bytearray, str)):
            try:
                message = json.loads(raw)
            except ValueError:
                return _error_response(None, PARSE_ERROR, "Parse error")
        else:
            message = raw
        if not isinstance(message, dict):
            return _error_response(None, INVALID_REQUEST, "Invalid request")
        if "method" in message and "id" in message:
            return _error_response(
                message["id"], METHOD_NOT_FOUND, f"Method {message['method']} not found"
            )
        return None

    # --- notifications -----------------------------------------------------

    @staticmethod
    def _deliver(session: ClientSession, notification: JSONRPCNotification) -> bool:
        try:
            session.notification_channel.put_nowait(notification)
        except queue.Full:
            return False
        return True

    def send_notification_to_all_clients(
        self, method: str, params: Mapping[str, Any] | None = None
    ) -> None:
        notification = JSONRPCNotification(method, params)
        with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            if not session.is_initialized() or self._deliver(session, notification):
                continue
            sid = session.session_id
            self._report_error(
                Context(),
                method,
                sid,
                NotificationChannelBlockedError(
                    f"notification channel blocked for session {sid}"
                ),
            )

    def send_notification_to_client(
        self, ctx: Context, method: str, params: Mapping[str, Any] | None = None
    ) -> None:
        session = client_session_from_context(ctx)
        if session is None or not session.is_initialized():
            raise NotificationNotInitializedError()
        if not self._deliver(session, JSONRPCNotification(method, params)):
            sid = session.session_id
            self._report_error(
                ctx,
                method,
                sid,
                NotificationChannelBlockedError(
                    f"notification channel blocked for session {sid}"
                ),
            )
            raise NotificationChannelBlockedError()

    def send_notification_to_specific_client(
        self, session_id: str, method: str, params: Mapping[str, Any] | None = None
    ) -> None:
        session = self._lookup(session_id)
        if not session.is_initialized():
            raise SessionNotInitializedError()
        if not self._deliver(session, JSONRPCNotification(method, params)):
            self._report_error(
                Context(),
                method,
                session_id,
                NotificationChannelBlockedError(
                    f"notification channel blocked for session {session_id}"
                ),
            )
            raise NotificationChannelBlockedError()

    # --- per-session tools -------------------------------------------------

    def _tools_session(self, session_id: str) -> Any:
        session = self._lookup(session_id)
        if not _supports_tools(session):
            raise SessionToolsUnsupportedError()
        return session

    def _notify_tools_changed(self, session: ClientSession, action: str) -> None:
        with self._lock:
            enabled = self.tool_list_changed
        if not (session.is_initialized() and enabled):
            return
        sid = session.session_id
        try:
            self.send_notification_to_specific_client(sid, TOOLS_LIST_CHANGED, None)
        except SessionError as err:
            wrapped = type(err)(f"failed to send notification after {action} tools: {err}")
            wrapped.__cause__ = err
            self._report_error(Context(), TOOLS_LIST_CHANGED, sid, wrapped)

    def add_session_tool(
        self, session_id: str, tool: Mapping[str, Any], handler: Callable[..., Any] | None
    ) -> None:
        self.add_session_tools(session_id, ServerTool(tool, handler))

    def add_session_tools(self, session_id: str, *args: ServerTool) -> None:
        session = self._tools_session(session_id)
        with self._lock:
            if self.tool_list_changed is None:
                self.tool_list_changed = True
        updated = dict(session.get_session_tools() or {})
        updated.update((tool.name, tool) for tool in args)
        session.set_session_tools(updated)
        self._notify_tools_changed(session, "adding")

    def delete_session_tools(self, session_id: str, *args: str) -> None:
        session = self._tools_session(session_id)
        current = session.get_session_tools()
        if current is None:
            return
        updated = {name: tool for name, tool in current.items() if name not in args}
        session.set_session_tools(updated)
        self._notify_tools_changed(session, "deleting")