import io
import json
import queue
from concurrent.futures import CancelledError, ThreadPoolExecutor

import pytest

from mcpwire.logger import StdLogger
from mcpwire.session import (
    ClientSession,
    Context,
    SessionExistsError,
    SessionServer,
    client_session_from_context,
)
from mcpwire.stdio import StdioServer, StdioSession

TEST_KEY = object()

INIT_REQUEST = {
    "jsonrpc": "2.0",
    "id": 1,
    "method": "initialize",
    "params": {
        "protocolVersion": "2024-11-05",
        "clientInfo": {"name": "test-client", "version": "1.0.0"},
    },
}


def make_server():
    holder = {}

    def handle(ctx, raw):
        message = json.loads(raw)
        if "id" not in message:
            return None
        method = message.get("method")
        if method == "initialize":
            client_session_from_context(ctx).initialize()
            result = {"protocolVersion": message["params"]["protocolVersion"]}
        elif method == "tools/call":
            text = ctx.value(TEST_KEY) or ""
            result = {"content": [{"type": "text", "text": text}]}
        elif method == "notify":
            holder["server"].send_notification_to_client(
                ctx, "test/notification", {"value": 1}
            )
            result = {}
        else:
            return {
                "jsonrpc": "2.0",
                "id": message["id"],
                "error": {"code": -32601, "message": "not found"},
            }
        return {"jsonrpc": "2.0", "id": message["id"], "result": result}

    server = SessionServer(handler=handle)
    holder["server"] = server
    return server


def quiet_logger():
    return StdLogger(stream=io.StringIO(), timestamps=False)


def run_lines(stdio, *messages):
    stdin = io.StringIO("".join(json.dumps(m) + "\n" for m in messages))
    stdout = io.StringIO()
    stdio.listen(Context(), stdin, stdout)
    return [json.loads(line) for line in stdout.getvalue().splitlines()]


class BlockingReader:
    def __init__(self):
        self.lines = queue.Queue()

    def readline(self):
        return self.lines.get()


class LineSink:
    def __init__(self):
        self.lines = queue.Queue()

    def write(self, data):
        for line in data.splitlines():
            self.lines.put(line)

    def flush(self):
        pass


class FailingWriter:
    def write(self, data):
        raise OSError("broken pipe")


def test_instantiates_with_server_and_logger():
    server = make_server()
    stdio = StdioServer(server)
    assert stdio.server is server
    assert isinstance(stdio.error_logger, StdLogger)
    assert stdio.session.session_id == "stdio"


def test_send_and_receive_messages():
    stdio = StdioServer(make_server(), quiet_logger())
    responses = run_lines(stdio, INIT_REQUEST)
    assert len(responses) == 1
    response = responses[0]
    assert response["jsonrpc"] == "2.0"
    assert response["id"] == 1
    assert "error" not in response
    assert response["result"] == {"protocolVersion": "2024-11-05"}


def test_custom_context_function():
    stdio = StdioServer(
        make_server(),
        quiet_logger(),
        context_func=lambda ctx: ctx.with_value(TEST_KEY, "test_value"),
    )
    tool_request = {
        "jsonrpc": "2.0",
        "id": 2,
        "method": "tools/call",
        "params": {"name": "test_tool"},
    }
    responses = run_lines(stdio, INIT_REQUEST, tool_request)
    assert [r["id"] for r in responses] == [1, 2]
    assert responses[1]["jsonrpc"] == "2.0"
    assert responses[1]["result"]["content"][0]["text"] == "test_value"
    assert "error" not in responses[1]


def test_invalid_json_yields_parse_error():
    stdio = StdioServer(make_server(), quiet_logger())
    stdout = io.StringIO()
    stdio.listen(Context(), io.StringIO("{invalid json\n"), stdout)
    response = json.loads(stdout.getvalue())
    assert response["id"] is None
    assert response["error"]["code"] == -32700
    assert response["error"]["message"] == "Parse error"


def test_notification_message_produces_no_output():
    stdio = StdioServer(make_server(), quiet_logger())
    responses = run_lines(stdio, {"jsonrpc": "2.0", "method": "notifications/initialized"})
    assert responses == []


def test_final_line_without_newline_is_ignored():
    stdio = StdioServer(make_server(), quiet_logger())
    stdout = io.StringIO()
    stdio.listen(Context(), io.StringIO(json.dumps(INIT_REQUEST)), stdout)
    assert stdout.getvalue() == ""


def test_session_registered_and_unregistered():
    server = make_server()
    registered, unregistered = [], []
    server.add_on_register_session(lambda ctx, s: registered.append(s.session_id))
    server.add_on_unregister_session(lambda ctx, s: unregistered.append(s.session_id))
    stdio = StdioServer(server, quiet_logger())
    run_lines(stdio, INIT_REQUEST)
    assert registered == ["stdio"]
    assert unregistered == ["stdio"]
    assert stdio.session.is_initialized() is True


def test_listen_fails_when_session_already_registered():
    server = make_server()
    server.register_session(Context(), ClientSession("stdio"))
    stdio = StdioServer(server, quiet_logger())
    with pytest.raises(SessionExistsError):
        stdio.listen(Context(), io.StringIO(""), io.StringIO())


def test_notifications_are_written_to_output():
    stdio = StdioServer(make_server(), quiet_logger())
    notify = {"jsonrpc": "2.0", "id": 2, "method": "notify"}
    messages = run_lines(stdio, INIT_REQUEST, notify)
    notifications = [m for m in messages if m.get("method") == "test/notification"]
    assert len(notifications) == 1
    assert notifications[0]["params"] == {"value": 1}
    assert sorted(m["id"] for m in messages if "id" in m) == [1, 2]


def test_cancellation_stops_listening():
    stdio = StdioServer(make_server(), quiet_logger())
    reader, sink = BlockingReader(), LineSink()
    ctx = Context()
    pool = ThreadPoolExecutor(max_workers=1)
    try:
        future = pool.submit(stdio.listen, ctx, reader, sink)
        reader.lines.put(json.dumps(INIT_REQUEST) + "\n")
        first = json.loads(sink.lines.get(timeout=5))
        assert first["id"] == 1
        assert first["result"] == {"protocolVersion": "2024-11-05"}
        ctx.cancel()
        with pytest.raises(CancelledError):
            future.result(timeout=5)
        assert ctx.is_cancelled() is True
    finally:
        reader.lines.put("")
        pool.shutdown(wait=False)


def test_write_failure_is_logged_and_raised():
    log = io.StringIO()
    stdio = StdioServer(make_server(), StdLogger(stream=log, timestamps=False))
    stdin = io.StringIO(json.dumps(INIT_REQUEST) + "\n")
    with pytest.raises(OSError, match="broken pipe"):
        stdio.listen(Context(), stdin, FailingWriter())
    assert "ERROR: Error handling message: broken pipe" in log.getvalue()


def test_binary_streams():
    stdio = StdioServer(make_server(), quiet_logger())
    stdin = io.BytesIO((json.dumps(INIT_REQUEST) + "\n").encode())
    stdout = io.BytesIO()
    stdio.listen(Context(), stdin, stdout)
    response = json.loads(stdout.getvalue().decode())
    assert response["id"] == 1


def test_stdio_session_log_level_and_client_info():
    session = StdioSession()
    assert session.get_log_level() == "error"
    assert session.is_initialized() is False
    session.set_log_level("critical")
    session.initialize()
    assert session.get_log_level() == "error"
    session.set_log_level("critical")
    assert session.get_log_level() == "critical"
    assert session.get_client_info() == {}
    session.set_client_info({"name": "test-client", "version": "1.0.0"})
    assert session.get_client_info() == {"name": "test-client", "version": "1.0.0"}