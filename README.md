# mcpwire

`mcpwire` moves Model Context Protocol (MCP) JSON-RPC messages between clients and a message handler that you write. It tracks client sessions, delivers server-to-client notifications, and offers three transports:

- **stdio**: one JSON-RPC message per line on a pair of streams (`mcpwire.stdio`)
- **SSE**: a Server-Sent Events stream plus a POST message endpoint (`mcpwire.sse`, with URL and path helpers in `mcpwire.sse_paths`)
- **Streamable HTTP**: one endpoint answering POST, GET and DELETE, with an SSE upgrade when notifications arrive during a request (`mcpwire.streamable_http`, with session id policies in `mcpwire.session_ids`)

It depends on the standard library only.

## Installation

```
pip install mcpwire
```

## Sessions and notifications

`SessionServer` in `mcpwire.session` holds the registered sessions. Every incoming message is passed to your handler as the raw JSON text the transport received. The handler returns a response (a dict, or any object with a `to_dict()` method), or `None` when there is nothing to answer.

```python
import json
from mcpwire.session import SessionServer

def handler(ctx, raw):
    message = json.loads(raw)
    if "id" in message:
        return {"jsonrpc": "2.0", "id": message["id"], "result": {}}
    return None

server = SessionServer(handler, tool_list_changed=True)
server.add_on_error(lambda ctx, id_, method, message, err: print("error:", err))
```

With no handler, `handle_message` answers every request (a message with both `method` and `id`) with a "method not found" error, answers malformed JSON with a parse error, and ignores notifications.

Sessions are `ClientSession` objects. Each one has a `session_id` and a bounded `notification_channel` queue, which holds 100 items by default. Use `register_session(ctx, session)` and `unregister_session(ctx, session_id)` to add and remove them. Registering an id that is already taken raises `SessionExistsError`. Hooks added with `add_on_register_session` and `add_on_unregister_session` run on each register and unregister.

`with_context(ctx, session)` attaches a session to a `Context`, and `client_session_from_context(ctx)` reads it back. A `Context` also carries arbitrary values (`with_value`, `value`) and a cancellation flag (`cancel`, `is_cancelled`).

Notifications can be sent in three ways:

- `send_notification_to_client(ctx, method, params)` sends to the session in the context. It raises `NotificationNotInitializedError` if there is no initialized session.
- `send_notification_to_specific_client(session_id, method, params)` sends to one session. It raises `SessionNotFoundError` or `SessionNotInitializedError`.
- `send_notification_to_all_clients(method, params)` sends to every initialized session.

When a session's channel is full, the error hooks are called on a background thread. The two single-client calls also raise `NotificationChannelBlockedError`. All these errors derive from `SessionError`.

### Per-session tools

`add_session_tool(session_id, tool, handler)`, `add_session_tools(session_id, *server_tools)` and `delete_session_tools(session_id, *names)` change the tools of one session. A tool is a `ServerTool`, which holds a tool mapping with a `"name"` key and an optional handler. These calls work only on sessions that have `get_session_tools` and `set_session_tools` methods; for any other session they raise `SessionToolsUnsupportedError`.

Adding tools turns `tool_list_changed` on if it was still `None`. An initialized session receives `notifications/tools/list_changed` whenever `tool_list_changed` is true.

## stdio

```python
from mcpwire.stdio import serve_stdio

serve_stdio(server)
```

`serve_stdio` serves the process's standard input and output. It stops at end of input. On SIGINT or SIGTERM the session is cancelled, and `serve_stdio` raises `concurrent.futures.CancelledError`.

To use other streams, call `StdioServer(server, error_logger, context_func).listen(ctx, stdin, stdout)`. Text and binary streams both work. Each response and notification is written as one JSON line. A line that is not valid JSON gets a parse-error response. `context_func`, if given, is called once to extend the session context.

The single client session is a `StdioSession` with id `"stdio"`. It stores a log level, which defaults to `"error"`, and client info.

## SSE

```python
from mcpwire.sse import SSEServer

sse = SSEServer(server, base_url="http://localhost:8080", base_path="/mcp")
sse.start("127.0.0.1:8080")
```

Clients open `GET /mcp/sse`. The first event is `endpoint`, which carries the URL to POST messages to, for example `http://localhost:8080/mcp/message?sessionId=...`. Each POST is acknowledged with `202 Accepted`, and its response arrives on the event stream. Notifications for the session also arrive on the stream.

`SSEServer` takes these keyword options:

- `base_url`: an invalid URL is ignored.
- `base_path`
- `dynamic_base_path`: a function `(request, session_id) -> path`.
- `sse_endpoint`: defaults to `/sse`.
- `message_endpoint`: defaults to `/message`.
- `use_full_url_for_message_endpoint`: defaults to true.
- `append_query_to_message_endpoint`
- `keep_alive` and `keep_alive_interval`: the interval is in seconds. Setting an interval also turns keep-alive pings on.
- `context_func`: a function `(ctx, request) -> ctx`.
- `http_server`
- `logger`
- `log_requests`

Other methods:

- `send_event_to_session(session_id, event)` queues an event on one stream.
- `shutdown()` closes every stream and stops the HTTP server.
- `request_handler_class()` returns a `BaseHTTPRequestHandler` subclass, so you can mount the server in your own `http.server`.
- `handle_sse` and `handle_message` serve the two endpoints directly. Use them with a dynamic base path. In that mode the path-based router `handle_request` answers 500.

`mcpwire.sse_paths` holds the helpers:

- `normalize_url_path(*segments)` joins segments into a rooted path with no trailing slash, resolving `.`, `..` and doubled slashes. For example, `("mcp/parent/../child", "message")` gives `/mcp/child/message`.
- `clean_base_url` validates a base URL.
- `url_path` extracts the path from a URL.
- `SSEEndpoints` computes the full endpoint URLs and paths. Its `complete_*_endpoint` methods raise `DynamicPathConfigError` when a dynamic base path is set.

`new_test_server(server, **options)` starts an SSE server on a free loopback port. It returns an object with a `url`, a `close()` method and context-manager support.

## Streamable HTTP

```python
from mcpwire.streamable_http import StreamableHTTPServer

http_server = StreamableHTTPServer(server, endpoint_path="/mcp")
http_server.start("127.0.0.1:8080")
```

The endpoint answers three methods:

- **POST** requires `Content-Type: application/json`.
  - An `initialize` request gets a fresh session id in the `Mcp-Session-Id` response header.
  - Other requests must carry a valid id, or they are answered with 400.
  - Notifications are answered with `202 Accepted`.
  - If the handler sends notifications while it runs, the response turns into a `text/event-stream`. It carries those notifications followed by the final response.
- **GET** registers a session and streams its notifications. Set `heartbeat_interval` (in seconds) to also send `ping` messages.
- **DELETE** ends the session and drops its per-session tools.

`endpoint_path` is used only by `start()`. When mounted through `request_handler_class()`, the server answers on every path.

Other options are `stateless`, `session_id_manager` (which takes precedence over `stateless`), `context_func` and `logger`. `new_test_streamable_http_server(server, **options)` starts one on a free loopback port. `write_sse_event(stream, data)` writes a single `message` event to a text or binary stream.

`mcpwire.session_ids` provides the session id policies:

- `InsecureStatefulSessionIdManager` is the default. It issues `mcp-session-<uuid>` ids and checks only their shape.
- `StatelessSessionIdManager` issues no ids and rejects requests that carry one.

To write your own policy, subclass `SessionIdManager`. `validate` returns true for a terminated session and raises `InvalidSessionIdError` for a bad id.

## Logging

`mcpwire.logger.StdLogger(stream=None, timestamps=True)` writes `INFO:` and `ERROR:` lines with `%`-style formatting. `default_logger()` returns one that writes to standard error.

## What this package does not do

`mcpwire` carries messages and manages sessions. It does not implement the MCP methods themselves: `initialize`, `tools/list`, `tools/call`, `logging/setLevel` and the rest are left to the handler you pass to `SessionServer`. Without a handler, every request gets a "method not found" error. It has no command-line program, and it does not batch JSON-RPC messages or resume interrupted streams.