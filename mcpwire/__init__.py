"""Session management and stdio, SSE and streamable HTTP transports for MCP message handlers."""

__version__ = "0.1.0"

__all__ = ["logger", "session", "stdio", "sse_paths", "sse", "session_ids", "streamable_http"]