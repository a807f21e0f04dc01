"""URL and path computation for the SSE transport's endpoints."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import parse_qs, unquote, urlsplit

DynamicBasePathFunc = Callable[[Any, str], str]

_BAD_ESCAPE = re.compile(r"%(?![0-9A-Fa-f]{2})")


class DynamicPathConfigError(Exception):
    """Raised when a static-path operation is used with a dynamic base path."""

    def __init__(self, method: str) -> None:
        self.method = method
        super().__init__(
            f"{method} cannot be used with a dynamic base path; "
            "mount the SSE and message handlers with your own router instead"
        )


def _clean(path: str) -> str:
    if not path:
        return "."
    rooted = path.startswith("/")
    parts: list[str] = []
    for segment in path.split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            if parts and parts[-1] != "..":
                parts.pop()
            elif not rooted:
                parts.append("..")
            continue
        parts.append(segment)
    result = "/".join(parts)
    if rooted:
        return "/" + result
    return result or "."


def _join(*elements: str) -> str:
    present = [element for element in elements if element]
    if not present:
        return ""
    return _clean("/".join(present))


def normalize_url_path(*args: str) -> str:
    """Join path segments, resolving dots and doubled slashes.

    The result always starts with a slash and never ends with one, unless it
    is the root path itself.
    """
    joined = _join(*args)
    if not joined.startswith("/"):
        joined = "/" + joined
    if len(joined) > 1 and joined.endswith("/"):
        joined = joined[:-1]
    return joined


def clean_base_url(base_url: str) -> str | None:
    """Validate a base URL and strip one trailing slash.

    Returns None when the URL is not an absolute http(s) URL with a host and
    no query; an empty string is accepted as is.
    """
    if base_url:
        try:
            parts = urlsplit(base_url)
        except ValueError:
            return None
        if parts.scheme not in ("http", "https"):
            return None
        host = parts.netloc.rpartition("@")[2]
        if not host or host.startswith(":"):
            return None
        if parse_qs(parts.query, keep_blank_values=True):
            return None
    return base_url[:-1] if base_url.endswith("/") else base_url


def url_path(value: str) -> str:
    """Return the decoded path component of a URL."""
    try:
        parts = urlsplit(value)
    except ValueError as err:
        raise ValueError(f"failed to parse URL {value}: {err}") from err
    if _BAD_ESCAPE.search(parts.path):
        raise ValueError(f"failed to parse URL {value}: invalid escape in path")
    return unquote(parts.path)


@dataclass
class SSEEndpoints:
    """Where the SSE stream and the message endpoint are served."""

    base_url: str = ""
    base_path: str = ""
    sse_endpoint: str = "/sse"
    message_endpoint: str = "/message"
    use_full_url_for_message_endpoint: bool = True
    dynamic_base_path: DynamicBasePathFunc | None = None

    def __post_init__(self) -> None:
        if self.base_path:
            self.base_path = normalize_url_path(self.base_path)

    def complete_sse_endpoint(self) -> str:
        """Return the full URL of the SSE endpoint."""
        if self.dynamic_base_path is not None:
            raise DynamicPathConfigError("complete_sse_endpoint")
        return self.base_url + normalize_url_path(self.base_path, self.sse_endpoint)

    def complete_sse_path(self) -> str:
        """Return the path part of the SSE endpoint."""
        try:
            return url_path(self.complete_sse_endpoint())
        except (DynamicPathConfigError, ValueError):
            return normalize_url_path(self.base_path, self.sse_endpoint)

    def complete_message_endpoint(self) -> str:
        """Return the full URL of the message endpoint."""
        if self.dynamic_base_path is not None:
            raise DynamicPathConfigError("complete_message_endpoint")
        return self.base_url + normalize_url_path(self.base_path, self.message_endpoint)

    def complete_message_path(self) -> str:
        """Return the path part of the message endpoint."""
        try:
            return url_path(self.complete_message_endpoint())
        except (DynamicPathConfigError, ValueError):
            return normalize_url_path(self.base_path, self.message_endpoint)

    def message_endpoint_for_client(self, request: Any, session_id: str) -> str:
        """Return the message endpoint a client should post to, with its session id."""
        base_path = self.base_path
        if self.dynamic_base_path is not None:
            base_path = normalize_url_path(self.dynamic_base_path(request, session_id))
        endpoint = normalize_url_path(base_path, self.message_endpoint)
        if self.use_full_url_for_message_endpoint and self.base_url:
            endpoint = self.base_url + endpoint
        return f"{endpoint}?sessionId={session_id}"