import pytest

from mcpwire.sse_paths import (
    DynamicPathConfigError,
    SSEEndpoints,
    clean_base_url,
    normalize_url_path,
    url_path,
)


@pytest.mark.parametrize(
    "inputs, expected",
    [
        (["", ""], "/"),
        (["mcp"], "/mcp"),
        (["mcp", "api", "message"], "/mcp/api/message"),
        (["/mcp", "message"], "/mcp/message"),
        (["/mcp", "/message"], "/mcp/message"),
        (["mcp/", "message/"], "/mcp/message"),
        (["mcp", "message/"], "/mcp/message"),
        (["/"], "/"),
        (["mcp//api", "//message"], "/mcp/api/message"),
        (["mcp/parent/../child", "message"], "/mcp/child/message"),
        (["mcp/./api", "./message"], "/mcp/api/message"),
        (["/mcp/", "/api//", "message/"], "/mcp/api/message"),
        (["tenant", "/message"], "/tenant/message"),
        (["/mcp/{tenant}", "message"], "/mcp/{tenant}/message"),
    ],
)
def test_normalize_url_path(inputs, expected):
    assert normalize_url_path(*inputs) == expected


def test_instantiate_with_base_url_and_path():
    endpoints = SSEEndpoints(
        base_url=clean_base_url("http://localhost:8080"), base_path="/mcp"
    )
    assert endpoints.base_url == "http://localhost:8080"
    assert endpoints.base_path == "/mcp"


def test_base_path_is_normalized():
    assert SSEEndpoints(base_path="mcp/").base_path == "/mcp"


@pytest.mark.parametrize(
    "value, expected",
    [
        ("http://localhost:8080/", "http://localhost:8080"),
        ("https://example.com/mcp", "https://example.com/mcp"),
        ("http://localhost:8080/test", "http://localhost:8080/test"),
        ("", ""),
        ("ftp://example.com", None),
        ("http://:8080", None),
        ("http://", None),
        ("http://localhost?x=1", None),
        ("localhost:8080", None),
    ],
)
def test_clean_base_url(value, expected):
    assert clean_base_url(value) == expected


def test_url_path_decodes():
    assert url_path("http://localhost:8080/a%20b?x=1") == "/a b"


def test_url_path_rejects_bad_escape():
    with pytest.raises(ValueError, match="failed to parse URL"):
        url_path("http://localhost/%zz")


def test_complete_endpoints_static():
    endpoints = SSEEndpoints(
        base_url="http://localhost:8080/test",
        base_path="/mcp-test",
        sse_endpoint="/sse-test",
        message_endpoint="/message-test",
    )
    assert endpoints.complete_sse_endpoint() == "http://localhost:8080/test/mcp-test/sse-test"
    assert endpoints.complete_sse_path() == "/test/mcp-test/sse-test"
    assert (
        endpoints.complete_message_endpoint()
        == "http://localhost:8080/test/mcp-test/message-test"
    )
    assert endpoints.complete_message_path() == "/test/mcp-test/message-test"


def test_complete_endpoints_without_base_url():
    endpoints = SSEEndpoints(base_path="/mcp")
    assert endpoints.complete_sse_endpoint() == "/mcp/sse"
    assert endpoints.complete_message_path() == "/mcp/message"


def test_complete_endpoints_fail_with_dynamic_base_path():
    endpoints = SSEEndpoints(dynamic_base_path=lambda request, sid: "/foo")
    with pytest.raises(DynamicPathConfigError) as sse_error:
        endpoints.complete_sse_endpoint()
    assert sse_error.value.method == "complete_sse_endpoint"
    with pytest.raises(DynamicPathConfigError) as message_error:
        endpoints.complete_message_endpoint()
    assert message_error.value.method == "complete_message_endpoint"
    assert endpoints.complete_sse_path() == endpoints.base_path + endpoints.sse_endpoint
    assert (
        endpoints.complete_message_path()
        == endpoints.base_path + endpoints.message_endpoint
    )


def test_dynamic_path_error_message_names_method():
    assert "handle_request cannot be used with a dynamic base path" in str(
        DynamicPathConfigError("handle_request")
    )


def test_message_endpoint_full_url():
    endpoints = SSEEndpoints(base_url="http://localhost:8080", base_path="/mcp")
    assert (
        endpoints.message_endpoint_for_client(None, "abc")
        == "http://localhost:8080/mcp/message?sessionId=abc"
    )


def test_message_endpoint_path_only():
    endpoints = SSEEndpoints(
        base_url="http://localhost:8080/mcp",
        use_full_url_for_message_endpoint=False,
    )
    assert endpoints.message_endpoint_for_client(None, "abc") == "/message?sessionId=abc"


def test_message_endpoint_dynamic_base_path():
    seen = []

    def base_path(request, session_id):
        seen.append((request, session_id))
        return "mcp/" + request["tenant"] + "/"

    endpoints = SSEEndpoints(dynamic_base_path=base_path)
    endpoint = endpoints.message_endpoint_for_client({"tenant": "tenant123"}, "s1")
    assert endpoint == "/mcp/tenant123/message?sessionId=s1"
    assert seen == [({"tenant": "tenant123"}, "s1")]