"""Request decoding, the allow-list, responses and proxy resolution."""

from __future__ import annotations

import json

import pytest

from protocol import (
    DIRECT,
    MalformedRequest,
    ProxyDescriptor,
    ProxyKind,
    ProxySpec,
    Request,
    Response,
    UnsupportedProxySpec,
    ValidationError,
    decode_request,
    request_ok,
    resolve_proxy,
)


def _payload(obj) -> bytes:
    return json.dumps(obj).encode()


# ─── decode_request ───────────────────────────────────────────────────────────


def test_decode_full_request():
    req = decode_request(
        _payload(
            {
                "method": "POST",
                "url": "https://example.com/",
                "header": {"Host": "front.example.net", "X-Session-Id": "abc"},
                "body": "aGVsbG8=",
                "proxy": {"type": "socks4a", "host": "127.0.0.1", "port": 9050},
            }
        )
    )
    assert req.method == "POST"
    assert req.url == "https://example.com/"
    assert dict(req.header) == {"Host": "front.example.net", "X-Session-Id": "abc"}
    assert req.body == b"hello"
    assert req.proxy == ProxySpec("socks4a", "127.0.0.1", 9050)


def test_decode_minimal_request():
    req = decode_request(b'{"method":"POST","url":"https://example.com/"}')
    assert req.body is None
    assert req.proxy is None
    assert dict(req.header) == {}


def test_header_is_read_only():
    req = decode_request(_payload({"method": "POST", "url": "https://x/", "header": {"a": "b"}}))
    with pytest.raises(TypeError):
        req.header["a"] = "c"  # type: ignore[index]


@pytest.mark.parametrize(
    "payload",
    [
        b"\xff\xfe",
        b"not json",
        b"[1, 2]",
        b'"POST"',
        b"",
        b"[" * 100_000,
        b'{"method": "POST", "n": ' + b"9" * 5000 + b"}",
    ],
)
def test_malformed_payloads(payload):
    with pytest.raises(MalformedRequest):
        decode_request(payload)


@pytest.mark.parametrize(
    "obj",
    [
        {"method": 1, "url": "https://x/"},
        {"method": "POST", "url": ["https://x/"]},
        {"method": "POST", "url": "https://x/", "header": ["Host", "x"]},
        {"method": "POST", "url": "https://x/", "header": {"Host": 1}},
        {"method": "POST", "url": "https://x/", "body": 12},
        {"method": "POST", "url": "https://x/", "body": "not base64!"},
        {"method": "POST", "url": "https://x/", "header": {"X-A": "1\r\nX-B: 2"}},
        {"method": "POST", "url": "https://x/", "header": {"X-A\nB": "1"}},
    ],
)
def test_wrongly_shaped_fields(obj):
    with pytest.raises(ValidationError):
        decode_request(_payload(obj))


def test_request_to_json_round_trip():
    req = Request("POST", "https://x/", {"Host": "y"}, b"\x00\x01", ProxySpec("http", "p", 8080))
    again = Request.from_json(req.to_json())
    assert again.body == b"\x00\x01"
    assert again.proxy == req.proxy
    assert dict(again.header) == {"Host": "y"}


# ─── request_ok ───────────────────────────────────────────────────────────────


def test_post_https_accepted():
    assert request_ok(Request("POST", "https://example.com/"))


@pytest.mark.parametrize(
    "method,url",
    [
        ("GET", "https://example.com/"),
        ("post", "https://example.com/"),
        ("POST", "http://example.com/"),
        ("POST", "HTTPS://example.com/"),
        (None, "https://example.com/"),
        ("POST", None),
    ],
)
def test_everything_else_rejected(method, url):
    assert not request_ok(Request(method, url))


# ─── Response ─────────────────────────────────────────────────────────────────


def test_success_encoding():
    assert Response.success(200, b"ok").encode() == b'{"status":200,"body":"b2s="}'


def test_failure_encoding():
    assert Response.failure("NET_RESET").encode() == b'{"error":"NET_RESET"}'


def test_empty_body_encodes_as_empty_string():
    assert json.loads(Response.success(204, b"").encode()) == {"status": 204, "body": ""}


def test_response_needs_exactly_one_shape():
    with pytest.raises(ValueError):
        Response()
    with pytest.raises(ValueError):
        Response(status=200, body=b"", error="boom")


def test_response_from_json():
    assert Response.from_json({"status": 302, "body": "b2s="}) == Response.success(302, b"ok")
    assert Response.from_json({"error": "x"}).error == "x"
    with pytest.raises(ValueError):
        Response.from_json({"body": ""})


@pytest.mark.parametrize(
    "obj",
    [
        {"status": True, "body": ""},
        {"status": 200, "body": "not base64!"},
        {"status": 200, "body": 5},
        {"error": 7},
        {"error": ""},
        ["status", 200],
    ],
)
def test_response_from_json_is_strict(obj):
    with pytest.raises(ValueError):
        Response.from_json(obj)


def test_response_empty_error_means_success():
    resp = Response.from_json({"error": "", "status": 204})
    assert resp.ok
    assert (resp.status, resp.body) == (204, b"")
    assert not Response.failure("NET_RESET").ok


# ─── resolve_proxy ────────────────────────────────────────────────────────────


def test_absent_proxy_is_direct():
    assert resolve_proxy(None) is DIRECT
    assert DIRECT.is_direct
    assert DIRECT.as_url() is None


@pytest.mark.parametrize(
    "kind_name,kind",
    [("http", ProxyKind.HTTP), ("socks5", ProxyKind.SOCKS5), ("socks4a", ProxyKind.SOCKS4A)],
)
def test_supported_kinds_use_remote_dns(kind_name, kind):
    desc = resolve_proxy(ProxySpec(kind_name, "10.0.0.1", 1080))
    assert desc == ProxyDescriptor(kind, "10.0.0.1", 1080, remote_dns=True)
    assert desc.as_url() == f"{kind_name}://10.0.0.1:1080"


def test_ipv6_proxy_url_is_bracketed():
    assert resolve_proxy(ProxySpec("socks5", "::1", 9050)).as_url() == "socks5://[::1]:9050"


@pytest.mark.parametrize(
    "spec",
    [
        ProxySpec("ftp", "h", 21),
        ProxySpec("socks", "h", 1080),
        ProxySpec("socks4", "h", 1080),
        ProxySpec("HTTP", "h", 8080),
        ProxySpec(None, "h", 8080),
        ProxySpec("http", "", 8080),
        ProxySpec("http", None, 8080),
        ProxySpec("http", "h", None),
        ProxySpec("http", "h", "8080"),
        ProxySpec("http", "h", True),
        ProxySpec("http", "h", 0),
        ProxySpec("http", "h", 65536),
        ProxySpec.from_json("socks5://h:1080"),
    ],
)
def test_unsupported_proxy_specs(spec):
    with pytest.raises(UnsupportedProxySpec):
        resolve_proxy(spec)
