"""
protocol.py — data contract of the helper socket.

Request / response types, the error taxonomy, the request allow-list and
proxy-specification resolution.  Nothing in here touches a socket; the
connection handler in ``relay_server`` drives these pieces.

Wire shapes
-----------
Request (one per connection)::

    {"method": "POST", "url": "https://...",
     "header": {"Host": "..."},            # optional
     "body": "<base64>",                   # optional
     "proxy": {"type": "socks5", "host": "...", "port": 1080}}  # optional

Response, exactly one of::

    {"status": 200, "body": "<base64>"}
    {"error": "NET_RESET"}
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

import relay_log  # noqa: F401  (installs the TRACE-capable logger class)

logger = logging.getLogger(__name__)


# ============================================================================
# Error Taxonomy
# ============================================================================


class RelayError(Exception):
    """Base class for every failure the relay knows how to classify."""


class ProtocolError(RelayError):
    """The peer broke framing.  The connection is dropped, no response."""


class OversizedRequest(ProtocolError):
    """Declared request length is above the accepted maximum."""


class MalformedRequest(ProtocolError):
    """Request payload is not UTF-8 encoded JSON describing an object."""


class TruncatedRequest(ProtocolError):
    """Peer closed its side before a complete frame arrived."""


class ValidationError(RelayError):
    """Request decoded fine but is outside what we are willing to send."""


class ProxyError(RelayError):
    """The requested upstream proxy cannot be used."""


class UnsupportedProxySpec(ProxyError):
    pass


class TransportError(RelayError):
    """The HTTP engine failed.  ``name`` goes to the caller verbatim."""

    def __init__(self, name: str, detail: str = "") -> None:
        self.name = name
        self.detail = detail
        super().__init__(f"{name}: {detail}" if detail else name)


class ResponseTooLarge(TransportError):
    def __init__(self, limit: int) -> None:
        super().__init__("RESPONSE_TOO_LARGE", f"response body exceeds {limit} bytes")
        self.limit = limit


class DeadlineExceeded(RelayError):
    """A per-connection read or write deadline passed."""


VALIDATION_FAILED = "request failed validation"
INVALID_PROXY = "invalid proxy specification"
_CRLF = frozenset("\r\n")


# ============================================================================
# Request
# ============================================================================


@dataclass(frozen=True)
class ProxySpec:
    """Upstream proxy as the caller described it (not yet checked)."""

    type: Any
    host: Any = None
    port: Any = None

    @classmethod
    def from_json(cls, obj: Any) -> ProxySpec:
        if not isinstance(obj, dict):
            # Keep the bad value around so the resolver rejects it.
            return cls(type=obj)
        return cls(type=obj.get("type"), host=obj.get("host"), port=obj.get("port"))

    def to_json(self) -> dict[str, Any]:
        return {"type": self.type, "host": self.host, "port": self.port}


@dataclass(frozen=True)
class Request:
    method: Optional[str]
    url: Optional[str]
    header: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    body: Optional[bytes] = None
    proxy: Optional[ProxySpec] = None

    @classmethod
    def from_json(cls, obj: dict[str, Any]) -> Request:
        """Build a request from a decoded JSON object.

        Raises :class:`ValidationError` for fields with the wrong shape;
        whether method and url are acceptable is decided by
        :func:`request_ok`.
        """
        method = obj.get("method")
        url = obj.get("url")
        if method is not None and not isinstance(method, str):
            raise ValidationError(f"method is {type(method).__name__}, not a string")
        if url is not None and not isinstance(url, str):
            raise ValidationError(f"url is {type(url).__name__}, not a string")

        raw_header = obj.get("header")
        header: dict[str, str] = {}
        if raw_header is not None:
            if not isinstance(raw_header, dict):
                raise ValidationError("header is not an object")
            for k, v in raw_header.items():
                if not isinstance(v, str):
                    raise ValidationError(f"header {k!r} has a non-string value")
                if _CRLF.intersection(k) or _CRLF.intersection(v):
                    raise ValidationError(f"header {k!r} contains CR or LF")
                header[k] = v

        body: Optional[bytes] = None
        raw_body = obj.get("body")
        if raw_body is not None:
            if not isinstance(raw_body, str):
                raise ValidationError("body is not a base64 string")
            try:
                body = base64.b64decode(raw_body, validate=True)
            except (binascii.Error, ValueError) as e:
                raise ValidationError(f"body is not valid base64: {e}") from e

        proxy = None
        if obj.get("proxy") is not None:
            proxy = ProxySpec.from_json(obj["proxy"])

        return cls(
            method=method,
            url=url,
            header=MappingProxyType(header),
            body=body,
            proxy=proxy,
        )

    def to_json(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.method is not None:
            out["method"] = self.method
        if self.url is not None:
            out["url"] = self.url
        if self.header:
            out["header"] = dict(self.header)
        if self.body is not None:
            out["body"] = base64.b64encode(self.body).decode("ascii")
        if self.proxy is not None:
            out["proxy"] = self.proxy.to_json()
        return out


def decode_request(payload: bytes) -> Request:
    """Decode one frame payload into a :class:`Request`.

    Raises
    ------
    MalformedRequest
        Payload is not UTF-8, not JSON, or not a JSON object.
    ValidationError
        Payload is a JSON object whose fields have the wrong shape.
    """
    try:
        obj = json.loads(payload.decode("utf-8"))
    except UnicodeDecodeError as e:
        raise MalformedRequest(f"request is not UTF-8: {e}") from e
    except json.JSONDecodeError as e:
        raise MalformedRequest(f"request is not JSON: {e}") from e
    except (RecursionError, ValueError) as e:
        # nesting too deep, or an integer past the str conversion limit
        raise MalformedRequest(f"request cannot be decoded: {e}") from e
    if not isinstance(obj, dict):
        raise MalformedRequest(f"request is a JSON {type(obj).__name__}, not an object")
    return Request.from_json(obj)


def request_ok(req: Request) -> bool:
    """Allow-list for outgoing requests.

    Only ``POST`` to an ``https://`` URL is accepted.  Anything else is
    refused until there is a concrete need for it.
    """
    if req.method is None:
        logger.debug('req missing "method"')
        return False
    if req.url is None:
        logger.debug('req missing "url"')
        return False
    if req.method != "POST":
        logger.debug('req.method is %r, not "POST"', req.method)
        return False
    if not req.url.startswith("https://"):
        logger.debug('req.url does not start with "https://"')
        return False
    return True


# ============================================================================
# Response
# ============================================================================


@dataclass(frozen=True)
class Response:
    """Either ``status`` + ``body`` or ``error`` — never both."""

    status: Optional[int] = None
    body: Optional[bytes] = None
    error: Optional[str] = None

    def __post_init__(self) -> None:
        has_result = self.status is not None
        has_error = self.error is not None
        if has_result == has_error:
            raise ValueError("Response needs exactly one of status or error")
        if has_result and self.body is None:
            object.__setattr__(self, "body", b"")

    @classmethod
    def success(cls, status: int, body: bytes) -> Response:
        return cls(status=status, body=body)

    @classmethod
    def failure(cls, error: str) -> Response:
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_json(self) -> dict[str, Any]:
        if self.error is not None:
            return {"error": self.error}
        return {
            "status": self.status,
            "body": base64.b64encode(self.body or b"").decode("ascii"),
        }

    def encode(self) -> bytes:
        return json.dumps(self.to_json(), separators=(",", ":")).encode("utf-8")

    @classmethod
    def from_json(cls, obj: Any) -> Response:
        """Parse a decoded reply.  An empty ``error`` counts as no error.

        Raises ``ValueError`` for anything that is not one of the two
        reply shapes, including a body that is not strict base64.
        """
        if not isinstance(obj, dict):
            raise ValueError("response is not a JSON object")
        error = obj.get("error")
        if error is not None and not isinstance(error, str):
            raise ValueError("response error is not a string")
        if error:
            return cls.failure(error)
        status = obj.get("status")
        if isinstance(status, bool) or not isinstance(status, int):
            raise ValueError("response has neither error nor integer status")
        raw = obj.get("body")
        if raw is None:
            raw = ""
        if not isinstance(raw, str):
            raise ValueError("response body is not a string")
        try:
            body = base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"response body is not base64: {e}") from e
        return cls.success(status, body)


# ============================================================================
# Proxy Resolution
# ============================================================================


class ProxyKind(Enum):
    DIRECT = "direct"
    HTTP = "http"
    SOCKS5 = "socks5"
    SOCKS4A = "socks4a"


@dataclass(frozen=True)
class ProxyDescriptor:
    """Resolved routing for one request.

    ``remote_dns`` is ``True`` for every proxied kind: the target name is
    handed to the proxy and must never be looked up locally.
    """

    kind: ProxyKind
    host: Optional[str] = None
    port: Optional[int] = None
    remote_dns: bool = False

    @property
    def is_direct(self) -> bool:
        return self.kind is ProxyKind.DIRECT

    def as_url(self) -> Optional[str]:
        if self.is_direct:
            return None
        host = f"[{self.host}]" if self.host and ":" in self.host else self.host
        return f"{self.kind.value}://{host}:{self.port}"

    def __str__(self) -> str:
        return self.as_url() or "direct"


DIRECT = ProxyDescriptor(ProxyKind.DIRECT)

_PROXY_KINDS = {
    "http": ProxyKind.HTTP,
    "socks5": ProxyKind.SOCKS5,
    "socks4a": ProxyKind.SOCKS4A,
}


def resolve_proxy(spec: Optional[ProxySpec]) -> ProxyDescriptor:
    """Turn an optional :class:`ProxySpec` into a :class:`ProxyDescriptor`.

    Raises :class:`UnsupportedProxySpec` for unknown types, a missing or
    empty host, or a port outside ``1..65535``.
    """
    if spec is None:
        return DIRECT

    kind = _PROXY_KINDS.get(spec.type) if isinstance(spec.type, str) else None
    if kind is None:
        raise UnsupportedProxySpec(f"unknown proxy type {spec.type!r}")
    if not isinstance(spec.host, str) or not spec.host:
        raise UnsupportedProxySpec("proxy host missing")
    # bool is an int subclass; true/false are not ports.
    if isinstance(spec.port, bool) or not isinstance(spec.port, int):
        raise UnsupportedProxySpec("proxy port missing")
    if not 1 <= spec.port <= 65535:
        raise UnsupportedProxySpec(f"proxy port {spec.port} out of range")

    return ProxyDescriptor(kind, spec.host, spec.port, remote_dns=True)
