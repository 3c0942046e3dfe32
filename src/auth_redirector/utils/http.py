"""Shared HTTP utilities: request canonicalization and URL helpers."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from urllib.parse import urlparse

from starlette.requests import Request

from auth_redirector.errors import ClientInputError

_PUBLIC_BASE_URL_ALLOWED_SCHEMES = frozenset({"http", "https"})
_CANONICAL_SCHEMES = frozenset({"http", "https"})

# RFC 7230 token characters.
_TCHARS = frozenset("!#$%&'*+-.^_`|~0123456789abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ")
_OWS = " \t"

# RFC 6265 cookie-octet.
_COOKIE_OCTETS = frozenset(
    chr(c) for c in range(0x21, 0x7F) if chr(c) not in "\",;\\"
)


class ForwardedHeaderError(ValueError):
    """Raised when a Forwarded header does not follow the RFC 7239 grammar."""


@dataclass(frozen=True)
class CanonicalRequest:
    """The request as the external client addressed it."""

    scheme: str
    host: str
    path: str
    query: str = ""

    @property
    def origin(self) -> str:
        return f"{self.scheme}://{self.host}"

    @property
    def callback_url(self) -> str:
        """URL registered with the provider as ``redirect_uri`` (no query)."""
        return f"{self.origin}{self.path}"

    @property
    def url(self) -> str:
        if self.query:
            return f"{self.callback_url}?{self.query}"
        return self.callback_url


def _skip_ows(value: str, index: int) -> int:
    while index < len(value) and value[index] in _OWS:
        index += 1
    return index


def _read_token(value: str, index: int) -> tuple[str, int]:
    start = index
    while index < len(value) and value[index] in _TCHARS:
        index += 1
    return value[start:index], index


def _read_quoted_string(value: str, index: int) -> tuple[str, int]:
    """Read a quoted-string starting at the opening quote."""
    chars: list[str] = []
    index += 1
    while index < len(value):
        ch = value[index]
        if ch == "\\":
            if index + 1 >= len(value):
                break
            chars.append(value[index + 1])
            index += 2
            continue
        if ch == '"':
            return "".join(chars), index + 1
        if (ord(ch) < 0x20 and ch != "\t") or ord(ch) == 0x7F:
            raise ForwardedHeaderError(f"control character in quoted string at position {index}")
        chars.append(ch)
        index += 1
    raise ForwardedHeaderError("unterminated quoted string")


def parse_forwarded_header(value: str) -> list[dict[str, str]]:
    """Parse a ``Forwarded`` header into a list of directive mappings.

    Elements are separated by ``,`` and pairs within an element by ``;``.
    Parameter names are lower-cased; values may be tokens or quoted strings.
    Empty list members are ignored, as the HTTP list rule allows.

    Raises ``ForwardedHeaderError`` on malformed input.
    """
    elements: list[dict[str, str]] = []
    current: dict[str, str] = {}
    index = 0
    length = len(value)

    while index < length:
        index = _skip_ows(value, index)
        if index >= length:
            break
        ch = value[index]
        if ch == ",":
            elements.append(current)
            current = {}
            index += 1
            continue
        if ch == ";":
            index += 1
            continue

        key, index = _read_token(value, index)
        if not key:
            raise ForwardedHeaderError(f"expected parameter name at position {index}")
        if index >= length or value[index] != "=":
            raise ForwardedHeaderError(f"missing '=' after parameter {key!r}")
        index += 1

        if index < length and value[index] == '"':
            param_value, index = _read_quoted_string(value, index)
        else:
            param_value, index = _read_token(value, index)
            if not param_value:
                raise ForwardedHeaderError(f"missing value for parameter {key!r}")

        key = key.lower()
        if key in current:
            raise ForwardedHeaderError(f"duplicate parameter {key!r} in one element")
        current[key] = param_value

        index = _skip_ows(value, index)
        if index < length and value[index] not in ",;":
            raise ForwardedHeaderError(
                f"unexpected character {value[index]!r} at position {index}"
            )

    elements.append(current)
    return [element for element in elements if element]


def canonicalize_request(request: Request) -> CanonicalRequest:
    """Rebuild the externally visible request from Host and Forwarded headers.

    The first Forwarded directive's ``proto`` and ``host`` override the
    listener scheme and the Host header. Path and query are kept verbatim.
    """
    scheme = request.url.scheme
    host = request.headers.get("host") or request.url.netloc

    forwarded_values = request.headers.getlist("forwarded")
    if forwarded_values:
        raw = ", ".join(forwarded_values)
        try:
            directives = parse_forwarded_header(raw)
        except ForwardedHeaderError as exc:
            raise ClientInputError(
                f"Malformed Forwarded header: {exc}",
                detail=f"header={raw!r}",
            ) from exc
        if directives:
            first = directives[0]
            scheme = first.get("proto", scheme)
            host = first.get("host", host)

    scheme = scheme.lower()
    if scheme not in _CANONICAL_SCHEMES:
        raise ClientInputError(f"Unsupported forwarded protocol: {scheme}")
    if not host:
        raise ClientInputError("Request host could not be determined")

    return CanonicalRequest(
        scheme=scheme,
        host=host,
        path=request.url.path,
        query=request.url.query,
    )


def normalize_public_base_url(value: str) -> str:
    """Normalize and validate an externally visible base URL."""
    candidate = value.strip()
    if not candidate:
        raise ValueError("public base URL must not be empty")

    parsed = urlparse(candidate)
    if parsed.scheme.lower() not in _PUBLIC_BASE_URL_ALLOWED_SCHEMES:
        raise ValueError("public base URL must use http or https")
    if not parsed.netloc:
        raise ValueError("public base URL must include host")
    if parsed.query or parsed.fragment:
        raise ValueError("public base URL must not include query or fragment")
    if parsed.username or parsed.password:
        raise ValueError("public base URL must not include userinfo")

    normalized_path = parsed.path.rstrip("/")
    if normalized_path == "/":
        normalized_path = ""
    return f"{parsed.scheme.lower()}://{parsed.netloc}{normalized_path}"


def is_safe_redirect_target(value: str) -> bool:
    """Accept absolute http(s) URLs and site-relative paths only."""
    if not value or any(ord(c) < 0x20 or ord(c) == 0x7F for c in value):
        return False
    if value.startswith("/"):
        # "//host" and "/\host" are protocol-relative in browsers.
        return not value.startswith("//") and not value.startswith("/\\")
    try:
        parsed = urlparse(value)
    except ValueError:
        return False
    return parsed.scheme.lower() in _PUBLIC_BASE_URL_ALLOWED_SCHEMES and bool(parsed.netloc)


def parse_trusted_peers(
    values: tuple[str, ...] | list[str],
) -> tuple[ipaddress.IPv4Network | ipaddress.IPv6Network, ...]:
    """Parse addresses or CIDR ranges into networks."""
    return tuple(ipaddress.ip_network(value.strip(), strict=False) for value in values)


def is_trusted_peer(
    host: str | None,
    networks: tuple[ipaddress.IPv4Network | ipaddress.IPv6Network, ...],
) -> bool:
    """Return True if ``host`` is an IP address inside one of ``networks``."""
    if not host:
        return False
    candidate = host.strip()
    if candidate.startswith("[") and candidate.endswith("]"):
        candidate = candidate[1:-1]
    try:
        address = ipaddress.ip_address(candidate)
    except ValueError:
        return False
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    return any(address in network for network in networks)


def sanitize_log_text(value: object, limit: int | None = None) -> str:
    """Keep printable ASCII only so untrusted text is safe to log or echo."""
    text = str(value)
    if limit is not None:
        text = text[:limit]
    return "".join(c for c in text if 0x20 <= ord(c) < 0x7F)


def is_cookie_value(value: str) -> bool:
    """Return True if ``value`` is non-empty and made of RFC 6265 cookie-octets."""
    return bool(value) and all(c in _COOKIE_OCTETS for c in value)


def format_set_cookie(
    name: str, value: str, *, domain: str | None = None, path: str = "/"
) -> str:
    """Build an ``HttpOnly`` Set-Cookie header value without quoting ``value``."""
    parts = [f"{name}={value}"]
    if domain:
        parts.append(f"Domain={domain}")
    parts.append("HttpOnly")
    parts.append(f"Path={path}")
    return "; ".join(parts)


def is_cookie_name(value: str) -> bool:
    return bool(value) and all(c in _TCHARS for c in value)
