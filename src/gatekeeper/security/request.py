"""
Normalized, read-only view of an inbound request.

The host HTTP layer builds a ``RequestView`` once per request and every
security component inspects that view instead of framework objects.
"""

import json
from dataclasses import dataclass, field
from http.cookies import CookieError, SimpleCookie
from types import MappingProxyType
from typing import Any, Mapping
from urllib.parse import parse_qs, unquote

from ..util.log import get_logger

logger = get_logger(__name__)

UNKNOWN_CLIENT = "unknown"


@dataclass(frozen=True)
class RequestView:
    """Immutable projection of one request.

    Header names are normalized to lower case so lookups are
    case-insensitive.
    """

    client_id: str
    method: str
    path: str
    query: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    body: Any = None
    content_length: int | None = None
    path_params: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        normalized = {str(k).lower(): str(v) for k, v in self.headers.items()}
        object.__setattr__(self, "headers", MappingProxyType(normalized))
        object.__setattr__(self, "path_params", MappingProxyType(dict(self.path_params)))
        object.__setattr__(self, "method", self.method.upper())

    @property
    def url(self) -> str:
        return f"{self.path}?{self.query}" if self.query else self.path

    @property
    def user_agent(self) -> str:
        return self.headers.get("user-agent", "")

    def header(self, name: str, default: str | None = None) -> str | None:
        return self.headers.get(name.lower(), default)

    @property
    def cookies(self) -> dict[str, str]:
        raw = self.headers.get("cookie")
        if not raw:
            return {}
        jar = SimpleCookie()
        try:
            jar.load(raw)
        except CookieError:
            logger.debug("Ignoring malformed Cookie header")
            return {}
        return {name: morsel.value for name, morsel in jar.items()}

    def serialized_body(self) -> str:
        if self.body is None:
            return ""
        if isinstance(self.body, (bytes, bytearray)):
            return self.body.decode("utf-8", errors="replace")
        if isinstance(self.body, str):
            return self.body
        try:
            return json.dumps(self.body, ensure_ascii=False, default=str)
        except (TypeError, ValueError):
            return str(self.body)

    def inspection_text(self) -> str:
        """URL, decoded URL, query and body joined for content detectors."""
        parts = [self.url, unquote(self.url)]
        if self.query:
            parts.append(unquote(self.query.replace("+", " ")))
        parts.append(self.serialized_body())
        return " ".join(part for part in parts if part)

    def traversal_text(self) -> str:
        """Raw and once-decoded URL plus path parameter values."""
        parts = [self.url, unquote(self.url)]
        parts.extend(str(value) for value in self.path_params.values())
        return " ".join(parts)


def parse_body(raw: bytes, content_type: str | None) -> Any:
    """Best-effort decode of a request body.

    JSON and form bodies become Python structures, anything else becomes
    text. Undecodable JSON falls back to text so detectors still see it.
    """
    if not raw:
        return None

    text = raw.decode("utf-8", errors="replace")
    media_type = (content_type or "").split(";", 1)[0].strip().lower()

    if media_type == "application/json" or media_type.endswith("+json"):
        try:
            return json.loads(text)
        except ValueError:
            logger.debug("Request body declared JSON but failed to parse")
            return text

    if media_type == "application/x-www-form-urlencoded":
        parsed = parse_qs(text, keep_blank_values=True)
        return {key: values[0] if len(values) == 1 else values for key, values in parsed.items()}

    return text


def resolve_client_id(
    remote_addr: str | None,
    headers: Mapping[str, str],
    trust_proxy: bool = False,
) -> str:
    """Resolve the client identifier for a request.

    With ``trust_proxy`` the left-most ``X-Forwarded-For`` address (or
    ``X-Real-IP``) is used; otherwise only the socket peer address counts.
    """
    if trust_proxy:
        lowered = {str(k).lower(): str(v) for k, v in headers.items()}
        forwarded = lowered.get("x-forwarded-for", "")
        first = forwarded.split(",", 1)[0].strip()
        if first:
            return first
        real_ip = lowered.get("x-real-ip", "").strip()
        if real_ip:
            return real_ip

    return remote_addr or UNKNOWN_CLIENT
