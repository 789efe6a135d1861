"""Target URL codec.

Maps absolute target URLs into the proxy's own path space and back. A target
is carried as a single percent-encoded path segment: ``/https%3A%2F%2Fexample.com%2Fpage``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import quote, unquote, urljoin, urlsplit

from routethru.errors import DecodeError, ErrorCode

HTTP_SCHEMES: frozenset[str] = frozenset({"http", "https"})
SOCKET_SCHEMES: frozenset[str] = frozenset({"ws", "wss"})

_SCHEME_PREFIX = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")
_REFERENCE_SCHEME = re.compile(r"^([a-zA-Z][a-zA-Z0-9+.-]*):")
_INVALID_HOST_CHARS = re.compile(r"[\s<>\"{}|\\^`\x00-\x1f\x7f]")


@dataclass(frozen=True)
class TargetReference:
    """Parsed absolute URL of the page being proxied."""

    url: str
    scheme: str
    host: str
    path: str
    query: str

    @classmethod
    def from_url(cls, url: str) -> TargetReference:
        """Parse an absolute URL. Raises ``DecodeError`` when it is not one."""
        try:
            parts = urlsplit(url)
            # .port validates the port number lazily
            parts.port  # noqa: B018
        except ValueError as exc:
            raise DecodeError(
                ErrorCode.DECODE_MALFORMED, f"Malformed target URL {url!r}: {exc}"
            ) from exc

        host = parts.hostname or ""
        if not parts.scheme or not host or _INVALID_HOST_CHARS.search(parts.netloc):
            raise DecodeError(
                ErrorCode.DECODE_MALFORMED, f"Malformed target URL {url!r}: missing or invalid host"
            )
        return cls(
            url=url,
            scheme=parts.scheme.lower(),
            host=host,
            path=parts.path or "/",
            query=parts.query,
        )

    @property
    def is_fetchable(self) -> bool:
        return self.scheme in HTTP_SCHEMES

    def __str__(self) -> str:
        return self.url


def sorted_query(query: str) -> str:
    """Order raw ``key=value`` fields by key, leaving their bytes untouched.

    The sort is stable, so repeated keys keep their relative order.
    """
    fields = [field for field in query.split("&") if field]
    fields.sort(key=lambda field: field.split("=", 1)[0])
    return "&".join(fields)


def decode(path_segment: str, query: str = "") -> TargetReference:
    """Decode the path segment after the proxy mount prefix into a target.

    *query* is the inbound request's raw query string. Its fields are appended
    sorted by key so that the same request always maps to the same target (and
    therefore the same cache key).
    """
    url = unquote(path_segment).strip()
    if not url:
        raise DecodeError(ErrorCode.DECODE_EMPTY, "No target URL given in the request path")

    appended = sorted_query(query)
    if appended:
        separator = "&" if "?" in url else "?"
        url = f"{url}{separator}{appended}"

    if url.startswith("//"):
        url = "https:" + url
    elif not _SCHEME_PREFIX.match(url):
        url = "https://" + url

    return TargetReference.from_url(url)


def encode(target: TargetReference | str) -> str:
    """Encode a target into a single path segment. Inverse of :func:`decode`."""
    return quote(str(target), safe="")


def proxy_path(target: TargetReference | str) -> str:
    """Return the proxy-relative path that fetches *target*."""
    return "/" + encode(target)


def resolve_reference(
    reference: str,
    base: str,
    schemes: frozenset[str] = HTTP_SCHEMES,
) -> str | None:
    """Resolve a link found in content against *base*.

    Returns ``None`` when the reference must be left as written: empty values,
    fragments, ``data:``/``mailto:``/``javascript:`` and any other scheme
    outside *schemes*, and anything that does not parse as a URL.
    """
    ref = reference.strip()
    if not ref or ref.startswith("#"):
        return None

    match = _REFERENCE_SCHEME.match(ref)
    if match and match.group(1).lower() not in schemes:
        return None

    try:
        absolute = urljoin(base, ref)
        parts = urlsplit(absolute)
        parts.port  # noqa: B018
    except ValueError:
        return None

    if parts.scheme.lower() not in schemes or not parts.hostname:
        return None
    if _INVALID_HOST_CHARS.search(parts.netloc):
        return None
    return absolute
