"""Content rewriting.

Rewrites link-like references in HTML, CSS and JavaScript so they resolve
back through the proxy. Pattern based: markup is scanned tag by tag with
regular expressions instead of being parsed into a tree, so everything that
is not a rewritten reference comes out byte-for-byte as it went in.

Single rule for every content type: a reference that cannot be resolved is
left exactly as written.
"""

from __future__ import annotations

import codecs
import html
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from routethru.codec import HTTP_SCHEMES, SOCKET_SCHEMES, proxy_path, resolve_reference
from routethru.config import RewriterSettings
from routethru.models.upstream import media_type

if TYPE_CHECKING:
    from routethru.codec import TargetReference

log = structlog.get_logger()

HTML_TYPES: frozenset[str] = frozenset({"text/html", "application/xhtml+xml"})
CSS_TYPES: frozenset[str] = frozenset({"text/css"})
JS_TYPES: frozenset[str] = frozenset(
    {
        "application/javascript",
        "application/x-javascript",
        "application/ecmascript",
        "text/javascript",
        "text/ecmascript",
    }
)
REWRITABLE_TYPES: frozenset[str] = HTML_TYPES | CSS_TYPES | JS_TYPES

# Response headers never relayed to the client
_HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "upgrade",
        "content-encoding",
        "content-length",
        "transfer-encoding",
    }
)
_SECURITY_HEADERS = frozenset(
    {"content-security-policy", "content-security-policy-report-only", "x-frame-options"}
)

_URL_ATTRIBUTES = frozenset({"href", "src", "action", "poster", "formaction"})
_SRCSET_ATTRIBUTES = frozenset({"srcset", "imagesrcset"})

# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

# A quoted attribute value may contain ">", so quoted runs are consumed whole
_TAG = re.compile(r"<(?P<name>[a-zA-Z][a-zA-Z0-9:-]*)(?P<attrs>(?:[^>\"']|\"[^\"]*\"|'[^']*')*)>")
_ATTR = re.compile(
    r"(?P<lead>\s*)(?P<name>[^\s\"'>/=]+)"
    r"(?:(?P<eq>\s*=\s*)(?:\"(?P<dq>[^\"]*)\"|'(?P<sq>[^']*)'|(?P<bare>[^\s\"'>]+)))?"
)
_RAW_TEXT_BLOCK = re.compile(
    r"(?P<open><(?P<tag>script|style)\b(?:[^>\"']|\"[^\"]*\"|'[^']*')*>)"
    r"(?P<body>.*?)(?P<close></(?P=tag)\s*>)",
    re.IGNORECASE | re.DOTALL,
)
_BASE_HREF = re.compile(
    r"<base\b[^>]*?\bhref\s*=\s*(?:\"(?P<dq>[^\"]*)\"|'(?P<sq>[^']*)'|(?P<bare>[^\s\"'>]+))",
    re.IGNORECASE,
)
_META_CHARSET = re.compile(
    rb"<meta\b[^>]*?charset\s*=\s*[\"']?\s*(?P<charset>[a-zA-Z0-9_.:-]+)", re.IGNORECASE
)
_REFRESH = re.compile(
    r"^(?P<delay>\s*[\d.]*\s*[;,]?\s*(?:url\s*=\s*)?)(?P<quote>[\"']?)(?P<url>.*?)(?P=quote)\s*$",
    re.IGNORECASE | re.DOTALL,
)

_CSS_URL = re.compile(
    r"(?P<prefix>\burl\(\s*)"
    r"(?:(?P<quote>\"|'|&quot;|&#39;|&#x27;)(?P<quoted>[^\n]*?)(?P=quote)|(?P<bare>[^\"'()\s]*))"
    r"(?P<suffix>\s*\))",
    re.IGNORECASE,
)
_CSS_IMPORT = re.compile(
    r"(?P<prefix>@import\s+)(?P<quote>[\"'])(?P<url>[^\"'\n]*)(?P=quote)", re.IGNORECASE
)

_JS_STRING = r"(?P<quote>[\"'`])(?P<url>[^\"'`\n]*)(?P=quote)"
_JS_FETCH = re.compile(r"(?P<prefix>\bfetch\s*\(\s*)" + _JS_STRING)
_JS_WEBSOCKET = re.compile(r"(?P<prefix>\bnew\s+WebSocket\s*\(\s*)" + _JS_STRING)
_JS_XHR_OPEN = re.compile(
    r"(?P<prefix>\.open\s*\(\s*(?P<mq>[\"'])[A-Za-z]+(?P=mq)\s*,\s*)" + _JS_STRING
)


@dataclass(frozen=True)
class RewrittenDocument:
    body: bytes
    content_type: str
    rewritten: bool


# ---------------------------------------------------------------------------
# Text decoding
# ---------------------------------------------------------------------------


def _charset_param(content_type: str) -> str | None:
    for param in content_type.split(";")[1:]:
        key, _, value = param.partition("=")
        if key.strip().lower() == "charset" and value.strip():
            return value.strip().strip("\"'")
    return None


def decode_text(body: bytes, content_type: str) -> tuple[str, str]:
    """Decode a text body, returning ``(text, codec_name)``.

    Order: declared charset, ``<meta charset>`` for HTML, strict UTF-8, then
    ISO-8859-1 which accepts any byte sequence and re-encodes it unchanged.
    """
    candidates: list[str] = []
    declared = _charset_param(content_type)
    if declared:
        candidates.append(declared)
    elif media_type(content_type) in HTML_TYPES:
        sniffed = _META_CHARSET.search(body[:4096])
        if sniffed:
            candidates.append(sniffed.group("charset").decode("ascii"))
    candidates.append("utf-8")

    for name in candidates:
        try:
            codec = codecs.lookup(name).name
            return body.decode(codec), codec
        except (LookupError, UnicodeDecodeError):
            log.debug("charset_rejected", charset=name)
    return body.decode("iso-8859-1"), "iso-8859-1"


# ---------------------------------------------------------------------------
# Headers
# ---------------------------------------------------------------------------


def filter_response_headers(
    headers: list[tuple[str, str]],
    target: TargetReference,
    *,
    strip_security: bool = True,
) -> list[tuple[str, str]]:
    """Drop headers that must not reach the client; reroute ``Refresh`` and ``Content-Location``."""
    filtered: list[tuple[str, str]] = []
    for name, value in headers:
        lowered = name.lower()
        if lowered in _HOP_BY_HOP:
            continue
        if strip_security and lowered in _SECURITY_HEADERS:
            continue
        if lowered == "refresh":
            value = _rewrite_refresh(value, target.url) or value
        elif lowered == "content-location":
            value = _proxy_reference(value, target.url) or value
        filtered.append((name, value))
    return filtered


# ---------------------------------------------------------------------------
# Reference helpers
# ---------------------------------------------------------------------------


def _proxy_reference(
    reference: str, base: str, schemes: frozenset[str] = HTTP_SCHEMES
) -> str | None:
    resolved = resolve_reference(reference, base, schemes)
    return proxy_path(resolved) if resolved is not None else None


def _rewrite_refresh(content: str, base: str) -> str | None:
    match = _REFRESH.match(content)
    if match is None or not match.group("url").strip():
        return None
    proxied = _proxy_reference(match.group("url"), base)
    if proxied is None:
        return None
    quote = match.group("quote")
    return f"{match.group('delay')}{quote}{proxied}{quote}"


def _rewrite_srcset(value: str, base: str) -> str | None:
    # Commas inside data: URIs make the candidate list ambiguous
    if "data:" in value.lower():
        return None
    candidates = []
    for candidate in value.split(","):
        tokens = candidate.split()
        if not tokens:
            continue
        proxied = _proxy_reference(tokens[0], base)
        candidates.append(" ".join([proxied or tokens[0], *tokens[1:]]))
    return ", ".join(candidates)


def _attr_value(match: re.Match[str]) -> str | None:
    for group in ("dq", "sq", "bare"):
        value = match.group(group)
        if value is not None:
            return value
    return None


def _format_attr(match: re.Match[str], value: str) -> str:
    head = f"{match.group('lead')}{match.group('name')}{match.group('eq')}"
    if match.group("sq") is not None:
        return f"{head}'{value}'"
    if match.group("bare") is not None and not re.search(r"[\s\"'=<>`]", value):
        return f"{head}{value}"
    return f'{head}"{value}"'


def _document_base(text: str, url: str) -> str:
    """Honour ``<base href>`` the way a browser would."""
    match = _BASE_HREF.search(text)
    if match is None:
        return url
    declared = html.unescape(match.group("dq") or match.group("sq") or match.group("bare") or "")
    return resolve_reference(declared, url) or url


# ---------------------------------------------------------------------------
# Rewriter
# ---------------------------------------------------------------------------


class ContentRewriter:
    """Rewrites references in HTML/CSS/JS bodies to proxy-relative paths."""

    def __init__(self, settings: RewriterSettings | None = None) -> None:
        self._settings = settings or RewriterSettings()

    @staticmethod
    def is_rewritable(content_type: str) -> bool:
        return media_type(content_type) in REWRITABLE_TYPES

    def rewrite(self, body: bytes, content_type: str, target: TargetReference) -> RewrittenDocument:
        """Rewrite *body* according to its declared content type.

        Non-text content types are returned unchanged.
        """
        kind = media_type(content_type)
        if kind not in REWRITABLE_TYPES or (kind in JS_TYPES and not self._settings.rewrite_scripts):
            return RewrittenDocument(body=body, content_type=content_type, rewritten=False)

        text, codec = decode_text(body, content_type)
        if kind in HTML_TYPES:
            text = self.rewrite_html(text, target.url)
        elif kind in CSS_TYPES:
            text = self.rewrite_css(text, target.url)
        else:
            text = self.rewrite_js(text, target.url)

        log.debug("content_rewritten", url=target.url, content_type=kind, charset=codec)
        return RewrittenDocument(
            body=text.encode(codec, errors="xmlcharrefreplace"),
            content_type=content_type,
            rewritten=True,
        )

    # -- HTML ---------------------------------------------------------------

    def rewrite_html(self, text: str, url: str) -> str:
        base = _document_base(text, url)
        parts: list[str] = []
        pos = 0
        for block in _RAW_TEXT_BLOCK.finditer(text):
            parts.append(self._rewrite_markup(text[pos : block.start()], base))
            parts.append(self._rewrite_markup(block.group("open"), base))
            body = block.group("body")
            if block.group("tag").lower() == "style":
                body = self.rewrite_css(body, base)
            elif self._settings.rewrite_scripts:
                body = self.rewrite_js(body, base)
            parts.append(body)
            parts.append(block.group("close"))
            pos = block.end()
        parts.append(self._rewrite_markup(text[pos:], base))
        return "".join(parts)

    def _rewrite_markup(self, markup: str, base: str) -> str:
        return _TAG.sub(lambda match: self._rewrite_tag(match, base), markup)

    def _rewrite_tag(self, tag: re.Match[str], base: str) -> str:
        name = tag.group("name").lower()
        attrs_text = tag.group("attrs")
        attrs = list(_ATTR.finditer(attrs_text))
        if not attrs:
            return tag.group(0)

        values = {m.group("name").lower(): _attr_value(m) for m in attrs}
        equiv = (values.get("http-equiv") or "").strip().lower()
        if name == "meta" and self._settings.strip_security_policies and equiv in _SECURITY_HEADERS:
            return ""

        replacements: dict[int, str] = {}
        reference_rewritten = False
        for index, match in enumerate(attrs):
            attr = match.group("name").lower()
            value = _attr_value(match)
            if value is None:
                continue

            if attr in _URL_ATTRIBUTES:
                new_value = _proxy_reference(html.unescape(value), base)
            elif attr in _SRCSET_ATTRIBUTES:
                new_value = _rewrite_srcset(html.unescape(value), base)
            elif attr == "style":
                new_value = self.rewrite_css(value, base, in_attribute=True)
            elif attr == "content" and name == "meta" and equiv == "refresh":
                new_value = _rewrite_refresh(html.unescape(value), base)
            else:
                continue

            if new_value is None or new_value == value:
                continue
            replacements[index] = _format_attr(match, new_value)
            reference_rewritten = reference_rewritten or attr != "style"

        if not replacements:
            return tag.group(0)

        if reference_rewritten and self._settings.strip_security_policies:
            # Subresource integrity hashes cannot match a rewritten body
            for index, match in enumerate(attrs):
                if match.group("name").lower() == "integrity":
                    replacements[index] = ""

        rebuilt: list[str] = []
        pos = 0
        for index, match in enumerate(attrs):
            if index in replacements:
                rebuilt.append(attrs_text[pos : match.start()])
                rebuilt.append(replacements[index])
                pos = match.end()
        rebuilt.append(attrs_text[pos:])
        return f"<{tag.group('name')}{''.join(rebuilt)}>"

    # -- CSS ----------------------------------------------------------------

    def rewrite_css(self, text: str, base: str, *, in_attribute: bool = False) -> str:
        def replace_url(match: re.Match[str]) -> str:
            raw = match.group("quoted")
            if raw is None:
                raw = match.group("bare")
            reference = html.unescape(raw) if in_attribute else raw
            proxied = _proxy_reference(reference, base)
            if proxied is None:
                return match.group(0)
            quote = match.group("quote") or ""
            return f"{match.group('prefix')}{quote}{proxied}{quote}{match.group('suffix')}"

        def replace_import(match: re.Match[str]) -> str:
            proxied = _proxy_reference(match.group("url"), base)
            if proxied is None:
                return match.group(0)
            quote = match.group("quote")
            return f"{match.group('prefix')}{quote}{proxied}{quote}"

        text = _CSS_URL.sub(replace_url, text)
        return _CSS_IMPORT.sub(replace_import, text)

    # -- JavaScript -----------------------------------------------------------

    def rewrite_js(self, text: str, base: str) -> str:
        """Rewrite literal URLs passed to well-known network calls.

        URLs assembled at runtime are out of reach and stay as they are.
        """

        def replacer(schemes: frozenset[str]):
            def replace(match: re.Match[str]) -> str:
                url = match.group("url")
                if "${" in url:
                    return match.group(0)
                proxied = _proxy_reference(url, base, schemes)
                if proxied is None:
                    return match.group(0)
                quote = match.group("quote")
                return f"{match.group('prefix')}{quote}{proxied}{quote}"

            return replace

        text = _JS_FETCH.sub(replacer(HTTP_SCHEMES), text)
        text = _JS_XHR_OPEN.sub(replacer(HTTP_SCHEMES), text)
        return _JS_WEBSOCKET.sub(replacer(HTTP_SCHEMES | SOCKET_SCHEMES), text)
