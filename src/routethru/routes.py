"""HTTP surface.

Three routes: the landing page, ``robots.txt`` and a catch-all that proxies
``/<encoded-target-URL>``. Handlers translate ``RouteThruError`` into
plain-text error responses; everything else is the pipeline's job.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING
from urllib.parse import quote

import structlog
from starlette.responses import FileResponse, PlainTextResponse
from starlette.routing import Route

from routethru.codec import decode
from routethru.errors import RouteThruError, redact_credentials

if TYPE_CHECKING:
    from starlette.requests import Request
    from starlette.responses import Response

    from routethru.state import AppState

log = structlog.get_logger()

ROBOTS_TXT = "User-agent: *\nDisallow:"
HOME_PAGE = "home.html"

# A single file name inside the static directory, nothing that can climb out
_STATIC_NAME = re.compile(r"^[A-Za-z0-9_-][A-Za-z0-9._-]*$")


def _state(request: Request) -> AppState:
    return request.app.state.routethru


def _raw_target(request: Request) -> str:
    """Return the still percent-encoded path after the leading slash.

    Decoding happens exactly once, in the codec, so the raw path is taken from
    the ASGI scope rather than starlette's already-unquoted ``path``.
    """
    raw_path: bytes | None = request.scope.get("raw_path")
    if raw_path:
        raw = raw_path.split(b"?", 1)[0].decode("latin-1")
    else:
        raw = quote(request.scope["path"], safe="/")
    return raw[1:] if raw.startswith("/") else raw


def _raw_query(request: Request) -> str:
    return request.scope.get("query_string", b"").decode("latin-1")


async def home(request: Request) -> Response:
    page = _state(request).static_dir / HOME_PAGE
    if page.is_file():
        return FileResponse(page, media_type="text/html")
    return PlainTextResponse("routethru: request /<url> to browse through the proxy\n")


async def robots(request: Request) -> Response:
    return PlainTextResponse(ROBOTS_TXT)


async def proxy(request: Request) -> Response:
    state = _state(request)
    raw = _raw_target(request)

    # Static shell files win over targets with the same name
    if _STATIC_NAME.match(raw):
        static_file = state.static_dir / raw
        if static_file.is_file():
            return FileResponse(static_file)

    try:
        target = decode(raw, _raw_query(request))
        return await state.pipeline.handle(target, request.headers)
    except RouteThruError as exc:
        log.warning(
            "proxy_error",
            path=redact_credentials(raw),
            code=exc.code,
            status_code=exc.status_code,
            message=redact_credentials(exc.message),
        )
        return PlainTextResponse(exc.to_text(), status_code=exc.status_code)
    except Exception as exc:
        log.error("proxy_unexpected_error", path=redact_credentials(raw), exc_info=True)
        message = redact_credentials(str(exc) or type(exc).__name__)
        return PlainTextResponse(f"Internal proxy error: {message}\n", status_code=500)


routes = [
    Route("/", home, methods=["GET"]),
    Route("/robots.txt", robots, methods=["GET"]),
    Route("/{target:path}", proxy, methods=["GET"]),
]
