"""Application state container.

AppState is created once at server startup (inside the starlette lifespan)
and stored on ``app.state.routethru``; route handlers read it from there.
Nothing in it is module-global.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path

    import httpx

    from routethru.cache import CacheService
    from routethru.config import Settings
    from routethru.pipeline import ProxyPipeline
    from routethru.protocols import FetcherProtocol
    from routethru.rewriter import ContentRewriter


@dataclass
class AppState:
    """Holds all shared runtime state. Passed to every route handler."""

    settings: Settings
    cache: CacheService
    fetcher: FetcherProtocol
    rewriter: ContentRewriter
    pipeline: ProxyPipeline
    static_dir: Path
    http_client: httpx.AsyncClient | None = None
