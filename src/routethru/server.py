"""HTTP server entrypoint.

Responsibilities (and nothing more):
- Configure structlog
- Create AppState inside the starlette lifespan
- Start the cache sweep scheduler
- Run uvicorn
"""

from __future__ import annotations

import asyncio
import logging
import sys
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import TYPE_CHECKING

import structlog
import uvicorn
from starlette.applications import Starlette

from routethru import __version__
from routethru.cache import CacheService, DiskCache, MemoryCache
from routethru.config import Settings
from routethru.fetcher import Fetcher, build_http_client
from routethru.pipeline import ProxyPipeline
from routethru.rewriter import ContentRewriter
from routethru.routes import routes
from routethru.schedulers import run_cache_sweep_scheduler
from routethru.state import AppState

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

log = structlog.get_logger()

BUNDLED_STATIC_DIR = Path(__file__).parent / "static"


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------


def _setup_logging(settings: Settings) -> None:
    """Configure structlog. Called once at startup before any log statements."""
    log_level = logging.getLevelNamesMapping()[settings.logging.level]

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.logging.format == "json":
        processors = [
            *shared_processors,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [*shared_processors, structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


async def build_state(settings: Settings) -> AppState:
    """Wire every shared component. The caller owns ``state.http_client``."""
    cache_settings = settings.cache

    memory = None
    if cache_settings.memory_enabled:
        memory = MemoryCache(
            capacity=cache_settings.memory_capacity,
            ttl_seconds=cache_settings.memory_ttl_seconds,
        )

    disk = None
    if cache_settings.disk_enabled:
        disk = DiskCache(
            Path(cache_settings.disk_dir).expanduser(),
            ttl_hours=cache_settings.disk_ttl_hours,
            max_bytes=cache_settings.disk_max_bytes,
            max_entry_bytes=cache_settings.disk_max_entry_bytes,
        )
        await disk.init()

    cache = CacheService(memory=memory, disk=disk)
    http_client = build_http_client(settings.fetcher)
    fetcher = Fetcher(http_client, settings.fetcher)
    rewriter = ContentRewriter(settings.rewriter)
    pipeline = ProxyPipeline(
        fetcher,
        rewriter,
        cache,
        strip_security_headers=settings.rewriter.strip_security_policies,
        read_timeout=settings.fetcher.timeout_seconds,
    )

    static_dir = (
        Path(settings.server.static_dir).expanduser()
        if settings.server.static_dir
        else BUNDLED_STATIC_DIR
    )

    return AppState(
        settings=settings,
        cache=cache,
        fetcher=fetcher,
        rewriter=rewriter,
        pipeline=pipeline,
        static_dir=static_dir,
        http_client=http_client,
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


def _lifespan_for(settings: Settings | None):
    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncGenerator[None, None]:
        """Create and tear down all shared resources for the server's lifetime."""
        resolved = settings or Settings()
        _setup_logging(resolved)
        log.info("server_starting", version=__version__)

        state = await build_state(resolved)
        app.state.routethru = state
        sweep_task = asyncio.create_task(run_cache_sweep_scheduler(state))

        log.info(
            "server_started",
            version=__version__,
            host=resolved.server.host,
            port=resolved.server.port,
            memory_cache=state.cache.memory is not None,
            disk_cache=str(state.cache.disk.directory) if state.cache.disk else None,
        )

        try:
            yield
        finally:
            sweep_task.cancel()
            with suppress(asyncio.CancelledError):
                await sweep_task
            if state.http_client is not None:
                await state.http_client.aclose()
            log.info("server_stopping")

    return lifespan


def create_app(settings: Settings | None = None, state: AppState | None = None) -> Starlette:
    """Build the ASGI app.

    With a prebuilt *state* (tests) the lifespan is skipped and the caller
    keeps ownership of every resource in it.
    """
    if state is not None:
        app = Starlette(routes=routes)
        app.state.routethru = state
        return app
    return Starlette(routes=routes, lifespan=_lifespan_for(settings))


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def main() -> None:
    settings = Settings()
    _setup_logging(settings)
    uvicorn.run(
        create_app(settings),
        host=settings.server.host,
        port=settings.server.port,
        log_config=None,  # Disable uvicorn's default logging; structlog handles it
    )


if __name__ == "__main__":
    main()
