"""Shared test fixtures for the routethru test suite."""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx
import pytest

from routethru.cache import CacheService, DiskCache, MemoryCache
from routethru.codec import TargetReference
from routethru.config import Settings
from routethru.fetcher import Fetcher
from routethru.pipeline import ProxyPipeline
from routethru.rewriter import ContentRewriter
from routethru.state import AppState

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        cache={"disk_dir": str(tmp_path / "responses")},
        server={"static_dir": str(tmp_path / "static")},
    )


@pytest.fixture()
def target() -> TargetReference:
    return TargetReference.from_url("https://example.com/dir/page.html")


@pytest.fixture()
async def disk_cache(tmp_path: Path) -> DiskCache:
    cache = DiskCache(tmp_path / "responses")
    await cache.init()
    return cache


@pytest.fixture()
async def app_state(settings: Settings, disk_cache: DiskCache) -> AsyncIterator[AppState]:
    """Fully wired AppState. Upstream HTTP is expected to be mocked with respx."""
    (disk_cache.directory.parent / "static").mkdir(exist_ok=True)
    cache = CacheService(memory=MemoryCache(), disk=disk_cache)
    async with httpx.AsyncClient(follow_redirects=False) as client:
        fetcher = Fetcher(client, settings.fetcher)
        rewriter = ContentRewriter(settings.rewriter)
        yield AppState(
            settings=settings,
            cache=cache,
            fetcher=fetcher,
            rewriter=rewriter,
            pipeline=ProxyPipeline(fetcher, rewriter, cache),
            static_dir=disk_cache.directory.parent / "static",
            http_client=client,
        )
