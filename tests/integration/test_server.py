"""Tests for application wiring and the server lifespan."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

import routethru.server as server
from routethru.config import Settings
from routethru.fetcher import Fetcher
from routethru.server import BUNDLED_STATIC_DIR, build_state, create_app

if TYPE_CHECKING:
    from pathlib import Path


def test_bundled_landing_page_exists() -> None:
    page = BUNDLED_STATIC_DIR / "home.html"
    assert page.is_file()
    assert "encodeURIComponent" in page.read_text(encoding="utf-8")


async def test_build_state_wires_components(tmp_path: Path) -> None:
    settings = Settings(cache={"disk_dir": str(tmp_path / "disk")})
    state = await build_state(settings)
    try:
        assert isinstance(state.fetcher, Fetcher)
        assert state.cache.memory is not None
        assert state.cache.disk is not None
        assert state.cache.disk.directory == tmp_path / "disk"
        assert (tmp_path / "disk").is_dir()
        assert state.static_dir == BUNDLED_STATIC_DIR
    finally:
        assert state.http_client is not None
        await state.http_client.aclose()


async def test_build_state_respects_disabled_tiers(tmp_path: Path) -> None:
    settings = Settings(
        cache={"memory_enabled": False, "disk_enabled": False},
        server={"static_dir": str(tmp_path)},
    )
    state = await build_state(settings)
    try:
        assert state.cache.memory is None
        assert state.cache.disk is None
        assert state.static_dir == tmp_path
    finally:
        assert state.http_client is not None
        await state.http_client.aclose()


async def test_lifespan_builds_and_releases_state(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    # Keep the test session's structlog configuration untouched
    monkeypatch.setattr(server, "_setup_logging", lambda settings: None)
    app = create_app(Settings(cache={"disk_dir": str(tmp_path / "disk")}))

    async with app.router.lifespan_context(app):
        state = app.state.routethru
        assert state.http_client is not None
        assert not state.http_client.is_closed

    assert state.http_client.is_closed
