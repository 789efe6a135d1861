"""Integration test fixtures.

Provides an ASGI client bound to a fully wired AppState (see tests/conftest.py).
Upstream HTTP is mocked per test with respx; requests to the app itself go
through httpx.ASGITransport and never touch the network.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx
import pytest

from routethru.server import create_app

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from routethru.state import AppState


@pytest.fixture()
async def client(app_state: AppState) -> AsyncIterator[httpx.AsyncClient]:
    transport = httpx.ASGITransport(app=create_app(state=app_state))
    async with httpx.AsyncClient(transport=transport, base_url="http://proxy.test") as client:
        yield client
