"""Background scheduler coroutine for disk cache sweeps."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from routethru.state import AppState

log = structlog.get_logger()


async def run_cache_sweep_scheduler(state: AppState) -> None:
    """Sweep the disk tier at startup and then on the configured interval."""
    if state.cache.disk is None:
        return

    interval_seconds = state.settings.cache.sweep_interval_minutes * 60

    while True:
        try:
            await state.cache.sweep()
        except Exception:
            log.warning("cache_sweep_scheduler_error", exc_info=True)
        await asyncio.sleep(interval_seconds)
