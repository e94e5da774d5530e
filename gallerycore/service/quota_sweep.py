from __future__ import annotations

import asyncio
from typing import Optional

from gallerycore.logging import get_logger
from gallerycore.service.quota import QuotaManager

logger = get_logger(__name__)


def run_sweep_once(quota: QuotaManager) -> int:
    """Run one sweep; an unexpected failure is logged and reported as -1."""
    try:
        return quota.sweep_expired()
    except Exception as exc:
        logger.error("quota_sweep_failed", error_type=type(exc).__name__, error=str(exc))
        return -1


async def sweep_loop(
    quota: QuotaManager,
    interval_seconds: float,
    *,
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    """Sweep expired quota periods every ``interval_seconds`` until stopped.

    The sweep runs in a worker thread so store I/O does not block the loop.
    """
    stop = stop_event or asyncio.Event()
    logger.info("quota_sweep_loop_started", interval_seconds=interval_seconds)
    while not stop.is_set():
        await asyncio.to_thread(run_sweep_once, quota)
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue
    logger.info("quota_sweep_loop_stopped")
