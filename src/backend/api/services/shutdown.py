"""Graceful shutdown: wait for live tool processes before exiting."""

from __future__ import annotations

import asyncio
import time

from collections.abc import Awaitable, Callable

from api.services.execution_engine import ProcessSlots
from utils.logger import logger


async def drain_active_processes(
    slots: ProcessSlots,
    timeout: float,
    poll_interval: float,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> bool:
    """Poll the slot counter until it reaches zero or ``timeout`` elapses.

    Returns:
        True if every process finished, False if the deadline was hit.
    """
    deadline = clock() + timeout
    while slots.active > 0:
        if clock() >= deadline:
            logger.warning(f"[server] Forced shutdown after {timeout:g}s with {slots.active} process(es) running")
            return False
        logger.info(f"[server] Waiting for {slots.active} in-flight request(s)...")
        await sleep(poll_interval)
    logger.info("[server] Shutdown complete.")
    return True
