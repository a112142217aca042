from __future__ import annotations

import asyncio


def compute_backoff(attempt: int, base_ms: float = 1000, multiplier: float = 2) -> int:
    """Delay in milliseconds before retry number ``attempt`` (0-based)."""
    return int(round(base_ms * multiplier ** attempt))


async def schedule_retry(delay_ms: float) -> None:
    """Sleep for the computed backoff delay before retrying."""
    await asyncio.sleep(delay_ms / 1000)
