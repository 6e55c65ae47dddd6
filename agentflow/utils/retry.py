from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from ..contracts import BackoffPolicy
    from .cancellation import CancellationToken


def compute_backoff(
    retry_count: int,
    base: float = 1.0,
    max_delay: Optional[float] = None,
    kind: str = "exponential",
) -> float:
    """Compute the delay before retry number ``retry_count`` (zero based)."""
    delay = base * (2 ** retry_count) if kind == "exponential" else base
    if max_delay is not None:
        delay = min(delay, max_delay)
    return delay


def backoff_for(
    policy: "BackoffPolicy", retry_count: int, max_backoff: Optional[float] = None
) -> float:
    """Delay for ``policy``; the engine-wide ``max_backoff`` caps it as well."""
    caps = [cap for cap in (policy.max_delay, max_backoff) if cap is not None]
    return compute_backoff(
        retry_count,
        base=policy.base,
        max_delay=min(caps) if caps else None,
        kind=policy.type,
    )


async def schedule_retry(
    delay: float, token: Optional["CancellationToken"] = None
) -> bool:
    """Sleep for ``delay`` seconds before retrying.

    Returns ``False`` when ``token`` was cancelled during the wait.
    """
    if token is None:
        await asyncio.sleep(delay)
        return True
    return not await token.wait(timeout=delay)
