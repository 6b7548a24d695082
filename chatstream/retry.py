"""Bounded polling helper."""

import asyncio
import inspect
from typing import Awaitable, Callable

Check = Callable[[], Awaitable[bool] | bool]


async def poll_until(
    check: Check,
    *,
    timeout: float,
    interval: float,
    backoff: float = 1.0,
    max_interval: float | None = None,
) -> bool:
    """Call ``check`` until it returns true or ``timeout`` elapses.

    Args:
        check: Sync or async predicate
        timeout: Overall budget in seconds
        interval: Delay before the second attempt
        backoff: Multiplier applied to the delay after each attempt
        max_interval: Upper bound for the delay

    Returns:
        True if the predicate succeeded within the budget, False on timeout
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + max(0.0, timeout)
    delay = max(0.0, interval)
    while True:
        result = check()
        if inspect.isawaitable(result):
            result = await result
        if result:
            return True
        remaining = deadline - loop.time()
        if remaining <= 0:
            return False
        await asyncio.sleep(min(delay, remaining))
        delay = delay * backoff
        if max_interval is not None:
            delay = min(delay, max_interval)
