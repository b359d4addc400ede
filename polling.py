import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

Sleep = Callable[[float], Awaitable[Any]]


@dataclass
class PollOutcome:
    result: Optional[Any]
    ready: bool
    attempts: int


async def poll_until(
    fetch: Callable[[], Awaitable[Any]],
    is_ready: Callable[[Any], bool],
    max_attempts: int,
    interval: float,
    sleep: Sleep = asyncio.sleep,
    on_pending: Optional[Callable[[int, Any], None]] = None,
) -> PollOutcome:
    """Wait `interval` seconds, then fetch, up to `max_attempts` times.

    Stops at the first result accepted by `is_ready`. The last result is kept
    even when it never became ready. Cancelling the caller cancels the wait.
    """
    result = None
    for attempt in range(1, max_attempts + 1):
        await sleep(interval)
        result = await fetch()
        if is_ready(result):
            return PollOutcome(result=result, ready=True, attempts=attempt)
        if on_pending is not None:
            on_pending(attempt, result)
    return PollOutcome(result=result, ready=False, attempts=max_attempts)
