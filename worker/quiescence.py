"""
Quiescence detection: has an output stream gone silent?

Independent of any markup; the caller supplies a sampler returning the
current output length.
"""

import asyncio
from typing import Awaitable, Callable

from shared.errors import StabilityTimeout


async def await_quiescence(
    sample: Callable[[], Awaitable[int]],
    threshold: int = 3,
    interval: float = 1.0,
    ceiling: float = 90.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> int:
    """
    Wait until sample() returns the same non-zero length `threshold` times
    in a row after the first sighting.

    Elapsed time is counted in whole intervals, so a slow sampler does
    not eat into the ceiling.

    Returns the stable length. Raises StabilityTimeout past the ceiling.
    """
    stable_count = 0
    last_length = 0
    elapsed = 0.0

    while elapsed < ceiling:
        await sleep(interval)
        elapsed += interval

        length = await sample()
        if length > 0 and length == last_length:
            stable_count += 1
            if stable_count >= threshold:
                return length
        else:
            stable_count = 0
            last_length = length

    raise StabilityTimeout(f"Output still changing after {ceiling:.0f}s")
