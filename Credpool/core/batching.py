from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterator, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[Any]]


def iter_chunks(items: Sequence[T], size: int) -> Iterator[list[T]]:
    """Consecutive, order-preserving chunks of at most `size` items."""

    step = max(1, int(size))
    for start in range(0, len(items), step):
        yield list(items[start : start + step])


async def run_in_chunks(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[Any]],
    *,
    chunk_size: int,
    delay_s: float = 0.0,
    sleep: Optional[SleepFn] = None,
    label: str = "batch",
) -> list[Any]:
    """Run `worker` over `items` one chunk at a time.

    Chunk members run concurrently and every member settles (an exception in one
    never cancels its chunk-mates). Chunk k+1 starts only after all of chunk k has
    settled, with `delay_s` between chunks but not after the last one. Returns the
    settled results (values or exceptions) in input order.
    """

    sleep_fn = sleep or asyncio.sleep
    chunks = list(iter_chunks(items, chunk_size))
    settled: list[Any] = []
    for number, chunk in enumerate(chunks, start=1):
        logger.debug("%s chunk start chunk=%s/%s size=%s", label, number, len(chunks), len(chunk))
        results = await asyncio.gather(*(worker(item) for item in chunk), return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.warning("%s member raised detail=%s", label, f"{result.__class__.__name__}: {result}")
        settled.extend(results)
        if number < len(chunks) and delay_s > 0:
            await sleep_fn(delay_s)
    return settled
