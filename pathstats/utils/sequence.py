"""
Sequential Batch Runner

Runs an ordered list of async units of work strictly one after another.
The daily aggregation touches tens of thousands of chains per client, and
fanning them out with ``asyncio.gather`` holds every pending query and its
result set in memory at once. Awaiting one unit at a time keeps the working
set to a single unit.
"""

from typing import Awaitable, Callable, Iterable, Iterator, List, Sequence, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Unit = Callable[[], Awaitable[T]]


async def run_sequential(units: Iterable[Unit]) -> List[T]:
    """
    Await each unit in order and collect the results.

    A unit only starts after the previous one resolved. The first exception
    stops the run and propagates; results gathered so far are discarded.

    Args:
        units: Zero-argument callables returning awaitables

    Returns:
        Results in the order the units were given
    """
    results: List[T] = []
    for position, unit in enumerate(units):
        try:
            results.append(await unit())
        except Exception as e:
            logger.debug("Sequential run aborted", position=position, error=str(e))
            raise
    return results


def batched(items: Sequence[T], size: int = 1000) -> Iterator[Sequence[T]]:
    """Split ``items`` into consecutive chunks of at most ``size``"""
    if size <= 0:
        raise ValueError("size must be positive")
    for start in range(0, len(items), size):
        yield items[start:start + size]
