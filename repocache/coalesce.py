import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict

logger = logging.getLogger(__name__)


class RequestCoalescer:
    """
    Share one in-flight upstream call between concurrent callers of the same key.

    Every waiter sees the same result or the same exception. The entry is
    dropped as soon as the call settles, so the next caller starts fresh.
    """

    def __init__(self):
        self._in_flight: Dict[str, asyncio.Future] = {}

    def in_flight(self, key: str) -> bool:
        return key in self._in_flight

    def __len__(self) -> int:
        return len(self._in_flight)

    async def run(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        future = self._in_flight.get(key)
        if future is not None and not future.done():
            logger.debug(f"🔗 Coalescing request for {key}")
            # shield: one waiter being cancelled must not cancel the others
            return await asyncio.shield(future)

        future = asyncio.ensure_future(factory())
        self._in_flight[key] = future
        future.add_done_callback(lambda done: self._forget(key, done))
        return await asyncio.shield(future)

    def _forget(self, key: str, future: asyncio.Future) -> None:
        if self._in_flight.get(key) is future:
            del self._in_flight[key]
