import asyncio
import itertools
import logging
import math
import time
from typing import Awaitable, Callable, Iterable, List, Optional, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")


async def run_tasks_with_cleanup(
    tasks: Iterable[asyncio.Task],
    cleanup: Optional[Callable[[], Awaitable[None]]] = None,
) -> None:
    """Wait on the named loop tasks; on exit cancel the survivors and run ``cleanup``."""
    task_list: List[asyncio.Task] = list(tasks)
    try:
        if task_list:
            done, _ = await asyncio.wait(task_list, return_when=asyncio.FIRST_EXCEPTION)
            for task in done:
                if task.cancelled():
                    continue
                exc = task.exception()
                if exc is not None:
                    logger.error("Task %s failed: %s", task.get_name(), exc)
                    raise exc
    except asyncio.CancelledError:
        pass
    finally:
        for t in task_list:
            if not t.done():
                t.cancel()
        if task_list:
            await asyncio.gather(*task_list, return_exceptions=True)
        if cleanup is not None:
            await cleanup()


class SingleFlight:
    """In-flight guard for one resource with a TTL watchdog.

    A trigger that arrives while the resource is busy is dropped, not queued. If the
    holder exceeds ``ttl_s`` the flag is forcibly cleared; a late release from the stale
    holder is ignored because each acquisition carries its own token.
    """

    def __init__(self, name: str, ttl_s: float = 30.0, clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.ttl_s = ttl_s
        self._clock = clock
        self._tokens = itertools.count(1)
        self._token: Optional[int] = None
        self._started_at: Optional[float] = None
        self.skipped = 0
        self.watchdog_clears = 0

    @property
    def busy(self) -> bool:
        if self._token is None:
            return False
        elapsed = self._clock() - (self._started_at or 0.0)
        if elapsed > self.ttl_s:
            logger.warning(
                "%s in flight for %.1fs (limit %.1fs); watchdog clearing flag",
                self.name,
                elapsed,
                self.ttl_s,
            )
            self.watchdog_clears += 1
            self._token = None
            self._started_at = None
            return False
        return True

    def try_acquire(self) -> Optional[int]:
        if self.busy:
            self.skipped += 1
            return None
        self._token = next(self._tokens)
        self._started_at = self._clock()
        return self._token

    def release(self, token: Optional[int]) -> None:
        if token is not None and token == self._token:
            self._token = None
            self._started_at = None

    async def run(self, fn: Callable[[], Awaitable[T]]) -> Optional[T]:
        token = self.try_acquire()
        if token is None:
            logger.debug("%s already in flight; trigger ignored", self.name)
            return None
        try:
            return await asyncio.wait_for(fn(), timeout=self.ttl_s)
        finally:
            self.release(token)


def seconds_until_next_minute(now: Optional[float] = None, offset_s: float = 0.5) -> float:
    now = time.time() if now is None else now
    boundary = (math.floor(now / 60.0) + 1) * 60.0
    return boundary + offset_s - now


async def sleep_until_next_minute(offset_s: float = 0.5) -> None:
    await asyncio.sleep(seconds_until_next_minute(offset_s=offset_s))
