import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from ingest.coinbase_rest import CoinbaseAPIError


logger = logging.getLogger(__name__)

T = TypeVar("T")


def _retry_after_seconds(error: BaseException) -> Optional[float]:
    if isinstance(error, CoinbaseAPIError) and error.is_rate_limited:
        return error.retry_after if error.retry_after is not None else 1.0
    status = getattr(error, "status", None)
    if status == 429:
        headers = getattr(error, "headers", None) or {}
        try:
            return float(headers.get("Retry-After", 1))
        except (TypeError, ValueError):
            return 1.0
    return None


class RateLimitedCaller:
    """Spaces outbound calls and retries transient failures.

    The minimum gap since the previous request is ``min_interval_s * priority``, so
    priority 1 (most urgent) waits least. Concurrent callers queue for the next slot.
    A 429 sleeps for the server's Retry-After and tries again; any other failure is
    retried with capped exponential backoff only when the call is marked critical.
    """

    def __init__(
        self,
        rate_cfg: Optional[Dict[str, Any]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        rate_cfg = rate_cfg or {}
        self.min_interval_s = float(rate_cfg.get("min_interval_s", 2.0))
        self.max_attempts = int(rate_cfg.get("max_attempts", 3))
        self.base_retry_delay_s = float(rate_cfg.get("base_retry_delay_s", 1.0))
        self.max_retry_delay_s = float(rate_cfg.get("max_retry_delay_s", 30.0))
        self.max_consecutive_errors = int(rate_cfg.get("max_consecutive_errors", 5))
        self._clock = clock
        self._sleep = sleep
        self.last_request_time: Optional[float] = None
        self.consecutive_errors = 0
        self.total_calls = 0
        self.rate_limited_count = 0
        self._slot_lock = asyncio.Lock()

    @property
    def exceeded_error_budget(self) -> bool:
        return self.consecutive_errors >= self.max_consecutive_errors

    def spacing_for(self, priority: int) -> float:
        priority = min(3, max(1, int(priority)))
        return self.min_interval_s * priority

    def reset(self) -> None:
        self.last_request_time = None
        self.consecutive_errors = 0

    async def _wait_for_slot(self, name: str, priority: int) -> None:
        if self.last_request_time is None:
            return
        elapsed = self._clock() - self.last_request_time
        wait = self.spacing_for(priority) - elapsed
        if wait > 0:
            logger.debug("[RATE LIMIT] Waiting %.2fs before %s", wait, name)
            await self._sleep(wait)

    async def call(
        self,
        fn: Callable[[], Awaitable[T]],
        name: str,
        priority: int = 1,
        critical: bool = False,
    ) -> T:
        attempt = 0
        while True:
            # Slots are handed out one at a time; the request itself runs outside the lock.
            async with self._slot_lock:
                await self._wait_for_slot(name, priority)
                self.last_request_time = self._clock()
            self.total_calls += 1
            try:
                result = await fn()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                attempt += 1
                self.consecutive_errors += 1

                retry_after = _retry_after_seconds(exc)
                if retry_after is not None and attempt < self.max_attempts:
                    self.rate_limited_count += 1
                    logger.warning("[RATE LIMIT] %s rate limited; retrying after %.1fs", name, retry_after)
                    await self._sleep(retry_after)
                    continue

                if critical and attempt < self.max_attempts:
                    delay = min(self.base_retry_delay_s * (2 ** (attempt - 1)), self.max_retry_delay_s)
                    logger.warning(
                        "[RETRY] Attempt %s/%s failed for %s; retrying in %.1fs: %s",
                        attempt,
                        self.max_attempts,
                        name,
                        delay,
                        exc,
                    )
                    await self._sleep(delay)
                    continue

                raise

            self.consecutive_errors = 0
            return result
