import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ingest.candle_store import Candle, CandleStore
from ingest.rate_limiter import RateLimitedCaller
from monitoring.async_utils import SingleFlight
from strategy.transports.coinbase import CoinbaseTransport


logger = logging.getLogger(__name__)

ONE_MINUTE = 60
ONE_HOUR = 3600


class CandleFeed:
    """Keeps the 1-minute and 1-hour candle windows current from the REST API.

    Fetches are incremental from the last stored candle, skipped while the cache is
    fresh, and guarded so that overlapping triggers collapse into one request.
    """

    def __init__(
        self,
        transport: CoinbaseTransport,
        caller: RateLimitedCaller,
        exchange_cfg: Optional[Dict[str, Any]] = None,
        candles_cfg: Optional[Dict[str, Any]] = None,
        clock: Callable[[], float] = time.time,
    ):
        exchange_cfg = exchange_cfg or {}
        cfg = candles_cfg or {}
        self.transport = transport
        self.caller = caller
        self.product_id = exchange_cfg.get("product_id", "SYRUP-USDC")
        self.fresh_max_age_s = float(cfg.get("fresh_max_age_s", 45))
        self.min_fetch_interval_s = float(cfg.get("min_fetch_interval_s", 30))
        self.fetch_overlap_s = int(cfg.get("fetch_overlap_s", 60))
        self.short_retention_s = float(cfg.get("short_retention_s", 3900))
        self.hourly_refresh_min_age_s = float(cfg.get("hourly_refresh_min_age_s", 300))
        self.backfill_minutes = int(cfg.get("backfill_minutes", 60))
        self.backfill_hours = int(cfg.get("backfill_hours", 24))
        watchdog_s = float(cfg.get("fetch_watchdog_s", 30))
        self._clock = clock

        cache_dir = Path(cfg.get("cache_dir", "data"))
        self.short = CandleStore(
            "1m",
            int(cfg.get("short_cap", 60)),
            ONE_MINUTE,
            cache_dir / cfg.get("short_cache_file", "candles_1m.json"),
            trading_pair=self.product_id,
            clock=clock,
        )
        self.hourly = CandleStore(
            "1h",
            int(cfg.get("hourly_cap", 24)),
            ONE_HOUR,
            cache_dir / cfg.get("hourly_cache_file", "candles_1h.json"),
            trading_pair=self.product_id,
            clock=clock,
        )
        self.fetch_guard = SingleFlight("candle fetch", watchdog_s)
        self.backfill_guard = SingleFlight("candle backfill", watchdog_s)
        self.hourly_guard = SingleFlight("hourly refresh", watchdog_s)
        self.last_fetch_time: Optional[float] = None
        self.hourly_fetched_at: Optional[float] = None

    def load_cache(self) -> int:
        return self.short.load() + self.hourly.load()

    @property
    def rejected(self) -> int:
        return self.short.rejected + self.hourly.rejected

    async def _fetch(self, granularity: int, start: float, end: float) -> List[Dict[str, Any]]:
        return await self.caller.call(
            lambda: self.transport.get_candles(self.product_id, granularity, int(start), int(end)),
            f"get_candles_{granularity}",
            priority=2,
        )

    async def refresh(self, now: Optional[float] = None) -> int:
        """Bring the 1-minute window up to date; returns the number of new candles."""
        now = self._clock() if now is None else now
        if self.short.is_fresh(self.fresh_max_age_s, now):
            logger.debug("1m cache fresh (last candle %ss old); skipping fetch", int(now - self.short.latest.time))
            return 0
        if self.last_fetch_time is not None and now - self.last_fetch_time < self.min_fetch_interval_s:
            logger.debug("Candle fetch throttled (%.0fs since last)", now - self.last_fetch_time)
            return 0

        async def fetch() -> int:
            latest: Optional[Candle] = self.short.latest
            if latest is None:
                start = now - self.backfill_minutes * ONE_MINUTE
            else:
                start = latest.time - self.fetch_overlap_s
            self.last_fetch_time = now
            raw = await self._fetch(ONE_MINUTE, start, now)
            added = self.short.merge(raw, retention_s=self.short_retention_s)
            self.short.persist()
            logger.info("Fetched %s 1m candles (%s new); window %s/%s", len(raw), added, len(self.short),
                        self.short.cap)
            return added

        result = await self.fetch_guard.run(fetch)
        return result or 0

    async def backfill(self, now: Optional[float] = None) -> int:
        """Fill empty windows with the last hour of minutes and the last day of hours."""
        now = self._clock() if now is None else now

        async def fill() -> int:
            added = 0
            if len(self.short) == 0:
                raw = await self._fetch(ONE_MINUTE, now - self.backfill_minutes * ONE_MINUTE, now)
                added += self.short.merge(raw, retention_s=self.short_retention_s)
                self.short.persist()
                self.last_fetch_time = now
            if len(self.hourly) == 0:
                raw = await self._fetch(ONE_HOUR, now - self.backfill_hours * ONE_HOUR, now)
                added += self.hourly.merge(raw)
                self.hourly.persist()
                self.hourly_fetched_at = now
            if added:
                logger.info("Backfilled %s candles (1m=%s, 1h=%s)", added, len(self.short), len(self.hourly))
            return added

        result = await self.backfill_guard.run(fill)
        return result or 0

    async def refresh_hourly(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        if (
            len(self.hourly) > 0
            and self.hourly_fetched_at is not None
            and now - self.hourly_fetched_at < self.hourly_refresh_min_age_s
        ):
            return 0

        async def fetch() -> int:
            raw = await self._fetch(ONE_HOUR, now - self.backfill_hours * ONE_HOUR, now)
            added = self.hourly.merge(raw)
            self.hourly.persist()
            self.hourly_fetched_at = now
            logger.debug("Hourly refresh: %s candles (%s new)", len(self.hourly), added)
            return added

        result = await self.hourly_guard.run(fetch)
        return result or 0

    def status(self) -> Dict[str, Any]:
        return {
            "short": len(self.short),
            "hourly": len(self.hourly),
            "last_short_candle": self.short.latest.time if self.short.latest else None,
            "last_fetch_time": self.last_fetch_time,
            "hourly_fetched_at": self.hourly_fetched_at,
            "rejected": self.rejected,
            "skipped_fetches": self.fetch_guard.skipped,
        }
