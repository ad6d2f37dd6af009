import json
import logging
import math
import os
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union


logger = logging.getLogger(__name__)

# Epoch values at or above this are milliseconds.
MS_EPOCH_THRESHOLD = 1e12

TIME_KEYS = ("time", "start", "timestamp", "t")
FIELD_KEYS = {
    "open": ("open", "o"),
    "high": ("high", "h"),
    "low": ("low", "l"),
    "close": ("close", "c"),
    "volume": ("volume", "v"),
}


@dataclass(frozen=True)
class Candle:
    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "time": self.time,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }


@dataclass(frozen=True)
class CandleResult:
    """Outcome of normalizing one raw bar: either a candle or the reason it was rejected."""

    candle: Optional[Candle] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.candle is not None

    @classmethod
    def valid(cls, candle: Candle) -> "CandleResult":
        return cls(candle=candle)

    @classmethod
    def invalid(cls, reason: str) -> "CandleResult":
        return cls(reason=reason)


def _to_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _to_epoch_seconds(value: Any) -> Optional[int]:
    number = _to_number(value)
    if number is None and isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp())
    if number is None or number < 0:
        return None
    if number >= MS_EPOCH_THRESHOLD:
        number = number / 1000.0
    return int(number)


def _first_present(raw: Dict[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def normalize_candle(raw: Any) -> CandleResult:
    """Parse one raw bar into a Candle without ever raising.

    Accepts Candle instances, dicts keyed by time/start/timestamp, and exchange rows
    ordered ``[time, low, high, open, close, volume]``. A missing open falls back to
    the close; every other field is required.
    """
    if isinstance(raw, Candle):
        return CandleResult.valid(raw)

    if isinstance(raw, (list, tuple)):
        if len(raw) < 6:
            return CandleResult.invalid("row has fewer than 6 fields")
        raw = {
            "time": raw[0],
            "low": raw[1],
            "high": raw[2],
            "open": raw[3],
            "close": raw[4],
            "volume": raw[5],
        }

    if not isinstance(raw, dict):
        return CandleResult.invalid(f"unsupported candle type {type(raw).__name__}")

    raw_time = _first_present(raw, TIME_KEYS)
    if raw_time is None:
        return CandleResult.invalid("missing time")
    ts = _to_epoch_seconds(raw_time)
    if ts is None:
        return CandleResult.invalid(f"invalid time {raw_time!r}")

    values: Dict[str, float] = {}
    for name, keys in FIELD_KEYS.items():
        raw_value = _first_present(raw, keys)
        if raw_value is None:
            if name == "open":
                continue
            return CandleResult.invalid(f"missing {name}")
        number = _to_number(raw_value)
        if number is None:
            return CandleResult.invalid(f"non-numeric {name} {raw_value!r}")
        if number < 0:
            return CandleResult.invalid(f"negative {name} {number}")
        values[name] = number

    values.setdefault("open", values["close"])
    return CandleResult.valid(Candle(time=ts, **values))


def _iso(ts: Optional[int]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")


class CandleStore:
    """Bounded, time-ordered candle window with atomic JSON persistence."""

    def __init__(
        self,
        name: str,
        cap: int,
        granularity_s: int = 60,
        cache_path: Optional[Union[str, Path]] = None,
        trading_pair: str = "",
        clock: Callable[[], float] = time.time,
    ):
        if cap <= 0:
            raise ValueError("cap must be positive")
        self.name = name
        self.cap = int(cap)
        self.granularity_s = int(granularity_s)
        self.cache_path = Path(cache_path) if cache_path else None
        self.trading_pair = trading_pair
        self._clock = clock
        self._candles: List[Candle] = []
        self.rejected = 0
        self.last_update: float = 0.0

    def __len__(self) -> int:
        return len(self._candles)

    def __iter__(self):
        return iter(self._candles)

    @property
    def candles(self) -> List[Candle]:
        return list(self._candles)

    @property
    def latest(self) -> Optional[Candle]:
        return self._candles[-1] if self._candles else None

    def closes(self) -> List[float]:
        return [c.close for c in self._candles]

    def highs(self) -> List[float]:
        return [c.high for c in self._candles]

    def lows(self) -> List[float]:
        return [c.low for c in self._candles]

    def volumes(self) -> List[float]:
        return [c.volume for c in self._candles]

    def to_list(self) -> List[Dict[str, Any]]:
        return [c.to_dict() for c in self._candles]

    def ingest(self, raw: Any) -> Optional[Candle]:
        result = normalize_candle(raw)
        if not result.ok:
            self.rejected += 1
            logger.debug("[%s] Dropped candle: %s", self.name, result.reason)
            return None
        return result.candle

    def merge(self, new_candles: Iterable[Any], retention_s: Optional[float] = None) -> int:
        """Merge raw or parsed candles; later values win per timestamp.

        Returns the number of timestamps that were not in the store before.
        """
        by_time: Dict[int, Candle] = {c.time: c for c in self._candles}
        before = set(by_time)
        dropped = 0
        for raw in new_candles:
            candle = self.ingest(raw)
            if candle is None:
                dropped += 1
                continue
            by_time[candle.time] = candle

        merged = sorted(by_time.values(), key=lambda c: c.time)
        if retention_s is not None:
            cutoff = self._clock() - retention_s
            merged = [c for c in merged if c.time >= cutoff]
        self._candles = merged[-self.cap:]
        self.last_update = self._clock()

        if dropped:
            logger.warning("[%s] Skipped %s invalid candles during merge", self.name, dropped)
        added = len({c.time for c in self._candles} - before)
        logger.debug("[%s] Merged %s new candles; store size %s/%s", self.name, added, len(self), self.cap)
        return added

    def clear(self) -> None:
        self._candles = []

    def is_fresh(self, max_age_s: float, now: Optional[float] = None) -> bool:
        if not self._candles:
            return False
        now = self._clock() if now is None else now
        return now - self._candles[-1].time < max_age_s

    def snapshot(self) -> Dict[str, Any]:
        first = self._candles[0].time if self._candles else None
        last = self._candles[-1].time if self._candles else None
        return {
            "candles": self.to_list(),
            "timestamp": int(self._clock() * 1000),
            "metadata": {
                "tradingPair": self.trading_pair,
                "count": len(self._candles),
                "firstCandle": _iso(first),
                "lastCandle": _iso(last),
            },
        }

    def persist(self) -> bool:
        if self.cache_path is None:
            return False
        tmp_name = None
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.cache_path.name}.",
                suffix=".tmp",
                dir=str(self.cache_path.parent),
            )
            with os.fdopen(fd, "w") as fh:
                json.dump(self.snapshot(), fh)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self.cache_path)
            tmp_name = None
            logger.debug("[%s] Persisted %s candles to %s", self.name, len(self), self.cache_path)
            return True
        except OSError as exc:
            logger.error("[%s] Candle cache persist failed: %s", self.name, exc)
            return False
        finally:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)

    def load(self) -> int:
        """Reload the cache file; a missing or corrupt file leaves the store empty."""
        self._candles = []
        if self.cache_path is None or not self.cache_path.exists():
            return 0
        try:
            data = json.loads(self.cache_path.read_text())
        except (OSError, ValueError) as exc:
            logger.warning("[%s] Candle cache %s unreadable; starting empty: %s", self.name, self.cache_path, exc)
            return 0
        if not isinstance(data, dict) or not isinstance(data.get("candles"), list):
            logger.warning("[%s] Candle cache %s malformed; starting empty", self.name, self.cache_path)
            return 0
        self.merge(data["candles"])
        logger.info("[%s] Loaded %s cached candles from %s", self.name, len(self), self.cache_path)
        return len(self)
