import inspect
import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Sequence

import numpy as np
import talib

# Added per index to a perfectly flat series so the EMA recursion never sees a zero range.
FLAT_NUDGE = 1e-10


def ema(values: Sequence[float], period: int) -> np.ndarray:
    """Exponential moving average seeded with the first value."""
    arr = np.asarray(values, dtype=float)
    if arr.size == 0:
        return arr
    if np.ptp(arr) == 0:
        arr = arr + np.arange(arr.size) * FLAT_NUDGE
    k = 2.0 / (period + 1)
    out = np.empty_like(arr)
    out[0] = arr[0]
    for i in range(1, arr.size):
        out[i] = arr[i] * k + out[i - 1] * (1 - k)
    return out


def vwap(highs: Sequence[float], lows: Sequence[float], closes: Sequence[float],
         volumes: Sequence[float]) -> float:
    """Volume-weighted typical price over exactly the bars passed in."""
    h = np.asarray(highs, dtype=float)
    l = np.asarray(lows, dtype=float)
    c = np.asarray(closes, dtype=float)
    v = np.asarray(volumes, dtype=float)
    total_volume = float(v.sum()) if v.size else 0.0
    if total_volume <= 0:
        return 0.0
    typical = (h + l + c) / 3.0
    return float((typical * v).sum() / total_volume)


def detect_volume_spike(volumes: Sequence[float], closes: Sequence[float], period: int = 20,
                        multiplier: float = 1.5) -> Dict[str, Any]:
    if len(volumes) < period or len(closes) < 2:
        return {'spike': False, 'ratio': 1.0, 'with_price_increase': False, 'intensity': 'low'}
    recent = np.asarray(volumes[-period:], dtype=float)
    average = float(recent.mean())
    current = float(volumes[-1])
    price_change = (closes[-1] / closes[-2]) - 1 if closes[-2] else 0.0
    spike = current > average * multiplier
    if current > average * 2:
        intensity = 'high'
    elif spike:
        intensity = 'medium'
    else:
        intensity = 'low'
    return {
        'spike': spike,
        'ratio': current / average if average > 0 else 1.0,
        'with_price_increase': spike and price_change > 0,
        'intensity': intensity,
    }


def count_consecutive_highs(prices: Sequence[float]) -> int:
    count = 0
    for i in range(len(prices) - 1, 0, -1):
        if prices[i] > prices[i - 1]:
            count += 1
        else:
            break
    return count


def analyze_recent_highs(prices: Sequence[float], period: int = 10) -> Dict[str, Any]:
    if len(prices) < 2:
        return {'new_high': False, 'consecutive_highs': 0, 'breakout_strength': 0.0}
    recent = list(prices[-period:])
    current = recent[-1]
    previous_high = max(recent[:-1])
    new_high = current > previous_high
    return {
        'new_high': new_high,
        'consecutive_highs': count_consecutive_highs(prices),
        'breakout_strength': (current - previous_high) / previous_high if new_high and previous_high else 0.0,
    }


@dataclass
class IndicatorSnapshot:
    price: Optional[float] = None
    ema_fast: Optional[float] = None
    ema_slow: Optional[float] = None
    ema_very_slow: Optional[float] = None
    sma: Optional[float] = None
    rsi: Optional[float] = None
    macd: Optional[float] = None
    macd_signal: Optional[float] = None
    macd_hist: Optional[float] = None
    macd_hist_prev: Optional[float] = None
    macd_bullish_cross: bool = False
    bb_upper: Optional[float] = None
    bb_middle: Optional[float] = None
    bb_lower: Optional[float] = None
    bb_bandwidth: Optional[float] = None
    bb_percent_b: Optional[float] = None
    stoch_k: Optional[float] = None
    stoch_d: Optional[float] = None
    vwap: Optional[float] = None
    volume: Optional[float] = None
    volume_avg: Optional[float] = None
    volume_spike: Optional[Dict[str, Any]] = None
    recent_highs: Optional[Dict[str, Any]] = None

    @property
    def macd_improving(self) -> bool:
        if self.macd_hist is None or self.macd_hist_prev is None:
            return False
        return self.macd_hist > self.macd_hist_prev

    @property
    def bb_near_upper(self) -> bool:
        if self.price is None or self.bb_upper is None:
            return False
        return self.price > self.bb_upper * 0.95

    @property
    def bb_expansion(self) -> bool:
        return self.bb_bandwidth is not None and self.bb_bandwidth > 0.2

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _last(values: np.ndarray) -> Optional[float]:
    if values.size == 0:
        return None
    value = float(values[-1])
    return None if math.isnan(value) else value


class IndicatorEngine:
    """Computes an IndicatorSnapshot from a candle window; holds only configuration."""

    def __init__(
        self,
        ema_fast: int = 9,
        ema_slow: int = 21,
        ema_very_slow: int = 200,
        sma_period: int = 20,
        rsi_period: int = 14,
        macd_fast: int = 12,
        macd_slow: int = 26,
        macd_signal: int = 9,
        bb_period: int = 20,
        bb_std_dev: float = 2.0,
        stoch_period: int = 14,
        stoch_k: int = 3,
        stoch_d: int = 3,
        vwap_window: int = 30,
        volume_period: int = 20,
        volume_spike_multiplier: float = 1.5,
        recent_highs_period: int = 10,
    ):
        self.ema_fast = ema_fast
        self.ema_slow = ema_slow
        self.ema_very_slow = ema_very_slow
        self.sma_period = sma_period
        self.rsi_period = rsi_period
        self.macd_fast = macd_fast
        self.macd_slow = macd_slow
        self.macd_signal = macd_signal
        self.bb_period = bb_period
        self.bb_std_dev = float(bb_std_dev)
        self.stoch_period = stoch_period
        self.stoch_k = stoch_k
        self.stoch_d = stoch_d
        self.vwap_window = vwap_window
        self.volume_period = volume_period
        self.volume_spike_multiplier = volume_spike_multiplier
        self.recent_highs_period = recent_highs_period

    @classmethod
    def from_config(cls, indicator_cfg: Optional[Dict[str, Any]]) -> "IndicatorEngine":
        cfg = dict(indicator_cfg or {})
        params = inspect.signature(cls).parameters
        known = {k: v for k, v in cfg.items() if k in params}
        return cls(**known)

    @property
    def stoch_min_length(self) -> int:
        return self.stoch_period + self.stoch_k + self.stoch_d - 2

    def compute(self, candles: Sequence[Any]) -> IndicatorSnapshot:
        closes = np.array([c.close for c in candles], dtype=float)
        highs = np.array([c.high for c in candles], dtype=float)
        lows = np.array([c.low for c in candles], dtype=float)
        volumes = np.array([c.volume for c in candles], dtype=float)
        n = closes.size

        snap = IndicatorSnapshot()
        if n == 0:
            return snap
        snap.price = float(closes[-1])
        snap.volume = float(volumes[-1])

        if n >= self.ema_fast:
            snap.ema_fast = float(ema(closes, self.ema_fast)[-1])
        if n >= self.ema_slow:
            snap.ema_slow = float(ema(closes, self.ema_slow)[-1])
        if n >= self.ema_very_slow:
            snap.ema_very_slow = float(ema(closes, self.ema_very_slow)[-1])
        if n >= self.sma_period:
            snap.sma = float(closes[-self.sma_period:].mean())

        if n >= self.rsi_period + 1:
            snap.rsi = self._compute_rsi(closes)

        if n >= self.macd_slow:
            self._compute_macd(closes, snap)

        if n >= self.bb_period:
            self._compute_bollinger(closes, snap)

        if n >= self.stoch_min_length:
            k_line, d_line = talib.STOCH(
                highs,
                lows,
                closes,
                fastk_period=self.stoch_period,
                slowk_period=self.stoch_k,
                slowk_matype=0,
                slowd_period=self.stoch_d,
                slowd_matype=0,
            )
            snap.stoch_k = _last(k_line)
            snap.stoch_d = _last(d_line)

        window = slice(max(0, n - self.vwap_window), n)
        snap.vwap = vwap(highs[window], lows[window], closes[window], volumes[window])

        if n >= self.volume_period:
            snap.volume_avg = float(volumes[-self.volume_period:].mean())
        snap.volume_spike = detect_volume_spike(
            volumes.tolist(), closes.tolist(), self.volume_period, self.volume_spike_multiplier
        )
        snap.recent_highs = analyze_recent_highs(closes.tolist(), self.recent_highs_period)
        return snap

    def _compute_rsi(self, closes: np.ndarray) -> Optional[float]:
        window = closes[-(self.rsi_period + 1):]
        if np.ptp(window) == 0:
            return 50.0
        values = talib.RSI(closes, timeperiod=self.rsi_period)
        return _last(values)

    def _compute_macd(self, closes: np.ndarray, snap: IndicatorSnapshot) -> None:
        line = ema(closes, self.macd_fast) - ema(closes, self.macd_slow)
        signal = ema(line, self.macd_signal)
        hist = line - signal
        snap.macd = float(line[-1])
        snap.macd_signal = float(signal[-1])
        snap.macd_hist = float(hist[-1])
        if hist.size >= 2:
            snap.macd_hist_prev = float(hist[-2])
            snap.macd_bullish_cross = bool(line[-1] > signal[-1] and line[-2] <= signal[-2])

    def _compute_bollinger(self, closes: np.ndarray, snap: IndicatorSnapshot) -> None:
        upper, middle, lower = talib.BBANDS(
            closes,
            timeperiod=self.bb_period,
            nbdevup=self.bb_std_dev,
            nbdevdn=self.bb_std_dev,
            matype=0,
        )
        snap.bb_upper = _last(upper)
        snap.bb_middle = _last(middle)
        snap.bb_lower = _last(lower)
        if snap.bb_upper is None or snap.bb_lower is None or not snap.bb_middle:
            return
        width = snap.bb_upper - snap.bb_lower
        snap.bb_bandwidth = width / snap.bb_middle
        snap.bb_percent_b = (snap.price - snap.bb_lower) / width if width > 0 else 0.5
