import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from analytics.indicators import IndicatorSnapshot


logger = logging.getLogger(__name__)

MAX_SCORE = 21.0
TECHNICAL_CAP = 8.0
DIP_CAP = 5.0
CONDITION_CAP = 4.0
EXTREMES_CAP = 4.0

NEW_SIGNAL_THRESHOLD_PCT = 0.57
RECONFIRM_THRESHOLD_PCT = 0.47
# Opening a signal needs 12/21; keeping an active one alive needs only 10/21.
NEW_SIGNAL_THRESHOLD = math.ceil(MAX_SCORE * NEW_SIGNAL_THRESHOLD_PCT)
RECONFIRM_THRESHOLD = math.ceil(MAX_SCORE * RECONFIRM_THRESHOLD_PCT)

# (minimum drop % below the 60-bar high, points)
DIP_TABLE: Tuple[Tuple[float, float], ...] = (
    (3.5, 5.0),
    (3.0, 4.0),
    (2.5, 3.0),
    (2.0, 2.0),
    (1.5, 1.5),
    (1.0, 1.0),
)

# (max % distance from the 24h average low, points); first match wins
LOW_24H_TABLE: Tuple[Tuple[float, float], ...] = (
    (-5.0, 10.0), (-4.5, 9.5), (-4.0, 9.0), (-3.5, 8.5), (-3.0, 8.0),
    (-2.5, 7.5), (-2.0, 7.0), (-1.5, 6.5), (-1.0, 6.0), (-0.5, 5.5),
    (0.0, 5.0), (0.5, 4.5), (1.0, 4.0), (1.5, 3.5), (2.0, 3.0),
    (2.5, 2.5), (3.0, 2.0), (3.5, 1.5), (4.0, 1.0), (4.5, 0.5),
    (5.0, 0.1), (math.inf, 0.0),
)


def _num(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _bounded(value: float, cap: float) -> float:
    if value is None or math.isnan(value):
        return 0.0
    return max(0.0, min(cap, value))


@dataclass
class ScoreBreakdown:
    total: float
    technical: float
    dip: float
    conditions: float
    extremes: float
    threshold: float
    is_buy_signal: bool
    reasons: Dict[str, List[str]] = field(default_factory=dict)
    metrics: Dict[str, Any] = field(default_factory=dict)

    @property
    def components(self) -> Dict[str, float]:
        return {
            'technical': self.technical,
            'dip': self.dip,
            'conditions': self.conditions,
            'extremes': self.extremes,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total': round(self.total, 2),
            'max': MAX_SCORE,
            'components': {k: round(v, 2) for k, v in self.components.items()},
            'threshold': self.threshold,
            'is_buy_signal': self.is_buy_signal,
            'reasons': self.reasons,
            'metrics': self.metrics,
        }

    def summary(self) -> str:
        return (
            f"{self.technical:.1f}/8 (Tech) + {self.dip:.1f}/5 (Dip) + "
            f"{self.conditions:.1f}/4 (Cond) + {self.extremes:.1f}/4 (24h) = {self.total:.2f}/21"
        )


class SignalScorer:
    """Composite 0-21 buy score built from independently capped components."""

    def __init__(self, scoring_cfg: Optional[Dict[str, Any]] = None):
        scoring_cfg = scoring_cfg or {}
        self.min_score = float(scoring_cfg.get('min_score', 5))
        self.dip_lookback = int(scoring_cfg.get('dip_lookback', 60))
        self.volume_bonus_ratio = float(scoring_cfg.get('volume_bonus_ratio', 1.2))
        self.rsi_range_low = float(scoring_cfg.get('rsi_range_low', 30))
        self.rsi_range_high = float(scoring_cfg.get('rsi_range_high', 70))
        self.low_weight = float(scoring_cfg.get('low_weight', 0.3))
        self.high_weight = float(scoring_cfg.get('high_weight', 0.7))
        self.hourly_min_candles = int(scoring_cfg.get('hourly_min_candles', 24))

    @staticmethod
    def threshold_for(signal_active: bool) -> float:
        return float(RECONFIRM_THRESHOLD if signal_active else NEW_SIGNAL_THRESHOLD)

    def qualifies(self, total: float, signal_active: bool = False) -> bool:
        return total >= max(self.min_score, self.threshold_for(signal_active))

    def score(
        self,
        snapshot: IndicatorSnapshot,
        current_price: float,
        short_candles: Sequence[Any] = (),
        hourly_candles: Sequence[Any] = (),
        signal_active: bool = False,
    ) -> ScoreBreakdown:
        reasons: Dict[str, List[str]] = {}
        metrics: Dict[str, Any] = {}
        price = _num(current_price)

        def run(name: str, cap: float, fn: Callable[[], Tuple[float, List[str]]]) -> float:
            if price is None or price <= 0:
                reasons[name] = ['no valid price']
                return 0.0
            try:
                value, why = fn()
            except (TypeError, ValueError, ZeroDivisionError, AttributeError) as exc:
                logger.warning("Score component %s failed; scoring 0: %s", name, exc)
                reasons[name] = [f'error: {exc}']
                return 0.0
            reasons[name] = why
            return _bounded(value, cap)

        technical = run('technical', TECHNICAL_CAP, lambda: self._technical(snapshot, price))
        dip = run('dip', DIP_CAP, lambda: self._dip(price, short_candles, metrics))
        conditions = run('conditions', CONDITION_CAP, lambda: self._conditions(snapshot, price))
        extremes = run(
            'extremes', EXTREMES_CAP, lambda: self._extremes(price, short_candles, hourly_candles, metrics)
        )

        total = _bounded(technical + dip + conditions + extremes, MAX_SCORE)
        threshold = self.threshold_for(signal_active)
        return ScoreBreakdown(
            total=total,
            technical=technical,
            dip=dip,
            conditions=conditions,
            extremes=extremes,
            threshold=threshold,
            is_buy_signal=self.qualifies(total, signal_active),
            reasons=reasons,
            metrics=metrics,
        )

    def _technical(self, snap: IndicatorSnapshot, price: float) -> Tuple[float, List[str]]:
        score = 0.0
        why: List[str] = []

        rsi = _num(snap.rsi)
        if rsi is not None:
            if rsi < 30:
                score += 1.5
                why.append(f'RSI oversold ({rsi:.1f})')
            elif rsi < 45:
                score += 0.5
                why.append(f'RSI low ({rsi:.1f})')

        k = _num(snap.stoch_k)
        d = _num(snap.stoch_d)
        if k is not None:
            if k < 20:
                score += 0.5
                why.append(f'Stoch oversold (K={k:.1f})')
            if d is not None and k > d and k < 30:
                score += 1.5
                why.append('Stoch bullish cross in oversold zone')

        hist = _num(snap.macd_hist)
        macd = _num(snap.macd)
        signal = _num(snap.macd_signal)
        if hist is not None and hist > 0:
            score += 0.5
            why.append('MACD histogram positive')
        if macd is not None and signal is not None and macd > signal:
            score += 1.0
            why.append('MACD above signal')

        for label, value in (('EMA9', snap.ema_fast), ('EMA21', snap.ema_slow), ('SMA20', snap.sma)):
            level = _num(value)
            if level is not None and price > level:
                score += 0.5
                why.append(f'Price above {label}')

        lower = _num(snap.bb_lower)
        upper = _num(snap.bb_upper)
        if lower is not None:
            if price <= lower:
                score += 1.5
                why.append('Price at/below lower Bollinger band')
            elif upper is not None and upper > lower and (price - lower) / (upper - lower) <= 0.25:
                score += 1.0
                why.append('Price in lower quartile of Bollinger band')

        return score, why

    def _dip(self, price: float, candles: Sequence[Any], metrics: Dict[str, Any]) -> Tuple[float, List[str]]:
        window = list(candles)[-self.dip_lookback:]
        highs = [h for h in (_num(c.high) for c in window) if h is not None]
        if not highs:
            return 0.0, ['no candles for dip']
        recent_high = max(highs)
        if recent_high <= 0:
            return 0.0, ['invalid recent high']
        drop_pct = (recent_high - price) / recent_high * 100
        metrics['recent_high'] = recent_high
        metrics['dip_pct'] = round(drop_pct, 3)
        for min_drop, points in DIP_TABLE:
            if drop_pct >= min_drop:
                return points, [f'Price {drop_pct:.2f}% below {len(window)}-bar high']
        return 0.0, []

    def _conditions(self, snap: IndicatorSnapshot, price: float) -> Tuple[float, List[str]]:
        score = 0.0
        why: List[str] = []

        rsi = _num(snap.rsi)
        if rsi is not None and self.rsi_range_low <= rsi <= self.rsi_range_high:
            score += 1
            why.append('RSI in range')
        if snap.macd_improving:
            score += 1
            why.append('MACD improving')
        vwap = _num(snap.vwap)
        if vwap is not None and vwap > 0 and price > vwap:
            score += 1
            why.append('Price above VWAP')
        volume = _num(snap.volume)
        average = _num(snap.volume_avg)
        if volume is not None and average is not None and average > 0 and volume >= average * self.volume_bonus_ratio:
            score += 1
            why.append(f'Volume {volume / average:.2f}x average')
        return score, why

    def _extremes(
        self,
        price: float,
        short_candles: Sequence[Any],
        hourly_candles: Sequence[Any],
        metrics: Dict[str, Any],
    ) -> Tuple[float, List[str]]:
        source = list(hourly_candles)
        source_name = 'hourly'
        if len(source) < self.hourly_min_candles:
            source = list(short_candles)
            source_name = 'short'
        lows = [v for v in (_num(c.low) for c in source) if v is not None and v > 0]
        highs = [v for v in (_num(c.high) for c in source) if v is not None and v > 0]
        if not lows or not highs:
            return 0.0, ['no candles for 24h extremes']

        avg_low = sum(lows) / len(lows)
        high_24h = max(highs)
        low_distance_pct = (price - avg_low) / avg_low * 100
        high_distance_pct = (high_24h - price) / high_24h * 100

        low_score = 0.0
        for max_pct, points in LOW_24H_TABLE:
            if low_distance_pct <= max_pct:
                low_score = points
                break
        high_score = _bounded(high_distance_pct * 2, 10.0)

        blended = (self.low_weight * low_score + self.high_weight * high_score) / 10.0 * EXTREMES_CAP
        metrics.update({
            'extremes_source': source_name,
            'avg_low_24h': avg_low,
            'high_24h': high_24h,
            'low_distance_pct': round(low_distance_pct, 3),
            'high_distance_pct': round(high_distance_pct, 3),
            'low_subscore': low_score,
            'high_subscore': high_score,
        })
        why = [
            f'{low_distance_pct:+.2f}% vs 24h avg low ({low_score}/10)',
            f'{high_distance_pct:.2f}% below 24h high ({high_score:.1f}/10)',
        ]
        return blended, why
