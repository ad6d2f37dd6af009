import math
import sys

import numpy as np
import pytest

sys.path.insert(0, '.')

from analytics.indicators import (
    IndicatorEngine,
    IndicatorSnapshot,
    analyze_recent_highs,
    detect_volume_spike,
    ema,
    vwap,
)
from ingest.candle_store import Candle


def _candles(closes, volume=100.0):
    return [
        Candle(time=i * 60, open=c, high=c * 1.002, low=c * 0.998, close=c, volume=volume)
        for i, c in enumerate(closes)
    ]


def _wave(n, base=1.0):
    return [base + 0.02 * math.sin(i / 3.0) + 0.001 * i for i in range(n)]


def test_ema_is_seeded_with_first_value():
    out = ema([10.0, 20.0, 30.0], period=3)
    assert out[0] == 10.0
    assert out[1] == pytest.approx(15.0)
    assert out[2] == pytest.approx(22.5)


def test_ema_on_flat_series_stays_near_value():
    out = ema([5.0] * 30, period=9)
    assert out[-1] == pytest.approx(5.0, abs=1e-6)


def test_vwap_zero_volume_is_zero():
    assert vwap([1, 2], [1, 2], [1, 2], [0, 0]) == 0.0


def test_vwap_weights_typical_price():
    value = vwap([3.0, 6.0], [1.0, 3.0], [2.0, 3.0], [1.0, 3.0])
    assert value == pytest.approx((2.0 * 1 + 4.0 * 3) / 4)


def test_volume_spike_intensity():
    volumes = [100.0] * 19 + [400.0]
    closes = [1.0] * 19 + [1.1]
    spike = detect_volume_spike(volumes, closes, period=20, multiplier=1.5)
    assert spike['spike'] is True
    assert spike['with_price_increase'] is True
    assert spike['intensity'] == 'high'

    calm = detect_volume_spike([100.0] * 20, [1.0] * 20)
    assert calm['spike'] is False
    assert calm['intensity'] == 'low'


def test_recent_highs_detects_breakout():
    result = analyze_recent_highs([1.0, 1.1, 1.05, 1.2, 1.3], period=10)
    assert result['new_high'] is True
    assert result['consecutive_highs'] == 2
    assert result['breakout_strength'] > 0


def test_compute_returns_none_below_minimum_lengths():
    engine = IndicatorEngine()
    snap = engine.compute(_candles([1.0] * 10))
    assert snap.price == 1.0
    assert snap.ema_fast is not None
    assert snap.ema_slow is None
    assert snap.rsi is None
    assert snap.macd is None
    assert snap.bb_upper is None
    assert snap.stoch_k is None


def test_compute_empty_window():
    snap = IndicatorEngine().compute([])
    assert snap.price is None
    assert snap.to_dict()['rsi'] is None


def test_flat_window_rsi_is_neutral():
    snap = IndicatorEngine().compute(_candles([2.0] * 40))
    assert snap.rsi == 50.0


def test_full_window_values_are_in_range():
    snap = IndicatorEngine().compute(_candles(_wave(60)))
    assert 0.0 <= snap.rsi <= 100.0
    assert 0.0 <= snap.stoch_k <= 100.0
    assert 0.0 <= snap.stoch_d <= 100.0
    assert snap.bb_lower < snap.bb_middle < snap.bb_upper
    assert snap.bb_bandwidth > 0
    assert snap.macd_hist == pytest.approx(snap.macd - snap.macd_signal)
    assert snap.macd_hist_prev is not None
    assert snap.vwap > 0
    assert snap.volume_avg == pytest.approx(100.0)


def test_from_config_ignores_unknown_keys():
    engine = IndicatorEngine.from_config({'rsi_period': 7, 'not_a_period': 1})
    assert engine.rsi_period == 7


def test_snapshot_helpers():
    snap = IndicatorSnapshot(price=99.0, bb_upper=100.0, bb_bandwidth=0.25, macd_hist=0.2, macd_hist_prev=0.1)
    assert snap.bb_near_upper
    assert snap.bb_expansion
    assert snap.macd_improving
    assert not IndicatorSnapshot().macd_improving


def test_steady_rise_pins_rsi_at_maximum():
    closes = np.linspace(1.0, 1.5, 30).tolist()
    snap = IndicatorEngine().compute(_candles(closes))
    assert snap.rsi == pytest.approx(100.0)
