import json
import random
import sys

import pytest

sys.path.insert(0, '.')

from ingest.candle_store import Candle, CandleStore, normalize_candle


def _bar(t, c=1.0):
    return {'time': t, 'open': c, 'high': c + 0.1, 'low': c - 0.1, 'close': c, 'volume': 10}


def test_merge_replaces_duplicate_timestamp_and_sorts():
    store = CandleStore('1m', cap=60, clock=lambda: 1000.0)
    store.merge([{'t': 0, 'c': 1, 'h': 1, 'l': 1, 'v': 1}])
    added = store.merge([
        {'t': 0, 'c': 2, 'h': 2, 'l': 2, 'v': 1},
        {'t': 60, 'c': 3, 'h': 3, 'l': 3, 'v': 1},
    ])
    assert added == 1
    assert [c.time for c in store] == [0, 60]
    assert [c.close for c in store] == [2.0, 3.0]


def test_merge_keeps_cap_most_recent():
    store = CandleStore('1m', cap=5)
    store.merge(_bar(t * 60) for t in range(12))
    assert len(store) == 5
    assert store.candles[0].time == 7 * 60
    assert store.latest.time == 11 * 60


def test_merge_applies_retention_window():
    store = CandleStore('1m', cap=100, clock=lambda: 10_000.0)
    store.merge([_bar(1000), _bar(9000), _bar(9960)], retention_s=3900)
    assert [c.time for c in store] == [9000, 9960]


def test_merge_skips_invalid_records():
    store = CandleStore('1m', cap=10)
    store.merge([_bar(60), {'time': 120, 'close': 'abc', 'high': 1, 'low': 1, 'volume': 1}, {'close': 1}])
    assert len(store) == 1
    assert store.rejected == 2


@pytest.mark.parametrize('raw, expected_time', [
    ({'start': '1700000000', 'low': '1', 'high': '2', 'open': '1.5', 'close': '1.7', 'volume': '3'}, 1700000000),
    ({'timestamp': 1700000000000, 'o': 1, 'h': 2, 'l': 1, 'c': 1.5, 'v': 3}, 1700000000),
    ([1700000060, 1, 2, 1.5, 1.7, 3], 1700000060),
    ({'time': '2023-11-14T22:13:20Z', 'open': 1, 'high': 2, 'low': 1, 'close': 1.5, 'volume': 3}, 1700000000),
])
def test_normalize_candle_accepts_exchange_shapes(raw, expected_time):
    result = normalize_candle(raw)
    assert result.ok
    assert result.candle.time == expected_time


def test_normalize_candle_row_order_is_time_low_high_open_close_volume():
    candle = normalize_candle([60, 1.0, 3.0, 2.0, 2.5, 7.0]).candle
    assert (candle.low, candle.high, candle.open, candle.close, candle.volume) == (1.0, 3.0, 2.0, 2.5, 7.0)


def test_normalize_candle_missing_open_uses_close():
    candle = normalize_candle({'t': 0, 'c': 4, 'h': 5, 'l': 3, 'v': 1}).candle
    assert candle.open == 4.0


@pytest.mark.parametrize('raw, reason', [
    ({'open': 1, 'high': 1, 'low': 1, 'close': 1, 'volume': 1}, 'missing time'),
    ({'time': 60, 'open': 1, 'high': 1, 'low': -1, 'close': 1, 'volume': 1}, 'negative low'),
    ({'time': 60, 'open': 1, 'high': 1, 'low': 1, 'close': 1}, 'missing volume'),
    ([1, 2, 3], 'fewer than 6'),
    ('bogus', 'unsupported'),
])
def test_normalize_candle_rejects_bad_records(raw, reason):
    result = normalize_candle(raw)
    assert not result.ok
    assert reason in result.reason


def test_is_fresh_uses_latest_candle_time():
    store = CandleStore('1m', cap=10)
    store.merge([_bar(1000)])
    assert store.is_fresh(45, now=1040)
    assert not store.is_fresh(45, now=1046)
    assert not CandleStore('x', cap=1).is_fresh(45, now=0)


def test_persist_and_load_roundtrip(tmp_path):
    path = tmp_path / 'cache' / 'candles_1m.json'
    store = CandleStore('1m', cap=10, cache_path=path, trading_pair='SYRUP-USDC', clock=lambda: 1200.0)
    store.merge([_bar(60, 1.0), _bar(120, 2.0)])
    assert store.persist()

    data = json.loads(path.read_text())
    assert data['metadata']['tradingPair'] == 'SYRUP-USDC'
    assert data['metadata']['count'] == 2
    assert data['metadata']['lastCandle'].endswith('Z')
    assert not list(path.parent.glob('*.tmp'))

    reloaded = CandleStore('1m', cap=10, cache_path=path)
    assert reloaded.load() == 2
    assert reloaded.candles == [Candle(60, 1.0, 1.1, 0.9, 1.0, 10.0), Candle(120, 2.0, 2.1, 1.9, 2.0, 10.0)]


def test_load_corrupt_cache_starts_empty(tmp_path):
    path = tmp_path / 'candles.json'
    path.write_text('{not json')
    store = CandleStore('1m', cap=10, cache_path=path)
    assert store.load() == 0
    assert len(store) == 0


def test_load_missing_cache_is_empty(tmp_path):
    store = CandleStore('1m', cap=10, cache_path=tmp_path / 'missing.json')
    assert store.load() == 0


def test_cap_must_be_positive():
    with pytest.raises(ValueError):
        CandleStore('1m', cap=0)


@pytest.mark.parametrize('seed', [1, 7, 42, 2024])
def test_random_batches_stay_ordered_and_bounded(seed):
    rng = random.Random(seed)
    store = CandleStore('1m', cap=20)
    newest = None
    for _ in range(15):
        batch = []
        for _ in range(rng.randint(0, 12)):
            t = rng.randrange(0, 60) * 60
            if rng.random() < 0.1:
                batch.append({'time': t, 'high': 1, 'low': 1, 'close': -1, 'volume': 1})
                continue
            batch.append(_bar(t, c=rng.uniform(0.5, 2.0)))
            newest = t if newest is None else max(newest, t)
        rng.shuffle(batch)
        store.merge(batch)

        times = [c.time for c in store]
        assert all(a < b for a, b in zip(times, times[1:]))
        assert len(store) <= store.cap
        if newest is not None:
            assert store.latest.time == newest
