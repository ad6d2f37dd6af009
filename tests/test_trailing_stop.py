import asyncio
import sys

import pytest

sys.path.insert(0, '.')

from analytics.indicators import IndicatorSnapshot
from ingest.coinbase_rest import CoinbaseAPIError
from strategy.execution_types import OrderTicket
from strategy.trailing_stop import PositionStatus, TrailingStopEngine, calculate_momentum_score
from fakes import FakeTransport, make_caller


def _strong(price=110.0):
    return IndicatorSnapshot(
        price=price,
        rsi=80.0,
        macd_hist=0.02,
        macd_hist_prev=0.01,
        macd_bullish_cross=True,
        bb_upper=price,
        bb_bandwidth=0.3,
        bb_percent_b=0.9,
        volume_spike={'spike': True, 'with_price_increase': True, 'intensity': 'high'},
        recent_highs={'new_high': True, 'consecutive_highs': 3},
    )


def _engine(transport=None, caller=None, **trailing_cfg):
    transport = transport or FakeTransport()
    events = []
    engine = TrailingStopEngine(
        transport,
        caller or make_caller(),
        {'product_id': 'SYRUP-USDC'},
        trailing_cfg,
        on_event=lambda event, payload: events.append((event, payload)),
        clock=lambda: 0.0,
    )
    return engine, transport, events


def _names(events):
    return [name for name, _ in events]


def _trailing(engine):
    """Open a position at 100 and walk it into the trailing phase."""
    engine.open_position(100.0, 10.0, 'order-x', now=0)

    async def run():
        await engine.evaluate(101.5, now=301, snapshot=_strong(101.5))
        return await engine.evaluate(110.0, now=400, snapshot=_strong())

    return asyncio.run(run())


def test_momentum_score_bounds():
    assert calculate_momentum_score(None) == 0.0
    assert calculate_momentum_score(IndicatorSnapshot()) == 0.0
    assert calculate_momentum_score(_strong()) == 1.0
    assert calculate_momentum_score(IndicatorSnapshot(rsi=60.0)) == pytest.approx(0.15)


def test_open_position_defaults_stop_to_profit_floor():
    engine, _, _ = _engine()
    position = engine.open_position(100.0, 10.0, 'order-x', now=0)
    assert position.stop_price == 104.0
    assert engine.status is PositionStatus.ACTIVE


@pytest.mark.parametrize('price, expected', [
    (110.0, 109.67),
    (200.0, 125.0),
    (104.2, None),
])
def test_compute_stop_clamps_between_floor_and_cap(price, expected):
    engine, _, _ = _engine()
    engine.open_position(100.0, 10.0, 'order-x', now=0)
    result = engine.compute_stop(price)
    if expected is None:
        assert result is None
    else:
        assert result == pytest.approx(expected)


def test_compute_stop_skips_moves_below_minimum_increment():
    engine, _, _ = _engine()
    engine.open_position(100.0, 10.0, 'order-x', stop_price=109.6, now=0)
    assert engine.compute_stop(110.0) is None


def test_trailing_waits_for_minimum_hold():
    engine, _, events = _engine()
    engine.open_position(100.0, 10.0, 'order-x', now=0)
    assert asyncio.run(engine.evaluate(101.5, now=100, snapshot=_strong(101.5))) is None
    assert engine.status is PositionStatus.ACTIVE
    assert events == []


def test_strong_momentum_moves_stop():
    engine, transport, events = _engine()
    assert _trailing(engine) == 'moved'

    position = engine.position
    assert position.status is PositionStatus.TRAILING
    assert position.stop_price == pytest.approx(109.67)
    assert position.trail_count == 1
    assert transport.cancelled == ['order-x']
    assert transport.submitted[-1].price == pytest.approx(109.67)
    assert position.order_id == transport.submitted[-1].id
    assert _names(events) == ['trailing_started', 'trail_moved']


def test_cooldown_between_moves():
    engine, transport, _ = _engine()
    _trailing(engine)
    assert asyncio.run(engine.evaluate(112.0, now=410, snapshot=_strong(112.0))) is None
    assert engine.position.trail_count == 1


def test_weak_momentum_does_not_move_stop():
    engine, _, _ = _engine(momentum_threshold=0.5, exit_momentum_threshold=0.0)
    engine.open_position(100.0, 10.0, 'order-x', now=0)

    async def run():
        await engine.evaluate(101.5, now=301, snapshot=IndicatorSnapshot(rsi=60.0))
        return await engine.evaluate(110.0, now=400, snapshot=IndicatorSnapshot(rsi=60.0))

    assert asyncio.run(run()) is None
    assert engine.position.stop_price == 104.0


def test_cancel_reporting_missing_order_closes_position():
    engine, transport, events = _engine()
    engine.open_position(100.0, 10.0, 'order-x', now=0)
    transport.cancel_error = CoinbaseAPIError(400, 'UNKNOWN_CANCEL_FAILURE_REASON', 'order already filled', '')

    async def run():
        await engine.evaluate(101.5, now=301, snapshot=_strong(101.5))
        return await engine.evaluate(110.0, now=400, snapshot=_strong())

    assert asyncio.run(run()) == 'closed'
    assert engine.status is PositionStatus.CLOSED
    assert engine.position.close_reason == 'exit_filled'
    assert 'sell_filled' in _names(events)


def test_other_cancel_failure_keeps_stop():
    engine, transport, _ = _engine()
    engine.open_position(100.0, 10.0, 'order-x', now=0)
    transport.cancel_error = RuntimeError('timeout')

    async def run():
        await engine.evaluate(101.5, now=301, snapshot=_strong(101.5))
        return await engine.evaluate(110.0, now=400, snapshot=_strong())

    assert asyncio.run(run()) is None
    assert engine.status is PositionStatus.TRAILING
    assert engine.position.stop_price == 104.0
    assert engine.position.order_id == 'order-x'
    assert transport.submitted == []


def test_drawdown_exit_cancels_resting_order():
    engine, transport, events = _engine()
    engine.open_position(100.0, 10.0, 'order-x', now=0)

    async def run():
        await engine.evaluate(105.0, now=10)
        return await engine.evaluate(101.0, now=20)

    assert asyncio.run(run()) == 'closed'
    assert engine.position.close_reason == 'max_drawdown'
    assert transport.cancelled == ['order-x']
    assert _names(events) == ['position_closed']


def test_momentum_loss_exits_while_trailing():
    engine, _, _ = _engine()
    _trailing(engine)
    assert asyncio.run(engine.evaluate(110.5, now=500, snapshot=IndicatorSnapshot())) == 'closed'
    assert engine.position.close_reason == 'momentum_lost'


def test_poll_detects_filled_exit_order():
    engine, transport, events = _engine()

    async def run():
        ticket = await transport.submit_order('SYRUP-USDC', 'SELL', 10.0, 'limit', price=104.0)
        engine.open_position(100.0, 10.0, ticket.id, stop_price=104.0, now=0)
        ticket.status = 'FILLED'
        ticket.filled_size = 10.0
        ticket.average_filled_price = 104.0
        transport.set_price(104.5)
        return await engine.poll(now=50)

    assert asyncio.run(run()) == 'closed'
    assert engine.position.close_reason == 'exit_filled'
    name, payload = events[-1]
    assert name == 'sell_filled'
    assert payload['price'] == 104.0


def test_poll_drops_cancelled_exit_order():
    engine, transport, _ = _engine()

    async def run():
        ticket = await transport.submit_order('SYRUP-USDC', 'SELL', 10.0, 'limit', price=104.0)
        engine.open_position(100.0, 10.0, ticket.id, now=0)
        ticket.status = 'CANCELLED'
        return await engine.poll(now=50)

    assert asyncio.run(run()) == 'closed'
    assert engine.position.close_reason == 'order_gone'


class BrokenTickerTransport(FakeTransport):
    async def get_ticker(self, product_id):
        raise RuntimeError('connection reset')


def test_monitor_stops_after_error_budget():
    engine, _, events = _engine(BrokenTickerTransport(), make_caller(max_consecutive_errors=2),
                                order_check_interval_s=0)
    engine.open_position(100.0, 10.0, 'order-x', now=0)

    async def run():
        task = engine.start()
        await asyncio.wait_for(task, timeout=5)
        await engine.stop()

    asyncio.run(run())
    assert 'error' in _names(events)
    assert engine.position.close_reason == 'stopped'
    assert not engine.running


def test_adopt_open_order_derives_entry():
    engine, _, _ = _engine()
    order = OrderTicket(product_id='SYRUP-USDC', side='SELL', type='LIMIT', size=10.0, status='OPEN',
                        price=1.04, order_id='resting')
    position = engine.adopt_open_order(order, now=0)
    assert position.entry_price == pytest.approx(1.0)
    assert position.stop_price == 1.04
    assert position.order_id == 'resting'

    buy = OrderTicket(product_id='SYRUP-USDC', side='BUY', type='LIMIT', size=1.0, price=1.0)
    assert engine.adopt_open_order(buy) is None


def test_discover_open_order_adopts_resting_sell():
    engine, transport, _ = _engine()

    async def run():
        await transport.submit_order('SYRUP-USDC', 'SELL', 10.0, 'limit', price=1.04)
        return await engine.discover_open_order()

    position = asyncio.run(run())
    assert position.order_id == 'order-1'
    assert engine.get_status()['status'] == 'active'


def test_consecutive_down_moves_exit():
    engine, _, _ = _engine()
    engine.open_position(100.0, 10.0, 'order-x', now=0)

    async def run():
        results = []
        for i, price in enumerate([99.9, 99.8, 99.7, 99.6, 99.5]):
            results.append(await engine.evaluate(price, now=10 * (i + 1)))
        return results

    assert asyncio.run(run()) == [None, None, None, None, 'closed']
    assert engine.position.close_reason == 'consecutive_down_moves'


def test_max_trail_duration_exit():
    engine, _, _ = _engine()
    _trailing(engine)
    result = asyncio.run(engine.evaluate(110.0, now=301 + 14401, snapshot=_strong()))
    assert result == 'closed'
    assert engine.position.close_reason == 'max_trail_duration'


def test_volume_drop_exit_while_trailing():
    engine, _, _ = _engine()
    engine.open_position(100.0, 10.0, 'order-x', now=0)

    async def run():
        await engine.evaluate(101.5, now=301, snapshot=_strong(101.5), volume=1000.0)
        return await engine.evaluate(101.6, now=320, snapshot=_strong(101.6), volume=200.0)

    assert asyncio.run(run()) == 'closed'
    assert engine.position.close_reason == 'volume_drop'


def test_trail_count_ceiling_stops_further_moves():
    engine, transport, _ = _engine(max_consecutive_trails=1, cooldown_s=0)
    assert _trailing(engine) == 'moved'
    submitted = len(transport.submitted)

    assert asyncio.run(engine.evaluate(120.0, now=410, snapshot=_strong(120.0))) is None
    assert engine.position.trail_count == 1
    assert engine.position.stop_price == pytest.approx(109.67)
    assert len(transport.submitted) == submitted


def test_stop_cancels_resting_order_and_closes():
    engine, transport, events = _engine()
    engine.open_position(100.0, 10.0, 'order-x', now=0)
    asyncio.run(engine.stop())
    assert transport.cancelled == ['order-x']
    assert engine.position.close_reason == 'stopped'
    assert _names(events) == ['position_closed']


def test_transient_cancel_failure_keeps_position_live_until_retry():
    engine, transport, events = _engine()
    engine.open_position(100.0, 10.0, 'order-x', now=0)
    transport.cancel_error = CoinbaseAPIError(503, 'UNAVAILABLE', 'service unavailable', '')

    async def run():
        await engine.evaluate(105.0, now=10)
        return await engine.evaluate(101.0, now=20)

    assert asyncio.run(run()) is None
    position = engine.position
    assert position.status is PositionStatus.ACTIVE
    assert position.exit_pending == 'max_drawdown'
    assert position.order_id == 'order-x'
    assert events == []

    transport.cancel_error = None
    assert asyncio.run(engine.evaluate(101.5, now=30)) == 'closed'
    assert position.close_reason == 'max_drawdown'
    assert position.exit_pending is None
    assert transport.cancelled == ['order-x']
    assert _names(events) == ['position_closed']


def test_not_found_cancel_counts_as_executed_exit():
    engine, transport, events = _engine()
    engine.open_position(100.0, 10.0, 'order-x', now=0)
    transport.cancel_error = CoinbaseAPIError(404, None, None, '')

    async def run():
        await engine.evaluate(105.0, now=10)
        return await engine.evaluate(101.0, now=20)

    assert asyncio.run(run()) == 'closed'
    assert engine.position.close_reason == 'exit_filled'
    assert 'sell_filled' in _names(events)


def test_missing_exit_order_is_placed_before_trailing():
    engine, transport, _ = _engine()
    engine.open_position(100.0, 10.0, None, now=0)

    assert asyncio.run(engine.evaluate(100.2, now=60)) == 'replaced'
    assert engine.status is PositionStatus.ACTIVE
    assert transport.submitted[-1].price == 104.0
    assert engine.position.order_id == transport.submitted[-1].id


@pytest.mark.parametrize('path', [
    [102.0, 105.0, 104.0, 108.0, 107.5, 112.0, 111.0, 118.0, 140.0],
    [101.5, 103.0, 106.0, 106.0, 105.8, 109.0, 130.0, 127.0, 150.0],
    [101.2, 101.4, 101.6, 101.8, 102.0, 102.2, 102.4],
])
def test_stop_only_ratchets_up_within_bounds(path):
    engine, _, _ = _engine(cooldown_s=0)
    engine.open_position(100.0, 10.0, 'order-x', now=0)

    async def run():
        stops = []
        for i, price in enumerate(path):
            await engine.evaluate(price, now=300 + i * 10, snapshot=_strong(price))
            stops.append(engine.position.stop_price)
        return stops

    stops = asyncio.run(run())
    assert stops == sorted(stops)
    assert all(104.0 <= stop <= 125.0 for stop in stops)
