import sys

from prometheus_client import CollectorRegistry

sys.path.insert(0, '.')

from api.metrics import MetricsCollector


def _value(registry, name, labels=None):
    return registry.get_sample_value(name, labels or {})


def test_collectors_use_private_registries():
    first = MetricsCollector()
    second = MetricsCollector()
    first.update_price(1.5)
    assert _value(first.registry, 'current_price') == 1.5
    assert _value(second.registry, 'current_price') == 0.0


def test_score_and_signal_gauges():
    registry = CollectorRegistry()
    metrics = MetricsCollector(registry)
    metrics.update_score(13.5, {'technical': 6.0, 'dip': 3.0})
    metrics.update_signal(2, 1)
    assert _value(registry, 'buy_score_total') == 13.5
    assert _value(registry, 'buy_score_component', {'component': 'dip'}) == 3.0
    assert _value(registry, 'signal_confirmations') == 2
    assert _value(registry, 'pending_signals') == 1


def test_order_and_exit_counters():
    metrics = MetricsCollector()
    metrics.record_order_placed('BUY')
    metrics.record_order_placed('BUY')
    metrics.record_order_filled('SELL')
    metrics.record_exit('max_drawdown')
    metrics.record_transition('place_buy')
    registry = metrics.registry
    assert _value(registry, 'orders_placed_total', {'side': 'BUY'}) == 2
    assert _value(registry, 'orders_filled_total', {'side': 'SELL'}) == 1
    assert _value(registry, 'position_exits_total', {'reason': 'max_drawdown'}) == 1
    assert _value(registry, 'signal_transitions_total', {'action': 'place_buy'}) == 1


def test_position_status_and_rejections():
    metrics = MetricsCollector()
    metrics.update_position('trailing', 1.0967)
    metrics.record_rejected_candles(0)
    metrics.record_rejected_candles(3)
    metrics.record_cycle_latency(0.2)
    registry = metrics.registry
    assert _value(registry, 'position_status') == 2
    assert _value(registry, 'trailing_stop_price') == 1.0967
    assert _value(registry, 'rejected_candles_total') == 3
    assert _value(registry, 'cycle_latency_seconds_count') == 1
