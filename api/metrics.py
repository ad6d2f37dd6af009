import errno
import logging
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None

POSITION_STATUS_CODES = {'inactive': 0, 'active': 1, 'trailing': 2, 'closed': 3}


class MetricsCollector:
    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        r = self.registry

        self.current_price = Gauge('current_price', 'Current market price', registry=r)
        self.score_total = Gauge('buy_score_total', 'Composite buy score (0-21)', registry=r)
        self.score_component = Gauge('buy_score_component', 'Buy score by component', ['component'], registry=r)
        self.confirmations = Gauge('signal_confirmations', 'Confirmations on the active buy signal', registry=r)
        self.pending_signals = Gauge('pending_signals', 'Pending signal queue depth', registry=r)
        self.stop_price = Gauge('trailing_stop_price', 'Price of the resting exit order', registry=r)
        self.position_status = Gauge('position_status', 'Position status (0 inactive, 1 active, 2 trailing, 3 closed)',
                                     registry=r)
        self.candles_cached = Gauge('candles_cached', 'Candles held in memory', ['window'], registry=r)

        self.signals = Counter('signal_transitions_total', 'Signal state transitions', ['action'], registry=r)
        self.orders_placed = Counter('orders_placed_total', 'Total orders placed', ['side'], registry=r)
        self.orders_filled = Counter('orders_filled_total', 'Total orders filled', ['side'], registry=r)
        self.orders_cancelled = Counter('orders_cancelled_total', 'Total orders cancelled', registry=r)
        self.trail_moves = Counter('trail_moves_total', 'Trailing stop moves', registry=r)
        self.exits = Counter('position_exits_total', 'Closed positions', ['reason'], registry=r)
        self.api_errors = Counter('api_errors_total', 'Exchange API errors', ['context'], registry=r)
        self.rejected_candles = Counter('rejected_candles_total', 'Candles dropped by validation', registry=r)

        self.cycle_latency = Histogram('cycle_latency_seconds', 'Duration of one trading cycle', registry=r,
                                       buckets=(0.1, 0.25, 0.5, 1, 2, 5, 10, 30))

    def update_price(self, price: float):
        if price is not None:
            self.current_price.set(price)

    def update_score(self, total: float, components: Dict[str, float]):
        self.score_total.set(total)
        for name, value in components.items():
            self.score_component.labels(component=name).set(value)

    def update_signal(self, confirmations: int, pending: int):
        self.confirmations.set(confirmations)
        self.pending_signals.set(pending)

    def update_position(self, status: str, stop_price: Optional[float]):
        self.position_status.set(POSITION_STATUS_CODES.get(status, 0))
        if stop_price is not None:
            self.stop_price.set(stop_price)

    def update_candles(self, window: str, count: int):
        self.candles_cached.labels(window=window).set(count)

    def record_transition(self, action: str):
        self.signals.labels(action=action).inc()

    def record_order_placed(self, side: str):
        self.orders_placed.labels(side=side).inc()

    def record_order_filled(self, side: str):
        self.orders_filled.labels(side=side).inc()

    def record_order_cancelled(self):
        self.orders_cancelled.inc()

    def record_trail_move(self):
        self.trail_moves.inc()

    def record_exit(self, reason: str):
        self.exits.labels(reason=reason).inc()

    def record_api_error(self, context: str):
        self.api_errors.labels(context=context).inc()

    def record_rejected_candles(self, count: int):
        if count > 0:
            self.rejected_candles.inc(count)

    def record_cycle_latency(self, seconds: float):
        self.cycle_latency.observe(seconds)


def start_metrics_server(port: int = 9108, registry: Optional[CollectorRegistry] = None) -> Optional[int]:
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return _METRICS_PORT
    try:
        if registry is not None:
            start_http_server(port, registry=registry)
        else:
            start_http_server(port)
    except OSError as exc:
        if exc.errno == errno.EADDRINUSE:
            logger.warning("Prometheus metrics port %s already in use; exporter disabled", port)
            return None
        raise
    _METRICS_SERVER_STARTED = True
    _METRICS_PORT = port
    logger.info("Prometheus metrics server started on port %s", port)
    return port
