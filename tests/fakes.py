"""In-memory stand-ins for the Coinbase transport used across the tests."""
import itertools
import sys

sys.path.insert(0, '.')

from ingest.rate_limiter import RateLimitedCaller
from strategy.execution_types import OrderTicket, Ticker


async def no_sleep(_seconds):
    return None


def make_caller(**overrides):
    cfg = {'min_interval_s': 0.0, 'max_attempts': 3, 'base_retry_delay_s': 0.0}
    cfg.update(overrides)
    return RateLimitedCaller(cfg, sleep=no_sleep)


def minute_rows(start, closes, volume=100.0):
    rows = []
    for i, close in enumerate(closes):
        rows.append({
            'start': str(start + i * 60),
            'low': str(close * 0.999),
            'high': str(close * 1.001),
            'open': str(close),
            'close': str(close),
            'volume': str(volume),
        })
    return rows


class FakeTransport:
    def __init__(self):
        self.candles = {60: [], 3600: []}
        self.candle_calls = []
        self.ticker = None
        self.orders = {}
        self.submitted = []
        self.cancelled = []
        self.client_ids = []
        self.balances = {}
        self.fill_price = None
        self.submit_errors = []
        self.cancel_error = None
        self.closed = False
        self._ids = itertools.count(1)

    async def get_candles(self, product_id, granularity, start, end):
        self.candle_calls.append((granularity, start, end))
        return list(self.candles.get(granularity, []))

    async def get_ticker(self, product_id):
        return self.ticker

    async def get_product(self, product_id):
        return None

    async def submit_order(self, product_id, side, size, order_type='market', price=None, post_only=False,
                           client_order_id=None):
        self.client_ids.append(client_order_id)
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        order_id = f"order-{next(self._ids)}"
        is_market = order_type == 'market'
        ticket = OrderTicket(
            product_id=product_id,
            side=side,
            type=order_type.upper(),
            size=size,
            status='FILLED' if is_market else 'OPEN',
            price=price,
            filled_size=size if is_market else 0.0,
            average_filled_price=self.fill_price if is_market else None,
            post_only=post_only,
            order_id=order_id,
            client_order_id=client_order_id,
        )
        self.orders[order_id] = ticket
        self.submitted.append(ticket)
        return ticket

    async def cancel_order(self, order_id):
        if self.cancel_error is not None:
            raise self.cancel_error
        self.cancelled.append(order_id)
        if order_id in self.orders:
            self.orders[order_id].status = 'CANCELLED'

    async def get_order(self, order_id):
        return self.orders.get(order_id)

    async def list_open_orders(self, product_id):
        return [o for o in self.orders.values() if o.is_open]

    async def get_account_balances(self):
        return self.balances

    async def close(self):
        self.closed = True

    def set_price(self, price, volume=None):
        self.ticker = Ticker(product_id='SYRUP-USDC', price=price, volume=volume)
