import asyncio
import inspect
import logging
import sys
import time
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from analytics.indicators import IndicatorEngine, IndicatorSnapshot
from api.alerts import AlertNotifier
from api.metrics import MetricsCollector, start_metrics_server
from config import get_config_section, load_config
from ingest.candle_feed import CandleFeed
from ingest.rate_limiter import RateLimitedCaller
from monitoring.async_utils import run_tasks_with_cleanup, sleep_until_next_minute
from monitoring.logging_utils import setup_logging
from strategy.execution import OrderExecutor
from strategy.execution_types import TrackedOrder
from strategy.scorer import ScoreBreakdown, SignalScorer
from strategy.signal_manager import SignalManager
from strategy.trailing_stop import TrailingStopEngine
from strategy.transports.coinbase import CoinbaseTransport


logger = logging.getLogger(__name__)

EVENTS = ('buy_filled', 'sell_filled', 'trail_moved', 'error')
MAX_MESSAGE_LENGTH = 4000


class TradingBot:
    """Minute-cycle spot trader: candles -> indicators -> score -> signal -> orders."""

    def __init__(
        self,
        config_obj: Optional[Any] = None,
        transport: Optional[CoinbaseTransport] = None,
        metrics: Optional[MetricsCollector] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config_obj if config_obj is not None else load_config()
        self.exchange_cfg = get_config_section(self.config, 'exchange')
        self.candles_cfg = get_config_section(self.config, 'candles')
        self.indicator_cfg = get_config_section(self.config, 'indicators')
        self.scoring_cfg = get_config_section(self.config, 'scoring')
        self.signals_cfg = get_config_section(self.config, 'signals')
        self.execution_cfg = get_config_section(self.config, 'execution')
        self.rate_cfg = get_config_section(self.config, 'rate_limit')
        self.trailing_cfg = get_config_section(self.config, 'trailing_stop')
        self.scheduler_cfg = get_config_section(self.config, 'scheduler')
        self.monitoring_cfg = get_config_section(self.config, 'monitoring')

        self.product_id = self.exchange_cfg.get('product_id', 'SYRUP-USDC')
        self.base_currency = self.exchange_cfg.get('base_currency', 'SYRUP')
        self.quote_currency = self.exchange_cfg.get('quote_currency', 'USDC')
        self.minute_offset_s = float(self.scheduler_cfg.get('minute_offset_s', 0.5))
        self.error_backoff_s = float(self.scheduler_cfg.get('error_backoff_s', 5))
        self.order_check_interval_s = float(self.trailing_cfg.get('order_check_interval_s', 30))
        self._clock = clock

        self.transport = transport or CoinbaseTransport(self.exchange_cfg)
        self.caller = RateLimitedCaller(self.rate_cfg)
        self.metrics = metrics or MetricsCollector()
        self.feed = CandleFeed(self.transport, self.caller, self.exchange_cfg, self.candles_cfg, clock=clock)
        self.indicators = IndicatorEngine.from_config(self.indicator_cfg)
        self.scorer = SignalScorer(self.scoring_cfg)
        self.signals = SignalManager(self.signals_cfg, self.scoring_cfg)
        self.executor = OrderExecutor(
            self.transport,
            self.caller,
            self.exchange_cfg,
            self.execution_cfg,
            on_error=self._on_executor_error,
            clock=clock,
        )
        self.trailing = TrailingStopEngine(
            self.transport,
            self.caller,
            self.exchange_cfg,
            self.trailing_cfg,
            metadata=self.executor.metadata,
            snapshot_provider=lambda: self.last_snapshot,
            on_event=self._on_trailing_event,
            clock=clock,
        )

        self._listeners: Dict[str, List[Callable]] = defaultdict(list)
        self._background: set = set()
        self.tracked_orders: Dict[str, TrackedOrder] = {}
        self._pending_signal_reset: Optional[str] = None
        self.trading_paused = False
        self.running = False
        self._stopped = False
        self.current_price: Optional[float] = None
        self.last_snapshot: Optional[IndicatorSnapshot] = None
        self.last_breakdown: Optional[ScoreBreakdown] = None
        self.last_trade: Optional[Dict[str, Any]] = None
        self.last_cycle_at: Optional[float] = None
        self._rejected_seen = 0

    def on(self, event: str, callback: Callable) -> None:
        if event not in EVENTS:
            raise ValueError(f"Unknown event {event!r}; expected one of {', '.join(EVENTS)}")
        self._listeners[event].append(callback)

    def _emit(self, event: str, payload: Dict[str, Any]) -> None:
        for callback in list(self._listeners.get(event, ())):
            try:
                result = callback(payload)
            except Exception:
                logger.exception("Listener for %s failed", event)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._background.add(task)
                task.add_done_callback(self._background.discard)

    def pause_trading(self) -> None:
        self.trading_paused = True
        logger.warning("Trading paused; signals are still evaluated but no orders are placed")

    def resume_trading(self) -> None:
        self.trading_paused = False
        logger.info("Trading resumed")

    async def initialize(self) -> None:
        loaded = self.feed.load_cache()
        logger.info("Loaded %s cached candles", loaded)
        await self.executor.initialize()
        try:
            await self.feed.backfill()
        except Exception as exc:
            logger.error("Startup backfill failed: %s", exc)
            self.metrics.record_api_error('backfill')
        if len(self.feed.short) == 0:
            raise RuntimeError(f"No candle data available for {self.product_id} after startup backfill")
        try:
            await self.trailing.discover_open_order()
        except Exception as exc:
            logger.error("Could not check for resting sell orders: %s", exc)
            self.metrics.record_api_error('list_open_orders')

    async def run_cycle(self, now: Optional[float] = None) -> Optional[ScoreBreakdown]:
        started = time.perf_counter()
        now = self._clock() if now is None else now
        self._apply_signal_reset()
        try:
            await self.feed.refresh(now)
            await self.feed.refresh_hourly(now)
        except Exception as exc:
            logger.warning("Candle refresh failed; evaluating cached candles: %s", exc)
            self.metrics.record_api_error('candles')

        rejected = self.feed.rejected
        self.metrics.record_rejected_candles(rejected - self._rejected_seen)
        self._rejected_seen = rejected
        self.metrics.update_candles('1m', len(self.feed.short))
        self.metrics.update_candles('1h', len(self.feed.hourly))

        candles = self.feed.short.candles
        if not candles:
            logger.warning("No candles available; skipping cycle")
            return None

        snapshot = self.indicators.compute(candles)
        self.last_snapshot = snapshot
        price = snapshot.price
        self.current_price = price
        self.metrics.update_price(price)

        breakdown = self.scorer.score(
            snapshot,
            price,
            short_candles=candles,
            hourly_candles=self.feed.hourly.candles,
            signal_active=self.signals.active.is_active,
        )
        self.last_breakdown = breakdown
        self.metrics.update_score(breakdown.total, breakdown.components)
        logger.info("Price %.6f score %s", price, breakdown.summary())

        transitions = self.signals.evaluate(breakdown, price, now)
        for transition in transitions:
            self.metrics.record_transition(transition.action)
            if transition.action == 'place_buy':
                await self._execute_buy(price, now)

        self.metrics.update_signal(self.signals.active.confirmations, len(self.signals.pending))
        position = self.trailing.position
        self.metrics.update_position(self.trailing.status.value, position.stop_price if position else None)
        self.last_cycle_at = now
        self.metrics.record_cycle_latency(time.perf_counter() - started)
        return breakdown

    async def _execute_buy(self, price: float, now: float) -> None:
        if self.trading_paused:
            logger.warning("Trading paused; confirmed buy at %.6f not executed", price)
            self.signals.on_entry_failed()
            return

        result = await self.executor.place_entry(price, now=now)
        if result is None:
            self.metrics.record_api_error('entry')
            self.signals.on_entry_failed()
            return
        if result.insufficient_funds:
            self.signals.on_insufficient_funds()
            self._emit('error', {'context': 'buy', 'message': f'Insufficient {self.quote_currency} balance'})
            return

        self.signals.record_fill(result.order_id, result.fill_price, result.quantity, now)
        self.metrics.record_order_placed('BUY')
        self.metrics.record_order_filled('BUY')
        total = result.fill_price * result.quantity
        self.last_trade = {
            'side': 'BUY',
            'order_id': result.order_id,
            'price': result.fill_price,
            'quantity': result.quantity,
            'time': now,
        }
        self._emit('buy_filled', {
            'order_id': result.order_id,
            'quantity': result.quantity,
            'price': result.fill_price,
            'total': total,
        })

        position = self.trailing.position
        if not result.exit_order_id:
            if position is None or not position.is_live:
                # No resting sell yet; the trailing engine places one on its next poll.
                self.trailing.open_position(result.fill_price, result.quantity, None, None, now)
            else:
                logger.warning("Buy %s has no protective sell; %.4f left unprotected", result.order_id,
                               result.quantity)
            return
        self.metrics.record_order_placed('SELL')
        if position is None or not position.is_live:
            self.trailing.open_position(result.fill_price, result.quantity, result.exit_order_id,
                                        result.exit_price, now)
        else:
            self.tracked_orders[result.exit_order_id] = TrackedOrder(
                result.exit_order_id, 'SELL', result.exit_price, result.quantity, now
            )

    def _on_executor_error(self, context: str, message: str) -> None:
        self.metrics.record_api_error(context)
        self._emit('error', {'context': context, 'message': message})

    def _on_trailing_event(self, event: str, payload: Dict[str, Any]) -> None:
        if event == 'trail_moved':
            self.metrics.record_trail_move()
            self.metrics.record_order_cancelled()
            self.metrics.record_order_placed('SELL')
            self._emit('trail_moved', dict(payload, price=self.current_price))
        elif event == 'sell_filled':
            self._handle_sell_filled(payload.get('order_id'), payload.get('price'), payload.get('size'))
        elif event == 'position_closed':
            reason = payload.get('reason', 'unknown')
            self.metrics.record_exit(reason)
            if reason != 'exit_filled':
                self._pending_signal_reset = f'position_{reason}'
        elif event == 'error':
            self.metrics.record_api_error(payload.get('context', 'trailing_stop'))
            self._emit('error', payload)

    def _handle_sell_filled(self, order_id: Optional[str], price: Optional[float], size: Optional[float]) -> None:
        self.metrics.record_order_filled('SELL')
        entry_price = self.signals.active.average_price or None
        now = self._clock()
        self.last_trade = {'side': 'SELL', 'order_id': order_id, 'price': price, 'quantity': size, 'time': now}
        self._emit('sell_filled', {
            'order_id': order_id,
            'quantity': size or 0.0,
            'price': price or 0.0,
            'entry_price': entry_price,
        })
        self._pending_signal_reset = 'sold'

    def _apply_signal_reset(self) -> None:
        """Reset the signal for a finished exit once no sell is left resting."""
        if self._pending_signal_reset is None or self.tracked_orders:
            return
        position = self.trailing.position
        if position is not None and position.is_live:
            return
        reason, self._pending_signal_reset = self._pending_signal_reset, None
        if reason == 'sold':
            self.signals.on_sell_filled()
        else:
            self.signals.reset(reason)

    async def check_tracked_orders(self) -> int:
        """Poll exit orders not under trailing management; returns how many filled."""
        filled = 0
        for order_id in list(self.tracked_orders):
            try:
                order = await self.caller.call(lambda: self.transport.get_order(order_id), 'get_order', priority=2)
            except Exception as exc:
                logger.warning("Could not check order %s: %s", order_id, exc)
                self.metrics.record_api_error('get_order')
                continue
            if order is None:
                continue
            if order.is_filled:
                tracked = self.tracked_orders.pop(order_id)
                filled += 1
                self._handle_sell_filled(order_id, order.average_filled_price or tracked.price,
                                         order.filled_size or tracked.size)
            elif order.is_done:
                logger.warning("Tracked order %s ended as %s", order_id, order.status)
                self.tracked_orders.pop(order_id, None)
        return filled

    async def _cycle_loop(self) -> None:
        while self.running:
            await sleep_until_next_minute(self.minute_offset_s)
            if not self.running:
                break
            try:
                await self.run_cycle()
            except Exception as exc:
                logger.exception("Trading cycle failed")
                self._emit('error', {'context': 'cycle', 'message': str(exc)})
                await asyncio.sleep(self.error_backoff_s)

    async def _order_tracking_loop(self) -> None:
        while self.running:
            await asyncio.sleep(self.order_check_interval_s)
            if self.tracked_orders:
                await self.check_tracked_orders()

    async def start(self) -> None:
        self.running = True
        self._stopped = False
        await self.initialize()
        start_metrics_server(int(self.monitoring_cfg.get('prometheus_port', 9108)), self.metrics.registry)
        self.trailing.start()
        tasks = [
            asyncio.create_task(self._cycle_loop(), name='trading-cycle'),
            asyncio.create_task(self._order_tracking_loop(), name='order-tracking'),
        ]
        await run_tasks_with_cleanup(tasks, cleanup=self.stop)

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self.running = False
        await self.trailing.stop()
        for order_id in list(self.tracked_orders):
            if await self.executor.cancel_order(order_id):
                self.tracked_orders.pop(order_id)
        self.feed.short.persist()
        self.feed.hourly.persist()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.transport.close()
        logger.info("Trading bot stopped")

    async def _balances(self) -> Dict[str, Dict[str, float]]:
        return await self.caller.call(self.transport.get_account_balances, 'get_accounts', priority=2)

    async def get_status(self) -> Dict[str, Any]:
        try:
            balances = await self._balances()
        except Exception as exc:
            logger.warning("Balance fetch for status failed: %s", exc)
            balances = None
        signal = self.signals.active
        last_trade = 'No trades yet'
        if self.last_trade:
            stamp = datetime.fromtimestamp(self.last_trade['time'], tz=timezone.utc).isoformat()
            last_trade = f"{self.last_trade['side']} {self.last_trade['quantity']} @ {self.last_trade['price']} ({stamp})"
        quote = (balances or {}).get(self.quote_currency, {}).get('available')
        return {
            'balance': f"{quote:.2f}" if quote is not None else None,
            'currentPrice': f"{self.current_price:.4f}" if self.current_price is not None else None,
            'position': f"{signal.total_quantity:.2f}",
            'avgPrice': f"{signal.average_price:.4f}",
            'lastTrade': last_trade,
            'isTradingPaused': self.trading_paused,
        }

    async def get_formatted_balances(self) -> str:
        try:
            balances = await self._balances()
        except Exception as exc:
            logger.error("Error getting formatted balances: %s", exc)
            return "❌ Error fetching account balances. Please try again later."
        base = balances.get(self.base_currency, {}).get('available', 0.0)
        quote = balances.get(self.quote_currency, {}).get('available', 0.0)
        return (
            "💰 *Account Balances* \n"
            f"{self.base_currency}: *{base:.2f}*\n"
            f"{self.quote_currency}: *{quote:.2f}*"
        )

    async def get_formatted_open_orders(self) -> Optional[str]:
        try:
            orders = await self.caller.call(
                lambda: self.transport.list_open_orders(self.product_id), 'list_open_orders', priority=2
            )
        except Exception as exc:
            logger.error("Error getting open orders: %s", exc)
            return "❌ Error fetching open orders. Please try again later."
        if not orders:
            return None

        blocks = []
        for i, order in enumerate(orders, start=1):
            kind = '🟢 Sell' if order.side == 'SELL' else '🔵 Buy'
            price = order.price or 0.0
            remaining = order.remaining
            filled_pct = min(100.0, max(0.0, order.filled_size / order.size * 100)) if order.size > 0 else 0.0
            value = remaining * price
            formatted_value = f"{value:.2f}" if value >= 0.01 else '<0.01'
            lines = [
                f"\n{i}. {kind} {remaining:.1f} {self.base_currency} @ {price:.4f} {self.quote_currency}",
                f"   Status: {order.status or 'UNKNOWN'} ({filled_pct:.1f}% filled)",
                f"   Value: {formatted_value} {self.quote_currency}",
                f"   Created: {order.created_time or 'N/A'}",
            ]
            if order.order_id:
                lines.append(f"   Order ID: {order.order_id}")
            blocks.append('\n'.join(lines))

        message = '\n'.join([f"📋 *Open Orders ({len(blocks)})*"] + blocks)
        if len(message) > MAX_MESSAGE_LENGTH:
            return message[:MAX_MESSAGE_LENGTH] + '... (truncated)'
        return message


def subscribe_alerts(bot: TradingBot, notifier: AlertNotifier) -> None:
    bot.on('buy_filled', lambda e: notifier.buy_filled_alert(e['order_id'], e['quantity'], e['price'], e['total']))
    bot.on('sell_filled', lambda e: notifier.sell_filled_alert(e['order_id'], e['quantity'], e['price'],
                                                               e.get('entry_price')))
    bot.on('trail_moved', lambda e: notifier.trailing_alert(e.get('old_stop'), e['new_stop'], e.get('price')))
    bot.on('error', lambda e: notifier.error_alert(e.get('context', 'bot'), e.get('message', '')))


async def main() -> int:
    config = load_config()
    monitoring_cfg = get_config_section(config, 'monitoring')
    setup_logging(monitoring_cfg.get('log_level', 'INFO'))
    bot = TradingBot(config)
    subscribe_alerts(bot, AlertNotifier(monitoring_cfg))
    try:
        await bot.start()
    except RuntimeError as exc:
        logger.error("Startup failed: %s", exc)
        await bot.stop()
        return 1
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Bot shutting down on interrupt")
        await bot.stop()
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
