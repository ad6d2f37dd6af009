import asyncio
import logging
import math
import time
import uuid
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from analytics.indicators import IndicatorSnapshot
from ingest.coinbase_rest import CoinbaseAPIError
from ingest.rate_limiter import RateLimitedCaller
from strategy.execution import MarketMetadata
from strategy.execution_types import OrderTicket
from strategy.transports.coinbase import CoinbaseTransport


logger = logging.getLogger(__name__)

# Cancel failures that mean the order is no longer resting, i.e. it already executed.
IMPLICIT_CLOSE_MARKERS = ("already done", "already_done", "already filled", "already_filled")

VOLUME_INTENSITY_POINTS = {"high": 20.0, "medium": 15.0}


class PositionStatus(Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    TRAILING = "trailing"
    CLOSED = "closed"


@dataclass
class Position:
    entry_price: float
    size: float
    order_id: Optional[str]
    stop_price: Optional[float]
    opened_at: float
    status: PositionStatus = PositionStatus.ACTIVE
    highest_price: float = 0.0
    last_price: Optional[float] = None
    consecutive_down: int = 0
    trail_start_price: Optional[float] = None
    trail_start_time: Optional[float] = None
    trail_start_volume: Optional[float] = None
    last_trail_time: Optional[float] = None
    trail_count: int = 0
    close_reason: Optional[str] = None
    exit_pending: Optional[str] = None
    closed_at: Optional[float] = None

    @property
    def is_live(self) -> bool:
        return self.status in (PositionStatus.ACTIVE, PositionStatus.TRAILING)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


def _num(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return None if math.isnan(number) else number


def calculate_momentum_score(snapshot: Optional[IndicatorSnapshot]) -> float:
    """Momentum on a 0-100 point scale, normalized to [0, 1]."""
    if snapshot is None:
        return 0.0
    points = 0.0

    hist = _num(snapshot.macd_hist)
    if hist is not None and hist > 0:
        points += 10 + 5 * min(1.0, abs(hist) * 100)
    if snapshot.macd_improving:
        points += 10
    if snapshot.macd_bullish_cross:
        points += 5

    rsi = _num(snapshot.rsi)
    if rsi is not None and rsi > 50:
        points += min(30.0, (rsi - 50) * 1.5)

    if snapshot.bb_near_upper:
        percent_b = _num(snapshot.bb_percent_b)
        points += 15 if percent_b is not None and percent_b > 0.7 else 10
    if snapshot.bb_expansion:
        points += 5

    spike = snapshot.volume_spike or {}
    if spike.get("with_price_increase"):
        points += VOLUME_INTENSITY_POINTS.get(spike.get("intensity"), 8.0)

    highs = snapshot.recent_highs or {}
    if highs.get("new_high"):
        points += 5 + min(3 * int(highs.get("consecutive_highs", 0)), 5)

    return max(0.0, min(1.0, points / 100.0))


class TrailingStopEngine:
    """Ratchets the resting take-profit sell upward while momentum holds."""

    def __init__(
        self,
        transport: CoinbaseTransport,
        caller: RateLimitedCaller,
        exchange_cfg: Optional[Dict[str, Any]] = None,
        trailing_cfg: Optional[Dict[str, Any]] = None,
        metadata: Optional[MarketMetadata] = None,
        snapshot_provider: Optional[Callable[[], Optional[IndicatorSnapshot]]] = None,
        on_event: Optional[Callable[[str, Dict[str, Any]], None]] = None,
        clock: Callable[[], float] = time.time,
    ):
        exchange_cfg = exchange_cfg or {}
        cfg = trailing_cfg or {}
        self.transport = transport
        self.caller = caller
        self.product_id = exchange_cfg.get("product_id", "SYRUP-USDC")
        self.initial_target_pct = float(cfg.get("initial_target_pct", 1.0))
        self.min_hold_s = float(cfg.get("min_hold_s", 300))
        self.trailing_step_pct = float(cfg.get("trailing_step_pct", 0.3))
        self.min_profit_pct = float(cfg.get("min_profit_pct", 4.0))
        self.max_limit_multiplier = float(cfg.get("max_limit_multiplier", 1.25))
        self.min_price_increment_pct = float(cfg.get("min_price_increment_pct", 0.1))
        self.momentum_threshold = float(cfg.get("momentum_threshold", 0.5))
        self.exit_momentum_threshold = float(cfg.get("exit_momentum_threshold", 0.15))
        self.cooldown_s = float(cfg.get("cooldown_s", 30))
        self.max_consecutive_trails = int(cfg.get("max_consecutive_trails", 20))
        self.max_drawdown_pct = float(cfg.get("max_drawdown_pct", 3.0))
        self.max_trail_duration_s = float(cfg.get("max_trail_duration_s", 14400))
        self.max_consecutive_down_moves = int(cfg.get("max_consecutive_down_moves", 5))
        self.volume_drop_ratio = float(cfg.get("volume_drop_ratio", 0.3))
        self.order_check_interval_s = float(cfg.get("order_check_interval_s", 30))
        self.post_only = bool(cfg.get("post_only", True))
        self.metadata = metadata or MarketMetadata()
        self.snapshot_provider = snapshot_provider
        self.on_event = on_event
        self._clock = clock

        self.position: Optional[Position] = None
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._poll_lock = asyncio.Lock()

    @property
    def status(self) -> PositionStatus:
        return self.position.status if self.position else PositionStatus.INACTIVE

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def _emit(self, event: str, **payload: Any) -> None:
        if self.on_event is None:
            return
        try:
            self.on_event(event, payload)
        except Exception:
            logger.exception("Trailing stop event handler failed for %s", event)

    def open_position(
        self,
        entry_price: float,
        size: float,
        order_id: Optional[str],
        stop_price: Optional[float] = None,
        now: Optional[float] = None,
    ) -> Position:
        now = self._clock() if now is None else now
        if stop_price is None:
            stop_price = self.metadata.round_price(entry_price * (1 + self.min_profit_pct / 100))
        self.position = Position(
            entry_price=float(entry_price),
            size=float(size),
            order_id=order_id,
            stop_price=stop_price,
            opened_at=now,
            highest_price=float(entry_price),
            last_price=float(entry_price),
        )
        logger.info(
            "[TRAILING STOP] Tracking position %.4f @ %.6f with exit order %s at %s",
            size,
            entry_price,
            order_id,
            stop_price,
        )
        return self.position

    def adopt_open_order(self, order: OrderTicket, entry_price: Optional[float] = None,
                         now: Optional[float] = None) -> Optional[Position]:
        """Track a sell limit order that was already resting when the bot started."""
        if order.side.upper() != "SELL" or order.type.upper() != "LIMIT" or not order.price:
            return None
        if entry_price is None:
            entry_price = order.price / (1 + self.min_profit_pct / 100)
        return self.open_position(entry_price, order.remaining or order.size, order.id, order.price, now)

    async def discover_open_order(self) -> Optional[Position]:
        orders = await self.caller.call(
            lambda: self.transport.list_open_orders(self.product_id), "list_open_orders", priority=2, critical=True
        )
        for order in orders:
            if order.is_open and order.side == "SELL" and order.type == "LIMIT":
                logger.info("[TRAILING STOP] Adopting open sell order %s @ %s", order.id, order.price)
                return self.adopt_open_order(order)
        logger.info("[TRAILING STOP] No open sell limit orders to adopt")
        return None

    def compute_stop(self, price: float) -> Optional[float]:
        """Next stop for ``price``, or None when it would not improve the current one enough."""
        position = self.position
        if position is None:
            return None
        floor = position.entry_price * (1 + self.min_profit_pct / 100)
        cap = position.entry_price * self.max_limit_multiplier
        candidate = price * (1 - self.trailing_step_pct / 100)
        candidate = self.metadata.round_price(max(floor, min(cap, candidate)))
        current = position.stop_price
        if current is not None:
            min_increment = price * self.min_price_increment_pct / 100
            if candidate - current <= min_increment:
                return None
        return candidate

    def exit_reason(self, price: float, now: float, momentum: Optional[float],
                    volume: Optional[float]) -> Optional[str]:
        position = self.position
        if position.highest_price > 0:
            drawdown_pct = (position.highest_price - price) / position.highest_price * 100
            if drawdown_pct > self.max_drawdown_pct:
                return "max_drawdown"
        if position.consecutive_down >= self.max_consecutive_down_moves:
            return "consecutive_down_moves"
        if position.status is PositionStatus.TRAILING:
            if position.trail_start_time is not None and now - position.trail_start_time > self.max_trail_duration_s:
                return "max_trail_duration"
            if momentum is not None and momentum < self.exit_momentum_threshold:
                return "momentum_lost"
            if (
                volume is not None
                and position.trail_start_volume
                and volume < position.trail_start_volume * self.volume_drop_ratio
            ):
                return "volume_drop"
        return None

    async def evaluate(
        self,
        price: float,
        now: Optional[float] = None,
        snapshot: Optional[IndicatorSnapshot] = None,
        volume: Optional[float] = None,
    ) -> Optional[str]:
        position = self.position
        if position is None or not position.is_live or price is None or price <= 0:
            return None
        now = self._clock() if now is None else now

        if position.last_price is not None:
            if price < position.last_price:
                position.consecutive_down += 1
            elif price > position.last_price:
                position.consecutive_down = 0
        position.last_price = price
        position.highest_price = max(position.highest_price, price)

        if position.exit_pending:
            logger.info("[TRAILING STOP] Retrying exit (%s)", position.exit_pending)
            closed = await self.close(position.exit_pending, now=now)
            return "closed" if closed else None

        momentum = calculate_momentum_score(snapshot) if snapshot is not None else None
        reason = self.exit_reason(price, now, momentum, volume)
        if reason:
            logger.warning("[TRAILING STOP] Exit condition %s at %.6f", reason, price)
            closed = await self.close(reason, now=now)
            return "closed" if closed else None

        if position.order_id is None and position.stop_price:
            placed = await self._place_stop(position.stop_price)
            return "replaced" if placed else None

        if position.status is PositionStatus.ACTIVE:
            target = position.entry_price * (1 + self.initial_target_pct / 100)
            if price >= target and now - position.opened_at >= self.min_hold_s:
                position.status = PositionStatus.TRAILING
                position.trail_start_price = price
                position.trail_start_time = now
                position.trail_start_volume = volume
                logger.info("[TRAILING STOP] Trailing started at %.6f (entry %.6f)", price, position.entry_price)
                self._emit("trailing_started", price=price, entry_price=position.entry_price)
            else:
                return None

        if momentum is None or momentum < self.momentum_threshold:
            return None
        if position.stop_price is not None and price <= position.stop_price:
            return None
        if position.last_trail_time is not None and now - position.last_trail_time < self.cooldown_s:
            return None
        if position.trail_count >= self.max_consecutive_trails:
            return None

        new_stop = self.compute_stop(price)
        if new_stop is None:
            return None
        moved = await self.move_stop(new_stop, now)
        if moved:
            return "moved"
        return "closed" if not position.is_live else None

    async def move_stop(self, new_stop: float, now: Optional[float] = None) -> bool:
        position = self.position
        now = self._clock() if now is None else now
        previous = position.stop_price
        if position.order_id:
            cancelled = await self._cancel_resting_order(position.order_id, now)
            if not cancelled:
                return False
        if not await self._place_stop(new_stop):
            return False
        position.last_trail_time = now
        position.trail_count += 1
        logger.info(
            "[TRAILING STOP] Stop moved %s -> %.4f (move %s/%s)",
            previous,
            new_stop,
            position.trail_count,
            self.max_consecutive_trails,
        )
        self._emit("trail_moved", old_stop=previous, new_stop=new_stop, order_id=position.order_id)
        return True

    async def _cancel_resting_order(self, order_id: str, now: float) -> bool:
        try:
            await self.caller.call(lambda: self.transport.cancel_order(order_id), "cancel_order", priority=1)
            self.position.order_id = None
            return True
        except Exception as exc:
            if self._order_already_gone(exc):
                logger.info("[TRAILING STOP] Order %s already executed; closing position", order_id)
                self._mark_closed("exit_filled", now)
                self._emit("sell_filled", order_id=order_id, price=self.position.stop_price,
                           size=self.position.size)
                return False
            logger.error("[TRAILING STOP] Cancel of %s failed; keeping current stop: %s", order_id, exc)
            return False

    @staticmethod
    def _order_already_gone(error: Exception) -> bool:
        if isinstance(error, CoinbaseAPIError):
            if error.is_not_found:
                return True
            text = f"{error.code or ''} {error.message or ''}".lower()
        else:
            text = str(error).lower()
        return any(marker in text for marker in IMPLICIT_CLOSE_MARKERS)

    async def _place_stop(self, stop_price: float) -> bool:
        position = self.position
        size = self.metadata.floor_size(position.size)
        client_order_id = str(uuid.uuid4())
        try:
            ticket = await self.caller.call(
                lambda: self.transport.submit_order(
                    self.product_id, "SELL", size, "limit", price=stop_price, post_only=self.post_only,
                    client_order_id=client_order_id,
                ),
                "limit_sell",
                priority=1,
                critical=True,
            )
        except Exception as exc:
            logger.error("[TRAILING STOP] Placing sell at %.4f failed: %s", stop_price, exc)
            self._emit("error", context="trailing_stop", message=f"Failed to place sell at {stop_price}: {exc}")
            return False
        position.order_id = ticket.id
        position.stop_price = stop_price
        return True

    def _mark_closed(self, reason: str, now: Optional[float] = None) -> None:
        position = self.position
        position.status = PositionStatus.CLOSED
        position.close_reason = reason
        position.closed_at = self._clock() if now is None else now
        self._emit("position_closed", reason=reason, entry_price=position.entry_price,
                   stop_price=position.stop_price)

    async def close(self, reason: str, now: Optional[float] = None) -> bool:
        """Cancel the resting sell and mark the position closed.

        Returns False when the cancel failed and the order may still rest on the book; the
        position then stays live with ``exit_pending`` set so the next poll retries.
        """
        position = self.position
        if position is None or not position.is_live:
            return True
        if position.order_id:
            now_value = self._clock() if now is None else now
            if not await self._cancel_resting_order(position.order_id, now_value):
                if position.is_live:
                    position.exit_pending = reason
                    return False
                return True
        position.exit_pending = None
        self._mark_closed(reason, now)
        return True

    async def poll(self, now: Optional[float] = None) -> Optional[str]:
        async with self._poll_lock:
            return await self._poll(now)

    async def _poll(self, now: Optional[float]) -> Optional[str]:
        position = self.position
        if position is None or not position.is_live:
            return None
        order = None
        try:
            ticker = await self.caller.call(lambda: self.transport.get_ticker(self.product_id), "get_ticker",
                                            priority=2)
            if position.order_id:
                order_id = position.order_id
                order = await self.caller.call(lambda: self.transport.get_order(order_id), "get_order", priority=2)
        except Exception as exc:
            logger.error("[TRAILING STOP] Poll failed (%s consecutive errors): %s", self.caller.consecutive_errors, exc)
            if self.caller.exceeded_error_budget:
                logger.error("[TRAILING STOP] Too many consecutive errors; stopping monitor")
                self._emit("error", context="trailing_stop", message="Too many consecutive API errors")
                if self._stop_event is not None:
                    self._stop_event.set()
            return None

        now = self._clock() if now is None else now
        if order is not None:
            if order.is_filled:
                logger.info("[TRAILING STOP] Exit order %s filled at %s", order.id, order.average_filled_price)
                self._mark_closed("exit_filled", now)
                self._emit("sell_filled", order_id=order.id, price=order.average_filled_price or order.price,
                           size=order.filled_size)
                return "closed"
            if order.is_done:
                logger.warning("[TRAILING STOP] Exit order %s is %s; no longer tracking", order.id, order.status)
                position.order_id = None
                self._mark_closed("order_gone", now)
                return "closed"

        if ticker is None:
            return None
        snapshot = self.snapshot_provider() if self.snapshot_provider else None
        volume = snapshot.volume if snapshot is not None and snapshot.volume is not None else ticker.volume
        return await self.evaluate(ticker.price, now=now, snapshot=snapshot, volume=volume)

    async def _run(self) -> None:
        logger.info("[TRAILING STOP] Monitor started (every %.0fs)", self.order_check_interval_s)
        while not self._stop_event.is_set():
            try:
                await self.poll()
            except Exception:
                logger.exception("[TRAILING STOP] Unexpected poll failure")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.order_check_interval_s)
            except asyncio.TimeoutError:
                pass
        logger.info("[TRAILING STOP] Monitor stopped")

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="trailing-stop")
        return self._task

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        async with self._poll_lock:
            if self.position is not None and self.position.is_live:
                await self.close("stopped")

    def get_status(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "running": self.running,
            "position": self.position.to_dict() if self.position else None,
        }
