import logging
import math
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from ingest.coinbase_rest import CoinbaseAPIError
from ingest.rate_limiter import RateLimitedCaller
from strategy.execution_types import EntryResult, OrderTicket
from strategy.transports.coinbase import CoinbaseTransport, ProductInfo


logger = logging.getLogger(__name__)


def _decimals(step: float) -> int:
    if step <= 0 or step >= 1:
        return 0
    return max(0, int(round(-math.log10(step))))


@dataclass
class MarketMetadata:
    price_precision: int = 4
    size_step: float = 0.1
    min_order_size: float = 1.0

    def update(self, info: ProductInfo) -> None:
        if info.price_increment:
            self.price_precision = _decimals(info.price_increment)
        if info.base_increment:
            self.size_step = float(info.base_increment)
        if info.base_min_size:
            self.min_order_size = max(self.min_order_size, float(info.base_min_size))

    def round_price(self, price: float) -> float:
        return round(price, self.price_precision)

    def floor_size(self, size: float) -> float:
        if self.size_step <= 0:
            return size
        steps = math.floor(size / self.size_step + 1e-9)
        return round(steps * self.size_step, _decimals(self.size_step))


class OrderExecutor:
    """Sizes and places entry buys plus their protective take-profit sells."""

    def __init__(
        self,
        transport: CoinbaseTransport,
        caller: RateLimitedCaller,
        exchange_cfg: Optional[Dict[str, Any]] = None,
        execution_cfg: Optional[Dict[str, Any]] = None,
        on_error: Optional[Callable[[str, str], None]] = None,
        clock: Callable[[], float] = time.time,
    ):
        exchange_cfg = exchange_cfg or {}
        execution_cfg = execution_cfg or {}
        self.transport = transport
        self.caller = caller
        self.product_id = exchange_cfg.get("product_id", "SYRUP-USDC")
        self.quote_currency = exchange_cfg.get("quote_currency", "USDC")
        self.base_currency = exchange_cfg.get("base_currency", "SYRUP")
        self.buy_cooldown_s = float(execution_cfg.get("buy_cooldown_s", 60))
        self.min_position_size = float(execution_cfg.get("min_position_size", 7))
        self.position_size_pct = float(execution_cfg.get("position_size_pct", 20))
        self.fee_buffer = float(execution_cfg.get("fee_buffer", 0.995))
        self.profit_target_pct = float(execution_cfg.get("profit_target_pct", 4.0))
        self.post_only = bool(execution_cfg.get("post_only", True))
        self.metadata = MarketMetadata(
            price_precision=int(execution_cfg.get("price_precision", 4)),
            size_step=float(execution_cfg.get("size_step", 0.1)),
            min_order_size=float(execution_cfg.get("min_order_size", 1)),
        )
        self.on_error = on_error
        self._clock = clock
        self.last_buy_time: Optional[float] = None

    async def initialize(self) -> None:
        try:
            info = await self.caller.call(
                lambda: self.transport.get_product(self.product_id), "get_product", priority=2
            )
        except Exception as exc:
            self._log_transport_error("load product metadata", exc)
            return
        if info:
            self.metadata.update(info)
            logger.info(
                "Loaded %s metadata: price precision %s, size step %s, min size %s",
                self.product_id,
                self.metadata.price_precision,
                self.metadata.size_step,
                self.metadata.min_order_size,
            )

    def in_cooldown(self, now: Optional[float] = None) -> bool:
        if self.last_buy_time is None:
            return False
        now = self._clock() if now is None else now
        return now - self.last_buy_time < self.buy_cooldown_s

    def size_for(self, price: float, quote_balance: float) -> float:
        spend = min(quote_balance, max(self.min_position_size, quote_balance * self.position_size_pct / 100))
        return self.metadata.floor_size(spend * self.fee_buffer / price)

    def exit_price_for(self, fill_price: float) -> float:
        return self.metadata.round_price(fill_price * (1 + self.profit_target_pct / 100))

    async def quote_balance(self) -> Optional[float]:
        try:
            balances = await self.caller.call(self.transport.get_account_balances, "get_accounts", priority=2)
        except Exception as exc:
            self._log_transport_error("fetch balances", exc)
            return None
        return balances.get(self.quote_currency, {}).get("available")

    async def place_entry(
        self,
        price: float,
        quote_balance: Optional[float] = None,
        now: Optional[float] = None,
    ) -> Optional[EntryResult]:
        now = self._clock() if now is None else now
        if self.in_cooldown(now):
            logger.info("Buy skipped: cooldown active for another %.0fs",
                        self.buy_cooldown_s - (now - self.last_buy_time))
            return None
        if price is None or price <= 0:
            logger.error("Buy skipped: invalid price %s", price)
            return None

        if quote_balance is None:
            quote_balance = await self.quote_balance()
            if quote_balance is None:
                return None

        if quote_balance < self.min_position_size:
            logger.warning("Insufficient %s balance: %.2f < %.2f", self.quote_currency, quote_balance,
                           self.min_position_size)
            return EntryResult(insufficient_funds=True)

        size = self.size_for(price, quote_balance)
        if size < self.metadata.min_order_size:
            logger.warning("Order size %.4f below minimum %.4f", size, self.metadata.min_order_size)
            return EntryResult(insufficient_funds=True)

        buy_client_id = str(uuid.uuid4())
        try:
            ticket = await self.caller.call(
                lambda: self.transport.submit_order(
                    self.product_id, "BUY", size, "market", client_order_id=buy_client_id
                ),
                "market_buy",
                priority=1,
                critical=True,
            )
        except Exception as exc:
            self._log_transport_error("market buy", exc)
            if isinstance(exc, CoinbaseAPIError) and "insufficient" in (exc.message or "").lower():
                return EntryResult(insufficient_funds=True)
            return None

        self.last_buy_time = now
        fill_price, filled = await self._resolve_fill(ticket, price, size)
        result = EntryResult(order_id=ticket.id, fill_price=fill_price, quantity=filled)
        logger.info("Market buy %s filled %.4f @ %.6f", ticket.id, filled, fill_price)

        exit_price = self.exit_price_for(fill_price)
        exit_size = self.metadata.floor_size(filled)
        sell_client_id = str(uuid.uuid4())
        try:
            exit_ticket = await self.caller.call(
                lambda: self.transport.submit_order(
                    self.product_id, "SELL", exit_size, "limit", price=exit_price, post_only=self.post_only,
                    client_order_id=sell_client_id,
                ),
                "limit_sell",
                priority=1,
                critical=True,
            )
        except Exception as exc:
            self._log_transport_error("protective sell", exc)
            if self.on_error:
                self.on_error("exit_order_failed", f"Protective sell at {exit_price} failed: {exc}")
            return result

        result.exit_order_id = exit_ticket.id
        result.exit_price = exit_price
        logger.info("Protective sell %s placed: %.4f @ %.4f", exit_ticket.id, exit_size, exit_price)
        return result

    async def _resolve_fill(self, ticket: OrderTicket, price: float, size: float):
        fill_price = ticket.average_filled_price
        filled = ticket.filled_size
        if not fill_price or not filled:
            try:
                order = await self.caller.call(lambda: self.transport.get_order(ticket.id), "get_order", priority=2)
            except Exception as exc:
                self._log_transport_error(f"fetch order {ticket.id}", exc)
                order = None
            if order is not None:
                fill_price = order.average_filled_price or fill_price
                filled = order.filled_size or filled
        return (fill_price or price), (filled or size)

    async def cancel_order(self, order_id: str) -> bool:
        try:
            await self.caller.call(lambda: self.transport.cancel_order(order_id), "cancel_order", priority=1)
            return True
        except Exception as exc:
            self._log_transport_error(f"cancel order {order_id}", exc)
            return False

    def _log_transport_error(self, action: str, error: Exception) -> None:
        if isinstance(error, CoinbaseAPIError):
            logger.error(
                "Coinbase %s failed (status=%s, code=%s, msg=%s)",
                action,
                error.status,
                error.code,
                error.message,
            )
        else:
            logger.error("%s failed: %s", action, error)
