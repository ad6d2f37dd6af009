import asyncio
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ingest.coinbase_rest import CoinbaseAPIError, CoinbaseRESTClient

from strategy.execution_types import OrderTicket, Ticker


__all__ = ["CoinbaseTransport", "ProductInfo", "CoinbaseAPIError", "GRANULARITIES"]

BROKERAGE = "/api/v3/brokerage"

GRANULARITIES = {
    60: "ONE_MINUTE",
    300: "FIVE_MINUTE",
    900: "FIFTEEN_MINUTE",
    1800: "THIRTY_MINUTE",
    3600: "ONE_HOUR",
    7200: "TWO_HOUR",
    21600: "SIX_HOUR",
    86400: "ONE_DAY",
}


@dataclass
class ProductInfo:
    product_id: str
    price_increment: Optional[float]
    base_increment: Optional[float]
    base_min_size: Optional[float]
    trading_disabled: bool
    raw: Dict[str, Any]


class CoinbaseTransport:
    """Thin adapter around the Advanced Trade REST API returning typed records."""

    def __init__(self, exchange_cfg: Optional[Dict[str, Any]] = None) -> None:
        self._exchange_cfg = exchange_cfg or {}
        self._rest: Optional[CoinbaseRESTClient] = None
        self._lock = asyncio.Lock()

    def _client(self) -> CoinbaseRESTClient:
        if self._rest is None:
            self._rest = CoinbaseRESTClient(self._exchange_cfg)
        return self._rest

    async def get_candles(self, product_id: str, granularity: int, start: int, end: int) -> List[Dict[str, Any]]:
        rest = self._client()
        data = await rest.get(
            f"{BROKERAGE}/products/{product_id}/candles",
            params={
                "start": str(int(start)),
                "end": str(int(end)),
                "granularity": GRANULARITIES.get(int(granularity), "ONE_MINUTE"),
            },
        )
        if not isinstance(data, dict):
            return []
        candles = data.get("candles") or []
        return [c for c in candles if isinstance(c, dict)]

    async def get_ticker(self, product_id: str) -> Optional[Ticker]:
        rest = self._client()
        data = await rest.get(f"{BROKERAGE}/products/{product_id}/ticker", params={"limit": 1})
        if not isinstance(data, dict):
            return None
        trades = data.get("trades") or []
        price = None
        volume = None
        if trades:
            price = self._as_float(trades[0].get("price"))
            volume = self._as_float(trades[0].get("size"))
        bid = self._as_float(data.get("best_bid"))
        ask = self._as_float(data.get("best_ask"))
        if price is None and bid is not None and ask is not None:
            price = (bid + ask) / 2
        if price is None:
            return None
        return Ticker(
            product_id=product_id,
            price=price,
            bid=bid,
            ask=ask,
            volume=volume,
            time=trades[0].get("time") if trades else None,
        )

    async def get_product(self, product_id: str) -> Optional[ProductInfo]:
        rest = self._client()
        data = await rest.get(f"{BROKERAGE}/products/{product_id}")
        if not isinstance(data, dict):
            return None
        return ProductInfo(
            product_id=data.get("product_id", product_id),
            price_increment=self._as_float(data.get("price_increment") or data.get("quote_increment")),
            base_increment=self._as_float(data.get("base_increment")),
            base_min_size=self._as_float(data.get("base_min_size")),
            trading_disabled=bool(data.get("trading_disabled", False)),
            raw=data,
        )

    async def submit_order(
        self,
        product_id: str,
        side: str,
        size: float,
        order_type: str = "market",
        price: Optional[float] = None,
        post_only: bool = False,
        client_order_id: Optional[str] = None,
    ) -> OrderTicket:
        side_upper = side.upper()
        if side_upper not in ("BUY", "SELL"):
            raise ValueError("side must be BUY or SELL")
        if size <= 0:
            raise ValueError("size must be positive")
        order_type = order_type.lower()
        if order_type == "market":
            configuration = {"market_market_ioc": {"base_size": self._fmt(size)}}
        elif order_type == "limit":
            if price is None or price <= 0:
                raise ValueError("limit orders require a positive price")
            configuration = {
                "limit_limit_gtc": {
                    "base_size": self._fmt(size),
                    "limit_price": self._fmt(price),
                    "post_only": bool(post_only),
                }
            }
        else:
            raise ValueError(f"unsupported order type {order_type!r}")

        client_order_id = client_order_id or str(uuid.uuid4())
        body = {
            "client_order_id": client_order_id,
            "product_id": product_id,
            "side": side_upper,
            "order_configuration": configuration,
        }
        rest = self._client()
        data = await rest.post(f"{BROKERAGE}/orders", body=body)
        if not isinstance(data, dict) or not data.get("success", False):
            error = (data or {}).get("error_response", {}) if isinstance(data, dict) else {}
            raise CoinbaseAPIError(
                400,
                error.get("error") or error.get("preview_failure_reason"),
                error.get("message") or error.get("error_details"),
                str(data),
            )
        success = data.get("success_response") or {}
        return OrderTicket(
            product_id=product_id,
            side=side_upper,
            type=order_type.upper(),
            size=float(size),
            status="PENDING",
            price=price,
            post_only=bool(post_only),
            order_id=success.get("order_id") or data.get("order_id"),
            client_order_id=success.get("client_order_id") or client_order_id,
            raw=data,
        )

    async def cancel_order(self, order_id: str) -> None:
        rest = self._client()
        data = await rest.post(f"{BROKERAGE}/orders/batch_cancel", body={"order_ids": [order_id]})
        results = (data or {}).get("results") if isinstance(data, dict) else None
        if not results:
            raise CoinbaseAPIError(500, None, "empty cancel response", str(data))
        result = results[0]
        if not result.get("success", False):
            reason = result.get("failure_reason") or "UNKNOWN_CANCEL_FAILURE_REASON"
            raise CoinbaseAPIError(400, reason, f"cancel {order_id} failed: {reason}", str(data))

    async def get_order(self, order_id: str) -> Optional[OrderTicket]:
        rest = self._client()
        data = await rest.get(f"{BROKERAGE}/orders/historical/{order_id}")
        if not isinstance(data, dict):
            return None
        return self._parse_order(data.get("order") or data)

    async def list_open_orders(self, product_id: str) -> List[OrderTicket]:
        rest = self._client()
        payload = await rest.get(
            f"{BROKERAGE}/orders/historical/batch",
            params={"product_id": product_id, "order_status": "OPEN"},
        )
        if not isinstance(payload, dict):
            return []
        orders: List[OrderTicket] = []
        for item in payload.get("orders") or []:
            ticket = self._parse_order(item)
            if ticket:
                orders.append(ticket)
        return orders

    async def get_account_balances(self) -> Dict[str, Dict[str, float]]:
        rest = self._client()
        data = await rest.get(f"{BROKERAGE}/accounts", params={"limit": 250})
        balances: Dict[str, Dict[str, float]] = {}
        if not isinstance(data, dict):
            return balances
        for account in data.get("accounts") or []:
            currency = account.get("currency")
            if not currency:
                continue
            available = self._as_float((account.get("available_balance") or {}).get("value")) or 0.0
            hold = self._as_float((account.get("hold") or {}).get("value")) or 0.0
            entry = balances.setdefault(currency, {"available": 0.0, "hold": 0.0})
            entry["available"] += available
            entry["hold"] += hold
        return balances

    async def close(self) -> None:
        async with self._lock:
            if self._rest:
                try:
                    await self._rest.close()
                finally:
                    self._rest = None

    def _parse_order(self, payload: Any) -> Optional[OrderTicket]:
        if not isinstance(payload, dict):
            return None
        order_id = payload.get("order_id") or payload.get("id")
        if not order_id:
            return None
        configuration = payload.get("order_configuration") or {}
        limit_cfg = configuration.get("limit_limit_gtc") or {}
        market_cfg = configuration.get("market_market_ioc") or {}
        if limit_cfg:
            order_type = "LIMIT"
            size = self._as_float(limit_cfg.get("base_size"))
            price = self._as_float(limit_cfg.get("limit_price"))
            post_only = bool(limit_cfg.get("post_only", False))
        else:
            order_type = (payload.get("order_type") or ("MARKET" if market_cfg else "UNKNOWN")).upper()
            size = self._as_float(market_cfg.get("base_size"))
            price = None
            post_only = False
        filled = self._as_float(payload.get("filled_size")) or 0.0
        return OrderTicket(
            product_id=payload.get("product_id", ""),
            side=(payload.get("side") or "").upper(),
            type=order_type,
            size=size if size is not None else filled,
            status=(payload.get("status") or "UNKNOWN").upper(),
            price=price,
            filled_size=filled,
            average_filled_price=self._as_float(payload.get("average_filled_price")),
            post_only=post_only,
            order_id=str(order_id),
            client_order_id=payload.get("client_order_id"),
            created_time=payload.get("created_time"),
            raw=payload,
        )

    @staticmethod
    def _fmt(value: float) -> str:
        return f"{value:.8f}".rstrip("0").rstrip(".")

    @staticmethod
    def _as_float(value: Any) -> Optional[float]:
        if value is None or value == "":
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None
