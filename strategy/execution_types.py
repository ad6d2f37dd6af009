import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


OPEN_STATUSES = frozenset({"OPEN", "PENDING", "QUEUED", "ACTIVE", "NEW"})
FILLED_STATUSES = frozenset({"FILLED"})
DONE_STATUSES = frozenset({"FILLED", "CANCELLED", "EXPIRED", "FAILED"})


@dataclass
class OrderTicket:
    """Normalized view of a Coinbase order acknowledgement or order record."""

    product_id: str
    side: str
    type: str
    size: float
    status: Optional[str] = None
    price: Optional[float] = None
    filled_size: float = 0.0
    average_filled_price: Optional[float] = None
    post_only: bool = False
    order_id: Optional[str] = None
    client_order_id: Optional[str] = None
    created_time: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        if self.order_id:
            return self.order_id
        if self.client_order_id:
            return self.client_order_id
        fallback = self.raw.get("order_id") or self.raw.get("id")
        if fallback is not None:
            return str(fallback)
        return "order"

    @property
    def remaining(self) -> float:
        return max(0.0, self.size - self.filled_size)

    @property
    def is_open(self) -> bool:
        return (self.status or "").upper() in OPEN_STATUSES

    @property
    def is_filled(self) -> bool:
        return (self.status or "").upper() in FILLED_STATUSES

    @property
    def is_done(self) -> bool:
        return (self.status or "").upper() in DONE_STATUSES

    def as_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "product_id": self.product_id,
            "side": self.side,
            "type": self.type,
            "status": self.status,
            "size": self.size,
            "price": self.price,
            "filled_size": self.filled_size,
            "average_filled_price": self.average_filled_price,
            "post_only": self.post_only,
            "created_time": self.created_time,
        }
        if self.raw:
            data["raw"] = self.raw
        return data


@dataclass
class TrackedOrder:
    order_id: str
    side: str
    price: float
    size: float
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "side": self.side,
            "price": self.price,
            "size": self.size,
            "created_at": self.created_at,
        }


@dataclass
class Ticker:
    product_id: str
    price: float
    bid: Optional[float] = None
    ask: Optional[float] = None
    volume: Optional[float] = None
    time: Optional[str] = None


@dataclass
class EntryResult:
    order_id: Optional[str] = None
    fill_price: Optional[float] = None
    quantity: float = 0.0
    exit_order_id: Optional[str] = None
    exit_price: Optional[float] = None
    insufficient_funds: bool = False

    @property
    def placed(self) -> bool:
        return self.order_id is not None
