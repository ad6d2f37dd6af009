from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
import logging
import time
import uuid

from strategy.scorer import NEW_SIGNAL_THRESHOLD, RECONFIRM_THRESHOLD, ScoreBreakdown


logger = logging.getLogger(__name__)


class SignalState(Enum):
    NO_SIGNAL = "no_signal"
    PENDING = "pending"
    ACTIVE = "active"
    CONFIRMED = "confirmed"


@dataclass
class PendingSignal:
    price: float
    timestamp: float
    score: float
    component_scores: Dict[str, float] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'price': self.price,
            'timestamp': self.timestamp,
            'score': self.score,
            'component_scores': self.component_scores,
        }


@dataclass
class ActiveBuySignal:
    is_active: bool = False
    signal_price: Optional[float] = None
    signal_time: Optional[float] = None
    confirmations: int = 0
    last_confirmation_time: Optional[float] = None
    last_score: float = 0.0
    total_invested: float = 0.0
    total_quantity: float = 0.0
    average_price: float = 0.0
    buy_count: int = 0
    order_ids: List[str] = field(default_factory=list)
    signal_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'signal_id': self.signal_id,
            'is_active': self.is_active,
            'signal_price': self.signal_price,
            'signal_time': self.signal_time,
            'confirmations': self.confirmations,
            'last_confirmation_time': self.last_confirmation_time,
            'last_score': self.last_score,
            'total_invested': self.total_invested,
            'total_quantity': self.total_quantity,
            'average_price': self.average_price,
            'buy_count': self.buy_count,
            'order_ids': list(self.order_ids),
        }


@dataclass
class Transition:
    signal_id: str
    from_state: str
    to_state: str
    action: str
    price: Optional[float] = None
    score: Optional[float] = None
    signal: Optional[ActiveBuySignal] = None


class SignalManager:
    """Pending queue plus the single active buy signal for one trading pair."""

    def __init__(self, signals_cfg: Optional[Dict[str, Any]] = None, scoring_cfg: Optional[Dict[str, Any]] = None):
        signals_cfg = signals_cfg or {}
        scoring_cfg = scoring_cfg or {}
        self.max_pending = int(signals_cfg.get('max_pending', 5))
        self.pending_expiry_s = float(signals_cfg.get('pending_expiry_s', 300))
        self.min_confirmation_gap_s = float(signals_cfg.get('min_confirmation_gap_s', 60))
        self.required_confirmations = int(signals_cfg.get('required_confirmations', 2))
        self.dedupe_window_s = float(signals_cfg.get('dedupe_window_s', 10))
        self.dedupe_price_epsilon = float(signals_cfg.get('dedupe_price_epsilon', 0.0001))
        self.dedupe_score_epsilon = float(signals_cfg.get('dedupe_score_epsilon', 0.1))
        self.cancel_rise_pct = float(signals_cfg.get('cancel_rise_pct', 0.5))
        self.stale_after_s = float(signals_cfg.get('stale_after_s', 3600))
        self.processed_ttl_s = float(signals_cfg.get('processed_ttl_s', 600))
        self.max_buys = int(scoring_cfg.get('max_buys', 3))
        self.min_score = float(scoring_cfg.get('min_score', 5))

        self.pending: List[PendingSignal] = []
        self.active = ActiveBuySignal()
        self.state = SignalState.NO_SIGNAL
        self.processed: Dict[str, float] = {}

        from strategy.signal_states import ActiveState, ConfirmedState, IdleState
        self.state_map = {
            SignalState.NO_SIGNAL: IdleState,
            SignalState.PENDING: IdleState,
            SignalState.ACTIVE: ActiveState,
            SignalState.CONFIRMED: ConfirmedState,
        }

    def threshold(self, signal_active: bool) -> float:
        return float(max(self.min_score, RECONFIRM_THRESHOLD if signal_active else NEW_SIGNAL_THRESHOLD))

    def qualifies(self, score: float, signal_active: bool) -> bool:
        return score is not None and score >= self.threshold(signal_active)

    def evaluate(self, breakdown: ScoreBreakdown, current_price: float, now: Optional[float] = None) -> List[Transition]:
        now = time.time() if now is None else now
        self.prune(now)
        processor = self.state_map[self.state](self)
        transitions = processor.process(breakdown, current_price, now)
        for transition in transitions:
            logger.info(
                "Signal %s: %s -> %s (%s) price=%s score=%s",
                transition.signal_id[:8],
                transition.from_state,
                transition.to_state,
                transition.action,
                transition.price,
                transition.score,
            )
        return transitions

    def prune(self, now: float) -> None:
        self.pending = [p for p in self.pending if now - p.timestamp <= self.pending_expiry_s]
        self.processed = {k: ts for k, ts in self.processed.items() if now - ts <= self.processed_ttl_s}

    def add_pending(
        self,
        price: float,
        score: float,
        component_scores: Optional[Dict[str, float]] = None,
        now: Optional[float] = None,
        signal_id: Optional[str] = None,
    ) -> Optional[PendingSignal]:
        now = time.time() if now is None else now
        for existing in self.pending:
            if signal_id is not None and existing.id == signal_id:
                return None
            if (
                now - existing.timestamp <= self.dedupe_window_s
                and abs(existing.price - price) < self.dedupe_price_epsilon
                and abs(existing.score - score) < self.dedupe_score_epsilon
            ):
                logger.debug("Discarding repeat pending signal at %.6f score %.2f", price, score)
                return None
        entry = PendingSignal(price=price, timestamp=now, score=score, component_scores=dict(component_scores or {}))
        if signal_id is not None:
            entry.id = signal_id
        self.pending.append(entry)
        if len(self.pending) > self.max_pending:
            self.pending = self.pending[-self.max_pending:]
        return entry

    def has_spaced_pending_pair(self, latest: PendingSignal, threshold: float) -> bool:
        if latest.score < threshold:
            return False
        for prior in self.pending:
            if prior.id == latest.id:
                continue
            if latest.timestamp - prior.timestamp >= self.min_confirmation_gap_s and prior.score >= threshold:
                return True
        return False

    @staticmethod
    def idempotency_key(price: float, timestamp: float) -> str:
        return f"{price:.6f}:{int(timestamp)}"

    def mark_processed(self, key: str, now: float) -> bool:
        if key in self.processed:
            return False
        self.processed[key] = now
        return True

    def open_signal(self, price: float, score: float, now: float) -> None:
        self.active = ActiveBuySignal(
            is_active=True,
            signal_price=price,
            signal_time=now,
            confirmations=1,
            last_confirmation_time=now,
            last_score=score,
        )
        self.state = SignalState.ACTIVE

    def emit(self, transitions: List[Transition], from_state: str, to_state: str, action: str,
             price: Optional[float] = None, score: Optional[float] = None, include_signal: bool = False) -> None:
        transitions.append(
            Transition(
                signal_id=self.active.signal_id,
                from_state=from_state,
                to_state=to_state,
                action=action,
                price=price,
                score=score,
                signal=self.active if include_signal else None,
            )
        )

    def reset(self, reason: str, transitions: Optional[List[Transition]] = None) -> Transition:
        transitions = transitions if transitions is not None else []
        previous = self.state.value
        self.emit(transitions, previous, SignalState.NO_SIGNAL.value, reason, price=self.active.signal_price)
        logger.info("Resetting buy signal (%s); buys=%s invested=%.4f", reason, self.active.buy_count,
                    self.active.total_invested)
        self.active = ActiveBuySignal()
        self.pending = []
        self.state = SignalState.NO_SIGNAL
        return transitions[-1]

    def record_fill(self, order_id: str, price: float, quantity: float, now: Optional[float] = None) -> None:
        """Fold a filled buy into the active position as a weighted average."""
        if quantity <= 0 or price <= 0:
            return
        now = time.time() if now is None else now
        signal = self.active
        if not signal.is_active:
            signal.is_active = True
            signal.signal_price = price
            signal.signal_time = now
        signal.total_invested += price * quantity
        signal.total_quantity += quantity
        signal.average_price = signal.total_invested / signal.total_quantity
        signal.buy_count += 1
        if order_id and order_id not in signal.order_ids:
            signal.order_ids.append(order_id)
        signal.confirmations = 0
        signal.last_confirmation_time = None
        self.pending = []
        self.state = SignalState.CONFIRMED
        logger.info(
            "Recorded buy #%s: %.4f @ %.6f (avg %.6f, invested %.4f)",
            signal.buy_count,
            quantity,
            price,
            signal.average_price,
            signal.total_invested,
        )

    def on_entry_failed(self) -> Transition:
        if self.active.buy_count > 0:
            self.active.confirmations = 0
            self.active.last_confirmation_time = None
            self.state = SignalState.CONFIRMED
            transitions: List[Transition] = []
            self.emit(transitions, 'confirmed', 'confirmed', 'entry_failed')
            return transitions[0]
        return self.reset('entry_failed')

    def on_insufficient_funds(self) -> Transition:
        return self.reset('insufficient_funds')

    def on_sell_filled(self) -> Transition:
        return self.reset('sold')

    @property
    def can_accumulate(self) -> bool:
        return self.active.buy_count < self.max_buys

    def get_status(self) -> Dict[str, Any]:
        return {
            'state': self.state.value,
            'active_signal': self.active.to_dict(),
            'pending': [p.to_dict() for p in self.pending],
            'processed_keys': len(self.processed),
        }
