from __future__ import annotations
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, List, Optional

from strategy.signal_manager import PendingSignal, SignalState, Transition

if TYPE_CHECKING:
    from strategy.scorer import ScoreBreakdown
    from strategy.signal_manager import SignalManager


class SignalStateProcessor(ABC):
    def __init__(self, manager: SignalManager):
        self.manager = manager

    @property
    def signal(self):
        return self.manager.active

    @abstractmethod
    def process(self, breakdown: ScoreBreakdown, current_price: float, now: float) -> List[Transition]:
        pass

    def _confirm(self, transitions: List[Transition], from_state: str, current_price: float,
                 score: float, latest: Optional[PendingSignal], now: float) -> bool:
        """Count one confirmation; returns True once enough have accumulated."""
        manager = self.manager
        signal = self.signal
        last = signal.last_confirmation_time
        if last is None or now - last > manager.pending_expiry_s:
            signal.confirmations = 1
            signal.last_confirmation_time = now
            manager.emit(transitions, from_state, from_state, 'confirmation_window_started', current_price, score)
            return False

        threshold = manager.threshold(True)
        spaced_pair = latest is not None and manager.has_spaced_pending_pair(latest, threshold)
        if not spaced_pair and now - last < manager.min_confirmation_gap_s:
            return False

        signal.confirmations = min(manager.required_confirmations, signal.confirmations + 1)
        signal.last_confirmation_time = now
        manager.emit(transitions, from_state, from_state, 'confirmation', current_price, score)
        return signal.confirmations >= manager.required_confirmations

    def _place_buy(self, transitions: List[Transition], from_state: str, current_price: float,
                   score: float, now: float) -> None:
        manager = self.manager
        key = manager.idempotency_key(current_price, now)
        if not manager.mark_processed(key, now):
            return
        self.signal.confirmations = 0
        manager.pending = []
        manager.state = SignalState.CONFIRMED
        manager.emit(transitions, from_state, 'confirmed', 'place_buy', current_price, score, include_signal=True)


class IdleState(SignalStateProcessor):
    def process(self, breakdown: ScoreBreakdown, current_price: float, now: float) -> List[Transition]:
        transitions: List[Transition] = []
        manager = self.manager
        if not manager.qualifies(breakdown.total, signal_active=False):
            return transitions
        manager.add_pending(current_price, breakdown.total, breakdown.components, now)
        manager.state = SignalState.PENDING
        manager.open_signal(current_price, breakdown.total, now)
        manager.emit(transitions, SignalState.PENDING.value, SignalState.ACTIVE.value, 'open_signal', current_price,
                     breakdown.total)
        return transitions


class ActiveState(SignalStateProcessor):
    def process(self, breakdown: ScoreBreakdown, current_price: float, now: float) -> List[Transition]:
        transitions: List[Transition] = []
        manager = self.manager
        signal = self.signal

        if signal.signal_price and current_price >= signal.signal_price * (1 + manager.cancel_rise_pct / 100):
            manager.reset('price_ran_away', transitions)
            return transitions

        if signal.signal_time is not None and now - signal.signal_time > manager.stale_after_s:
            manager.reset('stale', transitions)
            return transitions

        if not manager.qualifies(breakdown.total, signal_active=True):
            return transitions

        signal.last_score = breakdown.total
        latest = manager.add_pending(current_price, breakdown.total, breakdown.components, now)
        if self._confirm(transitions, 'active', current_price, breakdown.total, latest, now):
            self._place_buy(transitions, 'active', current_price, breakdown.total, now)
        return transitions


class ConfirmedState(SignalStateProcessor):
    """Holding a position; further confirmed evaluations add to it up to max_buys."""

    def process(self, breakdown: ScoreBreakdown, current_price: float, now: float) -> List[Transition]:
        transitions: List[Transition] = []
        manager = self.manager
        if self.signal.buy_count == 0 or not manager.can_accumulate:
            return transitions
        if not manager.qualifies(breakdown.total, signal_active=True):
            return transitions

        self.signal.last_score = breakdown.total
        latest = manager.add_pending(current_price, breakdown.total, breakdown.components, now)
        if self._confirm(transitions, 'confirmed', current_price, breakdown.total, latest, now):
            self._place_buy(transitions, 'confirmed', current_price, breakdown.total, now)
        return transitions
