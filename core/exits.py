"""
Rule-based position exits.

Runs over every open position before any new entries are considered. One
exit mode is active per strategy; each mode has its own handler:

    signal    only the emergency guardrails (max loss / max profit cap);
              everything else is left to the model's intent
    tp_sl     take profit / stop loss on unrealized PnL percent
    trailing  retracement from a persisted peak (trough for shorts), plus an
              optional initial hard stop
    time      max hold time since the most recent open trade

After a handler proposes an exit, the min-hold gate suppresses it when the
position is younger than trade_control.min_hold_minutes, unless the exit is
an emergency or time-based one.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional

from core.config import ExitMode, ExitRulesConfig, TradeControlConfig
from core.models import Position
from core.trade_limits import TradeLimits

logger = logging.getLogger(__name__)


@dataclass
class ExitDecision:
    should_exit: bool
    reason: str = ""
    is_emergency: bool = False
    is_time_based: bool = False
    suppressed: bool = False
    # Updated trailing extreme, when it moved
    peak_price: Optional[float] = None

    @property
    def kind(self) -> str:
        if self.is_emergency:
            return "emergency"
        if self.is_time_based:
            return "time"
        return "rule"


class ExitRuleEvaluator:
    """
    Decides whether open positions must be closed regardless of the model.

    Args:
        rules: Exit rules for the strategy
        trade_control: Pacing settings (min_hold_minutes)
        limits: TradeLimits used for position age
        store: TradingStore, for persisting trailing peaks
        book: Storage partition
    """

    def __init__(self, rules: ExitRulesConfig, trade_control: TradeControlConfig,
                 limits: TradeLimits, store, book: str):
        self.rules = rules
        self.trade_control = trade_control
        self.limits = limits
        self.store = store
        self.book = book
        self._handlers: Dict[ExitMode, Callable[[Position, float, float], ExitDecision]] = {
            ExitMode.SIGNAL: self._check_signal,
            ExitMode.TP_SL: self._check_tp_sl,
            ExitMode.TRAILING: self._check_trailing,
            ExitMode.TIME: self._check_time,
        }

    def check(self, position: Position, price: float, age_minutes: float) -> ExitDecision:
        """Mode handler only; no min-hold gate, no persistence."""
        return self._handlers[self.rules.mode](position, price, age_minutes)

    def evaluate(self, position: Position, price: float, now: datetime) -> ExitDecision:
        """
        Full evaluation for one position.

        Persists a moved trailing peak even when no exit follows, then applies
        the min-hold gate.
        """
        age = self.limits.position_age_minutes(position.account_id, position.market, now)
        decision = self.check(position, price, age or 0.0)

        if decision.peak_price is not None:
            position.peak_price = decision.peak_price
            self.store.save_position(self.book, position)
            logger.info(f"Updated peak_price for {position.market}: ${decision.peak_price:.2f}")

        if not decision.should_exit or decision.is_emergency or decision.is_time_based:
            return decision

        # Unknown age (no open trade on record) does not hold the exit back
        min_hold = self.trade_control.min_hold_minutes
        if age is not None and age < min_hold:
            remaining = self.limits.min_hold_remaining(position.account_id, position.market, now)
            logger.warning(
                f"Min hold time blocks exit: {remaining} min remaining "
                f"({position.market} {position.side}, age {age:.1f} min, min {min_hold} min). "
                f"Would have exited for: {decision.reason}"
            )
            decision.should_exit = False
            decision.suppressed = True
        return decision

    # ----- mode handlers -----
    def _check_signal(self, position: Position, price: float, age: float) -> ExitDecision:
        pnl_pct = position.pnl_pct_at(price)
        max_loss = self.rules.max_loss_protection_pct
        max_profit = self.rules.max_profit_cap_pct

        if max_loss and pnl_pct <= -abs(max_loss):
            return ExitDecision(
                should_exit=True,
                is_emergency=True,
                reason=f"Max loss protection: {pnl_pct:.2f}% <= -{max_loss}% (emergency guardrail)",
            )
        if max_profit and pnl_pct >= max_profit:
            return ExitDecision(
                should_exit=True,
                is_emergency=True,
                reason=f"Max profit cap: {pnl_pct:.2f}% >= {max_profit}% (emergency guardrail)",
            )
        return ExitDecision(should_exit=False)

    def _check_tp_sl(self, position: Position, price: float, age: float) -> ExitDecision:
        pnl_pct = position.pnl_pct_at(price)
        take_profit = self.rules.take_profit_pct
        stop_loss = self.rules.stop_loss_pct

        if take_profit and pnl_pct >= take_profit:
            return ExitDecision(should_exit=True, reason=f"Take profit: {pnl_pct:.2f}% >= {take_profit}%")
        if stop_loss and pnl_pct <= -abs(stop_loss):
            return ExitDecision(should_exit=True, reason=f"Stop loss: {abs(pnl_pct):.2f}% >= {stop_loss}%")
        return ExitDecision(should_exit=False)

    def _check_trailing(self, position: Position, price: float, age: float) -> ExitDecision:
        trailing = self.rules.trailing_stop_pct
        if not trailing:
            return ExitDecision(should_exit=False)

        peak = position.peak_price or position.avg_entry
        moved = None
        if position.side == "long" and price > peak:
            peak = moved = price
        elif position.side == "short" and price < peak:
            peak = moved = price

        if position.side == "long":
            drop_pct = (peak - price) / peak * 100
        else:
            drop_pct = (price - peak) / peak * 100

        if drop_pct >= trailing:
            label = "peak" if position.side == "long" else "trough"
            return ExitDecision(
                should_exit=True,
                peak_price=moved,
                reason=f"Trailing stop: {drop_pct:.2f}% from {label} ${peak:.2f} >= {trailing}%",
            )

        initial_stop = self.rules.initial_stop_loss_pct
        pnl_pct = position.pnl_pct_at(price)
        if initial_stop and pnl_pct <= -abs(initial_stop):
            return ExitDecision(
                should_exit=True,
                peak_price=moved,
                reason=f"Initial stop loss: {abs(pnl_pct):.2f}% >= {initial_stop}%",
            )
        return ExitDecision(should_exit=False, peak_price=moved)

    def _check_time(self, position: Position, price: float, age: float) -> ExitDecision:
        max_hold = self.rules.max_hold_minutes
        if max_hold and age >= max_hold:
            return ExitDecision(
                should_exit=True,
                is_time_based=True,
                reason=f"Max hold time: {age:.1f} minutes >= {max_hold} minutes",
            )
        return ExitDecision(should_exit=False)
