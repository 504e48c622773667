"""
Risk gate.

Hard constraints on every proposed entry. The model proposes; NOTHING it says
can get past these checks.

The gate is an ordered pipeline of check functions. Each one returns a
CheckOutcome (approved, rejected with a reason, or adjusted with a new order
draft). The first rejection stops the pipeline; later stages are recorded as
skipped so a decision always shows the full cascade:

    1. position_path       hold / close paths that never open anything
    2. stacking            add-to-position rules
    3. confidence          minimum confidence
    4. guardrails          long/short permissions, non-entry biases
    5. entry_type          trend / breakout / mean reversion permissions
    6. trade_pacing        frequency caps, cooldown, stacking min-hold
    7. leverage_sizing     daily loss, then PositionSizer
    8. entry_confirmation  multi-signal and volatility band
    9. slippage            estimated vs configured max slippage
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from ai.intent import Intent
from core.config import ExitMode, StrategyConfig
from core.entry_types import ENTRY_TYPE_LABELS, UNKNOWN, classify_entry
from core.models import Account, Position, plain_number, signed_pct
from core.sizing import MarketProfile, PositionSizer
from core.trade_limits import TradeLimits

logger = logging.getLogger(__name__)

APPROVED = "approved"
REJECTED = "rejected"
ADJUSTED = "adjusted"

# Recorded per stage in RiskResult.checks
PASSED = "passed"
SKIPPED = "skipped"

ESTIMATED_SLIPPAGE_PCT = 0.05
CONFIRMATION_STEP = 0.1


@dataclass(frozen=True)
class OrderDraft:
    """Entry order as it moves through the gate."""
    side: Optional[str] = None
    notional: float = 0.0
    leverage: int = 1


@dataclass
class CheckOutcome:
    status: str
    reason: str = ""
    draft: Optional[OrderDraft] = None

    @property
    def rejected(self) -> bool:
        return self.status == REJECTED


def approved() -> CheckOutcome:
    return CheckOutcome(APPROVED)


def rejected(reason: str) -> CheckOutcome:
    return CheckOutcome(REJECTED, reason=reason)


def adjusted(draft: OrderDraft, reason: str = "") -> CheckOutcome:
    return CheckOutcome(ADJUSTED, reason=reason, draft=draft)


@dataclass
class RiskContext:
    """Everything the checks read. Built fresh per market."""
    intent: Intent
    market: str
    price: float
    account: Account
    position: Optional[Position]
    all_positions: List[Position]
    profile: MarketProfile
    session_id: str
    now: datetime
    indicators: Dict[str, Any] = field(default_factory=dict)
    # First equity point since UTC midnight; None means no loss yet today
    daily_start_equity: Optional[float] = None


@dataclass
class RiskResult:
    passed: bool
    reason: Optional[str] = None
    failed_check: Optional[str] = None
    checks: List[Tuple[str, str]] = field(default_factory=list)
    draft: OrderDraft = field(default_factory=OrderDraft)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "passed": self.passed,
            "checks": [{"check": name, "status": status} for name, status in self.checks],
        }
        if self.reason:
            data["reason"] = self.reason
        if self.failed_check:
            data["failed_check"] = self.failed_check
        if self.passed:
            data["order"] = {
                "side": self.draft.side,
                "notional_usd": self.draft.notional,
                "leverage": self.draft.leverage,
            }
        return data


Check = Callable[[RiskContext, OrderDraft], CheckOutcome]


def utc_midnight(now: datetime) -> datetime:
    return now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)


def exit_mode_description(config: StrategyConfig, position_side: str) -> str:
    mode = config.exit_rules.mode
    if mode == ExitMode.TRAILING:
        label = "peak" if position_side == "long" else "trough"
        trailing = config.exit_rules.trailing_stop_pct or 2
        return f"trailing stop ({plain_number(trailing)}% from {label})"
    if mode == ExitMode.TP_SL:
        return "TP/SL rules"
    if mode == ExitMode.TIME:
        return "time-based exit"
    return "automated rules"


class RiskGate:
    """
    Args:
        config: Resolved strategy config
        limits: TradeLimits for the session's book
    """

    def __init__(self, config: StrategyConfig, limits: TradeLimits):
        self.config = config
        self.limits = limits
        self.sizer = PositionSizer(config.risk, config.confidence_control, config.min_confidence)
        self.checks: List[Tuple[str, Check]] = [
            ("position_path", self._check_position_path),
            ("stacking", self._check_stacking),
            ("confidence", self._check_confidence),
            ("guardrails", self._check_guardrails),
            ("entry_type", self._check_entry_type),
            ("trade_pacing", self._check_trade_pacing),
            ("leverage_sizing", self._check_leverage_sizing),
            ("entry_confirmation", self._check_entry_confirmation),
            ("slippage", self._check_slippage),
        ]

    def evaluate(self, ctx: RiskContext) -> RiskResult:
        bias = ctx.intent.bias
        draft = OrderDraft(side="buy" if bias == "long" else "sell" if bias == "short" else None)
        checks: List[Tuple[str, str]] = []

        for index, (name, check) in enumerate(self.checks):
            outcome = check(ctx, draft)
            if outcome.rejected:
                checks.append((name, REJECTED))
                checks.extend((later, SKIPPED) for later, _ in self.checks[index + 1:])
                logger.info(f"Risk gate rejected {ctx.market} at {name}: {outcome.reason}")
                return RiskResult(passed=False, reason=outcome.reason, failed_check=name,
                                  checks=checks, draft=draft)
            if outcome.status == ADJUSTED and outcome.draft is not None:
                draft = outcome.draft
                checks.append((name, ADJUSTED))
                if outcome.reason:
                    logger.debug(f"{name} adjusted order for {ctx.market}: {outcome.reason}")
            else:
                checks.append((name, PASSED))

        return RiskResult(passed=True, checks=checks, draft=draft)

    # ----- stages -----
    def _check_position_path(self, ctx: RiskContext, draft: OrderDraft) -> CheckOutcome:
        bias = ctx.intent.bias
        position = ctx.position
        signal_mode = self.config.exit_rules.mode == ExitMode.SIGNAL

        if position is None:
            if bias == "close" and signal_mode:
                return rejected("AI said 'close' but no position to close")
            return approved()

        pnl = signed_pct(position.pnl_pct_at(ctx.price))
        if bias == "hold":
            return rejected(f"Hold: keeping {position.side} position (P&L: {pnl})")
        if bias == "neutral":
            return rejected(f"Hold: AI neutral, keeping {position.side} position (P&L: {pnl})")
        if bias == "close" and not signal_mode:
            return rejected(
                f"AI recommends closing (P&L: {pnl}) but using "
                f"{exit_mode_description(self.config, position.side)}"
            )
        if bias == position.side and signal_mode:
            return rejected(f"Hold: AI confirms {position.side} position (P&L: {pnl})")
        return approved()

    def _check_stacking(self, ctx: RiskContext, draft: OrderDraft) -> CheckOutcome:
        position = ctx.position
        if position is None:
            return approved()

        desired = "long" if ctx.intent.bias == "long" else "short"
        if not self.config.trade_control.allow_reentry_same_direction:
            return rejected(
                f"Already in {position.side} position on {ctx.market} "
                f"(${position.entry_notional:.2f}) - stacking disabled"
            )
        if desired != position.side:
            return rejected(f"Cannot enter {desired} while in {position.side} position - would flip position")
        logger.info(f"Stacking allowed: adding to {position.side} position on {ctx.market}")
        return approved()

    def _check_confidence(self, ctx: RiskContext, draft: OrderDraft) -> CheckOutcome:
        minimum = self.config.min_confidence
        if ctx.intent.confidence < minimum:
            return rejected(f"Confidence {ctx.intent.confidence:.0%} below minimum {minimum:.0%}")
        return approved()

    def _check_guardrails(self, ctx: RiskContext, draft: OrderDraft) -> CheckOutcome:
        bias = ctx.intent.bias
        guardrails = self.config.guardrails
        if bias == "long" and not (guardrails.allow_long and ctx.profile.allow_long):
            return rejected("Long positions not allowed by strategy settings")
        if bias == "short" and not (guardrails.allow_short and ctx.profile.allow_short):
            return rejected("Short positions not allowed by strategy settings")
        if bias == "hold":
            return rejected("AI decision: hold (no position to hold)")
        if bias == "neutral":
            return rejected("AI decision: neutral (no trade)")
        if bias == "close":
            return rejected("AI decision: close (exit only, no new entry)")
        return approved()

    def _check_entry_type(self, ctx: RiskContext, draft: OrderDraft) -> CheckOutcome:
        behaviors = self.config.entry.behaviors
        enabled = behaviors.enabled()
        if not enabled:
            return rejected("No entry behaviors enabled - all entries blocked by strategy settings")

        entry_type = classify_entry(ctx.indicators, ctx.price, ctx.intent.reasoning)
        if entry_type != UNKNOWN and entry_type not in enabled:
            return rejected(f"Entry type '{ENTRY_TYPE_LABELS[entry_type]}' not allowed by strategy settings")
        return approved()

    def _check_trade_pacing(self, ctx: RiskContext, draft: OrderDraft) -> CheckOutcome:
        stacking = ctx.position is not None and self.config.trade_control.allow_reentry_same_direction
        timing = self.limits.check_all(ctx.account.id, ctx.session_id, ctx.market, ctx.now, stacking=stacking)
        if not timing.approved:
            return rejected(timing.reason)
        return approved()

    def _check_leverage_sizing(self, ctx: RiskContext, draft: OrderDraft) -> CheckOutcome:
        equity = ctx.account.equity
        start = ctx.daily_start_equity if ctx.daily_start_equity is not None else equity
        daily_loss_pct = (start - equity) / start * 100 if start > 0 else 0.0
        max_daily_loss = self.config.risk.max_daily_loss_pct
        if daily_loss_pct >= max_daily_loss:
            return rejected(
                f"Max daily loss limit reached: {daily_loss_pct:.2f}% >= {plain_number(max_daily_loss)}% "
                f"(today's start: ${start:.2f}, current: ${equity:.2f})"
            )

        sizing = self.sizer.size(
            account=ctx.account,
            profile=ctx.profile,
            bias=ctx.intent.bias,
            confidence=ctx.intent.confidence,
            ai_leverage=ctx.intent.leverage,
            position=ctx.position,
            all_positions=ctx.all_positions,
        )
        if not sizing.approved:
            return rejected(sizing.reason)
        return adjusted(
            replace(draft, notional=sizing.notional, leverage=sizing.leverage),
            reason=", ".join(sizing.adjustments),
        )

    def _check_entry_confirmation(self, ctx: RiskContext, draft: OrderDraft) -> CheckOutcome:
        confirmation = self.config.entry.confirmation

        if confirmation.min_signals > 1:
            # Only one signal exists (the model), so extra signals cost confidence
            required = self.config.min_confidence + (confirmation.min_signals - 1) * CONFIRMATION_STEP
            if ctx.intent.confidence < required:
                return rejected(
                    f"Entry confirmation: Need {confirmation.min_signals} signals, "
                    f"but only have 1 (confidence too low)"
                )

        low, high = confirmation.volatility_min, confirmation.volatility_max
        if not confirmation.require_volatility_condition or not (low or high):
            return approved()

        volatility, source = self._current_volatility(ctx)
        if low and volatility < low:
            return rejected(
                f"Entry confirmation: Volatility {volatility:.2f}% ({source}) below min {plain_number(low)}%"
            )
        if high and volatility > high:
            return rejected(
                f"Entry confirmation: Volatility {volatility:.2f}% ({source}) exceeds max {plain_number(high)}%"
            )
        return approved()

    @staticmethod
    def _current_volatility(ctx: RiskContext) -> Tuple[float, str]:
        indicators = ctx.indicators or {}
        atr = (indicators.get("atr") or {}).get("value")
        if atr is not None and ctx.price > 0:
            return float(atr) / ctx.price * 100, "ATR"
        stdev = (indicators.get("volatility") or {}).get("value")
        if stdev is not None:
            return float(stdev), "StdDev"
        reference = ctx.position.avg_entry if ctx.position else ctx.price
        if ctx.price <= 0:
            return 0.0, "Price Change"
        return abs(ctx.price - reference) / ctx.price * 100, "Price Change"

    def _check_slippage(self, ctx: RiskContext, draft: OrderDraft) -> CheckOutcome:
        limit = self.config.entry.timing.slippage_limit_pct
        if ESTIMATED_SLIPPAGE_PCT > limit:
            return rejected(
                f"Max slippage exceeded: estimated {ESTIMATED_SLIPPAGE_PCT:.2f}% > max {limit:.2f}%"
            )
        return approved()

    # ----- proposals -----
    def proposed_notional(self, ctx: RiskContext) -> float:
        return self.sizer.proposed_notional(ctx.account.equity, ctx.all_positions)
