"""
Position sizing.

Turns equity, the model's leverage choice and the strategy caps into an order
notional:

    ai_target   = equity * L_ai * 0.99
    max_allowed = equity * max_leverage * 0.99
    room        = max(0, min(ai_target, max_allowed) - existing_exposure)
    notional    = min(max_position_usd, room)

Spot buys are capped at 99% of cash. Optional confidence scaling shrinks the
notional to 50-100%. The result is floored to the venue minimum, then two
post-hoc caps apply: total position on the market vs max_position_usd, and
projected leverage vs max_leverage. Each cap shrinks the order, or rejects it
when what is left is under the venue minimum.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional

from core.config import ConfidenceControlConfig, RiskLimitsConfig
from core.models import Account, Position, SIMULATED_MODES, plain_number

logger = logging.getLogger(__name__)

EXPOSURE_SAFETY = 0.99
SPOT_CASH_SAFETY = 0.99
MIN_ORDER_PERP_USD = 10.0
MIN_ORDER_SPOT_USD = 1.0


@dataclass
class MarketProfile:
    """What a market allows: perpetual (leverage, shorts) or spot (1x, long only)."""
    market: str
    venue: str
    is_perpetual: bool
    max_leverage: float
    allow_long: bool = True
    allow_short: bool = True

    @property
    def market_type(self) -> str:
        return "perpetual" if self.is_perpetual else "spot"

    @property
    def cash_limited(self) -> bool:
        """Spot buys are paid in cash; there is no margin."""
        return not self.is_perpetual

    @property
    def min_order_usd(self) -> float:
        return MIN_ORDER_PERP_USD if self.is_perpetual else MIN_ORDER_SPOT_USD


def is_perpetual_market(market: str, venue: str, mode: str, intx_enabled: bool = False) -> bool:
    return (
        "-PERP" in market
        or market.endswith("-INTX")
        or venue == "hyperliquid"
        or mode in SIMULATED_MODES
        or (venue == "coinbase" and intx_enabled)
    )


def build_market_profile(market: str, venue: str, mode: str, account: Account,
                         risk: RiskLimitsConfig, allow_long: bool = True,
                         allow_short: bool = True) -> MarketProfile:
    perpetual = is_perpetual_market(market, venue, mode, account.intx_enabled)
    return MarketProfile(
        market=market,
        venue=venue,
        is_perpetual=perpetual,
        max_leverage=risk.max_leverage if perpetual else 1,
        allow_long=allow_long,
        allow_short=allow_short and perpetual,
    )


def total_exposure(positions: List[Position]) -> float:
    """Sum of entry notionals across open positions."""
    return sum(p.entry_notional for p in positions)


def actual_leverage(ai_leverage: Optional[float], max_leverage: float) -> int:
    """Round the model's leverage half-up and clamp it to [1, max_leverage]."""
    requested = ai_leverage if ai_leverage is not None else 1
    rounded = int(math.floor(requested + 0.5))
    return int(max(1, min(rounded, math.floor(max_leverage))))


@dataclass
class SizingResult:
    approved: bool
    notional: float = 0.0
    leverage: int = 1
    reason: str = ""
    check: str = ""
    adjustments: List[str] = field(default_factory=list)


class PositionSizer:
    """
    Args:
        risk: Strategy risk limits
        confidence_control: Confidence scaling settings
        min_confidence: Resolved minimum confidence
    """

    def __init__(self, risk: RiskLimitsConfig, confidence_control: ConfidenceControlConfig,
                 min_confidence: float):
        self.risk = risk
        self.confidence_control = confidence_control
        self.min_confidence = min_confidence

    def size(self, *, account: Account, profile: MarketProfile, bias: str, confidence: float,
             ai_leverage: Optional[float], position: Optional[Position],
             all_positions: List[Position]) -> SizingResult:
        equity = account.equity
        max_position = self.risk.max_position_usd
        max_leverage = profile.max_leverage
        minimum = profile.min_order_usd
        leverage = actual_leverage(ai_leverage, max_leverage)
        adjustments: List[str] = []

        exposure = total_exposure(all_positions)
        ai_target = equity * leverage * EXPOSURE_SAFETY
        max_allowed = equity * max_leverage * EXPOSURE_SAFETY
        room = max(0.0, min(ai_target, max_allowed) - exposure)
        notional = min(max_position, room)

        spot_buy = profile.cash_limited and bias == "long"
        if spot_buy:
            cash_cap = account.cash_balance * SPOT_CASH_SAFETY
            if notional > cash_cap:
                logger.info(
                    f"Spot buy limited from ${notional:.2f} to ${cash_cap:.2f} "
                    f"(available cash: ${account.cash_balance:.2f})"
                )
                notional = cash_cap
                adjustments.append("spot_cash")

        logger.debug(
            f"Sizing: equity=${equity:.2f}, leverage={leverage}x (max {max_leverage}x), "
            f"ai_target=${ai_target:.2f}, max_allowed=${max_allowed:.2f}, exposure=${exposure:.2f}, "
            f"room=${room:.2f}, max_position=${max_position}, result=${notional:.2f}"
        )

        if self.confidence_control.confidence_scaling and confidence > self.min_confidence:
            span = 1.0 - self.min_confidence
            multiplier = min(1.0, (confidence - self.min_confidence) / span) if span > 0 else 1.0
            notional = notional * (0.5 + 0.5 * multiplier)
            adjustments.append("confidence_scaling")
        notional = min(notional, max_position)

        if notional < minimum:
            if spot_buy and account.cash_balance < minimum:
                return SizingResult(
                    approved=False,
                    leverage=leverage,
                    check="insufficient_cash",
                    reason=(f"Insufficient cash: ${account.cash_balance:.2f} available, "
                            f"minimum order is ${plain_number(minimum)}"),
                )
            notional = minimum
            adjustments.append("venue_minimum")

        existing = position.entry_notional if position else 0.0
        if existing + notional > max_position:
            allowed = max(0.0, max_position - existing)
            if allowed < minimum:
                return SizingResult(
                    approved=False,
                    leverage=leverage,
                    check="max_position",
                    reason=(f"Position would exceed max: existing ${existing:.2f} + new "
                            f"${notional:.2f} = ${existing + notional:.2f} > max ${plain_number(max_position)}"),
                )
            logger.warning(f"Reducing order from ${notional:.2f} to ${allowed:.2f} to stay within max position")
            notional = allowed
            adjustments.append("max_position")

        projected = (exposure + notional) / equity if equity > 0 else math.inf
        if projected >= max_leverage:
            allowed = max(0.0, max_leverage * equity * EXPOSURE_SAFETY - exposure)
            if allowed < minimum:
                return SizingResult(
                    approved=False,
                    leverage=leverage,
                    check="projected_leverage",
                    reason=(f"Projected leverage {projected:.2f}x would exceed max {plain_number(max_leverage)}x "
                            f"(current exposure: ${exposure:.2f}, proposed: ${notional:.2f})"),
                )
            logger.warning(f"Reducing order from ${notional:.2f} to ${allowed:.2f} to stay within max leverage")
            notional = min(notional, allowed)
            adjustments.append("projected_leverage")

        return SizingResult(approved=True, notional=notional, leverage=leverage, adjustments=adjustments)

    def proposed_notional(self, equity: float, all_positions: List[Position]) -> float:
        """Notional shown on rejected decisions: max position or remaining leverage room."""
        room = max(0.0, equity * self.risk.max_leverage * EXPOSURE_SAFETY - total_exposure(all_positions))
        return min(self.risk.max_position_usd, room)
