"""
Trade pacing and limits.

Timing constraints that sit beside the risk checks:
- Rolling-hour / rolling-day trade caps, scoped to the session
- Cooldown since the last trade on a market
- Min-hold before exits and before adding to a position

Position age always comes from the most recent "open" trade for the market.
The oldest open trade would make a reopened position look older than it is.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from core.config import TradeControlConfig

logger = logging.getLogger(__name__)


@dataclass
class TradeTimingResult:
    """Result of a pacing check"""
    approved: bool
    reason: str = ""
    check: str = ""


def _ceil_minutes(delta_seconds: float) -> int:
    return int(math.ceil(delta_seconds / 60))


class TradeLimits:
    """
    Pacing checks for one session on one account book.

    Args:
        config: Resolved trade control settings
        store: TradingStore
        book: Storage partition ("virtual" or "live")
    """

    def __init__(self, config: TradeControlConfig, store, book: str):
        self.config = config
        self.store = store
        self.book = book

    # ----- position age -----
    def last_open_time(self, account_id: str, market: str) -> Optional[datetime]:
        trades = self.store.list_trades(self.book, account_id, market=market, action="open", limit=1)
        return trades[0].created_at if trades else None

    def position_age_minutes(self, account_id: str, market: str, now: datetime) -> Optional[float]:
        """Minutes since the most recent open trade, or None when there is none."""
        opened = self.last_open_time(account_id, market)
        if opened is None:
            return None
        return (now - opened).total_seconds() / 60

    def min_hold_remaining(self, account_id: str, market: str, now: datetime) -> int:
        """Whole minutes left in the min-hold window (0 when satisfied or unknown)."""
        age = self.position_age_minutes(account_id, market, now)
        if age is None:
            return 0
        remaining = self.config.min_hold_minutes * 60 - age * 60
        return _ceil_minutes(remaining) if remaining > 0 else 0

    # ----- entry pacing -----
    def check_frequency(self, account_id: str, session_id: str, now: datetime) -> TradeTimingResult:
        last_hour = self.store.count_trades(
            self.book, account_id, session_id=session_id, since=now - timedelta(hours=1)
        )
        last_day = self.store.count_trades(
            self.book, account_id, session_id=session_id, since=now - timedelta(days=1)
        )

        # >= so the cap is never exceeded
        if last_hour >= self.config.max_trades_per_hour:
            logger.info(f"Trade frequency limit: {last_hour} >= {self.config.max_trades_per_hour} (hourly)")
            return TradeTimingResult(
                approved=False,
                reason=(f"Trade frequency limit reached: {last_hour}/"
                        f"{self.config.max_trades_per_hour} trades in last hour"),
                check="trade_frequency",
            )
        if last_day >= self.config.max_trades_per_day:
            logger.info(f"Trade frequency limit: {last_day} >= {self.config.max_trades_per_day} (daily)")
            return TradeTimingResult(
                approved=False,
                reason=(f"Trade frequency limit reached: {last_day}/"
                        f"{self.config.max_trades_per_day} trades in last day"),
                check="trade_frequency",
            )
        return TradeTimingResult(approved=True)

    def check_cooldown(self, account_id: str, market: str, now: datetime) -> TradeTimingResult:
        trades = self.store.list_trades(self.book, account_id, market=market, limit=1)
        if not trades:
            return TradeTimingResult(approved=True)

        elapsed = (now - trades[0].created_at).total_seconds()
        cooldown = self.config.cooldown_minutes * 60
        if elapsed < cooldown:
            return TradeTimingResult(
                approved=False,
                reason=f"Cooldown: {_ceil_minutes(cooldown - elapsed)} minutes remaining",
                check="cooldown",
            )
        return TradeTimingResult(approved=True)

    def check_stacking_hold(self, account_id: str, market: str, now: datetime) -> TradeTimingResult:
        remaining = self.min_hold_remaining(account_id, market, now)
        if remaining > 0:
            return TradeTimingResult(
                approved=False,
                reason=f"Min hold time (stacking): {remaining} min remaining before adding to position",
                check="min_hold_stacking",
            )
        return TradeTimingResult(approved=True)

    def check_all(self, account_id: str, session_id: str, market: str, now: datetime,
                  stacking: bool = False) -> TradeTimingResult:
        """
        Frequency, then cooldown, then (when adding to a position) min-hold.

        Args:
            stacking: True when the entry adds to an existing position
        """
        result = self.check_frequency(account_id, session_id, now)
        if not result.approved:
            return result
        result = self.check_cooldown(account_id, market, now)
        if not result.approved:
            return result
        if stacking:
            return self.check_stacking_hold(account_id, market, now)
        return TradeTimingResult(approved=True)
