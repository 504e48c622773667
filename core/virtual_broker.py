"""
Virtual broker: fills orders against the mid price without a venue.

Cash-settled margin model:
- cash_balance is collateral; opening a position only costs its fee
- unrealized PnL is pure price movement (no fees)
- realized PnL is added to cash on close/reduce, fees are taken from cash
- equity = cash_balance + sum(unrealized_pnl)

which gives total_pnl == realized + unrealized - fees as long as cash never
has to be clamped at zero.

Opposite-direction fills only close or reduce. They never flip a position.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, Optional

from core.models import (
    Account,
    BOOK_VIRTUAL,
    OrderRequest,
    OrderResult,
    Position,
    Trade,
    new_id,
    utc_now,
)

logger = logging.getLogger(__name__)

# Close sizes within this fraction of the position snap to the exact size
CLOSE_SNAP_PCT = 0.05
EPSILON = 1e-8


def fee_for(notional: float, fee_bps: float) -> float:
    return round(notional * fee_bps / 10000, 6)


class VirtualBroker:
    """
    Args:
        store: TradingStore
        book: Storage partition (always the virtual book in practice)
        clock: UTC clock
    """

    def __init__(self, store, book: str = BOOK_VIRTUAL, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.book = book
        self.clock = clock

    def execute(self, request: OrderRequest) -> OrderResult:
        mid = request.price
        if not mid or mid <= 0:
            return OrderResult(success=False, error=f"No price available for {request.market}")
        if request.notional_usd <= 0:
            return OrderResult(success=False, error=f"Invalid order notional: {request.notional_usd}")

        with self.store.transaction():
            account = self.store.get_account(self.book, request.account_id)
            if account is None:
                return OrderResult(success=False, error="Account not found")

            direction = 1 if request.side == "buy" else -1
            fill_price = mid * (1 + direction * request.slippage_bps / 10000)
            size = request.notional_usd / fill_price
            if request.is_exit and request.exit_size:
                size = request.exit_size

            existing = self.store.get_position(self.book, request.account_id, request.market)
            desired_side = "long" if request.side == "buy" else "short"

            if existing is None:
                trade = self._open_new(account, request, fill_price, size, desired_side)
            elif existing.side == desired_side:
                trade = self._add(account, existing, request, fill_price, size)
            else:
                trade = self._close_or_reduce(account, existing, request, fill_price, size)

            if account.cash_balance < 0:
                logger.warning(
                    f"Cash balance would go negative (${account.cash_balance:.2f}) after "
                    f"{trade.action} on {request.market}. Clamping to 0."
                )
                account.cash_balance = 0.0

            self.store.insert_trade(self.book, trade)
            self.store.save_account(self.book, account)

        logger.info(
            f"Virtual fill: {trade.action} {trade.side} {trade.size:.6f} {trade.market} @ "
            f"${trade.price:.2f} (fee ${trade.fee:.6f}, realized ${trade.realized_pnl:.4f})"
        )
        return OrderResult(
            success=True,
            trade=trade,
            order_id=trade.id,
            fill_price=trade.price,
            fill_size=trade.size,
        )

    def _trade(self, request: OrderRequest, action: str, size: float, price: float,
               fee: float, realized: float) -> Trade:
        return Trade(
            id=new_id(),
            account_id=request.account_id,
            market=request.market,
            action=action,
            side=request.side,
            size=size,
            price=price,
            fee=fee,
            realized_pnl=realized,
            leverage=request.leverage,
            session_id=request.session_id,
            strategy_id=request.strategy_id,
            created_at=self.clock(),
        )

    def _open_new(self, account: Account, request: OrderRequest, fill_price: float,
                  size: float, side: str) -> Trade:
        self.store.save_position(self.book, Position(
            id=new_id(),
            account_id=request.account_id,
            market=request.market,
            side=side,
            size=size,
            avg_entry=fill_price,
            unrealized_pnl=0.0,
            peak_price=fill_price,
            leverage=request.leverage,
            updated_at=self.clock(),
        ))
        fee = fee_for(request.notional_usd, request.fee_bps)
        account.cash_balance -= fee
        return self._trade(request, "open", size, fill_price, fee, 0.0)

    def _add(self, account: Account, position: Position, request: OrderRequest,
             fill_price: float, size: float) -> Trade:
        total_size = position.size + size
        if abs(total_size) < EPSILON:
            self.store.delete_position(self.book, position.account_id, position.market)
            logger.info(f"Position {position.market} became effectively zero after add; deleted")
        else:
            position.avg_entry = (position.avg_entry * position.size + fill_price * size) / total_size
            position.size = total_size
            position.leverage = request.leverage
            position.updated_at = self.clock()
            self.store.save_position(self.book, position)

        fee = fee_for(request.notional_usd, request.fee_bps)
        account.cash_balance -= fee
        return self._trade(request, "open", size, fill_price, fee, 0.0)

    def _close_or_reduce(self, account: Account, position: Position, request: OrderRequest,
                         fill_price: float, size: float) -> Trade:
        original = position.size
        close_size = min(size, original)
        if abs(close_size - position.size) / position.size < CLOSE_SNAP_PCT:
            close_size = position.size

        remaining = position.size - close_size
        if remaining < EPSILON:
            action = "close"
            close_size = position.size
            self.store.delete_position(self.book, position.account_id, position.market)
        else:
            action = "reduce"
            position.size = remaining
            position.updated_at = self.clock()
            self.store.save_position(self.book, position)

        if position.side == "long":
            realized = (fill_price - position.avg_entry) * close_size
        else:
            realized = (position.avg_entry - fill_price) * close_size

        fee = fee_for(close_size * fill_price, request.fee_bps)
        account.cash_balance += realized - fee
        logger.info(
            f"Position {position.market} ({position.side}) {action}: closed {close_size:.6f} "
            f"of {original:.6f}"
        )
        return self._trade(request, action, close_size, fill_price, fee, realized)

    def mark_to_market(self, account_id: str, prices: Dict[str, float]) -> Optional[Account]:
        """
        Recompute unrealized PnL and equity.

        Positions without a fresh price keep their last unrealized PnL so a
        partial price set does not drop them from equity.
        """
        with self.store.transaction():
            account = self.store.get_account(self.book, account_id)
            if account is None:
                logger.error(f"Mark-to-market: account {account_id} not found")
                return None

            total_unrealized = 0.0
            for position in self.store.list_positions(self.book, account_id):
                price = prices.get(position.market)
                if not price:
                    logger.debug(
                        f"No fresh price for {position.market}, keeping unrealized "
                        f"{position.unrealized_pnl:.2f}"
                    )
                    total_unrealized += position.unrealized_pnl
                    continue
                position.unrealized_pnl = position.pnl_at(price)
                position.updated_at = self.clock()
                self.store.save_position(self.book, position)
                total_unrealized += position.unrealized_pnl

            previous = account.equity
            account.equity = account.cash_balance + total_unrealized
            self.store.save_account(self.book, account)

        logger.info(
            f"Marked account {account_id} to market: equity ${previous:.2f} -> ${account.equity:.2f}"
        )
        return account
