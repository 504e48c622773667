"""
Accounting: PnL totals, equity snapshots and the reconciliation identity.

For simulated books every tick must satisfy

    total_pnl == realized_pnl + unrealized_pnl - fees_paid    (within $0.01)

where total_pnl = equity - starting_equity. A mismatch is logged and metered
but never stops the tick.
"""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from core.models import (
    Account,
    EquityPoint,
    Position,
    REALIZING_ACTIONS,
    SIMULATED_MODES,
    Trade,
    utc_now,
)
from infra.alerting import AlertSeverity

logger = logging.getLogger(__name__)

RECONCILIATION_TOLERANCE = 0.01


def calc_unrealized_pnl(position: Position, price: float) -> float:
    if position.side == "long":
        return (price - position.avg_entry) * position.size
    return (position.avg_entry - price) * position.size


@dataclass
class PnLTotals:
    starting_equity: float
    position_value_total: float
    equity: float
    unrealized_pnl: float
    realized_pnl: float
    fees_paid: float
    total_pnl: float
    return_pct: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ReconciliationResult:
    ok: bool
    expected: float
    actual: float
    difference: float


def calc_totals(account: Account, positions: List[Position], trades: Iterable[Trade],
                prices: Dict[str, float], mode: str) -> PnLTotals:
    """
    Args:
        account: Account after this tick's fills
        positions: Open positions
        trades: Every trade on the account
        prices: Fresh mid prices; missing markets use the stored unrealized PnL
        mode: Session mode (live equity comes from the venue sync)
    """
    unrealized = 0.0
    position_value = 0.0
    for position in positions:
        price = prices.get(position.market)
        if price:
            unrealized += calc_unrealized_pnl(position, price)
            position_value += position.size * price
        else:
            unrealized += position.unrealized_pnl
            position_value += position.entry_notional + position.unrealized_pnl

    realized = 0.0
    fees = 0.0
    for trade in trades:
        fees += trade.fee or 0.0
        if trade.action in REALIZING_ACTIONS:
            realized += trade.realized_pnl or 0.0

    if mode in SIMULATED_MODES:
        equity = account.cash_balance + unrealized
    else:
        equity = account.equity

    total = equity - account.starting_equity
    return_pct = total / account.starting_equity * 100 if account.starting_equity > 0 else 0.0
    return PnLTotals(
        starting_equity=account.starting_equity,
        position_value_total=position_value,
        equity=equity,
        unrealized_pnl=unrealized,
        realized_pnl=realized,
        fees_paid=fees,
        total_pnl=total,
        return_pct=return_pct,
    )


def verify_reconciliation(totals: PnLTotals,
                          tolerance: float = RECONCILIATION_TOLERANCE) -> ReconciliationResult:
    expected = totals.realized_pnl + totals.unrealized_pnl - totals.fees_paid
    difference = totals.total_pnl - expected
    return ReconciliationResult(
        ok=abs(difference) <= tolerance,
        expected=expected,
        actual=totals.total_pnl,
        difference=difference,
    )


class AccountingReconciler:
    """
    Closes out a tick: equity, equity snapshot, reconciliation.

    Args:
        store: TradingStore
        metrics: MetricsRecorder (optional)
        alerts: AlertService (optional)
    """

    def __init__(self, store, metrics=None, alerts=None):
        self.store = store
        self.metrics = metrics
        self.alerts = alerts

    def finalize(self, *, session_id: str, book: str, account_id: str, mode: str,
                 prices: Dict[str, float], now: Optional[datetime] = None) -> Optional[PnLTotals]:
        now = now or utc_now()
        account = self.store.get_account(book, account_id)
        if account is None:
            logger.error(f"Cannot finalize tick for session {session_id}: account {account_id} not found")
            return None

        positions = self.store.list_positions(book, account_id)
        trades = self.store.list_trades(book, account_id)
        totals = calc_totals(account, positions, trades, prices, mode)

        with self.store.transaction():
            if mode in SIMULATED_MODES:
                account.equity = totals.equity
                self.store.save_account(book, account)
            self.store.insert_equity_point(EquityPoint(
                session_id=session_id,
                account_id=account_id,
                equity=totals.equity,
                created_at=now,
            ))

        if self.metrics is not None:
            self.metrics.record_equity(session_id, totals.equity)
        logger.info(
            f"Session {session_id} equity ${totals.equity:.2f} "
            f"(total PnL ${totals.total_pnl:.2f}, {totals.return_pct:+.2f}%)"
        )

        if mode in SIMULATED_MODES:
            self._reconcile(session_id, totals)
        return totals

    def _reconcile(self, session_id: str, totals: PnLTotals) -> None:
        check = verify_reconciliation(totals)
        if check.ok:
            logger.debug(f"Reconciliation ok for session {session_id} (diff ${check.difference:.4f})")
            return

        logger.warning(
            f"PnL reconciliation mismatch for session {session_id}: total ${check.actual:.4f} vs "
            f"realized ${totals.realized_pnl:.4f} + unrealized ${totals.unrealized_pnl:.4f} - "
            f"fees ${totals.fees_paid:.4f} = ${check.expected:.4f} (diff ${check.difference:.4f})"
        )
        if self.metrics is not None:
            self.metrics.record_reconciliation_mismatch()
        if self.alerts is not None:
            self.alerts.notify(
                AlertSeverity.WARNING,
                "PnL reconciliation mismatch",
                f"Session {session_id} differs by ${check.difference:.4f}",
                {"session_id": session_id, **totals.to_dict()},
            )
