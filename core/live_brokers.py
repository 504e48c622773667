"""
Live brokers: venue-specific execution and account sync.

Each broker wraps an injected VenueClient (the signed exchange API) and owns
what differs between venues:

    Coinbase     spot exits sell everything (close_all); INTX perpetual exits
                 use the exact base size; INTX fills are applied to the stored
                 position locally because the venue sync only sees spot balances
    Hyperliquid  coin name without "-PERP"; slippage as a fraction; exits are
                 reduce-only with the exact size; positions mirror the venue

Recording a fill that the venue already executed must not fail silently. Any
error while writing the trade raises CriticalRecordingFailure; the order
router turns that into a paused session.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, List, Optional

from core.exceptions import CriticalRecordingFailure, VenueSyncError
from core.models import (
    Account,
    BOOK_LIVE,
    OrderRequest,
    OrderResult,
    Position,
    Trade,
    new_id,
    utc_now,
)
from core.ports import FillReport, VenueAccountState, VenueClient, VenuePosition

logger = logging.getLogger(__name__)

# Venue sometimes reports 0 equity on a bad read; do not trust it for funded accounts
ZERO_EQUITY_GUARD_USD = 10.0


def realized_pnl_for(position: Optional[Position], fill_price: float, fill_size: float) -> float:
    if position is None or fill_price <= 0 or fill_size <= 0:
        return 0.0
    if position.side == "long":
        return (fill_price - position.avg_entry) * fill_size
    return (position.avg_entry - fill_price) * fill_size


def is_intx_market(market: str) -> bool:
    return "-PERP" in market or market.endswith("-INTX")


def critical_message(venue_name: str, order_id: Optional[str]) -> str:
    return (
        f"CRITICAL: {venue_name} trade executed (Order: {order_id}) but failed to record "
        f"in database. Manual review required."
    )


class LiveBroker(ABC):
    """
    Args:
        client: Venue API client
        store: TradingStore (live book)
        clock: UTC clock
    """

    venue = ""
    venue_name = ""

    def __init__(self, client: VenueClient, store, clock: Callable[[], datetime] = utc_now):
        self.client = client
        self.store = store
        self.book = BOOK_LIVE
        self.clock = clock

    def execute(self, request: OrderRequest, credentials: Optional[Dict[str, str]]) -> OrderResult:
        missing = self.missing_credentials(credentials)
        if missing:
            return OrderResult(success=False, error=missing)

        logger.info(f"LIVE: placing {request.side} {request.market} on {self.venue_name} "
                    f"(${request.notional_usd:.2f}, exit={request.is_exit})")
        try:
            report = self.place(request, credentials)
        except Exception as e:
            logger.error(f"{self.venue_name} order raised: {e}", exc_info=True)
            return OrderResult(success=False, error=str(e) or "Failed to place order")

        if not report.success:
            logger.error(f"{self.venue_name} order failed: {report.error}")
            return OrderResult(success=False, error=report.error or "Order failed")

        try:
            trade = self.record(request, report)
        except Exception as e:
            logger.critical(
                f"{self.venue_name} trade executed but recording failed: order={report.order_id} "
                f"market={request.market} side={request.side} fill={report.fill_size}@{report.fill_price} "
                f"error={e}"
            )
            raise CriticalRecordingFailure(
                critical_message(self.venue_name, report.order_id),
                venue=self.venue,
                order_id=report.order_id,
                original=e,
            ) from e

        return OrderResult(
            success=True,
            trade=trade,
            order_id=report.order_id,
            fill_price=report.fill_price,
            fill_size=report.fill_size,
        )

    def record(self, request: OrderRequest, report: FillReport) -> Trade:
        size = report.fill_size or 0.0
        price = report.fill_price or 0.0
        trade = Trade(
            id=new_id(),
            account_id=request.account_id,
            market=request.market,
            action="close" if request.is_exit else "open",
            side=request.side,
            size=size,
            price=price,
            fee=self.fee_for(request, report),
            realized_pnl=realized_pnl_for(request.exit_position, price, size) if request.is_exit else 0.0,
            leverage=self.trade_leverage(request),
            session_id=request.session_id,
            strategy_id=request.strategy_id,
            venue_order_id=report.order_id,
            created_at=self.clock(),
        )
        self.store.insert_trade(self.book, trade)
        logger.info(
            f"{self.venue_name} trade recorded: {size:.8f} {request.market} @ ${price:.2f}, "
            f"PnL ${trade.realized_pnl:.4f} ({trade.leverage}x)"
        )
        return trade

    def trade_leverage(self, request: OrderRequest) -> float:
        return request.leverage or 1

    def sync(self, account: Account, credentials: Optional[Dict[str, str]]) -> Account:
        """
        Pull positions and equity from the venue into the live book.

        Raises:
            VenueSyncError: When credentials are missing or the venue call fails
        """
        missing = self.missing_credentials(credentials)
        if missing:
            raise VenueSyncError(missing)
        try:
            state = self.client.fetch_account_state(credentials)
        except Exception as e:
            raise VenueSyncError(f"Failed to sync {self.venue_name} account: {e}") from e

        with self.store.transaction():
            self._sync_positions(account, state.positions)
            account = self._sync_equity(account, state)
        logger.info(
            f"Synced {self.venue_name} account {account.id}: equity ${account.equity:.2f}, "
            f"cash ${account.cash_balance:.2f}, {len(state.positions)} venue positions"
        )
        return account

    def _sync_equity(self, account: Account, state: VenueAccountState) -> Account:
        if state.equity == 0 and account.starting_equity > ZERO_EQUITY_GUARD_USD:
            fallback = account.equity if account.equity > 0 else account.starting_equity
            logger.warning(
                f"{self.venue_name} reported $0 equity for funded account {account.id}; "
                f"keeping ${fallback:.2f}"
            )
            account.equity = fallback
        else:
            account.equity = state.equity
            account.cash_balance = state.cash_balance
        self.store.save_account(self.book, account)
        return account

    def _sync_positions(self, account: Account, venue_positions: List[VenuePosition]) -> None:
        existing = {p.market: p for p in self.store.list_positions(self.book, account.id)}
        active = set()
        for vp in venue_positions:
            if vp.size == 0:
                continue
            market = self.normalize_market(vp.market)
            active.add(market)
            current = existing.get(market)
            self.store.save_position(self.book, Position(
                id=current.id if current else new_id(),
                account_id=account.id,
                market=market,
                side=vp.side,
                size=abs(vp.size),
                avg_entry=vp.avg_entry,
                unrealized_pnl=vp.unrealized_pnl,
                # Trailing state survives as long as the side does
                peak_price=current.peak_price if current and current.side == vp.side else None,
                leverage=vp.leverage,
                updated_at=self.clock(),
            ))
        for market in existing:
            if market not in active and self.venue_tracks(market):
                self.store.delete_position(self.book, account.id, market)
                logger.info(f"Position {market} no longer on {self.venue_name}; removed")

    def normalize_market(self, market: str) -> str:
        return market

    def venue_tracks(self, market: str) -> bool:
        """True when the venue sync is authoritative for this market."""
        return True

    @abstractmethod
    def missing_credentials(self, credentials: Optional[Dict[str, str]]) -> Optional[str]:
        ...

    @abstractmethod
    def place(self, request: OrderRequest, credentials: Dict[str, str]) -> FillReport:
        ...

    @abstractmethod
    def fee_for(self, request: OrderRequest, report: FillReport) -> float:
        ...


class CoinbaseBroker(LiveBroker):
    venue = "coinbase"
    venue_name = "Coinbase"

    def is_intx(self, market: str) -> bool:
        return is_intx_market(market)

    def missing_credentials(self, credentials: Optional[Dict[str, str]]) -> Optional[str]:
        if not credentials or not credentials.get("api_key") or not credentials.get("api_secret"):
            return "Coinbase API credentials required for live trading"
        return None

    def place(self, request: OrderRequest, credentials: Dict[str, str]) -> FillReport:
        intx = self.is_intx(request.market)
        close_all = request.is_exit and request.side == "sell" and not intx
        base_size = request.exit_size if request.is_exit and intx else None
        if close_all:
            logger.info(f"Spot exit on {request.market}: selling entire balance")
        if base_size:
            logger.info(f"INTX exit on {request.market}: exact size {base_size}")
        return self.client.place_market_order(
            credentials,
            request.market,
            request.side,
            notional_usd=request.notional_usd,
            base_size=base_size,
            close_all=close_all,
            leverage=self.trade_leverage(request),
        )

    def fee_for(self, request: OrderRequest, report: FillReport) -> float:
        return (report.fill_value or request.notional_usd) * request.fee_bps / 10000

    def trade_leverage(self, request: OrderRequest) -> float:
        if self.is_intx(request.market):
            return request.leverage or 1
        return 1

    def record(self, request: OrderRequest, report: FillReport) -> Trade:
        trade = super().record(request, report)
        # INTX positions are invisible to the spot-balance sync
        if self.is_intx(request.market):
            self._apply_fill(trade, request.is_exit)
        return trade

    def _apply_fill(self, trade: Trade, is_exit: bool) -> None:
        position = self.store.get_position(self.book, trade.account_id, trade.market)
        side = "long" if trade.side == "buy" else "short"

        if is_exit:
            if position is None:
                return
            remaining = position.size - trade.size
            if remaining <= 1e-8:
                self.store.delete_position(self.book, trade.account_id, trade.market)
            else:
                position.size = remaining
                position.updated_at = self.clock()
                self.store.save_position(self.book, position)
            return

        if position is not None and position.side == side:
            total = position.size + trade.size
            position.avg_entry = (position.avg_entry * position.size + trade.price * trade.size) / total
            position.size = total
            position.leverage = trade.leverage
            position.updated_at = self.clock()
            self.store.save_position(self.book, position)
            return

        self.store.save_position(self.book, Position(
            id=new_id(),
            account_id=trade.account_id,
            market=trade.market,
            side=side,
            size=trade.size,
            avg_entry=trade.price,
            peak_price=trade.price,
            leverage=trade.leverage,
            updated_at=self.clock(),
        ))

    def venue_tracks(self, market: str) -> bool:
        return not self.is_intx(market)


class HyperliquidBroker(LiveBroker):
    venue = "hyperliquid"
    venue_name = "Hyperliquid"

    @staticmethod
    def coin_for(market: str) -> str:
        if market.upper().endswith("-PERP"):
            return market[:-len("-PERP")]
        return market

    def missing_credentials(self, credentials: Optional[Dict[str, str]]) -> Optional[str]:
        if not credentials or not credentials.get("private_key"):
            return "Private key required for Hyperliquid live trading"
        return None

    def place(self, request: OrderRequest, credentials: Dict[str, str]) -> FillReport:
        return self.client.place_market_order(
            credentials,
            self.coin_for(request.market),
            request.side,
            notional_usd=request.notional_usd,
            base_size=request.exit_size if request.is_exit else None,
            slippage=request.slippage_bps / 10000,
            reduce_only=request.is_exit,
            leverage=request.leverage,
        )

    def fee_for(self, request: OrderRequest, report: FillReport) -> float:
        return (report.fill_size or 0.0) * (report.fill_price or 0.0) * request.fee_bps / 10000

    def normalize_market(self, market: str) -> str:
        return market if "-" in market else f"{market}-PERP"


LIVE_BROKERS = {
    CoinbaseBroker.venue: CoinbaseBroker,
    HyperliquidBroker.venue: HyperliquidBroker,
}


def build_live_brokers(clients: Dict[str, VenueClient], store,
                       clock: Callable[[], datetime] = utc_now) -> Dict[str, LiveBroker]:
    """Wrap each venue client in its broker; unknown venues are ignored with a warning."""
    brokers = {}
    for venue, client in (clients or {}).items():
        broker_cls = LIVE_BROKERS.get(venue)
        if broker_cls is None:
            logger.warning(f"No live broker for venue '{venue}'; orders to it will be rejected")
            continue
        brokers[venue] = broker_cls(client, store, clock)
    return brokers


def get_or_create_live_account(store, broker: LiveBroker, user_id: str,
                               credentials: Optional[Dict[str, str]]) -> Account:
    """
    The user's live account for a venue, created from the venue's equity on first use.

    Raises:
        VenueSyncError: No usable connection, or the venue could not be read
    """
    account = store.find_live_account(user_id, broker.venue)
    if account is not None:
        return account

    missing = broker.missing_credentials(credentials)
    if missing:
        raise VenueSyncError(f"No {broker.venue_name} connection found: {missing}")
    try:
        state = broker.client.fetch_account_state(credentials)
    except Exception as e:
        raise VenueSyncError(f"Failed to read {broker.venue_name} account: {e}") from e

    account = Account(
        id=new_id(),
        starting_equity=state.equity,
        cash_balance=state.equity,
        equity=state.equity,
        user_id=user_id,
        venue=broker.venue,
    )
    store.save_account(BOOK_LIVE, account)
    logger.info(f"Created live {broker.venue_name} account {account.id} for user {user_id} "
                f"(equity ${state.equity:.2f})")
    return account
