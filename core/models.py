"""
Records shared across the tick engine.

Sessions, accounts, positions, trades, decisions and equity points. They are
plain dataclasses; the store hands out copies, so mutating a record has no
effect until it is saved back.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import uuid


SESSION_MODES = ("virtual", "live", "arena")
SIMULATED_MODES = ("virtual", "arena")

BOOK_VIRTUAL = "virtual"
BOOK_LIVE = "live"

TRADE_ACTIONS = ("open", "close", "reduce", "flip")
REALIZING_ACTIONS = ("close", "reduce", "flip")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def book_for_mode(mode: str) -> str:
    """Storage partition for a session mode (arena trades on the virtual book)."""
    return BOOK_LIVE if mode == "live" else BOOK_VIRTUAL


def opposite_side(side: str) -> str:
    return "short" if side == "long" else "long"


def order_side_for(position_side: str) -> str:
    """Market side that opens a position of the given side."""
    return "buy" if position_side == "long" else "sell"


def plain_number(value: float) -> str:
    """Render a config number the way users typed it (5.0 -> "5", 0.15 -> "0.15")."""
    value = float(value)
    if value.is_integer():
        return str(int(value))
    return repr(value)


def signed_pct(value: float) -> str:
    return f"{'+' if value >= 0 else ''}{value:.2f}%"


@dataclass
class Session:
    """A running strategy instance."""
    id: str
    user_id: str
    mode: str = "virtual"
    venue: str = "hyperliquid"
    status: str = "running"
    cadence_seconds: Optional[float] = None
    markets: List[str] = field(default_factory=list)
    strategy_id: str = ""
    filters: Dict[str, Any] = field(default_factory=dict)
    prompt: str = ""
    model_provider: str = "openai"
    model_name: str = ""
    model_base_url: Optional[str] = None
    model_api_key: Optional[str] = None
    account_id: Optional[str] = None
    live_account_id: Optional[str] = None
    started_at: Optional[datetime] = None
    last_tick_at: Optional[datetime] = None
    error_message: Optional[str] = None


@dataclass
class Account:
    id: str
    starting_equity: float
    cash_balance: float
    equity: float
    user_id: Optional[str] = None
    venue: Optional[str] = None
    intx_enabled: bool = False


@dataclass
class Position:
    """One row per (account, market)."""
    id: str
    account_id: str
    market: str
    side: str
    size: float
    avg_entry: float
    unrealized_pnl: float = 0.0
    peak_price: Optional[float] = None
    leverage: float = 1.0
    updated_at: Optional[datetime] = None

    @property
    def entry_notional(self) -> float:
        return self.avg_entry * self.size

    def pnl_at(self, price: float) -> float:
        if self.side == "long":
            return (price - self.avg_entry) * self.size
        return (self.avg_entry - price) * self.size

    def pnl_pct_at(self, price: float) -> float:
        """Unrealized PnL as percent of entry notional."""
        if self.avg_entry <= 0 or self.size <= 0:
            return 0.0
        return self.pnl_at(price) / self.entry_notional * 100


@dataclass
class Trade:
    """Immutable execution record."""
    id: str
    account_id: str
    market: str
    action: str
    side: str
    size: float
    price: float
    fee: float = 0.0
    realized_pnl: float = 0.0
    leverage: float = 1.0
    session_id: Optional[str] = None
    strategy_id: Optional[str] = None
    venue_order_id: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class Decision:
    """Outcome of one market in one tick."""
    session_id: str
    market: Optional[str]
    action_summary: str
    created_at: datetime = field(default_factory=utc_now)
    id: str = field(default_factory=new_id)
    market_snapshot: Dict[str, Any] = field(default_factory=dict)
    indicators_snapshot: Dict[str, Any] = field(default_factory=dict)
    intent: Dict[str, Any] = field(default_factory=dict)
    confidence: float = 0.0
    risk_result: Dict[str, Any] = field(default_factory=dict)
    proposed_order: Dict[str, Any] = field(default_factory=dict)
    executed: bool = False
    error: Optional[str] = None

    def summary(self) -> Dict[str, Any]:
        return {
            "market": self.market,
            "confidence": self.confidence,
            "action_summary": self.action_summary,
            "executed": self.executed,
            "error": self.error,
        }


@dataclass
class EquityPoint:
    session_id: str
    account_id: str
    equity: float
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class OrderRequest:
    """A market order on its way to a broker."""
    mode: str
    venue: str
    account_id: str
    market: str
    side: str  # buy | sell
    notional_usd: float
    slippage_bps: float = 30
    fee_bps: float = 5
    is_exit: bool = False
    # Position being closed, for realized PnL on exits
    exit_position: Optional[Position] = None
    exit_size: Optional[float] = None
    leverage: float = 1
    price: Optional[float] = None
    session_id: Optional[str] = None
    strategy_id: Optional[str] = None


@dataclass
class OrderResult:
    success: bool
    error: Optional[str] = None
    trade: Optional[Trade] = None
    order_id: Optional[str] = None
    fill_price: Optional[float] = None
    fill_size: Optional[float] = None

    @property
    def realized_pnl(self) -> float:
        return self.trade.realized_pnl if self.trade else 0.0

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success}
        if self.error:
            data["error"] = self.error
        if self.success:
            data["trade"] = {
                "order_id": self.order_id,
                "fill_price": self.fill_price,
                "fill_size": self.fill_size,
            }
        return data
