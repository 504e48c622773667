"""
Interfaces to external collaborators.

Market data, live venue execution, billing and credential lookup live outside
the tick engine. These ABCs are the only surface the engine depends on.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from core.models import Session


@dataclass
class Candle:
    time: int  # epoch ms, candle open
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "time": self.time,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }


@dataclass
class Orderbook:
    """Bids descending, asks ascending; levels are (price, size)."""
    market: str
    bids: List[List[float]] = field(default_factory=list)
    asks: List[List[float]] = field(default_factory=list)

    @property
    def mid(self) -> Optional[float]:
        if not self.bids or not self.asks:
            return None
        return (self.bids[0][0] + self.asks[0][0]) / 2

    @property
    def spread_pct(self) -> Optional[float]:
        mid = self.mid
        if not mid:
            return None
        return (self.asks[0][0] - self.bids[0][0]) / mid * 100

    def to_dict(self, depth: Optional[int] = None) -> Dict[str, Any]:
        bids = self.bids[:depth] if depth else self.bids
        asks = self.asks[:depth] if depth else self.asks
        return {
            "market": self.market,
            "bids": bids,
            "asks": asks,
            "mid": self.mid,
            "spread_pct": self.spread_pct,
        }


class MarketDataPort(ABC):
    """Prices, candles and depth per venue."""

    @abstractmethod
    def get_prices(self, venue: str, markets: List[str]) -> Dict[str, float]:
        """Mid prices keyed by market; markets without a price are omitted."""

    @abstractmethod
    def get_candles(self, venue: str, market: str, timeframe: str, count: int) -> List[Candle]:
        """Oldest first."""

    @abstractmethod
    def get_orderbook(self, venue: str, market: str, depth: int) -> Orderbook:
        ...


@dataclass
class FillReport:
    """What a live venue reports for one market order."""
    success: bool
    order_id: Optional[str] = None
    fill_price: Optional[float] = None
    fill_size: Optional[float] = None
    fill_value: Optional[float] = None
    error: Optional[str] = None


@dataclass
class VenuePosition:
    market: str
    side: str
    size: float
    avg_entry: float
    unrealized_pnl: float = 0.0
    leverage: float = 1.0


@dataclass
class VenueAccountState:
    equity: float
    cash_balance: float
    positions: List[VenuePosition] = field(default_factory=list)


class VenueClient(ABC):
    """Signed order placement and account sync for one live venue."""

    @abstractmethod
    def place_market_order(
        self,
        credentials: Dict[str, str],
        market: str,
        side: str,
        *,
        notional_usd: Optional[float] = None,
        base_size: Optional[float] = None,
        slippage: Optional[float] = None,
        reduce_only: bool = False,
        close_all: bool = False,
        leverage: Optional[float] = None,
    ) -> FillReport:
        ...

    @abstractmethod
    def fetch_account_state(self, credentials: Dict[str, str]) -> VenueAccountState:
        ...


class BillingPort(ABC):
    @abstractmethod
    def charge(self, session: Session, usage: Dict[str, int], model: str) -> None:
        """
        Charge for one model call.

        Raises:
            InsufficientBalance: The user cannot pay
        """


class CredentialProvider(ABC):
    @abstractmethod
    def get_credentials(self, user_id: str, venue: str) -> Optional[Dict[str, str]]:
        """Plain venue credentials for a user, or None when not connected."""
