"""
Pytest configuration and fixtures for the tick engine tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import pytest

from core.models import Account, Position, Trade
from infra.store import InMemoryStore
from tests.helpers import NOW, FakeClock, FakeMarketData


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.metrics import MetricsRecorder

    # Reset BEFORE test (cleanup from previous test pollution)
    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


@pytest.fixture
def clock():
    """Settable clock starting at NOW"""
    return FakeClock(NOW)


@pytest.fixture
def store():
    """Empty in-memory store"""
    return InMemoryStore()


@pytest.fixture
def account(store):
    """Funded $10,000 virtual account"""
    acct = Account(id="acct-1", starting_equity=10000.0, cash_balance=10000.0, equity=10000.0)
    store.save_account("virtual", acct)
    return acct


@pytest.fixture
def market_data():
    return FakeMarketData(prices={"BTC-PERP": 100.0, "ETH-PERP": 50.0})


@pytest.fixture
def add_position(store):
    """Factory: store an open position (and optionally its opening trade)"""
    def _add(market="BTC-PERP", side="long", size=10.0, avg_entry=100.0, opened_at=None,
             account_id="acct-1", book="virtual", session_id="sess-1", leverage=1.0, peak_price=None):
        position = Position(
            id=f"pos-{market}",
            account_id=account_id,
            market=market,
            side=side,
            size=size,
            avg_entry=avg_entry,
            peak_price=peak_price,
            leverage=leverage,
        )
        store.save_position(book, position)
        if opened_at is not None:
            store.insert_trade(book, Trade(
                id=f"open-{market}-{opened_at.isoformat()}",
                account_id=account_id,
                market=market,
                action="open",
                side="buy" if side == "long" else "sell",
                size=size,
                price=avg_entry,
                session_id=session_id,
                created_at=opened_at,
            ))
        return position
    return _add
