"""
Tests for order routing.

Coverage:
- Simulated modes go to the virtual broker
- Live orders go to the venue's broker
- Invalid mode / unsupported venue
- CriticalRecordingFailure pauses the session, alerts and re-raises
"""

from unittest.mock import Mock

import pytest

from core.exceptions import CriticalRecordingFailure
from core.live_brokers import HyperliquidBroker
from core.models import OrderRequest
from core.order_router import OrderRouter
from core.virtual_broker import VirtualBroker
from infra.alerting import AlertSeverity
from infra.store import InMemoryStore
from tests.helpers import FakeVenueClient, seed_session


def order(mode="virtual", venue="hyperliquid", account_id="acct-1"):
    return OrderRequest(
        mode=mode,
        venue=venue,
        account_id=account_id,
        market="BTC-PERP",
        side="buy",
        notional_usd=500.0,
        price=100.0,
        session_id="sess-1",
    )


@pytest.fixture
def metrics():
    return Mock()


@pytest.fixture
def alerts():
    return Mock()


def make_router(store, client=None, metrics=None, alerts=None):
    live = {"hyperliquid": HyperliquidBroker(client or FakeVenueClient(), store)}
    return OrderRouter(store, VirtualBroker(store), live, metrics=metrics, alerts=alerts)


class TestRouting:
    def test_virtual(self, store, account, metrics):
        result = make_router(store, metrics=metrics).place_order(order())
        assert result.success
        assert store.get_position("virtual", "acct-1", "BTC-PERP") is not None
        metrics.record_order.assert_called_once_with("virtual", "hyperliquid", True)

    def test_arena_uses_virtual_book(self, store, account):
        assert make_router(store).place_order(order(mode="arena")).success
        assert store.list_trades("virtual", "acct-1")

    def test_live(self, store):
        client = FakeVenueClient()
        result = make_router(store, client).place_order(order(mode="live", account_id="live-1"),
                                                        {"private_key": "0x1"})
        assert result.success
        assert client.orders[0]["market"] == "BTC"
        assert store.list_trades("live", "live-1")[0].venue_order_id == "ord-1"

    def test_invalid_mode(self, store, metrics):
        result = make_router(store, metrics=metrics).place_order(order(mode="paper"))
        assert result.error == "Invalid session mode: paper"
        metrics.record_order.assert_called_once_with("paper", "hyperliquid", False)

    def test_unsupported_venue(self, store):
        result = make_router(store).place_order(order(mode="live", venue="kraken"), {"k": "v"})
        assert result.error == "Unsupported live venue: kraken"


class TestCriticalFailure:
    class FailingTradeStore(InMemoryStore):
        def insert_trade(self, book, trade):
            if book == "live":
                raise IOError("write failed")
            super().insert_trade(book, trade)

    def test_pauses_session_and_reraises(self, metrics, alerts):
        store = self.FailingTradeStore()
        seed_session(store, mode="live")
        router = make_router(store, metrics=metrics, alerts=alerts)

        with pytest.raises(CriticalRecordingFailure):
            router.place_order(order(mode="live", account_id="live-1"), {"private_key": "0x1"})

        session = store.get_session("sess-1")
        assert session.status == "paused"
        assert session.error_message.startswith("CRITICAL: Hyperliquid trade executed (Order: ord-1)")
        severity, title = alerts.notify.call_args[0][:2]
        assert severity == AlertSeverity.CRITICAL
        assert title == "Live trade not recorded"
        metrics.record_order.assert_called_once_with("live", "hyperliquid", False)
