"""
Tests for live brokers.

Coverage:
- Credential checks and order parameters per venue
- Trade recording (realized PnL, fees, leverage)
- INTX local position tracking
- CriticalRecordingFailure when a fill cannot be written
- Venue sync: positions, peak preservation, zero-equity guard
- Live account creation
"""

import pytest

from core.exceptions import CriticalRecordingFailure, VenueSyncError
from core.live_brokers import (
    CoinbaseBroker,
    HyperliquidBroker,
    build_live_brokers,
    critical_message,
    get_or_create_live_account,
    realized_pnl_for,
)
from core.models import Account, OrderRequest, Position
from core.ports import FillReport, VenueAccountState, VenuePosition
from infra.store import InMemoryStore
from tests.helpers import FakeVenueClient

COINBASE_CREDS = {"api_key": "key", "api_secret": "secret"}
HL_CREDS = {"private_key": "0xabc"}


def live_request(market="BTC-PERP", side="buy", notional=1000.0, venue="hyperliquid", **kwargs):
    return OrderRequest(
        mode="live",
        venue=venue,
        account_id="live-1",
        market=market,
        side=side,
        notional_usd=notional,
        slippage_bps=30,
        fee_bps=5,
        session_id="sess-1",
        **kwargs,
    )


def live_account(store, equity=1000.0, starting=1000.0):
    account = Account(id="live-1", starting_equity=starting, cash_balance=equity, equity=equity,
                      user_id="user-1", venue="hyperliquid")
    store.save_account("live", account)
    return account


class FailingTradeStore(InMemoryStore):
    def insert_trade(self, book, trade):
        raise IOError("disk full")


def test_realized_pnl_for():
    position = Position(id="p", account_id="a", market="BTC-PERP", side="short", size=2, avg_entry=100)
    assert realized_pnl_for(position, 90, 2) == pytest.approx(20)
    assert realized_pnl_for(None, 90, 2) == 0.0


class TestHyperliquid:
    def test_missing_private_key(self, store):
        broker = HyperliquidBroker(FakeVenueClient(), store)
        result = broker.execute(live_request(), {})
        assert not result.success
        assert result.error == "Private key required for Hyperliquid live trading"

    def test_order_parameters(self, store, clock):
        client = FakeVenueClient()
        broker = HyperliquidBroker(client, store, clock)
        broker.execute(live_request(leverage=3), HL_CREDS)
        order = client.orders[0]
        assert order["market"] == "BTC"
        assert order["slippage"] == pytest.approx(0.003)
        assert order["reduce_only"] is False
        assert order["base_size"] is None
        assert order["leverage"] == 3

    def test_exit_is_reduce_only_with_exact_size(self, store):
        client = FakeVenueClient()
        broker = HyperliquidBroker(client, store)
        position = Position(id="p", account_id="live-1", market="BTC-PERP", side="long", size=2, avg_entry=90)
        broker.execute(live_request(side="sell", is_exit=True, exit_position=position, exit_size=2), HL_CREDS)
        assert client.orders[0]["reduce_only"] is True
        assert client.orders[0]["base_size"] == 2

    def test_records_trade(self, store, clock):
        client = FakeVenueClient(fills=[FillReport(success=True, order_id="hl-9", fill_price=101.0,
                                                   fill_size=2.0)])
        broker = HyperliquidBroker(client, store, clock)
        position = Position(id="p", account_id="live-1", market="BTC-PERP", side="long", size=2, avg_entry=90)
        result = broker.execute(
            live_request(side="sell", is_exit=True, exit_position=position, exit_size=2), HL_CREDS
        )
        assert result.success
        trade = store.list_trades("live", "live-1")[0]
        assert trade.action == "close"
        assert trade.side == "sell"
        assert trade.venue_order_id == "hl-9"
        assert trade.realized_pnl == pytest.approx(22)
        assert trade.fee == pytest.approx(2 * 101 * 5 / 10000)
        assert trade.created_at == clock()

    def test_venue_failure(self, store):
        client = FakeVenueClient(fills=[FillReport(success=False, error="Insufficient margin")])
        result = HyperliquidBroker(client, store).execute(live_request(), HL_CREDS)
        assert not result.success
        assert result.error == "Insufficient margin"
        assert store.list_trades("live", "live-1") == []

    def test_venue_exception(self, store):
        client = FakeVenueClient(fills=[ConnectionError("timeout")])
        result = HyperliquidBroker(client, store).execute(live_request(), HL_CREDS)
        assert not result.success
        assert result.error == "timeout"

    def test_recording_failure_is_critical(self):
        store = FailingTradeStore()
        broker = HyperliquidBroker(FakeVenueClient(), store)
        with pytest.raises(CriticalRecordingFailure) as exc_info:
            broker.execute(live_request(), HL_CREDS)
        assert str(exc_info.value) == critical_message("Hyperliquid", "ord-1")
        assert exc_info.value.venue == "hyperliquid"
        assert exc_info.value.order_id == "ord-1"
        assert isinstance(exc_info.value.original, IOError)


class TestCoinbase:
    def test_missing_credentials(self, store):
        result = CoinbaseBroker(FakeVenueClient(), store).execute(
            live_request("BTC-USD", venue="coinbase"), {"api_key": "k"}
        )
        assert result.error == "Coinbase API credentials required for live trading"

    def test_spot_exit_sells_everything(self, store):
        client = FakeVenueClient()
        broker = CoinbaseBroker(client, store)
        broker.execute(live_request("BTC-USD", side="sell", venue="coinbase", is_exit=True, exit_size=0.5),
                       COINBASE_CREDS)
        assert client.orders[0]["close_all"] is True
        assert client.orders[0]["base_size"] is None

    @pytest.mark.parametrize("market, expected", [
        ("BTC-USD", 1),
        ("BTC-PERP", 3),
        ("ETH-INTX", 3),
    ])
    def test_leverage_follows_market(self, store, market, expected):
        client = FakeVenueClient()
        CoinbaseBroker(client, store).execute(live_request(market, venue="coinbase", leverage=3), COINBASE_CREDS)
        assert client.orders[0]["leverage"] == expected
        assert store.list_trades("live", "live-1")[0].leverage == expected

    def test_fee_uses_fill_value(self, store):
        client = FakeVenueClient(fills=[FillReport(success=True, order_id="cb-1", fill_price=100,
                                                   fill_size=1, fill_value=990)])
        CoinbaseBroker(client, store).execute(live_request("BTC-USD", venue="coinbase"), COINBASE_CREDS)
        assert store.list_trades("live", "live-1")[0].fee == pytest.approx(0.495)

    def test_intx_fill_opens_local_position(self, store):
        client = FakeVenueClient(fills=[FillReport(success=True, order_id="cb-2", fill_price=100,
                                                   fill_size=3, fill_value=300)])
        broker = CoinbaseBroker(client, store)
        broker.execute(live_request("BTC-PERP", venue="coinbase", leverage=2), COINBASE_CREDS)
        position = store.get_position("live", "live-1", "BTC-PERP")
        assert position.side == "long"
        assert position.size == 3
        assert position.leverage == 2
        assert client.orders[0]["close_all"] is False

    def test_intx_exit_uses_exact_size_and_reduces(self, store):
        store.save_position("live", Position(id="p", account_id="live-1", market="BTC-PERP", side="long",
                                             size=3, avg_entry=100))
        client = FakeVenueClient(fills=[FillReport(success=True, order_id="cb-3", fill_price=105,
                                                   fill_size=1, fill_value=105)])
        broker = CoinbaseBroker(client, store)
        broker.execute(live_request("BTC-PERP", side="sell", venue="coinbase", is_exit=True, exit_size=1),
                       COINBASE_CREDS)
        assert client.orders[0]["base_size"] == 1
        assert store.get_position("live", "live-1", "BTC-PERP").size == pytest.approx(2)


class TestSync:
    def test_mirrors_venue_positions(self, store, clock):
        live_account(store)
        store.save_position("live", Position(id="old", account_id="live-1", market="SOL-PERP", side="long",
                                             size=1, avg_entry=20))
        store.save_position("live", Position(id="p1", account_id="live-1", market="BTC-PERP", side="long",
                                             size=1, avg_entry=90, peak_price=120))
        client = FakeVenueClient(state=VenueAccountState(
            equity=1500, cash_balance=800,
            positions=[
                VenuePosition(market="BTC", side="long", size=2, avg_entry=95, unrealized_pnl=10),
                VenuePosition(market="ETH", side="short", size=-1, avg_entry=50),
                VenuePosition(market="DOGE", side="long", size=0, avg_entry=1),
            ],
        ))
        broker = HyperliquidBroker(client, store, clock)
        account = broker.sync(store.get_account("live", "live-1"), HL_CREDS)

        assert account.equity == 1500
        assert account.cash_balance == 800
        markets = {p.market: p for p in store.list_positions("live", "live-1")}
        assert set(markets) == {"BTC-PERP", "ETH-PERP"}
        assert markets["BTC-PERP"].id == "p1"
        assert markets["BTC-PERP"].peak_price == 120
        assert markets["BTC-PERP"].size == 2
        assert markets["ETH-PERP"].size == 1

    def test_side_change_resets_peak(self, store):
        live_account(store)
        store.save_position("live", Position(id="p1", account_id="live-1", market="BTC-PERP", side="long",
                                             size=1, avg_entry=90, peak_price=120))
        client = FakeVenueClient(state=VenueAccountState(
            equity=1000, cash_balance=1000,
            positions=[VenuePosition(market="BTC", side="short", size=1, avg_entry=100)],
        ))
        HyperliquidBroker(client, store).sync(store.get_account("live", "live-1"), HL_CREDS)
        assert store.get_position("live", "live-1", "BTC-PERP").peak_price is None

    def test_zero_equity_guard(self, store):
        live_account(store, equity=900, starting=1000)
        client = FakeVenueClient(state=VenueAccountState(equity=0, cash_balance=0))
        account = HyperliquidBroker(client, store).sync(store.get_account("live", "live-1"), HL_CREDS)
        assert account.equity == 900
        assert account.cash_balance == 900

    def test_coinbase_sync_keeps_intx_positions(self, store):
        live_account(store)
        store.save_position("live", Position(id="p1", account_id="live-1", market="BTC-PERP", side="long",
                                             size=1, avg_entry=90))
        store.save_position("live", Position(id="p2", account_id="live-1", market="ETH-USD", side="long",
                                             size=1, avg_entry=50))
        client = FakeVenueClient(state=VenueAccountState(equity=1000, cash_balance=1000))
        CoinbaseBroker(client, store).sync(store.get_account("live", "live-1"), COINBASE_CREDS)
        assert [p.market for p in store.list_positions("live", "live-1")] == ["BTC-PERP"]

    def test_fetch_failure(self, store):
        live_account(store)
        client = FakeVenueClient()
        client.state_error = ConnectionError("502 Bad Gateway")
        with pytest.raises(VenueSyncError, match="Failed to sync Hyperliquid account: 502"):
            HyperliquidBroker(client, store).sync(store.get_account("live", "live-1"), HL_CREDS)

    def test_missing_credentials(self, store):
        live_account(store)
        with pytest.raises(VenueSyncError, match="Private key required"):
            HyperliquidBroker(FakeVenueClient(), store).sync(store.get_account("live", "live-1"), None)


class TestLiveAccount:
    def test_existing_account_reused(self, store):
        live_account(store)
        client = FakeVenueClient()
        account = get_or_create_live_account(store, HyperliquidBroker(client, store), "user-1", HL_CREDS)
        assert account.id == "live-1"
        assert client.fetches == 0

    def test_created_from_venue_equity(self, store):
        client = FakeVenueClient(state=VenueAccountState(equity=2500, cash_balance=2000))
        account = get_or_create_live_account(store, HyperliquidBroker(client, store), "user-2", HL_CREDS)
        assert account.starting_equity == 2500
        assert account.cash_balance == 2500
        assert store.find_live_account("user-2", "hyperliquid").id == account.id

    def test_no_connection(self, store):
        with pytest.raises(VenueSyncError, match="No Coinbase connection found"):
            get_or_create_live_account(store, CoinbaseBroker(FakeVenueClient(), store), "user-1", None)


def test_build_live_brokers_skips_unknown_venues(store):
    brokers = build_live_brokers({"hyperliquid": FakeVenueClient(), "kraken": FakeVenueClient()}, store)
    assert set(brokers) == {"hyperliquid"}
    assert isinstance(brokers["hyperliquid"], HyperliquidBroker)
