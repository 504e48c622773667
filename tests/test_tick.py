"""
Tests for the tick scheduler.

Coverage:
- Tick lock: a second trigger inside the interval is skipped, also when concurrent
- Status codes for missing, foreign, stopped and misconfigured sessions
- End-to-end virtual tick with the reconciliation identity
- Per-market error isolation, billing pauses and the live recording halt
- Round-robin selection and the due-session sweep
- Live account creation, venue sync and sync failures
"""

import threading
from datetime import timedelta

import pytest

from ai.model_client import MockClient
from core.accounting import calc_totals, verify_reconciliation
from core.exceptions import InsufficientBalance
from core.models import Account
from core.ports import FillReport, VenueAccountState, VenuePosition
from core.tick import HALTED_MESSAGE, TickResult, TickScheduler, min_interval_ms
from core.trading_cycle import BILLING_ERROR_MESSAGE, INSUFFICIENT_BALANCE_MESSAGE
from infra.metrics import MetricsRecorder
from infra.store import InMemoryStore
from tests.helpers import (
    NOW,
    FakeMarketData,
    FakeVenueClient,
    RecordingBilling,
    StaticCredentials,
    intent_json,
    seed_session,
)

HL_CREDS = {"private_key": "0xabc"}


def scripted(*replies):
    """Model factory handing every session the same scripted client."""
    client = MockClient(replies=list(replies) or [intent_json()])
    return lambda session: client


def scheduler(store, clock, market_data=None, replies=(), **kwargs):
    market_data = market_data or FakeMarketData(prices={"BTC-PERP": 100.0, "ETH-PERP": 50.0})
    return TickScheduler(store, market_data, model_factory=scripted(*replies), clock=clock, **kwargs)


def test_min_interval():
    assert min_interval_ms(30) == 25_000
    assert min_interval_ms(5) == 10_000


def test_result_serialization():
    skipped = TickResult(skipped=True, reason="tick_lock_failed", min_interval_ms=25_000)
    assert skipped.to_dict() == {"skipped": True, "reason": "tick_lock_failed", "min_interval_ms": 25_000}
    assert skipped.outcome == "skipped"
    assert TickResult(status=404, error="Session not found").outcome == "rejected"
    assert TickResult(status=500, error="boom").to_dict() == {"error": "boom"}


class TestGuards:
    def test_not_found(self, store, clock):
        result = scheduler(store, clock).run_tick("missing")
        assert result.status == 404
        assert result.error == "Session not found"

    def test_unauthorized(self, store, clock):
        seed_session(store)
        result = scheduler(store, clock).run_tick("sess-1", caller_id="someone-else")
        assert result.status == 401

    def test_not_running(self, store, clock):
        seed_session(store)
        store.update_session("sess-1", status="stopped")
        result = scheduler(store, clock).run_tick("sess-1")
        assert result.status == 400
        assert result.error == "Session is not running (status: stopped)"

    def test_invalid_cadence(self, store, clock):
        seed_session(store, filters={"markets": ["BTC-PERP"], "cadence_seconds": -5})
        result = scheduler(store, clock).run_tick("sess-1")
        assert result.status == 400
        assert result.error == "Invalid cadence: -5.0"

    def test_invalid_config(self, store, clock):
        seed_session(store, filters={"markets": ["BTC-PERP"], "trade_control": {"max_trades_per_hour": -1}})
        result = scheduler(store, clock).run_tick("sess-1")
        assert result.status == 400
        assert result.error.startswith("Invalid strategy config at trade_control.max_trades_per_hour")

    def test_no_markets(self, store, clock):
        seed_session(store, filters={})
        assert scheduler(store, clock).run_tick("sess-1").error == "No markets configured"

    def test_session_markets_fallback(self, store, clock):
        session = seed_session(store, filters={})
        session.markets = [" eth-perp ", ""]
        store.save_session(session)
        result = scheduler(store, clock, replies=[intent_json(bias="neutral")]).run_tick("sess-1")
        assert [d.market for d in result.decisions] == ["ETH-PERP"]

    def test_missing_virtual_account(self, store, clock):
        session = seed_session(store)
        session.account_id = "gone"
        store.save_session(session)
        result = scheduler(store, clock).run_tick("sess-1")
        assert result.status == 404
        assert result.error == "Virtual account not found"

    def test_price_fetch_failure(self, store, clock):
        seed_session(store)
        market_data = FakeMarketData()
        market_data.price_error = ConnectionError("upstream 503")
        result = scheduler(store, clock, market_data=market_data).run_tick("sess-1")
        assert result.status == 500
        assert result.error == "Failed to fetch prices: upstream 503"


class TestTickLock:
    def test_second_trigger_skipped(self, store, clock):
        seed_session(store)
        engine = scheduler(store, clock, replies=[intent_json(bias="neutral")])
        first = engine.run_tick("sess-1")
        second = engine.run_tick("sess-1")

        assert first.success
        assert second.skipped
        assert second.to_dict()["reason"] == "tick_lock_failed"
        assert second.min_interval_ms == 25_000
        assert len(store.list_decisions("sess-1")) == 1

    def test_next_interval_runs(self, store, clock):
        seed_session(store)
        engine = scheduler(store, clock, replies=[intent_json(bias="neutral")])
        engine.run_tick("sess-1")
        clock.advance(seconds=26)
        assert engine.run_tick("sess-1").success

    def test_concurrent_triggers(self, store, clock):
        seed_session(store)
        engine = scheduler(store, clock, replies=[intent_json(bias="neutral")])
        barrier = threading.Barrier(2)
        results = []

        def trigger():
            barrier.wait()
            results.append(engine.run_tick("sess-1"))

        threads = [threading.Thread(target=trigger) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert sorted(r.outcome for r in results) == ["executed", "skipped"]
        assert len(store.list_decisions("sess-1")) == 1


class TestVirtualTick:
    def test_opens_position_and_reconciles(self, store, clock):
        seed_session(store)
        engine = scheduler(store, clock, replies=[intent_json(bias="long", confidence=0.8)],
                           metrics=MetricsRecorder(enabled=False))
        result = engine.run_tick("sess-1")

        assert result.success
        decision = result.decisions[0]
        assert decision.executed
        assert decision.action_summary == "Opened long: $9900.00 at $100.00"

        position = store.get_position("virtual", "acct-1", "BTC-PERP")
        assert position.side == "long"
        assert position.avg_entry == pytest.approx(100.3)
        account = store.get_account("virtual", "acct-1")
        assert account.cash_balance == pytest.approx(10000 - 4.95)
        expected_equity = account.cash_balance + (100.0 - 100.3) * position.size
        assert account.equity == pytest.approx(expected_equity)
        assert result.equity == pytest.approx(expected_equity)

        totals = calc_totals(account, [position], store.list_trades("virtual", "acct-1"),
                             {"BTC-PERP": 100.0}, "virtual")
        assert verify_reconciliation(totals).ok
        assert store.first_equity_point_since("sess-1", NOW).equity == pytest.approx(expected_equity)
        assert MetricsRecorder().last_tick_outcome == "executed"

    def test_missing_price(self, store, clock):
        seed_session(store)
        result = scheduler(store, clock, market_data=FakeMarketData(prices={})).run_tick("sess-1")
        assert result.success
        assert result.decisions[0].action_summary == "No price available for BTC-PERP"

    def test_market_error_isolated(self, store, clock):
        seed_session(store, filters={"markets": ["BTC-PERP", "ETH-PERP"]})
        engine = scheduler(store, clock, replies=[RuntimeError("model exploded"), intent_json(bias="neutral")])
        result = engine.run_tick("sess-1")

        assert result.success
        btc, eth = result.decisions
        assert btc.error == "model exploded"
        assert btc.action_summary == "Error: model exploded"
        assert eth.action_summary == "AI decision: neutral (no trade)"
        assert store.first_equity_point_since("sess-1", NOW) is not None


class TestBilling:
    def test_insufficient_balance_pauses(self, store, clock):
        seed_session(store, filters={"markets": ["BTC-PERP", "ETH-PERP"]})
        billing = RecordingBilling(error=InsufficientBalance("Insufficient credits"))
        result = scheduler(store, clock, billing=billing).run_tick("sess-1")

        assert result.status == 402
        assert result.error == "Insufficient credits"
        assert [d.error for d in result.decisions] == [
            "Insufficient credits", "Session paused: Insufficient credits",
        ]
        session = store.get_session("sess-1")
        assert session.status == "paused"
        assert session.error_message == INSUFFICIENT_BALANCE_MESSAGE
        # Accounting still closes the tick
        assert store.first_equity_point_since("sess-1", NOW) is not None

    def test_billing_failure_is_500(self, store, clock):
        seed_session(store)
        result = scheduler(store, clock, billing=RecordingBilling(error=RuntimeError("ledger down"))).run_tick(
            "sess-1"
        )
        assert result.status == 500
        assert result.error == BILLING_ERROR_MESSAGE
        assert store.get_session("sess-1").status == "paused"

    def test_usage_charged(self, store, clock):
        seed_session(store)
        billing = RecordingBilling()
        scheduler(store, clock, billing=billing, replies=[intent_json(bias="neutral")]).run_tick("sess-1")
        assert billing.charges == [{
            "session_id": "sess-1",
            "usage": {"input_tokens": 10, "output_tokens": 5, "total_tokens": 15},
            "model": "mock-model",
        }]


class TestSelection:
    def test_round_robin(self, store, clock):
        seed_session(store, filters={
            "markets": ["BTC-PERP", "ETH-PERP", "SOL-PERP"],
            "market_processing_mode": "round_robin",
        })
        clock.advance(seconds=65)
        result = scheduler(store, clock, replies=[intent_json(bias="neutral")]).run_tick("sess-1")
        assert [d.market for d in result.decisions] == ["SOL-PERP"]

    def test_due_sessions(self, store, clock):
        seed_session(store)
        recent = seed_session(store, session_id="sess-2", account_id="acct-2")
        recent.last_tick_at = NOW - timedelta(seconds=10)
        store.save_session(recent)
        seed_session(store, session_id="sess-3", account_id="acct-3")
        store.update_session("sess-3", status="paused")

        results = scheduler(store, clock, replies=[intent_json(bias="neutral")]).run_due_sessions()
        assert set(results) == {"sess-1"}
        assert results["sess-1"].success


class TestLive:
    def live_engine(self, store, clock, venue=None, credentials=HL_CREDS, replies=()):
        return scheduler(
            store, clock,
            replies=replies,
            venues={"hyperliquid": venue or FakeVenueClient()},
            credentials=StaticCredentials(credentials),
        )

    def test_creates_and_syncs_account(self, store, clock):
        session = seed_session(store, mode="live")
        venue = FakeVenueClient(state=VenueAccountState(
            equity=1200.0, cash_balance=900.0,
            positions=[VenuePosition(market="ETH", side="long", size=2, avg_entry=45, unrealized_pnl=10)],
        ))
        result = self.live_engine(store, clock, venue, replies=[intent_json(bias="neutral")]).run_tick(session.id)

        assert result.success
        account = store.find_live_account("user-1", "hyperliquid")
        assert account.starting_equity == 1200.0
        assert account.cash_balance == 900.0
        assert store.get_session(session.id).live_account_id == account.id
        assert store.get_position("live", account.id, "ETH-PERP").size == 2
        assert result.equity == 1200.0

    def test_sync_failure_records_system_decision(self, store, clock):
        session = seed_session(store, mode="live")
        result = self.live_engine(store, clock, credentials=None).run_tick(session.id)

        assert result.status == 500
        assert result.error == (
            "No Hyperliquid connection found: Private key required for Hyperliquid live trading"
        )
        decision = store.list_decisions(session.id)[0]
        assert decision.market == "SYSTEM"
        assert decision.error == result.error

    def test_venue_read_failure(self, store, clock):
        session = seed_session(store, mode="live")
        store.save_account("live", Account(id="live-1", starting_equity=1000, cash_balance=1000, equity=1000,
                                           user_id="user-1", venue="hyperliquid"))
        venue = FakeVenueClient()
        venue.state_error = TimeoutError("read timed out")
        result = self.live_engine(store, clock, venue).run_tick(session.id)
        assert result.status == 500
        assert result.error == "Failed to sync Hyperliquid account: read timed out"

    def test_unrecorded_fill_halts_session(self, clock):
        class FailingTradeStore(InMemoryStore):
            def insert_trade(self, book, trade):
                raise IOError("disk full")

        store = FailingTradeStore()
        session = seed_session(store, mode="live", filters={"markets": ["BTC-PERP", "ETH-PERP"]})
        venue = FakeVenueClient(fills=[FillReport(success=True, order_id="ord-9", fill_price=100.0,
                                                  fill_size=9.9, fill_value=990.0)])
        result = self.live_engine(store, clock, venue, replies=[intent_json(bias="long")]).run_tick(session.id)

        btc, eth = result.decisions
        assert "trade executed (Order: ord-9) but failed to record" in btc.error
        assert eth.error == HALTED_MESSAGE
        assert len(venue.orders) == 1
        paused = store.get_session(session.id)
        assert paused.status == "paused"
        assert paused.error_message.startswith("CRITICAL: Hyperliquid")

    def test_halt_keeps_exits_already_filled(self, clock):
        class SecondTradeFails(InMemoryStore):
            inserts = 0

            def insert_trade(self, book, trade):
                self.inserts += 1
                if self.inserts > 1:
                    raise IOError("disk full")
                super().insert_trade(book, trade)

        store = SecondTradeFails()
        session = seed_session(store, mode="live", filters={
            "markets": ["BTC-PERP"],
            "exit_rules": {"mode": "tp_sl", "take_profit_pct": 5, "stop_loss_pct": 3},
        })
        venue = FakeVenueClient(state=VenueAccountState(
            equity=1200.0, cash_balance=900.0,
            positions=[VenuePosition(market="BTC", side="long", size=1, avg_entry=90),
                       VenuePosition(market="ETH", side="long", size=2, avg_entry=40)],
        ))
        result = self.live_engine(store, clock, venue, replies=[intent_json(bias="neutral")]).run_tick(session.id)

        assert [d.market for d in result.decisions] == ["BTC-PERP", "SYSTEM", "BTC-PERP"]
        filled = result.decisions[0]
        assert filled.executed
        assert filled.action_summary.startswith("Closed long: Take profit")
        assert "failed to record" in result.decisions[1].error
        assert result.decisions[2].error == HALTED_MESSAGE
        # Everything persisted is also reported
        assert len(store.list_decisions(session.id)) == len(result.decisions)
