"""
Tests for the row stores.

Coverage:
- Tick lock claims
- Copy-on-read and transaction rollback
- Trade and decision ordering and filters
- JSON persistence across restarts, journal appends and version 1 migration
"""

import dataclasses
import json
import os
from datetime import timedelta
from unittest.mock import patch

import pytest

from core.models import Account, Decision, EquityPoint, Position, Trade
from infra.state_store import JsonStateStore, journal_path_for
from infra.store import InMemoryStore
from tests.helpers import NOW, seed_session


def trade(i, minutes, **overrides):
    fields = dict(id=f"t{i}", account_id="acct-1", market="BTC-PERP", action="open", side="buy",
                  size=1, price=100, session_id="sess-1", created_at=NOW + timedelta(minutes=minutes))
    fields.update(overrides)
    return Trade(**fields)


class TestTickLock:
    def test_first_claim_succeeds(self, store):
        seed_session(store)
        assert store.acquire_tick_lock("sess-1", 60_000, NOW)
        assert store.get_session("sess-1").last_tick_at == NOW

    def test_claim_inside_interval_fails(self, store):
        seed_session(store)
        store.acquire_tick_lock("sess-1", 60_000, NOW)
        assert not store.acquire_tick_lock("sess-1", 60_000, NOW + timedelta(seconds=59))
        assert store.acquire_tick_lock("sess-1", 60_000, NOW + timedelta(seconds=61))

    def test_unknown_session(self, store):
        assert not store.acquire_tick_lock("missing", 60_000, NOW)


class TestSessions:
    def test_update_unknown_field(self, store):
        seed_session(store)
        with pytest.raises(AttributeError, match="no field bogus"):
            store.update_session("sess-1", bogus=1)

    def test_update_unknown_session(self, store):
        with pytest.raises(KeyError):
            store.update_session("missing", status="stopped")

    def test_list_by_status(self, store):
        seed_session(store)
        seed_session(store, session_id="sess-2", account_id="acct-2")
        store.update_session("sess-2", status="paused")
        assert [s.id for s in store.list_sessions("running")] == ["sess-1"]
        assert len(store.list_sessions()) == 2


class TestCopies:
    def test_reads_are_copies(self, store, account):
        fetched = store.get_account("virtual", account.id)
        fetched.cash_balance = 0
        assert store.get_account("virtual", account.id).cash_balance == 10000.0

    def test_books_are_separate(self, store, account):
        assert store.get_account("live", account.id) is None

    def test_unknown_book(self, store):
        with pytest.raises(ValueError, match="Unknown book"):
            store.list_positions("paper", "acct-1")


class TestTransaction:
    def test_rollback_on_error(self, store, account):
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.save_account("virtual", Account(id=account.id, starting_equity=10000,
                                                      cash_balance=1, equity=1))
                store.insert_trade("virtual", trade(0, 0))
                raise RuntimeError("fill record failed")
        assert store.get_account("virtual", account.id).cash_balance == 10000.0
        assert store.list_trades("virtual", account.id) == []

    def test_commit(self, store, account):
        with store.transaction():
            store.insert_trade("virtual", trade(0, 0))
        assert len(store.list_trades("virtual", account.id)) == 1


class TestTrades:
    def test_newest_first_with_stable_ties(self, store):
        store.insert_trade("virtual", trade(0, 0))
        store.insert_trade("virtual", trade(1, 5))
        store.insert_trade("virtual", trade(2, 5))
        assert [t.id for t in store.list_trades("virtual", "acct-1")] == ["t2", "t1", "t0"]

    def test_filters(self, store):
        store.insert_trade("virtual", trade(0, 0))
        store.insert_trade("virtual", trade(1, 10, action="close", market="ETH-PERP"))
        store.insert_trade("virtual", trade(2, 20, session_id="sess-2"))
        assert [t.id for t in store.list_trades("virtual", "acct-1", action="close")] == ["t1"]
        assert [t.id for t in store.list_trades("virtual", "acct-1", market="BTC-PERP")] == ["t2", "t0"]
        assert [t.id for t in store.list_trades("virtual", "acct-1", session_id="sess-1")] == ["t1", "t0"]
        since = NOW + timedelta(minutes=10)
        assert store.count_trades("virtual", "acct-1", since=since) == 2
        assert len(store.list_trades("virtual", "acct-1", limit=1)) == 1


class TestDecisionsAndEquity:
    def test_decisions_newest_first(self, store):
        for i, market in enumerate(("BTC-PERP", "ETH-PERP", "BTC-PERP")):
            store.insert_decision(Decision(session_id="sess-1", market=market, action_summary=f"d{i}"))
        assert [d.action_summary for d in store.list_decisions("sess-1")] == ["d2", "d1", "d0"]
        assert [d.action_summary for d in store.list_decisions("sess-1", market="BTC-PERP", limit=1)] == ["d2"]

    def test_first_equity_point_since(self, store):
        for minutes, equity in ((-60, 9000), (30, 9500), (10, 9800)):
            store.insert_equity_point(EquityPoint(session_id="sess-1", account_id="acct-1", equity=equity,
                                                  created_at=NOW + timedelta(minutes=minutes)))
        assert store.first_equity_point_since("sess-1", NOW).equity == 9800
        assert store.first_equity_point_since("sess-2", NOW) is None


def test_find_live_account(store):
    store.save_account("live", Account(id="live-1", starting_equity=0, cash_balance=500, equity=500,
                                       user_id="user-1", venue="coinbase"))
    assert store.find_live_account("user-1", "coinbase").id == "live-1"
    assert store.find_live_account("user-1", "hyperliquid") is None


class TestJsonStateStore:
    def test_survives_restart(self, tmp_path):
        path = tmp_path / "state.json"
        store = JsonStateStore(str(path))
        seed_session(store)
        store.save_position("virtual", Position(id="p1", account_id="acct-1", market="BTC-PERP",
                                                side="short", size=2, avg_entry=100, peak_price=95))
        store.insert_trade("virtual", trade(0, 0))
        store.insert_decision(Decision(session_id="sess-1", market="BTC-PERP", action_summary="Opened long",
                                       intent={"bias": "long"}, created_at=NOW))

        reloaded = JsonStateStore(str(path))
        session = reloaded.get_session("sess-1")
        assert session.started_at == NOW
        assert session.filters == {"markets": ["BTC-PERP"]}
        assert reloaded.get_account("virtual", "acct-1").equity == 10000.0
        assert reloaded.get_position("virtual", "acct-1", "BTC-PERP").peak_price == 95
        assert reloaded.list_trades("virtual", "acct-1")[0].created_at == NOW
        assert reloaded.list_decisions("sess-1")[0].intent == {"bias": "long"}

    def test_rolled_back_transaction_not_written(self, tmp_path):
        path = tmp_path / "state.json"
        store = JsonStateStore(str(path))
        seed_session(store)
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.insert_trade("virtual", trade(0, 0))
                raise RuntimeError("boom")
        assert not journal_path_for(path).exists()
        assert JsonStateStore(str(path)).list_trades("virtual", "acct-1") == []

    def test_history_is_appended_not_rewritten(self, tmp_path):
        path = tmp_path / "state.json"
        store = JsonStateStore(str(path))
        seed_session(store)
        state_text = path.read_text()

        with patch("infra.state_store.os.replace", wraps=os.replace) as replace:
            for i in range(30):
                store.insert_decision(Decision(session_id="sess-1", market="BTC-PERP",
                                               action_summary=f"tick {i}", created_at=NOW))
                store.insert_equity_point(EquityPoint(session_id="sess-1", account_id="acct-1",
                                                      equity=10000.0 + i, created_at=NOW))
            store.insert_trade("virtual", trade(0, 0))

        assert replace.call_count == 0
        assert path.read_text() == state_text
        assert "decisions" not in json.loads(state_text)
        assert len(journal_path_for(path).read_text().splitlines()) == 61

        reloaded = JsonStateStore(str(path))
        assert len(reloaded.list_decisions("sess-1")) == 30
        assert reloaded.list_decisions("sess-1")[0].action_summary == "tick 29"
        assert reloaded.first_equity_point_since("sess-1", NOW).equity == 10000.0

    def test_state_rewritten_once_per_change(self, tmp_path):
        path = tmp_path / "state.json"
        store = JsonStateStore(str(path))
        seed_session(store)
        with patch("infra.state_store.os.replace", wraps=os.replace) as replace:
            store.acquire_tick_lock("sess-1", 60_000, NOW)
            store.insert_decision(Decision(session_id="sess-1", market="BTC-PERP",
                                           action_summary="hold", created_at=NOW))
            store.update_session("sess-1", status="running")
        # Only the lock stamp changed the state file
        assert replace.call_count == 1

    def test_migrates_version_1_file(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text(json.dumps({
            "version": 1,
            "sessions": [],
            "trades": {"virtual": [{**dataclasses.asdict(trade(0, 0)), "created_at": NOW.isoformat()}],
                       "live": []},
            "decisions": [{"session_id": "sess-1", "market": "BTC-PERP", "action_summary": "old",
                           "created_at": NOW.isoformat()}],
            "equity_points": [],
        }))
        store = JsonStateStore(str(path))
        assert store.list_trades("virtual", "acct-1")[0].id == "t0"

        seed_session(store)
        assert json.loads(path.read_text())["version"] == 2
        assert "trades" not in json.loads(path.read_text())

        reloaded = JsonStateStore(str(path))
        assert reloaded.list_trades("virtual", "acct-1")[0].id == "t0"
        assert reloaded.list_decisions("sess-1")[0].action_summary == "old"

    def test_truncated_journal_line_dropped(self, tmp_path, caplog):
        path = tmp_path / "state.json"
        store = JsonStateStore(str(path))
        seed_session(store)
        store.insert_trade("virtual", trade(0, 0))
        with open(journal_path_for(path), "a", encoding="utf-8") as f:
            f.write('{"kind": "trade", "bo')

        reloaded = JsonStateStore(str(path))
        assert "Dropping truncated last line" in caplog.text
        reloaded.insert_trade("virtual", trade(1, 1))

        assert [t.id for t in JsonStateStore(str(path)).list_trades("virtual", "acct-1")] == ["t1", "t0"]

    def test_rejects_unknown_version(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"version": 99}))
        with pytest.raises(ValueError, match="Unsupported state file version 99"):
            JsonStateStore(str(path))

    def test_env_default_path(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TICK_STATE_FILE", str(tmp_path / "nested" / "tick.json"))
        store = JsonStateStore()
        seed_session(store)
        assert (tmp_path / "nested" / "tick.json").exists()
