"""
Row store for sessions, accounts, positions, trades, decisions and equity.

TradingStore is the narrow read/write contract the tick engine needs.
Positions, accounts and trades are partitioned by book ("virtual" or "live");
decisions and equity points are shared. InMemoryStore is the reference
implementation: thread-safe, copy-on-read, with a snapshot transaction.
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional, Tuple

from core.models import (
    BOOK_LIVE,
    BOOK_VIRTUAL,
    Account,
    Decision,
    EquityPoint,
    Position,
    Session,
    Trade,
)

logger = logging.getLogger(__name__)

BOOKS = (BOOK_VIRTUAL, BOOK_LIVE)


class TradingStore(ABC):
    """Storage contract used by the tick engine."""

    # ----- sessions -----
    @abstractmethod
    def get_session(self, session_id: str) -> Optional[Session]:
        ...

    @abstractmethod
    def save_session(self, session: Session) -> None:
        ...

    @abstractmethod
    def update_session(self, session_id: str, **fields: Any) -> None:
        ...

    @abstractmethod
    def list_sessions(self, status: Optional[str] = None) -> List[Session]:
        ...

    @abstractmethod
    def acquire_tick_lock(self, session_id: str, min_interval_ms: int, now: datetime) -> bool:
        """
        Atomically claim the next tick for a session.

        Succeeds (and stamps last_tick_at = now) only if the session has never
        ticked or last ticked at least min_interval_ms ago.
        """

    # ----- accounts -----
    @abstractmethod
    def get_account(self, book: str, account_id: str) -> Optional[Account]:
        ...

    @abstractmethod
    def save_account(self, book: str, account: Account) -> None:
        ...

    @abstractmethod
    def find_live_account(self, user_id: str, venue: str) -> Optional[Account]:
        ...

    # ----- positions -----
    @abstractmethod
    def list_positions(self, book: str, account_id: str) -> List[Position]:
        ...

    @abstractmethod
    def get_position(self, book: str, account_id: str, market: str) -> Optional[Position]:
        ...

    @abstractmethod
    def save_position(self, book: str, position: Position) -> None:
        ...

    @abstractmethod
    def delete_position(self, book: str, account_id: str, market: str) -> None:
        ...

    # ----- trades -----
    @abstractmethod
    def insert_trade(self, book: str, trade: Trade) -> None:
        ...

    @abstractmethod
    def list_trades(self, book: str, account_id: str, *, market: Optional[str] = None,
                    action: Optional[str] = None, session_id: Optional[str] = None,
                    since: Optional[datetime] = None, limit: Optional[int] = None) -> List[Trade]:
        """Trades newest first."""

    # ----- decisions / equity -----
    @abstractmethod
    def insert_decision(self, decision: Decision) -> None:
        ...

    @abstractmethod
    def list_decisions(self, session_id: str, *, market: Optional[str] = None,
                       limit: Optional[int] = None) -> List[Decision]:
        """Decisions newest first."""

    @abstractmethod
    def insert_equity_point(self, point: EquityPoint) -> None:
        ...

    @abstractmethod
    def first_equity_point_since(self, session_id: str, since: datetime) -> Optional[EquityPoint]:
        ...

    def count_trades(self, book: str, account_id: str, *, session_id: Optional[str] = None,
                     since: Optional[datetime] = None) -> int:
        return len(self.list_trades(book, account_id, session_id=session_id, since=since))

    @contextmanager
    def transaction(self) -> Iterator["TradingStore"]:
        """Group writes. Stores without transactions run them one by one."""
        yield self


class InMemoryStore(TradingStore):
    """Thread-safe in-process store. Reads return copies."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._sessions: Dict[str, Session] = {}
        self._accounts: Dict[str, Dict[str, Account]] = {book: {} for book in BOOKS}
        self._positions: Dict[str, Dict[Tuple[str, str], Position]] = {book: {} for book in BOOKS}
        self._trades: Dict[str, List[Trade]] = {book: [] for book in BOOKS}
        self._decisions: List[Decision] = []
        self._equity_points: List[EquityPoint] = []

    @staticmethod
    def _check_book(book: str) -> None:
        if book not in BOOKS:
            raise ValueError(f"Unknown book: {book}")

    def _changed(self) -> None:
        """Hook run after every committed write (outside transactions)."""

    def _after_write(self) -> None:
        if self._tx_depth == 0:
            self._changed()

    # ----- sessions -----
    def get_session(self, session_id: str) -> Optional[Session]:
        with self._lock:
            session = self._sessions.get(session_id)
            return copy.deepcopy(session) if session else None

    def save_session(self, session: Session) -> None:
        with self._lock:
            self._sessions[session.id] = copy.deepcopy(session)
            self._after_write()

    def update_session(self, session_id: str, **fields: Any) -> None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                raise KeyError(session_id)
            for name, value in fields.items():
                if not hasattr(session, name):
                    raise AttributeError(f"Session has no field {name}")
                setattr(session, name, value)
            self._after_write()

    def list_sessions(self, status: Optional[str] = None) -> List[Session]:
        with self._lock:
            return [
                copy.deepcopy(s) for s in self._sessions.values()
                if status is None or s.status == status
            ]

    def acquire_tick_lock(self, session_id: str, min_interval_ms: int, now: datetime) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            last = session.last_tick_at
            if last is not None and last >= now - timedelta(milliseconds=min_interval_ms):
                return False
            session.last_tick_at = now
            self._after_write()
            return True

    # ----- accounts -----
    def get_account(self, book: str, account_id: str) -> Optional[Account]:
        self._check_book(book)
        with self._lock:
            account = self._accounts[book].get(account_id)
            return copy.deepcopy(account) if account else None

    def save_account(self, book: str, account: Account) -> None:
        self._check_book(book)
        with self._lock:
            self._accounts[book][account.id] = copy.deepcopy(account)
            self._after_write()

    def find_live_account(self, user_id: str, venue: str) -> Optional[Account]:
        with self._lock:
            for account in self._accounts[BOOK_LIVE].values():
                if account.user_id == user_id and account.venue == venue:
                    return copy.deepcopy(account)
            return None

    # ----- positions -----
    def list_positions(self, book: str, account_id: str) -> List[Position]:
        self._check_book(book)
        with self._lock:
            return [
                copy.deepcopy(p) for (acct, _), p in self._positions[book].items()
                if acct == account_id
            ]

    def get_position(self, book: str, account_id: str, market: str) -> Optional[Position]:
        self._check_book(book)
        with self._lock:
            position = self._positions[book].get((account_id, market))
            return copy.deepcopy(position) if position else None

    def save_position(self, book: str, position: Position) -> None:
        self._check_book(book)
        with self._lock:
            self._positions[book][(position.account_id, position.market)] = copy.deepcopy(position)
            self._after_write()

    def delete_position(self, book: str, account_id: str, market: str) -> None:
        self._check_book(book)
        with self._lock:
            self._positions[book].pop((account_id, market), None)
            self._after_write()

    # ----- trades -----
    def insert_trade(self, book: str, trade: Trade) -> None:
        self._check_book(book)
        with self._lock:
            self._trades[book].append(copy.deepcopy(trade))
            self._after_write()

    def list_trades(self, book: str, account_id: str, *, market: Optional[str] = None,
                    action: Optional[str] = None, session_id: Optional[str] = None,
                    since: Optional[datetime] = None, limit: Optional[int] = None) -> List[Trade]:
        self._check_book(book)
        with self._lock:
            rows = [
                t for t in self._trades[book]
                if t.account_id == account_id
                and (market is None or t.market == market)
                and (action is None or t.action == action)
                and (session_id is None or t.session_id == session_id)
                and (since is None or t.created_at >= since)
            ]
            # Stable on insertion order for equal timestamps
            rows = sorted(enumerate(rows), key=lambda pair: (pair[1].created_at, pair[0]), reverse=True)
            rows = [t for _, t in rows]
            if limit is not None:
                rows = rows[:limit]
            return copy.deepcopy(rows)

    # ----- decisions / equity -----
    def insert_decision(self, decision: Decision) -> None:
        with self._lock:
            self._decisions.append(copy.deepcopy(decision))
            self._after_write()

    def list_decisions(self, session_id: str, *, market: Optional[str] = None,
                       limit: Optional[int] = None) -> List[Decision]:
        with self._lock:
            rows = [
                d for d in reversed(self._decisions)
                if d.session_id == session_id and (market is None or d.market == market)
            ]
            if limit is not None:
                rows = rows[:limit]
            return copy.deepcopy(rows)

    def insert_equity_point(self, point: EquityPoint) -> None:
        with self._lock:
            self._equity_points.append(copy.deepcopy(point))
            self._after_write()

    def first_equity_point_since(self, session_id: str, since: datetime) -> Optional[EquityPoint]:
        with self._lock:
            rows = [
                p for p in self._equity_points
                if p.session_id == session_id and p.created_at >= since
            ]
            if not rows:
                return None
            return copy.deepcopy(min(rows, key=lambda p: p.created_at))

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStore"]:
        """
        All-or-nothing group of writes.

        On an exception every table is restored to its state at entry and the
        exception propagates.
        """
        with self._lock:
            snapshot = self._snapshot()
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                self._restore(snapshot)
                raise
            finally:
                self._tx_depth -= 1
            self._after_write()

    def _snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy({
            "sessions": self._sessions,
            "accounts": self._accounts,
            "positions": self._positions,
            "trades": self._trades,
            "decisions": self._decisions,
            "equity_points": self._equity_points,
        })

    def _restore(self, snapshot: Dict[str, Any]) -> None:
        self._sessions = snapshot["sessions"]
        self._accounts = snapshot["accounts"]
        self._positions = snapshot["positions"]
        self._trades = snapshot["trades"]
        self._decisions = snapshot["decisions"]
        self._equity_points = snapshot["equity_points"]
