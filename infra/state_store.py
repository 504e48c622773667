"""
JSON-file store.

Persistent TradingStore for single-process deployments. Two files:

- the state file holds the mutable tables (sessions, accounts, positions) and
  is rewritten atomically (temp file + rename) only when they change
- a JSONL journal next to it holds the append-only tables (trades, decisions,
  equity points); committed rows are appended, never rewritten

Version 1 state files, which carried every table inline, are read and moved
into the journal on the first write.
"""

import dataclasses
import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Type

from core.models import Account, Decision, EquityPoint, Position, Session, Trade
from infra.store import BOOKS, InMemoryStore

logger = logging.getLogger(__name__)

STATE_VERSION = 2
SUPPORTED_VERSIONS = (1, STATE_VERSION)

_DATETIME_FIELDS = {"started_at", "last_tick_at", "updated_at", "created_at"}

_JOURNAL_TYPES = {"trade": Trade, "decision": Decision, "equity_point": EquityPoint}


def _encode(record: Any) -> Dict[str, Any]:
    data = dataclasses.asdict(record)
    for key, value in data.items():
        if isinstance(value, datetime):
            data[key] = value.isoformat()
    return data


def _decode(cls: Type, data: Dict[str, Any]):
    known = {f.name for f in dataclasses.fields(cls)}
    kwargs = {}
    for key, value in data.items():
        if key not in known:
            continue
        if key in _DATETIME_FIELDS and isinstance(value, str):
            value = datetime.fromisoformat(value)
        kwargs[key] = value
    return cls(**kwargs)


def journal_path_for(state_file: Path) -> Path:
    return state_file.with_name(f"{state_file.stem}.journal.jsonl")


class JsonStateStore(InMemoryStore):
    """
    InMemoryStore persisted to a JSON state file plus a JSONL journal.

    Args:
        state_file: Path to the JSON file (default: $TICK_STATE_FILE or
            data/.tick_state.json). The journal sits beside it as
            <stem>.journal.jsonl.
    """

    def __init__(self, state_file: Optional[str] = None):
        super().__init__()
        self.state_file = Path(state_file or os.getenv("TICK_STATE_FILE", "data/.tick_state.json"))
        self.journal_file = journal_path_for(self.state_file)
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        # Rows already in the journal, per append-only table
        self._journaled: Dict[str, int] = {key: 0 for key in self._journal_tables()}
        self._last_state_text: Optional[str] = None
        self._load()
        logger.info(f"Initialized JsonStateStore at {self.state_file}")

    def _journal_tables(self) -> Dict[str, List[Any]]:
        tables: Dict[str, List[Any]] = {f"trade:{book}": self._trades[book] for book in BOOKS}
        tables["decision"] = self._decisions
        tables["equity_point"] = self._equity_points
        return tables

    # ----- loading -----
    def _load(self) -> None:
        if self.state_file.exists():
            with open(self.state_file, "r", encoding="utf-8") as f:
                text = f.read()
            data = json.loads(text)
            if not isinstance(data, dict):
                raise ValueError(f"Invalid state file format: {self.state_file}")

            version = data.get("version", STATE_VERSION)
            if version not in SUPPORTED_VERSIONS:
                raise ValueError(f"Unsupported state file version {version} (expected {STATE_VERSION})")

            self._load_tables(data)
            if version == 1:
                self._load_inline_history(data)
                logger.info(f"Migrating version 1 state file {self.state_file} to journal")
            else:
                self._last_state_text = text
        else:
            logger.debug("No state file found, starting empty")

        self._load_journal()
        logger.debug(
            f"Loaded state: {len(self._sessions)} sessions, "
            f"{sum(len(t) for t in self._trades.values())} trades, "
            f"{len(self._decisions)} decisions"
        )

    def _load_tables(self, data: Dict[str, Any]) -> None:
        self._sessions = {
            row["id"]: _decode(Session, row) for row in data.get("sessions", [])
        }
        for book in BOOKS:
            accounts = data.get("accounts", {}).get(book, [])
            self._accounts[book] = {row["id"]: _decode(Account, row) for row in accounts}
            positions = [_decode(Position, row) for row in data.get("positions", {}).get(book, [])]
            self._positions[book] = {(p.account_id, p.market): p for p in positions}

    def _load_inline_history(self, data: Dict[str, Any]) -> None:
        for book in BOOKS:
            self._trades[book].extend(
                _decode(Trade, row) for row in data.get("trades", {}).get(book, [])
            )
        self._decisions.extend(_decode(Decision, row) for row in data.get("decisions", []))
        self._equity_points.extend(_decode(EquityPoint, row) for row in data.get("equity_points", []))

    def _load_journal(self) -> None:
        if not self.journal_file.exists():
            return

        with open(self.journal_file, "r", encoding="utf-8") as f:
            lines = [line for line in f.read().splitlines() if line.strip()]

        journaled = {key: 0 for key in self._journaled}
        for index, line in enumerate(lines):
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                if index == len(lines) - 1:
                    # Interrupted append; the row was never acknowledged
                    logger.warning(f"Dropping truncated last line of {self.journal_file}")
                    self._rewrite_journal(lines[:index])
                    break
                raise ValueError(f"Corrupt journal line {index + 1} in {self.journal_file}")

            kind = entry.get("kind")
            if kind not in _JOURNAL_TYPES:
                raise ValueError(f"Unknown journal entry kind {kind!r} in {self.journal_file}")
            row = _decode(_JOURNAL_TYPES[kind], entry["row"])
            if kind == "trade":
                book = entry.get("book")
                self._check_book(book)
                self._trades[book].append(row)
                journaled[f"trade:{book}"] += 1
            elif kind == "decision":
                self._decisions.append(row)
                journaled["decision"] += 1
            else:
                self._equity_points.append(row)
                journaled["equity_point"] += 1

        # Version 1 inline rows stay pending until the first write
        self._journaled = journaled

    # ----- writing -----
    def _dump_state(self) -> Dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "sessions": [_encode(s) for s in self._sessions.values()],
            "accounts": {b: [_encode(a) for a in self._accounts[b].values()] for b in BOOKS},
            "positions": {b: [_encode(p) for p in self._positions[b].values()] for b in BOOKS},
        }

    def _pending_journal_lines(self) -> List[str]:
        lines: List[str] = []
        for key, rows in self._journal_tables().items():
            kind, _, book = key.partition(":")
            for row in rows[self._journaled[key]:]:
                entry: Dict[str, Any] = {"kind": kind, "row": _encode(row)}
                if book:
                    entry["book"] = book
                lines.append(json.dumps(entry, default=str))
        return lines

    def _changed(self) -> None:
        """Append new history rows, then rewrite the state file if it changed."""
        lines = self._pending_journal_lines()
        if lines:
            with open(self.journal_file, "a", encoding="utf-8") as f:
                f.write("\n".join(lines) + "\n")
                f.flush()
                os.fsync(f.fileno())
            self._journaled = {key: len(rows) for key, rows in self._journal_tables().items()}
            logger.debug(f"Appended {len(lines)} rows to journal")

        text = json.dumps(self._dump_state(), indent=2, default=str)
        if text != self._last_state_text:
            self._write_state(text)
            self._last_state_text = text

    def _write_state(self, text: str) -> None:
        self._replace_file(self.state_file, text)
        logger.debug("Saved state to file")

    def _rewrite_journal(self, lines: List[str]) -> None:
        self._replace_file(self.journal_file, "".join(f"{line}\n" for line in lines))

    def _replace_file(self, target: Path, text: str) -> None:
        temp_fd, temp_path = tempfile.mkstemp(
            dir=target.parent,
            prefix=".tick_state_",
            suffix=".tmp",
        )
        try:
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(temp_path, target)
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
