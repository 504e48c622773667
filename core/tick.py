"""
Tick scheduler: one tick in, one TickResult out.

run_tick() is safe to call from several triggers at once (a user request and
a periodic sweep). The store's atomic tick lock lets exactly one of them
through per min-interval; the others get a benign "skipped" result.

Every error is turned into a TickResult status (HTTP-equivalent code) so a
transport layer can return it directly. Per-market failures never abort the
remaining markets, with one exception: a live fill that could not be recorded
halts the session for the rest of the tick.
"""

import logging
import math
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ai.acquisition import DecisionAcquisition
from ai.model_client import ModelClient, create_model_client
from ai.news import NewsService
from ai.tools import MarketAnalyzer
from core.accounting import AccountingReconciler
from core.config import MarketProcessingMode, StrategyConfig, resolve_strategy_config
from core.exceptions import (
    AccountNotFound,
    BillingError,
    CriticalDataUnavailable,
    CriticalRecordingFailure,
    InsufficientBalance,
    SessionNotFound,
    SessionNotRunning,
    TickConfigError,
    TickEngineError,
    Unauthorized,
    VenueSyncError,
)
from core.live_brokers import LiveBroker, build_live_brokers, get_or_create_live_account
from core.models import (
    BOOK_LIVE,
    BOOK_VIRTUAL,
    Decision,
    SIMULATED_MODES,
    Session,
    utc_now,
)
from core.order_router import OrderRouter
from core.ports import BillingPort, CredentialProvider, MarketDataPort, VenueClient
from core.trading_cycle import TickContext, TradingCycle
from core.virtual_broker import VirtualBroker
from infra.alerting import AlertSeverity

logger = logging.getLogger(__name__)

MIN_TICK_INTERVAL_MS = 10_000
LOCK_GRACE_MS = 5_000
# Simulated books are priced from this venue
SIMULATED_PRICE_VENUE = "hyperliquid"
SYSTEM_MARKET = "SYSTEM"
HALTED_MESSAGE = "Session halted: manual review required"


def min_interval_ms(cadence_seconds: float) -> int:
    return max(MIN_TICK_INTERVAL_MS, int(cadence_seconds * 1000) - LOCK_GRACE_MS)


def default_model_factory(session: Session) -> ModelClient:
    return create_model_client(
        session.model_provider,
        api_key=session.model_api_key,
        model=session.model_name,
        base_url=session.model_base_url,
    )


@dataclass
class TickResult:
    status: int = 200
    success: bool = False
    skipped: bool = False
    reason: Optional[str] = None
    min_interval_ms: Optional[int] = None
    decisions: List[Decision] = field(default_factory=list)
    error: Optional[str] = None
    equity: Optional[float] = None

    @property
    def outcome(self) -> str:
        if self.skipped:
            return "skipped"
        if self.success:
            return "executed"
        if self.status < 500:
            return "rejected"
        return "error"

    def to_dict(self) -> Dict[str, Any]:
        if self.skipped:
            return {"skipped": True, "reason": self.reason, "min_interval_ms": self.min_interval_ms}
        if self.success:
            data: Dict[str, Any] = {
                "success": True,
                "decisions": [d.summary() for d in self.decisions],
            }
            if self.equity is not None:
                data["equity"] = self.equity
            return data
        return {"error": self.error}


class TickScheduler:
    """
    Runs ticks for sessions.

    Args:
        store: TradingStore
        market_data: MarketDataPort
        model_factory: Builds the model client for a session
        billing: BillingPort (None disables charging)
        credentials: CredentialProvider for live sessions
        venues: Live VenueClients keyed by venue name
        metrics: MetricsRecorder
        alerts: AlertService
        clock: UTC clock
        news: NewsService for prompts and the get_news tool
        analyzer: Market analysis function
    """

    def __init__(self,
                 store,
                 market_data: MarketDataPort,
                 model_factory: Callable[[Session], ModelClient] = default_model_factory,
                 billing: Optional[BillingPort] = None,
                 credentials: Optional[CredentialProvider] = None,
                 venues: Optional[Dict[str, VenueClient]] = None,
                 metrics=None,
                 alerts=None,
                 clock: Callable[[], datetime] = utc_now,
                 news: Optional[NewsService] = None,
                 analyzer: Optional[MarketAnalyzer] = None):
        self.store = store
        self.market_data = market_data
        self.model_factory = model_factory
        self.billing = billing
        self.credentials = credentials
        self.metrics = metrics
        self.alerts = alerts
        self.clock = clock

        self.virtual_broker = VirtualBroker(store, clock=clock)
        self.live_brokers: Dict[str, LiveBroker] = build_live_brokers(venues or {}, store, clock)
        self.router = OrderRouter(store, self.virtual_broker, self.live_brokers, metrics=metrics, alerts=alerts)
        self.acquisition = DecisionAcquisition(news=news, analyzer=analyzer, metrics=metrics)
        self.reconciler = AccountingReconciler(store, metrics=metrics, alerts=alerts)

    # ----- entry points -----
    def run_tick(self, session_id: str, caller_id: Optional[str] = None) -> TickResult:
        started = time.monotonic()
        try:
            result = self._run(session_id, caller_id)
        except TickEngineError as e:
            logger.warning(f"Tick for session {session_id} ended with {e.status_code}: {e.message}")
            result = TickResult(status=e.status_code, error=e.message)
        except CriticalDataUnavailable as e:
            logger.error(f"Tick for session {session_id} aborted: {e.source} unavailable ({e.original})")
            result = TickResult(status=500, error=f"Failed to fetch {e.source}: {e.original}")
        except Exception as e:
            logger.error(f"Unexpected error in tick for session {session_id}: {e}", exc_info=True)
            result = TickResult(status=500, error=str(e) or e.__class__.__name__)

        if self.metrics is not None:
            self.metrics.record_tick(result.outcome, time.monotonic() - started)
        return result

    def run_due_sessions(self, now: Optional[datetime] = None) -> Dict[str, TickResult]:
        """Tick every running session whose cadence has elapsed."""
        now = now or self.clock()
        results: Dict[str, TickResult] = {}
        for session in self.store.list_sessions(status="running"):
            if not self._is_due(session, now):
                continue
            results[session.id] = self.run_tick(session.id)
        if results:
            logger.info(f"Due-session sweep ran {len(results)} tick(s)")
        return results

    def _is_due(self, session: Session, now: datetime) -> bool:
        if session.last_tick_at is None:
            return True
        try:
            cadence = self._cadence(resolve_strategy_config(session.filters), session)
        except TickConfigError:
            # Let run_tick report the config error
            return True
        elapsed = (now - session.last_tick_at).total_seconds()
        return elapsed >= cadence - LOCK_GRACE_MS / 1000

    # ----- tick -----
    def _run(self, session_id: str, caller_id: Optional[str]) -> TickResult:
        session = self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound("Session not found")
        if caller_id is not None and caller_id != session.user_id:
            raise Unauthorized("Unauthorized")
        if session.status != "running":
            raise SessionNotRunning(f"Session is not running (status: {session.status})")

        config = resolve_strategy_config(session.filters)
        cadence = self._cadence(config, session)
        interval_ms = min_interval_ms(cadence)

        now = self.clock()
        if not self.store.acquire_tick_lock(session_id, interval_ms, now):
            logger.info(f"Tick lock not acquired for session {session_id} (min interval {interval_ms}ms)")
            return TickResult(skipped=True, reason="tick_lock_failed", min_interval_ms=interval_ms)
        logger.info(f"Tick started for session {session_id} ({session.mode}, cadence {cadence:g}s)")

        markets = config.markets or [m.strip().upper() for m in session.markets if m and m.strip()]
        if not markets:
            raise TickConfigError("No markets configured")

        if session.mode in SIMULATED_MODES:
            book, price_venue, credentials = BOOK_VIRTUAL, SIMULATED_PRICE_VENUE, None
            account_id = session.account_id
            if not account_id or self.store.get_account(book, account_id) is None:
                raise AccountNotFound("Virtual account not found")
        elif session.mode == "live":
            book, price_venue = BOOK_LIVE, session.venue
            account_id, credentials = self._prepare_live(session, now)
        else:
            raise TickConfigError(f"Invalid session mode: {session.mode}")

        client = self.model_factory(session)
        to_process = self._select_markets(markets, config, session, cadence, now)

        open_markets = [p.market for p in self.store.list_positions(book, account_id)]
        price_markets = list(dict.fromkeys(to_process + open_markets))
        try:
            prices = self.market_data.get_prices(price_venue, price_markets)
        except Exception as e:
            raise CriticalDataUnavailable("prices", e) from e

        if session.mode in SIMULATED_MODES:
            self.virtual_broker.mark_to_market(account_id, prices)

        tick = TickContext(
            session=session,
            config=config,
            client=client,
            book=book,
            account_id=account_id,
            price_venue=price_venue,
            now=now,
            prices=prices,
            credentials=credentials,
        )
        cycle = TradingCycle(
            tick, self.store, self.market_data, self.router, self.acquisition,
            billing=self.billing, metrics=self.metrics, alerts=self.alerts,
        )

        decisions: List[Decision] = []
        halted: Optional[str] = None
        billing_error: Optional[TickEngineError] = None

        try:
            cycle.run_exits(decisions)
        except CriticalRecordingFailure as e:
            halted = HALTED_MESSAGE
            decisions.append(self._error_decision(session, SYSTEM_MARKET, str(e), now))

        for market in to_process:
            if halted:
                decisions.append(self._error_decision(session, market, halted, now))
                continue
            try:
                decisions.append(cycle.process_market(market))
            except CriticalRecordingFailure as e:
                halted = HALTED_MESSAGE
                decisions.append(self._error_decision(session, market, str(e), now))
            except (InsufficientBalance, BillingError) as e:
                billing_error = e
                halted = f"Session paused: {e.message}"
                decisions.append(self._error_decision(session, market, e.message, now))
            except Exception as e:
                logger.error(f"Error processing {market} for session {session_id}: {e}", exc_info=True)
                decisions.append(self._error_decision(session, market, str(e) or e.__class__.__name__, now))

        totals = self.reconciler.finalize(
            session_id=session_id,
            book=book,
            account_id=account_id,
            mode=session.mode,
            prices=prices,
            now=now,
        )
        equity = totals.equity if totals else None
        logger.info(
            f"Tick finished for session {session_id}: {len(decisions)} decision(s), "
            f"{sum(1 for d in decisions if d.executed)} executed"
        )

        if billing_error is not None:
            return TickResult(status=billing_error.status_code, error=billing_error.message,
                              decisions=decisions, equity=equity)
        return TickResult(success=True, decisions=decisions, equity=equity)

    @staticmethod
    def _cadence(config: StrategyConfig, session: Session) -> float:
        cadence = config.effective_cadence(session.cadence_seconds)
        if not math.isfinite(cadence) or cadence <= 0:
            raise TickConfigError(f"Invalid cadence: {cadence}")
        return cadence

    @staticmethod
    def _select_markets(markets: List[str], config: StrategyConfig, session: Session,
                        cadence: float, now: datetime) -> List[str]:
        if config.market_processing_mode != MarketProcessingMode.ROUND_ROBIN or len(markets) == 1:
            return list(markets)
        elapsed = (now - session.started_at).total_seconds() if session.started_at else 0.0
        index = int(max(elapsed, 0.0) // cadence) % len(markets)
        logger.debug(f"Round-robin: processing {markets[index]} (index {index} of {len(markets)})")
        return [markets[index]]

    def _prepare_live(self, session: Session, now: datetime):
        broker = self.live_brokers.get(session.venue)
        if broker is None:
            raise TickConfigError(f"Unsupported live venue: {session.venue}")
        credentials = (
            self.credentials.get_credentials(session.user_id, session.venue)
            if self.credentials is not None else None
        )

        try:
            account = get_or_create_live_account(self.store, broker, session.user_id, credentials)
            if session.live_account_id != account.id:
                logger.warning(
                    f"Session {session.id} pointed at live account {session.live_account_id}; "
                    f"repointing to {account.id}"
                )
                self.store.update_session(session.id, live_account_id=account.id)
                session.live_account_id = account.id
            broker.sync(account, credentials)
        except VenueSyncError as e:
            self.store.insert_decision(self._system_decision(session, e.message, now))
            if self.alerts is not None:
                self.alerts.notify(
                    AlertSeverity.WARNING,
                    "Live sync failed",
                    e.message,
                    {"session_id": session.id, "venue": session.venue},
                )
            raise
        return account.id, credentials

    @staticmethod
    def _system_decision(session: Session, message: str, now: datetime) -> Decision:
        return Decision(
            session_id=session.id,
            market=SYSTEM_MARKET,
            action_summary=f"Error: {message}",
            created_at=now,
            error=message,
        )

    def _error_decision(self, session: Session, market: str, message: str, now: datetime) -> Decision:
        decision = Decision(
            session_id=session.id,
            market=market,
            action_summary=f"Error: {message}",
            created_at=now,
            error=message,
        )
        self.store.insert_decision(decision)
        if self.metrics is not None:
            self.metrics.record_decision("error")
        return decision
