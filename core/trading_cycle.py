"""
Trading Cycle Pipeline - per-tick core logic

One TradingCycle is built per tick and runs:
1. Exit pre-pass over every open position (rule-based exits)
2. Per-market pipeline, sequentially:
   a. Reload positions and account
   b. Build market profile (perpetual vs spot)
   c. Acquire decision (passive or agentic)
   d. Charge billing
   e. AI-driven exit (signal mode)
   f. Risk gate
   g. Execute
   h. Build the Decision record

Markets run in order on purpose: later markets see exposure and trade counts
committed by earlier ones. Each market commits independently.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from ai.acquisition import DecisionAcquisition
from ai.intent import Intent, IntentWithUsage
from ai.model_client import ModelClient
from ai.prompts import MarketContext, StrategyConstraints
from ai.tools import ToolContext
from core.config import ExitMode, StrategyConfig
from core.exceptions import AccountNotFound, BillingError, InsufficientBalance
from core.exits import ExitDecision, ExitRuleEvaluator
from core.models import (
    Account,
    Decision,
    OrderRequest,
    Position,
    SIMULATED_MODES,
    Session,
    order_side_for,
    signed_pct,
)
from core.order_router import OrderRouter
from core.ports import BillingPort, MarketDataPort
from core.risk import RiskContext, RiskGate, RiskResult, utc_midnight
from core.sizing import MarketProfile, build_market_profile
from core.trade_limits import TradeLimits
from infra.alerting import AlertSeverity

logger = logging.getLogger(__name__)

EXIT_SLIPPAGE_BPS = 50
ORDER_FEE_BPS = 5
# Live AI exits overshoot the notional so the venue closes the whole position
LIVE_EXIT_NOTIONAL_BUFFER = 1.01

INSUFFICIENT_BALANCE_MESSAGE = "Insufficient balance to continue trading. Please add funds to resume."
BILLING_ERROR_MESSAGE = (
    "Billing system error. Session paused to prevent unbilled usage. "
    "Please try again or contact support."
)
RISK_CONFIGURATION_REASON = (
    "Risk limits not configured: set risk.max_position_usd and risk.max_leverage to positive values"
)


@dataclass
class TickContext:
    """Resolved once per tick, shared by every market."""
    session: Session
    config: StrategyConfig
    client: ModelClient
    book: str
    account_id: str
    price_venue: str
    now: datetime
    prices: Dict[str, float] = field(default_factory=dict)
    credentials: Optional[Dict[str, str]] = None

    @property
    def mode(self) -> str:
        return self.session.mode

    @property
    def is_live(self) -> bool:
        return self.session.mode not in SIMULATED_MODES


def exit_order_side(position: Position) -> str:
    return "sell" if position.side == "long" else "buy"


def account_summary(account: Account) -> Dict[str, float]:
    starting = account.starting_equity
    return {
        "equity": account.equity,
        "cash_balance": account.cash_balance,
        "starting_equity": starting,
        "total_return_pct": (account.equity - starting) / starting * 100 if starting else 0.0,
    }


class TradingCycle:
    """
    Runs the exit pre-pass and the per-market pipeline for one tick.

    Args:
        tick: Resolved tick context
        store: TradingStore
        market_data: MarketDataPort
        router: OrderRouter
        acquisition: DecisionAcquisition
        billing: BillingPort (optional; None means no charging)
        metrics: MetricsRecorder (optional)
        alerts: AlertService (optional)
    """

    def __init__(self,
                 tick: TickContext,
                 store,
                 market_data: MarketDataPort,
                 router: OrderRouter,
                 acquisition: DecisionAcquisition,
                 billing: Optional[BillingPort] = None,
                 metrics=None,
                 alerts=None):
        self.tick = tick
        self.config = tick.config
        self.store = store
        self.market_data = market_data
        self.router = router
        self.acquisition = acquisition
        self.billing = billing
        self.metrics = metrics
        self.alerts = alerts

        self.limits = TradeLimits(self.config.trade_control, store, tick.book)
        self.exits = ExitRuleEvaluator(
            self.config.exit_rules, self.config.trade_control, self.limits, store, tick.book
        )
        self.gate = RiskGate(self.config, self.limits)

    # ----- exit pre-pass -----
    def run_exits(self, decisions: Optional[List[Decision]] = None) -> List[Decision]:
        """
        Evaluate exit rules for every open position, configured market or not.

        Decisions are appended to ``decisions`` as each exit completes, so a
        caller holding the list keeps the finished exits when a later one
        raises CriticalRecordingFailure.
        """
        tick = self.tick
        if decisions is None:
            decisions = []
        for position in self.store.list_positions(tick.book, tick.account_id):
            price = tick.prices.get(position.market)
            if not price:
                logger.warning(f"No price for open position {position.market}; skipping exit check")
                continue

            exit_decision = self.exits.evaluate(position, price, tick.now)
            if not exit_decision.should_exit:
                continue

            logger.info(f"Exit triggered for {position.market} {position.side}: {exit_decision.reason}")
            decisions.append(self._execute_rule_exit(position, price, exit_decision))
        return decisions

    def _execute_rule_exit(self, position: Position, price: float, exit_decision: ExitDecision) -> Decision:
        pnl = signed_pct(position.pnl_pct_at(price))
        result = self.router.place_order(
            self._exit_request(position, price, position.size * price),
            self.tick.credentials,
        )

        if result.success:
            summary = f"Closed {position.side}: {exit_decision.reason} (P&L: {pnl})"
            if self.metrics is not None:
                self.metrics.record_exit(exit_decision.kind)
        else:
            summary = f"Auto-exit failed: {result.error}"
            logger.error(f"Auto-exit failed for {position.market}: {result.error}")

        decision = Decision(
            session_id=self.tick.session.id,
            market=position.market,
            action_summary=summary,
            created_at=self.tick.now,
            market_snapshot={"price": price},
            intent={
                "market": position.market,
                "bias": "close",
                "position_side": position.side,
                "confidence": 1.0,
                "reasoning": exit_decision.reason,
            },
            confidence=1.0,
            risk_result={
                "passed": True,
                "reason": exit_decision.reason,
                "exit_kind": exit_decision.kind,
            },
            proposed_order={
                "market": position.market,
                "side": exit_order_side(position),
                "notional_usd": position.size * price,
                "is_exit": True,
            },
            executed=result.success,
            error=None if result.success else result.error,
        )
        self._save(decision, "exit" if result.success else "error")
        return decision

    def _exit_request(self, position: Position, price: float, notional: float) -> OrderRequest:
        tick = self.tick
        return OrderRequest(
            mode=tick.mode,
            venue=tick.session.venue,
            account_id=tick.account_id,
            market=position.market,
            side=exit_order_side(position),
            notional_usd=notional,
            slippage_bps=EXIT_SLIPPAGE_BPS,
            fee_bps=ORDER_FEE_BPS,
            is_exit=True,
            exit_position=position,
            exit_size=position.size,
            leverage=position.leverage,
            price=price,
            session_id=tick.session.id,
            strategy_id=tick.session.strategy_id,
        )

    # ----- per-market pipeline -----
    def process_market(self, market: str) -> Decision:
        tick = self.tick
        price = tick.prices.get(market)
        if not price:
            decision = Decision(
                session_id=tick.session.id,
                market=market,
                action_summary=f"No price available for {market}",
                created_at=tick.now,
                error=f"No price available for {market}",
            )
            self._save(decision, "error")
            return decision

        # Step 1: fresh state (earlier markets in this tick may have traded)
        account = self.store.get_account(tick.book, tick.account_id)
        if account is None:
            raise AccountNotFound(f"Account {tick.account_id} not found")
        all_positions = self.store.list_positions(tick.book, tick.account_id)
        position = next((p for p in all_positions if p.market == market), None)

        # Step 2: market profile
        profile = self.profile_for(market, account)
        logger.debug(f"Processing {market} ({profile.market_type}, max {profile.max_leverage}x)")

        # Step 3: decision
        ctx = MarketContext(
            prompt=tick.session.prompt,
            market=market,
            current_price=price,
            now=tick.now,
            account=account_summary(account),
            constraints=StrategyConstraints(
                market_type=profile.market_type,
                max_leverage=profile.max_leverage,
                allow_long=profile.allow_long,
                allow_short=profile.allow_short,
                entry_behaviors=self.config.entry.behaviors.enabled(),
            ),
            position=position,
            all_positions=all_positions,
        )
        tool_ctx = ToolContext(
            market_data=self.market_data,
            venue=tick.price_venue,
            store=self.store,
            book=tick.book,
            session_id=tick.session.id,
            account_id=tick.account_id,
            market=market,
            current_price=price,
            account=account_summary(account),
            position=position,
            all_positions=all_positions,
        )
        acquired = self.acquisition.acquire(tick.client, self.config, ctx, tool_ctx)
        intent = acquired.intent
        logger.info(
            f"{market} intent: {intent.bias} (confidence {intent.confidence:.2f}, "
            f"leverage {intent.leverage}x)"
        )

        # Step 4: billing
        self._charge(acquired)

        # Step 5: AI-driven exit
        if position is not None and self.config.exit_rules.mode == ExitMode.SIGNAL:
            wants_reverse = intent.bias in ("long", "short") and intent.bias != position.side
            if intent.bias == "close" or wants_reverse:
                return self._ai_exit(market, price, position, intent, ctx)

        # Step 6: risk gate
        today_start = self.store.first_equity_point_since(tick.session.id, utc_midnight(tick.now))
        risk_ctx = RiskContext(
            intent=intent,
            market=market,
            price=price,
            account=account,
            position=position,
            all_positions=all_positions,
            profile=profile,
            session_id=tick.session.id,
            now=tick.now,
            indicators=ctx.indicators,
            daily_start_equity=today_start.equity if today_start else None,
        )
        risk = self.gate.evaluate(risk_ctx)

        if not risk.passed:
            return self._rejected(market, price, intent, ctx, risk, risk_ctx)

        # Step 7: execute
        side = risk.draft.side
        notional = risk.draft.notional
        result = self.router.place_order(OrderRequest(
            mode=tick.mode,
            venue=tick.session.venue,
            account_id=tick.account_id,
            market=market,
            side=side,
            notional_usd=notional,
            slippage_bps=self.config.entry.timing.order_slippage_bps,
            fee_bps=ORDER_FEE_BPS,
            leverage=risk.draft.leverage,
            price=price,
            session_id=tick.session.id,
            strategy_id=tick.session.strategy_id,
        ), tick.credentials)

        # Step 8: decision
        if result.success:
            summary = f"Opened {intent.bias}: ${notional:.2f} at ${price:.2f}"
        else:
            summary = f"Order failed: {result.error}"
        risk_result = risk.to_dict()
        risk_result["order_result"] = result.to_dict()
        decision = self._decision(
            market, price, intent, ctx, summary,
            risk_result=risk_result,
            proposed_order={"market": market, "bias": intent.bias, "side": side, "notional_usd": notional},
            executed=result.success,
            error=None if result.success else result.error,
        )
        self._save(decision, "executed" if result.success else "error")
        return decision

    def _ai_exit(self, market: str, price: float, position: Position, intent: Intent,
                 ctx: MarketContext) -> Decision:
        tick = self.tick
        verb = "close" if intent.bias == "close" else "reverse"
        pnl_pct = position.pnl_pct_at(price)

        age = self.limits.position_age_minutes(tick.account_id, market, tick.now)
        min_hold = self.config.trade_control.min_hold_minutes
        if age is not None and age < min_hold:
            remaining = self.limits.min_hold_remaining(tick.account_id, market, tick.now)
            summary = f"Min hold time: AI wanted to {verb} but {remaining} min remaining"
            logger.info(f"{market}: {summary}")
            decision = self._decision(
                market, price, intent, ctx, summary,
                risk_result={"passed": False, "reason": summary, "failed_check": "min_hold"},
            )
            self._save(decision, "hold")
            return decision

        notional = position.size * price
        if tick.is_live:
            notional *= LIVE_EXIT_NOTIONAL_BUFFER
        result = self.router.place_order(self._exit_request(position, price, notional), tick.credentials)

        if not result.success:
            summary = f"AI-driven exit failed: {result.error}"
            logger.error(f"{market}: {summary}")
            decision = self._decision(
                market, price, intent, ctx, summary,
                risk_result={"passed": True, "reason": f"AI {verb}"},
                error=result.error,
            )
            self._save(decision, "error")
            return decision

        if verb == "close":
            outcome = "lock in profit" if pnl_pct >= 0 else "cut loss"
            summary = f"AI closed {position.side} position to {outcome} ({signed_pct(pnl_pct)})"
        else:
            summary = f"AI reversal: Closed {position.side} position (new bias: {intent.bias})"
        logger.info(f"{market}: {summary}")
        if self.metrics is not None:
            self.metrics.record_exit("ai")

        exit_intent = Intent(**{**intent.to_dict(), "bias": "close", "position_side": position.side})
        decision = self._decision(
            market, price, exit_intent, ctx, summary,
            risk_result={"passed": True, "reason": f"AI {verb}", "order_result": result.to_dict()},
            proposed_order={
                "market": market,
                "bias": "close",
                "side": exit_order_side(position),
                "notional_usd": notional,
            },
            executed=True,
        )
        self._save(decision, "exit")
        return decision

    def _rejected(self, market: str, price: float, intent: Intent, ctx: MarketContext,
                  risk: RiskResult, risk_ctx: RiskContext) -> Decision:
        risk_result = risk.to_dict()
        proposed_order: Dict[str, Any] = {}

        if intent.bias in ("long", "short"):
            if self.config.risk_limits_configured:
                proposed_order = {
                    "market": market,
                    "bias": intent.bias,
                    "side": order_side_for(intent.bias),
                    "notional_usd": self.gate.proposed_notional(risk_ctx),
                }
            else:
                risk_result["failed_checks"] = [
                    {"check": "risk_configuration", "reason": RISK_CONFIGURATION_REASON}
                ]

        hold_path = risk.failed_check == "position_path"
        if not hold_path and self.metrics is not None:
            self.metrics.record_rejection(risk.failed_check or "unknown")

        decision = self._decision(
            market, price, intent, ctx, risk.reason or "Rejected by risk gate",
            risk_result=risk_result,
            proposed_order=proposed_order,
        )
        self._save(decision, "hold" if hold_path else "rejected")
        return decision

    # ----- billing -----
    def _charge(self, acquired: IntentWithUsage) -> None:
        if self.billing is None:
            return
        session = self.tick.session
        try:
            self.billing.charge(session, acquired.usage.to_dict(), acquired.model)
        except InsufficientBalance:
            self._pause(INSUFFICIENT_BALANCE_MESSAGE)
            raise
        except Exception as e:
            logger.error(f"Billing failed for session {session.id}: {e}", exc_info=True)
            self._pause(BILLING_ERROR_MESSAGE)
            raise BillingError(BILLING_ERROR_MESSAGE) from e

    def _pause(self, message: str) -> None:
        session = self.tick.session
        self.store.update_session(session.id, status="paused", error_message=message)
        logger.warning(f"Session {session.id} paused: {message}")
        if self.alerts is not None:
            self.alerts.notify(
                AlertSeverity.CRITICAL,
                "Session paused for billing",
                message,
                {"session_id": session.id, "user_id": session.user_id},
            )

    # ----- helpers -----
    def _decision(self, market: str, price: float, intent: Intent, ctx: MarketContext,
                  summary: str, *, risk_result: Dict[str, Any],
                  proposed_order: Optional[Dict[str, Any]] = None,
                  executed: bool = False, error: Optional[str] = None) -> Decision:
        snapshot: Dict[str, Any] = {"price": price}
        orderbook = ctx.market_data.get("orderbook")
        if orderbook:
            snapshot["mid"] = orderbook.get("mid")
            snapshot["spread_pct"] = orderbook.get("spread_pct")
        return Decision(
            session_id=self.tick.session.id,
            market=market,
            action_summary=summary,
            created_at=self.tick.now,
            market_snapshot=snapshot,
            indicators_snapshot=ctx.indicators or {},
            intent=intent.to_dict(),
            confidence=intent.confidence,
            risk_result=risk_result,
            proposed_order=proposed_order or {},
            executed=executed,
            error=error,
        )

    def _save(self, decision: Decision, outcome: str) -> None:
        self.store.insert_decision(decision)
        if self.metrics is not None:
            self.metrics.record_decision(outcome)

    def profile_for(self, market: str, account: Account) -> MarketProfile:
        guardrails = self.config.guardrails
        return build_market_profile(
            market, self.tick.session.venue, self.tick.mode, account, self.config.risk,
            allow_long=guardrails.allow_long, allow_short=guardrails.allow_short,
        )
