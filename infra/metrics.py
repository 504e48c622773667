"""Prometheus-backed metrics hooks for the tick engine."""

from __future__ import annotations

import logging
from typing import Dict, Optional

from prometheus_client import REGISTRY, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)

_METRIC_PREFIX = "tick_"


class MetricsRecorder:
    """
    Expose tick stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        """Ensure only one MetricsRecorder instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        # Skip re-initialization if already initialized
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        # Last-seen values, readable with metrics disabled (tests, logs)
        self.last_tick_outcome: Optional[str] = None
        self.last_equity: Dict[str, float] = {}
        self.rejections: Dict[str, int] = {}

        if not self._enabled:
            self._tick_counter = None
            self._tick_summary = None
            self._decision_counter = None
            self._rejection_counter = None
            self._exit_counter = None
            self._order_counter = None
            self._model_latency = None
            self._model_tokens = None
            self._equity_gauge = None
            self._reconcile_counter = None
            return

        self._tick_counter = Counter(
            "tick_runs_total",
            "Total ticks by outcome",
            labelnames=("outcome",),  # executed, skipped, rejected, error
        )
        self._tick_summary = Summary(
            "tick_duration_seconds",
            "Duration of a full tick",
        )
        self._decision_counter = Counter(
            "tick_decisions_total",
            "Decisions recorded, grouped by outcome",
            labelnames=("outcome",),
        )
        self._rejection_counter = Counter(
            "tick_risk_rejections_total",
            "Risk gate rejections by check",
            labelnames=("check",),
        )
        self._exit_counter = Counter(
            "tick_exits_total",
            "Automatic exits by reason kind",
            labelnames=("kind",),
        )
        self._order_counter = Counter(
            "tick_orders_total",
            "Orders routed by mode, venue and result",
            labelnames=("mode", "venue", "result"),
        )
        self._model_latency = Summary(
            "tick_model_call_seconds",
            "Latency of model provider calls",
            labelnames=("provider",),
        )
        self._model_tokens = Counter(
            "tick_model_tokens_total",
            "Model tokens consumed",
            labelnames=("provider", "direction"),
        )
        self._equity_gauge = Gauge(
            "tick_account_equity_usd",
            "Account equity after the last tick",
            labelnames=("session",),
        )
        self._reconcile_counter = Counter(
            "tick_reconciliation_mismatches_total",
            "Ticks whose PnL identity did not reconcile",
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None and cls._instance._enabled:
            collectors_to_remove = []
            for collector in list(REGISTRY._collector_to_names):
                names = REGISTRY._collector_to_names.get(collector, set())
                if any(name.startswith(_METRIC_PREFIX) for name in names):
                    collectors_to_remove.append(collector)
            for collector in collectors_to_remove:
                try:
                    REGISTRY.unregister(collector)
                except KeyError:
                    logger.debug("Collector already unregistered")

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port)
        except OSError as exc:
            self._enabled = False
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)
            return
        self._started = True
        logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)

    def is_enabled(self) -> bool:
        return self._enabled

    def record_tick(self, outcome: str, duration: Optional[float] = None) -> None:
        self.last_tick_outcome = outcome
        if self._enabled:
            self._tick_counter.labels(outcome=outcome).inc()
            if duration is not None:
                self._tick_summary.observe(duration)

    def record_decision(self, outcome: str) -> None:
        if self._enabled:
            self._decision_counter.labels(outcome=outcome).inc()

    def record_rejection(self, check: str) -> None:
        self.rejections[check] = self.rejections.get(check, 0) + 1
        if self._enabled:
            self._rejection_counter.labels(check=check).inc()

    def record_exit(self, kind: str) -> None:
        if self._enabled:
            self._exit_counter.labels(kind=kind).inc()

    def record_order(self, mode: str, venue: str, success: bool) -> None:
        if self._enabled:
            result = "filled" if success else "failed"
            self._order_counter.labels(mode=mode, venue=venue, result=result).inc()

    def record_model_call(self, provider: str, duration: float,
                          input_tokens: int = 0, output_tokens: int = 0) -> None:
        if self._enabled:
            self._model_latency.labels(provider=provider).observe(duration)
            self._model_tokens.labels(provider=provider, direction="input").inc(max(input_tokens, 0))
            self._model_tokens.labels(provider=provider, direction="output").inc(max(output_tokens, 0))

    def record_equity(self, session_id: str, equity: float) -> None:
        self.last_equity[session_id] = equity
        if self._enabled:
            self._equity_gauge.labels(session=session_id).set(equity)

    def record_reconciliation_mismatch(self) -> None:
        if self._enabled:
            self._reconcile_counter.inc()
