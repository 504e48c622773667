"""
Order router: one entry point for every order the tick engine places.

Simulated modes (virtual, arena) go to the VirtualBroker. Live mode is routed
by venue to the matching LiveBroker with the user's credentials.

A live fill that could not be recorded pauses the session with an
operator-facing message and raises CriticalRecordingFailure so the caller
stops trading for the rest of the tick.
"""

import logging
from typing import Dict, Optional

from core.exceptions import CriticalRecordingFailure
from core.live_brokers import LiveBroker
from core.models import OrderRequest, OrderResult, SIMULATED_MODES
from core.virtual_broker import VirtualBroker
from infra.alerting import AlertSeverity

logger = logging.getLogger(__name__)


class OrderRouter:
    """
    Args:
        store: TradingStore
        virtual: Broker for simulated modes
        live_brokers: Live brokers keyed by venue
        metrics: MetricsRecorder (optional)
        alerts: AlertService (optional)
    """

    def __init__(self, store, virtual: VirtualBroker,
                 live_brokers: Optional[Dict[str, LiveBroker]] = None,
                 metrics=None, alerts=None):
        self.store = store
        self.virtual = virtual
        self.live_brokers = live_brokers or {}
        self.metrics = metrics
        self.alerts = alerts

    def place_order(self, request: OrderRequest,
                    credentials: Optional[Dict[str, str]] = None) -> OrderResult:
        try:
            result = self._dispatch(request, credentials)
        except CriticalRecordingFailure as e:
            self._halt_session(request, e)
            self._record(request, False)
            raise

        self._record(request, result.success)
        if not result.success:
            logger.warning(f"Order failed ({request.mode}/{request.venue} {request.market}): {result.error}")
        return result

    def _dispatch(self, request: OrderRequest,
                  credentials: Optional[Dict[str, str]]) -> OrderResult:
        if request.mode in SIMULATED_MODES:
            return self.virtual.execute(request)
        if request.mode != "live":
            return OrderResult(success=False, error=f"Invalid session mode: {request.mode}")

        broker = self.live_brokers.get(request.venue)
        if broker is None:
            return OrderResult(success=False, error=f"Unsupported live venue: {request.venue}")
        return broker.execute(request, credentials)

    def _halt_session(self, request: OrderRequest, error: CriticalRecordingFailure) -> None:
        message = str(error)
        logger.error(f"{message} Pausing session {request.session_id}.")
        if request.session_id:
            try:
                self.store.update_session(request.session_id, status="paused", error_message=message)
            except Exception as e:
                logger.critical(f"Failed to pause session {request.session_id} after recording failure: {e}")
        if self.alerts is not None:
            self.alerts.notify(
                AlertSeverity.CRITICAL,
                "Live trade not recorded",
                message,
                {
                    "session_id": request.session_id,
                    "venue": error.venue,
                    "order_id": error.order_id,
                    "market": request.market,
                    "side": request.side,
                },
            )

    def _record(self, request: OrderRequest, success: bool) -> None:
        if self.metrics is not None:
            self.metrics.record_order(request.mode, request.venue, success)
