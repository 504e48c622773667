"""Infrastructure modules for the tick engine"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .metrics import MetricsRecorder  # noqa: F401
from .retry import call_with_retry  # noqa: F401
from .state_store import JsonStateStore  # noqa: F401
from .store import InMemoryStore, TradingStore  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"MetricsRecorder",
	"call_with_retry",
	"JsonStateStore",
	"InMemoryStore",
	"TradingStore",
]
