"""Infrastructure modules for prophet-trader"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .metrics import MetricsRecorder  # noqa: F401
from .position_store import PositionStore, SQLitePositionStore  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"MetricsRecorder",
	"PositionStore",
	"SQLitePositionStore",
]
