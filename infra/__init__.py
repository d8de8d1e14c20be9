"""Infrastructure modules for vault-rebalancer"""

from .alerting import AlertService, AlertSeverity  # noqa: F401
from .metrics import MetricsRecorder, TickStats  # noqa: F401
from .healthcheck import HealthServer  # noqa: F401
from .heartbeat import HeartbeatWriter  # noqa: F401

__all__ = [
	"AlertService",
	"AlertSeverity",
	"MetricsRecorder",
	"TickStats",
	"HealthServer",
	"HeartbeatWriter",
]
