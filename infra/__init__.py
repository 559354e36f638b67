"""Infrastructure modules for swingtrader"""

from .metrics import MetricsRecorder, CycleStats  # noqa: F401
from .healthcheck import HealthServer  # noqa: F401

__all__ = [
	"MetricsRecorder",
	"CycleStats",
	"HealthServer",
]
