"""Server process control and health monitoring."""

from .health import HealthCheck, HealthChecker, HealthLevel, HealthReport, ProcessMetrics
from .process_manager import (
    ProcessError,
    ProcessInfo,
    ProcessManager,
    ProcessStartError,
    ProcessStopError,
    SubprocessProcessManager,
)

__all__ = [
    "HealthCheck",
    "HealthChecker",
    "HealthLevel",
    "HealthReport",
    "ProcessError",
    "ProcessInfo",
    "ProcessManager",
    "ProcessMetrics",
    "ProcessStartError",
    "ProcessStopError",
    "SubprocessProcessManager",
]
