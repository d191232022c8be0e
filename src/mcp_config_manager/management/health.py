"""Process metrics and health checking for MCP servers."""

import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, List, Optional

import aiohttp
import psutil

from ..config.logging import get_logger
from ..domain.models import Server, ServerMetrics
from ..domain.status import RunningStatus, calculate_uptime_ms

logger = get_logger(__name__)

MEMORY_WARNING_BYTES = 512 * 1024 * 1024
MEMORY_CRITICAL_BYTES = 1024 * 1024 * 1024
CPU_WARNING_PERCENT = 80.0


class HealthLevel(Enum):
    """Health check severity levels."""

    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"
    UNKNOWN = "unknown"


@dataclass
class HealthCheck:
    """Individual health check result."""

    name: str
    passed: bool
    level: HealthLevel
    message: str
    details: Optional[Dict[str, Any]] = None
    duration_ms: Optional[float] = None


@dataclass
class HealthReport:
    """Complete health status for a server."""

    server_id: str
    overall_level: HealthLevel
    checks: List[HealthCheck]
    timestamp: float
    issues: List[str]

    @property
    def is_healthy(self) -> bool:
        return self.overall_level in (HealthLevel.HEALTHY, HealthLevel.WARNING)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "server_id": self.server_id,
            "overall_level": self.overall_level.value,
            "is_healthy": self.is_healthy,
            "checks": [
                {
                    "name": check.name,
                    "passed": check.passed,
                    "level": check.level.value,
                    "message": check.message,
                    "details": check.details,
                    "duration_ms": check.duration_ms,
                }
                for check in self.checks
            ],
            "timestamp": self.timestamp,
            "issues": self.issues,
        }


@dataclass
class ProcessMetrics:
    """Process resource usage sampled with psutil."""

    cpu_percent: float
    memory_bytes: int
    memory_percent: float
    threads: int
    uptime_seconds: float
    status: str


class HealthChecker:
    """Checks server processes and their optional HTTP health endpoints."""

    def __init__(self, session: Optional[aiohttp.ClientSession] = None):
        self.session = session
        self._owns_session = session is None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        if self.session is not None and self._owns_session:
            await self.session.close()
            self.session = None

    async def get_process_metrics(self, pid: int) -> Optional[ProcessMetrics]:
        """Sample process metrics, or ``None`` if the process is gone."""
        try:
            process = psutil.Process(pid)
            with process.oneshot():
                return ProcessMetrics(
                    cpu_percent=process.cpu_percent(),
                    memory_bytes=process.memory_info().rss,
                    memory_percent=process.memory_percent(),
                    threads=process.num_threads(),
                    uptime_seconds=time.time() - process.create_time(),
                    status=process.status(),
                )
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess) as e:
            logger.warning("Failed to get process metrics", pid=pid, error=str(e))
            return None

    async def check_server(self, server: Server) -> HealthReport:
        """Run the process, resource and endpoint checks for ``server``."""
        checks: List[HealthCheck] = []
        status = server.status

        if isinstance(status, RunningStatus) and status.pid:
            metrics = await self.get_process_metrics(status.pid)
            checks.append(self._check_process(status.pid, metrics))
            if metrics is not None:
                checks.append(self._check_resources(metrics))
        else:
            checks.append(
                HealthCheck(
                    name="process",
                    passed=False,
                    level=HealthLevel.UNKNOWN,
                    message=f"Server is not running ({status.kind.value})",
                )
            )

        settings = server.health_check
        if settings.enabled and settings.endpoint:
            checks.append(await self._check_endpoint(settings.endpoint, settings.timeout_ms))

        issues = [f"{check.name}: {check.message}" for check in checks if not check.passed]
        return HealthReport(
            server_id=str(server.id),
            overall_level=self._determine_overall_health(checks),
            checks=checks,
            timestamp=time.time(),
            issues=issues,
        )

    async def collect_metrics(self, server: Server) -> ServerMetrics:
        """Refresh ``server.metrics`` with live process and endpoint samples."""
        metrics = replace(server.metrics, uptime_ms=calculate_uptime_ms(server.status))
        status = server.status
        if isinstance(status, RunningStatus) and status.pid:
            process = await self.get_process_metrics(status.pid)
            if process is not None:
                metrics = replace(
                    metrics,
                    memory_usage_bytes=process.memory_bytes,
                    cpu_usage_percent=process.cpu_percent,
                )

        settings = server.health_check
        if settings.enabled and settings.endpoint:
            check = await self._check_endpoint(settings.endpoint, settings.timeout_ms)
            if check.passed:
                metrics = replace(metrics, response_time_ms=check.duration_ms)
        return metrics

    def _check_process(self, pid: int, metrics: Optional[ProcessMetrics]) -> HealthCheck:
        if metrics is None:
            return HealthCheck(
                name="process",
                passed=False,
                level=HealthLevel.CRITICAL,
                message=f"Process {pid} is not alive",
            )
        return HealthCheck(
            name="process",
            passed=True,
            level=HealthLevel.HEALTHY,
            message=f"Process {pid} is {metrics.status}",
            details={"pid": pid, "uptime_seconds": round(metrics.uptime_seconds, 1)},
        )

    def _check_resources(self, metrics: ProcessMetrics) -> HealthCheck:
        details = {
            "memory_bytes": metrics.memory_bytes,
            "cpu_percent": metrics.cpu_percent,
            "threads": metrics.threads,
        }
        if metrics.memory_bytes > MEMORY_CRITICAL_BYTES:
            level, message = HealthLevel.CRITICAL, "Memory usage above 1GB"
        elif metrics.memory_bytes > MEMORY_WARNING_BYTES:
            level, message = HealthLevel.WARNING, "Memory usage above 512MB"
        elif metrics.cpu_percent > CPU_WARNING_PERCENT:
            level, message = HealthLevel.WARNING, f"CPU usage at {metrics.cpu_percent:.0f}%"
        else:
            level, message = HealthLevel.HEALTHY, "Resource usage normal"
        return HealthCheck(
            name="resources",
            passed=level is not HealthLevel.CRITICAL,
            level=level,
            message=message,
            details=details,
        )

    async def _check_endpoint(self, url: str, timeout_ms: int) -> HealthCheck:
        start_time = time.time()
        if self.session is None:
            self.session = aiohttp.ClientSession()

        try:
            timeout = aiohttp.ClientTimeout(total=timeout_ms / 1000)
            async with self.session.get(url, timeout=timeout) as response:
                duration_ms = (time.time() - start_time) * 1000
                if response.status == 200:
                    return HealthCheck(
                        name="endpoint",
                        passed=True,
                        level=HealthLevel.HEALTHY,
                        message=f"Health endpoint responded in {duration_ms:.1f}ms",
                        duration_ms=duration_ms,
                    )
                return HealthCheck(
                    name="endpoint",
                    passed=False,
                    level=HealthLevel.WARNING,
                    message=f"Health endpoint returned status {response.status}",
                    duration_ms=duration_ms,
                )
        except aiohttp.ClientConnectorError:
            return HealthCheck(
                name="endpoint",
                passed=False,
                level=HealthLevel.CRITICAL,
                message="Cannot connect to health endpoint",
                duration_ms=(time.time() - start_time) * 1000,
            )
        except (aiohttp.ClientError, TimeoutError) as e:
            return HealthCheck(
                name="endpoint",
                passed=False,
                level=HealthLevel.WARNING,
                message=f"Health check failed: {str(e) or type(e).__name__}",
                duration_ms=(time.time() - start_time) * 1000,
            )

    def _determine_overall_health(self, checks: List[HealthCheck]) -> HealthLevel:
        """Worst level wins."""
        levels = [check.level for check in checks]
        if HealthLevel.CRITICAL in levels:
            return HealthLevel.CRITICAL
        if HealthLevel.WARNING in levels:
            return HealthLevel.WARNING
        if HealthLevel.HEALTHY in levels:
            return HealthLevel.HEALTHY
        return HealthLevel.UNKNOWN
