"""Health monitoring for the ingestion worker pool."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ..core.domain.graph import utcnow

logger = logging.getLogger(__name__)


@dataclass
class HealthMetrics:
    """Health metrics for the ingestion service."""

    service_start_time: datetime
    total_jobs_processed: int = 0
    successful_jobs: int = 0
    failed_jobs: int = 0
    queue_connection_healthy: bool = False
    components_healthy: dict[str, bool] = field(default_factory=dict)
    last_job_processed_at: datetime | None = None


class HealthMonitor:
    """Monitors health of ingestion components and job outcomes."""

    def __init__(self) -> None:
        self.metrics = HealthMetrics(service_start_time=utcnow())
        self._components: dict[str, Any] = {}
        self._queue: Any | None = None

    def register_component(self, name: str, component: Any) -> None:
        """Register a component exposing ``get_health()`` or async ``health_check()``."""
        self._components[name] = component
        self.metrics.components_healthy[name] = False
        logger.debug(f"📊 Registered component for health monitoring: {name}")

    def register_queue(self, queue: Any) -> None:
        """Register the job transport for health monitoring."""
        self._queue = queue
        logger.debug("📊 Registered job queue for health monitoring")

    async def _component_health(self, component: Any) -> dict[str, Any]:
        if hasattr(component, "get_health"):
            return component.get_health()
        healthy = await component.health_check()
        if isinstance(healthy, dict):
            return healthy
        return {"status": "ok" if healthy else "unreachable", "healthy": bool(healthy)}

    async def check_health(self) -> dict[str, Any]:
        """Check overall health of the ingestion service."""
        now = utcnow()
        health_status: dict[str, Any] = {
            "service": "memvault_ingestion",
            "status": "healthy",
            "timestamp": now.isoformat(),
            "uptime_seconds": (now - self.metrics.service_start_time).total_seconds(),
            "metrics": {
                "total_jobs_processed": self.metrics.total_jobs_processed,
                "successful_jobs": self.metrics.successful_jobs,
                "failed_jobs": self.metrics.failed_jobs,
                "success_rate": self._calculate_success_rate(),
                "last_job_processed_at": (
                    self.metrics.last_job_processed_at.isoformat()
                    if self.metrics.last_job_processed_at
                    else None
                ),
            },
            "components": {},
        }

        if self._queue:
            try:
                queue_health = await self._queue.health_check()
                self.metrics.queue_connection_healthy = queue_health.get("healthy", False)
                health_status["components"]["queue"] = queue_health
            except Exception as e:
                self.metrics.queue_connection_healthy = False
                health_status["components"]["queue"] = {
                    "status": "error",
                    "healthy": False,
                    "error": str(e),
                }
        else:
            health_status["components"]["queue"] = {"status": "not_registered", "healthy": False}

        all_components_healthy = True
        for name, component in self._components.items():
            try:
                component_health = await self._component_health(component)
            except Exception as e:
                component_health = {"status": "error", "healthy": False, "error": str(e)}
            health_status["components"][name] = component_health
            healthy = component_health.get("healthy", False)
            self.metrics.components_healthy[name] = healthy
            all_components_healthy = all_components_healthy and healthy

        overall_healthy = self.metrics.queue_connection_healthy and all_components_healthy
        health_status["status"] = "healthy" if overall_healthy else "unhealthy"
        health_status["healthy"] = overall_healthy
        return health_status

    def record_job_start(self) -> None:
        """Record that a job processing has started."""
        self.metrics.total_jobs_processed += 1

    def record_job_success(self) -> None:
        """Record successful job completion."""
        self.metrics.successful_jobs += 1
        self.metrics.last_job_processed_at = utcnow()

    def record_job_failure(self) -> None:
        """Record failed job completion."""
        self.metrics.failed_jobs += 1
        self.metrics.last_job_processed_at = utcnow()

    def _calculate_success_rate(self) -> float:
        if self.metrics.total_jobs_processed == 0:
            return 1.0
        return self.metrics.successful_jobs / self.metrics.total_jobs_processed
