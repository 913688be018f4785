"""Periodic and manual scheduling of consolidation cycles."""

import asyncio
import logging

from ..core.config import Settings, settings as default_settings
from ..core.errors import MemVaultError
from .service import ConsolidationResult, ConsolidationService

logger = logging.getLogger(__name__)


class ConsolidationInProgress(MemVaultError):
    """A consolidation run is already executing."""

    code = "CONSOLIDATION_IN_PROGRESS"


class ConsolidationScheduler:
    """Runs consolidation every ``consolidation_interval_hours``; runs never overlap."""

    def __init__(self, service: ConsolidationService, settings: Settings | None = None):
        self.service = service
        self.settings = settings or default_settings
        self._lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._stopped = asyncio.Event()

    @property
    def interval_seconds(self) -> float:
        return self.settings.consolidation_interval_hours * 3600

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    async def trigger(self, user_id: str | None = None) -> list[ConsolidationResult]:
        """Run consolidation now for one tenant or for every eligible tenant.

        Raises:
            ConsolidationInProgress: If another run holds the lock
        """
        if self._lock.locked():
            raise ConsolidationInProgress("Consolidation is already running")
        async with self._lock:
            if user_id:
                logger.info(f"🌙 Manual consolidation triggered for {user_id}")
                return [await self.service.consolidate_user(user_id)]
            logger.info("🌙 Manual consolidation triggered for all users")
            return await self.service.consolidate_all_users()

    async def _run_scheduled(self) -> None:
        if self._lock.locked():
            logger.warning("Previous consolidation still running, skipping this cycle")
            return
        async with self._lock:
            results = await self.service.consolidate_all_users()
        consolidated = sum(1 for r in results if not r.skipped)
        logger.info(f"📊 Scheduled consolidation finished: {consolidated}/{len(results)} users")

    async def _loop(self) -> None:
        while not self._stopped.is_set():
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval_seconds)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self._run_scheduled()
            except Exception as e:
                logger.error(f"❌ Scheduled consolidation failed: {e}")

    def start(self) -> None:
        if not self.settings.consolidation_enabled:
            logger.info("Consolidation scheduler disabled")
            return
        if self._task is None:
            self._stopped.clear()
            self._task = asyncio.create_task(self._loop())
            logger.info(
                f"🔄 Consolidation scheduler started "
                f"(every {self.settings.consolidation_interval_hours}h)"
            )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopped.set()
        try:
            await self._task
        finally:
            self._task = None
        logger.info("🛑 Consolidation scheduler stopped")
