"""MemVault worker - entry point for ingestion workers and consolidation cycles."""

import asyncio
import logging
import signal
import sys
from typing import Any

from ..container import ServiceContainer, build_container
from ..core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class MemVaultWorker:
    """Consumes ingestion jobs and runs the consolidation timer until signalled."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or default_settings
        self.container: ServiceContainer | None = None
        self._shutdown_event = asyncio.Event()

    async def initialize(self) -> None:
        """Connect backends and start consuming."""
        logger.info("🚀 Starting MemVault worker initialization...")
        try:
            self.container = await build_container(self.settings)
            await self.container.start(consume=True, schedule=True)
            logger.info("✅ MemVault worker initialized successfully")
        except Exception as e:
            logger.error(f"❌ Failed to initialize MemVault worker: {e}")
            raise

    async def run(self) -> None:
        logger.info("🔄 MemVault worker is running...")
        try:
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            logger.info("🛑 Worker run cancelled")

    async def health_check(self) -> dict[str, Any]:
        if not self.container:
            return {"status": "not_initialized", "healthy": False}
        return await self.container.health_monitor.check_health()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    async def shutdown(self) -> None:
        """Stop consumers and background tasks, then close connections."""
        logger.info("🛑 Shutting down MemVault worker...")
        self._shutdown_event.set()
        if self.container:
            await self.container.aclose()
            self.container = None
        logger.info("✅ MemVault worker shutdown complete")


def setup_signal_handlers(worker: MemVaultWorker) -> None:
    """Setup signal handlers for graceful shutdown."""
    loop = asyncio.get_running_loop()

    def handle_shutdown_signal(signum: int) -> None:
        logger.info(f"📡 Received signal {signum}, initiating graceful shutdown...")
        worker.request_shutdown()

    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, handle_shutdown_signal, signum)


async def main() -> int:
    """Main entry point for the MemVault worker."""
    logging.basicConfig(
        level=getattr(logging, default_settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    logger.info("🚀 Starting MemVault worker...")

    worker = MemVaultWorker()
    try:
        await worker.initialize()
        setup_signal_handlers(worker)
        await worker.run()
    except KeyboardInterrupt:
        logger.info("📡 Received keyboard interrupt")
    except Exception as e:
        logger.error(f"❌ Worker failed: {e}")
        return 1
    finally:
        await worker.shutdown()

    logger.info("👋 MemVault worker stopped")
    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
