"""FastAPI application: health reporting and the manual consolidation trigger."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from pydantic import BaseModel

from . import __version__
from .consolidation import ConsolidationInProgress, ConsolidationResult
from .container import ServiceContainer, build_container
from .core.config import Settings, settings as default_settings
from .core.domain.graph import utcnow
from .core.errors import ProviderError

logger = logging.getLogger(__name__)


class ConsolidateRequest(BaseModel):
    user_id: str | None = None


class ConsolidateResponse(BaseModel):
    users: int
    consolidated: int
    total_cost: int
    results: list[ConsolidationResult]


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def require_admin_key(
    request: Request,
    x_admin_key: str | None = Header(default=None),
) -> None:
    """Reject admin calls without the configured key; open when no key is configured."""
    expected = request.app.state.settings.admin_api_key
    if expected and x_admin_key != expected:
        raise HTTPException(status_code=401, detail="Invalid admin key")


def create_app(
    container: ServiceContainer | None = None,
    settings: Settings | None = None,
) -> FastAPI:
    """Build the application.

    A prebuilt ``container`` is used as-is and left open on shutdown; otherwise
    one is built from ``settings`` and owned by the app.
    """
    settings = settings or (container.settings if container else default_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        startup_time = utcnow()

        logger.info("🚀 ===== MEMVAULT STARTUP =====")
        logger.info(f"⚙️  Environment: {settings.environment}")
        logger.info(f"📊 Log level: {settings.log_level}")
        logger.info(
            f"🔌 Backends: graph={settings.graph_store_backend}, "
            f"balance={settings.balance_store_backend}, queue={settings.queue_backend}"
        )

        owned = container is None
        if owned:
            try:
                app.state.container = await build_container(settings)
                # Single-node deployments run the workers and timer in the API process
                single_node = settings.queue_backend == "local"
                await app.state.container.start(consume=single_node, schedule=single_node)
            except Exception as e:
                logger.error(f"❌ MemVault startup failed: {e}")
                logger.exception("🔍 Startup failure details:")
                raise
        else:
            app.state.container = container

        startup_duration = (utcnow() - startup_time).total_seconds()
        logger.info(f"✨ MemVault startup completed in {startup_duration:.3f}s")

        yield

        logger.info("🛑 Shutting down MemVault...")
        if owned:
            await app.state.container.aclose()
        logger.info("✅ MemVault shutdown completed")

    app = FastAPI(
        title="MemVault",
        description="Long-term memory for AI agents",
        version=__version__,
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.container = container

    @app.get("/")
    async def root() -> dict[str, str]:
        return {
            "message": "MemVault",
            "status": "operational",
            "version": __version__,
            "environment": settings.environment,
        }

    @app.get("/health")
    async def health(
        container: ServiceContainer = Depends(get_container),
    ) -> dict[str, Any]:
        status = await container.health_monitor.check_health()
        status["environment"] = settings.environment
        status["consolidation_running"] = container.scheduler.is_running
        return status

    @app.post(
        "/admin/consolidate",
        response_model=ConsolidateResponse,
        dependencies=[Depends(require_admin_key)],
    )
    async def consolidate(
        body: ConsolidateRequest | None = None,
        container: ServiceContainer = Depends(get_container),
    ) -> ConsolidateResponse:
        user_id = body.user_id if body else None
        started: datetime = utcnow()
        try:
            results = await container.scheduler.trigger(user_id)
        except ConsolidationInProgress as e:
            raise HTTPException(status_code=409, detail=e.message) from e
        except ProviderError as e:
            logger.error(f"❌ Manual consolidation failed: {e.message}")
            raise HTTPException(status_code=503, detail=e.message) from e

        logger.info(
            f"📊 Manual consolidation finished in "
            f"{(utcnow() - started).total_seconds():.3f}s for {len(results)} users"
        )
        return ConsolidateResponse(
            users=len(results),
            consolidated=sum(1 for r in results if not r.skipped),
            total_cost=sum(r.cost for r in results),
            results=results,
        )

    return app


def run() -> None:
    """Serve the app with uvicorn."""
    import uvicorn

    logging.basicConfig(
        level=getattr(logging, default_settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    uvicorn.run(
        "memvault.main:create_app",
        factory=True,
        host=default_settings.fastapi_host,
        port=default_settings.fastapi_port,
        reload=default_settings.fastapi_reload and default_settings.is_development(),
    )


if __name__ == "__main__":
    run()
