import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from spark_engine.api.routes import api_router
from spark_engine.config import Settings, get_settings
from spark_engine.engine import SparkEngine

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_app(settings: Optional[Settings] = None, engine: Optional[SparkEngine] = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Manage application lifespan: startup and shutdown events.
        """
        # Startup
        logger.info("🚀 Starting Spark engine (vault=%s)...", settings.vault_path)
        app.state.engine = engine or SparkEngine(settings)
        poller = None
        if settings.enable_poller:
            poller = asyncio.create_task(app.state.engine.run_poller())
        logger.info("✅ Engine startup complete")

        yield

        # Shutdown
        logger.info("🛑 Shutting down Spark engine...")
        if poller is not None:
            poller.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await poller
        logger.info("✅ Engine shutdown complete")

    app = FastAPI(
        title="Spark Engine",
        description="Workflow automation engine: generates, edits and runs node-graph workflows stored in a vault.",
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Local workflow UI only
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[],
        allow_origin_regex=r"^http:\/\/localhost:\d+$|^http:\/\/127\.0\.0\.1:\d+$|^app:\/\/obsidian\.md$",
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
        allow_headers=["*"],
        expose_headers=["*"],
    )

    app.include_router(api_router)
    return app


app = create_app()
