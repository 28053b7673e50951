"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from convert_server.config import Settings, settings
from convert_server.dependencies import build_services
from convert_server.routes.convert import router as convert_router
from convert_server.routes.files import router as files_router

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

# Azure SDK logs every HTTP request and response header at INFO
for _noisy in ("azure", "azure.core.pipeline.policies.http_logging_policy", "aiohttp.access"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the service graph on startup, drop pending timers on shutdown."""
    services = getattr(app.state, "services", None)
    if services is None:
        services = build_services(app.state.settings)
        app.state.services = services
    await services.start()

    yield

    # Pending deletions are not persisted; storage left behind leaks until removed by hand
    await services.stop()
    logger.info("Application shutdown complete")


def create_app(app_settings: Settings = settings) -> FastAPI:
    app = FastAPI(
        title="Ephemeral Convert API",
        version="1.0.0",
        description="Upload a document, convert it, download the result before it expires.",
        lifespan=lifespan,
    )
    app.state.settings = app_settings

    origins = [o.strip() for o in app_settings.CORS_ORIGINS.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Length", "Content-Disposition", "X-File-Name"],
    )

    @app.get("/api/health")
    async def health_check():
        """Report liveness and the active storage backend."""
        services = getattr(app.state, "services", None)
        return {
            "status": "ok",
            "storage": services.storage.storage_type if services else app_settings.STORAGE_TYPE,
        }

    app.include_router(files_router)
    app.include_router(convert_router)
    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("convert_server.main:app", host="0.0.0.0", port=settings.API_PORT)
