"""Service graph wiring.

All components are built once per application and reach routes through
``app.state.services``:

    from convert_server.dependencies import Services, get_services

    @router.get("/items/{file_id}")
    async def item(file_id: str, services: Services = Depends(get_services)):
        return await services.registry.get(file_id)
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from fastapi import Request

from convert_server.config import Settings
from convert_server.services.converters import Converter
from convert_server.services.download import DownloadStreamer
from convert_server.services.file_storage import StorageBackend, create_storage
from convert_server.services.orchestrator import ConversionOrchestrator
from convert_server.services.registry import FileRegistry
from convert_server.services.scheduler import CleanupScheduler, SleepFn

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    storage: StorageBackend
    registry: FileRegistry
    scheduler: CleanupScheduler
    orchestrator: ConversionOrchestrator
    streamer: DownloadStreamer

    async def start(self) -> None:
        await self.storage.init()
        logger.info(f"Storage backend ready: {self.storage.storage_type}")

    async def stop(self) -> None:
        await self.orchestrator.shutdown()
        await self.scheduler.shutdown()
        await self.storage.close()


def build_services(
    settings: Settings,
    *,
    storage: Optional[StorageBackend] = None,
    converters: Optional[Mapping[str, Converter]] = None,
    sleep: SleepFn = asyncio.sleep,
) -> Services:
    """Build the component graph. Storage is selected here, once."""
    storage = storage or create_storage(settings)
    registry = FileRegistry()
    scheduler = CleanupScheduler(registry, storage, sleep=sleep)
    orchestrator = ConversionOrchestrator(
        registry,
        storage,
        scheduler,
        converters=converters,
        success_ttl=settings.SUCCESS_TTL_SECONDS,
        failure_ttl=settings.FAILURE_TTL_SECONDS,
        max_upload_bytes=settings.MAX_UPLOAD_BYTES,
        temp_dir=settings.TEMP_DIR,
    )
    streamer = DownloadStreamer(registry, storage, chunk_size=settings.DOWNLOAD_CHUNK_SIZE)
    return Services(
        settings=settings,
        storage=storage,
        registry=registry,
        scheduler=scheduler,
        orchestrator=orchestrator,
        streamer=streamer,
    )


def get_services(request: Request) -> Services:
    """FastAPI dependency that returns the application's service graph."""
    return request.app.state.services
