"""File storage abstraction. Local filesystem for dev, Azure Blob for production.

The backend is chosen once at startup by ``create_storage()`` and handed to
every component that touches bytes. Storage keys are opaque to callers: a
filesystem path for ``LocalStorage``, a blob name for ``AzureBlobStorage``.
"""
import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import AsyncIterator, Optional
from urllib.parse import quote

import aiofiles
import aiofiles.os
from azure.core.exceptions import AzureError, ResourceExistsError, ResourceNotFoundError
from azure.storage.blob.aio import BlobServiceClient, ContainerClient

from convert_server.config import Settings
from convert_server.services.errors import NotFoundError, StorageWriteError

logger = logging.getLogger(__name__)

_COPY_CHUNK_SIZE = 1024 * 1024


class StorageBackend(ABC):
    """Uniform put / fetch / stream / delete / size over one storage medium."""

    # True when the conversion routine cannot work on storage keys directly
    # and bytes must be staged through local temp files.
    requires_staging: bool = False
    storage_type: str = ""

    async def init(self) -> None:
        """Prepare the backend (create directories, containers)."""

    async def close(self) -> None:
        """Release client resources."""

    @abstractmethod
    def original_key(self, file_id: str) -> str:
        ...

    @abstractmethod
    def processed_key(self, file_id: str) -> str:
        ...

    @abstractmethod
    async def put(self, key: str, data: bytes, metadata: Optional[dict] = None) -> str:
        """Store bytes under key. Raises StorageWriteError."""

    @abstractmethod
    async def put_file(self, key: str, path: str, metadata: Optional[dict] = None) -> str:
        """Store the contents of a local file under key. Raises StorageWriteError."""

    @abstractmethod
    async def fetch_to(self, key: str, path: str) -> None:
        """Copy the bytes under key to a local path. Raises NotFoundError."""

    @abstractmethod
    async def size(self, key: str) -> int:
        """Byte size of the object under key. Raises NotFoundError."""

    @abstractmethod
    async def open_stream(self, key: str, chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
        """Open key for reading and return an async chunk iterator.

        The key is resolved eagerly so a missing object raises NotFoundError
        here, before the caller has committed to a response.
        """

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove key. Never raises on a missing key; returns whether it existed."""


# ─── Local filesystem ─────────────────────────────────────────────


async def _iter_file(f, chunk_size: int) -> AsyncIterator[bytes]:
    try:
        while True:
            chunk = await f.read(chunk_size)
            if not chunk:
                break
            yield chunk
    finally:
        await f.close()


async def _copy_file(src: str, dest: str) -> None:
    async with aiofiles.open(src, "rb") as fin, aiofiles.open(dest, "wb") as fout:
        while True:
            chunk = await fin.read(_COPY_CHUNK_SIZE)
            if not chunk:
                break
            await fout.write(chunk)


class LocalStorage(StorageBackend):
    """Storage keys are literal filesystem paths under ``base_path``."""

    requires_staging = False
    storage_type = "local"

    def __init__(self, base_path: str):
        self.base_path = Path(base_path)

    async def init(self) -> None:
        self.base_path.mkdir(parents=True, exist_ok=True)

    def original_key(self, file_id: str) -> str:
        return str(self.base_path / f"original-{file_id}")

    def processed_key(self, file_id: str) -> str:
        return str(self.base_path / f"processed-{file_id}")

    def local_path(self, key: str) -> Path:
        return Path(key)

    async def put(self, key: str, data: bytes, metadata: Optional[dict] = None) -> str:
        try:
            async with aiofiles.open(key, "wb") as f:
                await f.write(data)
        except OSError as e:
            raise StorageWriteError(f"Cannot write {key}: {e}") from e
        return key

    async def put_file(self, key: str, path: str, metadata: Optional[dict] = None) -> str:
        if Path(path).resolve() == Path(key).resolve():
            return key
        try:
            await _copy_file(path, key)
        except OSError as e:
            raise StorageWriteError(f"Cannot write {key}: {e}") from e
        return key

    async def fetch_to(self, key: str, path: str) -> None:
        try:
            await _copy_file(key, path)
        except FileNotFoundError as e:
            raise NotFoundError(f"File not found: {key}") from e

    async def size(self, key: str) -> int:
        try:
            stat = await aiofiles.os.stat(key)
        except FileNotFoundError as e:
            raise NotFoundError(f"File not found: {key}") from e
        return stat.st_size

    async def open_stream(self, key: str, chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
        try:
            f = await aiofiles.open(key, "rb")
        except FileNotFoundError as e:
            raise NotFoundError(f"File not found: {key}") from e
        return _iter_file(f, chunk_size)

    async def delete(self, key: str) -> bool:
        try:
            await aiofiles.os.remove(key)
        except FileNotFoundError:
            return False
        return True


# ─── Azure Blob ───────────────────────────────────────────────────


def _blob_metadata(metadata: Optional[dict]) -> dict[str, str]:
    # Metadata travels as HTTP headers, so values must be ASCII
    return {k: quote(str(v), safe="") for k, v in (metadata or {}).items()}


class AzureBlobStorage(StorageBackend):
    """Storage keys are blob names inside one container."""

    requires_staging = True
    storage_type = "azure_blob"

    def __init__(self, container: ContainerClient, service: Optional[BlobServiceClient] = None):
        self.container = container
        self._service = service

    @classmethod
    def from_connection_string(cls, connection_string: str, container_name: str) -> "AzureBlobStorage":
        service = BlobServiceClient.from_connection_string(connection_string)
        return cls(service.get_container_client(container_name), service)

    async def init(self) -> None:
        try:
            await self.container.create_container()
            logger.info("Created blob container")
        except ResourceExistsError:
            pass

    async def close(self) -> None:
        if self._service is not None:
            await self._service.close()
        else:
            await self.container.close()

    def original_key(self, file_id: str) -> str:
        return f"original-{file_id}"

    def processed_key(self, file_id: str) -> str:
        return f"processed-{file_id}"

    async def put(self, key: str, data: bytes, metadata: Optional[dict] = None) -> str:
        try:
            await self.container.upload_blob(
                name=key, data=data, overwrite=True, metadata=_blob_metadata(metadata),
            )
        except AzureError as e:
            raise StorageWriteError(f"Cannot upload blob {key}: {e}") from e
        return key

    async def put_file(self, key: str, path: str, metadata: Optional[dict] = None) -> str:
        async with aiofiles.open(path, "rb") as f:
            data = await f.read()
        meta = {"size": len(data), "processedAt": int(time.time() * 1000)}
        meta.update(metadata or {})
        return await self.put(key, data, meta)

    async def _download(self, key: str):
        try:
            return await self.container.get_blob_client(key).download_blob()
        except ResourceNotFoundError as e:
            raise NotFoundError(f"Blob not found: {key}") from e

    async def fetch_to(self, key: str, path: str) -> None:
        downloader = await self._download(key)
        async with aiofiles.open(path, "wb") as f:
            async for chunk in downloader.chunks():
                await f.write(chunk)

    async def size(self, key: str) -> int:
        try:
            props = await self.container.get_blob_client(key).get_blob_properties()
        except ResourceNotFoundError as e:
            raise NotFoundError(f"Blob not found: {key}") from e
        raw = (props.metadata or {}).get("size")
        if raw is not None and str(raw).isdigit():
            return int(raw)
        return props.size

    async def open_stream(self, key: str, chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
        # Chunking is governed by the SDK client's max_chunk_get_size
        downloader = await self._download(key)
        return downloader.chunks()

    async def delete(self, key: str) -> bool:
        try:
            await self.container.delete_blob(key)
        except ResourceNotFoundError:
            return False
        return True


def create_storage(settings: Settings) -> StorageBackend:
    """Select the storage backend for the process lifetime."""
    if settings.STORAGE_TYPE == "local":
        return LocalStorage(settings.STORAGE_PATH)

    elif settings.STORAGE_TYPE == "azure_blob":
        if not settings.AZURE_STORAGE_CONNECTION_STRING:
            raise ValueError("AZURE_STORAGE_CONNECTION_STRING not set. Cannot use azure_blob storage.")
        return AzureBlobStorage.from_connection_string(
            settings.AZURE_STORAGE_CONNECTION_STRING, settings.AZURE_STORAGE_CONTAINER,
        )

    raise ValueError(f"Unknown storage type: {settings.STORAGE_TYPE}")
