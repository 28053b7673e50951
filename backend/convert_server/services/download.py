"""Resolve a finished record to a byte stream for download."""
import logging
from pathlib import PurePath
from typing import AsyncIterator, Awaitable, Callable

from convert_server.services.errors import BackendUnavailableError, NotFoundError
from convert_server.services.file_storage import StorageBackend
from convert_server.services.registry import FileRegistry

logger = logging.getLogger(__name__)

CONVERTED_MARKER = "-converted"


def converted_filename(original_name: str, marker: str = CONVERTED_MARKER) -> str:
    """Insert marker before the extension: ``report.epub`` -> ``report-converted.epub``.

    Names without an extension get the marker appended.
    """
    name = PurePath(original_name).name or "file"
    stem, dot, ext = name.rpartition(".")
    if not dot or not stem:
        return name + marker
    return f"{stem}{marker}.{ext}"


class Download:
    """Converted bytes of one record, plus the headers needed to serve them.

    Iterating yields the chunks. The download lease is released when
    iteration ends or ``close()`` is called, whichever comes first.
    """

    def __init__(
        self,
        file_id: str,
        filename: str,
        size: int,
        media_type: str,
        stream: AsyncIterator[bytes],
        release: Callable[[], Awaitable[None]],
    ):
        self.file_id = file_id
        self.filename = filename
        self.size = size
        self.media_type = media_type
        self._stream = stream
        self._release = release
        self._closed = False

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._stream:
                yield chunk
        finally:
            await self.close()

    async def read(self) -> bytes:
        return b"".join([chunk async for chunk in self])

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        aclose = getattr(self._stream, "aclose", None)
        try:
            if aclose is not None:
                await aclose()
        finally:
            await self._release()


class DownloadStreamer:
    def __init__(self, registry: FileRegistry, storage: StorageBackend, chunk_size: int = 64 * 1024):
        self.registry = registry
        self.storage = storage
        self.chunk_size = chunk_size

    async def open(self, file_id: str) -> Download:
        """Open the converted bytes of a DONE record.

        Raises:
            NotFoundError: unknown, expired or unfinished id.
            BackendUnavailableError: record present but its storage cannot be
                read (deleted underneath us, or a backend outage).
        """
        record = await self.registry.acquire(file_id)
        try:
            size = await self.storage.size(record.storage_key)
            stream = await self.storage.open_stream(record.storage_key, self.chunk_size)
        except Exception as e:
            await self.registry.release(file_id)
            if isinstance(e, NotFoundError):
                logger.error(f"Inconsistency: {file_id} is done but its storage is missing: {e}")
            else:
                logger.error(f"Storage error opening {file_id}: {e}")
            raise BackendUnavailableError(f"File {file_id} not found") from e

        return Download(
            file_id=file_id,
            filename=converted_filename(record.original_name),
            size=size,
            media_type=record.media_type,
            stream=stream,
            release=lambda: self.registry.release(file_id),
        )
