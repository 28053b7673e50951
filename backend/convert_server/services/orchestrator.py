"""Conversion orchestrator.

Accepts uploads, persists the original bytes, and runs the conversion as a
detached asyncio task within the FastAPI process. The request that triggered
the conversion returns as soon as the original is stored; clients poll the
registry for the outcome.

Execution depends on the storage backend:
- Backends that expose keys as local paths are converted in place, writing
  straight to the reserved processed key.
- Remote backends are staged: original bytes are copied to a temp file, the
  converter writes to a second temp file, and that file is uploaded under the
  processed key. Both temp files are removed regardless of outcome.

Every record settles exactly once: DONE (long TTL) or ERROR (short TTL, the
original is deleted right away). The cleanup scheduler removes it afterwards.
"""
import asyncio
import logging
import os
import tempfile
import time
from typing import Mapping, Optional

import aiofiles.os

from convert_server.models.record import Record
from convert_server.services.converters import CONVERTERS, Converter
from convert_server.services.errors import (
    ConversionError, NotFoundError, StorageWriteError, UploadTooLargeError, ValidationError,
    safe_error_message,
)
from convert_server.services.file_storage import StorageBackend
from convert_server.services.registry import FileRegistry
from convert_server.services.scheduler import CleanupScheduler

logger = logging.getLogger(__name__)

DEFAULT_SUCCESS_TTL = 5 * 60
DEFAULT_FAILURE_TTL = 10


async def _remove_temp(path: str) -> None:
    try:
        await aiofiles.os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Could not remove temp file {path}: {e}")


class ConversionOrchestrator:
    def __init__(
        self,
        registry: FileRegistry,
        storage: StorageBackend,
        scheduler: CleanupScheduler,
        *,
        converters: Optional[Mapping[str, Converter]] = None,
        success_ttl: float = DEFAULT_SUCCESS_TTL,
        failure_ttl: float = DEFAULT_FAILURE_TTL,
        max_upload_bytes: Optional[int] = None,
        temp_dir: Optional[str] = None,
    ):
        self.registry = registry
        self.storage = storage
        self.scheduler = scheduler
        self.converters = converters if converters is not None else CONVERTERS
        self.success_ttl = success_ttl
        self.failure_ttl = failure_ttl
        self.max_upload_bytes = max_upload_bytes
        self.temp_dir = temp_dir or None
        self._tasks: set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def get_converter(self, variant: str) -> Converter:
        converter = self.converters.get(variant)
        if converter is None:
            raise NotFoundError(f"Unknown conversion: {variant}")
        return converter

    # ── Upload ──────────────────────────────────────────────────────

    def check_size(self, size: int) -> None:
        if self.max_upload_bytes is not None and size > self.max_upload_bytes:
            raise UploadTooLargeError(
                f"File size exceeds limit ({self.max_upload_bytes} bytes)"
            )

    async def accept_upload(
        self,
        variant: str,
        filename: str,
        content_type: Optional[str],
        data: bytes,
        form: Mapping[str, str],
    ) -> Record:
        """Validate, persist the original, register the record, start conversion.

        Raises:
            NotFoundError: unknown variant.
            ValidationError: declared type mismatch or bad options. Nothing
                is stored and no id is issued.
            StorageWriteError: the original could not be stored. No record
                is created and no deletion is scheduled.
        """
        converter = self.get_converter(variant)
        if content_type != converter.accept_type:
            raise ValidationError(f"File type is not {converter.accept_type}")
        self.check_size(len(data))
        options = converter.parse_options(form)

        file_id = self.registry.new_id()
        original_key = self.storage.original_key(file_id)
        processed_key = self.storage.processed_key(file_id)

        try:
            await self.storage.put(original_key, data, metadata={
                "originalName": filename,
                "mimetype": content_type,
                "size": len(data),
                "uploadedAt": int(time.time() * 1000),
            })
        except StorageWriteError as e:
            logger.error(f"File save error for {file_id}: {e}")
            await self._delete_quietly(original_key, f"partial original of {file_id}")
            self.registry.retire_id(file_id)
            raise

        record = await self.registry.add(Record(
            id=file_id,
            original_name=filename,
            original_storage_key=original_key,
            storage_key=processed_key,
            variant=variant,
            media_type=converter.media_type,
        ))
        logger.info(f"Accepted {file_id} ({filename}, {len(data)} bytes) for {variant}")

        task = asyncio.create_task(self._run(record, converter, options), name=f"convert-{file_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return record

    # ── Conversion task ─────────────────────────────────────────────

    async def _run(self, record: Record, converter: Converter, options: dict) -> None:
        try:
            if self.storage.requires_staging:
                await self._convert_staged(record, converter, options)
            else:
                await self._convert_in_place(record, converter, options)
        except Exception as e:
            await self._on_failure(record, e)
        else:
            await self._on_success(record)

    async def _convert_in_place(self, record: Record, converter: Converter, options: dict) -> None:
        output = record.storage_key
        try:
            await converter.convert(record.original_storage_key, options, output)
            await self._require_output(self.storage.size(output))
        except Exception:
            await self._delete_quietly(output, f"partial output of {record.id}")
            raise

    async def _convert_staged(self, record: Record, converter: Converter, options: dict) -> None:
        input_path = self._temp_path(record.id, "in")
        output_path = self._temp_path(record.id, "out")
        try:
            await self.storage.fetch_to(record.original_storage_key, input_path)
            await converter.convert(input_path, options, output_path)
            await self._require_output(aiofiles.os.stat(output_path))
            try:
                await self.storage.put_file(record.storage_key, output_path, metadata={
                    "originalName": record.original_name,
                })
            except Exception:
                await self._delete_quietly(record.storage_key, f"partial upload of {record.id}")
                raise
        finally:
            await _remove_temp(input_path)
            await _remove_temp(output_path)

        # Conversion is a one-way rewrite, the original is no longer needed
        await self._delete_original(record)

    @staticmethod
    async def _require_output(probe) -> None:
        try:
            await probe
        except (FileNotFoundError, NotFoundError) as e:
            raise ConversionError("Conversion produced no output") from e

    def _temp_path(self, file_id: str, tag: str) -> str:
        fd, path = tempfile.mkstemp(prefix=f"{file_id}-{tag}-", dir=self.temp_dir)
        os.close(fd)
        return path

    # ── Completion ──────────────────────────────────────────────────

    async def _on_success(self, record: Record) -> None:
        updated = await self.registry.mark_done(record.id)
        if updated is None:
            # Record vanished while converting, nothing will ever serve the output
            await self._delete_quietly(record.storage_key, f"orphaned output of {record.id}")
            return
        logger.info(f"Conversion of {record.id} done")
        self.scheduler.schedule(record.id, self.success_ttl)

    async def _on_failure(self, record: Record, e: Exception) -> None:
        message = safe_error_message(e)
        if isinstance(e, ConversionError):
            logger.warning(f"Conversion of {record.id} failed: {message}")
        else:
            logger.exception(f"Conversion of {record.id} failed: {message}")

        await self.registry.mark_error(record.id, message)
        await self._delete_original(record)
        self.scheduler.schedule(record.id, self.failure_ttl)

    async def _delete_original(self, record: Record) -> None:
        if await self._delete_quietly(record.original_storage_key, f"original of {record.id}"):
            await self.registry.mark_original_deleted(record.id)
            logger.info(f"Cleaned up original of {record.id}")

    async def _delete_quietly(self, key: str, label: str) -> bool:
        try:
            await self.storage.delete(key)
        except Exception as e:
            logger.warning(f"Error cleaning up {label}: {e}")
            return False
        return True

    # ── Lifecycle ───────────────────────────────────────────────────

    async def drain(self) -> None:
        """Wait for all in-flight conversions to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Abandoned {len(tasks)} in-flight conversion(s) on shutdown")
