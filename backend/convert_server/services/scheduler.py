"""Deferred deletion of settled records and their storage.

Each record gets at most one pending cleanup. Scheduling again for the same
id replaces (cancels) the earlier timer. When a timer fires the record is
removed from the registry first, then its storage keys are deleted. Every
deletion is best-effort: failures are logged, never raised and never retried.

Timers live in the event loop only; pending deletions are lost when the
process exits.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from convert_server.services.file_storage import StorageBackend
from convert_server.services.registry import FileRegistry

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class CleanupHandle:
    """Handle for one scheduled deletion.

    Cancelling only stops the timer. Once it has fired (``firing``) the
    deletion runs to completion.
    """

    def __init__(self, file_id: str, delay: float):
        self.file_id = file_id
        self.delay = delay
        self.firing = False
        self._task: Optional[asyncio.Task] = None

    @property
    def task(self) -> asyncio.Task:
        return self._task

    @property
    def done(self) -> bool:
        return self._task.done()

    @property
    def cancelled(self) -> bool:
        return self._task.cancelled()

    def cancel(self) -> bool:
        if self.firing:
            return False
        return self._task.cancel()

    async def wait(self) -> None:
        """Wait until the deletion has run (or the handle was cancelled)."""
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise


class CleanupScheduler:
    def __init__(
        self,
        registry: FileRegistry,
        storage: StorageBackend,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.registry = registry
        self.storage = storage
        self._sleep = sleep
        self._handles: dict[str, CleanupHandle] = {}

    @property
    def pending(self) -> int:
        return sum(1 for h in self._handles.values() if not h.done)

    def get_handle(self, file_id: str) -> Optional[CleanupHandle]:
        return self._handles.get(file_id)

    def schedule(self, file_id: str, delay: float) -> CleanupHandle:
        """Arm a one-shot deletion of file_id after delay seconds."""
        previous = self._handles.get(file_id)
        if previous is not None and not previous.done:
            if previous.firing:
                logger.info(f"Deletion of {file_id} already under way")
                return previous
            logger.info(f"Replacing pending deletion of {file_id}")
            previous.cancel()

        logger.info(f"Schedule {file_id} for deletion in {delay:g}s")
        handle = CleanupHandle(file_id, delay)
        task = asyncio.create_task(self._fire(handle), name=f"cleanup-{file_id}")
        handle._task = task
        self._handles[file_id] = handle
        task.add_done_callback(lambda _t: self._forget(file_id, handle))
        return handle

    def _forget(self, file_id: str, handle: CleanupHandle) -> None:
        if self._handles.get(file_id) is handle:
            del self._handles[file_id]

    async def _fire(self, handle: CleanupHandle) -> None:
        await self._sleep(handle.delay)
        handle.firing = True
        await self.purge(handle.file_id)

    async def purge(self, file_id: str) -> bool:
        """Remove the record and delete its storage now.

        Returns False if the record was already gone (no-op). If the timer
        has already fired, waits for that deletion to finish instead.
        """
        handle = self._handles.get(file_id)
        if handle is not None and handle.task is not asyncio.current_task():
            if handle.firing:
                await handle.wait()
                return False
            handle.cancel()

        record = await self.registry.remove(file_id)
        if record is None:
            logger.info(f"Deletion of {file_id} skipped: already removed")
            return False

        logger.info(f"Deleting {file_id} ...")
        await self._delete_quietly(record.storage_key, "processed", file_id)
        if record.original_storage_key and record.original_storage_key != record.storage_key \
                and not record.original_deleted:
            await self._delete_quietly(record.original_storage_key, "original", file_id)
        return True

    async def _delete_quietly(self, key: str, label: str, file_id: str) -> None:
        try:
            existed = await self.storage.delete(key)
        except Exception as e:
            logger.warning(f"Deleting {label} storage of {file_id} failed: {e}")
            return
        if existed:
            logger.info(f"Deleted {label} storage {key}")
        else:
            logger.debug(f"{label.capitalize()} storage {key} was already gone")

    async def shutdown(self) -> None:
        """Cancel all pending deletions (they are not persisted)."""
        handles = list(self._handles.values())
        for handle in handles:
            # Deletions under way are abandoned too
            handle.task.cancel()
        if handles:
            await asyncio.gather(*(h.task for h in handles), return_exceptions=True)
            logger.info(f"Dropped {len(handles)} pending deletion(s) on shutdown")
        self._handles.clear()
