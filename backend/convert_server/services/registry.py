"""FileRegistry - the single source of truth for record lifecycle state.

One instance is created at startup and injected into every component.
All access goes through an asyncio.Lock so that the state/timestamp field
group is always updated together, and readers only ever receive snapshot
copies of a record.

Downloads take a lease on a record (``acquire``/``release``). ``remove``
unregisters the record immediately, so no new lease can be taken, and then
waits until every outstanding lease has been released before returning.
The cleanup scheduler deletes storage only after ``remove`` returns, so an
open download stream is never invalidated underneath the client.
"""
import asyncio
import logging
import time
from collections import deque
from dataclasses import replace
from typing import Optional

from convert_server.models.record import Record, RecordState, generate_file_id
from convert_server.services.errors import NotFoundError

logger = logging.getLogger(__name__)


class FileRegistry:
    """In-memory mapping of file id -> Record."""

    def __init__(self, lease_timeout: Optional[float] = 60.0, retired_limit: int = 100_000):
        self._records: dict[str, Record] = {}
        # Issued by new_id() but not yet added
        self._reserved: set[str] = set()
        # Recently removed ids, oldest evicted first
        self._retired: deque[str] = deque(maxlen=retired_limit)
        self._retired_ids: set[str] = set()
        self._leases: dict[str, int] = {}
        self._lock = asyncio.Lock()
        self._released = asyncio.Condition(self._lock)
        # Upper bound on how long remove() waits for downloads to finish
        self.lease_timeout = lease_timeout

    def __len__(self) -> int:
        return len(self._records)

    def _in_use(self, file_id: str) -> bool:
        return file_id in self._records or file_id in self._reserved or file_id in self._retired_ids

    def new_id(self) -> str:
        """Reserve a fresh id.

        The id is neither registered, reserved, nor among the recently
        retired ones. Pass it to add(), or hand it back with retire_id().
        """
        while True:
            file_id = generate_file_id()
            if not self._in_use(file_id):
                self._reserved.add(file_id)
                return file_id

    def retire_id(self, file_id: str) -> None:
        """Mark an id as used for good."""
        self._reserved.discard(file_id)
        if file_id in self._retired_ids:
            return
        if len(self._retired) == self._retired.maxlen:
            self._retired_ids.discard(self._retired[0])
        self._retired.append(file_id)
        self._retired_ids.add(file_id)

    async def add(self, record: Record) -> Record:
        async with self._lock:
            if record.id in self._records or record.id in self._retired_ids:
                raise ValueError(f"Duplicate file id: {record.id}")
            self._reserved.discard(record.id)
            self._records[record.id] = record
            return replace(record)

    async def get(self, file_id: str) -> Optional[Record]:
        async with self._lock:
            record = self._records.get(file_id)
            return replace(record) if record else None

    async def _transition(self, file_id: str, state: RecordState, **changes) -> Optional[Record]:
        async with self._lock:
            record = self._records.get(file_id)
            if record is None:
                logger.warning(f"Cannot mark {file_id} {state.value}: record no longer registered")
                return None
            if record.state.is_terminal:
                logger.warning(
                    f"Ignoring transition of {file_id} to {state.value}: already {record.state.value}"
                )
                return None
            record.state = state
            for name, value in changes.items():
                setattr(record, name, value)
            return replace(record)

    async def mark_done(self, file_id: str, generated_at: Optional[float] = None) -> Optional[Record]:
        """PENDING -> DONE and refresh generated_at in one step."""
        return await self._transition(
            file_id, RecordState.DONE,
            generated_at=generated_at if generated_at is not None else time.time(),
        )

    async def mark_error(self, file_id: str, message: Optional[str] = None) -> Optional[Record]:
        """PENDING -> ERROR."""
        return await self._transition(file_id, RecordState.ERROR, error_message=message)

    async def mark_original_deleted(self, file_id: str) -> None:
        async with self._lock:
            record = self._records.get(file_id)
            if record is not None:
                record.original_deleted = True

    async def acquire(self, file_id: str) -> Record:
        """Take a download lease. Raises NotFoundError unless the record is DONE."""
        async with self._lock:
            record = self._records.get(file_id)
            if record is None or record.state is not RecordState.DONE:
                raise NotFoundError(f"File {file_id} not found")
            self._leases[file_id] = self._leases.get(file_id, 0) + 1
            return replace(record)

    async def release(self, file_id: str) -> None:
        async with self._released:
            remaining = self._leases.get(file_id, 0) - 1
            if remaining > 0:
                self._leases[file_id] = remaining
            else:
                self._leases.pop(file_id, None)
            self._released.notify_all()

    def active_leases(self, file_id: str) -> int:
        return self._leases.get(file_id, 0)

    async def remove(self, file_id: str) -> Optional[Record]:
        """Unregister a record, waiting for its active downloads to finish.

        Returns the removed record, or None if the id was not registered.
        """
        async with self._released:
            record = self._records.pop(file_id, None)
            if record is None:
                return None
            self.retire_id(file_id)
            if self._leases.get(file_id):
                logger.info(f"Waiting for {self._leases[file_id]} active download(s) of {file_id}")
                try:
                    await asyncio.wait_for(
                        self._released.wait_for(lambda: not self._leases.get(file_id)),
                        self.lease_timeout,
                    )
                except asyncio.TimeoutError:
                    logger.warning(
                        f"Gave up waiting for downloads of {file_id} after {self.lease_timeout}s"
                    )
                    self._leases.pop(file_id, None)
            return record
