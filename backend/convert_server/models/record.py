"""Record - in-memory bookkeeping for one accepted upload.

Records are never persisted. A process restart loses every record and every
pending deletion with it.
"""
import random
import string
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

_ID_ALPHABET = string.digits + string.ascii_lowercase


class RecordState(str, Enum):
    PENDING = "pending"
    DONE = "done"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self is not RecordState.PENDING


def generate_file_id() -> str:
    """Millisecond timestamp plus a 9-char base36 suffix, e.g. ``1700000000000-k3j9x0a2b``."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"{int(time.time() * 1000)}-{suffix}"


@dataclass
class Record:
    id: str
    original_name: str
    original_storage_key: str
    storage_key: str
    variant: str
    media_type: str
    state: RecordState = RecordState.PENDING
    generated_at: float = field(default_factory=time.time)
    error_message: Optional[str] = None
    original_deleted: bool = False
