"""In-memory models. Nothing here is persisted."""
from convert_server.models.record import Record, RecordState, generate_file_id

__all__ = ["Record", "RecordState", "generate_file_id"]
