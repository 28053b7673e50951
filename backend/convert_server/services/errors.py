"""Exception taxonomy shared by storage, registry, orchestrator and routes."""


class ConvertServerError(Exception):
    """Base class for all service errors."""
    pass


class ValidationError(ConvertServerError):
    """Upload rejected before anything was stored (type mismatch, bad options)."""
    pass


class InvalidOptionsError(ValidationError):
    """Conversion options missing or not supported by the variant."""
    pass


class UploadTooLargeError(ValidationError):
    """Upload exceeds MAX_UPLOAD_BYTES."""
    pass


class StorageWriteError(ConvertServerError):
    """The original upload could not be persisted."""
    pass


class ConversionError(ConvertServerError):
    """The external conversion routine failed."""
    pass


class NotFoundError(ConvertServerError):
    """Unknown, expired or not-yet-done id, or a missing storage key."""
    pass


class BackendUnavailableError(NotFoundError):
    """Storage key missing although the record still exists."""
    pass


def safe_error_message(e: Exception, fallback: str = "Conversion failed") -> str:
    """Extract a meaningful error message from an exception.

    Some exceptions produce an empty str(e). This helper falls back to the
    exception class name.
    """
    msg = str(e).strip()
    if not msg:
        msg = f"{type(e).__name__}: {fallback}"
    return msg
