"""Status and variant response schemas."""
from typing import Optional

from convert_server.schemas.base import CamelModel


class FileStatusResponse(CamelModel):
    id: str
    status: str  # pending, done, error
    original_name: str
    generated_at: float
    expires_at: Optional[float] = None
    download_url: Optional[str] = None
    error: Optional[str] = None


class NotFoundResponse(CamelModel):
    id: str
    status: str = "not found"


class VariantResponse(CamelModel):
    name: str
    accept_type: str
    media_type: str
    options: list[str]
