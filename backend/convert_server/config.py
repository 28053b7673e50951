"""Application configuration from environment variables."""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All config comes from env vars or .env.backend file."""

    STORAGE_TYPE: str = "local"  # "local" or "azure_blob"
    STORAGE_PATH: str = "./backend/uploads"
    TEMP_DIR: str = ""  # staging dir for azure_blob, empty = system temp
    API_PORT: int = 8763
    CORS_ORIGINS: str = "*"
    LOG_LEVEL: str = "INFO"

    # Azure Blob (production only)
    AZURE_STORAGE_CONNECTION_STRING: str = ""
    AZURE_STORAGE_CONTAINER: str = "uploads"

    # Lifecycle
    SUCCESS_TTL_SECONDS: float = 5 * 60
    FAILURE_TTL_SECONDS: float = 10
    MAX_UPLOAD_BYTES: int = 64 * 1024 * 1024
    DOWNLOAD_CHUNK_SIZE: int = 64 * 1024

    # zhconvert (Fanhuaji) API for the zhc-* variants
    ZHCONVERT_API_URL: str = "https://api.zhconvert.org"
    ZHCONVERT_TIMEOUT: float = 60

    class Config:
        env_file = ".env.backend"
        env_file_encoding = "utf-8"


settings = Settings()
