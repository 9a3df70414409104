from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
from resumable_upload.core.constants import MAX_CHUNK_SIZE, MAX_FILE_SIZE


class Settings(BaseSettings):
    ENV: str = "local"

    MAIN_SERVICE_JWT_PUBLIC_KEY: str
    JWT_ALGORITHM: str = "RS256"
    EXPECTED_JWT_ISSUER: str
    EXPECTED_JWT_AUDIENCE: str

    S3_ACCESS_KEY: str = ""
    S3_SECRET_KEY: str = ""
    S3_BUCKET_NAME: str = "resumable-uploads"
    S3_ENDPOINT_URL: str = ""
    S3_REGION_NAME: Optional[str] = None

    # Chunks of in-flight sessions, one directory per upload id
    LOCAL_TEMP_CHUNK_PATH: str = "/tmp/resumable_chunks"

    # Authoritative session records, one JSON document per upload id
    SESSION_STORE_PATH: str = "/var/data/resumable_uploads/sessions"

    # Registered artifacts
    CATALOG_PATH: str = "/var/data/resumable_uploads/catalog"
    # Downstream task system notified after a successful finalize (optional)
    CATALOG_NOTIFY_URL: str = ""

    # Persistent Local Storage for completed files (if not using S3 as primary)
    PERSISTENT_LOCAL_STORAGE_PATH: str = "/var/data/resumable_uploads/files"
    UPLOAD_SERVICE_BASE_URL: str = "http://localhost:8000"

    STORAGE_BACKEND: str = "local"  # 's3' or 'local'
    SERVICE_PORT: int = 8000

    MAX_CHUNK_SIZE: int = MAX_CHUNK_SIZE
    MAX_FILE_SIZE: int = MAX_FILE_SIZE

    model_config = SettingsConfigDict(
        case_sensitive=True,
        env_file=".env" if ENV == "local" else None,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )

settings = Settings()
