"""Storage configuration models."""
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, field_validator


MIN_UPLOAD_PART_SIZE = 5 * 1024 * 1024  # S3 minimum part size
DEFAULT_PART_SIZE = 10 * 1024 * 1024
DEFAULT_CONCURRENCY = 5


class StorageType(str, Enum):
    """Storage provider types."""
    S3 = "s3"
    LOCAL = "local"


class StorageConfig(BaseModel):
    """Storage configuration model."""
    model_config = ConfigDict(use_enum_values=True)

    # Common settings
    type: StorageType = StorageType.LOCAL
    bucket: Optional[str] = None
    region: Optional[str] = None
    endpoint: Optional[str] = None
    use_path_style: bool = False

    # S3 specific
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    aws_session_token: Optional[str] = None

    # Local specific
    local_base_path: str = "/tmp/storage"
    local_create_base_path: bool = True
    local_dir_permissions: int = 0o755

    # Multipart transfer settings
    upload_part_size: int = DEFAULT_PART_SIZE
    upload_concurrency: int = DEFAULT_CONCURRENCY
    download_part_size: int = DEFAULT_PART_SIZE
    download_concurrency: int = DEFAULT_CONCURRENCY

    # Advanced settings
    max_retry_attempts: int = 1
    timeout: int = 30
    enable_ssl: bool = True

    @field_validator("upload_part_size")
    @classmethod
    def _min_upload_part(cls, v: int) -> int:
        # Below the protocol minimum the default is kept
        return v if v >= MIN_UPLOAD_PART_SIZE else DEFAULT_PART_SIZE

    @field_validator("download_part_size")
    @classmethod
    def _positive_download_part(cls, v: int) -> int:
        return v if v > 0 else DEFAULT_PART_SIZE

    @field_validator("upload_concurrency", "download_concurrency")
    @classmethod
    def _positive_concurrency(cls, v: int) -> int:
        return v if v > 0 else DEFAULT_CONCURRENCY

    @field_validator("max_retry_attempts")
    @classmethod
    def _at_least_one_attempt(cls, v: int) -> int:
        return max(1, v)
